"""Configuration for the member portal."""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _parse_bool(value: str, default: bool = False) -> bool:
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_int(value: str, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


APP_ENV = os.getenv("APP_ENV", "development").lower()  # development, test, production
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Database
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(__file__).parent / 'portal.db'}",
)

# Session tokens
JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production-use-long-random-string")
JWT_ALGORITHM = "HS256"
SESSION_TTL_HOURS = _parse_int(os.getenv("SESSION_TTL_HOURS", ""), 24)
GUEST_SESSION_TTL_HOURS = _parse_int(os.getenv("GUEST_SESSION_TTL_HOURS", ""), 2)
BCRYPT_ROUNDS = _parse_int(os.getenv("BCRYPT_ROUNDS", ""), 12)

# Cookies
COOKIE_SECURE = _parse_bool(os.getenv("COOKIE_SECURE", ""), default=APP_ENV == "production")
COOKIE_SAMESITE = os.getenv("COOKIE_SAMESITE", "lax").lower()  # lax or strict

# Access gate: what happens to paths that match no rule ("deny" or "allow")
ROUTE_DEFAULT_POLICY = os.getenv("ROUTE_DEFAULT_POLICY", "deny").lower()
# Check the logout deny-list on every gated request (costs one query per request)
ENFORCE_TOKEN_DENYLIST = _parse_bool(os.getenv("ENFORCE_TOKEN_DENYLIST", ""))

# One-time passwords
OTP_LENGTH = _parse_int(os.getenv("OTP_LENGTH", ""), 6)
OTP_TTL_MINUTES = _parse_int(os.getenv("OTP_TTL_MINUTES", ""), 10)
EXPOSE_OTP_IN_RESPONSE = _parse_bool(
    os.getenv("EXPOSE_OTP_IN_RESPONSE", ""), default=APP_ENV == "development"
)

# Email delivery (SMTP). Unset host = log-only delivery.
SMTP_HOST = os.getenv("SMTP_HOST", "")
SMTP_PORT = _parse_int(os.getenv("SMTP_PORT", ""), 587)
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
SMTP_FROM = os.getenv("SMTP_FROM", "") or SMTP_USER
SMTP_FROM_NAME = os.getenv("SMTP_FROM_NAME", "Member Portal Security")

# SMS delivery (HTTP gateway). Unset URL = log-only delivery.
SMS_GATEWAY_URL = os.getenv("SMS_GATEWAY_URL", "")
SMS_GATEWAY_TOKEN = os.getenv("SMS_GATEWAY_TOKEN", "")
SMS_SENDER_ID = os.getenv("SMS_SENDER_ID", "PORTAL")

# Superadmin bootstrap (first login creates the account)
INITIAL_SUPERADMIN_EMAIL = os.getenv("INITIAL_SUPERADMIN_EMAIL", "").strip().lower()
INITIAL_SUPERADMIN_PASSWORD = os.getenv("INITIAL_SUPERADMIN_PASSWORD", "")
