"""Shared API utilities."""
from __future__ import annotations

import re
import secrets
import string
from datetime import datetime, timezone
from typing import Optional

from fastapi import Request

from portal.services.delivery import mask_contact  # noqa: F401 - re-exported for routers

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_RE.match(email or ""))


def generate_membership_id(org_name: str, first_name: str, last_name: str, now: Optional[datetime] = None) -> str:
    """ORG + YY + name code + 6 random digits, e.g. ACM26JODO123456."""
    org_code = re.sub(r"[^A-Z]", "X", (org_name[:3] or "ORG").upper().ljust(3, "X"))
    name_code = re.sub(r"[^A-Z]", "X", (first_name[:2] + last_name[:2]).upper())
    year = (now or datetime.now(timezone.utc)).strftime("%y")
    digits = str(secrets.randbelow(10**6)).zfill(6)
    return f"{org_code}{year}{name_code}{digits}"


def generate_temporary_password(length: int = 10) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
