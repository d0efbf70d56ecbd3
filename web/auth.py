"""Authentication for web API: password hashing, session tokens, cookies, role dependencies."""
from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt
from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

import config
from portal.errors import ExpiredToken, InsufficientRole, InvalidPrincipal, MalformedToken, MissingCredentials
from portal.roles import ADMIN, MEMBER, SUPERADMIN, has_required_role

logger = logging.getLogger("portal.auth")

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)
http_bearer = HTTPBearer(auto_error=False)

SESSION_STANDARD = "standard"
SESSION_GUEST = "guest"

REQUIRED_CLAIMS = ("id", "role", "status")
# Registered JWT claims are set by the issuer or validated by PyJWT; callers may not supply them.
RESERVED_CLAIMS = ("exp", "iat", "nbf", "aud", "iss", "sub", "jti")

# Role-specific session cookies, then the generic names every client may carry.
ROLE_COOKIES = {
    MEMBER: "member-token",
    ADMIN: "admin-token",
    SUPERADMIN: "superadmin-token",
}
GENERIC_COOKIES = ("auth-token", "auth_token")
LEGACY_COOKIES = ("superadmin_token",)
ALL_AUTH_COOKIES = tuple(ROLE_COOKIES.values()) + GENERIC_COOKIES + LEGACY_COOKIES


def _prepare_password(password: str) -> str:
    """Bcrypt has a 72-byte limit. Pre-hash longer passwords with SHA256."""
    encoded = password.encode("utf-8")
    if len(encoded) > 72:
        return hashlib.sha256(encoded).hexdigest()
    return password


def hash_password(password: str) -> str:
    return pwd_context.hash(_prepare_password(password))


def verify_password(plain: str, hashed: str) -> bool:
    if not plain or not hashed:
        return False
    try:
        return pwd_context.verify(_prepare_password(plain), hashed)
    except ValueError:
        # Corrupt or foreign hash in the credential store
        logger.warning("Unrecognized password hash format")
        return False


def session_ttl(session_kind: str = SESSION_STANDARD) -> timedelta:
    if session_kind == SESSION_GUEST:
        return timedelta(hours=config.GUEST_SESSION_TTL_HOURS)
    return timedelta(hours=config.SESSION_TTL_HOURS)


def create_access_token(
    claims: Mapping[str, Any],
    *,
    session_kind: str = SESSION_STANDARD,
    now: Optional[datetime] = None,
) -> str:
    """Mint a signed session token embedding claims plus iat/exp.

    claims must carry id, role and status; any other fields (email,
    organization, display name) ride along unchanged.
    """
    missing = [k for k in REQUIRED_CLAIMS if claims.get(k) in (None, "")]
    if missing:
        raise InvalidPrincipal(f"Cannot issue token: missing {', '.join(missing)}")
    reserved = [k for k in RESERVED_CLAIMS if k in claims]
    if reserved:
        raise InvalidPrincipal(f"Cannot issue token: reserved claim {', '.join(reserved)}")
    now = now or datetime.now(timezone.utc)
    payload = dict(claims)
    payload["iat"] = int(now.timestamp())
    payload["exp"] = int((now + session_ttl(session_kind)).timestamp())
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str, *, now: Optional[datetime] = None) -> dict:
    """Decode and validate a token. Raises MalformedToken or ExpiredToken."""
    if not token or not isinstance(token, str):
        raise MalformedToken()
    try:
        payload = jwt.decode(
            token,
            config.JWT_SECRET,
            algorithms=[config.JWT_ALGORITHM],
            options={"verify_exp": False, "verify_iat": False, "require": ["exp", "iat"]},
        )
    except jwt.InvalidTokenError as e:
        raise MalformedToken() from e
    if not isinstance(payload.get("exp"), (int, float)) or any(
        payload.get(k) in (None, "") for k in REQUIRED_CLAIMS
    ):
        raise MalformedToken()
    now = now or datetime.now(timezone.utc)
    if now.timestamp() > payload["exp"]:
        raise ExpiredToken()
    return payload


def verify_token(token: Optional[str], *, now: Optional[datetime] = None) -> Optional[dict]:
    """Claims if the token is well-formed and unexpired, else None. Never raises."""
    try:
        return decode_token(token, now=now)
    except (MalformedToken, ExpiredToken):
        return None


def token_expiry(claims: Mapping[str, Any]) -> datetime:
    return datetime.fromtimestamp(claims["exp"], tz=timezone.utc)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization[:7].lower() == "bearer ":
        token = authorization[7:].strip()
        return token or None
    return None


def find_any_token(cookies: Mapping[str, str], authorization: Optional[str]) -> Optional[str]:
    """First token found in any known cookie, then the Authorization header."""
    for name in ALL_AUTH_COOKIES:
        if cookies.get(name):
            return cookies[name]
    return bearer_token(authorization)


def set_session_cookie(
    response: Response,
    token: str,
    role: str,
    *,
    session_kind: str = SESSION_STANDARD,
) -> None:
    """Store token in the role's cookie (guests get the generic cookie)."""
    name = ROLE_COOKIES.get(role, GENERIC_COOKIES[0])
    response.set_cookie(
        name,
        token,
        max_age=int(session_ttl(session_kind).total_seconds()),
        path="/",
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite=config.COOKIE_SAMESITE,
    )


def clear_session_cookies(response: Response) -> None:
    """Expire every auth cookie the portal has ever set."""
    for name in ALL_AUTH_COOKIES:
        response.delete_cookie(
            name,
            path="/",
            httponly=True,
            secure=config.COOKIE_SECURE,
            samesite=config.COOKIE_SAMESITE,
        )


async def get_current_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> Optional[dict]:
    """Claims injected by the access gate, or decoded from cookie/Bearer for ungated routes."""
    claims = getattr(request.state, "principal", None)
    if claims:
        return claims
    authorization = f"Bearer {credentials.credentials}" if credentials and credentials.credentials else None
    return verify_token(find_any_token(request.cookies, authorization))


async def require_principal(principal: Optional[dict] = Depends(get_current_principal)) -> dict:
    """Require an authenticated session. Raises 401 if none."""
    if not principal:
        raise MissingCredentials()
    return principal


def require_role(principal: dict, role: str) -> dict:
    """Require role or higher. Raises 403 if insufficient."""
    if not has_required_role(principal.get("role"), role):
        raise InsufficientRole()
    return principal


async def require_member_principal(principal: dict = Depends(require_principal)) -> dict:
    """Dependency: require a member (or higher) session."""
    return require_role(principal, MEMBER)


async def require_admin_principal(principal: dict = Depends(require_principal)) -> dict:
    """Dependency: require an admin (or higher) session."""
    return require_role(principal, ADMIN)


async def require_superadmin_principal(principal: dict = Depends(require_principal)) -> dict:
    """Dependency: require a superadmin session."""
    return require_role(principal, SUPERADMIN)
