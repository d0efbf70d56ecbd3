"""Access gate: classify each request path, check the session token, enforce role and status.

The decision itself (``evaluate``) is a pure function of path, cookies,
Authorization header and the current time; ``AccessGateMiddleware`` applies
it to live requests. Public rules are consulted first so login, registration
and OTP endpoints can never be locked behind themselves.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.base import BaseHTTPMiddleware

import config
from portal.errors import AccountNotApproved, ExpiredToken, InsufficientRole, MalformedToken, MissingCredentials
from portal.models.base import async_session_factory
from portal.roles import ADMIN, GOOD_STANDING, MEMBER, PENDING, SUPERADMIN, has_required_role
from portal.services.revocation import is_token_revoked
from web.auth import GENERIC_COOKIES, ROLE_COOKIES, bearer_token, clear_session_cookies, decode_token

logger = logging.getLogger("portal.gate")

ALLOW = "allow"
REDIRECT = "redirect"
DENY = "deny"

LOGIN_PAGES = {
    MEMBER: "/member/login",
    ADMIN: "/admin/login",
    SUPERADMIN: "/superadmin/login",
}
UNAUTHORIZED_PAGE = "/unauthorized"
STATUS_PAGES = {
    ADMIN: "/admin/pending-approval",
    MEMBER: "/member/inactive",
}
STATUS_ERRORS = {
    ADMIN: "Account pending approval",
    MEMBER: "Account not active",
}


@dataclass(frozen=True)
class RouteRule:
    """Path pattern. Prefix rules match the path itself and anything below it."""

    pattern: str
    role: Optional[str] = None
    statuses: Optional[frozenset] = None  # None = no status requirement
    exact: bool = False

    def matches(self, path: str) -> bool:
        if self.exact or self.pattern == "/":
            return path == self.pattern
        return path == self.pattern or path.startswith(self.pattern.rstrip("/") + "/")


def _public(*patterns: str, exact: bool = False) -> tuple[RouteRule, ...]:
    return tuple(RouteRule(p, exact=exact) for p in patterns)


PUBLIC_PAGES = _public(
    "/",
    "/register",
    "/login",
    "/member/login",
    "/member-login",
    "/admin/login",
    "/admin/register",
    "/superadmin/login",
    "/forgot-password",
    "/reset-password",
    "/application-success",
    "/unauthorized",
    "/member/inactive",
    "/admin/pending-approval",
    "/docs",
    "/openapi.json",
    "/assets",
    "/favicon.ico",
)

PUBLIC_API = _public(
    "/api/health",
    "/api/auth/send-otp",
    "/api/auth/verify-otp",
    "/api/auth/verify-membership",
    "/api/auth/member/login",
    "/api/auth/admin/login",
    "/api/auth/admin/register",
    "/api/auth/superadmin/login",
    "/api/auth/logout",
    "/api/membership/apply",
) + _public("/api/organizations", exact=True)

# Public endpoints that live under a protected prefix.
ALWAYS_PUBLIC = _public(
    "/api/member/register",
)

_MEMBER_ANY = frozenset({PENDING}) | GOOD_STANDING

# First match wins: keep specific rules above the prefixes that contain them.
PROTECTED_PAGES = (
    RouteRule("/member/pending-dashboard", MEMBER, _MEMBER_ANY),
    RouteRule("/member/dashboard", MEMBER, GOOD_STANDING),
    RouteRule("/member/profile", MEMBER, GOOD_STANDING),
    RouteRule("/admin/dashboard", ADMIN, GOOD_STANDING),
    RouteRule("/admin/profile", ADMIN, GOOD_STANDING),
    RouteRule("/admin/applications", ADMIN, GOOD_STANDING),
    RouteRule("/admin/members", ADMIN, GOOD_STANDING),
    RouteRule("/superadmin/dashboard", SUPERADMIN),
    RouteRule("/superadmin/profile", SUPERADMIN),
)

PROTECTED_API = (
    RouteRule("/api/auth/me", MEMBER),
    RouteRule("/api/member/status", MEMBER, _MEMBER_ANY),
    RouteRule("/api/member", MEMBER, GOOD_STANDING),
    RouteRule("/api/admin", ADMIN, GOOD_STANDING),
    RouteRule("/api/organizations", ADMIN, GOOD_STANDING),
    RouteRule("/api/superadmin", SUPERADMIN),
)


def is_api_path(path: str) -> bool:
    return path == "/api" or path.startswith("/api/")


def is_public(path: str) -> bool:
    for rules in (ALWAYS_PUBLIC, PUBLIC_API, PUBLIC_PAGES):
        if any(rule.matches(path) for rule in rules):
            return True
    return False


def protected_rule(path: str) -> Optional[RouteRule]:
    rules = PROTECTED_API if is_api_path(path) else PROTECTED_PAGES
    for rule in rules:
        if rule.matches(path):
            return rule
    return None


def cookie_order(required_role: str) -> list[str]:
    """Cookie names to try: the required role's own cookie, higher roles' cookies, then generic ones."""
    names = [ROLE_COOKIES[required_role]] if required_role in ROLE_COOKIES else []
    for role, name in ROLE_COOKIES.items():
        if name not in names and has_required_role(role, required_role):
            names.append(name)
    names.extend(GENERIC_COOKIES)
    return names


def extract_token(required_role: str, cookies: Mapping[str, str], authorization: Optional[str]) -> Optional[str]:
    for name in cookie_order(required_role):
        value = cookies.get(name)
        if value:
            return value
    return bearer_token(authorization)


@dataclass
class GateDecision:
    outcome: str
    status_code: int = 200
    error: Optional[str] = None
    location: Optional[str] = None
    claims: Optional[dict] = None
    token: Optional[str] = None
    required_role: Optional[str] = None
    clear_cookies: bool = False

    @property
    def allowed(self) -> bool:
        return self.outcome == ALLOW


def _reject(path: str, status_code: int, error: str, page: str, **kwargs) -> GateDecision:
    if is_api_path(path):
        return GateDecision(DENY, status_code=status_code, error=error, **kwargs)
    return GateDecision(REDIRECT, status_code=307, error=error, location=page, **kwargs)


def evaluate(
    path: str,
    cookies: Mapping[str, str],
    authorization: Optional[str] = None,
    *,
    now: Optional[datetime] = None,
) -> GateDecision:
    """Decide the fate of one request. Never raises."""
    if is_public(path):
        return GateDecision(ALLOW)

    rule = protected_rule(path)
    if rule is None:
        if config.ROUTE_DEFAULT_POLICY == "allow":
            return GateDecision(ALLOW)
        return _reject(path, 403, "Access denied", UNAUTHORIZED_PAGE)

    required = rule.role
    login_page = LOGIN_PAGES.get(required, "/")
    token = extract_token(required, cookies, authorization)
    if not token:
        return _reject(path, MissingCredentials.status_code, MissingCredentials.message, login_page, required_role=required)

    try:
        claims = decode_token(token, now=now)
    except (MalformedToken, ExpiredToken) as e:
        return _reject(path, e.status_code, e.message, login_page, required_role=required, clear_cookies=True)

    if not has_required_role(claims.get("role"), required):
        return _reject(path, InsufficientRole.status_code, InsufficientRole.message, UNAUTHORIZED_PAGE, required_role=required)

    if rule.statuses is not None and claims.get("status") not in rule.statuses:
        error = STATUS_ERRORS.get(required, AccountNotApproved.message)
        page = STATUS_PAGES.get(required, UNAUTHORIZED_PAGE)
        return _reject(path, AccountNotApproved.status_code, error, page, required_role=required)

    return GateDecision(
        ALLOW,
        claims=claims if is_api_path(path) else None,
        token=token,
        required_role=required,
    )


def principal_context(claims: dict) -> dict:
    """The slice of claims handed to API handlers."""
    context = {k: v for k, v in claims.items() if k not in ("iat", "exp")}
    context.setdefault("email", "")
    context.setdefault("organization_id", None)
    return context


class AccessGateMiddleware(BaseHTTPMiddleware):
    """Applies ``evaluate`` to every request and injects the principal for API routes."""

    async def dispatch(self, request, call_next):
        path = request.url.path
        if request.method == "OPTIONS":
            return await call_next(request)
        decision = evaluate(path, request.cookies, request.headers.get("authorization"))

        if decision.allowed and decision.token and config.ENFORCE_TOKEN_DENYLIST:
            try:
                async with async_session_factory() as session:
                    revoked = await is_token_revoked(session, decision.token)
            except SQLAlchemyError:
                logger.exception("Deny-list check failed for %s %s", request.method, path)
                revoked = None
            if revoked is None:
                decision = _reject(path, 503, "Session check unavailable. Please try again.", UNAUTHORIZED_PAGE)
            elif revoked:
                decision = _reject(
                    path,
                    401,
                    "Session has been logged out",
                    LOGIN_PAGES.get(decision.required_role, "/"),
                    clear_cookies=True,
                )

        if not decision.allowed:
            logger.info("Gate %s %s -> %s (%s)", request.method, path, decision.status_code, decision.error)
            if decision.outcome == REDIRECT:
                response = RedirectResponse(decision.location, status_code=decision.status_code)
            else:
                response = JSONResponse({"error": decision.error}, status_code=decision.status_code)
            if decision.clear_cookies:
                clear_session_cookies(response)
            return response

        if decision.claims:
            request.state.principal = principal_context(decision.claims)
        return await call_next(request)
