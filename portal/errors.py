"""Error taxonomy for authentication and authorization failures.

Every error is recoverable by the caller (log in again, request a new code)
and maps to one HTTP status. The API layer renders them as
``{"error": message, **extra}``.
"""
from __future__ import annotations

from typing import Any, Optional


class PortalError(Exception):
    status_code = 400
    message = "Request failed"

    def __init__(self, message: Optional[str] = None, *, status_code: Optional[int] = None, **extra: Any):
        self.message = message or self.message
        if status_code is not None:
            self.status_code = status_code
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, **self.extra}


class InvalidPrincipal(PortalError, ValueError):
    """Token issuance was asked for a principal without id, role or status."""

    status_code = 500
    message = "Principal is missing required identity fields"


class TokenError(PortalError):
    status_code = 401
    message = "Invalid or expired token"


class MalformedToken(TokenError):
    pass


class ExpiredToken(TokenError):
    pass


class MissingCredentials(PortalError):
    status_code = 401
    message = "Authentication required"


class InsufficientRole(PortalError):
    status_code = 403
    message = "Insufficient permissions"


class AccountNotApproved(PortalError):
    status_code = 403
    message = "Account pending approval"


class OTPExpiredOrInvalid(PortalError):
    status_code = 400
    message = "Invalid or expired OTP"


class DeliveryFailed(PortalError):
    status_code = 502
    message = "Failed to send OTP"
