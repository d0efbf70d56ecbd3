"""Database models."""
from portal.models.base import Base, init_db
from portal.models.organization import Organization
from portal.models.member import Member
from portal.models.admin import AdminAccount
from portal.models.otp_challenge import OTPChallenge
from portal.models.revoked_token import RevokedToken  # noqa: F401 - for metadata
from portal.models.activity import ActivityLog  # noqa: F401 - for metadata

__all__ = [
    "Base",
    "Organization",
    "Member",
    "AdminAccount",
    "OTPChallenge",
    "RevokedToken",
    "ActivityLog",
    "init_db",
]
