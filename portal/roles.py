"""Roles, account statuses and the role hierarchy used for access checks."""
from __future__ import annotations

MEMBER = "member"
ADMIN = "admin"
SENIOR_ADMIN = "senior_admin"
SUPERADMIN = "superadmin"
GUEST = "guest"  # OTP-only session for an unregistered contact; below every protected level

ADMIN_ROLES = (ADMIN, SENIOR_ADMIN, SUPERADMIN)

PENDING = "pending"
APPROVED = "approved"
ACTIVE = "active"
REJECTED = "rejected"
DISABLED = "disabled"

STATUSES = (PENDING, APPROVED, ACTIVE, REJECTED, DISABLED)
GOOD_STANDING = frozenset({APPROVED, ACTIVE})

# senior_admin is an admin with a different title, not a separate tier.
ROLE_LEVELS = {
    MEMBER: 1,
    ADMIN: 2,
    SENIOR_ADMIN: 2,
    SUPERADMIN: 3,
}


def role_level(role: str | None) -> int:
    """Hierarchy level of a role. Unknown roles (and guest) rank 0."""
    if not role:
        return 0
    return ROLE_LEVELS.get(role, 0)


def has_required_role(user_role: str | None, required_role: str) -> bool:
    """True if user_role sits at or above required_role in the hierarchy."""
    return role_level(user_role) >= role_level(required_role)


def is_admin_role(role: str | None) -> bool:
    return role in ADMIN_ROLES
