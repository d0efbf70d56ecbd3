"""Credential Store: the single lookup contract for members and admin accounts."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from portal.models import AdminAccount, Member
from portal.roles import MEMBER

MEMBER_KIND = "member"
ADMIN_KIND = "admin"  # admin, senior_admin and superadmin accounts


@dataclass
class Principal:
    """A member or admin account as the auth layer sees it."""

    id: int
    kind: str
    role: str
    status: str
    login: str  # membership_id for members, username for admins
    email: Optional[str]
    phone: Optional[str]
    password_hash: str
    first_name: str = ""
    last_name: str = ""
    organization_id: Optional[int] = None
    organization_name: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def contact_for(self, channel: str) -> Optional[str]:
        return self.phone if channel == "phone" else self.email

    def claims(self) -> dict:
        """Token claims for this principal. Never includes the password hash."""
        claims = {
            "id": self.id,
            "role": self.role,
            "status": self.status,
            "email": self.email or "",
            "name": self.name,
            "organization_id": self.organization_id,
            "organization_name": self.organization_name,
        }
        if self.kind == MEMBER_KIND:
            claims["membership_id"] = self.login
        else:
            claims["username"] = self.login
        return claims

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "role": self.role,
            "status": self.status,
            "email": self.email,
            "phone": self.phone,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "organization_id": self.organization_id,
            "organization_name": self.organization_name,
            ("membership_id" if self.kind == MEMBER_KIND else "username"): self.login,
        }


def principal_from_member(member: Member) -> Principal:
    return Principal(
        id=member.id,
        kind=MEMBER_KIND,
        role=MEMBER,
        status=member.status,
        login=member.membership_id,
        email=member.email,
        phone=member.phone,
        password_hash=member.password_hash,
        first_name=member.first_name,
        last_name=member.last_name,
        organization_id=member.organization_id,
        organization_name=member.organization.name if member.organization else None,
    )


def principal_from_admin(admin: AdminAccount) -> Principal:
    return Principal(
        id=admin.id,
        kind=ADMIN_KIND,
        role=admin.role,
        status=admin.status,
        login=admin.username,
        email=admin.email,
        phone=admin.phone,
        password_hash=admin.password_hash,
        first_name=admin.first_name,
        last_name=admin.last_name,
        organization_id=admin.organization_id,
        organization_name=admin.organization.name if admin.organization else None,
    )


class CredentialStore:
    """Looks principals up by identifier. Wraps one session; the caller owns its lifetime."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_member(self, identifier: str) -> Optional[Principal]:
        """Member by membership id, email or phone."""
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        result = await self.session.execute(
            select(Member)
            .options(selectinload(Member.organization))
            .where(
                or_(
                    Member.membership_id == identifier,
                    func.lower(Member.email) == identifier.lower(),
                    Member.phone == identifier,
                )
            )
            .limit(1)
        )
        member = result.scalar_one_or_none()
        return principal_from_member(member) if member else None

    async def find_member_by_contact(self, channel: str, contact: str) -> Optional[Principal]:
        contact = (contact or "").strip()
        if not contact:
            return None
        if channel == "phone":
            condition = Member.phone == contact
        else:
            condition = func.lower(Member.email) == contact.lower()
        result = await self.session.execute(
            select(Member).options(selectinload(Member.organization)).where(condition).limit(1)
        )
        member = result.scalar_one_or_none()
        return principal_from_member(member) if member else None

    async def find_admin(self, identifier: str) -> Optional[Principal]:
        """Admin or superadmin account by username or email."""
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        result = await self.session.execute(
            select(AdminAccount)
            .options(selectinload(AdminAccount.organization))
            .where(
                or_(
                    AdminAccount.username == identifier,
                    func.lower(AdminAccount.email) == identifier.lower(),
                )
            )
            .limit(1)
        )
        admin = result.scalar_one_or_none()
        return principal_from_admin(admin) if admin else None

    async def lookup(self, kind: str, identifier: str) -> Optional[Principal]:
        if kind == MEMBER_KIND:
            return await self.find_member(identifier)
        if kind == ADMIN_KIND:
            return await self.find_admin(identifier)
        raise ValueError(f"Unknown principal kind: {kind}")
