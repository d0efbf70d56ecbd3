"""Organization API routes."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select

from portal.models import Member, Organization
from portal.models.base import async_session_factory
from portal.roles import GOOD_STANDING, SUPERADMIN
from web.auth import require_admin_principal

router = APIRouter(prefix="/api/organizations", tags=["organizations"])


def organization_dict(org: Organization) -> dict:
    return {
        "id": org.id,
        "name": org.name,
        "description": org.description,
        "address": org.address,
        "contact_email": org.contact_email,
        "contact_phone": org.contact_phone,
    }


@router.get("")
async def list_organizations():
    """Active organizations, for the membership and admin registration forms (public)."""
    async with async_session_factory() as session:
        result = await session.execute(
            select(Organization).where(Organization.is_active.is_(True)).order_by(Organization.name)
        )
        orgs = result.scalars().all()
    return {"organizations": [organization_dict(o) for o in orgs]}


@router.get("/{organization_id}/members")
async def list_organization_members(organization_id: int, principal: dict = Depends(require_admin_principal)):
    """Members in good standing. Admins only see their own organization."""
    if principal.get("role") != SUPERADMIN and principal.get("organization_id") != organization_id:
        raise HTTPException(404, "Organization not found")
    async with async_session_factory() as session:
        org = await session.get(Organization, organization_id)
        if not org:
            raise HTTPException(404, "Organization not found")
        result = await session.execute(
            select(Member)
            .where(Member.organization_id == organization_id, Member.status.in_(GOOD_STANDING))
            .order_by(Member.last_name, Member.first_name)
        )
        members = result.scalars().all()
    return {
        "organization": organization_dict(org),
        "members": [
            {
                "id": m.id,
                "membership_id": m.membership_id,
                "name": m.full_name,
                "designation": m.designation,
                "status": m.status,
            }
            for m in members
        ],
    }
