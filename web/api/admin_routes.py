"""Admin API routes: review membership applications for the admin's organization."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

from portal.models import AdminAccount, Member
from portal.models.base import async_session_factory, utcnow
from portal.roles import APPROVED, GOOD_STANDING, PENDING, REJECTED, STATUSES, SUPERADMIN, is_admin_role
from portal.services.activity import record_activity
from web.api.member_routes import member_dict
from web.api.utils import client_ip
from web.auth import require_admin_principal

logger = logging.getLogger("portal.admin")

router = APIRouter(prefix="/api/admin", tags=["admin"])


def scoped(query, principal: dict):
    """Limit a Member query to the admin's organization. Superadmins see every organization."""
    if principal.get("role") == SUPERADMIN:
        return query
    return query.where(Member.organization_id == principal.get("organization_id"))


@router.get("/member-applications")
async def list_member_applications(
    status: Optional[str] = PENDING,
    principal: dict = Depends(require_admin_principal),
):
    """Membership applications with the given status (pending by default)."""
    if status not in STATUSES and status != "all":
        raise HTTPException(400, "Invalid status filter")
    query = select(Member).options(selectinload(Member.organization)).order_by(Member.created_at.desc())
    if status and status != "all":
        query = query.where(Member.status == status)
    async with async_session_factory() as session:
        result = await session.execute(scoped(query, principal))
        members = result.scalars().all()
    return {"applications": [member_dict(m) for m in members], "count": len(members)}


@router.get("/members")
async def list_members(principal: dict = Depends(require_admin_principal)):
    """Members in good standing."""
    query = (
        select(Member)
        .options(selectinload(Member.organization))
        .where(Member.status.in_(GOOD_STANDING))
        .order_by(Member.last_name, Member.first_name)
    )
    async with async_session_factory() as session:
        result = await session.execute(scoped(query, principal))
        members = result.scalars().all()
    return {"members": [member_dict(m) for m in members], "count": len(members)}


@router.get("/profile")
async def admin_profile(principal: dict = Depends(require_admin_principal)):
    async with async_session_factory() as session:
        result = await session.execute(
            select(AdminAccount)
            .options(selectinload(AdminAccount.organization))
            .where(AdminAccount.id == principal["id"])
        )
        admin = result.scalar_one_or_none()
    if not admin or not is_admin_role(admin.role):
        raise HTTPException(404, "Admin not found")
    return {
        "admin": {
            "id": admin.id,
            "username": admin.username,
            "email": admin.email,
            "phone": admin.phone,
            "first_name": admin.first_name,
            "last_name": admin.last_name,
            "role": admin.role,
            "status": admin.status,
            "organization_id": admin.organization_id,
            "organization_name": admin.organization.name if admin.organization else None,
            "created_at": admin.created_at.isoformat() if admin.created_at else None,
        }
    }


async def _review(member_id: int, new_status: str, principal: dict, request: Request) -> dict:
    """Move a pending application to new_status. Only pending applications in scope change."""
    stmt = (
        update(Member)
        .where(Member.id == member_id, Member.status == PENDING)
        .values(status=new_status, reviewed_at=utcnow(), reviewed_by=principal["id"])
    )
    if principal.get("role") != SUPERADMIN:
        stmt = stmt.where(Member.organization_id == principal.get("organization_id"))
    async with async_session_factory() as session:
        result = await session.execute(stmt)
        if result.rowcount != 1:
            await session.rollback()
            raise HTTPException(404, "Application not found or already processed")
        await session.commit()
        logger.info("Admin %s set member %s to %s", principal.get("id"), member_id, new_status)
        await record_activity(
            session,
            f"member_{new_status}",
            {**principal, "member_id": member_id},
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        member = (
            await session.execute(
                select(Member).options(selectinload(Member.organization)).where(Member.id == member_id)
            )
        ).scalar_one()
    return {"success": True, "message": f"Application {new_status}", "member": member_dict(member)}


@router.post("/member-approve/{member_id}")
async def approve_member(member_id: int, request: Request, principal: dict = Depends(require_admin_principal)):
    return await _review(member_id, APPROVED, principal, request)


@router.post("/member-reject/{member_id}")
async def reject_member(member_id: int, request: Request, principal: dict = Depends(require_admin_principal)):
    return await _review(member_id, REJECTED, principal, request)
