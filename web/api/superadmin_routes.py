"""Superadmin API routes: admin account requests and lifecycle."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import select, update
from sqlalchemy.orm import selectinload

from portal.models import AdminAccount
from portal.models.base import async_session_factory, utcnow
from portal.roles import ACTIVE, APPROVED, DISABLED, GOOD_STANDING, PENDING, REJECTED, STATUSES, SUPERADMIN
from portal.services.activity import record_activity
from web.api.utils import client_ip
from web.auth import require_superadmin_principal

logger = logging.getLogger("portal.superadmin")

router = APIRouter(prefix="/api/superadmin", tags=["superadmin"])


def admin_dict(admin: AdminAccount) -> dict:
    return {
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
        "experience": admin.experience,
        "level": admin.level,
        "appointer": admin.appointer,
        "verified_contact": admin.verified_contact,
        "created_at": admin.created_at.isoformat() if admin.created_at else None,
        "reviewed_at": admin.reviewed_at.isoformat() if admin.reviewed_at else None,
    }


def _admins_query():
    return (
        select(AdminAccount)
        .options(selectinload(AdminAccount.organization))
        .where(AdminAccount.role != SUPERADMIN)
        .order_by(AdminAccount.created_at.desc())
    )


@router.get("/admin-requests")
async def list_admin_requests(
    status: Optional[str] = PENDING,
    principal: dict = Depends(require_superadmin_principal),
):
    """Admin registration requests with the given status (pending by default, "all" for every one)."""
    if status not in STATUSES and status != "all":
        raise HTTPException(400, "Invalid status filter")
    query = _admins_query()
    if status and status != "all":
        query = query.where(AdminAccount.status == status)
    async with async_session_factory() as session:
        admins = (await session.execute(query)).scalars().all()
    return {"requests": [admin_dict(a) for a in admins], "count": len(admins)}


@router.get("/admins")
async def list_admins(principal: dict = Depends(require_superadmin_principal)):
    """Admins who can currently log in."""
    async with async_session_factory() as session:
        admins = (await session.execute(_admins_query().where(AdminAccount.status.in_(GOOD_STANDING)))).scalars().all()
    return {"admins": [admin_dict(a) for a in admins], "count": len(admins)}


@router.get("/profile")
async def superadmin_profile(principal: dict = Depends(require_superadmin_principal)):
    async with async_session_factory() as session:
        admin = await session.get(AdminAccount, principal["id"], options=[selectinload(AdminAccount.organization)])
    if not admin or admin.role != SUPERADMIN:
        raise HTTPException(404, "Superadmin not found")
    return {"user": admin_dict(admin)}


async def _transition(
    admin_id: int,
    from_statuses: tuple[str, ...],
    new_status: str,
    principal: dict,
    request: Request,
    error: str,
) -> dict:
    """Conditionally move an admin account between statuses. Superadmin accounts never change here."""
    stmt = (
        update(AdminAccount)
        .where(
            AdminAccount.id == admin_id,
            AdminAccount.role != SUPERADMIN,
            AdminAccount.status.in_(from_statuses),
        )
        .values(status=new_status, reviewed_at=utcnow(), reviewed_by=principal["id"])
    )
    async with async_session_factory() as session:
        result = await session.execute(stmt)
        if result.rowcount != 1:
            await session.rollback()
            raise HTTPException(404, error)
        await session.commit()
        logger.info("Superadmin %s set admin %s to %s", principal.get("id"), admin_id, new_status)
        await record_activity(
            session,
            f"admin_{new_status}",
            {**principal, "admin_id": admin_id},
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
        admin = await session.get(AdminAccount, admin_id, options=[selectinload(AdminAccount.organization)])
    return {"success": True, "message": f"Admin {new_status}", "admin": admin_dict(admin)}


@router.post("/admin-approve/{admin_id}")
async def approve_admin(admin_id: int, request: Request, principal: dict = Depends(require_superadmin_principal)):
    return await _transition(admin_id, (PENDING,), APPROVED, principal, request, "Admin request not found or already processed")


@router.post("/admin-reject/{admin_id}")
async def reject_admin(admin_id: int, request: Request, principal: dict = Depends(require_superadmin_principal)):
    return await _transition(admin_id, (PENDING,), REJECTED, principal, request, "Admin request not found or already processed")


@router.post("/admin-disable/{admin_id}")
async def disable_admin(admin_id: int, request: Request, principal: dict = Depends(require_superadmin_principal)):
    return await _transition(admin_id, (APPROVED, ACTIVE), DISABLED, principal, request, "Active admin not found")


@router.post("/admin-enable/{admin_id}")
async def enable_admin(admin_id: int, request: Request, principal: dict = Depends(require_superadmin_principal)):
    return await _transition(admin_id, (DISABLED,), APPROVED, principal, request, "Disabled admin not found")
