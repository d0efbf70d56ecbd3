"""Member API routes: membership application, status, profile, dashboard, password change."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from portal.errors import AccountNotApproved, InsufficientRole
from portal.models import Member, Organization
from portal.models.base import async_session_factory
from portal.roles import GOOD_STANDING, MEMBER, PENDING
from web.api.utils import generate_membership_id, generate_temporary_password, is_valid_email
from web.auth import hash_password, require_member_principal, verify_password

logger = logging.getLogger("portal.members")

router = APIRouter(prefix="/api/member", tags=["member"])
membership_router = APIRouter(prefix="/api/membership", tags=["member"])

MIN_PASSWORD_LENGTH = 8
MEMBERSHIP_ID_ATTEMPTS = 5


class MemberApplication(BaseModel):
    organization_id: Optional[int] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    designation: Optional[str] = None
    experience: Optional[str] = None
    achievements: Optional[str] = None
    payment_method: Optional[str] = None
    proposer_id: Optional[str] = None
    seconder_id: Optional[str] = None
    password: Optional[str] = None  # generated when omitted


def member_dict(member: Member) -> dict:
    return {
        "id": member.id,
        "membership_id": member.membership_id,
        "first_name": member.first_name,
        "last_name": member.last_name,
        "name": member.full_name,
        "email": member.email,
        "phone": member.phone,
        "address": member.address,
        "designation": member.designation,
        "experience": member.experience,
        "achievements": member.achievements,
        "payment_method": member.payment_method,
        "proposer_id": member.proposer_id,
        "seconder_id": member.seconder_id,
        "status": member.status,
        "organization_id": member.organization_id,
        "organization_name": member.organization.name if member.organization else None,
        "created_at": member.created_at.isoformat() if member.created_at else None,
        "reviewed_at": member.reviewed_at.isoformat() if member.reviewed_at else None,
    }


async def _unused_membership_id(session, org_name: str, first_name: str, last_name: str) -> str:
    """A generated membership id not yet issued. Ids carry 6 random digits, so collisions are retried."""
    for _ in range(MEMBERSHIP_ID_ATTEMPTS):
        candidate = generate_membership_id(org_name, first_name, last_name)
        taken = await session.scalar(select(Member.id).where(Member.membership_id == candidate))
        if taken is None:
            return candidate
        logger.warning("Membership id %s already issued, regenerating", candidate)
    raise HTTPException(503, "Could not allocate a membership ID. Please try again.")


async def submit_application(body: MemberApplication) -> dict:
    """Validate and store a membership application. New members start pending."""
    required = {
        "organization": body.organization_id,
        "first name": (body.first_name or "").strip(),
        "last name": (body.last_name or "").strip(),
        "email": (body.email or "").strip(),
        "phone": (body.phone or "").strip(),
        "address": (body.address or "").strip(),
    }
    missing = [name for name, value in required.items() if not value]
    if missing:
        raise HTTPException(400, f"Missing required fields: {', '.join(missing)}")
    email = body.email.strip().lower()
    phone = body.phone.strip()
    if not is_valid_email(email):
        raise HTTPException(400, "Invalid email format")
    if body.password is not None and len(body.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(400, f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    async with async_session_factory() as session:
        existing = await session.execute(
            select(Member.email, Member.phone).where(or_(func.lower(Member.email) == email, Member.phone == phone))
        )
        row = existing.first()
        if row:
            if row.email.lower() == email:
                raise HTTPException(409, "Email address is already registered")
            raise HTTPException(409, "Phone number is already registered")

        org = await session.get(Organization, body.organization_id)
        if not org or not org.is_active:
            raise HTTPException(400, "Invalid organization selected")

        password = body.password or generate_temporary_password()
        first_name = body.first_name.strip()
        last_name = body.last_name.strip()
        member = Member(
            membership_id=await _unused_membership_id(session, org.name, first_name, last_name),
            organization_id=org.id,
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=phone,
            address=body.address.strip(),
            designation=body.designation,
            experience=body.experience,
            achievements=body.achievements,
            payment_method=body.payment_method,
            proposer_id=body.proposer_id,
            seconder_id=body.seconder_id,
            password_hash=hash_password(password),
            status=PENDING,
        )
        session.add(member)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise HTTPException(409, "Application conflicts with an existing member. Please try again.")
        logger.info("Membership application %s filed with %s", member.membership_id, org.name)
        return {
            "success": True,
            "message": "Application submitted successfully. You can log in with limited access until an admin approves it.",
            "member": {
                "id": member.id,
                "membership_id": member.membership_id,
                "name": member.full_name,
                "email": member.email,
                "status": member.status,
                "organization_id": org.id,
                "organization_name": org.name,
            },
            "credentials": {
                "membership_id": member.membership_id,
                "password": password,
            },
        }


@router.post("/register")
async def register_member(body: MemberApplication):
    """Submit a membership application (public)."""
    return await submit_application(body)


@membership_router.post("/apply")
async def apply_for_membership(body: MemberApplication):
    """Submit a membership application (public)."""
    return await submit_application(body)


async def _load_member(session, principal: dict) -> Member:
    """The member record behind a member session. Admin sessions have none."""
    if principal.get("role") != MEMBER:
        raise InsufficientRole("Member session required")
    result = await session.execute(
        select(Member).options(selectinload(Member.organization)).where(Member.id == principal["id"])
    )
    member = result.scalar_one_or_none()
    if not member:
        raise HTTPException(404, "Member not found")
    return member


def _require_good_standing(member: Member) -> None:
    # Tokens outlive status changes; the stored status is authoritative.
    if member.status not in GOOD_STANDING:
        raise AccountNotApproved("Account not active", status=member.status)


@router.get("/status")
async def member_status(principal: dict = Depends(require_member_principal)):
    """Current application status. Available to pending members."""
    async with async_session_factory() as session:
        member = await _load_member(session, principal)
    payload = {
        "membership_id": member.membership_id,
        "status": member.status,
        "access_level": "full" if member.status in GOOD_STANDING else "limited",
        "submitted_at": member.created_at.isoformat() if member.created_at else None,
        "reviewed_at": member.reviewed_at.isoformat() if member.reviewed_at else None,
    }
    if member.status == PENDING:
        payload["notice"] = "Your application is under review by your organization's admins."
    return payload


@router.get("/profile")
async def member_profile(principal: dict = Depends(require_member_principal)):
    async with async_session_factory() as session:
        member = await _load_member(session, principal)
    _require_good_standing(member)
    return {"member": member_dict(member)}


@router.get("/dashboard")
async def member_dashboard(principal: dict = Depends(require_member_principal)):
    """Profile plus organization details for the member dashboard."""
    async with async_session_factory() as session:
        member = await _load_member(session, principal)
        _require_good_standing(member)
        org = member.organization
        colleagues = await session.scalar(
            select(func.count(Member.id)).where(
                Member.organization_id == member.organization_id,
                Member.status.in_(GOOD_STANDING),
            )
        )
    return {
        "member": member_dict(member),
        "organization": {
            "id": org.id,
            "name": org.name,
            "description": org.description,
            "contact_email": org.contact_email,
            "contact_phone": org.contact_phone,
            "member_count": colleagues or 0,
        },
        "access_level": "full",
    }


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


@router.post("/change-password")
async def change_password(body: ChangePasswordRequest, principal: dict = Depends(require_member_principal)):
    if len(body.new_password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(400, f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    async with async_session_factory() as session:
        member = await _load_member(session, principal)
        if not verify_password(body.current_password, member.password_hash):
            raise HTTPException(400, "Current password is incorrect")
        if verify_password(body.new_password, member.password_hash):
            raise HTTPException(400, "New password must differ from the current password")
        member.password_hash = hash_password(body.new_password)
        await session.commit()
    logger.info("Member %s changed password", member.membership_id)
    return {"success": True, "message": "Password updated"}
