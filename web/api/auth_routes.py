"""Auth API routes: member/admin/superadmin login, OTP send/verify, admin registration, logout."""
from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import config
from portal.errors import AccountNotApproved, InsufficientRole, MissingCredentials, OTPExpiredOrInvalid
from portal.models import AdminAccount, Organization
from portal.models.base import async_session_factory
from portal.roles import (
    ADMIN,
    DISABLED,
    GOOD_STANDING,
    GUEST,
    MEMBER,
    PENDING,
    REJECTED,
    SENIOR_ADMIN,
    SUPERADMIN,
)
from portal.services.activity import record_activity
from portal.services.credentials import ADMIN_KIND, MEMBER_KIND, CredentialStore, Principal
from portal.services.delivery import CHANNELS, OTPSender
from portal.services.otp import issue_challenge, verify_challenge
from portal.services.revocation import revoke_token
from web.api.utils import client_ip, is_valid_email, mask_contact
from web.auth import (
    SESSION_GUEST,
    clear_session_cookies,
    create_access_token,
    find_any_token,
    hash_password,
    require_principal,
    set_session_cookie,
    token_expiry,
    verify_password,
    verify_token,
)

logger = logging.getLogger("portal.auth")

router = APIRouter(prefix="/api/auth", tags=["auth"])

MIN_PASSWORD_LENGTH = 8


def get_otp_sender() -> OTPSender:
    """OTP delivery backend. Overridden in tests."""
    return OTPSender.from_config()


def _check_channel(channel: Optional[str]) -> str:
    if channel not in CHANNELS:
        raise HTTPException(400, "Invalid OTP channel. Must be 'phone' or 'email'")
    return channel


def _otp_payload(contact: str, channel: str, code: str) -> dict:
    payload = {
        "masked_contact": mask_contact(contact, channel),
        "channel": channel,
        "expires_in_minutes": config.OTP_TTL_MINUTES,
    }
    if config.EXPOSE_OTP_IN_RESPONSE:
        payload["otp"] = code
    return payload


async def _audit(session, request: Request, activity_type: str, claims: dict) -> None:
    await record_activity(
        session,
        activity_type,
        claims,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


# --- Member login ---


class MemberLoginRequest(BaseModel):
    membership_id: Optional[str] = None
    password: Optional[str] = None
    otp_channel: Optional[str] = None  # email (default) or phone


@router.post("/member/login")
async def member_login(
    body: MemberLoginRequest,
    request: Request,
    response: Response,
    sender: OTPSender = Depends(get_otp_sender),
):
    """Password login. Pending members get a limited session; approved members get an OTP challenge."""
    if not body.membership_id or not body.password:
        raise MissingCredentials("Membership ID and password are required", status_code=400)
    async with async_session_factory() as session:
        member = await CredentialStore(session).lookup(MEMBER_KIND, body.membership_id)
        if not member or not verify_password(body.password, member.password_hash):
            raise HTTPException(401, "Invalid membership ID or password")

        if member.status == REJECTED:
            raise AccountNotApproved(
                "Membership Application Rejected",
                detail="Your membership application was rejected. Contact your organization for assistance.",
                status=REJECTED,
            )
        if member.status == DISABLED:
            raise AccountNotApproved(
                "Account Disabled",
                detail="Your membership has been disabled. Contact your organization for assistance.",
                status=DISABLED,
            )

        if member.status == PENDING:
            claims = member.claims()
            token = create_access_token(claims)
            set_session_cookie(response, token, MEMBER)
            await _audit(session, request, "login", claims)
            return {
                "success": True,
                "access_token": token,
                "token_type": "bearer",
                "message": "Login successful - limited access until admin approval",
                "member": member.public_dict(),
                "access_level": "limited",
                "notice": {
                    "title": "Pending Admin Approval",
                    "message": "Your application is under review. You have limited access until approved.",
                    "restrictions": [
                        "Cannot access full member dashboard",
                        "Cannot download membership certificate",
                        "Cannot access member directory",
                    ],
                },
                "redirect_url": "/member/pending-dashboard",
            }

        if member.status in GOOD_STANDING:
            channel = body.otp_channel or ("email" if member.email else "phone")
            _check_channel(channel)
            contact = member.contact_for(channel)
            if not contact:
                raise HTTPException(400, f"No {channel} on file for this member")
            code = await issue_challenge(session, contact, channel, sender)
            return {
                "success": True,
                "otp_required": True,
                "membership_id": member.login,
                "message": f"Password verified. Enter the code sent to your {channel}.",
                **_otp_payload(contact, channel, code),
            }

    raise AccountNotApproved("Account status unknown. Please contact support.", status=member.status)


class VerifyMembershipRequest(BaseModel):
    membership_id: Optional[str] = None


@router.post("/verify-membership")
async def verify_membership(body: VerifyMembershipRequest):
    """First login step: check a membership id and report how the member can continue. Issues no token."""
    membership_id = (body.membership_id or "").strip().upper()
    if not membership_id:
        raise HTTPException(400, "Please enter a valid membership ID")
    if len(membership_id) < 5:
        raise HTTPException(400, "Membership ID seems too short. Please check and try again.")
    async with async_session_factory() as session:
        member = await CredentialStore(session).lookup(MEMBER_KIND, membership_id)
    if not member or member.login.upper() != membership_id:
        raise HTTPException(404, "Invalid membership ID. Please check your ID and try again.")

    if member.status == REJECTED:
        raise AccountNotApproved(
            "Your membership application was not approved. Please contact the organization for more information.",
            status=REJECTED,
        )
    if member.status == PENDING:
        return {
            "success": True,
            "user_type": "pending_member",
            "member": member.public_dict(),
            "access_level": "limited",
            "message": "Your membership application is under review. You have limited access.",
            "next_step": "password",
            "redirect_url": "/member/pending-dashboard",
        }
    if member.status not in GOOD_STANDING:
        raise AccountNotApproved("This membership is currently inactive. Please contact support.", status=member.status)
    return {
        "success": True,
        "user_type": "member",
        "member": member.public_dict(),
        "access_level": "full",
        "message": "Membership verified. Sign in with your password and a one-time code.",
        "next_step": "password_otp",
        "otp_channels": {
            channel: mask_contact(member.contact_for(channel), channel)
            for channel in CHANNELS
            if member.contact_for(channel)
        },
        "redirect_url": "/member/dashboard",
    }


# --- OTP ---


class SendOTPRequest(BaseModel):
    channel: Optional[str] = None  # phone or email
    contact: Optional[str] = None
    membership_id: Optional[str] = None


class VerifyOTPRequest(BaseModel):
    channel: Optional[str] = None
    code: Optional[str] = None
    contact: Optional[str] = None
    membership_id: Optional[str] = None


async def _resolve_contact(
    store: CredentialStore, channel: str, contact: Optional[str], membership_id: Optional[str]
) -> tuple[Optional[Principal], str]:
    """Principal (if registered) and the contact address the code goes to."""
    if membership_id:
        member = await store.lookup(MEMBER_KIND, membership_id)
        if not member:
            raise HTTPException(404, "Invalid membership ID")
        value = member.contact_for(channel)
        if not value:
            raise HTTPException(400, f"No {channel} on file for this member")
        return member, value
    if contact and contact.strip():
        member = await store.find_member_by_contact(channel, contact)
        return member, member.contact_for(channel) if member else contact.strip()
    raise HTTPException(400, "Either contact or membership_id must be provided")


@router.post("/send-otp")
async def send_otp(body: SendOTPRequest, sender: OTPSender = Depends(get_otp_sender)):
    """Send a one-time code to a member (by membership id or contact) or to any contact address."""
    channel = _check_channel(body.channel)
    async with async_session_factory() as session:
        member, contact = await _resolve_contact(CredentialStore(session), channel, body.contact, body.membership_id)
        code = await issue_challenge(session, contact, channel, sender)
    return {
        "success": True,
        "message": f"OTP sent to {channel}",
        "user_found": member is not None,
        "user_type": "member" if member else "guest",
        **_otp_payload(contact, channel, code),
    }


@router.post("/verify-otp")
async def verify_otp(body: VerifyOTPRequest, request: Request, response: Response):
    """Consume a code. Registered members in good standing get a full session, unknown contacts a guest session."""
    channel = _check_channel(body.channel)
    if not body.code:
        raise HTTPException(400, "OTP code is required")
    async with async_session_factory() as session:
        member, contact = await _resolve_contact(CredentialStore(session), channel, body.contact, body.membership_id)
        if member and member.status not in GOOD_STANDING:
            raise AccountNotApproved(
                "Account pending approval" if member.status == PENDING else "Account not active",
                status=member.status,
            )
        if not await verify_challenge(session, contact, body.code, channel):
            raise OTPExpiredOrInvalid()

        if member:
            claims = member.claims()
            token = create_access_token(claims)
            set_session_cookie(response, token, MEMBER)
            await _audit(session, request, "login", claims)
            return {
                "success": True,
                "user_type": "member",
                "access_token": token,
                "token_type": "bearer",
                "member": member.public_dict(),
                "access_level": "full",
                "message": "Login successful! Welcome to your member dashboard.",
                "redirect_url": "/member/dashboard",
            }

    claims = {
        "id": f"guest:{uuid.uuid4().hex}",
        "role": GUEST,
        "status": "verified",
        "contact": contact,
        "channel": channel,
    }
    token = create_access_token(claims, session_kind=SESSION_GUEST)
    set_session_cookie(response, token, GUEST, session_kind=SESSION_GUEST)
    return {
        "success": True,
        "user_type": "guest",
        "verified": True,
        "access_token": token,
        "token_type": "bearer",
        "contact": contact,
        "channel": channel,
        "message": "Contact verified.",
        "redirect_url": "/register",
    }


# --- Admin ---


class AdminLoginRequest(BaseModel):
    username: Optional[str] = None  # username or email
    password: Optional[str] = None


@router.post("/admin/login")
async def admin_login(body: AdminLoginRequest, request: Request, response: Response):
    """Authenticate an organization admin. Only approved/active accounts get a session."""
    if not body.username or not body.password:
        raise MissingCredentials("Username and password are required", status_code=400)
    async with async_session_factory() as session:
        admin = await CredentialStore(session).lookup(ADMIN_KIND, body.username)
        if not admin or not verify_password(body.password, admin.password_hash):
            raise HTTPException(401, "Invalid credentials")
        if admin.role == SUPERADMIN:
            raise InsufficientRole("Superadmins must use the superadmin login")
        if admin.role not in (ADMIN, SENIOR_ADMIN):
            raise HTTPException(401, "Invalid credentials")

        if admin.status == PENDING:
            raise AccountNotApproved(
                "Account Pending Approval",
                detail="Your admin account is awaiting superadmin approval. You cannot login until approved.",
                status=PENDING,
            )
        if admin.status == REJECTED:
            raise AccountNotApproved(
                "Account Rejected",
                detail="Your admin application was rejected. You cannot access the admin dashboard.",
                status=REJECTED,
            )
        if admin.status == DISABLED:
            raise AccountNotApproved(
                "Account Disabled",
                detail="Your admin account has been disabled. Please contact support.",
                status=DISABLED,
            )
        if admin.status not in GOOD_STANDING:
            raise AccountNotApproved("Account status not recognized", status=admin.status)

        claims = admin.claims()
        token = create_access_token(claims)
        set_session_cookie(response, token, ADMIN)
        await _audit(session, request, "login", claims)
    return {
        "success": True,
        "access_token": token,
        "token_type": "bearer",
        "admin": admin.public_dict(),
        "message": "Login successful - Welcome to your admin dashboard!",
        "redirect_url": "/admin/dashboard",
    }


class AdminRegisterRequest(BaseModel):
    step: str  # send-otp | complete-registration
    channel: str = "email"
    email: Optional[str] = None
    phone: Optional[str] = None
    otp: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    organization_id: Optional[int] = None
    experience: Optional[str] = None
    level: Optional[str] = None
    appointer: Optional[str] = None


@router.post("/admin/register")
async def admin_register(body: AdminRegisterRequest, sender: OTPSender = Depends(get_otp_sender)):
    """Two-step admin registration: verify a contact by OTP, then file a pending admin request."""
    channel = _check_channel(body.channel)
    contact = (body.email if channel == "email" else body.phone) or ""
    contact = contact.strip()
    if not contact:
        raise HTTPException(400, f"{'Email' if channel == 'email' else 'Phone'} is required for {channel} verification")

    if body.step == "send-otp":
        async with async_session_factory() as session:
            code = await issue_challenge(session, contact, channel, sender)
        return {"success": True, "message": f"OTP sent to your {channel}", **_otp_payload(contact, channel, code)}

    if body.step != "complete-registration":
        raise HTTPException(400, "Invalid step. Must be 'send-otp' or 'complete-registration'")

    missing = [
        name
        for name in ("username", "password", "email", "first_name", "last_name", "otp")
        if not (getattr(body, name) or "").strip()
    ]
    if missing:
        raise HTTPException(400, f"Missing required fields: {', '.join(missing)}")
    if not is_valid_email(body.email):
        raise HTTPException(400, "Invalid email format")
    if len(body.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(400, f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    username = body.username.strip()
    email = body.email.strip().lower()
    async with async_session_factory() as session:
        existing = await session.execute(
            select(AdminAccount.username, AdminAccount.email).where(
                or_(AdminAccount.username == username, func.lower(AdminAccount.email) == email)
            )
        )
        row = existing.first()
        if row:
            if row.username == username:
                raise HTTPException(409, "Username is already taken")
            raise HTTPException(409, "Email address is already registered")
        if body.organization_id is not None and not await session.get(Organization, body.organization_id):
            raise HTTPException(400, "Invalid organization selected")

        if not await verify_challenge(session, contact, body.otp, channel):
            raise OTPExpiredOrInvalid()

        admin = AdminAccount(
            username=username,
            email=email,
            phone=(body.phone or "").strip() or None,
            first_name=body.first_name.strip(),
            last_name=body.last_name.strip(),
            password_hash=hash_password(body.password),
            role=ADMIN,
            status=PENDING,
            organization_id=body.organization_id,
            experience=body.experience,
            level=body.level,
            appointer=body.appointer,
            verified_contact=channel,
        )
        session.add(admin)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise HTTPException(409, "Username or email is already registered")
        await session.refresh(admin)
    logger.info("Admin registration request %s filed for %s", admin.id, username)
    return {
        "success": True,
        "message": "Registration submitted. A superadmin must approve your account before you can log in.",
        "admin_request": {
            "id": admin.id,
            "username": admin.username,
            "email": admin.email,
            "status": admin.status,
        },
    }


# --- Superadmin ---


class SuperadminLoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


async def _bootstrap_superadmin(session, email: str, password: str) -> Optional[Principal]:
    """Create the first superadmin from INITIAL_SUPERADMIN_* when those credentials are presented."""
    if not (
        config.INITIAL_SUPERADMIN_EMAIL
        and config.INITIAL_SUPERADMIN_PASSWORD
        and email == config.INITIAL_SUPERADMIN_EMAIL
        and password == config.INITIAL_SUPERADMIN_PASSWORD
    ):
        return None
    session.add(
        AdminAccount(
            username=email,
            email=email,
            first_name="Super",
            last_name="Admin",
            password_hash=hash_password(password),
            role=SUPERADMIN,
            status="active",
        )
    )
    await session.commit()
    logger.info("Bootstrapped superadmin account %s", email)
    return await CredentialStore(session).lookup(ADMIN_KIND, email)


@router.post("/superadmin/login")
async def superadmin_login(body: SuperadminLoginRequest, request: Request, response: Response):
    """Authenticate a superadmin."""
    if not body.email or not body.password:
        raise MissingCredentials("Email and password are required", status_code=400)
    email = body.email.strip().lower()
    async with async_session_factory() as session:
        user = await CredentialStore(session).lookup(ADMIN_KIND, email)
        if not user:
            user = await _bootstrap_superadmin(session, email, body.password)
        if not user or not verify_password(body.password, user.password_hash):
            raise HTTPException(401, "Invalid email or password")
        if user.role != SUPERADMIN:
            raise InsufficientRole("Access denied: insufficient permissions")
        if user.status not in GOOD_STANDING:
            raise AccountNotApproved("Account is not active. Please contact administrator.", status=user.status)

        claims = user.claims()
        token = create_access_token(claims)
        set_session_cookie(response, token, SUPERADMIN)
        await _audit(session, request, "login", claims)
    return {
        "success": True,
        "access_token": token,
        "token_type": "bearer",
        "user": user.public_dict(),
        "message": "Login successful",
        "redirect_url": "/superadmin/dashboard",
    }


# --- Session ---


@router.post("/logout")
async def logout(request: Request, response: Response):
    """Record the token on the deny-list and clear every auth cookie. Always succeeds."""
    token = find_any_token(request.cookies, request.headers.get("authorization"))
    claims = verify_token(token) if token else None
    if claims:
        try:
            async with async_session_factory() as session:
                await revoke_token(session, token, token_expiry(claims))
                await _audit(session, request, "logout", claims)
        except SQLAlchemyError:
            logger.exception("Failed to record logout for %s", claims.get("id"))
    clear_session_cookies(response)
    return {"success": True, "message": "Logged out successfully"}


@router.get("/logout")
async def logout_status():
    return {"success": True, "message": "User is logged out", "redirect_url": "/member/login"}


@router.get("/me")
async def get_me(principal: dict = Depends(require_principal)):
    """Claims of the current session."""
    return {"principal": principal}
