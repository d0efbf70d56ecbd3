"""OTP ledger: issue, deliver and consume one-time codes.

At most one active challenge exists per (contact, channel): issuing a new
code deletes the unused ones. A challenge is stored only after the sender
confirms delivery, so a failed send never leaves a valid-looking code
behind. Consumption is a conditional UPDATE on ``is_used = false`` that
must hit exactly one row, which keeps two concurrent verifications of the
same code from both succeeding.
"""
from __future__ import annotations

import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

import config
from portal.errors import DeliveryFailed
from portal.models import OTPChallenge
from portal.models.base import utcnow
from portal.services.delivery import CHANNELS, OTPSender, mask_contact

logger = logging.getLogger("portal.otp")


def generate_code(length: Optional[int] = None) -> str:
    """Fixed-width numeric code."""
    length = length or config.OTP_LENGTH
    return str(secrets.randbelow(10 ** length)).zfill(length)


def _check_channel(channel: str) -> None:
    if channel not in CHANNELS:
        raise ValueError(f"Invalid OTP channel {channel!r}. Must be 'phone' or 'email'")


async def issue_challenge(
    session: AsyncSession,
    contact: str,
    channel: str,
    sender: OTPSender,
    *,
    now: Optional[datetime] = None,
) -> str:
    """Send a fresh code to contact and record it. Raises DeliveryFailed if the send fails."""
    _check_channel(channel)
    contact = contact.strip()
    if not contact:
        raise ValueError("contact is required")
    code = generate_code()
    try:
        delivered = await sender.send(contact, channel, code)
    except Exception as e:
        logger.exception("OTP delivery via %s to %s raised", channel, mask_contact(contact, channel))
        raise DeliveryFailed(f"Failed to send OTP via {channel}") from e
    if not delivered:
        logger.warning("OTP delivery via %s to %s failed", channel, mask_contact(contact, channel))
        raise DeliveryFailed(f"Failed to send OTP via {channel}")

    now = now or utcnow()
    await session.execute(
        delete(OTPChallenge).where(
            OTPChallenge.contact == contact,
            OTPChallenge.channel == channel,
            OTPChallenge.is_used.is_(False),
        )
    )
    session.add(
        OTPChallenge(
            contact=contact,
            channel=channel,
            code=code,
            created_at=now,
            expires_at=now + timedelta(minutes=config.OTP_TTL_MINUTES),
        )
    )
    await session.commit()
    logger.info("OTP issued via %s to %s", channel, mask_contact(contact, channel))
    return code


async def verify_challenge(
    session: AsyncSession,
    contact: str,
    code: str,
    channel: str,
    *,
    now: Optional[datetime] = None,
) -> bool:
    """Consume the active challenge for (contact, channel) if code matches. True at most once per code."""
    if channel not in CHANNELS or not contact or not code:
        return False
    contact = contact.strip()
    now = now or utcnow()
    result = await session.execute(
        select(OTPChallenge)
        .where(
            OTPChallenge.contact == contact,
            OTPChallenge.channel == channel,
            OTPChallenge.is_used.is_(False),
            OTPChallenge.expires_at > now,
        )
        .order_by(OTPChallenge.created_at.desc(), OTPChallenge.id.desc())
        .limit(1)
    )
    challenge = result.scalar_one_or_none()
    if challenge is None or not hmac.compare_digest(challenge.code, str(code).strip()):
        logger.info("OTP verification failed for %s via %s", mask_contact(contact, channel), channel)
        return False
    consumed = await session.execute(
        update(OTPChallenge)
        .where(OTPChallenge.id == challenge.id, OTPChallenge.is_used.is_(False))
        .values(is_used=True, used_at=now)
        .execution_options(synchronize_session=False)
    )
    if consumed.rowcount != 1:
        await session.rollback()
        logger.warning("OTP for %s was consumed concurrently", mask_contact(contact, channel))
        return False
    await session.commit()
    return True


async def purge_expired_challenges(session: AsyncSession, *, now: Optional[datetime] = None) -> int:
    """Delete used and expired challenges. Storage hygiene only."""
    now = now or utcnow()
    result = await session.execute(
        delete(OTPChallenge).where(or_(OTPChallenge.is_used.is_(True), OTPChallenge.expires_at <= now))
    )
    await session.commit()
    return result.rowcount or 0
