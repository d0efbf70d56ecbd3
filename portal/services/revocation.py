"""Logout deny-list keyed by token digest."""
from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.models import RevokedToken
from portal.models.base import utcnow


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


async def revoke_token(session: AsyncSession, token: str, expires_at: datetime) -> None:
    """Record token as logged out until its own expiry. Idempotent."""
    digest = token_digest(token)
    existing = await session.execute(select(RevokedToken.id).where(RevokedToken.token_hash == digest))
    if existing.scalar_one_or_none() is None:
        session.add(RevokedToken(token_hash=digest, expires_at=expires_at))
        await session.commit()


async def is_token_revoked(session: AsyncSession, token: str, *, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    result = await session.execute(
        select(RevokedToken.id).where(
            RevokedToken.token_hash == token_digest(token),
            RevokedToken.expires_at > now,
        )
    )
    return result.scalar_one_or_none() is not None


async def purge_expired_revocations(session: AsyncSession, *, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = await session.execute(delete(RevokedToken).where(RevokedToken.expires_at <= now))
    await session.commit()
    return result.rowcount or 0
