"""Login/logout audit records."""
from __future__ import annotations

import json
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from portal.models import ActivityLog

logger = logging.getLogger("portal.activity")

AUDIT_FIELDS = ("email", "membership_id", "username", "organization_id", "member_id", "admin_id")


async def record_activity(
    session: AsyncSession,
    activity_type: str,
    claims: dict,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> None:
    """Append an activity row. Audit is best-effort; a failure here never fails the request."""
    details = {k: claims.get(k) for k in AUDIT_FIELDS if claims.get(k)}
    session.add(
        ActivityLog(
            user_id=str(claims.get("id")) if claims.get("id") is not None else None,
            user_role=claims.get("role"),
            activity_type=activity_type,
            details=json.dumps(details),
            ip_address=ip_address,
            user_agent=user_agent,
        )
    )
    try:
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.exception("Failed to record %s activity", activity_type)
