"""Server-side persistence of entitlement memory per metered search session."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable
import uuid

from fastapi import HTTPException
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.attributes import set_committed_value

from config import settings
from models.search_session import SearchSession
from services.entitlements import EntitlementMemory
from services.search_filters import FilterDimension

logger = logging.getLogger(__name__)

_DIMENSION_COLUMNS = {
    FilterDimension.PLATFORMS: "platforms_paid",
    FilterDimension.ABC_REQUIRED: "abc_required_paid",
    FilterDimension.HUD_KEY_REQUIRED: "hud_key_required_paid",
    FilterDimension.INSPECTION_TYPES: "inspection_types_paid",
}


def _session_expiry(now: datetime) -> datetime:
    ttl_minutes = max(int(settings.SEARCH_SESSION_TTL_MINUTES), 1)
    return now + timedelta(minutes=ttl_minutes)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def memory_from_session(search_session: SearchSession) -> EntitlementMemory:
    return EntitlementMemory(
        {
            dimension: bool(getattr(search_session, column))
            for dimension, column in _DIMENSION_COLUMNS.items()
        }
    )


def stage_entitlements(search_session: SearchSession, memory: EntitlementMemory) -> None:
    """Copy memory flags onto the row; the caller owns the commit."""
    for dimension, column in _DIMENSION_COLUMNS.items():
        setattr(search_session, column, memory.is_paid(dimension))


async def claim_entitlements(
    search_session: SearchSession,
    charged: Iterable[FilterDimension],
    db: AsyncSession,
) -> bool:
    """Flip the charged flags to paid only while all of them are still unpaid.

    Runs inside the caller's transaction. Returns False when a concurrent
    submission on the same session already paid one of the dimensions.
    """
    columns = [_DIMENSION_COLUMNS[dimension] for dimension in charged]
    if not columns:
        return True
    result = await db.execute(
        update(SearchSession)
        .where(
            SearchSession.id == search_session.id,
            *[getattr(SearchSession, column).is_(False) for column in columns],
        )
        .values({column: True for column in columns})
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def mark_entitlements_committed(search_session: SearchSession, charged: Iterable[FilterDimension]) -> None:
    """Reflect committed flags on the loaded row without dirtying it."""
    for dimension in charged:
        set_committed_value(search_session, _DIMENSION_COLUMNS[dimension], True)


def search_session_payload(search_session: SearchSession) -> Dict[str, Any]:
    return {
        "id": search_session.id,
        "paid_filters": memory_from_session(search_session).as_dict(),
        "reset_count": int(search_session.reset_count or 0),
        "expires_at": _as_utc(search_session.expires_at).isoformat(),
    }


async def create_search_session(user_id: str, db: AsyncSession) -> SearchSession:
    search_session = SearchSession(
        id=str(uuid.uuid4()),
        user_id=user_id,
        platforms_paid=False,
        abc_required_paid=False,
        hud_key_required_paid=False,
        inspection_types_paid=False,
        reset_count=0,
        expires_at=_session_expiry(datetime.now(timezone.utc)),
    )
    db.add(search_session)
    await db.commit()
    logger.info("search_session_created user=%s session=%s", user_id, search_session.id)
    return search_session


async def load_search_session(user_id: str, session_id: str, db: AsyncSession) -> SearchSession:
    result = await db.execute(
        select(SearchSession).where(
            SearchSession.id == session_id,
            SearchSession.user_id == user_id,
        )
    )
    search_session = result.scalar_one_or_none()
    if not search_session:
        raise HTTPException(status_code=404, detail="Search session not found")
    if _as_utc(search_session.expires_at) <= datetime.now(timezone.utc):
        raise HTTPException(status_code=410, detail="Search session expired. Start a new search session.")
    return search_session


async def reset_search_session(user_id: str, session_id: str, db: AsyncSession) -> SearchSession:
    """Clear every paid flag; later searches are charged afresh."""
    search_session = await load_search_session(user_id, session_id, db)
    memory = memory_from_session(search_session)
    memory.reset()
    stage_entitlements(search_session, memory)
    search_session.reset_count = int(search_session.reset_count or 0) + 1
    search_session.expires_at = _session_expiry(datetime.now(timezone.utc))
    await db.commit()
    logger.info("search_session_reset user=%s session=%s", user_id, session_id)
    return search_session
