"""Field rep directory search executed after credit metering clears."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.field_rep_profile import FieldRepProfile
from services.search_filters import EXPERIENCE_OPTIONS, FieldRepSearchFilters

logger = logging.getLogger(__name__)


def _as_list(value: Any) -> List[str]:
    if not value:
        return []
    return [str(item) for item in value]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _experience_rank(value: Optional[str]) -> int:
    try:
        return EXPERIENCE_OPTIONS.index(value or "")
    except ValueError:
        return -1


def _covers_zip(profile: FieldRepProfile, zip_code: str) -> bool:
    return profile.zip_code == zip_code or zip_code in _as_list(profile.coverage_zip_codes)


def _matches(profile: FieldRepProfile, filters: FieldRepSearchFilters, active_cutoff: Optional[datetime]) -> bool:
    if not _covers_zip(profile, filters.zip_code):
        return False
    if filters.platforms and not set(filters.platforms) & set(_as_list(profile.platforms)):
        return False
    if filters.inspection_types and not set(filters.inspection_types) & set(_as_list(profile.inspection_types)):
        return False
    if filters.abc_required is True and not profile.abc_certified:
        return False
    if filters.hud_key_required is True:
        if not profile.hud_key:
            return False
        code = filters.hud_key_code.strip()
        if code and code not in _as_list(profile.hud_key_codes):
            return False
    if filters.years_experience and profile.years_experience != filters.years_experience:
        return False
    if filters.availability_status and profile.availability_status != filters.availability_status:
        return False
    if filters.certifications and not set(filters.certifications) <= set(_as_list(profile.certifications)):
        return False
    if active_cutoff is not None:
        last_active = _as_utc(profile.last_active_at)
        if last_active is None or last_active < active_cutoff:
            return False
    return True


def _sort_profiles(profiles: List[FieldRepProfile], sort_by: str, zip_code: str) -> List[FieldRepProfile]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    if sort_by == "trust_score":
        return sorted(profiles, key=lambda p: int(p.trust_score or 0), reverse=True)
    if sort_by == "community_score":
        return sorted(profiles, key=lambda p: int(p.community_score or 0), reverse=True)
    if sort_by == "last_active":
        return sorted(profiles, key=lambda p: _as_utc(p.last_active_at) or epoch, reverse=True)
    if sort_by == "years_experience":
        return sorted(profiles, key=lambda p: _experience_rank(p.years_experience), reverse=True)
    # Distance: reps based in the searched zip first, then coverage-only reps.
    return sorted(
        profiles,
        key=lambda p: (p.zip_code != zip_code, -int(p.trust_score or 0)),
    )


def _profile_payload(profile: FieldRepProfile) -> Dict[str, Any]:
    last_active = _as_utc(profile.last_active_at)
    return {
        "id": profile.id,
        "user_id": profile.user_id,
        "display_name": profile.display_name,
        "zip_code": profile.zip_code,
        "platforms": _as_list(profile.platforms),
        "inspection_types": _as_list(profile.inspection_types),
        "abc_certified": bool(profile.abc_certified),
        "hud_key": bool(profile.hud_key),
        "years_experience": profile.years_experience,
        "availability_status": profile.availability_status,
        "certifications": _as_list(profile.certifications),
        "trust_score": int(profile.trust_score or 0),
        "community_score": int(profile.community_score or 0),
        "last_active_at": last_active.isoformat() if last_active else None,
    }


async def search_field_reps(filters: FieldRepSearchFilters, db: AsyncSession) -> Dict[str, Any]:
    result = await db.execute(select(FieldRepProfile))
    profiles = result.scalars().all()

    active_cutoff = None
    if filters.only_active_users:
        window_days = max(int(settings.ACTIVE_USER_WINDOW_DAYS), 1)
        active_cutoff = datetime.now(timezone.utc) - timedelta(days=window_days)

    matches = [profile for profile in profiles if _matches(profile, filters, active_cutoff)]
    ordered = _sort_profiles(matches, filters.sort_by, filters.zip_code)
    limit = max(int(settings.SEARCH_RESULT_LIMIT), 1)

    logger.info(
        "field_rep_search_run zip=%s premium=%s total=%s",
        filters.zip_code,
        ",".join(sorted(dimension.value for dimension in filters.premium_dimensions())) or "none",
        len(ordered),
    )
    return {
        "zip_code": filters.zip_code,
        "total_count": len(ordered),
        "has_more": len(ordered) > limit,
        "items": [_profile_payload(profile) for profile in ordered[:limit]],
    }
