"""Metered field rep search router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_role
from routers.billing import ensure_user
from routers.rate_limit import rate_limit
from services.entitlements import EntitlementMemory
from services.field_rep_search import search_field_reps
from services.search_credits import quote_search_cost, spend_credits_for_search
from services.search_filters import (
    AVAILABILITY_OPTIONS,
    CERTIFICATION_OPTIONS,
    EXPERIENCE_OPTIONS,
    INSPECTION_TYPE_OPTIONS,
    PLATFORM_OPTIONS,
    FieldRepSearchFilters,
)
from services.search_sessions import (
    create_search_session,
    load_search_session,
    memory_from_session,
    reset_search_session,
    search_session_payload,
)

router = APIRouter()
logger = logging.getLogger(__name__)

vendor_only = require_role("vendor")


class FieldRepSearchRequest(FieldRepSearchFilters):
    session_id: Optional[str] = None


@router.get("/options")
async def search_options():
    return {
        "platforms": PLATFORM_OPTIONS,
        "inspection_types": INSPECTION_TYPE_OPTIONS,
        "years_experience": EXPERIENCE_OPTIONS,
        "availability_status": AVAILABILITY_OPTIONS,
        "certifications": CERTIFICATION_OPTIONS,
    }


@router.post("/sessions")
async def start_search_session(
    auth: AuthContext = Depends(vendor_only),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, auth)
    search_session = await create_search_session(auth.user_id, db)
    return search_session_payload(search_session)


@router.get("/sessions/{session_id}")
async def get_search_session(
    session_id: str,
    auth: AuthContext = Depends(vendor_only),
    db: AsyncSession = Depends(get_db),
):
    search_session = await load_search_session(auth.user_id, session_id, db)
    return search_session_payload(search_session)


@router.post("/sessions/{session_id}/reset")
async def reset_paid_filters(
    session_id: str,
    auth: AuthContext = Depends(vendor_only),
    db: AsyncSession = Depends(get_db),
):
    search_session = await reset_search_session(auth.user_id, session_id, db)
    return search_session_payload(search_session)


@router.post("/quote")
async def quote_field_rep_search(
    request: FieldRepSearchRequest,
    auth: AuthContext = Depends(vendor_only),
    db: AsyncSession = Depends(get_db),
):
    if request.session_id:
        search_session = await load_search_session(auth.user_id, request.session_id, db)
        memory = memory_from_session(search_session)
    else:
        memory = EntitlementMemory()
    quote = quote_search_cost(request, memory)
    quote["session_id"] = request.session_id
    return quote


@router.post("/field-reps")
async def search_field_reps_metered(
    request: FieldRepSearchRequest,
    _rate_limit: None = Depends(rate_limit("field_rep_search", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(vendor_only),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, auth)
    if request.session_id:
        search_session = await load_search_session(auth.user_id, request.session_id, db)
    else:
        search_session = await create_search_session(auth.user_id, db)
    session_id = search_session.id
    memory = memory_from_session(search_session)

    # Credit errors propagate as HTTP errors before the search runs.
    charge = await spend_credits_for_search(
        auth.user_id,
        request,
        memory,
        db,
        search_session=search_session,
    )

    result = await search_field_reps(request, db)
    result["session_id"] = session_id
    result["credits"] = charge.as_dict()
    return result
