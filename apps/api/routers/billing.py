"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import add_credits, get_credit_summary

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditTopUpRequest(BaseModel):
    user_id: Optional[str] = None
    credits: int = Field(ge=1)
    transaction_type: Literal["purchase", "bonus", "referral"] = "purchase"
    billing_reference: Optional[str] = None


async def ensure_user(db: AsyncSession, auth: AuthContext, user_id: Optional[str] = None) -> User:
    target_id = user_id or auth.user_id
    result = await db.execute(select(User).where(User.id == target_id))
    user = result.scalar_one_or_none()
    if user:
        return user

    if target_id == auth.user_id:
        role = auth.role
        email = auth.email or f"{target_id}@local.invalid"
    else:
        # users.email is unique; never reuse the granting admin's address.
        role = "vendor"
        email = f"{target_id}@local.invalid"
    user = User(id=target_id, email=email, role=role)
    db.add(user)
    await db.commit()
    return user


def _grant_target(auth: AuthContext, supplied_user_id: Optional[str]) -> str:
    if auth.role == "admin" and supplied_user_id:
        return supplied_user_id
    return ensure_user_scope(auth.user_id, supplied_user_id)


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await ensure_user(db, auth)
    return await get_credit_summary(scoped_user_id, db)


@router.post("/topup")
async def manual_topup(
    request: CreditTopUpRequest,
    _rate_limit: None = Depends(rate_limit("billing_topup", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if request.credits > int(settings.MAX_TOPUP_CREDITS):
        raise HTTPException(status_code=422, detail=f"credits must not exceed {settings.MAX_TOPUP_CREDITS}")
    if request.transaction_type != "purchase" and auth.role != "admin":
        raise HTTPException(status_code=403, detail="Only admins can grant bonus or referral credits.")
    if request.transaction_type == "purchase" and settings.BILLING_ENABLED and auth.role != "admin":
        raise HTTPException(status_code=503, detail="Manual top-up is disabled while billing is enabled.")

    target_user_id = _grant_target(auth, request.user_id)
    await ensure_user(db, auth, target_user_id)

    billing_reference = request.billing_reference or f"manual:{request.credits}"
    result = await add_credits(
        target_user_id,
        db,
        credits=request.credits,
        transaction_type=request.transaction_type,
        reference_type=request.transaction_type,
        reference_id=billing_reference,
        metadata={"granted_by": auth.user_id},
    )
    return {
        "ok": True,
        "user_id": target_user_id,
        "credits_added": result["credits_added"],
        "balance_after": result["balance_after"],
    }
