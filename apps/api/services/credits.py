"""Credit balance and ledger accounting helpers."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
import uuid

from fastapi import HTTPException
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import CreditAccount
from models.credit_transaction import CreditTransaction

logger = logging.getLogger(__name__)

GRANT_TRANSACTION_TYPES = {"purchase", "bonus", "referral"}


async def get_credit_balance(user_id: str, db: AsyncSession) -> Optional[int]:
    """Return the user's current balance, or None when no account exists."""
    result = await db.execute(
        select(CreditAccount.current_balance).where(CreditAccount.user_id == user_id)
    )
    balance = result.scalar_one_or_none()
    if balance is None:
        return None
    return int(balance)


async def ensure_credit_account(user_id: str, db: AsyncSession) -> CreditAccount:
    result = await db.execute(select(CreditAccount).where(CreditAccount.user_id == user_id))
    account = result.scalar_one_or_none()
    if account:
        return account

    account = CreditAccount(
        id=str(uuid.uuid4()),
        user_id=user_id,
        current_balance=0,
        earned_credits=0,
        paid_credits=0,
    )
    db.add(account)
    await db.flush()
    return account


async def spend_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    reference_type: str,
    reference_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> bool:
    """Atomically debit ``amount`` credits and append the matching ledger entry.

    The decrement is a single conditional UPDATE that only matches while the
    stored balance still covers the amount, so a stale client-side balance
    read can never drive the balance negative. Returns False, with the
    session rolled back, when the balance no longer covers the amount.

    With ``commit=False`` the debit and ledger entry are flushed but left for
    the caller to commit together with its own pending changes.
    """
    debit_amount = int(amount)
    if debit_amount <= 0:
        raise ValueError("amount must be greater than 0")

    try:
        result = await db.execute(
            update(CreditAccount)
            .where(
                CreditAccount.user_id == user_id,
                CreditAccount.current_balance >= debit_amount,
            )
            .values(
                current_balance=CreditAccount.current_balance - debit_amount,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            logger.warning(
                "credit_debit_rejected user=%s amount=%s reference_type=%s",
                user_id,
                debit_amount,
                reference_type,
            )
            return False

        balance_after = await get_credit_balance(user_id, db)
        db.add(
            CreditTransaction(
                id=str(uuid.uuid4()),
                user_id=user_id,
                amount=-debit_amount,
                transaction_type="spent",
                balance_after=balance_after,
                reference_type=reference_type,
                reference_id=reference_id,
                metadata_json=dict(metadata or {}),
            )
        )
        await db.flush()
        if commit:
            await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("credit_debit_failed user=%s amount=%s", user_id, debit_amount)
        raise

    logger.info(
        "credit_debit user=%s amount=%s reference_type=%s balance_after=%s",
        user_id,
        debit_amount,
        reference_type,
        balance_after,
    )
    return True


async def add_credits(
    user_id: str,
    db: AsyncSession,
    *,
    credits: int,
    transaction_type: str = "purchase",
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Grant credits from a purchase completion or a bonus/referral event."""
    grant = int(credits)
    if grant <= 0:
        raise HTTPException(status_code=422, detail="credits must be greater than 0")
    if transaction_type not in GRANT_TRANSACTION_TYPES:
        raise HTTPException(status_code=422, detail=f"Unsupported credit grant type: {transaction_type}")

    await ensure_credit_account(user_id, db)
    values: Dict[str, Any] = {
        "current_balance": CreditAccount.current_balance + grant,
        "updated_at": func.now(),
    }
    if transaction_type == "purchase":
        values["paid_credits"] = CreditAccount.paid_credits + grant
    else:
        values["earned_credits"] = CreditAccount.earned_credits + grant

    await db.execute(
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    balance_after = await get_credit_balance(user_id, db)
    db.add(
        CreditTransaction(
            id=str(uuid.uuid4()),
            user_id=user_id,
            amount=grant,
            transaction_type=transaction_type,
            balance_after=balance_after,
            reference_type=reference_type or transaction_type,
            reference_id=reference_id,
            metadata_json=dict(metadata or {}),
        )
    )
    await db.commit()
    logger.info("credit_grant user=%s type=%s credits=%s", user_id, transaction_type, grant)
    return {"credits_added": grant, "balance_after": balance_after}


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    account = await ensure_credit_account(user_id, db)
    await db.commit()
    await db.refresh(account)
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": int(account.current_balance or 0),
        "earned_credits": int(account.earned_credits or 0),
        "paid_credits": int(account.paid_credits or 0),
        "costs": {
            "search_filter": max(int(settings.SEARCH_FILTER_CREDIT_COST), 0),
        },
        "recent_entries": [
            {
                "id": entry.id,
                "transaction_type": entry.transaction_type,
                "amount": entry.amount,
                "balance_after": entry.balance_after,
                "reference_type": entry.reference_type,
                "reference_id": entry.reference_id,
                "metadata": entry.metadata_json or {},
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
