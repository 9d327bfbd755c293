"""Credit metering for premium field rep search filters.

A submission walks ``Idle -> Classifying -> (CostZero | Gating) -> Debiting ->
Debited`` before the search itself runs. Premium dimensions are charged once
per search session: the entitlement memory records what has been paid, the
balance gate short-circuits obviously unaffordable searches, and the debit is
a single conditional store-side update so that concurrent submissions cannot
overdraw the shared balance.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional

from fastapi import HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.search_session import SearchSession
from services.credits import get_credit_balance, spend_credits
from services.entitlements import EntitlementMemory
from services.search_filters import FieldRepSearchFilters, FilterDimension
from services.search_sessions import claim_entitlements, mark_entitlements_committed

logger = logging.getLogger(__name__)


class SearchSubmissionState(str, enum.Enum):
    IDLE = "idle"
    CLASSIFYING = "classifying"
    COST_ZERO = "cost_zero"
    GATING = "gating"
    PROCEED = "proceed"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    BALANCE_UNAVAILABLE = "balance_unavailable"
    DEBITING = "debiting"
    DEBIT_FAILED = "debit_failed"
    DEBITED = "debited"
    SEARCH_EXECUTING = "search_executing"


class SearchCreditError(HTTPException):
    """Terminal failure for one search submission; the search must not run."""

    state = SearchSubmissionState.IDLE
    code = "search_credit_error"
    http_status = 400

    def __init__(self, message: str, **extra: Any):
        detail = {"code": self.code, "message": message, **extra}
        super().__init__(status_code=self.http_status, detail=detail)
        self.message = message


class BalanceUnavailable(SearchCreditError):
    state = SearchSubmissionState.BALANCE_UNAVAILABLE
    code = "balance_unavailable"
    http_status = 503

    def __init__(self):
        super().__init__("Unable to check credit balance")


class InsufficientCredits(SearchCreditError):
    state = SearchSubmissionState.INSUFFICIENT_CREDITS
    code = "insufficient_credits"
    http_status = 402

    def __init__(self, required: int, available: int):
        plural = "" if required == 1 else "s"
        super().__init__(
            f"You need {required} credit{plural} for this search. Please purchase more credits.",
            required_credits=required,
            available_credits=available,
        )
        self.required = required
        self.available = available


class DebitFailed(SearchCreditError):
    state = SearchSubmissionState.DEBIT_FAILED
    code = "debit_failed"
    http_status = 409

    def __init__(self, required: int):
        super().__init__("Unable to process credit payment", required_credits=required)
        self.required = required


@dataclass
class SearchCharge:
    state: SearchSubmissionState
    charged: int
    balance_after: Optional[int]
    charged_dimensions: FrozenSet[FilterDimension] = field(default_factory=frozenset)
    paid_filters: Dict[str, bool] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "charged": self.charged,
            "balance_after": self.balance_after,
            "charged_filters": sorted(dimension.value for dimension in self.charged_dimensions),
            "paid_filters": dict(self.paid_filters),
        }


def _cost_per_dimension() -> int:
    return max(int(settings.SEARCH_FILTER_CREDIT_COST), 0)


def unpaid_dimensions(
    active: Iterable[FilterDimension],
    memory: EntitlementMemory,
) -> FrozenSet[FilterDimension]:
    return frozenset(dimension for dimension in active if not memory.is_paid(dimension))


def calculate_credit_cost(active: Iterable[FilterDimension], memory: EntitlementMemory) -> int:
    """Credits owed for the active dimensions not yet paid this session."""
    return len(unpaid_dimensions(active, memory)) * _cost_per_dimension()


def build_charge_metadata(charged: Iterable[FilterDimension]) -> Dict[str, bool]:
    """Ledger metadata: one flag per dimension, True where charged this call."""
    charged = frozenset(charged)
    return {dimension.value: dimension in charged for dimension in FilterDimension}


def quote_search_cost(filters: FieldRepSearchFilters, memory: EntitlementMemory) -> Dict[str, Any]:
    active = filters.premium_dimensions()
    unpaid = unpaid_dimensions(active, memory)
    return {
        "cost": calculate_credit_cost(active, memory),
        "active_filters": sorted(dimension.value for dimension in active),
        "unpaid_filters": sorted(dimension.value for dimension in unpaid),
        "paid_filters": memory.as_dict(),
    }


async def check_balance(user_id: str, cost: int, db: AsyncSession) -> int:
    """Verify the user can afford ``cost``; read-only."""
    try:
        balance = await get_credit_balance(user_id, db)
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("search_credit_balance_read_failed user=%s error=%s", user_id, exc)
        raise BalanceUnavailable() from exc

    if balance is None:
        logger.warning("search_credit_balance_missing user=%s", user_id)
        raise BalanceUnavailable()
    if balance < cost:
        logger.info("search_credit_insufficient user=%s required=%s available=%s", user_id, cost, balance)
        raise InsufficientCredits(required=cost, available=balance)
    return balance


async def debit_search_credits(
    user_id: str,
    cost: int,
    charged: FrozenSet[FilterDimension],
    memory: EntitlementMemory,
    db: AsyncSession,
    *,
    search_session: Optional[SearchSession] = None,
) -> int:
    """Debit ``cost`` and mark ``charged`` as paid, or raise DebitFailed.

    The balance decrement, the ledger entry and, when a persisted search
    session is given, its paid flags are committed in one transaction. The
    flags are claimed conditionally, so two concurrent submissions on one
    session cannot both pay for the same dimension.
    """
    if cost <= 0:
        raise ValueError("cost must be greater than 0")

    metadata = build_charge_metadata(charged)
    session_id = search_session.id if search_session is not None else None
    try:
        if search_session is not None and not await claim_entitlements(search_session, charged, db):
            await db.rollback()
            logger.warning("search_credit_session_already_charged user=%s session=%s", user_id, session_id)
            raise DebitFailed(required=cost)

        applied = await spend_credits(
            user_id,
            db,
            amount=cost,
            reference_type=settings.SEARCH_CREDIT_REFERENCE_TYPE,
            reference_id=session_id,
            metadata=metadata,
            commit=False,
        )
        if not applied:
            raise DebitFailed(required=cost)

        balance_after = await get_credit_balance(user_id, db)
        await db.commit()
    except (SQLAlchemyError, OSError) as exc:
        await db.rollback()
        logger.warning("search_credit_debit_error user=%s cost=%s error=%s", user_id, cost, exc)
        raise DebitFailed(required=cost) from exc

    if search_session is not None:
        mark_entitlements_committed(search_session, charged)
    memory.mark_paid(charged)
    logger.info(
        "search_credits_debited user=%s cost=%s dims=%s balance_after=%s",
        user_id,
        cost,
        ",".join(sorted(dimension.value for dimension in charged)),
        balance_after,
    )
    return int(balance_after or 0)


async def spend_credits_for_search(
    user_id: str,
    filters: FieldRepSearchFilters,
    memory: EntitlementMemory,
    db: AsyncSession,
    *,
    search_session: Optional[SearchSession] = None,
) -> SearchCharge:
    """Meter one search submission up to the point where the search may run.

    Raises BalanceUnavailable, InsufficientCredits or DebitFailed; in each
    case the entitlement memory is left untouched and nothing is charged.
    """
    active = filters.premium_dimensions()
    charged = unpaid_dimensions(active, memory)
    cost = calculate_credit_cost(active, memory)
    logger.debug(
        "search_credit_classified user=%s active=%s cost=%s",
        user_id,
        ",".join(sorted(dimension.value for dimension in active)),
        cost,
    )

    if cost == 0:
        return SearchCharge(
            state=SearchSubmissionState.PROCEED,
            charged=0,
            balance_after=None,
            paid_filters=memory.as_dict(),
        )

    await check_balance(user_id, cost, db)
    balance_after = await debit_search_credits(
        user_id,
        cost,
        charged,
        memory,
        db,
        search_session=search_session,
    )
    return SearchCharge(
        state=SearchSubmissionState.DEBITED,
        charged=cost,
        balance_after=balance_after,
        charged_dimensions=charged,
        paid_filters=memory.as_dict(),
    )
