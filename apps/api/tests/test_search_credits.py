from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.future import select

from conftest import seed_user
from models.credit_account import CreditAccount
from models.credit_transaction import CreditTransaction
from models.search_session import SearchSession
from services.credits import add_credits, get_credit_balance, spend_credits
from services.entitlements import EntitlementMemory
from services.search_credits import (
    BalanceUnavailable,
    DebitFailed,
    InsufficientCredits,
    SearchSubmissionState,
    check_balance,
    spend_credits_for_search,
)
from services.search_filters import FieldRepSearchFilters, FilterDimension
from services.search_sessions import create_search_session, load_search_session, memory_from_session


USER_ID = "vendor-credits"


async def _balance_and_ledger(session_maker, user_id=USER_ID):
    async with session_maker() as session:
        balance = await get_credit_balance(user_id, session)
        result = await session.execute(
            select(CreditTransaction).where(CreditTransaction.user_id == user_id)
        )
        return balance, result.scalars().all()


def _transient_error():
    return OperationalError("SELECT", {}, Exception("connection reset by peer"))


@pytest.mark.asyncio
async def test_first_platform_search_debits_one_credit(session_maker):
    await seed_user(session_maker, USER_ID, balance=3)
    memory = EntitlementMemory()

    async with session_maker() as session:
        charge = await spend_credits_for_search(
            USER_ID,
            FieldRepSearchFilters(zip_code="30301", platforms=["EZinspections"]),
            memory,
            session,
        )

    assert charge.state == SearchSubmissionState.DEBITED
    assert charge.charged == 1
    assert charge.balance_after == 2
    assert charge.charged_dimensions == frozenset({FilterDimension.PLATFORMS})
    assert memory.is_paid(FilterDimension.PLATFORMS)
    assert not memory.is_paid(FilterDimension.INSPECTION_TYPES)

    balance, entries = await _balance_and_ledger(session_maker)
    assert balance == 2
    assert len(entries) == 1
    entry = entries[0]
    assert entry.amount == -1
    assert entry.transaction_type == "spent"
    assert entry.reference_type == "search_filter"
    assert entry.balance_after == 2
    assert entry.metadata_json == {
        "platforms": True,
        "abc_required": False,
        "hud_key_required": False,
        "inspection_types": False,
    }


@pytest.mark.asyncio
async def test_already_paid_dimension_skips_balance_and_debit(session_maker):
    await seed_user(session_maker, USER_ID, balance=2)
    memory = EntitlementMemory({FilterDimension.PLATFORMS: True})

    with (
        patch("services.search_credits.get_credit_balance", new=AsyncMock()) as balance_read,
        patch("services.search_credits.spend_credits", new=AsyncMock()) as debit,
    ):
        async with session_maker() as session:
            charge = await spend_credits_for_search(
                USER_ID,
                FieldRepSearchFilters(zip_code="30301", platforms=["EZinspections", "InspectorADE"]),
                memory,
                session,
            )

    assert charge.state == SearchSubmissionState.PROCEED
    assert charge.charged == 0
    balance_read.assert_not_awaited()
    debit.assert_not_awaited()
    balance, entries = await _balance_and_ledger(session_maker)
    assert balance == 2
    assert entries == []


@pytest.mark.asyncio
async def test_zero_balance_raises_insufficient_credits(session_maker):
    await seed_user(session_maker, USER_ID, balance=0)
    memory = EntitlementMemory()

    async with session_maker() as session:
        with pytest.raises(InsufficientCredits) as exc_info:
            await spend_credits_for_search(
                USER_ID,
                FieldRepSearchFilters(zip_code="30301", abc_required=True),
                memory,
                session,
            )

    assert exc_info.value.required == 1
    assert exc_info.value.status_code == 402
    assert "You need 1 credit for this search" in exc_info.value.message
    assert not any(memory.as_dict().values())
    _, entries = await _balance_and_ledger(session_maker)
    assert entries == []


@pytest.mark.asyncio
async def test_two_unpaid_dimensions_need_two_credits(session_maker):
    await seed_user(session_maker, USER_ID, balance=1)

    async with session_maker() as session:
        with pytest.raises(InsufficientCredits) as exc_info:
            await spend_credits_for_search(
                USER_ID,
                FieldRepSearchFilters(
                    zip_code="30301",
                    platforms=["SafeView"],
                    inspection_types=["REO Services"],
                ),
                EntitlementMemory(),
                session,
            )

    assert exc_info.value.required == 2
    assert exc_info.value.detail["required_credits"] == 2
    assert exc_info.value.detail["available_credits"] == 1
    assert "You need 2 credits" in exc_info.value.message


@pytest.mark.asyncio
async def test_reset_memory_charges_previously_paid_dimension_again(session_maker):
    await seed_user(session_maker, USER_ID, balance=5)
    memory = EntitlementMemory()
    filters = FieldRepSearchFilters(zip_code="30301", hud_key_required=True)

    async with session_maker() as session:
        first = await spend_credits_for_search(USER_ID, filters, memory, session)
        memory.reset()
        second = await spend_credits_for_search(USER_ID, filters, memory, session)

    assert first.charged == 1
    assert second.charged == 1
    assert second.balance_after == 3
    balance, entries = await _balance_and_ledger(session_maker)
    assert balance == 3
    assert len(entries) == 2


@pytest.mark.asyncio
async def test_balance_read_error_surfaces_balance_unavailable(session_maker):
    await seed_user(session_maker, USER_ID, balance=5)
    memory = EntitlementMemory()

    with patch(
        "services.search_credits.get_credit_balance",
        new=AsyncMock(side_effect=_transient_error()),
    ):
        async with session_maker() as session:
            with pytest.raises(BalanceUnavailable) as exc_info:
                await spend_credits_for_search(
                    USER_ID,
                    FieldRepSearchFilters(zip_code="30301", platforms=["WorldAPP"]),
                    memory,
                    session,
                )

    assert exc_info.value.status_code == 503
    assert exc_info.value.detail["message"] == "Unable to check credit balance"
    assert not any(memory.as_dict().values())
    balance, entries = await _balance_and_ledger(session_maker)
    assert balance == 5
    assert entries == []


@pytest.mark.asyncio
async def test_missing_account_is_balance_unavailable(session_maker):
    await seed_user(session_maker, USER_ID)

    async with session_maker() as session:
        with pytest.raises(BalanceUnavailable):
            await check_balance(USER_ID, 1, session)


@pytest.mark.asyncio
async def test_store_side_rejection_after_passing_gate_leaves_no_trace(session_maker):
    await seed_user(session_maker, USER_ID, balance=0)

    async with session_maker() as session:
        search_session = await create_search_session(USER_ID, session)
        session_id = search_session.id
        memory = memory_from_session(search_session)

        # The gate sees a stale balance; the conditional update must still refuse.
        with patch("services.search_credits.get_credit_balance", new=AsyncMock(return_value=10)):
            with pytest.raises(DebitFailed) as exc_info:
                await spend_credits_for_search(
                    USER_ID,
                    FieldRepSearchFilters(zip_code="30301", platforms=["SafeView"], abc_required=True),
                    memory,
                    session,
                    search_session=search_session,
                )

    assert exc_info.value.status_code == 409
    assert exc_info.value.detail["message"] == "Unable to process credit payment"
    assert not any(memory.as_dict().values())

    balance, entries = await _balance_and_ledger(session_maker)
    assert balance == 0
    assert entries == []
    async with session_maker() as session:
        stored = await session.get(SearchSession, session_id)
        assert stored.platforms_paid is False
        assert stored.abc_required_paid is False


@pytest.mark.asyncio
async def test_debit_persists_session_flags_with_ledger_entry(session_maker):
    await seed_user(session_maker, USER_ID, balance=4)

    async with session_maker() as session:
        search_session = await create_search_session(USER_ID, session)
        session_id = search_session.id
        memory = memory_from_session(search_session)
        charge = await spend_credits_for_search(
            USER_ID,
            FieldRepSearchFilters(zip_code="30301", inspection_types=["REO Services"], hud_key_required=True),
            memory,
            session,
            search_session=search_session,
        )

    assert charge.charged == 2
    async with session_maker() as session:
        stored = await session.get(SearchSession, session_id)
        assert stored.inspection_types_paid is True
        assert stored.hud_key_required_paid is True
        assert stored.platforms_paid is False
    _, entries = await _balance_and_ledger(session_maker)
    assert [entry.reference_id for entry in entries] == [session_id]


@pytest.mark.asyncio
async def test_concurrent_submissions_on_one_session_pay_once(session_maker):
    await seed_user(session_maker, USER_ID, balance=5)
    async with session_maker() as session:
        session_id = (await create_search_session(USER_ID, session)).id

    filters = FieldRepSearchFilters(zip_code="30301", abc_required=True)
    async with session_maker() as first, session_maker() as second:
        # Both submissions load the session while abc_required is still unpaid.
        first_row = await load_search_session(USER_ID, session_id, first)
        second_row = await load_search_session(USER_ID, session_id, second)
        first_memory = memory_from_session(first_row)
        second_memory = memory_from_session(second_row)
        await first.commit()
        await second.commit()

        charge = await spend_credits_for_search(USER_ID, filters, first_memory, first, search_session=first_row)
        assert charge.charged == 1
        assert first_row.abc_required_paid is True

        with pytest.raises(DebitFailed):
            await spend_credits_for_search(USER_ID, filters, second_memory, second, search_session=second_row)
        assert not second_memory.is_paid(FilterDimension.ABC_REQUIRED)

    balance, entries = await _balance_and_ledger(session_maker)
    assert balance == 4
    assert len(entries) == 1

    # A retry sees the committed flag and is free.
    async with session_maker() as session:
        retry_row = await load_search_session(USER_ID, session_id, session)
        retry = await spend_credits_for_search(
            USER_ID, filters, memory_from_session(retry_row), session, search_session=retry_row
        )
    assert retry.state == SearchSubmissionState.PROCEED
    assert retry.charged == 0


@pytest.mark.asyncio
async def test_balance_after_read_failure_rolls_back_the_debit(session_maker):
    await seed_user(session_maker, USER_ID, balance=3)
    memory = EntitlementMemory()

    # The gate read succeeds; the post-debit read fails before commit.
    with patch(
        "services.search_credits.get_credit_balance",
        new=AsyncMock(side_effect=[3, _transient_error()]),
    ):
        async with session_maker() as session:
            with pytest.raises(DebitFailed):
                await spend_credits_for_search(
                    USER_ID,
                    FieldRepSearchFilters(zip_code="30301", hud_key_required=True),
                    memory,
                    session,
                )

    assert not memory.is_paid(FilterDimension.HUD_KEY_REQUIRED)
    balance, entries = await _balance_and_ledger(session_maker)
    assert balance == 3
    assert entries == []


@pytest.mark.asyncio
async def test_spend_credits_never_overdraws_with_stale_precheck(session_maker):
    await seed_user(session_maker, USER_ID, balance=1)

    async with session_maker() as first, session_maker() as second:
        # Both submissions read the balance before either debits.
        assert await get_credit_balance(USER_ID, first) == 1
        assert await get_credit_balance(USER_ID, second) == 1
        await first.commit()
        await second.commit()

        assert await spend_credits(USER_ID, first, amount=1, reference_type="search_filter") is True
        assert await spend_credits(USER_ID, second, amount=1, reference_type="search_filter") is False

    balance, entries = await _balance_and_ledger(session_maker)
    assert balance == 0
    assert len(entries) == 1


@pytest.mark.asyncio
async def test_failed_ledger_write_rolls_back_the_decrement(session_maker):
    await seed_user(session_maker, USER_ID, balance=3)

    async with session_maker() as session:
        with patch.object(session, "flush", new=AsyncMock(side_effect=_transient_error())):
            with pytest.raises(OperationalError):
                await spend_credits(USER_ID, session, amount=2, reference_type="search_filter")

    balance, entries = await _balance_and_ledger(session_maker)
    assert balance == 3
    assert entries == []


@pytest.mark.asyncio
async def test_spend_credits_rejects_non_positive_amounts(session_maker):
    await seed_user(session_maker, USER_ID, balance=3)

    async with session_maker() as session:
        with pytest.raises(ValueError):
            await spend_credits(USER_ID, session, amount=0, reference_type="search_filter")


@pytest.mark.asyncio
async def test_add_credits_creates_account_and_records_grant(session_maker):
    await seed_user(session_maker, USER_ID)

    async with session_maker() as session:
        purchase = await add_credits(USER_ID, session, credits=5, transaction_type="purchase")
        bonus = await add_credits(USER_ID, session, credits=2, transaction_type="referral")

    assert purchase["balance_after"] == 5
    assert bonus["balance_after"] == 7
    async with session_maker() as session:
        account = (
            await session.execute(select(CreditAccount).where(CreditAccount.user_id == USER_ID))
        ).scalar_one()
        assert account.paid_credits == 5
        assert account.earned_credits == 2
        total = await session.execute(
            select(func.sum(CreditTransaction.amount)).where(CreditTransaction.user_id == USER_ID)
        )
        assert total.scalar() == 7
