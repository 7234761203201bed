"""Tests for the bill payment expand/collapse lifecycle."""

import asyncio
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from finance_tracker.database import Base
from finance_tracker.models import Transaction, TransactionType
from finance_tracker.services.expansion import ExpansionLifecycle, ExpansionOutcome
from finance_tracker.services.transaction_store import TransactionStore
from finance_tracker.utils.exceptions import (
    BillAlreadyExpandedError,
    BillNotExpandedError,
    BillPaymentNotFoundError,
    BillPaymentNotOwnedError,
    ConcurrentModificationError,
    EmptyTransactionsError,
    InternalError,
    InvalidBillingCycleError,
    PendingNotFoundError,
)
from tests.factories import BillPaymentFactory, CreditCardTransactionFactory


def _itemized(*amounts: str) -> list[Transaction]:
    return [
        Transaction(
            date=date(2024, 10, 20 + offset),
            description=f"Compra {offset}",
            amount=Decimal(amount),
            type=TransactionType.EXPENSE,
            is_hidden=False,
        )
        for offset, amount in enumerate(amounts)
    ]


@pytest.fixture
def store(db):
    return TransactionStore(db)


@pytest.fixture
def lifecycle(store):
    return ExpansionLifecycle(store)


@pytest.mark.asyncio
async def test_expand_then_collapse_restores_exact_amount(db, store, lifecycle, user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id)
    await db.commit()
    bill_id = bill.id

    outcome = await lifecycle.expand(
        user_id=user_id,
        bill_payment_id=bill_id,
        billing_cycle="2024-11",
        itemized=_itemized("1000.00", "523.77"),
    )

    assert outcome.original_amount == Decimal("-1523.77")
    assert outcome.itemized_count == 2
    await db.refresh(bill)
    assert bill.amount == Decimal("0.00")
    assert bill.original_amount == Decimal("-1523.77")
    assert bill.expanded_at is not None
    assert bill.billing_cycle == "2024-11"
    assert bill.is_credit_card_payment is True
    assert len(await store.get_linked_transactions(bill_id)) == 2
    assert await store.is_bill_expanded(bill_id) is True

    collapsed = await lifecycle.collapse(user_id=user_id, bill_payment_id=bill_id)

    assert collapsed.restored_amount == Decimal("-1523.77")
    assert collapsed.itemized_count == 2
    await db.refresh(bill)
    assert bill.amount == Decimal("-1523.77")
    assert bill.original_amount is None
    assert bill.expanded_at is None
    assert bill.billing_cycle is None
    assert bill.is_credit_card_payment is True
    assert await store.get_linked_transactions(bill_id) == []
    assert await store.is_bill_expanded(bill_id) is False


@pytest.mark.asyncio
async def test_collapse_restores_bill_after_itemized_rows_were_edited(db, store, lifecycle, user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id)
    await db.commit()
    bill_id = bill.id
    await lifecycle.expand(
        user_id=user_id,
        bill_payment_id=bill_id,
        billing_cycle="2024-11",
        itemized=_itemized("1000.00", "523.77"),
    )

    # The user fixes a line while the bill is expanded
    rows = await store.get_linked_transactions(bill_id)
    rows[0].amount = Decimal("1.00")
    rows[0].description = "Editado"
    await db.commit()

    collapsed = await lifecycle.collapse(user_id=user_id, bill_payment_id=bill_id)

    assert collapsed.restored_amount == Decimal("-1523.77")
    assert collapsed.itemized_count == 2
    await db.refresh(bill)
    assert bill.amount == Decimal("-1523.77")
    assert bill.original_amount is None
    assert bill.expanded_at is None
    assert bill.billing_cycle is None
    assert await store.get_linked_transactions(bill_id) == []


@pytest.mark.asyncio
async def test_expand_twice_is_rejected(db, lifecycle, user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id)
    await db.commit()
    bill_id = bill.id

    await lifecycle.expand(
        user_id=user_id,
        bill_payment_id=bill_id,
        billing_cycle="2024-11",
        itemized=_itemized("1523.77"),
    )

    with pytest.raises(BillAlreadyExpandedError):
        await lifecycle.expand(
            user_id=user_id,
            bill_payment_id=bill_id,
            billing_cycle="2024-11",
            itemized=_itemized("10.00"),
        )

    await db.refresh(bill)
    assert bill.original_amount == Decimal("-1523.77")


@pytest.mark.asyncio
async def test_already_expanded_reported_before_empty_input(db, lifecycle, user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id)
    await db.commit()
    bill_id = bill.id
    await lifecycle.expand(
        user_id=user_id, bill_payment_id=bill_id, billing_cycle="2024-11", itemized=_itemized("1.00")
    )

    with pytest.raises(BillAlreadyExpandedError):
        await lifecycle.expand(
            user_id=user_id, bill_payment_id=bill_id, billing_cycle="2024-11", itemized=[]
        )


@pytest.mark.asyncio
async def test_expand_with_no_rows_leaves_bill_untouched(db, lifecycle, user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id)
    await db.commit()
    bill_id = bill.id

    with pytest.raises(EmptyTransactionsError):
        await lifecycle.expand(
            user_id=user_id, bill_payment_id=bill_id, billing_cycle="2024-11", itemized=[]
        )

    await db.refresh(bill)
    assert bill.amount == Decimal("-1523.77")
    assert bill.expanded_at is None


@pytest.mark.asyncio
async def test_expand_rejects_invalid_cycle(db, lifecycle, user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id)
    await db.commit()

    with pytest.raises(InvalidBillingCycleError):
        await lifecycle.expand(
            user_id=user_id, bill_payment_id=bill.id, billing_cycle="2024-13", itemized=_itemized("1.00")
        )


@pytest.mark.asyncio
async def test_expand_unknown_bill(lifecycle, user_id):
    with pytest.raises(BillPaymentNotFoundError):
        await lifecycle.expand(
            user_id=user_id, bill_payment_id=uuid4(), billing_cycle="2024-11", itemized=_itemized("1.00")
        )


@pytest.mark.asyncio
async def test_expand_other_users_bill(db, lifecycle, user_id, other_user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=other_user_id)
    await db.commit()
    bill_id = bill.id

    with pytest.raises(BillPaymentNotOwnedError):
        await lifecycle.expand(
            user_id=user_id, bill_payment_id=bill_id, billing_cycle="2024-11", itemized=_itemized("1.00")
        )

    await db.refresh(bill)
    assert bill.expanded_at is None


@pytest.mark.asyncio
async def test_collapse_requires_expanded_bill(db, lifecycle, user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id)
    await db.commit()

    with pytest.raises(BillNotExpandedError):
        await lifecycle.collapse(user_id=user_id, bill_payment_id=bill.id)


@pytest.mark.asyncio
async def test_failure_mid_expansion_rolls_everything_back(db, store, lifecycle, user_id, monkeypatch):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id)
    await db.commit()
    bill_id = bill.id

    async def failing_flush():
        raise InternalError("flush failed")

    monkeypatch.setattr(store, "flush", failing_flush)

    with pytest.raises(InternalError):
        await lifecycle.expand(
            user_id=user_id,
            bill_payment_id=bill_id,
            billing_cycle="2024-11",
            itemized=_itemized("1000.00", "523.77"),
        )

    await db.refresh(bill)
    assert bill.amount == Decimal("-1523.77")
    assert bill.expanded_at is None
    assert await store.get_linked_transactions(bill_id) == []
    assert await store.get_cycle_transactions(user_id, "2024-11") == []


@pytest.mark.asyncio
async def test_link_cycle_binds_pending_rows(db, store, lifecycle, user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id)
    await CreditCardTransactionFactory.create_cycle_async(
        db,
        user_id=user_id,
        billing_cycle="2024-11",
        amounts=["1000.00", "523.77"],
        payment_received_on=date(2024, 11, 5),
    )
    await db.commit()
    bill_id = bill.id

    outcome = await lifecycle.link_cycle(
        user_id=user_id, bill_payment_id=bill_id, billing_cycle="2024-11"
    )

    assert outcome.itemized_count == 2
    assert outcome.original_amount == Decimal("-1523.77")
    linked = await store.get_linked_transactions(bill_id)
    assert len(linked) == 3
    assert sum(1 for row in linked if row.is_hidden) == 1
    assert await store.pending_cycles(user_id) == []


@pytest.mark.asyncio
async def test_link_cycle_without_pending_rows(db, lifecycle, user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id)
    await db.commit()
    bill_id = bill.id

    with pytest.raises(PendingNotFoundError):
        await lifecycle.link_cycle(user_id=user_id, bill_payment_id=bill_id, billing_cycle="2024-11")

    await db.refresh(bill)
    assert bill.expanded_at is None


@pytest.mark.asyncio
async def test_collapse_keeping_rows_returns_cycle_to_pending(db, store, lifecycle, user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id)
    await CreditCardTransactionFactory.create_cycle_async(
        db, user_id=user_id, billing_cycle="2024-11", amounts=["1000.00", "523.77"]
    )
    await db.commit()
    bill_id = bill.id
    await lifecycle.link_cycle(user_id=user_id, bill_payment_id=bill_id, billing_cycle="2024-11")

    outcome = await lifecycle.collapse(user_id=user_id, bill_payment_id=bill_id, keep_itemized=True)

    assert outcome.itemized_count == 2
    assert outcome.restored_amount == Decimal("-1523.77")
    assert await store.get_linked_transactions(bill_id) == []
    pending = await store.pending_cycles(user_id)
    assert [cycle.billing_cycle for cycle in pending] == ["2024-11"]
    assert pending[0].total_amount == Decimal("1523.77")


@pytest.mark.asyncio
async def test_racing_expands_link_a_single_itemized_set(tmp_path, user_id):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'expand.db'}", connect_args={"timeout": 30}
    )
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with maker() as seed:
            bill = await BillPaymentFactory.create_async(seed, user_id=user_id)
            await seed.commit()
            bill_id = bill.id

        async def expand(session: AsyncSession, amount: str) -> ExpansionOutcome:
            return await ExpansionLifecycle(TransactionStore(session)).expand(
                user_id=user_id,
                bill_payment_id=bill_id,
                billing_cycle="2024-11",
                itemized=_itemized(amount),
            )

        async with maker() as first, maker() as second:
            results = await asyncio.gather(
                expand(first, "1523.77"), expand(second, "1500.00"), return_exceptions=True
            )

        succeeded = [r for r in results if isinstance(r, ExpansionOutcome)]
        rejected = [r for r in results if not isinstance(r, ExpansionOutcome)]
        assert len(succeeded) == 1
        assert len(rejected) == 1
        assert isinstance(rejected[0], (ConcurrentModificationError, BillAlreadyExpandedError))

        async with maker() as check:
            linked = await TransactionStore(check).get_linked_transactions(bill_id)
            stored_bill = await TransactionStore(check).find_bill_payment(bill_id, user_id)
        assert len(linked) == 1
        assert linked[0].id == succeeded[0].itemized[0].id
        assert stored_bill.original_amount == Decimal("-1523.77")
        assert stored_bill.amount == Decimal("0.00")
    finally:
        await engine.dispose()
