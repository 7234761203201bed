"""Tests for previewing a credit-card statement import."""

from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from finance_tracker.services.credit_card_import import CreditCardImportService
from finance_tracker.services.matching import ConfidenceTier
from finance_tracker.utils.exceptions import EmptyTransactionsError, InvalidBillingCycleError
from tests.factories import (
    BillPaymentFactory,
    CreditCardTransactionFactory,
    StatementLineFactory,
    TransactionFactory,
)


def _statement(payment: str = "-1523.77", on: date = date(2024, 11, 5)):
    return [
        StatementLineFactory.build(description="PAGAMENTO RECEBIDO", amount=Decimal(payment), date=on),
        StatementLineFactory.build(description="Mercado Extra", amount=Decimal("1000.00")),
        StatementLineFactory.build(description="Farmacia", amount=Decimal("523.77")),
    ]


@pytest.mark.asyncio
async def test_preview_finds_clean_match(db, user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id)
    await db.commit()
    service = CreditCardImportService(db)

    preview = await service.preview_import(user_id=user_id, billing_cycle="2024-11", lines=_statement())

    assert preview.billing_cycle_display == "Nov/2024"
    assert preview.total_transactions == 2
    assert preview.total_amount == Decimal("1523.77")
    assert preview.payment_received_amount == Decimal("1523.77")
    assert preview.reference_date == date(2024, 11, 5)
    assert preview.has_existing_import is False
    assert [line.description for line in preview.transactions_to_import] == [
        "Mercado Extra",
        "Farmacia",
    ]

    assert len(preview.potential_matches) == 1
    match = preview.potential_matches[0]
    assert match.bill_payment_id == bill.id
    assert match.amount_difference == Decimal("0.00")
    assert match.date_difference_days == 3
    assert match.confidence == ConfidenceTier.HIGH
    assert match.match_score == pytest.approx(0.91)


@pytest.mark.asyncio
async def test_preview_ranks_nearer_bill_first(db, user_id):
    far = await BillPaymentFactory.create_async(db, user_id=user_id, date=date(2024, 11, 12))
    near = await BillPaymentFactory.create_async(db, user_id=user_id, date=date(2024, 11, 6))
    await db.commit()
    service = CreditCardImportService(db)

    preview = await service.preview_import(user_id=user_id, billing_cycle="2024-11", lines=_statement())

    assert [m.bill_payment_id for m in preview.potential_matches] == [near.id, far.id]


@pytest.mark.asyncio
async def test_preview_recognises_unflagged_bill_by_description(db, user_id):
    bill = await TransactionFactory.create_async(
        db,
        user_id=user_id,
        date=date(2024, 11, 7),
        description="PAGAMENTO FATURA NUBANK",
        amount=Decimal("-1520.00"),
    )
    await TransactionFactory.create_async(
        db,
        user_id=user_id,
        date=date(2024, 11, 7),
        description="Aluguel",
        amount=Decimal("-1523.77"),
    )
    await db.commit()
    service = CreditCardImportService(db)

    preview = await service.preview_import(user_id=user_id, billing_cycle="2024-11", lines=_statement())

    assert [m.bill_payment_id for m in preview.potential_matches] == [bill.id]
    assert preview.potential_matches[0].confidence == ConfidenceTier.HIGH


@pytest.mark.asyncio
async def test_preview_excludes_bills_outside_window_or_tolerance(db, user_id):
    await BillPaymentFactory.create_async(db, user_id=user_id, date=date(2024, 11, 30))
    await BillPaymentFactory.create_async(db, user_id=user_id, amount=Decimal("-1600.00"))
    await BillPaymentFactory.create_async(
        db, user_id=user_id, amount=Decimal("-1523.77"), date=date(2024, 9, 30)
    )
    await db.commit()
    service = CreditCardImportService(db)

    preview = await service.preview_import(user_id=user_id, billing_cycle="2024-11", lines=_statement())

    assert preview.potential_matches == []


@pytest.mark.asyncio
async def test_preview_skips_expanded_and_foreign_bills(db, user_id, other_user_id):
    await BillPaymentFactory.create_async(
        db,
        user_id=user_id,
        amount=Decimal("0.00"),
        original_amount=Decimal("-1523.77"),
        expanded_at=datetime(2024, 11, 9, tzinfo=UTC),
        billing_cycle="2024-10",
    )
    await BillPaymentFactory.create_async(db, user_id=other_user_id)
    await db.commit()
    service = CreditCardImportService(db)

    preview = await service.preview_import(user_id=user_id, billing_cycle="2024-11", lines=_statement())

    assert preview.potential_matches == []


@pytest.mark.asyncio
async def test_preview_without_payment_line_uses_statement_total(db, user_id):
    bill = await BillPaymentFactory.create_async(db, user_id=user_id, date=date(2024, 10, 28))
    await db.commit()
    lines = _statement()[1:]
    service = CreditCardImportService(db)

    preview = await service.preview_import(user_id=user_id, billing_cycle="2024-11", lines=lines)

    assert preview.payment_received_amount == Decimal("0")
    assert preview.reference_date == date(2024, 10, 25)
    assert [m.bill_payment_id for m in preview.potential_matches] == [bill.id]


@pytest.mark.asyncio
async def test_preview_reports_existing_import_and_writes_nothing(db, user_id):
    await CreditCardTransactionFactory.create_cycle_async(
        db, user_id=user_id, billing_cycle="2024-11", amounts=["10.00"]
    )
    await db.commit()
    service = CreditCardImportService(db)

    preview = await service.preview_import(user_id=user_id, billing_cycle="2024-11", lines=_statement())
    assert preview.has_existing_import is True

    fresh = await service.preview_import(user_id=user_id, billing_cycle="2024-12", lines=_statement())
    assert fresh.has_existing_import is False
    assert await service.store.get_cycle_transactions(user_id, "2024-12") == []


@pytest.mark.asyncio
async def test_preview_validates_input(db, user_id):
    service = CreditCardImportService(db)

    with pytest.raises(InvalidBillingCycleError):
        await service.preview_import(user_id=user_id, billing_cycle="11/2024", lines=_statement())
    with pytest.raises(EmptyTransactionsError):
        await service.preview_import(user_id=user_id, billing_cycle="2024-11", lines=[])
