"""Persistence boundary for bill payments and imported credit-card transactions.

All reads and writes the reconciliation services need go through
``TransactionStore``. Storage exceptions are logged and re-raised as
``InternalError`` (or ``ConcurrentModificationError`` when an optimistic
version check fails) so callers only ever see domain errors.
"""

import re
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import delete, distinct, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from finance_tracker.logger import get_logger
from finance_tracker.models import Category, CreditCardImport, Transaction, TransactionType
from finance_tracker.utils.exceptions import (
    BillPaymentNotFoundError,
    BillPaymentNotOwnedError,
    CycleAlreadyImportedError,
    raise_concurrent_modification,
    raise_internal_error,
)

logger = get_logger(__name__)

_ZERO = Decimal("0")


@dataclass(frozen=True)
class BillSnapshot:
    """Detached view of a bill payment, safe to use after the session rolls back."""

    id: UUID
    date: date
    description: str
    amount: Decimal
    original_amount: Decimal | None
    category_name: str | None
    is_credit_card_payment: bool

    @property
    def reference_amount(self) -> Decimal:
        """Amount the bill had before any expansion."""
        return self.original_amount if self.original_amount is not None else self.amount


@dataclass(frozen=True)
class PendingCycleAggregate:
    billing_cycle: str
    transaction_count: int
    total_amount: Decimal
    oldest_date: date
    newest_date: date
    # Date of the hidden payment-received row when one was imported, else newest_date
    reference_date: date


@dataclass(frozen=True)
class LinkedCycleAggregate:
    billing_cycle: str
    transaction_count: int
    total_amount: Decimal
    bill: BillSnapshot


@dataclass
class _CycleAccumulator:
    count: int = 0
    total: Decimal = _ZERO
    oldest: date | None = None
    newest: date | None = None
    payment_received: date | None = None

    def add_visible(self, txn_date: date, amount: Decimal) -> None:
        self.count += 1
        self.total += amount
        self.oldest = txn_date if self.oldest is None else min(self.oldest, txn_date)
        self.newest = txn_date if self.newest is None else max(self.newest, txn_date)

    def add_hidden(self, txn_date: date) -> None:
        if self.payment_received is None or txn_date > self.payment_received:
            self.payment_received = txn_date


class TransactionStore:
    """Transaction persistence for one user-facing unit of work (one session)."""

    def __init__(self, db: AsyncSession, *, bill_payment_pattern: str | None = None) -> None:
        self.db = db
        self._bill_payment_regex = (
            re.compile(bill_payment_pattern, re.IGNORECASE) if bill_payment_pattern else None
        )
        self._atomic_depth = 0

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _storage_errors(self, operation: str, **context: Any) -> AsyncIterator[None]:
        try:
            yield
        except StaleDataError as e:
            logger.warning(
                "Optimistic version check failed",
                operation=operation,
                error=str(e),
                **context,
            )
            raise_concurrent_modification(f"{operation}: row changed concurrently", cause=e)
        except SQLAlchemyError as e:
            logger.error(
                "Transaction store operation failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
                **context,
            )
            raise_internal_error(f"{operation} failed", cause=e)

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        """All-or-nothing block. Nested blocks join the outermost one.

        The outermost block commits on success and rolls back on any exception,
        including cancellation, before re-raising it.
        """
        if self._atomic_depth:
            self._atomic_depth += 1
            try:
                yield
            finally:
                self._atomic_depth -= 1
            return

        self._atomic_depth = 1
        try:
            yield
            async with self._storage_errors("commit"):
                await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise
        finally:
            self._atomic_depth = 0

    async def flush(self) -> None:
        async with self._storage_errors("flush"):
            await self.db.flush()

    # ------------------------------------------------------------------
    # Bill payments
    # ------------------------------------------------------------------

    async def find_bill_payment(
        self,
        bill_id: UUID,
        user_id: UUID,
        *,
        for_update: bool = False,
    ) -> Transaction:
        """Load a bill payment owned by ``user_id``.

        With ``for_update`` the row is locked until the surrounding transaction
        ends and any stale copy in the identity map is refreshed.
        """
        stmt = select(Transaction).where(Transaction.id == bill_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)

        async with self._storage_errors("find_bill_payment", bill_payment_id=str(bill_id)):
            bill = (await self.db.execute(stmt)).scalar_one_or_none()

        if bill is None:
            raise BillPaymentNotFoundError(f"Bill payment {bill_id} not found")
        if bill.user_id != user_id:
            logger.warning(
                "Bill payment accessed by another user",
                bill_payment_id=str(bill_id),
                user_id=str(user_id),
            )
            raise BillPaymentNotOwnedError()
        return bill

    async def is_bill_expanded(self, bill_id: UUID) -> bool:
        stmt = select(Transaction.expanded_at).where(Transaction.id == bill_id)
        async with self._storage_errors("is_bill_expanded", bill_payment_id=str(bill_id)):
            expanded_at = (await self.db.execute(stmt)).scalar_one_or_none()
        return expanded_at is not None

    async def get_linked_transactions(
        self,
        bill_id: UUID,
        *,
        include_hidden: bool = True,
        for_update: bool = False,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.credit_card_payment_id == bill_id)
            .order_by(Transaction.date, Transaction.created_at)
        )
        if not include_hidden:
            stmt = stmt.where(Transaction.is_hidden.is_(False))
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)

        async with self._storage_errors("get_linked_transactions", bill_payment_id=str(bill_id)):
            return list((await self.db.execute(stmt)).scalars().all())

    async def find_potential_bill_payments(
        self,
        user_id: UUID,
        start: date,
        end: date,
    ) -> list[BillSnapshot]:
        """Unexpanded bank expenses in [start, end] that look like card bill payments."""
        stmt = (
            select(Transaction, Category.name)
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.user_id == user_id,
                Transaction.type == TransactionType.EXPENSE,
                Transaction.date >= start,
                Transaction.date <= end,
                Transaction.expanded_at.is_(None),
                Transaction.billing_cycle.is_(None),
                Transaction.credit_card_payment_id.is_(None),
                Transaction.is_hidden.is_(False),
            )
            .order_by(Transaction.date.desc())
        )
        async with self._storage_errors("find_potential_bill_payments", user_id=str(user_id)):
            rows = (await self.db.execute(stmt)).all()

        return [
            _snapshot(txn, category_name)
            for txn, category_name in rows
            if txn.is_credit_card_payment or self._looks_like_bill_payment(txn.description)
        ]

    def _looks_like_bill_payment(self, description: str) -> bool:
        return bool(self._bill_payment_regex and self._bill_payment_regex.search(description))

    async def get_bill_snapshots(self, bill_ids: Iterable[UUID]) -> dict[UUID, BillSnapshot]:
        ids = list(bill_ids)
        if not ids:
            return {}
        stmt = (
            select(Transaction, Category.name)
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(Transaction.id.in_(ids))
        )
        async with self._storage_errors("get_bill_snapshots"):
            rows = (await self.db.execute(stmt)).all()
        return {txn.id: _snapshot(txn, category_name) for txn, category_name in rows}

    async def find_expanded_bill_for_cycle(
        self, user_id: UUID, billing_cycle: str
    ) -> Transaction | None:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.billing_cycle == billing_cycle,
                Transaction.expanded_at.is_not(None),
            )
            .limit(1)
        )
        async with self._storage_errors("find_expanded_bill_for_cycle", billing_cycle=billing_cycle):
            return (await self.db.execute(stmt)).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Itemized transactions
    # ------------------------------------------------------------------

    async def add_transactions(self, rows: Iterable[Transaction]) -> None:
        async with self._storage_errors("add_transactions"):
            self.db.add_all(list(rows))
            await self.db.flush()

    async def delete_transactions(self, rows: Iterable[Transaction]) -> int:
        count = 0
        async with self._storage_errors("delete_transactions"):
            for row in rows:
                await self.db.delete(row)
                count += 1
            await self.db.flush()
        return count

    async def get_pending_cycle_transactions(
        self,
        user_id: UUID,
        billing_cycle: str,
        *,
        for_update: bool = False,
    ) -> list[Transaction]:
        """Imported rows of a cycle not yet bound to a bill, hidden rows included."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.billing_cycle == billing_cycle,
                Transaction.credit_card_payment_id.is_(None),
                Transaction.expanded_at.is_(None),
            )
            .order_by(Transaction.date, Transaction.created_at)
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)

        async with self._storage_errors("get_pending_cycle_transactions", billing_cycle=billing_cycle):
            return list((await self.db.execute(stmt)).scalars().all())

    async def get_cycle_transactions(self, user_id: UUID, billing_cycle: str) -> list[Transaction]:
        """Visible imported rows of a cycle, linked or not."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.billing_cycle == billing_cycle,
                Transaction.expanded_at.is_(None),
                Transaction.is_hidden.is_(False),
            )
            .order_by(Transaction.date, Transaction.created_at)
        )
        async with self._storage_errors("get_cycle_transactions", billing_cycle=billing_cycle):
            return list((await self.db.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # Cycle aggregates
    # ------------------------------------------------------------------

    async def pending_cycles(
        self,
        user_id: UUID,
        billing_cycle: str | None = None,
    ) -> list[PendingCycleAggregate]:
        """Cycles with visible imported rows not linked to any bill, newest first."""
        stmt = select(
            Transaction.billing_cycle,
            Transaction.date,
            Transaction.amount,
            Transaction.is_hidden,
        ).where(
            Transaction.user_id == user_id,
            Transaction.billing_cycle.is_not(None),
            Transaction.credit_card_payment_id.is_(None),
            Transaction.expanded_at.is_(None),
        )
        if billing_cycle is not None:
            stmt = stmt.where(Transaction.billing_cycle == billing_cycle)

        async with self._storage_errors("pending_cycles", user_id=str(user_id)):
            rows = (await self.db.execute(stmt)).all()

        accumulators: dict[str, _CycleAccumulator] = {}
        for cycle, txn_date, amount, is_hidden in rows:
            acc = accumulators.setdefault(cycle, _CycleAccumulator())
            if is_hidden:
                acc.add_hidden(txn_date)
            else:
                acc.add_visible(txn_date, amount)

        aggregates = [
            PendingCycleAggregate(
                billing_cycle=cycle,
                transaction_count=acc.count,
                total_amount=abs(acc.total),
                oldest_date=acc.oldest,
                newest_date=acc.newest,
                reference_date=acc.payment_received or acc.newest,
            )
            for cycle, acc in accumulators.items()
            if acc.count and acc.oldest is not None and acc.newest is not None
        ]
        aggregates.sort(key=lambda item: item.billing_cycle, reverse=True)
        return aggregates

    async def linked_cycles(self, user_id: UUID) -> list[LinkedCycleAggregate]:
        """Cycles whose visible rows are bound to a bill, newest first."""
        stmt = select(
            Transaction.billing_cycle,
            Transaction.credit_card_payment_id,
            Transaction.amount,
        ).where(
            Transaction.user_id == user_id,
            Transaction.billing_cycle.is_not(None),
            Transaction.credit_card_payment_id.is_not(None),
            Transaction.is_hidden.is_(False),
        )
        async with self._storage_errors("linked_cycles", user_id=str(user_id)):
            rows = (await self.db.execute(stmt)).all()

        grouped: dict[tuple[str, UUID], list[Decimal]] = {}
        for cycle, bill_id, amount in rows:
            grouped.setdefault((cycle, bill_id), []).append(amount)

        bills = await self.get_bill_snapshots({bill_id for _, bill_id in grouped})
        aggregates = [
            LinkedCycleAggregate(
                billing_cycle=cycle,
                transaction_count=len(amounts),
                total_amount=abs(sum(amounts, _ZERO)),
                bill=bills[bill_id],
            )
            for (cycle, bill_id), amounts in grouped.items()
            if bill_id in bills
        ]
        aggregates.sort(key=lambda item: item.billing_cycle, reverse=True)
        return aggregates

    async def find_cycle_bill_id(self, user_id: UUID, billing_cycle: str) -> UUID | None:
        """Bill the cycle is linked to, if any."""
        stmt = (
            select(Transaction.credit_card_payment_id)
            .where(
                Transaction.user_id == user_id,
                Transaction.billing_cycle == billing_cycle,
                Transaction.credit_card_payment_id.is_not(None),
            )
            .limit(1)
        )
        async with self._storage_errors("find_cycle_bill_id", billing_cycle=billing_cycle):
            return (await self.db.execute(stmt)).scalar_one_or_none()

    async def months_covered(self, user_id: UUID) -> int:
        stmt = select(func.count(distinct(Transaction.billing_cycle))).where(
            Transaction.user_id == user_id,
            Transaction.billing_cycle.is_not(None),
            Transaction.expanded_at.is_(None),
            Transaction.is_hidden.is_(False),
        )
        async with self._storage_errors("months_covered", user_id=str(user_id)):
            return int((await self.db.execute(stmt)).scalar_one())

    async def latest_billing_cycle(self, user_id: UUID) -> str | None:
        stmt = select(func.max(Transaction.billing_cycle)).where(
            Transaction.user_id == user_id,
            Transaction.billing_cycle.is_not(None),
        )
        async with self._storage_errors("latest_billing_cycle", user_id=str(user_id)):
            return (await self.db.execute(stmt)).scalar_one_or_none()

    # ------------------------------------------------------------------
    # Import records
    # ------------------------------------------------------------------

    async def has_existing_import(self, user_id: UUID, billing_cycle: str) -> bool:
        record_stmt = select(CreditCardImport.id).where(
            CreditCardImport.user_id == user_id,
            CreditCardImport.billing_cycle == billing_cycle,
        )
        rows_stmt = (
            select(Transaction.id)
            .where(
                Transaction.user_id == user_id,
                Transaction.billing_cycle == billing_cycle,
                Transaction.expanded_at.is_(None),
            )
            .limit(1)
        )
        async with self._storage_errors("has_existing_import", billing_cycle=billing_cycle):
            if (await self.db.execute(record_stmt)).first() is not None:
                return True
            return (await self.db.execute(rows_stmt)).first() is not None

    async def record_import(
        self,
        user_id: UUID,
        billing_cycle: str,
        *,
        bill_payment_id: UUID | None,
        transaction_count: int,
    ) -> CreditCardImport:
        record = CreditCardImport(
            user_id=user_id,
            billing_cycle=billing_cycle,
            bill_payment_id=bill_payment_id,
            transaction_count=transaction_count,
        )
        async with self._storage_errors("record_import", billing_cycle=billing_cycle):
            self.db.add(record)
            try:
                await self.db.flush()
            except IntegrityError as e:
                logger.warning(
                    "Duplicate credit-card import rejected",
                    user_id=str(user_id),
                    billing_cycle=billing_cycle,
                )
                raise CycleAlreadyImportedError(
                    f"Billing cycle {billing_cycle} was already imported"
                ) from e
        return record

    async def set_import_bill(
        self, user_id: UUID, billing_cycle: str, bill_payment_id: UUID | None
    ) -> None:
        stmt = (
            update(CreditCardImport)
            .where(
                CreditCardImport.user_id == user_id,
                CreditCardImport.billing_cycle == billing_cycle,
            )
            .values(bill_payment_id=bill_payment_id)
        )
        async with self._storage_errors("set_import_bill", billing_cycle=billing_cycle):
            await self.db.execute(stmt)

    async def delete_import(self, user_id: UUID, billing_cycle: str) -> None:
        stmt = delete(CreditCardImport).where(
            CreditCardImport.user_id == user_id,
            CreditCardImport.billing_cycle == billing_cycle,
        )
        async with self._storage_errors("delete_import", billing_cycle=billing_cycle):
            await self.db.execute(stmt)


def _snapshot(txn: Transaction, category_name: str | None) -> BillSnapshot:
    return BillSnapshot(
        id=txn.id,
        date=txn.date,
        description=txn.description,
        amount=txn.amount,
        original_amount=txn.original_amount,
        category_name=category_name,
        is_credit_card_payment=txn.is_credit_card_payment,
    )
