"""Expansion lifecycle of a bill payment: collapsed (aggregate) <-> expanded (itemized).

A bill payment and the itemized transactions linked to it are one aggregate
with a single writer. Every transition locks the bill row and runs inside one
atomic block, so the precondition check and the writes cannot interleave with
another caller's.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from finance_tracker.logger import get_logger
from finance_tracker.models import Transaction
from finance_tracker.services.billing_cycle import validate_billing_cycle
from finance_tracker.services.transaction_store import TransactionStore
from finance_tracker.utils.exceptions import (
    BillAlreadyExpandedError,
    BillNotExpandedError,
    EmptyTransactionsError,
    PendingNotFoundError,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExpansionOutcome:
    bill_payment_id: UUID
    billing_cycle: str
    original_amount: Decimal
    itemized_count: int
    expanded_at: datetime
    itemized: tuple[Transaction, ...] = ()


@dataclass(frozen=True)
class CollapseOutcome:
    bill_payment_id: UUID
    billing_cycle: str | None
    restored_amount: Decimal
    itemized_count: int
    collapsed_at: datetime


class ExpansionLifecycle:
    """Owns every state change of a bill payment's expansion."""

    def __init__(self, store: TransactionStore) -> None:
        self.store = store

    async def _lock_collapsed_bill(self, user_id: UUID, bill_payment_id: UUID) -> Transaction:
        bill = await self.store.find_bill_payment(bill_payment_id, user_id, for_update=True)
        if bill.is_expanded:
            raise BillAlreadyExpandedError(f"Bill payment {bill_payment_id} is already expanded")
        return bill

    def _mark_expanded(self, bill: Transaction, billing_cycle: str) -> tuple[Decimal, datetime]:
        original_amount = bill.amount
        expanded_at = datetime.now(UTC)
        bill.original_amount = original_amount
        # The itemized rows now carry the money; zero the aggregate so nothing is counted twice
        bill.amount = Decimal("0.00")
        bill.expanded_at = expanded_at
        bill.billing_cycle = billing_cycle
        return original_amount, expanded_at

    async def expand(
        self,
        *,
        user_id: UUID,
        bill_payment_id: UUID,
        billing_cycle: str,
        itemized: Sequence[Transaction],
    ) -> ExpansionOutcome:
        """Insert ``itemized`` under the bill and mark the bill expanded.

        Rows flagged ``is_hidden`` are stored with the rest but are not counted
        as itemized transactions.
        """
        validate_billing_cycle(billing_cycle)

        async with self.store.atomic():
            bill = await self._lock_collapsed_bill(user_id, bill_payment_id)
            if not itemized:
                raise EmptyTransactionsError("No itemized transactions to expand into")

            for row in itemized:
                row.user_id = user_id
                row.billing_cycle = billing_cycle
                row.credit_card_payment_id = bill.id
            await self.store.add_transactions(itemized)

            original_amount, expanded_at = self._mark_expanded(bill, billing_cycle)
            await self.store.flush()

        itemized_count = sum(1 for row in itemized if not row.is_hidden)
        logger.info(
            "Bill payment expanded",
            user_id=str(user_id),
            bill_payment_id=str(bill_payment_id),
            billing_cycle=billing_cycle,
            itemized_count=itemized_count,
            original_amount=str(original_amount),
        )
        return ExpansionOutcome(
            bill_payment_id=bill_payment_id,
            billing_cycle=billing_cycle,
            original_amount=original_amount,
            itemized_count=itemized_count,
            expanded_at=expanded_at,
            itemized=tuple(itemized),
        )

    async def link_cycle(
        self,
        *,
        user_id: UUID,
        bill_payment_id: UUID,
        billing_cycle: str,
    ) -> ExpansionOutcome:
        """Expand the bill with the cycle's already-imported, unlinked transactions."""
        validate_billing_cycle(billing_cycle)

        async with self.store.atomic():
            bill = await self._lock_collapsed_bill(user_id, bill_payment_id)
            rows = await self.store.get_pending_cycle_transactions(
                user_id, billing_cycle, for_update=True
            )
            visible = [row for row in rows if not row.is_hidden]
            if not visible:
                raise PendingNotFoundError(
                    f"No pending transactions found for billing cycle {billing_cycle}"
                )

            for row in rows:
                row.credit_card_payment_id = bill.id
            original_amount, expanded_at = self._mark_expanded(bill, billing_cycle)
            await self.store.set_import_bill(user_id, billing_cycle, bill.id)
            await self.store.flush()

        logger.info(
            "Billing cycle linked to bill payment",
            user_id=str(user_id),
            bill_payment_id=str(bill_payment_id),
            billing_cycle=billing_cycle,
            itemized_count=len(visible),
        )
        return ExpansionOutcome(
            bill_payment_id=bill_payment_id,
            billing_cycle=billing_cycle,
            original_amount=original_amount,
            itemized_count=len(visible),
            expanded_at=expanded_at,
            itemized=tuple(visible),
        )

    async def collapse(
        self,
        *,
        user_id: UUID,
        bill_payment_id: UUID,
        keep_itemized: bool = False,
    ) -> CollapseOutcome:
        """Restore the bill's original amount and end the expansion.

        By default the linked rows are deleted. With ``keep_itemized`` they are
        released instead: kept, unlinked, and pending again for their cycle.
        Edits made to itemized rows while expanded are not folded back into the
        bill.
        """
        async with self.store.atomic():
            bill = await self.store.find_bill_payment(bill_payment_id, user_id, for_update=True)
            if not bill.is_expanded:
                raise BillNotExpandedError(f"Bill payment {bill_payment_id} is not expanded")

            billing_cycle = bill.billing_cycle
            linked = await self.store.get_linked_transactions(bill.id, for_update=True)
            itemized_count = sum(1 for row in linked if not row.is_hidden)

            if keep_itemized:
                for row in linked:
                    row.credit_card_payment_id = None
                if billing_cycle:
                    await self.store.set_import_bill(user_id, billing_cycle, None)
            else:
                await self.store.delete_transactions(linked)
                if billing_cycle:
                    await self.store.delete_import(user_id, billing_cycle)

            restored_amount = (
                bill.original_amount if bill.original_amount is not None else bill.amount
            )
            bill.amount = restored_amount
            bill.original_amount = None
            bill.expanded_at = None
            bill.billing_cycle = None
            await self.store.flush()

        collapsed_at = datetime.now(UTC)
        logger.info(
            "Bill payment collapsed",
            user_id=str(user_id),
            bill_payment_id=str(bill_payment_id),
            billing_cycle=billing_cycle,
            itemized_count=itemized_count,
            kept_itemized=keep_itemized,
            restored_amount=str(restored_amount),
        )
        return CollapseOutcome(
            bill_payment_id=bill_payment_id,
            billing_cycle=billing_cycle,
            restored_amount=restored_amount,
            itemized_count=itemized_count,
            collapsed_at=collapsed_at,
        )
