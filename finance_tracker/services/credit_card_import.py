"""Credit-card statement import: preview, commit, collapse and status."""

import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from finance_tracker.config import settings
from finance_tracker.logger import get_logger, log_exception, log_timing
from finance_tracker.models import Transaction, TransactionType
from finance_tracker.schemas.credit_card import (
    BillMatch,
    CollapseResult,
    CreditCardStatus,
    ImportedTransactionSummary,
    ImportPreview,
    ImportResult,
    StatementLine,
)
from finance_tracker.services.billing_cycle import (
    current_billing_cycle,
    format_billing_cycle_display,
    import_search_range,
    validate_billing_cycle,
)
from finance_tracker.services.category_rules import CategoryMatch, CategoryRuleMatcher
from finance_tracker.services.expansion import ExpansionLifecycle
from finance_tracker.services.matching import (
    MatchingProfiles,
    load_matching_profiles,
    logging_sink,
    ranking_key,
    score_match,
)
from finance_tracker.services.transaction_store import TransactionStore
from finance_tracker.utils.exceptions import (
    BillAlreadyExpandedError,
    CycleAlreadyImportedError,
    EmptyTransactionsError,
)

logger = get_logger(__name__)

_ZERO = Decimal("0")


class CategoryMatcher(Protocol):
    async def match(self, user_id: UUID, description: str) -> CategoryMatch | None: ...


@dataclass(frozen=True)
class PartitionedStatement:
    """Statement lines split into the payment acknowledgement and the purchases."""

    payment_received: list[StatementLine]
    itemized: list[StatementLine]
    payment_received_amount: Decimal
    total_amount: Decimal

    @property
    def reference_amount(self) -> Decimal:
        if self.payment_received:
            return self.payment_received_amount
        return abs(self.total_amount)

    @property
    def reference_date(self) -> date | None:
        lines = self.payment_received or self.itemized
        if not lines:
            return None
        return max(line.date for line in lines)


def partition_statement(
    lines: Sequence[StatementLine],
    payment_received_pattern: re.Pattern[str],
) -> PartitionedStatement:
    """Split lines on the payment-received marker.

    Payment-received lines add their magnitude to ``payment_received_amount``;
    every other line is summed with its sign into ``total_amount`` so refunds
    reduce the total.
    """
    payment_received: list[StatementLine] = []
    itemized: list[StatementLine] = []
    for line in lines:
        if payment_received_pattern.search(line.description):
            payment_received.append(line)
        else:
            itemized.append(line)

    return PartitionedStatement(
        payment_received=payment_received,
        itemized=itemized,
        payment_received_amount=sum((abs(line.amount) for line in payment_received), _ZERO),
        total_amount=sum((line.amount for line in itemized), _ZERO),
    )


class CreditCardImportService:
    """Preview and commit credit-card statements against bank bill payments."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        payment_received_pattern: str | None = None,
        bill_payment_pattern: str | None = None,
        category_matcher: CategoryMatcher | None = None,
        profiles: MatchingProfiles | None = None,
    ) -> None:
        self.db = db
        self.store = TransactionStore(
            db,
            bill_payment_pattern=bill_payment_pattern or settings.bill_payment_pattern,
        )
        self.lifecycle = ExpansionLifecycle(self.store)
        self.payment_received_regex = re.compile(
            payment_received_pattern or settings.payment_received_pattern, re.IGNORECASE
        )
        self.category_matcher = category_matcher or CategoryRuleMatcher(db)
        self.profiles = profiles or load_matching_profiles()

    def partition(self, lines: Sequence[StatementLine]) -> PartitionedStatement:
        return partition_statement(lines, self.payment_received_regex)

    async def preview_import(
        self,
        *,
        user_id: UUID,
        billing_cycle: str,
        lines: Sequence[StatementLine],
    ) -> ImportPreview:
        """Rank bill payments that could have paid this statement. Makes no writes."""
        validate_billing_cycle(billing_cycle)
        if not lines:
            raise EmptyTransactionsError()

        statement = self.partition(lines)
        has_existing_import = await self.store.has_existing_import(user_id, billing_cycle)

        start, end = import_search_range(billing_cycle)
        bills = await self.store.find_potential_bill_payments(user_id, start, end)

        reference_amount = statement.reference_amount
        reference_date = statement.reference_date
        profile = self.profiles.import_preview
        sink = logging_sink(user_id=str(user_id), billing_cycle=billing_cycle)

        matches: list[BillMatch] = []
        with log_timing(
            "rank_bill_payments",
            logger=logger,
            level="debug",
            billing_cycle=billing_cycle,
        ) as timing:
            scored = []
            if reference_date is not None:
                for bill in bills:
                    result = score_match(
                        bill.amount, reference_amount, bill.date, reference_date, profile, sink
                    )
                    if result.is_match:
                        scored.append((result, bill))
            scored.sort(key=lambda item: ranking_key(item[0]))
            timing["candidates"] = len(bills)
            timing["matches"] = len(scored)

        for result, bill in scored:
            matches.append(
                BillMatch(
                    bill_payment_id=bill.id,
                    bill_payment_date=bill.date,
                    bill_payment_amount=bill.amount,
                    bill_description=bill.description,
                    category_name=bill.category_name,
                    cc_payment_date=reference_date,
                    cc_payment_amount=reference_amount,
                    amount_difference=result.amount_difference,
                    amount_difference_percent=result.amount_difference_percent,
                    date_difference_days=result.date_difference_days,
                    confidence=result.confidence,
                    match_score=result.score,
                )
            )

        return ImportPreview(
            billing_cycle=billing_cycle,
            billing_cycle_display=format_billing_cycle_display(billing_cycle),
            total_transactions=len(statement.itemized),
            total_amount=statement.total_amount,
            payment_received_amount=statement.payment_received_amount,
            reference_date=reference_date,
            potential_matches=matches,
            transactions_to_import=statement.itemized,
            has_existing_import=has_existing_import,
        )

    async def _categorize(
        self, user_id: UUID, lines: Sequence[StatementLine]
    ) -> dict[int, CategoryMatch]:
        """Category per itemized line index. A failing lookup skips that line only."""
        matches: dict[int, CategoryMatch] = {}
        for index, line in enumerate(lines):
            try:
                match = await self.category_matcher.match(user_id, line.description)
            except Exception as exc:
                log_exception(
                    logger,
                    exc,
                    "Category auto-assignment failed, importing line uncategorized",
                    level="warning",
                    include_traceback=False,
                    user_id=str(user_id),
                    description=line.description,
                )
                continue
            if match is not None:
                matches[index] = match
        return matches

    def _build_rows(
        self,
        user_id: UUID,
        billing_cycle: str,
        statement: PartitionedStatement,
        categories: dict[int, CategoryMatch],
    ) -> tuple[list[Transaction], list[Transaction]]:
        itemized_rows = []
        for index, line in enumerate(statement.itemized):
            match = categories.get(index)
            itemized_rows.append(
                Transaction(
                    user_id=user_id,
                    date=line.date,
                    description=line.description,
                    amount=line.amount,
                    type=TransactionType.EXPENSE,
                    category_id=match.category_id if match else None,
                    billing_cycle=billing_cycle,
                    installment_current=line.installment_current,
                    installment_total=line.installment_total,
                    is_hidden=False,
                    is_credit_card_payment=False,
                )
            )
        hidden_rows = [
            Transaction(
                user_id=user_id,
                date=line.date,
                description=line.description,
                amount=line.amount,
                type=TransactionType.EXPENSE,
                billing_cycle=billing_cycle,
                is_hidden=True,
                is_credit_card_payment=False,
            )
            for line in statement.payment_received
        ]
        return itemized_rows, hidden_rows

    async def commit_import(
        self,
        *,
        user_id: UUID,
        billing_cycle: str,
        lines: Sequence[StatementLine],
        bill_payment_id: UUID | None = None,
        apply_auto_category: bool = True,
    ) -> ImportResult:
        """Persist a statement, expanding ``bill_payment_id`` when one was chosen.

        Payment-received lines are stored hidden. Without a bill the itemized
        rows are standalone and stay pending for reconciliation.
        """
        validate_billing_cycle(billing_cycle)
        if not lines:
            raise EmptyTransactionsError()

        statement = self.partition(lines)
        if not statement.itemized:
            raise EmptyTransactionsError("Statement has no itemized lines to import")

        if bill_payment_id is not None:
            bill = await self.store.find_bill_payment(bill_payment_id, user_id)
            if bill.is_expanded:
                raise BillAlreadyExpandedError(f"Bill payment {bill_payment_id} is already expanded")
        if await self.store.has_existing_import(user_id, billing_cycle):
            raise CycleAlreadyImportedError(f"Billing cycle {billing_cycle} was already imported")

        # Runs before the write transaction so no row lock is held meanwhile
        categories = await self._categorize(user_id, statement.itemized) if apply_auto_category else {}
        itemized_rows, hidden_rows = self._build_rows(user_id, billing_cycle, statement, categories)

        original_bill_amount: Decimal | None = None
        async with self.store.atomic():
            if await self.store.has_existing_import(user_id, billing_cycle):
                raise CycleAlreadyImportedError(
                    f"Billing cycle {billing_cycle} was already imported"
                )
            if bill_payment_id is not None:
                outcome = await self.lifecycle.expand(
                    user_id=user_id,
                    bill_payment_id=bill_payment_id,
                    billing_cycle=billing_cycle,
                    itemized=itemized_rows + hidden_rows,
                )
                original_bill_amount = outcome.original_amount
            else:
                await self.store.add_transactions(itemized_rows + hidden_rows)
            await self.store.record_import(
                user_id,
                billing_cycle,
                bill_payment_id=bill_payment_id,
                transaction_count=len(itemized_rows),
            )
            summaries = [ImportedTransactionSummary.model_validate(row) for row in itemized_rows]

        imported_at = datetime.now(UTC)
        logger.info(
            "Credit-card statement imported",
            user_id=str(user_id),
            billing_cycle=billing_cycle,
            bill_payment_id=str(bill_payment_id) if bill_payment_id else None,
            imported_count=len(itemized_rows),
            categorized_count=len(categories),
            hidden_count=len(hidden_rows),
        )
        return ImportResult(
            billing_cycle=billing_cycle,
            imported_count=len(itemized_rows),
            categorized_count=len(categories),
            hidden_count=len(hidden_rows),
            bill_payment_id=bill_payment_id,
            original_bill_amount=original_bill_amount,
            imported_at=imported_at,
            transactions=summaries,
        )

    async def collapse_expansion(self, *, user_id: UUID, bill_payment_id: UUID) -> CollapseResult:
        """Delete the bill's itemized transactions and restore its original amount."""
        outcome = await self.lifecycle.collapse(user_id=user_id, bill_payment_id=bill_payment_id)
        return CollapseResult(
            bill_payment_id=outcome.bill_payment_id,
            billing_cycle=outcome.billing_cycle,
            restored_amount=outcome.restored_amount,
            deleted_transactions=outcome.itemized_count,
            collapsed_at=outcome.collapsed_at,
        )

    async def get_status(
        self, *, user_id: UUID, billing_cycle: str | None = None
    ) -> CreditCardStatus:
        """Import/expansion state of a cycle; defaults to the latest imported cycle."""
        if billing_cycle is None:
            billing_cycle = (
                await self.store.latest_billing_cycle(user_id)
            ) or current_billing_cycle()
        validate_billing_cycle(billing_cycle)

        bill = await self.store.find_expanded_bill_for_cycle(user_id, billing_cycle)
        if bill is not None:
            rows = await self.store.get_linked_transactions(bill.id, include_hidden=False)
        else:
            rows = await self.store.get_cycle_transactions(user_id, billing_cycle)

        return CreditCardStatus(
            billing_cycle=billing_cycle,
            billing_cycle_display=format_billing_cycle_display(billing_cycle),
            is_expanded=bill is not None,
            bill_payment_id=bill.id if bill else None,
            bill_payment_date=bill.date if bill else None,
            bill_description=bill.description if bill else None,
            original_amount=bill.original_amount if bill else None,
            current_amount=bill.amount if bill else None,
            expanded_at=bill.expanded_at if bill else None,
            transaction_count=len(rows),
            transactions_total=sum((row.amount for row in rows), _ZERO),
            transactions=[ImportedTransactionSummary.model_validate(row) for row in rows],
        )
