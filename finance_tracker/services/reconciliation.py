"""Billing-cycle reconciliation: link imported statements to bank bill payments.

Cycles imported without a bill ("pending") are matched against the user's
unexpanded bill payments. A cycle with exactly one high or medium confidence
candidate is linked automatically; everything else is left for a person to
choose through ``manual_link``. All writes go through ExpansionLifecycle.
"""

from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from finance_tracker.config import settings
from finance_tracker.logger import async_log_timing, get_logger
from finance_tracker.schemas.reconciliation import (
    AutoLinkedCycle,
    CycleState,
    LinkedBill,
    LinkedCycle,
    LinkedCycleListResponse,
    LinkResult,
    PendingCycle,
    PendingReconciliation,
    PotentialBill,
    ReconciliationSummary,
    SelectionRequiredCycle,
    TriggerResult,
    TriggerSummary,
    UnlinkResult,
    UnmatchedCycle,
)
from finance_tracker.services.billing_cycle import (
    format_billing_cycle_display,
    reconciliation_search_range,
    validate_billing_cycle,
)
from finance_tracker.services.expansion import ExpansionLifecycle
from finance_tracker.services.matching import (
    ConfidenceTier,
    MatchingProfile,
    MatchingProfiles,
    is_within_tolerance,
    load_matching_profiles,
    logging_sink,
    ranking_key,
    score_match,
)
from finance_tracker.services.transaction_store import (
    PendingCycleAggregate,
    TransactionStore,
)
from finance_tracker.utils.exceptions import (
    AmountMismatchError,
    BillAlreadyExpandedError,
    CycleAlreadyLinkedError,
    PendingNotFoundError,
    ReconciliationError,
)

logger = get_logger(__name__)

AUTO_LINK_CONFIDENCE = frozenset({ConfidenceTier.HIGH, ConfidenceTier.MEDIUM})


class ReconciliationService:
    """Classifies pending billing cycles and links them to bill payments."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        bill_payment_pattern: str | None = None,
        profiles: MatchingProfiles | None = None,
    ) -> None:
        self.db = db
        self.store = TransactionStore(
            db,
            bill_payment_pattern=bill_payment_pattern or settings.bill_payment_pattern,
        )
        self.lifecycle = ExpansionLifecycle(self.store)
        self.profiles = profiles or load_matching_profiles()

    @property
    def profile(self) -> MatchingProfile:
        return self.profiles.reconciliation

    async def _candidates(
        self, user_id: UUID, cycle: PendingCycleAggregate
    ) -> list[PotentialBill]:
        """Ranked bill payments matching the cycle total and reference date."""
        start, end = reconciliation_search_range(cycle.billing_cycle, self.profile.date_window_days)
        bills = await self.store.find_potential_bill_payments(user_id, start, end)
        sink = logging_sink(user_id=str(user_id), billing_cycle=cycle.billing_cycle)

        scored = []
        for bill in bills:
            result = score_match(
                bill.amount,
                cycle.total_amount,
                bill.date,
                cycle.reference_date,
                self.profile,
                sink,
            )
            if result.is_match:
                scored.append((result, bill))
        scored.sort(key=lambda item: ranking_key(item[0]))

        return [
            PotentialBill(
                id=bill.id,
                date=bill.date,
                description=bill.description,
                amount=bill.amount,
                category_name=bill.category_name,
                score=result.score,
                confidence=result.confidence,
                amount_difference=result.amount_difference,
                amount_difference_percent=result.amount_difference_percent,
                date_difference_days=result.date_difference_days,
            )
            for result, bill in scored
        ]

    # ------------------------------------------------------------------
    # Trigger
    # ------------------------------------------------------------------

    async def trigger_reconciliation(
        self, *, user_id: UUID, billing_cycle: str | None = None
    ) -> TriggerResult:
        """Auto-link unambiguous pending cycles and classify the rest.

        Each auto-link commits on its own, so interrupting the sweep leaves
        every cycle processed so far in a final state.
        """
        if billing_cycle is not None:
            validate_billing_cycle(billing_cycle)

        result = TriggerResult(
            summary=TriggerSummary(processed=0, auto_linked=0, requires_selection=0, no_match=0)
        )

        async with async_log_timing(
            "trigger_reconciliation",
            logger=logger,
            user_id=str(user_id),
            billing_cycle=billing_cycle,
        ) as timing:
            if billing_cycle is not None and await self.store.find_cycle_bill_id(
                user_id, billing_cycle
            ):
                logger.info(
                    "Billing cycle already linked, nothing to reconcile",
                    user_id=str(user_id),
                    billing_cycle=billing_cycle,
                )
                return result

            cycles = await self.store.pending_cycles(user_id, billing_cycle)
            for cycle in cycles:
                await self._process_cycle(user_id, cycle, result)

            result.summary = TriggerSummary(
                processed=len(cycles),
                auto_linked=len(result.auto_linked),
                requires_selection=len(result.requires_selection),
                no_match=len(result.no_match),
            )
            timing["processed"] = result.summary.processed
            timing["auto_linked"] = result.summary.auto_linked

        return result

    async def _process_cycle(
        self, user_id: UUID, cycle: PendingCycleAggregate, result: TriggerResult
    ) -> None:
        candidates = await self._candidates(user_id, cycle)

        if not candidates:
            result.no_match.append(
                UnmatchedCycle(
                    billing_cycle=cycle.billing_cycle,
                    transaction_count=cycle.transaction_count,
                    total_amount=cycle.total_amount,
                )
            )
            return

        if len(candidates) == 1 and candidates[0].confidence in AUTO_LINK_CONFIDENCE:
            candidate = candidates[0]
            try:
                outcome = await self.lifecycle.link_cycle(
                    user_id=user_id,
                    bill_payment_id=candidate.id,
                    billing_cycle=cycle.billing_cycle,
                )
            except ReconciliationError as e:
                logger.warning(
                    "Auto-link failed, cycle needs manual selection",
                    user_id=str(user_id),
                    billing_cycle=cycle.billing_cycle,
                    bill_payment_id=str(candidate.id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.requires_selection.append(
                    SelectionRequiredCycle(
                        billing_cycle=cycle.billing_cycle,
                        transaction_count=cycle.transaction_count,
                        total_amount=cycle.total_amount,
                        candidates=candidates,
                        error=e.message,
                    )
                )
                return

            result.auto_linked.append(
                AutoLinkedCycle(
                    billing_cycle=cycle.billing_cycle,
                    bill_payment_id=candidate.id,
                    transaction_count=outcome.itemized_count,
                    amount_difference=cycle.total_amount - abs(outcome.original_amount),
                    confidence=candidate.confidence,
                )
            )
            return

        result.requires_selection.append(
            SelectionRequiredCycle(
                billing_cycle=cycle.billing_cycle,
                transaction_count=cycle.transaction_count,
                total_amount=cycle.total_amount,
                candidates=candidates,
            )
        )

    # ------------------------------------------------------------------
    # Manual link / unlink
    # ------------------------------------------------------------------

    async def manual_link(
        self,
        *,
        user_id: UUID,
        billing_cycle: str,
        bill_payment_id: UUID,
        force: bool = False,
    ) -> LinkResult:
        """Link a pending cycle to a chosen bill payment.

        Amounts outside the reconciliation tolerance are refused unless
        ``force`` is set, in which case the mismatch is reported, not blocked.
        """
        validate_billing_cycle(billing_cycle)

        pending = await self.store.pending_cycles(user_id, billing_cycle)
        if not pending:
            raise PendingNotFoundError(
                f"No pending transactions found for billing cycle {billing_cycle}"
            )
        cycle = pending[0]

        if await self.store.find_cycle_bill_id(user_id, billing_cycle):
            raise CycleAlreadyLinkedError(f"Billing cycle {billing_cycle} is already linked")

        bill = await self.store.find_bill_payment(bill_payment_id, user_id)
        if bill.is_expanded:
            raise BillAlreadyExpandedError(f"Bill payment {bill_payment_id} is already expanded")

        bill_amount = bill.amount
        amount_difference = cycle.total_amount - abs(bill_amount)
        has_mismatch = not is_within_tolerance(cycle.total_amount, bill_amount, self.profile)
        if has_mismatch and not force:
            raise AmountMismatchError(
                f"Cycle total {cycle.total_amount} differs from bill amount "
                f"{abs(bill_amount)} by {amount_difference}"
            )

        outcome = await self.lifecycle.link_cycle(
            user_id=user_id,
            bill_payment_id=bill_payment_id,
            billing_cycle=billing_cycle,
        )
        if has_mismatch:
            logger.warning(
                "Billing cycle force-linked despite amount mismatch",
                user_id=str(user_id),
                billing_cycle=billing_cycle,
                bill_payment_id=str(bill_payment_id),
                amount_difference=str(amount_difference),
            )

        return LinkResult(
            billing_cycle=billing_cycle,
            bill_payment_id=bill_payment_id,
            transactions_linked=outcome.itemized_count,
            amount_difference=amount_difference,
            has_mismatch=has_mismatch,
            linked_at=outcome.expanded_at,
        )

    async def unlink(self, *, user_id: UUID, billing_cycle: str) -> UnlinkResult:
        """Detach a linked cycle from its bill; the cycle becomes pending again."""
        validate_billing_cycle(billing_cycle)

        bill_id = await self.store.find_cycle_bill_id(user_id, billing_cycle)
        if bill_id is None:
            raise PendingNotFoundError(
                f"Billing cycle {billing_cycle} is not linked to any bill payment"
            )

        outcome = await self.lifecycle.collapse(
            user_id=user_id,
            bill_payment_id=bill_id,
            keep_itemized=True,
        )
        return UnlinkResult(
            billing_cycle=billing_cycle,
            bill_payment_id=bill_id,
            transactions_unlinked=outcome.itemized_count,
            restored_amount=outcome.restored_amount,
        )

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def get_summary(self, *, user_id: UUID) -> ReconciliationSummary:
        pending = await self.store.pending_cycles(user_id)
        linked = await self.store.linked_cycles(user_id)
        return ReconciliationSummary(
            total_pending=len(pending),
            total_linked=len({item.billing_cycle for item in linked}),
            months_covered=await self.store.months_covered(user_id),
        )

    async def get_pending(
        self, *, user_id: UUID, limit: int = 12, offset: int = 0
    ) -> PendingReconciliation:
        """Pending cycles, newest first, each with its ranked candidate bills."""
        cycles = await self.store.pending_cycles(user_id)
        page = cycles[offset : offset + limit]

        items = []
        for cycle in page:
            candidates = await self._candidates(user_id, cycle)
            items.append(
                PendingCycle(
                    billing_cycle=cycle.billing_cycle,
                    display_name=format_billing_cycle_display(cycle.billing_cycle),
                    transaction_count=cycle.transaction_count,
                    total_amount=cycle.total_amount,
                    oldest_date=cycle.oldest_date,
                    newest_date=cycle.newest_date,
                    reference_date=cycle.reference_date,
                    state=CycleState.PENDING if candidates else CycleState.UNMATCHED,
                    potential_bills=candidates,
                )
            )

        return PendingReconciliation(
            items=items,
            total=len(cycles),
            summary=await self.get_summary(user_id=user_id),
        )

    async def get_linked(
        self, *, user_id: UUID, limit: int = 12, offset: int = 0
    ) -> LinkedCycleListResponse:
        """Linked cycles with the residual difference between cycle total and bill."""
        linked = await self.store.linked_cycles(user_id)
        page = linked[offset : offset + limit]

        items = []
        for cycle in page:
            bill_amount = cycle.bill.reference_amount
            has_mismatch = not is_within_tolerance(cycle.total_amount, bill_amount, self.profile)
            items.append(
                LinkedCycle(
                    billing_cycle=cycle.billing_cycle,
                    display_name=format_billing_cycle_display(cycle.billing_cycle),
                    transaction_count=cycle.transaction_count,
                    total_amount=cycle.total_amount,
                    bill=LinkedBill(
                        id=cycle.bill.id,
                        date=cycle.bill.date,
                        description=cycle.bill.description,
                        original_amount=bill_amount,
                        category_name=cycle.bill.category_name,
                    ),
                    amount_difference=cycle.total_amount - abs(bill_amount),
                    has_mismatch=has_mismatch,
                    state=CycleState.MISMATCHED if has_mismatch else CycleState.LINKED,
                )
            )

        return LinkedCycleListResponse(items=items, total=len(linked))
