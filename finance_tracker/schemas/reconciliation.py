"""Pydantic schemas for billing-cycle reconciliation."""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field

from finance_tracker.schemas.base import ListResponse
from finance_tracker.services.matching import ConfidenceTier


class CycleState(str, Enum):
    """Reconciliation state of one billing cycle."""

    PENDING = "pending"
    LINKED = "linked"
    MISMATCHED = "mismatched"
    UNMATCHED = "unmatched"


class PotentialBill(BaseModel):
    """Candidate bill payment for a pending cycle, with its match score."""

    id: UUID
    date: date
    description: str
    amount: Decimal
    category_name: str | None = None
    score: float
    confidence: ConfidenceTier
    amount_difference: Decimal
    amount_difference_percent: Decimal | None
    date_difference_days: int


class PendingCycle(BaseModel):
    billing_cycle: str
    display_name: str
    transaction_count: int
    total_amount: Decimal
    oldest_date: date
    newest_date: date
    reference_date: date
    state: CycleState
    potential_bills: list[PotentialBill] = Field(default_factory=list)


class LinkedBill(BaseModel):
    id: UUID
    date: date
    description: str
    original_amount: Decimal
    category_name: str | None = None


class LinkedCycle(BaseModel):
    billing_cycle: str
    display_name: str
    transaction_count: int
    total_amount: Decimal
    bill: LinkedBill
    # cycle total minus the bill's original magnitude
    amount_difference: Decimal
    has_mismatch: bool
    state: CycleState


class ReconciliationSummary(BaseModel):
    total_pending: int
    total_linked: int
    months_covered: int


class PendingReconciliation(ListResponse[PendingCycle]):
    summary: ReconciliationSummary


LinkedCycleListResponse = ListResponse[LinkedCycle]


class AutoLinkedCycle(BaseModel):
    billing_cycle: str
    bill_payment_id: UUID
    transaction_count: int
    amount_difference: Decimal
    confidence: ConfidenceTier


class SelectionRequiredCycle(BaseModel):
    """Cycle with ambiguous or low-confidence candidates; a person must choose."""

    billing_cycle: str
    transaction_count: int
    total_amount: Decimal
    candidates: list[PotentialBill]
    error: str | None = None


class UnmatchedCycle(BaseModel):
    billing_cycle: str
    transaction_count: int
    total_amount: Decimal


class TriggerSummary(BaseModel):
    processed: int
    auto_linked: int
    requires_selection: int
    no_match: int


class TriggerResult(BaseModel):
    auto_linked: list[AutoLinkedCycle] = Field(default_factory=list)
    requires_selection: list[SelectionRequiredCycle] = Field(default_factory=list)
    no_match: list[UnmatchedCycle] = Field(default_factory=list)
    summary: TriggerSummary


class LinkResult(BaseModel):
    billing_cycle: str
    bill_payment_id: UUID
    transactions_linked: int
    amount_difference: Decimal
    has_mismatch: bool
    linked_at: datetime


class UnlinkResult(BaseModel):
    billing_cycle: str
    bill_payment_id: UUID
    transactions_unlinked: int
    restored_amount: Decimal
