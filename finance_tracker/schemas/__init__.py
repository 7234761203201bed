"""Pydantic schemas."""

from finance_tracker.schemas.base import BaseResponse, ListResponse
from finance_tracker.schemas.credit_card import (
    BillMatch,
    CollapseResult,
    CreditCardStatus,
    ImportedTransactionSummary,
    ImportPreview,
    ImportResult,
    StatementLine,
)
from finance_tracker.schemas.reconciliation import (
    AutoLinkedCycle,
    CycleState,
    LinkedBill,
    LinkedCycle,
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

__all__ = [
    "AutoLinkedCycle",
    "BaseResponse",
    "BillMatch",
    "CollapseResult",
    "CreditCardStatus",
    "CycleState",
    "ImportPreview",
    "ImportResult",
    "ImportedTransactionSummary",
    "LinkResult",
    "LinkedBill",
    "LinkedCycle",
    "ListResponse",
    "PendingCycle",
    "PendingReconciliation",
    "PotentialBill",
    "ReconciliationSummary",
    "SelectionRequiredCycle",
    "StatementLine",
    "TriggerResult",
    "TriggerSummary",
    "UnlinkResult",
    "UnmatchedCycle",
]
