"""Domain exceptions for credit-card import and reconciliation.

Every error carries a stable ``code`` so a request layer can map it without
parsing messages. Storage failures never escape raw: they are wrapped in
``InternalError`` with the original exception chained as ``__cause__``.
"""

from typing import NoReturn


class ReconciliationError(Exception):
    """Base exception for credit-card import and reconciliation errors."""

    code = "TXN-990000"
    default_message = "Reconciliation error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class InvalidBillingCycleError(ReconciliationError):
    """Billing cycle is not a YYYY-MM month."""

    code = "TXN-020001"
    default_message = "Invalid billing cycle format, expected YYYY-MM"


class EmptyTransactionsError(ReconciliationError):
    code = "TXN-020002"
    default_message = "No statement lines provided"


class BillPaymentNotFoundError(ReconciliationError):
    code = "TXN-020003"
    default_message = "Bill payment transaction not found"


class BillPaymentNotOwnedError(ReconciliationError):
    code = "TXN-020004"
    default_message = "Bill payment does not belong to this user"


class BillAlreadyExpandedError(ReconciliationError):
    """Raised when expanding a bill payment that already has itemized transactions."""

    code = "TXN-020005"
    default_message = "Bill payment is already expanded"


class BillNotExpandedError(ReconciliationError):
    code = "TXN-020006"
    default_message = "Bill payment is not expanded"


class CycleAlreadyImportedError(ReconciliationError):
    """Raised when a statement for the billing cycle was already committed."""

    code = "TXN-020007"
    default_message = "Billing cycle already has imported transactions"


class CycleAlreadyLinkedError(ReconciliationError):
    code = "TXN-030001"
    default_message = "Billing cycle is already linked to a bill payment"


class AmountMismatchError(ReconciliationError):
    """Manual link refused because amounts fall outside tolerance and force was not set."""

    code = "TXN-030002"
    default_message = "Amount difference exceeds tolerance"


class PendingNotFoundError(ReconciliationError):
    code = "TXN-030003"
    default_message = "No pending transactions found for billing cycle"


class InternalError(ReconciliationError):
    """Infrastructure failure (database, driver) wrapped for callers."""

    code = "TXN-990001"
    default_message = "Internal error"


class ConcurrentModificationError(ReconciliationError):
    """Another writer changed the bill payment between read and write."""

    code = "TXN-990002"
    default_message = "Bill payment was modified concurrently, retry the operation"


def raise_internal_error(detail: str, *, cause: Exception | None = None) -> NoReturn:
    raise InternalError(detail) from cause


def raise_concurrent_modification(detail: str, *, cause: Exception | None = None) -> NoReturn:
    raise ConcurrentModificationError(detail) from cause
