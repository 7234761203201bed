"""Pydantic schemas for credit-card statement import."""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from finance_tracker.schemas.base import BaseResponse
from finance_tracker.services.matching import ConfidenceTier


class StatementLine(BaseModel):
    """One parsed row of a credit-card statement."""

    date: date
    description: str = Field(..., min_length=1, max_length=500)
    amount: Decimal = Field(..., max_digits=18, decimal_places=2)
    installment_current: int | None = Field(default=None, ge=1)
    installment_total: int | None = Field(default=None, ge=1)

    @field_validator("description")
    @classmethod
    def strip_description(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("description must not be blank")
        return stripped

    @model_validator(mode="after")
    def check_installments(self) -> "StatementLine":
        current, total = self.installment_current, self.installment_total
        if (current is None) != (total is None):
            raise ValueError("installment_current and installment_total must be given together")
        if current is not None and total is not None and current > total:
            raise ValueError("installment_current must not exceed installment_total")
        return self


class BillMatch(BaseModel):
    """A bank bill payment that plausibly paid the statement."""

    bill_payment_id: UUID
    bill_payment_date: date
    bill_payment_amount: Decimal
    bill_description: str
    category_name: str | None = None
    cc_payment_date: date
    cc_payment_amount: Decimal
    amount_difference: Decimal
    amount_difference_percent: Decimal | None
    date_difference_days: int
    confidence: ConfidenceTier
    match_score: float


class ImportPreview(BaseModel):
    """Read-only result of previewing a statement import."""

    billing_cycle: str
    billing_cycle_display: str
    total_transactions: int
    total_amount: Decimal
    payment_received_amount: Decimal
    reference_date: date | None
    potential_matches: list[BillMatch] = Field(default_factory=list)
    transactions_to_import: list[StatementLine] = Field(default_factory=list)
    has_existing_import: bool = False


class ImportedTransactionSummary(BaseResponse):
    id: UUID
    date: date
    description: str
    amount: Decimal
    category_id: UUID | None = None
    installment_current: int | None = None
    installment_total: int | None = None


class ImportResult(BaseModel):
    """Result of committing a statement import."""

    billing_cycle: str
    imported_count: int
    categorized_count: int
    hidden_count: int = 0
    bill_payment_id: UUID | None = None
    # Signed amount of the bill before expansion; None for standalone imports
    original_bill_amount: Decimal | None = None
    imported_at: datetime
    transactions: list[ImportedTransactionSummary] = Field(default_factory=list)


class CollapseResult(BaseModel):
    bill_payment_id: UUID
    billing_cycle: str | None
    restored_amount: Decimal
    deleted_transactions: int
    collapsed_at: datetime


class CreditCardStatus(BaseModel):
    """Import/expansion state of one billing cycle."""

    billing_cycle: str
    billing_cycle_display: str
    is_expanded: bool
    bill_payment_id: UUID | None = None
    bill_payment_date: date | None = None
    bill_description: str | None = None
    original_amount: Decimal | None = None
    current_amount: Decimal | None = None
    expanded_at: datetime | None = None
    transaction_count: int = 0
    transactions_total: Decimal = Decimal("0")
    transactions: list[ImportedTransactionSummary] = Field(default_factory=list)
