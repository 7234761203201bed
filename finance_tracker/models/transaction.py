"""Transaction model: bank-side bill payments and imported credit-card lines."""

from datetime import date as date_type
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    DECIMAL,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from finance_tracker.database import Base
from finance_tracker.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin


class TransactionType(str, Enum):
    """Direction of a transaction."""

    EXPENSE = "expense"
    INCOME = "income"


class Transaction(Base, UUIDMixin, UserOwnedMixin, TimestampMixin):
    """A single money movement owned by one user.

    A bill payment is a transaction that settles a credit card. While it is
    expanded, ``expanded_at`` is set, ``original_amount`` keeps the exact
    pre-expansion amount and ``amount`` is zero; the itemized statement lines
    point back at it through ``credit_card_payment_id``.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint(
            "(installment_current IS NULL AND installment_total IS NULL) OR "
            "(installment_current > 0 AND installment_current <= installment_total)",
            name="ck_transactions_installment_range",
        ),
        Index("ix_transactions_user_billing_cycle", "user_id", "billing_cycle"),
        Index("ix_transactions_credit_card_payment_id", "credit_card_payment_id"),
    )

    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    amount: Mapped[Decimal] = mapped_column(DECIMAL(18, 2), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SQLEnum(
            TransactionType,
            name="transaction_type_enum",
            values_callable=lambda enum: [item.value for item in enum],
        ),
        nullable=False,
        default=TransactionType.EXPENSE,
    )
    category_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("categories.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Credit-card reconciliation
    is_credit_card_payment: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    credit_card_payment_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("transactions.id", ondelete="SET NULL"),
        nullable=True,
    )
    billing_cycle: Mapped[str | None] = mapped_column(String(7), nullable=True)
    original_amount: Mapped[Decimal | None] = mapped_column(DECIMAL(18, 2), nullable=True)
    expanded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    installment_current: Mapped[int | None] = mapped_column(Integer, nullable=True)
    installment_total: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_hidden: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Optimistic concurrency: every ORM UPDATE/DELETE checks and bumps this
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_expanded(self) -> bool:
        return self.expanded_at is not None

    def __repr__(self) -> str:
        return (
            f"<Transaction id={self.id} date={self.date} amount={self.amount} "
            f"cycle={self.billing_cycle}>"
        )
