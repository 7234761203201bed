"""Credit-card statement import record."""

from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from finance_tracker.database import Base
from finance_tracker.models.base import UserOwnedMixin, UUIDMixin


class CreditCardImport(Base, UUIDMixin, UserOwnedMixin):
    """One committed statement per user and billing cycle.

    The unique constraint is what rejects a second commit of the same cycle,
    including two commits racing each other.
    """

    __tablename__ = "credit_card_imports"
    __table_args__ = (
        UniqueConstraint("user_id", "billing_cycle", name="uq_credit_card_imports_user_cycle"),
    )

    billing_cycle: Mapped[str] = mapped_column(String(7), nullable=False)
    bill_payment_id: Mapped[UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("transactions.id", ondelete="SET NULL"),
        nullable=True,
    )
    transaction_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    imported_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
