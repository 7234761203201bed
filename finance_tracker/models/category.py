"""Category and category-rule models."""

from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from finance_tracker.database import Base
from finance_tracker.models.base import TimestampMixin, UserOwnedMixin, UUIDMixin


class Category(Base, UUIDMixin, UserOwnedMixin, TimestampMixin):
    """Spending category."""

    __tablename__ = "categories"

    name: Mapped[str] = mapped_column(String(100), nullable=False)


class CategoryRule(Base, UUIDMixin, UserOwnedMixin, TimestampMixin):
    """Case-insensitive description pattern that assigns a category.

    Rules are evaluated by descending priority; the first match wins.
    """

    __tablename__ = "category_rules"

    category_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("categories.id", ondelete="CASCADE"),
        nullable=False,
    )
    pattern: Mapped[str] = mapped_column(String(255), nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
