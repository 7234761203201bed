"""SQLAlchemy models package."""

from finance_tracker.models.category import Category, CategoryRule
from finance_tracker.models.credit_card_import import CreditCardImport
from finance_tracker.models.transaction import Transaction, TransactionType

__all__ = [
    "Category",
    "CategoryRule",
    "CreditCardImport",
    "Transaction",
    "TransactionType",
]
