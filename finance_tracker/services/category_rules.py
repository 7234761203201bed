"""Regex category rules applied to imported statement lines."""

import re
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from finance_tracker.logger import get_logger
from finance_tracker.models import Category, CategoryRule

logger = get_logger(__name__)


class CategoryRuleLookupError(Exception):
    """Raised when category rules cannot be loaded."""

    pass


@dataclass(frozen=True)
class CategoryMatch:
    category_id: UUID
    category_name: str
    rule_id: UUID


@dataclass(frozen=True)
class _CompiledRule:
    rule_id: UUID
    category_id: UUID
    category_name: str
    regex: re.Pattern[str]


class CategoryRuleMatcher:
    """Matches descriptions against a user's active rules, highest priority first.

    Rules are loaded once per user on first use. Call it before the write
    transaction starts: a failed lookup rolls the session back so the caller's
    later writes are not poisoned. Rules whose pattern does not compile are
    skipped with a warning.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db
        self._rules: dict[UUID, list[_CompiledRule]] = {}

    async def _load_rules(self, user_id: UUID) -> list[_CompiledRule]:
        cached = self._rules.get(user_id)
        if cached is not None:
            return cached

        stmt = (
            select(CategoryRule, Category.name)
            .join(Category, Category.id == CategoryRule.category_id)
            .where(CategoryRule.user_id == user_id, CategoryRule.is_active.is_(True))
            .order_by(CategoryRule.priority.desc(), CategoryRule.created_at)
        )
        try:
            rows = (await self.db.execute(stmt)).all()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise CategoryRuleLookupError(f"Failed to load category rules: {e}") from e

        compiled: list[_CompiledRule] = []
        for rule, category_name in rows:
            try:
                regex = re.compile(rule.pattern, re.IGNORECASE)
            except re.error as e:
                logger.warning(
                    "Skipping category rule with invalid pattern",
                    rule_id=str(rule.id),
                    pattern=rule.pattern,
                    error=str(e),
                )
                continue
            compiled.append(
                _CompiledRule(
                    rule_id=rule.id,
                    category_id=rule.category_id,
                    category_name=category_name,
                    regex=regex,
                )
            )

        self._rules[user_id] = compiled
        return compiled

    async def match(self, user_id: UUID, description: str) -> CategoryMatch | None:
        """Return the first rule match for ``description``, or None."""
        for rule in await self._load_rules(user_id):
            if rule.regex.search(description):
                logger.debug(
                    "Auto-categorized credit-card transaction",
                    description=description,
                    rule_id=str(rule.rule_id),
                    category_id=str(rule.category_id),
                    category_name=rule.category_name,
                )
                return CategoryMatch(
                    category_id=rule.category_id,
                    category_name=rule.category_name,
                    rule_id=rule.rule_id,
                )
        return None
