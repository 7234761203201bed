"""Billing-cycle (YYYY-MM) parsing, validation and date windows."""

import calendar
import re
from datetime import UTC, date, datetime, timedelta

from finance_tracker.utils.exceptions import InvalidBillingCycleError

BILLING_CYCLE_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

# Short month names as printed on Brazilian card statements
MONTH_ABBREVIATIONS = (
    "Jan",
    "Fev",
    "Mar",
    "Abr",
    "Mai",
    "Jun",
    "Jul",
    "Ago",
    "Set",
    "Out",
    "Nov",
    "Dez",
)


def is_valid_billing_cycle(value: str | None) -> bool:
    return bool(value) and BILLING_CYCLE_PATTERN.match(value) is not None


def validate_billing_cycle(value: str | None) -> str:
    """Return the cycle unchanged, or raise InvalidBillingCycleError."""
    if not is_valid_billing_cycle(value):
        raise InvalidBillingCycleError(f"Invalid billing cycle {value!r}, expected YYYY-MM")
    return value  # type: ignore[return-value]


def parse_billing_cycle(value: str) -> tuple[int, int]:
    """Return (year, month) for a valid cycle."""
    validate_billing_cycle(value)
    year, month = value.split("-")
    return int(year), int(month)


def current_billing_cycle(today: date | None = None) -> str:
    today = today or datetime.now(UTC).date()
    return f"{today.year:04d}-{today.month:02d}"


def _first_day(year: int, month: int) -> date:
    return date(year, month, 1)


def _last_day(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def cycle_month_bounds(value: str) -> tuple[date, date]:
    year, month = parse_billing_cycle(value)
    return _first_day(year, month), _last_day(year, month)


def import_search_range(value: str) -> tuple[date, date]:
    """First day of the previous month through the last day of the next month."""
    year, month = parse_billing_cycle(value)
    start = _first_day(*_shift_month(year, month, -1))
    end = _last_day(*_shift_month(year, month, 1))
    return start, end


def reconciliation_search_range(value: str, window_days: int) -> tuple[date, date]:
    """Cycle month through the end of the next month, widened by the date window on both sides."""
    year, month = parse_billing_cycle(value)
    start = _first_day(year, month) - timedelta(days=window_days)
    end = _last_day(*_shift_month(year, month, 1)) + timedelta(days=window_days)
    return start, end


def format_billing_cycle_display(value: str) -> str:
    """'2024-11' -> 'Nov/2024'. Invalid input is returned unchanged."""
    if not is_valid_billing_cycle(value):
        return value
    year, month = parse_billing_cycle(value)
    return f"{MONTH_ABBREVIATIONS[month - 1]}/{year}"
