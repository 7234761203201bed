from datetime import date

import pytest

from finance_tracker.services.billing_cycle import (
    current_billing_cycle,
    cycle_month_bounds,
    format_billing_cycle_display,
    import_search_range,
    parse_billing_cycle,
    reconciliation_search_range,
    validate_billing_cycle,
)
from finance_tracker.utils.exceptions import InvalidBillingCycleError


@pytest.mark.parametrize("value", ["2024-11", "1999-01", "2025-12"])
def test_validate_accepts_year_month(value):
    assert validate_billing_cycle(value) == value


@pytest.mark.parametrize("value", ["2024-13", "2024-00", "2024-1", "24-11", "2024/11", "", None])
def test_validate_rejects_malformed(value):
    with pytest.raises(InvalidBillingCycleError) as exc_info:
        validate_billing_cycle(value)
    assert exc_info.value.code == "TXN-020001"


def test_parse_returns_year_and_month():
    assert parse_billing_cycle("2024-03") == (2024, 3)


def test_import_search_range_spans_three_months():
    assert import_search_range("2024-11") == (date(2024, 10, 1), date(2024, 12, 31))


def test_import_search_range_crosses_year_boundaries():
    assert import_search_range("2024-01") == (date(2023, 12, 1), date(2024, 2, 29))
    assert import_search_range("2024-12") == (date(2024, 11, 1), date(2025, 1, 31))


def test_reconciliation_search_range_widened_by_window():
    assert reconciliation_search_range("2024-11", 15) == (date(2024, 10, 17), date(2025, 1, 15))


def test_cycle_month_bounds():
    assert cycle_month_bounds("2023-02") == (date(2023, 2, 1), date(2023, 2, 28))


def test_display_uses_portuguese_month_names():
    assert format_billing_cycle_display("2024-11") == "Nov/2024"
    assert format_billing_cycle_display("2024-02") == "Fev/2024"
    assert format_billing_cycle_display("2024-12") == "Dez/2024"


def test_display_passes_invalid_values_through():
    assert format_billing_cycle_display("soon") == "soon"


def test_current_billing_cycle_formats_given_day():
    assert current_billing_cycle(date(2024, 7, 31)) == "2024-07"
