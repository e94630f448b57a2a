from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from billing_backend.app.billing.models import BillingCycle
from billing_backend.app.billing.money import (
    add_days,
    add_months,
    compute_tax,
    compute_total,
    end_of_cycle,
    quantize,
    to_decimal,
)


def test_to_decimal_keeps_float_literal_precision():
    assert to_decimal(109.99) == Decimal("109.99")
    assert to_decimal("110.00") == Decimal("110.00")
    assert to_decimal(5) == Decimal("5")


@pytest.mark.parametrize("value", [True, "ten", None])
def test_to_decimal_rejects_non_amounts(value):
    with pytest.raises(ValueError):
        to_decimal(value)


def test_tax_and_total_are_rounded_half_up_to_cents():
    assert compute_tax(Decimal("100.00"), Decimal("0.10")) == Decimal("10.00")
    assert compute_tax(Decimal("0.05"), Decimal("0.10")) == Decimal("0.01")
    assert compute_total(Decimal("30.00"), Decimal("3.00")) == Decimal("33.00")
    assert compute_total(Decimal("30.00"), Decimal("3.00"), Decimal("5.50")) == Decimal("27.50")
    assert quantize(Decimal("1.005")) == Decimal("1.01")


def test_add_months_clamps_to_month_end():
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
    assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
    assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)
    assert add_months(date(2024, 2, 29), 12) == date(2025, 2, 28)


def test_end_of_cycle_is_calendar_aware():
    start = datetime(2024, 1, 31, 10, tzinfo=timezone.utc)

    assert end_of_cycle(start, BillingCycle.MONTHLY) == datetime(2024, 2, 29, 10, tzinfo=timezone.utc)
    assert end_of_cycle(start, BillingCycle.QUARTERLY) == datetime(2024, 4, 30, 10, tzinfo=timezone.utc)
    assert end_of_cycle(start, BillingCycle.YEARLY) == datetime(2025, 1, 31, 10, tzinfo=timezone.utc)


def test_add_days_crosses_month_boundaries():
    assert add_days(date(2024, 1, 31), 14) == date(2024, 2, 14)
