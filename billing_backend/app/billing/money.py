"""Exact decimal money arithmetic and billing calendar math."""
from __future__ import annotations

from calendar import monthrange
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, TypeVar, Union

if TYPE_CHECKING:  # pragma: no cover
    from .models import BillingCycle

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

_D = TypeVar("_D", date, datetime)


def to_decimal(value: Union[Decimal, int, str, float]) -> Decimal:
    """Coerce a caller supplied amount to :class:`Decimal` without float drift."""

    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not a monetary amount")
    try:
        # floats go through str() so 109.99 stays 109.99
        return Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Invalid monetary amount: {value!r}") from exc


def quantize(value: Decimal) -> Decimal:
    """Round to cents using half-up rounding."""

    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def compute_tax(amount: Decimal, rate: Decimal) -> Decimal:
    return quantize(amount * rate)


def compute_total(amount: Decimal, tax_amount: Decimal, discount_amount: Decimal = ZERO) -> Decimal:
    return quantize(amount + tax_amount - discount_amount)


def add_months(value: _D, months: int) -> _D:
    """Add calendar months, clamping the day to the end of the target month."""

    total_months = value.month - 1 + months
    year = value.year + total_months // 12
    month = total_months % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def add_days(value: _D, days: int) -> _D:
    return value + timedelta(days=days)


def end_of_cycle(start: _D, cycle: "BillingCycle") -> _D:
    """Return the end of one billing cycle starting at ``start``."""

    return add_months(start, cycle.months)


__all__ = [
    "CENT",
    "ZERO",
    "add_days",
    "add_months",
    "compute_tax",
    "compute_total",
    "end_of_cycle",
    "quantize",
    "to_decimal",
]
