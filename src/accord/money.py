"""Conversion between decimal price strings and integer base units."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR


def _to_decimal(value: Decimal | float | int | str) -> Decimal:
    try:
        dec = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e
    if not dec.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return dec


def amount_to_base_units(value: Decimal | float | int | str, decimals: int = 0) -> int:
    """Convert a spend amount to base units, rounding up (conservative)."""
    dec = _to_decimal(value) * (Decimal(10) ** decimals)
    return int(dec.to_integral_value(rounding=ROUND_CEILING))


def limit_to_base_units(value: Decimal | float | int | str, decimals: int = 0) -> int:
    """Convert a budget limit to base units, rounding down (conservative)."""
    dec = _to_decimal(value) * (Decimal(10) ** decimals)
    return int(dec.to_integral_value(rounding=ROUND_FLOOR))
