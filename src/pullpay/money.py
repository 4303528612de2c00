"""Amount conversion helpers using integer base units."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_CEILING, ROUND_FLOOR


CENTS_PER_DOLLAR = 100
_CENT_QUANT = Decimal("0.01")


def _to_decimal(value: Decimal | float | int | str) -> Decimal:
    try:
        return Decimal(str(value).strip().lstrip("$"))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def amount_to_cents(value: Decimal | float | int | str) -> int:
    """Convert a charge amount in dollars to cents, rounding up (conservative)."""
    dec = _to_decimal(value).quantize(_CENT_QUANT, rounding=ROUND_CEILING)
    return int(dec * CENTS_PER_DOLLAR)


def limit_to_cents(value: Decimal | float | int | str) -> int:
    """Convert a cap in dollars to cents, rounding down (conservative)."""
    dec = _to_decimal(value).quantize(_CENT_QUANT, rounding=ROUND_FLOOR)
    return int(dec * CENTS_PER_DOLLAR)


def cents_to_decimal(value: int) -> Decimal:
    return (Decimal(value) / Decimal(CENTS_PER_DOLLAR)).quantize(_CENT_QUANT)


def format_cents(value: int) -> str:
    """Format integer cents as a currency string."""
    return f"${cents_to_decimal(value):.2f}"
