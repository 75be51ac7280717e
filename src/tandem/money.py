"""Money conversion helpers using fixed micro-unit precision."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN

from .errors import ValidationError


MICROS_PER_UNIT = 1_000_000
_UNIT_QUANT = Decimal("0.000001")


def to_decimal(value: Decimal | float | int | str, field: str = "value") -> Decimal:
    """Parse an amount into a Decimal, going through str() for floats."""
    if isinstance(value, bool):
        raise ValidationError(field, "amount must be numeric")
    try:
        dec = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(field, f"invalid amount {value!r}") from e
    if not dec.is_finite():
        raise ValidationError(field, f"invalid amount {value!r}")
    return dec


def amount_to_micros(value: Decimal | float | int | str) -> int:
    """Convert an amount to integer micro-units (banker's rounding)."""
    dec = to_decimal(value).quantize(_UNIT_QUANT, rounding=ROUND_HALF_EVEN)
    return int(dec * MICROS_PER_UNIT)


def micros_to_decimal(value: int) -> Decimal:
    """Convert integer micro-units back to a Decimal amount."""
    return (Decimal(value) / Decimal(MICROS_PER_UNIT)).quantize(_UNIT_QUANT)


def decimal_to_wire(value: Decimal) -> float:
    """JSON number for an amount."""
    return float(value)


def format_amount(value: Decimal, currency: str = "USD") -> str:
    """Format an amount for display, e.g. ``$12.50`` or ``12.50 EUR``."""
    quantized = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_EVEN)
    if currency.upper() == "USD":
        return f"${quantized}"
    return f"{quantized} {currency.upper()}"
