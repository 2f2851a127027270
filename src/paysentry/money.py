"""Amount helpers. Amounts are Decimal in major currency units."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation


ZERO = Decimal("0")
DEFAULT_TOKEN_DECIMALS = 6
NATIVE_TOKEN_DECIMALS = 18


def to_amount(value: Decimal | float | int | str) -> Decimal:
    """Convert an amount to Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def base_units_to_amount(raw: str | int | None, decimals: int) -> Decimal:
    """Convert a raw base-unit integer string (e.g. '1500000') to major units.

    Missing or unparsable values map to zero. Negative or fractional base
    units raise ValueError.
    """
    if raw is None or raw == "":
        return ZERO
    try:
        units = Decimal(str(raw))
    except InvalidOperation:
        return ZERO
    if units.is_nan() or units.is_infinite():
        return ZERO
    if units < 0:
        raise ValueError(f"Base-unit amount must be non-negative, got {raw!r}")
    if units != units.to_integral_value():
        raise ValueError(f"Base-unit amount must be a whole number, got {raw!r}")
    return units / (Decimal(10) ** decimals)


def format_amount(amount: Decimal | float | int | str, currency: str) -> str:
    """Format an amount for human-readable reasons, e.g. '45.00 USD'."""
    return f"{to_amount(amount):.2f} {currency}"
