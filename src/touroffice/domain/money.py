"""Money helpers. Amounts are integer minor units (cents).

Fractional intermediate values use Decimal and are rounded half-up to the
cent; binary floats never touch a stored amount.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_HUNDRED = Decimal(100)


def to_decimal(value: int | str | float | Decimal) -> Decimal:
    """Convert user input to Decimal without float artifacts.

    Floats go through ``str`` so 0.1 becomes Decimal("0.1").

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError("boolean is not an amount")
    try:
        result = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"not a number: {value!r}") from e
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def round_cents(value: Decimal) -> int:
    """Round a Decimal number of cents half-up to a whole cent."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def dollars_to_cents(amount: int | str | float | Decimal) -> int:
    """Major units (e.g. 12.345) to cents, half-up (1235)."""
    return round_cents(to_decimal(amount) * _HUNDRED)


def percent_of(cents: int, percent: Decimal) -> int:
    """``percent`` % of ``cents``, rounded half-up to the cent."""
    return round_cents(Decimal(cents) * percent / _HUNDRED)
