"""
Fixed-point money helpers.

Ledger amounts are Decimals with two fractional digits (currency subunits).
Never use float for money.
"""
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

SUBUNIT = Decimal("0.01")

# Largest amount whose subunit count fits a signed 64-bit column.
MAX_AMOUNT = Decimal(2**63 - 1) * SUBUNIT

AmountLike = Union[Decimal, int, str]


def _to_decimal(value: AmountLike) -> Decimal:
    if isinstance(value, float):
        raise ValueError("Money amounts must not be floats")
    try:
        amount = Decimal(value) if not isinstance(value, Decimal) else value
    except (InvalidOperation, TypeError) as e:
        raise ValueError(f"Invalid money amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Invalid money amount: {value!r}")
    return amount


def to_amount(value: AmountLike) -> Decimal:
    """
    Coerce a value to a two-place Decimal, rounding half up.

    Used for amounts the ledger computes itself. Caller-supplied amounts go
    through ``parse_amount``.

    Floats are rejected: binary floating point cannot represent most
    currency amounts exactly.

    Raises:
        ValueError: If the value is not a finite number that fits two places
    """
    amount = _to_decimal(value)
    try:
        return amount.quantize(SUBUNIT, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"Money amount out of range: {value!r}") from e


def parse_amount(value: AmountLike, max_amount: Decimal = MAX_AMOUNT) -> Decimal:
    """
    Parse an amount supplied from outside the ledger.

    Unlike ``to_amount`` nothing is rounded: more than two fractional
    digits is an error.

    Raises:
        ValueError: Not a finite number, finer than a subunit, or above
            ``max_amount`` in magnitude
    """
    amount = _to_decimal(value)
    if abs(amount) > max_amount:
        raise ValueError(f"Amount exceeds the maximum of {max_amount}")
    quantized = amount.quantize(SUBUNIT)
    if quantized != amount:
        raise ValueError("Amount has more than two decimal places")
    return quantized


def round_up(value: Decimal) -> Decimal:
    """Round towards positive infinity to the nearest subunit."""
    return value.quantize(SUBUNIT, rounding=ROUND_CEILING)


def to_minor_units(amount: Decimal) -> int:
    """Decimal amount to integer subunits (e.g. kopecks, cents)."""
    return int((to_amount(amount) / SUBUNIT).to_integral_value())


def from_minor_units(value: int) -> Decimal:
    """Integer subunits to a Decimal amount."""
    return to_amount(Decimal(value) * SUBUNIT)
