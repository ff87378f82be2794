"""
Module: billing_kernel.db.types
Responsibility: Annotated column types and the rounding helpers every
    billing computation goes through.
Architecture position: Kernel > DB.  Imported by ORM modules and engines.

Invariants enforced:
    - No floats: amounts and percentages are Decimal end to end.
    - round_money() is the ONLY sanctioned rounding function for currency
      amounts (two places, ROUND_HALF_UP by default).

Failure modes:
    - money_from_str() raises ValueError on non-numeric input.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Annotated

from sqlalchemy import Numeric, String

# Monetary amount, 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# Billed percentage of a task budget (0-100)
Percentage = Annotated[Decimal, Numeric(38, 9)]

ShortCode = Annotated[str, String(50)]

LongText = Annotated[str, String(4000)]

CURRENCY_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def money_from_str(value: str) -> Decimal:
    """
    Create a money value from a plain numeric string.

    Returns the Decimal unrounded; callers round via round_money().

    Raises:
        ValueError: If value cannot be converted to Decimal.
    """
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError) as exc:
        raise ValueError(f"Not a numeric amount: {value!r}") from exc


def round_money(
    value: Decimal,
    decimal_places: int = CURRENCY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """
    Round a monetary value to the given number of decimal places.

    This is the ONLY sanctioned rounding function for currency amounts.
    """
    quantize_str = "0." + "0" * decimal_places if decimal_places > 0 else "1"
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def to_decimal(value) -> Decimal:
    """Coerce a stored numeric (Decimal, int or driver float) to Decimal."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)
