"""
Module: spend_kernel.db.types
Responsibility: Annotated type aliases and rounding helpers for spend, quantity,
    and price columns.  Centralizes precision so every model and service uses
    identical type definitions.
Architecture position: Kernel > DB.  May be imported by models/, domain/,
    services/, and selectors/.  MUST NOT import from any of those layers.

Invariants enforced:
    - No floats for monetary amounts, quantities, or unit prices.
    - round_money() and round_percent() are the only sanctioned rounding
      functions for presentation values.

Failure modes:
    - decimal.InvalidOperation on non-numeric input to to_decimal().
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Annotated, Any

from sqlalchemy import Numeric, String


# Monetary amount: 38 digits total, 9 decimal places
Money = Annotated[Decimal, Numeric(38, 9)]

# Purchased quantity (fractional quantities such as 2.5 kg are common)
Quantity = Annotated[Decimal, Numeric(38, 9)]

# SHA-256 hash as hex string (64 characters)
PayloadHash = Annotated[str, String(64)]

# Short identifier strings (account codes, item codes)
ShortCode = Annotated[str, String(50)]

# Long text for descriptions
LongText = Annotated[str, String(4000)]


MONEY_DECIMAL_PLACES = 2
PERCENT_DECIMAL_PLACES = 2
DEFAULT_ROUNDING = ROUND_HALF_UP

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def to_decimal(value: Any) -> Decimal | None:
    """
    Coerce a loaded column value to Decimal.

    Preconditions: value is None, a Decimal, an int, or a numeric string.
        Floats are converted through str() so binary noise does not leak in.
    Postconditions: Returns None for None, otherwise a Decimal.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round_money(
    value: Decimal,
    decimal_places: int = MONEY_DECIMAL_PLACES,
    rounding: str = DEFAULT_ROUNDING,
) -> Decimal:
    """Round a monetary value to the given number of decimal places."""
    quantize_str = "0." + "0" * decimal_places
    return value.quantize(Decimal(quantize_str), rounding=rounding)


def round_percent(value: Decimal) -> Decimal:
    """Round a percentage for presentation."""
    return round_money(value, PERCENT_DECIMAL_PLACES)
