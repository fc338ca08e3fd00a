"""
Money Helpers

Currency codes and Decimal conversion/rounding for all monetary values.
NEVER uses float for monetary values: amounts are converted to Decimal on
entry and quantized only when they are emitted (schedule rows, payment
allocations, audit metadata).
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Any, Optional

from .errors import ValidationError

# High precision for intermediate financial calculations
getcontext().prec = 28

ZERO = Decimal('0')


class Currency(Enum):
    """ISO 4217 currency codes accepted for disbursement, with precision"""
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    EGP = ("EGP", 2)  # Egyptian Pound
    
    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision
    
    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        try:
            return cls[code.upper()]
        except (KeyError, AttributeError):
            raise ValidationError(f"Unsupported currency: {code}")


def to_decimal(value: Any, field: str = "amount") -> Decimal:
    """
    Convert a number or numeric string to Decimal without float drift.
    
    Args:
        value: int, str, float or Decimal
        field: Field name used in the error message
        
    Returns:
        Decimal value
    """
    if isinstance(value, Decimal):
        return value
    if value is None:
        raise ValidationError(f"{field} is required")
    try:
        # str() first so 0.1 becomes Decimal('0.1'), not its binary expansion
        result = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{field} is not a valid number: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite")
    return result


def optional_decimal(value: Any, field: str = "amount") -> Optional[Decimal]:
    """Like to_decimal but passes None through"""
    if value is None:
        return None
    return to_decimal(value, field)


def round_money(value: Decimal, precision: int = 2) -> Decimal:
    """Round half-up to the given number of decimal places"""
    return to_decimal(value).quantize(Decimal('0.1') ** precision, rounding=ROUND_HALF_UP)


def money_str(value: Decimal) -> str:
    """Format a Decimal amount for audit metadata and JSON payloads"""
    return str(round_money(value))
