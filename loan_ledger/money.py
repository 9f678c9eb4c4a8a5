"""
Money Helpers

Single-currency monetary arithmetic on Decimal. NEVER uses float for
monetary values; floats arriving from callers are converted via their
string representation.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union

from .errors import ValidationError

# High precision for intermediate results; outputs are quantized explicitly
getcontext().prec = 28

CENT = Decimal('0.01')
ZERO = Decimal('0')

Numeric = Union[Decimal, int, float, str]


def to_decimal(value: Numeric, field_name: str = "value") -> Decimal:
    """
    Convert a caller-supplied number to a finite Decimal
    
    Raises:
        ValidationError: If the value is missing, unparseable, NaN or infinite
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} is required")
    
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field_name} must be a number, got {value!r}")
    
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    return result


def quantize(value: Decimal, places: int) -> Decimal:
    """Round half-up to a fixed number of decimal places"""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def round_money(value: Decimal) -> Decimal:
    """Round to cents"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal) -> str:
    """Cent-precision string used in exports and reports"""
    return f"{round_money(value):.2f}"
