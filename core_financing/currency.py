"""
Money Precision Module

Decimal helpers shared by the schedule generator, the settlement service and
the receivable ledger. NEVER uses float for monetary values: every amount is
quantized to the currency precision with ROUND_HALF_UP.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Any, Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal('0.00')
CENT = Decimal('0.01')


class Currency(Enum):
    """ISO 4217 currency the shops bill in, with display symbol and precision"""
    DOP = ("DOP", "RD$", 2)  # Dominican Peso

    def __init__(self, code: str, symbol: str, precision: int):
        self.code = code
        self.symbol = symbol
        self.precision = precision


DEFAULT_CURRENCY = Currency.DOP


def quantize_amount(value: Decimal, currency: Currency = DEFAULT_CURRENCY) -> Decimal:
    """
    Round a Decimal to the currency precision (ROUND_HALF_UP)

    Args:
        value: Decimal to round
        currency: Currency defining precision

    Returns:
        Properly rounded Decimal

    Raises:
        ValidationError: If the value has too many digits to hold at cent precision
    """
    try:
        return value.quantize(
            Decimal('0.1') ** currency.precision,
            rounding=ROUND_HALF_UP
        )
    except InvalidOperation:
        raise ValidationError(f"Amount out of range: {value}")


def to_decimal(value: Union[Decimal, int, float, str], field_name: str = "amount") -> Decimal:
    """
    Convert an incoming number to Decimal without going through binary float

    Raises:
        ValidationError: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field_name}: {value!r}")
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid {field_name}: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"Invalid {field_name}: {value!r}")
    return result


def parse_amount(value: Any, field_name: str = "amount",
                 currency: Currency = DEFAULT_CURRENCY) -> Decimal:
    """
    Parse a monetary input, rejecting sub-cent precision

    Args:
        value: Amount as Decimal, int, float or string
        field_name: Name used in the error message
        currency: Currency defining precision

    Returns:
        Decimal quantized to the currency precision

    Raises:
        ValidationError: If the value is not a number, is too large, or has
            more decimals than the currency allows
    """
    amount = to_decimal(value, field_name)
    try:
        quantized = quantize_amount(amount, currency)
    except ValidationError:
        raise ValidationError(f"Invalid {field_name}: {value} is out of range")
    if quantized != amount:
        raise ValidationError(
            f"Invalid {field_name}: {value} has more than {currency.precision} decimal places"
        )
    return quantized
