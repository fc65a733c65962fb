import secrets
import string
import time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Union

from .errors import InvalidAmountError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

_REF_ALPHABET = string.ascii_uppercase + string.digits


def to_money(value: Union[Decimal, int, float, str, None]) -> Decimal:
    """Quantize to 2 places with ROUND_HALF_UP. None is treated as zero."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: Any) -> Decimal:
    if value is None or isinstance(value, bool):
        raise InvalidAmountError("Amount is required")
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidAmountError(f"Invalid amount: {value!r}")
    amount = to_money(amount)
    if amount <= 0:
        raise InvalidAmountError("Amount must be greater than zero")
    return amount


def format_money(value: Decimal) -> str:
    return f"{to_money(value):.2f}"


def new_reference(prefix: str) -> str:
    # prefix + epoch millis + 6 random chars, e.g. S1760000000000AB12CD
    suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(6))
    return f"{prefix}{int(time.time() * 1000)}{suffix}"
