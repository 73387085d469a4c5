from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from ..core.errors import InvalidOrderNumberError, MalformedRequestError

_CENTS = Decimal(100)
_MAX_ORDER_NUMBER = 2**63 - 1


def luhn_valid(number: Union[int, str]) -> bool:
    """Mod-10 checksum over the decimal digits of ``number``."""
    digits = str(number).strip()
    if not (digits.isascii() and digits.isdigit()):
        return False

    total = 0
    for index, char in enumerate(reversed(digits)):
        digit = int(char)
        if index % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def parse_order_number(raw: Union[str, bytes]) -> int:
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedRequestError("Order number is not valid text") from exc

    text = raw.strip()
    if not (text.isascii() and text.isdigit()) or not 0 < int(text) <= _MAX_ORDER_NUMBER:
        raise MalformedRequestError("Order number must be a positive integer")
    if not luhn_valid(text):
        raise InvalidOrderNumberError(f"Order number {text} fails checksum validation")
    return int(text)


def to_minor_units(value: Union[Decimal, float, int, str]) -> int:
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise MalformedRequestError(f"Amount {value!r} is not a number") from exc
    if not amount.is_finite():
        raise MalformedRequestError(f"Amount {value!r} is not a number")
    return int((amount * _CENTS).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(value: int) -> float:
    return float(Decimal(value) / _CENTS)
