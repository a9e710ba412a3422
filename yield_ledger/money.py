"""Fixed-point money helpers.

All ledger amounts are ``Decimal`` values quantized to the cent. Rates keep
their full precision; only the product of an amount and a rate is rounded,
always half-even so that repeated accruals do not drift in one direction.
"""

from __future__ import annotations

import re
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation, localcontext
from typing import Any, Iterable

from yield_ledger.exceptions import InvalidAmountError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

_STRIP_RE = re.compile(r"[\s$€£,]")

# Largest amount a NUMERIC(15,2) column holds
MAX_AMOUNT = Decimal("9999999999999.99")


def round_money(value: Decimal) -> Decimal:
    """Quantize to the cent using banker's rounding.

    Raises
    ------
    InvalidAmountError
        If the value has too many digits to be held to the cent.
    """
    with localcontext() as ctx:
        ctx.prec = 28
        try:
            return value.quantize(CENT, rounding=ROUND_HALF_EVEN)
        except InvalidOperation as e:
            raise InvalidAmountError(f"Amount {value} is out of range", field="amount") from e


def to_decimal(value: Any) -> Decimal:
    """Convert a number-like value to ``Decimal`` without binary artefacts.

    Raises
    ------
    InvalidAmountError
        If the value is not numeric.
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise InvalidAmountError(f"Amount must be a number, got {value!r}", field="amount")
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        cleaned = _STRIP_RE.sub("", value)
        if not cleaned:
            raise InvalidAmountError("Amount is empty", field="amount")
        try:
            result = Decimal(cleaned)
        except InvalidOperation as e:
            raise InvalidAmountError(
                f"Amount must be a positive number, got {value!r}", field="amount"
            ) from e
    else:
        raise InvalidAmountError(f"Amount must be a number, got {value!r}", field="amount")

    if not result.is_finite():
        raise InvalidAmountError(f"Amount must be finite, got {value!r}", field="amount")
    return result


def parse_amount(value: Any) -> Decimal:
    """Parse a raw amount into a positive cent-quantized ``Decimal``."""
    raw = to_decimal(value)
    if abs(raw) > MAX_AMOUNT:
        raise InvalidAmountError(
            f"Amount must not exceed {MAX_AMOUNT}, got {value!r}", field="amount"
        )
    amount = round_money(raw)
    if amount <= 0:
        raise InvalidAmountError(
            f"Amount must be a positive number, got {value!r}", field="amount"
        )
    return amount


def sum_money(values: Iterable[Decimal]) -> Decimal:
    """Sum amounts, starting from ``ZERO`` so the result keeps two places."""
    total = ZERO
    for v in values:
        total += v
    return total


def apply_rate(amount: Decimal, rate: Decimal) -> Decimal:
    """Multiply an amount by a rate and round to the cent."""
    with localcontext() as ctx:
        ctx.prec = 28
        return round_money(amount * rate)
