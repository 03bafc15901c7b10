from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

MONEY_Q = Decimal("0.01")
# Largest difference treated as rounding noise when comparing totals.
MONEY_TOLERANCE = Decimal("0.01")
# Amount columns are numeric(14, 2).
MONEY_MAX_DIGITS = 14
MAX_AMOUNT = Decimal("999999999999.99")


def q_money(v) -> Decimal:
    try:
        return to_decimal(v).quantize(MONEY_Q, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"amount out of range: {v!r}") from None


def to_decimal(v) -> Decimal:
    """
    Coerce API/DB values (Decimal, int, decimal strings, None) to Decimal.
    Floats go through str() so 0.1 stays 0.1. NaN and infinities are refused.
    """
    if v is None:
        return Decimal("0")
    if isinstance(v, Decimal):
        d = v
    else:
        s = str(v).strip()
        if not s:
            return Decimal("0")
        try:
            d = Decimal(s)
        except InvalidOperation:
            raise ValueError(f"invalid amount: {v!r}") from None
    if not d.is_finite():
        raise ValueError(f"invalid amount: {v!r}")
    return d


def money_str(v) -> str:
    # Wire format: fixed 2dp decimal string.
    return format(q_money(v), "f")


def within_tolerance(a, b) -> bool:
    return abs(to_decimal(a) - to_decimal(b)) <= MONEY_TOLERANCE
