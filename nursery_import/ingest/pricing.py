"""Price text parsing for GST-inclusive and GST-exclusive presentations."""

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

from nursery_import.config import settings

CENTS = Decimal("0.01")

_EX_GST = re.compile(r"\$?\s*(\d[\d,]*\.?\d*)\s*(?:ex|excl\.?|excluding)\s*gst", re.IGNORECASE)
_INC_GST = re.compile(r"\$?\s*(\d[\d,]*\.?\d*)\s*(?:inc|incl\.?|including)\s*gst", re.IGNORECASE)
_DOLLAR = re.compile(r"\$\s*(\d[\d,]*\.?\d*)")
_NUMBER = re.compile(r"(\d[\d,]*\.?\d*)")


def _to_decimal(raw: str) -> Optional[Decimal]:
    try:
        value = Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None
    if value <= 0:
        return None
    return value


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def ex_gst(inc_gst_value: Decimal, multiplier: Optional[float] = None) -> Decimal:
    """Convert a GST-inclusive amount to ex-GST, rounded half-up to cents."""
    factor = Decimal(str(multiplier if multiplier is not None else settings.gst_multiplier))
    return to_cents(inc_gst_value / factor)


def parse_price_text(text: Optional[str], assume_inc_gst: bool = False) -> Optional[Decimal]:
    """
    Parse a displayed price into an ex-GST Decimal.

    "ex GST" amounts are kept as-is, "inc GST" amounts are divided by the
    GST multiplier. Bare "$12.50" or digit-only text is taken as ex-GST
    unless assume_inc_gst is set. Returns None when nothing positive parses.
    """
    if not text:
        return None

    match = _EX_GST.search(text)
    if match:
        value = _to_decimal(match.group(1))
        return to_cents(value) if value is not None else None

    match = _INC_GST.search(text)
    if match:
        value = _to_decimal(match.group(1))
        return ex_gst(value) if value is not None else None

    match = _DOLLAR.search(text) or _NUMBER.search(text)
    if not match:
        return None
    value = _to_decimal(match.group(1))
    if value is None:
        return None
    return ex_gst(value) if assume_inc_gst else to_cents(value)
