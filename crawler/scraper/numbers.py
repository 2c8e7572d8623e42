"""Locale-aware number and price parsing."""
from __future__ import annotations

import re
from typing import Optional

from crawler.models import Price

CURRENCY_SYMBOLS = {
    "US$": "USD",
    "$": "USD",
    "€": "EUR",
    "£": "GBP",
    "¥": "JPY",
    "₽": "RUB",
    "₹": "INR",
    "CHF": "CHF",
}

_ISO_CODE = re.compile(r"\b(USD|EUR|GBP|JPY|CHF|CAD|AUD|RUB|INR|SEK|NOK|DKK|PLN|CNY|HKD)\b")
_NUMBER = re.compile(r"-?\d[\d\s.,'\u00a0\u202f]*")
_GROUPING = re.compile(r"[\s'\u00a0\u202f]")


def detect_currency(text: str) -> Optional[str]:
    if not text:
        return None
    match = _ISO_CODE.search(text.upper())
    if match:
        return match.group(1)
    for symbol, code in CURRENCY_SYMBOLS.items():
        if symbol in text:
            return code
    return None


def _normalize_separators(raw: str) -> str:
    """Turn a grouped number into something ``float`` accepts.

    When both ``,`` and ``.`` appear, the right-most one is the decimal
    separator. A lone separator followed by exactly three digits is a
    thousands separator (``1,234`` and ``1.234`` are both 1234) unless
    the integer part is ``0``.
    """
    digits = _GROUPING.sub("", raw).strip(".,")
    if "," in digits and "." in digits:
        decimal = "," if digits.rfind(",") > digits.rfind(".") else "."
        thousands = "." if decimal == "," else ","
        digits = digits.replace(thousands, "")
        return digits.replace(decimal, ".")

    for sep in (",", "."):
        count = digits.count(sep)
        if count == 0:
            continue
        if count > 1:
            return digits.replace(sep, "")
        integer, fraction = digits.split(sep)
        is_grouping = len(fraction) == 3 and integer.lstrip("-") not in ("", "0")
        return integer + fraction if is_grouping else f"{integer}.{fraction}"
    return digits


def parse_number(text: str | None) -> Optional[float]:
    """Parse the first number in ``text``; None when there is none."""
    if not text:
        return None
    match = _NUMBER.search(text)
    if not match:
        return None
    normalized = _normalize_separators(match.group(0))
    try:
        return float(normalized)
    except ValueError:
        return None


def parse_int(text: str | None) -> Optional[int]:
    value = parse_number(text)
    return int(value) if value is not None else None


def parse_price(text: str | None, default_currency: Optional[str] = None) -> Optional[Price]:
    """Parse ``"$1,234.56"`` or ``"1.234,56 €"`` into a :class:`Price`."""
    amount = parse_number(text)
    if amount is None:
        return None
    return Price(amount=amount, currency=detect_currency(text or "") or default_currency)
