"""
Payroll Recon - Value Normalizers

Helpers shared by ingestion, identity resolution and computation:
payroll name folding, spreadsheet cell number parsing, MM/YYYY period keys
and money rounding.
"""

import calendar
import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional, Tuple
from zoneinfo import ZoneInfo

from payroll_recon.config import settings


MIN_PERIOD_YEAR = 2015
MAX_PERIOD_YEAR = 2100

TWO_PLACES = Decimal("0.01")

_NON_WORD = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")
_SEPARATORS = re.compile(r"[,\s]")
_NUMBER_TEXT = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)$")
_PARENTHESIZED = re.compile(r"^\((.*)\)$")
_CURRENCY_PREFIX = re.compile(r"^\s*(rs\.?|pkr|usd|\$|€|£)\s*", re.IGNORECASE)
_PERIOD_TEXT = re.compile(r"^(\d{1,2})\s*[/\-]\s*(\d{4})$")
_PERIOD_KEY = re.compile(r"^(\d{2})/(\d{4})$")


def _is_valid_period_year(year: int) -> bool:
    return MIN_PERIOD_YEAR <= year <= MAX_PERIOD_YEAR


# ===========================================
# NAMES
# ===========================================

def normalize_payroll_name(name: str) -> str:
    """
    Fold a free-text payroll name into a matching key.

    Decomposes unicode, drops combining marks, turns punctuation into
    spaces, collapses whitespace and case-folds. Applying it twice gives
    the same result as applying it once.
    """
    decomposed = unicodedata.normalize("NFKD", (name or "").casefold())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    spaced = _NON_WORD.sub(" ", stripped)
    return _WHITESPACE.sub(" ", spaced).strip().casefold()


def is_truthy_string(value: Any) -> bool:
    return isinstance(value, str) and len(value.strip()) > 0


# ===========================================
# NUMBERS
# ===========================================

def parse_cell_number(value: Any) -> Optional[Decimal]:
    """
    Parse a spreadsheet cell into a Decimal.

    Accepts finite numbers, a ``{"result": ...}`` formula wrapper and text
    carrying currency symbols or thousands separators ("Rs. 52,000").
    Accounting negatives in parentheses keep their sign. Blank cells and
    text with anything else in it return None; they are never coerced to
    zero.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, Decimal):
        return value if value.is_finite() else None

    if isinstance(value, int):
        return Decimal(value)

    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return None
        return Decimal(repr(value))

    if isinstance(value, dict) and "result" in value:
        result = value.get("result")
        if isinstance(result, (int, float, Decimal, str)) and not isinstance(result, bool):
            return parse_cell_number(result)
        return None

    if isinstance(value, str):
        text = value.strip()
        negative = False
        match = _PARENTHESIZED.match(text)
        if match:
            negative = True
            text = match.group(1).strip()
        text = _CURRENCY_PREFIX.sub("", text)
        if text.endswith("/-"):
            text = text[:-2]
        sanitized = _SEPARATORS.sub("", text)
        if not _NUMBER_TEXT.match(sanitized):
            return None
        if negative:
            if sanitized[0] in "+-":
                return None
            sanitized = "-" + sanitized
        try:
            parsed = Decimal(sanitized)
        except InvalidOperation:
            return None
        return parsed if parsed.is_finite() else None

    return None


def to_money(value: Any) -> Decimal:
    """Round to 2 places, half up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


# ===========================================
# PERIOD KEYS
# ===========================================

def to_period_key(value: date, timezone: Optional[str] = None) -> str:
    """MM/YYYY of a date; aware datetimes are read in the payroll timezone."""
    if isinstance(value, datetime) and value.tzinfo is not None:
        value = value.astimezone(ZoneInfo(timezone or settings.payroll_timezone))
    return f"{value.month:02d}/{value.year}"


def _date_from_text(text: str) -> Optional[date]:
    candidate = text.strip()
    if len(candidate) < 10:
        return None
    try:
        return datetime.fromisoformat(candidate.replace("Z", "+00:00"))
    except ValueError:
        try:
            return date.fromisoformat(candidate[:10])
        except ValueError:
            return None


def parse_period_key(value: Any) -> Optional[str]:
    """
    Read a period key from a cell value.

    Dates and datetimes use their month; text may be an ISO date or
    "M/YYYY" / "MM-YYYY". Years outside 2015-2100 are rejected.
    """
    if isinstance(value, dict) and "result" in value:
        return parse_period_key(value.get("result"))

    if isinstance(value, (date, datetime)):
        if not _is_valid_period_year(value.year):
            return None
        return to_period_key(value)

    if isinstance(value, str):
        match = _PERIOD_TEXT.match(value.strip())
        if match:
            month = int(match.group(1))
            year = int(match.group(2))
            if not 1 <= month <= 12 or not _is_valid_period_year(year):
                return None
            return f"{month:02d}/{year}"

        as_date = _date_from_text(value)
        if as_date is not None and _is_valid_period_year(as_date.year):
            return to_period_key(as_date)

    return None


def period_key_to_date(period_key: str) -> Optional[date]:
    """First day of the month a key names, or None for malformed keys."""
    match = _PERIOD_KEY.match(period_key or "")
    if not match:
        return None
    month = int(match.group(1))
    year = int(match.group(2))
    if not 1 <= month <= 12 or not _is_valid_period_year(year):
        return None
    return date(year, month, 1)


def period_bounds(period_key: str) -> Optional[Tuple[date, date]]:
    start = period_key_to_date(period_key)
    if start is None:
        return None
    last_day = calendar.monthrange(start.year, start.month)[1]
    return start, date(start.year, start.month, last_day)


def period_label_from_key(period_key: str) -> str:
    return f"Payroll {period_key}"


def sort_period_keys(period_keys) -> list:
    """Valid keys only, deduplicated, in chronological order."""
    valid = {key for key in period_keys if period_key_to_date(key) is not None}
    return sorted(valid, key=period_key_to_date)
