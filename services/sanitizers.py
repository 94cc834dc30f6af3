"""Pure value cleaners shared by the importer and the exporter.

Every cleaner is total: malformed input never raises.  When a value has to be
replaced by a fallback (zero for numbers, today's date for dates) the cleaner
appends a :class:`FallbackWarning` to the ``warnings`` list supplied by the
caller so the substitution is reported back to the user instead of being lost.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Context, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

import pytz
from dateutil.parser import parse as dateutil_parse

POLICY_DATE_TODAY = "date_defaulted_to_today"
POLICY_NUMBER_ZERO = "number_defaulted_to_zero"
POLICY_REFERENCE_NOT_FOUND = "reference_not_found"

BOUNDED_MIN = 0
BOUNDED_MAX = 99

_NON_NUMERIC = re.compile(r"[^0-9.\-]")
_REFERENCE_STRIP = re.compile(r"[^\w\-]")
_CENT = Decimal("0.01")

_ISO_LIKE = re.compile(r"^\s*(\d{4})-(\d{1,2})-(\d{1,2})(?:$|[\sT])")
_US_SLASH = re.compile(r"^\s*(\d{1,2})/(\d{1,2})/(\d{4})(?:$|\s)")
_DAY_MONTH_YEAR = re.compile(
    r"^\s*\d{1,2}(?:st|nd|rd|th)?\s+[A-Za-z]{3,}\.?,?\s+\d{4}\s*$", re.IGNORECASE
)
_MONTH_DAY_YEAR = re.compile(
    r"^\s*[A-Za-z]{3,}\.?\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4}\s*$", re.IGNORECASE
)

_TRUE_STRINGS = {"true", "yes", "y", "1", "paid", "complete", "completed", "done"}


@dataclass
class FallbackWarning:
    """Structured, non-fatal notice that a value was replaced by a fallback."""

    field: str
    raw_value: Optional[str]
    policy: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def __str__(self) -> str:
        return self.message


def _report(
    warnings: Optional[List[FallbackWarning]],
    field: str,
    raw: Any,
    policy: str,
    message: str,
) -> None:
    if warnings is None:
        return
    warnings.append(
        FallbackWarning(
            field=field,
            raw_value=None if raw is None else str(raw),
            policy=policy,
            message=message,
        )
    )


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _parse_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, float):
        # repr() is the shortest exact round-trip of the stored float.
        value = Decimal(repr(value))
    elif isinstance(value, int) and not isinstance(value, bool):
        value = Decimal(value)
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    cleaned = _NON_NUMERIC.sub("", str(value))
    if not cleaned:
        return None
    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------


def clean_text_number(
    value: Any,
    *,
    field: str = "amount",
    warnings: Optional[List[FallbackWarning]] = None,
) -> str:
    """Return ``value`` as decimal text with exactly two fraction digits.

    Currency symbols, thousands separators and any other characters outside
    ``[0-9.-]`` are discarded before parsing.  Unparseable input becomes
    ``"0.00"``.
    """

    if _is_blank(value):
        return "0.00"
    amount = _parse_decimal(value)
    if amount is None:
        _report(
            warnings,
            field,
            value,
            POLICY_NUMBER_ZERO,
            f"Could not read a number from {field} value '{value}'; used 0.00",
        )
        return "0.00"
    context = Context(prec=max(28, amount.adjusted() + 4), rounding=ROUND_HALF_UP)
    rounded = amount.quantize(_CENT, context=context)
    if rounded.is_zero():
        return "0.00"
    return f"{rounded:f}"


def clean_bounded_int(
    value: Any,
    *,
    field: str = "value",
    warnings: Optional[List[FallbackWarning]] = None,
) -> int:
    """Floor ``value`` to an integer clamped into ``[0, 99]``.

    Out of range values saturate silently; only unreadable input is reported.
    """

    if _is_blank(value):
        return BOUNDED_MIN
    amount = _parse_decimal(value)
    if amount is None:
        _report(
            warnings,
            field,
            value,
            POLICY_NUMBER_ZERO,
            f"Could not read a number from {field} value '{value}'; used 0",
        )
        return BOUNDED_MIN
    if amount >= BOUNDED_MAX:
        return BOUNDED_MAX
    if amount < BOUNDED_MIN:
        return BOUNDED_MIN
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


def clean_int(
    value: Any,
    *,
    default: int = 0,
    field: str = "value",
    warnings: Optional[List[FallbackWarning]] = None,
) -> int:
    if _is_blank(value):
        return default
    if isinstance(value, bool):
        return int(value)
    amount = _parse_decimal(value)
    if amount is None:
        _report(
            warnings,
            field,
            value,
            POLICY_NUMBER_ZERO,
            f"Could not read a number from {field} value '{value}'; used {default}",
        )
        return default
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


def format_money(value: Any) -> str:
    """Render a stored amount the same way the importer writes it."""

    return clean_text_number(value)


def format_decimal(value: Any) -> str:
    """Exact decimal text for amounts finer than a cent, e.g. ingredient unit costs."""

    if _is_blank(value):
        return ""
    amount = _parse_decimal(value)
    return "" if amount is None else f"{amount:f}"


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------


def today(timezone: str = "UTC") -> date:
    try:
        tz = pytz.timezone(timezone)
    except pytz.UnknownTimeZoneError:
        tz = pytz.UTC
    return datetime.now(tz).date()


def timestamp_text(timezone: str = "UTC") -> str:
    """Current local time in the ``YYYY-MM-DD HH:MM:SS`` form stored in ``created_at``."""
    try:
        tz = pytz.timezone(timezone)
    except pytz.UnknownTimeZoneError:
        tz = pytz.UTC
    return datetime.now(tz).strftime("%Y-%m-%d %H:%M:%S")


def _parse_known_shapes(text: str) -> Optional[date]:
    match = _ISO_LIKE.match(text)
    if match:
        year, month, day = (int(part) for part in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            return None

    match = _US_SLASH.match(text)
    if match:
        month, day, year = (int(part) for part in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            return None

    if _DAY_MONTH_YEAR.match(text) or _MONTH_DAY_YEAR.match(text):
        try:
            return dateutil_parse(text).date()
        except (ValueError, OverflowError):
            return None
    return None


def parse_date(
    value: Any,
    *,
    field: str = "date",
    warnings: Optional[List[FallbackWarning]] = None,
    timezone: str = "UTC",
) -> date:
    """Parse ``value`` as a calendar date, falling back to today.

    Shapes are tried in priority order: year-first ISO (``2025-05-19``, any
    trailing time ignored), US slash (``05/19/2025``) and long text
    (``19 May 2025`` or ``May 19, 2025``).
    """

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = "" if value is None else str(value).strip()
    parsed = _parse_known_shapes(text) if text else None
    if parsed is not None:
        return parsed
    fallback = today(timezone)
    _report(
        warnings,
        field,
        value,
        POLICY_DATE_TODAY,
        f"Could not read a date from {field} value '{text}'; used {fallback.isoformat()}",
    )
    return fallback


def parse_optional_date(
    value: Any,
    *,
    field: str = "date",
    warnings: Optional[List[FallbackWarning]] = None,
    timezone: str = "UTC",
) -> Optional[date]:
    """Like :func:`parse_date` but blank input stays ``None``."""

    if _is_blank(value):
        return None
    return parse_date(value, field=field, warnings=warnings, timezone=timezone)


def format_date(value: Any) -> str:
    if value in (None, ""):
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    parsed = _parse_known_shapes(text)
    return parsed.isoformat() if parsed else text


# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------


def parse_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if value is None:
        return False
    return str(value).strip().lower() in _TRUE_STRINGS


def clean_reference(value: Any) -> str:
    """Normalise an order or quote number (``' #ORD 12 '`` -> ``'ORD12'``)."""

    if value is None:
        return ""
    return _REFERENCE_STRIP.sub("", str(value).strip())


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


__all__ = [
    "BOUNDED_MAX",
    "BOUNDED_MIN",
    "FallbackWarning",
    "POLICY_DATE_TODAY",
    "POLICY_NUMBER_ZERO",
    "POLICY_REFERENCE_NOT_FOUND",
    "clean_bounded_int",
    "clean_int",
    "clean_reference",
    "clean_text",
    "clean_text_number",
    "format_date",
    "format_decimal",
    "format_money",
    "parse_boolean",
    "parse_date",
    "parse_optional_date",
    "timestamp_text",
    "today",
]
