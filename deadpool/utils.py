"""Shared date helpers used across Deadpool modules."""
from __future__ import annotations

import re
from datetime import UTC, date, datetime

MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

_MONTH_NUMBERS = {m.lower(): i for i, m in enumerate(MONTHS, start=1)}
_MONTH_NUMBERS.update({m[:3].lower(): i for i, m in enumerate(MONTHS, start=1)})
_MONTH_NUMBERS["sept"] = 9

_ISO_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})")
_US_SLASH_RE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_MONTH_FIRST_RE = re.compile(r"^([A-Za-z]+)\.?\s+(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})$")
_DAY_FIRST_RE = re.compile(r"^(\d{1,2})(?:st|nd|rd|th)?\s+([A-Za-z]+)\.?,?\s+(\d{4})$")


def month_number(name: str) -> int | None:
    return _MONTH_NUMBERS.get((name or "").strip().rstrip(".").lower())


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def parse_date(value: str | date | datetime | None) -> date | None:
    """Parse the date formats seen across sources, returning ``None`` if unparseable.

    Accepts ISO (``2025-03-14``, also with a time suffix), US slash
    (``3/14/2025``), ``March 14, 2025`` and ``14 March 2025``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = " ".join(str(value).split())
    if not text:
        return None

    m = _ISO_RE.match(text)
    if m:
        return _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = _US_SLASH_RE.match(text)
    if m:
        return _safe_date(int(m.group(3)), int(m.group(1)), int(m.group(2)))
    m = _MONTH_FIRST_RE.match(text)
    if m:
        month = month_number(m.group(1))
        return _safe_date(int(m.group(3)), month, int(m.group(2))) if month else None
    m = _DAY_FIRST_RE.match(text)
    if m:
        month = month_number(m.group(2))
        return _safe_date(int(m.group(3)), month, int(m.group(1))) if month else None
    return None


def calculate_age(date_of_birth: date, date_of_death: date) -> int:
    """Whole years between birth and death."""
    age = date_of_death.year - date_of_birth.year
    if (date_of_death.month, date_of_death.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


def same_month_day(a: date, b: date) -> bool:
    return a.month == b.month and a.day == b.day


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(UTC).replace(tzinfo=None)
