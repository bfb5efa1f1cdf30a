"""Text extraction: pull a person name, age, date and cause out of noisy prose.

Each phrasing we recognise is a small strategy ``(text) -> Extraction | None``.
:data:`STRATEGIES` lists them in priority order and :func:`extract_death`
returns the first structurally valid hit:

- ``Jane Q. Public, 82, dies peacefully``   (name, age, died)
- ``John Smith died at 87``                (name died at age)
- ``John Smith (87)``                      (name (age))
- ``87-year-old John Smith died Tuesday``  (age-year-old name)
- ``the death of John Smith, 87``          (death of name, age)
- ``John Smith, age 87``                   (name, age N)
- ``John Smith dies``                      (name + death verb, no age)

A valid hit has a name with at least three letters and, when present, an age
in ``[1, 120]``.  No hit means the text is noise, not an error.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Callable

from deadpool.utils import parse_date

MIN_AGE = 1
MAX_AGE = 120
MIN_NAME_LETTERS = 3

_UPPER = "A-ZÀ-ÖØ-Þ"
_TOKEN = rf"[{_UPPER}][\w'’.\-]*"
_PARTICLE = r"(?:van|von|de|da|del|der|di|du|la|le|bin|al)"
_NAME = rf"(?<![\w'’])(?P<name>{_TOKEN}(?:\s+(?:{_PARTICLE}\s+){{0,2}}{_TOKEN}){{0,5}})"
_AGE = r"(?P<age>\d{1,3})"
_DEATH_VERB = r"(?i:dies|died|dead|has\s+died|passed\s+away|passes\s+away)"

# Capitalised words that lead headlines but are not part of a name
_LEADING_NOISE = {
    "actor", "actress", "singer", "rapper", "musician", "comedian", "author",
    "director", "producer", "writer", "star", "legend", "legendary", "famed",
    "famous", "former", "veteran", "iconic", "beloved", "breaking", "report",
    "obituary", "update", "rip", "the", "tv", "film", "hollywood", "country",
    "rock", "pop", "jazz", "nfl", "nba", "mlb", "nhl", "olympic", "olympian",
}
_KEEP_DOTTED = {"jr.", "sr.", "st.", "dr.", "mr.", "mrs.", "ms."}


@dataclass
class Extraction:
    name: str
    age: int | None = None
    date_of_death: date | None = None
    cause_text: str | None = None


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def clean_name(raw: str) -> str:
    """Trim headline noise and sentence run-on from a captured name."""
    tokens = raw.replace("’", "'").split()
    while tokens and tokens[0].lower().strip(".") in _LEADING_NOISE:
        tokens.pop(0)
    kept: list[str] = []
    for idx, tok in enumerate(tokens):
        if tok.endswith(".") and len(tok) > 2 and tok.lower() not in _KEEP_DOTTED:
            # "Smith. The" -> sentence boundary, stop at "Smith"
            kept.append(tok.rstrip("."))
            break
        kept.append(tok)
    name = " ".join(kept).strip(" ,;:-")
    if name.endswith("'s"):
        name = name[:-2]
    return name


def valid_name(name: str) -> bool:
    letters = sum(1 for ch in name if ch.isalpha())
    if letters < MIN_NAME_LETTERS:
        return False
    # all-caps tokens are acronyms ("NFL"), not people
    return any(any(ch.islower() for ch in tok) for tok in name.split())


def valid_age(age: int | None) -> bool:
    return age is None or MIN_AGE <= age <= MAX_AGE


def _build(name: str, age: str | None) -> Extraction | None:
    name = clean_name(name)
    age_val = int(age) if age else None
    if not valid_name(name) or not valid_age(age_val):
        return None
    return Extraction(name=name, age=age_val)


# ---------------------------------------------------------------------------
# Strategies (priority order)
# ---------------------------------------------------------------------------


def _regex_strategy(pattern: str) -> Callable[[str], Extraction | None]:
    compiled = re.compile(pattern)

    def strategy(text: str) -> Extraction | None:
        for m in compiled.finditer(text):
            groups = m.groupdict()
            hit = _build(groups["name"], groups.get("age"))
            if hit is not None:
                return hit
        return None

    strategy.pattern = compiled  # type: ignore[attr-defined]
    return strategy


name_age_died = _regex_strategy(
    rf"{_NAME},\s*(?i:aged?\s+)?{_AGE},.{{0,80}}?\b{_DEATH_VERB}"
)
name_died_at_age = _regex_strategy(
    rf"{_NAME}\s+{_DEATH_VERB}\s+(?i:at|aged)\s+(?i:the\s+age\s+of\s+|age\s+)?{_AGE}\b"
)
name_paren_age = _regex_strategy(
    rf"{_NAME}\s*\((?i:aged?\s*)?{_AGE}\)"
)
age_year_old_name = _regex_strategy(
    rf"\b{_AGE}[-\s](?i:years?)[-\s](?i:old)\s+(?:[a-z][\w\-]*\s+){{0,4}}{_NAME}"
)
death_of_name_age = _regex_strategy(
    rf"(?i:death\s+of)\s+(?:[a-z][\w\-]*\s+){{0,4}}{_NAME},\s*(?i:aged?\s+)?{_AGE}\b"
)
name_comma_age = _regex_strategy(
    rf"{_NAME},\s*(?i:age|aged)\s+{_AGE}\b"
)
name_died = _regex_strategy(
    rf"{_NAME}\s+{_DEATH_VERB}\b"
)

STRATEGIES: list[Callable[[str], Extraction | None]] = [
    name_age_died,
    name_died_at_age,
    name_paren_age,
    age_year_old_name,
    death_of_name_age,
    name_comma_age,
    name_died,
]

_AGE_ANYWHERE_RE = re.compile(r"(?i)\baged?\s+(\d{1,3})\b|\b(\d{1,3})[-\s]years?[-\s]old\b")


def extract_death(text: str, strategies=None) -> Extraction | None:
    """Run the strategies in order; first valid hit wins, enriched with date and cause."""
    text = " ".join((text or "").split())
    if not text:
        return None
    for strategy in strategies or STRATEGIES:
        hit = strategy(text)
        if hit is None:
            continue
        if hit.age is None:
            hit.age = extract_age(text)
        hit.date_of_death = extract_date(text)
        hit.cause_text = extract_cause(text)
        return hit
    return None


def extract_age(text: str) -> int | None:
    m = _AGE_ANYWHERE_RE.search(text or "")
    if not m:
        return None
    age = int(m.group(1) or m.group(2))
    return age if valid_age(age) else None


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

_MONTH_WORD = (
    r"(?:Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|June?|July?|"
    r"Aug(?:ust)?|Sep(?:t(?:ember)?)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)"
)
_DATE_PATTERNS = [
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(rf"\b{_MONTH_WORD}\.?\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}\b"),
    re.compile(rf"\b\d{{1,2}}(?:st|nd|rd|th)?\s+{_MONTH_WORD}\.?,?\s+\d{{4}}\b"),
    re.compile(r"\b\d{1,2}/\d{1,2}/\d{4}\b"),
]


def extract_date(text: str) -> date | None:
    """First parseable calendar date mentioned in *text*."""
    for pattern in _DATE_PATTERNS:
        for m in pattern.finditer(text or ""):
            parsed = parse_date(m.group(0))
            if parsed is not None:
                return parsed
    return None


def find_dates(text: str) -> list[date]:
    """Every parseable date in *text*, in order of appearance."""
    found: list[tuple[int, date]] = []
    for pattern in _DATE_PATTERNS:
        for m in pattern.finditer(text or ""):
            parsed = parse_date(m.group(0))
            if parsed is not None:
                found.append((m.start(), parsed))
    return [d for _, d in sorted(found, key=lambda item: item[0])]


# ---------------------------------------------------------------------------
# Biography pages: birth/death dates and cause phrases
# ---------------------------------------------------------------------------

_DATE_ANY = (
    rf"(?:{_MONTH_WORD}\.?\s+\d{{1,2}},?\s+\d{{4}}|\d{{1,2}}\s+{_MONTH_WORD}\.?\s+\d{{4}})"
)
_BIRTH_PATTERNS = [
    re.compile(rf"(?i)\bborn[:\s]+({_DATE_ANY})"),
    re.compile(rf"\(({_DATE_ANY})\s*[–\-]\s*"),
]
_DEATH_PATTERNS = [
    re.compile(rf"(?i)\bdied[:\s]+(?:on\s+)?({_DATE_ANY})"),
    re.compile(rf"[–\-]\s*({_DATE_ANY})\)"),
    re.compile(rf"(?i)\bdeath[:\s]+({_DATE_ANY})"),
]
_CAUSE_PATTERNS = [
    re.compile(rf"(?i)\bdied\s+(?:on\s+)?(?:{_DATE_ANY},?\s+)?(?:of|from|due\s+to)\s+([^.;]{{3,80}})"),
    re.compile(r"(?i)\bcause\s+of\s+death[:\s]+(?:was\s+)?([^.;]{3,80})"),
    re.compile(r"(?i)\bdeath\s+was\s+(?:caused\s+by|due\s+to)\s+([^.;]{3,80})"),
    re.compile(r"(?i)\bdied\s+(?:following|after)\s+([^.;]{3,80})"),
    re.compile(r"(?i)\b(?:after|following)\s+(?:a\s+)?(?:long\s+|brief\s+)?(?:battle|illness)\s+with\s+([^.;]{3,80})"),
]


def _first_date(patterns: list[re.Pattern], text: str) -> date | None:
    for pattern in patterns:
        m = pattern.search(text or "")
        if m:
            parsed = parse_date(m.group(1))
            if parsed is not None:
                return parsed
    return None


def extract_birth_date(text: str) -> date | None:
    return _first_date(_BIRTH_PATTERNS, text)


def extract_death_date(text: str) -> date | None:
    return _first_date(_DEATH_PATTERNS, text)


def extract_cause(text: str) -> str | None:
    """Cause-of-death phrase (e.g. ``"pancreatic cancer"``), or ``None``."""
    for pattern in _CAUSE_PATTERNS:
        m = pattern.search(text or "")
        if m:
            return " ".join(m.group(1).split()).strip(" ,")
    return None
