"""Candidate normalizer: merge connector output into a clean, deduplicated batch.

All cause-of-death mapping happens here, so every source shares one keyword
table.  Connectors only hand over the raw cause text.
"""
from __future__ import annotations

import logging
import re
from dataclasses import replace
from datetime import date

from deadpool.extraction import MAX_AGE, MIN_AGE
from deadpool.models import CAUSE_CATEGORIES, CandidateDeath, name_key
from deadpool.utils import calculate_age

log = logging.getLogger(__name__)

# Earlier sources win when two candidates share (name, date of death).
SOURCE_PRIORITY: tuple[str, ...] = ("structured", "biography", "tabular", "feed")

# Minimum letters for a name to stand on its own without an age
LONG_NAME_LETTERS = 6

# ---------------------------------------------------------------------------
# Cause taxonomy
# ---------------------------------------------------------------------------

# Checked top to bottom: "killed in a car crash" is Accidental, not Violent.
# Keywords match whole words, allowing the inflections in _SUFFIXES.
CAUSE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("Suicide", ("suicide", "took his own life", "took her own life", "took their own life")),
    ("PandemicOrOutbreak", ("covid", "coronavirus", "pandemic", "outbreak", "epidemic", "virus")),
    ("RareOrUnusual", ("overdose", "drug", "poisoning", "intoxication")),
    ("Accidental", ("accident", "crash", "collision", "fall", "fell", "drown", "plunge")),
    ("Violent", ("murder", "homicide", "shot", "shooting", "stabbed", "stabbing", "killed", "assassinat")),
    ("Natural", (
        "cancer", "heart", "cardiac", "stroke", "natural causes", "illness", "disease",
        "pneumonia", "alzheimer", "dementia", "leukemia", "tumor", "tumour", "failure",
        "old age", "complications",
    )),
]

_SUFFIXES = r"(?:s|es|d|ed|ing|al|ally|ion|ions)?"

_CAUSE_RES = [
    (category, re.compile(
        r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")" + _SUFFIXES + r"\b", re.IGNORECASE,
    ))
    for category, keywords in CAUSE_KEYWORDS
]


def categorize_cause(cause_text: str | None) -> str:
    """Map free cause text onto the closed taxonomy; ``Unknown`` when nothing fits."""
    text = (cause_text or "").strip()
    if not text:
        return "Unknown"
    if text in CAUSE_CATEGORIES:
        return text
    for category, pattern in _CAUSE_RES:
        if pattern.search(text):
            return category
    return "Unknown"


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------


def _priority(candidate: CandidateDeath) -> int:
    try:
        return SOURCE_PRIORITY.index(candidate.source_tag)
    except ValueError:
        return len(SOURCE_PRIORITY)


def _long_name(name: str) -> bool:
    return len(name.split()) >= 2 and sum(ch.isalpha() for ch in name) >= LONG_NAME_LETTERS


def normalize(candidates: list[CandidateDeath], today: date | None = None) -> list[CandidateDeath]:
    """Clean a run's worth of candidates.

    Steps: order by :data:`SOURCE_PRIORITY` (stable, so a connector's own
    order is kept), derive a missing age from the birth date, drop entries
    with neither an age nor a long enough name, drop implausible ages and
    future dates, collapse (name, date) duplicates keeping the first, and map
    the cause text to a category.  Validation runs before the duplicate check
    so a malformed first sighting cannot shadow a good later one.
    """
    today = today or date.today()
    seen: set[tuple[str, date]] = set()
    out: list[CandidateDeath] = []

    for cand in sorted(candidates, key=_priority):
        name = " ".join((cand.name or "").split())
        if not name or cand.date_of_death is None:
            log.debug("Dropping candidate without name or date: %r", cand)
            continue

        age = cand.age
        if age is None and cand.date_of_birth is not None:
            age = calculate_age(cand.date_of_birth, cand.date_of_death)

        if age is None and not _long_name(name):
            log.debug("Dropping %r: no age and name too short", name)
            continue

        if age is not None and not MIN_AGE <= age <= MAX_AGE:
            log.debug("Dropping %r: implausible age %s", name, age)
            continue
        if cand.date_of_death > today:
            log.debug("Dropping %r: date of death %s is in the future", name, cand.date_of_death)
            continue

        key = (name_key(name), cand.date_of_death)
        if key in seen:
            log.debug("Duplicate candidate %s on %s from %s", name, cand.date_of_death, cand.source_tag)
            continue
        seen.add(key)

        out.append(replace(
            cand, name=name, age=age,
            cause_category=categorize_cause(cand.cause_category or cand.cause_text),
        ))

    log.info("Normalized %d candidates down to %d", len(candidates), len(out))
    return out
