"""Scoring engine: deterministic points for one confirmed death.

Formula
-------
- ``base``        : ``100 - age_at_death`` (negative past 100)
- ``cause_bonus`` : from :data:`CAUSE_BONUS`, split at age 80 into
  senior/junior for the categories that have a split
- ``bonus_sum``   : fixed points per circumstance flag, see :data:`FLAG_POINTS`
- ``total``       : ``max(0, base + cause_bonus + bonus_sum)``; the clamp is
  applied once at the end only

Records with no known age are scored at :data:`DEFAULT_AGE`.

The helpers at the bottom derive the flags that can be computed from data
alone (birthday, major holiday) when a record is created.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

from deadpool.utils import same_month_day

SENIOR_AGE = 80
DEFAULT_AGE = 75

# category -> (senior, junior); a single value means no age split
CAUSE_BONUS: dict[str, tuple[int, int]] = {
    "Natural": (5, 10),
    "Accidental": (15, 25),
    "Violent": (30, 50),
    "Suicide": (20, 40),
    "PandemicOrOutbreak": (20, 35),
    "RareOrUnusual": (50, 50),
}
FALLBACK_CAUSE_BONUS = 5

FLAG_POINTS: dict[str, int] = {
    "died_on_birthday": 15,
    "died_on_major_holiday": 10,
    "died_during_public_event": 25,
    "died_in_extreme_sport": 30,
    "is_first_death_of_year": 10,
    "is_last_death_of_year": 10,
}


@dataclass
class ScoreBreakdown:
    base: int
    cause_bonus: int
    bonuses: dict[str, int] = field(default_factory=dict)
    total: int = 0


def compute_base(age: int) -> int:
    return 100 - age


def compute_cause_bonus(category: str | None, age: int) -> int:
    split = CAUSE_BONUS.get(category or "")
    if split is None:
        return FALLBACK_CAUSE_BONUS
    senior, junior = split
    return senior if age >= SENIOR_AGE else junior


def compute_bonuses(record: Any) -> dict[str, int]:
    """Points for each circumstance flag that is set on *record*."""
    return {flag: pts for flag, pts in FLAG_POINTS.items() if getattr(record, flag, False)}


def score_breakdown(record: Any) -> ScoreBreakdown:
    """Full breakdown for a record (ORM row or anything with the same attributes)."""
    age = getattr(record, "age_at_death", None)
    if age is None:
        age = DEFAULT_AGE
    base = compute_base(age)
    cause_bonus = compute_cause_bonus(getattr(record, "cause_of_death_category", None), age)
    bonuses = compute_bonuses(record)
    total = max(0, base + cause_bonus + sum(bonuses.values()))
    return ScoreBreakdown(base=base, cause_bonus=cause_bonus, bonuses=bonuses, total=total)


def score(record: Any) -> int:
    """Total points awarded for *record*; always ``>= 0``."""
    return score_breakdown(record).total


# ---------------------------------------------------------------------------
# Flag derivation at creation time
# ---------------------------------------------------------------------------


def died_on_birthday(date_of_birth: date | None, date_of_death: date) -> bool:
    return date_of_birth is not None and same_month_day(date_of_birth, date_of_death)


def died_on_holiday(date_of_death: date, holidays: Iterable[date]) -> bool:
    return any(same_month_day(h, date_of_death) for h in holidays)
