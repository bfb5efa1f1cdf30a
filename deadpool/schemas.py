"""Pydantic request/response schemas for the Deadpool API."""
from __future__ import annotations

from datetime import date

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from deadpool.models import CAUSE_CATEGORIES


def _check_cause(v: str | None) -> str | None:
    if v is not None and v not in CAUSE_CATEGORIES:
        raise ValueError(f"cause category must be one of {', '.join(CAUSE_CATEGORIES)}")
    return v


class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Ingestion triggers
# ---------------------------------------------------------------------------


class TriggerParams(_Camel):
    days: int | None = Field(default=None, ge=1, le=3660)
    target_date: date | None = None
    start_date: date | None = None
    end_date: date | None = None
    game_year: int | None = None
    manual: bool = False


class RunSummary(_Camel):
    success: bool = True
    run_id: int | None = None
    total_deaths: int = 0
    deaths_added: int = 0
    picks_scored: int = 0
    source: str
    message: str = ""


class RunLogOut(BaseModel):
    id: int
    source: str
    status: str
    started_at: str | None = None
    completed_at: str | None = None
    deaths_found: int
    deaths_added: int
    picks_scored: int
    error_message: str | None = None


# ---------------------------------------------------------------------------
# Deceased records
# ---------------------------------------------------------------------------


class _FlagsMixin(BaseModel):
    died_on_birthday: bool = False
    died_on_major_holiday: bool = False
    died_during_public_event: bool = False
    died_in_extreme_sport: bool = False
    is_first_death_of_year: bool = False
    is_last_death_of_year: bool = False


class DeceasedOut(_FlagsMixin):
    id: int
    canonical_name: str
    date_of_birth: date | None = None
    date_of_death: date
    age_at_death: int | None = None
    cause_of_death_category: str
    cause_of_death_details: str | None = None
    description: str = ""
    game_year: int
    is_approved: bool
    source_url: str = ""
    points: int
    hits: int = 0


class DeceasedCreate(_FlagsMixin):
    name: str = Field(min_length=1, max_length=300)
    date_of_death: date
    date_of_birth: date | None = None
    age_at_death: int | None = Field(default=None, ge=1, le=120)
    cause_of_death_category: str | None = None
    cause_of_death_details: str | None = None
    description: str = ""
    source_url: str = ""

    @field_validator("cause_of_death_category")
    @classmethod
    def cause_in_taxonomy(cls, v: str | None) -> str | None:
        return _check_cause(v)


class DeceasedUpdate(BaseModel):
    cause_of_death_category: str | None = None
    cause_of_death_details: str | None = None
    description: str | None = None
    died_on_birthday: bool | None = None
    died_on_major_holiday: bool | None = None
    died_during_public_event: bool | None = None
    died_in_extreme_sport: bool | None = None
    is_first_death_of_year: bool | None = None
    is_last_death_of_year: bool | None = None
    is_approved: bool | None = None

    @field_validator("cause_of_death_category")
    @classmethod
    def cause_in_taxonomy(cls, v: str | None) -> str | None:
        return _check_cause(v)


class RejectResult(BaseModel):
    id: int
    name: str
    picks_reverted: int
    points_reverted: int


# ---------------------------------------------------------------------------
# Players, feeds, stats
# ---------------------------------------------------------------------------


class LeaderboardEntry(BaseModel):
    rank: int
    player_id: int
    username: str
    total_score: int
    hits: int
    picks: int


class TotalsMismatch(BaseModel):
    player_id: int
    username: str
    total_score: int
    expected: int


class FeedOut(BaseModel):
    id: int
    name: str
    url: str
    is_active: bool


class FeedCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    url: str = Field(min_length=1, max_length=500)
    is_active: bool = True

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return v


class FeedUpdate(BaseModel):
    name: str | None = None
    is_active: bool | None = None


class StatsOut(BaseModel):
    total_deceased: int
    approved: int
    pending: int
    total_points: int
    picks: int
    hits: int
    by_cause: dict[str, int]
    by_game_year: dict[str, int]
    last_run: RunLogOut | None = None
