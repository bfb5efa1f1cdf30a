from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, validates


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Closed vocabularies
# ---------------------------------------------------------------------------

CAUSE_CATEGORIES = (
    "Natural", "Accidental", "Violent", "Suicide",
    "RareOrUnusual", "PandemicOrOutbreak", "Unknown",
)

SOURCE_TAGS = ("tabular", "feed", "structured", "biography")

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"

BONUS_FLAGS = (
    "died_on_birthday", "died_on_major_holiday", "died_during_public_event",
    "died_in_extreme_sport", "is_first_death_of_year", "is_last_death_of_year",
)


def name_key(name: str) -> str:
    """Case- and whitespace-insensitive form of a person name (the dedup key)."""
    return " ".join((name or "").split()).lower()


# ---------------------------------------------------------------------------
# Ephemeral connector output
# ---------------------------------------------------------------------------


@dataclass
class CandidateDeath:
    """An unverified death fact pulled from one source."""
    name: str
    date_of_death: date
    source_tag: str
    source_url: str = ""
    age: int | None = None
    cause_text: str | None = None
    date_of_birth: date | None = None
    description: str = ""
    confirmed: bool = False
    cause_category: str | None = None  # filled in by the normalizer


# ---------------------------------------------------------------------------
# Persistent entities
# ---------------------------------------------------------------------------


class Player(Base):
    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(300), default="")
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    total_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    predictions: Mapped[list[Prediction]] = relationship("Prediction", back_populates="owner")


class DeceasedRecord(Base):
    __tablename__ = "deceased_celebrities"
    __table_args__ = (
        UniqueConstraint("name_key", "date_of_death", name="uq_deceased_name_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    canonical_name: Mapped[str] = mapped_column(String(300), nullable=False)
    name_key: Mapped[str] = mapped_column(String(300), nullable=False, index=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    date_of_death: Mapped[date] = mapped_column(Date, nullable=False)
    age_at_death: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cause_of_death_category: Mapped[str] = mapped_column(String(30), default="Unknown")
    cause_of_death_details: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str] = mapped_column(Text, default="")
    died_on_birthday: Mapped[bool] = mapped_column(Boolean, default=False)
    died_on_major_holiday: Mapped[bool] = mapped_column(Boolean, default=False)
    died_during_public_event: Mapped[bool] = mapped_column(Boolean, default=False)
    died_in_extreme_sport: Mapped[bool] = mapped_column(Boolean, default=False)
    is_first_death_of_year: Mapped[bool] = mapped_column(Boolean, default=False)
    is_last_death_of_year: Mapped[bool] = mapped_column(Boolean, default=False)
    game_year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    is_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    source_url: Mapped[str] = mapped_column(String(500), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, onupdate=func.now())


class Prediction(Base):
    __tablename__ = "celebrity_picks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(Integer, ForeignKey("profiles.id"), nullable=False, index=True)
    celebrity_name: Mapped[str] = mapped_column(String(300), nullable=False)
    # Kept in step with celebrity_name; compared against name_key() of a record
    name_key: Mapped[str] = mapped_column(String(300), nullable=False, default="", index=True)
    game_year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    is_hit: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    points_awarded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Set when the pick is scored; cleared if that record is rejected
    deceased_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("deceased_celebrities.id", ondelete="SET NULL"), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    owner: Mapped[Player] = relationship("Player", back_populates="predictions")

    @validates("celebrity_name")
    def _sync_name_key(self, key, value):
        self.name_key = name_key(value)
        return value


class RunLog(Base):
    __tablename__ = "fetch_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(30), default="")
    status: Mapped[str] = mapped_column(String(20), default=RUN_RUNNING)  # running | completed | failed
    started_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deaths_found: Mapped[int] = mapped_column(Integer, default=0)
    deaths_added: Mapped[int] = mapped_column(Integer, default=0)
    picks_scored: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)


class RSSFeed(Base):
    __tablename__ = "rss_feeds"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    url: Mapped[str] = mapped_column(String(500), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


class Holiday(Base):
    __tablename__ = "holidays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    holiday_date: Mapped[date] = mapped_column(Date, nullable=False)
    game_year: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
