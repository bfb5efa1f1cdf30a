from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, inspect as sa_inspect, select, text
from sqlalchemy.orm import Session, sessionmaker

from deadpool.models import Base, Holiday, RSSFeed, name_key

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None

DATA_DIR = Path(__file__).parent / "data"

DEFAULT_FEEDS = [
    ("On This Day: famous deaths", "https://www.onthisday.com/rss/famous-deaths.xml"),
]

DEFAULT_HOLIDAYS_2025 = [
    ("New Year's Day", date(2025, 1, 1)),
    ("Martin Luther King Jr. Day", date(2025, 1, 20)),
    ("Valentine's Day", date(2025, 2, 14)),
    ("Presidents' Day", date(2025, 2, 17)),
    ("Easter", date(2025, 4, 20)),
    ("Mother's Day", date(2025, 5, 11)),
    ("Memorial Day", date(2025, 5, 26)),
    ("Father's Day", date(2025, 6, 15)),
    ("Independence Day", date(2025, 7, 4)),
    ("Labor Day", date(2025, 9, 1)),
    ("Columbus Day", date(2025, 10, 13)),
    ("Halloween", date(2025, 10, 31)),
    ("Veterans Day", date(2025, 11, 11)),
    ("Thanksgiving", date(2025, 11, 27)),
    ("Christmas Day", date(2025, 12, 25)),
]

# Same month/day every year
FIXED_HOLIDAYS = [
    ("New Year's Day", 1, 1), ("Valentine's Day", 2, 14), ("Independence Day", 7, 4),
    ("Halloween", 10, 31), ("Veterans Day", 11, 11), ("Christmas Day", 12, 25),
]


def default_db_path() -> Path:
    return Path(os.environ.get("DEADPOOL_DB") or DATA_DIR / "deadpool.db")


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        db_path = Path(db_path) if db_path is not None else default_db_path()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        _engine = create_engine(url, connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _migrate_existing_db(_engine)
        seed_defaults(_SessionLocal)
        log.info("Database ready at %s", db_path)


def _migrate_existing_db(engine) -> None:
    """Add columns that may be missing in older databases."""
    inspector = sa_inspect(engine)
    if inspector.has_table("fetch_logs"):
        columns = {col["name"] for col in inspector.get_columns("fetch_logs")}
        if "source" not in columns:
            with engine.begin() as conn:
                conn.execute(text("ALTER TABLE fetch_logs ADD COLUMN source VARCHAR(30) DEFAULT ''"))
    if inspector.has_table("celebrity_picks"):
        columns = {col["name"] for col in inspector.get_columns("celebrity_picks")}
        if "deceased_id" not in columns:
            with engine.begin() as conn:
                conn.execute(text("ALTER TABLE celebrity_picks ADD COLUMN deceased_id INTEGER"))
        if "name_key" not in columns:
            with engine.begin() as conn:
                conn.execute(text("ALTER TABLE celebrity_picks ADD COLUMN name_key VARCHAR(300) DEFAULT ''"))
                rows = conn.execute(text("SELECT id, celebrity_name FROM celebrity_picks")).all()
                for pick_id, celebrity_name in rows:
                    conn.execute(text("UPDATE celebrity_picks SET name_key = :key WHERE id = :id"),
                                 {"key": name_key(celebrity_name), "id": pick_id})
            log.info("Backfilled name_key for %d picks", len(rows))


def seed_defaults(factory, today: date | None = None) -> None:
    """Seed the default feed and holiday calendar into empty tables."""
    today = today or date.today()
    with factory() as session:
        if session.execute(select(RSSFeed.id).limit(1)).first() is None:
            for name, url in DEFAULT_FEEDS:
                session.add(RSSFeed(name=name, url=url, is_active=True))
        if session.execute(select(Holiday.id).limit(1)).first() is None:
            for name, day in DEFAULT_HOLIDAYS_2025:
                session.add(Holiday(name=name, holiday_date=day, game_year=day.year))
            if today.year != 2025:
                for name, month, day in FIXED_HOLIDAYS:
                    session.add(Holiday(name=name, holiday_date=date(today.year, month, day),
                                        game_year=today.year))
        session.commit()


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (scheduled jobs, scripts)::

        with session_scope() as session:
            await run_flow(session, "all")
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
