"""Persistence primitives over SQLAlchemy.

Every write that can race with another run is expressed so the database
settles it:

- :func:`insert_deceased` is an ``INSERT ... ON CONFLICT DO NOTHING`` against
  the (name_key, date_of_death) unique constraint
- :func:`claim_prediction` is ``UPDATE ... WHERE is_hit = false`` and reports
  whether this caller won
- :func:`increment_total_score` is ``total_score = total_score + :delta``

Apart from the run-log helpers, functions here never commit; callers decide
where a transaction ends and go through :func:`commit` so failures surface
as :class:`PersistenceError`.  Statements run through :func:`_execute`, which
rolls back and raises the same error.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from deadpool.models import (
    RUN_COMPLETED, RUN_RUNNING, DeceasedRecord, Holiday, Player, Prediction, RSSFeed, RunLog,
    name_key,
)
from deadpool.utils import utcnow

log = logging.getLogger(__name__)


class PersistenceError(Exception):
    """A read or write against the store failed."""


def commit(session: Session) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(str(exc)) from exc


def _execute(session: Session, stmt):
    try:
        return session.execute(stmt)
    except SQLAlchemyError as exc:
        session.rollback()
        raise PersistenceError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Deceased records
# ---------------------------------------------------------------------------


def get_deceased(session: Session, name: str, date_of_death: date) -> DeceasedRecord | None:
    return _execute(session, select(DeceasedRecord).where(
        DeceasedRecord.name_key == name_key(name),
        DeceasedRecord.date_of_death == date_of_death,
    )).scalars().first()


def _insert_ignore(session: Session, model, values: dict[str, Any], conflict_cols: list[str]):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(**values)
    else:
        raise PersistenceError(f"insert-or-ignore not supported on {dialect!r}")
    return _execute(session, stmt.on_conflict_do_nothing(index_elements=conflict_cols))


def insert_deceased(session: Session, values: dict[str, Any]) -> DeceasedRecord | None:
    """Insert a record unless (name, date of death) already exists.

    Returns the new row, or ``None`` when the key was already taken (by an
    earlier run or a concurrent one).
    """
    values = {**values, "name_key": name_key(values["canonical_name"])}
    result = _insert_ignore(session, DeceasedRecord, values, ["name_key", "date_of_death"])
    if result.rowcount == 0:
        log.debug("Record for %s on %s already exists", values["canonical_name"], values["date_of_death"])
        return None
    return get_deceased(session, values["canonical_name"], values["date_of_death"])


def search_deceased(
    session: Session, *, name_contains: str | None = None, game_year: int | None = None,
    approved: bool | None = None,
) -> list[DeceasedRecord]:
    query = select(DeceasedRecord)
    if name_contains:
        query = query.where(DeceasedRecord.canonical_name.ilike(f"%{name_contains.strip()}%"))
    if game_year is not None:
        query = query.where(DeceasedRecord.game_year == game_year)
    if approved is not None:
        query = query.where(DeceasedRecord.is_approved.is_(approved))
    return list(_execute(session, query.order_by(DeceasedRecord.date_of_death.desc())).scalars())


# ---------------------------------------------------------------------------
# Predictions and player totals
# ---------------------------------------------------------------------------


def find_open_predictions(session: Session, name: str, game_year: int) -> list[Prediction]:
    """Unscored predictions for *name* (case- and whitespace-insensitive) in *game_year*."""
    return list(_execute(session, select(Prediction).where(
        Prediction.name_key == name_key(name),
        Prediction.game_year == game_year,
        Prediction.is_hit.is_(False),
    ).order_by(Prediction.id)).scalars())


def outstanding_names(session: Session, game_year: int) -> list[str]:
    """Distinct (case-insensitive) names with open predictions and no record yet this year."""
    recorded = select(DeceasedRecord.name_key).where(DeceasedRecord.game_year == game_year)
    rows = _execute(
        session,
        select(Prediction.name_key, func.min(Prediction.celebrity_name))
        .where(Prediction.game_year == game_year, Prediction.is_hit.is_(False))
        .where(Prediction.name_key.not_in(recorded))
        .group_by(Prediction.name_key)
        .order_by(Prediction.name_key),
    ).all()
    return [" ".join(display.split()) for _, display in rows]


def claim_prediction(session: Session, prediction_id: int, points: int, deceased_id: int) -> bool:
    """Mark a prediction hit unless someone already did. True if this call won."""
    result = _execute(
        session,
        update(Prediction)
        .where(Prediction.id == prediction_id, Prediction.is_hit.is_(False))
        .values(is_hit=True, points_awarded=points, deceased_id=deceased_id),
    )
    return result.rowcount == 1


def release_prediction(session: Session, prediction_id: int, deceased_id: int, points: int) -> bool:
    """Undo a hit awarded by *deceased_id*. True if this call reverted it."""
    result = _execute(
        session,
        update(Prediction)
        .where(
            Prediction.id == prediction_id,
            Prediction.is_hit.is_(True),
            Prediction.deceased_id == deceased_id,
            Prediction.points_awarded == points,
        )
        .values(is_hit=False, points_awarded=0, deceased_id=None),
    )
    return result.rowcount == 1


def increment_total_score(session: Session, player_id: int, delta: int) -> None:
    _execute(
        session,
        update(Player)
        .where(Player.id == player_id)
        .values(total_score=Player.total_score + delta),
    )


def hits_for_record(session: Session, deceased_id: int) -> list[Prediction]:
    # points_awarded feeds a compare-and-set, so never trust a cached row
    return list(_execute(
        session,
        select(Prediction)
        .where(Prediction.deceased_id == deceased_id, Prediction.is_hit.is_(True))
        .execution_options(populate_existing=True),
    ).scalars())


# ---------------------------------------------------------------------------
# Run logs
# ---------------------------------------------------------------------------


def create_run_log(session: Session, source: str) -> RunLog:
    run = RunLog(source=source, status=RUN_RUNNING, started_at=utcnow())
    session.add(run)
    commit(session)
    return run


def update_run_log(session: Session, run_id: int, **values: Any) -> None:
    _execute(session, update(RunLog).where(RunLog.id == run_id).values(**values))
    commit(session)


def finish_run_log(session: Session, run_id: int, status: str, **values: Any) -> None:
    update_run_log(session, run_id, status=status, completed_at=utcnow(), **values)


def last_completed_run(session: Session, source: str) -> RunLog | None:
    return _execute(
        session,
        select(RunLog)
        .where(RunLog.source == source, RunLog.status == RUN_COMPLETED)
        .order_by(RunLog.started_at.desc(), RunLog.id.desc()),
    ).scalars().first()


# ---------------------------------------------------------------------------
# Configuration tables
# ---------------------------------------------------------------------------


def active_feeds(session: Session) -> list[RSSFeed]:
    return list(_execute(
        session, select(RSSFeed).where(RSSFeed.is_active.is_(True)).order_by(RSSFeed.id),
    ).scalars())


def holiday_dates(session: Session, game_year: int) -> list[date]:
    """Holiday dates to compare (by month and day) against a death in *game_year*.

    A year with its own calendar rows uses those, so floating holidays land
    on the right day. Any other year falls back to every configured date.
    """
    own = list(_execute(
        session, select(Holiday.holiday_date).where(Holiday.game_year == game_year),
    ).scalars())
    if own:
        return own
    return list(_execute(session, select(Holiday.holiday_date).distinct()).scalars())
