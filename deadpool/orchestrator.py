"""Ingestion orchestrator: one run from connector fan-out to scored predictions.

A run is ``running`` until it ends ``completed`` or ``failed``.  Candidates
are written one at a time; each scored prediction is committed together with
its owner's total, so a run that dies halfway leaves consistent data behind
and a re-run picks up where it stopped.
"""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Callable

from sqlalchemy.orm import Session

from deadpool.connectors import (
    BiographyConnector, Connector, FeedConnector, FetchParams, MonthlyDeathsListConnector,
    StructuredQueryConnector, TabularPageConnector,
)
from deadpool.models import RUN_COMPLETED, RUN_FAILED, CandidateDeath, DeceasedRecord
from deadpool.normalizer import categorize_cause, normalize
from deadpool.schemas import RunSummary
from deadpool.scoring import died_on_birthday, died_on_holiday, score
from deadpool.store import (
    PersistenceError, active_feeds, claim_prediction, commit, create_run_log,
    find_open_predictions, finish_run_log, get_deceased, holiday_dates, increment_total_score,
    insert_deceased, last_completed_run, outstanding_names, update_run_log,
)
from deadpool.utils import parse_date, utcnow

log = logging.getLogger(__name__)


class IngestionFailed(Exception):
    """A run hit an unrecoverable error; its RunLog has been marked failed."""

    def __init__(self, message: str, run_id: int | None = None):
        super().__init__(message)
        self.run_id = run_id


def require_approval() -> bool:
    return os.environ.get("DEADPOOL_REQUIRE_APPROVAL", "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RunResult:
    run_id: int
    deaths_found: int = 0
    deaths_added: int = 0
    picks_scored: int = 0


# ---------------------------------------------------------------------------
# Record creation and scoring
# ---------------------------------------------------------------------------


def record_values(candidate: CandidateDeath, holidays: list[date], approved: bool) -> dict[str, Any]:
    """Column values for a new DeceasedRecord, with derivable flags filled in."""
    dod = candidate.date_of_death
    return {
        "canonical_name": candidate.name,
        "date_of_birth": candidate.date_of_birth,
        "date_of_death": dod,
        "age_at_death": candidate.age,
        "cause_of_death_category": candidate.cause_category or categorize_cause(candidate.cause_text),
        "cause_of_death_details": candidate.cause_text,
        "description": candidate.description or "",
        "died_on_birthday": died_on_birthday(candidate.date_of_birth, dod),
        "died_on_major_holiday": died_on_holiday(dod, holidays),
        "game_year": dod.year,
        "is_approved": approved,
        "approved_at": utcnow() if approved else None,
        "source_url": candidate.source_url or "",
    }


def score_record(session: Session, record: DeceasedRecord) -> int:
    """Award *record*'s points to every open matching prediction.

    Each claim and the owner's increment share one commit. A claim lost to
    another run is skipped. Returns how many predictions this call scored.
    """
    points = score(record)
    scored = 0
    for prediction in find_open_predictions(session, record.canonical_name, record.game_year):
        if not claim_prediction(session, prediction.id, points, record.id):
            log.debug("Prediction %d already scored elsewhere", prediction.id)
            continue
        increment_total_score(session, prediction.owner_id, points)
        commit(session)
        scored += 1
        log.info("Scored prediction %d (%s) for player %d: %d points",
                 prediction.id, prediction.celebrity_name, prediction.owner_id, points)
    return scored


def _process_candidate(
    session: Session, candidate: CandidateDeath, holidays: dict[int, list[date]], gated: bool,
) -> tuple[bool, int]:
    """(added, picks scored) for one normalized candidate."""
    if get_deceased(session, candidate.name, candidate.date_of_death) is not None:
        log.debug("Already recorded: %s on %s", candidate.name, candidate.date_of_death)
        return False, 0

    year = candidate.date_of_death.year
    if year not in holidays:
        holidays[year] = holiday_dates(session, year)
    record = insert_deceased(session, record_values(candidate, holidays[year], candidate.confirmed))
    if record is None:
        log.debug("Lost insert race for %s on %s", candidate.name, candidate.date_of_death)
        return False, 0
    commit(session)
    log.info("Added %s (died %s, %s, via %s)", record.canonical_name, record.date_of_death,
             record.cause_of_death_category, candidate.source_tag)

    if gated and not record.is_approved:
        return True, 0
    return True, score_record(session, record)


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


async def gather_candidates(connectors: list[Connector], params: FetchParams) -> list[CandidateDeath]:
    results = await asyncio.gather(
        *(c.fetch_candidates(params) for c in connectors), return_exceptions=True,
    )
    candidates: list[CandidateDeath] = []
    for connector, result in zip(connectors, results):
        if isinstance(result, Exception):
            log.warning("%s connector raised: %s", connector.label, result)
        else:
            candidates.extend(result)
    return candidates


async def ingest(
    session: Session, connectors: list[Connector], params: FetchParams, source: str,
) -> RunResult:
    """Run *connectors* and write what they find.

    Per-candidate persistence errors are logged and skipped. Anything else,
    including a failed RunLog write, marks the run failed and raises
    :class:`IngestionFailed`.
    """
    try:
        run = create_run_log(session, source)
    except PersistenceError as exc:
        raise IngestionFailed(f"could not start run: {exc}") from exc
    result = RunResult(run_id=run.id)
    log.info("Run %d (%s) started with %d connectors", run.id, source, len(connectors))

    try:
        candidates = normalize(await gather_candidates(connectors, params), today=params.today)
        result.deaths_found = len(candidates)
        update_run_log(session, run.id, deaths_found=result.deaths_found)

        gated = require_approval()
        holidays: dict[int, list[date]] = {}
        for candidate in candidates:
            try:
                added, scored = _process_candidate(session, candidate, holidays, gated)
            except PersistenceError as exc:
                log.warning("Skipping %s on %s: %s", candidate.name, candidate.date_of_death, exc)
                continue
            if added or scored:
                result.deaths_added += int(added)
                result.picks_scored += scored
                update_run_log(session, run.id, deaths_added=result.deaths_added,
                               picks_scored=result.picks_scored)

        finish_run_log(session, run.id, RUN_COMPLETED, deaths_found=result.deaths_found,
                       deaths_added=result.deaths_added, picks_scored=result.picks_scored)
    except Exception as exc:
        log.error("Run %d (%s) failed: %s", run.id, source, exc)
        session.rollback()
        try:
            finish_run_log(session, run.id, RUN_FAILED, error_message=str(exc)[:2000])
        except PersistenceError as mark_exc:
            log.error("Could not mark run %d failed: %s", run.id, mark_exc)
        raise IngestionFailed(str(exc), run.id) from exc

    log.info("Run %d (%s) completed: found=%d added=%d scored=%d", run.id, source,
             result.deaths_found, result.deaths_added, result.picks_scored)
    return result


# ---------------------------------------------------------------------------
# Trigger flows
# ---------------------------------------------------------------------------


def fetch_params(raw: dict[str, Any] | None, today: date | None = None) -> FetchParams:
    """Build FetchParams from trigger input (camelCase or snake_case keys)."""
    raw = raw or {}

    def pick(*keys):
        for key in keys:
            if raw.get(key) is not None:
                return raw[key]
        return None

    days = pick("days")
    game_year = pick("gameYear", "game_year")
    params = FetchParams(
        days=int(days) if days is not None else None,
        target_date=parse_date(pick("targetDate", "target_date")),
        start_date=parse_date(pick("startDate", "start_date")),
        end_date=parse_date(pick("endDate", "end_date")),
        game_year=int(game_year) if game_year is not None else None,
    )
    if today is not None:
        params.today = today
    return params


def _feed_connector(session: Session, params: FetchParams) -> FeedConnector:
    feeds = [(f.name, f.url) for f in active_feeds(session)]
    watermark = None
    if params.days is None and params.target_date is None and params.start_date is None:
        last = last_completed_run(session, "feeds")
        if last is not None and last.started_at is not None:
            # one day of overlap; duplicates are no-ops
            watermark = last.started_at.date() - timedelta(days=1)
    return FeedConnector(feeds, watermark=watermark)


def _biography_connector(session: Session, params: FetchParams) -> BiographyConnector | None:
    year = params.game_year or params.today.year
    params.game_year = year
    params.names = outstanding_names(session, year)
    if not params.names:
        return None
    return BiographyConnector()


FLOWS: dict[str, Callable[[Session, FetchParams], list[Connector]]] = {
    "tabular": lambda session, params: [TabularPageConnector()],
    "wikipedia": lambda session, params: [MonthlyDeathsListConnector()],
    "feeds": lambda session, params: [_feed_connector(session, params)],
    "structured": lambda session, params: [StructuredQueryConnector()],
    "biography": lambda session, params: [c for c in [_biography_connector(session, params)] if c],
    "all": lambda session, params: [
        TabularPageConnector(), MonthlyDeathsListConnector(), _feed_connector(session, params),
        StructuredQueryConnector(),
        *[c for c in [_biography_connector(session, params)] if c],
    ],
}


async def run_flow(
    session: Session, source: str, params: FetchParams | dict[str, Any] | None = None,
    connectors: list[Connector] | None = None,
) -> RunSummary:
    """Run one trigger flow and summarise it. Raises IngestionFailed on a failed run."""
    if source not in FLOWS:
        raise ValueError(f"Unknown source {source!r}; expected one of {', '.join(FLOWS)}")
    if not isinstance(params, FetchParams):
        params = fetch_params(params)
    if connectors is None:
        connectors = FLOWS[source](session, params)

    result = await ingest(session, connectors, params, source)
    if not connectors:
        message = f"{source}: nothing to look up"
    else:
        message = (f"{source}: found {result.deaths_found} deaths, added {result.deaths_added}, "
                   f"scored {result.picks_scored} picks")
    return RunSummary(
        success=True, run_id=result.run_id, total_deaths=result.deaths_found,
        deaths_added=result.deaths_added, picks_scored=result.picks_scored,
        source=source, message=message,
    )
