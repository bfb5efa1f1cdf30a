from __future__ import annotations

import argparse
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from deadpool import services
from deadpool.db import get_session, init_db, session_scope
from deadpool.models import DeceasedRecord, RSSFeed
from deadpool.orchestrator import FLOWS, IngestionFailed, run_flow
from deadpool.schemas import (
    DeceasedCreate,
    DeceasedOut,
    DeceasedUpdate,
    FeedCreate,
    FeedOut,
    FeedUpdate,
    LeaderboardEntry,
    RejectResult,
    RunLogOut,
    RunSummary,
    StatsOut,
    TotalsMismatch,
    TriggerParams,
)
from deadpool.store import PersistenceError, hits_for_record, search_deceased

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Deadpool",
    version="0.1.0",
    description=(
        "Celebrity deadpool ingestion and scoring API. "
        "Discovers reported deaths from several sources, records them once, "
        "and scores matching player predictions. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Ingestion", "description": "Trigger source runs and inspect run logs."},
        {"name": "Deceased", "description": "Browse, add, approve and reject death records."},
        {"name": "Players", "description": "Leaderboard and score consistency checks."},
        {"name": "Feeds", "description": "Configure the news feeds polled by the feeds source."},
        {"name": "Stats", "description": "Aggregate statistics."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


def _deceased_out(session: Session, rec: DeceasedRecord) -> dict:
    return services.deceased_summary(rec, hits=len(hits_for_record(session, rec.id)))


# ---------------------------------------------------------------------------
# Routes: Ingestion
# ---------------------------------------------------------------------------


@app.post("/api/ingest/{source}", response_model=RunSummary, response_model_by_alias=True,
          tags=["Ingestion"], summary="Run one source (or all) and score new deaths")
async def ingest_source(source: str, body: TriggerParams | None = None,
                        session: Session = Depends(db_session)):
    if source not in FLOWS:
        raise HTTPException(404, f"Unknown source '{source}'")
    params = (body or TriggerParams()).model_dump(by_alias=True)
    try:
        return await run_flow(session, source, params)
    except IngestionFailed as exc:
        return JSONResponse(status_code=500, content={
            "success": False, "error": str(exc), "runId": exc.run_id, "source": source,
        })


@app.get("/api/runs", response_model=list[RunLogOut], tags=["Ingestion"], summary="Recent runs")
async def list_runs(limit: int = Query(20, ge=1, le=200), session: Session = Depends(db_session)):
    return [services.run_log_summary(r) for r in services.recent_runs(session, limit)]


@app.post("/api/runs/mark-stale", tags=["Ingestion"], summary="Fail runs stuck in running state")
async def mark_stale(session: Session = Depends(db_session)):
    return {"marked_failed": services.mark_stale_runs(session)}


# ---------------------------------------------------------------------------
# Routes: Deceased
# ---------------------------------------------------------------------------


@app.get("/api/deceased", response_model=list[DeceasedOut], tags=["Deceased"],
         summary="Search death records")
async def list_deceased(
    q: str | None = Query(None, description="Case-insensitive name substring"),
    game_year: int | None = None,
    approved: bool | None = None,
    session: Session = Depends(db_session),
):
    records = search_deceased(session, name_contains=q, game_year=game_year, approved=approved)
    return [_deceased_out(session, r) for r in records]


@app.get("/api/deceased/{deceased_id}", response_model=DeceasedOut, tags=["Deceased"],
         summary="Get one death record with its score")
async def get_deceased_record(deceased_id: int, session: Session = Depends(db_session)):
    rec = _get_or_404(session, DeceasedRecord, deceased_id, "Deceased record")
    return _deceased_out(session, rec)


@app.post("/api/deceased", response_model=DeceasedOut, status_code=201, tags=["Deceased"],
          summary="Add a death manually (approved, scored immediately)")
async def create_deceased(body: DeceasedCreate, session: Session = Depends(db_session)):
    try:
        rec, created = services.add_manual_death(session, body.model_dump())
    except PersistenceError as exc:
        raise HTTPException(500, f"Could not save record: {exc}") from exc
    if not created:
        raise HTTPException(409, f"{rec.canonical_name} on {rec.date_of_death} is already recorded")
    return _deceased_out(session, rec)


@app.put("/api/deceased/{deceased_id}", response_model=DeceasedOut, tags=["Deceased"],
         summary="Edit flags, cause or approval")
async def update_deceased_record(deceased_id: int, body: DeceasedUpdate,
                                 session: Session = Depends(db_session)):
    rec = _get_or_404(session, DeceasedRecord, deceased_id, "Deceased record")
    services.update_deceased(session, rec, body.model_dump(exclude_unset=True))
    return _deceased_out(session, rec)


@app.post("/api/deceased/{deceased_id}/approve", tags=["Deceased"],
          summary="Approve a record and score matching predictions")
async def approve_deceased_record(deceased_id: int, session: Session = Depends(db_session)):
    rec = _get_or_404(session, DeceasedRecord, deceased_id, "Deceased record")
    return {"id": rec.id, "picks_scored": services.approve_deceased(session, rec)}


@app.post("/api/deceased/{deceased_id}/reject", response_model=RejectResult, tags=["Deceased"],
          summary="Delete a record and reverse every score it awarded")
async def reject_deceased_record(deceased_id: int, session: Session = Depends(db_session)):
    rec = _get_or_404(session, DeceasedRecord, deceased_id, "Deceased record")
    rec_id, name = rec.id, rec.canonical_name
    picks, points = services.reject_deceased(session, rec)
    return {"id": rec_id, "name": name, "picks_reverted": picks, "points_reverted": points}


# ---------------------------------------------------------------------------
# Routes: Players
# ---------------------------------------------------------------------------


@app.get("/api/players/leaderboard", response_model=list[LeaderboardEntry], tags=["Players"],
         summary="Players ranked by total score")
async def get_leaderboard(limit: int = Query(50, ge=1, le=500), session: Session = Depends(db_session)):
    return services.leaderboard(session, limit)


@app.get("/api/players/verify-totals", response_model=list[TotalsMismatch], tags=["Players"],
         summary="Players whose total differs from their scored predictions")
async def get_total_mismatches(session: Session = Depends(db_session)):
    return services.verify_totals(session)


# ---------------------------------------------------------------------------
# Routes: Feeds
# ---------------------------------------------------------------------------


@app.get("/api/feeds", response_model=list[FeedOut], tags=["Feeds"], summary="List configured feeds")
async def list_feeds(session: Session = Depends(db_session)):
    return [services.feed_summary(f) for f in services.list_feeds(session)]


@app.post("/api/feeds", response_model=FeedOut, status_code=201, tags=["Feeds"], summary="Add a feed")
async def create_feed(body: FeedCreate, session: Session = Depends(db_session)):
    feed = services.add_feed(session, body.name, body.url, body.is_active)
    if feed is None:
        raise HTTPException(409, "Feed URL already configured")
    return services.feed_summary(feed)


@app.put("/api/feeds/{feed_id}", response_model=FeedOut, tags=["Feeds"],
         summary="Rename a feed or toggle it on or off")
async def update_feed(feed_id: int, body: FeedUpdate, session: Session = Depends(db_session)):
    feed = _get_or_404(session, RSSFeed, feed_id, "Feed")
    if body.name is not None:
        feed.name = body.name.strip()
    if body.is_active is not None:
        services.set_feed_active(session, feed, body.is_active)
    else:
        session.commit()
    return services.feed_summary(feed)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut, tags=["Stats"], summary="Aggregate statistics")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("deadpool.app:app", host="127.0.0.1", port=8002, reload=True)


async def _ingest_once(source: str, days: int | None) -> RunSummary:
    with session_scope() as session:
        return await run_flow(session, source, {"days": days})


def ingest_main(argv: list[str] | None = None) -> int:
    """Run one source from the command line, e.g. from a daily cron job."""
    parser = argparse.ArgumentParser(prog="deadpool-ingest", description=ingest_main.__doc__)
    parser.add_argument("source", choices=sorted(FLOWS))
    parser.add_argument("--days", type=int, default=None, help="recency window in days")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_db()
    try:
        summary = asyncio.run(_ingest_once(args.source, args.days))
    except IngestionFailed as exc:
        log.error("Run %s failed: %s", exc.run_id, exc)
        return 1
    print(summary.message)
    return 0


if __name__ == "__main__":
    main()
