"""Admin-facing operations shared by the API and scripts.

Functions take the session first. Unless noted, they commit their own work
because each one is a complete admin action.
"""
from __future__ import annotations

import logging
from collections import Counter
from datetime import timedelta
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from deadpool.models import (
    RUN_FAILED, RUN_RUNNING, CandidateDeath, DeceasedRecord, Player, Prediction, RSSFeed, RunLog,
)
from deadpool.normalizer import categorize_cause
from deadpool.orchestrator import record_values, score_record
from deadpool.scoring import score
from deadpool.store import (
    commit, get_deceased, hits_for_record, holiday_dates, increment_total_score, insert_deceased,
    release_prediction,
)
from deadpool.utils import calculate_age, utcnow

log = logging.getLogger(__name__)

DECEASED_UPDATE_FIELDS = (
    "cause_of_death_category", "cause_of_death_details", "description",
    "died_on_birthday", "died_on_major_holiday", "died_during_public_event",
    "died_in_extreme_sport", "is_first_death_of_year", "is_last_death_of_year",
)

STALE_RUN_AFTER = timedelta(hours=2)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def deceased_summary(rec: DeceasedRecord, hits: int = 0) -> dict:
    return {
        "id": rec.id, "canonical_name": rec.canonical_name,
        "date_of_birth": rec.date_of_birth, "date_of_death": rec.date_of_death,
        "age_at_death": rec.age_at_death,
        "cause_of_death_category": rec.cause_of_death_category,
        "cause_of_death_details": rec.cause_of_death_details,
        "description": rec.description or "",
        "died_on_birthday": rec.died_on_birthday,
        "died_on_major_holiday": rec.died_on_major_holiday,
        "died_during_public_event": rec.died_during_public_event,
        "died_in_extreme_sport": rec.died_in_extreme_sport,
        "is_first_death_of_year": rec.is_first_death_of_year,
        "is_last_death_of_year": rec.is_last_death_of_year,
        "game_year": rec.game_year, "is_approved": rec.is_approved,
        "source_url": rec.source_url or "", "points": score(rec), "hits": hits,
    }


def run_log_summary(run: RunLog) -> dict:
    return {
        "id": run.id, "source": run.source or "", "status": run.status,
        "started_at": _iso(run.started_at), "completed_at": _iso(run.completed_at),
        "deaths_found": run.deaths_found or 0, "deaths_added": run.deaths_added or 0,
        "picks_scored": run.picks_scored or 0, "error_message": run.error_message,
    }


def feed_summary(feed: RSSFeed) -> dict:
    return {"id": feed.id, "name": feed.name, "url": feed.url, "is_active": feed.is_active}


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


# ---------------------------------------------------------------------------
# Deceased records
# ---------------------------------------------------------------------------


def add_manual_death(session: Session, data: dict[str, Any]) -> tuple[DeceasedRecord, bool]:
    """Admin entry. Returns ``(record, created)``; an existing (name, date) is returned as-is."""
    name = " ".join(data["name"].split())
    dod = data["date_of_death"]
    existing = get_deceased(session, name, dod)
    if existing is not None:
        return existing, False

    dob = data.get("date_of_birth")
    age = data.get("age_at_death")
    if age is None and dob is not None:
        age = calculate_age(dob, dod)
    candidate = CandidateDeath(
        name=name, date_of_death=dod, date_of_birth=dob, age=age,
        cause_text=data.get("cause_of_death_details"),
        cause_category=data.get("cause_of_death_category") or categorize_cause(data.get("cause_of_death_details")),
        description=data.get("description") or "", source_tag="manual",
        source_url=data.get("source_url") or "", confirmed=True,
    )
    values = record_values(candidate, holiday_dates(session, dod.year), approved=True)
    for flag in ("died_during_public_event", "died_in_extreme_sport",
                 "is_first_death_of_year", "is_last_death_of_year"):
        values[flag] = bool(data.get(flag))
    values["died_on_birthday"] = values["died_on_birthday"] or bool(data.get("died_on_birthday"))
    values["died_on_major_holiday"] = values["died_on_major_holiday"] or bool(data.get("died_on_major_holiday"))

    record = insert_deceased(session, values)
    if record is None:
        return get_deceased(session, name, dod), False
    commit(session)
    log.info("Manually added %s (died %s)", record.canonical_name, record.date_of_death)
    score_record(session, record)
    return record, True


def update_deceased(session: Session, rec: DeceasedRecord, updates: dict[str, Any]) -> int:
    """Edit a record. Approving an unapproved record scores it; returns picks scored.

    Points already awarded are left alone when flags change afterwards.
    """
    apply_updates(rec, updates, DECEASED_UPDATE_FIELDS)
    approving = bool(updates.get("is_approved")) and not rec.is_approved
    if updates.get("is_approved") is False:
        rec.is_approved = False
        rec.approved_at = None
    if approving:
        rec.is_approved = True
        rec.approved_at = utcnow()
    commit(session)
    if approving:
        log.info("Approved %s", rec.canonical_name)
        return score_record(session, rec)
    return 0


def approve_deceased(session: Session, rec: DeceasedRecord) -> int:
    """Approve and score. Safe to repeat: claims only flip open predictions."""
    if not rec.is_approved:
        return update_deceased(session, rec, {"is_approved": True})
    return score_record(session, rec)


def reject_deceased(session: Session, rec: DeceasedRecord) -> tuple[int, int]:
    """Reverse every score this record awarded, then delete it.

    Returns ``(picks reverted, points reverted)``.
    """
    picks = points = 0
    for prediction in hits_for_record(session, rec.id):
        awarded = prediction.points_awarded
        if release_prediction(session, prediction.id, rec.id, awarded):
            increment_total_score(session, prediction.owner_id, -awarded)
            picks += 1
            points += awarded
    session.execute(delete(DeceasedRecord).where(DeceasedRecord.id == rec.id))
    commit(session)
    log.info("Rejected %s: reverted %d picks (%d points)", rec.canonical_name, picks, points)
    return picks, points


# ---------------------------------------------------------------------------
# Players
# ---------------------------------------------------------------------------


def _hit_sums(session: Session) -> dict[int, tuple[int, int, int]]:
    """player id -> (picks, hits, sum of points on hits)."""
    rows = session.execute(
        select(
            Prediction.owner_id,
            func.count(Prediction.id),
            func.count(Prediction.id).filter(Prediction.is_hit.is_(True)),
            func.coalesce(func.sum(Prediction.points_awarded).filter(Prediction.is_hit.is_(True)), 0),
        ).group_by(Prediction.owner_id)
    ).all()
    return {owner: (picks, hits or 0, pts or 0) for owner, picks, hits, pts in rows}


def leaderboard(session: Session, limit: int = 50) -> list[dict]:
    sums = _hit_sums(session)
    players = session.execute(
        select(Player).order_by(Player.total_score.desc(), Player.username).limit(limit)
    ).scalars().all()
    out = []
    for rank, player in enumerate(players, start=1):
        picks, hits, _ = sums.get(player.id, (0, 0, 0))
        out.append({
            "rank": rank, "player_id": player.id, "username": player.username,
            "total_score": player.total_score, "hits": hits, "picks": picks,
        })
    return out


def verify_totals(session: Session) -> list[dict]:
    """Players whose stored total differs from the sum over their hit predictions."""
    sums = _hit_sums(session)
    mismatches = []
    for player in session.execute(select(Player).order_by(Player.id)).scalars():
        expected = sums.get(player.id, (0, 0, 0))[2]
        if player.total_score != expected:
            mismatches.append({
                "player_id": player.id, "username": player.username,
                "total_score": player.total_score, "expected": expected,
            })
    if mismatches:
        log.warning("%d players have totals out of step with their predictions", len(mismatches))
    return mismatches


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def recent_runs(session: Session, limit: int = 20) -> list[RunLog]:
    return list(session.execute(
        select(RunLog).order_by(RunLog.started_at.desc(), RunLog.id.desc()).limit(limit)
    ).scalars())


def mark_stale_runs(session: Session, max_age: timedelta = STALE_RUN_AFTER) -> int:
    """Fail runs left ``running`` longer than *max_age* (e.g. aborted by a host timeout)."""
    cutoff = utcnow() - max_age
    stale = session.execute(
        select(RunLog).where(RunLog.status == RUN_RUNNING, RunLog.started_at < cutoff)
    ).scalars().all()
    for run in stale:
        run.status = RUN_FAILED
        run.completed_at = utcnow()
        run.error_message = f"Marked failed: still running after {max_age}"
        log.warning("Run %d (%s) was stale; marked failed", run.id, run.source)
    commit(session)
    return len(stale)


# ---------------------------------------------------------------------------
# Feeds
# ---------------------------------------------------------------------------


def list_feeds(session: Session) -> list[RSSFeed]:
    return list(session.execute(select(RSSFeed).order_by(RSSFeed.id)).scalars())


def add_feed(session: Session, name: str, url: str, is_active: bool = True) -> RSSFeed | None:
    """New feed, or ``None`` if the URL is already configured."""
    if session.execute(select(RSSFeed).where(RSSFeed.url == url)).scalars().first():
        return None
    feed = RSSFeed(name=name.strip(), url=url, is_active=is_active)
    session.add(feed)
    commit(session)
    return feed


def set_feed_active(session: Session, feed: RSSFeed, is_active: bool) -> RSSFeed:
    feed.is_active = is_active
    commit(session)
    return feed


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def compute_stats(session: Session) -> dict:
    records = session.execute(select(DeceasedRecord)).scalars().all()
    by_cause: Counter[str] = Counter()
    by_year: Counter[str] = Counter()
    approved = 0
    for rec in records:
        by_cause[rec.cause_of_death_category or "Unknown"] += 1
        by_year[str(rec.game_year)] += 1
        if rec.is_approved:
            approved += 1
    picks, hits, points = session.execute(
        select(
            func.count(Prediction.id),
            func.count(Prediction.id).filter(Prediction.is_hit.is_(True)),
            func.coalesce(func.sum(Prediction.points_awarded), 0),
        )
    ).one()
    runs = recent_runs(session, limit=1)
    return {
        "total_deceased": len(records), "approved": approved, "pending": len(records) - approved,
        "total_points": points, "picks": picks, "hits": hits,
        "by_cause": dict(by_cause), "by_game_year": dict(by_year),
        "last_run": run_log_summary(runs[0]) if runs else None,
    }
