"""Batch operations and read-side queries shared by the API and the CLI.

Every batch invocation follows the same shape:

1. fetch inputs (outside any write transaction; may time out),
2. open the write transaction with :func:`rankings.db.lock_for_write`,
3. normalize, replace this run's slice of the candidate snapshot (internal
   data, or one feed and season), combine it with every other stored slice,
   merge and re-rank,
4. record the run in the ledger and commit.

A failed fetch writes only a ``failed`` ledger row; a lost write race rolls
back everything and surfaces as :class:`ConcurrentRunError`.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, selectinload

from rankings.config import Settings, get_settings
from rankings.db import finish_run, lock_for_write, start_run
from rankings.merge import ConcurrentRunError, MergeStats, merge_candidates
from rankings.models import Athlete, RankingCandidate, RankingEntry, RankingRun
from rankings.normalizer import (
    EXTERNAL,
    INTERNAL,
    AthleteRef,
    Candidate,
    NormalizationReport,
    combine_candidates,
    external_candidates,
    internal_candidates,
)
from rankings.sources import (
    DatabaseEvaluationSource,
    EvaluationSource,
    ExternalRankingSource,
    FeedRankingSource,
    SourceUnavailableError,
)
from rankings.utils import json_parse, normalize_sport, utc_now

log = logging.getLogger(__name__)

OP_RECALCULATE = "recalculate"
OP_IMPORT = "import_external"
OP_MERGE = "merge"

ENTRY_FIELDS = (
    "id", "athlete_id", "external_athlete_name", "is_external_only", "sport",
    "graduation_year", "position", "state", "source", "composite_score",
    "overall_rank", "position_rank", "state_rank", "national_rank",
    "is_manual_override", "overridden_by", "override_reason",
)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def entry_summary(entry: RankingEntry) -> dict:
    return {
        **{f: getattr(entry, f) for f in ENTRY_FIELDS},
        "display_name": entry.display_name,
        "overridden_at": _iso(entry.overridden_at),
        "last_calculated": _iso(entry.last_calculated),
        "created_at": _iso(entry.created_at),
    }


def run_summary(run: RankingRun) -> dict:
    return {
        "id": run.id, "operation": run.operation, "sport": run.sport,
        "season": run.season, "status": run.status, "actor_id": run.actor_id,
        "details": json_parse(run.details_json, {}),
        "error_message": run.error_message,
        "started_at": _iso(run.started_at), "finished_at": _iso(run.finished_at),
    }


def _batch_summary(
    run: RankingRun,
    stats: MergeStats,
    report: NormalizationReport | None = None,
    superseded: int = 0,
    **extra: Any,
) -> dict:
    return {
        "run_id": run.id,
        "operation": run.operation,
        "sport": run.sport,
        "season": run.season,
        **stats.as_dict(),
        "rejected": report.rejected if report else 0,
        "ambiguous": report.ambiguous if report else 0,
        "unscored": report.unscored if report else 0,
        "superseded": superseded,
        "errors": list(report.errors) if report else [],
        **extra,
    }


# ---------------------------------------------------------------------------
# Candidate snapshot
# ---------------------------------------------------------------------------


def replace_candidates(
    session: Session,
    sport: str,
    origin: str,
    candidates: list[Candidate],
    *,
    feed: str | None = None,
    season: int | None = None,
) -> None:
    """Swap the stored snapshot slice for (sport, origin, feed, season) (caller must commit).

    Other feeds and other seasons keep their rows, so a later merge still
    sees everything imported so far.
    """
    sport_key = normalize_sport(sport)
    feed = feed or origin
    session.execute(delete(RankingCandidate).where(
        RankingCandidate.sport == sport_key,
        RankingCandidate.origin == origin,
        RankingCandidate.feed == feed,
        RankingCandidate.season.is_(None) if season is None else RankingCandidate.season == season,
    ))
    now = utc_now()
    for c in candidates:
        session.add(RankingCandidate(
            sport=c.sport, origin=c.origin, feed=feed, season=season, source=c.source,
            athlete_id=c.athlete_id, external_name=c.external_name,
            graduation_year=c.graduation_year, composite_score=c.composite_score,
            position=c.position, state=c.state, external_rank=c.external_rank,
            normalized_at=now,
        ))
    session.flush()


def load_candidates(session: Session, sport: str, origin: str) -> list[Candidate]:
    rows = session.execute(
        select(RankingCandidate)
        .where(RankingCandidate.sport == normalize_sport(sport), RankingCandidate.origin == origin)
        .order_by(RankingCandidate.id)
    ).scalars().all()
    return [
        Candidate(
            sport=r.sport, graduation_year=r.graduation_year,
            composite_score=r.composite_score, origin=r.origin, source=r.source,
            athlete_id=r.athlete_id, external_name=r.external_name,
            position=r.position, state=r.state, external_rank=r.external_rank,
        )
        for r in rows
    ]


def load_athlete_refs(session: Session, sport: str) -> list[AthleteRef]:
    rows = session.execute(
        select(Athlete.id, Athlete.full_name, Athlete.sport, Athlete.graduation_year)
        .where(func.lower(Athlete.sport) == normalize_sport(sport))
    ).all()
    return [
        AthleteRef(id=r.id, full_name=r.full_name, sport=r.sport, graduation_year=r.graduation_year)
        for r in rows
    ]


# ---------------------------------------------------------------------------
# Transaction helpers
# ---------------------------------------------------------------------------


def _require_sport(sport: str) -> str:
    if not sport or not sport.strip():
        raise ValueError("sport is required")
    return normalize_sport(sport)


def _end_read(session: Session) -> None:
    """Close the read transaction left open by the fetch phase."""
    if session.in_transaction():
        session.commit()


def _record_failure(
    session: Session, operation: str, sport: str, message: str, *,
    season: int | None = None, actor_id: str | None = None,
) -> None:
    """Write a ``failed`` ledger row in its own transaction; ranking rows are never touched."""
    try:
        session.rollback()
        run = start_run(session, operation, sport, season=season, actor_id=actor_id)
        finish_run(session, run, status="failed", error_message=message)
        session.commit()
    except OperationalError as exc:
        session.rollback()
        log.error("Could not record failed %s run for %s: %s", operation, sport, exc)


def _write_phase(session: Session, operation: str, sport: str, work, *, season=None, actor_id=None) -> dict:
    """Run ``work(session, run)`` inside the locked write transaction and commit."""
    try:
        lock_for_write(session)
        run = start_run(session, operation, sport, season=season, actor_id=actor_id)
        summary = work(session, run)
        session.commit()
    except OperationalError as exc:
        session.rollback()
        log.error("%s for %s lost the write lock: %s", operation, sport, exc)
        raise ConcurrentRunError(f"Another ranking run is writing {sport}; retry the {operation}") from exc
    except Exception:
        session.rollback()
        raise
    summary["status"] = run.status
    return summary


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def recalculate(
    session: Session,
    sport: str,
    *,
    source: EvaluationSource | None = None,
    settings: Settings | None = None,
    actor_id: str | None = None,
) -> dict:
    """Recompute composite scores for every internal athlete of ``sport``, then merge and re-rank."""
    cfg = settings or get_settings()
    sport_key = _require_sport(sport)
    source = source or DatabaseEvaluationSource(session)

    try:
        metrics = await asyncio.wait_for(source.fetch(sport_key), cfg.external_fetch_timeout)
    except asyncio.TimeoutError as exc:
        message = f"Evaluation source timed out after {cfg.external_fetch_timeout:g}s"
        log.error("Recalculate %s aborted: %s", sport_key, message)
        _record_failure(session, OP_RECALCULATE, sport_key, message, actor_id=actor_id)
        raise SourceUnavailableError(message) from exc
    except SourceUnavailableError as exc:
        log.error("Recalculate %s aborted: %s", sport_key, exc)
        _record_failure(session, OP_RECALCULATE, sport_key, str(exc), actor_id=actor_id)
        raise
    _end_read(session)

    report = internal_candidates(metrics, sport_key, cfg)

    def work(session: Session, run: RankingRun) -> dict:
        replace_candidates(session, sport_key, INTERNAL, report.candidates)
        external = load_candidates(session, sport_key, EXTERNAL)
        combined, superseded = combine_candidates(report.candidates, external, cfg.score_precision)
        stats = merge_candidates(session, sport_key, combined, precision=cfg.score_precision)
        summary = _batch_summary(run, stats, report, superseded, athletes=len(metrics))
        finish_run(session, run, status="success", details=summary)
        return summary

    return _write_phase(session, OP_RECALCULATE, sport_key, work, actor_id=actor_id)


async def import_external(
    session: Session,
    sport: str,
    season: int,
    *,
    source: ExternalRankingSource | None = None,
    settings: Settings | None = None,
    actor_id: str | None = None,
) -> dict:
    """Fetch third-party rankings for ``sport``/``season``, normalize them, then merge and re-rank.

    Nothing is merged unless the whole fetch succeeds.
    """
    cfg = settings or get_settings()
    sport_key = _require_sport(sport)
    source = source or FeedRankingSource(settings=cfg)

    try:
        rows = await asyncio.wait_for(source.fetch(sport_key, season), cfg.external_fetch_timeout)
    except asyncio.TimeoutError as exc:
        message = f"{source.name} timed out after {cfg.external_fetch_timeout:g}s"
        log.error("Import %s %s aborted: %s", sport_key, season, message)
        _record_failure(session, OP_IMPORT, sport_key, message, season=season, actor_id=actor_id)
        raise SourceUnavailableError(message) from exc
    except SourceUnavailableError as exc:
        log.error("Import %s %s aborted: %s", sport_key, season, exc)
        _record_failure(session, OP_IMPORT, sport_key, str(exc), season=season, actor_id=actor_id)
        raise
    _end_read(session)

    def work(session: Session, run: RankingRun) -> dict:
        athletes = load_athlete_refs(session, sport_key)
        report = external_candidates(rows, sport_key, athletes, source.name, cfg)
        replace_candidates(session, sport_key, EXTERNAL, report.candidates, feed=source.name, season=season)
        internal = load_candidates(session, sport_key, INTERNAL)
        external = load_candidates(session, sport_key, EXTERNAL)
        combined, superseded = combine_candidates(internal, external, cfg.score_precision)
        stats = merge_candidates(session, sport_key, combined, precision=cfg.score_precision)
        summary = _batch_summary(
            run, stats, report, superseded,
            source=source.name, rows=len(rows), imported=len(report.candidates),
        )
        finish_run(session, run, status="success", details=summary)
        return summary

    return _write_phase(session, OP_IMPORT, sport_key, work, season=season, actor_id=actor_id)


def merge(
    session: Session,
    sport: str,
    *,
    preserve_overrides: bool = True,
    settings: Settings | None = None,
    actor_id: str | None = None,
) -> dict:
    """Re-run merge and ranking from the stored candidate snapshots; nothing is fetched."""
    cfg = settings or get_settings()
    sport_key = _require_sport(sport)
    _end_read(session)

    def work(session: Session, run: RankingRun) -> dict:
        internal = load_candidates(session, sport_key, INTERNAL)
        external = load_candidates(session, sport_key, EXTERNAL)
        combined, superseded = combine_candidates(internal, external, cfg.score_precision)
        stats = merge_candidates(
            session, sport_key, combined,
            preserve_overrides=preserve_overrides, precision=cfg.score_precision,
        )
        summary = _batch_summary(run, stats, None, superseded, preserve_overrides=preserve_overrides)
        finish_run(session, run, status="success", details=summary)
        return summary

    return _write_phase(session, OP_MERGE, sport_key, work, actor_id=actor_id)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def query_rankings(
    session: Session,
    *,
    sport: str | None = None,
    graduation_year: int | None = None,
    position: str | None = None,
    state: str | None = None,
    locked: bool | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[dict], int]:
    """Leaderboard listing ordered by overall rank, unranked entries last."""
    query = select(RankingEntry)
    if sport:
        query = query.where(RankingEntry.sport == normalize_sport(sport))
    if graduation_year is not None:
        query = query.where(RankingEntry.graduation_year == graduation_year)
    if position:
        query = query.where(func.upper(RankingEntry.position) == position.strip().upper())
    if state:
        query = query.where(func.upper(RankingEntry.state) == state.strip().upper())
    if locked is not None:
        query = query.where(RankingEntry.is_manual_override.is_(locked))

    total = session.execute(select(func.count()).select_from(query.subquery())).scalar_one()
    entries = session.execute(
        query.options(selectinload(RankingEntry.athlete))
        .order_by(
            RankingEntry.overall_rank.is_(None),
            RankingEntry.overall_rank,
            RankingEntry.composite_score.desc(),
            RankingEntry.id,
        )
        .limit(limit)
        .offset(offset)
    ).scalars().all()
    return [entry_summary(e) for e in entries], total


def list_runs(
    session: Session, *, sport: str | None = None, operation: str | None = None, limit: int = 50,
) -> list[dict]:
    query = select(RankingRun)
    if sport:
        query = query.where(RankingRun.sport == normalize_sport(sport))
    if operation:
        query = query.where(RankingRun.operation == operation)
    runs = session.execute(
        query.order_by(RankingRun.started_at.desc(), RankingRun.id.desc()).limit(limit)
    ).scalars().all()
    return [run_summary(r) for r in runs]


def compute_stats(session: Session) -> dict:
    entries = session.execute(select(RankingEntry)).scalars().all()
    by_sport: dict[str, Counter[str]] = defaultdict(Counter)
    for e in entries:
        counts = by_sport[e.sport]
        counts["total"] += 1
        if e.is_manual_override:
            counts["locked"] += 1
        if e.is_external_only:
            counts["external_only"] += 1
        if e.composite_score is None:
            counts["unscored"] += 1
    return {
        "total": len(entries),
        "by_sport": {
            sport: {k: counts[k] for k in ("total", "locked", "external_only", "unscored")}
            for sport, counts in sorted(by_sport.items())
        },
    }
