"""Override-aware merge: fold fresh candidates into the persisted ranking set.

Rules, per sport:

1. A candidate matching a **locked** entry is skipped entirely; the entry is
   frozen in every field, ``last_calculated`` included.
2. A candidate matching an **unlocked** entry replaces its score, position,
   state and source.
3. A candidate with no match becomes a new unlocked entry.
4. Entries with no candidate this pass stay; they are only re-ranked.

Ranks are then recomputed for the whole sport with every entry (locked ones
at their frozen scores) taking part in ordering, and written back to unlocked
entries only.  An entry is written only when one of its values actually
changes, so repeating a merge with the same candidates writes nothing.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from rankings.assigner import assign_ranks
from rankings.models import RankingEntry
from rankings.normalizer import Candidate
from rankings.utils import normalize_sport, utc_now

log = logging.getLogger(__name__)

_CANDIDATE_FIELDS = ("composite_score", "position", "state", "source")


class ConcurrentRunError(Exception):
    """Another run holds the ranking write lock; retry the whole invocation."""
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


@dataclass
class MergeStats:
    candidates: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    preserved: int = 0
    locked_total: int = 0
    untouched: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated

    def as_dict(self) -> dict[str, int]:
        return {**asdict(self), "written": self.written}


@dataclass
class _RankView:
    sport: str
    cohort_key: str
    identity_key: str
    position: str | None
    state: str | None
    composite_score: float | None


def load_sport_entries(session: Session, sport: str) -> list[RankingEntry]:
    """Entries of one sport, re-read for update so lock flags are never taken from a stale identity map."""
    return list(session.execute(
        select(RankingEntry)
        .where(RankingEntry.sport == normalize_sport(sport))
        .order_by(RankingEntry.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all())


def merge_candidates(
    session: Session,
    sport: str,
    candidates: Iterable[Candidate],
    *,
    preserve_overrides: bool = True,
    precision: int = 1,
    now: datetime | None = None,
) -> MergeStats:
    """Merge ``candidates`` into the persisted entries of ``sport`` and re-rank (caller must commit)."""
    sport_key = normalize_sport(sport)
    now = now or utc_now()
    if not preserve_overrides:
        log.warning("Overrides for %s stay frozen; preserve_overrides=False has no effect", sport_key)

    entries = load_sport_entries(session, sport_key)
    by_key = {(e.identity_key, e.cohort_key): e for e in entries}
    stats = MergeStats(locked_total=sum(1 for e in entries if e.is_manual_override))

    pending: dict[int, dict[str, object]] = {}
    matched: set[int] = set()
    created: list[RankingEntry] = []
    for candidate in candidates:
        if candidate.sport != sport_key:
            log.warning("Ignoring %s candidate %s in %s merge", candidate.sport, candidate.identity_key, sport_key)
            continue
        stats.candidates += 1
        entry = by_key.get(candidate.key)
        if entry is None:
            entry = RankingEntry(
                athlete_id=candidate.athlete_id,
                external_athlete_name=candidate.external_name,
                is_external_only=candidate.is_external_only,
                sport=sport_key,
                graduation_year=candidate.graduation_year,
                position=candidate.position,
                state=candidate.state,
                source=candidate.source,
                composite_score=candidate.composite_score,
                is_manual_override=False,
                last_calculated=now,
                created_at=now,
            )
            session.add(entry)
            by_key[candidate.key] = entry
            created.append(entry)
            matched.add(id(entry))
            continue
        if id(entry) in matched:
            log.warning("Duplicate candidate for %s/%s skipped", *candidate.key)
            continue
        matched.add(id(entry))
        if entry.is_manual_override:
            stats.preserved += 1
            log.debug("Entry %s is locked; candidate skipped", entry.id)
            continue
        pending[id(entry)] = {f: getattr(candidate, f) for f in _CANDIDATE_FIELDS}

    everything = entries + created
    views = []
    for entry in everything:
        values = pending.get(id(entry), {})
        views.append(_RankView(
            sport=entry.sport,
            cohort_key=entry.cohort_key,
            identity_key=entry.identity_key,
            position=values.get("position", entry.position),
            state=values.get("state", entry.state),
            composite_score=values.get("composite_score", entry.composite_score),
        ))
    rank_sets = assign_ranks(views, precision)

    created_ids = {id(e) for e in created}
    for entry, ranks in zip(everything, rank_sets):
        if entry.is_manual_override:
            continue
        if id(entry) not in matched:
            stats.untouched += 1
        desired = {**pending.get(id(entry), {}), **ranks.as_dict()}
        changed = False
        for name, value in desired.items():
            if getattr(entry, name) != value:
                setattr(entry, name, value)
                changed = True
        if id(entry) in created_ids:
            stats.inserted += 1
        elif changed:
            entry.last_calculated = now
            stats.updated += 1
        else:
            stats.unchanged += 1

    session.flush()
    log.info(
        "Merged %s: %d candidates, %d inserted, %d updated, %d unchanged, %d locked preserved",
        sport_key, stats.candidates, stats.inserted, stats.updated, stats.unchanged, stats.preserved,
    )
    return stats

