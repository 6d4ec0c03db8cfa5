"""Override store and administrator CRUD on ranking entries.

Locks restrain automated passes only.  Everything here is an administrator
action and succeeds whatever the lock state of the entry.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from rankings.db import lock_for_write
from rankings.merge import ConcurrentRunError
from rankings.models import RANK_FIELDS, Athlete, RankingEntry
from rankings.scoring import SCORE_MAX, SCORE_MIN
from rankings.utils import normalize_sport, utc_now

log = logging.getLogger(__name__)

MANUAL_SOURCE = "manual"

EDITABLE_FIELDS = ("composite_score", *RANK_FIELDS, "position", "state", "override_reason")


class EntryIdentityError(ValueError):
    """Manual entry sets both identity modes, or neither."""


class DuplicateEntryError(Exception):
    """An entry for this identity already exists in the cohort."""


class EntryNotFoundError(LookupError):
    pass


def get_entry(session: Session, entry_id: int) -> RankingEntry:
    entry = session.execute(
        select(RankingEntry)
        .where(RankingEntry.id == entry_id)
        .execution_options(populate_existing=True)
    ).scalars().first()
    if entry is None:
        raise EntryNotFoundError(f"Ranking entry {entry_id} not found")
    return entry


def _check_score(value: float | None) -> None:
    if value is not None and not SCORE_MIN <= value <= SCORE_MAX:
        raise ValueError(f"composite_score must be within [{SCORE_MIN:g}, {SCORE_MAX:g}], got {value}")


def _check_rank(name: str, value: int | None) -> None:
    if value is not None and value < 1:
        raise ValueError(f"{name} must be a positive integer, got {value}")


@contextmanager
def _admin_write(session: Session, action: str) -> Generator[None, None, None]:
    """Run one administrator write under the database write lock and commit it.

    Takes the lock first when the session is idle, so the row it changes is
    read under the same lock a merge uses.  A lost race becomes
    :class:`ConcurrentRunError`.
    """
    try:
        if not session.in_transaction():
            lock_for_write(session)
        yield
        session.commit()
    except OperationalError as exc:
        session.rollback()
        log.error("%s lost the write lock: %s", action, exc)
        raise ConcurrentRunError(f"A ranking run is writing; retry the {action}") from exc
    except Exception:
        session.rollback()
        raise


# ---------------------------------------------------------------------------
# Lock / unlock
# ---------------------------------------------------------------------------


def lock(session: Session, entry_id: int, actor_id: str, reason: str | None = None) -> RankingEntry:
    """Freeze an entry against automated writes. Re-locking refreshes the audit fields."""
    with _admin_write(session, "lock"):
        entry = get_entry(session, entry_id)
        now = utc_now()
        entry.is_manual_override = True
        entry.overridden_by = actor_id
        entry.overridden_at = now
        if reason is not None:
            entry.override_reason = reason
        entry.last_calculated = now
    log.info("Entry %s locked by %s", entry_id, actor_id)
    return entry


def unlock(session: Session, entry_id: int, actor_id: str) -> RankingEntry:
    """Release the freeze. Scores and ranks stay as they are until the next pass."""
    with _admin_write(session, "unlock"):
        entry = get_entry(session, entry_id)
        now = utc_now()
        entry.is_manual_override = False
        entry.overridden_by = actor_id
        entry.overridden_at = now
        entry.last_calculated = now
    log.info("Entry %s unlocked by %s", entry_id, actor_id)
    return entry


# ---------------------------------------------------------------------------
# Manual CRUD
# ---------------------------------------------------------------------------


def create_manual_entry(
    session: Session,
    *,
    sport: str,
    athlete_id: int | None = None,
    external_athlete_name: str | None = None,
    graduation_year: int | None = None,
    position: str | None = None,
    state: str | None = None,
    composite_score: float | None = None,
    ranks: dict[str, int | None] | None = None,
    locked: bool = False,
    actor_id: str | None = None,
    reason: str | None = None,
) -> RankingEntry:
    """Insert a placeholder entry directly, bypassing the merge."""
    name = (external_athlete_name or "").strip() or None
    if (athlete_id is None) == (name is None):
        raise EntryIdentityError("Set exactly one of athlete_id or external_athlete_name")
    if not sport or not sport.strip():
        raise ValueError("sport is required")
    _check_score(composite_score)
    ranks = {k: v for k, v in (ranks or {}).items() if k in RANK_FIELDS}
    for key, value in ranks.items():
        _check_rank(key, value)

    now = utc_now()
    entry = RankingEntry(
        athlete_id=athlete_id,
        external_athlete_name=name,
        is_external_only=athlete_id is None,
        sport=normalize_sport(sport),
        graduation_year=graduation_year,
        position=position or None,
        state=state or None,
        source=MANUAL_SOURCE,
        composite_score=composite_score,
        is_manual_override=locked,
        overridden_by=actor_id if locked else None,
        overridden_at=now if locked else None,
        override_reason=reason,
        last_calculated=now,
        created_at=now,
        **ranks,
    )
    try:
        with _admin_write(session, "manual entry"):
            if athlete_id is not None and session.get(Athlete, athlete_id) is None:
                raise EntryIdentityError(f"Unknown athlete {athlete_id}")
            session.add(entry)
    except IntegrityError as exc:
        raise DuplicateEntryError(
            f"{entry.identity_key} already ranked in {entry.sport}/{entry.cohort_key}"
        ) from exc
    log.info("Manual entry %s created for %s (%s)", entry.id, entry.identity_key, entry.sport)
    return entry


def update_entry(session: Session, entry_id: int, updates: dict[str, Any]) -> RankingEntry:
    """Direct field edit. Keys set to ``None`` are ignored."""
    values = {k: v for k, v in updates.items() if k in EDITABLE_FIELDS and v is not None}
    _check_score(values.get("composite_score"))
    for key in RANK_FIELDS:
        _check_rank(key, values.get(key))
    with _admin_write(session, "edit"):
        entry = get_entry(session, entry_id)
        for key, value in values.items():
            setattr(entry, key, value)
        if values:
            entry.last_calculated = utc_now()
    log.info("Entry %s edited: %s", entry_id, ", ".join(sorted(values)) or "no changes")
    return entry


def delete_entry(session: Session, entry_id: int) -> None:
    with _admin_write(session, "delete"):
        session.delete(get_entry(session, entry_id))
    log.info("Entry %s deleted", entry_id)
