"""Merge engine against a real (in-memory) database."""
from __future__ import annotations

from datetime import UTC, datetime

import pytest
from sqlalchemy import select

from rankings.db import lock_for_write
from rankings.merge import load_sport_entries, merge_candidates
from rankings.models import RankingEntry
from rankings.normalizer import EXTERNAL, INTERNAL, Candidate

T0 = datetime(2025, 1, 1, tzinfo=UTC)
T1 = datetime(2025, 2, 1, tzinfo=UTC)


def _internal(athlete_id: int, score: float, year: int | None = 2026, **kwargs) -> Candidate:
    return Candidate("football", year, score, INTERNAL, INTERNAL, athlete_id=athlete_id, **kwargs)


def _external(name: str, score: float, year: int | None = 2026, **kwargs) -> Candidate:
    return Candidate("football", year, score, EXTERNAL, "espn", external_name=name, **kwargs)


def _snapshot(session) -> list[tuple]:
    rows = session.execute(
        select(RankingEntry).order_by(RankingEntry.id).execution_options(populate_existing=True)
    ).scalars().all()
    session.commit()
    return [
        tuple(getattr(r, c.key) for c in RankingEntry.__table__.columns)
        for r in rows
    ]


@pytest.fixture()
def athletes(make_athlete):
    return [make_athlete(f"Athlete {i}") for i in range(1, 5)]


def _merge(session, candidates, **kwargs):
    lock_for_write(session)
    stats = merge_candidates(session, "Football", candidates, **kwargs)
    session.commit()
    return stats


class TestMergeCandidates:
    def test_inserts_new_entries_with_ranks(self, session, athletes):
        a, b, c, _ = athletes
        stats = _merge(session, [_internal(a.id, 92), _internal(b.id, 85), _internal(c.id, 85)], now=T0)
        assert stats.inserted == 3
        entries = {e.athlete_id: e for e in load_sport_entries(session, "football")}
        assert entries[a.id].overall_rank == 1
        assert entries[b.id].overall_rank == 2
        assert entries[c.id].overall_rank == 2
        assert entries[a.id].last_calculated.replace(tzinfo=UTC) == T0
        assert not entries[a.id].is_manual_override

    def test_second_identical_merge_writes_nothing(self, session, athletes):
        a, b, *_ = athletes
        candidates = [_internal(a.id, 92), _internal(b.id, 85), _external("Walk On", 40)]
        _merge(session, candidates, now=T0)
        session.commit()
        before = _snapshot(session)

        stats = _merge(session, candidates, now=T1)
        assert stats.written == 0
        assert stats.unchanged == 3
        assert _snapshot(session) == before

    def test_locked_entry_is_frozen_in_every_field(self, session, athletes):
        a, b, *_ = athletes
        _merge(session, [_internal(a.id, 92), _internal(b.id, 85)], now=T0)
        locked = next(e for e in load_sport_entries(session, "football") if e.athlete_id == a.id)
        locked.is_manual_override = True
        session.commit()
        frozen = _snapshot(session)[0]

        for _ in range(3):
            stats = _merge(session, [_internal(a.id, 10), _internal(b.id, 85)], now=T1)
            assert stats.preserved == 1
        assert _snapshot(session)[0] == frozen

    def test_locked_entry_still_occupies_a_slot(self, session, athletes):
        a, b, c, _ = athletes
        _merge(session, [_internal(a.id, 90), _internal(b.id, 80)], now=T0)
        entry_a = next(e for e in load_sport_entries(session, "football") if e.athlete_id == a.id)
        entry_a.is_manual_override = True
        session.commit()

        _merge(session, [_internal(b.id, 80), _internal(c.id, 95)], now=T1)
        ranks = {e.athlete_id: e.overall_rank for e in load_sport_entries(session, "football")}
        session.commit()
        assert ranks[c.id] == 1
        assert ranks[b.id] == 3
        # frozen: its own rank number is not rewritten
        assert ranks[a.id] == 1

    def test_absent_entries_are_kept_and_reranked(self, session, athletes):
        a, b, *_ = athletes
        _merge(session, [_internal(a.id, 70), _internal(b.id, 60)], now=T0)
        stats = _merge(session, [_external("Walk On", 99)], now=T1)
        assert stats.untouched == 2
        entries = load_sport_entries(session, "football")
        session.commit()
        assert len(entries) == 3
        ranks = {e.identity_key: e.overall_rank for e in entries}
        assert ranks == {"external:walk on": 1, f"athlete:{a.id}": 2, f"athlete:{b.id}": 3}

    def test_same_identity_in_two_cohorts_gives_two_entries(self, session, athletes):
        a, *_ = athletes
        stats = _merge(session, [_internal(a.id, 70, year=2026), _internal(a.id, 75, year=None)])
        assert stats.inserted == 2
        keys = sorted(e.cohort_key for e in load_sport_entries(session, "football"))
        session.commit()
        assert keys == ["2026", "unspecified"]

    def test_candidates_for_other_sports_are_ignored(self, session, athletes):
        a, *_ = athletes
        other = Candidate("basketball", 2026, 50.0, INTERNAL, INTERNAL, athlete_id=a.id)
        stats = _merge(session, [other])
        assert stats.candidates == 0
        assert load_sport_entries(session, "football") == []
        session.commit()

    def test_preserve_overrides_false_still_freezes(self, session, athletes):
        a, *_ = athletes
        _merge(session, [_internal(a.id, 50)], now=T0)
        entry = load_sport_entries(session, "football")[0]
        entry.is_manual_override = True
        session.commit()
        stats = _merge(session, [_internal(a.id, 99)], preserve_overrides=False, now=T1)
        assert stats.preserved == 1
        assert load_sport_entries(session, "football")[0].composite_score == 50
        session.commit()

    def test_position_and_state_ranks_follow_candidate_data(self, session, athletes):
        a, b, c, _ = athletes
        _merge(session, [
            _internal(a.id, 90, position="QB", state="TX"),
            _internal(b.id, 85, position="QB"),
            _external("Walk On", 95),
        ])
        by_key = {e.identity_key: e for e in load_sport_entries(session, "football")}
        session.commit()
        assert by_key[f"athlete:{a.id}"].position_rank == 1
        assert by_key[f"athlete:{b.id}"].position_rank == 2
        assert by_key[f"athlete:{a.id}"].state_rank == 1
        assert by_key[f"athlete:{b.id}"].state_rank is None
        walk_on = by_key["external:walk on"]
        assert walk_on.position_rank is None
        assert walk_on.state_rank is None
        assert walk_on.overall_rank == 1
        assert walk_on.national_rank == 1


class TestWriteLock:
    def test_lock_for_write_must_open_the_transaction(self, session, athletes):
        session.execute(select(RankingEntry)).all()
        with pytest.raises(RuntimeError):
            lock_for_write(session)
        session.rollback()

    def test_stale_identity_map_cannot_hide_a_lock(self, session, SessionLocal, athletes):
        a, *_ = athletes
        _merge(session, [_internal(a.id, 50)], now=T0)
        stale = load_sport_entries(session, "football")[0]
        session.commit()
        assert not stale.is_manual_override

        admin = SessionLocal()
        try:
            admin.get(RankingEntry, stale.id).is_manual_override = True
            admin.commit()
        finally:
            admin.close()

        stats = _merge(session, [_internal(a.id, 99)], now=T1)
        assert stats.preserved == 1
        assert stale.composite_score == 50
