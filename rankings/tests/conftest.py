from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from rankings.config import get_settings
from rankings.db import create_configured_engine
from rankings.models import Athlete, Base, Evaluation, RankingEntry

# ---------------------------------------------------------------------------
# Fixtures: isolated settings and in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("RANKINGS_HOME", str(tmp_path))
    monkeypatch.setenv("RANKINGS_DATABASE_URL", "sqlite:///:memory:")
    for name in ("RANKINGS_CONFIG", "RANKINGS_EXTERNAL_URL", "RANKINGS_EXTERNAL_STATE_URL", "RANKINGS_FETCH_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def engine():
    eng = create_configured_engine("sqlite:///:memory:", busy_timeout_ms=1000, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def SessionLocal(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def session(SessionLocal):
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_athlete(session: Session):
    """Create an athlete with one completed evaluation per score (all four metrics equal)."""

    def _make(
        name: str,
        *scores: float,
        sport: str = "Football",
        year: int | None = 2026,
        position: str | None = None,
        state: str | None = None,
        courses: int = 0,
    ) -> Athlete:
        athlete = Athlete(
            full_name=name, sport=sport, graduation_year=year,
            position=position, state=state, courses_completed=courses,
        )
        athlete.evaluations = [
            Evaluation(
                status="completed",
                technical_skill=s, game_knowledge=s, athleticism=s, mental_game=s,
                completed_at=datetime(2025, 9, 1, tzinfo=UTC),
            )
            for s in scores
        ]
        session.add(athlete)
        session.commit()
        return athlete

    return _make


@pytest.fixture()
def set_score(session: Session):
    """Rewrite every completed evaluation of an athlete to a flat score."""

    def _set(athlete: Athlete, score: float) -> None:
        for evaluation in athlete.evaluations:
            evaluation.technical_skill = score
            evaluation.game_knowledge = score
            evaluation.athleticism = score
            evaluation.mental_game = score
        session.commit()

    return _set


@pytest.fixture()
def entries(session: Session):
    """Fresh read of every ranking entry, keyed by identity key."""

    def _read(sport: str = "football") -> dict[str, RankingEntry]:
        rows = session.execute(
            select(RankingEntry)
            .where(RankingEntry.sport == sport)
            .execution_options(populate_existing=True)
        ).scalars().all()
        session.commit()
        return {r.identity_key: r for r in rows}

    return _read


class StaticSource:
    """External ranking source returning fixed rows."""

    def __init__(self, rows: list[dict[str, Any]], name: str = "espn"):
        self.rows = rows
        self.name = name
        self.calls: list[tuple[str, int]] = []

    async def fetch(self, sport: str, season: int) -> list[dict[str, Any]]:
        self.calls.append((sport, season))
        return [dict(r) for r in self.rows]


@pytest.fixture()
def static_source():
    return StaticSource
