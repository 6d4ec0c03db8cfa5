from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint, event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from rankings.utils import normalize_name, utc_now

UNSPECIFIED_COHORT = "unspecified"

RANK_FIELDS = ("overall_rank", "position_rank", "state_rank", "national_rank")


class Base(DeclarativeBase):
    pass


def identity_key_for(athlete_id: int | None, external_name: str | None) -> str:
    if athlete_id is not None:
        return f"athlete:{athlete_id}"
    return f"external:{normalize_name(external_name or '')}"


def cohort_key_for(graduation_year: int | None) -> str:
    return str(graduation_year) if graduation_year is not None else UNSPECIFIED_COHORT


class Athlete(Base):
    """Internal athlete profile. Owned by the profile side of the platform; read-only here."""

    __tablename__ = "athletes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    sport: Mapped[str] = mapped_column(String(50), nullable=False)
    position: Mapped[str | None] = mapped_column(String(20), nullable=True)
    state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    high_school: Mapped[str | None] = mapped_column(String(200), nullable=True)
    graduation_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    courses_completed: Mapped[int] = mapped_column(Integer, default=0)

    evaluations: Mapped[list[Evaluation]] = relationship(
        "Evaluation", back_populates="athlete", cascade="all, delete-orphan",
    )


class Evaluation(Base):
    __tablename__ = "evaluations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    athlete_id: Mapped[int] = mapped_column(Integer, ForeignKey("athletes.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | completed | cancelled
    technical_skill: Mapped[float | None] = mapped_column(Float, nullable=True)
    game_knowledge: Mapped[float | None] = mapped_column(Float, nullable=True)
    athleticism: Mapped[float | None] = mapped_column(Float, nullable=True)
    mental_game: Mapped[float | None] = mapped_column(Float, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    athlete: Mapped[Athlete] = relationship("Athlete", back_populates="evaluations")


class RankingEntry(Base):
    __tablename__ = "ranking_entries"
    __table_args__ = (
        UniqueConstraint("identity_key", "sport", "cohort_key", name="uq_ranking_identity_cohort"),
        CheckConstraint(
            "(athlete_id IS NOT NULL AND external_athlete_name IS NULL AND NOT is_external_only) OR "
            "(athlete_id IS NULL AND external_athlete_name IS NOT NULL AND is_external_only)",
            name="ck_ranking_identity_mode",
        ),
        CheckConstraint(
            "composite_score IS NULL OR (composite_score >= 0 AND composite_score <= 100)",
            name="ck_ranking_score_range",
        ),
        Index("ix_ranking_sport_cohort", "sport", "cohort_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    athlete_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("athletes.id"), nullable=True)
    external_athlete_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    is_external_only: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sport: Mapped[str] = mapped_column(String(50), nullable=False)
    graduation_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    position: Mapped[str | None] = mapped_column(String(20), nullable=True)
    state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    source: Mapped[str] = mapped_column(String(50), default="internal")

    composite_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    overall_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    position_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    state_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    national_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)

    is_manual_override: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    overridden_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    overridden_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    identity_key: Mapped[str] = mapped_column(String(250), nullable=False)
    cohort_key: Mapped[str] = mapped_column(String(20), nullable=False)
    last_calculated: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)

    athlete: Mapped[Athlete | None] = relationship("Athlete")

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.refresh_keys()

    def refresh_keys(self) -> None:
        self.identity_key = identity_key_for(self.athlete_id, self.external_athlete_name)
        self.cohort_key = cohort_key_for(self.graduation_year)

    @property
    def display_name(self) -> str:
        if self.athlete is not None:
            return self.athlete.full_name
        return self.external_athlete_name or ""


@event.listens_for(RankingEntry, "before_insert")
@event.listens_for(RankingEntry, "before_update")
def _refresh_entry_keys(mapper, connection, target: RankingEntry) -> None:
    target.refresh_keys()


class RankingCandidate(Base):
    """Most recently normalized candidates per (sport, origin, feed, season), kept so merges can re-run.

    ``feed`` names the source that produced the batch (``internal`` for
    evaluation data) and ``season`` the requested import season; each import
    replaces only its own slice.
    """

    __tablename__ = "ranking_candidates"
    __table_args__ = (Index("ix_candidate_slice", "sport", "origin", "feed", "season"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sport: Mapped[str] = mapped_column(String(50), nullable=False)
    origin: Mapped[str] = mapped_column(String(20), nullable=False)  # internal | external
    feed: Mapped[str] = mapped_column(String(50), nullable=False)
    season: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    athlete_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    external_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    graduation_year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    composite_score: Mapped[float] = mapped_column(Float, nullable=False)
    position: Mapped[str | None] = mapped_column(String(20), nullable=True)
    state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    external_rank: Mapped[float | None] = mapped_column(Float, nullable=True)
    normalized_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


class RankingRun(Base):
    __tablename__ = "ranking_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operation: Mapped[str] = mapped_column(String(30), nullable=False)  # recalculate | import_external | merge
    sport: Mapped[str] = mapped_column(String(50), nullable=False)
    season: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # running | success | failed
    actor_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details_json: Mapped[str] = mapped_column(Text, default="{}", nullable=False)
    error_message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
