"""Pydantic request/response schemas for the rankings API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class RankingOut(BaseModel):
    id: int
    athlete_id: int | None = None
    external_athlete_name: str | None = None
    is_external_only: bool
    display_name: str
    sport: str
    graduation_year: int | None = None
    position: str | None = None
    state: str | None = None
    source: str
    composite_score: float | None = None
    overall_rank: int | None = None
    position_rank: int | None = None
    state_rank: int | None = None
    national_rank: int | None = None
    is_manual_override: bool
    overridden_by: str | None = None
    overridden_at: str | None = None
    override_reason: str | None = None
    last_calculated: str | None = None
    created_at: str | None = None


class RankingListResponse(BaseModel):
    items: list[RankingOut]
    total: int


class RunSummaryOut(BaseModel):
    """Per-run counts an administrator reads to tell "all locked" from "source down"."""
    run_id: int
    operation: str
    sport: str
    season: int | None = None
    status: str
    candidates: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    written: int = 0
    preserved: int = 0
    locked_total: int = 0
    untouched: int = 0
    rejected: int = 0
    ambiguous: int = 0
    unscored: int = 0
    superseded: int = 0
    imported: int | None = None
    rows: int | None = None
    athletes: int | None = None
    source: str | None = None
    preserve_overrides: bool | None = None
    errors: list[str] = []


class RunOut(BaseModel):
    id: int
    operation: str
    sport: str
    season: int | None = None
    status: str
    actor_id: str | None = None
    details: dict[str, Any] = {}
    error_message: str = ""
    started_at: str | None = None
    finished_at: str | None = None


class _SportMixin(BaseModel):
    sport: str
    actor_id: str | None = None

    @field_validator("sport")
    @classmethod
    def sport_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("sport must not be blank")
        return v.strip()


class RecalculateRequest(_SportMixin):
    pass


class ImportRequest(_SportMixin):
    season: int = Field(..., ge=1900, le=2100)


class MergeRequest(_SportMixin):
    preserve_overrides: bool = True


class LockRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)
    reason: str | None = None


class UnlockRequest(BaseModel):
    actor_id: str = Field(..., min_length=1)


class ManualEntryCreate(BaseModel):
    sport: str = Field(..., min_length=1)
    athlete_id: int | None = None
    external_athlete_name: str | None = None
    graduation_year: int | None = Field(None, ge=1900, le=2100)
    position: str | None = None
    state: str | None = None
    composite_score: float | None = Field(None, ge=0, le=100)
    overall_rank: int | None = Field(None, ge=1)
    position_rank: int | None = Field(None, ge=1)
    state_rank: int | None = Field(None, ge=1)
    national_rank: int | None = Field(None, ge=1)
    locked: bool = False
    actor_id: str | None = None
    reason: str | None = None


class RankingUpdate(BaseModel):
    composite_score: float | None = Field(None, ge=0, le=100)
    overall_rank: int | None = Field(None, ge=1)
    position_rank: int | None = Field(None, ge=1)
    state_rank: int | None = Field(None, ge=1)
    national_rank: int | None = Field(None, ge=1)
    position: str | None = None
    state: str | None = None
    override_reason: str | None = None


class SportStats(BaseModel):
    total: int = 0
    locked: int = 0
    external_only: int = 0
    unscored: int = 0


class StatsOut(BaseModel):
    total: int
    by_sport: dict[str, SportStats]
