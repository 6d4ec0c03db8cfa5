"""Turn evaluation metrics and external rows into uniform ranking candidates.

This is the typing boundary of the engine: external rows arrive as arbitrary
dicts and leave either as a :class:`Candidate` or as a rejected-row count.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from rankings.config import Settings, get_settings
from rankings.models import cohort_key_for, identity_key_for
from rankings.scoring import SCORE_MAX, SCORE_MIN, compute_composite, external_rank_to_score
from rankings.sources import AthleteMetrics
from rankings.utils import normalize_name, normalize_sport

log = logging.getLogger(__name__)

INTERNAL = "internal"
EXTERNAL = "external"

_MAX_REPORTED_ERRORS = 25


@dataclass(frozen=True)
class Candidate:
    """A proposed score for one identity in one cohort, prior to merge."""
    sport: str
    graduation_year: int | None
    composite_score: float
    origin: str
    source: str
    athlete_id: int | None = None
    external_name: str | None = None
    position: str | None = None
    state: str | None = None
    external_rank: float | None = None

    @property
    def is_external_only(self) -> bool:
        return self.athlete_id is None

    @property
    def identity_key(self) -> str:
        return identity_key_for(self.athlete_id, self.external_name)

    @property
    def cohort_key(self) -> str:
        return cohort_key_for(self.graduation_year)

    @property
    def key(self) -> tuple[str, str]:
        return self.identity_key, self.cohort_key


@dataclass
class NormalizationReport:
    candidates: list[Candidate] = field(default_factory=list)
    rejected: int = 0
    ambiguous: int = 0
    superseded: int = 0
    unscored: int = 0
    errors: list[str] = field(default_factory=list)

    def reject(self, message: str) -> None:
        self.rejected += 1
        if len(self.errors) < _MAX_REPORTED_ERRORS:
            self.errors.append(message)


# ---------------------------------------------------------------------------
# External row validation
# ---------------------------------------------------------------------------


class ExternalRankingRow(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    athlete_name: str
    sport: str
    source: str = EXTERNAL
    position: str | None = None
    state: str | None = None
    high_school: str | None = None
    graduation_year: int | None = Field(None, ge=1900, le=2100)
    overall_rank: int | None = Field(None, ge=1)

    @field_validator("athlete_name", "sport")
    @classmethod
    def must_not_be_blank(cls, v: str) -> str:
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("position", "state", "high_school", mode="before")
    @classmethod
    def optional_text(cls, v: Any) -> str | None:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("graduation_year", "overall_rank", mode="before")
    @classmethod
    def blank_number_is_missing(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v


# ---------------------------------------------------------------------------
# Identity resolution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AthleteRef:
    id: int
    full_name: str
    sport: str
    graduation_year: int | None = None


def build_name_index(athletes: Iterable[AthleteRef]) -> dict[tuple[str, str], list[int]]:
    index: dict[tuple[str, str], list[int]] = defaultdict(list)
    for athlete in athletes:
        index[(normalize_name(athlete.full_name), normalize_sport(athlete.sport))].append(athlete.id)
    return index


def resolve_identity(
    index: dict[tuple[str, str], list[int]], name: str, sport: str,
) -> tuple[int | None, bool]:
    """Exact (name, sport) match. Returns ``(athlete_id, ambiguous)``."""
    matches = index.get((normalize_name(name), normalize_sport(sport)), [])
    if len(matches) == 1:
        return matches[0], False
    return None, len(matches) > 1


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------


def internal_candidates(
    metrics: Iterable[AthleteMetrics], sport: str, settings: Settings | None = None,
) -> NormalizationReport:
    """One candidate per athlete with a non-null composite score."""
    cfg = settings or get_settings()
    sport_key = normalize_sport(sport)
    report = NormalizationReport()
    for athlete in metrics:
        result = compute_composite(athlete.evaluations, athlete.courses_completed, cfg)
        if result.evaluations_rejected:
            log.warning(
                "Athlete %s: %d evaluation(s) rejected (%s)",
                athlete.athlete_id, result.evaluations_rejected, "; ".join(result.errors),
            )
            for message in result.errors:
                report.reject(f"athlete {athlete.athlete_id}: {message}")
        if result.score is None:
            report.unscored += 1
            continue
        report.candidates.append(Candidate(
            sport=sport_key,
            graduation_year=athlete.graduation_year,
            composite_score=result.score,
            origin=INTERNAL,
            source=INTERNAL,
            athlete_id=athlete.athlete_id,
            position=athlete.position or None,
            state=athlete.state or None,
        ))
    log.info(
        "Normalized %d internal candidates for %s (%d unscored, %d rejected)",
        len(report.candidates), sport_key, report.unscored, report.rejected,
    )
    return report


def external_candidates(
    rows: Iterable[dict[str, Any]],
    sport: str,
    athletes: Iterable[AthleteRef],
    source: str = EXTERNAL,
    settings: Settings | None = None,
) -> NormalizationReport:
    """Validate external rows, resolve identities, and fold duplicate rows together.

    Several rows for one identity and cohort (e.g. two feeds ranking the same
    recruit) are combined by averaging their ranks.  A row that resolves to an
    internal athlete takes the athlete's graduation year, not the row's, so it
    lands in the same cohort as that athlete's internal candidate.
    """
    cfg = settings or get_settings()
    sport_key = normalize_sport(sport)
    athletes = list(athletes)
    index = build_name_index(athletes)
    class_years = {a.id: a.graduation_year for a in athletes}
    report = NormalizationReport()

    grouped: dict[tuple[str, str], list[tuple[ExternalRankingRow, int | None, int | None]]] = {}
    for idx, raw in enumerate(rows):
        try:
            row = ExternalRankingRow.model_validate(raw if isinstance(raw, dict) else {})
        except ValidationError as exc:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            report.reject(f"row {idx}: invalid {fields}")
            continue
        if normalize_sport(row.sport) != sport_key:
            report.reject(f"row {idx}: sport {row.sport!r} does not match {sport!r}")
            continue

        athlete_id, ambiguous = resolve_identity(index, row.athlete_name, row.sport)
        if ambiguous:
            report.ambiguous += 1
            log.warning("Ambiguous external athlete %r (%s); keeping as external-only", row.athlete_name, sport_key)
        year = class_years[athlete_id] if athlete_id is not None else row.graduation_year
        key = (
            identity_key_for(athlete_id, None if athlete_id is not None else row.athlete_name),
            cohort_key_for(year),
        )
        grouped.setdefault(key, []).append((row, athlete_id, year))

    for entries in grouped.values():
        first, athlete_id, year = entries[0]
        ranks = [float(r.overall_rank) if r.overall_rank is not None else 100.0 for r, _, _ in entries]
        avg_rank = sum(ranks) / len(ranks)
        score = round(external_rank_to_score(avg_rank), cfg.score_precision)
        if not SCORE_MIN <= score <= SCORE_MAX:
            report.reject(f"{first.athlete_name}: score {score} out of range")
            continue
        report.candidates.append(Candidate(
            sport=sport_key,
            graduation_year=year,
            composite_score=score,
            origin=EXTERNAL,
            source=first.source if first.source != EXTERNAL else source,
            athlete_id=athlete_id,
            external_name=None if athlete_id is not None else first.athlete_name,
            position=next((r.position for r, _, _ in entries if r.position), None),
            state=next((r.state for r, _, _ in entries if r.state), None),
            external_rank=round(avg_rank, 2),
        ))

    log.info(
        "Normalized %d external candidates for %s (%d rejected, %d ambiguous)",
        len(report.candidates), sport_key, report.rejected, report.ambiguous,
    )
    return report


def fold_external(candidates: Iterable[Candidate], precision: int = 1) -> list[Candidate]:
    """Collapse external candidates sharing an identity and cohort into one.

    Stored snapshots from different feeds or seasons can propose the same
    recruit; their ranks are averaged and the score re-derived.
    """
    grouped: dict[tuple[str, str], list[Candidate]] = {}
    for candidate in candidates:
        grouped.setdefault(candidate.key, []).append(candidate)

    folded: list[Candidate] = []
    for group in grouped.values():
        if len(group) == 1:
            folded.append(group[0])
            continue
        ranks = [c.external_rank if c.external_rank is not None else 100.0 for c in group]
        avg_rank = sum(ranks) / len(ranks)
        first = group[0]
        folded.append(replace(
            first,
            composite_score=round(external_rank_to_score(avg_rank), precision),
            external_rank=round(avg_rank, 2),
            position=next((c.position for c in group if c.position), None),
            state=next((c.state for c in group if c.state), None),
        ))
    return folded


def combine_candidates(
    internal: Iterable[Candidate], external: Iterable[Candidate], precision: int = 1,
) -> tuple[list[Candidate], int]:
    """Internal evaluation data wins over external rows for the same athlete.

    An external candidate linked to an athlete that has an internal candidate
    is dropped whatever its cohort; one athlete never holds two entries from
    the same merge.  Returns ``(candidates, superseded_external_count)``.
    """
    internal = list(internal)
    internal_keys = {c.key for c in internal}
    internal_athletes = {c.athlete_id for c in internal if c.athlete_id is not None}
    kept_external: list[Candidate] = []
    superseded = 0
    for candidate in fold_external(external, precision):
        if candidate.key in internal_keys or candidate.athlete_id in internal_athletes:
            superseded += 1
            continue
        kept_external.append(candidate)
    return internal + kept_external, superseded
