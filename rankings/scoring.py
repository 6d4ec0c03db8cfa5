"""Composite score calculator: evaluation metrics to a single 0-100 figure.

Weighting
---------
- **Base**: the four evaluation metrics (technical skill, game knowledge,
  athleticism, mental game) carry equal weight.  Each completed evaluation
  contributes the mean of the metrics it actually reports; an athlete with
  several completed evaluations gets the mean over those evaluations.
- **Course bonus**: ``course_bonus_per_course`` points per completed course,
  capped at ``course_bonus_cap``.  Added on top of the base and never allowed
  to push the result past 100.

No evaluation data means *no score* (``None``), which is different from a
score of zero.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable

from rankings.config import Settings, get_settings

log = logging.getLogger(__name__)

METRIC_FIELDS = ("technical_skill", "game_knowledge", "athleticism", "mental_game")
SCORE_MIN = 0.0
SCORE_MAX = 100.0


class InvalidMetricError(ValueError):
    """A metric is not a finite number within [0, 100]."""


@dataclass(frozen=True)
class EvaluationMetrics:
    technical_skill: float | None = None
    game_knowledge: float | None = None
    athleticism: float | None = None
    mental_game: float | None = None

    def values(self) -> list[float]:
        return [v for v in (getattr(self, f) for f in METRIC_FIELDS) if v is not None]


@dataclass
class CompositeResult:
    score: float | None
    evaluations_used: int = 0
    evaluations_rejected: int = 0
    errors: list[str] = field(default_factory=list)


def _validate_metric(name: str, value: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidMetricError(f"{name} is not numeric: {value!r}") from exc
    if math.isnan(number) or not SCORE_MIN <= number <= SCORE_MAX:
        raise InvalidMetricError(f"{name} out of range: {value!r}")
    return number


def evaluation_base_score(metrics: EvaluationMetrics) -> float | None:
    """Equal-weight mean of the metrics present on one evaluation."""
    present = [
        _validate_metric(name, getattr(metrics, name))
        for name in METRIC_FIELDS
        if getattr(metrics, name) is not None
    ]
    if not present:
        return None
    return sum(present) / len(present)


def course_bonus(courses_completed: int, per_course: float = 2.0, cap: float = 10.0) -> float:
    return min(max(courses_completed, 0) * per_course, cap)


def clamp_score(value: float) -> float:
    return max(SCORE_MIN, min(SCORE_MAX, value))


def compute_composite(
    evaluations: Iterable[EvaluationMetrics],
    courses_completed: int = 0,
    settings: Settings | None = None,
) -> CompositeResult:
    """Combine an athlete's completed evaluations into one composite score.

    Evaluations with a metric outside [0, 100] are rejected and counted; if no
    evaluation survives, the score is ``None``.
    """
    cfg = settings or get_settings()
    result = CompositeResult(score=None)
    bases: list[float] = []
    for metrics in evaluations:
        try:
            base = evaluation_base_score(metrics)
        except InvalidMetricError as exc:
            result.evaluations_rejected += 1
            result.errors.append(str(exc))
            continue
        if base is not None:
            bases.append(base)
    result.evaluations_used = len(bases)
    if not bases:
        return result

    base = sum(bases) / len(bases)
    bonus = course_bonus(courses_completed, cfg.course_bonus_per_course, cfg.course_bonus_cap)
    result.score = round(clamp_score(base + bonus), cfg.score_precision)
    return result


def external_rank_to_score(rank: float | None) -> float:
    """Invert an external rank into a score: rank 1 = 100, rank 100 or worse = 1.

    Rows without a rank count as rank 100.
    """
    effective = rank if rank is not None else 100.0
    return max(1.0, 101.0 - effective)
