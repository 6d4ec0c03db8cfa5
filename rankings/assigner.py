"""Competition ranking ("1, 2, 2, 4") across the four leaderboard dimensions.

This is the only place rank numbers are computed.  Scopes:

- ``overall_rank``: same sport and graduation-year cohort
- ``position_rank``: the overall cohort narrowed to one position
- ``state_rank``: the overall cohort narrowed to one state
- ``national_rank``: every entry of the sport, regardless of cohort

Entries without a score get no rank in any dimension; entries without a
position or state get no rank in that dimension.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Hashable, Protocol, Sequence

RANK_DIMENSIONS = ("overall_rank", "position_rank", "state_rank", "national_rank")


class Rankable(Protocol):
    sport: str
    cohort_key: str
    identity_key: str
    position: str | None
    state: str | None
    composite_score: float | None


@dataclass(frozen=True)
class RankSet:
    overall_rank: int | None = None
    position_rank: int | None = None
    state_rank: int | None = None
    national_rank: int | None = None

    def as_dict(self) -> dict[str, int | None]:
        return {dim: getattr(self, dim) for dim in RANK_DIMENSIONS}


def competition_ranks(
    scores: Sequence[float | None],
    tie_keys: Sequence[Hashable] | None = None,
    precision: int = 1,
) -> list[int | None]:
    """Rank scores descending; equal (rounded) scores share the first position of their group.

    ``tie_keys`` only fixes the walk order inside a tie group so repeated runs
    visit entries identically; it never changes a rank number.
    """
    keys = tie_keys if tie_keys is not None else range(len(scores))
    order = sorted(
        (i for i, s in enumerate(scores) if s is not None),
        key=lambda i: (-round(scores[i], precision), keys[i]),
    )
    ranks: list[int | None] = [None] * len(scores)
    previous: float | None = None
    current = 0
    for position, i in enumerate(order, start=1):
        value = round(scores[i], precision)
        if value != previous:
            current = position
            previous = value
        ranks[i] = current
    return ranks


def _label(value: str | None) -> str | None:
    if value is None:
        return None
    text = value.strip().upper()
    return text or None


def _scope(item: Rankable, dimension: str) -> tuple | None:
    if dimension == "overall_rank":
        return item.sport, item.cohort_key
    if dimension == "position_rank":
        position = _label(item.position)
        return (item.sport, item.cohort_key, position) if position else None
    if dimension == "state_rank":
        state = _label(item.state)
        return (item.sport, item.cohort_key, state) if state else None
    return (item.sport,)


def assign_ranks(items: Sequence[Rankable], precision: int = 1) -> list[RankSet]:
    """Compute all four rank dimensions for ``items``; result aligns with the input.

    Every item takes part in ordering, frozen ones included.  Callers decide
    which results they are allowed to write back.
    """
    results: list[dict[str, int | None]] = [dict.fromkeys(RANK_DIMENSIONS) for _ in items]
    for dimension in RANK_DIMENSIONS:
        groups: dict[tuple, list[int]] = defaultdict(list)
        for idx, item in enumerate(items):
            scope = _scope(item, dimension)
            if scope is not None:
                groups[scope].append(idx)
        for members in groups.values():
            ranks = competition_ranks(
                [items[i].composite_score for i in members],
                [items[i].identity_key for i in members],
                precision,
            )
            for i, rank in zip(members, ranks):
                results[i][dimension] = rank
    return [RankSet(**r) for r in results]
