"""Collaborator contracts for the ranking engine and their default implementations.

Two inputs feed a ranking run:

- an **evaluation source** returning per-athlete evaluation metrics, and
- an **external ranking source** returning loosely-shaped third-party rows.

Both are consumed, not owned: the engine relies only on the output shapes
below.  External rows are plain dicts on purpose; the normalizer is the only
place they get validated.
"""
from __future__ import annotations

import asyncio
import logging
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import httpx
import openpyxl
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from rankings.config import Settings, get_settings
from rankings.models import Athlete
from rankings.scoring import EvaluationMetrics
from rankings.utils import normalize_name, normalize_sport

log = logging.getLogger(__name__)


class SourceUnavailableError(Exception):
    """A source could not be reached, timed out, or returned garbage."""
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Evaluation source
# ---------------------------------------------------------------------------


@dataclass
class AthleteMetrics:
    athlete_id: int
    full_name: str
    sport: str
    position: str | None = None
    state: str | None = None
    graduation_year: int | None = None
    courses_completed: int = 0
    evaluations: list[EvaluationMetrics] = field(default_factory=list)


class EvaluationSource(Protocol):
    async def fetch(self, sport: str) -> list[AthleteMetrics]: ...


class DatabaseEvaluationSource:
    """Reads completed evaluations for a sport from the platform database.

    The query runs in a worker thread on its own session bound to the
    caller's engine, so the caller's timeout applies and an abandoned read
    never shares a session with the caller.
    """

    def __init__(self, session: Session):
        self._bind = session.get_bind()

    async def fetch(self, sport: str) -> list[AthleteMetrics]:
        return await asyncio.to_thread(self._load, sport)

    def _load(self, sport: str) -> list[AthleteMetrics]:
        with Session(self._bind) as session:
            return self._read(session, sport)

    def _read(self, session: Session, sport: str) -> list[AthleteMetrics]:
        athletes = session.execute(
            select(Athlete)
            .where(func.lower(Athlete.sport) == sport.strip().lower())
            .options(selectinload(Athlete.evaluations))
            .order_by(Athlete.id)
        ).scalars().all()
        out: list[AthleteMetrics] = []
        for athlete in athletes:
            completed = [e for e in athlete.evaluations if e.status == "completed"]
            out.append(AthleteMetrics(
                athlete_id=athlete.id,
                full_name=athlete.full_name,
                sport=athlete.sport,
                position=athlete.position,
                state=athlete.state,
                graduation_year=athlete.graduation_year,
                courses_completed=athlete.courses_completed or 0,
                evaluations=[
                    EvaluationMetrics(
                        technical_skill=e.technical_skill,
                        game_knowledge=e.game_knowledge,
                        athleticism=e.athleticism,
                        mental_game=e.mental_game,
                    )
                    for e in completed
                ],
            ))
        log.info("Loaded %d %s athletes from the evaluation store", len(out), sport)
        return out


# ---------------------------------------------------------------------------
# External ranking sources
# ---------------------------------------------------------------------------


class ExternalRankingSource(Protocol):
    name: str

    async def fetch(self, sport: str, season: int) -> list[dict[str, Any]]: ...


def _feed_records(payload: Any) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    for key in ("athletes", "items", "recruits"):
        records = payload.get(key)
        if isinstance(records, list):
            return records
    return []


def parse_feed_athlete(recruit: Any, sport: str, season: int, source: str = "espn") -> dict[str, Any]:
    """Flatten one recruiting-feed record into an external ranking row.

    Missing values stay missing; validation happens in the normalizer.
    """
    if not isinstance(recruit, dict):
        return {"source": source}
    first = recruit.get("firstName") or recruit.get("first_name") or ""
    last = recruit.get("lastName") or recruit.get("last_name") or ""
    name = f"{first} {last}".strip() or recruit.get("fullName") or recruit.get("displayName") or ""

    position = recruit.get("position")
    if isinstance(position, dict):
        position = position.get("abbreviation") or position.get("name")
    school = recruit.get("school") if isinstance(recruit.get("school"), dict) else {}
    hometown = recruit.get("hometown") if isinstance(recruit.get("hometown"), dict) else {}
    ranks = recruit.get("rankings") if isinstance(recruit.get("rankings"), dict) else {}

    return {
        "source": source,
        "athlete_name": name,
        "sport": recruit.get("sport") or sport,
        "position": position,
        "graduation_year": recruit.get("classYear") or recruit.get("class_year") or season,
        "state": school.get("state") or hometown.get("state"),
        "high_school": school.get("name"),
        "overall_rank": ranks.get("overall") or recruit.get("rank"),
    }


def dedupe_feed_rows(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop repeats of one recruit across feed endpoints, keeping the first seen.

    Rows are the same recruit when name, class year and sport match.  Rows
    without a name pass through for the normalizer to reject.
    """
    seen: set[tuple[str, Any, str]] = set()
    out: list[dict[str, Any]] = []
    for row in rows:
        name = row.get("athlete_name")
        if not name:
            out.append(row)
            continue
        key = (normalize_name(name), row.get("graduation_year"), normalize_sport(row.get("sport") or ""))
        if key in seen:
            continue
        seen.add(key)
        out.append(row)
    return out


class FeedRankingSource:
    """JSON recruiting-rankings feed (ESPN-style ``athletes``/``items`` payload).

    One import reads every configured endpoint (the top-N board, then the
    state boards).  Any endpoint failing fails the whole fetch.
    """

    def __init__(
        self,
        name: str | None = None,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings or get_settings()
        self.name = name or self._settings.external_source_name
        self._client = client

    async def _get_json(self, client: httpx.AsyncClient, url: str) -> Any:
        log.info("Fetching %s rankings from %s", self.name, url)
        resp = await client.get(url, headers={"Accept": "application/json"})
        resp.raise_for_status()
        return resp.json()

    async def _get_all(self, client: httpx.AsyncClient, urls: list[str]) -> list[Any]:
        return [await self._get_json(client, url) for url in urls]

    async def fetch(self, sport: str, season: int) -> list[dict[str, Any]]:
        urls = self._settings.external_urls(sport, season)
        try:
            if self._client is not None:
                payloads = await self._get_all(self._client, urls)
            else:
                async with httpx.AsyncClient(
                    timeout=self._settings.external_fetch_timeout,
                    headers={"User-Agent": self._settings.user_agent},
                    follow_redirects=True,
                ) as client:
                    payloads = await self._get_all(client, urls)
        except httpx.HTTPError as exc:
            raise SourceUnavailableError(f"{self.name} feed unavailable: {exc}") from exc
        except ValueError as exc:
            raise SourceUnavailableError(f"{self.name} feed returned invalid JSON: {exc}") from exc

        rows = [
            parse_feed_athlete(r, sport, season, self.name)
            for payload in payloads
            for r in _feed_records(payload)
        ]
        unique = dedupe_feed_rows(rows)
        log.info(
            "%s returned %d rows (%d unique) for %s %s",
            self.name, len(rows), len(unique), sport, season,
        )
        return unique


# Header aliases for uploaded ranking sheets -> row keys
_SHEET_HEADERS = {
    "athlete_name": ("athlete_name", "athlete", "name", "player", "full_name"),
    "sport": ("sport",),
    "position": ("position", "pos"),
    "state": ("state", "st"),
    "high_school": ("high_school", "school", "hs"),
    "graduation_year": ("graduation_year", "class", "class_year", "year", "grad_year"),
    "overall_rank": ("overall_rank", "rank", "overall"),
}


def _header_map(header_row: tuple) -> dict[str, int]:
    normalized = [str(h).strip().casefold().replace(" ", "_") if h is not None else "" for h in header_row]
    out: dict[str, int] = {}
    for key, aliases in _SHEET_HEADERS.items():
        for idx, cell in enumerate(normalized):
            if cell in aliases:
                out[key] = idx
                break
    return out


class SpreadsheetRankingSource:
    """Ranking rows from an uploaded XLSX sheet (first sheet, header row first).

    When the sheet has no sport column at all, every row is tagged with the
    requested sport; a blank cell in an existing sport column stays blank.
    """

    def __init__(self, path: str | Path, name: str = "spreadsheet"):
        self.path = Path(path)
        self.name = name

    def _read(self, sport: str) -> list[dict[str, Any]]:
        wb = openpyxl.load_workbook(self.path, read_only=True, data_only=True)
        try:
            ws = wb.worksheets[0]
            rows = ws.iter_rows(values_only=True)
            header = next(rows, None)
            if header is None:
                return []
            cols = _header_map(header)
            out: list[dict[str, Any]] = []
            for row in rows:
                if not row or all(v is None for v in row):
                    continue
                entry: dict[str, Any] = {"source": self.name}
                for key, idx in cols.items():
                    entry[key] = row[idx] if idx < len(row) else None
                if "sport" not in cols:
                    entry["sport"] = sport
                out.append(entry)
            return out
        finally:
            wb.close()

    async def fetch(self, sport: str, season: int) -> list[dict[str, Any]]:
        try:
            rows = await asyncio.to_thread(self._read, sport)
        except (OSError, InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
            raise SourceUnavailableError(f"Cannot read ranking sheet {self.path.name}: {exc}", retryable=False) from exc
        log.info("Read %d rows from %s", len(rows), self.path.name)
        return rows
