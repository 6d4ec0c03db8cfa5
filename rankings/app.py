from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Generator

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from rankings import overrides, services
from rankings.db import init_db, session_generator
from rankings.merge import ConcurrentRunError
from rankings.models import RankingEntry
from rankings.schemas import (
    ImportRequest,
    LockRequest,
    ManualEntryCreate,
    MergeRequest,
    RankingListResponse,
    RankingOut,
    RankingUpdate,
    RecalculateRequest,
    RunOut,
    RunSummaryOut,
    StatsOut,
    UnlockRequest,
)
from rankings.sources import SourceUnavailableError, SpreadsheetRankingSource

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Rankings",
    version="0.1.0",
    description=(
        "Athlete ranking engine. Blends evaluation scores with imported external "
        "rankings into overall, position, state and national leaderboards, "
        "honoring administrator locks. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Batch", "description": "Recalculate, import and merge runs."},
        {"name": "Rankings", "description": "Browse ranking entries and edit them directly."},
        {"name": "Overrides", "description": "Lock and unlock entries against automated writes."},
        {"name": "Runs", "description": "Run history and aggregate statistics."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def _get_or_404(session: Session, entry_id: int) -> RankingEntry:
    try:
        return overrides.get_entry(session, entry_id)
    except overrides.EntryNotFoundError as exc:
        raise HTTPException(404, "Ranking entry not found") from exc


@app.exception_handler(SourceUnavailableError)
async def source_unavailable_handler(request: Request, exc: SourceUnavailableError):
    status = 503 if exc.retryable else 400
    return JSONResponse(status_code=status, content={"detail": str(exc), "retryable": exc.retryable})


@app.exception_handler(overrides.EntryNotFoundError)
async def entry_not_found_handler(request: Request, exc: overrides.EntryNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Ranking entry not found"})


@app.exception_handler(ConcurrentRunError)
async def concurrent_run_handler(request: Request, exc: ConcurrentRunError):
    return JSONResponse(status_code=409, content={"detail": str(exc), "retryable": exc.retryable})


# ---------------------------------------------------------------------------
# Routes: Batch (static paths before parameterized to avoid route shadowing)
# ---------------------------------------------------------------------------


@app.post("/api/rankings/recalculate", response_model=RunSummaryOut,
          tags=["Batch"], summary="Recompute internal composite scores and re-rank a sport")
async def recalculate(body: RecalculateRequest, session: Session = Depends(db_session)):
    return await services.recalculate(session, body.sport, actor_id=body.actor_id)


@app.post("/api/rankings/import", response_model=RunSummaryOut,
          tags=["Batch"], summary="Import external rankings for a sport and season from the configured feed")
async def import_external(body: ImportRequest, session: Session = Depends(db_session)):
    return await services.import_external(session, body.sport, body.season, actor_id=body.actor_id)


@app.post("/api/rankings/import/upload", response_model=RunSummaryOut,
          tags=["Batch"], summary="Import external rankings from an XLSX sheet")
async def import_upload(
    sport: str = Form(...),
    season: int = Form(..., ge=1900, le=2100),
    actor_id: str | None = Form(None),
    file: UploadFile = File(...),
    session: Session = Depends(db_session),
):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    if not sport.strip():
        raise HTTPException(422, "sport is required")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        source = SpreadsheetRankingSource(tmp_path)
        return await services.import_external(session, sport, season, source=source, actor_id=actor_id)
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


@app.post("/api/rankings/merge", response_model=RunSummaryOut,
          tags=["Batch"], summary="Re-run merge and ranking from the latest normalized candidates")
async def merge(body: MergeRequest, session: Session = Depends(db_session)):
    return services.merge(session, body.sport, preserve_overrides=body.preserve_overrides, actor_id=body.actor_id)


# ---------------------------------------------------------------------------
# Routes: Rankings
# ---------------------------------------------------------------------------


@app.get("/api/rankings", response_model=RankingListResponse,
         tags=["Rankings"], summary="Leaderboard listing ordered by overall rank")
async def list_rankings(
    sport: str | None = Query(None),
    graduation_year: int | None = Query(None),
    position: str | None = Query(None),
    state: str | None = Query(None),
    locked: bool | None = Query(None, description="Only locked (true) or unlocked (false) entries"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    session: Session = Depends(db_session),
):
    items, total = services.query_rankings(
        session, sport=sport, graduation_year=graduation_year, position=position,
        state=state, locked=locked, limit=limit, offset=offset,
    )
    return {"items": items, "total": total}


@app.post("/api/rankings", response_model=RankingOut, status_code=201,
          tags=["Rankings"], summary="Create a manual ranking entry")
async def create_entry(body: ManualEntryCreate, session: Session = Depends(db_session)):
    ranks = body.model_dump(include={"overall_rank", "position_rank", "state_rank", "national_rank"})
    try:
        entry = overrides.create_manual_entry(
            session,
            sport=body.sport, athlete_id=body.athlete_id,
            external_athlete_name=body.external_athlete_name,
            graduation_year=body.graduation_year, position=body.position, state=body.state,
            composite_score=body.composite_score, ranks=ranks,
            locked=body.locked, actor_id=body.actor_id, reason=body.reason,
        )
    except overrides.DuplicateEntryError as exc:
        raise HTTPException(409, str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    return services.entry_summary(entry)


@app.get("/api/rankings/{entry_id}", response_model=RankingOut,
         tags=["Rankings"], summary="Get one ranking entry")
async def get_entry(entry_id: int, session: Session = Depends(db_session)):
    return services.entry_summary(_get_or_404(session, entry_id))


@app.put("/api/rankings/{entry_id}", response_model=RankingOut,
         tags=["Rankings"], summary="Edit entry fields directly (allowed while locked; null fields ignored)")
async def update_entry(entry_id: int, body: RankingUpdate, session: Session = Depends(db_session)):
    entry = overrides.update_entry(session, entry_id, body.model_dump())
    return services.entry_summary(entry)


@app.delete("/api/rankings/{entry_id}", tags=["Rankings"], summary="Delete a ranking entry")
async def delete_entry(entry_id: int, session: Session = Depends(db_session)):
    overrides.delete_entry(session, entry_id)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Overrides
# ---------------------------------------------------------------------------


@app.post("/api/rankings/{entry_id}/lock", response_model=RankingOut,
          tags=["Overrides"], summary="Lock an entry against automated recalculation")
async def lock_entry(entry_id: int, body: LockRequest, session: Session = Depends(db_session)):
    return services.entry_summary(overrides.lock(session, entry_id, body.actor_id, body.reason))


@app.post("/api/rankings/{entry_id}/unlock", response_model=RankingOut,
          tags=["Overrides"], summary="Unlock an entry; values change on the next pass")
async def unlock_entry(entry_id: int, body: UnlockRequest, session: Session = Depends(db_session)):
    return services.entry_summary(overrides.unlock(session, entry_id, body.actor_id))


# ---------------------------------------------------------------------------
# Routes: Runs & Stats
# ---------------------------------------------------------------------------


@app.get("/api/runs", response_model=list[RunOut], tags=["Runs"], summary="Run history, newest first")
async def list_runs(
    sport: str | None = Query(None),
    operation: str | None = Query(None, description="recalculate, import_external or merge"),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
):
    return services.list_runs(session, sport=sport, operation=operation, limit=limit)


@app.get("/api/stats", response_model=StatsOut, tags=["Runs"], summary="Entry counts per sport")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("rankings.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
