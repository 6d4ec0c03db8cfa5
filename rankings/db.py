from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from rankings.config import get_settings
from rankings.models import Base, RankingRun
from rankings.utils import to_json, utc_now

log = logging.getLogger(__name__)

# Execution option asking the SQLite begin hook for a reserved (write) lock.
WRITE_LOCK_OPTION = "rankings_write_lock"

_lock = threading.Lock()
_engine: Engine | None = None
_SessionLocal: sessionmaker[Session] | None = None


def create_configured_engine(url: str, busy_timeout_ms: int | None = None, **kwargs: Any) -> Engine:
    """Create an engine; SQLite engines get explicit BEGIN handling for write locks."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":
        if busy_timeout_ms is None:
            busy_timeout_ms = get_settings().sqlite_busy_timeout_ms
        configure_sqlite_locking(engine, busy_timeout_ms)
    return engine


def configure_sqlite_locking(engine: Engine, busy_timeout_ms: int = 15_000) -> None:
    """Let SQLAlchemy own BEGIN so batch runs can take the write lock up front.

    pysqlite defers BEGIN until the first DML statement, which would let two
    merges read the same rows before either holds the lock.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(WRITE_LOCK_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def init_db(database_url: str | None = None) -> None:
    global _engine, _SessionLocal
    settings = get_settings()
    with _lock:
        if _engine is not None:
            _engine.dispose()
        url = database_url or settings.database_url
        if url.startswith("sqlite:///") and ":memory:" not in url:
            Path(url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
        _engine = create_configured_engine(url, settings.sqlite_busy_timeout_ms)
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    log.info("Database ready at %s", _engine.url.render_as_string(hide_password=True))


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a session for scripts and the CLI.

    Usage::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def session_generator() -> Generator[Session, None, None]:
    """Generator-based session suitable for FastAPI ``Depends()``."""
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def lock_for_write(session: Session) -> None:
    """Open the session's transaction holding the database write lock.

    Must be the first statement of the transaction: every row the batch reads
    afterwards (lock flags included) is read under the same lock. On servers
    without the SQLite hook the merge's ``SELECT ... FOR UPDATE`` does the job.
    """
    if session.in_transaction():
        raise RuntimeError("lock_for_write() must open the transaction; commit or roll back first")
    session.connection(execution_options={WRITE_LOCK_OPTION: True})


# ---------------------------------------------------------------------------
# Run ledger
# ---------------------------------------------------------------------------


def start_run(
    session: Session, operation: str, sport: str, *,
    season: int | None = None, actor_id: str | None = None,
) -> RankingRun:
    run = RankingRun(
        operation=operation, sport=sport, season=season, actor_id=actor_id,
        status="running", details_json="{}", error_message="", started_at=utc_now(),
    )
    session.add(run)
    session.flush()
    return run


def finish_run(
    session: Session,
    run: RankingRun,
    *,
    status: str,
    details: dict | None = None,
    error_message: str = "",
) -> RankingRun:
    run.status = status
    run.details_json = to_json(details or {})
    run.error_message = error_message
    run.finished_at = utc_now()
    session.add(run)
    return run
