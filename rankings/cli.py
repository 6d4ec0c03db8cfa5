from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable

import typer
from rich.box import ROUNDED
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from rankings import overrides, services
from rankings.config import get_settings
from rankings.db import init_db, session_scope
from rankings.merge import ConcurrentRunError
from rankings.sources import SourceUnavailableError, SpreadsheetRankingSource

app = typer.Typer(help="Athlete ranking engine: recalculate, import, merge and curate leaderboards")
console = Console()


def _configure_logging(*, verbose: int, json_output: bool) -> None:
    if verbose <= 0:
        level = logging.ERROR
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    handlers: list[logging.Handler]
    if json_output:
        handlers = [logging.StreamHandler()]
        fmt = "%(levelname)s: %(message)s"
    else:
        handlers = [RichHandler(console=console, show_time=False, show_path=False, markup=False)]
        fmt = "%(message)s"

    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


@app.callback()
def app_callback(
    ctx: typer.Context,
    database_url: str | None = typer.Option(
        None, "--database-url", help="SQLAlchemy URL; overrides RANKINGS_DATABASE_URL.",
    ),
    json_output: bool = typer.Option(False, "--json", help="Output raw JSON for scripting."),
    verbose: int = typer.Option(0, "-v", "--verbose", count=True, help="Increase log verbosity."),
) -> None:
    if database_url:
        os.environ["RANKINGS_DATABASE_URL"] = database_url
        get_settings.cache_clear()
    ctx.obj = {"json_output": json_output, "verbose": verbose}
    _configure_logging(verbose=verbose, json_output=json_output)


def _wants_json(ctx: typer.Context) -> bool:
    return bool(ctx.obj and ctx.obj.get("json_output"))


def _format_scalar(value: Any) -> str:
    if isinstance(value, float):
        return f"{value:.1f}"
    if value is None:
        return "-"
    return str(value)


def _render_table(title: str, rows: list[tuple[str, str]], *, border_style: str = "cyan") -> None:
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    for metric, value in rows:
        table.add_row(metric, value)
    console.print(Panel(table, title=title, border_style=border_style))


def _print(title: str, payload: dict[str, Any], ctx: typer.Context) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
        return

    scalar_rows = [
        (key, _format_scalar(value))
        for key, value in payload.items()
        if isinstance(value, (str, int, float, bool)) or value is None
    ]
    _render_table(title, scalar_rows)
    errors = payload.get("errors")
    if errors:
        _render_table(f"{title} · errors", [(str(i + 1), msg) for i, msg in enumerate(errors)], border_style="yellow")


def _run(ctx: typer.Context, fn: Callable[[], Any]) -> Any:
    """Call ``fn``; known failures exit with code 1 and a readable message."""
    try:
        return fn()
    except (SourceUnavailableError, ConcurrentRunError) as exc:
        _fail(ctx, str(exc), retryable=exc.retryable)
    except (overrides.EntryNotFoundError, overrides.DuplicateEntryError, ValueError) as exc:
        _fail(ctx, str(exc))


def _fail(ctx: typer.Context, message: str, *, retryable: bool = False) -> None:
    if _wants_json(ctx):
        typer.echo(json.dumps({"status": "failed", "error": message, "retryable": retryable}, indent=2))
    else:
        hint = " (retryable)" if retryable else ""
        console.print(f"[red]✗[/red] {message}{hint}", markup=True, highlight=False)
    raise typer.Exit(code=1)


# ---------------------------------------------------------------------------
# Batch commands
# ---------------------------------------------------------------------------


@app.command("recalculate")
def recalculate_command(
    ctx: typer.Context,
    sport: str = typer.Argument(..., help="Sport to recalculate, e.g. football."),
    actor: str | None = typer.Option(None, "--actor", help="Recorded in the run ledger."),
) -> None:
    init_db()

    def runner() -> dict:
        with session_scope() as session:
            return asyncio.run(services.recalculate(session, sport, actor_id=actor))

    _print("recalculate", _run(ctx, runner), ctx)


@app.command("import-external")
def import_external_command(
    ctx: typer.Context,
    sport: str = typer.Argument(..., help="Sport to import."),
    season: int = typer.Argument(..., help="Class/season year requested from the source."),
    file: Path | None = typer.Option(None, "--file", help="XLSX sheet instead of the configured feed."),
    actor: str | None = typer.Option(None, "--actor", help="Recorded in the run ledger."),
) -> None:
    init_db()
    source = SpreadsheetRankingSource(file) if file else None

    def runner() -> dict:
        with session_scope() as session:
            return asyncio.run(services.import_external(session, sport, season, source=source, actor_id=actor))

    _print("import-external", _run(ctx, runner), ctx)


@app.command("merge")
def merge_command(
    ctx: typer.Context,
    sport: str = typer.Argument(..., help="Sport to re-merge from stored candidates."),
    preserve_overrides: bool = typer.Option(
        True, "--preserve-overrides/--no-preserve-overrides",
        help="Informational; locked entries are never overwritten.",
    ),
    actor: str | None = typer.Option(None, "--actor", help="Recorded in the run ledger."),
) -> None:
    init_db()

    def runner() -> dict:
        with session_scope() as session:
            return services.merge(session, sport, preserve_overrides=preserve_overrides, actor_id=actor)

    _print("merge", _run(ctx, runner), ctx)


# ---------------------------------------------------------------------------
# Override commands
# ---------------------------------------------------------------------------


@app.command("lock")
def lock_command(
    ctx: typer.Context,
    entry_id: int = typer.Argument(..., help="Ranking entry ID."),
    actor: str = typer.Option(..., "--actor", help="Administrator placing the lock."),
    reason: str | None = typer.Option(None, "--reason", help="Why the entry is frozen."),
) -> None:
    init_db()

    def runner() -> dict:
        with session_scope() as session:
            return services.entry_summary(overrides.lock(session, entry_id, actor, reason))

    _print("lock", _run(ctx, runner), ctx)


@app.command("unlock")
def unlock_command(
    ctx: typer.Context,
    entry_id: int = typer.Argument(..., help="Ranking entry ID."),
    actor: str = typer.Option(..., "--actor", help="Administrator releasing the lock."),
) -> None:
    init_db()

    def runner() -> dict:
        with session_scope() as session:
            return services.entry_summary(overrides.unlock(session, entry_id, actor))

    _print("unlock", _run(ctx, runner), ctx)


# ---------------------------------------------------------------------------
# Read commands
# ---------------------------------------------------------------------------


@app.command("leaderboard")
def leaderboard_command(
    ctx: typer.Context,
    sport: str = typer.Argument(..., help="Sport to list."),
    year: int | None = typer.Option(None, "--year", help="Graduation-year cohort."),
    top: int = typer.Option(25, "--top", min=1, help="Number of rows to display."),
) -> None:
    init_db()
    with session_scope() as session:
        items, total = services.query_rankings(session, sport=sport, graduation_year=year, limit=top)

    if _wants_json(ctx):
        typer.echo(json.dumps({"items": items, "total": total}, indent=2, ensure_ascii=False))
        return

    title = f"{sport} {year}" if year is not None else sport
    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for column in ("Rank", "Athlete", "Score", "Class", "Pos", "State", "Source", "Locked"):
        table.add_column(column)
    for item in items:
        table.add_row(
            _format_scalar(item["overall_rank"]),
            item["display_name"],
            _format_scalar(item["composite_score"]),
            _format_scalar(item["graduation_year"]),
            _format_scalar(item["position"]),
            _format_scalar(item["state"]),
            item["source"],
            "[bold yellow]yes[/bold yellow]" if item["is_manual_override"] else "",
        )
    console.print(Panel(table, title=f"{title} · {len(items)} of {total}", border_style="cyan"))


@app.command("runs")
def runs_command(
    ctx: typer.Context,
    sport: str | None = typer.Option(None, "--sport", help="Only runs for this sport."),
    limit: int = typer.Option(20, "--limit", min=1, help="Number of runs to display."),
) -> None:
    init_db()
    with session_scope() as session:
        runs = services.list_runs(session, sport=sport, limit=limit)

    if _wants_json(ctx):
        typer.echo(json.dumps(runs, indent=2, ensure_ascii=False))
        return

    table = Table(show_header=True, header_style="bold cyan", box=ROUNDED)
    for column in ("ID", "Operation", "Sport", "Status", "Written", "Preserved", "Rejected", "Started"):
        table.add_column(column)
    for run in runs:
        details = run["details"]
        status = "[green]success[/green]" if run["status"] == "success" else f"[red]{run['status']}[/red]"
        table.add_row(
            str(run["id"]), run["operation"], run["sport"], status,
            _format_scalar(details.get("written")),
            _format_scalar(details.get("preserved")),
            _format_scalar(details.get("rejected")),
            run["started_at"] or "-",
        )
    console.print(Panel(table, title="ranking runs", border_style="cyan"))


@app.command("serve")
def serve_command(
    host: str = typer.Option("127.0.0.1", help="Bind address."),
    port: int = typer.Option(8001, help="Bind port."),
) -> None:
    import uvicorn
    uvicorn.run("rankings.app:app", host=host, port=port)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
