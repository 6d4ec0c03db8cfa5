from __future__ import annotations

import json

import openpyxl
import pytest
from typer.testing import CliRunner

from rankings.cli import app
from rankings.db import init_db, session_scope
from rankings.models import Athlete, Evaluation

runner = CliRunner()


@pytest.fixture()
def db_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    init_db(url)
    with session_scope() as session:
        for name, score in (("Top Dog", 92), ("Second Best", 85)):
            session.add(Athlete(
                full_name=name, sport="Football", graduation_year=2026,
                evaluations=[Evaluation(
                    status="completed", technical_skill=score, game_knowledge=score,
                    athleticism=score, mental_game=score,
                )],
            ))
        session.commit()
    return url


def _invoke(db_url: str, *args: str):
    return runner.invoke(app, ["--database-url", db_url, "--json", *args])


def _json(result):
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def _error(result) -> dict:
    assert result.exit_code == 1, result.output
    # error logs may share the stream with the JSON body
    return json.loads(result.output[result.output.index("{"):])


def test_recalculate_and_leaderboard(db_url):
    summary = _json(_invoke(db_url, "recalculate", "Football", "--actor", "cron"))
    assert summary["inserted"] == 2
    assert summary["status"] == "success"

    board = _json(_invoke(db_url, "leaderboard", "football", "--year", "2026", "--top", "1"))
    assert board["total"] == 2
    assert [i["display_name"] for i in board["items"]] == ["Top Dog"]


def test_lock_survives_recalculate_until_unlocked(db_url):
    _invoke(db_url, "recalculate", "football")
    top = _json(_invoke(db_url, "leaderboard", "football"))["items"][0]

    locked = _json(_invoke(db_url, "lock", str(top["id"]), "--actor", "admin", "--reason", "hold"))
    assert locked["is_manual_override"] is True
    assert locked["override_reason"] == "hold"

    summary = _json(_invoke(db_url, "recalculate", "football"))
    assert summary["preserved"] == 1

    unlocked = _json(_invoke(db_url, "unlock", str(top["id"]), "--actor", "admin"))
    assert unlocked["is_manual_override"] is False


def test_import_from_spreadsheet(db_url, tmp_path):
    wb = openpyxl.Workbook()
    wb.active.append(["Name", "Sport", "Rank", "Class"])
    wb.active.append(["Walk On", "Football", 1, 2026])
    wb.active.append(["No Sport", None, 2, 2026])
    path = tmp_path / "board.xlsx"
    wb.save(path)

    summary = _json(_invoke(db_url, "import-external", "football", "2026", "--file", str(path)))
    assert summary["imported"] == 1
    assert summary["rejected"] == 1
    assert summary["source"] == "spreadsheet"


def test_unreadable_sheet_exits_with_error(db_url, tmp_path):
    result = _invoke(db_url, "import-external", "football", "2026", "--file", str(tmp_path / "missing.xlsx"))
    body = _error(result)
    assert body["status"] == "failed"
    assert body["retryable"] is False

    runs = _json(_invoke(db_url, "runs"))
    assert runs[0]["status"] == "failed"
    assert runs[0]["operation"] == "import_external"


def test_merge_flag_is_recorded(db_url):
    _invoke(db_url, "recalculate", "football")
    summary = _json(_invoke(db_url, "merge", "football", "--no-preserve-overrides"))
    assert summary["preserve_overrides"] is False
    assert summary["written"] == 0


def test_lock_unknown_entry_fails(db_url):
    result = _invoke(db_url, "lock", "404", "--actor", "admin")
    assert "not found" in _error(result)["error"]


def test_rich_leaderboard(db_url):
    runner.invoke(app, ["--database-url", db_url, "recalculate", "football"])
    result = runner.invoke(app, ["--database-url", db_url, "leaderboard", "football"])
    assert result.exit_code == 0
    assert "Dog" in result.output
