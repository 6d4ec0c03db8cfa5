"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database shared through StaticPool.
"""
from __future__ import annotations

import sqlite3

import openpyxl
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from rankings import overrides, services
from rankings.sources import SourceUnavailableError


@pytest.fixture()
def client(SessionLocal):
    """FastAPI TestClient using the in-memory test database."""
    from rankings.app import app, db_session

    def override_db_session():
        session = SessionLocal()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded(client, make_athlete):
    make_athlete("Top Dog", 92, position="QB", state="TX")
    make_athlete("Second Best", 85, position="WR", state="TX")
    make_athlete("Class of 27", 99, year=2027)
    resp = client.post("/api/rankings/recalculate", json={"sport": "Football"})
    assert resp.status_code == 200
    return client


def _feed(monkeypatch, source):
    monkeypatch.setattr(services, "FeedRankingSource", lambda settings=None: source)


class TestBatchEndpoints:
    def test_recalculate_returns_summary(self, client, make_athlete):
        make_athlete("Top Dog", 92)
        resp = client.post("/api/rankings/recalculate", json={"sport": "football", "actor_id": "cron"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["operation"] == "recalculate"
        assert body["inserted"] == 1
        assert body["status"] == "success"

    def test_blank_sport_is_422(self, client):
        assert client.post("/api/rankings/recalculate", json={"sport": "  "}).status_code == 422

    def test_import_from_feed(self, client, monkeypatch, static_source):
        _feed(monkeypatch, static_source([
            {"athlete_name": "Walk On", "sport": "football", "graduation_year": 2026, "overall_rank": 2},
            {"athlete_name": "", "sport": "football"},
        ]))
        resp = client.post("/api/rankings/import", json={"sport": "Football", "season": 2026})
        assert resp.status_code == 200
        body = resp.json()
        assert body["imported"] == 1
        assert body["rejected"] == 1
        assert body["source"] == "espn"

    def test_source_down_is_503_retryable(self, client, monkeypatch):
        class Down:
            name = "espn"

            async def fetch(self, sport, season):
                raise SourceUnavailableError("espn feed unavailable: timed out")

        _feed(monkeypatch, Down())
        resp = client.post("/api/rankings/import", json={"sport": "football", "season": 2026})
        assert resp.status_code == 503
        assert resp.json() == {"detail": "espn feed unavailable: timed out", "retryable": True}
        runs = client.get("/api/runs").json()
        assert runs[0]["status"] == "failed"

    def test_upload_spreadsheet(self, client, tmp_path):
        wb = openpyxl.Workbook()
        wb.active.append(["Athlete", "Rank", "Class"])
        wb.active.append(["Walk On", 1, 2026])
        path = tmp_path / "board.xlsx"
        wb.save(path)
        with path.open("rb") as f:
            resp = client.post(
                "/api/rankings/import/upload",
                data={"sport": "football", "season": "2026"},
                files={"file": ("board.xlsx", f, "application/octet-stream")},
            )
        assert resp.status_code == 200
        assert resp.json()["imported"] == 1
        [item] = client.get("/api/rankings").json()["items"]
        assert item["source"] == "spreadsheet"
        assert item["composite_score"] == 100

    def test_upload_rejects_other_formats(self, client):
        resp = client.post(
            "/api/rankings/import/upload",
            data={"sport": "football", "season": "2026"},
            files={"file": ("board.csv", b"a,b", "text/csv")},
        )
        assert resp.status_code == 400

    def test_merge(self, seeded):
        resp = seeded.post("/api/rankings/merge", json={"sport": "football", "preserve_overrides": True})
        assert resp.status_code == 200
        assert resp.json()["written"] == 0


class TestRankingEndpoints:
    def test_list_is_ordered_by_rank(self, seeded):
        body = seeded.get("/api/rankings", params={"sport": "football", "graduation_year": 2026}).json()
        assert body["total"] == 2
        assert [i["display_name"] for i in body["items"]] == ["Top Dog", "Second Best"]
        assert [i["overall_rank"] for i in body["items"]] == [1, 2]

    def test_list_filters(self, seeded):
        assert seeded.get("/api/rankings", params={"position": "qb"}).json()["total"] == 1
        assert seeded.get("/api/rankings", params={"state": "TX"}).json()["total"] == 2
        assert seeded.get("/api/rankings", params={"locked": True}).json()["total"] == 0
        assert seeded.get("/api/rankings", params={"limit": 1}).json()["total"] == 3

    def test_get_unknown_is_404(self, client):
        assert client.get("/api/rankings/999").status_code == 404

    def test_create_manual_entry(self, client):
        payload = {"sport": "football", "external_athlete_name": "Walk On", "graduation_year": 2026,
                   "composite_score": 70, "overall_rank": 4, "locked": True, "actor_id": "admin"}
        resp = client.post("/api/rankings", json=payload)
        assert resp.status_code == 201
        body = resp.json()
        assert body["source"] == "manual"
        assert body["is_manual_override"] is True
        assert body["overall_rank"] == 4
        assert client.post("/api/rankings", json=payload).status_code == 409

    def test_create_with_both_identities_is_422(self, client, make_athlete):
        athlete = make_athlete("Someone")
        resp = client.post("/api/rankings", json={
            "sport": "football", "athlete_id": athlete.id, "external_athlete_name": "Someone",
        })
        assert resp.status_code == 422

    def test_lock_edit_unlock_delete(self, seeded):
        entry = seeded.get("/api/rankings", params={"graduation_year": 2026}).json()["items"][0]
        url = f"/api/rankings/{entry['id']}"

        locked = seeded.post(f"{url}/lock", json={"actor_id": "admin", "reason": "film review"}).json()
        assert locked["is_manual_override"] is True
        assert locked["override_reason"] == "film review"

        edited = seeded.put(url, json={"composite_score": 50.0}).json()
        assert edited["composite_score"] == 50

        seeded.post("/api/rankings/recalculate", json={"sport": "football"})
        assert seeded.get(url).json()["composite_score"] == 50

        unlocked = seeded.post(f"{url}/unlock", json={"actor_id": "admin"}).json()
        assert unlocked["is_manual_override"] is False
        assert unlocked["composite_score"] == 50

        seeded.post("/api/rankings/recalculate", json={"sport": "football"})
        assert seeded.get(url).json()["composite_score"] == 92

        assert seeded.delete(url).json() == {"ok": True}
        assert seeded.get(url).status_code == 404

    def test_lock_requires_actor(self, seeded):
        entry = seeded.get("/api/rankings").json()["items"][0]
        assert seeded.post(f"/api/rankings/{entry['id']}/lock", json={}).status_code == 422

    def test_lock_unknown_is_404(self, client):
        assert client.post("/api/rankings/5/lock", json={"actor_id": "admin"}).status_code == 404
        assert client.put("/api/rankings/5", json={"state": "TX"}).status_code == 404
        assert client.delete("/api/rankings/5").status_code == 404

    def test_lock_while_a_run_holds_the_database_is_409(self, seeded, monkeypatch):
        entry = seeded.get("/api/rankings").json()["items"][0]

        def busy(session):
            raise OperationalError("BEGIN IMMEDIATE", {}, sqlite3.OperationalError("database is locked"))

        monkeypatch.setattr(overrides, "lock_for_write", busy)
        resp = seeded.post(f"/api/rankings/{entry['id']}/lock", json={"actor_id": "admin"})
        assert resp.status_code == 409
        assert resp.json()["retryable"] is True

        monkeypatch.undo()
        assert seeded.get(f"/api/rankings/{entry['id']}").json()["is_manual_override"] is False


class TestRunsAndStats:
    def test_runs_listing(self, seeded):
        runs = seeded.get("/api/runs", params={"sport": "football"}).json()
        assert len(runs) == 1
        assert runs[0]["operation"] == "recalculate"
        assert runs[0]["details"]["inserted"] == 3

    def test_stats(self, seeded):
        seeded.post("/api/rankings", json={"sport": "football", "external_athlete_name": "Placeholder"})
        body = seeded.get("/api/stats").json()
        assert body["total"] == 4
        assert body["by_sport"]["football"] == {"total": 4, "locked": 0, "external_only": 1, "unscored": 1}
