"""API tests for the self-healing and health routes (FastAPI TestClient)."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from selfheal.app.config import settings
from selfheal.app.main import create_app
from selfheal.app.orchestrator import Orchestrator
from selfheal.app.progress import ProgressBus
from selfheal.app.routes.healing import INTERRUPTED_ERROR, _event_generator
from selfheal.app.services.ledger import AttestationResult
from selfheal.app.store import SessionStore
from selfheal.shared.schemas import HealingSession


def _orchestrator(token: str = "ghp_x", ledger=None) -> Orchestrator:
    repo = MagicMock()
    repo.token = token
    repo.branch_name = "TEAM_LEADER_AI_Fix"
    orch = Orchestrator(
        store=SessionStore(),
        bus=ProgressBus(),
        repo=repo,
        llm=MagicMock(),
        test_runner=MagicMock(),
        scanner=MagicMock(),
        ledger=ledger,
    )
    orch.run = AsyncMock(side_effect=lambda session: session)
    return orch


def _seed(orch: Orchestrator, session_id: str = "s1", status: str = "testing", **fields) -> None:
    async def seed():
        await orch.store.create(HealingSession(id=session_id, user_id="u1", repo_url="https://github.com/o/r"))
        await orch.store.update(session_id, status=status, **fields)

    asyncio.run(seed())


@pytest.fixture
def orch() -> Orchestrator:
    return _orchestrator()


@pytest.fixture
def client(orch) -> TestClient:
    return TestClient(create_app(orchestrator=orch))


class TestStart:

    def test_queues_session(self, client, orch):
        resp = client.post("/self-healing/start", json={"repo_url": "https://github.com/o/r", "user_id": "u1"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "queued"
        assert body["branch_name"] == "TEAM_LEADER_AI_Fix"
        record = asyncio.run(orch.store.get(body["session_id"]))
        assert record["user_id"] == "u1"
        orch.run.assert_called_once()

    def test_invalid_url_is_rejected(self, client, orch):
        resp = client.post("/self-healing/start", json={"repo_url": "https://gitlab.com/o/r"})

        assert resp.status_code == 400
        assert "Invalid GitHub URL" in resp.json()["detail"]
        assert asyncio.run(orch.store.list_sessions()) == []

    def test_missing_token_is_unavailable(self):
        client = TestClient(create_app(orchestrator=_orchestrator(token="")))

        resp = client.post("/self-healing/start", json={"repo_url": "https://github.com/o/r"})

        assert resp.status_code == 503


class TestSessions:

    def test_get_unknown_session(self, client):
        assert client.get("/self-healing/sessions/nope").status_code == 404

    def test_get_reports_staleness(self, client, orch):
        _seed(orch)
        assert client.get("/self-healing/sessions/s1").json()["is_stale"] is False

        orch.store._records["s1"]["updated_at"] = "2000-01-01T00:00:00+00:00"
        resp = client.get("/self-healing/sessions/s1")

        assert resp.status_code == 200
        assert resp.json()["is_stale"] is True

    def test_list_filters_by_user(self, client, orch):
        _seed(orch, "s1")
        resp = client.get("/self-healing/sessions", params={"user_id": "someone-else"})

        assert resp.json() == {"sessions": []}
        assert len(client.get("/self-healing/sessions").json()["sessions"]) == 1

    def test_fail_orphaned_session(self, client, orch):
        _seed(orch)

        resp = client.post("/self-healing/sessions/s1/fail")

        assert resp.json() == {"success": True}
        record = client.get("/self-healing/sessions/s1").json()
        assert record["status"] == "failed"
        assert record["error"] == INTERRUPTED_ERROR
        assert client.post("/self-healing/sessions/s1/fail").status_code == 409

    def test_fail_unknown_session(self, client):
        assert client.post("/self-healing/sessions/nope/fail").status_code == 404


class TestStream:

    def test_inactive_session_tells_client_to_check_record(self, client):
        resp = client.get("/self-healing/stream/gone")

        assert resp.headers["content-type"].startswith("text/event-stream")
        frames = [json.loads(line[len("data: "):]) for line in resp.text.splitlines() if line.startswith("data: ")]
        assert [f["type"] for f in frames] == ["connected", "status"]
        assert frames[1]["data"]["status"] == "check_db"

    def test_live_stream_ends_with_done_after_terminal_status(self):
        async def scenario():
            bus = ProgressBus()
            bus.open("s1")
            frames: list[str] = []

            async def consume():
                async for frame in _event_generator(bus, "s1"):
                    frames.append(frame)

            reader = asyncio.create_task(consume())
            await asyncio.sleep(0.01)
            bus.publish("s1", "log", {"message": "hello"})
            bus.publish("s1", "status", {"status": "completed", "message": "done"})
            bus.publish("s1", "log", {"message": "after the end"})
            await asyncio.wait_for(reader, timeout=1)
            return frames

        frames = asyncio.run(scenario())

        assert len(frames) == 4
        assert json.loads(frames[0][len("data: "):])["type"] == "connected"
        assert json.loads(frames[2][len("data: "):])["data"]["status"] == "completed"
        assert frames[3].startswith("event: done\n")


class TestAttestations:

    def test_disabled_ledger(self, client):
        body = client.get("/self-healing/attestations/s1").json()
        assert body["enabled"] is False
        assert body["attestations"] == []

    def test_enabled_ledger_lists_records(self):
        ledger = MagicMock(enabled=True)
        ledger.record = AsyncMock(return_value=AttestationResult(True))
        orch = _orchestrator(ledger=ledger)
        client = TestClient(create_app(orchestrator=orch))
        _seed(orch, status="completed", attestations=[{"bug_id": "b1", "success": True, "record_id": "r1"}])

        body = client.get("/self-healing/attestations/s1").json()

        assert body["enabled"] is True
        assert body["count"] == 1
        assert client.get("/self-healing/attestations/nope").status_code == 404


class TestHealth:

    def test_health_counts_active_channels(self, client, orch):
        orch.bus.open("s1")
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["active_sessions"] == 1
        assert body["github_configured"] is True
        assert body["ledger_enabled"] is False

    def test_logs_filtered_by_session(self, client, tmp_path, monkeypatch):
        log_file = tmp_path / "selfheal.log"
        log_file.write_text(
            "INFO | [Orchestrator] [aaaaaaaa] Attempt 1/5\n"
            "INFO | [Orchestrator] [bbbbbbbb] Attempt 1/5\n"
            "WARNING | [RepoManager] Commit count unavailable\n"
        )
        monkeypatch.setattr(settings, "LOG_FILE", str(log_file))

        own = client.get("/logs", params={"session_id": "aaaaaaaa-1111-2222"}).text
        found = client.get("/logs/search", params={"q": "commit COUNT"}).text

        assert own == "INFO | [Orchestrator] [aaaaaaaa] Attempt 1/5"
        assert found == "WARNING | [RepoManager] Commit count unavailable"
        assert len(client.get("/logs", params={"tail": 2}).text.splitlines()) == 2

    def test_logs_without_file(self, client, tmp_path, monkeypatch):
        monkeypatch.setattr(settings, "LOG_FILE", str(tmp_path / "missing.log"))
        assert client.get("/logs").text.startswith("No log file found yet")
