"""Integration tests for API endpoints."""

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from ccstatus.models import FocusResult
from ccstatus.server import create_app


@pytest.fixture
def mock_autofocus():
    return MagicMock()


@pytest.fixture
def autofocus_client(engine, mock_autofocus):
    """TestClient with a mocked AutofocusController."""
    app = create_app(engine=engine, autofocus=mock_autofocus, config={})
    return TestClient(app)


@pytest.fixture
def focus_succeeds(engine):
    engine.dispatcher.focus = MagicMock(return_value=FocusResult.success())
    return engine.dispatcher.focus


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_root(self, test_client):
        response = test_client.get("/")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "ccstatus"}

    def test_health(self, test_client):
        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestIngestEndpoints:
    def test_session_start(self, test_client, hook_payload):
        response = test_client.post("/hooks/claude", json=hook_payload("SessionStart"))

        assert response.status_code == 200
        assert response.json() == {
            "status": "ok",
            "id": "s1:/dev/ttys001",
            "session_status": "running",
            "removed": False,
        }

    def test_malformed_hook_rejected(self, test_client):
        response = test_client.post("/hooks/claude", json={"hook_event_name": "Stop"})

        assert response.status_code == 400
        assert "session_id" in response.json()["detail"]

    def test_non_object_body_rejected(self, test_client):
        response = test_client.post("/hooks/claude", json=["not", "an", "object"])

        assert response.status_code == 422

    def test_structured_waiting_event(self, test_client, ccsb_payload):
        payload = ccsb_payload("session.waiting", tty="/dev/ttys002", attention={"level": "red"})

        response = test_client.post("/events", json=payload)

        assert response.json()["session_status"] == "waiting_input"
        entry = test_client.get("/sessions").json()["sessions"][0]
        assert entry["waiting_reason"] == "permission_prompt"
        assert entry["tool"] == "aider"

    def test_unsupported_protocol(self, test_client, ccsb_payload):
        response = test_client.post("/events", json=ccsb_payload("session.start", proto="ccsb.v2"))

        assert response.status_code == 400

    def test_session_end_removes(self, test_client, hook_payload):
        test_client.post("/hooks/claude", json=hook_payload("SessionStart"))

        response = test_client.post("/hooks/claude", json=hook_payload("SessionEnd"))

        assert response.json() == {"status": "ok", "id": None, "session_status": None, "removed": True}
        assert test_client.get("/sessions").json()["total"] == 0

    def test_transitions_forwarded_to_autofocus(self, autofocus_client, mock_autofocus, hook_payload):
        autofocus_client.post("/hooks/claude", json=hook_payload("Stop"))

        running, waiting = mock_autofocus.apply_transitions.call_args.args
        assert running == []
        assert [s.key for s in waiting] == ["s1:/dev/ttys001"]

    def test_no_engine(self):
        client = TestClient(create_app(config={}))

        assert client.post("/hooks/claude", json={}).status_code == 503
        assert client.get("/sessions").status_code == 503


class TestListSessions:
    def test_display_order_and_pagination(self, test_client, hook_payload):
        for i in range(3):
            test_client.post("/hooks/claude", json=hook_payload("SessionStart", session_id=f"s{i}",
                                                                tty=f"/dev/ttys00{i}", cwd=f"/work/p{i}"))

        response = test_client.get("/sessions", params={"offset": 1, "limit": 1})

        data = response.json()
        assert data["total"] == 3
        assert data["offset"] == 1
        assert [e["project"] for e in data["sessions"]] == ["p1"]

    def test_with_tmux_waiting_time(self, test_client, hook_payload):
        test_client.post("/hooks/claude", json=hook_payload("Stop"))

        entry = test_client.get("/sessions", params={"with_tmux": "true"}).json()["sessions"][0]

        assert entry["waiting_time"] == "0s"
        assert "tmux" not in entry


class TestFocusEndpoint:
    def test_no_sessions(self, test_client):
        response = test_client.post("/focus", json={"index": 0})

        assert response.status_code == 404
        assert response.json()["detail"] == "No active sessions"

    def test_requires_one_selector(self, test_client):
        response = test_client.post("/focus", json={"index": 0, "waiting": True})

        assert response.status_code == 400

    def test_index_out_of_range(self, test_client, hook_payload):
        test_client.post("/hooks/claude", json=hook_payload("SessionStart"))

        response = test_client.post("/focus", json={"index": 5})

        assert response.status_code == 404
        assert "out of range" in response.json()["detail"]

    def test_no_waiting_sessions(self, test_client, hook_payload):
        test_client.post("/hooks/claude", json=hook_payload("SessionStart"))

        assert test_client.post("/focus", json={"waiting": True}).status_code == 404

    def test_unknown_id(self, test_client, hook_payload):
        test_client.post("/hooks/claude", json=hook_payload("SessionStart"))

        assert test_client.post("/focus", json={"id": "nope"}).status_code == 404

    def test_focus_waiting_acknowledges(self, test_client, focus_succeeds, hook_payload):
        test_client.post("/hooks/claude", json=hook_payload("SessionStart", session_id="a", tty="/dev/ttys001"))
        test_client.post("/hooks/claude", json=hook_payload("Stop", session_id="b", tty="/dev/ttys002",
                                                            cwd="/work/other"))

        response = test_client.post("/focus", json={"waiting": True})

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == "b:/dev/ttys002"
        assert data["project"] == "other"
        assert data["outcome"] == "success"
        assert data["acknowledged"] is True
        listing = test_client.get("/sessions").json()["sessions"]
        assert listing[1]["is_acknowledged"] is True

    def test_failed_focus_not_acknowledged(self, test_client, engine, hook_payload):
        engine.dispatcher.focus = MagicMock(return_value=FocusResult.not_running())
        test_client.post("/hooks/claude", json=hook_payload("Stop"))

        data = test_client.post("/focus", json={"index": 0}).json()

        assert data["outcome"] == "not_running"
        assert data["acknowledged"] is False
        assert "is_acknowledged" not in test_client.get("/sessions").json()["sessions"][0]

    def test_focus_by_key_path(self, test_client, focus_succeeds, hook_payload):
        test_client.post("/hooks/claude", json=hook_payload("Stop"))

        response = test_client.post("/sessions/s1:/dev/ttys001/focus")

        assert response.status_code == 200
        assert response.json()["outcome"] == "success"


class TestAcknowledgeEndpoint:
    def test_acknowledge(self, test_client, hook_payload):
        test_client.post("/hooks/claude", json=hook_payload("Stop"))

        response = test_client.post("/sessions/s1:/dev/ttys001/acknowledge")

        assert response.json() == {"id": "s1:/dev/ttys001", "acknowledged": True, "changed": True}
        repeat = test_client.post("/sessions/s1:/dev/ttys001/acknowledge")
        assert repeat.json()["changed"] is False

    def test_prompt_clears_acknowledgement(self, test_client, hook_payload):
        test_client.post("/hooks/claude", json=hook_payload("Stop"))
        test_client.post("/sessions/s1:/dev/ttys001/acknowledge")

        test_client.post("/hooks/claude", json=hook_payload("UserPromptSubmit"))
        test_client.post("/hooks/claude", json=hook_payload("Stop"))

        assert "is_acknowledged" not in test_client.get("/sessions").json()["sessions"][0]

    def test_unknown_session(self, test_client):
        assert test_client.post("/sessions/missing/acknowledge").status_code == 404


class TestCodexHook:
    def test_other_event_ignored(self, test_client):
        response = test_client.post("/hooks/codex", json={"type": "session-start", "cwd": "/work/codex"})

        assert response.json() == {"status": "ignored"}

    def test_turn_complete(self, test_client):
        response = test_client.post("/hooks/codex", json={"type": "agent-turn-complete", "cwd": "/work/codex"})

        assert response.json() == {"status": "ok", "session_status": "waiting_input", "waiting_reason": "stop"}

    def test_approval_request_is_red(self, test_client):
        payload = {
            "type": "agent-turn-complete",
            "cwd": "/work/codex",
            "last-assistant-message": "Waiting for approval to run `rm -rf build`",
        }

        assert test_client.post("/hooks/codex", json=payload).json()["waiting_reason"] == "permission_prompt"

    def test_missing_cwd(self, test_client):
        assert test_client.post("/hooks/codex", json={"type": "agent-turn-complete"}).status_code == 400
