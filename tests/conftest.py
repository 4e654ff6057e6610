"""Shared pytest fixtures for CC Status tests."""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from ccstatus.engine import StatusEngine
from ccstatus.process_probe import ProcessProbe
from ccstatus.server import create_app
from ccstatus.session_store import SessionStore


class FakeRunner:
    """
    Command runner returning canned stdout by command prefix.

    The longest matching prefix wins; unmatched commands "fail" (None).
    """

    def __init__(self):
        self.responses: dict[tuple, Optional[str]] = {}
        self.calls: list[list[str]] = []

    def respond(self, prefix: list[str], output: Optional[str]) -> None:
        self.responses[tuple(prefix)] = output

    def count(self, prefix: list[str]) -> int:
        return sum(1 for cmd in self.calls if tuple(cmd[:len(prefix)]) == tuple(prefix))

    def __call__(self, cmd: list[str], timeout: float = 5.0) -> Optional[str]:
        self.calls.append(list(cmd))
        for prefix in sorted(self.responses, key=len, reverse=True):
            if tuple(cmd[:len(prefix)]) == prefix:
                return self.responses[prefix]
        return None


class FakeClock:
    """Manually advanced clock; works for both monotonic floats and datetimes."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds: float) -> None:
        if isinstance(self.now, datetime):
            self.now += timedelta(seconds=seconds)
        else:
            self.now += seconds


@pytest.fixture(autouse=True)
def reset_write_error_flag(monkeypatch):
    """Write failures are reported once per process; isolate each test."""
    monkeypatch.setattr(SessionStore, "_write_error_reported", False)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Monotonic-style clock starting at 1000.0 seconds."""
    return FakeClock(1000.0)


@pytest.fixture
def fake_now() -> FakeClock:
    """Wall clock starting at 2024-01-01 12:00."""
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def probe(fake_runner: FakeRunner, fake_clock: FakeClock) -> ProcessProbe:
    """
    ProcessProbe driven by the fake runner.

    uid -1 keeps socket discovery away from the real /tmp/tmux-<uid> directory.
    """
    return ProcessProbe(runner=fake_runner, clock=fake_clock, environ={}, uid=-1)


@pytest.fixture
def state_file(tmp_path: Path) -> Path:
    return tmp_path / "state" / "sessions.json"


@pytest.fixture
def store(state_file: Path, fake_now: FakeClock) -> SessionStore:
    return SessionStore(state_file=str(state_file), clock=fake_now)


@pytest.fixture
def engine_config(tmp_path: Path) -> dict:
    return {"codex": {"sessions_dir": str(tmp_path / "codex-sessions")}}


@pytest.fixture
def engine(engine_config: dict, probe: ProcessProbe, store: SessionStore, fake_now: FakeClock) -> StatusEngine:
    """StatusEngine with no terminals, tmux servers or Codex processes visible."""
    return StatusEngine(engine_config, probe=probe, store=store, clock=fake_now)


@pytest.fixture
def test_client(engine: StatusEngine) -> TestClient:
    """
    Create a FastAPI TestClient backed by a real engine.

    Returns:
        TestClient configured with the app and engine, autofocus disabled
    """
    app = create_app(engine=engine, config={})
    return TestClient(app)


def _hook_payload(event: str, session_id: str = "s1", cwd: str = "/work/app",
                  tty: Optional[str] = "/dev/ttys001", **extra) -> dict:
    """Legacy hook payload as the CLI forwards it."""
    payload = {"session_id": session_id, "cwd": cwd, "hook_event_name": event}
    if tty:
        payload["tty"] = tty
    payload.update(extra)
    return payload


def _ccsb_payload(event: str, session_id: str = "c1", tool: str = "aider", **extra) -> dict:
    payload = {
        "proto": "ccsb.v1",
        "event": event,
        "session_id": session_id,
        "timestamp": "2024-01-01T12:00:00Z",
        "tool": {"name": tool},
        "cwd": "/work/tool",
    }
    payload.update(extra)
    return payload


@pytest.fixture
def hook_payload():
    """Builder for legacy hook payloads."""
    return _hook_payload


@pytest.fixture
def ccsb_payload():
    """Builder for ccsb.v1 payloads."""
    return _ccsb_payload
