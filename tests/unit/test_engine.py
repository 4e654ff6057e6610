"""Unit tests for StatusEngine."""

from unittest.mock import MagicMock

import pytest

from ccstatus.codex_observer import CodexObserver
from ccstatus.engine import StatusEngine, format_waiting_time, pick_waiting
from ccstatus.models import (
    CodexSession,
    CodexSessionStatus,
    FocusResult,
    Session,
    SessionStatus,
    WaitingReason,
)
from ccstatus.protocol import EventDecodeError, decode_hook


def _waiting(session_id, reason=WaitingReason.STOP) -> Session:
    return Session(session_id=session_id, cwd=f"/work/{session_id}",
                   status=SessionStatus.WAITING_INPUT, waiting_reason=reason)


class TestHelpers:
    @pytest.mark.parametrize("seconds,expected", [
        (0, "0s"),
        (59, "59s"),
        (60, "1m"),
        (3599, "59m"),
        (3600, "1h 0m"),
        (5430, "1h 30m"),
    ])
    def test_format_waiting_time(self, seconds, expected):
        assert format_waiting_time(seconds) == expected

    def test_pick_waiting_prefers_red(self):
        running = Session(session_id="run", cwd="/work/run")
        yellow = _waiting("yellow")
        red = _waiting("red", WaitingReason.PERMISSION_PROMPT)

        assert pick_waiting([running, yellow, red]) is red

    def test_pick_waiting_first_yellow(self):
        first = _waiting("first")
        second = _waiting("second")

        assert pick_waiting([first, second]) is first

    def test_pick_waiting_none(self):
        assert pick_waiting([Session(session_id="run", cwd="/w")]) is None


class TestIngest:
    def test_hook_and_structured(self, engine, hook_payload, ccsb_payload):
        engine.ingest(hook_payload("SessionStart"))
        engine.ingest(ccsb_payload("session.start"))

        tools = sorted(s.tool_name for s in engine.store.list_sessions())
        assert tools == ["aider", "claude"]

    def test_malformed_raises(self, engine):
        with pytest.raises(EventDecodeError):
            engine.ingest({"hook_event_name": "Stop"})

    def test_store_writes_invalidate_probe(self, engine, fake_runner, hook_payload):
        engine.probe.pane_for_tty("/dev/ttys001")
        engine.ingest(hook_payload("Stop"))
        engine.probe.pane_for_tty("/dev/ttys001")

        assert fake_runner.count(["tmux", "list-panes"]) == 2


class TestStoreTransitions:
    def test_new_waiting_session_reported_once(self, engine, hook_payload):
        engine.ingest(hook_payload("Stop"))

        running, waiting = engine.store_transitions()
        assert running == []
        assert [s.key for s in waiting] == ["s1:/dev/ttys001"]

        assert engine.store_transitions() == ([], [])

    def test_new_running_session_not_reported(self, engine, hook_payload):
        engine.ingest(hook_payload("SessionStart"))

        assert engine.store_transitions() == ([], [])

    def test_return_to_running(self, engine, hook_payload):
        engine.ingest(hook_payload("Stop"))
        engine.store_transitions()

        engine.ingest(hook_payload("UserPromptSubmit"))

        assert engine.store_transitions() == (["s1:/dev/ttys001"], [])

    def test_reason_change_reported(self, engine, hook_payload):
        engine.ingest(hook_payload("Stop"))
        engine.store_transitions()

        engine.ingest(hook_payload("Notification", notification_type="permission_prompt"))
        _, waiting = engine.store_transitions()

        assert waiting[0].is_permission_prompt

    def test_picks_up_writes_from_other_process(self, engine, state_file, fake_now, hook_payload):
        from ccstatus.session_store import SessionStore

        other = SessionStore(state_file=str(state_file), clock=fake_now)
        other.ingest(decode_hook(hook_payload("Stop", session_id="cli")))

        _, waiting = engine.store_transitions()

        assert [s.session_id for s in waiting] == ["cli"]


class TestListing:
    def test_entry_fields(self, engine, hook_payload):
        engine.ingest(hook_payload("Notification", notification_type="permission_prompt"))

        listing = engine.list_payload()

        assert listing["total"] == 1
        assert listing["offset"] == 0
        assert listing["sessions"] == [{
            "id": "s1:/dev/ttys001",
            "project": "app",
            "status": "waiting_input",
            "path": "/work/app",
            "tool": "claude",
            "environment": "Unknown",
            "waiting_reason": "permission_prompt",
        }]

    def test_with_tmux(self, engine, fake_runner, fake_now, hook_payload):
        fake_runner.respond(["tmux", "list-panes"], "/dev/ttys001\twork\t2\t0\tzsh\n")
        engine.ingest(hook_payload("Stop"))
        fake_now.advance(125)

        entry = engine.list_payload(with_tmux=True)["sessions"][0]

        assert entry["tmux"] == {"session": "work", "target": "work:2.0", "attach_command": "tmux attach -t work"}
        assert entry["waiting_seconds"] == 125
        assert entry["waiting_time"] == "2m"
        assert entry["environment"] == "tmux"

    def test_acknowledged_flag(self, engine, hook_payload):
        engine.ingest(hook_payload("Stop"))
        engine.acknowledge("s1:/dev/ttys001")

        assert engine.list_payload()["sessions"][0]["is_acknowledged"] is True

    def test_pagination(self, engine, hook_payload):
        for i in range(5):
            engine.ingest(hook_payload("SessionStart", session_id=f"s{i}", tty=f"/dev/ttys00{i}"))

        page = engine.list_payload(offset=1, limit=2)

        assert [e["id"] for e in page["sessions"]] == ["s1:/dev/ttys001", "s2:/dev/ttys002"]
        assert page["total"] == 5
        assert engine.list_payload(offset=10)["sessions"] == []

    def test_agent_team_collapsed(self, engine, fake_runner, fake_now, hook_payload):
        fake_runner.respond(["tmux", "list-panes"], "/dev/ttys001\tteam\t1\t0\tzsh\n/dev/ttys002\tteam\t1\t1\tzsh\n")
        engine.ingest(hook_payload("SessionStart", session_id="lead", tty="/dev/ttys001"))
        fake_now.advance(10)
        engine.ingest(hook_payload("SessionStart", session_id="worker", tty="/dev/ttys002"))

        assert [t.session_id for t in engine.list_targets()] == ["lead"]

    def test_codex_placeholder_listed_as_stopped(self, engine, fake_now):
        engine.reconciler.states["/work/gone"] = CodexSessionStatus(
            status=SessionStatus.STOPPED,
            is_synthetic_stopped=True,
            stopped_at=fake_now.now,
        )

        entry = engine.list_payload()["sessions"][-1]

        assert entry["id"] == "codex:/work/gone"
        assert entry["status"] == "stopped"
        assert entry["tool"] == "codex"

    def test_codex_disabled(self, engine_config, probe, store, fake_now):
        engine_config["codex"]["enabled"] = False
        engine = StatusEngine(engine_config, probe=probe, store=store, clock=fake_now)
        engine.reconciler.states["/work/gone"] = CodexSessionStatus(
            status=SessionStatus.STOPPED, is_synthetic_stopped=True, stopped_at=fake_now.now,
        )

        assert engine.codex_sessions() == []
        assert engine.reconcile_codex() == []


class TestCodex:
    @pytest.fixture
    def observed(self, engine):
        session = CodexSession(pid=42, cwd="/work/codex", tty="/dev/ttys004",
                               tmux_session="work", tmux_window="3", tmux_pane="0")
        engine.observer = MagicMock()
        engine.observer.active_sessions.return_value = {session.key: session}
        engine.observer.session_for_cwd.side_effect = lambda cwd: session if cwd == session.cwd else None
        return session

    def test_notify_attaches_state(self, engine, observed):
        engine.handle_codex_notify({"type": "agent-turn-complete", "cwd": "/work/codex"})

        session = engine.codex_session_for_cwd("/work/codex")

        assert session.status == SessionStatus.WAITING_INPUT
        assert engine.find("codex:42") is session

    def test_pane_tail_read_from_tmux(self, engine, observed, fake_runner):
        fake_runner.respond(["tmux", "capture-pane"], "Done.\n> \n")

        assert engine.codex_pane_tail("/work/codex") == "Done.\n> \n"
        assert engine.codex_pane_tail("/work/elsewhere") is None

    def test_reconcile_uses_observed_cwds(self, engine, observed):
        assert engine.reconcile_codex() == ["/work/codex"]

    def test_acknowledge_codex(self, engine, observed):
        engine.handle_codex_notify({"type": "agent-turn-complete", "cwd": "/work/codex"})

        assert engine.acknowledge("codex:42")
        assert engine.codex_session_for_cwd("/work/codex").is_acknowledged

    def test_acknowledge_unknown_codex(self, engine, observed):
        assert not engine.acknowledge("codex:999")


    def test_reconcile_sees_exited_process_immediately(self, engine, probe, fake_runner, fake_clock, fake_now,
                                                       engine_config):
        engine.observer = CodexObserver(probe, sessions_dir=engine_config["codex"]["sessions_dir"], clock=fake_clock)
        fake_runner.respond(["pgrep", "-x", "codex"], "42\n")
        fake_runner.respond(["ps", "-p", "42", "-o", "command="], "codex\n")
        fake_runner.respond(["lsof", "-a", "-p", "42"], "p42\nfcwd\nn/work/codex\n")
        assert engine.reconcile_codex() == ["/work/codex"]

        # Process list cache has not expired, the process has
        fake_runner.respond(["pgrep", "-x", "codex"], None)
        fake_now.advance(4)

        assert engine.reconcile_codex() == ["/work/codex"]
        assert engine.reconciler.status_for("/work/codex").is_synthetic_stopped

    def test_restart_rebuilds_from_observed_processes(self, engine_config, probe, store, fake_now):
        """A fresh engine infers state for already-running Codex processes without any notify."""
        sessions = [CodexSession(pid=42, cwd="/work/codex"), CodexSession(pid=43, cwd="/work/other")]
        observer = MagicMock()
        observer.active_sessions.return_value = {s.key: s for s in sessions}
        engine = StatusEngine(engine_config, probe=probe, store=store, clock=fake_now, observer=observer)

        changed = engine.reconcile_codex()

        assert sorted(changed) == ["/work/codex", "/work/other"]
        listed = engine.codex_sessions()
        assert [s.pid for s in listed] == [42, 43]
        assert all(s.status == SessionStatus.RUNNING for s in listed)
        assert not any(s.is_acknowledged for s in listed)
        assert engine.reconciler.synthetic_stopped() == {}


class TestFocus:
    def test_acknowledges_when_acted_upon(self, engine, hook_payload):
        session = engine.ingest(hook_payload("Stop"))
        engine.dispatcher.focus = MagicMock(return_value=FocusResult.partial("tab not found"))

        result = engine.focus(session)

        assert result.acted_upon
        assert engine.store.get(session.key).is_acknowledged

    def test_failure_leaves_unacknowledged(self, engine, hook_payload):
        session = engine.ingest(hook_payload("Stop"))
        engine.dispatcher.focus = MagicMock(return_value=FocusResult.not_running())

        engine.focus(session)

        assert not engine.store.get(session.key).is_acknowledged

    def test_is_focusable(self, engine, fake_runner, hook_payload):
        fake_runner.respond(["tmux", "list-panes"], "/dev/ttys001\twork\t0\t0\tzsh\n")
        fake_runner.respond(["tmux", "list-sessions"], "work|0\n")
        in_tmux = engine.ingest(hook_payload("Stop"))
        plain = engine.ingest(hook_payload("Stop", session_id="s2", tty="/dev/ttys002"))

        assert not engine.is_focusable(in_tmux)
        assert engine.is_focusable(plain)


class TestBindGhosttyTab:
    def _event(self, hook_payload, **extra):
        return decode_hook(hook_payload("SessionStart", **extra))

    def test_binds_selected_tab(self, engine, fake_runner, hook_payload):
        fake_runner.respond(["pgrep", "-x", "ghostty"], "812\n")
        fake_runner.respond(["osascript"], "2\n")

        assert engine.bind_ghostty_tab(self._event(hook_payload, term_program="ghostty")) == 2

    def test_new_session_records_tab(self, engine, fake_runner, hook_payload):
        fake_runner.respond(["pgrep", "-x", "ghostty"], "812\n")
        fake_runner.respond(["osascript"], "2\n")

        session = engine.ingest(hook_payload("SessionStart", term_program="ghostty"))

        assert session.ghostty_tab_index == 2

    def test_other_terminal(self, engine, fake_runner, hook_payload):
        fake_runner.respond(["pgrep", "-x", "ghostty"], "812\n")

        assert engine.bind_ghostty_tab(self._event(hook_payload, term_program="iTerm.app")) is None

    def test_ambiguous_without_term_program(self, engine, fake_runner, hook_payload):
        fake_runner.respond(["pgrep", "-x", "ghostty"], "812\n")
        fake_runner.respond(["pgrep", "-x", "iTerm2"], "900\n")
        fake_runner.respond(["osascript"], "2\n")

        assert engine.bind_ghostty_tab(self._event(hook_payload)) is None

    def test_editor_hosted(self, engine, fake_runner, hook_payload):
        fake_runner.respond(["pgrep", "-x", "ghostty"], "812\n")
        fake_runner.respond(["osascript"], "2\n")
        event = self._event(hook_payload, term_program="ghostty", editor_bundle_id="com.microsoft.VSCode")

        assert engine.bind_ghostty_tab(event) is None

    def test_ghostty_not_running(self, engine, hook_payload):
        assert engine.bind_ghostty_tab(self._event(hook_payload, term_program="ghostty")) is None
