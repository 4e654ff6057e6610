"""Wires the store, Codex tracking, resolver and dispatcher into one facade."""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from .agent_team import codex_pane, filter_agent_teams
from .backends import EditorBackend, default_backends
from .codex_observer import CodexObserver
from .codex_reconciler import CodexReconciler
from .environment import EnvironmentResolver, FocusTarget
from .focus_dispatcher import FocusDispatcher
from .models import (
    CodexSession,
    CodexSessionStatus,
    FocusResult,
    PaneInfo,
    Session,
    SessionStatus,
    TerminalKind,
)
from .process_probe import ProcessProbe
from .protocol import SessionEvent, decode_codex_notify, decode_event
from .session_store import SessionStore

logger = logging.getLogger(__name__)


def format_waiting_time(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    return f"{seconds // 3600}h {(seconds % 3600) // 60}m"


def pick_waiting(targets: list[FocusTarget]) -> Optional[FocusTarget]:
    """First red session in list order, else the first yellow one."""
    waiting = [t for t in targets if t.is_waiting]
    for target in waiting:
        if target.is_permission_prompt:
            return target
    return waiting[0] if waiting else None


class StatusEngine:
    """
    Synchronous facade over every component.

    Used directly by the CLI when the server is unavailable and from worker
    threads by the server. All calls may block on subprocesses.
    """

    def __init__(
        self,
        config: Optional[dict] = None,
        probe: Optional[ProcessProbe] = None,
        store: Optional[SessionStore] = None,
        observer: Optional[CodexObserver] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or {}
        self._clock = clock
        self.probe = probe or ProcessProbe(config=self.config)
        self.backends = default_backends(self.probe)
        self.editor = EditorBackend(self.probe)

        self.store = store or SessionStore(config=self.config, clock=clock)
        if self.store.tab_index_binder is None:
            self.store.tab_index_binder = self.bind_ghostty_tab
        self.store.add_listener(self.probe.invalidate_all)

        codex_config = self.config.get("codex", {})
        self.codex_enabled = codex_config.get("enabled", True)
        self.observer = observer or CodexObserver(self.probe, sessions_dir=codex_config.get("sessions_dir"))
        self.reconciler = CodexReconciler(tail_reader=self.codex_pane_tail, config=self.config, clock=clock)

        self.resolver = EnvironmentResolver(self.probe, self.backends)
        self.dispatcher = FocusDispatcher(self.probe, self.resolver, self.backends, self.editor, config=self.config)

        self._transitions_lock = threading.Lock()
        self._last_states = self._status_snapshot()

    # Ingestion

    def bind_ghostty_tab(self, event: SessionEvent) -> Optional[int]:
        """Selected Ghostty tab for a new plain (non-tmux, non-editor) Ghostty session."""
        if not event.tty or event.editor_bundle_id:
            return None
        program = (event.term_program or "").lower()
        if program and program != "ghostty":
            return None
        ghostty = self.backends[TerminalKind.GHOSTTY]
        if not ghostty.is_running():
            return None
        # Structured events carry no TERM_PROGRAM; only bind when Ghostty is unambiguous
        if not program and self.backends[TerminalKind.ITERM2].is_running():
            return None
        if self.probe.pane_for_tty(event.tty) is not None:
            return None
        index = ghostty.current_tab_index()
        if index is not None:
            logger.info(f"Bound session {event.key} to Ghostty tab {index}")
        return index

    def ingest(self, payload: dict) -> Optional[Session]:
        """Decode and apply a hook or ccsb.v1 event. Raises EventDecodeError."""
        return self.store.ingest(decode_event(payload))

    def handle_codex_notify(self, payload: dict) -> Optional[CodexSessionStatus]:
        """Decode and apply a Codex notify event. Raises EventDecodeError."""
        return self.reconciler.handle_notify(decode_codex_notify(payload))

    def _status_snapshot(self) -> dict[str, tuple]:
        return {s.key: (s.status, s.waiting_reason) for s in self.store.list_sessions()}

    def store_transitions(self) -> tuple[list[str], list[Session]]:
        """
        Status changes since the previous call, including writes by other processes.

        Returns:
            (keys that returned to running, sessions that started waiting)
        """
        with self._transitions_lock:
            self.store.reload()
            running, waiting = [], []
            current = {}
            for session in self.store.list_sessions():
                state = (session.status, session.waiting_reason)
                current[session.key] = state
                previous = self._last_states.get(session.key)
                if previous == state:
                    continue
                if session.status == SessionStatus.RUNNING and previous is not None:
                    running.append(session.key)
                elif session.is_waiting:
                    waiting.append(session)
            self._last_states = current
            return running, waiting

    # Codex

    def codex_pane_tail(self, cwd: str) -> Optional[str]:
        session = self.observer.session_for_cwd(cwd)
        pane = codex_pane(session) if session else None
        if pane is None:
            return None
        return self.probe.capture_pane_tail(pane, self.reconciler.tail_lines)

    def reconcile_codex(self) -> list[str]:
        if not self.codex_enabled:
            return []
        # Fresh process list on every pass
        self.observer.invalidate()
        alive = [s.cwd for s in self.observer.active_sessions().values()]
        return self.reconciler.reconcile(alive)

    def codex_session_for_cwd(self, cwd: str) -> Optional[CodexSession]:
        session = self.observer.session_for_cwd(cwd)
        if session:
            session.state = self.reconciler.status_for(cwd)
        return session

    def codex_sessions(self) -> list[CodexSession]:
        """Observed Codex sessions with their inferred state, then stopped placeholders."""
        if not self.codex_enabled:
            return []
        sessions = []
        for session in sorted(self.observer.active_sessions().values(), key=lambda s: s.pid):
            session.state = self.reconciler.status_for(session.cwd)
            sessions.append(session)
        alive = {s.cwd for s in sessions}
        for cwd, state in self.reconciler.synthetic_stopped().items():
            if cwd not in alive:
                sessions.append(CodexSession(pid=0, cwd=cwd, created_at=state.stopped_at, state=state))
        return sessions

    # Targets

    def pane_for(self, target: FocusTarget) -> Optional[PaneInfo]:
        if isinstance(target, CodexSession):
            return codex_pane(target)
        return self.probe.pane_for_tty(target.tty)

    def list_targets(self) -> list[FocusTarget]:
        """Active sessions in display order, one entry per agent team."""
        sessions = filter_agent_teams(self.store.list_sessions(), self.pane_for)
        codex = filter_agent_teams(self.codex_sessions(), self.pane_for)
        return sessions + codex

    def find(self, key: str) -> Optional[FocusTarget]:
        for target in self.list_targets():
            if target.key == key:
                return target
        return None

    def is_focusable(self, target: FocusTarget) -> bool:
        """False for sessions inside a tmux session with no attached client."""
        pane = self.pane_for(target)
        if pane is None:
            return True
        return self.probe.is_session_attached(pane.session)

    # Actions

    def focus(self, target: FocusTarget) -> FocusResult:
        result = self.dispatcher.focus(target)
        if result.acted_upon:
            self.acknowledge(target.key)
        return result

    def acknowledge(self, key: str) -> bool:
        if key.startswith("codex:"):
            target = self.find(key)
            if not isinstance(target, CodexSession):
                return False
            return self.reconciler.acknowledge(target.cwd)
        return self.store.acknowledge(key)

    # Listing

    def entry(self, target: FocusTarget, with_tmux: bool = False) -> dict:
        """JSON listing entry for a session."""
        item = {
            "id": target.key,
            "project": target.display_name,
            "status": target.status.value,
            "path": target.display_path,
            "tool": "codex" if isinstance(target, CodexSession) else target.tool_name,
            "environment": self.resolver.resolve(target).display_name,
        }
        if target.is_waiting and target.waiting_reason:
            item["waiting_reason"] = target.waiting_reason.value
        if target.is_acknowledged:
            item["is_acknowledged"] = True

        if with_tmux:
            pane = self.pane_for(target)
            if pane:
                item["tmux"] = {
                    "session": pane.session,
                    "target": pane.target,
                    "attach_command": f"tmux attach -t {pane.session}",
                }
            if target.is_waiting:
                seconds = max(0, int((self._clock() - target.updated_at).total_seconds()))
                item["waiting_seconds"] = seconds
                item["waiting_time"] = format_waiting_time(seconds)
        return item

    def list_payload(self, offset: int = 0, limit: Optional[int] = None, with_tmux: bool = False) -> dict:
        targets = self.list_targets()
        total = len(targets)
        start = min(max(offset, 0), total)
        end = total if limit is None else min(start + max(limit, 0), total)
        return {
            "sessions": [self.entry(t, with_tmux) for t in targets[start:end]],
            "offset": offset,
            "total": total,
        }
