"""Discovers running Codex CLI sessions from the process table."""

import json
import logging
import os
import time
from datetime import date
from pathlib import Path
from typing import Callable, Optional

from .models import CodexSession
from .process_probe import ProcessProbe, TTLCache

logger = logging.getLogger(__name__)

CODEX_PROCESS_NAMES = ("codex", "codex-cli")
# Legacy Node/vendor launch patterns
CODEX_PROCESS_PATTERNS = ("codex/vendor.*codex", "@openai/codex")


def should_track_command_line(command_line: Optional[str]) -> bool:
    """Interactive Codex only; `mcp-server` subcommands are helpers, not sessions."""
    tokens = (command_line or "").strip().lower().split()
    if not tokens:
        return False
    return "mcp-server" not in tokens


def parse_session_file(path: Path, cwd: str) -> Optional[str]:
    """Session id from a rollout file whose leading session_meta line matches cwd."""
    try:
        with open(path) as f:
            first_line = f.readline()
        meta = json.loads(first_line)
    except (OSError, ValueError):
        return None
    if not isinstance(meta, dict) or meta.get("type") != "session_meta":
        return None
    payload = meta.get("payload")
    if not isinstance(payload, dict):
        return None
    if payload.get("cwd") == cwd and isinstance(payload.get("id"), str):
        return payload["id"]
    return None


class CodexObserver:
    """Polls for Codex processes and enriches them with tty, tmux and terminal info."""

    def __init__(
        self,
        probe: ProcessProbe,
        sessions_dir: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = date.today,
        cache_ttl: float = 5.0,
    ):
        self.probe = probe
        self.sessions_dir = Path(os.path.expanduser(sessions_dir or "~/.codex/sessions"))
        self._today = today
        self._cache = TTLCache(cache_ttl, clock)

    def invalidate(self) -> None:
        self._cache.invalidate()

    def active_sessions(self) -> dict[str, CodexSession]:
        """Observed sessions keyed by `codex:<pid>`."""
        return self._cache.get_or_compute("sessions", self._fetch)

    def session_for_cwd(self, cwd: str) -> Optional[CodexSession]:
        matches = [s for s in self.active_sessions().values() if s.cwd == cwd]
        return min(matches, key=lambda s: s.pid) if matches else None

    def codex_pids(self) -> list[int]:
        pids = set()
        for name in CODEX_PROCESS_NAMES:
            pids.update(self.probe.pids_by_name(name))
        for pattern in CODEX_PROCESS_PATTERNS:
            pids.update(self.probe.pids_by_pattern(pattern))

        tracked = []
        for pid in sorted(pids):
            command_line = self.probe.command_line(pid)
            if should_track_command_line(command_line):
                tracked.append(pid)
            else:
                logger.debug(f"Skipping non-interactive Codex process {pid}: {command_line}")
        return tracked

    def _fetch(self) -> dict[str, CodexSession]:
        sessions = {}
        for pid in self.codex_pids():
            cwd = self.probe.cwd_for_pid(pid)
            if not cwd:
                continue
            session = CodexSession(pid=pid, cwd=cwd, session_id=self.find_session_id(cwd))
            session.tty = self.probe.tty_for_pid(pid)
            pane = self.probe.pane_for_tty(session.tty)
            if pane:
                session.tmux_session = pane.session
                session.tmux_window = pane.window
                session.tmux_pane = pane.pane
                session.tmux_socket_path = pane.socket_path
                session.terminal_app = self.probe.client_terminal(pane.session)
            sessions[session.id] = session
            logger.debug(f"Found Codex PID {pid} in {session.project_name}")
        if sessions:
            logger.debug(f"Found {len(sessions)} active Codex session(s)")
        return sessions

    def find_session_id(self, cwd: str) -> Optional[str]:
        """Search today's rollout files, newest first."""
        today = self._today()
        day_dir = self.sessions_dir / f"{today.year:04d}" / f"{today.month:02d}" / f"{today.day:02d}"
        if not day_dir.is_dir():
            return None
        rollouts = sorted(
            (p for p in day_dir.iterdir() if p.name.startswith("rollout-") and p.name.endswith(".jsonl")),
            reverse=True,
        )
        for path in rollouts:
            session_id = parse_session_file(path, cwd)
            if session_id:
                return session_id
        return None
