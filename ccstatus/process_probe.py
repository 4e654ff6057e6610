"""Subprocess queries against tmux and the process table, with TTL caches."""

import glob
import logging
import os
import subprocess
import threading
import time
from typing import Any, Callable, Optional

from .models import PaneInfo

logger = logging.getLogger(__name__)

PANE_FORMAT = "#{pane_tty}\t#{session_name}\t#{window_index}\t#{pane_index}\t#{window_name}"
ATTACH_FORMAT = "#{session_name}|#{session_attached}"
CLIENT_FORMAT = "#{client_pid}|#{client_session}"

# Process names (lowercased `comm` substrings) mapped to TERM_PROGRAM values.
TERMINAL_PROCESS_NAMES = (
    ("ghostty", "ghostty"),
    ("iterm", "iTerm.app"),
    ("terminal", "Apple_Terminal"),
)

COMMAND_TIMEOUT = 5.0

Runner = Callable[[list[str], float], Optional[str]]

_MISSING = object()


def run_command(cmd: list[str], timeout: float = COMMAND_TIMEOUT) -> Optional[str]:
    """
    Run a command and return its stdout.

    Returns:
        stdout on exit status 0, otherwise None. Failures never raise.
    """
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"Command failed: {' '.join(cmd)}: {e}")
        return None
    if result.returncode != 0:
        logger.debug(f"Command exited {result.returncode}: {' '.join(cmd)} {result.stderr.strip()}")
        return None
    return result.stdout


def normalize_tty(tty: str) -> str:
    """Normalize a tty name to an absolute /dev path."""
    trimmed = tty.strip()
    if not trimmed:
        return ""
    if trimmed.startswith("/dev/"):
        return trimmed
    if trimmed.startswith("dev/"):
        return "/" + trimmed
    return "/dev/" + trimmed


class TTLCache:
    """
    Memo table whose entries expire after a fixed number of seconds.

    Safe to share between worker threads. Computation in get_or_compute runs
    outside the lock, so two threads may both compute a missing entry.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[Any, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: Any, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            value, stored_at = entry
            if self._clock() - stored_at >= self.ttl:
                del self._entries[key]
                return default
            return value

    def set(self, key: Any, value: Any) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock())

    def get_or_compute(self, key: Any, compute: Callable[[], Any]) -> Any:
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = compute()
            self.set(key, value)
        return value

    def invalidate(self, key: Any = _MISSING) -> None:
        with self._lock:
            if key is _MISSING:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class ProcessProbe:
    """
    Answers questions about tmux panes, clients and processes.

    All queries degrade to "no information" when a command fails.
    """

    def __init__(
        self,
        runner: Runner = run_command,
        clock: Callable[[], float] = time.monotonic,
        config: Optional[dict] = None,
        environ: Optional[dict] = None,
        uid: Optional[int] = None,
    ):
        config = config or {}
        probe_config = config.get("probe", {})
        self._runner = runner
        self._environ = environ if environ is not None else os.environ
        self._uid = uid if uid is not None else os.getuid()
        self.pane_cache = TTLCache(probe_config.get("pane_ttl_seconds", 5.0), clock)
        self.terminal_cache = TTLCache(probe_config.get("terminal_ttl_seconds", 60.0), clock)
        self.attach_cache = TTLCache(probe_config.get("attach_ttl_seconds", 5.0), clock)
        self.socket_cache = TTLCache(probe_config.get("socket_ttl_seconds", 30.0), clock)

    def run(self, cmd: list[str], timeout: float = COMMAND_TIMEOUT) -> Optional[str]:
        return self._runner(cmd, timeout)

    def _tmux(self, args: list[str], socket_path: Optional[str] = None) -> str:
        cmd = ["tmux"]
        if socket_path:
            cmd += ["-S", socket_path]
        cmd += args
        return self.run(cmd) or ""

    # Cache invalidation

    def invalidate_panes(self) -> None:
        self.pane_cache.invalidate()

    def invalidate_attach_states(self) -> None:
        self.attach_cache.invalidate()

    def invalidate_all(self) -> None:
        self.pane_cache.invalidate()
        self.terminal_cache.invalidate()
        self.attach_cache.invalidate()
        self.socket_cache.invalidate()

    # tmux servers

    def socket_paths(self) -> list[str]:
        """Discovered tmux server sockets, TMUX env socket first."""
        return self.socket_cache.get_or_compute("paths", self._discover_socket_paths)

    def _discover_socket_paths(self) -> list[str]:
        candidates = []
        tmux_env = self._environ.get("TMUX", "")
        if tmux_env:
            socket_path = tmux_env.split(",", 1)[0]
            if socket_path:
                candidates.append(socket_path)

        socket_dirs = [f"/private/tmp/tmux-{self._uid}", f"/tmp/tmux-{self._uid}"]
        for directory in socket_dirs:
            if os.path.isdir(directory):
                candidates.extend(sorted(glob.glob(os.path.join(directory, "*"))))
        candidates += [f"{d}/default" for d in socket_dirs]

        paths = []
        for path in candidates:
            normalized = os.path.normpath(path)
            if normalized in paths or not os.path.exists(normalized):
                continue
            paths.append(normalized)
        logger.debug(f"Discovered tmux sockets: {paths}")
        return paths

    def _server_outputs(self, args: list[str]) -> list[tuple[str, Optional[str]]]:
        """Run a tmux command on the default server and each discovered socket."""
        outputs = [(self._tmux(args), None)]
        for socket_path in self.socket_paths():
            outputs.append((self._tmux(args, socket_path), socket_path))
        return outputs

    # Panes

    def pane_for_tty(self, tty: Optional[str]) -> Optional[PaneInfo]:
        """tmux pane whose tty matches, or None when the tty is not in tmux."""
        if not tty:
            return None
        normalized = normalize_tty(tty)
        return self.pane_cache.get_or_compute(normalized, lambda: self._fetch_pane(normalized))

    def _fetch_pane(self, tty: str) -> Optional[PaneInfo]:
        args = ["list-panes", "-a", "-F", PANE_FORMAT]
        pane = self._parse_pane(self._tmux(args), tty, None)
        if pane:
            return pane
        for socket_path in self.socket_paths():
            pane = self._parse_pane(self._tmux(args, socket_path), tty, socket_path)
            if pane:
                return pane
        logger.debug(f"No tmux pane found for {tty}")
        return None

    @staticmethod
    def _parse_pane(output: str, tty: str, socket_path: Optional[str]) -> Optional[PaneInfo]:
        for line in output.splitlines():
            parts = line.split("\t")
            if len(parts) < 5:
                continue
            if normalize_tty(parts[0]) == tty:
                return PaneInfo(
                    session=parts[1],
                    window=parts[2],
                    pane=parts[3],
                    window_name=parts[4],
                    socket_path=socket_path,
                )
        return None

    def select_pane(self, pane: PaneInfo) -> bool:
        """Activate the pane's window, then the pane itself. False if tmux rejects either."""
        prefix = ["tmux"] + (["-S", pane.socket_path] if pane.socket_path else [])
        if self.run(prefix + ["select-window", "-t", f"{pane.session}:{pane.window}"]) is None:
            logger.debug(f"tmux select-window failed for {pane.target}")
            return False
        if self.run(prefix + ["select-pane", "-t", pane.target]) is None:
            logger.debug(f"tmux select-pane failed for {pane.target}")
            return False
        logger.debug(f"Selected tmux pane {pane.target}")
        return True

    def capture_pane_tail(self, pane: PaneInfo, lines: int = 10) -> Optional[str]:
        """Visible pane text, or None when capture fails."""
        cmd = ["tmux"]
        if pane.socket_path:
            cmd += ["-S", pane.socket_path]
        cmd += ["capture-pane", "-p", "-t", pane.target, "-S", f"-{max(lines * 4, 40)}"]
        return self.run(cmd)

    # Sessions and clients

    def session_attach_states(self) -> dict[str, bool]:
        """tmux session name -> attached, merged across servers."""
        return self.attach_cache.get_or_compute("states", self._fetch_attach_states)

    def _fetch_attach_states(self) -> dict[str, bool]:
        states: dict[str, bool] = {}
        for output, _ in self._server_outputs(["list-sessions", "-F", ATTACH_FORMAT]):
            for line in output.splitlines():
                parts = line.split("|")
                if len(parts) != 2:
                    continue
                states[parts[0]] = states.get(parts[0], False) or parts[1] == "1"
        return states

    def is_session_attached(self, session_name: str) -> bool:
        return self.session_attach_states().get(session_name, False)

    def client_terminal(self, session_name: str) -> Optional[str]:
        """TERM_PROGRAM-style name of the terminal hosting a tmux session's client."""
        client_pid = None
        any_pid = None
        for output, _ in self._server_outputs(["list-clients", "-F", CLIENT_FORMAT]):
            for line in output.splitlines():
                parts = line.split("|")
                if not parts[0].strip().isdigit():
                    continue
                pid = int(parts[0])
                if any_pid is None:
                    any_pid = pid
                if len(parts) >= 2 and parts[1] == session_name:
                    client_pid = pid
                    break
            if client_pid is not None:
                break

        # tmux may share clients between sessions
        pid = client_pid if client_pid is not None else any_pid
        if pid is None:
            logger.debug(f"No tmux client found for session {session_name}")
            return None
        return self.terminal_cache.get_or_compute(pid, lambda: self.terminal_for_pid(pid))

    def terminal_for_pid(self, pid: int) -> Optional[str]:
        """Walk the parent process chain until a known terminal application."""
        visited = set()
        current = pid
        while current > 1 and current not in visited:
            visited.add(current)
            output = self.run(["ps", "-o", "ppid=,comm=", "-p", str(current)])
            if not output or not output.strip():
                break
            parts = output.strip().split(None, 1)
            if len(parts) < 2 or not parts[0].isdigit():
                break
            comm = parts[1].lower()
            for needle, term_program in TERMINAL_PROCESS_NAMES:
                if needle in comm:
                    return term_program
            current = int(parts[0])
        return None

    # Processes

    def is_process_running(self, name: str) -> bool:
        return self.run(["pgrep", "-x", name]) is not None

    def tty_for_pid(self, pid: int) -> Optional[str]:
        output = self.run(["ps", "-p", str(pid), "-o", "tty="])
        tty = (output or "").strip()
        if not tty or tty == "??" or tty == "?":
            return None
        return normalize_tty(tty)

    def cwd_for_pid(self, pid: int) -> Optional[str]:
        output = self.run(["lsof", "-a", "-p", str(pid), "-d", "cwd", "-Fn"])
        for line in (output or "").splitlines():
            if line.startswith("n") and len(line) > 1:
                return line[1:]
        return None

    def command_line(self, pid: int) -> Optional[str]:
        output = self.run(["ps", "-p", str(pid), "-o", "command="])
        return output.strip() if output else None

    def pids_by_name(self, name: str) -> list[int]:
        return _parse_pids(self.run(["pgrep", "-x", name]))

    def pids_by_pattern(self, pattern: str) -> list[int]:
        return _parse_pids(self.run(["pgrep", "-f", pattern]))


def _parse_pids(output: Optional[str]) -> list[int]:
    return [int(line) for line in (output or "").split() if line.isdigit()]
