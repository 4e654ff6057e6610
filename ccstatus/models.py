"""Data models for CC Status."""

import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class SessionStatus(Enum):
    """Session lifecycle status."""
    RUNNING = "running"              # Agent is working
    WAITING_INPUT = "waiting_input"  # Blocked on the user
    STOPPED = "stopped"              # Ended


class WaitingReason(Enum):
    """Why a session is waiting for input."""
    PERMISSION_PROMPT = "permission_prompt"  # Tool approval / choice prompt (red)
    STOP = "stop"                            # Turn finished (yellow)
    UNKNOWN = "unknown"                      # Legacy data, treated as stop

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["WaitingReason"]:
        """Decode a persisted value; unrecognized strings map to UNKNOWN."""
        if value is None:
            return None
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


# Bundle identifiers of editors that host an integrated terminal.
KNOWN_EDITORS: dict[str, str] = {
    "com.microsoft.VSCode": "VS Code",
    "com.microsoft.VSCodeInsiders": "VS Code Insiders",
    "com.todesktop.230313mzl4w4u92": "Cursor",
    "co.anysphere.cursor.nightly": "Cursor Nightly",
    "com.exafunction.windsurf": "Windsurf",
    "com.vscodium": "VSCodium",
    "com.positron.positron": "Positron",
    "com.byte.trae": "Trae",
    "dev.zed.Zed": "Zed",
}


def editor_display_name(bundle_id: str) -> str:
    return KNOWN_EDITORS.get(bundle_id, "Editor")


def home_relative(path: str) -> str:
    """Abbreviate the home directory to `~`."""
    home = os.path.expanduser("~")
    if path == home or path.startswith(home + "/"):
        return "~" + path[len(home):]
    return path


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass
class Artifact:
    """An artifact linked to a session by a structured event."""
    type: str
    path: str
    title: Optional[str] = None

    def to_dict(self) -> dict:
        return {"type": self.type, "path": self.path, "title": self.title}

    @classmethod
    def from_dict(cls, data: dict) -> "Artifact":
        return cls(
            type=data.get("type", "file"),
            path=data.get("path", ""),
            title=data.get("title"),
        )


@dataclass
class Session:
    """A tracked coding-agent CLI session."""
    session_id: str
    cwd: str
    tty: Optional[str] = None
    status: SessionStatus = SessionStatus.RUNNING
    waiting_reason: Optional[WaitingReason] = None  # Only meaningful while WAITING_INPUT
    is_tool_running: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    display_order: Optional[int] = None  # Assigned once, inherited across tty replacement
    is_acknowledged: bool = False
    is_disambiguated: bool = False  # Sticky once set
    # Environment hints (first value wins)
    term_program: Optional[str] = None
    actual_term_program: Optional[str] = None  # Terminal hosting tmux
    editor_bundle_id: Optional[str] = None
    editor_pid: Optional[int] = None
    ghostty_tab_index: Optional[int] = None
    # Structured protocol extras
    tool_name: str = "claude"
    summary: Optional[str] = None
    artifact: Optional[Artifact] = None

    @property
    def key(self) -> str:
        """Identity key: session_id, qualified by tty when one is known."""
        return session_key(self.session_id, self.tty)

    @property
    def project_name(self) -> str:
        return os.path.basename(self.cwd.rstrip("/")) or self.cwd

    @property
    def parent_and_project(self) -> str:
        trimmed = self.cwd.rstrip("/")
        parent = os.path.basename(os.path.dirname(trimmed))
        return f"{parent}/{self.project_name}" if parent else self.project_name

    @property
    def display_name(self) -> str:
        return self.parent_and_project if self.is_disambiguated else self.project_name

    @property
    def search_terms(self) -> list[str]:
        """Window-title search terms, most specific first."""
        terms = [self.parent_and_project, self.project_name]
        return list(dict.fromkeys(terms))

    @property
    def display_path(self) -> str:
        return home_relative(self.cwd)

    @property
    def is_waiting(self) -> bool:
        return self.status == SessionStatus.WAITING_INPUT

    @property
    def is_permission_prompt(self) -> bool:
        """Red attention; UNKNOWN reasons never count as red."""
        return self.is_waiting and self.waiting_reason == WaitingReason.PERMISSION_PROMPT

    @property
    def has_unknown_editor(self) -> bool:
        return self.editor_bundle_id is not None and self.editor_bundle_id not in KNOWN_EDITORS

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "cwd": self.cwd,
            "tty": self.tty,
            "status": self.status.value,
            "waiting_reason": self.waiting_reason.value if self.waiting_reason else None,
            "is_tool_running": self.is_tool_running,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "display_order": self.display_order,
            "is_acknowledged": self.is_acknowledged,
            "is_disambiguated": self.is_disambiguated,
            "term_program": self.term_program,
            "actual_term_program": self.actual_term_program,
            "editor_bundle_id": self.editor_bundle_id,
            "editor_pid": self.editor_pid,
            "ghostty_tab_index": self.ghostty_tab_index,
            "tool_name": self.tool_name,
            "summary": self.summary,
            "artifact": self.artifact.to_dict() if self.artifact else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        """Create session from dictionary."""
        artifact_data = data.get("artifact")
        return cls(
            session_id=data["session_id"],
            cwd=data["cwd"],
            tty=data.get("tty"),
            status=SessionStatus(data.get("status", "running")),
            waiting_reason=WaitingReason.parse(data.get("waiting_reason")),
            is_tool_running=data.get("is_tool_running", False),
            created_at=_parse_datetime(data.get("created_at")) or datetime.now(),
            updated_at=_parse_datetime(data.get("updated_at")) or datetime.now(),
            display_order=data.get("display_order"),
            is_acknowledged=data.get("is_acknowledged", False),
            is_disambiguated=data.get("is_disambiguated", False),
            term_program=data.get("term_program"),
            actual_term_program=data.get("actual_term_program"),
            editor_bundle_id=data.get("editor_bundle_id"),
            editor_pid=data.get("editor_pid"),
            ghostty_tab_index=data.get("ghostty_tab_index"),
            tool_name=data.get("tool_name", "claude"),
            summary=data.get("summary"),
            artifact=Artifact.from_dict(artifact_data) if artifact_data else None,
        )


def session_key(session_id: str, tty: Optional[str]) -> str:
    if tty:
        return f"{session_id}:{tty}"
    return session_id


@dataclass
class StoreData:
    """Persisted store document."""
    sessions: dict[str, Session] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=datetime.now)

    def active_sessions(self, timeout_minutes: int = 60, now: Optional[datetime] = None) -> list[Session]:
        """
        Sessions to show: not stopped, not timed out, not hosted by an unknown editor.

        Args:
            timeout_minutes: Drop sessions not updated within this window (0 = never)
            now: Reference time (default: datetime.now())

        Returns:
            Sessions ordered by (display_order, created_at)
        """
        now = now or datetime.now()
        result = []
        for session in self.sessions.values():
            if session.status == SessionStatus.STOPPED:
                continue
            if session.has_unknown_editor:
                continue
            if timeout_minutes > 0:
                age = (now - session.updated_at).total_seconds()
                if age > timeout_minutes * 60:
                    continue
            result.append(session)
        result.sort(key=lambda s: (
            s.display_order if s.display_order is not None else sys.maxsize,
            s.created_at,
        ))
        return result

    def to_dict(self) -> dict:
        return {
            "sessions": {key: s.to_dict() for key, s in self.sessions.items()},
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StoreData":
        sessions = {
            key: Session.from_dict(value)
            for key, value in (data.get("sessions") or {}).items()
        }
        return cls(
            sessions=sessions,
            updated_at=_parse_datetime(data.get("updated_at")) or datetime.now(),
        )


@dataclass
class CodexSessionStatus:
    """In-memory lifecycle state for an observed Codex session, keyed by cwd."""
    status: SessionStatus = SessionStatus.RUNNING
    waiting_reason: Optional[WaitingReason] = None
    last_event_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    is_synthetic_stopped: bool = False
    pane_hash: Optional[str] = None
    thread_id: Optional[str] = None
    is_acknowledged: bool = False


@dataclass
class CodexSession:
    """A Codex process discovered from the process table."""
    pid: int
    cwd: str
    created_at: datetime = field(default_factory=datetime.now)
    session_id: Optional[str] = None
    tty: Optional[str] = None
    tmux_session: Optional[str] = None
    tmux_window: Optional[str] = None
    tmux_pane: Optional[str] = None
    tmux_socket_path: Optional[str] = None
    terminal_app: Optional[str] = None  # Terminal hosting the tmux client
    state: Optional[CodexSessionStatus] = None  # Inferred lifecycle, attached by the app

    # Codex reports no editor or TERM_PROGRAM hints
    term_program = None
    editor_bundle_id = None
    editor_pid = None
    ghostty_tab_index = None

    @property
    def id(self) -> str:
        # Placeholders for exited processes have no pid
        return f"codex:{self.pid}" if self.pid else f"codex:{self.cwd}"

    @property
    def key(self) -> str:
        return self.id

    @property
    def actual_term_program(self) -> Optional[str]:
        return self.terminal_app

    @property
    def project_name(self) -> str:
        return os.path.basename(self.cwd.rstrip("/")) or self.cwd

    @property
    def display_name(self) -> str:
        return self.project_name

    @property
    def display_path(self) -> str:
        return home_relative(self.cwd)

    @property
    def search_terms(self) -> list[str]:
        return [self.project_name]

    @property
    def has_tmux(self) -> bool:
        return self.tmux_session is not None

    @property
    def status(self) -> SessionStatus:
        return self.state.status if self.state else SessionStatus.RUNNING

    @property
    def waiting_reason(self) -> Optional[WaitingReason]:
        return self.state.waiting_reason if self.state else None

    @property
    def is_acknowledged(self) -> bool:
        return self.state.is_acknowledged if self.state else False

    @property
    def updated_at(self) -> datetime:
        if self.state and self.state.last_event_at:
            return self.state.last_event_at
        return self.created_at

    @property
    def is_waiting(self) -> bool:
        return self.status == SessionStatus.WAITING_INPUT

    @property
    def is_permission_prompt(self) -> bool:
        return self.is_waiting and self.waiting_reason == WaitingReason.PERMISSION_PROMPT


@dataclass
class PaneInfo:
    """tmux pane location for a tty."""
    session: str
    window: str
    pane: str
    window_name: str = ""
    socket_path: Optional[str] = None

    @property
    def target(self) -> str:
        return f"{self.session}:{self.window}.{self.pane}"


class TerminalKind(Enum):
    """Terminal applications that can host a session."""
    GHOSTTY = "ghostty"
    ITERM2 = "iterm2"
    APPLE_TERMINAL = "apple_terminal"


TERMINAL_DISPLAY_NAMES: dict[TerminalKind, str] = {
    TerminalKind.GHOSTTY: "Ghostty",
    TerminalKind.ITERM2: "iTerm2",
    TerminalKind.APPLE_TERMINAL: "Terminal",
}


@dataclass(frozen=True)
class EditorEnvironment:
    """Session runs in an editor's integrated terminal."""
    bundle_id: str
    pid: Optional[int] = None
    has_tmux: bool = False
    tmux_session_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = editor_display_name(self.bundle_id)
        return f"{name}/tmux" if self.has_tmux else name


@dataclass(frozen=True)
class TerminalEnvironment:
    """Session runs in a terminal emulator window."""
    kind: TerminalKind
    has_tmux: bool = False
    tab_index: Optional[int] = None
    tmux_session_name: Optional[str] = None

    @property
    def display_name(self) -> str:
        name = TERMINAL_DISPLAY_NAMES[self.kind]
        return f"{name}/tmux" if self.has_tmux else name


@dataclass(frozen=True)
class TmuxOnlyEnvironment:
    """Session is in tmux but no hosting terminal window was identified."""
    session_name: str

    @property
    def display_name(self) -> str:
        return "tmux"


@dataclass(frozen=True)
class UnknownEnvironment:
    """Nothing identified."""

    @property
    def display_name(self) -> str:
        return "Unknown"


FocusEnvironment = Union[EditorEnvironment, TerminalEnvironment, TmuxOnlyEnvironment, UnknownEnvironment]


class FocusOutcome(Enum):
    """Focus dispatch outcome."""
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"  # Pane selected but window not raised
    NOT_FOUND = "not_found"
    NOT_RUNNING = "not_running"          # Target app not running; never launched


@dataclass(frozen=True)
class FocusResult:
    """Result of a focus request."""
    outcome: FocusOutcome
    detail: Optional[str] = None  # Reason for partial success, hint for not found

    @classmethod
    def success(cls) -> "FocusResult":
        return cls(FocusOutcome.SUCCESS)

    @classmethod
    def partial(cls, reason: str) -> "FocusResult":
        return cls(FocusOutcome.PARTIAL_SUCCESS, reason)

    @classmethod
    def not_found(cls, hint: str) -> "FocusResult":
        return cls(FocusOutcome.NOT_FOUND, hint)

    @classmethod
    def not_running(cls) -> "FocusResult":
        return cls(FocusOutcome.NOT_RUNNING)

    @property
    def acted_upon(self) -> bool:
        """True when something was focused (success or partial)."""
        return self.outcome in (FocusOutcome.SUCCESS, FocusOutcome.PARTIAL_SUCCESS)

    def describe(self) -> str:
        if self.outcome == FocusOutcome.SUCCESS:
            return "success"
        if self.outcome == FocusOutcome.PARTIAL_SUCCESS:
            return f"partial: {self.detail}"
        if self.outcome == FocusOutcome.NOT_FOUND:
            return f"not found: {self.detail}"
        return "terminal not running"

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "detail": self.detail,
            "description": self.describe(),
        }
