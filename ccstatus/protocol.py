"""Decoders for the hook, ccsb.v1 and Codex notify event shapes, and the status transition rule."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from .models import Artifact, Session, SessionStatus, WaitingReason, session_key

logger = logging.getLogger(__name__)

CCSB_PROTO = "ccsb.v1"
CODEX_TURN_COMPLETE = "agent-turn-complete"

HOOK_EVENT_NAMES = (
    "SessionStart",
    "UserPromptSubmit",
    "PreToolUse",
    "PostToolUse",
    "Notification",
    "Stop",
    "SessionEnd",
)

CCSB_EVENT_NAMES = (
    "session.start",
    "session.stop",
    "session.waiting",
    "session.running",
    "artifact.link",
)

ATTENTION_LEVELS = ("green", "yellow", "red", "none")

# Substrings that mark a Codex notify payload as an approval request.
_APPROVAL_TOKENS = ("permission_prompt", "approval")


class EventDecodeError(ValueError):
    """Raised when an inbound event cannot be decoded."""


class Transition(Enum):
    """Effect of an event on a session's status."""
    RUNNING = "running"
    WAITING_STOP = "waiting_stop"
    WAITING_PERMISSION = "waiting_permission"
    TOOL_START = "tool_start"
    TOOL_END = "tool_end"
    REMOVE = "remove"
    UNCHANGED = "unchanged"


@dataclass
class SessionEvent:
    """A decoded event in the shape the session store ingests."""
    session_id: str
    cwd: str
    transition: Transition
    name: str  # Original event name, for logging
    tty: Optional[str] = None
    is_session_start: bool = False
    term_program: Optional[str] = None
    actual_term_program: Optional[str] = None
    editor_bundle_id: Optional[str] = None
    editor_pid: Optional[int] = None
    tool_name: Optional[str] = None
    summary: Optional[str] = None
    artifact: Optional[Artifact] = None

    @property
    def key(self) -> str:
        return session_key(self.session_id, self.tty)


@dataclass
class CodexNotifyEvent:
    """Codex `notify` payload."""
    type: str
    cwd: str
    thread_id: Optional[str] = None
    payload: dict = field(default_factory=dict)

    @property
    def marks_permission(self) -> bool:
        return payload_marks_permission(self.payload)


def parse_json(raw: Union[str, bytes]) -> dict:
    """Parse a raw request body into a JSON object."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise EventDecodeError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise EventDecodeError("Event must be a JSON object")
    return data


def _require_str(payload: dict, name: str) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or not value:
        raise EventDecodeError(f"Missing required field: {name}")
    return value


def _optional_str(payload: dict, name: str) -> Optional[str]:
    value = payload.get(name)
    if isinstance(value, str) and value:
        return value
    return None


def _optional_int(payload: dict, name: str) -> Optional[int]:
    value = payload.get(name)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def is_permission_notification(notification_type: Optional[str], message: Optional[str]) -> bool:
    """Classify a Notification hook as a permission/choice prompt."""
    if notification_type:
        return notification_type == "permission_prompt"
    # Older CLIs send no notification_type
    return bool(message) and "permission" in message.lower()


def hook_transition(hook_event_name: str, notification_type: Optional[str] = None,
                    message: Optional[str] = None) -> Transition:
    if hook_event_name == "SessionEnd":
        return Transition.REMOVE
    if hook_event_name == "Stop":
        return Transition.WAITING_STOP
    if hook_event_name == "Notification":
        if is_permission_notification(notification_type, message):
            return Transition.WAITING_PERMISSION
        return Transition.UNCHANGED
    if hook_event_name == "PreToolUse":
        return Transition.TOOL_START
    if hook_event_name == "PostToolUse":
        return Transition.TOOL_END
    if hook_event_name in ("UserPromptSubmit", "SessionStart"):
        return Transition.RUNNING
    return Transition.UNCHANGED


def ccsb_transition(event: str, attention_level: Optional[str] = None,
                    attention_reason: Optional[str] = None) -> Transition:
    if event == "session.stop":
        return Transition.REMOVE
    if event == "session.waiting":
        if attention_level == "red" or attention_reason == "permission_prompt":
            return Transition.WAITING_PERMISSION
        return Transition.WAITING_STOP
    if event in ("session.start", "session.running"):
        return Transition.RUNNING
    return Transition.UNCHANGED


def decode_hook(payload: dict) -> SessionEvent:
    """Decode a legacy hook payload."""
    session_id = _require_str(payload, "session_id")
    cwd = _require_str(payload, "cwd")
    hook_event_name = _require_str(payload, "hook_event_name")
    if hook_event_name not in HOOK_EVENT_NAMES:
        logger.debug(f"Unrecognized hook event {hook_event_name} for {session_id}")

    return SessionEvent(
        session_id=session_id,
        cwd=cwd,
        transition=hook_transition(
            hook_event_name,
            _optional_str(payload, "notification_type"),
            _optional_str(payload, "message"),
        ),
        name=hook_event_name,
        tty=_optional_str(payload, "tty"),
        is_session_start=hook_event_name == "SessionStart",
        term_program=_optional_str(payload, "term_program"),
        actual_term_program=_optional_str(payload, "actual_term_program"),
        editor_bundle_id=_optional_str(payload, "editor_bundle_id"),
        editor_pid=_optional_int(payload, "editor_pid"),
    )


def decode_ccsb(payload: dict) -> SessionEvent:
    """Decode a ccsb.v1 structured event."""
    proto = payload.get("proto")
    if proto != CCSB_PROTO:
        raise EventDecodeError(f"Unsupported protocol: {proto}")

    event = _require_str(payload, "event")
    session_id = _require_str(payload, "session_id")
    _require_str(payload, "timestamp")

    tool = payload.get("tool")
    if not isinstance(tool, dict) or not isinstance(tool.get("name"), str):
        raise EventDecodeError("Missing required field: tool.name")

    attention = payload.get("attention")
    if attention is None:
        attention = {}
    if not isinstance(attention, dict):
        raise EventDecodeError("attention must be an object")
    level = attention.get("level")
    if level is not None and level not in ATTENTION_LEVELS:
        raise EventDecodeError(f"Invalid attention level: {level}")

    artifact = None
    artifact_data = payload.get("artifact")
    if event == "artifact.link":
        if not isinstance(artifact_data, dict) or not artifact_data.get("path"):
            raise EventDecodeError("artifact.link requires artifact.path")
        artifact = Artifact.from_dict(artifact_data)

    if event not in CCSB_EVENT_NAMES:
        logger.debug(f"Unrecognized ccsb event {event} for {session_id}")

    return SessionEvent(
        session_id=session_id,
        cwd=_optional_str(payload, "cwd") or "",
        transition=ccsb_transition(event, level, attention.get("reason")),
        name=event,
        tty=_optional_str(payload, "tty"),
        is_session_start=event == "session.start",
        term_program=_optional_str(payload, "term_program"),
        actual_term_program=_optional_str(payload, "actual_term_program"),
        editor_bundle_id=_optional_str(payload, "editor_bundle_id"),
        editor_pid=_optional_int(payload, "editor_pid"),
        tool_name=tool["name"],
        summary=_optional_str(payload, "summary"),
        artifact=artifact,
    )


def decode_event(payload: dict) -> SessionEvent:
    """Decode either event shape; structured events carry a `proto` field."""
    if "proto" in payload:
        return decode_ccsb(payload)
    return decode_hook(payload)


def payload_marks_permission(value: Any) -> bool:
    """Search a notify payload, including nested dicts and lists, for approval tokens."""
    if isinstance(value, str):
        lowered = value.lower()
        return any(token in lowered for token in _APPROVAL_TOKENS)
    if isinstance(value, dict):
        return any(payload_marks_permission(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(payload_marks_permission(v) for v in value)
    return False


def decode_codex_notify(payload: dict) -> CodexNotifyEvent:
    """Decode a Codex notify payload."""
    event_type = _require_str(payload, "type")
    cwd = _require_str(payload, "cwd")
    return CodexNotifyEvent(
        type=event_type,
        cwd=cwd,
        thread_id=_optional_str(payload, "thread-id"),
        payload=payload,
    )


def apply_transition(session: Session, transition: Transition, now: Optional[datetime] = None) -> None:
    """
    Apply a status transition to a session in place.

    REMOVE is handled by the store and leaves the session untouched here.
    Returning to RUNNING clears the acknowledgement.
    """
    if transition == Transition.RUNNING:
        session.status = SessionStatus.RUNNING
        session.waiting_reason = None
        session.is_tool_running = False
    elif transition == Transition.TOOL_START:
        session.status = SessionStatus.RUNNING
        session.waiting_reason = None
        session.is_tool_running = True
    elif transition == Transition.TOOL_END:
        session.is_tool_running = False
    elif transition == Transition.WAITING_STOP:
        session.status = SessionStatus.WAITING_INPUT
        session.waiting_reason = WaitingReason.STOP
        session.is_tool_running = False
    elif transition == Transition.WAITING_PERMISSION:
        session.status = SessionStatus.WAITING_INPUT
        session.waiting_reason = WaitingReason.PERMISSION_PROMPT
        session.is_tool_running = False

    if session.status == SessionStatus.RUNNING:
        session.is_acknowledged = False
    session.updated_at = now or datetime.now()
