"""Command implementations for the ccstatus CLI."""

import json
import os
import sys
from datetime import datetime, timezone
from typing import Callable, Optional

from .client import CCStatusClient
from ..engine import StatusEngine, pick_waiting
from ..environment_hints import assert_cc_title, detect_tty, enrich_hook_payload
from ..models import FocusOutcome
from ..process_probe import ProcessProbe
from ..protocol import CCSB_PROTO, EventDecodeError, decode_ccsb, decode_codex_notify, decode_hook, parse_json

EngineFactory = Callable[[], StatusEngine]

STATUS_SYMBOLS = {
    "running": "●",
    "waiting_input": "◐",
    "stopped": "✓",
}

STATUS_LABELS = {
    "running": "Running",
    "waiting_input": "Waiting",
    "stopped": "Done",
}


def _error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)


def read_json(text: str) -> Optional[dict]:
    if not text.strip():
        _error("No input received from stdin")
        return None
    try:
        return parse_json(text)
    except EventDecodeError as e:
        _error(str(e))
        return None


def cmd_hook(
    client: CCStatusClient,
    engine_factory: EngineFactory,
    event_name: Optional[str],
    stdin_text: str,
    probe: Optional[ProcessProbe] = None,
) -> int:
    """
    Handle a hook event piped in by the agent CLI.

    Exit codes:
        0: Event ingested
        1: Malformed event (dropped)
    """
    payload = read_json(stdin_text)
    if payload is None:
        return 1
    if event_name and not payload.get("hook_event_name"):
        payload["hook_event_name"] = event_name

    probe = probe or ProcessProbe()
    payload = enrich_hook_payload(payload, probe)
    try:
        event = decode_hook(payload)
    except EventDecodeError as e:
        _error(str(e))
        return 1

    data, success, unavailable = client.post_hook(payload)
    if unavailable:
        # Server not running: write the store directly; the server picks it up on its next poll
        session = engine_factory().store.ingest(event)
        removed = session is None
    elif not success:
        _error((data or {}).get("detail", "Event rejected by server"))
        return 1
    else:
        removed = data.get("removed", False)

    if not removed:
        assert_cc_title(probe, event.cwd, event.tty, event.editor_bundle_id)
    return 0


def build_ccsb_event(
    tool: Optional[str],
    event: Optional[str],
    session_id: Optional[str],
    cwd: Optional[str] = None,
    tty: Optional[str] = None,
    attention: Optional[str] = None,
    summary: Optional[str] = None,
    tool_version: Optional[str] = None,
) -> dict:
    """Assemble a ccsb.v1 event from command-line options."""
    payload = {
        "proto": CCSB_PROTO,
        "event": event,
        "session_id": session_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "tool": {"name": tool},
        "cwd": cwd or os.getcwd(),
    }
    if tool_version:
        payload["tool"]["version"] = tool_version
    if tty:
        payload["tty"] = tty
    if attention:
        payload["attention"] = {"level": attention}
    if summary:
        payload["summary"] = summary
    return payload


def cmd_emit(
    client: CCStatusClient,
    engine_factory: EngineFactory,
    payload: Optional[dict],
    probe: Optional[ProcessProbe] = None,
) -> int:
    """
    Emit a ccsb.v1 event.

    Exit codes:
        0: Event ingested
        1: Malformed event (dropped)
    """
    if payload is None:
        return 1
    if not payload.get("tty"):
        tty = detect_tty(probe or ProcessProbe(), os.environ)
        if tty:
            payload["tty"] = tty
    try:
        event = decode_ccsb(payload)
    except EventDecodeError as e:
        _error(str(e))
        return 1

    data, success, unavailable = client.post_event(payload)
    if unavailable:
        engine_factory().store.ingest(event)
        return 0
    if not success:
        _error((data or {}).get("detail", "Event rejected by server"))
        return 1
    return 0


def cmd_codex_notify(client: CCStatusClient, raw: str) -> int:
    """
    Forward a Codex `notify` payload (passed as the last argument) to the server.

    Codex state lives only in the server, so nothing is recorded when it is down.
    """
    try:
        payload = parse_json(raw)
        decode_codex_notify(payload)
    except EventDecodeError as e:
        _error(str(e))
        return 1

    data, success, unavailable = client.post_codex_notify(payload)
    if unavailable:
        return 0
    if not success:
        _error((data or {}).get("detail", "Event rejected by server"))
        return 1
    return 0


def format_entry(entry: dict, with_tmux: bool = False) -> str:
    """Text form of one listing entry."""
    status = entry["status"]
    lines = [f"{STATUS_SYMBOLS.get(status, '?')} {entry['project']}"]
    if not with_tmux:
        return lines[0]

    lines.append(f"   Path: {entry['path']}")
    lines.append(f"   Status: {STATUS_LABELS.get(status, status)}")
    if status == "waiting_input":
        if entry.get("waiting_reason"):
            lines.append(f"   Reason: {entry['waiting_reason']}")
        if entry.get("waiting_time"):
            lines.append(f"   Waiting: {entry['waiting_time']}")
    tmux = entry.get("tmux")
    if tmux:
        lines.append(f"   Tmux: {tmux['target']}")
        lines.append(f"   Attach: {tmux['attach_command']}")
    else:
        lines.append("   Tmux: N/A (not in tmux)")
    lines.append("")
    return "\n".join(lines)


def cmd_list(
    client: CCStatusClient,
    engine_factory: EngineFactory,
    as_json: bool = False,
    with_tmux: bool = False,
    offset: int = 0,
    limit: Optional[int] = None,
) -> int:
    """
    List active sessions.

    Exit codes:
        0: Success (including no sessions)
    """
    listing = client.list_sessions(offset=offset, limit=limit, with_tmux=with_tmux)
    if listing is None:
        listing = engine_factory().list_payload(offset=offset, limit=limit, with_tmux=with_tmux)

    if as_json:
        print(json.dumps(listing, sort_keys=True))
        return 0

    if not listing["sessions"]:
        print("No active sessions")
        return 0
    for entry in listing["sessions"]:
        print(format_entry(entry, with_tmux))
    return 0


def _print_focus(project: str, outcome: str, detail: Optional[str]) -> int:
    if outcome == FocusOutcome.SUCCESS.value:
        print(f"Focused: {project}")
        return 0
    if outcome == FocusOutcome.PARTIAL_SUCCESS.value:
        print(f"Partial: {project} ({detail})")
        return 0
    if outcome == FocusOutcome.NOT_FOUND.value:
        _error(f"Not found: {detail}")
        return 1
    _error("Terminal is not running")
    return 1


def _local_focus(engine: StatusEngine, index: Optional[int], session_id: Optional[str], waiting: bool) -> int:
    targets = engine.list_targets()
    if not targets:
        _error("No active sessions")
        return 1

    if waiting:
        target = pick_waiting(targets)
        if target is None:
            _error("No waiting sessions")
            return 1
    elif index is not None:
        if not 0 <= index < len(targets):
            _error(f"Index {index} out of range (0-{len(targets) - 1})")
            return 1
        target = targets[index]
    else:
        target = next((t for t in targets if t.key == session_id), None)
        if target is None:
            _error(f"Session not found: {session_id}")
            return 1

    result = engine.focus(target)
    return _print_focus(target.project_name, result.outcome.value, result.detail)


def cmd_focus(
    client: CCStatusClient,
    engine_factory: EngineFactory,
    index: Optional[int] = None,
    session_id: Optional[str] = None,
    waiting: bool = False,
) -> int:
    """
    Focus the window hosting a session; the session is acknowledged when focused.

    Exit codes:
        0: Focused (fully or partially)
        1: Session not found, or focus failed
        2: Invalid selection
    """
    if sum([index is not None, session_id is not None, waiting]) != 1:
        _error("Specify exactly one of --index, --id, --waiting")
        return 2

    data, success, unavailable = client.focus(index=index, session_id=session_id, waiting=waiting)
    if unavailable:
        return _local_focus(engine_factory(), index, session_id, waiting)
    if not success:
        _error((data or {}).get("detail", "Focus request failed"))
        return 1
    return _print_focus(data["project"], data["outcome"], data.get("detail"))


def cmd_ack(client: CCStatusClient, engine_factory: EngineFactory, session_id: str) -> int:
    """
    Acknowledge (mark as seen) a waiting session.

    Exit codes:
        0: Acknowledged
        1: Session not found
    """
    data, success, unavailable = client.acknowledge(session_id)
    if unavailable:
        engine = engine_factory()
        if engine.find(session_id) is None:
            _error(f"Session not found: {session_id}")
            return 1
        engine.acknowledge(session_id)
    elif not success:
        _error((data or {}).get("detail", f"Session not found: {session_id}"))
        return 1
    print(f"Acknowledged: {session_id}")
    return 0


def cmd_serve(config_path: Optional[str] = None) -> int:
    """Run the server in the foreground."""
    from ..main import run

    run(config_path)
    return 0
