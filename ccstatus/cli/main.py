"""Main entry point for the ccstatus CLI tool."""

import argparse
import sys
from typing import Optional

from .client import CCStatusClient
from . import commands
from ..protocol import ATTENTION_LEVELS, CCSB_EVENT_NAMES


def _engine_factory(config_path: Optional[str]):
    """Lazily build a local engine for when the server is unavailable."""
    def factory():
        from ..engine import StatusEngine
        from ..main import load_config

        return StatusEngine(load_config(config_path))
    return factory


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ccstatus",
        description="CC Status - track coding-agent sessions and focus their windows",
    )
    parser.add_argument("--config", help="Path to config.yaml (default: $CCSTATUS_CONFIG or ./config.yaml)")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # ccstatus hook <event> (payload on stdin)
    hook_parser = subparsers.add_parser("hook", help="Handle a hook event (JSON payload on stdin)")
    hook_parser.add_argument(
        "event_name",
        nargs="?",
        help="Hook event name (SessionStart, UserPromptSubmit, PreToolUse, PostToolUse, Notification, Stop, SessionEnd)",
    )

    # ccstatus emit
    emit_parser = subparsers.add_parser("emit", help="Emit a ccsb.v1 event")
    emit_parser.add_argument("--json", action="store_true", help="Read the JSON event from stdin")
    emit_parser.add_argument("--tool", help="Tool name (e.g. aider, terraform)")
    emit_parser.add_argument("--tool-version", help="Tool version")
    emit_parser.add_argument("--event", choices=CCSB_EVENT_NAMES, help="Event type")
    emit_parser.add_argument("--session-id", help="Session ID")
    emit_parser.add_argument("--cwd", help="Working directory (default: current directory)")
    emit_parser.add_argument("--tty", help="TTY device path (default: detected)")
    emit_parser.add_argument("--attention", choices=ATTENTION_LEVELS, help="Attention level")
    emit_parser.add_argument("--summary", help="Human-readable summary")

    # ccstatus codex-notify <json>
    codex_parser = subparsers.add_parser("codex-notify", help="Forward a Codex notify payload")
    codex_parser.add_argument("payload", help="JSON payload (Codex passes it as the last argument)")

    # ccstatus list
    list_parser = subparsers.add_parser("list", help="List active sessions")
    list_parser.add_argument("-j", "--json", action="store_true", help="Output as JSON")
    list_parser.add_argument("--with-tmux", action="store_true", help="Include tmux attach info")
    list_parser.add_argument("--offset", type=int, default=0, help="Offset for pagination (0-based)")
    list_parser.add_argument("--limit", type=int, help="Maximum number of sessions to return")

    # ccstatus focus
    focus_parser = subparsers.add_parser("focus", help="Focus the window hosting a session")
    selector = focus_parser.add_mutually_exclusive_group(required=True)
    selector.add_argument("-i", "--index", type=int, help="Session index (0-based)")
    selector.add_argument("--id", dest="session_id", help="Session ID (e.g. 'abc123:/dev/ttys001')")
    selector.add_argument("--waiting", action="store_true", help="First waiting session (red first)")

    # ccstatus ack <id>
    ack_parser = subparsers.add_parser("ack", help="Acknowledge a waiting session")
    ack_parser.add_argument("session_id", help="Session ID")

    # ccstatus serve
    subparsers.add_parser("serve", help="Run the server")

    return parser


def main(argv: Optional[list[str]] = None):
    """Main entry point for ccstatus CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    client = CCStatusClient()
    engine_factory = _engine_factory(args.config)

    if args.command == "hook":
        sys.exit(commands.cmd_hook(client, engine_factory, args.event_name, sys.stdin.read()))
    elif args.command == "emit":
        if args.json:
            payload = commands.read_json(sys.stdin.read())
        else:
            missing = [flag for flag, value in (("--tool", args.tool), ("--event", args.event),
                                                ("--session-id", args.session_id)) if not value]
            if missing:
                parser.error(f"emit requires {', '.join(missing)} (or --json)")
            payload = commands.build_ccsb_event(
                args.tool, args.event, args.session_id,
                cwd=args.cwd, tty=args.tty, attention=args.attention,
                summary=args.summary, tool_version=args.tool_version,
            )
        sys.exit(commands.cmd_emit(client, engine_factory, payload))
    elif args.command == "codex-notify":
        sys.exit(commands.cmd_codex_notify(client, args.payload))
    elif args.command == "list":
        sys.exit(commands.cmd_list(client, engine_factory, args.json, args.with_tmux, args.offset, args.limit))
    elif args.command == "focus":
        sys.exit(commands.cmd_focus(client, engine_factory, args.index, args.session_id, args.waiting))
    elif args.command == "ack":
        sys.exit(commands.cmd_ack(client, engine_factory, args.session_id))
    elif args.command == "serve":
        sys.exit(commands.cmd_serve(args.config))
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
