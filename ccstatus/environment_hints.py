"""
Environment hints gathered by the hook process before an event is ingested.

The hook runs as a child of the agent CLI, so its own ancestry tells us the
controlling tty, the terminal program and any hosting editor.
"""

import logging
import os
import plistlib
from pathlib import Path
from typing import Mapping, Optional

from .backends import cc_title, write_tty_title
from .process_probe import ProcessProbe, normalize_tty

logger = logging.getLogger(__name__)

MAX_TTY_ANCESTORS = 5
MAX_EDITOR_ANCESTORS = 60

# Reaching one of these first means the session is terminal-hosted
TERMINAL_BUNDLE_IDS = ("com.mitchellh.ghostty", "com.googlecode.iterm2", "com.apple.Terminal")


def detect_tty(probe: ProcessProbe, environ: Mapping[str, str], start_pid: Optional[int] = None) -> Optional[str]:
    """Controlling tty of the nearest ancestor that has one, else the tmux pane tty."""
    pid = start_pid if start_pid is not None else os.getppid()
    for _ in range(MAX_TTY_ANCESTORS):
        tty = probe.tty_for_pid(pid)
        if tty:
            return tty
        parent = _parent_pid(probe, pid)
        if parent is None:
            break
        pid = parent

    if environ.get("TMUX"):
        output = (probe.run(["tmux", "display-message", "-p", "#{pane_tty}"]) or "").strip()
        if output.startswith("/dev/"):
            return normalize_tty(output)
    return None


def _parent_pid(probe: ProcessProbe, pid: int) -> Optional[int]:
    output = (probe.run(["ps", "-o", "ppid=", "-p", str(pid)]) or "").strip()
    if not output.isdigit():
        return None
    parent = int(output)
    return parent if parent > 1 else None


def app_bundle_path(executable: str) -> Optional[str]:
    """`/Applications/Cursor.app/Contents/MacOS/Cursor` -> `/Applications/Cursor.app`."""
    marker = executable.find(".app/")
    if marker < 0:
        return None
    return executable[:marker + len(".app")]


def bundle_identifier(app_path: str) -> Optional[str]:
    info_plist = Path(app_path) / "Contents" / "Info.plist"
    try:
        with open(info_plist, "rb") as f:
            info = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError) as e:
        logger.debug(f"No readable Info.plist in {app_path}: {e}")
        return None
    bundle_id = info.get("CFBundleIdentifier")
    return bundle_id if isinstance(bundle_id, str) else None


def detect_editor(probe: ProcessProbe, start_pid: Optional[int] = None) -> Optional[tuple[str, int]]:
    """
    Walk the parent chain looking for an executable inside a `.app` bundle.

    VS Code forks all report TERM_PROGRAM=vscode, so the bundle id of the
    hosting application is the only reliable identity.

    Returns:
        (bundle_id, pid) of the first ancestor app, or None
    """
    pid = start_pid if start_pid is not None else os.getpid()
    for _ in range(MAX_EDITOR_ANCESTORS):
        parent = _parent_pid(probe, pid)
        if parent is None:
            return None
        pid = parent
        executable = (probe.run(["ps", "-o", "comm=", "-p", str(pid)]) or "").strip()
        app_path = app_bundle_path(executable)
        if not app_path:
            continue
        bundle_id = bundle_identifier(app_path)
        if bundle_id in TERMINAL_BUNDLE_IDS:
            return None
        if bundle_id:
            logger.debug(f"Found hosting app {bundle_id} (pid {pid}) at {app_path}")
            return bundle_id, pid
    return None


def enrich_hook_payload(payload: dict, probe: ProcessProbe, environ: Optional[Mapping[str, str]] = None) -> dict:
    """
    Fill in tty, terminal and editor hints the agent CLI does not send.

    Values already present in the payload are kept.
    """
    environ = os.environ if environ is None else environ
    enriched = dict(payload)

    if not enriched.get("tty"):
        enriched["tty"] = detect_tty(probe, environ)
    if not enriched.get("term_program") and environ.get("TERM_PROGRAM"):
        enriched["term_program"] = environ["TERM_PROGRAM"]

    # Inside tmux the real terminal is the one hosting the tmux client
    if (enriched.get("term_program") or "").lower() == "tmux" and enriched.get("tty"):
        pane = probe.pane_for_tty(enriched["tty"])
        if pane:
            terminal = probe.client_terminal(pane.session)
            if terminal:
                enriched["actual_term_program"] = terminal

    if not enriched.get("editor_bundle_id"):
        editor = detect_editor(probe)
        if editor:
            enriched["editor_bundle_id"], enriched["editor_pid"] = editor

    return {k: v for k, v in enriched.items() if v is not None}


def assert_cc_title(probe: ProcessProbe, cwd: str, tty: Optional[str], editor_bundle_id: Optional[str] = None) -> bool:
    """
    Write the `[CC] project • ttyNNN` title for plain terminal sessions.

    Editor-hosted and tmux sessions are skipped; their titles belong to the
    editor or the tmux status line.
    """
    if not tty or editor_bundle_id:
        return False
    if probe.pane_for_tty(tty) is not None:
        return False
    project = os.path.basename(cwd.rstrip("/")) or cwd
    return write_tty_title(tty, cc_title(project, tty))
