"""
Focus backends: thin AppleScript wrappers for each host application.

Every call goes through the probe's command runner, so a failed or missing
`osascript` is "no information" rather than an error.
"""

import logging
import os
from typing import Optional

from .models import TerminalKind, editor_display_name
from .process_probe import ProcessProbe

logger = logging.getLogger(__name__)

OSASCRIPT_TIMEOUT = 5.0


def applescript_string(value: str) -> str:
    """Quote a Python string as an AppleScript string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def short_tty(tty: str) -> str:
    return tty[len("/dev/"):] if tty.startswith("/dev/") else tty


def cc_title(project: str, tty: str) -> str:
    """Window title injected into non-tmux terminal sessions."""
    return f"[CC] {project} • {short_tty(tty)}"


def write_tty_title(tty: str, title: str) -> bool:
    """Set the window title of the terminal attached to `tty` with an OSC 0 sequence."""
    sequence = f"\x1b]0;{title}\x07".encode()
    try:
        fd = os.open(tty, os.O_WRONLY | os.O_NOCTTY | os.O_NONBLOCK)
    except OSError as e:
        logger.debug(f"Cannot open {tty} to set title: {e}")
        return False
    try:
        written = os.write(fd, sequence)
    except OSError as e:
        logger.debug(f"Title write to {tty} failed: {e}")
        return False
    finally:
        os.close(fd)
    if written != len(sequence):
        logger.debug(f"Partial title write to {tty}: {written}/{len(sequence)} bytes")
        return False
    logger.debug(f"Set title '{title}' on {tty}")
    return True


class AppleScriptBackend:
    """Base for backends driven by osascript."""

    app_name = ""

    def __init__(self, probe: ProcessProbe):
        self.probe = probe

    def _osascript(self, script: str) -> Optional[str]:
        output = self.probe.run(["osascript", "-e", script], OSASCRIPT_TIMEOUT)
        return output.strip() if output is not None else None

    def _script_true(self, script: str) -> bool:
        return self._osascript(script) == "true"

    def _script_index(self, script: str) -> Optional[int]:
        output = self._osascript(script)
        if output is None:
            return None
        try:
            index = int(output)
        except ValueError:
            return None
        return index if index >= 0 else None


class TerminalBackend(AppleScriptBackend):
    """
    Capability set of one terminal application.

    Subclasses override what the application supports; everything else
    reports "not found".
    """

    kind: TerminalKind
    process_name = ""

    def is_running(self) -> bool:
        return self.probe.is_process_running(self.process_name)

    def activate(self) -> bool:
        result = self._osascript(f"tell application {applescript_string(self.app_name)} to activate")
        if result is not None:
            logger.debug(f"Activated {self.app_name}")
        return result is not None

    def focus_by_stable_index(self, index: int) -> bool:
        return False

    def focus_by_title_token(self, token: str) -> bool:
        return False

    def focus_by_name_search(self, name: str) -> bool:
        return False

    def focus_by_tty(self, tty: str) -> bool:
        return False

    def find_tab_by_title(self, token: str) -> Optional[int]:
        return None

    def find_tab_by_tty(self, tty: str) -> Optional[int]:
        return None

    def current_tab_index(self) -> Optional[int]:
        return None


class GhosttyBackend(TerminalBackend):
    """Ghostty has no scripting dictionary; tabs are driven through System Events."""

    kind = TerminalKind.GHOSTTY
    app_name = "Ghostty"
    process_name = "ghostty"

    _TAB_GROUP = 'first tab group of front window of process "Ghostty"'

    def tab_titles(self) -> list[str]:
        script = f'''
tell application "System Events"
    try
        set out to ""
        repeat with b in radio buttons of {self._TAB_GROUP}
            set out to out & (name of b) & linefeed
        end repeat
        return out
    on error
        return ""
    end try
end tell'''
        output = self._osascript(script)
        return output.splitlines() if output else []

    def focus_by_stable_index(self, index: int) -> bool:
        script = f'''
tell application "System Events"
    try
        set tabButtons to radio buttons of {self._TAB_GROUP}
        if {index + 1} > (count of tabButtons) then return "false"
        set frontmost of process "Ghostty" to true
        click item {index + 1} of tabButtons
        return "true"
    on error
        return "false"
    end try
end tell'''
        focused = self._script_true(script)
        if focused:
            logger.debug(f"Focused Ghostty tab {index}")
        return focused

    def find_tab_by_title(self, token: str) -> Optional[int]:
        if not self.is_running():
            return None
        for index, title in enumerate(self.tab_titles()):
            if token in title:
                return index
        return None

    def focus_by_title_token(self, token: str) -> bool:
        index = self.find_tab_by_title(token)
        if index is None:
            return False
        return self.focus_by_stable_index(index)

    def focus_by_name_search(self, name: str) -> bool:
        return self.focus_by_title_token(name)

    def find_tab_by_tty(self, tty: str) -> Optional[int]:
        # Non-tmux tabs carry the injected "[CC] project • ttysNNN" title
        return self.find_tab_by_title(f"• {short_tty(tty)}")

    def current_tab_index(self) -> Optional[int]:
        script = f'''
tell application "System Events"
    try
        set tabButtons to radio buttons of {self._TAB_GROUP}
        repeat with i from 1 to count of tabButtons
            if value of item i of tabButtons is 1 then return (i - 1) as string
        end repeat
        return "-1"
    on error
        return "-1"
    end try
end tell'''
        return self._script_index(script)


class ITerm2Backend(TerminalBackend):
    kind = TerminalKind.ITERM2
    app_name = "iTerm"
    process_name = "iTerm2"

    def focus_by_stable_index(self, index: int) -> bool:
        script = f'''
tell application "iTerm"
    try
        tell current window to select tab {index + 1}
        activate
        return "true"
    on error
        return "false"
    end try
end tell'''
        return self._script_true(script)

    def focus_by_tty(self, tty: str) -> bool:
        script = f'''
tell application "iTerm"
    try
        repeat with w in windows
            repeat with t in tabs of w
                repeat with s in sessions of t
                    if tty of s is {applescript_string(tty)} then
                        tell s to select
                        select t
                        select w
                        activate
                        return "true"
                    end if
                end repeat
            end repeat
        end repeat
        return "false"
    on error
        return "false"
    end try
end tell'''
        focused = self._script_true(script)
        if focused:
            logger.debug(f"Focused iTerm2 session by tty {tty}")
        return focused

    def focus_by_name_search(self, name: str) -> bool:
        script = f'''
tell application "iTerm"
    try
        repeat with w in windows
            repeat with t in tabs of w
                if name of current session of t contains {applescript_string(name)} then
                    select t
                    select w
                    activate
                    return "true"
                end if
            end repeat
        end repeat
        return "false"
    on error
        return "false"
    end try
end tell'''
        focused = self._script_true(script)
        if focused:
            logger.debug(f"Focused iTerm2 session by name '{name}'")
        return focused

    def focus_by_title_token(self, token: str) -> bool:
        return self.focus_by_name_search(token)

    def find_tab_by_title(self, token: str) -> Optional[int]:
        if not self.is_running():
            return None
        script = f'''
tell application "iTerm"
    try
        set tabList to tabs of current window
        repeat with i from 1 to count of tabList
            if name of current session of (item i of tabList) contains {applescript_string(token)} then
                return (i - 1) as string
            end if
        end repeat
        return "-1"
    on error
        return "-1"
    end try
end tell'''
        return self._script_index(script)

    def find_tab_by_tty(self, tty: str) -> Optional[int]:
        # Scripting a stopped app launches it
        if not self.is_running():
            return None
        script = f'''
tell application "iTerm"
    try
        set tabList to tabs of current window
        repeat with i from 1 to count of tabList
            repeat with s in sessions of (item i of tabList)
                if tty of s is {applescript_string(tty)} then return (i - 1) as string
            end repeat
        end repeat
        return "-1"
    on error
        return "-1"
    end try
end tell'''
        return self._script_index(script)


class TerminalAppBackend(TerminalBackend):
    kind = TerminalKind.APPLE_TERMINAL
    app_name = "Terminal"
    process_name = "Terminal"

    def focus_by_tty(self, tty: str) -> bool:
        script = f'''
tell application "Terminal"
    try
        repeat with w in windows
            repeat with t in tabs of w
                if tty of t is {applescript_string(tty)} then
                    set selected of t to true
                    set index of w to 1
                    activate
                    return "true"
                end if
            end repeat
        end repeat
        return "false"
    on error
        return "false"
    end try
end tell'''
        return self._script_true(script)

    def focus_by_name_search(self, name: str) -> bool:
        script = f'''
tell application "Terminal"
    try
        repeat with w in windows
            if name of w contains {applescript_string(name)} then
                set index of w to 1
                activate
                return "true"
            end if
        end repeat
        return "false"
    on error
        return "false"
    end try
end tell'''
        return self._script_true(script)

    def focus_by_title_token(self, token: str) -> bool:
        return self.focus_by_name_search(token)

    def find_tab_by_tty(self, tty: str) -> Optional[int]:
        if not self.is_running():
            return None
        script = f'''
tell application "Terminal"
    try
        set tabList to tabs of front window
        repeat with i from 1 to count of tabList
            if tty of (item i of tabList) is {applescript_string(tty)} then return (i - 1) as string
        end repeat
        return "-1"
    on error
        return "-1"
    end try
end tell'''
        return self._script_index(script)


class EditorBackend(AppleScriptBackend):
    """Activates editors by pid, or by bundle id plus window title."""

    def is_running(self, bundle_id: str) -> bool:
        return self._script_true(f"application id {applescript_string(bundle_id)} is running")

    def activate_pid(self, pid: int) -> bool:
        script = f'''
tell application "System Events"
    try
        set frontmost of (first process whose unix id is {int(pid)}) to true
        return "true"
    on error
        return "false"
    end try
end tell'''
        return self._script_true(script)

    def focus_window(self, bundle_id: str, title_terms: list[str]) -> bool:
        """Raise the first editor window whose title contains one of the terms."""
        for term in title_terms:
            script = f'''
tell application "System Events"
    try
        repeat with p in (processes whose bundle identifier is {applescript_string(bundle_id)})
            repeat with w in windows of p
                if name of w contains {applescript_string(term)} then
                    perform action "AXRaise" of w
                    set frontmost of p to true
                    return "true"
                end if
            end repeat
        end repeat
        return "false"
    on error
        return "false"
    end try
end tell'''
            if self._script_true(script):
                logger.debug(f"Focused {editor_display_name(bundle_id)} window matching '{term}'")
                return True
        return False

    def activate(self, bundle_id: str) -> bool:
        return self._osascript(f"tell application id {applescript_string(bundle_id)} to activate") is not None


def default_backends(probe: ProcessProbe) -> dict[TerminalKind, TerminalBackend]:
    """One backend per terminal kind, in resolver probe order."""
    return {
        TerminalKind.GHOSTTY: GhosttyBackend(probe),
        TerminalKind.ITERM2: ITerm2Backend(probe),
        TerminalKind.APPLE_TERMINAL: TerminalAppBackend(probe),
    }
