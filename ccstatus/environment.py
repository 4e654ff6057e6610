"""Resolves which application window hosts a session."""

import logging
from typing import Optional, Union

from .backends import TerminalBackend
from .models import (
    CodexSession,
    EditorEnvironment,
    FocusEnvironment,
    PaneInfo,
    Session,
    TerminalEnvironment,
    TerminalKind,
    TmuxOnlyEnvironment,
    UnknownEnvironment,
)
from .process_probe import ProcessProbe

logger = logging.getLogger(__name__)

# TERM_PROGRAM values (lowercased) of supported terminals
TERMINAL_PROGRAMS: dict[str, TerminalKind] = {
    "ghostty": TerminalKind.GHOSTTY,
    "iterm.app": TerminalKind.ITERM2,
    "apple_terminal": TerminalKind.APPLE_TERMINAL,
}

ZED_BUNDLE_ID = "dev.zed.Zed"

FocusTarget = Union[Session, CodexSession]


class EnvironmentResolver:
    """
    Maps a session to a FocusEnvironment.

    Evaluated fresh on every call. Only the probe's own TTL caches sit
    between two resolutions of the same session.
    """

    def __init__(self, probe: ProcessProbe, backends: dict[TerminalKind, TerminalBackend]):
        self.probe = probe
        self.backends = backends

    def resolve(self, session: FocusTarget) -> FocusEnvironment:
        pane = self.probe.pane_for_tty(session.tty)
        has_tmux = pane is not None
        tmux_name = pane.session if pane else None

        # 1. Editor detected from the hook's parent process chain
        if session.editor_bundle_id:
            return EditorEnvironment(
                bundle_id=session.editor_bundle_id,
                pid=session.editor_pid,
                has_tmux=has_tmux,
                tmux_session_name=tmux_name,
            )

        # 2. Terminal hosting the tmux client
        kind = self._terminal_kind(session.actual_term_program)
        if kind:
            return self._terminal_environment(kind, session, pane)

        # 3. TERM_PROGRAM of the session itself
        kind = self._terminal_kind(session.term_program)
        if kind:
            return self._terminal_environment(kind, session, pane)
        if (session.term_program or "").lower() == "zed":
            return EditorEnvironment(bundle_id=ZED_BUNDLE_ID, has_tmux=has_tmux, tmux_session_name=tmux_name)

        # 4. tmux: look for a terminal window titled with the tmux session name
        if pane:
            for kind, backend in self.backends.items():
                if not backend.is_running():
                    continue
                tab_index = backend.find_tab_by_title(pane.session)
                if tab_index is not None:
                    return TerminalEnvironment(kind, has_tmux=True, tab_index=tab_index, tmux_session_name=pane.session)
            return TmuxOnlyEnvironment(session_name=pane.session)

        # 5. Plain tty: a terminal that owns the device
        if session.tty:
            for kind, backend in self.backends.items():
                if not backend.is_running():
                    continue
                tab_index = backend.find_tab_by_tty(session.tty)
                if tab_index is not None:
                    return TerminalEnvironment(kind, tab_index=tab_index)
        if session.ghostty_tab_index is not None:
            return TerminalEnvironment(TerminalKind.GHOSTTY, tab_index=session.ghostty_tab_index)
        return UnknownEnvironment()

    @staticmethod
    def _terminal_kind(program: Optional[str]) -> Optional[TerminalKind]:
        if not program:
            return None
        return TERMINAL_PROGRAMS.get(program.lower())

    def _terminal_environment(self, kind: TerminalKind, session: FocusTarget,
                              pane: Optional[PaneInfo]) -> TerminalEnvironment:
        backend = self.backends[kind]
        tab_index = session.ghostty_tab_index if kind == TerminalKind.GHOSTTY else None
        if tab_index is None:
            if pane:
                tab_index = backend.find_tab_by_title(pane.session)
            elif session.tty:
                tab_index = backend.find_tab_by_tty(session.tty)
        return TerminalEnvironment(
            kind,
            has_tmux=pane is not None,
            tab_index=tab_index,
            tmux_session_name=pane.session if pane else None,
        )
