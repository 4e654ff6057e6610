"""Brings the window hosting a session to the foreground."""

import logging
import threading
import time
from typing import Callable, Optional

from .backends import EditorBackend, TerminalBackend, cc_title, write_tty_title
from .environment import EnvironmentResolver, FocusTarget
from .models import (
    EditorEnvironment,
    FocusEnvironment,
    FocusResult,
    TerminalEnvironment,
    TerminalKind,
    TmuxOnlyEnvironment,
    editor_display_name,
)
from .process_probe import ProcessProbe

logger = logging.getLogger(__name__)

TitleWriter = Callable[[str, str], bool]


class FocusDispatcher:
    """
    Executes the focus strategy for a resolved environment.

    Requests for the same session are serialized; different sessions
    dispatch independently.
    """

    def __init__(
        self,
        probe: ProcessProbe,
        resolver: EnvironmentResolver,
        backends: dict[TerminalKind, TerminalBackend],
        editor: EditorBackend,
        config: Optional[dict] = None,
        title_writer: TitleWriter = write_tty_title,
        sleep: Callable[[float], None] = time.sleep,
    ):
        focus_config = (config or {}).get("focus", {})
        self.retry_attempts = focus_config.get("retry_attempts", 4)
        self.retry_delay = focus_config.get("retry_delay_seconds", 0.2)
        self.title_settle = focus_config.get("title_settle_seconds", 0.1)
        self.probe = probe
        self.resolver = resolver
        self.backends = backends
        self.editor = editor
        self._title_writer = title_writer
        self._sleep = sleep
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self.terminal_strategies: dict[TerminalKind, Callable[[FocusTarget, TerminalEnvironment], FocusResult]] = {
            TerminalKind.GHOSTTY: self._focus_ghostty,
            TerminalKind.ITERM2: self._focus_iterm2,
            TerminalKind.APPLE_TERMINAL: self._focus_terminal_app,
        }

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(key, threading.Lock())

    def focus(self, session: FocusTarget) -> FocusResult:
        """Resolve the session's environment and focus it."""
        with self._lock_for(session.key):
            env = self.resolver.resolve(session)
            logger.info(f"Focusing '{session.project_name}' (env: {env.display_name})")
            try:
                result = self.dispatch(session, env)
            finally:
                # Pane and tab layout may have changed
                self.probe.invalidate_panes()
                self.probe.invalidate_attach_states()
            logger.info(f"Focus '{session.project_name}': {result.describe()}")
            return result

    def dispatch(self, session: FocusTarget, env: FocusEnvironment) -> FocusResult:
        if isinstance(env, EditorEnvironment):
            return self._focus_editor(session, env)
        if isinstance(env, TerminalEnvironment):
            return self.terminal_strategies[env.kind](session, env)
        if isinstance(env, TmuxOnlyEnvironment):
            if self._select_pane(session):
                return FocusResult.partial(f"tmux pane selected in '{env.session_name}', no terminal window found")
            return FocusResult.not_found(f"Could not select a tmux pane for {session.tty} in '{env.session_name}'")
        return FocusResult.not_found(f"No terminal or editor found hosting '{session.project_name}'")

    def _select_pane(self, session: FocusTarget) -> bool:
        pane = self.probe.pane_for_tty(session.tty)
        if pane is None:
            return False
        return self.probe.select_pane(pane)

    @staticmethod
    def _search_terms(session: FocusTarget, tmux_name: Optional[str]) -> list[str]:
        terms = [tmux_name] if tmux_name else []
        for term in session.search_terms:
            if term and term not in terms:
                terms.append(term)
        return terms

    def _focus_ghostty(self, session: FocusTarget, env: TerminalEnvironment) -> FocusResult:
        backend = self.backends[TerminalKind.GHOSTTY]
        if not backend.is_running():
            return FocusResult.not_running()

        pane_selected = env.has_tmux and self._select_pane(session)

        if env.tab_index is not None:
            if backend.focus_by_stable_index(env.tab_index):
                return FocusResult.success()
            logger.debug(f"Ghostty tab index {env.tab_index} stale, trying title search")

        project = session.project_name
        if env.has_tmux:
            for term in self._search_terms(session, env.tmux_session_name):
                if backend.focus_by_name_search(term):
                    return FocusResult.success()
        elif session.tty:
            title = cc_title(project, session.tty)
            if backend.focus_by_title_token(title):
                return FocusResult.success()
            # The CLI may have overwritten the title; re-assert it and retry
            self._title_writer(session.tty, title)
            self._sleep(self.title_settle)
            if backend.focus_by_title_token(title):
                return FocusResult.success()
            if backend.focus_by_name_search(project):
                return FocusResult.success()

        backend.activate()
        if pane_selected:
            return FocusResult.partial("tmux pane selected, but tab not found")
        return FocusResult.partial(f"Ghostty activated, tab '{project}' not found")

    def _focus_iterm2(self, session: FocusTarget, env: TerminalEnvironment) -> FocusResult:
        backend = self.backends[TerminalKind.ITERM2]
        if not backend.is_running():
            return FocusResult.not_running()

        pane_selected = env.has_tmux and self._select_pane(session)
        terms = self._search_terms(session, env.tmux_session_name)

        # iTerm2 updates tab names lazily; retry briefly
        for attempt in range(self.retry_attempts):
            if session.tty and backend.focus_by_tty(session.tty):
                return FocusResult.success()
            for term in terms:
                if backend.focus_by_name_search(term):
                    return FocusResult.success()
            if attempt < self.retry_attempts - 1:
                self._sleep(self.retry_delay)

        backend.activate()
        preferred = terms[0] if terms else session.project_name
        if pane_selected:
            return FocusResult.partial(f"tmux pane selected, but tab '{preferred}' not found after retry")
        if session.tty:
            return FocusResult.not_found(f"No session with TTY '{session.tty}' or name '{preferred}' found")
        return FocusResult.not_found(f"No session matching '{preferred}' found")

    def _focus_terminal_app(self, session: FocusTarget, env: TerminalEnvironment) -> FocusResult:
        backend = self.backends[TerminalKind.APPLE_TERMINAL]
        if not backend.is_running():
            return FocusResult.not_running()

        if env.has_tmux:
            self._select_pane(session)

        if session.tty and not env.has_tmux and backend.focus_by_tty(session.tty):
            return FocusResult.success()
        for term in self._search_terms(session, env.tmux_session_name):
            if backend.focus_by_name_search(term):
                return FocusResult.success()

        backend.activate()
        return FocusResult.partial(f"Terminal activated, window '{session.project_name}' not found")

    def _focus_editor(self, session: FocusTarget, env: EditorEnvironment) -> FocusResult:
        if env.has_tmux:
            self._select_pane(session)

        name = editor_display_name(env.bundle_id)
        if not self.editor.is_running(env.bundle_id):
            return FocusResult.not_running()

        # pid activation picks the right instance when several are open
        if env.pid and self.editor.activate_pid(env.pid):
            return FocusResult.success()
        if self.editor.focus_window(env.bundle_id, session.search_terms):
            return FocusResult.success()
        if self.editor.activate(env.bundle_id):
            return FocusResult.partial(f"{name} activated, window '{session.project_name}' not found")
        return FocusResult.not_found(f"Could not activate {name}")
