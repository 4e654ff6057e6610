"""Collapse agent-team sessions that share one tmux window into a single entry."""

import logging
from typing import Callable, Optional, Sequence, TypeVar, Union

from .models import CodexSession, PaneInfo, Session

logger = logging.getLogger(__name__)

T = TypeVar("T", Session, CodexSession)

PaneLookup = Callable[[Union[Session, CodexSession]], Optional[PaneInfo]]


def codex_pane(session: CodexSession) -> Optional[PaneInfo]:
    """Pane recorded on an observed Codex session."""
    if not session.has_tmux or session.tmux_window is None:
        return None
    return PaneInfo(
        session=session.tmux_session,
        window=session.tmux_window,
        pane=session.tmux_pane or "0",
        socket_path=session.tmux_socket_path,
    )


def filter_agent_teams(sessions: Sequence[T], pane_lookup: PaneLookup) -> list[T]:
    """
    Keep one representative per (tmux session, tmux window, cwd) group.

    Only sessions with a tty and a resolvable pane are grouped; everything
    else passes through. The earliest-created member represents its group.
    Input order is preserved and the input is never mutated.
    """
    groups: dict[tuple[str, str, str], list[T]] = {}
    for session in sessions:
        if not session.tty:
            continue
        pane = pane_lookup(session)
        if pane is None:
            continue
        groups.setdefault((pane.session, pane.window, session.cwd), []).append(session)

    hidden = set()
    for group_key, members in groups.items():
        if len(members) < 2:
            continue
        leader = min(members, key=lambda s: s.created_at)
        for member in members:
            if member is not leader:
                hidden.add(id(member))
        logger.debug(f"Agent team in {group_key[0]}:{group_key[1]} ({len(members)} members) collapsed")

    return [s for s in sessions if id(s) not in hidden]
