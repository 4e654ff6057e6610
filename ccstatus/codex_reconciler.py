"""
Codex session state machine.

Codex only reports "turn complete". Everything else is inferred from
observation: waiting sessions whose pane output changes are treated as
running again, and sessions whose process disappears become synthetic
stopped placeholders that are pruned after a retention window. Nothing here
is persisted.
"""

import hashlib
import logging
import threading
from datetime import datetime
from typing import Callable, Iterable, Optional

from .models import CodexSessionStatus, SessionStatus, WaitingReason
from .protocol import CODEX_TURN_COMPLETE, CodexNotifyEvent

logger = logging.getLogger(__name__)

PLAN_PROMPT_TITLE = "Implement this plan?"
PLAN_PROMPT_OPTIONS = ("Yes, implement this plan", "No, stay in Plan mode")

TailReader = Callable[[str], Optional[str]]
CooldownClearer = Callable[[str], None]


def trailing_lines(text: Optional[str], count: int = 10) -> list[str]:
    """Last `count` non-empty lines, each stripped."""
    lines = [line.strip() for line in (text or "").splitlines()]
    return [line for line in lines if line][-count:]


def pane_tail_hash(text: Optional[str], count: int = 10) -> Optional[str]:
    lines = trailing_lines(text, count)
    if not lines:
        return None
    return hashlib.sha256("\n".join(lines).encode()).hexdigest()


def matches_plan_prompt(text: Optional[str], count: int = 10) -> bool:
    """True when the pane tail shows the plan-confirmation prompt with both options."""
    tail = "\n".join(trailing_lines(text, count))
    if PLAN_PROMPT_TITLE not in tail:
        return False
    return all(option in tail for option in PLAN_PROMPT_OPTIONS)


class CodexReconciler:
    """
    Per-cwd lifecycle for observed Codex sessions.

    Notify events and observation passes run on different worker threads.
    State changes happen under one lock. Pane tails are captured outside it,
    and a pass discards any tail captured before a newer turn-complete.
    """

    def __init__(
        self,
        tail_reader: Optional[TailReader] = None,
        config: Optional[dict] = None,
        clock: Callable[[], datetime] = datetime.now,
        on_revive: Optional[CooldownClearer] = None,
    ):
        codex_config = (config or {}).get("codex", {})
        self.grace_seconds = codex_config.get("grace_seconds", 3.0)
        self.retention_seconds = codex_config.get("retention_seconds", 90.0)
        self.tail_lines = codex_config.get("tail_lines", 10)
        self._tail_reader = tail_reader or (lambda cwd: None)
        self._clock = clock
        self.on_revive = on_revive
        self.states: dict[str, CodexSessionStatus] = {}
        self._lock = threading.Lock()
        # Turn-complete events seen per cwd
        self._turns: dict[str, int] = {}

    def status_for(self, cwd: str) -> Optional[CodexSessionStatus]:
        return self.states.get(cwd)

    def handle_notify(self, event: CodexNotifyEvent) -> Optional[CodexSessionStatus]:
        """Apply a push event. Anything but turn-complete is ignored."""
        if event.type != CODEX_TURN_COMPLETE:
            logger.debug(f"Ignoring Codex event {event.type} for {event.cwd}")
            return None

        tail = self._tail_reader(event.cwd)
        if event.marks_permission or matches_plan_prompt(tail, self.tail_lines):
            reason = WaitingReason.PERMISSION_PROMPT
        else:
            reason = WaitingReason.STOP

        with self._lock:
            now = self._clock()
            state = self.states.setdefault(event.cwd, CodexSessionStatus())
            state.status = SessionStatus.WAITING_INPUT
            state.waiting_reason = reason
            state.last_event_at = now
            state.last_seen_at = state.last_seen_at or now
            state.stopped_at = None
            state.is_synthetic_stopped = False
            state.pane_hash = pane_tail_hash(tail, self.tail_lines)
            state.thread_id = event.thread_id or state.thread_id
            # A new waiting event must re-alert even if the last one was dismissed
            state.is_acknowledged = False
            self._turns[event.cwd] = self._turns.get(event.cwd, 0) + 1
        logger.info(f"Codex waiting_input ({reason.value}): {event.cwd}")
        return state

    def acknowledge(self, cwd: str) -> bool:
        with self._lock:
            state = self.states.get(cwd)
            if state is None or state.is_acknowledged:
                return False
            state.is_acknowledged = True
            return True

    def reconcile(self, alive_cwds: Iterable[str]) -> list[str]:
        """
        Fold one observation pass into the state table.

        Args:
            alive_cwds: Working directories of currently running Codex processes

        Returns:
            cwds whose state changed
        """
        alive = set(alive_cwds)
        with self._lock:
            watched = {
                cwd: self._turns.get(cwd, 0)
                for cwd in alive
                if cwd in self.states and self.states[cwd].status == SessionStatus.WAITING_INPUT
            }
        tails = {cwd: pane_tail_hash(self._tail_reader(cwd), self.tail_lines) for cwd in watched}

        with self._lock:
            return self._apply_observation(alive, watched, tails)

    def _apply_observation(self, alive: set[str], watched: dict[str, int],
                           tails: dict[str, Optional[str]]) -> list[str]:
        now = self._clock()
        changed = []

        for cwd in alive:
            state = self.states.get(cwd)
            if state is None:
                self.states[cwd] = CodexSessionStatus(last_seen_at=now)
                changed.append(cwd)
                continue

            state.last_seen_at = now
            if state.is_synthetic_stopped:
                self._revive(cwd, state)
                changed.append(cwd)
            elif state.status == SessionStatus.WAITING_INPUT:
                if watched.get(cwd) != self._turns.get(cwd, 0):
                    logger.debug(f"Codex turn completed during observation, pane tail discarded: {cwd}")
                    continue
                current_hash = tails[cwd]
                if current_hash is not None and current_hash != state.pane_hash:
                    logger.info(f"Codex pane output changed, inferring running: {cwd}")
                    state.status = SessionStatus.RUNNING
                    state.waiting_reason = None
                    state.pane_hash = None
                    changed.append(cwd)

        for cwd in [c for c in self.states if c not in alive]:
            state = self.states[cwd]
            if state.is_synthetic_stopped:
                if (now - state.stopped_at).total_seconds() > self.retention_seconds:
                    del self.states[cwd]
                    self._turns.pop(cwd, None)
                    logger.debug(f"Pruned stopped Codex session: {cwd}")
                    changed.append(cwd)
                continue

            last_seen = state.last_seen_at or state.last_event_at or now
            if (now - last_seen).total_seconds() > self.grace_seconds:
                state.status = SessionStatus.STOPPED
                state.waiting_reason = None
                state.pane_hash = None
                state.is_synthetic_stopped = True
                state.stopped_at = now
                logger.info(f"Codex session gone, marked stopped: {cwd}")
                changed.append(cwd)

        return changed

    def _revive(self, cwd: str, state: CodexSessionStatus) -> None:
        state.status = SessionStatus.RUNNING
        state.waiting_reason = None
        state.is_synthetic_stopped = False
        state.stopped_at = None
        state.pane_hash = None
        state.is_acknowledged = False
        logger.info(f"Codex session back, revived: {cwd}")
        if self.on_revive:
            self.on_revive(cwd)

    def synthetic_stopped(self) -> dict[str, CodexSessionStatus]:
        """Placeholder records for recently finished sessions."""
        with self._lock:
            return {cwd: s for cwd, s in self.states.items() if s.is_synthetic_stopped}

    def clear(self) -> None:
        with self._lock:
            self.states.clear()
            self._turns.clear()
