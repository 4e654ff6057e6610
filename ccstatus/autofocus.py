"""Automatic focus of sessions that start waiting for input."""

import asyncio
import logging
import math
import re
import time
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from .environment import FocusTarget
from .models import FocusResult
from .process_probe import ProcessProbe

logger = logging.getLogger(__name__)

TERMINAL_APP_NAMES = ("ghostty", "iterm2", "terminal")


class InputActivity(Protocol):
    """Reports recent user input, used to avoid stealing focus mid-keystroke."""

    def seconds_since_input(self) -> float: ...

    def text_field_focused(self) -> bool: ...


class SystemInputActivity:
    """macOS input activity from `ioreg` idle time and the focused UI element."""

    _IDLE_PATTERN = re.compile(r'"HIDIdleTime"\s*=\s*(\d+)')

    def __init__(self, probe: ProcessProbe):
        self.probe = probe

    def seconds_since_input(self) -> float:
        output = self.probe.run(["ioreg", "-c", "IOHIDSystem", "-d", "4"])
        match = self._IDLE_PATTERN.search(output or "")
        if not match:
            return math.inf
        return int(match.group(1)) / 1_000_000_000

    def text_field_focused(self) -> bool:
        script = '''
tell application "System Events"
    try
        set p to first process whose frontmost is true
        set r to role of (value of attribute "AXFocusedUIElement" of p)
        return (name of p) & "|" & r
    on error
        return ""
    end try
end tell'''
        output = (self.probe.run(["osascript", "-e", script]) or "").strip()
        if "|" not in output:
            return False
        app, role = output.rsplit("|", 1)
        if app.lower() in TERMINAL_APP_NAMES:
            return False
        return role in ("AXTextField", "AXTextArea", "AXComboBox")


FocusCallable = Callable[[FocusTarget], Awaitable[FocusResult]]
Acknowledger = Callable[[str], Awaitable[None]]
AttachCheck = Callable[[FocusTarget], Awaitable[bool]]


class AutofocusController:
    """
    Debounced, cooldown-gated focus of waiting sessions.

    A burst of waiting transitions inside the debounce window collapses into
    one pick: red (permission prompt) before yellow, then most recently
    updated. Each session gets one attempt per cooldown window.
    """

    def __init__(
        self,
        focus: FocusCallable,
        acknowledge: Acknowledger,
        is_focusable: Optional[AttachCheck] = None,
        input_activity: Optional[InputActivity] = None,
        config: Optional[dict] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        autofocus_config = (config or {}).get("autofocus", {})
        self.enabled = autofocus_config.get("enabled", False)
        self.debounce_seconds = autofocus_config.get("debounce_seconds", 0.5)
        self.cooldown_seconds = autofocus_config.get("cooldown_seconds", 30.0)
        self.typing_idle_seconds = autofocus_config.get("typing_idle_seconds", 5.0)
        self.typing_idle_text_field_seconds = autofocus_config.get("typing_idle_text_field_seconds", 10.0)
        self.max_retries = autofocus_config.get("max_retries", 3)
        self._focus = focus
        self._acknowledge = acknowledge
        self._is_focusable = is_focusable
        self._input_activity = input_activity
        self._clock = clock
        self._sleep = sleep
        self._cooldowns: dict[str, float] = {}
        self._pending: Optional[asyncio.Task] = None
        # Task past its debounce and typing wait, raising a window
        self._focusing: Optional[asyncio.Task] = None

    def is_on_cooldown(self, key: str) -> bool:
        started = self._cooldowns.get(key)
        if started is None:
            return False
        if self._clock() - started >= self.cooldown_seconds:
            del self._cooldowns[key]
            return False
        return True

    def clear_cooldown(self, key: str) -> None:
        """Called when a session returns to running."""
        if self._cooldowns.pop(key, None) is not None:
            logger.debug(f"Autofocus cooldown cleared for {key}")

    def apply_transitions(self, running_keys: Sequence[str], waiting: Sequence[FocusTarget]) -> Optional[asyncio.Task]:
        for key in running_keys:
            self.clear_cooldown(key)
        if waiting:
            return self.handle_waiting(waiting)
        return None

    def _eligible(self, session: FocusTarget) -> bool:
        return session.is_waiting and not session.is_acknowledged and not self.is_on_cooldown(session.key)

    def handle_waiting(self, sessions: Sequence[FocusTarget]) -> Optional[asyncio.Task]:
        """
        Schedule an autofocus pick, replacing any pick still in its debounce or
        typing wait. A pick already raising a window runs to completion.

        Must be called from the event loop.
        """
        if not self.enabled:
            return None
        candidates = [s for s in sessions if self._eligible(s)]
        if not candidates:
            return None
        if self._pending and not self._pending.done() and self._pending is not self._focusing:
            self._pending.cancel()
        self._pending = asyncio.create_task(self._debounced(candidates))
        return self._pending

    async def _debounced(self, candidates: list[FocusTarget]) -> Optional[FocusResult]:
        await self._sleep(self.debounce_seconds)
        in_flight = self._focusing
        if in_flight is not None and not in_flight.done():
            await asyncio.wait({in_flight})
        return await self.perform(candidates)

    async def _wait_for_typing_pause(self) -> bool:
        """False when the user kept typing through every retry."""
        if self._input_activity is None:
            return True
        for attempt in range(self.max_retries + 1):
            window = self.typing_idle_seconds
            if await asyncio.to_thread(self._input_activity.text_field_focused):
                window = self.typing_idle_text_field_seconds
            idle = await asyncio.to_thread(self._input_activity.seconds_since_input)
            if idle >= window:
                return True
            if attempt == self.max_retries:
                break
            logger.debug(f"User typing ({idle:.1f}s idle), autofocus retry {attempt + 1}/{self.max_retries}")
            await self._sleep(window - idle)
        return False

    async def perform(self, candidates: Sequence[FocusTarget]) -> Optional[FocusResult]:
        """Pick the highest-priority candidate and focus it."""
        if not self.enabled:
            return None
        if not await self._wait_for_typing_pause():
            logger.info("Autofocus dropped, user still typing")
            return None

        focusable = []
        for session in candidates:
            if not self._eligible(session):
                continue
            # Detached tmux sessions have no window to raise
            if self._is_focusable and not await self._is_focusable(session):
                continue
            focusable.append(session)
        if not focusable:
            logger.debug("No focusable autofocus candidates")
            return None

        focusable.sort(key=lambda s: s.updated_at, reverse=True)
        focusable.sort(key=lambda s: not s.is_permission_prompt)
        target = focusable[0]
        reason = target.waiting_reason.value if target.waiting_reason else "unknown"
        logger.info(f"Autofocusing {target.project_name} (reason: {reason})")

        self._cooldowns[target.key] = self._clock()
        self._focusing = asyncio.current_task()
        try:
            result = await self._focus(target)
            if result.acted_upon:
                await self._acknowledge(target.key)
        finally:
            self._focusing = None
        logger.info(f"Autofocus {target.project_name}: {result.describe()}")
        return result
