"""Unit tests for AutofocusController."""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from ccstatus.autofocus import AutofocusController, SystemInputActivity
from ccstatus.models import FocusResult, Session, SessionStatus, WaitingReason

T0 = datetime(2024, 1, 1, 12, 0, 0)
ENABLED = {"autofocus": {"enabled": True}}


def waiting(session_id, reason=WaitingReason.STOP, minutes=0, acknowledged=False) -> Session:
    return Session(
        session_id=session_id,
        cwd=f"/work/{session_id}",
        status=SessionStatus.WAITING_INPUT,
        waiting_reason=reason,
        updated_at=T0 + timedelta(minutes=minutes),
        is_acknowledged=acknowledged,
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)
        await asyncio.sleep(0)
    return _sleep


@pytest.fixture
def focus():
    return AsyncMock(return_value=FocusResult.success())


@pytest.fixture
def acknowledge():
    return AsyncMock()


@pytest.fixture
def controller(focus, acknowledge, fake_clock, fake_sleep):
    return AutofocusController(
        focus=focus,
        acknowledge=acknowledge,
        config=ENABLED,
        clock=fake_clock,
        sleep=fake_sleep,
    )


def typing_activity(idle_values, text_field=False):
    activity = MagicMock()
    activity.seconds_since_input.side_effect = list(idle_values)
    activity.text_field_focused.return_value = text_field
    return activity


class TestPick:
    @pytest.mark.asyncio
    async def test_red_before_yellow(self, controller, focus):
        yellow = waiting("yellow", minutes=10)
        red = waiting("red", reason=WaitingReason.PERMISSION_PROMPT, minutes=0)

        await controller.perform([yellow, red])

        focus.assert_awaited_once_with(red)

    @pytest.mark.asyncio
    async def test_most_recent_within_color(self, controller, focus):
        older = waiting("older", minutes=1)
        newer = waiting("newer", minutes=2)

        await controller.perform([older, newer])

        focus.assert_awaited_once_with(newer)

    @pytest.mark.asyncio
    async def test_unknown_reason_is_not_red(self, controller, focus):
        unknown = waiting("unknown", reason=WaitingReason.UNKNOWN, minutes=5)
        red = waiting("red", reason=WaitingReason.PERMISSION_PROMPT)

        await controller.perform([unknown, red])

        focus.assert_awaited_once_with(red)

    @pytest.mark.asyncio
    async def test_acknowledged_skipped(self, controller, focus):
        result = await controller.perform([waiting("seen", acknowledged=True)])

        assert result is None
        focus.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unfocusable_skipped(self, focus, acknowledge, fake_clock, fake_sleep):
        detached = waiting("detached", reason=WaitingReason.PERMISSION_PROMPT)
        attached = waiting("attached")

        async def is_focusable(session):
            return session is attached

        controller = AutofocusController(focus, acknowledge, is_focusable=is_focusable,
                                         config=ENABLED, clock=fake_clock, sleep=fake_sleep)

        await controller.perform([detached, attached])

        focus.assert_awaited_once_with(attached)

    @pytest.mark.asyncio
    async def test_disabled(self, focus, acknowledge):
        controller = AutofocusController(focus, acknowledge, config={})

        assert controller.handle_waiting([waiting("a")]) is None
        assert await controller.perform([waiting("a")]) is None
        focus.assert_not_awaited()


class TestAcknowledge:
    @pytest.mark.asyncio
    async def test_acknowledged_when_acted_upon(self, controller, acknowledge):
        await controller.perform([waiting("a")])

        acknowledge.assert_awaited_once_with("a")

    @pytest.mark.asyncio
    async def test_partial_counts(self, controller, focus, acknowledge):
        focus.return_value = FocusResult.partial("tab not found")

        await controller.perform([waiting("a")])

        acknowledge.assert_awaited_once_with("a")

    @pytest.mark.asyncio
    async def test_not_acknowledged_on_failure(self, controller, focus, acknowledge):
        focus.return_value = FocusResult.not_found("no window")

        result = await controller.perform([waiting("a")])

        assert result.outcome.value == "not_found"
        acknowledge.assert_not_awaited()


class TestCooldown:
    @pytest.mark.asyncio
    async def test_one_attempt_per_window(self, controller, focus, fake_clock):
        session = waiting("a")

        await controller.perform([session])
        assert controller.is_on_cooldown("a")
        assert await controller.perform([session]) is None

        fake_clock.advance(30)
        assert not controller.is_on_cooldown("a")
        await controller.perform([session])

        assert focus.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_attempt_still_cools_down(self, controller, focus):
        focus.return_value = FocusResult.not_running()

        await controller.perform([waiting("a")])

        assert controller.is_on_cooldown("a")

    @pytest.mark.asyncio
    async def test_return_to_running_clears(self, controller):
        await controller.perform([waiting("a")])

        controller.apply_transitions(["a"], [])

        assert not controller.is_on_cooldown("a")

    @pytest.mark.asyncio
    async def test_other_session_still_eligible(self, controller, focus):
        await controller.perform([waiting("a")])
        await controller.perform([waiting("a"), waiting("b")])

        assert focus.await_args_list[1].args[0].session_id == "b"


class TestDebounce:
    @pytest.mark.asyncio
    async def test_debounced_then_focused(self, controller, focus, sleeps):
        task = controller.handle_waiting([waiting("a")])

        result = await task

        assert result == FocusResult.success()
        assert sleeps[0] == 0.5
        focus.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_newer_request_replaces_pending(self, controller, focus):
        first = controller.handle_waiting([waiting("first")])
        second = controller.handle_waiting([waiting("second")])

        await second
        with pytest.raises(asyncio.CancelledError):
            await first

        focus.assert_awaited_once()
        assert focus.await_args.args[0].session_id == "second"

    @pytest.mark.asyncio
    async def test_request_during_focus_lets_it_finish(self, controller, focus, acknowledge):
        events = []
        raising = asyncio.Event()
        release = asyncio.Event()

        async def slow_focus(target):
            events.append(("focus", target.session_id))
            if target.session_id == "a":
                raising.set()
                await release.wait()
            return FocusResult.success()

        focus.side_effect = slow_focus
        acknowledge.side_effect = lambda key: events.append(("ack", key))
        a, b = waiting("a"), waiting("b")

        first = controller.handle_waiting([a])
        await raising.wait()
        second = controller.handle_waiting([b])
        release.set()
        await second

        assert first.done() and not first.cancelled()
        assert first.result() == FocusResult.success()
        assert events == [("focus", "a"), ("ack", a.key), ("focus", "b"), ("ack", b.key)]

    @pytest.mark.asyncio
    async def test_no_eligible_candidates(self, controller):
        assert controller.handle_waiting([waiting("seen", acknowledged=True)]) is None

    @pytest.mark.asyncio
    async def test_apply_transitions_schedules(self, controller, focus):
        task = controller.apply_transitions([], [waiting("a")])

        await task

        focus.assert_awaited_once()


class TestTypingSuppression:
    @pytest.mark.asyncio
    async def test_waits_for_pause(self, focus, acknowledge, fake_clock, fake_sleep, sleeps):
        activity = typing_activity([1.0, 6.0])
        controller = AutofocusController(focus, acknowledge, input_activity=activity,
                                         config=ENABLED, clock=fake_clock, sleep=fake_sleep)

        await controller.perform([waiting("a")])

        assert sleeps == [4.0]
        focus.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_text_field_extends_window(self, focus, acknowledge, fake_clock, fake_sleep, sleeps):
        activity = typing_activity([6.0, 10.0], text_field=True)
        controller = AutofocusController(focus, acknowledge, input_activity=activity,
                                         config=ENABLED, clock=fake_clock, sleep=fake_sleep)

        await controller.perform([waiting("a")])

        assert sleeps == [4.0]
        focus.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, focus, acknowledge, fake_clock, fake_sleep, sleeps):
        activity = typing_activity([0.5, 0.5, 0.5, 0.5])
        controller = AutofocusController(focus, acknowledge, input_activity=activity,
                                         config=ENABLED, clock=fake_clock, sleep=fake_sleep)

        result = await controller.perform([waiting("a")])

        assert result is None
        assert len(sleeps) == 3
        focus.assert_not_awaited()
        assert not controller.is_on_cooldown("a")


class TestSystemInputActivity:
    def test_idle_seconds_from_ioreg(self, probe, fake_runner):
        fake_runner.respond(["ioreg"], '    | |   "HIDIdleTime" = 2500000000\n')

        assert SystemInputActivity(probe).seconds_since_input() == 2.5

    def test_idle_unknown_is_infinite(self, probe):
        assert SystemInputActivity(probe).seconds_since_input() == float("inf")

    def test_text_field_in_other_app(self, probe, fake_runner):
        fake_runner.respond(["osascript"], "Safari|AXTextField\n")
        assert SystemInputActivity(probe).text_field_focused()

    def test_terminal_never_counts(self, probe, fake_runner):
        fake_runner.respond(["osascript"], "Ghostty|AXTextArea\n")
        assert not SystemInputActivity(probe).text_field_focused()

    def test_non_text_element(self, probe, fake_runner):
        fake_runner.respond(["osascript"], "Finder|AXList\n")
        assert not SystemInputActivity(probe).text_field_focused()
