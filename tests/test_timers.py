"""Tests for the timer abstraction and the Debouncer primitive."""

from __future__ import annotations

from overseer.core.timers import Debouncer, ManualTimerService


class TestManualTimerService:
    """Fake clock ordering and cancellation."""

    def test_fires_in_due_order(self):
        timers = ManualTimerService()
        fired = []
        timers.call_later(2, lambda: fired.append("b"))
        timers.call_later(1, lambda: fired.append("a"))
        timers.call_later(1, lambda: fired.append("a2"))
        timers.advance(1.5)
        assert fired == ["a", "a2"]
        timers.advance(1)
        assert fired == ["a", "a2", "b"]

    def test_cancelled_timer_does_not_fire(self):
        timers = ManualTimerService()
        fired = []
        handle = timers.call_later(1, lambda: fired.append(1))
        handle.cancel()
        timers.advance(5)
        assert fired == []
        assert timers.pending_count == 0

    def test_callback_may_schedule_within_window(self):
        timers = ManualTimerService()
        fired = []
        timers.call_later(1, lambda: timers.call_later(1, lambda: fired.append(timers.now())))
        start = timers.now()
        timers.advance(3)
        assert fired == [start + 2]
        assert timers.now() == start + 3


class TestDebouncer:
    """Pending flag, timer and manual flush."""

    def test_triggers_coalesce(self):
        timers = ManualTimerService()
        calls = []
        debouncer = Debouncer(timers, 0.05, lambda: calls.append(1))
        debouncer.trigger()
        debouncer.trigger()
        assert debouncer.pending is True
        timers.advance(0.05)
        assert calls == [1]
        assert debouncer.pending is False

    def test_flush_is_immediate_and_cancels_timer(self):
        timers = ManualTimerService()
        calls = []
        debouncer = Debouncer(timers, 0.05, lambda: calls.append(1))
        debouncer.trigger()
        assert debouncer.flush() is True
        assert calls == [1]
        timers.advance(1)
        assert calls == [1]

    def test_flush_without_pending(self):
        debouncer = Debouncer(ManualTimerService(), 0.05, lambda: None)
        assert debouncer.flush() is False

    def test_cancel_drops_pending(self):
        timers = ManualTimerService()
        calls = []
        debouncer = Debouncer(timers, 0.05, lambda: calls.append(1))
        debouncer.trigger()
        debouncer.cancel()
        timers.advance(1)
        assert calls == []
