"""Timer abstraction used by every event/timer-driven component.

Production code schedules callbacks with `threading.Timer`; tests inject
`ManualTimerService`, a fake clock that fires due callbacks only when the test
advances time. Nothing in the package sleeps or busy-polls.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    """A scheduled callback that can be cancelled."""

    def cancel(self) -> None: ...


class TimerService(Protocol):
    """Clock plus delayed-callback scheduling."""

    def now(self) -> float: ...

    def call_later(self, delay_s: float, callback: Callable[[], Any]) -> TimerHandle: ...


class ThreadingTimerService:
    """TimerService backed by daemon `threading.Timer` threads."""

    def now(self) -> float:
        return time.time()

    def call_later(self, delay_s: float, callback: Callable[[], Any]) -> TimerHandle:
        timer = threading.Timer(max(0.0, delay_s), _guarded(callback))
        timer.daemon = True
        timer.start()
        return timer


def _guarded(callback: Callable[[], Any]) -> Callable[[], None]:
    def run() -> None:
        try:
            callback()
        except Exception:
            logger.exception("Timer callback raised")

    return run


class _ManualHandle:
    def __init__(self, due: float) -> None:
        self.due = due
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualTimerService:
    """Deterministic fake clock for tests and offline replays.

    Callbacks scheduled for the same instant fire in scheduling order. A
    callback may schedule further callbacks; those fire in the same `advance`
    call when they fall due within the advanced window.

    Example:
        timers = ManualTimerService()
        timers.call_later(5, fired.append)
        timers.advance(5)
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start
        self._seq = itertools.count()
        self._heap: list[tuple[float, int, _ManualHandle, Callable[[], Any]]] = []
        self._lock = threading.RLock()

    def now(self) -> float:
        return self._now

    def call_later(self, delay_s: float, callback: Callable[[], Any]) -> TimerHandle:
        with self._lock:
            handle = _ManualHandle(self._now + max(0.0, delay_s))
            heapq.heappush(self._heap, (handle.due, next(self._seq), handle, callback))
            return handle

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for _, _, handle, _ in self._heap if not handle.cancelled)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing every callback that falls due."""
        target = self._now + seconds
        while True:
            with self._lock:
                if not self._heap or self._heap[0][0] > target:
                    break
                due, _, handle, callback = heapq.heappop(self._heap)
                if handle.cancelled:
                    continue
                self._now = max(self._now, due)
            callback()
        self._now = target


class Debouncer:
    """Coalesce rapid triggers into one delayed callback.

    The pending flag, the timer and the manual flush are all explicit so both
    the batched path and the immediate path can be exercised independently.
    """

    def __init__(self, timers: TimerService, delay_s: float, callback: Callable[[], Any]):
        self._timers = timers
        self._delay_s = delay_s
        self._callback = callback
        self._timer: TimerHandle | None = None
        self._pending = False
        self._lock = threading.RLock()

    @property
    def pending(self) -> bool:
        return self._pending

    def trigger(self) -> None:
        with self._lock:
            self._pending = True
            if self._timer is None:
                self._timer = self._timers.call_later(self._delay_s, self._fire)

    def flush(self) -> bool:
        """Deliver a pending notification now. Returns False if nothing was pending."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if not self._pending:
                return False
            self._pending = False
        self._callback()
        return True

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending = False

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
            if not self._pending:
                return
            self._pending = False
        self._callback()
