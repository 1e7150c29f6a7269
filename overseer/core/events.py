"""Minimal thread-safe event emitter shared by tracker, controller and scheduler."""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]


class EventEmitter:
    """Named-event observer registry.

    Handlers run synchronously on the emitting thread. A handler that raises is
    logged and skipped; it never prevents delivery to the remaining handlers or
    unwinds the component that emitted the event.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        with self._lock:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        with self._lock:
            return len(self._handlers.get(event, []))

    def emit(self, event: str, *args: Any) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Handler for event '{event}' raised")
