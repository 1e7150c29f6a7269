"""Tail an assistant's JSONL transcript and derive turn/plan-mode signals.

Events on `TranscriptWatcher.events`:

- ``entry(dict)``: every parsed transcript entry
- ``turn_complete()``: the assistant finished a turn
- ``plan_mode()``: the assistant asked for plan approval
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from overseer.core.events import EventEmitter
from overseer.core.timers import ThreadingTimerService, TimerHandle, TimerService

logger = logging.getLogger(__name__)

PLAN_TOOL_NAMES = frozenset({"ExitPlanMode"})
MAX_READ_BYTES = 1024 * 1024


def classify_entry(entry: dict[str, Any]) -> list[str]:
    """Return the signals ('turn_complete', 'plan_mode') an entry carries."""
    signals: list[str] = []
    entry_type = entry.get("type")
    if entry_type == "result":
        signals.append("turn_complete")
    elif entry_type == "assistant":
        message = entry.get("message") or {}
        content = message.get("content")
        if isinstance(content, list):
            for block in content:
                if (
                    isinstance(block, dict)
                    and block.get("type") == "tool_use"
                    and block.get("name") in PLAN_TOOL_NAMES
                ):
                    signals.append("plan_mode")
                    break
        if message.get("stop_reason") == "end_turn":
            signals.append("turn_complete")
    return signals


class TranscriptWatcher:
    """Timer-driven tail of a transcript file.

    Only whole lines are parsed; a trailing partial line is kept until the
    writer finishes it. Malformed lines are skipped.
    """

    def __init__(self, path: str | Path, timers: TimerService | None = None, poll_interval_s: float = 1.0):
        self.path = Path(path)
        self.events = EventEmitter()
        self._timers = timers or ThreadingTimerService()
        self._poll_interval_s = poll_interval_s
        self._offset = 0
        self._partial = b""
        self._timer: TimerHandle | None = None
        self._running = False
        self._lock = threading.RLock()

    @property
    def running(self) -> bool:
        return self._running

    def start(self, from_end: bool = True) -> None:
        """Begin tailing. By default history already in the file is skipped."""
        with self._lock:
            if self._running:
                return
            self._running = True
            if from_end and self.path.exists():
                self._offset = self.path.stat().st_size
            self._schedule()
        logger.info(f"Watching transcript {self.path}")

    def stop(self) -> None:
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def poll(self) -> int:
        """Read newly appended entries now. Returns the number parsed."""
        entries = self._read_new_entries()
        for entry in entries:
            self.events.emit("entry", entry)
            for signal in classify_entry(entry):
                self.events.emit(signal)
        return len(entries)

    def _schedule(self) -> None:
        self._timer = self._timers.call_later(self._poll_interval_s, self._tick)

    def _tick(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._timer = None
        try:
            self.poll()
        except OSError as e:
            logger.warning(f"Failed to read transcript {self.path}: {e}")
        with self._lock:
            if self._running:
                self._schedule()

    def _read_new_entries(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        with self._lock:
            size = self.path.stat().st_size
            if size < self._offset:
                # Truncated or replaced
                self._offset = 0
                self._partial = b""
            if size == self._offset:
                return []
            with open(self.path, "rb") as f:
                f.seek(self._offset)
                data = f.read(MAX_READ_BYTES)
            self._offset += len(data)
            data = self._partial + data
            *lines, self._partial = data.split(b"\n")

        entries: list[dict[str, Any]] = []
        for raw in lines:
            if not raw.strip():
                continue
            try:
                entry = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.debug(f"Skipping malformed transcript line in {self.path}")
                continue
            if isinstance(entry, dict):
                entries.append(entry)
        return entries
