"""Signal Tracker: turn raw agent output into loop state, todos and completion events.

The tracker is a pure consumer of text. It knows nothing about processes or
scheduling; its owner feeds it chunks and subscribes to `events`:

- ``loop_update(TrackerState)``: debounced, after loop state changed
- ``todo_update(list[TodoItem])``: debounced, after the todo list changed
- ``completion(phrase)``: immediate, once per closed ``<promise>`` tag
- ``enabled(TrackerState)``: when the tracker flips to enabled
"""

from __future__ import annotations

import hashlib
import logging
import re
import threading

from overseer.core.events import EventEmitter
from overseer.core.models import TODO_STATUS_RANK, TodoItem, TodoStatus, TrackerState
from overseer.core.timers import Debouncer, ThreadingTimerService, TimerService

logger = logging.getLogger(__name__)

MAX_TODOS = 50
MAX_LINE_BUFFER = 64 * 1024
# Longest carried tail while waiting for a </promise> to close
MAX_PROMISE_CARRY = 512
EVENT_DEBOUNCE_S = 0.05

ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")

PROMISE_PATTERN = re.compile(r"<promise>\s*([A-Za-z0-9_-]+)\s*</promise>", re.IGNORECASE)
PROMISE_OPEN = "<promise>"

# Todo encodings
CHECKBOX_PATTERN = re.compile(r"^\s*[-*]\s*\[([xX ])\]\s+(.+)$")
INDICATOR_PATTERN = re.compile(r"Todo:\s*(☐|◐|✓|✅|⏳)\s+(.+)$")
STATUS_PATTERN = re.compile(r"[-*]\s*(.+?)\s+\((pending|in_progress|completed)\)\s*$")
NATIVE_PATTERN = re.compile(r"^\s*([☐☒◐])\s+(.+)$")
NATIVE_TREE_PATTERN = re.compile(r"^\s*⎿\s*([☐☒◐])\s+(.+)$")
TODO_TRIGGERS = ("[", "Todo:", "☐", "☒", "◐", "✓", "✅", "⏳", "(pending)", "(in_progress)", "(completed)")

# Loop encodings
LOOP_START_PATTERN = re.compile(
    r"Loop started at|Starting\b.*\bloop\b|ralph loop started|autonomous loop started",
    re.IGNORECASE,
)
ELAPSED_PATTERN = re.compile(r"Elapsed:\s*(\d+(?:\.\d+)?)\s*hours?", re.IGNORECASE)
CYCLE_PATTERN = re.compile(r"(?:respawn\s+)?cycle\s*#(\d+)", re.IGNORECASE)
ITERATION_PATTERN = re.compile(r"\biteration\s*#?(\d+)(?:\s*(?:/|of)\s*(\d+))?", re.IGNORECASE)
BRACKET_ITERATION_PATTERN = re.compile(r"\[(\d+)\s*/\s*(\d+)\]")
MAX_ITERATIONS_PATTERN = re.compile(r"max[_-]?iterations\s*[=:]\s*(\d+)", re.IGNORECASE)
ACTIVITY_PATTERN = re.compile(
    r"TodoWrite|todos?\s+(?:updated|written|saved)|^\s*⏺\s*\w+\(",
    re.IGNORECASE,
)

_ICON_STATUS = {
    "✓": TodoStatus.COMPLETED,
    "✅": TodoStatus.COMPLETED,
    "☒": TodoStatus.COMPLETED,
    "◐": TodoStatus.IN_PROGRESS,
    "⏳": TodoStatus.IN_PROGRESS,
    "☐": TodoStatus.PENDING,
}


def strip_ansi(text: str) -> str:
    """Remove terminal control sequences."""
    return ANSI_ESCAPE.sub("", text)


def normalize_content(content: str) -> str:
    return " ".join(content.split())


def todo_id_for(content: str) -> str:
    """Stable id derived from normalized, case-folded content."""
    digest = hashlib.sha1(normalize_content(content).lower().encode("utf-8")).hexdigest()
    return f"todo-{digest[:12]}"


class SignalTracker:
    """Stateful scanner over one agent's output stream.

    Starts disabled. While disabled every pattern is ignored unless the
    auto-enable policy (`TrackerState.auto_enable_allowed`) is on, in which case
    a recognized loop/todo/completion pattern enables the tracker first and is
    then processed normally. Explicit `enable()`/`disable()` always apply.
    """

    def __init__(self, timers: TimerService | None = None, debounce_s: float = EVENT_DEBOUNCE_S):
        self._timers = timers or ThreadingTimerService()
        self.events = EventEmitter()
        self._state = TrackerState()
        self._todos: dict[str, TodoItem] = {}
        self._line_buffer = ""
        self._promise_carry = ""
        self._lock = threading.RLock()
        self._loop_debouncer = Debouncer(self._timers, debounce_s, self._emit_loop_update)
        self._todo_debouncer = Debouncer(self._timers, debounce_s, self._emit_todo_update)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrackerState:
        with self._lock:
            return self._state.model_copy()

    @property
    def todos(self) -> list[TodoItem]:
        """Todos in detection order."""
        with self._lock:
            return [t.model_copy() for t in sorted(self._todos.values(), key=lambda t: t.detected_at)]

    @property
    def enabled(self) -> bool:
        return self._state.enabled

    # ------------------------------------------------------------------
    # Policy
    # ------------------------------------------------------------------

    def enable(self) -> None:
        with self._lock:
            if self._state.enabled:
                return
            self._state.enabled = True
            snapshot = self._state.model_copy()
        logger.info("Signal tracker enabled")
        self.events.emit("enabled", snapshot)
        self._loop_debouncer.trigger()

    def disable(self) -> None:
        with self._lock:
            if not self._state.enabled:
                return
            self._state.enabled = False
        logger.info("Signal tracker disabled")
        self._loop_debouncer.trigger()

    def allow_auto_enable(self) -> None:
        with self._lock:
            self._state.auto_enable_allowed = True

    def disallow_auto_enable(self) -> None:
        with self._lock:
            self._state.auto_enable_allowed = False

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def process_chunk(self, text: str) -> None:
        """Consume one arbitrary, possibly line-fragmented, piece of output."""
        if not text:
            return
        clean = strip_ansi(text)
        with self._lock:
            if not self._state.enabled:
                if not self._state.auto_enable_allowed:
                    return
                pending = self._line_buffer + clean
                carried = self._promise_carry + clean
                if not self._should_auto_enable(pending) and not PROMISE_PATTERN.search(carried):
                    # Keep fragments so a pattern split across chunks can still enable
                    self._line_buffer = self._bounded_partial(pending.rsplit("\n", 1)[-1])
                    self._promise_carry = self._open_tag_tail(carried)
                    return
                self._state.enabled = True
                logger.info("Signal tracker auto-enabled by recognized output")
                self.events.emit("enabled", self._state.model_copy())
                self._loop_debouncer.trigger()

            *lines, partial = (self._line_buffer + clean).split("\n")
            self._line_buffer = self._bounded_partial(partial)
            for line in lines:
                self._process_line(line.rstrip("\r"))

            phrases = self._scan_promises(clean)

        for phrase in phrases:
            self.events.emit("completion", phrase)

    def flush(self) -> None:
        """Force immediate delivery of pending debounced notifications."""
        self._loop_debouncer.flush()
        self._todo_debouncer.flush()

    def reset(self, soft: bool = False) -> None:
        """Clear tracked state.

        A soft reset clears todos and loop activity but keeps `enabled` and the
        auto-enable policy. A full reset returns everything to defaults.
        """
        with self._lock:
            enabled = self._state.enabled
            auto_enable = self._state.auto_enable_allowed
            self._state = TrackerState()
            if soft:
                self._state.enabled = enabled
                self._state.auto_enable_allowed = auto_enable
            self._todos.clear()
            self._line_buffer = ""
            self._promise_carry = ""
        self._loop_debouncer.cancel()
        self._todo_debouncer.cancel()
        self._emit_loop_update()
        self._emit_todo_update()

    # ------------------------------------------------------------------
    # Scanning
    # ------------------------------------------------------------------

    def _should_auto_enable(self, text: str) -> bool:
        if LOOP_START_PATTERN.search(text) or PROMISE_PATTERN.search(text):
            return True
        if "TodoWrite" in text:
            return True
        if ITERATION_PATTERN.search(text) or MAX_ITERATIONS_PATTERN.search(text):
            return True
        return any(
            CHECKBOX_PATTERN.match(line) or NATIVE_PATTERN.match(line) or NATIVE_TREE_PATTERN.match(line)
            for line in text.split("\n")
        )

    def _scan_promises(self, clean: str) -> list[str]:
        """Find fully closed completion tags, carrying an open tag across chunks."""
        combined = self._promise_carry + clean
        phrases: list[str] = []
        end = 0
        for match in PROMISE_PATTERN.finditer(combined):
            phrases.append(match.group(1))
            end = match.end()
        self._promise_carry = self._open_tag_tail(combined[end:])

        for phrase in phrases:
            self._handle_completion(phrase)
        return phrases

    @staticmethod
    def _bounded_partial(partial: str) -> str:
        if len(partial) > MAX_LINE_BUFFER:
            logger.warning("Signal tracker line buffer overflow; dropping partial line")
            return ""
        return partial

    @staticmethod
    def _open_tag_tail(rest: str) -> str:
        """Return the trailing text that may still become a completion tag."""
        lowered = rest.lower()
        open_at = lowered.rfind(PROMISE_OPEN)
        if open_at != -1:
            carry = rest[open_at:]
        else:
            carry = ""
            for size in range(len(PROMISE_OPEN) - 1, 0, -1):
                if lowered.endswith(PROMISE_OPEN[:size]):
                    carry = rest[-size:]
                    break
        return carry if len(carry) <= MAX_PROMISE_CARRY else ""

    def _handle_completion(self, phrase: str) -> None:
        now = self._timers.now()
        if self._state.completion_phrase is None:
            self._state.completion_phrase = phrase
        self._state.active = False
        self._state.last_activity = now
        logger.info(f"Completion phrase detected: {phrase}")
        self._loop_debouncer.trigger()

    def _process_line(self, line: str) -> None:
        if not line.strip():
            return
        now = self._timers.now()
        self._detect_loop(line, now)
        if ACTIVITY_PATTERN.search(line):
            self._state.last_activity = now
        if any(trigger in line for trigger in TODO_TRIGGERS):
            self._detect_todo(line, now)

    def _detect_loop(self, line: str, now: float) -> None:
        changed = False
        state = self._state

        if LOOP_START_PATTERN.search(line):
            if not state.active:
                state.active = True
                state.started_at = now
                changed = True

        match = ELAPSED_PATTERN.search(line)
        if match:
            hours = float(match.group(1))
            if state.elapsed_hours != hours:
                state.elapsed_hours = hours
                changed = True

        match = CYCLE_PATTERN.search(line)
        if match:
            cycle = int(match.group(1))
            if cycle > state.cycle_count:
                state.cycle_count = cycle
                changed = True

        match = ITERATION_PATTERN.search(line) or BRACKET_ITERATION_PATTERN.search(line)
        if match:
            current = int(match.group(1))
            total = int(match.group(2)) if match.group(2) else None
            if current != state.cycle_count:
                state.cycle_count = current
                changed = True
            if total is not None and total != state.max_iterations:
                state.max_iterations = total
                changed = True
            if not state.active:
                state.active = True
                state.started_at = state.started_at or now
                changed = True

        match = MAX_ITERATIONS_PATTERN.search(line)
        if match:
            total = int(match.group(1))
            if total != state.max_iterations:
                state.max_iterations = total
                changed = True

        if changed:
            state.last_activity = now
            self._loop_debouncer.trigger()

    def _detect_todo(self, line: str, now: float) -> None:
        parsed = self._parse_todo(line)
        if parsed is None:
            return
        content, status = parsed
        content = normalize_content(content)
        if not content:
            return
        self._upsert_todo(content, status, now)

    @staticmethod
    def _parse_todo(line: str) -> tuple[str, TodoStatus] | None:
        match = CHECKBOX_PATTERN.match(line)
        if match:
            status = TodoStatus.COMPLETED if match.group(1).lower() == "x" else TodoStatus.PENDING
            return match.group(2), status

        match = INDICATOR_PATTERN.search(line)
        if match:
            return match.group(2), _ICON_STATUS.get(match.group(1), TodoStatus.PENDING)

        match = STATUS_PATTERN.search(line)
        if match:
            return match.group(1), TodoStatus(match.group(2))

        match = NATIVE_TREE_PATTERN.match(line) or NATIVE_PATTERN.match(line)
        if match:
            return match.group(2), _ICON_STATUS.get(match.group(1), TodoStatus.PENDING)

        return None

    def _upsert_todo(self, content: str, status: TodoStatus, now: float) -> None:
        todo_id = todo_id_for(content)
        existing = self._todos.get(todo_id)
        if existing is not None:
            if existing.status == TodoStatus.COMPLETED and TODO_STATUS_RANK[status] < TODO_STATUS_RANK[existing.status]:
                # Completed is sticky; stale redraws of an old list must not reopen it
                logger.debug(f"Ignoring status regression for completed todo {todo_id}")
                return
            if existing.status == status:
                return
            existing.status = status
            existing.detected_at = now
        else:
            if len(self._todos) >= MAX_TODOS:
                oldest = min(self._todos.values(), key=lambda t: t.detected_at)
                del self._todos[oldest.id]
                logger.debug(f"Todo cap reached; evicted {oldest.id}")
            self._todos[todo_id] = TodoItem(id=todo_id, content=content, status=status, detected_at=now)
        self._state.last_activity = now
        self._todo_debouncer.trigger()

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _emit_loop_update(self) -> None:
        self.events.emit("loop_update", self.state)

    def _emit_todo_update(self) -> None:
        self.events.emit("todo_update", self.todos)
