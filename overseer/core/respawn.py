"""Respawn Controller: keep one autonomous agent progressing.

One controller supervises one agent. It watches the agent's output (through
its own SignalTracker), hook signals and transcript signals, decides when the
agent is genuinely idle, and writes the next continuation prompt back.

State machine::

    stopped -> watching -> confirming_idle -> watching
                        -> auto_accepting  -> watching
                        -> ai_checking     -> plan_checking | sending | watching
                        -> plan_checking   -> sending | watching
                        -> sending         -> watching
            (any) -> blocked    (circuit breaker, left only by reset_circuit_breaker)
            (any) -> paused     (pause(); left only by resume() or stop())
            (any) -> stopped    (stop(), duration expiry)

Events on `RespawnController.events`:
    state_changed(prev, new), log(message), cycle_started(n), step_sent(name),
    cycle_completed(n), auto_accept_sent(), elicitation_held(),
    ai_check_started(), ai_check_completed(verdict), ai_check_failed(error),
    plan_check_started(), plan_check_completed(verdict), plan_check_failed(error),
    plan_approved(), blocked(reason), completion(phrase)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Executor
from pathlib import Path
from typing import Any

from overseer.core.ai_checker import AiIdleChecker, AiPlanChecker, Judge
from overseer.core.collaborators import SessionWriter
from overseer.core.events import EventEmitter
from overseer.core.models import (
    AiCheckResult,
    AiCheckState,
    CircuitBreakerStatus,
    CircuitState,
    RespawnConfig,
    RespawnState,
    RespawnStatus,
)
from overseer.core.signals import SignalTracker, strip_ansi
from overseer.core.timers import ThreadingTimerService, TimerHandle, TimerService
from overseer.core.transcript import TranscriptWatcher

logger = logging.getLogger(__name__)

CLEAR_COMMAND = "/clear\r"
INIT_COMMAND = "/init\r"
# Default option on an elicitation dialog is selected with Enter
AFFIRMATIVE_KEYSTROKE = "\r"

_IDLE_STATES = (RespawnState.WATCHING, RespawnState.CONFIRMING_IDLE)


class RespawnController:
    """Feedback-control loop over a single agent session.

    Args:
        write: Writes raw input into the agent session.
        config: Initial configuration; update later with `update_config`.
        tracker: The agent's SignalTracker. Created (and enabled) if omitted.
        timers: Clock and timer scheduling.
        judge: Callable used by both AI checkers.
        executor: Executor for AI judge calls.
        name: Label used in log messages.
    """

    def __init__(
        self,
        write: SessionWriter,
        config: RespawnConfig | None = None,
        tracker: SignalTracker | None = None,
        timers: TimerService | None = None,
        judge: Judge | None = None,
        executor: Executor | None = None,
        name: str = "agent",
    ):
        self.name = name
        self._write_fn = write
        self._config = config or RespawnConfig()
        self._timers = timers or ThreadingTimerService()
        if tracker is None:
            tracker = SignalTracker(self._timers)
            tracker.enable()
        self.tracker = tracker
        self.idle_checker = AiIdleChecker(self._config.ai_idle_check, judge, self._timers, executor)
        self.plan_checker = AiPlanChecker(self._config.ai_plan_check, judge, self._timers, executor)
        self.events = EventEmitter()

        self._lock = threading.RLock()
        self._state = RespawnState.STOPPED
        # Bumped on every start/stop; callbacks from an older epoch are ignored
        self._epoch = 0
        self._active_timers: dict[str, tuple[object, TimerHandle]] = {}
        self._cycle_count = 0
        self._started_at: float | None = None
        self._last_output_at: float | None = None
        self._elicitation_pending = False
        self._progress_since_send = True
        self._breaker = CircuitBreakerStatus(threshold=self._config.circuit_breaker_threshold)
        self._last_action: str | None = None
        self._last_action_at: float | None = None
        self._stop_reason: str | None = None
        self._context = ""
        self._transcript: TranscriptWatcher | None = None

        self.tracker.events.on("todo_update", self._on_tracker_progress)
        self.tracker.events.on("loop_update", self._on_tracker_progress)
        self.tracker.events.on("completion", self._on_tracker_completion)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def state(self) -> RespawnState:
        return self._state

    @property
    def config(self) -> RespawnConfig:
        return self._config

    @property
    def cycle_count(self) -> int:
        return self._cycle_count

    @property
    def is_running(self) -> bool:
        return self._state not in (RespawnState.STOPPED, RespawnState.BLOCKED)

    @property
    def status(self) -> RespawnStatus:
        with self._lock:
            return RespawnStatus(
                state=self._state,
                cycle_count=self._cycle_count,
                circuit_breaker=self._breaker.model_copy(),
                last_action=self._last_action,
                last_action_at=self._last_action_at,
                active_timers=sorted(self._active_timers),
                elicitation_pending=self._elicitation_pending,
                ai_idle_check=self.idle_checker.status(),
                ai_plan_check=self.plan_checker.status(),
                stop_reason=self._stop_reason,
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Begin supervising. A no-op unless currently stopped."""
        with self._lock:
            if self._state != RespawnState.STOPPED:
                logger.debug(f"[{self.name}] start() ignored in state {self._state.value}")
                return
            self._epoch += 1
            self._cycle_count = 0
            self._elicitation_pending = False
            self._progress_since_send = True
            self._stop_reason = None
            self._context = ""
            now = self._timers.now()
            self._started_at = now
            self._last_output_at = now
            self._record_action("Started")
            self._arm_duration_timer()
            if self._transcript is not None:
                self._transcript.start()
            if self._breaker.state == CircuitState.OPEN:
                self._set_state(RespawnState.BLOCKED)
                return
            self._set_state(RespawnState.WATCHING)
            self._arm_no_output_timer()

    def stop(self, reason: str = "stopped") -> None:
        """Stop supervising and release every timer. Safe to call repeatedly."""
        with self._lock:
            if self._state == RespawnState.STOPPED:
                return
            self._epoch += 1
            self._cancel_all_timers()
            self.idle_checker.cancel()
            self.plan_checker.cancel()
            if self._transcript is not None:
                self._transcript.stop()
            self._stop_reason = reason
            self._record_action(f"Stopped: {reason}")
            self._set_state(RespawnState.STOPPED)

    def pause(self) -> None:
        """Suspend idle detection without stopping.

        Output keeps flowing to the tracker and the duration limit keeps
        running; every other timer and any in-flight AI check is dropped.
        The cycle count and circuit breaker are kept for `resume()`.
        """
        with self._lock:
            if self._state in (RespawnState.STOPPED, RespawnState.BLOCKED, RespawnState.PAUSED):
                logger.debug(f"[{self.name}] pause() ignored in state {self._state.value}")
                return
            self._epoch += 1
            self._cancel_all_timers()
            self.idle_checker.cancel()
            self.plan_checker.cancel()
            self._arm_duration_timer()
            self._record_action("Paused")
            self._set_state(RespawnState.PAUSED)

    def resume(self) -> None:
        """Continue watching after `pause()`. A no-op unless paused."""
        with self._lock:
            if self._state != RespawnState.PAUSED:
                return
            self._record_action("Resumed")
            self._set_state(RespawnState.WATCHING)
            self._arm_no_output_timer()
            if self._elicitation_pending:
                self._handle_elicitation()

    def shutdown(self) -> None:
        """Stop and release executor threads owned by the AI checkers."""
        self.stop("shutdown")
        self.idle_checker.shutdown()
        self.plan_checker.shutdown()
        self.tracker.events.off("todo_update", self._on_tracker_progress)
        self.tracker.events.off("loop_update", self._on_tracker_progress)
        self.tracker.events.off("completion", self._on_tracker_completion)

    def update_config(self, **changes: Any) -> RespawnConfig:
        """Merge `changes` into the configuration; applies from the next decision.

        Nested AI check settings may be given as partial dicts.
        """
        with self._lock:
            merged = self._config.model_dump()
            for key, value in changes.items():
                if key in ("ai_idle_check", "ai_plan_check") and isinstance(value, dict):
                    merged[key].update(value)
                elif hasattr(value, "model_dump"):
                    merged[key] = value.model_dump()
                else:
                    merged[key] = value
            previous = self._config
            self._config = RespawnConfig.model_validate(merged)
            self.idle_checker.update_config(self._config.ai_idle_check)
            self.plan_checker.update_config(self._config.ai_plan_check)
            self._breaker.threshold = self._config.circuit_breaker_threshold
            if self._config.duration_minutes != previous.duration_minutes and self.is_running:
                self._arm_duration_timer()
            self._record_action(f"Config updated: {', '.join(sorted(changes))}")
            return self._config

    def reset_circuit_breaker(self) -> None:
        """Close the breaker; a blocked controller resumes watching."""
        with self._lock:
            self._breaker = CircuitBreakerStatus(threshold=self._config.circuit_breaker_threshold)
            self._progress_since_send = True
            self._record_action("Circuit breaker reset")
            if self._state == RespawnState.BLOCKED:
                self._set_state(RespawnState.WATCHING)
                self._arm_no_output_timer()

    def attach_transcript(self, path: str | Path, poll_interval_s: float = 1.0) -> TranscriptWatcher:
        """Tail the agent's structured transcript for turn/plan signals."""
        with self._lock:
            if self._transcript is not None:
                self._transcript.stop()
            watcher = TranscriptWatcher(path, self._timers, poll_interval_s)
            watcher.events.on("turn_complete", self.on_transcript_complete)
            watcher.events.on("plan_mode", self.on_transcript_plan_mode)
            self._transcript = watcher
            if self._state != RespawnState.STOPPED:
                watcher.start()
            self._record_action(f"Transcript attached: {path}")
            return watcher

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def on_output(self, chunk: str) -> None:
        """Feed raw agent output. Forwards to the tracker and tracks silence."""
        self.tracker.process_chunk(chunk)
        with self._lock:
            if self._state == RespawnState.STOPPED:
                return
            clean = strip_ansi(chunk)
            limit = max(self._config.ai_idle_check.max_context_chars, self._config.ai_plan_check.max_context_chars)
            self._context = (self._context + clean)[-limit:]
            if not clean.strip():
                return
            self._last_output_at = self._timers.now()
            if self._state == RespawnState.CONFIRMING_IDLE:
                self._cancel_timer("confirm")
                self._record_action("Output resumed; idle not confirmed")
                self._set_state(RespawnState.WATCHING)
            if self._state == RespawnState.WATCHING:
                self._arm_no_output_timer()

    def on_elicitation(self) -> None:
        """A blocking question is open; suppress continuation until cleared."""
        with self._lock:
            if self._state == RespawnState.STOPPED:
                return
            self._elicitation_pending = True
            self._record_action("Elicitation pending")
            if self._state in _IDLE_STATES:
                self._handle_elicitation()

    def clear_elicitation(self) -> None:
        """The question was answered by a human or another actor."""
        with self._lock:
            if not self._elicitation_pending:
                return
            self._elicitation_pending = False
            self._record_action("Elicitation cleared")
            if self._state == RespawnState.AUTO_ACCEPTING:
                self._cancel_timer("auto_accept")
                self._set_state(RespawnState.WATCHING)
            if self._state == RespawnState.WATCHING:
                self._arm_no_output_timer()

    def on_stop_hook(self) -> None:
        """Assistant turn ended (authoritative idle signal, confirmed by silence)."""
        self._begin_confirm("stop_hook")

    def on_transcript_complete(self) -> None:
        self._begin_confirm("transcript")

    def on_idle_prompt(self) -> None:
        """Assistant has been silent beyond the hook's threshold."""
        with self._lock:
            if self._last_output_at is not None:
                quiet_s = self._timers.now() - self._last_output_at
                if quiet_s < self._config.idle_timeout_ms / 1000:
                    self._record_action(f"Ignoring idle prompt; output {quiet_s:.1f}s ago")
                    return
            self._handle_idle("idle_prompt")

    def on_transcript_plan_mode(self) -> None:
        self._handle_idle("transcript_plan_mode")

    # ------------------------------------------------------------------
    # Decision algorithm
    # ------------------------------------------------------------------

    def _begin_confirm(self, source: str) -> None:
        with self._lock:
            if self._state != RespawnState.WATCHING:
                return
            delay_s = self._config.completion_confirm_ms / 1000
            if delay_s <= 0:
                self._handle_idle(source)
                return
            self._record_action(f"Idle signal from {source}; confirming for {delay_s:.1f}s")
            self._set_state(RespawnState.CONFIRMING_IDLE)
            self._schedule("confirm", delay_s, lambda: self._handle_idle(source))

    def _handle_idle(self, source: str) -> None:
        with self._lock:
            if self._state not in _IDLE_STATES:
                logger.debug(f"[{self.name}] Idle signal from {source} ignored in state {self._state.value}")
                return
            self._cancel_timer("confirm")
            self._cancel_timer("no_output")
            self._record_action(f"Idle detected ({source})")

            if self._elicitation_pending:
                self._handle_elicitation()
                return

            idle_state = self.idle_checker.state
            if idle_state == AiCheckState.READY:
                self._run_idle_check()
                return
            if idle_state == AiCheckState.BACKOFF:
                self._not_confirmed("AI idle check backing off after failure")
                return
            # DISABLED, or COOLDOWN after a recent positive verdict
            self._plan_step()

    def _handle_elicitation(self) -> None:
        self._cancel_timer("confirm")
        if self._config.auto_accept_prompts:
            delay_s = self._config.auto_accept_delay_ms / 1000
            self._record_action(f"Auto-accepting prompt in {delay_s:.1f}s")
            self._set_state(RespawnState.AUTO_ACCEPTING)
            self._schedule("auto_accept", delay_s, self._do_auto_accept)
            return
        self._record_action("Holding: waiting for elicitation to be answered")
        self.events.emit("elicitation_held")
        self._set_state(RespawnState.WATCHING)

    def _do_auto_accept(self) -> None:
        with self._lock:
            if self._state != RespawnState.AUTO_ACCEPTING:
                return
            if self._elicitation_pending and self._write(AFFIRMATIVE_KEYSTROKE, "auto_accept"):
                self._elicitation_pending = False
                self._record_action("Auto-accepted prompt")
                self.events.emit("auto_accept_sent")
            self._set_state(RespawnState.WATCHING)
            self._arm_no_output_timer()

    def _run_idle_check(self) -> None:
        epoch = self._epoch
        self._set_state(RespawnState.AI_CHECKING)
        self._record_action("Running AI idle check")
        self.events.emit("ai_check_started")
        if not self.idle_checker.check(self._context, lambda r: self._on_idle_verdict(epoch, r)):
            self._not_confirmed("AI idle check unavailable")

    def _on_idle_verdict(self, epoch: int, result: AiCheckResult) -> None:
        with self._lock:
            if epoch != self._epoch or self._state != RespawnState.AI_CHECKING:
                return
            if result.failed:
                self.events.emit("ai_check_failed", result.error)
                self._not_confirmed(f"AI idle check failed: {result.error}")
                return
            self.events.emit("ai_check_completed", result.verdict)
            if result.verdict != self.idle_checker.positive:
                self._not_confirmed(f"AI idle check says {result.verdict}")
                return
            self._record_action("AI idle check confirmed idle")
            if self._elicitation_pending:
                self._handle_elicitation()
                return
            self._plan_step()

    def _plan_step(self) -> None:
        plan_state = self.plan_checker.state
        if plan_state == AiCheckState.READY:
            epoch = self._epoch
            self._set_state(RespawnState.PLAN_CHECKING)
            self._record_action("Running AI plan check")
            self.events.emit("plan_check_started")
            if not self.plan_checker.check(self._context, lambda r: self._on_plan_verdict(epoch, r)):
                self._not_confirmed("AI plan check unavailable")
            return
        if plan_state == AiCheckState.BACKOFF:
            self._not_confirmed("AI plan check backing off after failure")
            return
        self._start_cycle()

    def _on_plan_verdict(self, epoch: int, result: AiCheckResult) -> None:
        with self._lock:
            if epoch != self._epoch or self._state != RespawnState.PLAN_CHECKING:
                return
            if result.failed:
                self.events.emit("plan_check_failed", result.error)
                self._not_confirmed(f"AI plan check failed: {result.error}")
                return
            self.events.emit("plan_check_completed", result.verdict)
            if self._elicitation_pending:
                self._handle_elicitation()
                return
            if result.verdict == self.plan_checker.positive:
                if self._write(self._config.plan_approval_input, "plan_approval"):
                    self._progress_since_send = True
                    self._record_action("Approved pending plan")
                    self.events.emit("plan_approved")
                self._set_state(RespawnState.WATCHING)
                self._arm_no_output_timer()
                return
            self._start_cycle()

    def _not_confirmed(self, reason: str) -> None:
        self._record_action(f"Not idle: {reason}")
        self._set_state(RespawnState.WATCHING)
        self._arm_no_output_timer()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def _start_cycle(self) -> None:
        if self._cycle_count > 0:
            if self._progress_since_send:
                self._breaker.consecutive_unproductive = 0
            else:
                self._breaker.consecutive_unproductive += 1
                if self._breaker.consecutive_unproductive >= self._breaker.threshold:
                    self._trip_breaker()
                    return

        config = self._config
        steps: list[tuple[str, str]] = []
        if config.send_clear:
            steps.append(("clear", CLEAR_COMMAND))
        if config.send_init:
            steps.append(("init", INIT_COMMAND))
        if self._cycle_count == 0 and config.kickstart_prompt:
            steps.append(("kickstart", config.kickstart_prompt + "\r"))
        else:
            steps.append(("update", config.update_prompt + "\r"))

        self._set_state(RespawnState.SENDING)
        self._record_action(f"Starting cycle {self._cycle_count + 1}")
        self.events.emit("cycle_started", self._cycle_count + 1)
        self._send_step(self._epoch, steps, 0)

    def _send_step(self, epoch: int, steps: list[tuple[str, str]], index: int) -> None:
        with self._lock:
            if epoch != self._epoch or self._state != RespawnState.SENDING:
                return
            if self._elicitation_pending:
                self._record_action("Cycle aborted: elicitation pending")
                self.events.emit("elicitation_held")
                self._set_state(RespawnState.WATCHING)
                return
            step, data = steps[index]
            if not self._write(data, step):
                self._not_confirmed(f"write of step '{step}' failed")
                return
            self.events.emit("step_sent", step)
            delay_s = self._config.inter_step_delay_ms / 1000
            if index + 1 < len(steps):
                self._schedule("step", delay_s, lambda: self._send_step(epoch, steps, index + 1))
            else:
                self._schedule("step", delay_s, lambda: self._complete_cycle(epoch))

    def _complete_cycle(self, epoch: int) -> None:
        with self._lock:
            if epoch != self._epoch or self._state != RespawnState.SENDING:
                return
            self._cycle_count += 1
            self._progress_since_send = False
            self._record_action(f"Cycle {self._cycle_count} complete")
            self.events.emit("cycle_completed", self._cycle_count)
            self._set_state(RespawnState.WATCHING)
            self._arm_no_output_timer()

    def _trip_breaker(self) -> None:
        reason = f"{self._breaker.consecutive_unproductive} consecutive cycles without progress"
        self._breaker.state = CircuitState.OPEN
        self._breaker.reason = reason
        for name in list(self._active_timers):
            if name != "duration":
                self._cancel_timer(name)
        logger.warning(f"[{self.name}] Circuit breaker open: {reason}")
        self._record_action(f"Blocked: {reason}")
        self.events.emit("blocked", reason)
        self._set_state(RespawnState.BLOCKED)

    def _write(self, data: str, step: str) -> bool:
        try:
            self._write_fn(data)
        except Exception as e:
            logger.error(f"[{self.name}] Failed to write '{step}' to session: {e}")
            self._record_action(f"Write failed ({step}): {e}")
            return False
        self._record_action(f"Sent {step}")
        return True

    # ------------------------------------------------------------------
    # Tracker relay
    # ------------------------------------------------------------------

    def _on_tracker_progress(self, *_: Any) -> None:
        with self._lock:
            self._progress_since_send = True

    def _on_tracker_completion(self, phrase: str) -> None:
        self._record_action(f"Completion phrase detected: {phrase}")
        self.events.emit("completion", phrase)
        if self._config.stop_on_completion:
            self.stop(f"completion phrase {phrase}")

    # ------------------------------------------------------------------
    # Timers and bookkeeping
    # ------------------------------------------------------------------

    def _schedule(self, name: str, delay_s: float, callback: Callable[[], Any]) -> None:
        with self._lock:
            self._cancel_timer(name)
            token = object()
            epoch = self._epoch

            def fire() -> None:
                with self._lock:
                    entry = self._active_timers.get(name)
                    if epoch != self._epoch or entry is None or entry[0] is not token:
                        return
                    del self._active_timers[name]
                callback()

            self._active_timers[name] = (token, self._timers.call_later(delay_s, fire))

    def _cancel_timer(self, name: str) -> None:
        entry = self._active_timers.pop(name, None)
        if entry is not None:
            entry[1].cancel()

    def _cancel_all_timers(self) -> None:
        for name in list(self._active_timers):
            self._cancel_timer(name)

    def _arm_no_output_timer(self) -> None:
        self._schedule("no_output", self._config.no_output_timeout_ms / 1000, self._on_no_output)

    def _on_no_output(self) -> None:
        self._handle_idle("no_output")

    def _arm_duration_timer(self) -> None:
        self._cancel_timer("duration")
        minutes = self._config.duration_minutes
        if minutes is None or self._started_at is None:
            return
        remaining = self._started_at + minutes * 60 - self._timers.now()
        self._schedule("duration", max(0.0, remaining), lambda: self.stop("duration elapsed"))

    def _set_state(self, new: RespawnState) -> None:
        prev = self._state
        if prev == new:
            return
        self._state = new
        logger.info(f"[{self.name}] {prev.value} -> {new.value}")
        self.events.emit("state_changed", prev, new)

    def _record_action(self, message: str) -> None:
        self._last_action = message
        self._last_action_at = self._timers.now()
        logger.info(f"[{self.name}] {message}")
        self.events.emit("log", message)
