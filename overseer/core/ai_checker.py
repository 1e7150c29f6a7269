"""AI-assisted judgment calls for the Respawn Controller.

Two judges share one base: `AiIdleChecker` (is the agent really idle?) and
`AiPlanChecker` (is it paused on a plan-approval screen?). Each judge allows at
most one call in flight; a request while one is outstanding is refused, not
queued. Judge calls run on an executor and race a timeout timer; whichever
finishes first decides, and a late judge answer is dropped.
"""

from __future__ import annotations

import logging
import re
import subprocess
import threading
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from pathlib import Path

from overseer.core.models import AiCheckConfig, AiCheckResult, AiCheckState, AiCheckStatus
from overseer.core.prompts import TemplateError, render_template
from overseer.core.signals import strip_ansi
from overseer.core.timers import ThreadingTimerService, TimerHandle, TimerService

logger = logging.getLogger(__name__)

# judge(prompt, model, timeout_s) -> raw model answer
Judge = Callable[[str, str, float], str]
ResultCallback = Callable[[AiCheckResult], None]


class JudgeError(Exception):
    """The judge model could not produce an answer."""

    pass


class ClaudeCliJudge:
    """Judge that asks the Claude CLI in non-interactive print mode."""

    def __init__(self, cli_name: str = "claude", cwd: str | Path | None = None):
        self.cli_name = cli_name
        self.cwd = Path(cwd) if cwd else None

    def build_command(self, prompt: str, model: str) -> list[str]:
        # claude: --model <id> before -p, prompt as the final argument
        return [self.cli_name, "--model", model, "-p", prompt]

    def __call__(self, prompt: str, model: str, timeout_s: float) -> str:
        try:
            result = subprocess.run(
                self.build_command(prompt, model),
                capture_output=True,
                text=True,
                timeout=timeout_s,
                cwd=self.cwd,
            )
        except subprocess.TimeoutExpired as e:
            raise JudgeError(f"{self.cli_name} timed out after {timeout_s:.0f}s") from e
        except OSError as e:
            raise JudgeError(f"Failed to run {self.cli_name}: {e}") from e

        if result.returncode != 0:
            stderr = strip_ansi(result.stderr or "").strip()[-500:]
            raise JudgeError(f"{self.cli_name} exited with {result.returncode}: {stderr}")
        return strip_ansi(result.stdout)


class AiChecker:
    """Base class for single-flight, cooldown-disciplined AI judges."""

    label = "ai check"
    template_name = ""
    positive = ""
    negative = ""

    def __init__(
        self,
        config: AiCheckConfig,
        judge: Judge | None = None,
        timers: TimerService | None = None,
        executor: Executor | None = None,
    ):
        self._config = config
        self._judge = judge or ClaudeCliJudge()
        self._timers = timers or ThreadingTimerService()
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="ai-check")
        self._verdict_re = re.compile(rf"^\s*({self.negative}|{self.positive})\b", re.IGNORECASE)
        self._lock = threading.RLock()

        self._in_flight: object | None = None
        self._timeout_handle: TimerHandle | None = None
        self._callback: ResultCallback | None = None
        self._started_at = 0.0
        self._cooldown_until: float | None = None
        self._backoff_until: float | None = None
        self._consecutive_errors = 0
        self._disabled_by_errors = False
        self._last_verdict: str | None = None
        self._last_error: str | None = None

    @property
    def config(self) -> AiCheckConfig:
        return self._config

    def update_config(self, config: AiCheckConfig) -> None:
        with self._lock:
            if config.enabled and not self._config.enabled:
                # Re-enabling clears the error history
                self._disabled_by_errors = False
                self._consecutive_errors = 0
                self._backoff_until = None
            self._config = config

    @property
    def state(self) -> AiCheckState:
        with self._lock:
            if not self._config.enabled or self._disabled_by_errors:
                return AiCheckState.DISABLED
            if self._in_flight is not None:
                return AiCheckState.CHECKING
            now = self._timers.now()
            if self._backoff_until is not None and now < self._backoff_until:
                return AiCheckState.BACKOFF
            if self._cooldown_until is not None and now < self._cooldown_until:
                return AiCheckState.COOLDOWN
            return AiCheckState.READY

    def status(self) -> AiCheckStatus:
        with self._lock:
            return AiCheckStatus(
                status=self.state,
                last_verdict=self._last_verdict,
                last_error=self._last_error,
                consecutive_errors=self._consecutive_errors,
                cooldown_until=self._cooldown_until,
            )

    def check(self, context: str, on_result: ResultCallback) -> bool:
        """Submit `context` to the judge.

        Returns False (and never calls `on_result`) when the judge is not READY
        or its prompt cannot be rendered.
        Otherwise `on_result` is called exactly once, from the executor thread
        or the timer thread, unless the check is cancelled first.
        """
        with self._lock:
            if self.state != AiCheckState.READY:
                return False
            config = self._config
            try:
                prompt = render_template(self.template_name, output=context[-config.max_context_chars :])
            except TemplateError as e:
                self._last_error = str(e)
                logger.error(f"Cannot start {self.label}: {e}")
                return False
            token = object()
            self._in_flight = token
            self._callback = on_result
            self._started_at = self._timers.now()
            timeout_s = config.check_timeout_ms / 1000
            self._timeout_handle = self._timers.call_later(
                timeout_s,
                lambda: self._finish(token, AiCheckResult(error=f"{self.label} timed out after {timeout_s:.0f}s")),
            )

        logger.info(f"Starting {self.label} with model {config.model}")
        future = self._executor.submit(self._judge, prompt, config.model, timeout_s)
        future.add_done_callback(lambda f: self._on_judge_done(token, f))
        return True

    def cancel(self) -> None:
        """Abandon the in-flight check; its eventual answer is ignored."""
        with self._lock:
            if self._in_flight is None:
                return
            self._in_flight = None
            self._callback = None
            if self._timeout_handle is not None:
                self._timeout_handle.cancel()
                self._timeout_handle = None
        logger.info(f"Cancelled in-flight {self.label}")

    def shutdown(self) -> None:
        self.cancel()
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def parse_verdict(self, text: str) -> str | None:
        for line in text.splitlines():
            if not line.strip():
                continue
            match = self._verdict_re.match(line)
            return match.group(1).upper() if match else None
        return None

    def _on_judge_done(self, token: object, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._finish(token, AiCheckResult(error=str(exc) or type(exc).__name__))
            return
        text = future.result() or ""
        verdict = self.parse_verdict(text)
        if verdict is None:
            self._finish(token, AiCheckResult(error=f"Unparseable {self.label} answer: {text.strip()[:120]!r}"))
            return
        reasoning = "\n".join(text.strip().splitlines()[1:]).strip()
        self._finish(token, AiCheckResult(verdict=verdict, reasoning=reasoning))

    def _finish(self, token: object, result: AiCheckResult) -> None:
        with self._lock:
            if token is not self._in_flight:
                logger.debug(f"Dropping late {self.label} result")
                return
            self._in_flight = None
            if self._timeout_handle is not None:
                self._timeout_handle.cancel()
                self._timeout_handle = None
            now = self._timers.now()
            result.duration_s = now - self._started_at
            config = self._config

            if result.failed:
                self._consecutive_errors += 1
                self._last_error = result.error
                self._backoff_until = now + config.error_cooldown_ms / 1000
                if self._consecutive_errors >= config.max_consecutive_errors:
                    self._disabled_by_errors = True
                    logger.warning(
                        f"{self.label} disabled after {self._consecutive_errors} consecutive errors"
                    )
            else:
                self._consecutive_errors = 0
                self._last_error = None
                self._last_verdict = result.verdict
                if result.verdict == self.positive:
                    self._cooldown_until = now + config.cooldown_ms / 1000

            callback = self._callback
            self._callback = None

        if result.failed:
            logger.warning(f"{self.label} failed: {result.error}")
        else:
            logger.info(f"{self.label} verdict: {result.verdict}")
        if callback is not None:
            callback(result)


class AiIdleChecker(AiChecker):
    """Confirms that an agent is idle before a continuation prompt is sent."""

    label = "AI idle check"
    template_name = "idle_check.j2"
    positive = "IDLE"
    negative = "WORKING"


class AiPlanChecker(AiChecker):
    """Detects an agent paused on a plan-approval screen."""

    label = "AI plan check"
    template_name = "plan_check.j2"
    positive = "PLAN_MODE"
    negative = "NOT_PLAN_MODE"
