# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the Overseer test suite.

This module provides foundational fixtures used across all test modules:
- A deterministic fake clock (ManualTimerService)
- Executors that run AI judge calls inline or on demand
- A recording fake of the session collaborator
- Sample task specs

Usage:
    Import fixtures implicitly via pytest's fixture discovery.
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import Executor, Future
from pathlib import Path
from typing import Any

import pytest

from overseer.core.models import SchedulerConfig
from overseer.core.signals import SignalTracker
from overseer.core.timers import ManualTimerService


# =============================================================================
# Clock and Executors
# =============================================================================


@pytest.fixture
def timers() -> ManualTimerService:
    """Fake clock; advance it explicitly to fire timers."""
    return ManualTimerService()


class InlineExecutor(Executor):
    """Runs submitted calls immediately on the calling thread."""

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class DeferredExecutor(Executor):
    """Holds submitted calls until the test runs them with run_all()."""

    def __init__(self) -> None:
        self.pending: list[tuple[Future, Callable[..., Any], tuple[Any, ...]]] = []

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        self.pending.append((future, fn, args))
        return future

    def run_all(self) -> None:
        pending, self.pending = self.pending, []
        for future, fn, args in pending:
            try:
                future.set_result(fn(*args))
            except Exception as e:
                future.set_exception(e)


@pytest.fixture
def inline_executor() -> InlineExecutor:
    return InlineExecutor()


@pytest.fixture
def deferred_executor() -> DeferredExecutor:
    return DeferredExecutor()


class ScriptedJudge:
    """Judge returning queued answers and recording prompts."""

    def __init__(self, *answers: str | Exception):
        self.answers = list(answers)
        self.calls: list[tuple[str, str, float]] = []

    def __call__(self, prompt: str, model: str, timeout_s: float) -> str:
        self.calls.append((prompt, model, timeout_s))
        answer = self.answers.pop(0) if self.answers else "WORKING"
        if isinstance(answer, Exception):
            raise answer
        return answer


@pytest.fixture
def make_judge() -> Callable[..., ScriptedJudge]:
    return ScriptedJudge


# =============================================================================
# Signal Tracker
# =============================================================================


@pytest.fixture
def tracker(timers: ManualTimerService) -> SignalTracker:
    """An enabled tracker on the fake clock."""
    t = SignalTracker(timers)
    t.enable()
    t.flush()
    return t


# =============================================================================
# Session Collaborator
# =============================================================================


class FakeSessions:
    """Recording implementation of SessionCollaborator."""

    def __init__(self) -> None:
        self.created: list[tuple[Path, str]] = []
        self.writes: list[tuple[str, str]] = []
        self.stopped: list[str] = []
        self.handlers: dict[str, Callable[[str], None]] = {}
        self.tokens: dict[str, int] = {}
        self.costs: dict[str, float] = {}
        self.fail_create = False
        self.on_create: Callable[[str], None] | None = None
        self._counter = 0

    def create_session(self, working_dir: Path, name: str) -> str:
        if self.fail_create:
            raise RuntimeError("spawn failed")
        self._counter += 1
        session_id = f"session-{self._counter}"
        self.created.append((Path(working_dir), name))
        if self.on_create is not None:
            self.on_create(session_id)
        return session_id

    def write_to_session(self, session_id: str, data: str) -> None:
        self.writes.append((session_id, data))

    def get_session_tokens(self, session_id: str) -> int:
        return self.tokens.get(session_id, 0)

    def get_session_cost(self, session_id: str) -> float:
        return self.costs.get(session_id, 0.0)

    def stop_session(self, session_id: str) -> None:
        self.stopped.append(session_id)

    def on_session_completion(self, session_id: str, handler: Callable[[str], None]) -> None:
        self.handlers[session_id] = handler

    def remove_session_completion_handler(self, session_id: str) -> None:
        self.handlers.pop(session_id, None)

    def complete(self, session_id: str, phrase: str) -> None:
        """Simulate the session emitting its completion phrase."""
        handler = self.handlers.get(session_id)
        if handler is not None:
            handler(phrase)

    def writes_to(self, session_id: str) -> list[str]:
        return [data for sid, data in self.writes if sid == session_id]


@pytest.fixture
def sessions() -> FakeSessions:
    return FakeSessions()


@pytest.fixture
def scheduler_config(tmp_path: Path) -> SchedulerConfig:
    """Scheduler rooted in a temp dir with small limits."""
    return SchedulerConfig(
        root_dir=str(tmp_path / "agents"),
        max_concurrent_agents=2,
        max_spawn_depth=2,
        default_timeout_minutes=30,
        max_timeout_minutes=60,
        progress_poll_interval_s=5,
        initial_prompt_delay_s=3,
    )


# =============================================================================
# Task Specs
# =============================================================================


def make_spec(
    agent_id: str,
    priority: str = "normal",
    timeout: float | None = None,
    depends_on: list[str] | None = None,
    extra: str = "",
    body: str = "Do the work.",
) -> str:
    """Build inline spec text."""
    lines = ["---", f"agentId: {agent_id}", f"name: {agent_id} worker", "type: implement", f"priority: {priority}"]
    if timeout is not None:
        lines.append(f"timeoutMinutes: {timeout}")
    if depends_on:
        lines.append(f"dependsOn: [{', '.join(depends_on)}]")
    if extra:
        lines.append(extra)
    lines += ["---", body, ""]
    return "\n".join(lines)


@pytest.fixture
def spec_factory() -> Callable[..., str]:
    return make_spec


@pytest.fixture
def parent_dir(tmp_path: Path) -> Path:
    """Parent agent working directory."""
    path = tmp_path / "parent"
    path.mkdir()
    return path
