"""Tests for the AI idle and plan judges."""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest

from overseer.core.ai_checker import AiIdleChecker, AiPlanChecker, ClaudeCliJudge, JudgeError
from overseer.core.models import AiCheckConfig, AiCheckState
from overseer.core.prompts import TemplateError


def _config(**overrides) -> AiCheckConfig:
    values = {
        "enabled": True,
        "check_timeout_ms": 10_000,
        "cooldown_ms": 60_000,
        "error_cooldown_ms": 20_000,
        "max_consecutive_errors": 3,
    }
    values.update(overrides)
    return AiCheckConfig(**values)


class TestVerdicts:
    """Answer parsing and cooldown on a positive verdict."""

    def test_idle_verdict_starts_cooldown(self, timers, inline_executor, make_judge):
        judge = make_judge("IDLE\nThe prompt is waiting for input.")
        checker = AiIdleChecker(_config(), judge, timers, inline_executor)
        results = []
        assert checker.check("last output", results.append) is True
        assert results[0].verdict == "IDLE"
        assert results[0].reasoning == "The prompt is waiting for input."
        assert checker.state == AiCheckState.COOLDOWN
        timers.advance(60)
        assert checker.state == AiCheckState.READY

    def test_working_verdict_keeps_ready(self, timers, inline_executor, make_judge):
        checker = AiIdleChecker(_config(), make_judge("working"), timers, inline_executor)
        results = []
        checker.check("ctx", results.append)
        assert results[0].verdict == "WORKING"
        assert checker.state == AiCheckState.READY

    def test_plan_verdicts(self, timers, inline_executor, make_judge):
        checker = AiPlanChecker(_config(), make_judge("NOT_PLAN_MODE", "PLAN_MODE"), timers, inline_executor)
        results = []
        checker.check("ctx", results.append)
        timers.advance(60)
        checker.check("ctx", results.append)
        assert [r.verdict for r in results] == ["NOT_PLAN_MODE", "PLAN_MODE"]

    def test_prompt_contains_tail_of_context(self, timers, inline_executor, make_judge):
        judge = make_judge("WORKING")
        checker = AiIdleChecker(_config(max_context_chars=500), judge, timers, inline_executor)
        checker.check("A" * 1000 + "TAIL-MARKER", lambda r: None)
        prompt, model, timeout_s = judge.calls[0]
        assert "TAIL-MARKER" in prompt
        assert "A" * 600 not in prompt
        assert model == "claude-opus-4-5-20251101"
        assert timeout_s == 10

    def test_unparseable_answer_is_failure(self, timers, inline_executor, make_judge):
        checker = AiIdleChecker(_config(), make_judge("maybe?"), timers, inline_executor)
        results = []
        checker.check("ctx", results.append)
        assert results[0].failed
        assert checker.state == AiCheckState.BACKOFF


class TestSingleFlight:
    """At most one call in flight; late results are dropped."""

    def test_second_check_refused_while_in_flight(self, timers, deferred_executor, make_judge):
        checker = AiIdleChecker(_config(), make_judge("IDLE"), timers, deferred_executor)
        assert checker.check("ctx", lambda r: None) is True
        assert checker.state == AiCheckState.CHECKING
        assert checker.check("ctx", lambda r: None) is False

    def test_timeout_wins_and_late_answer_ignored(self, timers, deferred_executor, make_judge):
        checker = AiIdleChecker(_config(), make_judge("IDLE"), timers, deferred_executor)
        results = []
        checker.check("ctx", results.append)
        timers.advance(10)
        assert len(results) == 1
        assert results[0].failed
        assert "timed out" in results[0].error
        deferred_executor.run_all()
        assert len(results) == 1
        assert checker.status().last_verdict is None

    def test_cancel_drops_result(self, timers, deferred_executor, make_judge):
        checker = AiIdleChecker(_config(), make_judge("IDLE"), timers, deferred_executor)
        results = []
        checker.check("ctx", results.append)
        checker.cancel()
        deferred_executor.run_all()
        timers.advance(30)
        assert results == []
        assert checker.state == AiCheckState.READY
        assert timers.pending_count == 0


class TestErrors:
    """Backoff and self-disable after consecutive failures."""

    def test_render_failure_leaves_checker_ready(self, timers, deferred_executor, make_judge):
        judge = make_judge("IDLE")
        checker = AiIdleChecker(_config(), judge, timers, deferred_executor)
        results = []
        with patch("overseer.core.ai_checker.render_template", side_effect=TemplateError("broken template")):
            assert checker.check("ctx", results.append) is False
        assert checker.state == AiCheckState.READY
        assert checker.status().last_error == "broken template"
        assert deferred_executor.pending == []
        assert timers.pending_count == 0
        assert checker.check("ctx", results.append) is True

    def test_error_backoff_then_ready(self, timers, inline_executor, make_judge):
        checker = AiIdleChecker(_config(), make_judge(JudgeError("cli missing")), timers, inline_executor)
        results = []
        checker.check("ctx", results.append)
        assert results[0].error == "cli missing"
        assert checker.state == AiCheckState.BACKOFF
        assert checker.check("ctx", results.append) is False
        timers.advance(20)
        assert checker.state == AiCheckState.READY

    def test_disables_after_max_errors(self, timers, inline_executor, make_judge):
        judge = make_judge(JudgeError("a"), JudgeError("b"), JudgeError("c"))
        checker = AiIdleChecker(_config(), judge, timers, inline_executor)
        for _ in range(3):
            checker.check("ctx", lambda r: None)
            timers.advance(20)
        assert checker.state == AiCheckState.DISABLED
        assert checker.status().consecutive_errors == 3

    def test_success_resets_error_count(self, timers, inline_executor, make_judge):
        judge = make_judge(JudgeError("a"), "WORKING")
        checker = AiIdleChecker(_config(), judge, timers, inline_executor)
        checker.check("ctx", lambda r: None)
        timers.advance(20)
        checker.check("ctx", lambda r: None)
        assert checker.status().consecutive_errors == 0

    def test_reenable_clears_error_disable(self, timers, inline_executor, make_judge):
        judge = make_judge(JudgeError("a"))
        checker = AiIdleChecker(_config(max_consecutive_errors=1), judge, timers, inline_executor)
        checker.check("ctx", lambda r: None)
        assert checker.state == AiCheckState.DISABLED
        checker.update_config(_config(enabled=False, max_consecutive_errors=1))
        checker.update_config(_config(max_consecutive_errors=1))
        assert checker.state == AiCheckState.READY

    def test_disabled_config_never_calls_judge(self, timers, inline_executor, make_judge):
        judge = make_judge("IDLE")
        checker = AiIdleChecker(_config(enabled=False), judge, timers, inline_executor)
        assert checker.check("ctx", lambda r: None) is False
        assert judge.calls == []


class TestClaudeCliJudge:
    """Subprocess invocation of the claude CLI."""

    def test_build_command(self):
        judge = ClaudeCliJudge()
        assert judge.build_command("prompt", "claude-opus") == ["claude", "--model", "claude-opus", "-p", "prompt"]

    def test_returns_stdout(self):
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="\x1b[1mIDLE\x1b[0m\n", stderr="")
        with patch("overseer.core.ai_checker.subprocess.run", return_value=completed) as run:
            assert ClaudeCliJudge().__call__("p", "m", 5) == "IDLE\n"
        assert run.call_args.kwargs["timeout"] == 5

    def test_nonzero_exit_raises(self):
        completed = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="auth error")
        with patch("overseer.core.ai_checker.subprocess.run", return_value=completed):
            with pytest.raises(JudgeError, match="auth error"):
                ClaudeCliJudge()("p", "m", 5)

    def test_timeout_raises(self):
        with patch(
            "overseer.core.ai_checker.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="claude", timeout=5),
        ):
            with pytest.raises(JudgeError, match="timed out"):
                ClaudeCliJudge()("p", "m", 5)
