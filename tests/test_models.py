"""Tests for Pydantic models and the event emitter."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from overseer.core.events import EventEmitter
from overseer.core.models import (
    AgentPriority,
    AgentStatus,
    AgentTaskSpec,
    RespawnConfig,
    SchedulerConfig,
)


class TestAgentTaskSpec:
    def test_default_completion_phrase(self):
        spec = AgentTaskSpec(agent_id="api-tests_2", name="x")
        assert spec.effective_completion_phrase == "AGENT_API_TESTS_2_DONE"

    def test_explicit_completion_phrase(self):
        spec = AgentTaskSpec(agent_id="a", name="x", completion_phrase="SHIP-IT")
        assert spec.effective_completion_phrase == "SHIP-IT"

    @pytest.mark.parametrize("field,value", [("agent_id", "a b"), ("completion_phrase", "done!"), ("name", "")])
    def test_invalid_values(self, field, value):
        values = {"agent_id": "a", "name": "x", field: value}
        with pytest.raises(ValidationError):
            AgentTaskSpec(**values)


class TestEnums:
    def test_priority_rank(self):
        ranks = [p.rank for p in (AgentPriority.LOW, AgentPriority.NORMAL, AgentPriority.HIGH, AgentPriority.CRITICAL)]
        assert ranks == sorted(ranks)

    def test_status_flags(self):
        assert AgentStatus.TIMEOUT.is_terminal
        assert not AgentStatus.QUEUED.is_terminal
        assert AgentStatus.INITIALIZING.is_active
        assert not AgentStatus.QUEUED.is_active


class TestConfigs:
    def test_respawn_defaults(self):
        config = RespawnConfig()
        assert config.ai_idle_check.enabled is False
        assert config.ai_plan_check.max_context_chars == 8000
        assert config.stop_on_completion is False

    def test_scheduler_bounds(self):
        with pytest.raises(ValidationError):
            SchedulerConfig(max_concurrent_agents=0)


class TestEventEmitter:
    def test_emit_and_off(self):
        emitter = EventEmitter()
        seen = []
        emitter.on("x", seen.append)
        emitter.emit("x", 1)
        emitter.off("x", seen.append)
        emitter.emit("x", 2)
        assert seen == [1]
        assert emitter.listener_count("x") == 0

    def test_raising_handler_does_not_block_others(self):
        emitter = EventEmitter()
        seen = []

        def boom(_):
            raise RuntimeError("handler bug")

        emitter.on("x", boom)
        emitter.on("x", seen.append)
        emitter.emit("x", 1)
        assert seen == [1]
