"""Data models for the Overseer supervisor.

Uses Pydantic for validated configuration, persisted records and status reports.
Tracker and controller bookkeeping timestamps are epoch seconds taken from the
injected clock, so replaying the same input on a fake clock is deterministic.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _utc_now() -> datetime:
    """Get current UTC time (timezone-aware)."""
    return datetime.now(UTC)


# Completion phrases and agent ids end up in file names and <promise> tags
PHRASE_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


# --- Signal Tracker Models ---


class TodoStatus(str, Enum):
    """Status of a todo item detected in agent output."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


# Ordering used when the same content is observed again
TODO_STATUS_RANK = {
    TodoStatus.PENDING: 0,
    TodoStatus.IN_PROGRESS: 1,
    TodoStatus.COMPLETED: 2,
}


class TodoItem(BaseModel):
    """A todo detected in agent output. Identity is derived from content."""

    id: str
    content: str
    status: TodoStatus = TodoStatus.PENDING
    detected_at: float


class TrackerState(BaseModel):
    """Loop state accumulated by a SignalTracker."""

    enabled: bool = False
    # Whether recognized patterns may flip `enabled` on by themselves
    auto_enable_allowed: bool = False
    active: bool = False
    completion_phrase: str | None = None
    started_at: float | None = None
    cycle_count: int = 0
    max_iterations: int | None = None
    last_activity: float | None = None
    elapsed_hours: float | None = None


# --- Respawn Controller Models ---


class RespawnState(str, Enum):
    """States of the respawn state machine."""

    STOPPED = "stopped"
    WATCHING = "watching"
    CONFIRMING_IDLE = "confirming_idle"
    AUTO_ACCEPTING = "auto_accepting"
    AI_CHECKING = "ai_checking"
    PLAN_CHECKING = "plan_checking"
    SENDING = "sending"
    BLOCKED = "blocked"
    PAUSED = "paused"


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"


class AiCheckState(str, Enum):
    """Availability of an AI judge."""

    READY = "ready"
    CHECKING = "checking"
    # Recent positive verdict; heuristics are trusted until it expires
    COOLDOWN = "cooldown"
    # Recent failure; idle is not confirmed until it expires
    BACKOFF = "backoff"
    DISABLED = "disabled"


class AiCheckConfig(BaseModel):
    """Configuration for one AI judge (idle check or plan check)."""

    enabled: bool = False
    model: str = "claude-opus-4-5-20251101"
    max_context_chars: int = Field(default=16000, ge=500)
    check_timeout_ms: int = Field(default=90000, gt=0)
    # Started by a positive verdict
    cooldown_ms: int = Field(default=180000, ge=0)
    # Started by a failed or timed out check
    error_cooldown_ms: int = Field(default=60000, ge=0)
    # Consecutive failures after which the judge disables itself
    max_consecutive_errors: int = Field(default=3, ge=1)


def _default_plan_check() -> AiCheckConfig:
    return AiCheckConfig(max_context_chars=8000, check_timeout_ms=60000, cooldown_ms=30000)


class RespawnConfig(BaseModel):
    """Configuration of a RespawnController. Updatable at runtime."""

    idle_timeout_ms: int = Field(default=10000, ge=0)
    no_output_timeout_ms: int = Field(default=30000, gt=0)
    completion_confirm_ms: int = Field(default=5000, ge=0)
    inter_step_delay_ms: int = Field(default=1000, ge=0)
    send_clear: bool = True
    send_init: bool = True
    kickstart_prompt: str | None = None
    update_prompt: str = "update all the docs and CLAUDE.md"
    auto_accept_prompts: bool = False
    auto_accept_delay_ms: int = Field(default=8000, ge=0)
    ai_idle_check: AiCheckConfig = Field(default_factory=AiCheckConfig)
    ai_plan_check: AiCheckConfig = Field(default_factory=_default_plan_check)
    plan_approval_input: str = "\r"
    duration_minutes: float | None = Field(default=None, gt=0)
    circuit_breaker_threshold: int = Field(default=3, ge=1)
    # Stop once the owned tracker reports a completion phrase
    stop_on_completion: bool = False


class CircuitBreakerStatus(BaseModel):
    """Snapshot of the productivity circuit breaker."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_unproductive: int = 0
    threshold: int = 3
    reason: str | None = None


class AiCheckStatus(BaseModel):
    """Snapshot of one AI judge."""

    status: AiCheckState = AiCheckState.DISABLED
    last_verdict: str | None = None
    last_error: str | None = None
    consecutive_errors: int = 0
    cooldown_until: float | None = None


class AiCheckResult(BaseModel):
    """Outcome of one AI judge call. `verdict` is None when the check failed."""

    verdict: str | None = None
    reasoning: str = ""
    error: str | None = None
    duration_s: float = 0.0

    @property
    def failed(self) -> bool:
        return self.verdict is None


class RespawnStatus(BaseModel):
    """Queryable status of a RespawnController."""

    state: RespawnState
    cycle_count: int
    circuit_breaker: CircuitBreakerStatus
    last_action: str | None = None
    last_action_at: float | None = None
    active_timers: list[str] = Field(default_factory=list)
    elicitation_pending: bool = False
    ai_idle_check: AiCheckStatus = Field(default_factory=AiCheckStatus)
    ai_plan_check: AiCheckStatus = Field(default_factory=AiCheckStatus)
    stop_reason: str | None = None


# --- Spawn Models ---


class AgentType(str, Enum):
    """Kind of work a spawned agent performs."""

    EXPLORE = "explore"
    IMPLEMENT = "implement"
    TEST = "test"
    REVIEW = "review"
    REFACTOR = "refactor"
    RESEARCH = "research"
    GENERATE = "generate"
    FIX = "fix"
    GENERAL = "general"


class AgentPriority(str, Enum):
    """Admission priority of a spawn request."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    AgentPriority.LOW: 0,
    AgentPriority.NORMAL: 1,
    AgentPriority.HIGH: 2,
    AgentPriority.CRITICAL: 3,
}


class AgentStatus(str, Enum):
    """Lifecycle status of a spawned agent."""

    QUEUED = "queued"
    INITIALIZING = "initializing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (AgentStatus.INITIALIZING, AgentStatus.RUNNING)


TERMINAL_STATUSES = frozenset(
    {AgentStatus.COMPLETED, AgentStatus.FAILED, AgentStatus.TIMEOUT, AgentStatus.CANCELLED}
)


class AgentTaskSpec(BaseModel):
    """Parsed task specification for a child agent."""

    agent_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=64)
    type: AgentType = AgentType.GENERAL
    priority: AgentPriority = AgentPriority.NORMAL
    timeout_minutes: float | None = Field(default=None, gt=0)
    completion_phrase: str | None = None
    can_modify_parent_files: bool = False
    depends_on: list[str] = Field(default_factory=list)
    context_files: list[str] = Field(default_factory=list)
    max_tokens: int | None = Field(default=None, gt=0)
    max_cost: float | None = Field(default=None, gt=0)
    success_criteria: str | None = None
    body: str = ""

    @field_validator("agent_id")
    @classmethod
    def _check_agent_id(cls, v: str) -> str:
        if not PHRASE_PATTERN.match(v):
            raise ValueError("agent_id may only contain letters, digits, '-' and '_'")
        return v

    @field_validator("completion_phrase")
    @classmethod
    def _check_phrase(cls, v: str | None) -> str | None:
        if v is not None and not PHRASE_PATTERN.match(v):
            raise ValueError("completion_phrase may only contain letters, digits, '-' and '_'")
        return v

    @property
    def effective_completion_phrase(self) -> str:
        if self.completion_phrase:
            return self.completion_phrase
        return "AGENT_" + re.sub(r"[^A-Z0-9]", "_", self.agent_id.upper()) + "_DONE"


class SpawnedAgentRecord(BaseModel):
    """Everything the scheduler knows about one agent. Fully serializable."""

    agent_id: str
    name: str
    status: AgentStatus = AgentStatus.QUEUED
    depth: int
    parent_session_id: str
    session_id: str | None = None
    timeout_minutes: float
    completion_phrase: str
    working_dir: str | None = None
    comms_dir: str | None = None
    parent_working_dir: str | None = None
    queued_at: datetime = Field(default_factory=_utc_now)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    message_sequence: int = 0
    failure_reason: str | None = None
    spec: AgentTaskSpec


class Message(BaseModel):
    """A mailbox message between a parent and a child agent."""

    sequence: int = Field(ge=1)
    sender: str
    content: str
    timestamp: datetime


class AgentProgress(BaseModel):
    """Progress document a child agent keeps updated in its mailbox."""

    phase: str = "initializing"
    percent_complete: float = Field(default=0.0, ge=0, le=100)
    current_action: str = ""
    subtasks: list[dict[str, Any]] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    tokens_used: int = 0
    cost_so_far: float = 0.0
    updated_at: datetime = Field(default_factory=_utc_now)


class AgentResult(BaseModel):
    """Result document (result.md frontmatter) written by a finished agent."""

    status: str = "completed"
    summary: str = ""
    files_changed: list[str] = Field(default_factory=list)
    body: str = ""


class SchedulerConfig(BaseModel):
    """Global Spawn Scheduler configuration."""

    root_dir: str = "."
    max_concurrent_agents: int = Field(default=5, ge=1)
    max_spawn_depth: int = Field(default=3, ge=1)
    default_timeout_minutes: float = Field(default=30, gt=0)
    max_timeout_minutes: float = Field(default=120, gt=0)
    progress_poll_interval_s: float = Field(default=5.0, gt=0)
    initial_prompt_delay_s: float = Field(default=3.0, ge=0)
    max_queue_length: int = Field(default=50, ge=1)
    max_tracked_agents: int = Field(default=200, ge=1)
    budget_warning_threshold: float = Field(default=0.8, gt=0, le=1)
    timeout_warning_ratio: float = Field(default=0.9, gt=0, lt=1)


class SchedulerState(BaseModel):
    """Counters reported by SpawnScheduler.get_state()."""

    active_count: int = 0
    queued_count: int = 0
    total_spawned: int = 0
    total_completed: int = 0
    total_failed: int = 0
    max_depth_reached: int = 0


class SchedulerSnapshot(BaseModel):
    """Serializable snapshot used for restart recovery."""

    config: SchedulerConfig
    agents: dict[str, SpawnedAgentRecord] = Field(default_factory=dict)
    counters: SchedulerState = Field(default_factory=SchedulerState)
    saved_at: datetime = Field(default_factory=_utc_now)


class SpawnEvent(BaseModel):
    """Lifecycle event emitted by the Spawn Scheduler."""

    type: str
    agent_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utc_now)
