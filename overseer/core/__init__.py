"""Core modules for the Overseer supervisor."""

from overseer.core.models import (
    AgentStatus,
    AgentTaskSpec,
    RespawnConfig,
    RespawnState,
    RespawnStatus,
    SchedulerConfig,
    SpawnedAgentRecord,
    TodoItem,
    TodoStatus,
    TrackerState,
)
from overseer.core.respawn import RespawnController
from overseer.core.scheduler import SpawnScheduler
from overseer.core.signals import SignalTracker
from overseer.core.task_queue import CyclicDependencyError, DependencyQueue, Task, TaskStatus

__all__ = [
    "AgentStatus",
    "AgentTaskSpec",
    "CyclicDependencyError",
    "DependencyQueue",
    "RespawnConfig",
    "RespawnController",
    "RespawnState",
    "RespawnStatus",
    "SchedulerConfig",
    "SignalTracker",
    "SpawnScheduler",
    "SpawnedAgentRecord",
    "Task",
    "TaskStatus",
    "TodoItem",
    "TodoStatus",
    "TrackerState",
]
