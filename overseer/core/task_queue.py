"""Dependency Queue: priority-ordered, dependency-gated work items.

Selection order is priority (higher first), then arrival order. A pending task
is only selectable once every dependency is completed. Dependency edges that
would form a cycle are rejected before any visible state changes.
"""

from __future__ import annotations

import itertools
import logging
import threading
from datetime import datetime
from enum import Enum
from typing import Any

import networkx as nx
from pydantic import BaseModel, Field

from overseer.core.models import _utc_now

logger = logging.getLogger(__name__)


class TaskQueueError(Exception):
    """Error in the dependency queue."""

    pass


class CyclicDependencyError(TaskQueueError):
    """Adding the dependency would create a cycle."""

    pass


class TaskNotFoundError(TaskQueueError):
    """Referenced task does not exist."""

    pass


class TaskStatus(str, Enum):
    """Status of a queued task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Task(BaseModel):
    """A generic unit of work."""

    id: str
    payload: Any = None
    priority: int = 0
    dependencies: set[str] = Field(default_factory=set)
    status: TaskStatus = TaskStatus.PENDING
    assigned_worker: str | None = None
    sequence: int = 0
    created_at: datetime = Field(default_factory=_utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None


class DependencyQueue:
    """Thread-safe task store with cycle-free dependency edges.

    Dependencies may name tasks that are not (yet) in the queue; such a
    dependency is simply unsatisfied until a completed task with that id exists.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        # Edge task -> dependency
        self._graph: nx.DiGraph = nx.DiGraph()
        self._sequence = itertools.count(1)
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_task(
        self,
        task_id: str,
        payload: Any = None,
        priority: int = 0,
        dependencies: set[str] | list[str] | None = None,
    ) -> Task:
        """Insert a pending task.

        Raises:
            TaskQueueError: If the id is already present.
            CyclicDependencyError: If any dependency closes a cycle.
        """
        deps = set(dependencies or ())
        with self._lock:
            if task_id in self._tasks:
                raise TaskQueueError(f"Task already exists: {task_id}")
            for dep in sorted(deps):
                if self.would_create_cycle(task_id, dep):
                    raise CyclicDependencyError(
                        f"Circular dependency detected: adding dependency {dep} to task {task_id} "
                        f"would create a cycle"
                    )
            task = Task(id=task_id, payload=payload, priority=priority, dependencies=deps, sequence=next(self._sequence))
            self._tasks[task_id] = task
            self._graph.add_node(task_id)
            for dep in deps:
                self._graph.add_edge(task_id, dep)
            logger.debug(f"Queued task {task_id} (priority {priority}, deps {sorted(deps)})")
            return task.model_copy()

    def add_dependency(self, task_id: str, dependency_id: str) -> None:
        """Add one dependency edge to an existing task."""
        with self._lock:
            task = self._require(task_id)
            if dependency_id in task.dependencies:
                return
            if self.would_create_cycle(task_id, dependency_id):
                raise CyclicDependencyError(
                    f"Circular dependency detected: adding dependency {dependency_id} to task {task_id} "
                    f"would create a cycle"
                )
            task.dependencies.add(dependency_id)
            self._graph.add_edge(task_id, dependency_id)

    def would_create_cycle(self, task_id: str, dependency_id: str) -> bool:
        """True if `task_id` depending on `dependency_id` closes a cycle."""
        if task_id == dependency_id:
            return True
        with self._lock:
            if dependency_id not in self._graph or task_id not in self._graph:
                return False
            return nx.has_path(self._graph, dependency_id, task_id)

    def update_task(self, task_id: str, **changes: Any) -> Task:
        """Update payload/priority/assigned_worker of a task."""
        allowed = {"payload", "priority", "assigned_worker"}
        unknown = set(changes) - allowed
        if unknown:
            raise TaskQueueError(f"Cannot update fields: {sorted(unknown)}")
        with self._lock:
            task = self._require(task_id)
            for key, value in changes.items():
                setattr(task, key, value)
            return task.model_copy()

    def remove_task(self, task_id: str) -> bool:
        with self._lock:
            if self._tasks.pop(task_id, None) is None:
                return False
            self._graph.remove_edges_from(list(self._graph.out_edges(task_id)))
            if self._graph.in_degree(task_id) == 0:
                self._graph.remove_node(task_id)
            return True

    def mark_running(self, task_id: str, worker: str | None = None) -> None:
        with self._lock:
            task = self._require(task_id)
            task.status = TaskStatus.RUNNING
            task.assigned_worker = worker
            task.started_at = _utc_now()

    def mark_completed(self, task_id: str) -> None:
        with self._lock:
            task = self._require(task_id)
            task.status = TaskStatus.COMPLETED
            task.completed_at = _utc_now()

    def mark_failed(self, task_id: str, error: str | None = None) -> None:
        with self._lock:
            task = self._require(task_id)
            task.status = TaskStatus.FAILED
            task.error = error
            task.completed_at = _utc_now()

    def clear_completed(self) -> int:
        return self._clear(TaskStatus.COMPLETED)

    def clear_failed(self) -> int:
        return self._clear(TaskStatus.FAILED)

    def clear_all(self) -> None:
        with self._lock:
            self._tasks.clear()
            self._graph.clear()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy() if task else None

    def is_ready(self, task_id: str) -> bool:
        with self._lock:
            task = self._require(task_id)
            return task.status == TaskStatus.PENDING and self._dependencies_met(task)

    def get_next_available(self) -> Task | None:
        """Highest-priority, earliest-arrived pending task whose dependencies are met."""
        with self._lock:
            for task in self._ordered(TaskStatus.PENDING):
                if self._dependencies_met(task):
                    return task.model_copy()
            return None

    def get_pending_tasks(self) -> list[Task]:
        return self._snapshot(TaskStatus.PENDING)

    def get_running_tasks(self) -> list[Task]:
        return self._snapshot(TaskStatus.RUNNING)

    def get_completed_tasks(self) -> list[Task]:
        return self._snapshot(TaskStatus.COMPLETED)

    def get_failed_tasks(self) -> list[Task]:
        return self._snapshot(TaskStatus.FAILED)

    def get_count(self) -> dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in TaskStatus}
            for task in self._tasks.values():
                counts[task.status.value] += 1
            counts["total"] = len(self._tasks)
            return counts

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return task

    def _dependencies_met(self, task: Task) -> bool:
        for dep in task.dependencies:
            dep_task = self._tasks.get(dep)
            if dep_task is None or dep_task.status != TaskStatus.COMPLETED:
                return False
        return True

    def _ordered(self, status: TaskStatus) -> list[Task]:
        tasks = [t for t in self._tasks.values() if t.status == status]
        return sorted(tasks, key=lambda t: (-t.priority, t.sequence))

    def _snapshot(self, status: TaskStatus) -> list[Task]:
        with self._lock:
            return [t.model_copy() for t in self._ordered(status)]

    def _clear(self, status: TaskStatus) -> int:
        with self._lock:
            doomed = [tid for tid, t in self._tasks.items() if t.status == status]
            for tid in doomed:
                self.remove_task(tid)
            return len(doomed)
