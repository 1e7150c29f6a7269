"""Spawn Scheduler: admit, queue, supervise and tear down child agents.

A parent agent asks for a child by handing over a task spec. The scheduler
admits it immediately when capacity allows, otherwise queues it in a
DependencyQueue (priority first, then arrival order, dependencies gating
readiness). Each started child gets a directory with an instruction document
and a mailbox, and a session created through the injected SessionCollaborator.

LIFECYCLE:
    queued? -> initializing -> running -> completed | failed | timeout | cancelled

Every terminal transition releases the agent's timers and completion handler
and admits the next ready queued request.

Events on `SpawnScheduler.events` carry a SpawnEvent; the event name is the
lifecycle step: queued, initializing, started, progress, message, completed,
failed, timeout, cancelled, budget_warning, state_update. Every event is also
re-emitted under the name ``event``.

Errors in a request (missing spec, malformed header, depth limit, dependency
cycle, full queue) are reported as ``failed`` events, never raised.
"""

from __future__ import annotations

import logging
import shutil
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from overseer.core.collaborators import SessionCollaborator
from overseer.core.events import EventEmitter
from overseer.core.mailbox import Mailbox, MailboxError, atomic_write_text
from overseer.core.models import (
    AgentProgress,
    AgentResult,
    AgentStatus,
    AgentTaskSpec,
    Message,
    SchedulerConfig,
    SchedulerSnapshot,
    SchedulerState,
    SpawnedAgentRecord,
    SpawnEvent,
)
from overseer.core.prompts import TemplateError, render_template
from overseer.core.spec_parser import SpecError, format_spec_text, resolve_spec
from overseer.core.state import StateStore, StateStoreError
from overseer.core.task_queue import DependencyQueue, TaskQueueError
from overseer.core.timers import ThreadingTimerService, TimerHandle, TimerService

logger = logging.getLogger(__name__)

COMMS_DIR = "spawn-comms"
WORKSPACE_DIR = "workspace"
INSTRUCTIONS_FILE = "CLAUDE.md"
MAX_CONTEXT_FILES = 20
MAX_CONTEXT_FILE_SIZE = 100 * 1024


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SpawnScheduler:
    """Admission-controlled scheduler for child agents.

    Args:
        sessions: Process collaborator that actually runs agent sessions.
        config: Scheduler limits and root directory.
        timers: Clock and timer scheduling.
        state_store: Optional store; a snapshot is saved on every state update.
    """

    def __init__(
        self,
        sessions: SessionCollaborator,
        config: SchedulerConfig | None = None,
        timers: TimerService | None = None,
        state_store: StateStore | None = None,
    ):
        self.sessions = sessions
        self._config = config or SchedulerConfig()
        self._timers = timers or ThreadingTimerService()
        self._state_store = state_store
        self.events = EventEmitter()

        self._agents: dict[str, SpawnedAgentRecord] = {}
        self._queue = DependencyQueue()
        self._spec_texts: dict[str, str] = {}
        self._agent_timers: dict[str, dict[str, tuple[object, TimerHandle]]] = {}
        self._budget_flags: dict[str, set[str]] = {}
        self._last_progress: dict[str, datetime] = {}
        self._counters = SchedulerState()
        self._stopping = False
        # Guards admission counters, records and the queue together
        self._lock = threading.RLock()

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def handle_spawn_request(
        self,
        spec_ref_or_content: str,
        parent_session_id: str,
        parent_working_dir: str | Path,
        parent_depth: int = 0,
    ) -> str | None:
        """Admit or queue a child agent. Returns its id, or None if it failed."""
        try:
            spec, spec_text = resolve_spec(spec_ref_or_content, parent_working_dir)
        except SpecError as e:
            logger.warning(f"Spawn request from {parent_session_id} rejected: {e}")
            self._emit("failed", None, error=str(e), parent_session_id=parent_session_id)
            return None

        with self._lock:
            agent_id = spec.agent_id
            existing = self._agents.get(agent_id)
            if existing is not None and not existing.status.is_terminal:
                self._emit("failed", agent_id, error=f"Agent {agent_id} already exists ({existing.status.value})")
                return None

            depth = parent_depth + 1
            timeout = min(spec.timeout_minutes or self._config.default_timeout_minutes, self._config.max_timeout_minutes)
            record = SpawnedAgentRecord(
                agent_id=agent_id,
                name=spec.name,
                depth=depth,
                parent_session_id=parent_session_id,
                parent_working_dir=str(parent_working_dir),
                timeout_minutes=timeout,
                completion_phrase=spec.effective_completion_phrase,
                spec=spec,
            )

            if depth > self._config.max_spawn_depth:
                self._reject(record, f"Spawn depth {depth} exceeds max spawn depth {self._config.max_spawn_depth}")
                return None

            if agent_id in self._queue:
                self._queue.remove_task(agent_id)
            try:
                self._queue.add_task(
                    agent_id,
                    priority=spec.priority.rank,
                    dependencies=self._open_dependencies(spec),
                )
            except TaskQueueError as e:
                self._reject(record, str(e))
                return None

            ready = self._queue.is_ready(agent_id)
            start_now = ready and self._active_count() < self._config.max_concurrent_agents
            if not start_now:
                queued = len(self._queue.get_pending_tasks()) - 1
                if queued >= self._config.max_queue_length:
                    self._queue.remove_task(agent_id)
                    self._reject(record, f"Spawn queue is full ({self._config.max_queue_length} requests)")
                    return None

            self._agents[agent_id] = record
            self._spec_texts[agent_id] = spec_text
            if start_now:
                self._queue.mark_running(agent_id)
                record.status = AgentStatus.INITIALIZING
            else:
                position = [t.id for t in self._queue.get_pending_tasks()].index(agent_id) + 1
                logger.info(f"Queued agent {agent_id} at position {position}")
                self._emit(
                    "queued",
                    agent_id,
                    name=spec.name,
                    parent_session_id=parent_session_id,
                    position=position,
                    waiting_on_dependencies=not ready,
                )
                self._state_changed()

        if start_now:
            self._launch(agent_id)
        return agent_id

    def trigger_spawn(
        self,
        content: str,
        parent_session_id: str,
        parent_working_dir: str | Path,
        parent_depth: int = 0,
    ) -> str | None:
        """Spawn from inline spec content."""
        if not content.lstrip().startswith("---"):
            self._emit("failed", None, error="Inline spec must start with a '---' header")
            return None
        return self.handle_spawn_request(content, parent_session_id, parent_working_dir, parent_depth)

    def _reject(self, record: SpawnedAgentRecord, reason: str) -> None:
        logger.warning(f"Spawn of {record.agent_id} rejected: {reason}")
        record.status = AgentStatus.FAILED
        record.failure_reason = reason
        record.finished_at = _utc_now()
        self._agents[record.agent_id] = record
        self._counters.total_failed += 1
        self._emit("failed", record.agent_id, error=reason)
        self._state_changed()

    def _active_count(self) -> int:
        return sum(1 for r in self._agents.values() if r.status.is_active)

    # ------------------------------------------------------------------
    # Starting
    # ------------------------------------------------------------------

    def _launch(self, agent_id: str) -> None:
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None or record.status != AgentStatus.INITIALIZING:
                return
            spec_text = self._spec_texts.pop(agent_id, None) or format_spec_text(record.spec)
            self._emit("initializing", agent_id, name=record.name, depth=record.depth)
            record = record.model_copy()

        try:
            working_dir = self._materialize(record, spec_text)
            session_id = self.sessions.create_session(working_dir, record.name)
        except Exception as e:
            logger.error(f"Failed to start agent {agent_id}: {e}")
            with self._lock:
                self._terminate(agent_id, AgentStatus.FAILED, f"Failed to start agent: {e}", stop_session=False)
            self._process_queue()
            return

        with self._lock:
            current = self._agents.get(agent_id)
            if current is None or current.status != AgentStatus.INITIALIZING:
                # Cancelled while the session was being created
                logger.info(f"Agent {agent_id} cancelled during start; stopping session {session_id}")
                self._safe_session_call(self.sessions.stop_session, session_id)
                return
            current.session_id = session_id
            current.working_dir = str(working_dir)
            current.comms_dir = str(working_dir / COMMS_DIR)
            current.status = AgentStatus.RUNNING
            current.started_at = _utc_now()
            self._counters.total_spawned += 1
            self._counters.max_depth_reached = max(self._counters.max_depth_reached, current.depth)
            self._watch(current, initial_prompt=True)
            logger.info(f"Started agent {agent_id} in session {session_id}")
            self._emit("started", agent_id, session_id=session_id, working_dir=str(working_dir))
            self._state_changed()

    def _materialize(self, record: SpawnedAgentRecord, spec_text: str) -> Path:
        """Create the agent directory, mailbox and instruction document."""
        spec = record.spec
        working_dir = Path(self._config.root_dir) / f"spawn-{record.agent_id}"
        workspace = working_dir / WORKSPACE_DIR
        workspace.mkdir(parents=True, exist_ok=True)
        Mailbox(working_dir / COMMS_DIR).create(spec_text, AgentProgress())
        copied = self._copy_context_files(spec, record.parent_working_dir, workspace)
        instructions = render_template(
            "agent_instructions.md.j2",
            spec=spec,
            depth=record.depth,
            max_depth=self._config.max_spawn_depth,
            timeout_minutes=record.timeout_minutes,
            completion_phrase=record.completion_phrase,
            comms_dir=COMMS_DIR,
            workspace_dir=WORKSPACE_DIR,
            context_files=copied,
        )
        atomic_write_text(working_dir / INSTRUCTIONS_FILE, instructions)
        return working_dir

    def _copy_context_files(self, spec: AgentTaskSpec, parent_dir: str | None, workspace: Path) -> list[str]:
        copied: list[str] = []
        base = Path(parent_dir) if parent_dir else Path.cwd()
        for ref in spec.context_files[:MAX_CONTEXT_FILES]:
            source = Path(ref).expanduser()
            if not source.is_absolute():
                source = base / source
            if not source.is_file():
                logger.warning(f"Context file not found for {spec.agent_id}: {source}")
                continue
            if source.stat().st_size > MAX_CONTEXT_FILE_SIZE:
                logger.warning(f"Context file too large for {spec.agent_id}: {source}")
                continue
            shutil.copy2(source, workspace / source.name)
            copied.append(source.name)
        return copied

    def _watch(self, record: SpawnedAgentRecord, initial_prompt: bool) -> None:
        """Register completion handler and timers for a running agent."""
        agent_id = record.agent_id
        session_id = record.session_id
        if session_id is None:
            return
        self.sessions.on_session_completion(session_id, lambda phrase: self._on_session_completion(agent_id, phrase))

        limit_s = record.timeout_minutes * 60
        elapsed_s = 0.0
        if record.started_at is not None:
            elapsed_s = max(0.0, (_utc_now() - record.started_at).total_seconds())
        remaining_s = max(0.0, limit_s - elapsed_s)
        warn_at_s = limit_s * self._config.timeout_warning_ratio - elapsed_s
        self._schedule(agent_id, "timeout", remaining_s, lambda: self._on_timeout(agent_id))
        if warn_at_s > 0:
            self._schedule(agent_id, "timeout_warning", warn_at_s, lambda: self._on_timeout_warning(agent_id))
        if initial_prompt:
            self._schedule(
                agent_id, "initial_prompt", self._config.initial_prompt_delay_s, lambda: self._send_initial_prompt(agent_id)
            )
        self._schedule(agent_id, "progress", self._config.progress_poll_interval_s, lambda: self._poll_progress(agent_id))

    def _send_initial_prompt(self, agent_id: str) -> None:
        with self._lock:
            record = self._running(agent_id)
            if record is None:
                return
            try:
                prompt = render_template(
                    "initial_prompt.j2", comms_dir=COMMS_DIR, completion_phrase=record.completion_phrase
                )
            except TemplateError as e:
                logger.error(f"Cannot render initial prompt for {agent_id}: {e}")
                return
            self._safe_session_call(self.sessions.write_to_session, record.session_id, prompt.strip() + "\r")

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def _on_session_completion(self, agent_id: str, phrase: str) -> None:
        with self._lock:
            record = self._running(agent_id)
            if record is None or phrase != record.completion_phrase:
                return
            result = Mailbox(record.comms_dir).read_result() if record.comms_dir else None
            data: dict[str, Any] = {"phrase": phrase}
            if result is not None:
                data["result"] = result.model_dump()
            self._terminate(agent_id, AgentStatus.COMPLETED, None, event_data=data)
        self._process_queue()

    def _on_timeout(self, agent_id: str) -> None:
        with self._lock:
            record = self._running(agent_id)
            if record is None:
                return
            elapsed = (_utc_now() - record.started_at).total_seconds() if record.started_at else 0.0
            reason = f"Timed out after {record.timeout_minutes:g} minutes"
            self._terminate(
                agent_id,
                AgentStatus.TIMEOUT,
                reason,
                event_data={"elapsed_s": round(elapsed, 1), "limit_minutes": record.timeout_minutes},
            )
        self._process_queue()

    def _on_timeout_warning(self, agent_id: str) -> None:
        with self._lock:
            record = self._running(agent_id)
            if record is None:
                return
            remaining = record.timeout_minutes * (1 - self._config.timeout_warning_ratio)
            message = (
                f"TIME WARNING: about {remaining:.0f} minutes remain before this task times out. "
                f"Wrap up, write result.md and output <promise>{record.completion_phrase}</promise>."
            )
            self._safe_session_call(self.sessions.write_to_session, record.session_id, message + "\r")

    def _poll_progress(self, agent_id: str) -> None:
        with self._lock:
            record = self._running(agent_id)
            if record is None:
                return
            progress = Mailbox(record.comms_dir).read_progress() if record.comms_dir else None
            if progress is not None and self._last_progress.get(agent_id) != progress.updated_at:
                self._last_progress[agent_id] = progress.updated_at
                self._emit("progress", agent_id, progress=progress.model_dump(mode="json"))
            self._check_budget(record, progress)
            if self._running(agent_id) is not None:
                self._schedule(
                    agent_id, "progress", self._config.progress_poll_interval_s, lambda: self._poll_progress(agent_id)
                )

    def _check_budget(self, record: SpawnedAgentRecord, progress: AgentProgress | None) -> None:
        spec = record.spec
        if spec.max_tokens is None and spec.max_cost is None:
            return
        tokens = progress.tokens_used if progress else 0
        cost = progress.cost_so_far if progress else 0.0
        try:
            tokens = max(tokens, self.sessions.get_session_tokens(record.session_id))
            cost = max(cost, self.sessions.get_session_cost(record.session_id))
        except Exception as e:
            logger.debug(f"Usage lookup failed for {record.agent_id}: {e}")

        flags = self._budget_flags.setdefault(record.agent_id, set())
        for kind, used, limit in (("tokens", tokens, spec.max_tokens), ("cost", cost, spec.max_cost)):
            if not limit:
                continue
            ratio = used / limit
            if ratio >= self._config.budget_warning_threshold and kind not in flags:
                flags.add(kind)
                logger.warning(f"Agent {record.agent_id} used {ratio:.0%} of its {kind} budget")
                self._emit("budget_warning", record.agent_id, type=kind, used=used, limit=limit)
            if ratio >= 1.0 and f"{kind}_exhausted" not in flags:
                flags.add(f"{kind}_exhausted")
                message = (
                    f"BUDGET NOTICE: your {kind} budget is used up. Finish the current step, "
                    f"write result.md and output <promise>{record.completion_phrase}</promise>."
                )
                self._safe_session_call(self.sessions.write_to_session, record.session_id, message + "\r")

    def _running(self, agent_id: str) -> SpawnedAgentRecord | None:
        record = self._agents.get(agent_id)
        if record is None or record.status != AgentStatus.RUNNING:
            return None
        return record

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _terminate(
        self,
        agent_id: str,
        status: AgentStatus,
        reason: str | None,
        stop_session: bool = True,
        event_data: dict[str, Any] | None = None,
    ) -> bool:
        """Move an agent to a terminal status. Caller holds the lock."""
        record = self._agents.get(agent_id)
        if record is None or record.status.is_terminal:
            return False
        previous = record.status
        record.status = status
        record.failure_reason = reason if status != AgentStatus.COMPLETED else None
        record.finished_at = _utc_now()
        self._cancel_timers(agent_id)
        self._spec_texts.pop(agent_id, None)
        self._budget_flags.pop(agent_id, None)
        self._last_progress.pop(agent_id, None)

        if record.session_id:
            self._safe_session_call(self.sessions.remove_session_completion_handler, record.session_id)
            if stop_session:
                self._safe_session_call(self.sessions.stop_session, record.session_id)

        if agent_id in self._queue:
            if status == AgentStatus.COMPLETED:
                self._queue.mark_completed(agent_id)
            else:
                self._queue.mark_failed(agent_id, reason)
            self._prune_queue()

        if status == AgentStatus.COMPLETED:
            self._counters.total_completed += 1
        elif status in (AgentStatus.FAILED, AgentStatus.TIMEOUT):
            self._counters.total_failed += 1

        logger.info(f"Agent {agent_id}: {previous.value} -> {status.value}" + (f" ({reason})" if reason else ""))
        data = dict(event_data or {})
        if status == AgentStatus.CANCELLED:
            data.setdefault("reason", reason)
        elif status == AgentStatus.FAILED:
            data.setdefault("error", reason)
        self._emit(status.value, agent_id, **data)
        self._evict_finished()
        self._state_changed()
        return True

    def cancel_agent(self, agent_id: str, reason: str | None = None) -> bool:
        """Cancel a queued, initializing or running agent and its children."""
        reason = reason or "Cancelled"
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None or record.status.is_terminal:
                return False
            children = []
            if record.session_id:
                children = [
                    r.agent_id
                    for r in self._agents.values()
                    if r.parent_session_id == record.session_id and not r.status.is_terminal
                ]
            cancelled = self._terminate(agent_id, AgentStatus.CANCELLED, reason)
        for child_id in children:
            self.cancel_agent(child_id, f"Parent agent {agent_id} cancelled")
        self._process_queue()
        return cancelled

    def stop_all(self, reason: str = "Scheduler stopped") -> None:
        """Drain the queue and cancel every agent. Safe to call repeatedly."""
        with self._lock:
            self._stopping = True
            try:
                # Queued first so nothing is admitted as running agents free slots
                ordered = sorted(
                    (r for r in self._agents.values() if not r.status.is_terminal),
                    key=lambda r: r.status != AgentStatus.QUEUED,
                )
                for record in ordered:
                    self._terminate(record.agent_id, AgentStatus.CANCELLED, reason)
            finally:
                self._stopping = False

    def _process_queue(self) -> None:
        """Admit ready queued requests while capacity remains."""
        to_launch: list[str] = []
        with self._lock:
            if self._stopping:
                return
            while self._active_count() < self._config.max_concurrent_agents:
                task = self._queue.get_next_available()
                if task is None:
                    break
                record = self._agents.get(task.id)
                if record is None or record.status != AgentStatus.QUEUED:
                    self._queue.mark_failed(task.id, "No queued agent for task")
                    continue
                self._queue.mark_running(task.id)
                record.status = AgentStatus.INITIALIZING
                to_launch.append(task.id)
        for agent_id in to_launch:
            self._launch(agent_id)

    def _open_dependencies(self, spec: AgentTaskSpec) -> list[str]:
        """Dependencies not already satisfied by a completed agent."""
        open_deps = []
        for dep in spec.depends_on:
            record = self._agents.get(dep)
            done = record is not None and record.status == AgentStatus.COMPLETED
            if done and dep != spec.agent_id and dep not in self._queue:
                continue
            open_deps.append(dep)
        return open_deps

    def _prune_queue(self) -> None:
        """Drop completed tasks that no waiting or running task depends on."""
        needed: set[str] = set()
        for task in self._queue.get_pending_tasks() + self._queue.get_running_tasks():
            needed |= task.dependencies
        for task in self._queue.get_completed_tasks():
            if task.id not in needed:
                self._queue.remove_task(task.id)

    def _evict_finished(self) -> None:
        finished = [r for r in self._agents.values() if r.status.is_terminal]
        excess = len(finished) - self._config.max_tracked_agents
        if excess <= 0:
            return
        finished.sort(key=lambda r: r.finished_at or r.queued_at)
        for record in finished[:excess]:
            del self._agents[record.agent_id]
            if self._queue.get_task(record.agent_id) and record.status != AgentStatus.COMPLETED:
                self._queue.remove_task(record.agent_id)

    # ------------------------------------------------------------------
    # Messaging and queries
    # ------------------------------------------------------------------

    def send_message(self, agent_id: str, content: str, sender: str = "parent") -> Message | None:
        """Append a message to an agent's mailbox and notify its session."""
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None or record.comms_dir is None:
                logger.warning(f"Cannot message agent {agent_id}: no mailbox")
                return None
            try:
                message = Mailbox(record.comms_dir).append_message(sender, content)
            except MailboxError as e:
                logger.warning(f"Cannot message agent {agent_id}: {e}")
                return None
            record.message_sequence = message.sequence
            self._emit("message", agent_id, sequence=message.sequence, sender=sender)
            if sender == "parent" and record.status == AgentStatus.RUNNING:
                notice = f"New message from your parent: {COMMS_DIR}/messages/{message.sequence:03d}-{sender}.md"
                self._safe_session_call(self.sessions.write_to_session, record.session_id, notice + "\r")
            self._state_changed()
            return message

    def read_messages(self, agent_id: str) -> list[Message]:
        record = self.get_agent_status(agent_id)
        if record is None or record.comms_dir is None:
            return []
        return Mailbox(record.comms_dir).read_messages()

    def read_progress(self, agent_id: str) -> AgentProgress | None:
        record = self.get_agent_status(agent_id)
        if record is None or record.comms_dir is None:
            return None
        return Mailbox(record.comms_dir).read_progress()

    def read_result(self, agent_id: str) -> AgentResult | None:
        """The agent's result.md, or None if it has not written one."""
        record = self.get_agent_status(agent_id)
        if record is None or record.comms_dir is None:
            return None
        return Mailbox(record.comms_dir).read_result()

    def get_agent_status(self, agent_id: str) -> SpawnedAgentRecord | None:
        with self._lock:
            record = self._agents.get(agent_id)
            return record.model_copy(deep=True) if record else None

    def get_all_agent_statuses(self) -> list[SpawnedAgentRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._agents.values()]

    def get_state(self) -> SchedulerState:
        with self._lock:
            return self._counters.model_copy(
                update={
                    "active_count": self._active_count(),
                    "queued_count": sum(1 for r in self._agents.values() if r.status == AgentStatus.QUEUED),
                }
            )

    def update_config(self, **changes: Any) -> SchedulerConfig:
        """Apply configuration changes live; more capacity admits queued work."""
        with self._lock:
            self._config = SchedulerConfig.model_validate({**self._config.model_dump(), **changes})
            logger.info(f"Scheduler config updated: {', '.join(sorted(changes))}")
            self._state_changed()
        self._process_queue()
        return self._config

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            return SchedulerSnapshot(
                config=self._config.model_copy(),
                agents={aid: r.model_copy(deep=True) for aid, r in self._agents.items()},
                counters=self.get_state(),
            )

    def restore(self, snapshot: SchedulerSnapshot) -> None:
        """Resume from a snapshot without restarting child processes.

        Running agents get their completion handler and timers back, queued
        agents return to the queue, and agents caught mid-start are failed.
        """
        with self._lock:
            self._config = snapshot.config.model_copy()
            self._counters = snapshot.counters.model_copy()
            records = sorted(snapshot.agents.values(), key=lambda r: r.queued_at)
            for record in records:
                record = record.model_copy(deep=True)
                self._agents[record.agent_id] = record
                if record.status in (AgentStatus.QUEUED, AgentStatus.RUNNING, AgentStatus.COMPLETED):
                    if record.agent_id in self._queue:
                        self._queue.remove_task(record.agent_id)
                    try:
                        self._queue.add_task(
                            record.agent_id,
                            priority=record.spec.priority.rank,
                            dependencies=self._open_dependencies(record.spec),
                        )
                    except TaskQueueError as e:
                        self._terminate(record.agent_id, AgentStatus.FAILED, f"Restore failed: {e}")
                        continue
                if record.status == AgentStatus.COMPLETED:
                    self._queue.mark_completed(record.agent_id)
                elif record.status == AgentStatus.RUNNING:
                    if record.session_id is None:
                        self._terminate(record.agent_id, AgentStatus.FAILED, "Running agent without session")
                        continue
                    self._queue.mark_running(record.agent_id, record.session_id)
                    self._watch(record, initial_prompt=False)
                elif record.status == AgentStatus.INITIALIZING:
                    self._terminate(record.agent_id, AgentStatus.FAILED, "Interrupted while starting", stop_session=False)
            self._prune_queue()
            logger.info(f"Restored {len(records)} agents from snapshot")
            self._state_changed()
        self._process_queue()

    def _state_changed(self) -> None:
        self._emit("state_update", None, **self.get_state().model_dump())
        if self._state_store is None:
            return
        try:
            self._state_store.save(self.snapshot())
        except (OSError, StateStoreError) as e:
            logger.error(f"Failed to persist scheduler state: {e}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _emit(self, event_type: str, agent_id: str | None, **data: Any) -> None:
        event = SpawnEvent(type=event_type, agent_id=agent_id, data=data)
        self.events.emit(event_type, event)
        self.events.emit("event", event)

    def _schedule(self, agent_id: str, name: str, delay_s: float, callback: Callable[[], Any]) -> None:
        with self._lock:
            timers = self._agent_timers.setdefault(agent_id, {})
            old = timers.pop(name, None)
            if old is not None:
                old[1].cancel()
            token = object()

            def fire() -> None:
                with self._lock:
                    entry = self._agent_timers.get(agent_id, {}).get(name)
                    if entry is None or entry[0] is not token:
                        return
                    del self._agent_timers[agent_id][name]
                callback()

            timers[name] = (token, self._timers.call_later(delay_s, fire))

    def _cancel_timers(self, agent_id: str) -> None:
        for _, handle in self._agent_timers.pop(agent_id, {}).values():
            handle.cancel()

    def active_timer_names(self, agent_id: str) -> list[str]:
        with self._lock:
            return sorted(self._agent_timers.get(agent_id, {}))

    @staticmethod
    def _safe_session_call(fn: Callable[..., Any], *args: Any) -> None:
        try:
            fn(*args)
        except Exception as e:
            logger.warning(f"Session call {getattr(fn, '__name__', fn)} failed: {e}")
