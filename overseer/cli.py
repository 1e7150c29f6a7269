"""CLI entry point for Overseer.

Inspection commands over the library:
- overseer init: Write a default .overseer/config.yaml
- overseer config: Show the effective configuration
- overseer parse-spec: Validate a task spec and show its header
- overseer replay: Feed captured agent output through a SignalTracker
- overseer snapshot: Show a persisted scheduler snapshot
"""

from __future__ import annotations

import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from overseer import __version__
from overseer.core.config import ConfigError, config_path, load_config, write_default_config
from overseer.core.models import AgentStatus, TodoStatus
from overseer.core.signals import SignalTracker
from overseer.core.spec_parser import SpecError, resolve_spec
from overseer.core.state import StateStore, StateStoreError
from overseer.core.timers import ManualTimerService

console = Console()

REPLAY_CHUNK_SIZE = 4096

_TODO_STYLE = {
    TodoStatus.PENDING: "[dim]pending[/dim]",
    TodoStatus.IN_PROGRESS: "[yellow]in_progress[/yellow]",
    TodoStatus.COMPLETED: "[green]completed[/green]",
}

_AGENT_STYLE = {
    AgentStatus.QUEUED: "dim",
    AgentStatus.INITIALIZING: "cyan",
    AgentStatus.RUNNING: "yellow",
    AgentStatus.COMPLETED: "green",
    AgentStatus.FAILED: "red",
    AgentStatus.TIMEOUT: "red",
    AgentStatus.CANCELLED: "magenta",
}


def get_repo_path() -> Path:
    """Get the repository path (current directory)."""
    return Path.cwd()


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
def main(verbose: bool) -> None:
    """Overseer - supervisor for autonomous AI coding agents."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )


@main.command()
@click.option("--force", is_flag=True, help="Overwrite an existing config file")
def init(force: bool) -> None:
    """Write a default .overseer/config.yaml."""
    repo_path = get_repo_path()
    existed = config_path(repo_path).exists()
    path = write_default_config(repo_path, overwrite=force)
    if existed and not force:
        console.print(f"[yellow]Config already exists:[/yellow] {path}")
        return
    console.print(f"[green]Wrote[/green] {path}")


@main.command("config")
def show_config() -> None:
    """Show the effective configuration."""
    try:
        config = load_config(get_repo_path())
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    console.print(yaml.safe_dump(config.model_dump(mode="json"), sort_keys=False), markup=False)


@main.command("parse-spec")
@click.argument("spec_file", type=click.Path(dir_okay=False))
def parse_spec(spec_file: str) -> None:
    """Validate a task spec file and show its header.

    Example:
        overseer parse-spec tasks/api-tests.md
    """
    try:
        spec, _ = resolve_spec(spec_file, get_repo_path())
    except SpecError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    table = Table(title=f"Task spec: {spec.name}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("agent_id", spec.agent_id)
    table.add_row("type", spec.type.value)
    table.add_row("priority", spec.priority.value)
    table.add_row("timeout_minutes", str(spec.timeout_minutes or "default"))
    table.add_row("completion_phrase", spec.effective_completion_phrase)
    table.add_row("can_modify_parent_files", str(spec.can_modify_parent_files))
    if spec.depends_on:
        table.add_row("depends_on", ", ".join(spec.depends_on))
    if spec.context_files:
        table.add_row("context_files", ", ".join(spec.context_files))
    console.print(table)
    console.print(Panel(escape(spec.body) or "[dim](empty)[/dim]", title="Body"))


@main.command()
@click.argument("log_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--auto-enable/--enabled", default=False, help="Only enable tracking when patterns appear")
def replay(log_file: str, auto_enable: bool) -> None:
    """Replay captured agent output through a signal tracker.

    Example:
        overseer replay session.log
    """
    tracker = SignalTracker(ManualTimerService())
    if auto_enable:
        tracker.allow_auto_enable()
    else:
        tracker.enable()
    completions: list[str] = []
    tracker.events.on("completion", completions.append)

    data = Path(log_file).read_bytes().decode("utf-8", errors="replace")
    for start in range(0, len(data), REPLAY_CHUNK_SIZE):
        tracker.process_chunk(data[start : start + REPLAY_CHUNK_SIZE])
    tracker.process_chunk("\n")
    tracker.flush()

    state = tracker.state
    lines = [
        f"Enabled: {state.enabled}",
        f"Active: {state.active}",
        f"Cycle: {state.cycle_count}" + (f" / {state.max_iterations}" if state.max_iterations else ""),
    ]
    if state.elapsed_hours is not None:
        lines.append(f"Elapsed: {state.elapsed_hours:g} hours")
    if completions:
        lines.append(f"Completions: {', '.join(completions)}")
    console.print(Panel("\n".join(lines), title="Loop state"))

    todos = tracker.todos
    if not todos:
        console.print("[dim]No todos detected[/dim]")
        return
    table = Table(title=f"Todos ({len(todos)})")
    table.add_column("Status")
    table.add_column("Content")
    for todo in todos:
        table.add_row(_TODO_STYLE[todo.status], escape(todo.content))
    console.print(table)


@main.command()
@click.argument("snapshot_file", type=click.Path(dir_okay=False))
def snapshot(snapshot_file: str) -> None:
    """Show a persisted scheduler snapshot."""
    try:
        snap = StateStore(snapshot_file).load()
    except StateStoreError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    if snap is None:
        console.print(f"[yellow]No snapshot at {snapshot_file}[/yellow]")
        return

    counters = snap.counters
    console.print(
        Panel(
            f"Active: {counters.active_count}  Queued: {counters.queued_count}  "
            f"Spawned: {counters.total_spawned}  Completed: {counters.total_completed}  "
            f"Failed: {counters.total_failed}  Max depth: {counters.max_depth_reached}",
            title=f"Scheduler (saved {snap.saved_at.astimezone(UTC):%Y-%m-%d %H:%M:%S} UTC)",
        )
    )

    table = Table(title="Agents")
    table.add_column("Agent ID", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Depth", justify="right")
    table.add_column("Completion phrase")
    table.add_column("Age", justify="right")
    now = datetime.now(UTC)
    for record in snap.agents.values():
        style = _AGENT_STYLE.get(record.status, "white")
        age = now - (record.started_at or record.queued_at)
        table.add_row(
            record.agent_id,
            record.name,
            f"[{style}]{record.status.value}[/{style}]",
            str(record.depth),
            record.completion_phrase,
            f"{int(age.total_seconds() // 60)}m",
        )
    console.print(table)


if __name__ == "__main__":
    main()
