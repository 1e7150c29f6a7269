"""Narrow interfaces to the process layer.

The controller and scheduler never manage processes themselves. Whatever
launches and attaches to the assistant process implements `SessionCollaborator`.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Protocol, runtime_checkable

# Called with the completion phrase the session emitted
CompletionHandler = Callable[[str], None]


@runtime_checkable
class SessionCollaborator(Protocol):
    """Create, drive and observe assistant sessions."""

    def create_session(self, working_dir: Path, name: str) -> str:
        """Start a session bound to `working_dir`; return its session id."""
        ...

    def write_to_session(self, session_id: str, data: str) -> None: ...

    def get_session_tokens(self, session_id: str) -> int: ...

    def get_session_cost(self, session_id: str) -> float: ...

    def stop_session(self, session_id: str) -> None: ...

    def on_session_completion(self, session_id: str, handler: CompletionHandler) -> None: ...

    def remove_session_completion_handler(self, session_id: str) -> None: ...


# The only capability a RespawnController needs: writing to its agent
SessionWriter = Callable[[str], None]


def session_writer(sessions: SessionCollaborator, session_id: str) -> SessionWriter:
    """Bind a collaborator and session id into a writer for a controller."""

    def write(data: str) -> None:
        sessions.write_to_session(session_id, data)

    return write
