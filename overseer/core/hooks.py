"""Hook events delivered by the assistant's hook mechanism.

Raw hook payloads come from outside the process and are sanitized before they
reach a controller: unknown event names are rejected, strings are truncated and
only a bounded number of scalar fields survive.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from overseer.core.respawn import RespawnController

logger = logging.getLogger(__name__)

MAX_FIELD_CHARS = 1024
MAX_FIELDS = 20


class HookError(Exception):
    """Hook payload rejected."""

    pass


class HookEventType(str, Enum):
    """Hook events the controller understands."""

    ELICITATION_DIALOG = "elicitation_dialog"
    PERMISSION_PROMPT = "permission_prompt"
    STOP = "stop"
    IDLE_PROMPT = "idle_prompt"
    TRANSCRIPT_PATH = "transcript_path"


class HookEvent(BaseModel):
    """A sanitized, size-bounded hook event."""

    event: HookEventType
    session_id: str | None = None
    data: dict[str, str | int | float | bool | None] = Field(default_factory=dict)


def _clip(value: str) -> str:
    return value if len(value) <= MAX_FIELD_CHARS else value[:MAX_FIELD_CHARS]


def sanitize_hook_payload(raw: dict[str, Any]) -> HookEvent:
    """Validate and bound a raw hook payload.

    Raises:
        HookError: If the payload is not a mapping or names an unknown event.
    """
    if not isinstance(raw, dict):
        raise HookError("Hook payload must be a mapping")
    name = raw.get("event")
    try:
        event = HookEventType(name)
    except ValueError as e:
        raise HookError(f"Unknown hook event: {str(name)[:64]!r}") from e

    session_id = raw.get("session_id")
    data: dict[str, str | int | float | bool | None] = {}
    for key, value in raw.get("data", {}).items() if isinstance(raw.get("data"), dict) else []:
        if len(data) >= MAX_FIELDS:
            break
        if isinstance(value, str):
            data[_clip(str(key))] = _clip(value)
        elif value is None or isinstance(value, (bool, int, float)):
            data[_clip(str(key))] = value
    return HookEvent(
        event=event,
        session_id=_clip(session_id) if isinstance(session_id, str) else None,
        data=data,
    )


def dispatch_hook(controller: RespawnController, event: HookEvent) -> None:
    """Route a sanitized hook event to the controller supervising its session."""
    logger.debug(f"Hook {event.event.value} for session {event.session_id}")
    if event.event in (HookEventType.ELICITATION_DIALOG, HookEventType.PERMISSION_PROMPT):
        controller.on_elicitation()
    elif event.event == HookEventType.STOP:
        controller.on_stop_hook()
    elif event.event == HookEventType.IDLE_PROMPT:
        controller.on_idle_prompt()
    elif event.event == HookEventType.TRANSCRIPT_PATH:
        path = event.data.get("path")
        if not isinstance(path, str) or not path:
            raise HookError("transcript_path event without a path")
        controller.attach_transcript(path)
