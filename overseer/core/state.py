"""Persist scheduler snapshots for restart recovery.

Snapshots are JSON documents written atomically under an inter-process file
lock, so a supervisor restart never reads a half-written file.
"""

from __future__ import annotations

import logging
from pathlib import Path

from filelock import FileLock, Timeout
from pydantic import ValidationError

from overseer.core.mailbox import atomic_write_text
from overseer.core.models import SchedulerSnapshot

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_S = 10.0


class StateStoreError(Exception):
    """Snapshot could not be saved or loaded."""

    pass


class StateStore:
    """Load and save a SchedulerSnapshot at a fixed path."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = FileLock(str(self.path) + ".lock", timeout=LOCK_TIMEOUT_S)

    def save(self, snapshot: SchedulerSnapshot) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._lock:
                atomic_write_text(self.path, snapshot.model_dump_json(indent=2))
        except Timeout as e:
            raise StateStoreError(f"Timed out locking {self.path}") from e
        logger.debug(f"Saved snapshot with {len(snapshot.agents)} agents to {self.path}")

    def load(self) -> SchedulerSnapshot | None:
        """Return the stored snapshot, or None if none was saved yet.

        Raises:
            StateStoreError: If the file exists but is corrupt.
        """
        if not self.path.exists():
            return None
        try:
            with self._lock:
                text = self.path.read_text(encoding="utf-8")
        except Timeout as e:
            raise StateStoreError(f"Timed out locking {self.path}") from e
        try:
            return SchedulerSnapshot.model_validate_json(text)
        except ValidationError as e:
            raise StateStoreError(f"Corrupt snapshot at {self.path}: {e}") from e

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)
