"""File-based mailbox shared by a parent and one child agent.

Layout of a mailbox directory::

    task.md              original task spec
    progress.json        progress document kept current by the child
    result.md            written by the child when done (optional)
    messages/
        001-parent.md    sequentially numbered, sender-tagged messages
        002-agent.md

Parent and child never share memory or a process; the directory is the only
channel, so either side may restart independently of the other.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from datetime import UTC, datetime
from pathlib import Path

from filelock import FileLock, Timeout
from pydantic import ValidationError

from overseer.core.models import AgentProgress, AgentResult, Message
from overseer.core.spec_parser import parse_result_text

logger = logging.getLogger(__name__)

TASK_FILE = "task.md"
PROGRESS_FILE = "progress.json"
RESULT_FILE = "result.md"
MESSAGES_DIR = "messages"
LOCK_FILE = ".mailbox.lock"

MAX_MESSAGE_SIZE = 50 * 1024
MAX_MESSAGES = 100
LOCK_TIMEOUT_S = 10.0

MESSAGE_FILE_PATTERN = re.compile(r"^(\d+)-([A-Za-z0-9_-]+)\.md$")
SENDER_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,32}$")


class MailboxError(Exception):
    """Mailbox could not be read or written."""

    pass


def atomic_write_text(path: Path, text: str) -> None:
    """Write via a temp file and rename, so readers never see partial content."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class Mailbox:
    """One agent's mailbox directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.messages_dir = self.root / MESSAGES_DIR
        self._lock = FileLock(str(self.root / LOCK_FILE), timeout=LOCK_TIMEOUT_S)

    @property
    def task_path(self) -> Path:
        return self.root / TASK_FILE

    @property
    def progress_path(self) -> Path:
        return self.root / PROGRESS_FILE

    @property
    def result_path(self) -> Path:
        return self.root / RESULT_FILE

    def create(self, task_text: str, progress: AgentProgress | None = None) -> None:
        """Materialize the mailbox with the task record and initial progress."""
        self.messages_dir.mkdir(parents=True, exist_ok=True)
        atomic_write_text(self.task_path, task_text)
        self.write_progress(progress or AgentProgress())

    def write_progress(self, progress: AgentProgress) -> None:
        atomic_write_text(self.progress_path, progress.model_dump_json(indent=2))

    def read_progress(self) -> AgentProgress | None:
        """Current progress, or None if missing or unreadable.

        The child writes this file; a torn or invalid write is treated as
        "no update yet" rather than an error.
        """
        try:
            raw = json.loads(self.progress_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.debug(f"Unreadable progress in {self.root}: {e}")
            return None
        try:
            return AgentProgress.model_validate(_snake_keys(raw))
        except ValidationError as e:
            logger.debug(f"Invalid progress document in {self.root}: {e}")
            return None

    def read_result(self) -> AgentResult | None:
        try:
            text = self.result_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Failed to read {self.result_path}: {e}")
            return None
        return parse_result_text(text)

    def append_message(self, sender: str, content: str) -> Message:
        """Write the next sequentially numbered message from `sender`.

        Content beyond the size limit is truncated.

        Raises:
            MailboxError: On an invalid sender, a full mailbox or a lock timeout.
        """
        if not SENDER_PATTERN.match(sender):
            raise MailboxError(f"Invalid sender tag: {sender!r}")
        if len(content.encode("utf-8")) > MAX_MESSAGE_SIZE:
            content = content.encode("utf-8")[:MAX_MESSAGE_SIZE].decode("utf-8", errors="ignore")
            content += "\n\n[truncated]"
        self.messages_dir.mkdir(parents=True, exist_ok=True)
        try:
            with self._lock:
                existing = self._message_files()
                if len(existing) >= MAX_MESSAGES:
                    raise MailboxError(f"Mailbox {self.root} is full ({MAX_MESSAGES} messages)")
                sequence = (existing[-1][0] if existing else 0) + 1
                path = self.messages_dir / f"{sequence:03d}-{sender}.md"
                atomic_write_text(path, content)
        except Timeout as e:
            raise MailboxError(f"Timed out waiting for mailbox lock in {self.root}") from e
        timestamp = datetime.fromtimestamp(path.stat().st_mtime, UTC)
        return Message(sequence=sequence, sender=sender, content=content, timestamp=timestamp)

    def read_messages(self) -> list[Message]:
        """All messages in sequence order."""
        messages: list[Message] = []
        for sequence, sender, path in self._message_files():
            try:
                content = path.read_text(encoding="utf-8")
                mtime = path.stat().st_mtime
            except OSError as e:
                logger.warning(f"Failed to read message {path}: {e}")
                continue
            messages.append(
                Message(
                    sequence=sequence,
                    sender=sender,
                    content=content,
                    timestamp=datetime.fromtimestamp(mtime, UTC),
                )
            )
        return messages

    def _message_files(self) -> list[tuple[int, str, Path]]:
        if not self.messages_dir.is_dir():
            return []
        found = []
        for path in self.messages_dir.iterdir():
            match = MESSAGE_FILE_PATTERN.match(path.name)
            if match and int(match.group(1)) > 0:
                found.append((int(match.group(1)), match.group(2), path))
        return sorted(found)


def _snake_keys(raw: object) -> object:
    if not isinstance(raw, dict):
        return raw
    return {re.sub(r"(?<!^)(?=[A-Z])", "_", str(k)).lower(): v for k, v in raw.items()}
