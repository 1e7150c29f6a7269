"""Parse agent task specifications.

A spec is a YAML header between ``---`` lines followed by a free-text body::

    ---
    agentId: api-tests
    name: API test writer
    type: test
    priority: high
    timeoutMinutes: 45
    completionPhrase: API_TESTS_DONE
    canModifyParentFiles: false
    dependsOn: [schema-review]
    ---
    Write integration tests for the /users endpoints.

Header keys are accepted in camelCase or snake_case. The same text parses
identically whether it is read from a file or passed inline.
"""

from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from overseer.core.models import AgentResult, AgentTaskSpec

logger = logging.getLogger(__name__)

MAX_SPEC_FILE_SIZE = 2 * 1024 * 1024
FRONTMATTER_DELIMITER = "---"

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


class SpecError(Exception):
    """Error resolving or parsing a task spec."""

    pass


class SpecNotFoundError(SpecError):
    """Referenced spec file does not exist."""

    pass


class SpecParseError(SpecError):
    """Spec header is missing or malformed."""

    pass


def _snake(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower().replace("-", "_")


def split_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Split text into (header mapping, body).

    Raises:
        SpecParseError: If the header is absent, unterminated or not a mapping.
    """
    lines = text.lstrip("\ufeff").lstrip().splitlines()
    if not lines or lines[0].strip() != FRONTMATTER_DELIMITER:
        raise SpecParseError("Failed to parse task spec YAML frontmatter: missing opening '---'")
    try:
        end = next(i for i in range(1, len(lines)) if lines[i].strip() == FRONTMATTER_DELIMITER)
    except StopIteration:
        raise SpecParseError("Failed to parse task spec YAML frontmatter: missing closing '---'") from None

    try:
        header = yaml.safe_load("\n".join(lines[1:end])) or {}
    except yaml.YAMLError as e:
        raise SpecParseError(f"Failed to parse task spec YAML frontmatter: {e}") from e
    if not isinstance(header, dict):
        raise SpecParseError("Failed to parse task spec YAML frontmatter: header is not a mapping")
    body = "\n".join(lines[end + 1 :]).strip()
    return header, body


def parse_spec_text(text: str) -> AgentTaskSpec:
    """Parse spec text into an AgentTaskSpec.

    A missing agent id is derived from a digest of the text
    (``agent-xxxxxxxx``), so the same text always yields the same id. A
    missing name defaults to the id.
    """
    header, body = split_frontmatter(text)
    fields = {_snake(str(k)): v for k, v in header.items()}
    if "agent_id" not in fields:
        fields["agent_id"] = f"agent-{hashlib.sha256(text.encode('utf-8')).hexdigest()[:8]}"
    fields["agent_id"] = str(fields["agent_id"])
    fields.setdefault("name", fields["agent_id"])
    if isinstance(fields.get("name"), str):
        fields["name"] = fields["name"][:64]
    for key in ("depends_on", "context_files"):
        if isinstance(fields.get(key), str):
            fields[key] = [fields[key]]
    fields["body"] = body
    known = set(AgentTaskSpec.model_fields)
    unknown = sorted(set(fields) - known)
    if unknown:
        logger.debug(f"Ignoring unknown spec header keys: {unknown}")
    try:
        return AgentTaskSpec.model_validate({k: v for k, v in fields.items() if k in known})
    except ValidationError as e:
        raise SpecParseError(f"Failed to parse task spec YAML frontmatter: {e}") from e


def looks_inline(spec_ref_or_content: str) -> bool:
    """True if the argument is spec content rather than a path."""
    return spec_ref_or_content.lstrip("\ufeff").lstrip().startswith(FRONTMATTER_DELIMITER) or "\n" in spec_ref_or_content


def resolve_spec(spec_ref_or_content: str, base_dir: str | Path | None = None) -> tuple[AgentTaskSpec, str]:
    """Resolve a path or inline content into (spec, original text).

    Relative paths are resolved against `base_dir`.

    Raises:
        SpecNotFoundError: If a referenced file does not exist.
        SpecParseError: If the file is too large, unreadable, not UTF-8 or the
            header is malformed.
    """
    if looks_inline(spec_ref_or_content):
        text = spec_ref_or_content
        return parse_spec_text(text), text

    path = Path(spec_ref_or_content).expanduser()
    if not path.is_absolute() and base_dir is not None:
        path = Path(base_dir) / path
    try:
        if not path.is_file():
            raise SpecNotFoundError(f"Task file not found: {path}")
        size = path.stat().st_size
    except OSError as e:
        raise SpecNotFoundError(f"Task file not accessible: {path}: {e}") from e
    if size > MAX_SPEC_FILE_SIZE:
        raise SpecParseError(f"Task file too large: {size} bytes (max {MAX_SPEC_FILE_SIZE})")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise SpecParseError(f"Task file is not valid UTF-8: {path}: {e}") from e
    except OSError as e:
        raise SpecParseError(f"Failed to read task file {path}: {e}") from e
    return parse_spec_text(text), text


def parse_result_text(text: str) -> AgentResult:
    """Parse a result.md document. A missing header yields the body only."""
    try:
        header, body = split_frontmatter(text)
    except SpecParseError:
        return AgentResult(body=text.strip())
    fields = {_snake(str(k)): v for k, v in header.items()}
    fields["body"] = body
    try:
        return AgentResult.model_validate({k: v for k, v in fields.items() if k in AgentResult.model_fields})
    except ValidationError as e:
        logger.warning(f"Malformed result header: {e}")
        return AgentResult(body=body)


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def format_spec_text(spec: AgentTaskSpec) -> str:
    """Render a spec back into header + body form (inverse of parse_spec_text)."""
    header = {
        _camel(k): v
        for k, v in spec.model_dump(mode="json", exclude={"body"}).items()
        if v is not None and v != []
    }
    dumped = yaml.safe_dump(header, default_flow_style=False, sort_keys=False)
    return f"{FRONTMATTER_DELIMITER}\n{dumped}{FRONTMATTER_DELIMITER}\n{spec.body}\n"
