"""Jinja2 rendering for the documents and prompts Overseer writes.

Templates ship inside the package (`overseer/prompts/`) and are rendered in a
sandbox with StrictUndefined so a missing variable fails loudly.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined, TemplateNotFound, UndefinedError
from jinja2.sandbox import SandboxedEnvironment

TEMPLATE_DIR = Path(__file__).parent.parent / "prompts"

# SECURITY: Allowlist of valid template names (shipped with package)
ALLOWED_TEMPLATES = frozenset([
    "agent_instructions.md.j2",
    "initial_prompt.j2",
    "idle_check.j2",
    "plan_check.j2",
])


class TemplateError(Exception):
    """Template could not be loaded or rendered."""

    pass


@lru_cache(maxsize=1)
def _environment() -> SandboxedEnvironment:
    return SandboxedEnvironment(
        loader=FileSystemLoader(TEMPLATE_DIR),
        undefined=StrictUndefined,
        autoescape=False,  # Markdown and plain text, not HTML
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )


def render_template(name: str, **context: Any) -> str:
    """Render a packaged template by name."""
    if name not in ALLOWED_TEMPLATES:
        raise TemplateError(f"Unknown template '{name}'")
    try:
        return _environment().get_template(name).render(**context)
    except TemplateNotFound as e:
        raise TemplateError(f"Template '{name}' missing from {TEMPLATE_DIR}") from e
    except UndefinedError as e:
        raise TemplateError(f"Template '{name}' rendered without a required variable: {e}") from e
