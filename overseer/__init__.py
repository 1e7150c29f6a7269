"""Overseer - supervisor for autonomous AI coding-assistant agents.

Keeps long-running assistant sessions progressing (respawn control) and admits,
queues and tears down child agents spawned from task specifications.
"""

__version__ = "0.1.0"
