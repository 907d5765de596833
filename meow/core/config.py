"""Environment-driven defaults for the workflow compiler.

Values are read once at import time. Library classes take explicit keyword
overrides, so these only matter when a caller does not pass one.
"""

import os
from pathlib import Path

MAX_SUBSTITUTION_DEPTH = max(1, int(os.getenv("MEOW_MAX_SUBSTITUTION_DEPTH", "10")))
DEFAULT_KILL_TIMEOUT = max(0, int(os.getenv("MEOW_DEFAULT_KILL_TIMEOUT", "10")))
DEFAULT_AGENT_MODE = os.getenv("MEOW_DEFAULT_AGENT_MODE", "autonomous").strip() or "autonomous"
APPROVAL_COMMAND = os.getenv("MEOW_APPROVAL_COMMAND", "meow await-approval").strip() or "meow await-approval"
PROJECT_DIR_NAME = os.getenv("MEOW_PROJECT_DIR", ".meow").strip() or ".meow"
LOG_LEVEL = os.getenv("MEOW_LOG_LEVEL", "WARNING").strip().upper() or "WARNING"

DEFAULT_WORKFLOW = "main"
WORKFLOW_SUFFIX = ".meow.toml"
WORKFLOWS_DIR = "workflows"


def user_home() -> Path:
    """Return the user-tier root (``$MEOW_HOME`` or ``~/.meow``)."""
    configured = os.getenv("MEOW_HOME", "").strip()
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".meow"


def approval_condition(step_id: str, command: str | None = None) -> str:
    """Build the approval-wait command used as a gate step's branch condition."""
    return f"{command or APPROVAL_COMMAND} {step_id}"
