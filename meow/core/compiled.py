"""Compiled step models handed to the execution engine.

Each executor kind gets its own strongly-shaped config; a CompiledStep carries
exactly one of them. Spawn and kill configs line up with the agent supervisor's
``spawn``/``despawn`` arguments.
"""

from dataclasses import dataclass, field
from typing import Any, Union

from meow.core.models import AgentOutputDef, ExecutorKind, OutputSource, StepStatus


@dataclass
class ShellConfig:
    command: str
    workdir: str = ""
    env: dict[str, str] = field(default_factory=dict)
    on_error: str = ""  # continue | fail
    outputs: dict[str, OutputSource] = field(default_factory=dict)


@dataclass
class SpawnConfig:
    agent: str
    adapter: str = ""
    workdir: str = ""
    env: dict[str, str] = field(default_factory=dict)
    resume_session: str = ""  # opaque session id, never substituted
    spawn_args: str = ""


@dataclass
class KillConfig:
    agent: str
    graceful: bool = True
    timeout: int = 10  # seconds


@dataclass
class ExpandConfig:
    template: str
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass
class ForeachConfig:
    template: str
    item_var: str
    items: str = ""
    items_file: str = ""
    index_var: str = ""
    variables: dict[str, Any] = field(default_factory=dict)
    parallel: bool = True
    max_concurrent: int = 0  # 0 means unlimited
    join: bool = True


@dataclass
class BranchTarget:
    """Compiled branch outcome: a workflow reference or inline child steps."""

    template: str = ""
    inline: list["CompiledStep"] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass
class BranchConfig:
    condition: str
    timeout: str = ""
    workdir: str = ""
    env: dict[str, str] = field(default_factory=dict)
    on_error: str = ""
    outputs: dict[str, OutputSource] = field(default_factory=dict)
    on_true: BranchTarget | None = None
    on_false: BranchTarget | None = None
    on_timeout: BranchTarget | None = None
    prompt: str = ""  # instructions shown to the approver of a gate


@dataclass
class AgentConfig:
    agent: str
    prompt: str
    mode: str = "autonomous"
    outputs: dict[str, AgentOutputDef] = field(default_factory=dict)
    timeout: str = ""


ExecutorConfig = Union[
    ShellConfig, SpawnConfig, KillConfig, ExpandConfig, ForeachConfig, BranchConfig, AgentConfig
]

_CONFIG_FIELDS = {
    ExecutorKind.SHELL: "shell",
    ExecutorKind.SPAWN: "spawn",
    ExecutorKind.KILL: "kill",
    ExecutorKind.EXPAND: "expand",
    ExecutorKind.FOREACH: "foreach",
    ExecutorKind.BRANCH: "branch",
    ExecutorKind.AGENT: "agent",
}


@dataclass
class CompiledStep:
    """Executable step with its dependency list and executor config."""

    id: str
    executor: ExecutorKind
    status: StepStatus = StepStatus.PENDING
    needs: list[str] = field(default_factory=list)
    description: str = ""
    ephemeral: bool = False
    hooks_to: str = ""
    source_workflow: str = ""
    shell: ShellConfig | None = None
    spawn: SpawnConfig | None = None
    kill: KillConfig | None = None
    expand: ExpandConfig | None = None
    foreach: ForeachConfig | None = None
    branch: BranchConfig | None = None
    agent: AgentConfig | None = None

    def config(self) -> ExecutorConfig | None:
        """Return the config matching ``executor``."""
        return getattr(self, _CONFIG_FIELDS[self.executor])

    def set_config(self, config: ExecutorConfig) -> None:
        setattr(self, _CONFIG_FIELDS[self.executor], config)
