"""Declaration models for MEOW workflow documents."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from meow.core.config import DEFAULT_WORKFLOW


class ExecutorKind(Enum):
    """Closed set of step behaviours the execution engine understands."""

    SHELL = "shell"
    SPAWN = "spawn"
    KILL = "kill"
    EXPAND = "expand"
    BRANCH = "branch"
    FOREACH = "foreach"
    AGENT = "agent"

    @classmethod
    def parse(cls, value: str) -> "ExecutorKind":
        """Return the member named by ``value`` or raise ``ValueError``."""
        normalized = str(value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        allowed = ", ".join(member.value for member in cls)
        raise ValueError(f"invalid executor: {value!r} (must be one of {allowed})")

    @property
    def produces_children(self) -> bool:
        return self in (ExecutorKind.EXPAND, ExecutorKind.FOREACH)


class StepStatus(Enum):
    """Execution status of a compiled step."""

    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class VarType(Enum):
    """Declared type of a workflow variable."""

    STRING = "string"
    INT = "int"
    BOOL = "bool"
    FILE = "file"  # bound value is a path; its trimmed contents are substituted
    JSON = "json"  # text bindings are decoded, structured bindings pass through
    OBJECT = "object"  # binding must already be structured


@dataclass
class Var:
    """Variable declaration."""

    required: bool = False
    default: Any = None
    type: VarType | None = None
    description: str = ""
    enum: list[str] = field(default_factory=list)

    @property
    def has_default(self) -> bool:
        return self.default is not None

    @property
    def is_missing_when_unbound(self) -> bool:
        return self.required and not self.has_default


@dataclass
class OutputSource:
    """Where a shell step captures a named output from."""

    source: str  # stdout | stderr | exit_code | file:<path>


@dataclass
class AgentOutputDef:
    """Expected output of an agent step."""

    required: bool = False
    type: str = "string"  # string | number | boolean | json | file_path
    description: str = ""


# Dynamically-typed foreach options are kept as a tagged variant and resolved
# in one place by the baker.
@dataclass(frozen=True)
class LiteralBool:
    value: bool


@dataclass(frozen=True)
class LiteralNumber:
    value: Union[int, float]


@dataclass(frozen=True)
class VariableRef:
    text: str


FlexValue = Union[LiteralBool, LiteralNumber, VariableRef]


def flex_value(raw: Any) -> Optional[FlexValue]:
    """Wrap a raw document value into a FlexValue, ``None`` stays ``None``."""
    if raw is None:
        return None
    if isinstance(raw, bool):
        return LiteralBool(raw)
    if isinstance(raw, (int, float)):
        return LiteralNumber(raw)
    if isinstance(raw, str):
        return VariableRef(raw)
    raise ValueError(f"expected bool, number or string, got {type(raw).__name__}")


@dataclass
class ExpansionTarget:
    """What a branch outcome expands into: a workflow reference or inline steps."""

    template: str = ""
    inline: list["Step"] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.template and not self.inline


@dataclass
class Step:
    """Single step declaration as written in a workflow document."""

    id: str
    executor: ExecutorKind | None = None
    type: str = ""  # legacy free-text kind, see LEGACY_TYPE_EXECUTORS
    needs: list[str] = field(default_factory=list)
    timeout: str = ""
    title: str = ""
    description: str = ""
    ephemeral: bool = False

    # agent
    agent: str = ""
    prompt: str = ""
    mode: str = ""
    outputs: dict[str, AgentOutputDef] = field(default_factory=dict)

    # shell
    command: str = ""
    workdir: str = ""
    env: dict[str, str] = field(default_factory=dict)
    on_error: str = ""
    shell_outputs: dict[str, OutputSource] = field(default_factory=dict)

    # spawn
    adapter: str = ""
    resume_session: str = ""
    spawn_args: str = ""

    # kill
    graceful: bool | None = None

    # expand / foreach
    template: str = ""
    variables: dict[str, Any] = field(default_factory=dict)

    # branch
    condition: str = ""
    on_true: ExpansionTarget | None = None
    on_false: ExpansionTarget | None = None
    on_timeout: ExpansionTarget | None = None

    # foreach
    items: str = ""
    items_file: str = ""
    item_var: str = ""
    index_var: str = ""
    parallel: Optional[FlexValue] = None
    max_concurrent: Optional[FlexValue] = None
    join: bool | None = None

    # legacy aliases
    instructions: str = ""
    assignee: str = ""
    code: str = ""
    validation: str = ""

    def effective_prompt(self) -> str:
        return self.prompt or self.instructions

    def effective_agent(self) -> str:
        return self.agent or self.assignee

    def effective_command(self) -> str:
        return self.command or self.code

    def branch_targets(self) -> dict[str, ExpansionTarget]:
        """Return the declared branch outcomes keyed by field name."""
        targets = {
            "on_true": self.on_true,
            "on_false": self.on_false,
            "on_timeout": self.on_timeout,
        }
        return {name: target for name, target in targets.items() if target is not None}


@dataclass
class Meta:
    """Header table of a legacy single-workflow document."""

    name: str = ""
    version: str = ""
    description: str = ""
    author: str = ""
    type: str = ""  # loop | linear
    on_error: str = ""  # continue | abort | retry | inject-gate
    max_iterations: int = 0
    max_retries: int = 0
    error_gate_template: str = ""


@dataclass
class Workflow:
    """Named unit of variable declarations and ordered steps."""

    name: str
    steps: list[Step] = field(default_factory=list)
    variables: dict[str, Var] = field(default_factory=dict)
    description: str = ""
    ephemeral: bool = False
    internal: bool = False
    hooks_to: str = ""
    cleanup_on_success: str = ""
    cleanup_on_failure: str = ""
    cleanup_on_stop: str = ""
    meta: Meta | None = None  # set only for legacy documents

    @property
    def is_legacy(self) -> bool:
        return self.meta is not None

    def get_step(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]

    def required_variables(self) -> dict[str, Var]:
        """Variables that must be bound by the caller (required and no default)."""
        return {name: var for name, var in self.variables.items() if var.is_missing_when_unbound}

    def cleanup_scripts(self) -> dict[str, str]:
        """Opt-in cleanup scripts keyed by trigger (``on_success``, ``on_failure``, ``on_stop``)."""
        scripts = {
            "on_success": self.cleanup_on_success,
            "on_failure": self.cleanup_on_failure,
            "on_stop": self.cleanup_on_stop,
        }
        return {trigger: script for trigger, script in scripts.items() if script}


@dataclass
class Module:
    """Document holding one or more named workflows."""

    workflows: dict[str, Workflow] = field(default_factory=dict)
    path: str = ""

    def get_workflow(self, name: str) -> Workflow | None:
        return self.workflows.get(name.lstrip("."))

    def default_workflow(self) -> Workflow | None:
        return self.workflows.get(DEFAULT_WORKFLOW)

    def names(self) -> list[str]:
        return list(self.workflows)


LEGACY_TYPE_EXECUTORS: dict[str, ExecutorKind] = {
    "": ExecutorKind.AGENT,
    "task": ExecutorKind.AGENT,
    "collaborative": ExecutorKind.AGENT,
    "code": ExecutorKind.SHELL,
    "condition": ExecutorKind.BRANCH,
    "restart": ExecutorKind.BRANCH,
    "start": ExecutorKind.SPAWN,
    "stop": ExecutorKind.KILL,
    "expand": ExecutorKind.EXPAND,
    "gate": ExecutorKind.BRANCH,
    "blocking-gate": ExecutorKind.BRANCH,
}

GATE_TYPES = frozenset({"gate", "blocking-gate"})


def resolve_executor(step: Step) -> tuple[ExecutorKind, bool]:
    """Return ``(kind, is_gate)`` for a step.

    An explicit ``executor`` always wins; otherwise the legacy ``type`` is
    looked up in LEGACY_TYPE_EXECUTORS. Unknown legacy types raise ``ValueError``.
    """
    if step.executor is not None:
        return step.executor, False
    legacy = (step.type or "").strip().lower()
    kind = LEGACY_TYPE_EXECUTORS.get(legacy)
    if kind is None:
        raise ValueError(f"unsupported step type: {step.type!r}")
    return kind, legacy in GATE_TYPES
