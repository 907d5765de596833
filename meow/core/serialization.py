"""Compiled step <-> dict/YAML helpers for handing a baked graph to an execution engine."""

from dataclasses import MISSING, fields, is_dataclass
from enum import Enum
from typing import Any

import yaml

from meow.core.compiled import (
    AgentConfig,
    BranchConfig,
    BranchTarget,
    CompiledStep,
    ExpandConfig,
    ForeachConfig,
    KillConfig,
    ShellConfig,
    SpawnConfig,
)
from meow.core.models import AgentOutputDef, ExecutorKind, OutputSource, StepStatus

_CONFIG_TYPES = {
    ExecutorKind.SHELL: ShellConfig,
    ExecutorKind.SPAWN: SpawnConfig,
    ExecutorKind.KILL: KillConfig,
    ExecutorKind.EXPAND: ExpandConfig,
    ExecutorKind.FOREACH: ForeachConfig,
    ExecutorKind.BRANCH: BranchConfig,
    ExecutorKind.AGENT: AgentConfig,
}


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value):
        result = {}
        for item in fields(value):
            converted = _plain(getattr(value, item.name))
            if converted is None or converted == "" or converted == [] or converted == {}:
                continue
            result[item.name] = converted
        return result
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return value


def compiled_step_to_dict(step: CompiledStep) -> dict[str, Any]:
    """Serialize a CompiledStep to a plain dict.

    Unset fields are dropped. ``status`` and ``needs`` are always present.
    """
    data = _plain(step)
    data["status"] = step.status.value
    data["needs"] = list(step.needs)
    return data


def compiled_step_from_dict(data: dict[str, Any]) -> CompiledStep:
    """Rebuild a CompiledStep from :func:`compiled_step_to_dict` output."""
    executor = ExecutorKind.parse(data["executor"])
    step = CompiledStep(
        id=data["id"],
        executor=executor,
        status=StepStatus(data.get("status", StepStatus.PENDING.value)),
        needs=list(data.get("needs", [])),
        description=data.get("description", ""),
        ephemeral=bool(data.get("ephemeral", False)),
        hooks_to=data.get("hooks_to", ""),
        source_workflow=data.get("source_workflow", ""),
    )
    config_data = dict(data.get(executor.value) or {})
    if executor in (ExecutorKind.SHELL, ExecutorKind.BRANCH):
        config_data["outputs"] = {
            name: OutputSource(**spec) for name, spec in config_data.get("outputs", {}).items()
        }
    if executor is ExecutorKind.AGENT:
        config_data["outputs"] = {
            name: AgentOutputDef(**spec) for name, spec in config_data.get("outputs", {}).items()
        }
    if executor is ExecutorKind.BRANCH:
        for name in ("on_true", "on_false", "on_timeout"):
            if name in config_data:
                target = dict(config_data[name])
                target["inline"] = [compiled_step_from_dict(item) for item in target.get("inline", [])]
                config_data[name] = BranchTarget(**target)
    config_type = _CONFIG_TYPES[executor]
    for item in fields(config_type):
        if item.default is MISSING and item.default_factory is MISSING:
            config_data.setdefault(item.name, "")
    step.set_config(config_type(**config_data))
    return step


def dump_compiled_steps(
    steps: list[CompiledStep], workflow_id: str = "", cleanup: dict[str, str] | None = None
) -> str:
    """Render compiled steps as a YAML document.

    ``cleanup`` holds the workflow's substituted cleanup scripts keyed by
    trigger; it is written only when at least one script is set.
    """
    document: dict[str, Any] = {}
    if workflow_id:
        document["workflow_id"] = workflow_id
    if cleanup:
        document["cleanup"] = dict(cleanup)
    document["steps"] = [compiled_step_to_dict(step) for step in steps]
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False, allow_unicode=True)


def load_compiled_steps(text: str) -> list[CompiledStep]:
    """Parse a YAML document produced by :func:`dump_compiled_steps`."""
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict) or not isinstance(data.get("steps", []), list):
        raise ValueError("compiled step document must be a mapping with a steps list")
    return [compiled_step_from_dict(item) for item in data.get("steps", [])]
