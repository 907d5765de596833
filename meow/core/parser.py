"""TOML workflow document parser.

Two document shapes are accepted:

* legacy: a ``[meta]`` table, ``[variables.<name>]`` tables and ``[[steps]]``;
* module: one or more named tables (``[main]``, ``[.helper]``) each holding a
  ``steps`` array, plus per-workflow ``internal``/``ephemeral``/``hooks_to``.

Parsing only checks shape. Semantic checks belong to ``meow.core.validation``.
"""

import logging
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any, Union

from meow.core.config import DEFAULT_WORKFLOW
from meow.core.exceptions import ParseError
from meow.core.models import (
    AgentOutputDef,
    ExecutorKind,
    ExpansionTarget,
    Meta,
    Module,
    OutputSource,
    Step,
    Var,
    VarType,
    Workflow,
    flex_value,
)

logger = logging.getLogger(__name__)

_STEP_TEXT_FIELDS = (
    "type",
    "title",
    "description",
    "agent",
    "prompt",
    "mode",
    "command",
    "workdir",
    "on_error",
    "adapter",
    "resume_session",
    "spawn_args",
    "template",
    "condition",
    "items",
    "items_file",
    "item_var",
    "index_var",
    "instructions",
    "assignee",
    "code",
    "validation",
)

_STEP_KNOWN_KEYS = frozenset(
    _STEP_TEXT_FIELDS
    + (
        "id",
        "executor",
        "needs",
        "timeout",
        "ephemeral",
        "env",
        "outputs",
        "shell_outputs",
        "graceful",
        "variables",
        "on_true",
        "on_false",
        "on_timeout",
        "parallel",
        "max_concurrent",
        "join",
    )
)

_CLEANUP_KEYS = ("cleanup_on_success", "cleanup_on_failure", "cleanup_on_stop")
_WORKFLOW_KNOWN_KEYS = frozenset(
    ("name", "description", "internal", "ephemeral", "hooks_to", "variables", "steps") + _CLEANUP_KEYS
)


class DocumentFormat(Enum):
    """Shape of a workflow document."""

    LEGACY = "legacy"
    MODULE = "module"


def detect_format(data: dict[str, Any]) -> DocumentFormat:
    """Legacy documents are recognised by a top-level ``meta`` table."""
    if isinstance(data.get("meta"), dict):
        return DocumentFormat.LEGACY
    return DocumentFormat.MODULE


def _decode(text: str, path: str) -> dict[str, Any]:
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        where = f" {path}" if path else ""
        raise ParseError(f"decode TOML{where}: {exc}") from exc


def parse_string(text: str, path: str = "") -> Union[Workflow, Module]:
    """Parse a document, returning a Workflow (legacy) or a Module."""
    data = _decode(text, path)
    if detect_format(data) is DocumentFormat.LEGACY:
        return _parse_legacy(data, path)
    return _parse_module(data, path)


def parse_file(path: Union[str, Path]) -> Union[Workflow, Module]:
    file_path = Path(path)
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ParseError(f"open workflow file {file_path}: {exc}") from exc
    return parse_string(text, str(file_path))


def parse_workflow_string(text: str, path: str = "") -> Workflow:
    """Parse a document that must use the legacy single-workflow shape."""
    data = _decode(text, path)
    if detect_format(data) is not DocumentFormat.LEGACY:
        raise ParseError("expected a legacy workflow document with a [meta] table")
    return _parse_legacy(data, path)


def parse_module_string(text: str, path: str = "") -> Module:
    """Parse a document into a Module; legacy documents become a one-workflow module."""
    parsed = parse_string(text, path)
    if isinstance(parsed, Module):
        return parsed
    return as_module(parsed, path)


def as_module(workflow: Workflow, path: str = "") -> Module:
    return Module(workflows={DEFAULT_WORKFLOW: workflow}, path=path)


# -- legacy shape -------------------------------------------------------------


def _parse_legacy(data: dict[str, Any], path: str) -> Workflow:
    meta_data = data["meta"]
    meta = Meta(
        name=_text(meta_data, "name", "meta"),
        version=_text(meta_data, "version", "meta"),
        description=_text(meta_data, "description", "meta"),
        author=_text(meta_data, "author", "meta"),
        type=_text(meta_data, "type", "meta"),
        on_error=_text(meta_data, "on_error", "meta"),
        max_iterations=_int(meta_data, "max_iterations", "meta"),
        max_retries=_int(meta_data, "max_retries", "meta"),
        error_gate_template=_text(meta_data, "error_gate_template", "meta"),
    )
    for key in data:
        if key not in ("meta", "variables", "steps"):
            logger.warning("Ignoring unknown top-level key %r in %s", key, path or "<string>")
    workflow = Workflow(
        name=meta.name,
        description=meta.description,
        variables=_parse_variables(data.get("variables", {}), meta.name),
        steps=_parse_steps(data.get("steps", []), meta.name),
        meta=meta,
    )
    logger.debug("Parsed legacy workflow %s with %d steps", workflow.name, len(workflow.steps))
    return workflow


# -- module shape -------------------------------------------------------------


def _parse_module(data: dict[str, Any], path: str) -> Module:
    module = Module(path=path)
    for key, value in data.items():
        if not isinstance(value, dict) or "steps" not in value:
            logger.warning("Ignoring top-level key %r in %s", key, path or "<string>")
            continue
        local_name = key.lstrip(".")
        if local_name in module.workflows:
            raise ParseError(f"duplicate workflow {local_name!r}")
        module.workflows[local_name] = _parse_module_workflow(local_name, value)
    if not module.workflows:
        raise ParseError(f"no workflows found in {path or 'document'}: expected [meta] or tables with steps")
    logger.debug("Parsed module %s with workflows %s", path or "<string>", module.names())
    return module


def _parse_module_workflow(local_name: str, data: dict[str, Any]) -> Workflow:
    context = f"workflow {local_name!r}"
    hooks_to = data.get("hooks_to", "")
    if not isinstance(hooks_to, str):
        raise ParseError(f"{context}: hooks_to must be a string")
    for key in data:
        if key not in _WORKFLOW_KNOWN_KEYS:
            logger.debug("Ignoring unknown key %r in %s", key, context)
    return Workflow(
        name=_text(data, "name", context) or local_name,
        description=_text(data, "description", context),
        internal=_bool(data, "internal", context),
        ephemeral=_bool(data, "ephemeral", context),
        hooks_to=hooks_to,
        variables=_parse_variables(data.get("variables", {}), local_name),
        steps=_parse_steps(data.get("steps", []), local_name),
        cleanup_on_success=_text(data, "cleanup_on_success", context),
        cleanup_on_failure=_text(data, "cleanup_on_failure", context),
        cleanup_on_stop=_text(data, "cleanup_on_stop", context),
    )


# -- shared pieces ------------------------------------------------------------


def _parse_variables(raw: Any, context: str) -> dict[str, Var]:
    if not isinstance(raw, dict):
        raise ParseError(f"{context}: variables must be a table")
    variables: dict[str, Var] = {}
    for name, spec in raw.items():
        where = f"{context}: variable {name!r}"
        if not isinstance(spec, dict):
            # Shorthand: ``name = "value"`` declares a default.
            variables[name] = Var(default=spec)
            continue
        var_type = None
        type_text = spec.get("type", "")
        if type_text:
            try:
                var_type = VarType(str(type_text).strip().lower())
            except ValueError:
                raise ParseError(
                    f"{where}: invalid type {type_text!r} (must be string, int, bool, file, json, or object)"
                ) from None
        enum = spec.get("enum", [])
        if not isinstance(enum, list):
            raise ParseError(f"{where}: enum must be an array")
        variables[name] = Var(
            required=_bool(spec, "required", where),
            default=spec.get("default"),
            type=var_type,
            description=_text(spec, "description", where),
            enum=[str(item) for item in enum],
        )
    return variables


def _parse_steps(raw: Any, context: str) -> list[Step]:
    if not isinstance(raw, list):
        raise ParseError(f"{context}: steps must be an array of tables")
    return [parse_step(item, f"{context}: steps[{index}]") for index, item in enumerate(raw)]


def parse_step(data: Any, context: str = "step") -> Step:
    """Build a Step from one decoded ``[[steps]]`` table."""
    if not isinstance(data, dict):
        raise ParseError(f"{context}: step must be a table")
    step_id = data.get("id", "")
    if not isinstance(step_id, str):
        raise ParseError(f"{context}: id must be a string")
    where = f"{context} ({step_id})" if step_id else context

    executor = None
    if data.get("executor"):
        try:
            executor = ExecutorKind.parse(data["executor"])
        except ValueError as exc:
            raise ParseError(f"{where}: {exc}") from exc

    step = Step(id=step_id, executor=executor)
    for name in _STEP_TEXT_FIELDS:
        setattr(step, name, _text(data, name, where))

    timeout = data.get("timeout", "")
    if isinstance(timeout, bool) or not isinstance(timeout, (str, int, float)):
        raise ParseError(f"{where}: timeout must be a string or number")
    step.timeout = str(timeout) if timeout != "" else ""

    step.needs = _string_list(data, "needs", where)
    step.ephemeral = _bool(data, "ephemeral", where)
    step.env = _string_map(data, "env", where)
    step.variables = _table(data, "variables", where)

    graceful = data.get("graceful")
    if graceful is not None and not isinstance(graceful, bool):
        raise ParseError(f"{where}: graceful must be a boolean")
    step.graceful = graceful

    join = data.get("join")
    if join is not None and not isinstance(join, bool):
        raise ParseError(f"{where}: join must be a boolean")
    step.join = join

    for name in ("parallel", "max_concurrent"):
        try:
            setattr(step, name, flex_value(data.get(name)))
        except ValueError as exc:
            raise ParseError(f"{where}: {name}: {exc}") from exc

    _parse_outputs(step, data, where)

    for name in ("on_true", "on_false", "on_timeout"):
        if name in data:
            setattr(step, name, _parse_expansion_target(data[name], f"{where}: {name}"))

    unknown = sorted(set(data) - _STEP_KNOWN_KEYS)
    if unknown:
        logger.debug("Ignoring unknown step keys in %s: %s", where, unknown)
    return step


def _parse_outputs(step: Step, data: dict[str, Any], where: str) -> None:
    shell_like = step.executor in (ExecutorKind.SHELL, ExecutorKind.BRANCH) or (
        step.executor is None and step.type in ("code", "condition")
    )
    shell_outputs = data.get("shell_outputs")
    outputs = data.get("outputs")
    if shell_outputs is None and shell_like:
        shell_outputs, outputs = outputs, None

    for name, spec in _as_table(shell_outputs, f"{where}: shell_outputs").items():
        if isinstance(spec, str):
            step.shell_outputs[name] = OutputSource(source=spec)
        elif isinstance(spec, dict) and isinstance(spec.get("source", ""), str):
            step.shell_outputs[name] = OutputSource(source=spec.get("source", ""))
        else:
            raise ParseError(f"{where}: output {name!r} must be a table with a source")

    for name, spec in _as_table(outputs, f"{where}: outputs").items():
        if not isinstance(spec, dict):
            raise ParseError(f"{where}: output {name!r} must be a table")
        step.outputs[name] = AgentOutputDef(
            required=_bool(spec, "required", where),
            type=_text(spec, "type", where) or "string",
            description=_text(spec, "description", where),
        )


def _parse_expansion_target(raw: Any, context: str) -> ExpansionTarget:
    if not isinstance(raw, dict):
        raise ParseError(f"{context}: must be a table")
    inline = raw.get("inline", [])
    if not isinstance(inline, list):
        raise ParseError(f"{context}: inline must be an array of tables")
    return ExpansionTarget(
        template=_text(raw, "template", context),
        inline=[parse_step(item, f"{context}.inline[{index}]") for index, item in enumerate(inline)],
        variables=_table(raw, "variables", context),
    )


# -- field helpers ------------------------------------------------------------


def _as_table(value: Any, context: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"{context}: must be a table")
    return value


def _table(data: dict[str, Any], key: str, context: str) -> dict[str, Any]:
    return dict(_as_table(data.get(key), f"{context}: {key}"))


def _text(data: dict[str, Any], key: str, context: str) -> str:
    value = data.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ParseError(f"{context}: {key} must be a string, got {type(value).__name__}")
    return value


def _bool(data: dict[str, Any], key: str, context: str) -> bool:
    value = data.get(key, False)
    if not isinstance(value, bool):
        raise ParseError(f"{context}: {key} must be a boolean")
    return value


def _int(data: dict[str, Any], key: str, context: str) -> int:
    value = data.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParseError(f"{context}: {key} must be an integer")
    return value


def _string_list(data: dict[str, Any], key: str, context: str) -> list[str]:
    value = data.get(key, [])
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ParseError(f"{context}: {key} must be an array of strings")
    return list(value)


def _string_map(data: dict[str, Any], key: str, context: str) -> dict[str, str]:
    table = _table(data, key, context)
    result: dict[str, str] = {}
    for name, value in table.items():
        if isinstance(value, (dict, list)):
            raise ParseError(f"{context}: {key}.{name} must be a scalar")
        if isinstance(value, bool):
            value = "true" if value else "false"
        result[name] = str(value)
    return result
