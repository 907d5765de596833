"""Structural and semantic validation of parsed workflows.

Validation never stops at the first problem: every finding is collected into a
ValidationResult so authors see the whole report at once. Baking assumes a
workflow that passed here.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from meow.core.models import (
    LEGACY_TYPE_EXECUTORS,
    ExecutorKind,
    ExpansionTarget,
    Module,
    Step,
    Workflow,
    resolve_executor,
)
from meow.core.placeholders import find_placeholders, is_output_reference, split_path

BUILTIN_VARIABLES = frozenset(
    ("timestamp", "date", "time", "agent", "bead_id", "molecule_id", "workflow_id", "step_id")
)

_SEMVER = re.compile(r"^\d+\.\d+\.\d+")
_META_ON_ERROR = ("continue", "abort", "retry", "inject-gate")
_META_TYPES = ("loop", "linear")
_STEP_MODES = ("autonomous", "interactive")
_STEP_ON_ERROR = ("continue", "fail")

# Text fields that may carry placeholders.
_TEXT_FIELDS = (
    "description",
    "prompt",
    "instructions",
    "command",
    "code",
    "condition",
    "template",
    "workdir",
    "agent",
    "assignee",
    "items",
    "items_file",
    "validation",
    "spawn_args",
)


@dataclass
class ValidationError:
    """Single finding with its location and an optional fix hint."""

    workflow: str = ""
    step_id: str = ""
    field: str = ""
    message: str = ""
    suggestion: str = ""

    def __str__(self) -> str:
        parts = []
        if self.workflow:
            parts.append(f'workflow "{self.workflow}"')
        if self.step_id:
            parts.append(f'step "{self.step_id}"')
        if self.field:
            parts.append(f'field "{self.field}"')
        message = self.message
        if self.suggestion:
            message += f" (suggestion: {self.suggestion})"
        if parts:
            return f"{', '.join(parts)}: {message}"
        return message


@dataclass
class ValidationResult:
    """Ordered collection of validation findings."""

    errors: list[ValidationError] = field(default_factory=list)

    def add(self, workflow: str, step_id: str, field: str, message: str, suggestion: str = "") -> None:
        self.errors.append(ValidationError(workflow, step_id, field, message, suggestion))

    def merge(self, other: "ValidationResult") -> None:
        self.errors.extend(other.errors)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def __bool__(self) -> bool:
        return self.has_errors

    def __len__(self) -> int:
        return len(self.errors)

    def messages(self) -> list[str]:
        return [str(error) for error in self.errors]

    def __str__(self) -> str:
        if not self.errors:
            return ""
        return f"validation failed with {len(self.errors)} error(s):\n  - " + "\n  - ".join(self.messages())


# -- similarity ---------------------------------------------------------------


def similarity(a: str, b: str) -> int:
    """Common-prefix length plus common-suffix length of the remainder."""
    limit = min(len(a), len(b))
    score = 0
    while score < limit and a[score] == b[score]:
        score += 1
    prefix = score
    for offset in range(1, limit - prefix + 1):
        if a[-offset] != b[-offset]:
            break
        score += 1
    return score


def find_similar(target: str, candidates: Iterable[str]) -> str:
    """Return a ``did you mean`` hint when a candidate scores above half the target length."""
    best = ""
    best_score = 0
    for candidate in sorted(set(candidates)):
        if candidate == target:
            continue
        score = similarity(target, candidate)
        if score > best_score:
            best, best_score = candidate, score
    if best and best_score > len(target) // 2:
        return f'did you mean "{best}"?'
    return ""


# -- cycles -------------------------------------------------------------------

_UNVISITED, _VISITING, _VISITED = 0, 1, 2


def _close_cycle(dep: str, node: str, parent: Mapping[str, str]) -> list[str]:
    cycle = [dep]
    current = node
    while current != dep:
        cycle.append(current)
        current = parent[current]
    cycle.append(dep)
    cycle.reverse()
    return cycle


def _visit(
    start: str,
    deps: Mapping[str, list[str]],
    state: dict[str, int],
    parent: dict[str, str],
) -> list[str]:
    state[start] = _VISITING
    stack = [(start, iter(deps[start]))]
    while stack:
        node, pending = stack[-1]
        for dep in pending:
            if dep not in deps:
                continue
            dep_state = state.get(dep, _UNVISITED)
            if dep_state == _VISITING:
                return _close_cycle(dep, node, parent)
            if dep_state == _UNVISITED:
                parent[dep] = node
                state[dep] = _VISITING
                stack.append((dep, iter(deps[dep])))
                break
        else:
            state[node] = _VISITED
            stack.pop()
    return []


def find_cycle(steps: Iterable[Step]) -> list[str]:
    """Return one dependency cycle as a closed path (``[a, b, a]``), or ``[]``.

    Depth-first search with three-state colouring over an explicit stack, so
    long dependency chains never hit the interpreter's recursion limit.
    Traversal state is passed explicitly so the function is re-entrant.
    """
    deps: dict[str, list[str]] = {}
    for step in steps:
        if step.id:
            deps.setdefault(step.id, list(step.needs))
    state: dict[str, int] = {}
    parent: dict[str, str] = {}
    for node in deps:
        if state.get(node, _UNVISITED) == _UNVISITED:
            cycle = _visit(node, deps, state, parent)
            if cycle:
                return cycle
    return []


# -- workflow checks ----------------------------------------------------------


def validate_full(workflow: Workflow) -> ValidationResult:
    """Run every check on a single workflow and return all findings."""
    result = ValidationResult()
    name = workflow.name
    if workflow.meta is not None:
        _validate_meta(workflow, result)
    elif not name:
        result.add(name, "", "name", "workflow name is required", 'add name = "workflow-name"')
    _validate_variables(workflow, result)
    if not workflow.steps:
        result.add(name, "", "steps", "workflow must have at least one step", "add [[steps]] section")
        return result
    _validate_step_ids(workflow, result)
    _validate_dependencies(workflow, result)
    _validate_variable_references(workflow, result)
    for step in workflow.steps:
        _validate_step_semantics(step, name, result, step.id)
    return result


def validate_full_module(module: Module) -> ValidationResult:
    """Validate every workflow of a module plus its local ``.workflow`` references."""
    result = ValidationResult()
    for local_name, workflow in module.workflows.items():
        result.merge(validate_full(workflow))
        _validate_local_references(module, local_name, workflow, result)
    return result


def _validate_meta(workflow: Workflow, result: ValidationResult) -> None:
    meta = workflow.meta
    name = workflow.name
    if not meta.name:
        result.add(name, "", "meta.name", "name is required", 'add name = "my-template"')
    if meta.version and not _SEMVER.match(meta.version):
        result.add(name, "", "meta.version", "version should be semver format", "use format X.Y.Z")
    if meta.on_error and meta.on_error not in _META_ON_ERROR:
        result.add(
            name, "", "meta.on_error", f'invalid on_error: "{meta.on_error}"',
            "use continue, abort, retry, or inject-gate",
        )
    if meta.type and meta.type not in _META_TYPES:
        result.add(name, "", "meta.type", f'invalid type: "{meta.type}"', "use loop or linear")


def _validate_variables(workflow: Workflow, result: ValidationResult) -> None:
    for var_name, var in workflow.variables.items():
        field_name = f"variables.{var_name}"
        if var.enum and var.has_default and str(var.default) not in var.enum:
            result.add(
                workflow.name, "", field_name,
                f'default "{var.default}" is not one of the allowed values',
                "use one of: " + ", ".join(var.enum),
            )


def _validate_step_ids(workflow: Workflow, result: ValidationResult) -> None:
    seen: dict[str, int] = {}
    for index, step in enumerate(workflow.steps):
        if not step.id:
            result.add(workflow.name, f"steps[{index}]", "id", "step id is required")
            continue
        if step.id in seen:
            result.add(
                workflow.name, step.id, "id",
                f"duplicate step id (first at index {seen[step.id]})", "use unique step ids",
            )
            continue
        seen[step.id] = index


def _expanding_step_ids(workflow: Workflow) -> set[str]:
    expanding = set()
    for step in workflow.steps:
        try:
            kind, _ = resolve_executor(step)
        except ValueError:
            continue
        if kind.produces_children:
            expanding.add(step.id)
    return expanding


def _validate_dependencies(workflow: Workflow, result: ValidationResult) -> None:
    known = {step.id for step in workflow.steps if step.id}
    expanding = _expanding_step_ids(workflow)
    for step in workflow.steps:
        for need in step.needs:
            if need in known:
                continue
            # "impl.review" and "impl.*" point into a subgraph that "impl" creates at run time.
            prefix, dot, child = need.partition(".")
            if dot and child and prefix in expanding:
                continue
            result.add(
                workflow.name, step.id, "needs",
                f'references unknown step "{need}"', find_similar(need, known),
            )
    cycle = find_cycle(workflow.steps)
    if cycle:
        result.add(
            workflow.name, "", "needs",
            "circular dependency detected: " + " → ".join(cycle),
            "remove one of the dependencies to break the cycle",
        )


def _validate_variable_references(workflow: Workflow, result: ValidationResult) -> None:
    defined = set(workflow.variables) | BUILTIN_VARIABLES
    for trigger, script in workflow.cleanup_scripts().items():
        _check_text(script, workflow.name, "", f"cleanup_{trigger}", defined, result)
    for step in workflow.steps:
        _check_step_references(step, workflow.name, step.id, "", defined, result)


def _check_step_references(
    step: Step, workflow_name: str, step_id: str, prefix: str, defined: set[str], result: ValidationResult
) -> None:
    for field_name in _TEXT_FIELDS:
        _check_text(getattr(step, field_name), workflow_name, step_id, prefix + field_name, defined, result)
    for key, value in step.env.items():
        _check_text(value, workflow_name, step_id, f"{prefix}env.{key}", defined, result)

    child_defined = set(defined)
    if step.item_var:
        child_defined.add(step.item_var)
    if step.index_var:
        child_defined.add(step.index_var)
    _check_value(step.variables, workflow_name, step_id, f"{prefix}variables", child_defined, result)

    for target_name, target in step.branch_targets().items():
        _check_target(target, workflow_name, step_id, f"{prefix}{target_name}", defined, result)


def _check_target(
    target: ExpansionTarget, workflow_name: str, step_id: str, field_name: str, defined: set[str], result: ValidationResult
) -> None:
    _check_text(target.template, workflow_name, step_id, f"{field_name}.template", defined, result)
    _check_value(target.variables, workflow_name, step_id, f"{field_name}.variables", defined, result)
    for index, inline in enumerate(target.inline):
        _check_step_references(
            inline, workflow_name, step_id, f"{field_name}.inline[{index}].", defined, result
        )


def _check_value(value, workflow_name, step_id, field_name, defined, result) -> None:
    if isinstance(value, str):
        _check_text(value, workflow_name, step_id, field_name, defined, result)
    elif isinstance(value, dict):
        for key, item in value.items():
            _check_value(item, workflow_name, step_id, f"{field_name}.{key}", defined, result)
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _check_value(item, workflow_name, step_id, f"{field_name}[{index}]", defined, result)


def _check_text(text, workflow_name, step_id, field_name, defined, result) -> None:
    for path in find_placeholders(text):
        if is_output_reference(path):
            continue
        root = split_path(path)[0]
        if root not in defined:
            result.add(
                workflow_name, step_id, field_name,
                f'undefined variable "{root}"', find_similar(root, defined),
            )


def _validate_step_semantics(step: Step, workflow_name: str, result: ValidationResult, location: str) -> None:
    """Executor-specific checks; ``location`` names the step in reports."""

    def add(field_name: str, message: str, suggestion: str = "") -> None:
        result.add(workflow_name, location, field_name, message, suggestion)

    try:
        kind, is_gate = resolve_executor(step)
    except ValueError:
        valid = sorted(name for name in LEGACY_TYPE_EXECUTORS if name)
        add("type", f'invalid step type: "{step.type}"', "use executor = ... or one of: " + ", ".join(valid))
        return

    if step.mode and step.mode not in _STEP_MODES:
        add("mode", f'invalid mode "{step.mode}"', "use autonomous or interactive")
    if step.on_error and step.on_error not in _STEP_ON_ERROR:
        add("on_error", f'invalid on_error "{step.on_error}"', "use continue or fail")

    if is_gate:
        if not step.effective_prompt():
            add("instructions", "gate without instructions", "add instructions explaining what the human should do")
        if step.effective_agent():
            add("assignee", "gate must not have an assignee", "remove assignee; gates wait for a human")
    elif kind is ExecutorKind.SHELL:
        if not step.effective_command():
            add("command", "shell step requires command", 'add command = "..."')
    elif kind in (ExecutorKind.SPAWN, ExecutorKind.KILL):
        if not step.effective_agent():
            add("agent", f"{kind.value} step requires agent", 'add agent = "agent-id"')
    elif kind is ExecutorKind.EXPAND:
        if not step.template:
            add("template", "expand step requires template", 'add template = ".workflow"')
    elif kind is ExecutorKind.BRANCH:
        if not step.condition:
            add("condition", "branch step requires condition", "add a shell condition (exit 0 = true)")
        elif not step.branch_targets() and step.type != "restart":
            add(
                "condition", "condition without on_true or on_false branch",
                "add on_true and/or on_false to specify branch actions",
            )
    elif kind is ExecutorKind.FOREACH:
        if not step.items and not step.items_file:
            add("items", "foreach step requires items or items_file")
        elif step.items and step.items_file:
            add("items", "foreach step cannot have both items and items_file")
        if not step.item_var:
            add("item_var", "foreach step requires item_var")
        if not step.template:
            add("template", "foreach step requires template")
    elif kind is ExecutorKind.AGENT:
        if not step.effective_prompt():
            add("prompt", "agent step requires prompt", 'add prompt = "..."')

    if kind is not ExecutorKind.BRANCH or is_gate:
        return
    for target_name, target in step.branch_targets().items():
        if target.is_empty:
            add(target_name, f"{target_name} needs a template or inline steps")
        for index, inline in enumerate(target.inline):
            _validate_step_semantics(
                inline, workflow_name, result, f"{location}.{target_name}.inline[{index}]"
            )


# -- module checks ------------------------------------------------------------


def _validate_local_references(module: Module, local_name: str, workflow: Workflow, result: ValidationResult) -> None:
    for step in workflow.steps:
        check_local_reference(module, local_name, step.id, "template", step.template, result)
        for target_name, target in step.branch_targets().items():
            check_local_reference(
                module, local_name, step.id, f"{target_name}.template", target.template, result
            )


def check_local_reference(
    module: Module, workflow_name: str, step_id: str, field_name: str, ref: str, result: ValidationResult
) -> None:
    """Check a ``.workflow`` or ``.workflow.step`` reference against the module.

    References with placeholders or pointing at another file are left to the
    loader at runtime.
    """
    if not ref or "{{" in ref or not ref.startswith("."):
        return
    target_name, _, step_ref = ref[1:].partition(".")
    target = module.workflows.get(target_name)
    if target is None:
        result.add(
            workflow_name, step_id, field_name,
            f'references unknown workflow "{target_name}"', find_similar(target_name, module.workflows),
        )
        return
    if step_ref and target.get_step(step_ref) is None:
        result.add(
            workflow_name, step_id, field_name,
            f'references unknown step "{step_ref}" in workflow "{target_name}"',
            find_similar(step_ref, target.step_ids()),
        )

