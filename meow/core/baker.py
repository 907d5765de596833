"""Baker: compile a validated workflow plus variable bindings into executable steps.

Baking is always gated by validation and always emits steps in a stable
topological order (declaration order breaks ties). ``needs`` lists are carried
through as written; dependencies on steps outside the batch (children of an
expansion, an inline batch's parent) do not take part in the ordering.
"""

import heapq
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from meow.core import config
from meow.core.compiled import (
    AgentConfig,
    BranchConfig,
    BranchTarget,
    CompiledStep,
    ExecutorConfig,
    ExpandConfig,
    ForeachConfig,
    KillConfig,
    ShellConfig,
    SpawnConfig,
)
from meow.core.exceptions import BakeError, ValidationFailedError, VariableError
from meow.core.models import (
    ExecutorKind,
    ExpansionTarget,
    FlexValue,
    LiteralBool,
    LiteralNumber,
    OutputSource,
    Step,
    Var,
    VariableRef,
    VarType,
    Workflow,
    resolve_executor,
)
from meow.core.validation import validate_full
from meow.core.variables import StepLookup, VarContext, stringify_value

logger = logging.getLogger(__name__)

_TRUTHY = {"true", "1", "yes"}
_FALSY = {"false", "0", "no"}
_DURATION = re.compile(r"^\s*(\d+)\s*(s|m|h)?\s*$")
_DURATION_SECONDS = {None: 1, "s": 1, "m": 60, "h": 3600}
_MAX_SUGGESTION_DISTANCE = 2


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def _parse_bool_text(text: str) -> bool | None:
    normalized = text.strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    return None


def coerce_binding(name: str, value: Any, declared: Var | None) -> Any:
    """Coerce a caller-supplied binding according to its declaration."""
    if declared is None:
        return value
    if declared.type is VarType.FILE:
        if not isinstance(value, (str, Path)):
            raise VariableError(f'variable "{name}": file variable requires a path, got {type(value).__name__}')
        try:
            value = Path(value).expanduser().read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise VariableError(f'variable "{name}": reading file: {exc}') from exc
    elif declared.type is VarType.INT:
        if isinstance(value, bool):
            raise VariableError(f'variable "{name}": expected int, got bool')
        if not isinstance(value, int):
            try:
                value = int(str(value).strip())
            except ValueError:
                raise VariableError(f'variable "{name}": expected int, got "{value}"') from None
    elif declared.type is VarType.BOOL:
        if not isinstance(value, bool):
            parsed = _parse_bool_text(str(value))
            if parsed is None:
                raise VariableError(f'variable "{name}": expected bool, got "{value}"')
            value = parsed
    elif declared.type is VarType.JSON:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError as exc:
                raise VariableError(f'variable "{name}": invalid JSON: {exc}') from exc
    elif declared.type is VarType.OBJECT:
        if isinstance(value, str):
            raise VariableError(f'variable "{name}": expected object, got string')
    elif declared.type is VarType.STRING and not isinstance(value, str):
        value = stringify_value(value)

    if declared.enum and stringify_value(value) not in declared.enum:
        raise VariableError(
            f'variable "{name}": "{stringify_value(value)}" is not one of: {", ".join(declared.enum)}'
        )
    return value


def order_steps(steps: list[CompiledStep]) -> list[CompiledStep]:
    """Stable Kahn topological sort over the ``needs`` edges inside ``steps``."""
    index = {step.id: position for position, step in enumerate(steps)}
    in_degree = {}
    dependents: dict[str, list[str]] = {step.id: [] for step in steps}
    for step in steps:
        internal = {need for need in step.needs if need in index}
        in_degree[step.id] = len(internal)
        for need in internal:
            dependents[need].append(step.id)

    ready = [index[step.id] for step in steps if in_degree[step.id] == 0]
    heapq.heapify(ready)
    ordered = []
    while ready:
        step = steps[heapq.heappop(ready)]
        ordered.append(step)
        for dependent in dependents[step.id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, index[dependent])

    if len(ordered) != len(steps):
        raise BakeError("cycle detected in step dependencies")
    return ordered


class Baker:
    """Compiles workflows for one run.

    A Baker owns a single VarContext that is mutated while baking; create one
    Baker per concurrent bake operation.
    """

    def __init__(
        self,
        workflow_id: str,
        *,
        assignee: str = "",
        now: Callable[[], datetime] | None = None,
        output_lookup: StepLookup | None = None,
        validate: bool = True,
        escape_shell_values: bool = False,
        approval_command: str | None = None,
        kill_timeout: int | None = None,
        agent_mode: str | None = None,
    ):
        self.workflow_id = workflow_id
        self.assignee = assignee
        self.validate = validate
        self.escape_shell_values = escape_shell_values
        self.approval_command = approval_command or config.APPROVAL_COMMAND
        self.kill_timeout = config.DEFAULT_KILL_TIMEOUT if kill_timeout is None else kill_timeout
        self.agent_mode = agent_mode or config.DEFAULT_AGENT_MODE
        self.context = VarContext(output_lookup=output_lookup, defer_step_outputs=True, now=now)
        self._source_workflow = ""
        self._ephemeral = False
        self._hooks_to = ""
        # Substituted cleanup scripts of the last workflow baked, keyed by trigger.
        self.cleanup: dict[str, str] = {}
        self._builders: dict[ExecutorKind, Callable[[Step, bool], ExecutorConfig]] = {
            ExecutorKind.SHELL: self._shell_config,
            ExecutorKind.SPAWN: self._spawn_config,
            ExecutorKind.KILL: self._kill_config,
            ExecutorKind.EXPAND: self._expand_config,
            ExecutorKind.FOREACH: self._foreach_config,
            ExecutorKind.BRANCH: self._branch_config,
            ExecutorKind.AGENT: self._agent_config,
        }

    # -- entry points ------------------------------------------------------

    def bake_workflow(self, workflow: Workflow, bindings: Mapping[str, Any] | None = None) -> list[CompiledStep]:
        """Compile ``workflow`` with the caller's variable ``bindings``."""
        self._prepare(workflow, bindings or {})
        compiled = [self._compile_step(step) for step in workflow.steps]
        ordered = order_steps(compiled)
        logger.info("Baked workflow %s (%s): %d steps", workflow.name, self.workflow_id, len(ordered))
        return ordered

    def bake(self, workflow: Workflow, bindings: Mapping[str, Any] | None = None) -> list[CompiledStep]:
        """Compile a legacy single-workflow document.

        Same discipline as ``bake_workflow``, and additionally seeds
        ``molecule_id`` and rejects ``needs`` that name no step of the workflow.
        """
        self.context.set_builtin("molecule_id", self.workflow_id)
        self._prepare(workflow, bindings or {})
        known = set(workflow.step_ids())
        for step in workflow.steps:
            for need in step.needs:
                if need not in known:
                    raise BakeError(f"unknown dependency: {need}")
        compiled = [self._compile_step(step) for step in workflow.steps]
        ordered = order_steps(compiled)
        logger.info("Baked legacy workflow %s (%s): %d steps", workflow.name, self.workflow_id, len(ordered))
        return ordered

    def bake_inline(self, steps: list[Step], parent_id: str) -> list[CompiledStep]:
        """Compile inline steps spliced in under ``parent_id``.

        Steps with no dependency inside the batch get an implicit dependency on
        the parent so they never start before the step that spawned them.
        """
        batch_ids = {step.id for step in steps}
        compiled = []
        for step in steps:
            compiled_step = self._compile_step(step)
            if parent_id and not any(need in batch_ids for need in step.needs):
                if parent_id not in compiled_step.needs:
                    compiled_step.needs = [parent_id, *compiled_step.needs]
            compiled.append(compiled_step)
        return order_steps(compiled)

    # -- preparation -------------------------------------------------------

    def _prepare(self, workflow: Workflow, bindings: Mapping[str, Any]) -> None:
        if self.validate:
            result = validate_full(workflow)
            if result.has_errors:
                raise ValidationFailedError(result)

        self._bind(workflow, bindings)
        self.context.apply_defaults(workflow.variables)
        self.context.validate_required(workflow.variables)
        self.context.set_builtin("workflow_id", self.workflow_id)

        self._source_workflow = workflow.name
        self._ephemeral = workflow.ephemeral
        self._hooks_to = ""
        if workflow.hooks_to:
            if self.context.has(workflow.hooks_to):
                self._hooks_to = self.context.get(workflow.hooks_to)
            else:
                logger.warning(
                    "Workflow %s hooks_to variable %r is not bound", workflow.name, workflow.hooks_to
                )
        self.cleanup = {
            trigger: self._sub_workflow(workflow, f"cleanup_{trigger}", script)
            for trigger, script in workflow.cleanup_scripts().items()
        }

    def _bind(self, workflow: Workflow, bindings: Mapping[str, Any]) -> None:
        for name in bindings:
            # Keys like __step_prefix__ are injected by the runtime, not declared.
            if name.startswith("__") or name in workflow.variables:
                continue
            raise VariableError(self._unknown_binding_message(name, workflow.variables))
        for name, value in bindings.items():
            self.context.set(name, coerce_binding(name, value, workflow.variables.get(name)))

    @staticmethod
    def _unknown_binding_message(name: str, declared: Mapping[str, Var]) -> str:
        best = ""
        best_distance = _MAX_SUGGESTION_DISTANCE + 1
        for candidate in sorted(declared):
            distance = levenshtein(name, candidate)
            if distance < best_distance:
                best, best_distance = candidate, distance
        if best:
            return f'unknown variable "{name}" (did you mean "{best}"?)'
        if declared:
            return f'unknown variable "{name}" (available: {", ".join(sorted(declared))})'
        return f'unknown variable "{name}" (workflow has no declared variables)'

    # -- per-step compilation ----------------------------------------------

    def _compile_step(self, step: Step) -> CompiledStep:
        self.context.set_builtin("step_id", step.id)
        try:
            kind, is_gate = resolve_executor(step)
        except ValueError as exc:
            raise BakeError(f'step "{step.id}": {exc}') from exc
        builder = self._builders.get(kind)
        if builder is None:
            raise BakeError(f'step "{step.id}": unsupported executor: {kind.value}')

        compiled = CompiledStep(
            id=step.id,
            executor=kind,
            needs=list(step.needs),
            description=self._sub(step, "description", step.description or step.title),
            ephemeral=step.ephemeral or self._ephemeral,
            hooks_to=self._hooks_to,
            source_workflow=self._source_workflow,
        )
        compiled.set_config(builder(step, is_gate))
        # Inline children reset step_id while compiling.
        self.context.set_builtin("step_id", step.id)
        logger.debug("Compiled step %s as %s%s", step.id, kind.value, " (gate)" if is_gate else "")
        return compiled

    def _sub(self, step: Step, field_name: str, text: str, *, shell: bool = False) -> str:
        if not text:
            return text
        try:
            if shell and self.escape_shell_values:
                return self.context.substitute_for_shell(text)
            return self.context.substitute(text)
        except VariableError as exc:
            raise BakeError(f'step "{step.id}": field "{field_name}": {exc}') from exc

    def _sub_workflow(self, workflow: Workflow, field_name: str, text: str) -> str:
        try:
            if self.escape_shell_values:
                return self.context.substitute_for_shell(text)
            return self.context.substitute(text)
        except VariableError as exc:
            raise BakeError(f'workflow "{workflow.name}": field "{field_name}": {exc}') from exc

    def _sub_env(self, step: Step, env: Mapping[str, str]) -> dict[str, str]:
        return {key: self._sub(step, f"env.{key}", value) for key, value in env.items()}

    def _eval(self, step: Step, field_name: str, values: Mapping[str, Any]) -> dict[str, Any]:
        try:
            return self.context.eval_map(values)
        except VariableError as exc:
            raise BakeError(f'step "{step.id}": field "{field_name}": {exc}') from exc

    def _sub_outputs(self, step: Step, outputs: Mapping[str, OutputSource]) -> dict[str, OutputSource]:
        return {
            name: OutputSource(source=self._sub(step, f"outputs.{name}.source", output.source))
            for name, output in outputs.items()
        }

    # -- executor configs --------------------------------------------------

    def _shell_config(self, step: Step, is_gate: bool) -> ShellConfig:
        return ShellConfig(
            command=self._sub(step, "command", step.effective_command(), shell=True),
            workdir=self._sub(step, "workdir", step.workdir),
            env=self._sub_env(step, step.env),
            on_error=step.on_error,
            outputs=self._sub_outputs(step, step.shell_outputs),
        )

    def _spawn_config(self, step: Step, is_gate: bool) -> SpawnConfig:
        return SpawnConfig(
            agent=self._sub(step, "agent", step.effective_agent()),
            adapter=self._sub(step, "adapter", step.adapter),
            workdir=self._sub(step, "workdir", step.workdir),
            env=self._sub_env(step, step.env),
            resume_session=step.resume_session,
            spawn_args=self._sub(step, "spawn_args", step.spawn_args),
        )

    def _kill_config(self, step: Step, is_gate: bool) -> KillConfig:
        timeout = self.kill_timeout
        if step.timeout:
            timeout = self._parse_duration(step, self._sub(step, "timeout", step.timeout))
        return KillConfig(
            agent=self._sub(step, "agent", step.effective_agent()),
            graceful=True if step.graceful is None else step.graceful,
            timeout=timeout,
        )

    def _expand_config(self, step: Step, is_gate: bool) -> ExpandConfig:
        return ExpandConfig(
            template=self._sub(step, "template", step.template),
            variables=self._eval(step, "variables", step.variables),
        )

    def _foreach_config(self, step: Step, is_gate: bool) -> ForeachConfig:
        if bool(step.items) == bool(step.items_file):
            raise BakeError(f'step "{step.id}": foreach requires exactly one of items or items_file')
        loop_names = [name for name in (step.item_var, step.index_var) if name]
        with self.context.deferring(*loop_names):
            template = self._sub(step, "template", step.template)
            variables = self._eval(step, "variables", step.variables)
        return ForeachConfig(
            template=template,
            item_var=step.item_var,
            items=self._sub(step, "items", step.items),
            items_file=self._sub(step, "items_file", step.items_file),
            index_var=step.index_var,
            variables=variables,
            parallel=self._resolve_parallel(step, step.parallel),
            max_concurrent=self._resolve_max_concurrent(step, step.max_concurrent),
            join=True if step.join is None else step.join,
        )

    def _branch_config(self, step: Step, is_gate: bool) -> BranchConfig:
        if is_gate:
            condition = config.approval_condition(step.id, self.approval_command)
        else:
            condition = self._sub(step, "condition", step.condition, shell=True)
        branch = BranchConfig(
            condition=condition,
            timeout=step.timeout,
            workdir=self._sub(step, "workdir", step.workdir),
            env=self._sub_env(step, step.env),
            on_error=step.on_error,
            outputs=self._sub_outputs(step, step.shell_outputs),
            prompt=self._sub(step, "prompt", step.effective_prompt()) if is_gate else "",
        )
        for name, target in step.branch_targets().items():
            setattr(branch, name, self._branch_target(step, name, target))
        return branch

    def _branch_target(self, step: Step, field_name: str, target: ExpansionTarget) -> BranchTarget:
        return BranchTarget(
            template=self._sub(step, f"{field_name}.template", target.template),
            variables=self._eval(step, f"{field_name}.variables", target.variables),
            inline=self.bake_inline(target.inline, step.id) if target.inline else [],
        )

    def _agent_config(self, step: Step, is_gate: bool) -> AgentConfig:
        return AgentConfig(
            agent=self._sub(step, "agent", step.effective_agent() or self.assignee),
            prompt=self._sub(step, "prompt", step.effective_prompt()),
            mode=step.mode or self.agent_mode,
            outputs=dict(step.outputs),
            timeout=step.timeout,
        )

    # -- flexible values ---------------------------------------------------

    def _resolve_parallel(self, step: Step, value: FlexValue | None) -> bool:
        if value is None:
            return True
        if isinstance(value, LiteralBool):
            return value.value
        if isinstance(value, LiteralNumber):
            return value.value != 0
        if isinstance(value, VariableRef):
            text = self._sub(step, "parallel", value.text)
            parsed = _parse_bool_text(text)
            if parsed is None:
                raise BakeError(f'step "{step.id}": field "parallel": invalid boolean "{text}"')
            return parsed
        raise BakeError(f'step "{step.id}": field "parallel": unsupported value {value!r}')

    def _resolve_max_concurrent(self, step: Step, value: FlexValue | None) -> int:
        if value is None:
            return 0
        if isinstance(value, LiteralNumber):
            number = value.value
        elif isinstance(value, VariableRef):
            text = self._sub(step, "max_concurrent", value.text).strip()
            if not text:
                return 0
            try:
                number = int(text)
            except ValueError:
                raise BakeError(
                    f'step "{step.id}": field "max_concurrent": invalid integer "{text}"'
                ) from None
        else:
            raise BakeError(f'step "{step.id}": field "max_concurrent": expected a number, got {value!r}')
        if number < 0 or int(number) != number:
            raise BakeError(f'step "{step.id}": field "max_concurrent": must be a non-negative integer')
        return int(number)

    @staticmethod
    def _parse_duration(step: Step, text: str) -> int:
        match = _DURATION.match(text)
        if not match:
            raise BakeError(f'step "{step.id}": field "timeout": invalid duration "{text}"')
        return int(match.group(1)) * _DURATION_SECONDS[match.group(2)]
