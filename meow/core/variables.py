"""Variable resolution engine.

A VarContext resolves dotted ``{{path}}`` references against three layers:
user variables, builtins, and other steps' outputs. Substitution is applied
repeatedly so a variable bound to another placeholder chains to its final
value. With deferred resolution enabled, references that cannot be resolved
yet (future step outputs) are left in place for the execution engine.

One VarContext belongs to one bake operation; it is mutated as steps are
compiled and must not be shared between concurrent bakes.
"""

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator, Mapping, Optional

from meow.core import config
from meow.core.exceptions import VariableError
from meow.core.models import StepStatus, Var
from meow.core.placeholders import PLACEHOLDER_PATTERN, is_single_placeholder, shell_escape

logger = logging.getLogger(__name__)


@dataclass
class StepInfo:
    """Status and outputs of an already-known step, as returned by a lookup."""

    id: str
    status: str = StepStatus.PENDING.value
    outputs: dict[str, Any] = field(default_factory=dict)


StepLookup = Callable[[str], Optional[StepInfo]]


class _Deferred(Exception):
    """Internal signal: leave the placeholder untouched."""


def stringify_value(value: Any) -> str:
    """Format a resolved value for insertion into text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list, tuple)):
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def _format_list(items) -> str:
    return "[" + ", ".join(str(item) for item in items) + "]"


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    text = moment.isoformat(timespec="seconds")
    return text[:-6] + "Z" if text.endswith("+00:00") else text


class VarContext:
    """Resolution state for one bake operation."""

    def __init__(
        self,
        variables: dict[str, Any] | None = None,
        builtins: dict[str, Any] | None = None,
        *,
        output_lookup: StepLookup | None = None,
        defer_step_outputs: bool = False,
        defer_undefined: bool = False,
        now: Callable[[], datetime] | None = None,
        max_depth: int | None = None,
    ):
        self.variables: dict[str, Any] = dict(variables or {})
        self.builtins: dict[str, Any] = dict(builtins or {})
        self.outputs: dict[str, dict[str, Any]] = {}
        self.output_lookup = output_lookup
        self.defer_step_outputs = defer_step_outputs
        self.defer_undefined = defer_undefined
        self.now = now or datetime.now
        self.max_depth = max_depth or config.MAX_SUBSTITUTION_DEPTH
        self.deferred_names: set[str] = set()

    # -- bindings ----------------------------------------------------------

    def set(self, name: str, value: Any) -> None:
        self.variables[name] = value

    def get(self, name: str) -> str:
        if name in self.variables:
            return stringify_value(self.variables[name])
        return ""

    def has(self, name: str) -> bool:
        return name in self.variables

    def set_builtin(self, name: str, value: Any) -> None:
        self.builtins[name] = value

    def set_output(self, step_id: str, name: str, value: Any) -> None:
        self.outputs.setdefault(step_id, {})[name] = value

    def set_outputs(self, step_id: str, outputs: dict[str, Any]) -> None:
        self.outputs[step_id] = outputs

    @contextmanager
    def deferring(self, *names: str) -> Iterator[None]:
        """Leave placeholders rooted at ``names`` untouched while active.

        Used for foreach loop variables, which only exist once the execution
        engine iterates.
        """
        added = [name for name in names if name not in self.deferred_names]
        self.deferred_names.update(added)
        try:
            yield
        finally:
            self.deferred_names.difference_update(added)

    def apply_defaults(self, declared: Mapping[str, Var]) -> None:
        """Fill every unbound variable that declares a default."""
        for name, var in declared.items():
            if name not in self.variables and var.has_default:
                self.variables[name] = var.default

    def validate_required(self, declared: Mapping[str, Var]) -> None:
        """Raise one aggregated error naming every unbound required variable."""
        missing = sorted(
            name
            for name, var in declared.items()
            if var.is_missing_when_unbound and name not in self.variables
        )
        if missing:
            raise VariableError(f"missing required variables: {_format_list(missing)}")

    # -- substitution ------------------------------------------------------

    def substitute(self, text: str) -> str:
        """Resolve every placeholder in ``text``, following chains up to ``max_depth`` rounds."""
        if not text or "{{" not in text:
            return text
        errors: list[VariableError] = []

        def replace(match):
            try:
                return stringify_value(self._resolve(match.group(1).strip()))
            except _Deferred:
                return match.group(0)
            except VariableError as exc:
                errors.append(exc)
                return match.group(0)

        result = text
        for _ in range(self.max_depth):
            updated = PLACEHOLDER_PATTERN.sub(replace, result)
            if updated == result:
                break
            result = updated

        if errors:
            raise errors[0]
        if PLACEHOLDER_PATTERN.search(result):
            leftover = [match.group(0) for match in PLACEHOLDER_PATTERN.finditer(result)]
            if not (self.defer_step_outputs or self.defer_undefined or self.deferred_names):
                raise VariableError(f"unresolved variables after max depth: {_format_list(leftover)}")
            logger.debug("Leaving deferred placeholders in place: %s", leftover)
        return result

    def substitute_for_shell(self, text: str) -> str:
        """Single-pass substitution with every resolved value shell-escaped."""
        if not text or "{{" not in text:
            return text
        errors: list[VariableError] = []

        def replace(match):
            try:
                return shell_escape(stringify_value(self._resolve(match.group(1).strip())))
            except _Deferred:
                return match.group(0)
            except VariableError as exc:
                errors.append(exc)
                return match.group(0)

        result = PLACEHOLDER_PATTERN.sub(replace, text)
        if errors:
            raise errors[0]
        return result

    def substitute_map(self, mapping: Mapping[str, str]) -> dict[str, str]:
        result = {}
        for key, value in mapping.items():
            try:
                result[key] = self.substitute(value) if isinstance(value, str) else value
            except VariableError as exc:
                raise VariableError(f'key "{key}": {exc}') from exc
        return result

    def eval(self, value: Any) -> Any:
        """Evaluate ``value`` keeping types where possible.

        A string that is exactly one placeholder yields the referenced value
        itself (a mapping stays a mapping). Mixed text is substituted to a
        string; containers are walked recursively; other scalars pass through.
        """
        if isinstance(value, dict):
            return self.eval_map(value)
        if isinstance(value, list):
            return self.eval_list(value)
        if not isinstance(value, str):
            return value
        if is_single_placeholder(value):
            inner = value.strip()[2:-2].strip()
            try:
                resolved = self._resolve(inner)
            except _Deferred:
                return value
            if isinstance(resolved, str) and "{{" in resolved:
                return self.substitute(resolved)
            return resolved
        return self.substitute(value)

    def eval_map(self, mapping: Mapping[str, Any]) -> dict[str, Any]:
        result = {}
        for key, value in mapping.items():
            try:
                result[key] = self.eval(value)
            except VariableError as exc:
                raise VariableError(f'key "{key}": {exc}') from exc
        return result

    def eval_list(self, items: list[Any]) -> list[Any]:
        result = []
        for index, value in enumerate(items):
            try:
                result.append(self.eval(value))
            except VariableError as exc:
                raise VariableError(f"index {index}: {exc}") from exc
        return result

    # -- resolution --------------------------------------------------------

    def _resolve(self, path: str) -> Any:
        parts = path.split(".")
        root = parts[0]
        if not root:
            raise VariableError(f"empty variable path: {path!r}")

        for index, part in enumerate(parts):
            if part == "outputs" and 0 < index < len(parts) - 1:
                return self._resolve_output(".".join(parts[:index]), parts[index + 1:])
        if root == "output" and len(parts) >= 3:
            return self._resolve_output(parts[1], parts[2:])

        if root in self.deferred_names:
            raise _Deferred(path)
        if root in self.variables:
            return self._walk(self.variables[root], parts[1:], path)
        if root in self.builtins:
            return self._walk(self.builtins[root], parts[1:], path)

        if root == "timestamp":
            return _rfc3339(self.now())
        if root == "date":
            return self.now().strftime("%Y-%m-%d")
        if root == "time":
            return self.now().strftime("%H:%M:%S")

        if self.defer_undefined:
            raise _Deferred(path)
        raise VariableError(f"undefined variable: {root}")

    def _resolve_output(self, step_id: str, fields: list[str]) -> Any:
        outputs = self.outputs.get(step_id)
        if outputs is None:
            if self.output_lookup is None:
                if self.defer_step_outputs:
                    raise _Deferred(step_id)
                raise VariableError(f'no outputs for step "{step_id}"')
            try:
                info = self.output_lookup(step_id)
            except Exception as exc:
                raise VariableError(f'looking up step "{step_id}": {exc}') from exc
            if info is None:
                if self.defer_step_outputs:
                    raise _Deferred(step_id)
                raise VariableError(f'step "{step_id}" not found')
            if info.status != StepStatus.DONE.value:
                if self.defer_step_outputs:
                    raise _Deferred(step_id)
                raise VariableError(
                    f'step "{step_id}" is not done (status: {info.status}), outputs not available'
                )
            outputs = dict(info.outputs or {})
            self.outputs[step_id] = outputs
            logger.debug("Cached outputs for step %s: %s", step_id, sorted(outputs))

        value: Any = outputs
        for part in fields:
            if not isinstance(value, Mapping):
                raise VariableError(
                    f'cannot access field "{part}" on non-map value in step "{step_id}"'
                )
            if part not in value:
                raise VariableError(
                    f'output "{".".join(fields)}" not found in step "{step_id}" '
                    f"(available: {_format_list(sorted(value))})"
                )
            value = value[part]
        return value

    @staticmethod
    def _walk(value: Any, parts: list[str], path: str) -> Any:
        for part in parts:
            if not isinstance(value, Mapping):
                raise VariableError(f'cannot access field "{part}" on non-map value ({path})')
            if part not in value:
                raise VariableError(f'field "{part}" not found ({path})')
            value = value[part]
        return value
