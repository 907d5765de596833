"""Tests for workflow validation findings."""
import pytest

from meow.core.models import (
    ExecutorKind,
    ExpansionTarget,
    Meta,
    Module,
    Step,
    Var,
    Workflow,
)
from meow.core.validation import (
    ValidationError,
    ValidationResult,
    find_cycle,
    find_similar,
    similarity,
    validate_full,
    validate_full_module,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _shell(step_id, command="echo ok", **kwargs):
    return Step(id=step_id, executor=ExecutorKind.SHELL, command=command, **kwargs)


def _minimal_workflow(**overrides):
    """Return a minimal valid module-style workflow."""
    base = {
        "name": "build",
        "steps": [_shell("a"), _shell("b", needs=["a"])],
    }
    base.update(overrides)
    return Workflow(**base)


def _fields(result):
    return [(error.step_id, error.field) for error in result.errors]


# ---------------------------------------------------------------------------
# Similarity suggestions
# ---------------------------------------------------------------------------

class TestSimilarity:
    def test_prefix_plus_suffix(self):
        assert similarity("biuld", "build") == 3
        assert similarity("test", "test") == 4
        assert similarity("abc", "xyz") == 0

    def test_prefix_and_suffix_do_not_overlap(self):
        assert similarity("aa", "aaa") == 2

    def test_transposed_characters_are_suggested(self):
        assert find_similar("biuld", ["build", "test", "deploy"]) == 'did you mean "build"?'

    def test_unrelated_names_get_no_suggestion(self):
        assert find_similar("zzz", ["build", "test"]) == ""

    def test_exact_match_is_not_suggested(self):
        assert find_similar("build", ["build"]) == ""


# ---------------------------------------------------------------------------
# Cycle detection
# ---------------------------------------------------------------------------

class TestFindCycle:
    def test_no_cycle(self):
        steps = [_shell("a"), _shell("b", needs=["a"]), _shell("c", needs=["a", "b"])]
        assert find_cycle(steps) == []

    def test_cycle_path_is_genuine(self):
        steps = [_shell("a", needs=["c"]), _shell("b", needs=["a"]), _shell("c", needs=["b"])]
        cycle = find_cycle(steps)
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}
        needs = {step.id: step.needs for step in steps}
        for current, following in zip(cycle, cycle[1:]):
            assert following in needs[current]

    def test_self_loop(self):
        assert find_cycle([_shell("a", needs=["a"])]) == ["a", "a"]

    def test_unknown_needs_are_ignored(self):
        assert find_cycle([_shell("a", needs=["ghost"])]) == []

    def test_reentrant(self):
        steps = [_shell("a", needs=["b"]), _shell("b", needs=["a"])]
        assert find_cycle(steps) == find_cycle(steps)

    def test_long_chain_declared_leaf_last(self):
        steps = [_shell(f"s{i}", needs=[f"s{i - 1}"] if i else []) for i in reversed(range(1500))]
        assert find_cycle(steps) == []
        assert not validate_full(_minimal_workflow(steps=steps))

    def test_long_cycle_is_closed(self):
        steps = [_shell(f"s{i}", needs=[f"s{(i + 1) % 1500}"]) for i in range(1500)]
        cycle = find_cycle(steps)
        assert len(cycle) == 1501
        assert cycle[0] == cycle[-1] == "s0"


# ---------------------------------------------------------------------------
# Structural checks
# ---------------------------------------------------------------------------

class TestStructure:
    def test_minimal_workflow_is_valid(self):
        result = validate_full(_minimal_workflow())
        assert not result
        assert result.errors == []

    def test_name_required_for_module_workflows(self):
        result = validate_full(_minimal_workflow(name=""))
        assert ("", "name") in _fields(result)

    def test_no_steps(self):
        result = validate_full(_minimal_workflow(steps=[]))
        assert result.messages() == ['workflow "build", field "steps": workflow must have at least one step (suggestion: add [[steps]] section)']

    def test_duplicate_step_ids(self):
        result = validate_full(_minimal_workflow(steps=[_shell("a"), _shell("a")]))
        assert len(result) == 1
        assert "duplicate step id (first at index 0)" in result.errors[0].message

    def test_missing_step_id(self):
        result = validate_full(_minimal_workflow(steps=[_shell("")]))
        assert ("steps[0]", "id") in _fields(result)

    def test_unknown_dependency_with_suggestion(self):
        steps = [_shell("build"), _shell("test", needs=["biuld"])]
        result = validate_full(_minimal_workflow(steps=steps))
        assert len(result) == 1
        error = result.errors[0]
        assert error.message == 'references unknown step "biuld"'
        assert error.suggestion == 'did you mean "build"?'

    def test_needs_on_expansion_children_are_allowed(self):
        steps = [
            Step(id="impl", executor=ExecutorKind.EXPAND, template=".implement"),
            _shell("ship", needs=["impl.review", "impl.*"]),
        ]
        assert not validate_full(_minimal_workflow(steps=steps))

    def test_wildcards_need_an_expanding_prefix(self):
        steps = [
            _shell("build"),
            _shell("impl"),
            _shell("ship", needs=["ghost.*", "bu*ld", "impl.*", "build."]),
        ]
        result = validate_full(_minimal_workflow(steps=steps))
        assert [error.message for error in result.errors] == [
            'references unknown step "ghost.*"',
            'references unknown step "bu*ld"',
            'references unknown step "impl.*"',
            'references unknown step "build."',
        ]
        assert result.errors[1].suggestion == 'did you mean "build"?'

    def test_cycle_is_reported_with_path(self):
        steps = [_shell("a", needs=["b"]), _shell("b", needs=["a"])]
        result = validate_full(_minimal_workflow(steps=steps))
        messages = [error.message for error in result.errors]
        assert any(message.startswith("circular dependency detected: ") for message in messages)
        assert "a → b → a" in " ".join(messages) or "b → a → b" in " ".join(messages)

    def test_collects_every_error(self):
        steps = [_shell("a", needs=["zz"]), Step(id="b", executor=ExecutorKind.SHELL)]
        result = validate_full(_minimal_workflow(steps=steps))
        assert len(result) == 2
        assert str(result).startswith("validation failed with 2 error(s):\n  - ")


class TestMeta:
    def _legacy(self, **meta):
        return Workflow(
            name=meta.get("name", "legacy"),
            meta=Meta(**meta),
            steps=[Step(id="work", type="task", instructions="do it")],
        )

    def test_valid_meta(self):
        assert not validate_full(self._legacy(name="legacy", version="1.0.0", type="loop", on_error="retry"))

    @pytest.mark.parametrize(
        "meta, field",
        [
            ({"name": ""}, "meta.name"),
            ({"name": "x", "version": "one"}, "meta.version"),
            ({"name": "x", "on_error": "explode"}, "meta.on_error"),
            ({"name": "x", "type": "circle"}, "meta.type"),
        ],
    )
    def test_invalid_meta(self, meta, field):
        result = validate_full(self._legacy(**meta))
        assert ("", field) in _fields(result)


class TestVariables:
    def test_enum_default_must_be_allowed(self):
        workflow = _minimal_workflow(variables={"framework": Var(default="mocha", enum=["pytest", "jest"])})
        result = validate_full(workflow)
        assert ("", "variables.framework") in _fields(result)
        assert result.errors[0].suggestion == "use one of: pytest, jest"

    def test_undefined_variable_reference(self):
        steps = [_shell("a", command="echo {{framwork}}")]
        workflow = _minimal_workflow(steps=steps, variables={"framework": Var(default="pytest")})
        result = validate_full(workflow)
        assert len(result) == 1
        error = result.errors[0]
        assert (error.step_id, error.field) == ("a", "command")
        assert error.message == 'undefined variable "framwork"'
        assert error.suggestion == 'did you mean "framework"?'

    def test_builtins_and_outputs_are_defined(self):
        steps = [
            _shell("a", command="echo {{workflow_id}} {{step_id}} {{timestamp}}"),
            _shell("b", needs=["a"], command="cat {{a.outputs.path}} {{output.a.path}}"),
        ]
        assert not validate_full(_minimal_workflow(steps=steps))

    def test_env_is_checked(self):
        steps = [_shell("a", env={"TARGET": "{{missing}}"})]
        assert ("a", "env.TARGET") in _fields(validate_full(_minimal_workflow(steps=steps)))

    def test_foreach_loop_variables_are_defined_in_variables(self):
        each = Step(
            id="each",
            executor=ExecutorKind.FOREACH,
            items='["x"]',
            item_var="item",
            index_var="i",
            template=".worker",
            variables={"task": "{{item}}", "position": "{{i}}"},
        )
        assert not validate_full(_minimal_workflow(steps=[each]))

    def test_inline_step_references_are_checked(self):
        branch = Step(
            id="check",
            executor=ExecutorKind.BRANCH,
            condition="true",
            on_true=ExpansionTarget(inline=[_shell("fix", command="echo {{nope}}")]),
        )
        result = validate_full(_minimal_workflow(steps=[branch]))
        assert ("check", "on_true.inline[0].command") in _fields(result)


# ---------------------------------------------------------------------------
# Executor semantics
# ---------------------------------------------------------------------------

class TestSemantics:
    @pytest.mark.parametrize(
        "step, field",
        [
            (Step(id="s", executor=ExecutorKind.SHELL), "command"),
            (Step(id="s", executor=ExecutorKind.SPAWN), "agent"),
            (Step(id="s", executor=ExecutorKind.KILL), "agent"),
            (Step(id="s", executor=ExecutorKind.EXPAND), "template"),
            (Step(id="s", executor=ExecutorKind.BRANCH), "condition"),
            (Step(id="s", executor=ExecutorKind.AGENT), "prompt"),
            (Step(id="s", executor=ExecutorKind.AGENT, prompt="p", mode="lazy"), "mode"),
            (Step(id="s", executor=ExecutorKind.SHELL, command="x", on_error="panic"), "on_error"),
            (Step(id="s", type="frobnicate"), "type"),
        ],
    )
    def test_missing_or_invalid_fields(self, step, field):
        result = validate_full(_minimal_workflow(steps=[step]))
        assert ("s", field) in _fields(result)

    def test_branch_without_targets(self):
        step = Step(id="s", executor=ExecutorKind.BRANCH, condition="true")
        result = validate_full(_minimal_workflow(steps=[step]))
        assert result.errors[0].message == "condition without on_true or on_false branch"

    def test_restart_does_not_need_targets(self):
        step = Step(id="s", type="restart", condition="test -f again")
        assert not validate_full(_minimal_workflow(steps=[step]))

    def test_gate_rules(self):
        gate = Step(id="approve", type="gate", assignee="worker")
        result = validate_full(_minimal_workflow(steps=[gate]))
        assert set(_fields(result)) == {("approve", "instructions"), ("approve", "assignee")}

    def test_gate_with_instructions_is_valid(self):
        gate = Step(id="approve", type="gate", instructions="Review the diff")
        assert not validate_full(_minimal_workflow(steps=[gate]))

    def test_foreach_rules(self):
        both = Step(id="s", executor=ExecutorKind.FOREACH, items="[]", items_file="x.json")
        result = validate_full(_minimal_workflow(steps=[both]))
        messages = [error.message for error in result.errors]
        assert "foreach step cannot have both items and items_file" in messages
        assert "foreach step requires item_var" in messages
        assert "foreach step requires template" in messages

    def test_inline_steps_are_checked_recursively(self):
        branch = Step(
            id="check",
            executor=ExecutorKind.BRANCH,
            condition="true",
            on_false=ExpansionTarget(inline=[Step(id="fix", executor=ExecutorKind.SHELL)]),
        )
        result = validate_full(_minimal_workflow(steps=[branch]))
        assert ("check.on_false.inline[0]", "command") in _fields(result)

    def test_empty_target(self):
        branch = Step(id="check", executor=ExecutorKind.BRANCH, condition="true", on_true=ExpansionTarget())
        result = validate_full(_minimal_workflow(steps=[branch]))
        assert ("check", "on_true") in _fields(result)


# ---------------------------------------------------------------------------
# Modules and reporting
# ---------------------------------------------------------------------------

class TestModuleValidation:
    def _module(self, template):
        main = Workflow(name="main", steps=[Step(id="go", executor=ExecutorKind.EXPAND, template=template)])
        helper = Workflow(name="helper", steps=[_shell("run")])
        return Module(workflows={"main": main, "helper": helper})

    def test_known_local_reference(self):
        assert not validate_full_module(self._module(".helper"))
        assert not validate_full_module(self._module(".helper.run"))

    def test_unknown_local_workflow(self):
        result = validate_full_module(self._module(".helpr"))
        assert result.errors[0].message == 'references unknown workflow "helpr"'
        assert result.errors[0].suggestion == 'did you mean "helper"?'

    def test_unknown_local_step(self):
        result = validate_full_module(self._module(".helper.rnu"))
        assert result.errors[0].message == 'references unknown step "rnu" in workflow "helper"'

    def test_external_and_templated_references_are_skipped(self):
        assert not validate_full_module(self._module("lib/review#main"))
        assert not validate_full_module(self._module(".{{workflow_id}}"))


def test_validation_error_str():
    error = ValidationError("build", "test", "needs", 'references unknown step "biuld"', 'did you mean "build"?')
    assert str(error) == (
        'workflow "build", step "test", field "needs": references unknown step "biuld" '
        '(suggestion: did you mean "build"?)'
    )
    assert str(ValidationError(message="bare")) == "bare"


def test_result_merge():
    first = ValidationResult()
    first.add("w", "a", "f", "one")
    second = ValidationResult()
    second.add("w", "b", "f", "two")
    first.merge(second)
    assert len(first) == 2
    assert str(ValidationResult()) == ""
