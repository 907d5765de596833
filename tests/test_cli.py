"""Tests for the meow-compile command line."""
import yaml

from meow.cli import main

MODULE_DOC = """
[main]
[main.variables.framework]
default = "pytest"

[[main.steps]]
id = "test"
executor = "shell"
command = "run {{framework}}"

[[main.steps]]
id = "report"
executor = "agent"
prompt = "Summarize {{test.outputs.log}}"
needs = ["test"]

[".helper"]
internal = true

[[".helper".steps]]
id = "h"
executor = "shell"
command = "true"
"""

BROKEN_DOC = """
[main]
[[main.steps]]
id = "a"
executor = "shell"
needs = ["b"]
"""


def _write(tmp_path, text, name="flow.meow.toml"):
    path = tmp_path / name
    path.write_text(text)
    return str(path)


class TestValidate:
    def test_valid(self, tmp_path, capsys):
        path = _write(tmp_path, MODULE_DOC)
        assert main(["validate", path]) == 0
        assert capsys.readouterr().out.strip() == f"{path}: ok"

    def test_invalid(self, tmp_path, capsys):
        assert main(["validate", _write(tmp_path, BROKEN_DOC)]) == 1
        err = capsys.readouterr().err
        assert "validation failed with 2 error(s)" in err
        assert 'references unknown step "b"' in err
        assert "shell step requires command" in err

    def test_parse_error(self, tmp_path, capsys):
        assert main(["validate", _write(tmp_path, "[main\n")]) == 1
        assert capsys.readouterr().err.startswith("error: decode TOML")


class TestBake:
    def test_bake_with_override(self, tmp_path, capsys):
        path = _write(tmp_path, MODULE_DOC)
        assert main(["bake", path, "--var", "framework=jest", "--id", "run-3", "--assignee", "bot"]) == 0
        document = yaml.safe_load(capsys.readouterr().out)
        assert document["workflow_id"] == "run-3"
        steps = {step["id"]: step for step in document["steps"]}
        assert steps["test"]["shell"]["command"] == "run jest"
        assert steps["report"]["agent"]["agent"] == "bot"
        assert steps["report"]["agent"]["prompt"] == "Summarize {{test.outputs.log}}"

    def test_bake_named_workflow(self, tmp_path, capsys):
        path = _write(tmp_path, MODULE_DOC)
        assert main(["bake", path, "--workflow", "helper", "--id", "run-4"]) == 0
        document = yaml.safe_load(capsys.readouterr().out)
        assert [step["id"] for step in document["steps"]] == ["h"]

    def test_unknown_workflow(self, tmp_path, capsys):
        path = _write(tmp_path, MODULE_DOC)
        assert main(["bake", path, "--workflow", "nope"]) == 1
        assert "available: main, helper" in capsys.readouterr().err

    def test_bad_var_syntax(self, tmp_path, capsys):
        path = _write(tmp_path, MODULE_DOC)
        assert main(["bake", path, "--var", "framework"]) == 1
        assert "--var expects name=value" in capsys.readouterr().err

    def test_cleanup_scripts_are_emitted(self, tmp_path, capsys):
        doc = MODULE_DOC.replace(
            "[main]\n", '[main]\ncleanup_on_failure = "rm -rf /tmp/{{framework}}-{{workflow_id}}"\n', 1
        )
        path = _write(tmp_path, doc)
        assert main(["bake", path, "--id", "run-6"]) == 0
        document = yaml.safe_load(capsys.readouterr().out)
        assert document["cleanup"] == {"on_failure": "rm -rf /tmp/pytest-run-6"}

    def test_legacy_document(self, tmp_path, capsys):
        doc = '[meta]\nname = "legacy"\n\n[[steps]]\nid = "work"\ninstructions = "go {{molecule_id}}"\n'
        path = _write(tmp_path, doc)
        assert main(["bake", path, "--id", "mol-5", "--assignee", "bot"]) == 0
        step = yaml.safe_load(capsys.readouterr().out)["steps"][0]
        assert step["agent"] == {"agent": "bot", "prompt": "go mol-5", "mode": "autonomous"}


def test_list(tmp_path, capsys, monkeypatch):
    monkeypatch.setenv("MEOW_HOME", str(tmp_path / "home"))
    workflows = tmp_path / ".meow" / "workflows"
    workflows.mkdir(parents=True)
    (workflows / "review.meow.toml").write_text(MODULE_DOC.replace("[main]\n", '[main]\ndescription = "Run tests"\n', 1))
    assert main(["list", "--project", str(tmp_path)]) == 0
    out = capsys.readouterr().out
    assert "review" in out
    assert "project" in out
    assert "Run tests" in out


def test_no_command_prints_help(capsys):
    assert main([]) == 2
    assert "usage:" in capsys.readouterr().out
