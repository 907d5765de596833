import argparse
import logging
import sys
import uuid

from meow.core import config
from meow.core.baker import Baker
from meow.core.exceptions import MeowError
from meow.core.loader import WorkflowLoader
from meow.core.models import Module
from meow.core.parser import parse_file
from meow.core.serialization import dump_compiled_steps
from meow.core.validation import validate_full, validate_full_module


def _parse_vars(pairs):
    bindings = {}
    for pair in pairs or []:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"--var expects name=value, got {pair!r}")
        bindings[name.strip()] = value
    return bindings


def _validate(args) -> int:
    document = parse_file(args.file)
    if isinstance(document, Module):
        result = validate_full_module(document)
    else:
        result = validate_full(document)
    if result.has_errors:
        print(str(result), file=sys.stderr)
        return 1
    print(f"{args.file}: ok")
    return 0


def _bake(args) -> int:
    document = parse_file(args.file)
    run_id = args.id or f"run-{uuid.uuid4().hex[:8]}"
    baker = Baker(run_id, assignee=args.assignee or "", escape_shell_values=args.escape_shell)
    bindings = _parse_vars(args.var)
    if isinstance(document, Module):
        name = args.workflow or config.DEFAULT_WORKFLOW
        workflow = document.get_workflow(name)
        if workflow is None:
            print(f"workflow {name!r} not found (available: {', '.join(document.names())})", file=sys.stderr)
            return 1
        steps = baker.bake_workflow(workflow, bindings)
    else:
        steps = baker.bake(document, bindings)
    print(dump_compiled_steps(steps, run_id, baker.cleanup), end="")
    return 0


def _list(args) -> int:
    loader = WorkflowLoader(args.project)
    for item in loader.list_available():
        line = f"{item.name:<24} {item.source:<9} {item.description}"
        print(line.rstrip())
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="MEOW workflow compiler")
    subparsers = parser.add_subparsers(dest="command")

    # Validate
    validate_parser = subparsers.add_parser("validate", help="Validate a workflow document")
    validate_parser.add_argument("file", help="Workflow TOML file")

    # Bake
    bake_parser = subparsers.add_parser("bake", help="Compile a workflow into executable steps (YAML)")
    bake_parser.add_argument("file", help="Workflow TOML file")
    bake_parser.add_argument("--workflow", help="Workflow name inside a module (default: main)")
    bake_parser.add_argument("--var", action="append", metavar="NAME=VALUE", help="Variable binding")
    bake_parser.add_argument("--id", help="Run identifier (default: generated)")
    bake_parser.add_argument("--assignee", help="Default agent for agent steps")
    bake_parser.add_argument("--escape-shell", action="store_true", help="Shell-escape values in commands")

    # List
    list_parser = subparsers.add_parser("list", help="List available workflows")
    list_parser.add_argument("--project", default=".", help="Project directory")

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.WARNING))

    handlers = {"validate": _validate, "bake": _bake, "list": _list}
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help()
        return 2
    try:
        return handler(args)
    except (MeowError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
