"""Three-tier workflow document loader.

References look like ``name``, ``name#workflow`` or ``lib/name#workflow``; the
workflow defaults to ``main``. Documents are searched in the project tier
(``<project>/.meow/workflows``), then the user tier (``$MEOW_HOME/workflows``),
then an optional embedded resource provider passed in by the caller.
"""

import logging
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from meow.core import config
from meow.core.exceptions import ParseError, WorkflowNotFoundError
from meow.core.models import Module, Workflow
from meow.core.parser import parse_module_string
from meow.core.placeholders import has_placeholders
from meow.core.references import LoadContext

logger = logging.getLogger(__name__)


class ResourceProvider(Protocol):
    """Read-only source of workflow documents keyed by relative resource name."""

    def read_text(self, name: str) -> Optional[str]:
        """Return the document text, or ``None`` when it does not exist."""

    def describe(self, name: str) -> str:
        """Human-readable location of ``name`` for error reports."""

    def list_names(self, prefix: str) -> list[str]:
        """Resource names below ``prefix``."""


class DirectoryResourceProvider:
    """Serve resources from a directory on disk."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def read_text(self, name: str) -> Optional[str]:
        path = self.root / name
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8")

    def describe(self, name: str) -> str:
        return str(self.root / name)

    def list_names(self, prefix: str) -> list[str]:
        directory = self.root / prefix
        if not directory.is_dir():
            return []
        return sorted(f"{prefix}/{entry.name}" for entry in directory.iterdir() if entry.is_file())


class MappingResourceProvider:
    """Serve resources from an in-memory mapping (bundled workflows, tests)."""

    def __init__(self, resources: dict[str, str]):
        self._resources = dict(resources)

    def read_text(self, name: str) -> Optional[str]:
        return self._resources.get(name)

    def describe(self, name: str) -> str:
        return f"<embedded>/{name}"

    def list_names(self, prefix: str) -> list[str]:
        return sorted(
            name for name in self._resources if posixpath.dirname(name) == prefix
        )


@dataclass(frozen=True)
class WorkflowRef:
    """Parsed workflow reference."""

    source: str  # document name without suffix; empty for local references
    workflow: str
    local: bool = False

    def __str__(self) -> str:
        if self.local:
            return f".{self.workflow}"
        return f"{self.source}#{self.workflow}"


def parse_reference(ref: str) -> WorkflowRef:
    """Split ``source#workflow`` (or a local ``.workflow``) into its parts."""
    text = (ref or "").strip()
    if not text:
        raise ValueError("workflow reference is empty")
    if text.startswith("."):
        workflow = text[1:].split(".", 1)[0]
        if not workflow:
            raise ValueError(f"local reference missing workflow name: {ref!r}")
        return WorkflowRef(source="", workflow=workflow, local=True)

    source, sep, workflow = text.partition("#")
    source = source.strip()
    workflow = workflow.strip()
    if sep and not workflow:
        raise ValueError(f"workflow reference missing workflow name: {ref!r}")
    if source.endswith(config.WORKFLOW_SUFFIX):
        source = source[: -len(config.WORKFLOW_SUFFIX)]
    source = posixpath.normpath(source.replace("\\", "/")) if source else ""
    if source.startswith("./"):
        source = source[2:]
    if source in ("", "."):
        raise ValueError(f"workflow reference missing file path: {ref!r}")
    return WorkflowRef(source=source, workflow=workflow or config.DEFAULT_WORKFLOW)


def resolve_local(module: Module, ref: str) -> Workflow:
    """Resolve a ``.workflow`` reference against the module it appears in."""
    parsed = parse_reference(ref)
    workflow = module.get_workflow(parsed.workflow)
    if workflow is None:
        raise WorkflowNotFoundError(
            ref, [module.path] if module.path else [], f"available: {', '.join(module.names())}"
        )
    return workflow


@dataclass
class AvailableWorkflow:
    name: str
    source: str  # project | user | embedded
    location: str
    description: str = ""


class WorkflowLoader:
    """Locate and parse workflow documents across the project, user and embedded tiers."""

    def __init__(
        self,
        project_dir: str | Path = ".",
        *,
        user_dir: str | Path | None = None,
        embedded: ResourceProvider | None = None,
    ):
        self.tiers: list[tuple[str, ResourceProvider]] = [
            ("project", DirectoryResourceProvider(Path(project_dir) / config.PROJECT_DIR_NAME)),
            ("user", DirectoryResourceProvider(Path(user_dir) if user_dir else config.user_home())),
        ]
        if embedded is not None:
            self.tiers.append(("embedded", embedded))
        self._modules: dict[str, Module] = {}

    @staticmethod
    def resource_name(source: str) -> str:
        return f"{config.WORKFLOWS_DIR}/{source}{config.WORKFLOW_SUFFIX}"

    def load_module(self, source: str) -> Module:
        """Parse the first document named ``source`` found across the tiers."""
        if source in self._modules:
            return self._modules[source]
        resource = self.resource_name(source)
        searched = []
        for tier, provider in self.tiers:
            location = provider.describe(resource)
            searched.append(location)
            text = provider.read_text(resource)
            if text is None:
                continue
            module = parse_module_string(text, location)
            logger.info("Loaded %s from %s tier (%s)", source, tier, location)
            self._modules[source] = module
            return module
        raise WorkflowNotFoundError(source, searched)

    def load(
        self,
        ref: str,
        *,
        context: LoadContext | None = None,
        current: Module | None = None,
    ) -> Workflow:
        """Load the workflow named by ``ref``.

        Local ``.workflow`` references need ``current``. Internal workflows can
        only be reached from inside their own document, or as the entry point.
        """
        parsed = parse_reference(ref)
        if parsed.local:
            if current is None:
                raise WorkflowNotFoundError(ref, reason="local reference used outside a module")
            return resolve_local(current, ref)

        context = context or LoadContext()
        external = context.depth > 0
        with context.visit(str(parsed)):
            module = self.load_module(parsed.source)
            return self._select(module, parsed, external)

    def load_tree(self, ref: str, *, context: LoadContext | None = None) -> dict[str, Workflow]:
        """Load ``ref`` and every workflow it references in other documents.

        Returns workflows keyed by normalized reference. A reference chain that
        loops back onto a document still being loaded raises
        CircularReferenceError.
        """
        loaded: dict[str, Workflow] = {}
        self._load_tree(parse_reference(ref), context or LoadContext(), loaded)
        return loaded

    def _load_tree(self, parsed: WorkflowRef, context: LoadContext, loaded: dict[str, Workflow]) -> None:
        external = context.depth > 0
        with context.visit(str(parsed)) as key:
            if key in loaded:
                return
            module = self.load_module(parsed.source)
            workflow = self._select(module, parsed, external)
            loaded[key] = workflow
            child = context.child()
            for target in _external_references(workflow):
                self._load_tree(parse_reference(target), child, loaded)

    def list_available(self) -> list[AvailableWorkflow]:
        """Non-internal default workflows of every document, first tier wins."""
        seen: set[str] = set()
        available = []
        for tier, provider in self.tiers:
            for resource in provider.list_names(config.WORKFLOWS_DIR):
                if not resource.endswith(config.WORKFLOW_SUFFIX):
                    continue
                name = posixpath.basename(resource)[: -len(config.WORKFLOW_SUFFIX)]
                if name in seen:
                    continue
                text = provider.read_text(resource)
                try:
                    module = parse_module_string(text or "", provider.describe(resource))
                except ParseError as exc:
                    logger.warning("Skipping unparsable workflow %s: %s", resource, exc)
                    continue
                main = module.default_workflow()
                if main is None or main.internal:
                    continue
                seen.add(name)
                available.append(
                    AvailableWorkflow(name, tier, provider.describe(resource), main.description)
                )
        return available

    @staticmethod
    def _select(module: Module, parsed: WorkflowRef, external: bool) -> Workflow:
        workflow = module.get_workflow(parsed.workflow)
        if workflow is None and len(module.workflows) == 1:
            only = next(iter(module.workflows.values()))
            if only.is_legacy:
                workflow = only
        if workflow is None:
            raise WorkflowNotFoundError(
                str(parsed), [module.path] if module.path else [],
                f"available: {', '.join(module.names())}",
            )
        if external and workflow.internal:
            raise WorkflowNotFoundError(str(parsed), reason=f'workflow "{parsed.workflow}" is internal')
        return workflow


def _external_references(workflow: Workflow) -> list[str]:
    refs = []
    for step in workflow.steps:
        candidates = [step.template] + [target.template for target in step.branch_targets().values()]
        for ref in candidates:
            if ref and not ref.startswith(".") and not has_placeholders(ref):
                refs.append(ref)
    return refs
