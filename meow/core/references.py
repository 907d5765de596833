"""Cross-file workflow reference tracking.

When one document expands a workflow that lives in another file, the loader
follows a chain of ``file#workflow`` references. LoadContext records that chain
and refuses to re-enter a reference that is still being loaded.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from meow.core.config import DEFAULT_WORKFLOW
from meow.core.exceptions import CircularReferenceError


def normalize_ref(ref: str, default_workflow: str = DEFAULT_WORKFLOW) -> str:
    """Return ``ref`` in canonical ``source#workflow`` form."""
    source, sep, workflow = ref.strip().partition("#")
    return f"{source.strip()}#{(workflow.strip() if sep else '') or default_workflow}"


@dataclass
class _Chain:
    visited: set[str] = field(default_factory=set)
    stack: list[str] = field(default_factory=list)


class LoadContext:
    """Visited set plus path stack shared by every child context of one load."""

    def __init__(self, _chain: _Chain | None = None):
        self._chain = _chain or _Chain()

    def enter(self, ref: str) -> str:
        """Push ``ref`` onto the chain; raise CircularReferenceError on re-entry."""
        key = normalize_ref(ref)
        if key in self._chain.visited:
            raise CircularReferenceError(key, self._chain.stack)
        self._chain.visited.add(key)
        self._chain.stack.append(key)
        return key

    def exit(self, ref: str) -> None:
        key = normalize_ref(ref)
        self._chain.visited.discard(key)
        if self._chain.stack and self._chain.stack[-1] == key:
            self._chain.stack.pop()
        elif key in self._chain.stack:
            self._chain.stack.remove(key)

    def child(self) -> "LoadContext":
        """Return a context sharing this one's chain, for nested loads."""
        return LoadContext(self._chain)

    @contextmanager
    def visit(self, ref: str) -> Iterator[str]:
        key = self.enter(ref)
        try:
            yield key
        finally:
            self.exit(key)

    @property
    def current_ref(self) -> str:
        return self._chain.stack[-1] if self._chain.stack else ""

    @property
    def depth(self) -> int:
        return len(self._chain.stack)

    @property
    def path(self) -> list[str]:
        return list(self._chain.stack)
