"""Exception hierarchy for the workflow compiler."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from meow.core.validation import ValidationResult


class MeowError(Exception):
    """Base class for all compiler errors."""


class ParseError(MeowError, ValueError):
    """A workflow document could not be decoded or has the wrong shape."""


class VariableError(MeowError, ValueError):
    """A placeholder or variable binding could not be resolved."""


class BakeError(MeowError, ValueError):
    """A validated workflow could not be compiled into executable steps."""


class ValidationFailedError(MeowError, ValueError):
    """Raised when the validation gate in front of baking finds problems."""

    def __init__(self, result: ValidationResult):
        super().__init__(str(result))
        self.result = result


class CircularReferenceError(MeowError):
    """A workflow reference chain loops back onto a reference still being loaded."""

    def __init__(self, ref: str, path: list[str]):
        self.ref = ref
        self.path = list(path)
        chain = " → ".join([*self.path, ref])
        super().__init__(f"circular reference detected: {ref} (path: {chain})")


class WorkflowNotFoundError(MeowError, LookupError):
    """No tier of the loader could provide the requested workflow."""

    def __init__(self, ref: str, searched: list[str] | None = None, reason: str = ""):
        self.ref = ref
        self.searched = list(searched or [])
        message = f"workflow not found: {ref}"
        if reason:
            message = f"{message} ({reason})"
        if self.searched:
            message = f"{message}\nsearched:\n  " + "\n  ".join(self.searched)
        super().__init__(message)
