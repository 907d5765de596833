"""Workflow compiler components: parse, validate and bake."""

from meow.core.baker import Baker, coerce_binding, order_steps
from meow.core.compiled import (
    AgentConfig,
    BranchConfig,
    BranchTarget,
    CompiledStep,
    ExpandConfig,
    ForeachConfig,
    KillConfig,
    ShellConfig,
    SpawnConfig,
)
from meow.core.exceptions import (
    BakeError,
    CircularReferenceError,
    MeowError,
    ParseError,
    ValidationFailedError,
    VariableError,
    WorkflowNotFoundError,
)
from meow.core.loader import (
    DirectoryResourceProvider,
    MappingResourceProvider,
    ResourceProvider,
    WorkflowLoader,
    parse_reference,
    resolve_local,
)
from meow.core.models import (
    ExecutorKind,
    ExpansionTarget,
    Meta,
    Module,
    Step,
    StepStatus,
    Var,
    VarType,
    Workflow,
    resolve_executor,
)
from meow.core.parser import parse_file, parse_module_string, parse_string, parse_workflow_string
from meow.core.references import LoadContext, normalize_ref
from meow.core.serialization import compiled_step_to_dict, dump_compiled_steps, load_compiled_steps
from meow.core.validation import (
    ValidationError,
    ValidationResult,
    find_cycle,
    find_similar,
    validate_full,
    validate_full_module,
)
from meow.core.variables import StepInfo, VarContext, stringify_value

__all__ = [
    # Parsing
    "parse_file",
    "parse_string",
    "parse_module_string",
    "parse_workflow_string",
    # Validation
    "ValidationError",
    "ValidationResult",
    "find_cycle",
    "find_similar",
    "validate_full",
    "validate_full_module",
    # Resolution
    "StepInfo",
    "VarContext",
    "stringify_value",
    # Baking
    "Baker",
    "coerce_binding",
    "order_steps",
    # Loading
    "DirectoryResourceProvider",
    "LoadContext",
    "MappingResourceProvider",
    "ResourceProvider",
    "WorkflowLoader",
    "normalize_ref",
    "parse_reference",
    "resolve_local",
    # Serialization
    "compiled_step_to_dict",
    "dump_compiled_steps",
    "load_compiled_steps",
    # Models
    "ExecutorKind",
    "ExpansionTarget",
    "Meta",
    "Module",
    "Step",
    "StepStatus",
    "Var",
    "VarType",
    "Workflow",
    "resolve_executor",
    # Compiled output
    "AgentConfig",
    "BranchConfig",
    "BranchTarget",
    "CompiledStep",
    "ExpandConfig",
    "ForeachConfig",
    "KillConfig",
    "ShellConfig",
    "SpawnConfig",
    # Errors
    "BakeError",
    "CircularReferenceError",
    "MeowError",
    "ParseError",
    "ValidationFailedError",
    "VariableError",
    "WorkflowNotFoundError",
]
