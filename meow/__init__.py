"""
MEOW workflow compiler - turns declarative TOML workflows into validated,
executable step graphs.

Copyright (c) 2026 MEOW Team
Licensed under Apache 2.0
"""

__version__ = "0.1.0"

from meow.core.baker import Baker
from meow.core.exceptions import MeowError
from meow.core.loader import WorkflowLoader
from meow.core.parser import parse_file, parse_string
from meow.core.validation import validate_full, validate_full_module

__all__ = [
    # Version
    "__version__",
    # Core
    "Baker",
    "WorkflowLoader",
    "parse_file",
    "parse_string",
    "validate_full",
    "validate_full_module",
    # Errors
    "MeowError",
]
