"""Scanner for ``{{path}}`` placeholders inside arbitrary strings."""

import re

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")


def find_placeholders(text: str) -> list[str]:
    """Return the trimmed placeholder paths in ``text``, in order of appearance."""
    if not text:
        return []
    return [match.group(1).strip() for match in PLACEHOLDER_PATTERN.finditer(text)]


def has_placeholders(text: str) -> bool:
    return bool(text) and PLACEHOLDER_PATTERN.search(text) is not None


def is_single_placeholder(text: str) -> bool:
    """True when ``text`` is exactly one placeholder with nothing around it."""
    if not isinstance(text, str):
        return False
    match = PLACEHOLDER_PATTERN.fullmatch(text.strip())
    return match is not None


def split_path(path: str) -> list[str]:
    return path.strip().split(".")


def is_output_reference(path: str) -> bool:
    """Whether ``path`` points at another step's outputs.

    Two shapes exist: ``output.<step>.<field>`` and ``<step>.outputs.<field>``.
    Step ids may themselves contain dots (expansion prefixes), so ``outputs``
    may appear at any position after the first segment.
    """
    parts = split_path(path)
    if parts[0] == "output":
        return True
    return "outputs" in parts[1:]


def shell_escape(value: str) -> str:
    """Quote ``value`` for safe interpolation into a POSIX shell command."""
    return "'" + value.replace("'", "'\"'\"'") + "'"
