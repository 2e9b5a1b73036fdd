from __future__ import annotations

import re
from typing import Any, Mapping

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

# PostgreSQL truncates identifiers beyond 63 bytes.
MAX_IDENTIFIER_LENGTH = 63


def validate_identifier(name: str, identifier_type: str = "identifier") -> str:
    """
    Validate that an identifier (table/column name) is safe to interpolate
    into SQL text or a REST path.

    ⚠️ SECURITY CONTRACT ⚠️
    This checks format only. Identifiers MUST still be trusted (hardcoded or
    whitelisted at application boundaries), never raw user input.

    Args:
        name: The identifier to validate
        identifier_type: Description of the identifier (for error messages)

    Returns:
        The validated identifier (unchanged if valid)

    Raises:
        TypeError: If identifier is not a string
        ValueError: If identifier contains unsafe characters or is invalid

    Example:
        >>> validate_identifier("programs", "table")
        'programs'
        >>> validate_identifier("'; DROP TABLE--", "table")
        ValueError: Invalid table "'; DROP TABLE--": ...
    """
    if not isinstance(name, str):
        raise TypeError(f"{identifier_type} must be a string, got {type(name).__name__}")

    if not name:
        raise ValueError(f"{identifier_type} cannot be empty")

    if not _IDENTIFIER_RE.match(name):
        raise ValueError(
            f"Invalid {identifier_type} {name!r}: "
            "must start with letter/underscore and contain only alphanumeric characters and underscores"
        )

    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"{identifier_type} {name!r} exceeds the {MAX_IDENTIFIER_LENGTH}-character limit"
        )

    return name


def where_clause(filters: Mapping[str, Any], prefix: str = "where") -> tuple[str, dict[str, Any]]:
    """
    Build an AND-ed equality WHERE clause from ``filters``.

    Keys are sorted so the generated SQL is deterministic. ``None`` values
    become ``IS NULL``.

    Returns:
        (sql fragment without the WHERE keyword, bound parameters)
    """
    clauses = []
    params: dict[str, Any] = {}
    for i, (col, val) in enumerate(sorted(filters.items())):
        col = validate_identifier(col, "filter column")
        if val is None:
            clauses.append(f"{col} IS NULL")
            continue
        param_name = f"{prefix}_{i}"
        clauses.append(f"{col} = :{param_name}")
        params[param_name] = val
    return " AND ".join(clauses), params
