from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def _validate_identifier(name: str, identifier_type: str = "identifier") -> str:
    """
    Validate that an identifier (table/column name) is safe for SQL interpolation.

    Identifiers are restricted to alphanumeric + underscore, starting with a
    letter or underscore, at most 64 characters.

    ⚠️ SECURITY CONTRACT ⚠️
    This function validates identifier format but does NOT prevent SQL injection
    if identifiers come from untrusted user input. Entity types and column names
    MUST be trusted (defined in code or configuration, not taken from requests).

    Args:
        name: The identifier to validate
        identifier_type: Description of the identifier (for error messages)

    Returns:
        The validated identifier (unchanged if valid)

    Raises:
        TypeError: If identifier is not a string
        ValueError: If identifier contains unsafe characters or is invalid

    Example:
        >>> _validate_identifier("account", "table")
        'account'
        >>> _validate_identifier("'; DROP TABLE--", "table")
        ValueError: Invalid table '; DROP TABLE--': ...
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

    if len(name) > 64:
        raise ValueError(f"{identifier_type} {name!r} exceeds the 64-character limit")

    return name


def _validate_columns(columns: Iterable[str]) -> list[str]:
    return [_validate_identifier(col, "column name") for col in columns]


_EMPTY_VALUES_DIALECTS = {"mysql", "mariadb"}


def build_insert_sql(table: str, payload: Mapping[str, Any], dialect_name: str | None = None) -> str:
    """
    Build a plain INSERT for the payload's columns.

    No INSERT IGNORE or upsert: a conflicting row is a write failure. An
    empty payload inserts a row of column defaults; MySQL spells that
    "() VALUES ()" instead of "DEFAULT VALUES".
    """
    table = _validate_identifier(table, "table")
    cols = _validate_columns(payload.keys())
    if not cols:
        if dialect_name in _EMPTY_VALUES_DIALECTS:
            return f"INSERT INTO {table} () VALUES ()"
        return f"INSERT INTO {table} DEFAULT VALUES"

    col_names = ", ".join(cols)
    placeholders = ", ".join(f":{c}" for c in cols)
    return f"INSERT INTO {table} ({col_names}) VALUES ({placeholders})"


def build_update_sql(table: str, id_column: str, columns: Iterable[str]) -> str | None:
    """
    Build an UPDATE by primary key. Returns None when there is nothing to set.

    The primary key is bound as :id_value.
    """
    table = _validate_identifier(table, "table")
    id_column = _validate_identifier(id_column, "id_column")
    cols = [c for c in _validate_columns(columns) if c != id_column]
    if not cols:
        return None

    set_clause = ", ".join(f"{c} = :{c}" for c in cols)
    return f"UPDATE {table} SET {set_clause} WHERE {id_column} = :id_value"


def build_delete_sql(table: str, id_column: str) -> str:
    table = _validate_identifier(table, "table")
    id_column = _validate_identifier(id_column, "id_column")
    return f"DELETE FROM {table} WHERE {id_column} = :id_value"


def build_soft_delete_sql(table: str, id_column: str, flag_column: str, deleted: bool) -> str:
    """
    Build an UPDATE flipping a soft-delete flag.

    Only rows currently in the opposite state match, so a rowcount of 0 means
    the record is missing or already in the requested state.
    """
    table = _validate_identifier(table, "table")
    id_column = _validate_identifier(id_column, "id_column")
    flag_column = _validate_identifier(flag_column, "soft_delete_column")
    new_value, current_value = (1, 0) if deleted else (0, 1)
    return (
        f"UPDATE {table} SET {flag_column} = {new_value} "
        f"WHERE {id_column} = :id_value AND {flag_column} = {current_value}"
    )
