"""Result shaping helpers layered on Connection.execute."""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .connections import Connection, Statement

LOG = logging.getLogger(__name__)

# Column types rendered as quoted strings in csv output.
QUOTED_TYPES = re.compile(r"char|text|binary|blob|bytea|name")


def _run(connection: Connection, label: str, sql: str | Statement, values: tuple[Any, ...]) -> Statement | None:
    if not connection.check_connected(label):
        return None
    if connection.verbose:
        LOG.info("%s: %s", label.upper(), sql, extra={"values": list(values)})
    if connection.execute(sql, *values) is None:
        return None
    return connection.recent_statement


def fetch_mapping(connection: Connection, sql: str | Statement | None = None, *values: Any) -> dict[str, Any] | None:
    """Return one row as a dict.

    Call with a query once, then without one to keep reading rows from the
    same result without loading them all at once. Returns None when there
    are no more rows (``last_error`` stays clear) or on failure.
    """

    if sql is None:
        statement = connection.recent_statement
        if statement is None:
            return None
    else:
        statement = _run(connection, "mapping", sql, values)
        if statement is None:
            return None
    return statement.fetch_mapping()


def fetch_mappings(connection: Connection, sql: str | Statement, *values: Any) -> list[dict[str, Any]]:
    """Return every row as a dict."""

    statement = _run(connection, "mappings", sql, values)
    if statement is None:
        return []
    return statement.fetch_all_mappings()


def fetch_array(connection: Connection, sql: str | Statement, *values: Any) -> list[Any]:
    """Return the values of a single row, in column order."""

    statement = _run(connection, "array", sql, values)
    if statement is None:
        return []
    return statement.fetch_values() or []


def fetch_arrays(connection: Connection, sql: str | Statement, *values: Any) -> list[list[Any]]:
    statement = _run(connection, "arrays", sql, values)
    if statement is None:
        return []
    return statement.fetch_all_values()


def fetch_flat_array(connection: Connection, sql: str | Statement, *values: Any) -> list[Any]:
    """Return the values of every row in one list.

    Handy for single-column queries, or two-column ones fed to ``dict(zip(...))``.
    """

    statement = _run(connection, "flat_array", sql, values)
    if statement is None:
        return []
    return [value for row in statement.fetch_all_values() for value in row]


def fetch_scalar(connection: Connection, sql: str | Statement, *values: Any) -> Any:
    """Return the first column of the first row."""

    statement = _run(connection, "scalar", sql, values)
    if statement is None:
        return None
    if statement.row_count > 1 or len(statement.columns) > 1:
        LOG.warning("%s returned more than 1 row and/or column", statement.sql)
    row = statement.fetch_values()
    return row[0] if row else None


def fetch_csv(connection: Connection, sql: str | Statement, *values: Any) -> str | None:
    """Render the result as comma separated lines.

    Text-like columns are double-quoted and NULLs are written as ``NULL``.
    """

    statement = _run(connection, "csv", sql, values)
    if statement is None:
        return None
    quoted = [bool(QUOTED_TYPES.search(name)) for name in statement.column_types]
    lines: list[str] = []
    for row in statement.fetch_all_values():
        cells: list[str] = []
        for index, value in enumerate(row):
            if value is None:
                cells.append("NULL")
            elif index < len(quoted) and quoted[index]:
                cells.append('"' + str(value).replace('"', '""') + '"')
            else:
                cells.append(str(value))
        lines.append(",".join(cells))
    return "".join(line + "\n" for line in lines)


__all__ = [
    "QUOTED_TYPES",
    "fetch_array",
    "fetch_arrays",
    "fetch_csv",
    "fetch_flat_array",
    "fetch_mapping",
    "fetch_mappings",
    "fetch_scalar",
]
