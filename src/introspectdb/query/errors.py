"""Translation of SQLAlchemy driver errors into IntrospectDB exceptions.

Surfaced messages carry the operation, the table and SQLite's own short
message. Statement text and bound values are never included; an offending
value is kept in ``context`` only.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy.exc import DBAPIError, IntegrityError

from introspectdb.exceptions import ConstraintViolationError, IntrospectDBError, QueryError

_CONSTRAINT = re.compile(
    r"(UNIQUE|NOT NULL|CHECK|FOREIGN KEY|PRIMARY KEY) constraint failed(?::\s*(.+))?",
    re.IGNORECASE,
)


def driver_message(exc: BaseException) -> str:
    """SQLite's own message, without SQLAlchemy's statement/parameter dump."""
    orig = getattr(exc, "orig", None)
    return str(orig if orig is not None else exc).strip()


def constraint_violation(
    exc: IntegrityError,
    table_name: str | None = None,
    data: Mapping[str, Any] | None = None,
    primary_key: Sequence[str] = (),
    foreign_key_columns: Sequence[str] = (),
) -> ConstraintViolationError:
    """Build a ``ConstraintViolationError`` from SQLite's integrity message.

    SQLite reports ``UNIQUE constraint failed: users.email``; the table and
    column are taken from there when present.
    """
    message = driver_message(exc)
    match = _CONSTRAINT.search(message)
    kind = match.group(1).upper() if match else "INTEGRITY"
    detail = match.group(2) if match else None

    column = None
    if detail and kind in ("UNIQUE", "NOT NULL", "PRIMARY KEY"):
        first = detail.split(",")[0].strip()
        if "." in first:
            reported_table, column = first.split(".", 1)
            table_name = table_name or reported_table
        else:
            column = first
    elif kind == "FOREIGN KEY" and data:
        # SQLite does not say which key failed; it is derivable only when
        # exactly one foreign key column was written.
        written = [c for c in foreign_key_columns if data.get(c) is not None]
        if len(written) == 1:
            column = written[0]

    if kind == "UNIQUE" and column is not None and list(primary_key) == [column]:
        kind = "PRIMARY KEY"

    value = data.get(column) if data and column else None
    return ConstraintViolationError(
        table_name or "?",
        kind,
        column=column,
        value=value,
        detail=detail if kind == "CHECK" and detail else None,
    )


def wrap_database_error(
    exc: Exception,
    operation: str,
    table_name: str | None = None,
    data: Mapping[str, Any] | None = None,
    primary_key: Sequence[str] = (),
    foreign_key_columns: Sequence[str] = (),
) -> IntrospectDBError:
    """Map a driver error to the IntrospectDB taxonomy.

    Args:
        exc: The exception raised while executing
        operation: What was being done, e.g. ``"create"``
        table_name: Table being operated on, if any
        data: Values being written, used to find an offending value

    Returns:
        The exception to raise in its place
    """
    if isinstance(exc, IntrospectDBError):
        return exc
    if isinstance(exc, IntegrityError):
        return constraint_violation(exc, table_name, data, primary_key, foreign_key_columns)

    target = f" on '{table_name}'" if table_name else ""
    context: dict[str, Any] = {"operation": operation, "table_name": table_name}
    if isinstance(exc, DBAPIError):
        context["driver_error"] = type(exc.orig).__name__ if exc.orig is not None else None
    return QueryError(f"{operation} failed{target}: {driver_message(exc)}", context)
