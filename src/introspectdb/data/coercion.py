"""Value conversion between Python and SQLite storage.

SQLite has no boolean or date types. Booleans are stored as 0/1 and dates
as ISO-8601 text; both are converted back using the declared column type.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from datetime import date, datetime
from typing import Any

from introspectdb.core.types import TableSchema

_INTEGER_TEXT = re.compile(r"[+-]?\d+")
_REAL_TEXT = re.compile(r"[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?")


def to_db_value(value: Any) -> Any:
    """Convert a Python value to what is stored in SQLite."""
    if isinstance(value, datetime | date):
        return value.isoformat()
    return value


def from_db_row(schema: TableSchema, row: Mapping[str, Any]) -> dict[str, Any]:
    """Convert a fetched row using the declared column types."""
    result = dict(row)
    for col in schema.columns:
        value = result.get(col.name)
        if value is None:
            continue
        logical = col.logical_type
        if logical == "boolean" and isinstance(value, int):
            result[col.name] = bool(value)
        elif logical == "datetime" and isinstance(value, str):
            result[col.name] = _parse_iso(value, datetime.fromisoformat)
        elif logical == "date" and isinstance(value, str):
            result[col.name] = _parse_iso(value, date.fromisoformat)
    return result


def _parse_iso(value: str, parser: Callable[[str], Any]) -> Any:
    try:
        return parser(value)
    except ValueError:
        # Stored text that is not ISO-8601 is returned as is.
        return value


def comparison_key(value: Any, logical_type: str) -> Any:
    """Convert ``value`` the way SQLite does before comparing it with a column.

    Numeric columns turn well-formed numeric text into numbers and text
    columns turn numbers into text. Used to match loaded rows to their
    owners exactly as the ``IN`` filter in SQL matched them.
    """
    value = to_db_value(value)
    if isinstance(value, bool):
        value = int(value)
    if logical_type == "blob":
        return value
    if logical_type == "text":
        return str(value) if isinstance(value, int | float) else value
    if isinstance(value, str):
        text = value.strip()
        if _INTEGER_TEXT.fullmatch(text):
            return int(text)
        if _REAL_TEXT.fullmatch(text):
            return float(text)
    return value
