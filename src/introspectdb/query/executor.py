"""Statement execution for IntrospectDB.

Every statement issued by repositories, the relationship engine, the query
builder and raw ``execute()`` calls goes through a ``QueryExecutor``. Values
always travel as bound parameters; nothing here formats values into SQL.

``MetricsExecutor`` decorates any executor with timing, chosen at
construction instead of intercepting calls dynamically.
"""

from __future__ import annotations

import re
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import text
from sqlalchemy.sql import Executable

from introspectdb.core.types import QueryMetrics

if TYPE_CHECKING:
    from sqlalchemy import Connection

    from introspectdb.core.connection import DatabaseConnection
    from introspectdb.query.metrics import MetricsCollector

_LEADING_KEYWORD = re.compile(r"^\s*(\w+)")
_WRITE_KEYWORDS = re.compile(r"\b(INSERT|UPDATE|DELETE|REPLACE)\b", re.IGNORECASE)
_DDL_KEYWORDS = {"CREATE", "DROP", "ALTER"}


def statement_type(statement: Executable) -> str:
    """Classify a statement as SELECT, INSERT, UPDATE, DELETE, DDL or OTHER."""
    if getattr(statement, "is_select", False):
        return "SELECT"
    if getattr(statement, "is_insert", False):
        return "INSERT"
    if getattr(statement, "is_update", False):
        return "UPDATE"
    if getattr(statement, "is_delete", False):
        return "DELETE"
    if getattr(statement, "is_text", False):
        sql = getattr(statement, "text", "")
        match = _LEADING_KEYWORD.match(sql)
        keyword = match.group(1).upper() if match else ""
        if keyword == "WITH":
            write = _WRITE_KEYWORDS.search(sql)
            return write.group(1).upper() if write else "SELECT"
        if keyword in ("SELECT", "INSERT", "UPDATE", "DELETE"):
            return keyword
        if keyword == "REPLACE":
            return "INSERT"
        if keyword in _DDL_KEYWORDS:
            return "DDL"
    return "OTHER"


@dataclass
class ExecutionResult:
    """Fully materialized result of one statement."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0
    inserted_primary_key: tuple[Any, ...] | None = None
    query_type: str = "OTHER"

    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None

    def scalar(self) -> Any:
        """First column of the first row, or None."""
        if not self.rows:
            return None
        return next(iter(self.rows[0].values()), None)


class QueryExecutor(ABC):
    """Interface for running statements and scoping transactions."""

    @abstractmethod
    def execute(
        self,
        statement: Executable | str,
        params: Mapping[str, Any] | None = None,
    ) -> ExecutionResult:
        """Execute one statement with bound parameters."""

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager: begin, commit on success, roll back on any error."""

    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether the calling thread is inside ``transaction()``."""

    def current_connection(self) -> Connection | None:
        """The calling thread's transaction connection, if any."""
        return None


class SQLAlchemyExecutor(QueryExecutor):
    """Runs statements on the SQLAlchemy engine of a ``DatabaseConnection``.

    Statements issued inside ``transaction()`` on the same thread join that
    transaction; a nested ``transaction()`` becomes a SAVEPOINT. Outside a
    transaction each write runs in its own short transaction.
    """

    def __init__(self, connection: DatabaseConnection) -> None:
        self._connection = connection
        self._local = threading.local()

    def current_connection(self) -> Connection | None:
        return getattr(self._local, "connection", None)

    def in_transaction(self) -> bool:
        return self.current_connection() is not None

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        current = self.current_connection()
        if current is not None:
            with current.begin_nested():
                yield current
            return

        with self._connection.lock, self._connection.engine.connect() as conn:
            with conn.begin():
                self._local.connection = conn
                try:
                    yield conn
                finally:
                    self._local.connection = None

    def execute(
        self,
        statement: Executable | str,
        params: Mapping[str, Any] | None = None,
    ) -> ExecutionResult:
        stmt = text(statement) if isinstance(statement, str) else statement
        query_type = statement_type(stmt)

        current = self.current_connection()
        if current is not None:
            return self._run(current, stmt, params, query_type)

        if query_type == "SELECT" and not self._connection.is_memory:
            with self._connection.engine.connect() as conn:
                return self._run(conn, stmt, params, query_type)

        with self._connection.lock, self._connection.engine.connect() as conn:
            result = self._run(conn, stmt, params, query_type)
            conn.commit()
            return result

    @staticmethod
    def _run(
        conn: Connection,
        stmt: Executable,
        params: Mapping[str, Any] | None,
        query_type: str,
    ) -> ExecutionResult:
        if params:
            cursor = conn.execute(stmt, dict(params))
        else:
            cursor = conn.execute(stmt)

        rows: list[dict[str, Any]] = []
        if cursor.returns_rows:
            rows = [dict(row._mapping) for row in cursor]

        inserted = None
        if query_type == "INSERT" and not getattr(stmt, "is_text", False):
            inserted = tuple(cursor.inserted_primary_key or ()) or None

        rowcount = cursor.rowcount if cursor.rowcount is not None and cursor.rowcount >= 0 else 0
        return ExecutionResult(
            rows=rows,
            rowcount=len(rows) if cursor.returns_rows else rowcount,
            inserted_primary_key=inserted,
            query_type=query_type,
        )


class MetricsExecutor(QueryExecutor):
    """Decorates another executor, recording timing for every statement."""

    def __init__(self, inner: QueryExecutor, collector: MetricsCollector) -> None:
        self._inner = inner
        self._collector = collector

    @property
    def collector(self) -> MetricsCollector:
        return self._collector

    def current_connection(self) -> Connection | None:
        return self._inner.current_connection()

    def in_transaction(self) -> bool:
        return self._inner.in_transaction()

    def transaction(self) -> Any:
        return self._inner.transaction()

    def execute(
        self,
        statement: Executable | str,
        params: Mapping[str, Any] | None = None,
    ) -> ExecutionResult:
        stmt = text(statement) if isinstance(statement, str) else statement
        start = time.perf_counter()
        try:
            result = self._inner.execute(stmt, params)
        except Exception:
            self._collector.record_query(
                QueryMetrics(
                    execution_time_ms=(time.perf_counter() - start) * 1000,
                    row_count=0,
                    query_type=statement_type(stmt),
                    succeeded=False,
                )
            )
            raise

        self._collector.record_query(
            QueryMetrics(
                execution_time_ms=(time.perf_counter() - start) * 1000,
                row_count=result.rowcount,
                query_type=result.query_type,
            )
        )
        return result
