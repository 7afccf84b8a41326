"""Custom exceptions for IntrospectDB.

Every error carries a human-readable message plus a machine-readable
``context`` dict. Messages say what went wrong and, where possible, what the
caller can do about it. Raw row values are kept in ``context`` only, never in
the message text.
"""

from __future__ import annotations

from typing import Any


class IntrospectDBError(Exception):
    """Base exception for all IntrospectDB errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Return error as JSON-serializable dict."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class ConnectionError(IntrospectDBError):
    """The database could not be opened or the URL is not a SQLite URL."""

    pass


class ConfigurationError(IntrospectDBError):
    """Invalid configuration (migration directory, timeouts, cache limits)."""

    pass


class SchemaDiscoveryError(IntrospectDBError):
    """Schema introspection could not complete.

    An empty database is *not* a discovery error.
    """

    def __init__(
        self,
        message: str,
        missing_tables: list[str] | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        missing = missing_tables or []
        ctx = dict(context or {})
        if missing:
            ctx["missing_tables"] = missing
        super().__init__(message, ctx)
        self.missing_tables = missing


class RelationshipAmbiguityError(SchemaDiscoveryError):
    """Two relationships on one table resolve to the same name."""

    def __init__(self, table_name: str, relation_name: str, alias_keys: list[str]) -> None:
        message = (
            f"Relationship name '{relation_name}' on '{table_name}' is ambiguous "
            f"({len(alias_keys)} candidates). Configure relation_aliases for one of: "
            f"{', '.join(alias_keys)}"
        )
        super().__init__(
            message,
            context={
                "table_name": table_name,
                "relation_name": relation_name,
                "alias_keys": alias_keys,
            },
        )
        self.table_name = table_name
        self.relation_name = relation_name
        self.alias_keys = alias_keys


class TableNotFoundError(IntrospectDBError):
    """Table is not a discovered entity table."""

    def __init__(self, table_name: str, available_tables: list[str] | None = None) -> None:
        available = available_tables or []
        if available:
            message = f"Table '{table_name}' not found. Available tables: {', '.join(available)}"
        else:
            message = f"Table '{table_name}' not found. No entity tables were discovered."

        super().__init__(message, {"table_name": table_name, "available_tables": available})
        self.table_name = table_name
        self.available_tables = available


class ColumnNotFoundError(IntrospectDBError):
    """Column does not exist on table."""

    def __init__(
        self, column_name: str, table_name: str, available_columns: list[str] | None = None
    ) -> None:
        available = available_columns or []
        if available:
            message = (
                f"Column '{column_name}' not found on '{table_name}'. "
                f"Available columns: {', '.join(available)}"
            )
        else:
            message = f"Column '{column_name}' not found on '{table_name}'."

        super().__init__(
            message,
            {
                "column_name": column_name,
                "table_name": table_name,
                "available_columns": available,
            },
        )
        self.column_name = column_name
        self.table_name = table_name
        self.available_columns = available


class RecordNotFoundError(IntrospectDBError):
    """Row with the given primary key does not exist.

    Only raised where the caller asserted existence (``update``); reads and
    deletes report absence as ``None`` / ``False``.
    """

    def __init__(self, record_id: Any, table_name: str) -> None:
        message = f"Record '{record_id}' not found in '{table_name}'."
        super().__init__(message, {"record_id": str(record_id), "table_name": table_name})
        self.record_id = record_id
        self.table_name = table_name


class ConstraintViolationError(IntrospectDBError):
    """A write violated a PRIMARY KEY, UNIQUE, NOT NULL, CHECK or FOREIGN KEY constraint."""

    def __init__(
        self,
        table_name: str,
        kind: str,
        column: str | None = None,
        value: Any = None,
        detail: str | None = None,
    ) -> None:
        target = f"'{table_name}.{column}'" if column else f"'{table_name}'"
        message = f"{kind} constraint violated on {target}."
        if detail:
            message = f"{message} {detail}"
        super().__init__(
            message,
            {"table_name": table_name, "kind": kind, "column": column, "value": value},
        )
        self.table_name = table_name
        self.kind = kind
        self.column = column
        self.value = value


class QueryError(IntrospectDBError):
    """Query execution failed."""

    pass


class MigrationError(IntrospectDBError):
    """A migration could not be created, applied or rolled back."""

    def __init__(
        self,
        message: str,
        migration_name: str | None = None,
        applied: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            {"migration_name": migration_name, "applied": applied or []},
        )
        self.migration_name = migration_name
        self.applied = applied or []


class MigrationTimeoutError(MigrationError):
    """Waiting for a migration exceeded ``migration_timeout``.

    The underlying statement is interrupted on a best-effort basis only.
    """

    def __init__(self, migration_name: str, timeout: float, applied: list[str] | None = None):
        message = (
            f"Migration '{migration_name}' did not finish within {timeout}s. "
            "An interrupt was requested; check status() before retrying."
        )
        super().__init__(message, migration_name=migration_name, applied=applied)
        self.timeout = timeout
