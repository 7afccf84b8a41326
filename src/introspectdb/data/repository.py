"""Generated repositories over discovered tables.

A ``Repository`` is bound to a table *name*, not to a schema snapshot: it
looks the table up in the engine's current ``SchemaInfo`` on every call.
Asking for a table that does not exist therefore succeeds, and the first
operation raises ``TableNotFoundError``.

All statements are SQLAlchemy Core constructs with bound parameters.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Generic, TypeVar, cast

from sqlalchemy import (
    Column,
    ColumnElement,
    Integer,
    MetaData,
    Table,
    and_,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import NullType

from introspectdb.core.types import Page, Pagination, SchemaInfo, TableSchema
from introspectdb.data.coercion import from_db_row, to_db_value
from introspectdb.data.relationships import RelationshipEngine
from introspectdb.exceptions import (
    ColumnNotFoundError,
    QueryError,
    RecordNotFoundError,
    TableNotFoundError,
)
from introspectdb.query.errors import wrap_database_error

if TYPE_CHECKING:
    from introspectdb.query.executor import ExecutionResult, QueryExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")

PrimaryKey = Any  # scalar, tuple in PK order, or mapping of PK column -> value
OrderBy = str | Sequence[str] | None


def build_table(schema: TableSchema) -> Table:
    """Build a SQLAlchemy ``Table`` for a discovered table.

    Columns other than the rowid alias are typed ``NullType`` so values are
    passed to SQLite unchanged; SQLite's own type affinity applies.
    """
    columns = []
    for col in schema.columns:
        if col.auto_increment:
            columns.append(Column(col.name, Integer, primary_key=True, autoincrement=True))
        else:
            columns.append(
                Column(col.name, NullType(), primary_key=col.primary_key > 0, autoincrement=False)
            )
    return Table(schema.name, MetaData(), *columns)


class Repository(Generic[T]):
    """CRUD and relationship loading for one table.

    Rows are returned as plain dicts keyed by column name. Absence is
    reported as ``None`` / ``[]`` / ``False``; only ``update()`` raises
    ``RecordNotFoundError``, because calling it asserts the row exists.
    """

    def __init__(self, table_name: str, factory: RepositoryFactory) -> None:
        self._table_name = table_name
        self._factory = factory

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def schema(self) -> TableSchema:
        """Current schema of the table.

        Raises:
            TableNotFoundError: If the table is not a discovered entity table
        """
        return self._factory.table_schema(self._table_name)

    @property
    def table(self) -> Table:
        return self._factory.sa_table(self._table_name)

    def __repr__(self) -> str:
        return f"<Repository(table='{self._table_name}')>"

    # === Reads ===

    def find_by_id(self, record_id: PrimaryKey) -> T | None:
        """Find a row by primary key, or None."""
        stmt = select(self.table).where(self._pk_clause(record_id))
        row = self._execute(stmt, "find_by_id").first()
        return self.from_row(row) if row is not None else None

    def exists(self, record_id: PrimaryKey) -> bool:
        """Check whether a row with this primary key exists."""
        stmt = select(func.count()).select_from(self.table).where(self._pk_clause(record_id))
        return bool(self._execute(stmt, "exists").scalar())

    def find_all(
        self,
        limit: int | None = None,
        offset: int | None = None,
        order_by: OrderBy = None,
    ) -> list[T]:
        """List rows, ordered by primary key unless ``order_by`` is given.

        Args:
            limit: Maximum rows to return
            offset: Rows to skip
            order_by: Column name(s); prefix with ``-`` for descending
        """
        stmt = self._apply_paging(select(self.table), limit, offset, order_by)
        return [self.from_row(r) for r in self._execute(stmt, "find_all").rows]

    def find_by(self, column: str, value: Any) -> list[T]:
        """Rows where ``column`` equals ``value`` (``None`` matches NULL)."""
        return self.find_where({column: value})

    def find_where(
        self,
        predicates: Mapping[str, Any],
        limit: int | None = None,
        offset: int | None = None,
        order_by: OrderBy = None,
    ) -> list[T]:
        """Rows matching every predicate.

        Predicate values: scalar means ``=``, ``None`` means ``IS NULL``, and
        a list, tuple or set means ``IN``.
        """
        stmt = select(self.table).where(*self._predicates(predicates))
        stmt = self._apply_paging(stmt, limit, offset, order_by)
        return [self.from_row(r) for r in self._execute(stmt, "find_where").rows]

    def count(self, predicates: Mapping[str, Any] | None = None) -> int:
        """Count rows, optionally matching predicates."""
        stmt = select(func.count()).select_from(self.table)
        if predicates:
            stmt = stmt.where(*self._predicates(predicates))
        return int(self._execute(stmt, "count").scalar() or 0)

    def paginate(
        self,
        page: int = 1,
        limit: int = 20,
        where: Mapping[str, Any] | None = None,
        order_by: OrderBy = None,
    ) -> Page:
        """Return one page of rows with totals.

        Args:
            page: 1-based page number; pages past the end are empty
            limit: Rows per page
            where: Predicates as in ``find_where``
            order_by: Column name(s); prefix with ``-`` for descending

        Raises:
            QueryError: If ``page`` or ``limit`` is below 1
        """
        if page < 1 or limit < 1:
            raise QueryError(
                f"page and limit must be at least 1, got page={page}, limit={limit}",
                {"table_name": self._table_name},
            )
        total = self.count(where)
        offset = (page - 1) * limit
        rows = self.find_where(where or {}, limit=limit, offset=offset, order_by=order_by)
        total_pages = math.ceil(total / limit)
        return Page(
            data=cast(list[dict[str, Any]], rows),
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=total_pages,
                has_next=page < total_pages,
                has_prev=page > 1,
            ),
        )

    # === Writes ===

    def create(self, data: Mapping[str, Any]) -> T:
        """Insert a row and return it as stored, server defaults included.

        Raises:
            ConstraintViolationError: On PRIMARY KEY, UNIQUE, NOT NULL, CHECK
                or FOREIGN KEY failure
        """
        values = self._values(data)
        with self._factory.executor.transaction():
            result = self._execute(insert(self.table).values(values), "create", data)
            key = result.inserted_primary_key
            if key is None or any(part is None for part in key):
                return self.from_row(values)
            # inserted_primary_key follows column order, not PK position order.
            pk_columns = [c.name for c in self.table.primary_key.columns]
            created = self.find_by_id(dict(zip(pk_columns, key, strict=True)))
        logger.debug(f"Created row in '{self._table_name}'")
        return created if created is not None else self.from_row(values)

    def update(self, record_id: PrimaryKey, data: Mapping[str, Any]) -> T:
        """Update a row and return it as stored.

        Raises:
            RecordNotFoundError: If no row has this primary key
            ConstraintViolationError: If the new values violate a constraint
        """
        values = self._values(data)
        with self._factory.executor.transaction():
            if values:
                stmt = update(self.table).where(self._pk_clause(record_id)).values(values)
                if self._execute(stmt, "update", data).rowcount == 0:
                    raise RecordNotFoundError(record_id, self._table_name)
                record_id = self._new_key(record_id, values)
            updated = self.find_by_id(record_id)
        if updated is None:
            raise RecordNotFoundError(record_id, self._table_name)
        return updated

    def delete(self, record_id: PrimaryKey) -> bool:
        """Delete a row. Returns False if there was nothing to delete."""
        stmt = delete(self.table).where(self._pk_clause(record_id))
        return self._execute(stmt, "delete").rowcount > 0

    # === Relationships ===

    def find_with_relations(self, record_id: PrimaryKey, relations: Iterable[str]) -> T | None:
        """Find a row and load the named relationships onto it.

        Issues one query for the row plus one per known relationship.
        Unknown relationship names are ignored.
        """
        root = self.find_by_id(record_id)
        if root is None:
            return None
        self._factory.relationships.load(self._table_name, [cast(dict[str, Any], root)], relations)
        return root

    def load_relationships(self, entities: list[T], relations: Iterable[str]) -> list[T]:
        """Attach the named relationships to already fetched rows.

        Issues exactly one query per relationship regardless of how many rows
        are passed. Rows are updated in place and returned.
        """
        self._factory.relationships.load(
            self._table_name, cast(list[dict[str, Any]], entities), relations
        )
        return entities

    def with_count(self, record_id: PrimaryKey, relations: Iterable[str]) -> T | None:
        """Find a row and add ``<relation>_count`` for each named relationship.

        Counts related rows without loading them. Returns None if the row
        does not exist; unknown relationship names are ignored.
        """
        root = self.find_by_id(record_id)
        if root is None:
            return None
        self._factory.relationships.count(self._table_name, cast(dict[str, Any], root), relations)
        return root

    # === Helpers ===

    def column(self, name: str) -> ColumnElement[Any]:
        """Resolve a column of this table.

        Raises:
            ColumnNotFoundError: If the table has no such column
        """
        table = self.table
        if name not in table.c:
            raise ColumnNotFoundError(name, self._table_name, self.schema.column_names)
        return table.c[name]

    def from_row(self, row: Mapping[str, Any]) -> T:
        """Convert a raw row of this table (booleans, ISO dates)."""
        return cast(T, from_db_row(self.schema, row))

    # === Internals ===

    def _values(self, data: Mapping[str, Any]) -> dict[str, Any]:
        for name in data:
            self.column(name)
        return {name: to_db_value(value) for name, value in data.items()}

    def _predicates(self, predicates: Mapping[str, Any]) -> list[ColumnElement[bool]]:
        clauses = []
        for name, value in predicates.items():
            col = self.column(name)
            if value is None:
                clauses.append(col.is_(None))
            elif isinstance(value, list | tuple | set | frozenset):
                clauses.append(col.in_([to_db_value(v) for v in value]))
            else:
                clauses.append(col == to_db_value(value))
        return clauses

    def _key_values(self, record_id: PrimaryKey) -> dict[str, Any]:
        pk = self.schema.primary_key
        if isinstance(record_id, Mapping):
            missing = [c for c in pk if c not in record_id]
            if missing:
                raise QueryError(
                    f"Primary key of '{self._table_name}' needs: {', '.join(missing)}",
                    {"table_name": self._table_name, "primary_key": pk},
                )
            return {c: record_id[c] for c in pk}
        if isinstance(record_id, tuple | list):
            if len(record_id) != len(pk):
                raise QueryError(
                    f"Primary key of '{self._table_name}' has {len(pk)} column(s), "
                    f"got {len(record_id)} value(s)",
                    {"table_name": self._table_name, "primary_key": pk},
                )
            return dict(zip(pk, record_id, strict=True))
        if len(pk) != 1:
            raise QueryError(
                f"Primary key of '{self._table_name}' is composite ({', '.join(pk)}); "
                "pass a tuple or a mapping",
                {"table_name": self._table_name, "primary_key": pk},
            )
        return {pk[0]: record_id}

    def _pk_clause(self, record_id: PrimaryKey) -> ColumnElement[bool]:
        table = self.table
        key = self._key_values(record_id)
        return and_(*(table.c[name] == to_db_value(value) for name, value in key.items()))

    def _new_key(self, record_id: PrimaryKey, values: Mapping[str, Any]) -> dict[str, Any]:
        """Primary key after an update that may have changed it."""
        key = self._key_values(record_id)
        return {name: values.get(name, value) for name, value in key.items()}

    def _apply_paging(
        self,
        stmt: Any,
        limit: int | None,
        offset: int | None,
        order_by: OrderBy,
    ) -> Any:
        if order_by is None:
            stmt = stmt.order_by(*(self.table.c[name] for name in self.schema.primary_key))
        else:
            names = [order_by] if isinstance(order_by, str) else list(order_by)
            for name in names:
                if name.startswith("-"):
                    stmt = stmt.order_by(self.column(name[1:]).desc())
                else:
                    stmt = stmt.order_by(self.column(name).asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset is not None:
            stmt = stmt.offset(offset)
        return stmt

    def _execute(
        self, stmt: Any, operation: str, data: Mapping[str, Any] | None = None
    ) -> ExecutionResult:
        try:
            return self._factory.executor.execute(stmt)
        except SQLAlchemyError as e:
            schema = self.schema
            raise wrap_database_error(
                e,
                operation,
                self._table_name,
                data,
                primary_key=schema.primary_key,
                foreign_key_columns=[fk.column for fk in schema.foreign_keys],
            ) from e


class RepositoryFactory:
    """Creates and memoizes repositories, one per table name.

    Holds the executor, the current schema provider and the relationship
    engine shared by every repository of one ``IntrospectDB`` instance.
    """

    def __init__(
        self,
        executor: QueryExecutor,
        schema_provider: Callable[[], SchemaInfo],
    ) -> None:
        """Initialize the factory.

        Args:
            executor: Executor for every repository statement
            schema_provider: Returns the engine's current ``SchemaInfo``
        """
        self.executor = executor
        self._schema_provider = schema_provider
        self._repositories: dict[str, Repository[Any]] = {}
        self._tables: dict[str, tuple[TableSchema, Table]] = {}
        self._lock = threading.Lock()
        self.relationships: RelationshipEngine = RelationshipEngine(self)

    def schema_info(self) -> SchemaInfo:
        return self._schema_provider()

    def get_repository(self, table_name: str) -> Repository[Any]:
        """Return the memoized repository for ``table_name``.

        Never raises; an unknown table fails when the repository is used.
        """
        with self._lock:
            repository = self._repositories.get(table_name)
            if repository is None:
                repository = Repository(table_name, self)
                self._repositories[table_name] = repository
            return repository

    def table_schema(self, table_name: str) -> TableSchema:
        """Schema of an entity table.

        Raises:
            TableNotFoundError: If the table is not a discovered entity table
        """
        info = self.schema_info()
        schema = info.table(table_name)
        if schema is None:
            raise TableNotFoundError(table_name, info.table_names())
        return schema

    def junction_schema(self, table_name: str) -> TableSchema:
        info = self.schema_info()
        for schema in info.junction_tables:
            if schema.name == table_name:
                return schema
        raise TableNotFoundError(table_name, [t.name for t in info.junction_tables])

    def sa_table(self, table_name: str, junction: bool = False) -> Table:
        """SQLAlchemy table for an entity (or junction) table.

        Rebuilt whenever discovery produced a new schema for it.
        """
        schema = self.junction_schema(table_name) if junction else self.table_schema(table_name)
        with self._lock:
            cached = self._tables.get(table_name)
            if cached is not None and cached[0] == schema:
                return cached[1]
            table = build_table(schema)
            self._tables[table_name] = (schema, table)
            return table

    def prune(self, table_names: Iterable[str]) -> None:
        """Forget repositories and tables not in ``table_names``."""
        keep = set(table_names)
        with self._lock:
            for name in [n for n in self._repositories if n not in keep]:
                del self._repositories[name]
                logger.debug(f"Dropped repository for removed table '{name}'")
            for name in [n for n in self._tables if n not in keep]:
                del self._tables[name]

    @property
    def repositories(self) -> dict[str, Repository[Any]]:
        """Snapshot of memoized repositories."""
        with self._lock:
            return dict(self._repositories)
