"""Escape-hatch query builder for joins, aggregates and CTEs.

Builders are immutable: every method returns a new builder, so a base query
can be shared and refined. Statements are compiled by SQLAlchemy Core and
executed through the engine's executor, with every value bound.

Example:
    rows = (
        db.query("users")
        .left_join("posts")
        .select("users.id", "users.name")
        .aggregate("count", "posts.id", "post_count")
        .group_by("users.id")
        .having("post_count", "gte", 2)
        .order_by("-post_count")
        .all()
    )
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from sqlalchemy import ColumnElement, FromClause, Label, and_, func, select
from sqlalchemy.dialects import sqlite
from sqlalchemy.exc import SQLAlchemyError

from introspectdb.data.coercion import to_db_value
from introspectdb.exceptions import ColumnNotFoundError, QueryError, TableNotFoundError
from introspectdb.query.errors import wrap_database_error

if TYPE_CHECKING:
    from sqlalchemy import Select

    from introspectdb.data.repository import RepositoryFactory

_OPERATORS: dict[str, Callable[[ColumnElement[Any], Any], ColumnElement[bool]]] = {
    "eq": lambda col, value: col.is_(None) if value is None else col == value,
    "ne": lambda col, value: col.is_not(None) if value is None else col != value,
    "gt": lambda col, value: col > value,
    "gte": lambda col, value: col >= value,
    "lt": lambda col, value: col < value,
    "lte": lambda col, value: col <= value,
    "like": lambda col, value: col.like(value),
    "in": lambda col, value: col.in_(list(value)),
    "not_in": lambda col, value: col.not_in(list(value)),
    "is_null": lambda col, _: col.is_(None),
    "not_null": lambda col, _: col.is_not(None),
}
_OPERATOR_ALIASES = {
    "=": "eq",
    "==": "eq",
    "!=": "ne",
    "<>": "ne",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
}
_AGGREGATES = {"count", "sum", "avg", "min", "max"}


def _operator(op: str) -> Callable[[ColumnElement[Any], Any], ColumnElement[bool]]:
    key = _OPERATOR_ALIASES.get(op, op.lower())
    if key not in _OPERATORS:
        raise QueryError(
            f"Unknown operator '{op}'. Use one of: {', '.join(_OPERATORS)}",
            {"operator": op},
        )
    return _OPERATORS[key]


def _bind(value: Any) -> Any:
    if isinstance(value, list | tuple | set | frozenset):
        return [to_db_value(v) for v in value]
    return to_db_value(value)


@dataclass(frozen=True)
class _Join:
    table: str
    on: tuple[str, str] | None
    outer: bool


@dataclass(frozen=True)
class _Aggregate:
    function: str
    column: str
    alias: str


@dataclass(frozen=True)
class _QueryState:
    table: str
    columns: tuple[str, ...] = ()
    aggregates: tuple[_Aggregate, ...] = ()
    joins: tuple[_Join, ...] = ()
    conditions: tuple[tuple[str, str, Any], ...] = ()
    group_by: tuple[str, ...] = ()
    having: tuple[tuple[str, str, Any], ...] = ()
    order_by: tuple[str, ...] = ()
    limit: int | None = None
    offset: int | None = None
    distinct: bool = False
    ctes: tuple[tuple[str, QueryBuilder], ...] = ()


class QueryBuilder:
    """Fluent SELECT builder over discovered tables.

    Columns are named ``"column"`` (searched in the base table first, then in
    joined tables) or ``"table.column"``.
    """

    def __init__(
        self,
        factory: RepositoryFactory,
        table: str,
        state: _QueryState | None = None,
    ) -> None:
        self._factory = factory
        self._state = state or _QueryState(table=table)

    def _with(self, **changes: Any) -> QueryBuilder:
        return QueryBuilder(self._factory, self._state.table, replace(self._state, **changes))

    # === Building ===

    def select(self, *columns: str) -> QueryBuilder:
        """Columns to return; defaults to every column of the base table."""
        return self._with(columns=self._state.columns + columns)

    def distinct(self) -> QueryBuilder:
        return self._with(distinct=True)

    def join(
        self, table: str, on: tuple[str, str] | None = None, *, left: bool = False
    ) -> QueryBuilder:
        """Join another table.

        Args:
            table: Table (or CTE) name
            on: ``("users.id", "posts.user_id")``; inferred from foreign keys if omitted
            left: LEFT OUTER JOIN instead of INNER JOIN
        """
        return self._with(joins=self._state.joins + (_Join(table, on, left),))

    def left_join(self, table: str, on: tuple[str, str] | None = None) -> QueryBuilder:
        return self.join(table, on, left=True)

    def where(self, column: str, op: str = "eq", value: Any = None) -> QueryBuilder:
        """Add a condition; conditions are ANDed.

        Operators: eq, ne, gt, gte, lt, lte, like, in, not_in, is_null, not_null
        (or the symbols ``= != > >= < <=``).
        """
        _operator(op)
        return self._with(conditions=self._state.conditions + ((column, op, value),))

    def group_by(self, *columns: str) -> QueryBuilder:
        return self._with(group_by=self._state.group_by + columns)

    def aggregate(self, function: str, column: str = "*", alias: str | None = None) -> QueryBuilder:
        """Add ``count``, ``sum``, ``avg``, ``min`` or ``max`` of a column."""
        function = function.lower()
        if function not in _AGGREGATES:
            raise QueryError(
                f"Unknown aggregate '{function}'. Use one of: {', '.join(sorted(_AGGREGATES))}",
                {"aggregate": function},
            )
        label = alias or (function if column == "*" else f"{function}_{column.split('.')[-1]}")
        aggregate = _Aggregate(function, column, label)
        return self._with(aggregates=self._state.aggregates + (aggregate,))

    def having(self, alias: str, op: str, value: Any = None) -> QueryBuilder:
        """Filter groups by an aggregate added with ``aggregate()``."""
        _operator(op)
        return self._with(having=self._state.having + ((alias, op, value),))

    def order_by(self, *columns: str) -> QueryBuilder:
        """Sort by columns or aggregate aliases; prefix with ``-`` for descending."""
        return self._with(order_by=self._state.order_by + columns)

    def limit(self, count: int) -> QueryBuilder:
        return self._with(limit=count)

    def offset(self, count: int) -> QueryBuilder:
        return self._with(offset=count)

    def with_cte(self, name: str, builder: QueryBuilder) -> QueryBuilder:
        """Make ``builder`` available as a common table expression called ``name``."""
        return self._with(ctes=self._state.ctes + ((name, builder),))

    # === Compilation ===

    def build(self) -> Select[Any]:
        """Compile the builder into a SQLAlchemy ``Select``."""
        state = self._state
        sources: dict[str, FromClause] = {}
        for name, builder in state.ctes:
            sources[name] = builder.build().cte(name)

        base = self._source(state.table, sources)
        sources[state.table] = base
        from_clause: FromClause = base
        for join in state.joins:
            target = self._source(join.table, sources)
            condition = self._join_condition(join, target, sources)
            sources[join.table] = target
            from_clause = from_clause.join(target, condition, isouter=join.outer)

        labels: dict[str, Label[Any]] = {}
        for agg in state.aggregates:
            fn = getattr(func, agg.function)
            if agg.column == "*" and agg.function == "count":
                expr = func.count()
            else:
                expr = fn(self._column(agg.column, sources))
            labels[agg.alias] = expr.label(agg.alias)

        columns: list[Any] = [self._column(c, sources) for c in state.columns]
        if not columns and labels:
            columns = [self._column(c, sources) for c in state.group_by]
        if not columns and not labels:
            columns = list(base.c)
        stmt = select(*columns, *labels.values()).select_from(from_clause)

        if state.conditions:
            stmt = stmt.where(
                and_(
                    *(
                        _operator(op)(self._column(c, sources), _bind(v))
                        for c, op, v in state.conditions
                    )
                )
            )
        if state.group_by:
            stmt = stmt.group_by(*(self._column(c, sources) for c in state.group_by))
        for alias, op, value in state.having:
            if alias not in labels:
                raise QueryError(
                    f"having() refers to '{alias}', which is not an aggregate alias",
                    {"alias": alias, "aggregates": list(labels)},
                )
            stmt = stmt.having(_operator(op)(labels[alias].element, _bind(value)))
        for name in state.order_by:
            descending = name.startswith("-")
            key = name[1:] if descending else name
            target_expr: Any = labels[key] if key in labels else self._column(key, sources)
            stmt = stmt.order_by(target_expr.desc() if descending else target_expr.asc())
        if state.distinct:
            stmt = stmt.distinct()
        if state.limit is not None:
            stmt = stmt.limit(state.limit)
        if state.offset is not None:
            stmt = stmt.offset(state.offset)
        return stmt

    def to_sql(self) -> str:
        """SQL text with ``?`` placeholders; values are never inlined."""
        return str(self.build().compile(dialect=sqlite.dialect()))

    def _source(self, name: str, sources: dict[str, FromClause]) -> FromClause:
        if name in sources:
            return sources[name]
        try:
            return self._factory.sa_table(name)
        except TableNotFoundError:
            return self._factory.sa_table(name, junction=True)

    def _column(self, name: str, sources: dict[str, FromClause]) -> ColumnElement[Any]:
        if "." in name:
            table_name, column_name = name.split(".", 1)
            source = sources.get(table_name)
            if source is None:
                raise TableNotFoundError(table_name, list(sources))
            if column_name not in source.c:
                raise ColumnNotFoundError(column_name, table_name, list(source.c.keys()))
            return source.c[column_name]

        base = sources[self._state.table]
        if name in base.c:
            return base.c[name]
        for source in sources.values():
            if name in source.c:
                return source.c[name]
        raise ColumnNotFoundError(name, self._state.table, list(base.c.keys()))

    def _join_condition(
        self, join: _Join, target: FromClause, sources: dict[str, FromClause]
    ) -> ColumnElement[bool]:
        if join.on is not None:
            left, right = join.on
            joined = {**sources, join.table: target}
            return self._column(left, joined) == self._column(right, joined)

        for rel in self._factory.schema_info().relationships:
            if rel.through_table is not None:
                continue
            if rel.target_table == join.table and rel.source_table in sources:
                return sources[rel.source_table].c[rel.source_key] == target.c[rel.target_key]
        raise QueryError(
            f"No foreign key links '{join.table}' to {', '.join(sources)}; pass on=(left, right)",
            {"table_name": join.table},
        )

    # === Execution ===

    def all(self) -> list[dict[str, Any]]:
        """Run the query and return every row."""
        return self._run(self.build())

    def first(self) -> dict[str, Any] | None:
        rows = self._run(self.build().limit(1))
        return rows[0] if rows else None

    def scalar(self) -> Any:
        """First column of the first row, or None."""
        row = self.first()
        return next(iter(row.values()), None) if row else None

    def count(self) -> int:
        """Number of rows the query would return."""
        stmt = select(func.count()).select_from(self.build().subquery())
        rows = self._run(stmt)
        return int(next(iter(rows[0].values()))) if rows else 0

    def _run(self, stmt: Any) -> list[dict[str, Any]]:
        try:
            return self._factory.executor.execute(stmt).rows
        except SQLAlchemyError as e:
            raise wrap_database_error(e, "query", self._state.table) from e

    def __repr__(self) -> str:
        return f"<QueryBuilder(table='{self._state.table}')>"
