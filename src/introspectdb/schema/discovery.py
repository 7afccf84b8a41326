"""Schema discovery for SQLite databases.

Reads table, column, foreign key and index metadata through SQLite's
table-valued PRAGMA functions (``pragma_table_info(:name)`` and friends) so
that even table names travel as bound parameters.
"""

from __future__ import annotations

import fnmatch
import glob
import logging
from collections import defaultdict
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import sqlglot
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlglot import exp
from sqlglot.errors import SqlglotError

from introspectdb.cache.manager import MISSING
from introspectdb.core.types import (
    ColumnSchema,
    ForeignKeyRef,
    IndexSchema,
    SchemaInfo,
    TableSchema,
    ViewSchema,
)
from introspectdb.exceptions import SchemaDiscoveryError
from introspectdb.schema.models import LEDGER_TABLE
from introspectdb.schema.relationships import RelationshipInferencer

if TYPE_CHECKING:
    from introspectdb.cache.manager import CacheManager
    from introspectdb.core.connection import DatabaseConnection
    from introspectdb.query.executor import QueryExecutor

logger = logging.getLogger(__name__)

_LIST_TABLES = text(
    "SELECT name FROM sqlite_master "
    "WHERE type = 'table' AND substr(name, 1, 7) != 'sqlite_' "
    "ORDER BY name"
)
_TABLE_INFO = text(
    'SELECT cid, name, type, "notnull", dflt_value, pk '
    "FROM pragma_table_info(:table) ORDER BY cid"
)
_FOREIGN_KEYS = text(
    'SELECT id, seq, "table", "from", "to", on_update, on_delete '
    "FROM pragma_foreign_key_list(:table) ORDER BY id, seq"
)
_INDEX_LIST = text(
    'SELECT name, "unique", origin FROM pragma_index_list(:table) ORDER BY name'
)
_INDEX_INFO = text("SELECT seqno, name FROM pragma_index_info(:index) ORDER BY seqno")
_LIST_VIEWS = text("SELECT name, sql FROM sqlite_master WHERE type = 'view' ORDER BY name")
_PRIMARY_KEY = text("SELECT name FROM pragma_table_info(:table) WHERE pk > 0 ORDER BY pk")
_SCHEMA_VERSION = text("PRAGMA schema_version")


def view_dependencies(definition: str, view_name: str = "") -> list[str]:
    """Tables and views a ``CREATE VIEW`` statement reads from, sorted.

    CTE names are not dependencies. Unparseable definitions yield ``[]``.
    """
    try:
        tree = sqlglot.parse_one(definition, read="sqlite")
    except SqlglotError as e:
        logger.debug(f"Cannot parse definition of view '{view_name}': {e}")
        return []
    if tree is None:
        return []
    ctes = {cte.alias for cte in tree.find_all(exp.CTE)}
    names = {table.name for table in tree.find_all(exp.Table)}
    return sorted(n for n in names if n and n != view_name and n not in ctes)


class SchemaDiscoverer:
    """Introspects a SQLite database into a ``SchemaInfo`` snapshot.

    Results are memoized in the shared cache under
    ``schema:<connection identity>:<schema_version>``. SQLite bumps
    ``schema_version`` on every DDL statement, so a stale snapshot is never
    served after a schema change even without ``invalidate()``.
    """

    CACHE_PREFIX = "schema"

    def __init__(
        self,
        connection: DatabaseConnection,
        executor: QueryExecutor,
        cache: CacheManager | None = None,
        *,
        exclude_tables: Iterable[str] = (),
        relation_aliases: dict[str, str] | None = None,
        cache_ttl: float = 3600.0,
        ledger_table: str = LEDGER_TABLE,
    ) -> None:
        """Initialize the discoverer.

        Args:
            connection: Database connection whose identity namespaces cache keys
            executor: Executor used for every introspection statement
            cache: Optional cache for memoizing snapshots
            exclude_tables: Table names or glob patterns to ignore
            relation_aliases: Explicit relationship names by alias key
            cache_ttl: Seconds a memoized snapshot lives
            ledger_table: Name of the migration ledger, always excluded
        """
        self._connection = connection
        self._executor = executor
        self._cache = cache
        self._exclude = [ledger_table, *exclude_tables]
        self._inferencer = RelationshipInferencer(relation_aliases)
        self._cache_ttl = cache_ttl

    def cache_key(self, schema_version: int) -> str:
        return f"{self.CACHE_PREFIX}:{self._connection.identity}:{schema_version}"

    def invalidate(self) -> int:
        """Drop every memoized snapshot for this connection.

        Returns:
            Number of cache entries removed
        """
        if self._cache is None:
            return 0
        identity = glob.escape(self._connection.identity)
        return self._cache.delete_pattern(f"{self.CACHE_PREFIX}:{identity}:*")

    def discover(
        self,
        required_tables: Iterable[str] | None = None,
        use_cache: bool = True,
    ) -> SchemaInfo:
        """Discover tables and infer relationships.

        An empty database yields an empty ``SchemaInfo``.

        Args:
            required_tables: Tables that must exist afterwards
            use_cache: Whether to consult and fill the cache

        Returns:
            Snapshot of the current schema

        Raises:
            SchemaDiscoveryError: If tables cannot be enumerated, relationship
                names are ambiguous, or required tables are missing
        """
        version = self._schema_version()
        key = self.cache_key(version)

        info = MISSING
        if use_cache and self._cache is not None:
            info = self._cache.get(key)

        if info is MISSING:
            info = self._discover_uncached(version)
            if self._cache is not None:
                self._cache.set(key, info, ttl=self._cache_ttl)
        else:
            logger.debug(f"Schema snapshot served from cache (version {version})")

        self._check_required(info, required_tables)
        return info

    def list_tables(self) -> list[str]:
        """Names of user tables, minus internal and excluded ones."""
        try:
            rows = self._executor.execute(_LIST_TABLES).rows
        except SQLAlchemyError as e:
            orig = getattr(e, "orig", None) or e
            raise SchemaDiscoveryError(f"Could not enumerate tables: {orig}") from e
        return [r["name"] for r in rows if not self._is_excluded(r["name"])]

    def introspect_table(self, name: str) -> TableSchema:
        """Read columns, primary key, foreign keys and indexes of one table."""
        params = {"table": name}
        column_rows = self._executor.execute(_TABLE_INFO, params).rows
        indexes = self._read_indexes(name)
        unique_columns = {ix.columns[0] for ix in indexes if ix.unique and len(ix.columns) == 1}

        pk_rows = sorted((r for r in column_rows if r["pk"]), key=lambda r: r["pk"])
        primary_key = [r["name"] for r in pk_rows]
        rowid_alias = len(pk_rows) == 1 and (pk_rows[0]["type"] or "").upper() == "INTEGER"

        columns = [
            ColumnSchema(
                name=r["name"],
                type=r["type"] or "",
                nullable=not r["notnull"] and not (r["pk"] and rowid_alias),
                default=r["dflt_value"],
                auto_increment=bool(r["pk"]) and rowid_alias,
                primary_key=int(r["pk"] or 0),
                unique=r["name"] in unique_columns or (len(pk_rows) == 1 and bool(r["pk"])),
                position=int(r["cid"]),
            )
            for r in column_rows
        ]

        return TableSchema(
            name=name,
            columns=columns,
            primary_key=primary_key,
            foreign_keys=self._read_foreign_keys(name),
            indexes=indexes,
        )

    def discover_views(self) -> list[ViewSchema]:
        """Read every non-excluded view with its columns and referenced tables.

        A view whose columns cannot be resolved (it references a dropped
        table, for instance) is skipped with a warning.
        """
        try:
            rows = self._executor.execute(_LIST_VIEWS).rows
        except SQLAlchemyError as e:
            orig = getattr(e, "orig", None) or e
            raise SchemaDiscoveryError(f"Could not enumerate views: {orig}") from e

        views = []
        for row in rows:
            name = row["name"]
            if self._is_excluded(name):
                continue
            try:
                column_rows = self._executor.execute(_TABLE_INFO, {"table": name}).rows
            except SQLAlchemyError as e:
                orig = getattr(e, "orig", None) or e
                logger.warning(f"Skipping view '{name}': {orig}")
                continue
            definition = row["sql"] or ""
            views.append(
                ViewSchema(
                    name=name,
                    definition=definition,
                    columns=[
                        ColumnSchema(name=r["name"], type=r["type"] or "", position=int(r["cid"]))
                        for r in column_rows
                    ],
                    depends_on=view_dependencies(definition, name),
                )
            )
        return views

    # === Internals ===

    def _schema_version(self) -> int:
        try:
            return int(self._executor.execute(_SCHEMA_VERSION).scalar() or 0)
        except SQLAlchemyError as e:
            orig = getattr(e, "orig", None) or e
            raise SchemaDiscoveryError(f"Could not read schema version: {orig}") from e

    def _is_excluded(self, name: str) -> bool:
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self._exclude)

    def _discover_uncached(self, version: int) -> SchemaInfo:
        entities: list[TableSchema] = []
        junctions: list[TableSchema] = []

        for name in self.list_tables():
            try:
                table = self.introspect_table(name)
            except (SQLAlchemyError, ValueError) as e:
                orig = getattr(e, "orig", None) or e
                logger.warning(f"Skipping table '{name}': introspection failed: {orig}")
                continue

            if table.is_junction:
                junctions.append(table)
            elif not table.primary_key:
                logger.warning(f"Skipping table '{name}': no primary key")
            else:
                entities.append(table)

        relationships = self._inferencer.infer([*entities, *junctions])
        views = self.discover_views()
        logger.info(
            f"Discovered {len(entities)} tables, {len(junctions)} junction tables, "
            f"{len(views)} views, {len(relationships)} relationships"
        )
        return SchemaInfo(
            tables=entities,
            relationships=relationships,
            junction_tables=junctions,
            views=views,
            schema_version=version,
        )

    def _read_foreign_keys(self, table: str) -> list[ForeignKeyRef]:
        rows = self._executor.execute(_FOREIGN_KEYS, {"table": table}).rows
        grouped: dict[int, list[dict[str, Any]]] = defaultdict(list)
        for row in rows:
            grouped[row["id"]].append(row)

        refs = []
        for constraint_id, parts in sorted(grouped.items()):
            if len(parts) > 1:
                cols = ", ".join(p["from"] for p in parts)
                logger.warning(
                    f"Ignoring composite foreign key ({cols}) on '{table}': "
                    "relationships need single-column keys"
                )
                continue
            row = parts[0]
            target_column = row["to"] or self._primary_key_of(row["table"])
            if target_column is None:
                logger.warning(
                    f"Ignoring foreign key {table}.{row['from']}: "
                    f"cannot resolve key of '{row['table']}'"
                )
                continue
            refs.append(
                ForeignKeyRef(
                    column=row["from"],
                    target_table=row["table"],
                    target_column=target_column,
                    on_delete=row["on_delete"] or "NO ACTION",
                    on_update=row["on_update"] or "NO ACTION",
                    constraint_id=constraint_id,
                )
            )
        return refs

    def _primary_key_of(self, table: str) -> str | None:
        rows = self._executor.execute(_PRIMARY_KEY, {"table": table}).rows
        return rows[0]["name"] if len(rows) == 1 else None

    def _read_indexes(self, table: str) -> list[IndexSchema]:
        indexes = []
        for row in self._executor.execute(_INDEX_LIST, {"table": table}).rows:
            info = self._executor.execute(_INDEX_INFO, {"index": row["name"]}).rows
            indexes.append(
                IndexSchema(
                    name=row["name"],
                    # Expression index parts have no column name.
                    columns=[r["name"] for r in info if r["name"] is not None],
                    unique=bool(row["unique"]),
                    origin=row["origin"],
                )
            )
        return indexes

    def _check_required(self, info: SchemaInfo, required: Iterable[str] | None) -> None:
        if not required:
            return
        present = set(info.table_names()) | {t.name for t in info.junction_tables}
        missing = [name for name in required if name not in present]
        if missing:
            raise SchemaDiscoveryError(
                f"Required tables not found: {', '.join(missing)}. "
                "Create them or apply pending migrations before initializing.",
                missing_tables=missing,
            )
