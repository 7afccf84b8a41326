"""Main IntrospectDB engine."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from introspectdb.cache.manager import CacheManager
from introspectdb.core.connection import DatabaseConnection
from introspectdb.core.types import EngineConfig, SchemaInfo
from introspectdb.data.repository import Repository, RepositoryFactory
from introspectdb.exceptions import ConfigurationError, QueryError
from introspectdb.query.builder import QueryBuilder
from introspectdb.query.errors import wrap_database_error
from introspectdb.query.executor import MetricsExecutor, QueryExecutor, SQLAlchemyExecutor
from introspectdb.query.metrics import MetricsCollector
from introspectdb.schema.discovery import SchemaDiscoverer
from introspectdb.schema.migrations import MigrationManager
from introspectdb.schema.models import LEDGER_TABLE

if TYPE_CHECKING:
    from sqlalchemy import Connection

logger = logging.getLogger(__name__)

R = TypeVar("R")


class IntrospectDB:
    """Schema-aware data access over an existing SQLite database.

    Discovers tables and foreign keys on ``initialize()`` and hands out
    repositories for every entity table. Each instance owns its connection,
    cache, metrics and migration manager; nothing is shared between
    instances.

    Example:
        with IntrospectDB("app.db") as db:
            users = db.get_repository("users")
            alice = users.create({"name": "Alice", "email": "alice@example.com"})
            with_posts = users.find_with_relations(alice["id"], ["posts"])
    """

    def __init__(self, url: str = ":memory:", config: EngineConfig | None = None, **options: Any):
        """Create an engine. Nothing is opened until ``initialize()``.

        Args:
            url: SQLite URL or file path
            config: Complete configuration; ``url`` and ``options`` are ignored if given
            **options: ``EngineConfig`` fields, e.g. ``cache_max_size=500``

        Raises:
            ConfigurationError: If an option is invalid
            ConnectionError: If the URL is not a SQLite URL
        """
        if config is None:
            try:
                config = EngineConfig(url=url, **options)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid engine configuration: {e}", options) from e
        self._config = config

        self._connection = DatabaseConnection(config.url, echo=config.echo)
        self._cache = CacheManager(config.cache_config())
        self._metrics = MetricsCollector(
            slow_query_threshold_ms=config.slow_query_threshold_ms,
            enabled=config.collect_metrics,
        )
        base = SQLAlchemyExecutor(self._connection)
        self._executor: QueryExecutor = (
            MetricsExecutor(base, self._metrics) if config.collect_metrics else base
        )
        self._discoverer = SchemaDiscoverer(
            self._connection,
            self._executor,
            self._cache,
            exclude_tables=config.exclude_tables,
            relation_aliases=config.relation_aliases,
            cache_ttl=config.discovery_cache_ttl,
            ledger_table=LEDGER_TABLE,
        )
        self._repositories = RepositoryFactory(self._executor, self.get_schema_info)
        self._migrations: MigrationManager | None = None
        self._schema: SchemaInfo | None = None

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def connection(self) -> DatabaseConnection:
        return self._connection

    @property
    def is_initialized(self) -> bool:
        return self._schema is not None

    # === Lifecycle ===

    def initialize(self) -> IntrospectDB:
        """Open the database and discover its schema.

        An empty database is a valid result.

        Returns:
            self, for chaining

        Raises:
            ConnectionError: If the database cannot be opened
            SchemaDiscoveryError: If introspection cannot complete or
                ``required_tables`` are missing
            ConfigurationError: If ``migrations_directory`` is set but unusable
        """
        self._connection.test_connection()
        if self._config.migrations_directory:
            self.migrations.initialize(self._config.migrations_directory)

        self._schema = self._discoverer.discover(required_tables=self._config.required_tables)
        logger.info(
            f"IntrospectDB initialized: {len(self._schema.tables)} tables, "
            f"{len(self._schema.relationships)} relationships"
        )
        return self

    def refresh(self) -> SchemaInfo:
        """Invalidate the discovery cache and discover again.

        Repositories for tables that no longer exist are dropped.
        """
        self._discoverer.invalidate()
        self._schema = self._discoverer.discover(
            required_tables=self._config.required_tables, use_cache=False
        )
        self._repositories.prune(self._schema.table_names())
        return self._schema

    def close(self) -> None:
        """Stop the migration worker, clear the cache and close the connection."""
        if self._migrations is not None:
            self._migrations.close()
        self._cache.close()
        self._connection.close()
        self._schema = None

    def __enter__(self) -> IntrospectDB:
        """Context manager entry."""
        return self.initialize()

    def __exit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        """Context manager exit."""
        self.close()

    # === Schema ===

    def get_schema_info(self) -> SchemaInfo:
        """Read-only snapshot of the current discovery state.

        Raises:
            ConfigurationError: If ``initialize()`` has not run
        """
        if self._schema is None:
            raise ConfigurationError("IntrospectDB is not initialized. Call initialize() first.")
        return self._schema

    def get_repository(self, table_name: str) -> Repository[Any]:
        """Repository for ``table_name``, memoized per name.

        Unknown tables are not rejected here; the repository's first
        operation raises ``TableNotFoundError``.
        """
        return self._repositories.get_repository(table_name)

    def list_tables(self) -> list[str]:
        """Names of discovered entity tables."""
        return self.get_schema_info().table_names()

    # === Transactions and raw access ===

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Run repository operations atomically.

        Commits when the block exits normally and rolls back on any exception.
        Nested blocks become savepoints.

        Example:
            with db.transaction():
                accounts.update(1, {"balance": 50})
                accounts.update(2, {"balance": 150})
        """
        with self._executor.transaction() as conn:
            yield conn

    def run_in_transaction(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> R:
        """Call ``fn`` inside ``transaction()`` and return its result."""
        with self.transaction():
            return fn(*args, **kwargs)

    def execute(self, sql: str, params: Mapping[str, Any] | None = None) -> list[dict[str, Any]]:
        """Execute raw SQL with named (``:name``) parameters.

        Returns:
            Result rows as dicts (empty for statements without rows)

        Raises:
            QueryError: If parameters are positional or execution fails
            ConstraintViolationError: If a write violates a constraint
        """
        if params is not None and not isinstance(params, Mapping):
            raise QueryError(
                "Raw SQL takes named parameters (:name) passed as a mapping",
                {"operation": "execute"},
            )
        try:
            return self._executor.execute(sql, params).rows
        except SQLAlchemyError as e:
            raise wrap_database_error(e, "execute") from e

    def query(self, table_name: str) -> QueryBuilder:
        """Start an escape-hatch query on ``table_name`` (joins, aggregates, CTEs)."""
        return QueryBuilder(self._repositories, table_name)

    # === Components ===

    @property
    def cache(self) -> CacheManager:
        """The cache shared with schema discovery; use namespaced keys."""
        return self._cache

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    @property
    def migrations(self) -> MigrationManager:
        """Migration manager; call ``migrations.initialize(directory)`` before use."""
        if self._migrations is None:
            self._migrations = MigrationManager(
                self._connection, self._config.migration_config(), executor=self._executor
            )
            self._migrations.add_listener(self._on_schema_change)
        return self._migrations

    def _on_schema_change(self, applied: list[str]) -> None:
        if self._schema is None:
            return
        logger.info(f"Re-discovering schema after migrations: {', '.join(applied)}")
        self.refresh()
