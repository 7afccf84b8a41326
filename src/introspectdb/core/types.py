"""Core types and configuration models for IntrospectDB.

All types are pydantic models so they are JSON-serializable via
``model_dump()`` and compare by value, which makes repeated discovery runs
directly comparable.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field


class RelationshipKind(StrEnum):
    """Relationship kinds inferred from foreign keys."""

    MANY_TO_ONE = "many_to_one"  # e.g., posts -> users
    ONE_TO_MANY = "one_to_many"  # e.g., users -> posts
    MANY_TO_MANY = "many_to_many"  # e.g., posts <-> tags through post_tags

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid relationship kind values."""
        return [k.value for k in cls]

    @property
    def is_to_many(self) -> bool:
        return self is not RelationshipKind.MANY_TO_ONE


class OnDeleteActionType(StrEnum):
    """Referential actions reported by ``PRAGMA foreign_key_list``."""

    CASCADE = "CASCADE"
    SET_NULL = "SET NULL"
    SET_DEFAULT = "SET DEFAULT"
    RESTRICT = "RESTRICT"
    NO_ACTION = "NO ACTION"

    @classmethod
    def values(cls) -> list[str]:
        """Return all valid action values."""
        return [a.value for a in cls]


class ColumnSchema(BaseModel):
    """A discovered column."""

    name: str
    type: str = Field(default="", description="Declared SQL type as written in the DDL")
    nullable: bool = True
    default: str | None = None
    auto_increment: bool = False
    primary_key: int = Field(default=0, description="1-based position in the PK, 0 if not a PK")
    unique: bool = False
    position: int = 0

    model_config = {"frozen": True}

    @property
    def logical_type(self) -> str:
        """Coarse type family derived from SQLite type affinity rules."""
        declared = self.type.upper()
        if "INT" in declared:
            return "integer"
        if any(token in declared for token in ("CHAR", "CLOB", "TEXT")):
            return "text"
        if "BOOL" in declared:
            return "boolean"
        if "DATETIME" in declared or "TIMESTAMP" in declared:
            return "datetime"
        if "DATE" in declared:
            return "date"
        if any(token in declared for token in ("REAL", "FLOA", "DOUB")):
            return "real"
        if "BLOB" in declared or not declared:
            return "blob"
        return "numeric"


class ForeignKeyRef(BaseModel):
    """A single-column foreign key reference."""

    column: str
    target_table: str
    target_column: str
    on_delete: str = OnDeleteActionType.NO_ACTION.value
    on_update: str = OnDeleteActionType.NO_ACTION.value
    constraint_id: int = 0

    model_config = {"frozen": True}


class IndexSchema(BaseModel):
    """A discovered index."""

    name: str
    columns: list[str] = Field(default_factory=list)
    unique: bool = False
    origin: Literal["c", "u", "pk"] = "c"

    model_config = {"frozen": True}


class TableSchema(BaseModel):
    """A discovered table."""

    name: str
    columns: list[ColumnSchema] = Field(default_factory=list)
    primary_key: list[str] = Field(default_factory=list)
    foreign_keys: list[ForeignKeyRef] = Field(default_factory=list)
    indexes: list[IndexSchema] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    def column(self, name: str) -> ColumnSchema | None:
        """Return the column named ``name`` or None."""
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def is_junction(self) -> bool:
        """Whether this is a pure junction table.

        Exactly two foreign keys and a composite primary key made of exactly
        those two columns.
        """
        if len(self.foreign_keys) != 2 or len(self.primary_key) != 2:
            return False
        return {fk.column for fk in self.foreign_keys} == set(self.primary_key)


class RelationshipDescriptor(BaseModel):
    """A relationship inferred from foreign keys.

    ``source_key`` is the column on ``source_table`` whose value is matched;
    ``target_key`` is the column on ``target_table`` it is matched against.
    For many-to-many, ``through_source_key`` / ``through_target_key`` are the
    junction columns pointing at source and target respectively.
    """

    name: str
    kind: RelationshipKind
    source_table: str
    source_key: str
    target_table: str
    target_key: str
    through_table: str | None = None
    through_source_key: str | None = None
    through_target_key: str | None = None
    fk_column: str | None = Field(
        default=None, description="FK column on the referencing table (None for many-to-many)"
    )

    model_config = {"frozen": True}

    @property
    def alias_key(self) -> str:
        """Stable key used to configure an explicit name for this relationship."""
        if self.kind is RelationshipKind.MANY_TO_ONE:
            return f"{self.source_table}.{self.fk_column}"
        if self.kind is RelationshipKind.ONE_TO_MANY:
            return f"{self.source_table}.{self.target_table}.{self.fk_column}"
        return f"{self.source_table}.{self.through_table}.{self.target_table}"


class ViewSchema(BaseModel):
    """A discovered view. Views are reported but get no repository."""

    name: str
    definition: str = ""
    columns: list[ColumnSchema] = Field(default_factory=list)
    depends_on: list[str] = Field(
        default_factory=list, description="Tables and views referenced by the definition"
    )

    model_config = {"frozen": True}

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]


class SchemaInfo(BaseModel):
    """Read-only snapshot of discovery state."""

    tables: list[TableSchema] = Field(default_factory=list)
    relationships: list[RelationshipDescriptor] = Field(default_factory=list)
    junction_tables: list[TableSchema] = Field(default_factory=list)
    views: list[ViewSchema] = Field(default_factory=list)
    schema_version: int = 0

    model_config = {"frozen": True}

    def table(self, name: str) -> TableSchema | None:
        """Return the entity table named ``name`` or None."""
        for table in self.tables:
            if table.name == name:
                return table
        return None

    def view(self, name: str) -> ViewSchema | None:
        for view in self.views:
            if view.name == name:
                return view
        return None

    def table_names(self) -> list[str]:
        return [t.name for t in self.tables]

    def relationships_for(self, table_name: str) -> list[RelationshipDescriptor]:
        """Relationships whose source is ``table_name``."""
        return [r for r in self.relationships if r.source_table == table_name]


# === Repository Types ===


class Pagination(BaseModel):
    """Position of one page within the full result."""

    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class Page(BaseModel):
    """One page of rows plus its pagination block."""

    data: list[dict[str, Any]] = Field(default_factory=list)
    pagination: Pagination


# === Cache Types ===


class CacheConfig(BaseModel):
    """Cache limits and defaults."""

    max_size: int = Field(default=1000, ge=1)
    ttl: float = Field(default=300.0, gt=0, description="Default TTL in seconds")
    strategy: Literal["lru", "fifo"] = "lru"


class CacheStats(BaseModel):
    """Snapshot of cache counters."""

    size: int
    max_size: int
    hits: int
    misses: int
    evictions: int
    expirations: int
    hit_rate: float


# === Query Metrics Types ===


class QueryMetrics(BaseModel):
    """Metrics from a single statement execution."""

    execution_time_ms: float
    row_count: int
    query_type: str  # SELECT, INSERT, UPDATE, DELETE, DDL, OTHER
    timestamp: datetime | None = None
    succeeded: bool = True


class MetricsSummary(BaseModel):
    """Aggregated statement metrics."""

    total_queries: int = 0
    failed_queries: int = 0
    avg_execution_time_ms: float = 0.0
    max_execution_time_ms: float = 0.0
    slow_queries: int = 0
    by_type: dict[str, int] = Field(default_factory=dict)


# === Migration Types ===


class MigrationConfig(BaseModel):
    """Migration manager settings, validated on construction and update."""

    migrations_directory: str = "./migrations"
    migration_timeout: float = Field(default=30.0, gt=0, description="Seconds")
    max_concurrent_migrations: int = Field(default=3, ge=1)


class MigrationFile(BaseModel):
    """A migration discovered on disk."""

    name: str
    path: str
    sequence: int
    up_sql: str
    down_sql: str | None = None
    checksum: str


class MigrationRecord(BaseModel):
    """A row of the migration ledger."""

    id: int
    name: str
    applied_at: datetime | None = None
    checksum: str


class MigrationStatus(BaseModel):
    """Ledger versus files on disk."""

    applied: list[str] = Field(default_factory=list)
    pending: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    last_applied: str | None = None
    last_applied_at: datetime | None = None


class MigrationResult(BaseModel):
    """Outcome of a successful ``apply()`` call."""

    applied: list[str] = Field(default_factory=list)
    duration_seconds: float = 0.0


# === Engine Configuration ===


class EngineConfig(BaseModel):
    """Settings for an IntrospectDB instance."""

    url: str
    echo: bool = False
    cache_max_size: int = Field(default=1000, ge=1)
    cache_ttl: float = Field(default=300.0, gt=0)
    cache_strategy: Literal["lru", "fifo"] = "lru"
    discovery_cache_ttl: float = Field(default=3600.0, gt=0)
    required_tables: list[str] = Field(default_factory=list)
    exclude_tables: list[str] = Field(default_factory=list)
    relation_aliases: dict[str, str] = Field(default_factory=dict)
    migrations_directory: str | None = None
    migration_timeout: float = Field(default=30.0, gt=0)
    max_concurrent_migrations: int = Field(default=3, ge=1)
    collect_metrics: bool = True
    slow_query_threshold_ms: float = Field(default=100.0, gt=0)

    def cache_config(self) -> CacheConfig:
        return CacheConfig(
            max_size=self.cache_max_size, ttl=self.cache_ttl, strategy=self.cache_strategy
        )

    def migration_config(self) -> MigrationConfig:
        return MigrationConfig(
            migrations_directory=self.migrations_directory or "./migrations",
            migration_timeout=self.migration_timeout,
            max_concurrent_migrations=self.max_concurrent_migrations,
        )


Entity = dict[str, Any]
