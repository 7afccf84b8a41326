"""IntrospectDB - Schema-aware data access for existing SQLite databases.

Point it at a SQLite database and it discovers tables, keys and foreign
keys, infers relationships, and hands out repositories with CRUD and
N+1-free relationship loading. No mapping code is written by hand.

Example:
    from introspectdb import IntrospectDB

    with IntrospectDB("sqlite:///blog.db") as db:
        users = db.get_repository("users")
        alice = users.create({"name": "Alice", "email": "alice@example.com"})

        # One query for the row, one per relationship
        alice = users.find_with_relations(alice["id"], ["posts"])

        # One query per relationship, however many rows
        everyone = users.load_relationships(users.find_all(), ["posts"])

        # Escape hatch for joins and aggregates
        counts = (
            db.query("users")
            .left_join("posts")
            .select("users.name")
            .aggregate("count", "posts.id", "post_count")
            .group_by("users.id")
            .all()
        )

        # Migrations
        db.migrations.initialize("./migrations")
        db.migrations.apply()
"""

from introspectdb.cache import MISSING, CacheManager
from introspectdb.core.engine import IntrospectDB
from introspectdb.core.types import (
    CacheConfig,
    CacheStats,
    ColumnSchema,
    EngineConfig,
    Entity,
    ForeignKeyRef,
    IndexSchema,
    MetricsSummary,
    MigrationConfig,
    MigrationFile,
    MigrationRecord,
    MigrationResult,
    MigrationStatus,
    Page,
    Pagination,
    OnDeleteActionType,
    QueryMetrics,
    RelationshipDescriptor,
    RelationshipKind,
    SchemaInfo,
    TableSchema,
    ViewSchema,
)
from introspectdb.data import Repository
from introspectdb.exceptions import (
    ColumnNotFoundError,
    ConfigurationError,
    ConnectionError,
    ConstraintViolationError,
    IntrospectDBError,
    MigrationError,
    MigrationTimeoutError,
    QueryError,
    RecordNotFoundError,
    RelationshipAmbiguityError,
    SchemaDiscoveryError,
    TableNotFoundError,
)
from introspectdb.query import QueryBuilder
from introspectdb.schema import MigrationManager

__version__ = "0.1.0"

__all__ = [
    # Main classes
    "IntrospectDB",
    "Repository",
    "QueryBuilder",
    "CacheManager",
    "MigrationManager",
    "MISSING",
    # Types
    "EngineConfig",
    "CacheConfig",
    "MigrationConfig",
    "Page",
    "Pagination",
    "SchemaInfo",
    "TableSchema",
    "ViewSchema",
    "ColumnSchema",
    "ForeignKeyRef",
    "IndexSchema",
    "RelationshipKind",
    "RelationshipDescriptor",
    "OnDeleteActionType",
    "Entity",
    "CacheStats",
    "QueryMetrics",
    "MetricsSummary",
    "MigrationFile",
    "MigrationRecord",
    "MigrationStatus",
    "MigrationResult",
    # Exceptions
    "IntrospectDBError",
    "ConnectionError",
    "ConfigurationError",
    "SchemaDiscoveryError",
    "RelationshipAmbiguityError",
    "TableNotFoundError",
    "ColumnNotFoundError",
    "RecordNotFoundError",
    "ConstraintViolationError",
    "QueryError",
    "MigrationError",
    "MigrationTimeoutError",
]
