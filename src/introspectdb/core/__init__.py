"""Core components for IntrospectDB."""

from introspectdb.core.connection import DatabaseConnection
from introspectdb.core.types import (
    ColumnSchema,
    EngineConfig,
    ForeignKeyRef,
    IndexSchema,
    RelationshipDescriptor,
    RelationshipKind,
    SchemaInfo,
    TableSchema,
    ViewSchema,
)

__all__ = [
    "DatabaseConnection",
    "EngineConfig",
    "ColumnSchema",
    "ForeignKeyRef",
    "IndexSchema",
    "TableSchema",
    "ViewSchema",
    "RelationshipKind",
    "RelationshipDescriptor",
    "SchemaInfo",
]
