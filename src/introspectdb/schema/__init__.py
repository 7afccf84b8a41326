"""Schema discovery, relationship inference and migrations for IntrospectDB."""

from introspectdb.schema.discovery import SchemaDiscoverer
from introspectdb.schema.migrations import MigrationManager
from introspectdb.schema.models import LEDGER_TABLE, MigrationLedger
from introspectdb.schema.relationships import RelationshipInferencer

__all__ = [
    "SchemaDiscoverer",
    "RelationshipInferencer",
    "MigrationManager",
    "MigrationLedger",
    "LEDGER_TABLE",
]
