"""Data access for discovered tables: repositories and relationship loading."""

from introspectdb.data.relationships import RelationshipEngine
from introspectdb.data.repository import Repository, RepositoryFactory

__all__ = [
    "Repository",
    "RepositoryFactory",
    "RelationshipEngine",
]
