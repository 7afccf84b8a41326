"""Batch relationship loading.

For every requested relationship exactly one query is issued, whatever the
number of root rows: all root keys travel as a single JSON array parameter
(``IN (SELECT value FROM json_each(:keys))``), which also keeps clear of
SQLite's bound-variable limit. Result rows are grouped by key in memory and
attached to their owners.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from sqlalchemy import ColumnElement, bindparam, func, select
from sqlalchemy.exc import SQLAlchemyError

from introspectdb.core.types import RelationshipDescriptor, RelationshipKind
from introspectdb.data.coercion import comparison_key, to_db_value
from introspectdb.query.errors import wrap_database_error

if TYPE_CHECKING:
    from introspectdb.data.repository import RepositoryFactory

logger = logging.getLogger(__name__)

# Junction owner key carried alongside target columns in many-to-many loads.
OWNER_KEY = "__introspectdb_owner__"

_JSON_SCALARS = (str, int, float)


def _keys_filter(column: ColumnElement[Any], keys: list[Any]) -> ColumnElement[bool]:
    """``column IN (<keys>)`` using one bound parameter when possible."""
    if all(isinstance(k, _JSON_SCALARS) for k in keys):
        values = func.json_each(bindparam("relation_keys", json.dumps(keys))).table_valued("value")
        return column.in_(select(values.c.value))
    return column.in_(keys)


class RelationshipEngine:
    """Resolves relationships for rows of one table.

    Loading mutates the given row dicts, adding one key per relationship:
    a dict or None for to-one, a list for to-many.
    """

    def __init__(self, factory: RepositoryFactory) -> None:
        self._factory = factory

    def load(
        self,
        table_name: str,
        entities: list[dict[str, Any]],
        relation_names: Iterable[str],
    ) -> list[dict[str, Any]]:
        """Load relationships onto ``entities`` (rows of ``table_name``).

        Unknown relationship names are skipped.

        Returns:
            The same list, for chaining
        """
        names = list(dict.fromkeys(relation_names))
        if not entities or not names:
            return entities

        known = {r.name: r for r in self._factory.schema_info().relationships_for(table_name)}
        for name in names:
            descriptor = known.get(name)
            if descriptor is None:
                logger.debug(f"Ignoring unknown relationship '{name}' on '{table_name}'")
                continue
            self._load_one(descriptor, entities)
        return entities

    def count(
        self,
        table_name: str,
        entity: dict[str, Any],
        relation_names: Iterable[str],
    ) -> dict[str, Any]:
        """Add ``<name>_count`` to ``entity`` for each known relationship.

        One ``COUNT(*)`` query per relationship; a NULL key counts as 0
        without a query. Unknown names are skipped like in ``load()``.
        """
        known = {r.name: r for r in self._factory.schema_info().relationships_for(table_name)}
        for name in dict.fromkeys(relation_names):
            rel = known.get(name)
            if rel is None:
                logger.debug(f"Ignoring unknown relationship '{name}' on '{table_name}'")
                continue
            key = entity.get(rel.source_key)
            entity[f"{name}_count"] = 0 if key is None else self._count_one(rel, key)
        return entity

    def _count_one(self, rel: RelationshipDescriptor, key: Any) -> int:
        if rel.kind is RelationshipKind.MANY_TO_MANY:
            assert rel.through_table and rel.through_source_key
            table = self._factory.sa_table(rel.through_table, junction=True)
            column = table.c[rel.through_source_key]
        else:
            table = self._factory.get_repository(rel.target_table).table
            column = table.c[rel.target_key]
        stmt = select(func.count()).select_from(table).where(column == to_db_value(key))
        try:
            return int(self._factory.executor.execute(stmt).scalar() or 0)
        except SQLAlchemyError as e:
            raise wrap_database_error(
                e, f"count relationship '{rel.name}'", rel.source_table
            ) from e

    def _load_one(self, rel: RelationshipDescriptor, entities: list[dict[str, Any]]) -> None:
        keys = list(dict.fromkeys(e.get(rel.source_key) for e in entities))
        keys = [k for k in keys if k is not None]
        key_type = self._key_type(rel)
        if not keys:
            self._attach(rel, entities, {}, key_type)
            return

        if rel.kind is RelationshipKind.MANY_TO_MANY:
            grouped = self._fetch_through(rel, keys, key_type)
        else:
            grouped = self._fetch_direct(rel, keys, key_type)
        self._attach(rel, entities, grouped, key_type)

    def _key_type(self, rel: RelationshipDescriptor) -> str:
        """Logical type of the column the ``IN`` filter compares keys against."""
        if rel.kind is RelationshipKind.MANY_TO_MANY:
            assert rel.through_table and rel.through_source_key
            schema = self._factory.junction_schema(rel.through_table)
            column = schema.column(rel.through_source_key)
        else:
            column = self._factory.table_schema(rel.target_table).column(rel.target_key)
        return column.logical_type if column is not None else "blob"

    def _fetch_direct(
        self, rel: RelationshipDescriptor, keys: list[Any], key_type: str
    ) -> dict[Any, list[dict[str, Any]]]:
        repository = self._factory.get_repository(rel.target_table)
        target = repository.table
        stmt = (
            select(target)
            .where(_keys_filter(target.c[rel.target_key], keys))
            .order_by(*target.primary_key.columns)
        )
        grouped: dict[Any, list[dict[str, Any]]] = defaultdict(list)
        for row in self._execute(stmt, rel):
            converted = repository.from_row(row)
            grouped[comparison_key(row[rel.target_key], key_type)].append(converted)
        return grouped

    def _fetch_through(
        self, rel: RelationshipDescriptor, keys: list[Any], key_type: str
    ) -> dict[Any, list[dict[str, Any]]]:
        assert rel.through_table and rel.through_source_key and rel.through_target_key
        repository = self._factory.get_repository(rel.target_table)
        target = repository.table
        junction = self._factory.sa_table(rel.through_table, junction=True)
        owner = junction.c[rel.through_source_key]
        on = junction.c[rel.through_target_key] == target.c[rel.target_key]

        stmt = (
            select(target, owner.label(OWNER_KEY))
            .select_from(target.join(junction, on))
            .where(_keys_filter(owner, keys))
            .order_by(*target.primary_key.columns)
        )
        grouped: dict[Any, list[dict[str, Any]]] = defaultdict(list)
        for row in self._execute(stmt, rel):
            owner_key = comparison_key(row.pop(OWNER_KEY), key_type)
            grouped[owner_key].append(repository.from_row(row))
        return grouped

    def _execute(self, stmt: Any, rel: RelationshipDescriptor) -> list[dict[str, Any]]:
        try:
            return self._factory.executor.execute(stmt).rows
        except SQLAlchemyError as e:
            raise wrap_database_error(e, f"load relationship '{rel.name}'", rel.source_table) from e

    @staticmethod
    def _attach(
        rel: RelationshipDescriptor,
        entities: list[dict[str, Any]],
        grouped: dict[Any, list[dict[str, Any]]],
        key_type: str,
    ) -> None:
        for entity in entities:
            key = entity.get(rel.source_key)
            matches = grouped.get(comparison_key(key, key_type), []) if key is not None else []
            if rel.kind.is_to_many:
                entity[rel.name] = [dict(m) for m in matches]
            else:
                # Missing target (broken reference) resolves to None.
                entity[rel.name] = dict(matches[0]) if matches else None
