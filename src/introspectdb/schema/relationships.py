"""Relationship inference from discovered foreign keys.

Each foreign key ``A.col -> B.key`` yields a many-to-one on ``A`` and its
one-to-many complement on ``B``. Pure junction tables yield a pair of
many-to-many descriptors instead. The output is a pure function of the
input tables, so inferring twice over the same schema gives equal results.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from introspectdb.core.types import RelationshipDescriptor, RelationshipKind, TableSchema
from introspectdb.exceptions import RelationshipAmbiguityError
from introspectdb.schema.naming import pluralize, singularize, strip_key_suffix

logger = logging.getLogger(__name__)


@dataclass
class _Candidate:
    """A descriptor waiting for its final name."""

    kind: RelationshipKind
    source_table: str
    source_key: str
    target_table: str
    target_key: str
    default_name: str
    qualified_name: str
    self_referential: bool = False
    fk_column: str | None = None
    through_table: str | None = None
    through_source_key: str | None = None
    through_target_key: str | None = None
    name: str = ""
    aliased: bool = False
    qualified: bool = field(default=False)

    def alias_key(self) -> str:
        return self.build(self.default_name).alias_key

    def build(self, name: str) -> RelationshipDescriptor:
        return RelationshipDescriptor(
            name=name,
            kind=self.kind,
            source_table=self.source_table,
            source_key=self.source_key,
            target_table=self.target_table,
            target_key=self.target_key,
            through_table=self.through_table,
            through_source_key=self.through_source_key,
            through_target_key=self.through_target_key,
            fk_column=self.fk_column,
        )


class RelationshipInferencer:
    """Derives relationship descriptors from table schemas.

    Names default to the other table's name (singular for to-one, plural for
    to-many). Colliding names on the same table, and self-references, are
    qualified by the foreign key column. A name that still collides must be
    resolved with an explicit alias; it is never guessed.
    """

    def __init__(self, aliases: Mapping[str, str] | None = None) -> None:
        """Initialize the inferencer.

        Args:
            aliases: Explicit relationship names keyed by ``RelationshipDescriptor.alias_key``
        """
        self._aliases = dict(aliases or {})

    def infer(self, tables: Sequence[TableSchema]) -> list[RelationshipDescriptor]:
        """Infer relationships for ``tables``.

        Args:
            tables: Entity tables and junction tables

        Returns:
            Descriptors sorted by source table and name

        Raises:
            RelationshipAmbiguityError: If two relationships on one table
                cannot be given distinct names
        """
        by_name = {t.name: t for t in tables}
        candidates: list[_Candidate] = []

        for table in sorted(tables, key=lambda t: t.name):
            if table.is_junction:
                candidates.extend(self._junction_candidates(table, by_name))
                continue
            if not table.primary_key:
                continue
            for fk in table.foreign_keys:
                target = by_name.get(fk.target_table)
                if target is None or target.is_junction or not target.primary_key:
                    logger.debug(
                        f"Skipping foreign key {table.name}.{fk.column}: "
                        f"'{fk.target_table}' is not an entity table"
                    )
                    continue
                self_ref = fk.target_table == table.name
                stem = strip_key_suffix(fk.column)
                candidates.append(
                    _Candidate(
                        kind=RelationshipKind.MANY_TO_ONE,
                        source_table=table.name,
                        source_key=fk.column,
                        target_table=target.name,
                        target_key=fk.target_column,
                        default_name=singularize(target.name),
                        qualified_name=stem,
                        self_referential=self_ref,
                        fk_column=fk.column,
                    )
                )
                candidates.append(
                    _Candidate(
                        kind=RelationshipKind.ONE_TO_MANY,
                        source_table=target.name,
                        source_key=fk.target_column,
                        target_table=table.name,
                        target_key=fk.column,
                        default_name=pluralize(table.name),
                        qualified_name=f"{stem}_{pluralize(table.name)}",
                        self_referential=self_ref,
                        fk_column=fk.column,
                    )
                )

        grouped: dict[str, list[_Candidate]] = defaultdict(list)
        for candidate in candidates:
            grouped[candidate.source_table].append(candidate)

        descriptors: list[RelationshipDescriptor] = []
        for source_table, group in grouped.items():
            columns = set(by_name[source_table].column_names)
            self._assign_names(source_table, group, columns)
            descriptors.extend(c.build(c.name) for c in group)

        return sorted(descriptors, key=lambda d: (d.source_table, d.name))

    def _junction_candidates(
        self, junction: TableSchema, by_name: Mapping[str, TableSchema]
    ) -> list[_Candidate]:
        fk_a, fk_b = sorted(junction.foreign_keys, key=lambda fk: fk.column)
        table_a = by_name.get(fk_a.target_table)
        table_b = by_name.get(fk_b.target_table)
        if table_a is None or table_b is None:
            logger.debug(f"Junction '{junction.name}' references a table that was not discovered")
            return []

        self_ref = table_a.name == table_b.name
        result = []
        for near, far in ((fk_a, fk_b), (fk_b, fk_a)):
            far_table = far.target_table
            if self_ref:
                qualified = pluralize(strip_key_suffix(far.column))
            else:
                qualified = f"{pluralize(far_table)}_via_{junction.name}"
            result.append(
                _Candidate(
                    kind=RelationshipKind.MANY_TO_MANY,
                    source_table=near.target_table,
                    source_key=near.target_column,
                    target_table=far_table,
                    target_key=far.target_column,
                    default_name=pluralize(far_table),
                    qualified_name=qualified,
                    self_referential=self_ref,
                    through_table=junction.name,
                    through_source_key=near.column,
                    through_target_key=far.column,
                )
            )
        return result

    def _assign_names(self, table_name: str, group: list[_Candidate], columns: set[str]) -> None:
        for c in group:
            alias = self._aliases.get(c.alias_key())
            if alias:
                c.name, c.aliased = alias, True
            elif c.self_referential:
                c.name, c.qualified = c.qualified_name, True
            else:
                c.name = c.default_name

        # One upgrade pass: anything colliding switches to its qualified name.
        counts = Counter(c.name for c in group)
        for c in group:
            if c.aliased or c.qualified:
                continue
            if counts[c.name] > 1 or c.name in columns:
                c.name, c.qualified = c.qualified_name, True

        counts = Counter(c.name for c in group)
        for c in group:
            if counts[c.name] > 1:
                clashing = sorted(x.alias_key() for x in group if x.name == c.name)
                raise RelationshipAmbiguityError(table_name, c.name, clashing)
            if c.name in columns and not c.aliased:
                raise RelationshipAmbiguityError(table_name, c.name, [c.alias_key()])
