"""Output formatting for CLI commands."""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from introspectdb.core.types import (
    MigrationStatus,
    RelationshipDescriptor,
    SchemaInfo,
    TableSchema,
)
from introspectdb.exceptions import IntrospectDBError

console = Console()


def _check(flag: bool) -> str:
    return "✓" if flag else ""


class OutputFormatter:
    """Renders command results as Rich tables or, in JSON mode, as one JSON document."""

    def __init__(self, json_mode: bool = False) -> None:
        self.json_mode = json_mode

    def emit_json(self, payload: Any) -> None:
        """Write ``payload`` to stdout as indented JSON."""
        print(json.dumps(payload, default=str, indent=2))

    def print_table(
        self,
        title: str,
        rows: list[dict[str, Any]],
        columns: list[str],
    ) -> None:
        """Print rows as a Rich table, or as a JSON array in JSON mode."""
        if self.json_mode:
            self.emit_json(rows)
            return

        table = Table(title=title, show_header=True, header_style="bold magenta")
        for col in columns:
            table.add_column(col)
        for row in rows:
            table.add_row(*[str(row.get(col, "")) for col in columns])
        console.print(table)

    def print_schema_overview(self, info: SchemaInfo) -> None:
        """Print every discovered table with its key and relationship names."""
        if self.json_mode:
            self.emit_json(info.model_dump(mode="json"))
            return

        rows = [
            {
                "Name": table.name,
                "Columns": len(table.columns),
                "Primary Key": ", ".join(table.primary_key),
                "Relationships": ", ".join(r.name for r in info.relationships_for(table.name)),
            }
            for table in info.tables
        ]
        self.print_table(
            f"Tables ({len(info.tables)} total)",
            rows,
            ["Name", "Columns", "Primary Key", "Relationships"],
        )
        if info.junction_tables:
            names = ", ".join(t.name for t in info.junction_tables)
            console.print(f"Junction tables: {names}", style="dim")
        if info.views:
            console.print(f"Views: {', '.join(v.name for v in info.views)}", style="dim")

    def print_table_schema(
        self,
        table: TableSchema,
        relationships: list[RelationshipDescriptor],
    ) -> None:
        """Print one table's columns, foreign keys and relationships."""
        if self.json_mode:
            output = table.model_dump(mode="json")
            output["relationships"] = [r.model_dump(mode="json") for r in relationships]
            self.emit_json(output)
            return

        console.print(f"\n[bold]Table:[/bold] {table.name}")
        console.print(f"Primary key: {', '.join(table.primary_key)}")

        console.print(f"\n[bold]Columns ({len(table.columns)}):[/bold]")
        columns_table = Table(show_header=True, header_style="bold cyan")
        for heading in ("Name", "Type", "Nullable", "Unique", "Default", "References"):
            columns_table.add_column(heading)
        references = {
            fk.column: f"{fk.target_table}.{fk.target_column}" for fk in table.foreign_keys
        }
        for col in table.columns:
            columns_table.add_row(
                col.name,
                col.type or "-",
                _check(col.nullable),
                _check(col.unique),
                col.default or "",
                references.get(col.name, ""),
            )
        console.print(columns_table)

        if relationships:
            console.print(f"\n[bold]Relationships ({len(relationships)}):[/bold]")
            rel_table = Table(show_header=True, header_style="bold cyan")
            for heading in ("Name", "Kind", "Target", "Through", "Alias key"):
                rel_table.add_column(heading)
            for rel in relationships:
                rel_table.add_row(
                    rel.name,
                    rel.kind.value,
                    rel.target_table,
                    rel.through_table or "",
                    rel.alias_key,
                )
            console.print(rel_table)

    def print_migration_status(self, status: MigrationStatus) -> None:
        """Print applied, modified and pending migrations in application order."""
        if self.json_mode:
            self.emit_json(status.model_dump(mode="json"))
            return

        modified = set(status.modified)
        rows = [
            {"Migration": name, "State": "modified" if name in modified else "applied"}
            for name in status.applied
        ]
        rows.extend({"Migration": name, "State": "pending"} for name in status.pending)
        self.print_table(
            f"Migrations ({len(status.applied)} applied, {len(status.pending)} pending)",
            rows,
            ["Migration", "State"],
        )
        if status.last_applied:
            console.print(
                f"Last applied: {status.last_applied} at {status.last_applied_at}", style="dim"
            )

    def print_success(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Print a success line; details become extra keys in JSON mode."""
        if self.json_mode:
            self.emit_json({"success": True, "message": message, **(details or {})})
            return

        console.print(f"✓ {message}", style="green")
        for key, value in (details or {}).items():
            console.print(f"  {key}: {value}", style="dim")

    def print_error(self, error: Exception) -> None:
        """Print an error; IntrospectDB errors include their context."""
        if self.json_mode:
            if isinstance(error, IntrospectDBError):
                self.emit_json(error.to_dict())
            else:
                self.emit_json({"error": type(error).__name__, "message": str(error)})
            return

        body = str(error)
        if isinstance(error, IntrospectDBError):
            details = [f"{k}: {v}" for k, v in error.context.items() if v not in (None, [], {})]
            if details:
                body = f"{body}\n\n" + "\n".join(details)

        console.print(
            Panel(body, title=f"[red]{type(error).__name__}[/red]", border_style="red")
        )
