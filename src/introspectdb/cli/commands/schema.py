"""Schema inspection commands."""

from typing import Annotated

import typer

from introspectdb.cli.context import CLIContext
from introspectdb.cli.output import OutputFormatter
from introspectdb.exceptions import IntrospectDBError, TableNotFoundError

# Create schema subcommand group
app = typer.Typer(help="Inspect the discovered schema")


@app.command("show")
def schema_show(ctx: typer.Context) -> None:
    """List discovered tables with their keys and relationships."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        formatter.print_schema_overview(cli_ctx.get_db().get_schema_info())
    except IntrospectDBError as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()


@app.command("table")
def schema_table(
    ctx: typer.Context,
    table_name: Annotated[str, typer.Argument(help="Table name")],
) -> None:
    """Show columns and relationships of one table."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        db = cli_ctx.get_db()
        info = db.get_schema_info()
        table = info.table(table_name)
        if table is None:
            raise TableNotFoundError(table_name, info.table_names())
        formatter.print_table_schema(table, info.relationships_for(table_name))
    except IntrospectDBError as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()
