"""Migration commands."""

from pathlib import Path
from typing import Annotated

import typer

from introspectdb.cli.context import CLIContext
from introspectdb.cli.output import OutputFormatter
from introspectdb.exceptions import IntrospectDBError, MigrationError
from introspectdb.schema import MigrationManager

app = typer.Typer(help="Create, apply and roll back SQL migrations")

DirOption = Annotated[
    str,
    typer.Option(
        "--dir",
        envvar="INTROSPECTDB_MIGRATIONS_DIR",
        help="Migrations directory",
    ),
]


def _open_manager(cli_ctx: CLIContext, directory: str) -> MigrationManager:
    # Skip discovery: the tables may not exist until migrations run.
    manager = cli_ctx.get_db(discover=False).migrations
    manager.initialize(directory)
    return manager


@app.command("status")
def migrate_status(ctx: typer.Context, directory: DirOption = "./migrations") -> None:
    """Show applied, pending and modified migrations."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        manager = _open_manager(cli_ctx, directory)
        formatter.print_migration_status(manager.status())
    except IntrospectDBError as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()


@app.command("apply")
def migrate_apply(ctx: typer.Context, directory: DirOption = "./migrations") -> None:
    """Apply all pending migrations in order."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        manager = _open_manager(cli_ctx, directory)
        result = manager.apply()
        if result.applied:
            formatter.print_success(
                f"Applied {len(result.applied)} migration(s)",
                {"applied": result.applied, "duration_seconds": round(result.duration_seconds, 3)},
            )
        else:
            formatter.print_success("No pending migrations", {"applied": []})
    except IntrospectDBError as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()


@app.command("create")
def migrate_create(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Migration name, e.g. 'add users'")],
    sql: Annotated[
        str | None,
        typer.Option("--sql", help="Migration SQL (may contain -- migrate:up/down sections)"),
    ] = None,
    from_file: Annotated[
        str | None,
        typer.Option("--from-file", help="Read migration SQL from a file"),
    ] = None,
    directory: DirOption = "./migrations",
) -> None:
    """Validate SQL and write it as the next migration file.

    Examples:

        introspectdb migrate create "add users" --sql "CREATE TABLE users (id INTEGER PRIMARY KEY);"

        introspectdb migrate create "add posts" --from-file posts.sql
    """
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        if (sql is None) == (from_file is None):
            raise MigrationError("Pass exactly one of --sql or --from-file")
        if from_file is not None:
            try:
                content = Path(from_file).read_text(encoding="utf-8")
            except OSError as e:
                raise MigrationError(f"Could not read {from_file}: {e}") from e
        else:
            content = sql or ""

        manager = _open_manager(cli_ctx, directory)
        migration = manager.create_migration(name, content)
        formatter.print_success(
            f"Created migration {migration.name}",
            {"name": migration.name, "path": migration.path},
        )
    except IntrospectDBError as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()


@app.command("rollback")
def migrate_rollback(ctx: typer.Context, directory: DirOption = "./migrations") -> None:
    """Roll back the most recently applied migration."""
    cli_ctx: CLIContext = ctx.obj
    formatter = OutputFormatter(cli_ctx.json_output)

    try:
        manager = _open_manager(cli_ctx, directory)
        name = manager.rollback_last()
        if name is None:
            formatter.print_success("Nothing to roll back", {"rolled_back": None})
        else:
            formatter.print_success(f"Rolled back {name}", {"rolled_back": name})
    except IntrospectDBError as e:
        formatter.print_error(e)
        raise typer.Exit(code=1) from e
    finally:
        cli_ctx.close()
