"""IntrospectDB CLI - Main entry point."""

from typing import Annotated

import typer

import introspectdb
from introspectdb.cli.context import CLIContext, get_database_url

DatabaseOption = Annotated[
    str | None,
    typer.Option(
        "--database",
        "-d",
        envvar="INTROSPECTDB_URL",
        help="SQLite URL (sqlite:///path) or plain file path",
    ),
]
EchoOption = Annotated[bool, typer.Option("--echo", "-e", help="Log every SQL statement")]
JsonOption = Annotated[
    bool, typer.Option("--json", "-j", help="Print results and errors as JSON")
]

app = typer.Typer(
    name="introspectdb",
    help="IntrospectDB CLI - inspect and migrate existing SQLite databases",
    no_args_is_help=True,
)


@app.callback()
def main_callback(
    ctx: typer.Context,
    database: DatabaseOption = None,
    echo: EchoOption = False,
    json_output: JsonOption = False,
) -> None:
    """Global options shared by every command."""
    ctx.obj = CLIContext(
        database_url=get_database_url(database),
        echo=echo,
        json_output=json_output,
    )


@app.command()
def version() -> None:
    """Show version information."""
    typer.echo(f"IntrospectDB v{introspectdb.__version__}")


from introspectdb.cli.commands import migrate, schema  # noqa: E402

app.add_typer(schema.app, name="schema")
app.add_typer(migrate.app, name="migrate")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
