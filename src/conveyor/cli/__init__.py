"""Command-line entry point.

    conveyor worker --stream email --registry myapp.tasks:registry
    conveyor enqueue email --payload '{"order_id": 42}' --type order_confirmation
    conveyor pending email --count 20
"""

from importlib.metadata import PackageNotFoundError, version

import typer

from conveyor.cli.enqueue_cmd import enqueue
from conveyor.cli.pending_cmd import pending
from conveyor.cli.worker_cmd import app as worker_app

app = typer.Typer(
    name="conveyor",
    help="Redis-backed caching and durable task queues.",
    no_args_is_help=True,
)
app.add_typer(worker_app, name="worker")
# Positional KIND followed by options needs a plain command, not a group callback
app.command("enqueue", help="Append a task to a stream")(enqueue)
app.command("pending", help="Show a stream's pending entries")(pending)


def _print_version(value: bool) -> None:
    if not value:
        return
    try:
        typer.echo(version("conveyor"))
    except PackageNotFoundError:
        typer.echo("unknown")
    raise typer.Exit()


@app.callback()
def callback(
    show_version: bool = typer.Option(
        False, "--version", callback=_print_version, is_eager=True, help="Show version and exit"
    ),
) -> None:
    """Redis-backed caching and durable task queues."""


def main() -> None:
    app()


if __name__ == "__main__":
    main()
