"""CLI command for running a worker process.

Usage:
    conveyor worker --stream email --registry myapp.tasks:registry
    conveyor worker -s email -s thumbnails -r myapp.tasks:registry --grace 60
    conveyor worker -s email -r myapp.tasks:registry --metrics-port 9100
"""

from __future__ import annotations

import asyncio
import logging

import typer

app = typer.Typer(help="Run a worker process")

logger = logging.getLogger(__name__)


@app.callback(invoke_without_command=True)
def worker(
    streams: list[str] = typer.Option(
        ...,
        "--stream",
        "-s",
        help="Task kind to consume (can be specified multiple times)",
    ),
    registry_path: str = typer.Option(
        ...,
        "--registry",
        "-r",
        help="Handler registry as package.module:attribute",
    ),
    grace: float = typer.Option(
        30.0,
        "--grace",
        help="Seconds in-flight handlers get to finish on shutdown",
    ),
    trim_max_len: int | None = typer.Option(
        None,
        "--trim-max-len",
        help="Approximate stream length to trim to (disabled if unset)",
    ),
    metrics_port: int | None = typer.Option(
        None,
        "--metrics-port",
        help="Serve Prometheus metrics on this port (disabled if unset)",
    ),
) -> None:
    """Run a worker consuming the given task streams.

    Runs until SIGTERM or SIGINT. Exits 1 if the database or Redis is
    unreachable at startup.
    """
    from conveyor.config import load_settings
    from conveyor.observability import configure_logging
    from conveyor.queue import ConsumerConfig, load_registry
    from conveyor.worker import StartupError, WorkerConfig, WorkerProcess

    settings = load_settings()
    configure_logging(json_format=settings.json_logs, level=settings.log_level)

    try:
        registry = load_registry(registry_path)
    except (ImportError, ValueError) as e:
        typer.echo(f"Error: cannot load registry: {e}", err=True)
        raise typer.Exit(code=1) from e

    config = WorkerConfig(
        shutdown_grace=grace,
        metrics_port=metrics_port,
        consumer=ConsumerConfig(trim_max_len=trim_max_len),
    )
    process = WorkerProcess(settings, registry, streams, config=config)

    try:
        exit_code = asyncio.run(process.run())
    except StartupError as e:
        logger.error(f"Worker failed to start: {e}")
        raise typer.Exit(code=1) from e

    raise typer.Exit(code=exit_code)
