"""CLI command for appending a task to a stream.

Usage:
    conveyor enqueue email --payload '{"order_id": 42}'
    conveyor enqueue email -p '{"order_id": 42}' --type order_confirmation
"""

from __future__ import annotations

import asyncio
from typing import Any

import orjson
import typer


def enqueue(
    kind: str = typer.Argument(
        ...,
        help="Task kind (the stream is stream:tasks:<kind>)",
    ),
    payload: str = typer.Option(
        "{}",
        "--payload",
        "-p",
        help="JSON payload",
    ),
    task_type: str | None = typer.Option(
        None,
        "--type",
        "-t",
        help="Task type used to pick a handler (defaults to the kind)",
    ),
) -> None:
    """Append one task and print its stream id."""
    try:
        data = orjson.loads(payload)
    except orjson.JSONDecodeError as e:
        typer.echo(f"Error: payload is not valid JSON: {e}", err=True)
        raise typer.Exit(code=1) from e

    message_id = asyncio.run(_enqueue(kind, data, task_type))
    typer.echo(message_id)


async def _enqueue(kind: str, payload: Any, task_type: str | None) -> str:
    """Async implementation of enqueue command."""
    from conveyor.config import load_settings
    from conveyor.queue import QueueProducer
    from conveyor.store import create_redis

    client = create_redis(load_settings())
    try:
        return await QueueProducer(client).enqueue_task(kind, payload, task_type=task_type)
    finally:
        await client.aclose()
