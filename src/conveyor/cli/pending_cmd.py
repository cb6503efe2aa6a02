"""CLI command for inspecting a stream's pending entries.

Usage:
    conveyor pending email
    conveyor pending email --count 20
"""

from __future__ import annotations

import asyncio

import typer


def pending(
    kind: str = typer.Argument(
        ...,
        help="Task kind (the stream is stream:tasks:<kind>)",
    ),
    count: int = typer.Option(
        100,
        "--count",
        "-n",
        help="Maximum entries to show, oldest first",
    ),
) -> None:
    """List delivered-but-unacknowledged entries of the workers group."""
    from redis.exceptions import ResponseError

    try:
        entries = asyncio.run(_pending(kind, count))
    except ResponseError as e:
        if "NOGROUP" not in str(e):
            raise
        typer.echo(f"No consumer group on stream:tasks:{kind}")
        raise typer.Exit(code=0) from e

    if not entries:
        typer.echo("No pending entries")
        return

    typer.echo(f"{'ID':<24} {'CONSUMER':<40} {'IDLE (ms)':>10} {'DELIVERIES':>10}")
    for entry in entries:
        typer.echo(
            f"{entry.message_id:<24} {entry.consumer:<40} "
            f"{entry.idle_ms:>10} {entry.delivery_count:>10}"
        )
    typer.echo(f"\nTotal shown: {len(entries)}")


async def _pending(kind: str, count: int) -> list:
    """Async implementation of pending command."""
    from conveyor.config import load_settings
    from conveyor.keys import StreamKeys
    from conveyor.queue import QueueConsumer
    from conveyor.queue.messages import QueueMessage
    from conveyor.store import create_redis

    async def _inspect_only(message: QueueMessage) -> None:
        raise RuntimeError("pending inspection does not dispatch messages")

    client = create_redis(load_settings())
    try:
        consumer = QueueConsumer(client, StreamKeys.tasks(kind), "cli", _inspect_only)
        return await consumer.pending(count=count)
    finally:
        await client.aclose()
