"""Redis client construction and health checks.

The client is built once at process bootstrap and passed by reference to the
cache, queue and worker components. redis-py's async client keeps its own
connection pool and is safe to share between tasks.
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import TYPE_CHECKING, TypeVar, cast

import redis.asyncio as redis

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from conveyor.config import Settings

T = TypeVar("T")


def await_redis(result: Awaitable[T] | T) -> Awaitable[T]:
    """Cast redis-py async results to an awaitable for mypy."""
    return cast(Awaitable[T], result)


def create_redis(settings: Settings) -> Redis:
    """Create a Redis client from settings.

    Responses are left as bytes; callers decode the fields they read.
    """
    password = settings.redis_password.get_secret_value() if settings.redis_password else None
    return redis.from_url(  # type: ignore[no-untyped-call]
        settings.redis_url,
        password=password,
        decode_responses=False,
        health_check_interval=30,
    )


async def ping(client: Redis) -> None:
    """Ping Redis, raising on failure."""
    await await_redis(client.ping())


def decode(value: bytes | str | None) -> str | None:
    """Decode a Redis reply to str, passing None through."""
    if value is None:
        return None
    return value.decode() if isinstance(value, bytes) else value
