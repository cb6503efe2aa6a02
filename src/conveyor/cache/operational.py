"""Operational state under ``op:*``: counters, locks and heartbeats.

None of these keys have queue semantics and all of them carry a TTL, so a
crashed owner never leaves state behind for longer than its lease.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Awaitable, cast
from uuid import uuid4

from conveyor.store import await_redis

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

# Only delete if we still own it
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class OperationalStore:
    """TTL-bearing operational keys on the shared store."""

    def __init__(self, client: Redis) -> None:
        self.client = client

    async def incr(self, key: str, ttl: int, amount: int = 1) -> int:
        """Increment a counter, starting its TTL window on first use.

        The TTL is set only when the key has none, so repeated increments do
        not extend the window.
        """
        _check_ttl(ttl)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incrby(key, amount)
            pipe.expire(key, ttl, nx=True)
            value, _ = await pipe.execute()
        return int(value)

    async def touch(self, key: str, value: str, ttl: int) -> None:
        """Set a key with a TTL, replacing any previous value."""
        _check_ttl(ttl)
        await await_redis(self.client.set(key, value, ex=ttl))

    async def acquire_lock(self, key: str, ttl_ms: int) -> str | None:
        """Try to take a lock.

        Returns the owner token on success, None if another owner holds it.
        """
        _check_ttl(ttl_ms)
        token = uuid4().hex
        acquired = await await_redis(self.client.set(key, token, nx=True, px=ttl_ms))
        return token if acquired else None

    async def release_lock(self, key: str, token: str) -> bool:
        """Release a lock if ``token`` still owns it."""
        result = await cast(
            Awaitable[int],
            self.client.eval(_RELEASE_SCRIPT, 1, key, token),
        )
        if not result:
            logger.warning(f"Lock {key} expired or was taken before release")
        return bool(result)


def _check_ttl(ttl: int) -> None:
    if ttl <= 0:
        raise ValueError(f"Operational keys require a positive TTL (got {ttl})")
