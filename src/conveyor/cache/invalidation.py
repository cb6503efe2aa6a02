"""Cross-instance cache invalidation over Redis Pub/Sub.

Every :meth:`CacheManager.invalidate` publishes the logical resource name (for
example ``product``) on one fixed channel. Each API instance runs an
:class:`InvalidationSubscriber` that drops its local mirror copies of that
resource when a notice arrives.

Delivery is best effort. A notice lost while an instance is disconnected is
healed when the mirrored entries expire, so no replay is attempted.

Example:
    mirror = LocalMirror()
    cache = CacheManager(redis, mirror=mirror)

    subscriber = InvalidationSubscriber(redis)
    subscriber.add_handler(mirror_handler(mirror))
    await subscriber.start()
    ...
    await subscriber.stop()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from redis.exceptions import RedisError

from conveyor.keys import INVALIDATION_CHANNEL

if TYPE_CHECKING:
    from redis.asyncio import Redis
    from redis.asyncio.client import PubSub

    from conveyor.cache.mirror import LocalMirror

logger = logging.getLogger(__name__)

# Handler type for invalidation callbacks, called with the resource name
InvalidationHandler = Callable[[str], Awaitable[None]]

RETRY_DELAY = 1.0  # seconds


class InvalidationSubscriber:
    """Receives invalidation notices and fans them out to handlers.

    The subscriber owns a dedicated Pub/Sub connection taken from the shared
    client's pool. Handler failures are logged and do not stop the listener.
    """

    def __init__(self, client: Redis, channel: str = INVALIDATION_CHANNEL) -> None:
        self.client = client
        self.channel = channel
        self._handlers: list[InvalidationHandler] = []
        self._pubsub: PubSub | None = None
        self._listener: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._listener is not None and not self._listener.done()

    def add_handler(self, handler: InvalidationHandler) -> None:
        self._handlers.append(handler)
        logger.debug(f"Invalidation handler added ({len(self._handlers)} total)")

    async def start(self) -> None:
        """Subscribe and spawn the listener. Calling it twice is a no-op."""
        if self.running:
            return

        pubsub = self.client.pubsub()
        await pubsub.subscribe(self.channel)
        self._pubsub = pubsub
        self._listener = asyncio.create_task(self._listen(pubsub))
        logger.info(f"Listening for cache invalidations on {self.channel}")

    async def stop(self) -> None:
        """Cancel the listener and release the Pub/Sub connection."""
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            await asyncio.gather(listener, return_exceptions=True)

        pubsub, self._pubsub = self._pubsub, None
        if pubsub is not None:
            try:
                await pubsub.unsubscribe(self.channel)
            except RedisError as e:
                logger.warning(f"Unsubscribe from {self.channel} failed: {e}")
            await pubsub.aclose()

        logger.info("Cache invalidation listener stopped")

    async def _listen(self, pubsub: PubSub) -> None:
        while True:
            try:
                notice = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except RedisError as e:
                logger.error(f"Invalidation listener lost the store: {e}")
                await asyncio.sleep(RETRY_DELAY)
                continue

            if notice is not None and notice["type"] == "message":
                await self.handle_message(notice["data"])

    async def handle_message(self, data: bytes | str) -> None:
        """Run every handler for one notice."""
        resource = data.decode() if isinstance(data, bytes) else data
        if not resource:
            logger.warning("Ignoring empty invalidation notice")
            return

        logger.debug(f"Invalidation received for {resource}")
        for handler in self._handlers:
            try:
                await handler(resource)
            except Exception:
                logger.exception(f"Invalidation handler failed for {resource}")


def mirror_handler(mirror: LocalMirror) -> InvalidationHandler:
    """Build a handler that drops a resource from a local mirror."""

    async def drop_mirrored(resource: str) -> None:
        mirror.drop_resource(resource)

    return drop_mirrored
