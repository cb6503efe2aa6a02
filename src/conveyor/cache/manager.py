"""Cache-aside reads and write-through invalidation over Redis hashes.

Entries live under ``cache:db:<resource>[:<id>]`` and always carry a TTL, so
every entry is reconstructible from the database and staleness is bounded.

Ordering contract for writers: the DB transaction commits, then the key is
deleted, then the invalidation notice is published. Publishing before the
delete (or deleting before the commit) lets a concurrent reader repopulate the
old value with nothing left to invalidate it. Use
:func:`conveyor.persistence.db.transaction` to get the first half for free.

Example:
    cache = CacheManager(redis, mirror=LocalMirror())

    product = await cache.get_or_load(
        CacheKeys.entry("product", 7),
        lambda: load_product(session, 7),
        ttl=300,
    )

    # After the update commits
    await cache.invalidate(CacheKeys.entry("product", 7))
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import orjson
from redis.exceptions import RedisError

from conveyor.keys import INVALIDATION_CHANNEL, CacheKeys
from conveyor.observability.metrics import get_metrics
from conveyor.store import await_redis

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from conveyor.cache.mirror import LocalMirror

logger = logging.getLogger(__name__)

# Default TTL (5 minutes)
DEFAULT_TTL = 300
DEFAULT_INVALIDATE_RETRIES = 2
DEFAULT_RETRY_DELAY = 0.1  # seconds, doubled per attempt

# Reserved hash fields for non-mapping values
BLOB_FIELD = b"_blob"
EMPTY_FIELD = b"_empty"
RESERVED_FIELDS = frozenset({BLOB_FIELD, EMPTY_FIELD})

CacheValue = Mapping[str, Any] | bytes
Loader = Callable[[], Awaitable[CacheValue | None]]


class _Miss:
    """Sentinel returned by :meth:`CacheManager.get` on a miss."""

    _instance: _Miss | None = None

    def __new__(cls) -> _Miss:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS = _Miss()


@dataclass
class CacheStats:
    """Counters for one CacheManager."""

    hits: int = 0
    misses: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        reads = self.hits + self.misses
        return self.hits / reads if reads else 0.0


def encode_value(value: CacheValue) -> dict[bytes, bytes]:
    """Encode a cache value as hash fields.

    Mappings become one field per key with a JSON-encoded value. Bytes are
    stored whole under the reserved ``_blob`` field. Mappings may not use the
    reserved names ``_blob`` or ``_empty`` as keys.
    """
    if isinstance(value, (bytes, bytearray)):
        return {BLOB_FIELD: bytes(value)}
    if isinstance(value, Mapping):
        if not value:
            return {EMPTY_FIELD: b""}
        fields = {str(k).encode(): orjson.dumps(v) for k, v in value.items()}
        reserved = sorted(f.decode() for f in fields.keys() & RESERVED_FIELDS)
        if reserved:
            raise ValueError(f"Cache mapping uses reserved field names: {reserved}")
        return fields
    raise TypeError(f"Cache values must be a mapping or bytes, not {type(value).__name__}")


def decode_value(fields: Mapping[bytes, bytes]) -> CacheValue:
    """Decode hash fields written by :func:`encode_value`."""
    if BLOB_FIELD in fields and len(fields) == 1:
        return fields[BLOB_FIELD]
    if EMPTY_FIELD in fields and len(fields) == 1:
        return {}
    return {
        (k.decode() if isinstance(k, bytes) else k): orjson.loads(v) for k, v in fields.items()
    }


class CacheManager:
    """Cache-aside reads, write-through sets and invalidation broadcast.

    Store failures never reach the caller: reads degrade to MISS, writes and
    invalidations are logged and reported through the boolean return value.
    """

    def __init__(
        self,
        client: Redis,
        mirror: LocalMirror | None = None,
        default_ttl: int = DEFAULT_TTL,
        invalidate_retries: int = DEFAULT_INVALIDATE_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        channel: str = INVALIDATION_CHANNEL,
    ) -> None:
        _check_ttl(default_ttl)
        self.client = client
        self.mirror = mirror
        self.default_ttl = default_ttl
        self.invalidate_retries = invalidate_retries
        self.retry_delay = retry_delay
        self.channel = channel
        self._stats = CacheStats()
        self._metrics = get_metrics()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> CacheValue | _Miss:
        """Return the cached value, or MISS.

        Never touches the database. An unreachable store is a MISS.
        """
        if self.mirror is not None:
            mirrored = self.mirror.get(key)
            if mirrored is not None:
                self._record_hit("local")
                return mirrored

        try:
            fields = await await_redis(self.client.hgetall(key))
        except RedisError as e:
            self._record_error("get")
            logger.warning(f"Cache read failed for {key}, treating as miss: {e}")
            return MISS

        if not fields:
            self._record_miss()
            return MISS

        try:
            value = decode_value(fields)
        except ValueError as e:
            self._record_error("decode")
            logger.warning(f"Undecodable cache entry {key}, treating as miss: {e}")
            return MISS

        self._record_hit("store")
        if self.mirror is not None:
            self.mirror.set(key, value)
        return value

    async def get_or_load(
        self,
        key: str,
        loader: Loader,
        ttl: int | None = None,
    ) -> CacheValue | None:
        """Cache-aside read.

        On a miss, awaits ``loader`` (a read against the source of truth) and
        stores its result with ``ttl``. Concurrent misses may each call the
        loader; loaders are idempotent reads, so the duplicate work is
        tolerated. A loader result of None is returned but not cached.
        """
        ttl = self.default_ttl if ttl is None else ttl
        _check_ttl(ttl)

        value = await self.get(key)
        if value is not MISS:
            return value  # type: ignore[return-value]

        loaded = await loader()
        if loaded is None:
            return None

        try:
            await self._write(key, loaded, ttl)
        except RedisError as e:
            self._record_error("set")
            logger.warning(f"Cache fill failed for {key}: {e}")
        else:
            if self.mirror is not None:
                self.mirror.set(key, loaded, ttl)
        return loaded

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def set(self, key: str, value: CacheValue, ttl: int | None = None) -> bool:
        """Write-through after a committed DB write.

        Returns False (and logs) if the store could not be updated; the old
        entry then lives at most until its TTL expires.
        """
        ttl = self.default_ttl if ttl is None else ttl
        _check_ttl(ttl)

        if self.mirror is not None:
            self.mirror.drop(key)
        try:
            await self._write(key, value, ttl)
        except RedisError as e:
            self._record_error("set")
            logger.error(f"Cache write-through failed for {key}, stale for up to TTL: {e}")
            return False

        if self.mirror is not None:
            self.mirror.set(key, value, ttl)
        await self._publish(_resource_of(key))
        return True

    async def invalidate(self, key: str) -> bool:
        """Delete a key, then broadcast its logical resource name.

        Call only after the originating DB transaction has committed.
        Returns False if the delete could not be performed after retries.
        """
        resource = _resource_of(key)
        if self.mirror is not None:
            self.mirror.drop(key)

        deleted = await self._retrying(f"invalidate {key}", lambda: self.client.delete(key))
        if deleted:
            self._metrics.cache_invalidations_total.labels(resource=resource).inc()
        await self._publish(resource)
        return deleted

    async def invalidate_resource(self, resource: str) -> bool:
        """Delete every cached entry of a resource, then broadcast it."""
        bare, pattern = CacheKeys.resource_patterns(resource)
        if self.mirror is not None:
            self.mirror.drop_resource(resource)

        async def _delete_all() -> int:
            deleted = await self.client.delete(bare)
            batch: list[bytes] = []
            async for found in self.client.scan_iter(match=pattern, count=500):
                batch.append(found)
                if len(batch) >= 500:
                    deleted += await self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.client.delete(*batch)
            return deleted

        deleted = await self._retrying(f"invalidate resource {resource}", _delete_all)
        if deleted:
            self._metrics.cache_invalidations_total.labels(resource=resource).inc()
        await self._publish(resource)
        return deleted

    def stats(self) -> CacheStats:
        """Snapshot of hit/miss/error counters."""
        return CacheStats(
            hits=self._stats.hits, misses=self._stats.misses, errors=self._stats.errors
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _write(self, key: str, value: CacheValue, ttl: int) -> None:
        fields = encode_value(value)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.delete(key)
            pipe.hset(key, mapping=fields)
            pipe.expire(key, ttl)
            await pipe.execute()

    async def _retrying(self, what: str, operation: Callable[[], Awaitable[Any]]) -> bool:
        attempts = self.invalidate_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await operation()
                return True
            except RedisError as e:
                self._record_error("invalidate")
                if attempt == attempts:
                    logger.error(
                        f"Cache {what} failed after {attempts} attempts, "
                        f"stale data may persist until TTL: {e}"
                    )
                    return False
                logger.warning(f"Cache {what} failed (attempt {attempt}/{attempts}): {e}")
                await asyncio.sleep(self.retry_delay * 2 ** (attempt - 1))
        return False

    async def _publish(self, resource: str) -> None:
        """Best-effort broadcast; subscribers heal at TTL if this is lost."""
        try:
            count = await await_redis(self.client.publish(self.channel, resource.encode()))
            logger.debug(f"Published invalidation {resource} to {count} subscribers")
        except RedisError as e:
            self._record_error("publish")
            logger.warning(f"Invalidation broadcast for {resource} failed: {e}")

    def _record_hit(self, layer: str) -> None:
        self._stats.hits += 1
        self._metrics.cache_hits_total.labels(layer=layer).inc()

    def _record_miss(self) -> None:
        self._stats.misses += 1
        self._metrics.cache_misses_total.inc()

    def _record_error(self, operation: str) -> None:
        self._stats.errors += 1
        self._metrics.cache_errors_total.labels(operation=operation).inc()


def _resource_of(key: str) -> str:
    parsed = CacheKeys.parse(key)
    return parsed.resource if parsed is not None else key


def _check_ttl(ttl: int) -> None:
    if ttl <= 0:
        raise ValueError(f"Cache entries require a positive TTL (got {ttl})")
