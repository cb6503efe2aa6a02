"""Key schema for the shared Redis store.

Three namespaces share one keyspace and must never be confused, because the
eviction rules differ:

- ``cache:db:<resource>[:<id>]``: DB-derived cache entries, always with a TTL
- ``op:<use-case>:<scope>:<id>``: operational state (counters, locks), always with a TTL
- ``stream:tasks:<task-kind>``: durable task streams, never expire

Dead letters live in ``stream:dead:<task-kind>`` and, like task streams, carry
no TTL.
"""

from __future__ import annotations

from dataclasses import dataclass

# Consumer group name used on every task stream
CONSUMER_GROUP = "workers"

# Pub/Sub channel carrying logical resource names
INVALIDATION_CHANNEL = "cache:invalidation"


@dataclass(frozen=True)
class ParsedCacheKey:
    resource: str
    item_id: str | None = None


class CacheKeys:
    """Cache key generator for DB-derived entries."""

    PREFIX = "cache:db"

    @classmethod
    def entry(cls, resource: str, item_id: str | int | None = None) -> str:
        """Key for a cached resource, optionally scoped to one row."""
        _check_segment(resource, "resource")
        if item_id is None:
            return f"{cls.PREFIX}:{resource}"
        return f"{cls.PREFIX}:{resource}:{item_id}"

    @classmethod
    def parse(cls, key: str) -> ParsedCacheKey | None:
        """Split a cache key into resource and id.

        Returns None if the key is not a ``cache:db:*`` key.
        """
        prefix = f"{cls.PREFIX}:"
        if not key.startswith(prefix):
            return None
        rest = key[len(prefix) :]
        if not rest:
            return None
        resource, _, item_id = rest.partition(":")
        return ParsedCacheKey(resource=resource, item_id=item_id or None)

    @classmethod
    def resource_patterns(cls, resource: str) -> tuple[str, str]:
        """SCAN patterns matching every entry of a resource.

        The bare key and the per-id keys are matched separately so that a
        resource named ``product`` does not match ``products``.
        """
        _check_segment(resource, "resource")
        return (f"{cls.PREFIX}:{resource}", f"{cls.PREFIX}:{resource}:*")


class OpKeys:
    """Keys for store-only operational state."""

    PREFIX = "op"

    @classmethod
    def key(cls, use_case: str, scope: str, ident: str) -> str:
        for name, value in (("use_case", use_case), ("scope", scope)):
            _check_segment(value, name)
        return f"{cls.PREFIX}:{use_case}:{scope}:{ident}"

    @classmethod
    def heartbeat(cls, consumer_id: str) -> str:
        """Liveness key refreshed by a running worker."""
        return cls.key("worker", "heartbeat", consumer_id)

    @classmethod
    def trim_lock(cls, task_kind: str) -> str:
        """Lock held while one worker trims a task stream."""
        return cls.key("queue", "trim", task_kind)


class StreamKeys:
    """Stream names for task queues and their dead letters."""

    TASKS_PREFIX = "stream:tasks"
    DEAD_PREFIX = "stream:dead"

    @classmethod
    def tasks(cls, task_kind: str) -> str:
        _check_segment(task_kind, "task_kind")
        return f"{cls.TASKS_PREFIX}:{task_kind}"

    @classmethod
    def dead(cls, task_kind: str) -> str:
        _check_segment(task_kind, "task_kind")
        return f"{cls.DEAD_PREFIX}:{task_kind}"

    @classmethod
    def kind_of(cls, stream: str) -> str:
        """Task kind of a task stream name.

        Raises ValueError for names outside ``stream:tasks:``.
        """
        prefix = f"{cls.TASKS_PREFIX}:"
        if not stream.startswith(prefix) or len(stream) == len(prefix):
            raise ValueError(f"Not a task stream: {stream!r}")
        return stream[len(prefix) :]


def _check_segment(value: str, name: str) -> None:
    if not value or ":" in value:
        raise ValueError(f"{name} must be non-empty and contain no ':' (got {value!r})")
