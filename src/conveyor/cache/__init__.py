"""Cache layer for conveyor.

Provides Redis caching with the cache-aside pattern:
- DB-derived entries under ``cache:db:*`` with a mandatory TTL
- Delete-after-commit invalidation with a Pub/Sub broadcast
- Optional process-local mirror dropped on broadcast
- Operational ``op:*`` counters, locks and heartbeats
"""

from conveyor.cache.invalidation import (
    InvalidationHandler,
    InvalidationSubscriber,
    mirror_handler,
)
from conveyor.cache.manager import MISS, CacheManager, CacheStats
from conveyor.cache.mirror import LocalMirror
from conveyor.cache.operational import OperationalStore

__all__ = [
    # Core cache
    "MISS",
    "CacheManager",
    "CacheStats",
    "LocalMirror",
    # Distributed invalidation
    "InvalidationHandler",
    "InvalidationSubscriber",
    "mirror_handler",
    # Operational keys
    "OperationalStore",
]
