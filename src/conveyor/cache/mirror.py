"""Process-local mirror of cache entries.

An optional first level in front of Redis. Entries are bounded in count (least
recently used entries are evicted first) and in age, and are dropped when an
invalidation notice names their resource. A missed notice is healed by the
mirror TTL, which is never longer than the Redis entry's TTL.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from conveyor.keys import CacheKeys

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_MIRROR_TTL = 30  # seconds


@dataclass
class _MirrorEntry:
    value: Any
    expires_at: float


class LocalMirror:
    """Bounded LRU map of cache key to value with per-entry expiry."""

    def __init__(
        self,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        ttl: float = DEFAULT_MIRROR_TTL,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.ttl = ttl
        self._entries: OrderedDict[str, _MirrorEntry] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get(self, key: str) -> Any | None:
        """Return the mirrored value, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= time.monotonic():
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Mirror a value for at most ``min(ttl, self.ttl)`` seconds."""
        lifetime = self.ttl if ttl is None else min(ttl, self.ttl)
        self._entries[key] = _MirrorEntry(value=value, expires_at=time.monotonic() + lifetime)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def drop(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def drop_resource(self, resource: str) -> int:
        """Drop every mirrored entry of a logical resource.

        Returns the number of entries dropped.
        """
        doomed = []
        for key in self._entries:
            parsed = CacheKeys.parse(key)
            if parsed is not None and parsed.resource == resource:
                doomed.append(key)
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(f"Dropped {len(doomed)} mirrored entries for {resource}")
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()
