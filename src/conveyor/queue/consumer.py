"""Consumer-group state machine for one task stream.

Each message moves through:

- DELIVERED: returned by XREADGROUP to exactly one consumer of the group
- PENDING: in the group's PEL, owned by that consumer until acknowledged
- ACKED: removed from the PEL after the handler completed
- RECLAIMED: claimed by another consumer after sitting idle, delivery count +1
- DEAD: copied to ``stream:dead:<kind>`` and acknowledged, never retried

A handler failure leaves the message PENDING; the periodic reclaim is the
retry mechanism. Messages are never acknowledged before their handler has
returned, so a crash at any point leaves the message recoverable.

Example:
    consumer = QueueConsumer(redis, StreamKeys.tasks("email"), consumer_id, handler)
    stop = asyncio.Event()
    await consumer.run(stop)  # until stop is set
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

from redis.exceptions import RedisError, ResponseError

from conveyor.keys import CONSUMER_GROUP, OpKeys, StreamKeys
from conveyor.observability.logging import LogContext
from conveyor.observability.metrics import get_metrics
from conveyor.queue.messages import (
    MalformedMessageError,
    PendingEntry,
    QueueMessage,
    decode_message,
    format_stream_id,
    next_stream_id,
    parse_stream_id,
)
from conveyor.queue.registry import TaskRejected, UnknownTaskError
from conveyor.store import await_redis, decode

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from conveyor.cache.operational import OperationalStore
    from conveyor.queue.registry import MessageHandler

logger = logging.getLogger(__name__)

# Processing configuration
DEFAULT_BATCH_SIZE = 10
DEFAULT_BLOCK_MS = 5000
DEFAULT_MIN_IDLE_MS = 60000  # Reclaim entries idle for 1 minute
DEFAULT_RECLAIM_INTERVAL = 30.0  # seconds
DEFAULT_MAX_DELIVERIES = 5
DEFAULT_TRIM_INTERVAL = 300.0  # seconds
DEFAULT_TRIM_MIN_AGE_MS = 3_600_000  # Keep at least an hour of history
TRIM_SCAN_LIMIT = 1000  # Entries examined per trim pass
TRIM_LOCK_TTL_MS = 60_000
ERROR_BACKOFF = 1.0
ERROR_BACKOFF_MAX = 30.0


class Outcome(str, Enum):
    """Result of dispatching one message."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"  # Left pending, retried via reclaim
    REJECTED = "rejected"  # Dead-lettered, never retried


@dataclass(frozen=True)
class DispatchResult:
    outcome: Outcome
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCEEDED

    def __bool__(self) -> bool:
        return self.ok


@dataclass
class ConsumerConfig:
    """Consumer loop configuration."""

    # Reading
    batch_size: int = DEFAULT_BATCH_SIZE
    block_ms: int = DEFAULT_BLOCK_MS

    # Reclaim and dead-lettering
    min_idle_ms: int = DEFAULT_MIN_IDLE_MS
    reclaim_interval: float = DEFAULT_RECLAIM_INTERVAL
    max_deliveries: int = DEFAULT_MAX_DELIVERIES

    # Trimming (disabled unless trim_max_len is set)
    trim_max_len: int | None = None
    trim_min_age_ms: int = DEFAULT_TRIM_MIN_AGE_MS
    trim_interval: float = DEFAULT_TRIM_INTERVAL

    # Transient store errors
    error_backoff: float = ERROR_BACKOFF
    error_backoff_max: float = ERROR_BACKOFF_MAX


class QueueConsumer:
    """One consumer of one stream's consumer group.

    The loop is strictly sequential: read a batch, dispatch each message,
    acknowledge it on success. Several consumers (in one or many processes)
    can share the group; the store hands each new entry to exactly one of
    them.
    """

    def __init__(
        self,
        client: Redis,
        stream: str,
        consumer_id: str,
        handler: MessageHandler,
        group: str = CONSUMER_GROUP,
        config: ConsumerConfig | None = None,
        operational: OperationalStore | None = None,
    ) -> None:
        self.client = client
        self.stream = stream
        self.task_kind = StreamKeys.kind_of(stream)
        self.dead_letter_stream = StreamKeys.dead(self.task_kind)
        self.consumer_id = consumer_id
        self.handler = handler
        self.group = group
        self.config = config or ConsumerConfig()
        self.operational = operational
        self._group_ready = False
        self._metrics = get_metrics()

    # -------------------------------------------------------------------------
    # Group lifecycle
    # -------------------------------------------------------------------------

    async def ensure_group(self) -> bool:
        """Create the consumer group (and the stream) if absent.

        Returns True if the group was created, False if it already existed.
        """
        try:
            await self.client.xgroup_create(self.stream, self.group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug(f"Consumer group {self.group} already exists on {self.stream}")
            created = False
        else:
            logger.info(f"Created consumer group {self.group} on stream {self.stream}")
            created = True

        self._group_ready = True
        return created

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def read_batch(
        self,
        count: int | None = None,
        block_ms: int | None = None,
    ) -> list[QueueMessage]:
        """Read up to ``count`` never-delivered entries, blocking up to ``block_ms``.

        Returned messages are PENDING under this consumer. Entries that cannot
        be decoded are dead-lettered and not returned. ``block_ms=0`` returns
        immediately (it does not mean "block forever" here).
        """
        block = self.config.block_ms if block_ms is None else block_ms
        response = await self.client.xreadgroup(
            groupname=self.group,
            consumername=self.consumer_id,
            streams={self.stream: ">"},  # Only new messages
            count=count or self.config.batch_size,
            block=block if block > 0 else None,
        )

        messages: list[QueueMessage] = []
        for _stream_name, entries in response or []:
            for message_id, fields in entries:
                message = await self._decode_or_dead_letter(message_id, fields, 1)
                if message is not None:
                    messages.append(message)
        return messages

    async def dispatch(self, message: QueueMessage) -> DispatchResult:
        """Invoke the handler for one message.

        Handler exceptions are logged and reported, never raised. Task
        cancellation is not caught, so a handler aborted at shutdown is
        neither acknowledged nor dead-lettered.
        """
        started = time.perf_counter()
        try:
            await self.handler(message)
        except (UnknownTaskError, TaskRejected) as e:
            logger.error(f"Rejected {message.task_type} message {message.message_id}: {e}")
            return DispatchResult(Outcome.REJECTED, str(e) or type(e).__name__)
        except Exception as e:
            self._metrics.tasks_failed_total.labels(stream=self.stream).inc()
            logger.error(
                f"Handler for {message.task_type} failed on {message.message_id} "
                f"(delivery {message.delivery_count}), leaving it pending: {e}",
                exc_info=True,
            )
            return DispatchResult(Outcome.FAILED, str(e) or type(e).__name__)
        finally:
            self._metrics.handler_duration_seconds.labels(stream=self.stream).observe(
                time.perf_counter() - started
            )

        return DispatchResult(Outcome.SUCCEEDED)

    async def process(self, message: QueueMessage) -> DispatchResult:
        """Dispatch one message and settle it: ack, dead-letter, or leave pending."""
        with LogContext(message_id=message.message_id):
            result = await self.dispatch(message)

            if result.outcome is Outcome.SUCCEEDED:
                await self.ack(message.message_id)
                self._metrics.tasks_processed_total.labels(stream=self.stream).inc()
            elif result.outcome is Outcome.REJECTED:
                await self.dead_letter(
                    message.message_id,
                    message.fields(),
                    reason=f"rejected: {result.error}",
                    delivery_count=message.delivery_count,
                )
            return result

    async def ack(self, message_id: bytes | str) -> int:
        """Remove a message from the PEL.

        Idempotent: acknowledging an already-acknowledged id returns 0.
        """
        count = int(await await_redis(self.client.xack(self.stream, self.group, message_id)))
        logger.debug(f"Acknowledged {decode(message_id)} ({count})")
        return count

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def reclaim(
        self,
        min_idle_ms: int | None = None,
        count: int | None = None,
    ) -> list[QueueMessage]:
        """Claim PEL entries idle longer than ``min_idle_ms``.

        Includes this consumer's own idle entries, which is how a message
        whose handler failed gets its next delivery. Each claim bumps the
        delivery count by one; entries past ``max_deliveries`` are
        dead-lettered instead of returned.
        """
        min_idle = self.config.min_idle_ms if min_idle_ms is None else min_idle_ms
        pending = await self.client.xpending_range(
            self.stream,
            self.group,
            min="-",
            max="+",
            count=count or self.config.batch_size,
            idle=min_idle,
        )
        if not pending:
            return []

        delivered: dict[str, int] = {
            decode(entry["message_id"]) or "": int(entry["times_delivered"]) for entry in pending
        }

        # min_idle_time makes the claim fail for entries another consumer
        # claimed since the XPENDING above
        claimed = await self.client.xclaim(
            self.stream,
            self.group,
            self.consumer_id,
            min_idle_time=min_idle,
            message_ids=list(delivered),
        )

        messages: list[QueueMessage] = []
        for message_id, fields in claimed or []:
            if message_id is None:
                continue
            mid = decode(message_id) or ""
            delivery_count = delivered.get(mid, 0) + 1

            if not fields:
                # Entry was trimmed or deleted while pending
                logger.warning(f"Pending message {mid} no longer exists, acknowledging")
                await self.ack(mid)
                continue

            if delivery_count > self.config.max_deliveries:
                await self.dead_letter(
                    mid, fields, reason="max_deliveries_exceeded", delivery_count=delivery_count
                )
                continue

            message = await self._decode_or_dead_letter(mid, fields, delivery_count)
            if message is not None:
                messages.append(message)

        if messages:
            self._metrics.tasks_reclaimed_total.labels(stream=self.stream).inc(len(messages))
            logger.info(f"Reclaimed {len(messages)} idle messages from {self.stream}")
        return messages

    async def dead_letter(
        self,
        message_id: bytes | str,
        fields: Mapping[bytes, bytes],
        reason: str,
        delivery_count: int,
    ) -> None:
        """Copy a message to the dead-letter stream and acknowledge it.

        Both steps run in one MULTI block, so the message is never lost
        between them.
        """
        mid = decode(message_id) or ""
        entry: dict[Any, Any] = {
            **fields,
            b"original_id": mid,
            b"original_stream": self.stream,
            b"reason": reason,
            b"delivery_count": str(delivery_count),
            b"dead_at": datetime.now(timezone.utc).isoformat(),
        }
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.xadd(self.dead_letter_stream, entry)
            pipe.xack(self.stream, self.group, mid)
            await pipe.execute()

        self._metrics.tasks_dead_lettered_total.labels(
            stream=self.stream, reason=reason.split(":", 1)[0]
        ).inc()
        logger.warning(
            f"Moved message {mid} to {self.dead_letter_stream} "
            f"after {delivery_count} deliveries: {reason}"
        )

    async def pending(self, count: int = 100) -> list[PendingEntry]:
        """List the oldest ``count`` entries of the group's PEL."""
        rows = await self.client.xpending_range(
            self.stream, self.group, min="-", max="+", count=count
        )
        return [
            PendingEntry(
                message_id=decode(row["message_id"]) or "",
                consumer=decode(row["consumer"]) or "",
                idle_ms=int(row["time_since_delivered"]),
                delivery_count=int(row["times_delivered"]),
            )
            for row in rows
        ]

    # -------------------------------------------------------------------------
    # Retention
    # -------------------------------------------------------------------------

    async def trim(
        self,
        max_len_approx: int,
        min_age_ms: int = 0,
        approximate: bool = True,
    ) -> int:
        """Drop old history that every group has acknowledged.

        The cut point is the lowest of:
        - the oldest id still pending, or not yet delivered, in any group
        - the id that leaves about ``max_len_approx`` entries
        - the id of entries younger than ``min_age_ms``

        Returns the number of entries removed. With ``approximate`` the store
        may remove fewer, never more.
        """
        floor = await self._safe_trim_floor()
        if floor is None:
            return 0

        length = int(await await_redis(self.client.xlen(self.stream)))
        excess = min(length - max_len_approx, TRIM_SCAN_LIMIT)
        if excess <= 0:
            return 0

        oldest = await self.client.xrange(self.stream, min="-", max="+", count=excess)
        if not oldest:
            return 0
        cut = min(floor, parse_stream_id(next_stream_id(oldest[-1][0])))

        if min_age_ms > 0:
            age_cut = (int(time.time() * 1000) - min_age_ms, 0)
            cut = min(cut, age_cut)

        if cut <= parse_stream_id(oldest[0][0]):
            return 0

        removed = int(
            await await_redis(
                self.client.xtrim(self.stream, minid=format_stream_id(*cut), approximate=approximate)
            )
        )
        if removed:
            logger.info(f"Trimmed {removed} acknowledged entries from {self.stream}")
        return removed

    async def _safe_trim_floor(self) -> tuple[int, int] | None:
        """Lowest id any group still needs, or None if nothing is safe to trim."""
        groups = await self.client.xinfo_groups(self.stream)
        if not groups:
            return None

        floor: tuple[int, int] | None = None
        for group in groups:
            name = decode(group["name"]) or ""
            if int(group.get("pending", 0)):
                summary = await self.client.xpending(self.stream, name)
                needed = parse_stream_id(summary["min"])
            else:
                needed = parse_stream_id(next_stream_id(group["last-delivered-id"]))
            floor = needed if floor is None else min(floor, needed)
        return floor

    async def _trim_with_lock(self) -> None:
        max_len = self.config.trim_max_len
        if max_len is None:
            return
        if self.operational is None:
            await self.trim(max_len, self.config.trim_min_age_ms)
            return

        key = OpKeys.trim_lock(self.task_kind)
        token = await self.operational.acquire_lock(key, TRIM_LOCK_TTL_MS)
        if token is None:
            logger.debug(f"Another worker is trimming {self.stream}")
            return
        try:
            await self.trim(max_len, self.config.trim_min_age_ms)
        finally:
            await self.operational.release_lock(key, token)

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run(self, stop: asyncio.Event) -> None:
        """Consume until ``stop`` is set.

        ``stop`` is checked between iterations and before each dispatch,
        never during a handler call. Messages read but not dispatched when
        ``stop`` is set stay pending for a later reclaim.
        """
        loop = asyncio.get_running_loop()
        backoff = self.config.error_backoff
        next_reclaim = loop.time()  # Reclaim once at startup
        next_trim = loop.time() + self.config.trim_interval

        with LogContext(consumer_id=self.consumer_id, stream=self.stream):
            logger.info(f"Consumer {self.consumer_id} started on {self.stream}")

            while not stop.is_set():
                try:
                    if not self._group_ready:
                        await self.ensure_group()

                    if loop.time() >= next_reclaim:
                        next_reclaim = loop.time() + self.config.reclaim_interval
                        await self._process_all(await self.reclaim(), stop)

                    if self.config.trim_max_len is not None and loop.time() >= next_trim:
                        next_trim = loop.time() + self.config.trim_interval
                        await self._trim_with_lock()

                    if stop.is_set():
                        break
                    await self._process_all(await self.read_batch(), stop)
                    backoff = self.config.error_backoff

                except RedisError as e:
                    if "NOGROUP" in str(e):
                        self._group_ready = False
                    logger.error(f"Store error in consumer loop, retrying in {backoff:.1f}s: {e}")
                    await sleep_until_stopped(stop, backoff)
                    backoff = min(backoff * 2, self.config.error_backoff_max)

            logger.info(f"Consumer {self.consumer_id} stopped on {self.stream}")

    async def _process_all(self, messages: list[QueueMessage], stop: asyncio.Event) -> None:
        for index, message in enumerate(messages):
            if stop.is_set():
                logger.info(
                    f"Shutdown requested, leaving {len(messages) - index} messages pending"
                )
                return
            await self.process(message)

    async def _decode_or_dead_letter(
        self,
        message_id: bytes | str,
        fields: Mapping[bytes, bytes],
        delivery_count: int,
    ) -> QueueMessage | None:
        try:
            return decode_message(self.stream, message_id, fields, delivery_count)
        except MalformedMessageError as e:
            await self.dead_letter(
                e.message_id, e.fields, reason=f"malformed: {e.reason}", delivery_count=delivery_count
            )
            return None


async def sleep_until_stopped(stop: asyncio.Event, timeout: float) -> None:
    """Sleep for ``timeout`` seconds, waking early if ``stop`` is set."""
    try:
        await asyncio.wait_for(stop.wait(), timeout)
    except asyncio.TimeoutError:
        pass
