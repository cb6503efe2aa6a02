"""Task producer: appends tasks to durable streams.

Example:
    producer = QueueProducer(redis)

    # After the transaction that created order 42 has committed
    message_id = await producer.enqueue_task("email", {"order_id": 42}, task_type="order_confirmation")
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from conveyor.keys import StreamKeys
from conveyor.observability.metrics import get_metrics
from conveyor.queue.messages import encode_fields
from conveyor.store import await_redis, decode

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class QueueProducer:
    """Appends tasks to ``stream:tasks:*`` streams.

    Appends never block on consumers and never cap the stream: dropping old
    entries is left to :meth:`QueueConsumer.trim`, which knows what is still
    pending.

    Tasks whose handlers read rows written by the caller must be enqueued
    only after that transaction commits (see
    :meth:`conveyor.persistence.db.Transaction.after_commit`).
    """

    def __init__(self, client: Redis) -> None:
        self.client = client
        self._metrics = get_metrics()

    async def enqueue(self, stream: str, task_type: str, payload: Any) -> str:
        """Append a task to ``stream`` and return its store-assigned id."""
        fields = encode_fields(task_type, payload)
        message_id = await await_redis(self.client.xadd(stream, fields))  # type: ignore[arg-type]
        mid = decode(message_id) or ""

        self._metrics.tasks_enqueued_total.labels(stream=stream).inc()
        logger.info(f"Enqueued {task_type} on {stream} as {mid}")
        return mid

    async def enqueue_task(
        self,
        task_kind: str,
        payload: Any,
        task_type: str | None = None,
    ) -> str:
        """Append a task to ``stream:tasks:<task_kind>``.

        ``task_type`` defaults to the task kind.
        """
        return await self.enqueue(StreamKeys.tasks(task_kind), task_type or task_kind, payload)
