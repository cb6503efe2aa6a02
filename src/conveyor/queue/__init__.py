"""Durable task queue on Redis Streams.

Provides at-least-once task processing with:
- Producers appending typed payloads to ``stream:tasks:<kind>``
- One consumer group (``workers``) per stream
- Acknowledgement only after the handler completes
- Periodic reclaim of entries abandoned by crashed consumers
- Dead-lettering to ``stream:dead:<kind>`` past a delivery ceiling
- Trimming that never drops pending or undelivered entries

Example:
    producer = QueueProducer(redis)
    await producer.enqueue_task("email", {"order_id": 42})

    consumer = QueueConsumer(redis, StreamKeys.tasks("email"), consumer_id, handler)
    await consumer.run(stop_event)
"""

from conveyor.queue.consumer import (
    ConsumerConfig,
    DispatchResult,
    Outcome,
    QueueConsumer,
)
from conveyor.queue.messages import (
    MalformedMessageError,
    PendingEntry,
    QueueMessage,
    decode_message,
    encode_fields,
)
from conveyor.queue.producer import QueueProducer
from conveyor.queue.registry import (
    HandlerRegistry,
    MessageHandler,
    TaskHandler,
    TaskRejected,
    UnknownTaskError,
    load_registry,
)

__all__ = [
    # Messages
    "QueueMessage",
    "PendingEntry",
    "MalformedMessageError",
    "encode_fields",
    "decode_message",
    # Producer
    "QueueProducer",
    # Consumer
    "QueueConsumer",
    "ConsumerConfig",
    "DispatchResult",
    "Outcome",
    # Handlers
    "HandlerRegistry",
    "TaskHandler",
    "MessageHandler",
    "TaskRejected",
    "UnknownTaskError",
    "load_registry",
]
