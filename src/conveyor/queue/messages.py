"""Stream entry codec and queue value types.

A task is one stream entry with three fields:

- ``type``: task type, used to pick a handler
- ``payload``: JSON-encoded payload (orjson)
- ``enqueued_at``: ISO-8601 UTC timestamp

Entries are immutable once appended; :class:`QueueMessage` is frozen to match.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

import orjson

from conveyor.keys import StreamKeys

FIELD_TYPE = b"type"
FIELD_PAYLOAD = b"payload"
FIELD_ENQUEUED_AT = b"enqueued_at"


class MalformedMessageError(ValueError):
    """A stream entry that cannot be decoded into a QueueMessage.

    Retrying cannot fix it, so the consumer dead-letters it immediately.
    """

    def __init__(self, message_id: str, fields: Mapping[bytes, bytes], reason: str) -> None:
        super().__init__(f"Malformed message {message_id}: {reason}")
        self.message_id = message_id
        self.fields = dict(fields)
        self.reason = reason


@dataclass(frozen=True)
class QueueMessage:
    """A task read from a stream by a consumer group."""

    stream: str
    message_id: str
    task_type: str
    payload: Any
    raw_payload: bytes
    enqueued_at: datetime
    delivery_count: int = 1

    @property
    def task_kind(self) -> str:
        return StreamKeys.kind_of(self.stream)

    def fields(self) -> dict[bytes, bytes]:
        """Stream fields as they were appended."""
        return {
            FIELD_TYPE: self.task_type.encode(),
            FIELD_PAYLOAD: self.raw_payload,
            FIELD_ENQUEUED_AT: self.enqueued_at.isoformat().encode(),
        }


@dataclass(frozen=True)
class PendingEntry:
    """One row of a consumer group's Pending Entries List."""

    message_id: str
    consumer: str
    idle_ms: int
    delivery_count: int


def encode_fields(
    task_type: str,
    payload: Any,
    enqueued_at: datetime | None = None,
) -> dict[bytes, bytes]:
    """Build the stream fields for a new task.

    Raises TypeError if the payload is not JSON-serializable.
    """
    if not task_type:
        raise ValueError("task_type must be non-empty")
    when = enqueued_at or datetime.now(timezone.utc)
    return {
        FIELD_TYPE: task_type.encode(),
        FIELD_PAYLOAD: orjson.dumps(payload),
        FIELD_ENQUEUED_AT: when.isoformat().encode(),
    }


def decode_message(
    stream: str,
    message_id: bytes | str,
    fields: Mapping[bytes, bytes] | None,
    delivery_count: int = 1,
) -> QueueMessage:
    """Decode a stream entry.

    Raises MalformedMessageError when a field is missing or undecodable.
    """
    mid = message_id.decode() if isinstance(message_id, bytes) else message_id
    fields = fields or {}

    missing = [
        name.decode() for name in (FIELD_TYPE, FIELD_PAYLOAD) if name not in fields
    ]
    if missing:
        raise MalformedMessageError(mid, fields, f"missing fields {missing}")

    try:
        task_type = fields[FIELD_TYPE].decode()
        raw_payload = fields[FIELD_PAYLOAD]
        payload = orjson.loads(raw_payload)
        enqueued_raw = fields.get(FIELD_ENQUEUED_AT)
        enqueued_at = (
            datetime.fromisoformat(enqueued_raw.decode())
            if enqueued_raw
            else _time_from_id(mid)
        )
    except ValueError as e:
        raise MalformedMessageError(mid, fields, str(e)) from e

    if not task_type:
        raise MalformedMessageError(mid, fields, "empty task type")

    return QueueMessage(
        stream=stream,
        message_id=mid,
        task_type=task_type,
        payload=payload,
        raw_payload=raw_payload,
        enqueued_at=enqueued_at,
        delivery_count=delivery_count,
    )


def parse_stream_id(message_id: bytes | str) -> tuple[int, int]:
    """Split ``<ms>-<seq>`` into integers for ordering."""
    text = message_id.decode() if isinstance(message_id, bytes) else message_id
    ms, _, seq = text.partition("-")
    return int(ms), int(seq or 0)


def format_stream_id(ms: int, seq: int) -> str:
    return f"{ms}-{seq}"


def next_stream_id(message_id: bytes | str) -> str:
    """The smallest id strictly greater than ``message_id``."""
    ms, seq = parse_stream_id(message_id)
    return format_stream_id(ms, seq + 1)


def _time_from_id(message_id: str) -> datetime:
    ms, _ = parse_stream_id(message_id)
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
