"""Process-wide logging setup for workers and API processes.

Two output shapes share one context mechanism:
- ``json``: one orjson-encoded object per line, for log shippers
- ``console``: a single human-readable line, colored on a terminal

Queue context (consumer, stream, message id) lives in context variables, so
every record logged inside a consumer loop or a handler carries it without
threading it through call signatures.

Usage:
    configure_logging(json_format=settings.json_logs, level=settings.log_level)

    with LogContext(stream="stream:tasks:email", message_id="1700000000000-0"):
        logger.info("Dispatching")  # Record carries stream and message_id
"""

from __future__ import annotations

import contextvars
import logging
import sys
from datetime import datetime, timezone
from typing import Any

import orjson

consumer_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("consumer_id", default="")
stream_var: contextvars.ContextVar[str] = contextvars.ContextVar("stream", default="")
message_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("message_id", default="")

_CONTEXT_VARS: dict[str, contextvars.ContextVar[str]] = {
    "consumer_id": consumer_id_var,
    "stream": stream_var,
    "message_id": message_id_var,
}

# Attributes every LogRecord has; anything else came in through ``extra=``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
}

# Chatty libraries kept at WARNING regardless of the configured level
_QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "asyncio")


def current_context() -> dict[str, str]:
    """Queue context fields that are set in the current task."""
    return {name: value for name, var in _CONTEXT_VARS.items() if (value := var.get())}


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Example line:
        {"timestamp":"2026-01-10T12:34:56.789000+00:00","level":"ERROR",
         "logger":"conveyor.queue.consumer","message":"Handler failed ...",
         "consumer_id":"worker-1-1234-ab12cd34","stream":"stream:tasks:email",
         "message_id":"1700000000000-0","exception":{...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(current_context())

        extras = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        payload.update(extras)

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, _ = record.exc_info
            payload["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }

        return orjson.dumps(payload, default=str).decode()


class ConsoleFormatter(logging.Formatter):
    """Single-line records for a developer terminal.

    Example line:
        12:34:56.789 ERROR    conveyor.queue.consumer  Handler failed [email 1700000000000-0]
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",  # Dim
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[1;31m",  # Bold red
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__(datefmt="%H:%M:%S")
        self.use_colors = use_colors and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        when = f"{self.formatTime(record, self.datefmt)}.{int(record.msecs):03d}"
        level = f"{record.levelname:<8}"
        if self.use_colors:
            level = f"{self.LEVEL_COLORS.get(record.levelno, '')}{level}{self.RESET}"

        line = f"{when} {level} {record.name:<24} {record.getMessage()}"

        tags = []
        stream = stream_var.get()
        if stream:
            tags.append(stream.rsplit(":", 1)[-1])
        message_id = message_id_var.get()
        if message_id:
            tags.append(message_id)
        if tags:
            line = f"{line} [{' '.join(tags)}]"

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(
    json_format: bool = False,
    level: str = "INFO",
    use_colors: bool = True,
) -> None:
    """Install a single stderr handler on the root logger.

    Replaces any handlers already installed, so calling it twice is safe.
    """
    formatter: logging.Formatter = (
        JsonFormatter() if json_format else ConsoleFormatter(use_colors=use_colors)
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class LogContext:
    """Set queue context fields for the duration of a ``with`` block.

    Only ``consumer_id``, ``stream`` and ``message_id`` are accepted.
    """

    def __init__(self, **fields: str) -> None:
        unknown = sorted(set(fields) - set(_CONTEXT_VARS))
        if unknown:
            raise TypeError(f"Unknown log context fields: {unknown}")
        self.fields = fields
        self._reset: list[tuple[contextvars.ContextVar[str], contextvars.Token[str]]] = []

    def __enter__(self) -> LogContext:
        for name, value in self.fields.items():
            var = _CONTEXT_VARS[name]
            self._reset.append((var, var.set(value)))
        return self

    def __exit__(self, *exc: object) -> None:
        while self._reset:
            var, token = self._reset.pop()
            var.reset(token)
