"""Observability module for conveyor.

Provides structured logging and metrics:
- JSON or console logging with queue context
- Prometheus counters for cache and task flow
"""

from conveyor.observability.logging import (
    LogContext,
    configure_logging,
    consumer_id_var,
    message_id_var,
    stream_var,
)
from conveyor.observability.metrics import (
    MetricsRegistry,
    get_metrics,
    metrics_registry,
)

__all__ = [
    # Logging
    "configure_logging",
    "LogContext",
    "consumer_id_var",
    "stream_var",
    "message_id_var",
    # Metrics
    "MetricsRegistry",
    "metrics_registry",
    "get_metrics",
]
