"""Prometheus metrics for conveyor.

Provides metrics collection for:
- Cache reads (hits, misses, store errors) and invalidations
- Task flow (enqueued, processed, failed, reclaimed, dead-lettered)
- Handler latency

Usage:
    from conveyor.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.tasks_processed_total.labels(stream="stream:tasks:email").inc()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from prometheus_client import REGISTRY, Counter, Histogram, generate_latest, start_http_server

if TYPE_CHECKING:
    from wsgiref.simple_server import WSGIServer

logger = logging.getLogger(__name__)


@dataclass
class MetricsRegistry:
    """Registry for Prometheus metrics."""

    # Cache metrics
    cache_hits_total: Any = None
    cache_misses_total: Any = None
    cache_errors_total: Any = None
    cache_invalidations_total: Any = None

    # Queue metrics
    tasks_enqueued_total: Any = None
    tasks_processed_total: Any = None
    tasks_failed_total: Any = None
    tasks_reclaimed_total: Any = None
    tasks_dead_lettered_total: Any = None
    handler_duration_seconds: Any = None

    # Internal state
    _initialized: bool = field(default=False, repr=False)
    _registry: Any = field(default=None, repr=False)

    def initialize(self) -> None:
        """Initialize Prometheus metrics."""
        if self._initialized:
            return

        self._registry = REGISTRY

        self.cache_hits_total = Counter(
            "conveyor_cache_hits_total",
            "Cache hits",
            ["layer"],
        )

        self.cache_misses_total = Counter(
            "conveyor_cache_misses_total",
            "Cache misses",
        )

        self.cache_errors_total = Counter(
            "conveyor_cache_errors_total",
            "Store errors while serving cache operations",
            ["operation"],
        )

        self.cache_invalidations_total = Counter(
            "conveyor_cache_invalidations_total",
            "Cache invalidations",
            ["resource"],
        )

        self.tasks_enqueued_total = Counter(
            "conveyor_tasks_enqueued_total",
            "Tasks appended to streams",
            ["stream"],
        )

        self.tasks_processed_total = Counter(
            "conveyor_tasks_processed_total",
            "Tasks handled and acknowledged",
            ["stream"],
        )

        self.tasks_failed_total = Counter(
            "conveyor_tasks_failed_total",
            "Handler failures (message left pending)",
            ["stream"],
        )

        self.tasks_reclaimed_total = Counter(
            "conveyor_tasks_reclaimed_total",
            "Pending tasks reclaimed from idle consumers",
            ["stream"],
        )

        self.tasks_dead_lettered_total = Counter(
            "conveyor_tasks_dead_lettered_total",
            "Tasks moved to the dead-letter stream",
            ["stream", "reason"],
        )

        self.handler_duration_seconds = Histogram(
            "conveyor_handler_duration_seconds",
            "Task handler latency in seconds",
            ["stream"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self._initialized = True
        logger.info("Prometheus metrics initialized")

    def generate_latest(self) -> bytes:
        """Generate Prometheus metrics in exposition format."""
        if self._registry is None:
            return b"# Metrics not initialized\n"
        return generate_latest(self._registry)

    def serve(self, port: int, addr: str = "0.0.0.0") -> WSGIServer:
        """Expose the registry on ``http://<addr>:<port>/metrics`` from a daemon thread.

        The caller owns the returned server and must ``shutdown()`` it.
        Raises OSError if the port cannot be bound.
        """
        self.initialize()
        server, _thread = start_http_server(port, addr=addr, registry=self._registry)
        logger.info(f"Serving metrics on {addr}:{server.server_port}")
        return server


# Global metrics registry
metrics_registry = MetricsRegistry()


def get_metrics() -> MetricsRegistry:
    """Get the global metrics registry.

    Initializes metrics on first access.
    """
    if not metrics_registry._initialized:
        metrics_registry.initialize()
    return metrics_registry
