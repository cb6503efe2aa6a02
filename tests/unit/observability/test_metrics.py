"""Tests for the Prometheus metrics registry."""

from conveyor.observability.metrics import MetricsRegistry, get_metrics


def test_uninitialized_registry_exposes_placeholder() -> None:
    assert MetricsRegistry().generate_latest() == b"# Metrics not initialized\n"


def test_get_metrics_is_shared() -> None:
    assert get_metrics() is get_metrics()


def test_exposition_includes_recorded_samples() -> None:
    metrics = get_metrics()
    metrics.tasks_dead_lettered_total.labels(
        stream="stream:tasks:metrics-test", reason="malformed"
    ).inc()

    body = metrics.generate_latest().decode()

    assert "conveyor_tasks_dead_lettered_total" in body
    assert 'stream="stream:tasks:metrics-test"' in body
