"""Global pytest configuration and fixtures."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.mocks import aiter_of, make_pipeline


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: tests that need a Docker daemon")


@pytest.fixture
def pipeline() -> MagicMock:
    """Mock pipeline returned by ``mock_redis.pipeline()``."""
    return make_pipeline()


@pytest.fixture
def mock_redis(pipeline: MagicMock) -> AsyncMock:
    """Create mock Redis client."""
    mock = AsyncMock()
    mock.pipeline = MagicMock(return_value=pipeline)
    mock.pubsub = MagicMock()
    mock.scan_iter = MagicMock(side_effect=lambda **kwargs: aiter_of([]))
    mock.hgetall = AsyncMock(return_value={})
    mock.delete = AsyncMock(return_value=1)
    mock.publish = AsyncMock(return_value=1)
    return mock
