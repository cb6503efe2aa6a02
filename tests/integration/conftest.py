"""Integration test fixtures using Docker.

Provides containerized Redis 7 (and PostgreSQL for the worker tests). Every
test in this directory is skipped when no Docker daemon is reachable.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Iterator

import pytest
import pytest_asyncio
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from conveyor.config import Settings
from conveyor.persistence.db import create_engine, ping
from tests.integration.docker_utils import DockerService, get_docker_client, run_container


def pytest_collection_modifyitems(items):
    for item in items:
        if "tests/integration" in str(item.path).replace("\\", "/"):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def docker_client():
    """Create a Docker client or skip if Docker is unavailable."""
    try:
        client = get_docker_client()
        client.ping()
    except Exception as exc:
        pytest.skip(f"Docker not available: {exc}")
    yield client
    client.close()


@pytest.fixture(scope="session")
def redis_container(docker_client) -> Iterator[DockerService]:
    """Start a Redis 7 container for the test session."""
    with run_container(docker_client, "redis:7-alpine", ports={"6379/tcp": None}) as service:
        yield service


@pytest.fixture(scope="session")
def postgres_container(docker_client) -> Iterator[DockerService]:
    """Start a PostgreSQL container for the test session."""
    env = {
        "POSTGRES_USER": "conveyor",
        "POSTGRES_PASSWORD": "conveyor",
        "POSTGRES_DB": "conveyor",
    }
    with run_container(
        docker_client, "postgres:16-alpine", env=env, ports={"5432/tcp": None}
    ) as service:
        yield service


@pytest.fixture(scope="session")
def redis_url(redis_container: DockerService) -> str:
    return redis_container.url("redis", 6379, "/0")


@pytest.fixture(scope="session")
def database_url(postgres_container: DockerService) -> str:
    host = postgres_container.host
    port = postgres_container.port(5432)
    return f"postgresql+asyncpg://conveyor:conveyor@{host}:{port}/conveyor"


@pytest.fixture
def settings(redis_url: str) -> Settings:
    return Settings(_env_file=None, REDIS_URL=redis_url)


@pytest_asyncio.fixture
async def worker_settings(redis_url: str, database_url: str) -> Settings:
    """Settings pointing at both containers, once PostgreSQL accepts connections."""
    settings = Settings(_env_file=None, REDIS_URL=redis_url, DATABASE_URL=database_url)
    engine = create_engine(settings, pool_size=1)
    try:
        await _wait_for_engine(engine)
    finally:
        await engine.dispose()
    return settings


@pytest_asyncio.fixture
async def redis_client(redis_url: str) -> AsyncIterator[redis.Redis]:
    """Create a Redis client for tests; the database is flushed afterwards."""
    client = redis.from_url(redis_url, decode_responses=False)
    await _wait_for_redis(client)
    yield client
    await client.flushdb()
    await client.aclose()


@pytest_asyncio.fixture
async def second_client(redis_url: str) -> AsyncIterator[redis.Redis]:
    """An independent connection pool, standing in for another process."""
    client = redis.from_url(redis_url, decode_responses=False)
    yield client
    await client.aclose()


async def _wait_for_redis(client: redis.Redis, timeout: float = 30.0) -> None:
    """Wait for Redis to accept connections."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            await client.ping()
            return
        except RedisError:
            if time.monotonic() >= deadline:
                raise
            await asyncio.sleep(0.5)


async def _wait_for_engine(engine, timeout: float = 30.0) -> None:
    """Wait for the database to accept connections."""
    deadline = time.monotonic() + timeout
    while True:
        try:
            await ping(engine)
            return
        except (OSError, SQLAlchemyError):
            if time.monotonic() >= deadline:
                raise
            await asyncio.sleep(0.5)
