"""Worker process lifecycle.

Provides a worker that:
- Connects to the database and Redis, pinging both under a startup timeout
- Runs one consumer loop per task stream, all sharing the same handles
- Refreshes a heartbeat key as a liveness signal
- Serves Prometheus metrics over HTTP when a port is configured
- Shuts down on SIGTERM/SIGINT, giving in-flight handlers a grace period

Example:
    worker = WorkerProcess(settings, registry, streams=["email", "thumbnails"])
    exit_code = await worker.run()  # blocks until a shutdown signal

A startup failure raises :class:`StartupError`; recovery is left to the
process supervisor.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from uuid import uuid4

import orjson
from redis.exceptions import RedisError

from conveyor import store
from conveyor.cache.manager import CacheManager
from conveyor.cache.operational import OperationalStore
from conveyor.keys import OpKeys, StreamKeys
from conveyor.observability.metrics import get_metrics
from conveyor.persistence import db
from conveyor.queue.consumer import ConsumerConfig, QueueConsumer, sleep_until_stopped
from conveyor.queue.producer import QueueProducer

if TYPE_CHECKING:
    from wsgiref.simple_server import WSGIServer

    from redis.asyncio import Redis
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from conveyor.config import Settings
    from conveyor.queue.registry import HandlerRegistry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1


class StartupError(RuntimeError):
    """A dependency was unreachable at startup."""


@dataclass
class WorkerConfig:
    """Worker lifecycle configuration."""

    startup_timeout: float = 10.0
    shutdown_grace: float = 30.0

    # Liveness
    heartbeat_interval: float = 30.0
    heartbeat_ttl: int = 90

    # Database pool
    db_pool_size: int = db.DEFAULT_POOL_SIZE

    # Prometheus exposition; disabled when None
    metrics_port: int | None = None

    # Per-stream consumer loops
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig)


@dataclass
class WorkerResources:
    """Handles shared by every consumer loop and handler in a worker."""

    redis: Redis
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    cache: CacheManager
    producer: QueueProducer
    operational: OperationalStore


def generate_consumer_id() -> str:
    """Unique consumer name for this process instance."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


class WorkerProcess:
    """Owns the worker's resources and consumer loops."""

    def __init__(
        self,
        settings: Settings,
        registry: HandlerRegistry,
        streams: Sequence[str],
        config: WorkerConfig | None = None,
        consumer_id: str | None = None,
        redis_factory: Callable[[Settings], Redis] = store.create_redis,
        engine_factory: Callable[..., AsyncEngine] = db.create_engine,
    ) -> None:
        if not streams:
            raise ValueError("A worker needs at least one stream to consume")
        self.settings = settings
        self.registry = registry
        self.streams = [StreamKeys.tasks(kind) for kind in dict.fromkeys(streams)]
        self.config = config or WorkerConfig()
        self.consumer_id = consumer_id or generate_consumer_id()
        self._redis_factory = redis_factory
        self._engine_factory = engine_factory
        self._stop = asyncio.Event()
        self._resources: WorkerResources | None = None
        self._metrics_server: WSGIServer | None = None

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    @property
    def metrics_port(self) -> int | None:
        """Port the metrics endpoint is bound to, while it runs."""
        if self._metrics_server is None:
            return None
        return self._metrics_server.server_port

    def request_shutdown(self) -> None:
        """Ask every consumer loop to stop after its current message."""
        if not self._stop.is_set():
            logger.info("Shutdown requested")
        self._stop.set()

    async def start(self) -> WorkerResources:
        """Connect to both dependencies and verify them.

        Raises:
            StartupError: If either ping fails or does not finish within
                ``startup_timeout`` seconds.
        """
        redis_client = self._redis_factory(self.settings)
        engine = self._engine_factory(self.settings, pool_size=self.config.db_pool_size)

        try:
            await asyncio.wait_for(
                asyncio.gather(store.ping(redis_client), db.ping(engine)),
                timeout=self.config.startup_timeout,
            )
        except asyncio.TimeoutError as e:
            await _close(redis_client, engine)
            raise StartupError(
                f"Dependencies not reachable within {self.config.startup_timeout}s"
            ) from e
        except Exception as e:
            await _close(redis_client, engine)
            raise StartupError(f"Dependency health check failed: {e}") from e

        self._resources = WorkerResources(
            redis=redis_client,
            engine=engine,
            session_factory=db.create_session_factory(engine),
            cache=CacheManager(redis_client),
            producer=QueueProducer(redis_client),
            operational=OperationalStore(redis_client),
        )
        logger.info(f"Worker {self.consumer_id} connected to database and Redis")
        return self._resources

    def build_consumers(self, resources: WorkerResources) -> list[QueueConsumer]:
        handler = self.registry.bind(resources)
        return [
            QueueConsumer(
                resources.redis,
                stream,
                self.consumer_id,
                handler,
                config=self.config.consumer,
                operational=resources.operational,
            )
            for stream in self.streams
        ]

    async def run(self) -> int:
        """Run until a shutdown signal, then drain and close.

        Returns the process exit code.
        """
        resources = await self.start()
        if self.config.metrics_port is not None:
            try:
                self._metrics_server = get_metrics().serve(self.config.metrics_port)
            except OSError as e:
                await self.close()
                raise StartupError(
                    f"Cannot serve metrics on port {self.config.metrics_port}: {e}"
                ) from e

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

        exit_code = EXIT_OK
        try:
            consumers = self.build_consumers(resources)
            tasks = [
                asyncio.create_task(consumer.run(self._stop), name=f"consumer:{consumer.stream}")
                for consumer in consumers
            ]
            heartbeat = asyncio.create_task(self._heartbeat_loop(resources), name="heartbeat")
            logger.info(
                f"Worker {self.consumer_id} consuming {', '.join(self.streams)} "
                f"with handlers for {', '.join(self.registry.task_types) or 'nothing'}"
            )

            stop_waiter = asyncio.create_task(self._stop.wait())
            await asyncio.wait([stop_waiter, *tasks], return_when=asyncio.FIRST_COMPLETED)
            stop_waiter.cancel()

            for task in tasks:
                if task.done() and not task.cancelled() and task.exception() is not None:
                    logger.error(
                        f"{task.get_name()} crashed, shutting down",
                        exc_info=task.exception(),
                    )
                    exit_code = EXIT_FAILURE
            self.request_shutdown()

            await self._drain(tasks)
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self._stop_metrics()
            await self.close()

        logger.info(f"Worker {self.consumer_id} stopped")
        return exit_code

    async def close(self) -> None:
        """Release Redis and database connections."""
        if self._resources is None:
            return
        resources, self._resources = self._resources, None
        try:
            await resources.redis.delete(OpKeys.heartbeat(self.consumer_id))
        except RedisError as e:
            logger.debug(f"Could not clear heartbeat: {e}")
        await _close(resources.redis, resources.engine)

    async def _stop_metrics(self) -> None:
        server, self._metrics_server = self._metrics_server, None
        if server is None:
            return
        # shutdown() blocks until the serving thread notices
        await asyncio.to_thread(server.shutdown)
        server.server_close()

    async def _drain(self, tasks: list[asyncio.Task[None]]) -> None:
        """Give running handlers the grace period, then cancel stragglers.

        A cancelled handler's message is never acknowledged; it stays pending
        until another consumer reclaims it.
        """
        running = [task for task in tasks if not task.done()]
        if not running:
            return

        _, pending = await asyncio.wait(running, timeout=self.config.shutdown_grace)
        if pending:
            logger.warning(
                f"{len(pending)} consumer loops still busy after "
                f"{self.config.shutdown_grace}s, cancelling; their messages stay pending"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _heartbeat_loop(self, resources: WorkerResources) -> None:
        key = OpKeys.heartbeat(self.consumer_id)
        while not self._stop.is_set():
            beat = orjson.dumps(
                {
                    "consumer": self.consumer_id,
                    "streams": self.streams,
                    "at": datetime.now(timezone.utc).isoformat(),
                }
            ).decode()
            try:
                await resources.operational.touch(key, beat, self.config.heartbeat_ttl)
                logger.debug(f"Heartbeat {self.consumer_id}")
            except RedisError as e:
                logger.warning(f"Heartbeat failed: {e}")
            await sleep_until_stopped(self._stop, self.config.heartbeat_interval)


async def _close(redis_client: Redis, engine: AsyncEngine) -> None:
    try:
        await redis_client.aclose()
    finally:
        await engine.dispose()
