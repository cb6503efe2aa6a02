"""Tests for the worker process lifecycle."""

import asyncio
import os
import re
import signal
import urllib.request
from unittest.mock import AsyncMock, MagicMock

import pytest

from conveyor.config import Settings
from conveyor.observability.metrics import MetricsRegistry
from conveyor.persistence import db as db_module
from conveyor.queue.registry import HandlerRegistry
from conveyor.worker import (
    StartupError,
    WorkerConfig,
    WorkerProcess,
    generate_consumer_id,
)


class FakeConsumer:
    """Stands in for QueueConsumer.run with a scripted behaviour."""

    def __init__(self, stream: str, behaviour: str = "wait") -> None:
        self.stream = stream
        self.behaviour = behaviour
        self.started = asyncio.Event()
        self.cancelled = False

    async def run(self, stop: asyncio.Event) -> None:
        self.started.set()
        if self.behaviour == "crash":
            raise RuntimeError("consumer loop died")
        try:
            if self.behaviour == "stuck":
                await asyncio.sleep(3600)  # A handler that ignores shutdown
            else:
                await stop.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class TestWorkerConfig:
    def test_defaults(self) -> None:
        config = WorkerConfig()

        assert config.startup_timeout == 10.0
        assert config.shutdown_grace == 30.0
        assert config.db_pool_size == 5
        assert config.consumer.max_deliveries == 5


def test_consumer_id_format() -> None:
    consumer_id = generate_consumer_id()

    assert re.fullmatch(rf".+-{os.getpid()}-[0-9a-f]{{8}}", consumer_id)
    assert generate_consumer_id() != consumer_id


class TestWorkerProcess:
    """Tests for WorkerProcess."""

    @pytest.fixture
    def engine(self) -> AsyncMock:
        return AsyncMock()

    @pytest.fixture
    def db_ping(self, monkeypatch: pytest.MonkeyPatch) -> AsyncMock:
        ping = AsyncMock(return_value=None)
        monkeypatch.setattr(db_module, "ping", ping)
        return ping

    @pytest.fixture
    def make_worker(self, mock_redis: AsyncMock, engine: AsyncMock, db_ping: AsyncMock):
        def factory(**config) -> WorkerProcess:
            return WorkerProcess(
                Settings(),
                HandlerRegistry(),
                streams=["email", "thumbnails", "email"],
                config=WorkerConfig(**config),
                consumer_id="host-1-abcd1234",
                redis_factory=MagicMock(return_value=mock_redis),
                engine_factory=MagicMock(return_value=engine),
            )

        return factory

    def test_streams_resolved_and_deduplicated(self, make_worker) -> None:
        worker = make_worker()

        assert worker.streams == ["stream:tasks:email", "stream:tasks:thumbnails"]

    def test_requires_a_stream(self) -> None:
        with pytest.raises(ValueError):
            WorkerProcess(Settings(), HandlerRegistry(), streams=[])

    @pytest.mark.asyncio
    async def test_start_pings_both_dependencies(
        self, make_worker, mock_redis: AsyncMock, engine: AsyncMock, db_ping: AsyncMock
    ) -> None:
        worker = make_worker()

        resources = await worker.start()

        mock_redis.ping.assert_awaited_once()
        db_ping.assert_awaited_once_with(engine)
        assert resources.redis is mock_redis
        assert resources.engine is engine
        assert resources.cache.client is mock_redis
        assert resources.producer.client is mock_redis

    @pytest.mark.asyncio
    async def test_start_fails_on_unreachable_redis(
        self, make_worker, mock_redis: AsyncMock, engine: AsyncMock
    ) -> None:
        """A failed ping is fatal and releases what was opened."""
        mock_redis.ping.side_effect = ConnectionRefusedError("redis down")
        worker = make_worker()

        with pytest.raises(StartupError):
            await worker.start()

        mock_redis.aclose.assert_awaited_once()
        engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_times_out(
        self, make_worker, db_ping: AsyncMock, mock_redis: AsyncMock
    ) -> None:
        async def hang(*args) -> None:
            await asyncio.sleep(3600)

        db_ping.side_effect = hang
        worker = make_worker(startup_timeout=0.05)

        with pytest.raises(StartupError, match="not reachable"):
            await worker.start()
        mock_redis.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_until_shutdown(
        self, make_worker, mock_redis: AsyncMock, engine: AsyncMock, monkeypatch
    ) -> None:
        """Graceful shutdown exits 0 and releases both clients."""
        worker = make_worker()
        consumers = [FakeConsumer(stream) for stream in worker.streams]
        monkeypatch.setattr(worker, "build_consumers", lambda resources: consumers)

        task = asyncio.create_task(worker.run())
        await asyncio.wait_for(consumers[0].started.wait(), timeout=1.0)
        worker.request_shutdown()

        assert await asyncio.wait_for(task, timeout=2.0) == 0
        assert not any(c.cancelled for c in consumers)
        mock_redis.aclose.assert_awaited_once()
        engine.dispose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_heartbeat_written_and_cleared(
        self, make_worker, mock_redis: AsyncMock, monkeypatch
    ) -> None:
        worker = make_worker()
        consumers = [FakeConsumer(stream) for stream in worker.streams]
        monkeypatch.setattr(worker, "build_consumers", lambda resources: consumers)

        task = asyncio.create_task(worker.run())
        await asyncio.wait_for(consumers[0].started.wait(), timeout=1.0)
        await asyncio.sleep(0.01)
        worker.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)

        key, _beat = mock_redis.set.await_args.args
        assert key == "op:worker:heartbeat:host-1-abcd1234"
        assert mock_redis.set.await_args.kwargs == {"ex": 90}
        mock_redis.delete.assert_awaited_with("op:worker:heartbeat:host-1-abcd1234")

    @pytest.mark.asyncio
    async def test_sigterm_triggers_shutdown(self, make_worker, monkeypatch) -> None:
        worker = make_worker()
        consumers = [FakeConsumer(stream) for stream in worker.streams]
        monkeypatch.setattr(worker, "build_consumers", lambda resources: consumers)

        task = asyncio.create_task(worker.run())
        await asyncio.wait_for(consumers[0].started.wait(), timeout=1.0)
        os.kill(os.getpid(), signal.SIGTERM)

        assert await asyncio.wait_for(task, timeout=2.0) == 0
        assert worker.stopping

    @pytest.mark.asyncio
    async def test_grace_period_cancels_stragglers(self, make_worker, monkeypatch) -> None:
        """Loops still busy after the grace period are cancelled, not awaited forever."""
        worker = make_worker(shutdown_grace=0.05)
        consumers = [FakeConsumer(worker.streams[0], "stuck"), FakeConsumer(worker.streams[1])]
        monkeypatch.setattr(worker, "build_consumers", lambda resources: consumers)

        task = asyncio.create_task(worker.run())
        await asyncio.wait_for(consumers[0].started.wait(), timeout=1.0)
        worker.request_shutdown()

        assert await asyncio.wait_for(task, timeout=2.0) == 0
        assert consumers[0].cancelled
        assert not consumers[1].cancelled

    @pytest.mark.asyncio
    async def test_crashed_consumer_exits_nonzero(self, make_worker, monkeypatch) -> None:
        worker = make_worker()
        consumers = [FakeConsumer(worker.streams[0], "crash"), FakeConsumer(worker.streams[1])]
        monkeypatch.setattr(worker, "build_consumers", lambda resources: consumers)

        assert await asyncio.wait_for(worker.run(), timeout=2.0) == 1
        assert worker.stopping

    @pytest.mark.asyncio
    async def test_metrics_served_while_running(self, make_worker, monkeypatch) -> None:
        """Port 0 binds an ephemeral port; the endpoint goes away on shutdown."""
        worker = make_worker(metrics_port=0)
        consumers = [FakeConsumer(stream) for stream in worker.streams]
        monkeypatch.setattr(worker, "build_consumers", lambda resources: consumers)

        task = asyncio.create_task(worker.run())
        await asyncio.wait_for(consumers[0].started.wait(), timeout=1.0)

        port = worker.metrics_port
        assert port
        url = f"http://127.0.0.1:{port}/metrics"
        body = await asyncio.to_thread(lambda: urllib.request.urlopen(url, timeout=2).read())
        assert b"conveyor_handler_duration_seconds" in body

        worker.request_shutdown()
        assert await asyncio.wait_for(task, timeout=5.0) == 0
        assert worker.metrics_port is None

    @pytest.mark.asyncio
    async def test_metrics_port_in_use_is_a_startup_failure(
        self, make_worker, mock_redis: AsyncMock, engine: AsyncMock, monkeypatch
    ) -> None:
        def refuse(self, port: int, addr: str = "0.0.0.0"):
            raise OSError(98, "Address already in use")

        monkeypatch.setattr(MetricsRegistry, "serve", refuse)
        worker = make_worker(metrics_port=9100)

        with pytest.raises(StartupError, match="9100"):
            await worker.run()

        mock_redis.aclose.assert_awaited_once()
        engine.dispose.assert_awaited_once()
