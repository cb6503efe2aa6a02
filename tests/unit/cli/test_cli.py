"""Tests for the command-line interface."""

import sys
import types
from unittest.mock import AsyncMock, MagicMock

import pytest
from typer.testing import CliRunner

import conveyor.observability as observability
from conveyor.cli import app
from conveyor.cli import enqueue_cmd, pending_cmd
from conveyor.queue.messages import PendingEntry
from conveyor.queue.registry import HandlerRegistry
from conveyor.worker import StartupError, WorkerProcess

runner = CliRunner()


@pytest.fixture
def tasks_module(monkeypatch: pytest.MonkeyPatch) -> types.ModuleType:
    module = types.ModuleType("cli_test_tasks")
    module.registry = HandlerRegistry()  # type: ignore[attr-defined]
    monkeypatch.setitem(sys.modules, "cli_test_tasks", module)
    return module


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    configure = MagicMock()
    monkeypatch.setattr(observability, "configure_logging", configure)
    return configure


class TestEnqueueCommand:
    def test_enqueue_prints_id(self, monkeypatch: pytest.MonkeyPatch) -> None:
        enqueue = AsyncMock(return_value="1700000000000-0")
        monkeypatch.setattr(enqueue_cmd, "_enqueue", enqueue)

        result = runner.invoke(
            app, ["enqueue", "email", "--payload", '{"order_id": 42}', "--type", "confirm"]
        )

        assert result.exit_code == 0
        assert "1700000000000-0" in result.stdout
        enqueue.assert_awaited_once_with("email", {"order_id": 42}, "confirm")

    def test_short_options_after_kind(self, monkeypatch: pytest.MonkeyPatch) -> None:
        enqueue = AsyncMock(return_value="1-0")
        monkeypatch.setattr(enqueue_cmd, "_enqueue", enqueue)

        result = runner.invoke(app, ["enqueue", "thumbnails", "-p", "[1, 2]", "-t", "resize"])

        assert result.exit_code == 0
        enqueue.assert_awaited_once_with("thumbnails", [1, 2], "resize")

    def test_invalid_payload(self) -> None:
        result = runner.invoke(app, ["enqueue", "email", "--payload", "{nope"])

        assert result.exit_code == 1


class TestPendingCommand:
    def test_lists_entries(self, monkeypatch: pytest.MonkeyPatch) -> None:
        entries = [PendingEntry("1-0", "host-1-abcd1234", 61000, 2)]
        inspect = AsyncMock(return_value=entries)
        monkeypatch.setattr(pending_cmd, "_pending", inspect)

        result = runner.invoke(app, ["pending", "email", "--count", "5"])

        assert result.exit_code == 0
        inspect.assert_awaited_once_with("email", 5)
        assert "host-1-abcd1234" in result.stdout
        assert "Total shown: 1" in result.stdout

    def test_empty(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(pending_cmd, "_pending", AsyncMock(return_value=[]))

        result = runner.invoke(app, ["pending", "email"])

        assert result.exit_code == 0
        assert "No pending entries" in result.stdout


class TestWorkerCommand:
    def test_bad_registry_path(self) -> None:
        result = runner.invoke(app, ["worker", "--stream", "email", "--registry", "nowhere"])

        assert result.exit_code == 1

    def test_startup_failure_exits_1(
        self, monkeypatch: pytest.MonkeyPatch, tasks_module: types.ModuleType
    ) -> None:
        monkeypatch.setattr(
            WorkerProcess, "run", AsyncMock(side_effect=StartupError("redis unreachable"))
        )

        result = runner.invoke(
            app, ["worker", "--stream", "email", "--registry", "cli_test_tasks:registry"]
        )

        assert result.exit_code == 1

    def test_graceful_exit(
        self, monkeypatch: pytest.MonkeyPatch, tasks_module: types.ModuleType
    ) -> None:
        monkeypatch.setattr(WorkerProcess, "run", AsyncMock(return_value=0))

        result = runner.invoke(
            app,
            ["worker", "-s", "email", "-s", "thumbnails", "-r", "cli_test_tasks:registry"],
        )

        assert result.exit_code == 0


    def test_metrics_port_passed_to_worker(
        self, monkeypatch: pytest.MonkeyPatch, tasks_module: types.ModuleType
    ) -> None:
        seen: list[int | None] = []

        async def fake_run(self: WorkerProcess) -> int:
            seen.append(self.config.metrics_port)
            return 0

        monkeypatch.setattr(WorkerProcess, "run", fake_run)

        result = runner.invoke(
            app,
            ["worker", "-s", "email", "-r", "cli_test_tasks:registry", "--metrics-port", "9100"],
        )

        assert result.exit_code == 0
        assert seen == [9100]

def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert result.stdout.strip()
