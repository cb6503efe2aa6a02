"""Tests for the task handler registry."""

import sys
import types
from unittest.mock import AsyncMock, MagicMock

import pytest

from conveyor.queue.messages import decode_message, encode_fields
from conveyor.queue.registry import HandlerRegistry, UnknownTaskError, load_registry


def make_message(task_type: str = "order_confirmation"):
    return decode_message("stream:tasks:email", "1-0", encode_fields(task_type, {"order_id": 1}))


class TestHandlerRegistry:
    """Tests for HandlerRegistry."""

    def test_register_via_decorator(self) -> None:
        registry = HandlerRegistry()

        @registry.handler("order_confirmation")
        async def send(message, resources) -> None:
            pass

        assert "order_confirmation" in registry
        assert len(registry) == 1
        assert registry.get("order_confirmation") is send

    def test_unknown_type_raises(self) -> None:
        with pytest.raises(UnknownTaskError) as exc_info:
            HandlerRegistry().get("nope")
        assert exc_info.value.task_type == "nope"

    def test_register_replaces(self) -> None:
        registry = HandlerRegistry()
        first, second = AsyncMock(), AsyncMock()
        registry.register("email", first)
        registry.register("email", second)

        assert registry.get("email") is second
        assert registry.task_types == ["email"]

    @pytest.mark.asyncio
    async def test_bind_passes_resources(self) -> None:
        """Bound dispatch calls the handler with the shared resources."""
        registry = HandlerRegistry()
        handler = AsyncMock(return_value="sent")
        registry.register("order_confirmation", handler)
        resources = MagicMock()
        message = make_message()

        result = await registry.bind(resources)(message)

        assert result == "sent"
        handler.assert_awaited_once_with(message, resources)

    @pytest.mark.asyncio
    async def test_bind_unknown_type(self) -> None:
        dispatch = HandlerRegistry().bind(MagicMock())
        with pytest.raises(UnknownTaskError):
            await dispatch(make_message("unregistered"))


class TestLoadRegistry:
    """Tests for load_registry."""

    @pytest.fixture
    def tasks_module(self, monkeypatch: pytest.MonkeyPatch) -> types.ModuleType:
        module = types.ModuleType("fake_app_tasks")
        module.registry = HandlerRegistry()  # type: ignore[attr-defined]
        module.not_a_registry = object()  # type: ignore[attr-defined]
        monkeypatch.setitem(sys.modules, "fake_app_tasks", module)
        return module

    def test_load(self, tasks_module: types.ModuleType) -> None:
        assert load_registry("fake_app_tasks:registry") is tasks_module.registry

    @pytest.mark.parametrize(
        "path",
        [
            "fake_app_tasks",
            "fake_app_tasks:",
            ":registry",
            "fake_app_tasks:missing",
            "fake_app_tasks:not_a_registry",
        ],
    )
    def test_invalid_paths(self, tasks_module: types.ModuleType, path: str) -> None:
        with pytest.raises(ValueError):
            load_registry(path)

    def test_missing_module(self) -> None:
        with pytest.raises(ImportError):
            load_registry("no_such_module_anywhere:registry")
