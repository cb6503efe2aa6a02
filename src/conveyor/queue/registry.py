"""Task handler registry.

Business logic lives outside this package. Applications collect their
handlers in a :class:`HandlerRegistry` and point the worker at it:

    registry = HandlerRegistry()

    @registry.handler("order_confirmation")
    async def send_confirmation(message: QueueMessage, resources: WorkerResources) -> None:
        async with resources.session_factory() as session:
            order = await session.get(Order, message.payload["order_id"])
        await mailer.send(order.email, ...)

    # conveyor worker --stream email --registry myapp.tasks:registry

Handlers must be idempotent: delivery is at-least-once.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from conveyor.queue.messages import QueueMessage
    from conveyor.worker import WorkerResources

logger = logging.getLogger(__name__)

# Handler signature: (message, shared worker resources) -> anything
TaskHandler = Callable[["QueueMessage", "WorkerResources"], Awaitable[Any]]

# What a consumer calls for each message
MessageHandler = Callable[["QueueMessage"], Awaitable[Any]]


class UnknownTaskError(LookupError):
    """No handler is registered for a task type."""

    def __init__(self, task_type: str) -> None:
        super().__init__(f"No handler registered for task type: {task_type}")
        self.task_type = task_type


class TaskRejected(Exception):
    """Raised by a handler for a message that can never succeed.

    The consumer dead-letters the message instead of leaving it pending for
    another delivery. Use it for payloads that fail validation, not for
    transient failures.
    """


class HandlerRegistry:
    """Maps task types to handler coroutines."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    @property
    def task_types(self) -> list[str]:
        return sorted(self._handlers)

    def register(self, task_type: str, handler: TaskHandler) -> None:
        """Register a handler for a task type.

        Registering a second handler for the same type replaces the first.
        """
        if task_type in self._handlers:
            logger.warning(f"Replacing handler for task type: {task_type}")
        self._handlers[task_type] = handler
        logger.info(f"Registered handler for task type: {task_type}")

    def handler(self, task_type: str) -> Callable[[TaskHandler], TaskHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(func: TaskHandler) -> TaskHandler:
            self.register(task_type, func)
            return func

        return decorator

    def get(self, task_type: str) -> TaskHandler:
        try:
            return self._handlers[task_type]
        except KeyError:
            raise UnknownTaskError(task_type) from None

    def bind(self, resources: WorkerResources) -> MessageHandler:
        """Return a per-message dispatcher with ``resources`` applied."""

        async def dispatch(message: QueueMessage) -> Any:
            handler = self.get(message.task_type)
            return await handler(message, resources)

        return dispatch


def load_registry(path: str) -> HandlerRegistry:
    """Import a registry from ``package.module:attribute``.

    Raises:
        ValueError: If the path is malformed or does not name a registry
        ImportError: If the module cannot be imported
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Registry path must look like 'package.module:attribute', got {path!r}")

    module = importlib.import_module(module_name)
    try:
        registry = getattr(module, attr)
    except AttributeError:
        raise ValueError(f"Module {module_name} has no attribute {attr!r}") from None

    if not isinstance(registry, HandlerRegistry):
        raise ValueError(f"{path} is a {type(registry).__name__}, not a HandlerRegistry")
    return registry
