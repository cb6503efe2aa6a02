"""Async database engine, session factory and post-commit hooks.

Provides PostgreSQL async connectivity using the SQLAlchemy 2.0 asyncio
extension with the asyncpg driver. The engine is created explicitly by the
process that owns it and passed to whoever needs a session.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from conveyor.config import Settings

logger = logging.getLogger(__name__)

# Bounded pool for worker processes
DEFAULT_POOL_SIZE = 5
DEFAULT_POOL_TIMEOUT = 30

PostCommitHook = Callable[[], Awaitable[object]]


def create_engine(
    settings: Settings,
    pool_size: int = DEFAULT_POOL_SIZE,
    pool_timeout: int = DEFAULT_POOL_TIMEOUT,
) -> AsyncEngine:
    """Create a bounded async engine.

    ``max_overflow=0`` keeps the number of open connections at ``pool_size``.
    """
    return create_async_engine(
        settings.database_url,
        pool_size=pool_size,
        max_overflow=0,
        pool_timeout=pool_timeout,
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_pre_ping=True,  # Verify connection health
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory bound to an engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def ping(engine: AsyncEngine) -> None:
    """Run ``SELECT 1``, raising on failure."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


class Transaction:
    """A session plus hooks that run only after a successful commit.

    Cache invalidations and task enqueues that reference rows written in the
    transaction are registered with :meth:`after_commit`. They run in
    registration order once the commit has returned, and are discarded on
    rollback.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._hooks: list[PostCommitHook] = []

    def after_commit(self, hook: PostCommitHook) -> None:
        """Register a coroutine function to await after commit."""
        self._hooks.append(hook)

    async def run_hooks(self) -> None:
        """Await every hook, even when an earlier one fails.

        Each failure is logged; the first one is re-raised after the rest
        have run, so a failed enqueue never skips a later invalidation.
        """
        hooks, self._hooks = self._hooks, []
        first_error: Exception | None = None
        for hook in hooks:
            try:
                await hook()
            except Exception as e:
                logger.exception(f"Post-commit hook {_hook_name(hook)} failed")
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    def discard_hooks(self) -> None:
        self._hooks.clear()


def _hook_name(hook: PostCommitHook) -> str:
    return getattr(hook, "__qualname__", None) or repr(hook)


@asynccontextmanager
async def transaction(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[Transaction]:
    """Provide a transactional scope whose hooks run after commit.

    Usage:
        async with transaction(session_factory) as tx:
            await tx.session.execute(update(...))
            tx.after_commit(lambda: cache.invalidate(CacheKeys.entry("product", 7)))
            tx.after_commit(lambda: producer.enqueue_task("email", {...}))
    """
    session = session_factory()
    tx = Transaction(session)
    try:
        yield tx
        await session.commit()
    except Exception:
        tx.discard_hooks()
        await session.rollback()
        raise
    finally:
        await session.close()

    await tx.run_hooks()
