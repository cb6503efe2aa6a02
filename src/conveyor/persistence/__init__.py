"""Persistence layer for conveyor.

The relational database is the source of truth for everything cached under
``cache:db:*``. This package only provides connectivity: a bounded async
engine, a session factory, a ping-based health check, and a transaction scope
whose post-commit hooks carry cache invalidations and task enqueues.
"""

from conveyor.persistence.db import (
    Transaction,
    create_engine,
    create_session_factory,
    transaction,
)

__all__ = [
    "create_engine",
    "create_session_factory",
    "Transaction",
    "transaction",
]
