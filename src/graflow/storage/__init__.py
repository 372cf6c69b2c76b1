"""Storage backends for channels and task queues.

Provides multiple storage implementations behind common interfaces:
    - Channel / TaskQueue: Abstract interfaces
    - MemoryChannel / MemoryTaskQueue: In-process storage
    - SqliteChannel / SqliteTaskQueue: SQLite-backed storage shared by one host
    - RedisChannel / RedisTaskQueue: Redis-backed distributed storage

Design: Adapter Pattern + Dependency Inversion (SOLID)
    All storage implementations adapt to the Channel/TaskQueue interfaces.
    Clients depend on abstraction, not concrete implementations,
    enabling easy swapping between storage backends.
"""

from graflow.storage.base import (
    RESULT_SUFFIX,
    Channel,
    StorageError,
    TaskQueue,
    WorkNotificationSource,
    result_key,
)
from graflow.storage.factory import BackendConfig, create_channel, create_queue
from graflow.storage.memory import MemoryChannel, MemoryTaskQueue

# Lazy imports: the SQLite and Redis adapters pull in their drivers only
# when actually used.


def __getattr__(name: str):
    """Lazy import storage implementations."""
    if name in ("SqliteChannel", "SqliteTaskQueue"):
        from graflow.storage import sqlite

        return getattr(sqlite, name)
    elif name in ("RedisChannel", "RedisTaskQueue"):
        from graflow.storage import redis

        return getattr(redis, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Channel",
    "TaskQueue",
    "StorageError",
    "WorkNotificationSource",
    "RESULT_SUFFIX",
    "result_key",
    "BackendConfig",
    "create_channel",
    "create_queue",
    "MemoryChannel",
    "MemoryTaskQueue",
    "SqliteChannel",
    "SqliteTaskQueue",
    "RedisChannel",
    "RedisTaskQueue",
]
