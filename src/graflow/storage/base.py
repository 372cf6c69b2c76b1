"""
Channel and TaskQueue - abstract interfaces for storage backends.

Design Pattern: Adapter Pattern
Channel and TaskQueue define the target interfaces that every backend
implements. Memory, SQLite and Redis backends adapt to these common
interfaces, so swapping the backend never requires changes to task logic:
this is the mechanism that turns a single-process workflow into a
distributed one.

Design Principle: Dependency Inversion (SOLID)
The engine, the group executor and the worker depend on these
abstractions, not on concrete storage implementations.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from graflow.models import TaskSpec

RESULT_SUFFIX = ".__result__"
"""Channel keys holding task return values end with this suffix."""


def result_key(task_id: str) -> str:
    """Channel key under which ``task_id``'s return value is stored."""
    return f"{task_id}{RESULT_SUFFIX}"


class StorageError(Exception):
    """
    Storage operation failed.

    Custom exception with context, not generic Exception.
    """

    pass


_MISSING = object()


class Channel(ABC):
    """
    Namespaced key-value store shared by the tasks of one workflow run.

    Values are arbitrary picklable objects. ``append``/``prepend`` give list
    semantics; every write accepts an optional TTL in seconds. Expiry is
    evaluated lazily: any read past expiry acts as a miss and removes the
    entry.

    Every key is scoped by ``namespace`` and ``session_id`` so that
    producers and workers agreeing on both see the same state while
    concurrent runs stay isolated.
    """

    def __init__(self, session_id: str, namespace: str = "graflow"):
        self.session_id = session_id
        self.namespace = namespace

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def connect(self) -> None:
        """Open backend connections (no-op for in-process backends)."""
        return None

    async def close(self) -> None:
        """Release backend connections."""
        return None

    @property
    def backend_name(self) -> str:
        """Short backend identifier recorded in checkpoints."""
        return "memory"

    @property
    def is_shared(self) -> bool:
        """True if state is visible to other processes and outlives this one.

        Checkpoints of shared channels store a session pointer instead of
        the channel contents.
        """
        return False

    # ========================================================================
    # Key-value Operations
    # ========================================================================

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """
        Store ``value`` under ``key``, replacing any previous value.

        Args:
            key: Channel key
            value: Any picklable value
            ttl: Optional time-to-live in seconds
        """
        pass

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        """
        Read a value.

        Returns ``default`` when the key is absent or expired; an expired
        entry is removed as a side effect. List entries are returned as
        Python lists.
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if it existed."""
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """True if the key is present and not expired."""
        pass

    @abstractmethod
    async def append(self, key: str, value: Any, ttl: float | None = None) -> int:
        """
        Add ``value`` to the end of the list under ``key``.

        Creates the list if the key is absent. A TTL, when given, applies to
        the whole list.

        Returns:
            Length of the list after the append

        Raises:
            StorageError: If ``key`` holds a non-list value
        """
        pass

    @abstractmethod
    async def prepend(self, key: str, value: Any, ttl: float | None = None) -> int:
        """Add ``value`` to the front of the list under ``key`` (see append)."""
        pass

    @abstractmethod
    async def incr(self, key: str, amount: int = 1) -> int:
        """
        Atomically add ``amount`` to the integer counter under ``key``.

        Used for group barrier counters; must be atomic across every process
        sharing the channel.

        Returns:
            Counter value after the increment
        """
        pass

    @abstractmethod
    async def keys(self) -> list[str]:
        """All live (non-expired) keys of this session."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove every key of this session."""
        pass

    # ========================================================================
    # Snapshot Operations - Used by checkpoints of process-local channels
    # ========================================================================

    async def snapshot(self) -> dict[str, tuple[Any, datetime | None]]:
        """
        Copy of the channel contents as ``{key: (value, expires_at)}``.

        Default implementation reads key by key; backends that track expiry
        override it to preserve TTLs.
        """
        data: dict[str, tuple[Any, datetime | None]] = {}
        for key in await self.keys():
            value = await self.get(key, _MISSING)
            if value is not _MISSING:
                data[key] = (value, None)
        return data

    async def restore(self, data: Mapping[str, tuple[Any, datetime | None]]) -> None:
        """Replace the channel contents with a snapshot."""
        await self.clear()
        now = datetime.now(UTC)
        for key, (value, expires_at) in data.items():
            ttl = None
            if expires_at is not None:
                ttl = (expires_at - now).total_seconds()
                if ttl <= 0:
                    continue
            await self.set(key, value, ttl=ttl)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(namespace={self.namespace!r}, "
            f"session_id={self.session_id!r})"
        )


class TaskQueue(ABC):
    """
    Ordered work queue of pending TaskSpecs.

    Dequeue is claim-and-retrieve in one call: a spec is delivered to at
    most one consumer under normal operation. Specs whose
    ``scheduled_for`` lies in the future are skipped (left in the queue)
    until they become ready.
    """

    def __init__(self, name: str = "default", namespace: str = "graflow"):
        self.name = name
        self.namespace = namespace

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @property
    def backend_name(self) -> str:
        return "memory"

    @property
    def is_shared(self) -> bool:
        return False

    @abstractmethod
    async def enqueue(self, spec: TaskSpec) -> str:
        """
        Add a spec to the back of the queue.

        Returns:
            The spec_id of the enqueued spec
        """
        pass

    @abstractmethod
    async def enqueue_front(self, spec: TaskSpec) -> str:
        """Add a spec to the front of the queue (resumed tasks run first)."""
        pass

    @abstractmethod
    async def dequeue(self, worker_id: str | None = None) -> TaskSpec | None:
        """
        Claim and retrieve the first ready spec.

        Args:
            worker_id: Optional consumer identifier (for logging/diagnostics)

        Returns:
            TaskSpec if a ready spec was available, None otherwise
        """
        pass

    @abstractmethod
    async def size(self) -> int:
        """Number of pending specs (ready or delayed)."""
        pass

    @abstractmethod
    async def pending(self) -> list[TaskSpec]:
        """Snapshot of the pending specs in queue order (not claimed)."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Drop every pending spec."""
        pass

    async def is_empty(self) -> bool:
        return await self.size() == 0

    async def next_ready_at(self) -> datetime | None:
        """Earliest ``scheduled_for`` among delayed specs, None if none are delayed."""
        times = [s.scheduled_for for s in await self.pending() if s.scheduled_for is not None]
        return min(times) if times else None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(namespace={self.namespace!r}, name={self.name!r})"


# =============================================================================
# Notification Source Protocol - Event-Driven Queues
# =============================================================================


@runtime_checkable
class WorkNotificationSource(Protocol):
    """
    Protocol for queues that support event-driven work notifications.

    This protocol enables consumers to wait for work instead of polling.
    Queues that can't provide efficient notifications (e.g. a queue shared
    with other hosts) skip it and consumers fall back to polling.

    **Contract**:
    1. Maintain an asyncio.Event for work notifications
    2. Call ``event.set()`` when work becomes available
    3. Consumers ``await event.wait()`` and then ``event.clear()``
    """

    def work_notify(self) -> asyncio.Event:
        """Return event that signals when work becomes available."""
        ...
