"""In-memory storage implementation for graflow.

Design Pattern: Adapter Pattern
MemoryChannel and MemoryTaskQueue adapt in-process dictionaries and
deques to the Channel and TaskQueue interfaces.

Fast, but not shared across processes: state lives and dies with the
process. Instances are immediately usable after __init__.
"""

from __future__ import annotations

import asyncio
import copy
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from graflow.models import TaskSpec
from graflow.storage.base import Channel, StorageError, TaskQueue


@dataclass
class _Entry:
    value: Any
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


def _expiry(ttl: float | None) -> datetime | None:
    if ttl is None:
        return None
    return datetime.now(UTC) + timedelta(seconds=ttl)


class MemoryChannel(Channel):
    """In-memory channel for single-process runs and tests.

    Can be substituted for RedisChannel without changing task code.

    Usage:
        channel = MemoryChannel(session_id)
        await channel.set("count", 1, ttl=60)
    """

    def __init__(self, session_id: str, namespace: str = "graflow"):
        super().__init__(session_id, namespace)
        self._data: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> _Entry | None:
        """Entry for ``key`` or None; removes it if expired (lock must be held)."""
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(datetime.now(UTC)):
            del self._data[key]
            return None
        return entry

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        # Values are copied in and out, as the pickling backends do
        value = copy.deepcopy(value)
        async with self._lock:
            self._data[key] = _Entry(value=value, expires_at=_expiry(ttl))

    async def get(self, key: str, default: Any = None) -> Any:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return default
            return copy.deepcopy(entry.value)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None

    async def _push(self, key: str, value: Any, ttl: float | None, front: bool) -> int:
        value = copy.deepcopy(value)
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry(value=[])
                self._data[key] = entry
            elif not isinstance(entry.value, list):
                raise StorageError(f"Channel key {key!r} holds a non-list value")

            if front:
                entry.value.insert(0, value)
            else:
                entry.value.append(value)
            if ttl is not None:
                entry.expires_at = _expiry(ttl)
            return len(entry.value)

    async def append(self, key: str, value: Any, ttl: float | None = None) -> int:
        return await self._push(key, value, ttl, front=False)

    async def prepend(self, key: str, value: Any, ttl: float | None = None) -> int:
        return await self._push(key, value, ttl, front=True)

    async def incr(self, key: str, amount: int = 1) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _Entry(value=0)
                self._data[key] = entry
            elif not isinstance(entry.value, int):
                raise StorageError(f"Channel key {key!r} holds a non-integer value")
            entry.value += amount
            return entry.value

    async def keys(self) -> list[str]:
        async with self._lock:
            now = datetime.now(UTC)
            for key in [k for k, e in self._data.items() if e.is_expired(now)]:
                del self._data[key]
            return list(self._data)

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()

    async def snapshot(self) -> dict[str, tuple[Any, datetime | None]]:
        async with self._lock:
            now = datetime.now(UTC)
            return {
                key: (copy.deepcopy(entry.value), entry.expires_at)
                for key, entry in self._data.items()
                if not entry.is_expired(now)
            }


class MemoryTaskQueue(TaskQueue):
    """In-memory FIFO task queue.

    Implements WorkNotificationSource: consumers can wait on
    ``work_notify()`` instead of polling.
    """

    def __init__(self, name: str = "default", namespace: str = "graflow"):
        super().__init__(name, namespace)
        self._specs: deque[TaskSpec] = deque()
        self._lock = asyncio.Lock()
        self._work_notify = asyncio.Event()

    def work_notify(self) -> asyncio.Event:
        return self._work_notify

    async def enqueue(self, spec: TaskSpec) -> str:
        async with self._lock:
            self._specs.append(spec)
            # NOTE: the consumer clears the event upon waking; clearing here would lose signals.
            self._work_notify.set()
            return spec.spec_id

    async def enqueue_front(self, spec: TaskSpec) -> str:
        async with self._lock:
            self._specs.appendleft(spec)
            self._work_notify.set()
            return spec.spec_id

    async def dequeue(self, worker_id: str | None = None) -> TaskSpec | None:
        """Claim the first ready spec, leaving delayed specs in place."""
        async with self._lock:
            now = datetime.now(UTC)
            for index, spec in enumerate(self._specs):
                if spec.is_ready(now):
                    del self._specs[index]
                    # Daisy-chain: wake other consumers if more work remains
                    if self._specs:
                        self._work_notify.set()
                    return spec
            return None

    async def size(self) -> int:
        async with self._lock:
            return len(self._specs)

    async def pending(self) -> list[TaskSpec]:
        async with self._lock:
            return list(self._specs)

    async def clear(self) -> None:
        async with self._lock:
            self._specs.clear()
