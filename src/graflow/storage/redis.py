"""Redis-based channel and task queue implementation.

Provides a Redis backend for distributed execution with true
multi-machine support. Unlike SQLite which requires shared filesystem
access, Redis lets workers run on completely separate machines.

Data Structures:
- {namespace}:{session_id}:{key} (STRING): pickled value, or a decimal
  integer for counters
- {namespace}:{session_id}:{key} (LIST): pickled list items
- {namespace}:queue:{name} (LIST): FIFO queue of ready JSON task specs
- {namespace}:queue:{name}:delayed (ZSET): retry specs scored by scheduled_for
- {namespace}:queue:{name}:dead (LIST): raw entries that failed to parse

Key Features:
- Native TTL: PEXPIRE, so expiry is enforced by the server
- Atomic counters: INCRBY for group barriers
- Atomic operations: MULTI/EXEC pipelines for push + expire
- Connection pooling: redis-py connection pool for concurrent access

Design: Adapter Pattern
Adapts the Redis key-value store to the Channel and TaskQueue
interfaces.
"""

from __future__ import annotations

import json
import pickle
from datetime import UTC, datetime
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from graflow.models import TaskSpec
from graflow.storage.base import Channel, StorageError, TaskQueue

# Pickle protocol 2+ payloads always start with the PROTO opcode
_PICKLE_PREFIX = b"\x80"


def _encode(value: Any) -> bytes:
    """Plain ints are stored as decimal strings so INCRBY can operate on them."""
    if type(value) is int:
        return str(value).encode()
    return pickle.dumps(value)


def _decode(raw: bytes) -> Any:
    if raw.startswith(_PICKLE_PREFIX):
        return pickle.loads(raw)
    return int(raw)


def _ttl_ms(ttl: float) -> int:
    return max(1, int(ttl * 1000))


class _RedisConnection:
    """Connection pool lifecycle shared by the Redis channel and queue."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        max_connections: int = 16,
        client: redis.Redis | None = None,
    ):
        """Default redis_url works for local development.

        ``client`` replaces the URL-built pool with a ready client (which
        must not decode responses); the adapter takes ownership of it.
        """
        self.redis_url = redis_url
        self._max_connections = max_connections
        self._client = client
        self._redis: redis.Redis | None = None

    async def connect(self) -> None:
        """Establish Redis connection pool and verify it is reachable."""
        if self._redis is not None:
            return
        if self._client is not None:
            self._redis = self._client
        else:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=False,  # We handle binary data
                max_connections=self._max_connections,
            )
        try:
            await self._redis.ping()
        except RedisError as e:
            await self._redis.aclose()
            self._redis = None
            raise StorageError(f"Cannot reach Redis at {self.redis_url}: {e}") from e

    async def close(self) -> None:
        """Close Redis connection pool."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _check_connected(self) -> redis.Redis:
        """Ensure connection established.

        Raises immediately if not connected.
        """
        if self._redis is None:
            raise StorageError("Not connected. Call connect() first.")
        return self._redis

    @property
    def backend_name(self) -> str:
        return "redis"

    @property
    def is_shared(self) -> bool:
        return True


class RedisChannel(_RedisConnection, Channel):
    """Redis channel; every key lives under ``{namespace}:{session_id}:``.

    Usage:
        channel = RedisChannel(session_id, "redis://localhost:6379")
        await channel.connect()
        await channel.append("events", {"type": "started"}, ttl=3600)
    """

    def __init__(
        self,
        session_id: str,
        redis_url: str = "redis://localhost:6379",
        namespace: str = "graflow",
        max_connections: int = 16,
        client: redis.Redis | None = None,
    ):
        Channel.__init__(self, session_id, namespace)
        _RedisConnection.__init__(self, redis_url, max_connections, client)

    @property
    def _prefix(self) -> str:
        return f"{self.namespace}:{self.session_id}:"

    def _key(self, key: str) -> str:
        """Build the Redis key for a channel key."""
        return f"{self._prefix}{key}"

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store ``value``; lists become native Redis lists so append/prepend work on them.

        An empty list leaves no key behind: get() then returns the default.
        """
        r = self._check_connected()
        full_key = self._key(key)
        if type(value) is not list:
            # SET replaces any existing list; PX applies the expiry atomically
            await r.set(full_key, _encode(value), px=_ttl_ms(ttl) if ttl is not None else None)
            return
        async with r.pipeline(transaction=True) as pipe:
            await pipe.delete(full_key)
            if value:
                await pipe.rpush(full_key, *(pickle.dumps(item) for item in value))
                if ttl is not None:
                    await pipe.pexpire(full_key, _ttl_ms(ttl))
            await pipe.execute()

    async def get(self, key: str, default: Any = None) -> Any:
        r = self._check_connected()
        full_key = self._key(key)
        kind = await r.type(full_key)
        if kind == b"list":
            return [pickle.loads(item) for item in await r.lrange(full_key, 0, -1)]
        raw = await r.get(full_key)
        if raw is None:
            return default
        return _decode(raw)

    async def delete(self, key: str) -> bool:
        r = self._check_connected()
        return await r.delete(self._key(key)) > 0

    async def exists(self, key: str) -> bool:
        r = self._check_connected()
        return await r.exists(self._key(key)) > 0

    async def _push(self, key: str, value: Any, ttl: float | None, front: bool) -> int:
        r = self._check_connected()
        full_key = self._key(key)
        try:
            async with r.pipeline(transaction=True) as pipe:
                if front:
                    await pipe.lpush(full_key, pickle.dumps(value))
                else:
                    await pipe.rpush(full_key, pickle.dumps(value))
                if ttl is not None:
                    await pipe.pexpire(full_key, _ttl_ms(ttl))
                results = await pipe.execute()
        except ResponseError as e:
            raise StorageError(f"Channel key {key!r} holds a non-list value") from e
        return int(results[0])

    async def append(self, key: str, value: Any, ttl: float | None = None) -> int:
        return await self._push(key, value, ttl, front=False)

    async def prepend(self, key: str, value: Any, ttl: float | None = None) -> int:
        return await self._push(key, value, ttl, front=True)

    async def incr(self, key: str, amount: int = 1) -> int:
        r = self._check_connected()
        try:
            return int(await r.incrby(self._key(key), amount))
        except ResponseError as e:
            raise StorageError(f"Channel key {key!r} holds a non-integer value") from e

    async def keys(self) -> list[str]:
        r = self._check_connected()
        prefix = self._prefix
        keys = []
        async for full_key in r.scan_iter(match=f"{prefix}*"):
            keys.append(full_key.decode()[len(prefix) :])
        return sorted(keys)

    async def clear(self) -> None:
        r = self._check_connected()
        batch = [k async for k in r.scan_iter(match=f"{self._prefix}*")]
        if batch:
            await r.delete(*batch)

    async def snapshot(self) -> dict[str, tuple[Any, datetime | None]]:
        r = self._check_connected()
        data: dict[str, tuple[Any, datetime | None]] = {}
        for key in await self.keys():
            pttl = await r.pttl(self._key(key))
            if pttl == -2:
                continue  # expired between SCAN and PTTL
            value = await self.get(key)
            expires_at = None
            if pttl > 0:
                expires_at = datetime.fromtimestamp(
                    datetime.now(UTC).timestamp() + pttl / 1000, tz=UTC
                )
            data[key] = (value, expires_at)
        return data

    def __repr__(self) -> str:
        return (
            f"RedisChannel({self.redis_url!r}, namespace={self.namespace!r}, "
            f"session_id={self.session_id!r})"
        )


class RedisTaskQueue(_RedisConnection, TaskQueue):
    """Redis task queue shared by producers and remote workers.

    LPOP claims a spec atomically: a spec is delivered to exactly one
    consumer. Delayed specs wait in a sorted set scored by
    ``scheduled_for`` and move to the head of the ready list once due, so
    the ready list keeps its order. Entries that fail to parse are moved
    to a dead-letter list instead of being lost.

    Does not implement WorkNotificationSource; consumers poll.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        name: str = "default",
        namespace: str = "graflow",
        max_connections: int = 16,
        client: redis.Redis | None = None,
    ):
        TaskQueue.__init__(self, name, namespace)
        _RedisConnection.__init__(self, redis_url, max_connections, client)

    @property
    def queue_key(self) -> str:
        return f"{self.namespace}:queue:{self.name}"

    @property
    def delayed_key(self) -> str:
        return f"{self.queue_key}:delayed"

    @property
    def dead_letter_key(self) -> str:
        return f"{self.queue_key}:dead"

    def _parse(self, raw: bytes) -> TaskSpec:
        try:
            return TaskSpec.from_dict(json.loads(raw))
        except (KeyError, ValueError, TypeError) as e:
            raise StorageError(f"Corrupt spec in {self.queue_key}: {e}") from e

    async def _push(self, spec: TaskSpec, front: bool) -> str:
        r = self._check_connected()
        raw = json.dumps(spec.to_dict())
        if not spec.is_ready():
            await r.zadd(self.delayed_key, {raw: spec.scheduled_for.timestamp()})
        elif front:
            await r.lpush(self.queue_key, raw)
        else:
            await r.rpush(self.queue_key, raw)
        return spec.spec_id

    async def enqueue(self, spec: TaskSpec) -> str:
        return await self._push(spec, front=False)

    async def enqueue_front(self, spec: TaskSpec) -> str:
        return await self._push(spec, front=True)

    async def _promote_due(self, r: redis.Redis) -> None:
        """Move delayed specs whose time has come to the head of the ready list."""
        due = await r.zrangebyscore(self.delayed_key, "-inf", datetime.now(UTC).timestamp())
        for raw in reversed(due):
            # ZREM succeeds for exactly one consumer
            if await r.zrem(self.delayed_key, raw):
                await r.lpush(self.queue_key, raw)

    async def dequeue(self, worker_id: str | None = None) -> TaskSpec | None:
        """Claim the first ready spec.

        Raises:
            StorageError: If the claimed entry is corrupt; it is moved to
                ``dead_letter_key`` first
        """
        r = self._check_connected()
        await self._promote_due(r)
        raw = await r.lpop(self.queue_key)
        if raw is None:
            return None
        try:
            return self._parse(raw)
        except StorageError:
            await r.rpush(self.dead_letter_key, raw)
            raise

    async def size(self) -> int:
        r = self._check_connected()
        return int(await r.llen(self.queue_key)) + int(await r.zcard(self.delayed_key))

    async def pending(self) -> list[TaskSpec]:
        """Ready specs in queue order, then delayed specs by ``scheduled_for``."""
        r = self._check_connected()
        ready = await r.lrange(self.queue_key, 0, -1)
        delayed = await r.zrange(self.delayed_key, 0, -1)
        return [self._parse(raw) for raw in [*ready, *delayed]]

    async def next_ready_at(self) -> datetime | None:
        r = self._check_connected()
        first = await r.zrange(self.delayed_key, 0, 0)
        return self._parse(first[0]).scheduled_for if first else None

    async def dead_letters(self) -> list[bytes]:
        """Raw entries that could not be parsed, oldest first."""
        r = self._check_connected()
        return list(await r.lrange(self.dead_letter_key, 0, -1))

    async def clear(self) -> None:
        r = self._check_connected()
        await r.delete(self.queue_key, self.delayed_key)

    def __repr__(self) -> str:
        return f"RedisTaskQueue({self.redis_url!r}, key={self.queue_key!r})"
