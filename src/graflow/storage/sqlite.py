"""SQLite-backed storage implementation for graflow.

Design Pattern: Adapter Pattern
SqliteChannel and SqliteTaskQueue adapt a SQLite database file to the
Channel and TaskQueue interfaces.

State persists past process exit and is shared by every process of the
host that opens the same file, so a run can be checkpointed by pointer
and resumed elsewhere on the machine.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- IMMEDIATE transactions for read-modify-write operations (list pushes,
  counters, queue claims) so concurrent processes never interleave
"""

from __future__ import annotations

import asyncio
import json
import pickle
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from graflow.models import TaskSpec
from graflow.storage.base import Channel, StorageError, TaskQueue


def _now_ts() -> float:
    return datetime.now(UTC).timestamp()


class _SqliteConnection:
    """Connection lifecycle shared by the SQLite channel and queue.

    After __init__, the instance is not yet usable. Call connect() first.
    """

    _schema: tuple[str, ...] = ()

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()  # Serialize access to shared connection

    async def connect(self) -> None:
        """Open database connection and initialize schema."""
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(
            self.db_path,
            timeout=5.0,
            isolation_level=None,  # Autocommit; transactions are explicit
        )

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result and result[0].upper() not in ("WAL", "MEMORY"):
            raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")

        for statement in self._schema:
            await self._connection.execute(statement)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _check_connected(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")
        return self._connection

    @property
    def backend_name(self) -> str:
        return "sqlite"

    @property
    def is_shared(self) -> bool:
        return self.db_path != ":memory:"


class SqliteChannel(_SqliteConnection, Channel):
    """SQLite-backed channel.

    Values are pickled into a BLOB column; expiry is stored as a UNIX
    timestamp and evaluated lazily on read.

    Usage:
        channel = SqliteChannel(session_id, "graflow.db")
        await channel.connect()
        try:
            await channel.set("count", 1)
        finally:
            await channel.close()
    """

    _schema = (
        """
        CREATE TABLE IF NOT EXISTS channel_entries (
            namespace TEXT NOT NULL,
            session_id TEXT NOT NULL,
            key TEXT NOT NULL,
            value BLOB NOT NULL,
            expires_at REAL,
            PRIMARY KEY (namespace, session_id, key)
        )
        """,
    )

    def __init__(self, session_id: str, db_path: str, namespace: str = "graflow"):
        Channel.__init__(self, session_id, namespace)
        _SqliteConnection.__init__(self, db_path)

    @property
    def _scope(self) -> tuple[str, str]:
        return (self.namespace, self.session_id)

    async def _read(self, conn: aiosqlite.Connection, key: str) -> tuple[bool, Any]:
        """(found, value) for ``key``; expired rows are deleted (lock must be held)."""
        cursor = await conn.execute(
            """
            SELECT value, expires_at FROM channel_entries
            WHERE namespace = ? AND session_id = ? AND key = ?
            """,
            (*self._scope, key),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return False, None
        value, expires_at = row
        if expires_at is not None and expires_at <= _now_ts():
            await conn.execute(
                "DELETE FROM channel_entries WHERE namespace = ? AND session_id = ? AND key = ?",
                (*self._scope, key),
            )
            return False, None
        return True, pickle.loads(value)

    async def _write(
        self, conn: aiosqlite.Connection, key: str, value: Any, expires_at: float | None
    ) -> None:
        await conn.execute(
            """
            INSERT INTO channel_entries (namespace, session_id, key, value, expires_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (namespace, session_id, key)
            DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at
            """,
            (*self._scope, key, pickle.dumps(value), expires_at),
        )

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        conn = self._check_connected()
        expires_at = _now_ts() + ttl if ttl is not None else None
        async with self._lock:
            await self._write(conn, key, value, expires_at)

    async def get(self, key: str, default: Any = None) -> Any:
        conn = self._check_connected()
        async with self._lock:
            found, value = await self._read(conn, key)
        return value if found else default

    async def delete(self, key: str) -> bool:
        conn = self._check_connected()
        async with self._lock:
            cursor = await conn.execute(
                "DELETE FROM channel_entries WHERE namespace = ? AND session_id = ? AND key = ?",
                (*self._scope, key),
            )
            return cursor.rowcount > 0

    async def exists(self, key: str) -> bool:
        conn = self._check_connected()
        async with self._lock:
            found, _ = await self._read(conn, key)
        return found

    async def _read_modify_write(self, key: str, update, ttl: float | None = None) -> Any:
        """Apply ``update(found, value) -> (new_value, result)`` in one IMMEDIATE transaction.

        Returns ``result``. The existing expiry is kept unless ``ttl`` is given.
        """
        conn = self._check_connected()
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = await conn.execute(
                    """
                    SELECT expires_at FROM channel_entries
                    WHERE namespace = ? AND session_id = ? AND key = ?
                    """,
                    (*self._scope, key),
                )
                row = await cursor.fetchone()
                await cursor.close()
                found, value = await self._read(conn, key)
                expires_at = row[0] if (found and row is not None) else None
                new_value, result = update(found, value)
                if ttl is not None:
                    expires_at = _now_ts() + ttl
                await self._write(conn, key, new_value, expires_at)
                await conn.execute("COMMIT")
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
        return result

    async def _push(self, key: str, value: Any, ttl: float | None, front: bool) -> int:
        def update(found: bool, current: Any):
            if not found:
                current = []
            elif not isinstance(current, list):
                raise StorageError(f"Channel key {key!r} holds a non-list value")
            items = [value, *current] if front else [*current, value]
            return items, len(items)

        return await self._read_modify_write(key, update, ttl)

    async def append(self, key: str, value: Any, ttl: float | None = None) -> int:
        return await self._push(key, value, ttl, front=False)

    async def prepend(self, key: str, value: Any, ttl: float | None = None) -> int:
        return await self._push(key, value, ttl, front=True)

    async def incr(self, key: str, amount: int = 1) -> int:
        def update(found: bool, current: Any):
            if not found:
                current = 0
            elif not isinstance(current, int):
                raise StorageError(f"Channel key {key!r} holds a non-integer value")
            return current + amount, current + amount

        return await self._read_modify_write(key, update)

    async def keys(self) -> list[str]:
        conn = self._check_connected()
        async with self._lock:
            await conn.execute(
                """
                DELETE FROM channel_entries
                WHERE namespace = ? AND session_id = ?
                  AND expires_at IS NOT NULL AND expires_at <= ?
                """,
                (*self._scope, _now_ts()),
            )
            cursor = await conn.execute(
                "SELECT key FROM channel_entries WHERE namespace = ? AND session_id = ? ORDER BY key",
                self._scope,
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [row[0] for row in rows]

    async def clear(self) -> None:
        conn = self._check_connected()
        async with self._lock:
            await conn.execute(
                "DELETE FROM channel_entries WHERE namespace = ? AND session_id = ?",
                self._scope,
            )

    async def snapshot(self) -> dict[str, tuple[Any, datetime | None]]:
        conn = self._check_connected()
        async with self._lock:
            cursor = await conn.execute(
                """
                SELECT key, value, expires_at FROM channel_entries
                WHERE namespace = ? AND session_id = ?
                  AND (expires_at IS NULL OR expires_at > ?)
                """,
                (*self._scope, _now_ts()),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return {
            key: (
                pickle.loads(value),
                datetime.fromtimestamp(expires_at, tz=UTC) if expires_at is not None else None,
            )
            for key, value, expires_at in rows
        }

    def __repr__(self) -> str:
        return (
            f"SqliteChannel({self.db_path!r}, namespace={self.namespace!r}, "
            f"session_id={self.session_id!r})"
        )


class SqliteTaskQueue(_SqliteConnection, TaskQueue):
    """SQLite-backed task queue.

    Specs are stored as JSON rows ordered by an integer position column:
    ``enqueue`` appends after the current maximum, ``enqueue_front``
    inserts before the current minimum.

    Design Pattern: Optimistic Concurrency Control
    The claim is a single ``DELETE ... RETURNING`` inside an IMMEDIATE
    transaction, so only one consumer receives each spec.
    """

    _schema = (
        """
        CREATE TABLE IF NOT EXISTS task_queue (
            spec_id TEXT PRIMARY KEY,
            namespace TEXT NOT NULL,
            queue_name TEXT NOT NULL,
            position INTEGER NOT NULL,
            scheduled_for REAL,
            spec TEXT NOT NULL
        )
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_task_queue_position
        ON task_queue(namespace, queue_name, position)
        """,
    )

    def __init__(self, db_path: str, name: str = "default", namespace: str = "graflow"):
        TaskQueue.__init__(self, name, namespace)
        _SqliteConnection.__init__(self, db_path)
        self._work_notify = asyncio.Event()

    def work_notify(self) -> asyncio.Event:
        return self._work_notify

    @property
    def _scope(self) -> tuple[str, str]:
        return (self.namespace, self.name)

    async def _insert(self, spec: TaskSpec, front: bool) -> str:
        conn = self._check_connected()
        edge = "MIN(position) - 1" if front else "MAX(position) + 1"
        scheduled_for = spec.scheduled_for.timestamp() if spec.scheduled_for else None
        async with self._lock:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                await conn.execute(
                    f"""
                    INSERT INTO task_queue (spec_id, namespace, queue_name, position, scheduled_for, spec)
                    VALUES (?, ?, ?,
                        (SELECT COALESCE({edge}, 0) FROM task_queue
                         WHERE namespace = ? AND queue_name = ?),
                        ?, ?)
                    """,
                    (
                        spec.spec_id,
                        *self._scope,
                        *self._scope,
                        scheduled_for,
                        json.dumps(spec.to_dict()),
                    ),
                )
                await conn.execute("COMMIT")
            except aiosqlite.IntegrityError as e:
                await conn.execute("ROLLBACK")
                raise StorageError(f"Spec {spec.spec_id} is already queued") from e
            except BaseException:
                await conn.execute("ROLLBACK")
                raise

            if scheduled_for is None:
                # NOTE: Don't clear here! Consumer clears after waking up.
                self._work_notify.set()
        return spec.spec_id

    async def enqueue(self, spec: TaskSpec) -> str:
        return await self._insert(spec, front=False)

    async def enqueue_front(self, spec: TaskSpec) -> str:
        return await self._insert(spec, front=True)

    async def dequeue(self, worker_id: str | None = None) -> TaskSpec | None:
        """Claim and retrieve the first ready spec."""
        conn = self._check_connected()
        async with self._lock:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                cursor = await conn.execute(
                    """
                    DELETE FROM task_queue
                    WHERE spec_id = (
                        SELECT spec_id FROM task_queue
                        WHERE namespace = ? AND queue_name = ?
                          AND (scheduled_for IS NULL OR scheduled_for <= ?)
                        ORDER BY position ASC
                        LIMIT 1
                    )
                    RETURNING spec
                    """,
                    (*self._scope, _now_ts()),
                )
                row = await cursor.fetchone()
                await cursor.close()
                await conn.execute("COMMIT")
            except Exception as e:
                await conn.execute("ROLLBACK")
                raise StorageError(f"Failed to dequeue spec: {e}") from e

        if row is None:
            return None
        return TaskSpec.from_dict(json.loads(row[0]))

    async def size(self) -> int:
        conn = self._check_connected()
        async with self._lock:
            cursor = await conn.execute(
                "SELECT COUNT(*) FROM task_queue WHERE namespace = ? AND queue_name = ?",
                self._scope,
            )
            row = await cursor.fetchone()
            await cursor.close()
        return int(row[0]) if row else 0

    async def pending(self) -> list[TaskSpec]:
        conn = self._check_connected()
        async with self._lock:
            cursor = await conn.execute(
                """
                SELECT spec FROM task_queue
                WHERE namespace = ? AND queue_name = ?
                ORDER BY position ASC
                """,
                self._scope,
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [TaskSpec.from_dict(json.loads(row[0])) for row in rows]

    async def clear(self) -> None:
        conn = self._check_connected()
        async with self._lock:
            await conn.execute(
                "DELETE FROM task_queue WHERE namespace = ? AND queue_name = ?",
                self._scope,
            )

    def __repr__(self) -> str:
        return f"SqliteTaskQueue({self.db_path!r}, namespace={self.namespace!r}, name={self.name!r})"
