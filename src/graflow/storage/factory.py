"""Backend selection for channels and task queues.

``BackendConfig`` names the backend and its connection details; the
``create_*`` factories build unconnected instances from it. Producers and
workers that share a config (namespace included) share state.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any

from graflow.storage.base import Channel, StorageError, TaskQueue
from graflow.storage.memory import MemoryChannel, MemoryTaskQueue

BACKENDS = ("memory", "sqlite", "redis")


@dataclass(frozen=True)
class BackendConfig:
    """Which storage backend a run uses and how to reach it.

    Recorded in checkpoints so that a resumed run can reconnect to the
    same shared session.

    Example:
        config = BackendConfig.from_env().with_namespace("billing")
        channel = create_channel(config, session_id)
        await channel.connect()
    """

    backend: str = "memory"
    namespace: str = "graflow"
    redis_url: str = "redis://localhost:6379"
    sqlite_path: str = "graflow.db"

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise StorageError(
                f"Unknown backend {self.backend!r}; expected one of {', '.join(BACKENDS)}"
            )
        if not self.namespace:
            raise StorageError("namespace must not be empty")

    @classmethod
    def from_env(cls) -> BackendConfig:
        """Read GRAFLOW_BACKEND, GRAFLOW_NAMESPACE, GRAFLOW_REDIS_URL and GRAFLOW_SQLITE_PATH.

        Unset variables keep their defaults.
        """
        defaults = cls()
        return cls(
            backend=os.getenv("GRAFLOW_BACKEND", defaults.backend).lower(),
            namespace=os.getenv("GRAFLOW_NAMESPACE", defaults.namespace),
            redis_url=os.getenv("GRAFLOW_REDIS_URL", defaults.redis_url),
            sqlite_path=os.getenv("GRAFLOW_SQLITE_PATH", defaults.sqlite_path),
        )

    def with_namespace(self, namespace: str) -> BackendConfig:
        return replace(self, namespace=namespace)

    @property
    def is_shared(self) -> bool:
        """True if state outlives the process (reconnectable by session id)."""
        return self.backend != "memory"

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "namespace": self.namespace,
            "redis_url": self.redis_url,
            "sqlite_path": self.sqlite_path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackendConfig:
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


def create_channel(config: BackendConfig, session_id: str) -> Channel:
    """Build an unconnected channel for ``session_id``; call connect() before use."""
    if config.backend == "redis":
        from graflow.storage.redis import RedisChannel

        return RedisChannel(session_id, config.redis_url, namespace=config.namespace)
    if config.backend == "sqlite":
        from graflow.storage.sqlite import SqliteChannel

        return SqliteChannel(session_id, config.sqlite_path, namespace=config.namespace)
    return MemoryChannel(session_id, namespace=config.namespace)


def create_queue(config: BackendConfig, name: str = "default") -> TaskQueue:
    """Build an unconnected task queue named ``name``; call connect() before use."""
    if config.backend == "redis":
        from graflow.storage.redis import RedisTaskQueue

        return RedisTaskQueue(config.redis_url, name=name, namespace=config.namespace)
    if config.backend == "sqlite":
        from graflow.storage.sqlite import SqliteTaskQueue

        return SqliteTaskQueue(config.sqlite_path, name=name, namespace=config.namespace)
    return MemoryTaskQueue(name, namespace=config.namespace)
