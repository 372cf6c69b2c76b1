"""
Pytest configuration and fixtures for graflow tests.

Provides reusable fixtures for storage backends, run contexts and engines.
"""

import os
import shutil
import tempfile
from collections.abc import AsyncGenerator
from pathlib import Path
from uuid import uuid4

import fakeredis
import pytest
import redis.asyncio as redis

from graflow.core import ExecutionContext, TaskGraph
from graflow.executor import CheckpointManager, FeedbackManager, WorkflowEngine
from graflow.storage import BackendConfig, MemoryChannel, MemoryTaskQueue
from graflow.storage.sqlite import SqliteChannel, SqliteTaskQueue


def pytest_sessionfinish(session, exitstatus):
    """Force cleanup after all tests complete to prevent CI hanging."""
    # In CI environments only, force exit to prevent hanging on open pools
    if os.getenv("CI") or os.getenv("GITHUB_ACTIONS"):
        os._exit(exitstatus)


@pytest.fixture
def session_id() -> str:
    """Random session id for testing."""
    return str(uuid4())


@pytest.fixture
def memory_channel(session_id: str) -> MemoryChannel:
    return MemoryChannel(session_id)


@pytest.fixture
def memory_queue() -> MemoryTaskQueue:
    return MemoryTaskQueue("test")


@pytest.fixture
def temp_dir():
    """Temporary directory with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    yield tmpdir
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def temp_db_path(temp_dir: Path) -> str:
    """Temporary SQLite database file path."""
    return str(temp_dir / "graflow.db")


@pytest.fixture
async def sqlite_channel(session_id: str, temp_db_path: str) -> AsyncGenerator[SqliteChannel, None]:
    """SQLite file-backed channel with automatic cleanup."""
    channel = SqliteChannel(session_id, temp_db_path)
    await channel.connect()
    yield channel
    await channel.close()


@pytest.fixture
async def sqlite_queue(temp_db_path: str) -> AsyncGenerator[SqliteTaskQueue, None]:
    queue = SqliteTaskQueue(temp_db_path, name="test")
    await queue.connect()
    yield queue
    await queue.close()


@pytest.fixture
def sqlite_backend(temp_db_path: str) -> BackendConfig:
    """Shared backend config pointing at the temporary database."""
    return BackendConfig(backend="sqlite", sqlite_path=temp_db_path, namespace="test")


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client_factory(redis_server):
    """Builds Redis clients: a live server when GRAFLOW_TEST_REDIS_URL is set, else fakeredis.

    Clients from one factory share a server, like separate processes would.
    """
    url = os.getenv("GRAFLOW_TEST_REDIS_URL")

    def factory() -> redis.Redis:
        if url:
            return redis.from_url(url)
        return fakeredis.FakeAsyncRedis(server=redis_server)

    return factory


@pytest.fixture
def redis_namespace() -> str:
    """Per-test key prefix so tests never collide on a live server."""
    return f"test-{uuid4().hex[:8]}"


@pytest.fixture
def checkpoint_manager(temp_dir: Path) -> CheckpointManager:
    return CheckpointManager(temp_dir / "checkpoints")


@pytest.fixture
def engine(checkpoint_manager: CheckpointManager) -> WorkflowEngine:
    """Engine with fast polling and checkpoints under the temp directory."""
    return (
        WorkflowEngine()
        .with_checkpoint_manager(checkpoint_manager)
        .with_feedback_manager(FeedbackManager(poll_interval=0.01))
        .with_poll_interval(0.01)
    )


def make_context(graph: TaskGraph, **kwargs) -> ExecutionContext:
    """Fresh in-memory context for ``graph``."""
    return ExecutionContext.create(graph, **kwargs)


def record(name: str):
    """Handler factory: appends ``name`` to the channel list ``order``."""

    async def handler(ctx):
        await ctx.get_channel().append("order", name)
        return name

    handler.__name__ = f"record_{name}"
    return handler
