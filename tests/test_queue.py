"""Task queue contract tests, run against every backend."""

import asyncio
from datetime import timedelta

import pytest

from graflow.models import TaskSpec
from graflow.storage import MemoryTaskQueue, StorageError, WorkNotificationSource
from graflow.storage.redis import RedisTaskQueue
from graflow.storage.sqlite import SqliteTaskQueue


@pytest.fixture(params=["memory", "sqlite", "redis"])
async def queue(request, temp_db_path, redis_client_factory, redis_namespace):
    if request.param == "memory":
        q = MemoryTaskQueue("test")
    elif request.param == "sqlite":
        q = SqliteTaskQueue(temp_db_path, name="test")
    else:
        q = RedisTaskQueue(name="test", namespace=redis_namespace, client=redis_client_factory())
    await q.connect()
    yield q
    await q.clear()
    await q.close()


def spec(task_id: str, **kwargs) -> TaskSpec:
    return TaskSpec(task_id=task_id, session_id="s", **kwargs)


@pytest.mark.asyncio
async def test_fifo_order(queue):
    for task_id in ("a", "b", "c"):
        await queue.enqueue(spec(task_id))

    assert await queue.size() == 3
    assert [(await queue.dequeue()).task_id for _ in range(3)] == ["a", "b", "c"]
    assert await queue.dequeue() is None
    assert await queue.is_empty()


@pytest.mark.asyncio
async def test_enqueue_front(queue):
    await queue.enqueue(spec("b"))
    await queue.enqueue_front(spec("a"))
    assert (await queue.dequeue()).task_id == "a"


@pytest.mark.asyncio
async def test_spec_fields_survive_the_queue(queue):
    original = spec("branch", attempt=2, cycle=3, group_id="g", barrier_key="__group__.g.0",
                    depth=1, payload=b"\x80\x04node")
    await queue.enqueue(original)
    restored = await queue.dequeue()

    assert restored.spec_id == original.spec_id
    assert (restored.attempt, restored.cycle) == (2, 3)
    assert restored.group_id == "g"
    assert restored.barrier_key == "__group__.g.0"
    assert restored.payload == b"\x80\x04node"


@pytest.mark.asyncio
async def test_delayed_spec_is_not_dequeued_early(queue):
    delayed = spec("retry").next_attempt(timedelta(seconds=0.1))
    await queue.enqueue(delayed)
    await queue.enqueue(spec("ready"))

    assert (await queue.dequeue()).task_id == "ready"
    assert await queue.dequeue() is None
    assert await queue.next_ready_at() == delayed.scheduled_for

    await asyncio.sleep(0.15)
    got = await queue.dequeue()
    assert got.task_id == "retry" and got.attempt == 2


@pytest.mark.asyncio
async def test_pending_and_clear(queue):
    await queue.enqueue(spec("a"))
    await queue.enqueue(spec("b"))
    assert [s.task_id for s in await queue.pending()] == ["a", "b"]
    # pending() does not consume
    assert await queue.size() == 2

    await queue.clear()
    assert await queue.pending() == []


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_concurrent_dequeue_never_double_delivers(queue):
    for i in range(20):
        await queue.enqueue(spec(f"t{i}"))

    async def drain():
        got = []
        while (item := await queue.dequeue()) is not None:
            got.append(item.task_id)
        return got

    results = await asyncio.gather(drain(), drain(), drain())
    delivered = [task_id for batch in results for task_id in batch]
    assert sorted(delivered) == sorted(f"t{i}" for i in range(20))


@pytest.mark.asyncio
async def test_work_notification(queue):
    if not isinstance(queue, WorkNotificationSource):
        pytest.skip(f"{queue.backend_name} queues are polled")
    event = queue.work_notify()
    event.clear()
    await queue.enqueue(spec("a"))
    assert event.is_set()


@pytest.mark.asyncio
async def test_sqlite_duplicate_spec_rejected(sqlite_queue):
    item = spec("a")
    await sqlite_queue.enqueue(item)
    with pytest.raises(StorageError):
        await sqlite_queue.enqueue(item)


@pytest.mark.asyncio
async def test_sqlite_queues_are_isolated_by_name_and_namespace(temp_db_path):
    runs = SqliteTaskQueue(temp_db_path, name="run:1")
    workers = SqliteTaskQueue(temp_db_path, name="default")
    other_ns = SqliteTaskQueue(temp_db_path, name="default", namespace="other")
    for q in (runs, workers, other_ns):
        await q.connect()
    try:
        await runs.enqueue(spec("a"))
        assert await workers.dequeue() is None
        assert await other_ns.size() == 0
        assert (await runs.dequeue()).task_id == "a"
    finally:
        for q in (runs, workers, other_ns):
            await q.close()


@pytest.mark.asyncio
async def test_sqlite_operations_require_connect(temp_db_path):
    q = SqliteTaskQueue(temp_db_path)
    with pytest.raises(StorageError):
        await q.enqueue(spec("a"))
