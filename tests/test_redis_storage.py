"""Redis channel and queue tests beyond the shared contract suites.

Run against fakeredis by default; set GRAFLOW_TEST_REDIS_URL (e.g.
``redis://localhost:6379/15``) to run them against a live server.
"""

import asyncio
from datetime import timedelta

import pytest

from graflow.models import TaskSpec
from graflow.storage import StorageError
from graflow.storage.redis import RedisChannel, RedisTaskQueue

pytestmark = pytest.mark.redis


@pytest.fixture
async def redis_channel(session_id, redis_client_factory, redis_namespace):
    channel = RedisChannel(session_id, namespace=redis_namespace, client=redis_client_factory())
    await channel.connect()
    yield channel
    await channel.clear()
    await channel.close()


@pytest.fixture
async def redis_queue(redis_client_factory, redis_namespace):
    queue = RedisTaskQueue(name="test", namespace=redis_namespace, client=redis_client_factory())
    await queue.connect()
    yield queue
    await queue.clear()
    await queue.close()


@pytest.mark.asyncio
async def test_counters_share_storage_with_values(redis_channel):
    await redis_channel.set("n", 7)
    assert await redis_channel.incr("n", 3) == 10
    assert await redis_channel.get("n") == 10


@pytest.mark.asyncio
async def test_list_values_are_native_lists(redis_channel):
    await redis_channel.set("items", ["a", "b"], ttl=60)

    r = redis_channel._check_connected()
    assert await r.type(redis_channel._key("items")) == b"list"
    assert await r.pttl(redis_channel._key("items")) > 0

    await redis_channel.set("items", {"now": "a dict"})
    assert await redis_channel.get("items") == {"now": "a dict"}


@pytest.mark.asyncio
async def test_empty_list_leaves_no_key(redis_channel):
    await redis_channel.set("items", ["a"])
    await redis_channel.set("items", [])
    assert not await redis_channel.exists("items")
    assert await redis_channel.get("items", []) == []


@pytest.mark.asyncio
async def test_sessions_on_one_server_are_isolated(redis_client_factory, redis_namespace):
    first = RedisChannel("session-1", namespace=redis_namespace, client=redis_client_factory())
    second = RedisChannel("session-2", namespace=redis_namespace, client=redis_client_factory())
    await first.connect()
    await second.connect()
    try:
        await first.set("k", "first")
        assert await second.get("k") is None
        await second.clear()
        assert await first.keys() == ["k"]
    finally:
        await first.clear()
        await first.close()
        await second.close()


@pytest.mark.asyncio
@pytest.mark.concurrency
async def test_two_clients_share_one_counter(session_id, redis_client_factory, redis_namespace):
    channels = [
        RedisChannel(session_id, namespace=redis_namespace, client=redis_client_factory())
        for _ in range(2)
    ]
    for channel in channels:
        await channel.connect()
    try:
        await asyncio.gather(*(channels[i % 2].incr("barrier") for i in range(40)))
        assert await channels[0].get("barrier") == 40
    finally:
        await channels[0].clear()
        for channel in channels:
            await channel.close()


@pytest.mark.asyncio
async def test_delayed_specs_do_not_reorder_pending(redis_queue):
    delayed = TaskSpec(task_id="retry").next_attempt(timedelta(seconds=30))
    await redis_queue.enqueue(delayed)
    await redis_queue.enqueue(TaskSpec(task_id="a"))
    await redis_queue.enqueue(TaskSpec(task_id="b"))

    assert (await redis_queue.dequeue()).task_id == "a"
    before = [s.spec_id for s in await redis_queue.pending()]
    assert (await redis_queue.dequeue()).task_id == "b"
    assert await redis_queue.dequeue() is None

    assert before[-1] == delayed.spec_id
    assert [s.spec_id for s in await redis_queue.pending()] == [delayed.spec_id]
    assert await redis_queue.size() == 1
    assert await redis_queue.next_ready_at() == delayed.scheduled_for


@pytest.mark.asyncio
async def test_due_specs_run_before_later_work(redis_queue):
    await redis_queue.enqueue(TaskSpec(task_id="retry").next_attempt(timedelta(seconds=0.05)))
    await redis_queue.enqueue(TaskSpec(task_id="next"))
    await asyncio.sleep(0.1)

    assert [(await redis_queue.dequeue()).task_id for _ in range(2)] == ["retry", "next"]


@pytest.mark.asyncio
async def test_corrupt_entry_goes_to_dead_letters(redis_queue):
    r = redis_queue._check_connected()
    await r.rpush(redis_queue.queue_key, b"{not json")
    await redis_queue.enqueue(TaskSpec(task_id="good"))

    with pytest.raises(StorageError):
        await redis_queue.dequeue()

    assert await redis_queue.dead_letters() == [b"{not json"]
    assert (await redis_queue.dequeue()).task_id == "good"
    await r.delete(redis_queue.dead_letter_key)


@pytest.mark.asyncio
async def test_queue_order_and_front(redis_queue):
    await redis_queue.enqueue(TaskSpec(task_id="b"))
    await redis_queue.enqueue(TaskSpec(task_id="c"))
    await redis_queue.enqueue_front(TaskSpec(task_id="a"))

    assert [s.task_id for s in await redis_queue.pending()] == ["a", "b", "c"]
    assert (await redis_queue.dequeue()).task_id == "a"
    assert await redis_queue.size() == 2


@pytest.mark.asyncio
async def test_connect_failure_raises_storage_error():
    channel = RedisChannel("s", "redis://127.0.0.1:1")
    with pytest.raises(StorageError):
        await channel.connect()
