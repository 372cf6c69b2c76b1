"""Tests for the graflow-worker command line."""

import asyncio

import pytest

from graflow.cli import build_parser, wait_for_stop
from graflow.executor import Worker
from graflow.storage import MemoryTaskQueue


def test_defaults(monkeypatch):
    monkeypatch.delenv("GRAFLOW_REDIS_URL", raising=False)
    monkeypatch.delenv("GRAFLOW_NAMESPACE", raising=False)

    args = build_parser().parse_args([])

    assert args.redis_url == "redis://localhost:6379"
    assert args.namespace == "graflow"
    assert args.queue == "default"
    assert args.poll_interval == 1.0
    assert args.grace_period == 30.0
    assert args.worker_id


def test_environment_provides_defaults(monkeypatch):
    monkeypatch.setenv("GRAFLOW_REDIS_URL", "redis://cache:6380/2")
    monkeypatch.setenv("GRAFLOW_NAMESPACE", "billing")

    args = build_parser().parse_args(["--worker-id", "w7", "--grace-period", "5"])

    assert args.redis_url == "redis://cache:6380/2"
    assert args.namespace == "billing"
    assert args.worker_id == "w7"
    assert args.grace_period == 5.0


def test_rejects_unknown_log_level():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--log-level", "CHATTY"])


async def _idle_handle():
    worker = Worker(MemoryTaskQueue("default"), lambda session_id: None, "cli")
    worker.with_poll_interval(0.01)
    return await worker.start()


@pytest.mark.asyncio
async def test_stop_signal_ends_wait():
    handle = await _idle_handle()
    stop = asyncio.Event()
    stop.set()

    assert await asyncio.wait_for(wait_for_stop(handle, stop), timeout=1) is False
    assert handle.is_running()
    await handle.shutdown()


@pytest.mark.asyncio
async def test_dead_worker_loop_ends_wait():
    handle = await _idle_handle()
    handle.abort()

    assert await asyncio.wait_for(wait_for_stop(handle, asyncio.Event()), timeout=1) is True
    assert not handle.is_running()
    assert handle.exception() is None
