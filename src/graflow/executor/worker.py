"""Remote worker for distributed group branches.

Workers poll a shared task queue for branch specs pushed by distributed
groups, execute them through run_branch() (the same primitive in-process
groups use) and report to the group's barrier in the shared channel.

Features:
- Event-driven work polling with fallback
- Stateless between tasks: a fresh channel binding per dequeued spec
- Processed/succeeded/failed counters and cumulative execution time
- Graceful shutdown with a grace period for the in-flight task
"""

from __future__ import annotations

import asyncio
import logging
import pickle
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from graflow.core.context import ExecutionContext
from graflow.core.graph import TaskGraph, TaskNode
from graflow.executor.group import DEFAULT_MAX_CYCLES, Barrier, run_branch
from graflow.models import TaskSpec
from graflow.storage.base import Channel, TaskQueue, WorkNotificationSource
from graflow.storage.memory import MemoryTaskQueue

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[str], Channel]
"""Builds the channel of a session (``session_id -> Channel``)."""


@dataclass
class WorkerMetrics:
    """Counters reported by a worker."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    total_execution_time: float = 0.0

    @property
    def average_execution_time(self) -> float:
        return self.total_execution_time / self.processed if self.processed else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "total_execution_time": self.total_execution_time,
        }


class Worker:
    """Worker that polls and executes branch specs from a shared queue.

    Design Patterns:
    - Template Method: _run() defines the fixed loop skeleton
    - Builder: with_poll_interval(), with_grace_period() for configuration

    Usage:
        ```python
        config = BackendConfig.from_env()
        worker = Worker(
            create_queue(config, "default"),
            lambda session_id: create_channel(config, session_id),
            "worker-1",
        ).with_grace_period(30.0)

        handle = await worker.start()
        # ... let it run ...
        await handle.shutdown()
        ```
    """

    def __init__(self, queue: TaskQueue, channel_factory: ChannelFactory, worker_id: str):
        self._queue = queue
        self._channel_factory = channel_factory
        self._worker_id = worker_id
        self._grace_period = 30.0
        self._injections: dict[str, Any] = {}
        self._default_max_cycles = DEFAULT_MAX_CYCLES
        self.with_poll_interval(1.0)

        self.metrics = WorkerMetrics()

        self._shutdown_event = asyncio.Event()
        self._running = False
        self._current: asyncio.Task | None = None

        if isinstance(queue, WorkNotificationSource):
            self._work_notify = queue.work_notify()
            logger.debug(f"Worker {worker_id}: Event-driven work notifications enabled")
        else:
            self._work_notify = None
            logger.debug(f"Worker {worker_id}: Polling-based work detection (no notifications)")

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def with_poll_interval(self, interval: float) -> Worker:
        """Configure polling interval (builder pattern).

        A few milliseconds of per-worker jitter keep a fleet of workers
        from polling in lockstep.
        """
        self._poll_interval = interval
        worker_hash = sum(ord(c) for c in self._worker_id)
        jitter_ms = 1 + (worker_hash % 5)
        self._poll_interval_with_jitter = interval + (jitter_ms / 1000.0)
        return self

    def with_grace_period(self, seconds: float) -> Worker:
        """How long shutdown() waits for the in-flight task before cancelling it."""
        self._grace_period = seconds
        return self

    def with_injection(self, name: str, value: Any) -> Worker:
        self._injections[name] = value
        return self

    def with_default_max_cycles(self, max_cycles: int) -> Worker:
        self._default_max_cycles = max_cycles
        return self

    async def start(self) -> WorkerHandle:
        """Start the worker loop.

        Returns WorkerHandle immediately, letting the caller decide
        whether to await or run concurrently.
        """
        await self._queue.connect()
        self._running = True
        task = asyncio.create_task(self._run(), name=f"graflow-worker-{self._worker_id}")
        return WorkerHandle(self, task)

    async def _run(self) -> None:
        logger.info(f"Worker {self._worker_id} started on {self._queue!r}")
        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    spec = await self._queue.dequeue(self._worker_id)
                except Exception as e:
                    logger.error(f"Worker {self._worker_id}: dequeue failed: {e}")
                    await asyncio.sleep(self._poll_interval_with_jitter)
                    continue

                if spec is None:
                    await self._wait_for_work()
                    continue

                logger.debug(f"Worker {self._worker_id} claimed {spec!r}")
                self._current = asyncio.create_task(self._process(spec))
                # asyncio.wait does not raise if the task is cancelled by shutdown()
                await asyncio.wait({self._current})
                self._current = None
        finally:
            self._running = False
            if self._current is not None and not self._current.done():
                # Aborted: the in-flight task requeues its spec on cancellation
                self._current.cancel()
            logger.info(
                f"Worker {self._worker_id} stopped: {self.metrics.processed} processed, "
                f"{self.metrics.succeeded} succeeded, {self.metrics.failed} failed"
            )

    async def _wait_for_work(self) -> None:
        if self._work_notify is None:
            # No notification support - sleep to avoid a tight loop
            await asyncio.sleep(self._poll_interval_with_jitter)
            return
        try:
            await asyncio.wait_for(self._work_notify.wait(), timeout=self._poll_interval_with_jitter)
            self._work_notify.clear()
        except TimeoutError:
            pass

    async def _process(self, spec: TaskSpec) -> None:
        """Execute one branch spec and report it to its barrier."""
        started = time.perf_counter()
        try:
            succeeded = await self._execute_spec(spec)
        except asyncio.CancelledError:
            # Interrupted by shutdown: hand the spec back so another worker runs it
            logger.warning(
                f"Worker {self._worker_id}: {spec.task_id} interrupted by shutdown, requeueing"
            )
            await self._queue.enqueue_front(spec)
            raise
        except Exception as e:
            logger.error(
                f"Worker {self._worker_id} unexpected error: task_id={spec.task_id}, error={e}"
            )
            succeeded = False

        self.metrics.processed += 1
        self.metrics.total_execution_time += time.perf_counter() - started
        if succeeded:
            self.metrics.succeeded += 1
        else:
            self.metrics.failed += 1

    async def _execute_spec(self, spec: TaskSpec) -> bool:
        if spec.barrier_key is None or spec.payload is None:
            raise WorkerError(
                f"Spec {spec.spec_id} for {spec.task_id!r} is not a group branch "
                "(missing barrier key or payload)"
            )

        channel = self._channel_factory(spec.session_id)
        await channel.connect()
        try:
            barrier = Barrier(spec.barrier_key)
            try:
                node = pickle.loads(spec.payload)
            except (pickle.UnpicklingError, AttributeError, ImportError, EOFError) as e:
                await barrier.report(channel, spec.task_id, f"cannot load task node: {e}")
                return False
            if not isinstance(node, TaskNode):
                await barrier.report(channel, spec.task_id, "payload is not a task node")
                return False

            # Throwaway run context: nothing survives past this spec
            graph = TaskGraph(f"worker:{spec.group_id}")
            graph.add_node(node)
            context = ExecutionContext(
                graph,
                channel,
                MemoryTaskQueue(f"worker:{self._worker_id}"),
                spec.session_id,
            )
            return await run_branch(
                context,
                node,
                barrier,
                self._injections,
                spec=spec,
                default_max_cycles=self._default_max_cycles,
                depth=spec.depth,
            )
        finally:
            await channel.close()

    async def shutdown(self) -> None:
        """Gracefully shutdown the worker.

        Stops dequeuing and gives the in-flight task up to the grace
        period to finish; after that it is cancelled and requeued.
        """
        logger.info(f"Worker {self._worker_id} shutting down...")
        self._running = False
        self._shutdown_event.set()

        current = self._current
        if current is not None and not current.done():
            logger.info(
                f"Worker {self._worker_id}: waiting up to {self._grace_period}s "
                "for the in-flight task"
            )
            done, _ = await asyncio.wait({current}, timeout=self._grace_period)
            if not done:
                logger.warning(
                    f"Worker {self._worker_id}: grace period elapsed, cancelling in-flight task"
                )
                current.cancel()
                await asyncio.gather(current, return_exceptions=True)

    async def close(self) -> None:
        """Release the queue connection once the loop has stopped."""
        await self._queue.close()


class WorkerHandle:
    """Handle for controlling a running worker.

    Composition - handle HAS-A worker, not IS-A worker.

    Usage:
        handle = await worker.start()
        await handle.shutdown()
    """

    def __init__(self, worker: Worker, task: asyncio.Task):
        self._worker = worker
        self._task = task

    def worker_id(self) -> str:
        return self._worker.worker_id

    def is_running(self) -> bool:
        """Return True if the worker task is still running."""
        return not self._task.done()

    @property
    def metrics(self) -> WorkerMetrics:
        return self._worker.metrics

    async def wait(self) -> None:
        """Wait until the worker loop has ended, however it ended."""
        await asyncio.wait({self._task})

    def exception(self) -> BaseException | None:
        """Exception that ended the worker loop, or None (running, clean stop, abort)."""
        if not self._task.done() or self._task.cancelled():
            return None
        return self._task.exception()

    async def shutdown(self) -> None:
        """Shutdown worker and wait for its loop to finish."""
        await self._worker.shutdown()
        await self._task
        await self._worker.close()
        logger.info("Worker handle closed")

    def abort(self) -> None:
        """Abort the worker immediately without waiting for completion.

        Note: This bypasses the grace period; an in-flight branch is
        cancelled at once and its spec is handed back to the queue.
        """
        self._task.cancel()


class WorkerError(Exception):
    """Worker operation failed."""

    pass
