"""Execution state of one workflow run and the context handed to handlers.

ExecutionContext aggregates everything one run owns: the graph, the
channel, the queue, the completed set, cycle counters, control flags and
the deferred checkpoint request. It is passed explicitly to the engine;
there is no process-wide singleton.

TaskExecutionContext is the narrow, per-invocation view a handler sees.
Directives it records (next_task, next_iteration, terminate, cancel) are
only evaluated by the engine after the handler returns.

Design: Task-Local State (contextvars)
    The current TaskExecutionContext is also published through a
    ContextVar so helpers deep in handler code can reach it without
    threading it through every call. Each asyncio task (every parallel
    branch included) sees its own value.
"""

from __future__ import annotations

import logging
import time
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import xxhash
from uuid_extensions import uuid7

from graflow.core.errors import ConfigurationError
from graflow.core.graph import Node, TaskGraph, TaskNode
from graflow.models import AttemptOutcome, ExecutionRecord, FeedbackType
from graflow.storage.base import Channel, TaskQueue, result_key
from graflow.storage.factory import BackendConfig, create_channel, create_queue
from graflow.storage.memory import MemoryChannel, MemoryTaskQueue

if TYPE_CHECKING:
    from graflow.executor.feedback import FeedbackManager

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class CheckpointRequest:
    """A checkpoint requested by a handler, taken after the task completes."""

    path: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ExecutionContext:
    """Aggregate state of one workflow run.

    Owned exclusively by one run. Created fresh via ``create()`` or
    restored by ``CheckpointManager.resume()``.

    Usage:
        ```python
        context = ExecutionContext.create(graph)
        result = await WorkflowEngine().execute(context)
        value = await context.get_result("load")
        ```
    """

    def __init__(
        self,
        graph: TaskGraph,
        channel: Channel,
        queue: TaskQueue,
        session_id: str,
        backend: BackendConfig | None = None,
    ):
        self.graph = graph
        self.channel = channel
        self.queue = queue
        self.session_id = session_id
        self.backend = backend or BackendConfig()

        self.completed: set[str] = set()
        self.cycle_counts: dict[str, int] = {}
        self.step_count = 0
        self.started = False
        self.start_node: str | None = None
        self.pending_feedback: str | None = None
        self.checkpoints: list[str] = []
        self.history: list[ExecutionRecord] = []

        self._executing: set[str] = set()
        self._barriers: dict[str, set[str]] = {}
        self._checkpoint_request: CheckpointRequest | None = None
        self._terminated = False
        self._cancelled = False
        self._reason: str | None = None
        self._started_at = time.monotonic()

    @classmethod
    def create(
        cls,
        graph: TaskGraph,
        channel: Channel | None = None,
        queue: TaskQueue | None = None,
        session_id: str | None = None,
        backend: BackendConfig | None = None,
    ) -> ExecutionContext:
        """Create a context for a new run.

        Missing channel/queue are built from ``backend`` (process-local
        memory when no backend is given). The run queue is named after the
        session so concurrent runs sharing a store stay isolated.
        """
        session_id = session_id or str(uuid7())
        if backend is None and channel is not None and channel.is_shared:
            logger.warning(
                f"Session {session_id}: shared channel without a BackendConfig; "
                "checkpoints of this run cannot reconnect"
            )
        config = backend or BackendConfig()
        if channel is None:
            channel = (
                create_channel(config, session_id)
                if backend
                else MemoryChannel(session_id, namespace=config.namespace)
            )
        if queue is None:
            queue = (
                create_queue(config, name=f"run:{session_id}")
                if backend
                else MemoryTaskQueue(f"run:{session_id}", namespace=config.namespace)
            )
        return cls(graph, channel, queue, session_id, backend=config)

    async def connect(self) -> None:
        """Connect channel and queue (idempotent)."""
        await self.channel.connect()
        await self.queue.connect()

    async def close(self) -> None:
        await self.queue.close()
        await self.channel.close()

    # ========================================================================
    # Results and completion
    # ========================================================================

    async def get_result(self, task_id: str, default: Any = None) -> Any:
        """Return value of ``task_id`` (stored under ``{task_id}.__result__``)."""
        return await self.channel.get(result_key(task_id), default)

    async def set_result(self, task_id: str, value: Any) -> None:
        await self.channel.set(result_key(task_id), value)

    def mark_completed(self, task_id: str) -> None:
        self.completed.add(task_id)

    def is_completed(self, task_id: str) -> bool:
        return task_id in self.completed

    def record_attempt(
        self,
        task_id: str,
        attempt: int,
        cycle: int,
        outcome: AttemptOutcome,
        duration: float,
        error: str | None = None,
    ) -> ExecutionRecord:
        """Append one finished attempt to the run history."""
        record = ExecutionRecord(task_id, attempt, cycle, outcome, duration, error)
        self.history.append(record)
        return record

    # ========================================================================
    # Cycles and execution state
    # ========================================================================

    def increment_cycle(self, task_id: str) -> int:
        """Count one more self-loop cycle for ``task_id``; returns the new count."""
        self.cycle_counts[task_id] = self.cycle_counts.get(task_id, 0) + 1
        return self.cycle_counts[task_id]

    def cycle_count(self, task_id: str) -> int:
        return self.cycle_counts.get(task_id, 0)

    def mark_executing(self, task_id: str) -> None:
        self._executing.add(task_id)

    def clear_executing(self, task_id: str) -> None:
        self._executing.discard(task_id)

    def is_executing(self, task_id: str) -> bool:
        return task_id in self._executing

    def enter_barrier(self, group_id: str, branch_ids: list[str]) -> None:
        """Register the branches of a group whose barrier is pending."""
        self._barriers[group_id] = set(branch_ids)

    def exit_barrier(self, group_id: str) -> None:
        self._barriers.pop(group_id, None)

    def in_active_barrier(self, task_id: str) -> bool:
        """True if ``task_id`` is a group, or a branch of a group, waiting on its barrier."""
        if task_id in self._barriers:
            return True
        return any(task_id in members for members in self._barriers.values())

    # ========================================================================
    # Deferred checkpoint
    # ========================================================================

    def request_checkpoint(self, path: str | None = None, metadata: dict | None = None) -> None:
        """Ask for a checkpoint once the current task completes.

        Phase one of a two-phase write: only a flag is set here. The engine
        consumes it via take_checkpoint_request() right after the task
        completes and before the next dequeue.
        """
        self._checkpoint_request = CheckpointRequest(path, dict(metadata or {}))

    def take_checkpoint_request(self) -> CheckpointRequest | None:
        """Return and clear the pending checkpoint request."""
        request, self._checkpoint_request = self._checkpoint_request, None
        return request

    # ========================================================================
    # Control flags
    # ========================================================================

    def terminate(self, reason: str = "") -> None:
        self._terminated = True
        self._reason = reason

    def cancel(self, reason: str = "") -> None:
        self._cancelled = True
        self._reason = reason

    @property
    def is_terminated(self) -> bool:
        return self._terminated

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def elapsed(self) -> float:
        """Seconds since the run (or the resumed run) started."""
        return time.monotonic() - self._started_at

    def __repr__(self) -> str:
        return (
            f"ExecutionContext(session_id={self.session_id!r}, graph={self.graph.name!r}, "
            f"completed={len(self.completed)}, steps={self.step_count})"
        )


# =============================================================================
# Handler-facing context
# =============================================================================


@dataclass(frozen=True)
class NextTask:
    """A next_task directive: the target id, the node to add if new, and goto."""

    target: str
    node: Node | None = None
    goto: bool = False


@dataclass
class Directives:
    """Control directives recorded by one handler invocation."""

    cancelled: bool = False
    cancel_reason: str = ""
    terminated: bool = False
    terminate_reason: str = ""
    next_tasks: list[NextTask] = field(default_factory=list)
    self_loop: bool = False

    @property
    def skip_successors(self) -> bool:
        return any(n.goto for n in self.next_tasks)

    @property
    def has_jump(self) -> bool:
        return bool(self.next_tasks)


CURRENT_TASK_CONTEXT: ContextVar[TaskExecutionContext | None] = ContextVar(
    "current_task_context", default=None
)
"""Task-local TaskExecutionContext of the handler being executed."""


class TaskExecutionContext:
    """Context injected into handlers (``inject_context=True``).

    Example:
        ```python
        async def poll(ctx: TaskExecutionContext) -> None:
            channel = ctx.get_channel()
            if await channel.incr("polls") < 3:
                ctx.next_iteration()
        ```
    """

    def __init__(
        self,
        task_id: str,
        channel: Channel,
        session_id: str,
        *,
        cycle: int = 0,
        attempt: int = 1,
        execution: ExecutionContext | None = None,
        feedback_manager: FeedbackManager | None = None,
        group_id: str | None = None,
    ):
        self.task_id = task_id
        self.session_id = session_id
        self.cycle = cycle
        self.attempt = attempt
        self.group_id = group_id
        self.directives = Directives()
        self._channel = channel
        self._execution = execution
        self._feedback_manager = feedback_manager
        self._feedback_requests = 0

    @property
    def execution(self) -> ExecutionContext | None:
        """The run context, None on remote workers."""
        return self._execution

    def get_channel(self) -> Channel:
        return self._channel

    async def get_result(self, task_id: str, default: Any = None) -> Any:
        return await self._channel.get(result_key(task_id), default)

    # ========================================================================
    # Directives
    # ========================================================================

    def next_task(self, node_or_id: TaskNode | str, goto: bool = False) -> None:
        """Continue with another task after this one completes.

        Passing a TaskNode that is not yet in the graph adds it
        dynamically. With ``goto=True`` normal successors are skipped and
        only the target is enqueued; otherwise the target is enqueued in
        addition to them.
        """
        if isinstance(node_or_id, str):
            self.directives.next_tasks.append(NextTask(node_or_id, None, goto))
        else:
            self.directives.next_tasks.append(NextTask(node_or_id.task_id, node_or_id, goto))

    def next_iteration(self) -> None:
        """Re-run this task for another cycle instead of continuing to successors."""
        self.directives.self_loop = True

    def terminate_workflow(self, reason: str = "") -> None:
        """End the run successfully after this task; successors are not enqueued."""
        self.directives.terminated = True
        self.directives.terminate_reason = reason

    def cancel_workflow(self, reason: str = "") -> None:
        """Abort the run; this task is not marked completed."""
        self.directives.cancelled = True
        self.directives.cancel_reason = reason

    def checkpoint(self, path: str | None = None, metadata: dict | None = None) -> None:
        """Request a checkpoint once this task has completed."""
        if self._execution is None:
            logger.warning(
                f"Task {self.task_id}: checkpoint requested on a remote worker; ignored"
            )
            return
        self._execution.request_checkpoint(path, metadata)

    # ========================================================================
    # Human feedback
    # ========================================================================

    async def request_feedback(
        self,
        feedback_type: FeedbackType | str,
        prompt: str,
        timeout: float,
        options: list[str] | None = None,
        notification_config: dict[str, Any] | None = None,
    ) -> Any:
        """Block until a human responds, then return the response value.

        If no response arrives within ``timeout`` seconds the run is
        checkpointed and suspended; on resume the task starts over and this
        call returns the response delivered in the meantime.
        """
        if self._feedback_manager is None:
            raise ConfigurationError(f"Task {self.task_id}: no feedback manager configured")
        self._feedback_requests += 1
        response = await self._feedback_manager.request(
            self,
            FeedbackType(feedback_type),
            prompt,
            timeout,
            options=options,
            notification_config=notification_config,
        )
        return response.value

    def next_feedback_id(self) -> str:
        """Deterministic id of the current feedback request.

        Stable across re-executions of the same task cycle, so a resumed
        run finds the response delivered for the suspended request.
        """
        return self.idempotency_key("feedback", self.cycle, self._feedback_requests)

    def idempotency_key(self, *parts: Any) -> str:
        """Key for guarding external side effects against re-execution.

        Stable for the same session, task and parts: a task re-run after a
        resume or a redelivery produces the same key.
        """
        raw = "\x1f".join(str(p) for p in (self.session_id, self.task_id, *parts))
        return xxhash.xxh3_64_hexdigest(raw.encode())

    def __repr__(self) -> str:
        return (
            f"TaskExecutionContext(task_id={self.task_id!r}, cycle={self.cycle}, "
            f"attempt={self.attempt})"
        )


def get_current_task_context() -> TaskExecutionContext | None:
    """Get the TaskExecutionContext of the running handler.

    Returns:
        Current context if called from inside a handler, None otherwise
    """
    return CURRENT_TASK_CONTEXT.get()
