"""
Workflow Engine - the run loop.

The engine drives every task instance through PENDING → EXECUTING →
COMPLETED. Per dequeued spec it executes the node (a task through
execute_task(), a parallel group through GroupExecutor), then either
retries, escalates, suspends or evaluates the handler's directives in
strict priority order:

    cancel > terminate > jump > self-loop > normal

A checkpoint requested by the handler is taken right after the task has
completed and its successors are enqueued, before the next dequeue.

From Dave Cheney: "Design APIs for their default use case"
The default engine needs no configuration: ``await
WorkflowEngine().execute(context)`` runs a graph to completion in-process.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from graflow.core.context import Directives, ExecutionContext
from graflow.core.errors import (
    CycleLimitExceededError,
    JumpTargetError,
    MaxStepsExceededError,
    TaskExecutionError,
    UnknownNodeError,
    WorkflowCancelledError,
)
from graflow.core.graph import GroupNode, TaskNode
from graflow.executor.checkpoint import CheckpointManager
from graflow.executor.execution import check_should_retry, execute_task
from graflow.executor.feedback import FeedbackManager
from graflow.executor.group import DEFAULT_MAX_CYCLES, GroupExecutor
from graflow.executor.outcome import Failed, Suspended
from graflow.models import ExecutionRecord, RunStatus, TaskSpec
from graflow.storage.base import TaskQueue, WorkNotificationSource

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 10_000


@dataclass
class WorkflowResult:
    """Summary of a run that returned normally.

    Cancellation and fatal task faults are raised instead
    (WorkflowCancelledError, TaskExecutionError, GroupExecutionError).
    """

    session_id: str
    status: RunStatus
    steps: int
    completed: list[str]
    reason: str | None = None
    checkpoints: list[str] = field(default_factory=list)
    pending_feedback: str | None = None
    elapsed: float = 0.0
    history: list[ExecutionRecord] = field(default_factory=list)
    """Every finished attempt of the run, in order (resumed runs include earlier work)."""

    _context: ExecutionContext | None = field(default=None, repr=False, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.status.is_success

    @property
    def checkpoint_path(self) -> str | None:
        """Most recent checkpoint of the run (the suspension checkpoint when SUSPENDED)."""
        return self.checkpoints[-1] if self.checkpoints else None

    async def result_of(self, task_id: str, default: Any = None) -> Any:
        """Return value of ``task_id`` as stored in the run's channel."""
        if self._context is None:
            return default
        return await self._context.get_result(task_id, default)


class WorkflowEngine:
    """
    Executes a TaskGraph held by an ExecutionContext.

    The engine itself is stateless between runs; everything a run owns
    lives in its ExecutionContext, so one engine can execute many
    contexts (sequentially or concurrently).

    Usage:
        ```python
        graph = TaskGraph("etl")
        graph.add_task("extract", extract)
        graph.add_task("load", load, depends_on=["extract"])

        engine = WorkflowEngine().with_injection("db", db).with_max_steps(500)
        result = await engine.execute(ExecutionContext.create(graph))
        print(result.status, await result.result_of("load"))
        ```
    """

    def __init__(self):
        self.injections: dict[str, Any] = {}
        self.max_steps: int | None = DEFAULT_MAX_STEPS
        self.default_max_cycles = DEFAULT_MAX_CYCLES
        self.checkpoint_manager = CheckpointManager()
        self.feedback_manager = FeedbackManager()
        self.poll_interval = 0.05
        self.worker_queue: TaskQueue | None = None

    # ========================================================================
    # Builder methods
    # ========================================================================

    def with_injection(self, name: str, value: Any) -> WorkflowEngine:
        """Inject ``value`` for every handler parameter called ``name``.

        Injections take priority over bound parameters and channel values.
        """
        self.injections[name] = value
        return self

    def with_max_steps(self, max_steps: int | None) -> WorkflowEngine:
        """Cap the number of dequeued specs per run (None disables the cap)."""
        self.max_steps = max_steps
        return self

    def with_default_max_cycles(self, max_cycles: int) -> WorkflowEngine:
        """Self-loop limit for tasks that do not set ``max_cycles``."""
        self.default_max_cycles = max_cycles
        return self

    def with_checkpoint_manager(self, manager: CheckpointManager) -> WorkflowEngine:
        self.checkpoint_manager = manager
        return self

    def with_feedback_manager(self, manager: FeedbackManager) -> WorkflowEngine:
        self.feedback_manager = manager
        return self

    def with_poll_interval(self, interval: float) -> WorkflowEngine:
        """Polling interval for delayed retries and distributed barriers."""
        self.poll_interval = interval
        return self

    def with_worker_queue(self, queue: TaskQueue) -> WorkflowEngine:
        """Queue that distributed group branches are pushed to."""
        self.worker_queue = queue
        return self

    # ========================================================================
    # Run loop
    # ========================================================================

    async def execute(
        self, context: ExecutionContext, start_at: str | None = None
    ) -> WorkflowResult:
        """Run ``context`` until its queue drains, a directive stops it or it suspends.

        Args:
            context: Fresh context from ExecutionContext.create() or a
                resumed one from CheckpointManager.resume()
            start_at: Explicit start node (fresh contexts only)

        Returns:
            WorkflowResult with COMPLETED, TERMINATED or SUSPENDED status

        Raises:
            ConfigurationError: Start node missing or ambiguous, unknown
                node references (raised before any task runs)
            TaskExecutionError: A task failed and its retries are exhausted
            WorkflowCancelledError: A handler cancelled the run
            GroupExecutionError: A group outcome did not satisfy its policy
            CycleLimitExceededError: A self-loop exceeded its cycle limit
            MaxStepsExceededError: The run exceeded ``max_steps``
        """
        if context.started:
            if start_at is not None:
                logger.warning(
                    f"Session {context.session_id}: already started, ignoring start_at={start_at!r}"
                )
            start = None
        else:
            start = context.graph.resolve_start(start_at)

        await context.connect()

        if start is not None:
            await context.queue.enqueue(TaskSpec(task_id=start, session_id=context.session_id))
            context.start_node = start
            context.started = True
            logger.info(
                f"Run {context.session_id} of {context.graph.name!r} started at {start!r} "
                f"({len(context.graph)} nodes)"
            )
        else:
            logger.info(
                f"Run {context.session_id} of {context.graph.name!r} continuing "
                f"({len(context.completed)} completed, {await context.queue.size()} pending)"
            )

        group_executor = GroupExecutor(self)
        try:
            while True:
                spec = await self._next_spec(context.queue)
                if spec is None:
                    break

                if self.max_steps is not None and context.step_count >= self.max_steps:
                    await context.queue.enqueue_front(spec)
                    raise MaxStepsExceededError(self.max_steps)
                context.step_count += 1

                node = context.graph.get_node(spec.task_id)
                if isinstance(node, GroupNode):
                    await group_executor.run(context, node)
                    context.mark_completed(node.task_id)
                    await self._enqueue_successors(context, node.task_id)
                    await self._take_requested_checkpoint(context)
                    continue

                result = await self._run_task(context, node, spec)
                if result is not None:
                    return result
        finally:
            await group_executor.close()

        return self._result(context, RunStatus.COMPLETED)

    async def _next_spec(self, queue: TaskQueue) -> TaskSpec | None:
        """Dequeue the next ready spec, waiting out retry backoffs; None when drained."""
        while True:
            spec = await queue.dequeue()
            if spec is not None:
                return spec

            ready_at = await queue.next_ready_at()
            if ready_at is None:
                return None

            delay = max(0.0, (ready_at - datetime.now(UTC)).total_seconds())
            logger.debug(f"Waiting {delay:.3f}s for a delayed retry")
            if isinstance(queue, WorkNotificationSource):
                notify = queue.work_notify()
                try:
                    await asyncio.wait_for(notify.wait(), timeout=delay)
                except TimeoutError:
                    pass
                notify.clear()
            else:
                await asyncio.sleep(min(delay, self.poll_interval) if delay else 0)

    async def _run_task(
        self, context: ExecutionContext, node: TaskNode, spec: TaskSpec
    ) -> WorkflowResult | None:
        """Execute one task spec; returns a result if the run stops here."""
        logger.debug(f"Executing {node.task_id} (attempt {spec.attempt}, cycle {spec.cycle})")
        outcome = await execute_task(
            context, node, spec, self.injections, feedback_manager=self.feedback_manager
        )

        if isinstance(outcome, Failed):
            delay = check_should_retry(node, spec, outcome.error)
            if delay is not None:
                logger.warning(
                    f"Task {node.task_id} attempt {spec.attempt} failed, retrying in "
                    f"{delay.total_seconds():.2f}s: {outcome.message}"
                )
                await context.queue.enqueue(spec.next_attempt(delay))
                return None
            error = TaskExecutionError(
                node.task_id,
                context.cycle_count(node.task_id),
                context.elapsed(),
                outcome.error,
                attempts=spec.attempt,
            )
            logger.error(f"Run {context.session_id}: {error}")
            raise error from outcome.error

        if isinstance(outcome, Suspended):
            # Not completed: the task re-executes from its beginning on resume
            await context.queue.enqueue_front(spec)
            context.pending_feedback = outcome.feedback_id
            path, _ = await self.checkpoint_manager.create(
                context,
                metadata={"reason": "feedback_timeout", "feedback_id": outcome.feedback_id},
            )
            logger.info(
                f"Run {context.session_id} suspended on feedback {outcome.feedback_id}; "
                f"checkpoint {path}"
            )
            return self._result(
                context, RunStatus.SUSPENDED, f"waiting for feedback {outcome.feedback_id}"
            )

        return await self._apply_directives(context, node, spec, outcome.directives)

    async def _apply_directives(
        self,
        context: ExecutionContext,
        node: TaskNode,
        spec: TaskSpec,
        directives: Directives,
    ) -> WorkflowResult | None:
        task_id = node.task_id

        if directives.cancelled:
            context.cancel(directives.cancel_reason)
            logger.info(f"Run {context.session_id} cancelled by {task_id}: {directives.cancel_reason}")
            raise WorkflowCancelledError(directives.cancel_reason, task_id=task_id)

        if directives.terminated:
            context.mark_completed(task_id)
            context.terminate(directives.terminate_reason)
            await self._take_requested_checkpoint(context)
            logger.info(
                f"Run {context.session_id} terminated by {task_id}: {directives.terminate_reason}"
            )
            return self._result(context, RunStatus.TERMINATED, directives.terminate_reason)

        if directives.has_jump:
            targets = self._validate_jumps(context, task_id, directives)
            context.mark_completed(task_id)
            for target in targets:
                await context.queue.enqueue(
                    TaskSpec(task_id=target, session_id=context.session_id)
                )
            if not directives.skip_successors:
                await self._enqueue_successors(context, task_id, exclude=targets)
            logger.debug(
                f"{task_id} jumped to {targets}"
                f"{' (successors skipped)' if directives.skip_successors else ''}"
            )

        elif directives.self_loop:
            context.mark_completed(task_id)
            cycle = context.increment_cycle(task_id)
            max_cycles = node.max_cycles if node.max_cycles is not None else self.default_max_cycles
            if cycle > max_cycles:
                raise CycleLimitExceededError(task_id, max_cycles)
            await context.queue.enqueue(spec.next_cycle(cycle))
            logger.debug(f"{task_id} looping (cycle {cycle}/{max_cycles})")

        else:
            context.mark_completed(task_id)
            await self._enqueue_successors(context, task_id)

        await self._take_requested_checkpoint(context)
        return None

    def _validate_jumps(
        self, context: ExecutionContext, task_id: str, directives: Directives
    ) -> list[str]:
        """Add dynamic jump targets to the graph and reject unsafe ones."""
        targets = []
        for jump in directives.next_tasks:
            if jump.node is not None and not context.graph.has_node(jump.target):
                context.graph.add_node(jump.node)
                logger.debug(f"{task_id} added task {jump.target!r} to the graph")
            if not context.graph.has_node(jump.target):
                raise UnknownNodeError(jump.target, f"jump from {task_id!r}")
            if context.is_executing(jump.target):
                raise JumpTargetError(jump.target, "it is currently executing")
            if context.in_active_barrier(jump.target):
                raise JumpTargetError(jump.target, "its parallel group is waiting on a barrier")
            if jump.target not in targets:
                targets.append(jump.target)
        return targets

    async def _enqueue_successors(
        self, context: ExecutionContext, task_id: str, exclude: Collection[str] = ()
    ) -> None:
        """Enqueue the graph successors of ``task_id``, read fresh from the graph.

        A successor becomes ready only once every one of its predecessors
        has completed. A successor that already has a pending spec is not
        enqueued a second time.
        """
        successors = [s for s in context.graph.successors(task_id) if s not in exclude]
        if not successors:
            return
        pending = {s.task_id for s in await context.queue.pending()}
        for successor in successors:
            if successor in pending:
                logger.debug(f"{successor} already pending, not enqueued again")
                continue
            waiting = [
                p for p in context.graph.predecessors(successor) if not context.is_completed(p)
            ]
            if waiting:
                logger.debug(f"{successor} still waits on {waiting}")
                continue
            await context.queue.enqueue(TaskSpec(task_id=successor, session_id=context.session_id))

    async def _take_requested_checkpoint(self, context: ExecutionContext) -> None:
        request = context.take_checkpoint_request()
        if request is None:
            return
        await self.checkpoint_manager.create(context, path=request.path, metadata=request.metadata)

    def _result(
        self, context: ExecutionContext, status: RunStatus, reason: str | None = None
    ) -> WorkflowResult:
        result = WorkflowResult(
            session_id=context.session_id,
            status=status,
            steps=context.step_count,
            completed=sorted(context.completed),
            reason=reason,
            checkpoints=list(context.checkpoints),
            pending_feedback=context.pending_feedback,
            elapsed=context.elapsed(),
            history=list(context.history),
            _context=context,
        )
        logger.info(
            f"Run {context.session_id} {status}: {result.steps} steps, "
            f"{len(result.completed)} completed in {result.elapsed:.3f}s"
        )
        return result
