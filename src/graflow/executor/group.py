"""Parallel groups under the Bulk Synchronous Parallel model.

A group runs in three phases:

1. **Dispatch**: the barrier keys are reset and one branch is started per
   member, either as an asyncio task in this process or as a TaskSpec
   (with the pickled node as payload) pushed to the shared worker queue.
2. **Computation**: every branch runs independently through
   ``run_branch()``, the primitive shared with remote workers. Whatever
   the result, each branch reports exactly once to the barrier: it
   appends its id to the succeeded or failed list and then atomically
   increments the barrier counter.
3. **Barrier**: the coordinator waits until the counter reaches the branch
   count or the timeout elapses, then evaluates the group policy. Branches
   that never reported count as failed.

Only the engine enqueues the group's joint successor(s), once, after
``GroupExecutor.run()`` returns. Branches never see their graph
successors, and jump directives inside a branch fail the branch, so the
barrier cannot be bypassed.

Channel layout (prefix ``__group__.{group_id}.{cycle}``):
    {prefix}.barrier          counter incremented by every branch
    {prefix}.succeeded        list of succeeded branch ids
    {prefix}.failed           list of failed branch ids
    {prefix}.errors           list of {"branch": id, "error": text}
    {prefix}.reported.{id}    per-branch guard against duplicate reports
"""

from __future__ import annotations

import asyncio
import logging
import pickle
import time
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from graflow.core.context import ExecutionContext
from graflow.core.errors import (
    ConfigurationError,
    GroupExecutionError,
    GroupNestingError,
)
from graflow.core.graph import GroupNode, Node, TaskGraph, TaskNode
from graflow.executor.execution import check_should_retry, execute_task
from graflow.executor.outcome import Failed, Suspended
from graflow.models import AttemptOutcome, GroupOutcome, TaskSpec, evaluate_policy
from graflow.storage.base import TaskQueue
from graflow.storage.factory import create_queue

if TYPE_CHECKING:
    from graflow.executor.engine import WorkflowEngine
    from graflow.executor.feedback import FeedbackManager

logger = logging.getLogger(__name__)

MAX_GROUP_DEPTH = 3
"""Deepest allowed nesting of groups inside group branches (top level is 1)."""

DEFAULT_MAX_CYCLES = 100

GROUP_PREFIX = "__group__"


@dataclass(frozen=True)
class Barrier:
    """Channel keys of one group barrier."""

    key: str

    @classmethod
    def for_group(cls, group_id: str, cycle: int = 0) -> Barrier:
        return cls(f"{GROUP_PREFIX}.{group_id}.{cycle}")

    @property
    def counter_key(self) -> str:
        return f"{self.key}.barrier"

    @property
    def succeeded_key(self) -> str:
        return f"{self.key}.succeeded"

    @property
    def failed_key(self) -> str:
        return f"{self.key}.failed"

    @property
    def errors_key(self) -> str:
        return f"{self.key}.errors"

    def reported_key(self, branch_id: str) -> str:
        return f"{self.key}.reported.{branch_id}"

    async def reset(self, channel, branch_ids: list[str]) -> None:
        """Clear state left by an earlier entry into the same group cycle."""
        for key in (self.succeeded_key, self.failed_key, self.errors_key):
            await channel.delete(key)
        for branch_id in branch_ids:
            await channel.delete(self.reported_key(branch_id))
        await channel.set(self.counter_key, 0)

    async def report(self, channel, branch_id: str, error: str | None = None) -> bool:
        """Record a branch result and increment the counter.

        The lists are written before the increment, so a coordinator that
        observes the final count also observes every result. Returns False
        for a duplicate report (redelivered spec), which is ignored.
        """
        if await channel.incr(self.reported_key(branch_id)) > 1:
            logger.warning(f"Ignoring duplicate barrier report from branch {branch_id}")
            return False
        if error is None:
            await channel.append(self.succeeded_key, branch_id)
        else:
            await channel.append(self.failed_key, branch_id)
            await channel.append(self.errors_key, {"branch": branch_id, "error": error})
        await channel.incr(self.counter_key)
        return True

    async def count(self, channel) -> int:
        return int(await channel.get(self.counter_key, 0))

    async def collect(self, channel) -> tuple[list[str], dict[str, str]]:
        succeeded = await channel.get(self.succeeded_key, [])
        errors = await channel.get(self.errors_key, [])
        failed = {entry["branch"]: entry["error"] for entry in errors}
        for branch_id in await channel.get(self.failed_key, []):
            failed.setdefault(branch_id, "failed")
        return list(succeeded), failed


def group_depth(graph: TaskGraph, group: GroupNode) -> int:
    """Nesting depth of ``group``'s subtree (1 for a group of plain tasks)."""
    nested = [
        group_depth(graph, node)
        for node in (graph.get_node(b) for b in group.branches)
        if isinstance(node, GroupNode)
    ]
    return 1 + max(nested, default=0)


async def run_branch(
    context: ExecutionContext,
    node: Node,
    barrier: Barrier,
    injections: Mapping[str, Any] | None = None,
    *,
    spec: TaskSpec | None = None,
    feedback_manager: FeedbackManager | None = None,
    default_max_cycles: int = DEFAULT_MAX_CYCLES,
    group_executor: GroupExecutor | None = None,
    depth: int = 1,
) -> bool:
    """Run one branch to its end and report it to the barrier.

    Used by in-process groups and by remote workers. Retries happen
    inline with backoff sleeps; self-loops run inline up to the cycle
    limit. A jump directive, a cancel directive, an exhausted retry
    budget or a feedback timeout fail the branch.

    Returns:
        True if the branch succeeded
    """
    spec = spec or TaskSpec(
        task_id=node.task_id,
        session_id=context.session_id,
        barrier_key=barrier.key,
        depth=depth,
    )

    if isinstance(node, GroupNode):
        if group_executor is None:
            error = "nested groups can only run in-process"
        else:
            try:
                await group_executor.run(context, node, depth=depth + 1)
                error = None
            except GroupExecutionError as e:
                error = str(e)
        if error is None:
            context.mark_completed(node.task_id)
        await barrier.report(context.channel, node.task_id, error)
        return error is None

    error = await _run_task_branch(
        context, node, spec, injections, feedback_manager, default_max_cycles
    )
    if error is None:
        context.mark_completed(node.task_id)
        logger.debug(f"Branch {node.task_id} succeeded")
    else:
        logger.warning(f"Branch {node.task_id} failed: {error}")
    await barrier.report(context.channel, node.task_id, error)
    return error is None


async def _run_task_branch(
    context: ExecutionContext,
    node: TaskNode,
    spec: TaskSpec,
    injections: Mapping[str, Any] | None,
    feedback_manager: FeedbackManager | None,
    default_max_cycles: int,
) -> str | None:
    """Execute a task branch with inline retries and self-loops; error text or None."""
    max_cycles = node.max_cycles if node.max_cycles is not None else default_max_cycles
    while True:
        outcome = await execute_task(context, node, spec, injections, feedback_manager)

        if isinstance(outcome, Failed):
            delay = check_should_retry(node, spec, outcome.error)
            if delay is None:
                return outcome.message
            logger.warning(
                f"Branch {node.task_id} attempt {spec.attempt} failed, retrying in "
                f"{delay.total_seconds():.2f}s: {outcome.message}"
            )
            await asyncio.sleep(delay.total_seconds())
            spec = spec.next_attempt(timedelta(0))
            continue

        if isinstance(outcome, Suspended):
            return f"feedback {outcome.feedback_id} timed out inside a parallel branch"

        directives = outcome.directives
        if directives.cancelled:
            return f"cancelled: {directives.cancel_reason}"
        if directives.has_jump:
            return "jump directives are not allowed inside parallel branches"
        if directives.terminated:
            logger.warning(f"Branch {node.task_id}: terminate directive ignored inside a group")
        if directives.self_loop:
            cycle = spec.cycle + 1
            if cycle > max_cycles:
                return f"exceeded its limit of {max_cycles} cycles"
            context.cycle_counts[node.task_id] = cycle
            spec = spec.next_cycle(cycle)
            continue
        return None


class GroupExecutor:
    """Coordinates one parallel group: dispatch, barrier wait, policy.

    Design: Single Responsibility
        Knows nothing about successor resolution; the engine enqueues the
        joint successor(s) after run() returns.
    """

    def __init__(self, engine: WorkflowEngine | None = None):
        self.injections: dict[str, Any] = dict(engine.injections) if engine else {}
        self.feedback_manager = engine.feedback_manager if engine else None
        self.default_max_cycles = engine.default_max_cycles if engine else DEFAULT_MAX_CYCLES
        self.poll_interval = engine.poll_interval if engine else 0.05
        self.worker_queue: TaskQueue | None = engine.worker_queue if engine else None
        self._owns_queue = False

    async def run(self, context: ExecutionContext, group: GroupNode, depth: int = 1) -> GroupOutcome:
        """Execute ``group`` and evaluate its policy.

        Args:
            context: Run the group belongs to
            group: The group node
            depth: Nesting level of this group (1 at top level)

        Returns:
            The outcome, also stored under ``{group_id}.__result__``

        Raises:
            GroupNestingError: If groups nest deeper than MAX_GROUP_DEPTH
            GroupExecutionError: If the outcome does not satisfy the policy
        """
        total_depth = depth - 1 + group_depth(context.graph, group)
        if total_depth > MAX_GROUP_DEPTH:
            raise GroupNestingError(group.task_id, total_depth, MAX_GROUP_DEPTH)

        cycle = context.cycle_count(group.task_id)
        barrier = Barrier.for_group(group.task_id, cycle)
        branches = list(group.branches)
        await barrier.reset(context.channel, branches)
        context.enter_barrier(group.task_id, branches)
        logger.info(
            f"Group {group.task_id}: dispatching {len(branches)} branches "
            f"({'distributed' if group.distributed else 'in-process'}, "
            f"policy {group.policy.describe()})"
        )

        started = time.monotonic()
        try:
            if group.distributed:
                timed_out = await self._run_distributed(context, group, barrier, depth)
            else:
                timed_out = await self._run_in_process(context, group, barrier, depth)
            succeeded, failed = await barrier.collect(context.channel)
        finally:
            context.exit_barrier(group.task_id)

        for branch_id in branches:
            if branch_id not in succeeded and branch_id not in failed:
                failed[branch_id] = "did not reach the barrier before the timeout"
        # Remote branches completed on a worker's throwaway context
        for branch_id in succeeded:
            context.mark_completed(branch_id)

        outcome = GroupOutcome(
            group_id=group.task_id,
            policy=group.policy.describe(),
            succeeded=[b for b in branches if b in succeeded],
            failed={b: failed[b] for b in branches if b in failed},
            timed_out=timed_out,
            passed=evaluate_policy(group.policy, branches, succeeded, failed),
        )
        await context.set_result(group.task_id, outcome)
        context.record_attempt(
            group.task_id,
            1,
            cycle,
            AttemptOutcome.SUCCEEDED if outcome.passed else AttemptOutcome.FAILED,
            time.monotonic() - started,
            None if outcome.passed else f"policy {outcome.policy} not satisfied",
        )
        logger.info(
            f"Group {group.task_id}: {outcome.success_count}/{len(branches)} succeeded in "
            f"{time.monotonic() - started:.3f}s, policy {'passed' if outcome.passed else 'failed'}"
        )
        if not outcome.passed:
            raise GroupExecutionError(outcome)
        return outcome

    async def _run_in_process(
        self, context: ExecutionContext, group: GroupNode, barrier: Barrier, depth: int
    ) -> bool:
        """Run every branch as an asyncio task; returns True on timeout."""
        tasks = [
            asyncio.create_task(
                run_branch(
                    context,
                    context.graph.get_node(branch_id),
                    barrier,
                    self.injections,
                    feedback_manager=self.feedback_manager,
                    default_max_cycles=self.default_max_cycles,
                    group_executor=self,
                    depth=depth,
                ),
                name=f"graflow-branch-{branch_id}",
            )
            for branch_id in group.branches
        ]
        done, pending = await asyncio.wait(tasks, timeout=group.timeout)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        # Infrastructure faults (storage, nesting) are not branch failures
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
        return bool(pending)

    async def _run_distributed(
        self, context: ExecutionContext, group: GroupNode, barrier: Barrier, depth: int
    ) -> bool:
        """Push branch specs to the worker queue and poll the barrier; True on timeout."""
        queue = await self._worker_queue(context)
        for branch_id in group.branches:
            node = context.graph.get_node(branch_id)
            if not isinstance(node, TaskNode):
                raise ConfigurationError(
                    f"Group {group.task_id}: distributed branches must be tasks, "
                    f"{branch_id!r} is a group"
                )
            try:
                payload = pickle.dumps(node)
            except (pickle.PicklingError, TypeError, AttributeError) as e:
                raise ConfigurationError(
                    f"Branch {branch_id!r} cannot be sent to workers: {e} "
                    "(handlers must be importable module-level callables)"
                ) from e
            await queue.enqueue(
                TaskSpec(
                    task_id=branch_id,
                    session_id=context.session_id,
                    group_id=group.task_id,
                    barrier_key=barrier.key,
                    depth=depth,
                    payload=payload,
                )
            )

        expected = len(group.branches)
        deadline = time.monotonic() + group.timeout if group.timeout is not None else None
        while await barrier.count(context.channel) < expected:
            if deadline is not None and time.monotonic() >= deadline:
                return True
            await asyncio.sleep(self.poll_interval)
        return False

    async def _worker_queue(self, context: ExecutionContext) -> TaskQueue:
        if self.worker_queue is None:
            if not context.backend.is_shared:
                raise ConfigurationError(
                    "Distributed groups need a shared backend or an engine worker queue"
                )
            self.worker_queue = create_queue(context.backend, name="default")
            self._owns_queue = True
        await self.worker_queue.connect()
        return self.worker_queue

    async def close(self) -> None:
        """Close the worker queue if this executor opened it."""
        if self._owns_queue and self.worker_queue is not None:
            await self.worker_queue.close()
            self.worker_queue = None
            self._owns_queue = False
