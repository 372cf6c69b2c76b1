"""Task-execution primitive shared by the engine, group branches and workers.

Runs one attempt of one task node: EXECUTING bookkeeping, parameter
resolution, the handler call inside a TaskExecutionContext and storage of
the return value. Whether a failed attempt is retried is decided by
check_should_retry(); acting on the decision is the caller's job.

Design: Information Hiding (Parnas)
Handler invocation and retry arithmetic are isolated here, so the engine
loop, the group executor and the remote worker stay simple and share one
definition of "running a task".
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import Mapping
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from graflow.core.context import CURRENT_TASK_CONTEXT, ExecutionContext, TaskExecutionContext
from graflow.core.errors import GraflowError, ParameterResolutionError
from graflow.core.graph import TaskNode
from graflow.core.params import resolve_parameters
from graflow.executor.outcome import Failed, Succeeded, Suspended, TaskOutcome, _SuspendExecution
from graflow.models import AttemptOutcome, RetryableError, TaskSpec

if TYPE_CHECKING:
    from graflow.executor.feedback import FeedbackManager

logger = logging.getLogger(__name__)

__all__ = ["execute_task", "check_should_retry"]


async def execute_task(
    context: ExecutionContext,
    node: TaskNode,
    spec: TaskSpec,
    injections: Mapping[str, Any] | None = None,
    feedback_manager: FeedbackManager | None = None,
) -> TaskOutcome:
    """Run one attempt of ``node``.

    The node is marked EXECUTING for the duration of the call. On
    success the return value is stored under ``{task_id}.__result__``
    unless the handler cancelled the run.

    Args:
        context: Run the task belongs to
        node: Task node to execute
        spec: Queue item being executed (attempt and cycle)
        injections: Explicit parameter injections
        feedback_manager: Handles request_feedback() calls

    Returns:
        Succeeded, Failed or Suspended

    Example:
        ```python
        outcome = await execute_task(context, node, spec)
        if isinstance(outcome, Failed):
            delay = check_should_retry(node, spec, outcome.error)
        ```
    """
    task_ctx = TaskExecutionContext(
        node.task_id,
        context.channel,
        context.session_id,
        cycle=spec.cycle,
        attempt=spec.attempt,
        execution=context,
        feedback_manager=feedback_manager,
        group_id=spec.group_id,
    )

    context.mark_executing(node.task_id)
    token = CURRENT_TASK_CONTEXT.set(task_ctx)
    started = time.perf_counter()
    try:
        kwargs = await resolve_parameters(node.handler, node, context.channel, injections)
        args = (task_ctx,) if node.inject_context else ()
        value = node.handler(*args, **kwargs)
        if inspect.isawaitable(value):
            value = await value
    except _SuspendExecution as signal:
        logger.info(f"Task {node.task_id} suspended waiting for feedback {signal.feedback_id}")
        suspended = Suspended(signal.feedback_id, time.perf_counter() - started)
        context.record_attempt(
            node.task_id, spec.attempt, spec.cycle, AttemptOutcome.SUSPENDED, suspended.duration
        )
        return suspended
    except Exception as e:
        logger.debug(f"Task {node.task_id} attempt {spec.attempt} raised {type(e).__name__}: {e}")
        failed = Failed(e, time.perf_counter() - started)
        context.record_attempt(
            node.task_id,
            spec.attempt,
            spec.cycle,
            AttemptOutcome.FAILED,
            failed.duration,
            failed.message,
        )
        return failed
    finally:
        CURRENT_TASK_CONTEXT.reset(token)
        context.clear_executing(node.task_id)

    if not task_ctx.directives.cancelled:
        await context.set_result(node.task_id, value)
    succeeded = Succeeded(value, task_ctx.directives, time.perf_counter() - started)
    context.record_attempt(
        node.task_id, spec.attempt, spec.cycle, AttemptOutcome.SUCCEEDED, succeeded.duration
    )
    return succeeded


def is_retryable(error: BaseException) -> bool:
    """Whether a handler fault may be retried at all.

    Parameter resolution and other configuration faults are never retried;
    RetryableError subclasses decide for themselves.
    """
    if isinstance(error, (ParameterResolutionError, GraflowError)):
        return False
    if isinstance(error, RetryableError):
        return error.is_retryable()
    return True


def check_should_retry(node: TaskNode, spec: TaskSpec, error: BaseException) -> timedelta | None:
    """Check if a failed attempt should be retried based on the node's retry policy.

    Returns:
        Backoff delay before the next attempt, None if the failure is final

    Example:
        ```python
        delay = check_should_retry(node, spec, error)
        if delay is not None:
            await queue.enqueue(spec.next_attempt(delay))
        ```
    """
    if not is_retryable(error):
        logger.info(f"Task {node.task_id} raised a non-retryable error - will not retry")
        return None

    delay_ms = node.retry_policy.delay_for_attempt(spec.attempt)
    if delay_ms is None:
        logger.debug(
            f"Task {node.task_id} exhausted its retry attempts "
            f"({spec.attempt}/{node.retry_policy.max_attempts})"
        )
        return None

    logger.debug(
        f"Task {node.task_id} will retry "
        f"(attempt {spec.attempt + 1}/{node.retry_policy.max_attempts}) "
        f"after {delay_ms / 1000:.2f}s"
    )
    return timedelta(milliseconds=delay_ms)
