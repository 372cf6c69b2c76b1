"""Status enumerations for workflow execution tracking.

Defines lifecycle states for individual task instances and for
whole workflow runs.
"""

from enum import Enum


class TaskState(Enum):
    """State of a single task instance.

    Lifecycle:
        PENDING → EXECUTING → COMPLETED

    Design: No FAILED Status
        A failed attempt either goes back to PENDING (retry, attempt
        counter incremented) or aborts the run with TaskExecutionError.
    """

    PENDING = "PENDING"
    """Task spec is queued, waiting to be dequeued."""

    EXECUTING = "EXECUTING"
    """Task handler is currently running."""

    COMPLETED = "COMPLETED"
    """Task handler returned and the task was marked completed."""

    def __str__(self) -> str:
        return self.value


class RunStatus(Enum):
    """Final status of a workflow run that returned normally.

    Cancellation is surfaced as WorkflowCancelledError and fatal task
    faults as TaskExecutionError, so neither has a status here.
    """

    COMPLETED = "COMPLETED"
    """Queue drained; every reachable task completed."""

    TERMINATED = "TERMINATED"
    """A handler issued terminate_workflow(); the run ended successfully early."""

    SUSPENDED = "SUSPENDED"
    """Human feedback timed out; a checkpoint was written and the run paused."""

    @property
    def is_success(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.TERMINATED)

    def __str__(self) -> str:
        return self.value
