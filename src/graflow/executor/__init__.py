"""
Executor module - runtime engine for graph workflows.

This module contains the execution components:
- engine: the run loop (WorkflowEngine, WorkflowResult)
- execution: the task-execution primitive shared by every runner
- group: parallel groups under the BSP model (GroupExecutor, run_branch)
- checkpoint: write-once checkpoints and resume
- feedback: human-in-the-loop requests with timeout and suspension
- worker: remote workers for distributed group branches

From Dave Cheney: "Package Design"
Package name "executor" describes what it provides (execution),
not what it contains (engines, workers).
"""

from graflow.executor.checkpoint import CheckpointManager
from graflow.executor.engine import WorkflowEngine, WorkflowResult
from graflow.executor.execution import check_should_retry, execute_task
from graflow.executor.feedback import FeedbackManager, FeedbackNotifier
from graflow.executor.group import MAX_GROUP_DEPTH, Barrier, GroupExecutor, run_branch
from graflow.executor.outcome import Failed, Succeeded, Suspended, TaskOutcome
from graflow.executor.worker import Worker, WorkerError, WorkerHandle, WorkerMetrics

__all__ = [
    # Engine
    "WorkflowEngine",
    "WorkflowResult",
    # Task execution
    "execute_task",
    "check_should_retry",
    "TaskOutcome",
    "Succeeded",
    "Failed",
    "Suspended",
    # Groups
    "GroupExecutor",
    "Barrier",
    "run_branch",
    "MAX_GROUP_DEPTH",
    # Checkpoints and feedback
    "CheckpointManager",
    "FeedbackManager",
    "FeedbackNotifier",
    # Workers
    "Worker",
    "WorkerHandle",
    "WorkerMetrics",
    "WorkerError",
]
