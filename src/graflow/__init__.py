"""
Graflow: graph workflows with state-machine control flow for Python

A hybrid DAG/state-machine workflow engine: tasks in a mutable graph,
a namespaced channel for inter-task data, retries, runtime directives
(jump, self-loop, terminate, cancel), BSP parallel groups, checkpoints
and human-in-the-loop suspension.

Design Pattern: Façade Pattern
This module provides a simplified interface to the graflow packages,
hiding the layering of models, storage, core and executor.

Example:
    ```python
    import asyncio
    from graflow import ExecutionContext, TaskGraph, WorkflowEngine

    def extract() -> list[int]:
        return [1, 2, 3]

    async def total(ctx) -> int:
        rows = await ctx.get_result("extract")
        return sum(rows)

    graph = TaskGraph("sum")
    graph.add_task("extract", extract)
    graph.add_task("total", total, inject_context=True, depends_on=["extract"])

    async def main():
        result = await WorkflowEngine().execute(ExecutionContext.create(graph))
        print(result.status, await result.result_of("total"))

    asyncio.run(main())
    ```
"""

from graflow.core import (
    AmbiguousStartError,
    CheckpointError,
    ConfigurationError,
    CycleLimitExceededError,
    DuplicateIdError,
    ExecutionContext,
    GraflowError,
    GroupExecutionError,
    GroupNestingError,
    GroupNode,
    HandlerRegistry,
    JumpTargetError,
    MaxStepsExceededError,
    NotFoundError,
    ParameterResolutionError,
    TaskExecutionContext,
    TaskExecutionError,
    TaskGraph,
    TaskNode,
    UnknownNodeError,
    WorkflowCancelledError,
    WorkflowDefinitionError,
    get_current_task_context,
    load_workflow,
)
from graflow.executor import (
    CheckpointManager,
    FeedbackManager,
    GroupExecutor,
    Worker,
    WorkerHandle,
    WorkerMetrics,
    WorkflowEngine,
    WorkflowResult,
)
from graflow.models import (
    AtLeastN,
    BackoffStrategy,
    BestEffort,
    CheckpointMetadata,
    Critical,
    FeedbackRequest,
    FeedbackResponse,
    FeedbackType,
    GroupOutcome,
    RetryableError,
    RetryPolicy,
    RunStatus,
    Strict,
    TaskSpec,
    TaskState,
)
from graflow.storage import (
    BackendConfig,
    Channel,
    MemoryChannel,
    MemoryTaskQueue,
    StorageError,
    TaskQueue,
    create_channel,
    create_queue,
)

__version__ = "0.1.0"

__all__ = [
    # Graph and context
    "TaskGraph",
    "TaskNode",
    "GroupNode",
    "ExecutionContext",
    "TaskExecutionContext",
    "get_current_task_context",
    "HandlerRegistry",
    "load_workflow",
    # Execution
    "WorkflowEngine",
    "WorkflowResult",
    "GroupExecutor",
    "CheckpointManager",
    "FeedbackManager",
    "Worker",
    "WorkerHandle",
    "WorkerMetrics",
    # Models
    "TaskSpec",
    "TaskState",
    "RunStatus",
    "RetryPolicy",
    "RetryableError",
    "BackoffStrategy",
    "Strict",
    "BestEffort",
    "AtLeastN",
    "Critical",
    "GroupOutcome",
    "FeedbackType",
    "FeedbackRequest",
    "FeedbackResponse",
    "CheckpointMetadata",
    # Storage
    "Channel",
    "TaskQueue",
    "MemoryChannel",
    "MemoryTaskQueue",
    "BackendConfig",
    "create_channel",
    "create_queue",
    # Errors
    "GraflowError",
    "ConfigurationError",
    "DuplicateIdError",
    "UnknownNodeError",
    "NotFoundError",
    "AmbiguousStartError",
    "JumpTargetError",
    "GroupNestingError",
    "TaskExecutionError",
    "CycleLimitExceededError",
    "ParameterResolutionError",
    "WorkflowCancelledError",
    "GroupExecutionError",
    "CheckpointError",
    "MaxStepsExceededError",
    "WorkflowDefinitionError",
    "StorageError",
]
