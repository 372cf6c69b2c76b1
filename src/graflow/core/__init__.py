"""Core workflow primitives: graph, execution context, parameters and errors."""

from graflow.core.context import (
    CURRENT_TASK_CONTEXT,
    CheckpointRequest,
    Directives,
    ExecutionContext,
    NextTask,
    TaskExecutionContext,
    get_current_task_context,
)
from graflow.core.errors import (
    AmbiguousStartError,
    CheckpointError,
    ConfigurationError,
    CycleLimitExceededError,
    DuplicateIdError,
    GraflowError,
    GroupExecutionError,
    GroupNestingError,
    JumpTargetError,
    MaxStepsExceededError,
    NotFoundError,
    ParameterResolutionError,
    TaskExecutionError,
    UnknownNodeError,
    WorkflowCancelledError,
)
from graflow.core.graph import GroupNode, Node, TaskGraph, TaskNode
from graflow.core.loader import WorkflowDefinitionError, load_workflow
from graflow.core.params import resolve_parameters
from graflow.core.registry import HandlerRegistry

__all__ = [
    # Graph
    "TaskGraph",
    "TaskNode",
    "GroupNode",
    "Node",
    # Context
    "ExecutionContext",
    "TaskExecutionContext",
    "CheckpointRequest",
    "Directives",
    "NextTask",
    "CURRENT_TASK_CONTEXT",
    "get_current_task_context",
    # Parameters, registry and loader
    "resolve_parameters",
    "HandlerRegistry",
    "load_workflow",
    "WorkflowDefinitionError",
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
]
