"""Core data models for workflow execution.

Defines value types for task scheduling, retry behavior, group policies,
human feedback, execution history and checkpoint metadata.

Design: Dependency-Free Models
These types have no dependencies on core, storage or executor modules to
prevent circular imports and enable clean layering.
"""

from graflow.models.checkpoint_info import CHECKPOINT_SCHEMA_VERSION, CheckpointMetadata
from graflow.models.feedback import FeedbackRequest, FeedbackResponse, FeedbackType
from graflow.models.group_policy import (
    AtLeastN,
    BestEffort,
    Critical,
    GroupOutcome,
    GroupPolicy,
    Strict,
    evaluate_policy,
    policy_from_dict,
)
from graflow.models.history import AttemptOutcome, ExecutionRecord
from graflow.models.retry import BackoffStrategy, RetryableError, RetryPolicy
from graflow.models.status import RunStatus, TaskState
from graflow.models.task_spec import TaskSpec

__all__ = [
    "TaskSpec",
    "TaskState",
    "RunStatus",
    "RetryPolicy",
    "RetryableError",
    "BackoffStrategy",
    "GroupPolicy",
    "Strict",
    "BestEffort",
    "AtLeastN",
    "Critical",
    "GroupOutcome",
    "evaluate_policy",
    "policy_from_dict",
    "FeedbackType",
    "FeedbackRequest",
    "FeedbackResponse",
    "CheckpointMetadata",
    "CHECKPOINT_SCHEMA_VERSION",
    "AttemptOutcome",
    "ExecutionRecord",
]
