"""Error taxonomy for workflow definition and execution.

Configuration errors (bad graph, unknown node, ambiguous start) are fatal
and surface before any task runs. Run errors stop the run and carry the
full fault context; nothing here is recovered automatically.

    GraflowError
    ├── ConfigurationError
    │   ├── DuplicateIdError
    │   ├── UnknownNodeError
    │   ├── NotFoundError
    │   ├── AmbiguousStartError
    │   ├── JumpTargetError
    │   └── GroupNestingError
    ├── TaskExecutionError
    ├── CycleLimitExceededError
    ├── ParameterResolutionError
    ├── WorkflowCancelledError
    ├── GroupExecutionError
    ├── CheckpointError
    └── MaxStepsExceededError
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from graflow.models import GroupOutcome

__all__ = [
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


class GraflowError(Exception):
    """Base class for every graflow error."""

    pass


# =============================================================================
# Configuration Errors - surfaced before execution
# =============================================================================


class ConfigurationError(GraflowError):
    """The workflow definition is invalid."""

    pass


class DuplicateIdError(ConfigurationError):
    """A node with the same id already exists in the graph."""

    def __init__(self, task_id: str):
        super().__init__(f"Task id {task_id!r} already exists in the graph")
        self.task_id = task_id


class UnknownNodeError(ConfigurationError):
    """An edge or directive references a node that is not in the graph."""

    def __init__(self, task_id: str, context: str = ""):
        suffix = f" ({context})" if context else ""
        super().__init__(f"Unknown node {task_id!r}{suffix}")
        self.task_id = task_id


class NotFoundError(ConfigurationError, KeyError):
    """Lookup of a node id that is not in the graph."""

    def __init__(self, task_id: str):
        super().__init__(f"Node {task_id!r} not found")
        self.task_id = task_id

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0])


class AmbiguousStartError(ConfigurationError):
    """No unique entry node: zero or several nodes have no predecessors."""

    def __init__(self, candidates: list[str]):
        if candidates:
            detail = f"multiple candidates {sorted(candidates)}"
        else:
            detail = "no node without predecessors"
        super().__init__(f"Cannot resolve start node: {detail}; designate one explicitly")
        self.candidates = list(candidates)


class JumpTargetError(ConfigurationError):
    """A jump directive targets a node that is executing or inside an active barrier."""

    def __init__(self, target: str, reason: str):
        super().__init__(f"Cannot jump to {target!r}: {reason}")
        self.target = target
        self.reason = reason


class GroupNestingError(ConfigurationError):
    """Parallel groups nested deeper than the allowed depth."""

    def __init__(self, group_id: str, depth: int, max_depth: int):
        super().__init__(
            f"Group {group_id!r} at nesting depth {depth} exceeds the maximum of {max_depth}"
        )
        self.group_id = group_id
        self.depth = depth
        self.max_depth = max_depth


# =============================================================================
# Run Errors - stop the run
# =============================================================================


class TaskExecutionError(GraflowError):
    """A task failed after exhausting its retries (or with a non-retryable error).

    Attributes:
        task_id: Id of the failed task
        cycle_count: Self-loop cycles the task had completed
        elapsed: Seconds since the run started
        cause: The handler's exception
        attempts: Number of attempts made
    """

    def __init__(
        self,
        task_id: str,
        cycle_count: int,
        elapsed: float,
        cause: BaseException,
        attempts: int = 1,
    ):
        super().__init__(
            f"Task {task_id!r} failed after {attempts} attempt(s) "
            f"(cycle {cycle_count}, {elapsed:.3f}s into the run): "
            f"{type(cause).__name__}: {cause}"
        )
        self.task_id = task_id
        self.cycle_count = cycle_count
        self.elapsed = elapsed
        self.cause = cause
        self.attempts = attempts


class CycleLimitExceededError(GraflowError):
    """A self-looping task exceeded its cycle limit."""

    def __init__(self, task_id: str, max_cycles: int):
        super().__init__(f"Task {task_id!r} exceeded its limit of {max_cycles} cycles")
        self.task_id = task_id
        self.max_cycles = max_cycles


class ParameterResolutionError(GraflowError):
    """A required handler parameter has no injected, bound, channel or default value."""

    def __init__(self, task_id: str, parameter: str):
        super().__init__(
            f"Task {task_id!r}: no value for required parameter {parameter!r} "
            "(not injected, not bound, not in channel)"
        )
        self.task_id = task_id
        self.parameter = parameter


class WorkflowCancelledError(GraflowError):
    """A task cancelled the run. The cancelling task is not marked completed."""

    def __init__(self, reason: str, task_id: str | None = None):
        where = f" by task {task_id!r}" if task_id else ""
        super().__init__(f"Workflow cancelled{where}: {reason}")
        self.reason = reason
        self.task_id = task_id


class GroupExecutionError(GraflowError):
    """A parallel group's outcome did not satisfy its policy."""

    def __init__(self, outcome: GroupOutcome):
        failed = ", ".join(f"{k}: {v}" for k, v in outcome.failed.items()) or "none"
        timed_out = " (timed out)" if outcome.timed_out else ""
        super().__init__(
            f"Group {outcome.group_id!r} failed policy {outcome.policy}"
            f"{timed_out}; succeeded={outcome.succeeded}, failed=[{failed}]"
        )
        self.outcome = outcome


class CheckpointError(GraflowError):
    """A checkpoint could not be created or resumed. Never retried automatically."""

    pass


class MaxStepsExceededError(GraflowError):
    """The run executed more steps than the engine allows."""

    def __init__(self, max_steps: int):
        super().__init__(f"Run exceeded the maximum of {max_steps} steps")
        self.max_steps = max_steps
