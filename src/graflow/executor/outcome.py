"""
Task execution outcomes and flow-control signals.

**Design Pattern**: State Machine using Union types

From Dave Cheney's principle: "If your function can suspend, you must tell the caller."
TaskOutcome makes suspension explicit instead of hiding it in exceptions or timeouts.

Example:
    ```python
    outcome = await execute_task(context, node, spec)

    match outcome:
        case Succeeded(value=value):
            print(f"Task returned {value}")
        case Failed(error=error):
            print(f"Task failed: {error}")
        case Suspended(feedback_id=feedback_id):
            print(f"Waiting for human input {feedback_id}")
    ```
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from graflow.core.context import Directives

__all__ = [
    "Succeeded",
    "Failed",
    "Suspended",
    "TaskOutcome",
    "_SuspendExecution",
]


# =============================================================================
# Flow Control Signals (Not Errors)
# =============================================================================


class _FlowControl(BaseException):
    """
    Base class for flow control signals.

    Like Python's StopIteration and GeneratorExit, these are control flow
    mechanisms, not errors. They inherit from BaseException (not Exception)
    so that ``except Exception:`` in handler code never swallows them.
    """

    pass


class _SuspendExecution(_FlowControl):  # noqa: N818
    """
    Signal that the task must suspend while waiting for human feedback.

    Raised by FeedbackManager.request() when the feedback timeout elapses
    without a response. execute_task() catches it and returns Suspended;
    the engine then re-queues the task, checkpoints and stops the run.

    **Visibility**: Internal mechanism, never visible to callers of the
    engine.
    """

    def __init__(self, feedback_id: str):
        super().__init__(feedback_id)
        self.feedback_id = feedback_id


# =============================================================================
# Outcomes
# =============================================================================


@dataclass
class Succeeded:
    """Handler returned normally; ``directives`` holds what it asked for."""

    value: Any
    directives: Directives = field(default_factory=Directives)
    duration: float = 0.0


@dataclass
class Failed:
    """Handler (or its parameter resolution) raised."""

    error: Exception
    duration: float = 0.0

    @property
    def message(self) -> str:
        return f"{type(self.error).__name__}: {self.error}"


@dataclass
class Suspended:
    """Handler is waiting on a feedback request that timed out."""

    feedback_id: str
    duration: float = 0.0


TaskOutcome = Succeeded | Failed | Suspended
