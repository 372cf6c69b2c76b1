"""Execution history of a run.

Every attempt of every task (and every group evaluation) leaves one
ExecutionRecord in the run's history, in the order the attempts
finished. The history explains a run after the fact: which tasks ran,
how often they were retried or looped, how long each attempt took and
why it failed. It is persisted in the checkpoint progress record, so a
resumed run keeps the lineage of the work done before the checkpoint.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class AttemptOutcome(Enum):
    """How one attempt ended."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SUSPENDED = "suspended"
    """Waiting on human feedback; the task re-executes on resume."""

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ExecutionRecord:
    """One finished attempt of a task or group."""

    task_id: str
    attempt: int
    cycle: int
    outcome: AttemptOutcome
    duration: float
    """Seconds spent in the attempt."""

    error: str | None = None
    """``Type: message`` of the fault for failed attempts."""

    finished_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "attempt": self.attempt,
            "cycle": self.cycle,
            "outcome": self.outcome.value,
            "duration": self.duration,
            "error": self.error,
            "finished_at": self.finished_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> ExecutionRecord:
        return cls(
            task_id=data["task_id"],
            attempt=int(data.get("attempt", 1)),
            cycle=int(data.get("cycle", 0)),
            outcome=AttemptOutcome(data["outcome"]),
            duration=float(data.get("duration", 0.0)),
            error=data.get("error"),
            finished_at=datetime.fromisoformat(data["finished_at"]),
        )
