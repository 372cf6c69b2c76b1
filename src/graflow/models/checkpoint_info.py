"""Checkpoint metadata record."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

CHECKPOINT_SCHEMA_VERSION = "1.1"
"""Version of the progress/metadata record layout written next to each checkpoint."""


@dataclass(frozen=True)
class CheckpointMetadata:
    """Identifies one checkpoint and carries caller-supplied tags.

    Written as ``<base>.meta.json``; checkpoints are write-once, so the
    record never changes after creation.
    """

    checkpoint_id: str
    session_id: str
    step_count: int
    start_node: str | None = None
    backend: str = "memory"
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    user_metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "schema_version": CHECKPOINT_SCHEMA_VERSION,
            "checkpoint_id": self.checkpoint_id,
            "session_id": self.session_id,
            "step_count": self.step_count,
            "start_node": self.start_node,
            "backend": self.backend,
            "created_at": self.created_at.isoformat(),
            "user_metadata": dict(self.user_metadata),
        }

    @classmethod
    def from_dict(cls, data: dict) -> CheckpointMetadata:
        return cls(
            checkpoint_id=data["checkpoint_id"],
            session_id=data["session_id"],
            step_count=int(data.get("step_count", 0)),
            start_node=data.get("start_node"),
            backend=data.get("backend", "memory"),
            created_at=datetime.fromisoformat(data["created_at"]),
            user_metadata=dict(data.get("user_metadata") or {}),
        )
