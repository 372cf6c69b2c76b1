"""Human-feedback request and response records.

Requests and responses are stored in the run's channel so that a
response delivered out-of-band (another process, a webhook handler, a
CLI) reaches a run that was suspended and later resumed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class FeedbackType(Enum):
    """Kind of input requested from a human."""

    APPROVAL = "approval"
    TEXT = "text"
    SELECTION = "selection"
    MULTI_SELECTION = "multi_selection"
    CUSTOM = "custom"

    def __str__(self) -> str:
        return self.value


@dataclass
class FeedbackRequest:
    """A pending request for human input."""

    feedback_id: str
    session_id: str
    task_id: str
    feedback_type: FeedbackType
    prompt: str
    timeout: float
    options: list[str] | None = None
    notification_config: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict:
        return {
            "feedback_id": self.feedback_id,
            "session_id": self.session_id,
            "task_id": self.task_id,
            "feedback_type": self.feedback_type.value,
            "prompt": self.prompt,
            "timeout": self.timeout,
            "options": self.options,
            "notification_config": self.notification_config,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> FeedbackRequest:
        return cls(
            feedback_id=data["feedback_id"],
            session_id=data["session_id"],
            task_id=data["task_id"],
            feedback_type=FeedbackType(data["feedback_type"]),
            prompt=data["prompt"],
            timeout=float(data["timeout"]),
            options=data.get("options"),
            notification_config=data.get("notification_config"),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class FeedbackResponse:
    """Human input delivered for a FeedbackRequest.

    ``approved`` is set for APPROVAL requests, ``text`` for TEXT,
    ``selected`` for (multi-)selection and ``data`` for CUSTOM.
    """

    feedback_id: str
    approved: bool | None = None
    text: str | None = None
    selected: list[str] | None = None
    data: Any = None
    responded_by: str | None = None
    responded_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def value(self) -> Any:
        """The payload matching the request type."""
        if self.approved is not None:
            return self.approved
        if self.text is not None:
            return self.text
        if self.selected is not None:
            return self.selected
        return self.data

    def to_dict(self) -> dict:
        return {
            "feedback_id": self.feedback_id,
            "approved": self.approved,
            "text": self.text,
            "selected": self.selected,
            "data": self.data,
            "responded_by": self.responded_by,
            "responded_at": self.responded_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> FeedbackResponse:
        return cls(
            feedback_id=data["feedback_id"],
            approved=data.get("approved"),
            text=data.get("text"),
            selected=data.get("selected"),
            data=data.get("data"),
            responded_by=data.get("responded_by"),
            responded_at=datetime.fromisoformat(data["responded_at"])
            if data.get("responded_at")
            else datetime.now(UTC),
        )
