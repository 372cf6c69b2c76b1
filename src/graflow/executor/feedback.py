"""Human-in-the-loop feedback requests.

A handler calls ``ctx.request_feedback(...)``. The request is stored in the
run's channel and an optional notifier is told about it; the handler then
waits for a response to appear in the channel. Responses are delivered
out-of-band with ``provide_response()``: from another process, a webhook
handler or a CLI sharing the channel backend.

If the timeout elapses first, the task is suspended: the engine puts it
back at the front of the queue, checkpoints the run and returns
``RunStatus.SUSPENDED``. Resuming the checkpoint re-executes the task from
its beginning; its request gets the same deterministic feedback id, so the
response delivered in the meantime is returned immediately.

Channel layout:
    __feedback__.{feedback_id}.request   FeedbackRequest.to_dict()
    __feedback__.{feedback_id}.response  FeedbackResponse.to_dict()
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING, Any

from graflow.executor.outcome import _SuspendExecution
from graflow.models import FeedbackRequest, FeedbackResponse, FeedbackType
from graflow.storage.base import Channel

if TYPE_CHECKING:
    from graflow.core.context import TaskExecutionContext

logger = logging.getLogger(__name__)

FEEDBACK_PREFIX = "__feedback__."

FeedbackNotifier = Callable[[FeedbackRequest], Awaitable[None] | None]
"""Delivers a new request to humans (webhook, chat, e-mail); transport is up to the caller."""


def request_key(feedback_id: str) -> str:
    return f"{FEEDBACK_PREFIX}{feedback_id}.request"


def response_key(feedback_id: str) -> str:
    return f"{FEEDBACK_PREFIX}{feedback_id}.response"


class FeedbackManager:
    """Stores feedback requests and waits for their responses.

    Usage:
        ```python
        manager = FeedbackManager().with_notifier(post_to_slack)
        engine = WorkflowEngine().with_feedback_manager(manager)

        # elsewhere, once a human has answered
        await FeedbackManager.provide_response(
            channel, feedback_id, FeedbackResponse(feedback_id, approved=True)
        )
        ```
    """

    def __init__(self, poll_interval: float = 0.5, notifier: FeedbackNotifier | None = None):
        self.poll_interval = poll_interval
        self.notifier = notifier

    def with_poll_interval(self, seconds: float) -> FeedbackManager:
        self.poll_interval = seconds
        return self

    def with_notifier(self, notifier: FeedbackNotifier) -> FeedbackManager:
        self.notifier = notifier
        return self

    async def request(
        self,
        task_ctx: TaskExecutionContext,
        feedback_type: FeedbackType,
        prompt: str,
        timeout: float,
        options: list[str] | None = None,
        notification_config: dict[str, Any] | None = None,
    ) -> FeedbackResponse:
        """Wait for a human response to a new (or resumed) request.

        Returns:
            The response

        Raises:
            ValueError: If a selection request has no options
            _SuspendExecution: If no response arrived within ``timeout``
        """
        if feedback_type in (FeedbackType.SELECTION, FeedbackType.MULTI_SELECTION) and not options:
            raise ValueError(f"{feedback_type} feedback requires options")

        channel = task_ctx.get_channel()
        feedback_id = task_ctx.next_feedback_id()

        existing = await self.get_response(channel, feedback_id)
        if existing is not None:
            logger.info(f"Task {task_ctx.task_id}: feedback {feedback_id} already answered")
            self._clear_pending(task_ctx, feedback_id)
            return existing

        request = FeedbackRequest(
            feedback_id=feedback_id,
            session_id=task_ctx.session_id,
            task_id=task_ctx.task_id,
            feedback_type=feedback_type,
            prompt=prompt,
            timeout=timeout,
            options=options,
            notification_config=notification_config,
        )
        if not await channel.exists(request_key(feedback_id)):
            await channel.set(request_key(feedback_id), request.to_dict())
            await self._notify(request)
        logger.info(
            f"Task {task_ctx.task_id} waiting up to {timeout}s for {feedback_type} "
            f"feedback {feedback_id}"
        )

        deadline = time.monotonic() + timeout
        while True:
            response = await self.get_response(channel, feedback_id)
            if response is not None:
                self._clear_pending(task_ctx, feedback_id)
                return response
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.poll_interval, remaining))

        logger.info(f"Task {task_ctx.task_id}: feedback {feedback_id} timed out after {timeout}s")
        if task_ctx.execution is not None:
            task_ctx.execution.pending_feedback = feedback_id
        raise _SuspendExecution(feedback_id)

    async def _notify(self, request: FeedbackRequest) -> None:
        if self.notifier is None:
            return
        try:
            result = self.notifier(request)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # Delivery is best effort; the request itself is already stored
            logger.warning(f"Feedback notifier failed for {request.feedback_id}: {e}")

    @staticmethod
    def _clear_pending(task_ctx: TaskExecutionContext, feedback_id: str) -> None:
        execution = task_ctx.execution
        if execution is not None and execution.pending_feedback == feedback_id:
            execution.pending_feedback = None

    # ========================================================================
    # Out-of-band access
    # ========================================================================

    @staticmethod
    async def provide_response(
        channel: Channel,
        feedback_id: str,
        response: FeedbackResponse | Mapping[str, Any],
    ) -> FeedbackResponse:
        """Deliver a response for ``feedback_id``.

        Accepts a FeedbackResponse or a mapping of its fields
        (``{"approved": True, "responded_by": "alice"}``).
        """
        if not isinstance(response, FeedbackResponse):
            response = FeedbackResponse.from_dict({**response, "feedback_id": feedback_id})
        elif response.feedback_id != feedback_id:
            raise ValueError(
                f"Response is for {response.feedback_id!r}, not {feedback_id!r}"
            )
        await channel.set(response_key(feedback_id), response.to_dict())
        logger.info(f"Feedback {feedback_id} answered by {response.responded_by or 'unknown'}")
        return response

    @staticmethod
    async def get_request(channel: Channel, feedback_id: str) -> FeedbackRequest | None:
        data = await channel.get(request_key(feedback_id))
        return FeedbackRequest.from_dict(data) if data else None

    @staticmethod
    async def get_response(channel: Channel, feedback_id: str) -> FeedbackResponse | None:
        data = await channel.get(response_key(feedback_id))
        return FeedbackResponse.from_dict(data) if data else None

    @classmethod
    async def list_pending(cls, channel: Channel) -> list[FeedbackRequest]:
        """Requests stored in ``channel`` that have no response yet."""
        pending = []
        for key in await channel.keys():
            if not (key.startswith(FEEDBACK_PREFIX) and key.endswith(".request")):
                continue
            feedback_id = key[len(FEEDBACK_PREFIX) : -len(".request")]
            if await channel.exists(response_key(feedback_id)):
                continue
            request = await cls.get_request(channel, feedback_id)
            if request is not None:
                pending.append(request)
        return sorted(pending, key=lambda r: r.created_at)
