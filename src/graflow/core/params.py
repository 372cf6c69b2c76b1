"""Parameter resolution for task handlers.

For every parameter in the handler's signature the first available source
wins:

1. explicit injection (engine/worker ``with_injection``)
2. value bound on the node at creation time
3. channel value stored under the parameter's name
4. the parameter's own default

A required parameter with no source raises ParameterResolutionError,
which is a configuration fault and never retried.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from graflow.core.errors import ParameterResolutionError

if TYPE_CHECKING:
    from graflow.core.graph import TaskNode
    from graflow.storage.base import Channel

_MISSING = object()


def _handler_parameters(handler: Callable[..., Any], skip_first: bool) -> list[inspect.Parameter]:
    params = list(inspect.signature(handler).parameters.values())
    if skip_first and params:
        # The injected TaskExecutionContext is passed positionally
        params = params[1:]
    return params


async def resolve_parameters(
    handler: Callable[..., Any],
    node: TaskNode,
    channel: Channel | None,
    injections: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Build the keyword arguments for one handler call.

    Args:
        handler: The callable about to be invoked
        node: Its task node (bound params, inject_context flag)
        channel: Run channel consulted for unbound parameters, or None
        injections: Explicit injections, highest priority

    Returns:
        Keyword arguments for the handler

    Raises:
        ParameterResolutionError: If a required parameter has no source

    Example:
        # node bound value=10, channel holds value=100
        kwargs = await resolve_parameters(handler, node, channel)
        assert kwargs["value"] == 10
    """
    injections = injections or {}
    kwargs: dict[str, Any] = {}
    accepts_var_kwargs = False

    for param in _handler_parameters(handler, node.inject_context):
        if param.kind is inspect.Parameter.VAR_KEYWORD:
            accepts_var_kwargs = True
            continue
        if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.POSITIONAL_ONLY):
            continue

        name = param.name
        if name in injections:
            kwargs[name] = injections[name]
            continue
        if name in node.params:
            kwargs[name] = node.params[name]
            continue
        if channel is not None:
            value = await channel.get(name, _MISSING)
            if value is not _MISSING:
                kwargs[name] = value
                continue
        if param.default is inspect.Parameter.empty:
            raise ParameterResolutionError(node.task_id, name)

    if accepts_var_kwargs:
        # **kwargs handlers also receive bound values with no named slot
        for name, value in node.params.items():
            kwargs.setdefault(name, value)

    return kwargs
