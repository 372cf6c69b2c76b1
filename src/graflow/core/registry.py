"""Name → handler mapping used by workflow definition files."""

from __future__ import annotations

import importlib
from collections.abc import Callable
from typing import Any

from graflow.core.errors import ConfigurationError

Handler = Callable[..., Any]


class HandlerRegistry:
    """Registry of task handlers addressable by name.

    Names not registered explicitly may be ``module:attr`` references,
    imported on first use.

    Example:
        ```python
        registry = HandlerRegistry()

        @registry.register
        async def extract(source: str) -> list[dict]:
            ...

        registry.register(load_rows, name="load")
        handler = registry.resolve("myapp.tasks:transform")
        ```
    """

    def __init__(self):
        self._handlers: dict[str, Handler] = {}

    def register(self, handler: Handler | None = None, *, name: str | None = None):
        """Register a handler under ``name`` (defaults to its ``__name__``).

        Usable as a call, a bare decorator or a decorator with a name.
        """

        def decorator(fn: Handler) -> Handler:
            key = name or fn.__name__
            existing = self._handlers.get(key)
            if existing is not None and existing is not fn:
                raise ConfigurationError(f"Handler name {key!r} is already registered")
            self._handlers[key] = fn
            return fn

        if handler is None:
            return decorator
        return decorator(handler)

    def resolve(self, name: str) -> Handler:
        """Look up a handler by registered name or ``module:attr`` reference.

        Raises:
            ConfigurationError: If the name cannot be resolved to a callable
        """
        if name in self._handlers:
            return self._handlers[name]
        if ":" not in name:
            raise ConfigurationError(f"Unknown handler {name!r}")

        module_name, _, attr_path = name.partition(":")
        try:
            target: Any = importlib.import_module(module_name)
            for attr in attr_path.split("."):
                target = getattr(target, attr)
        except (ImportError, AttributeError) as e:
            raise ConfigurationError(f"Cannot import handler {name!r}: {e}") from e
        if not callable(target):
            raise ConfigurationError(f"Handler {name!r} is not callable")
        self._handlers[name] = target
        return target

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
