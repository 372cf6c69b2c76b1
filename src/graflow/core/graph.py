"""Task graph: nodes addressed by stable string ids plus dependency edges.

Design: Arena of Nodes
    Nodes live in a dict keyed by task id and edges are id lists, so the
    graph can grow while a run is in flight (dynamic task generation).
    The engine reads ``successors()`` fresh after each task completes;
    every call returns a new list, so in-flight iteration is never
    invalidated by a concurrent ``add_edge``.

The static skeleton is expected to be a DAG. The execution trace need not
be: self-loop and jump directives revisit nodes at runtime.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from graflow.core.errors import (
    AmbiguousStartError,
    ConfigurationError,
    DuplicateIdError,
    NotFoundError,
    UnknownNodeError,
)
from graflow.models import GroupPolicy, RetryPolicy, Strict


def _callable_name(handler: Callable) -> str:
    module = getattr(handler, "__module__", None) or "?"
    name = getattr(handler, "__qualname__", None) or repr(handler)
    return f"{module}.{name}"


@dataclass
class TaskNode:
    """A unit of work: a handler plus its bound parameters and retry policy.

    Nodes are never removed from a graph; completion is tracked by the
    execution context. Nodes sent to remote workers are pickled, so their
    handlers must be importable module-level callables.
    """

    task_id: str
    handler: Callable[..., Any]
    params: dict[str, Any] = field(default_factory=dict)
    """Values bound at creation time; they win over channel values."""

    retry_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy.NONE)
    inject_context: bool = False
    """Pass the TaskExecutionContext as the handler's first argument."""

    max_cycles: int | None = None
    """Self-loop limit; the engine default applies when None."""

    @property
    def kind(self) -> str:
        return "task"

    @property
    def handler_name(self) -> str:
        return _callable_name(self.handler)

    def __repr__(self) -> str:
        return f"TaskNode({self.task_id!r}, handler={self.handler_name})"


@dataclass
class GroupNode:
    """A parallel group of branch nodes joined at a barrier.

    The group's own graph successors are the joint successors enqueued
    once the barrier resolves and the policy is satisfied.
    """

    task_id: str
    branches: list[str]
    policy: GroupPolicy = field(default_factory=Strict)
    timeout: float | None = None
    """Seconds to wait at the barrier; missing branches count as failed."""

    distributed: bool = False
    """Dispatch branches to remote workers through the shared queue."""

    @property
    def kind(self) -> str:
        return "group"

    def __repr__(self) -> str:
        return (
            f"GroupNode({self.task_id!r}, branches={self.branches}, "
            f"policy={self.policy.describe()}, distributed={self.distributed})"
        )


Node = TaskNode | GroupNode


class TaskGraph:
    """Mutable graph of task and group nodes.

    Example:
        ```python
        graph = TaskGraph("etl")
        graph.add_task("extract", extract)
        graph.add_task("transform", transform, depends_on=["extract"])
        graph.add_task("load", load, depends_on=["transform"])
        assert graph.resolve_start() == "extract"
        ```
    """

    def __init__(self, name: str = "workflow", start: str | None = None):
        self.name = name
        self.start = start
        self._nodes: dict[str, Node] = {}
        self._successors: dict[str, list[str]] = {}
        self._predecessors: dict[str, list[str]] = {}
        self._group_of: dict[str, str] = {}

    # ========================================================================
    # Construction
    # ========================================================================

    def add_node(self, node: Node) -> Node:
        """Add a node.

        Raises:
            DuplicateIdError: If a node with the same id exists
        """
        if node.task_id in self._nodes:
            raise DuplicateIdError(node.task_id)
        if isinstance(node, GroupNode):
            self._register_group(node)
        self._nodes[node.task_id] = node
        self._successors[node.task_id] = []
        self._predecessors[node.task_id] = []
        return node

    def _register_group(self, group: GroupNode) -> None:
        if not group.branches:
            raise ConfigurationError(f"Group {group.task_id!r} has no branches")
        if len(set(group.branches)) != len(group.branches):
            raise ConfigurationError(f"Group {group.task_id!r} lists a branch twice")
        for branch in group.branches:
            if branch == group.task_id:
                raise ConfigurationError(f"Group {group.task_id!r} contains itself")
            if branch not in self._nodes:
                raise UnknownNodeError(branch, f"branch of group {group.task_id!r}")
            owner = self._group_of.get(branch)
            if owner is not None:
                raise ConfigurationError(
                    f"Node {branch!r} is already a branch of group {owner!r}"
                )
        for branch in group.branches:
            self._group_of[branch] = group.task_id

    def add_task(
        self,
        task_id: str,
        handler: Callable[..., Any],
        *,
        params: dict[str, Any] | None = None,
        retry_policy: RetryPolicy | None = None,
        inject_context: bool = False,
        max_cycles: int | None = None,
        depends_on: Iterable[str] = (),
    ) -> TaskNode:
        """Create a TaskNode, add it and wire edges from ``depends_on``."""
        node = TaskNode(
            task_id=task_id,
            handler=handler,
            params=dict(params or {}),
            retry_policy=retry_policy or RetryPolicy.NONE,
            inject_context=inject_context,
            max_cycles=max_cycles,
        )
        self.add_node(node)
        for upstream in depends_on:
            self.add_edge(upstream, task_id)
        return node

    def add_group(
        self,
        task_id: str,
        branches: Iterable[str],
        *,
        policy: GroupPolicy | None = None,
        timeout: float | None = None,
        distributed: bool = False,
        depends_on: Iterable[str] = (),
    ) -> GroupNode:
        """Create a GroupNode over existing branch nodes.

        Raises:
            UnknownNodeError: If a branch id is not in the graph
            ConfigurationError: If a branch already belongs to another group
        """
        node = GroupNode(
            task_id=task_id,
            branches=list(branches),
            policy=policy or Strict(),
            timeout=timeout,
            distributed=distributed,
        )
        self.add_node(node)
        for upstream in depends_on:
            self.add_edge(upstream, task_id)
        return node

    def add_edge(self, from_id: str, to_id: str) -> None:
        """Record that ``to_id`` depends on ``from_id``. Duplicate edges are ignored.

        Raises:
            UnknownNodeError: If either endpoint is absent
        """
        if from_id not in self._nodes:
            raise UnknownNodeError(from_id, f"edge {from_id} -> {to_id}")
        if to_id not in self._nodes:
            raise UnknownNodeError(to_id, f"edge {from_id} -> {to_id}")
        if to_id in self._successors[from_id]:
            return
        self._successors[from_id].append(to_id)
        self._predecessors[to_id].append(from_id)

    # ========================================================================
    # Queries
    # ========================================================================

    def get_node(self, task_id: str) -> Node:
        """Return the node with ``task_id``.

        Raises:
            NotFoundError: If absent
        """
        try:
            return self._nodes[task_id]
        except KeyError:
            raise NotFoundError(task_id) from None

    def has_node(self, task_id: str) -> bool:
        return task_id in self._nodes

    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    def node_ids(self) -> list[str]:
        return list(self._nodes)

    def successors(self, task_id: str) -> list[str]:
        """Directly dependent node ids in insertion order (a fresh list)."""
        self.get_node(task_id)
        return list(self._successors[task_id])

    def predecessors(self, task_id: str) -> list[str]:
        self.get_node(task_id)
        return list(self._predecessors[task_id])

    def in_degree(self, task_id: str) -> int:
        self.get_node(task_id)
        return len(self._predecessors[task_id])

    def group_of(self, task_id: str) -> str | None:
        """Id of the group ``task_id`` is a branch of, if any."""
        return self._group_of.get(task_id)

    def resolve_start(self, start: str | None = None) -> str:
        """Return the entry node id.

        An explicit ``start`` (or the graph's designated ``start``) is
        validated and returned. Otherwise the unique node with no
        predecessors is returned; group branches are not candidates.

        Raises:
            UnknownNodeError: If the explicit start is not in the graph
            AmbiguousStartError: If zero or several nodes qualify
        """
        explicit = start if start is not None else self.start
        if explicit is not None:
            if explicit not in self._nodes:
                raise UnknownNodeError(explicit, "start node")
            return explicit

        candidates = [
            task_id
            for task_id, preds in self._predecessors.items()
            if not preds and task_id not in self._group_of
        ]
        if len(candidates) != 1:
            raise AmbiguousStartError(candidates)
        return candidates[0]

    def shape(self) -> dict[str, Any]:
        """JSON-friendly description of nodes and edges."""
        nodes = []
        for node in self._nodes.values():
            entry: dict[str, Any] = {"id": node.task_id, "kind": node.kind}
            if isinstance(node, GroupNode):
                entry["branches"] = list(node.branches)
                entry["policy"] = node.policy.describe()
                entry["distributed"] = node.distributed
            else:
                entry["handler"] = node.handler_name
            nodes.append(entry)
        edges = [[src, dst] for src, dsts in self._successors.items() for dst in dsts]
        return {"name": self.name, "start": self.start, "nodes": nodes, "edges": edges}

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __repr__(self) -> str:
        return f"TaskGraph({self.name!r}, nodes={len(self._nodes)})"
