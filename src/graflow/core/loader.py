"""Build a TaskGraph from a YAML (or already parsed) workflow definition.

Document layout:

    name: nightly-etl
    start: extract            # optional
    tasks:
      - name: extract
        handler: myapp.tasks:extract
        params: {source: s3://bucket/raw}
        retry: {max_attempts: 3, backoff: exponential, initial_delay_ms: 500}
      - name: fan_out
        depends_on: [extract]
        parallel:
          - {name: clean_a, handler: clean, params: {part: a}}
          - {name: clean_b, handler: clean, params: {part: b}}
        policy: {type: at_least, min_success: 1}
        timeout: 60
      - name: load
        handler: load
        depends_on: [fan_out]

Branch items of ``parallel`` are inline task (or group) definitions or
names of tasks defined elsewhere in the document.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from graflow.core.errors import ConfigurationError
from graflow.core.graph import TaskGraph
from graflow.core.registry import HandlerRegistry
from graflow.models import RetryPolicy, policy_from_dict

logger = logging.getLogger(__name__)

_TASK_KEYS = {"name", "handler", "params", "retry", "inject_context", "max_cycles", "depends_on"}
_GROUP_KEYS = {"name", "parallel", "policy", "timeout", "distributed", "depends_on"}


class WorkflowDefinitionError(ConfigurationError):
    """Raised when a workflow definition fails validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Workflow definition is invalid: {'; '.join(errors)}")


def _read_source(source: str | Path | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(source, Mapping):
        return source
    if isinstance(source, Path) or ("\n" not in source and Path(source).is_file()):
        path = Path(source)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read workflow file {path}: {e}") from e
    else:
        text = source
    try:
        content = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML: {e}") from e
    if not isinstance(content, Mapping):
        raise WorkflowDefinitionError(["document must be a mapping"])
    return content


def _collect(
    entries: list[Any],
    tasks: dict[str, dict],
    groups: dict[str, dict],
    errors: list[str],
    where: str,
) -> None:
    """Flatten task and group definitions (inline branches included) by name."""
    for index, entry in enumerate(entries):
        if isinstance(entry, str):
            continue  # reference, checked once every definition is known
        if not isinstance(entry, Mapping):
            errors.append(f"{where}[{index}] must be a mapping or a task name")
            continue
        name = entry.get("name")
        if not name or not isinstance(name, str):
            errors.append(f"{where}[{index}] is missing a name")
            continue
        if name in tasks or name in groups:
            errors.append(f"Duplicate task name: {name}")
            continue

        if "parallel" in entry:
            unknown = set(entry) - _GROUP_KEYS
            if unknown:
                errors.append(f"Group {name} has unknown keys: {sorted(unknown)}")
            branches = entry["parallel"]
            if not isinstance(branches, list) or not branches:
                errors.append(f"Group {name} must list at least one branch under 'parallel'")
                continue
            groups[name] = dict(entry)
            _collect(branches, tasks, groups, errors, f"{name}.parallel")
        else:
            unknown = set(entry) - _TASK_KEYS
            if unknown:
                errors.append(f"Task {name} has unknown keys: {sorted(unknown)}")
            if not entry.get("handler"):
                errors.append(f"Task {name} is missing a handler")
                continue
            tasks[name] = dict(entry)


def _branch_names(group: Mapping[str, Any]) -> list[str]:
    return [b if isinstance(b, str) else b.get("name") for b in group["parallel"]]


def load_workflow(
    source: str | Path | Mapping[str, Any],
    registry: HandlerRegistry | None = None,
) -> TaskGraph:
    """Build a TaskGraph from a YAML document, a file path or a mapping.

    Args:
        source: YAML text, path to a YAML file, or a parsed mapping
        registry: Handler lookup; ``module:attr`` references work without one

    Returns:
        The constructed graph (not yet executed)

    Raises:
        WorkflowDefinitionError: If the definition fails validation
        ConfigurationError: If a handler cannot be resolved or the graph is invalid
    """
    registry = registry or HandlerRegistry()
    content = _read_source(source)

    entries = content.get("tasks")
    if not isinstance(entries, list) or not entries:
        raise WorkflowDefinitionError(["'tasks' must be a non-empty list"])

    errors: list[str] = []
    tasks: dict[str, dict] = {}
    groups: dict[str, dict] = {}
    _collect(entries, tasks, groups, errors, "tasks")

    known = set(tasks) | set(groups)
    for name, group in groups.items():
        for branch in _branch_names(group):
            if branch not in known:
                errors.append(f"Group {name} references unknown task: {branch}")
    for name, entry in {**tasks, **groups}.items():
        for upstream in entry.get("depends_on") or []:
            if upstream not in known:
                errors.append(f"Task {name} depends on unknown task: {upstream}")
    if errors:
        raise WorkflowDefinitionError(errors)

    graph = TaskGraph(name=str(content.get("name", "workflow")), start=content.get("start"))

    for name, entry in tasks.items():
        graph.add_task(
            name,
            registry.resolve(entry["handler"]),
            params=dict(entry.get("params") or {}),
            retry_policy=RetryPolicy.from_dict(entry["retry"]) if entry.get("retry") else None,
            inject_context=bool(entry.get("inject_context", False)),
            max_cycles=entry.get("max_cycles"),
        )

    def add_group(name: str, visiting: tuple[str, ...] = ()) -> None:
        if graph.has_node(name):
            return
        if name in visiting:
            raise WorkflowDefinitionError([f"Group {name} contains itself"])
        group = groups[name]
        for branch in _branch_names(group):
            if branch in groups:
                add_group(branch, (*visiting, name))
        try:
            policy = policy_from_dict(group.get("policy"))
        except (KeyError, TypeError, ValueError) as e:
            raise WorkflowDefinitionError([f"Group {name} has an invalid policy: {e}"]) from e
        graph.add_group(
            name,
            _branch_names(group),
            policy=policy,
            timeout=group.get("timeout"),
            distributed=bool(group.get("distributed", False)),
        )

    for name in groups:
        add_group(name)

    for name, entry in {**tasks, **groups}.items():
        for upstream in entry.get("depends_on") or []:
            graph.add_edge(upstream, name)

    logger.debug(f"Loaded workflow {graph.name!r} with {len(graph)} nodes")
    return graph
