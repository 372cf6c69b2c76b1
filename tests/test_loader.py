"""Tests for YAML workflow definitions and the handler registry."""

import json

import pytest

from graflow.core import (
    ConfigurationError,
    ExecutionContext,
    GroupNode,
    HandlerRegistry,
    WorkflowDefinitionError,
    load_workflow,
)
from graflow.models import AtLeastN, BackoffStrategy, RunStatus, Strict

ETL = """
name: nightly-etl
tasks:
  - name: extract
    handler: extract
    params: {rows: 3}
    retry: {max_attempts: 3, backoff: linear, initial_delay_ms: 50}
  - name: fan_out
    depends_on: [extract]
    parallel:
      - {name: clean_a, handler: clean, params: {part: a}}
      - {name: clean_b, handler: clean, params: {part: b}}
    policy: {type: at_least, min_success: 1}
    timeout: 5
  - name: load
    handler: load
    inject_context: true
    depends_on: [fan_out]
"""


@pytest.fixture
def registry() -> HandlerRegistry:
    registry = HandlerRegistry()

    @registry.register
    def extract(rows):
        return list(range(rows))

    @registry.register
    def clean(part):
        return f"clean-{part}"

    @registry.register(name="load")
    async def load_rows(ctx):
        return [await ctx.get_result("clean_a"), await ctx.get_result("clean_b")]

    return registry


def test_builds_graph(registry):
    graph = load_workflow(ETL, registry)

    assert graph.name == "nightly-etl"
    assert graph.resolve_start() == "extract"
    assert graph.successors("extract") == ["fan_out"]
    assert graph.successors("fan_out") == ["load"]

    extract = graph.get_node("extract")
    assert extract.params == {"rows": 3}
    assert extract.retry_policy.max_attempts == 3
    assert extract.retry_policy.strategy is BackoffStrategy.LINEAR

    fan_out = graph.get_node("fan_out")
    assert isinstance(fan_out, GroupNode)
    assert fan_out.branches == ["clean_a", "clean_b"]
    assert fan_out.policy == AtLeastN(1)
    assert fan_out.timeout == 5
    assert graph.group_of("clean_b") == "fan_out"
    assert graph.get_node("load").inject_context


@pytest.mark.asyncio
async def test_loaded_workflow_runs(registry, engine):
    context = ExecutionContext.create(load_workflow(ETL, registry))

    result = await engine.execute(context)

    assert result.status is RunStatus.COMPLETED
    assert await result.result_of("extract") == [0, 1, 2]
    assert await result.result_of("load") == ["clean-a", "clean-b"]


def test_branch_references_and_explicit_start(registry):
    graph = load_workflow(
        {
            "name": "refs",
            "start": "clean_a",
            "tasks": [
                {"name": "clean_a", "handler": "clean"},
                {"name": "clean_b", "handler": "clean"},
                {"name": "both", "parallel": ["clean_a", "clean_b"]},
            ],
        },
        registry,
    )
    assert graph.resolve_start() == "clean_a"
    assert graph.get_node("both").policy == Strict()


def test_nested_parallel_groups(registry):
    graph = load_workflow(
        """
tasks:
  - name: outer
    parallel:
      - name: inner
        parallel:
          - {name: a, handler: clean}
          - {name: b, handler: clean}
      - {name: c, handler: clean}
""",
        registry,
    )
    assert graph.get_node("outer").branches == ["inner", "c"]
    assert graph.group_of("a") == "inner"
    assert graph.resolve_start() == "outer"


def test_load_from_file(registry, temp_dir):
    path = temp_dir / "etl.yaml"
    path.write_text(ETL)

    assert load_workflow(path, registry).name == "nightly-etl"
    assert load_workflow(str(path), registry).name == "nightly-etl"


def test_module_reference_handlers():
    graph = load_workflow({"tasks": [{"name": "dump", "handler": "json:dumps"}]})
    assert graph.get_node("dump").handler is json.dumps


# ==============================================================================
# Validation
# ==============================================================================


@pytest.mark.parametrize(
    "tasks, message",
    [
        ([{"name": "a"}], "missing a handler"),
        ([{"handler": "clean"}], "missing a name"),
        ([{"name": "a", "handler": "clean"}, {"name": "a", "handler": "clean"}], "Duplicate"),
        ([{"name": "a", "handler": "clean", "depends_on": ["ghost"]}], "unknown task: ghost"),
        ([{"name": "g", "parallel": ["ghost"]}], "unknown task: ghost"),
        ([{"name": "g", "parallel": []}], "at least one branch"),
        ([{"name": "a", "handler": "clean", "retries": 3}], "unknown keys"),
    ],
)
def test_invalid_definitions(registry, tasks, message):
    with pytest.raises(WorkflowDefinitionError) as exc_info:
        load_workflow({"tasks": tasks}, registry)
    assert any(message in error for error in exc_info.value.errors)


def test_errors_are_collected_together(registry):
    with pytest.raises(WorkflowDefinitionError) as exc_info:
        load_workflow(
            {"tasks": [{"name": "a"}, {"name": "b", "handler": "clean", "depends_on": ["z"]}]},
            registry,
        )
    assert len(exc_info.value.errors) == 2


@pytest.mark.parametrize("source", ["tasks: [", "- just\n- a list\n", "name: empty\ntasks: []\n"])
def test_malformed_documents(source):
    with pytest.raises(ConfigurationError):
        load_workflow(source)


def test_invalid_policy(registry):
    with pytest.raises(WorkflowDefinitionError, match="invalid policy"):
        load_workflow(
            {"tasks": [{"name": "a", "handler": "clean"},
                       {"name": "g", "parallel": ["a"], "policy": "majority"}]},
            registry,
        )


# ==============================================================================
# Registry
# ==============================================================================


def test_registry_lookup(registry):
    assert "clean" in registry
    assert registry.names() == ["clean", "extract", "load"]
    assert registry.resolve("clean")(part="x") == "clean-x"


def test_registry_rejects_conflicting_names(registry):
    with pytest.raises(ConfigurationError):
        registry.register(print, name="clean")


@pytest.mark.parametrize("name", ["nope", "json:nope", "no_such_module_xyz:fn", "json:__doc__"])
def test_unresolvable_handlers(registry, name):
    with pytest.raises(ConfigurationError):
        registry.resolve(name)
