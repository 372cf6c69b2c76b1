"""Checkpoint creation, resume and artifact validation tests.

Handlers are module-level so the graph can be pickled into checkpoints.
"""

import json
from pathlib import Path

import pytest
from conftest import make_context, record

from graflow.core import CheckpointError, ExecutionContext, TaskGraph
from graflow.executor import CheckpointManager
from graflow.models import CHECKPOINT_SCHEMA_VERSION, AttemptOutcome, RunStatus
from graflow.storage.sqlite import SqliteChannel


async def extract(ctx):
    await ctx.get_channel().append("order", "extract")
    ctx.checkpoint(metadata={"stage": "extracted"})
    return [1, 2, 3]


async def transform(ctx):
    await ctx.get_channel().append("order", "transform")
    return [x * 10 for x in await ctx.get_result("extract")]


async def load(ctx):
    await ctx.get_channel().append("order", "load")
    return sum(await ctx.get_result("transform"))


async def tick(ctx):
    if ctx.cycle < 2:
        ctx.checkpoint()
        ctx.next_iteration()
    return ctx.cycle


def etl_graph() -> TaskGraph:
    graph = TaskGraph("etl")
    graph.add_task("extract", extract, inject_context=True)
    graph.add_task("transform", transform, inject_context=True, depends_on=["extract"])
    graph.add_task("load", load, inject_context=True, depends_on=["transform"])
    return graph


async def checkpointed_run(engine) -> tuple[ExecutionContext, str]:
    context = make_context(etl_graph())
    result = await engine.execute(context)
    assert result.status is RunStatus.COMPLETED
    assert len(result.checkpoints) == 1
    return context, result.checkpoint_path


# ==============================================================================
# Create and resume
# ==============================================================================


@pytest.mark.asyncio
async def test_checkpoint_taken_after_task_completes(engine, checkpoint_manager):
    _, path = await checkpointed_run(engine)

    resumed, meta = await checkpoint_manager.resume(path)

    assert meta.user_metadata == {"stage": "extracted"}
    assert meta.step_count == 1
    assert resumed.is_completed("extract")
    assert resumed.started
    assert [s.task_id for s in await resumed.queue.pending()] == ["transform"]
    assert await resumed.get_result("extract") == [1, 2, 3]


@pytest.mark.asyncio
async def test_resumed_run_continues_without_rerunning(engine, checkpoint_manager):
    _, path = await checkpointed_run(engine)
    resumed, _ = await checkpoint_manager.resume(path)

    result = await engine.execute(resumed)

    assert result.status is RunStatus.COMPLETED
    assert await resumed.channel.get("order") == ["extract", "transform", "load"]
    assert await result.result_of("load") == 60
    assert resumed.step_count == 3


@pytest.mark.asyncio
async def test_history_survives_resume(engine, checkpoint_manager):
    _, path = await checkpointed_run(engine)

    state = json.loads(Path(f"{path}.state.json").read_text())
    assert [r["task_id"] for r in state["history"]] == ["extract"]
    assert state["history"][0]["outcome"] == "succeeded"

    resumed, _ = await checkpoint_manager.resume(path)
    assert [r.task_id for r in resumed.history] == ["extract"]
    assert resumed.history[0].outcome is AttemptOutcome.SUCCEEDED

    result = await engine.execute(resumed)
    assert [r.task_id for r in result.history] == ["extract", "transform", "load"]


@pytest.mark.asyncio
async def test_resume_restores_cycle_counts(engine, checkpoint_manager):
    graph = TaskGraph("ticker")
    graph.add_task("tick", tick, inject_context=True)
    context = make_context(graph)

    result = await engine.execute(context)

    assert len(result.checkpoints) == 2
    resumed, _ = await checkpoint_manager.resume(result.checkpoints[0])
    assert resumed.cycle_count("tick") == 1
    pending = await resumed.queue.pending()
    assert [(s.task_id, s.cycle) for s in pending] == [("tick", 1)]

    again = await engine.execute(resumed)
    assert await again.result_of("tick") == 2


@pytest.mark.asyncio
async def test_metadata_and_listing(engine, checkpoint_manager):
    context, path = await checkpointed_run(engine)
    other = make_context(etl_graph())
    await engine.execute(other)

    meta = checkpoint_manager.load_metadata(path)
    assert meta.session_id == context.session_id
    assert meta.start_node == "extract"

    listed = checkpoint_manager.list_checkpoints(context.session_id)
    assert [p for p, _ in listed] == [path]
    assert len(checkpoint_manager.list_checkpoints()) == 2


@pytest.mark.asyncio
async def test_explicit_path(engine, temp_dir):
    context, _ = await checkpointed_run(engine)
    manager = CheckpointManager(temp_dir)

    path, _ = await manager.create(context, path=temp_dir / "manual" / "cp")

    assert path == str(temp_dir / "manual" / "cp")
    for suffix in (".pkl", ".state.json", ".meta.json"):
        assert Path(f"{path}{suffix}").exists()
    state = json.loads(Path(f"{path}.state.json").read_text())
    assert state["schema_version"] == CHECKPOINT_SCHEMA_VERSION
    assert state["completed"] == ["extract", "load", "transform"]
    assert state["pending_specs"] == []


# ==============================================================================
# Failure modes
# ==============================================================================


@pytest.mark.asyncio
async def test_checkpoints_are_write_once(engine, temp_dir):
    context, _ = await checkpointed_run(engine)
    manager = CheckpointManager(temp_dir)
    await manager.create(context, path=temp_dir / "cp")

    with pytest.raises(CheckpointError):
        await manager.create(context, path=temp_dir / "cp")


@pytest.mark.asyncio
async def test_unpicklable_graph_is_rejected(checkpoint_manager):
    graph = TaskGraph()
    graph.add_task("closure", record("closure"), inject_context=True)
    context = make_context(graph)
    await context.connect()

    with pytest.raises(CheckpointError):
        await checkpoint_manager.create(context)
    assert checkpoint_manager.list_checkpoints() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("suffix", [".pkl", ".state.json", ".meta.json"])
async def test_missing_artifact(engine, checkpoint_manager, suffix):
    _, path = await checkpointed_run(engine)
    Path(f"{path}{suffix}").unlink()

    with pytest.raises(CheckpointError):
        await checkpoint_manager.resume(path)


@pytest.mark.asyncio
async def test_corrupt_artifacts(engine, checkpoint_manager):
    _, path = await checkpointed_run(engine)
    Path(f"{path}.pkl").write_bytes(b"not a pickle")

    with pytest.raises(CheckpointError):
        await checkpoint_manager.resume(path)

    Path(f"{path}.state.json").write_text("{broken")
    with pytest.raises(CheckpointError):
        await checkpoint_manager.resume(path)


@pytest.mark.asyncio
async def test_unsupported_schema_version(engine, checkpoint_manager):
    _, path = await checkpointed_run(engine)
    state_path = Path(f"{path}.state.json")
    state = json.loads(state_path.read_text())
    state["schema_version"] = "99.0"
    state_path.write_text(json.dumps(state))

    with pytest.raises(CheckpointError, match="schema"):
        await checkpoint_manager.resume(path)


@pytest.mark.asyncio
async def test_resume_accepts_any_artifact_path(engine, checkpoint_manager):
    context, path = await checkpointed_run(engine)
    resumed, _ = await checkpoint_manager.resume(f"{path}.meta.json")
    assert resumed.session_id == context.session_id


# ==============================================================================
# Shared backend
# ==============================================================================


@pytest.mark.asyncio
async def test_sqlite_checkpoint_reconnects_to_session(engine, checkpoint_manager, sqlite_backend):
    context = ExecutionContext.create(etl_graph(), backend=sqlite_backend)
    result = await engine.execute(context)
    await context.close()

    resumed, meta = await checkpoint_manager.resume(result.checkpoint_path)
    try:
        assert meta.backend == "sqlite"
        assert isinstance(resumed.channel, SqliteChannel)
        assert resumed.session_id == context.session_id
        # the live session already holds every later result
        assert await resumed.get_result("load") == 60
        assert [s.task_id for s in await resumed.queue.pending()] == ["transform"]
    finally:
        await resumed.close()
