"""Tests for the workflow engine run loop and control directives."""

import pytest
from conftest import make_context, record

from graflow.core import (
    AmbiguousStartError,
    CycleLimitExceededError,
    JumpTargetError,
    MaxStepsExceededError,
    ParameterResolutionError,
    TaskExecutionError,
    TaskGraph,
    TaskNode,
    UnknownNodeError,
    WorkflowCancelledError,
)
from graflow.models import AttemptOutcome, RetryableError, RetryPolicy, RunStatus

FAST_RETRY = RetryPolicy(max_attempts=3, initial_delay_ms=10, max_delay_ms=50)


def chain(*ids: str) -> TaskGraph:
    graph = TaskGraph("chain")
    previous = None
    for task_id in ids:
        graph.add_task(
            task_id, record(task_id), inject_context=True, depends_on=[previous] if previous else []
        )
        previous = task_id
    return graph


async def pending_ids(context) -> list[str]:
    return [spec.task_id for spec in await context.queue.pending()]


# ==============================================================================
# Sequential execution
# ==============================================================================


@pytest.mark.asyncio
async def test_chain_runs_in_order(engine):
    context = make_context(chain("a", "b", "c"))

    result = await engine.execute(context)

    assert result.status is RunStatus.COMPLETED
    assert result.succeeded
    assert result.steps == 3
    assert result.completed == ["a", "b", "c"]
    assert await context.channel.get("order") == ["a", "b", "c"]
    assert await result.result_of("c") == "c"


@pytest.mark.asyncio
async def test_sync_handlers_and_channel_parameters(engine):
    def produce():
        return 21

    async def consume(ctx, factor):
        return await ctx.get_result("produce") * factor

    graph = TaskGraph()
    graph.add_task("produce", produce)
    graph.add_task("consume", consume, inject_context=True, depends_on=["produce"])
    context = make_context(graph)
    await context.channel.set("factor", 2)

    result = await engine.execute(context)

    assert await result.result_of("consume") == 42


@pytest.mark.asyncio
async def test_injection_reaches_handlers(engine):
    seen = []

    def use_db(db):
        seen.append(db)

    graph = TaskGraph()
    graph.add_task("t", use_db)

    await engine.with_injection("db", "conn").execute(make_context(graph))

    assert seen == ["conn"]


@pytest.mark.asyncio
async def test_directive_free_task_enqueues_exactly_its_successors(engine):
    graph = chain("root")
    for child in ("x", "y"):
        graph.add_task(child, record(child), inject_context=True, depends_on=["root"])
    graph.add_task("unrelated", record("unrelated"), inject_context=True, depends_on=["x"])
    context = make_context(graph)

    with pytest.raises(MaxStepsExceededError):
        await engine.with_max_steps(1).execute(context)

    assert await pending_ids(context) == ["x", "y"]
    assert context.completed == {"root"}


@pytest.mark.asyncio
async def test_fan_in_successor_runs_once(engine):
    graph = chain("s")
    graph.add_task("a", record("a"), inject_context=True, depends_on=["s"])
    graph.add_task("b", record("b"), inject_context=True, depends_on=["s"])
    graph.add_task("join", record("join"), inject_context=True, depends_on=["a", "b"])
    context = make_context(graph)

    await engine.execute(context)

    assert await context.channel.get("order") == ["s", "a", "b", "join"]


@pytest.mark.asyncio
async def test_join_waits_for_longer_branch(engine):
    graph = chain("a", "b", "c")
    graph.add_task("join", record("join"), inject_context=True, depends_on=["c", "a"])
    context = make_context(graph)

    result = await engine.execute(context)

    assert await context.channel.get("order") == ["a", "b", "c", "join"]
    assert result.steps == 4


@pytest.mark.asyncio
async def test_join_is_held_back_until_predecessors_complete(engine):
    graph = chain("a", "b")
    graph.add_task("join", record("join"), inject_context=True, depends_on=["a", "b"])
    context = make_context(graph)

    with pytest.raises(MaxStepsExceededError):
        await engine.with_max_steps(1).execute(context)

    assert await pending_ids(context) == ["b"]


@pytest.mark.asyncio
async def test_ambiguous_start_raises_before_any_task(engine):
    graph = TaskGraph()
    graph.add_task("a", record("a"), inject_context=True)
    graph.add_task("b", record("b"), inject_context=True)
    context = make_context(graph)

    with pytest.raises(AmbiguousStartError):
        await engine.execute(context)

    assert await context.channel.get("order") is None
    assert context.step_count == 0


@pytest.mark.asyncio
async def test_explicit_start(engine):
    graph = TaskGraph()
    graph.add_task("a", record("a"), inject_context=True)
    graph.add_task("b", record("b"), inject_context=True)
    context = make_context(graph)

    result = await engine.execute(context, start_at="b")

    assert result.completed == ["b"]
    assert context.start_node == "b"


# ==============================================================================
# Retries and fatal errors
# ==============================================================================


@pytest.mark.asyncio
async def test_retry_until_success(engine):
    async def flaky(ctx):
        if await ctx.get_channel().incr("calls") < 3:
            raise ConnectionError("transient")
        return ctx.attempt

    graph = TaskGraph()
    graph.add_task("flaky", flaky, inject_context=True, retry_policy=FAST_RETRY)
    context = make_context(graph)

    result = await engine.execute(context)

    assert result.status is RunStatus.COMPLETED
    assert await result.result_of("flaky") == 3
    assert result.steps == 3

    assert [(r.attempt, r.outcome) for r in result.history] == [
        (1, AttemptOutcome.FAILED),
        (2, AttemptOutcome.FAILED),
        (3, AttemptOutcome.SUCCEEDED),
    ]
    assert result.history[0].error == "ConnectionError: transient"
    assert all(r.duration >= 0 for r in result.history)


@pytest.mark.asyncio
async def test_exhausted_retries_raise_task_execution_error(engine):
    def always_fails():
        raise ValueError("boom")

    graph = TaskGraph()
    graph.add_task("bad", always_fails, retry_policy=RetryPolicy(max_attempts=2, initial_delay_ms=5))
    context = make_context(graph)

    with pytest.raises(TaskExecutionError) as exc_info:
        await engine.execute(context)

    error = exc_info.value
    assert error.task_id == "bad"
    assert error.attempts == 2
    assert error.cycle_count == 0
    assert error.elapsed >= 0
    assert isinstance(error.cause, ValueError)
    assert not context.is_completed("bad")


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately(engine):
    class Declined(RetryableError):
        def is_retryable(self) -> bool:
            return False

    calls = []

    def charge():
        calls.append(1)
        raise Declined("card declined")

    graph = TaskGraph()
    graph.add_task("charge", charge, retry_policy=FAST_RETRY)

    with pytest.raises(TaskExecutionError) as exc_info:
        await engine.execute(make_context(graph))

    assert len(calls) == 1
    assert exc_info.value.attempts == 1


@pytest.mark.asyncio
async def test_parameter_errors_are_not_retried(engine):
    def needs(missing):
        return missing

    graph = TaskGraph()
    graph.add_task("t", needs, retry_policy=FAST_RETRY)

    with pytest.raises(TaskExecutionError) as exc_info:
        await engine.execute(make_context(graph))

    assert isinstance(exc_info.value.cause, ParameterResolutionError)
    assert exc_info.value.attempts == 1


# ==============================================================================
# Directives
# ==============================================================================


@pytest.mark.asyncio
async def test_cancel_does_not_complete_task(engine):
    async def cancel(ctx):
        ctx.cancel_workflow("operator abort")
        ctx.terminate_workflow("ignored: cancel wins")

    graph = TaskGraph()
    graph.add_task("cancel", cancel, inject_context=True)
    graph.add_task("after", record("after"), inject_context=True, depends_on=["cancel"])
    context = make_context(graph)

    with pytest.raises(WorkflowCancelledError) as exc_info:
        await engine.execute(context)

    assert exc_info.value.reason == "operator abort"
    assert exc_info.value.task_id == "cancel"
    assert not context.is_completed("cancel")
    assert context.is_cancelled
    assert await context.get_result("cancel") is None


@pytest.mark.asyncio
async def test_terminate_completes_task_and_skips_successors(engine):
    async def stop(ctx):
        ctx.terminate_workflow("nothing to do")
        ctx.next_task("after")

    graph = TaskGraph()
    graph.add_task("stop", stop, inject_context=True)
    graph.add_task("after", record("after"), inject_context=True, depends_on=["stop"])
    context = make_context(graph)

    result = await engine.execute(context)

    assert result.status is RunStatus.TERMINATED
    assert result.reason == "nothing to do"
    assert result.completed == ["stop"]
    assert await context.channel.get("order") is None


@pytest.mark.asyncio
async def test_jump_with_goto_enqueues_only_target(engine):
    async def router(ctx):
        ctx.next_task("special", goto=True)

    graph = TaskGraph()
    graph.add_task("router", router, inject_context=True)
    graph.add_task("normal", record("normal"), inject_context=True, depends_on=["router"])
    graph.add_task("special", record("special"), inject_context=True, depends_on=["normal"])
    context = make_context(graph)

    with pytest.raises(MaxStepsExceededError):
        await engine.with_max_steps(1).execute(context)

    assert await pending_ids(context) == ["special"]
    assert context.is_completed("router")


@pytest.mark.asyncio
async def test_jump_without_goto_adds_target_to_successors(engine):
    async def router(ctx):
        ctx.next_task("special")

    graph = TaskGraph()
    graph.add_task("router", router, inject_context=True)
    graph.add_task("normal", record("normal"), inject_context=True, depends_on=["router"])
    graph.add_task("special", record("special"), inject_context=True, depends_on=["normal"])
    context = make_context(graph)

    with pytest.raises(MaxStepsExceededError):
        await engine.with_max_steps(1).execute(context)

    assert sorted(await pending_ids(context)) == ["normal", "special"]


@pytest.mark.asyncio
async def test_jump_adds_dynamic_task(engine):
    async def spawn(ctx):
        ctx.next_task(TaskNode("generated", record("generated"), inject_context=True))

    graph = TaskGraph()
    graph.add_task("spawn", spawn, inject_context=True)
    context = make_context(graph)

    result = await engine.execute(context)

    assert "generated" in context.graph
    assert result.completed == ["generated", "spawn"]


@pytest.mark.asyncio
async def test_jump_to_unknown_task_is_rejected(engine):
    async def bad(ctx):
        ctx.next_task("nowhere")

    graph = TaskGraph()
    graph.add_task("bad", bad, inject_context=True)

    with pytest.raises(UnknownNodeError):
        await engine.execute(make_context(graph))


@pytest.mark.asyncio
async def test_jump_into_active_barrier_is_rejected(engine):
    async def sneaky(ctx):
        ctx.execution.enter_barrier("fan", ["branch"])
        ctx.next_task("branch")

    graph = TaskGraph()
    graph.add_task("sneaky", sneaky, inject_context=True)
    graph.add_task("branch", record("branch"), inject_context=True)

    with pytest.raises(JumpTargetError):
        await engine.execute(make_context(graph), start_at="sneaky")


@pytest.mark.asyncio
async def test_self_loop_increments_cycle_and_holds_successors(engine):
    async def poll(ctx):
        ctx.next_iteration()

    graph = TaskGraph()
    graph.add_task("poll", poll, inject_context=True)
    graph.add_task("after", record("after"), inject_context=True, depends_on=["poll"])
    context = make_context(graph)

    with pytest.raises(MaxStepsExceededError):
        await engine.with_max_steps(1).execute(context)

    assert context.cycle_count("poll") == 1
    pending = await context.queue.pending()
    assert [(s.task_id, s.cycle) for s in pending] == [("poll", 1)]


@pytest.mark.asyncio
async def test_self_loop_until_done(engine):
    async def countdown(ctx):
        remaining = await ctx.get_channel().get("remaining", 3)
        await ctx.get_channel().set("remaining", remaining - 1)
        if remaining > 1:
            ctx.next_iteration()
        return ctx.cycle

    graph = TaskGraph()
    graph.add_task("countdown", countdown, inject_context=True)
    graph.add_task("after", record("after"), inject_context=True, depends_on=["countdown"])
    context = make_context(graph)

    result = await engine.execute(context)

    assert context.cycle_count("countdown") == 2
    assert await result.result_of("countdown") == 2
    assert await context.channel.get("order") == ["after"]


@pytest.mark.asyncio
async def test_cycle_limit(engine):
    async def forever(ctx):
        ctx.next_iteration()

    graph = TaskGraph()
    graph.add_task("forever", forever, inject_context=True, max_cycles=3)

    with pytest.raises(CycleLimitExceededError) as exc_info:
        await engine.execute(make_context(graph))

    assert exc_info.value.max_cycles == 3


@pytest.mark.asyncio
async def test_default_cycle_limit(engine):
    async def forever(ctx):
        ctx.next_iteration()

    graph = TaskGraph()
    graph.add_task("forever", forever, inject_context=True)
    context = make_context(graph)

    with pytest.raises(CycleLimitExceededError):
        await engine.with_default_max_cycles(5).execute(context)

    assert context.cycle_count("forever") == 6


@pytest.mark.asyncio
async def test_history_records_cycles_in_execution_order(engine):
    async def countdown(ctx):
        if ctx.cycle < 2:
            ctx.next_iteration()

    graph = TaskGraph()
    graph.add_task("countdown", countdown, inject_context=True)
    graph.add_task("after", record("after"), inject_context=True, depends_on=["countdown"])

    result = await engine.execute(make_context(graph))

    assert [(r.task_id, r.cycle) for r in result.history] == [
        ("countdown", 0),
        ("countdown", 1),
        ("countdown", 2),
        ("after", 0),
    ]
    assert {r.outcome for r in result.history} == {AttemptOutcome.SUCCEEDED}
