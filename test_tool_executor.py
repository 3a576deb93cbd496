#!/usr/bin/env python3
"""
Tests for ToolExecutor batch strategies, status tracking and events.
"""

import asyncio
from unittest.mock import MagicMock

from chat_fakes import call, provider, tool
from toolchat.chat.tool_executor import EXECUTION_CANCELLED, PREVIOUS_TOOL_FAILED, ToolExecutor
from toolchat.providers.registry import ToolRegistry


def _executor(*tools, **kwargs) -> ToolExecutor:
    return ToolExecutor(ToolRegistry([provider("test", list(tools))]), **kwargs)


async def test_parallel_results_follow_input_order():
    """Results come back in input order even when later calls finish first."""

    async def slow(tool_input, context):
        await asyncio.sleep(0.05)
        return "slow"

    async def fast(tool_input, context):
        return "fast"

    executor = _executor(tool("slow", slow), tool("fast", fast))

    batch = await executor.execute_tools([call("a", "slow"), call("b", "fast"), call("c", "slow")])

    assert [r.tool_call_id for r in batch.results] == ["a", "b", "c"]
    assert [r.data for r in batch.results] == ["slow", "fast", "slow"]
    assert batch.execution.completed_tools == 3
    print("✅ Parallel ordering test passed")


async def test_parallel_calls_run_concurrently():
    """The first call can only finish once the second has started."""
    second_started = asyncio.Event()

    async def waiter(tool_input, context):
        await asyncio.wait_for(second_started.wait(), timeout=1)
        return "waited"

    async def signaller(tool_input, context):
        second_started.set()
        return "signalled"

    executor = _executor(tool("waiter", waiter), tool("signaller", signaller))

    batch = await executor.execute_tools([call("1", "waiter"), call("2", "signaller")])

    assert all(r.success for r in batch.results)


async def test_parallel_failures_are_independent():
    def broken(tool_input, context):
        raise ValueError("bad input")

    executor = _executor(tool("ok", lambda i, c: "fine"), tool("broken", broken))

    batch = await executor.execute_tools([call("1", "broken"), call("2", "ok"), call("3", "missing_tool")])

    first, second, third = batch.results
    assert not first.success and first.error == "bad input"
    assert second.success and second.data == "fine"
    assert not third.success and "Tool missing_tool not found in any provider" in third.error
    assert batch.execution.completed_tools == 1
    statuses = [t.status for t in batch.execution.tools]
    assert statuses == ["failed", "completed", "failed"]
    print("✅ Independent failure test passed")


async def test_sequential_stops_at_first_failure():
    """Calls after a failure never run and carry the placeholder error."""
    spy = MagicMock(return_value="should not run")
    order = []

    def first(tool_input, context):
        order.append("first")
        return "ok"

    def failing(tool_input, context):
        order.append("failing")
        raise RuntimeError("step two failed")

    executor = _executor(tool("first", first), tool("failing", failing), tool("spy", spy))

    batch = await executor.execute_tools(
        [call("1", "first"), call("2", "failing"), call("3", "spy")],
        strategy="sequential",
    )

    spy.assert_not_called()
    assert order == ["first", "failing"]
    assert [r.success for r in batch.results] == [True, False, False]
    assert batch.results[1].error == "step two failed"
    assert batch.results[2].error == PREVIOUS_TOOL_FAILED
    assert batch.results[2].tool_call_id == "3"
    assert batch.execution.get_tool("3").status == "failed"
    assert batch.execution.get_tool("3").end_time is not None
    print("✅ Sequential stop-on-failure test passed")


async def test_sequential_runs_in_order():
    running = []

    async def step(tool_input, context):
        running.append(tool_input["n"])
        assert len(running) == tool_input["n"]
        await asyncio.sleep(0)
        return tool_input["n"]

    executor = _executor(tool("step", step))

    batch = await executor.execute_tools(
        [call(str(n), "step", n=n) for n in (1, 2, 3)],
        strategy="sequential",
    )

    assert [r.data for r in batch.results] == [1, 2, 3]


async def test_event_ordering():
    """tools_called first, tools_completed last, started before finished per tool."""
    def bad(tool_input, context):
        raise RuntimeError("nope")

    executor = _executor(tool("ok", lambda i, c: "fine"), tool("bad", bad))
    events = []
    executor.subscribe(events.append)

    batch = await executor.execute_tools([call("1", "ok"), call("2", "bad")], session_id="s1")

    types_seen = [e.type for e in events]
    assert types_seen[0] == "tools_called"
    assert types_seen[-1] == "tools_completed"
    assert types_seen.count("tool_started") == 2
    for tool_call_id in ("1", "2"):
        started = next(i for i, e in enumerate(events) if e.type == "tool_started" and e.tool_call_id == tool_call_id)
        finished = next(
            i
            for i, e in enumerate(events)
            if e.type in ("tool_completed", "tool_failed") and e.tool_call_id == tool_call_id
        )
        assert started < finished
    assert all(e.execution_id == batch.execution_id for e in events)
    assert events[0].session_id == "s1"
    assert events[-1].results == batch.results
    print("✅ Event ordering test passed")


async def test_listener_errors_do_not_break_batch():
    executor = _executor(tool("ok", lambda i, c: "fine"))

    def bad_listener(event):
        raise RuntimeError("listener broke")

    received = []
    executor.subscribe(bad_listener)
    executor.subscribe(received.append)

    batch = await executor.execute_tools([call("1", "ok")])

    assert batch.results[0].success
    assert len(received) == 4


async def test_unsubscribe_stops_delivery():
    executor = _executor(tool("ok", lambda i, c: "fine"))
    received = []
    unsubscribe = executor.subscribe(received.append)
    unsubscribe()

    await executor.execute_tools([call("1", "ok")])

    assert received == []


async def test_tool_timeout():
    async def hang(tool_input, context):
        await asyncio.sleep(5)

    executor = _executor(tool("hang", hang), tool_timeout=0.05)

    batch = await executor.execute_tools([call("1", "hang")])

    assert not batch.results[0].success
    assert batch.results[0].error == "Tool 'hang' timed out after 0.05s"
    assert batch.results[0].execution_time > 0


async def test_execution_retention():
    kept = _executor(tool("ok", lambda i, c: "fine"), retention_seconds=60)
    purged = _executor(tool("ok", lambda i, c: "fine"), retention_seconds=0)

    kept_batch = await kept.execute_tools([call("1", "ok")])
    purged_batch = await purged.execute_tools([call("1", "ok")])

    assert kept.get_execution_progress(kept_batch.execution_id) is kept_batch.execution
    assert kept.get_active_executions() == [kept_batch.execution]
    assert purged.get_execution_progress(purged_batch.execution_id) is None


async def test_cancel_execution_marks_pending_tools():
    release = asyncio.Event()

    async def blocking(tool_input, context):
        await release.wait()
        return "released"

    second = MagicMock(return_value="never")
    executor = _executor(tool("blocking", blocking), tool("second", second), tool("third", second))
    execution_ids = []
    executor.subscribe(lambda e: execution_ids.append(e.execution_id) if e.type == "tools_called" else None)

    task = asyncio.create_task(
        executor.execute_tools(
            [call("1", "blocking"), call("2", "second"), call("3", "third")],
            strategy="sequential",
        )
    )
    await asyncio.sleep(0.01)

    assert executor.cancel_execution(execution_ids[0])
    release.set()
    batch = await task

    second.assert_not_called()
    assert batch.results[0].success
    assert batch.results[1].error == EXECUTION_CANCELLED
    assert batch.results[2].error == PREVIOUS_TOOL_FAILED
    assert executor.cancel_execution("unknown-execution") is False
    print("✅ Cancellation test passed")


async def test_empty_batch():
    executor = _executor()

    batch = await executor.execute_tools([])

    assert batch.results == []
    assert batch.execution.total_tools == 0


async def test_from_config():
    configuration = MagicMock()
    configuration.get_executor_config.return_value = {
        "retention_seconds": 5.0,
        "tool_timeout_seconds": None,
        "tool_arguments_truncate": 100,
    }

    executor = ToolExecutor.from_config(ToolRegistry(), configuration)

    assert executor.retention_seconds == 5.0
    assert executor.tool_timeout is None
    assert executor.log_truncate == 100
