"""
Tool Execution Handler

Runs one batch of model-issued tool calls at a time:
- parallel strategy: every call starts at once, failures stay independent
- sequential strategy: calls run in order and the batch stops at the first
  failure, later calls are reported as failed without running
- per-tool status tracking (pending -> running -> completed | failed)
- lifecycle events for observers (tool_started, tool_completed, tool_failed,
  tools_called, tools_completed)

Handler and resolution errors are converted into failed ToolResults here;
nothing raised by a tool crosses this boundary.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any

from .events import EventChannel
from .logging_utils import (
    log_tool_arguments,
    log_tool_execution_error,
    log_tool_execution_start,
    log_tool_execution_success,
    log_tool_results,
)
from .models import (
    ExecutionStrategy,
    MultiToolExecution,
    ToolBatchResult,
    ToolCall,
    ToolCompletedEvent,
    ToolEvent,
    ToolExecutionStatus,
    ToolFailedEvent,
    ToolResult,
    ToolsCalledEvent,
    ToolsCompletedEvent,
    ToolStartedEvent,
    utc_now,
)

if TYPE_CHECKING:
    from toolchat.config import Configuration
    from toolchat.providers.registry import ToolRegistry

logger = logging.getLogger(__name__)

PREVIOUS_TOOL_FAILED = "Previous tool failed"
EXECUTION_CANCELLED = "Execution cancelled"


class ToolExecutor:
    """Executes tool batches against a ToolRegistry and reports progress."""

    def __init__(
        self,
        registry: ToolRegistry,
        retention_seconds: float = 60.0,
        tool_timeout: float | None = 60.0,
        log_truncate: int = 500,
    ) -> None:
        self.registry = registry
        self.retention_seconds = retention_seconds
        self.tool_timeout = tool_timeout
        self.log_truncate = log_truncate
        self.events: EventChannel[ToolEvent] = EventChannel("tool_event")
        self._active_executions: dict[str, MultiToolExecution] = {}

    @classmethod
    def from_config(cls, registry: ToolRegistry, configuration: Configuration) -> ToolExecutor:
        executor_conf = configuration.get_executor_config()
        return cls(
            registry,
            retention_seconds=executor_conf["retention_seconds"],
            tool_timeout=executor_conf["tool_timeout_seconds"],
            log_truncate=executor_conf["tool_arguments_truncate"],
        )

    def subscribe(self, callback: Callable[[ToolEvent], None]) -> Callable[[], None]:
        """Subscribe to tool events. Returns an unsubscribe function."""
        return self.events.subscribe(callback)

    async def execute_tools(
        self,
        tool_calls: Sequence[ToolCall],
        context: dict[str, Any] | None = None,
        strategy: ExecutionStrategy = "parallel",
        session_id: str = "unknown-session",
    ) -> ToolBatchResult:
        """
        Execute a batch of tool calls with progress tracking.

        Args:
            tool_calls: Calls requested by the model
            context: Handler context (session context plus provider_id)
            strategy: "parallel" runs every call concurrently; "sequential"
                runs them in order and fails the rest after the first failure
            session_id: Session the batch belongs to, used in events and logs

        Returns:
            ToolBatchResult with one ToolResult per input call, in input order.
            Tool failures are captured in the results, never raised.

        Side Effects:
            - Emits tools_called, tool_started, tool_completed/tool_failed and
              tools_completed events to subscribers
            - Keeps the execution record inspectable through
              get_execution_progress() for `retention_seconds` after the
              batch settles
        """
        calls = list(tool_calls)
        execution = MultiToolExecution(
            total_tools=len(calls),
            tools=[ToolExecutionStatus(id=call.id, name=call.name) for call in calls],
        )
        self._active_executions[execution.id] = execution

        logger.info(
            "→ Executor: executing %d tool calls (%s) for session %s",
            len(calls),
            strategy,
            session_id,
        )
        self.events.emit(
            ToolsCalledEvent(tool_calls=calls, session_id=session_id, execution_id=execution.id)
        )

        try:
            if strategy == "parallel":
                results = await self._execute_parallel(calls, context or {}, execution)
            elif strategy == "sequential":
                results = await self._execute_sequential(calls, context or {}, execution)
            else:
                raise ValueError(f"Unknown execution strategy: {strategy}")

            execution.completed_tools = sum(1 for r in results if r.success)
            execution.current_tool = None

            self.events.emit(
                ToolsCompletedEvent(results=results, session_id=session_id, execution_id=execution.id)
            )
            logger.info(
                "← Executor: %d/%d tools succeeded (execution %s)",
                execution.completed_tools,
                execution.total_tools,
                execution.id,
            )
            return ToolBatchResult(execution_id=execution.id, results=results, execution=execution)
        finally:
            self._schedule_purge(execution.id)

    async def _execute_parallel(
        self,
        calls: list[ToolCall],
        context: dict[str, Any],
        execution: MultiToolExecution,
    ) -> list[ToolResult]:
        outcomes = await asyncio.gather(
            *(
                self._execute_single(call, context, execution, status, i)
                for i, (call, status) in enumerate(zip(calls, execution.tools, strict=True))
            ),
            return_exceptions=True,
        )

        results: list[ToolResult] = []
        for call, status, outcome in zip(calls, execution.tools, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                # Only reached when a call was cancelled from outside
                outcome = ToolResult(
                    tool_call_id=call.id,
                    success=False,
                    error=str(outcome) or type(outcome).__name__,
                )
                self._finish_status(status, outcome)
            results.append(outcome)
        return results

    async def _execute_sequential(
        self,
        calls: list[ToolCall],
        context: dict[str, Any],
        execution: MultiToolExecution,
    ) -> list[ToolResult]:
        results: list[ToolResult] = []

        for i, (call, status) in enumerate(zip(calls, execution.tools, strict=True)):
            result = await self._execute_single(call, context, execution, status, i)
            results.append(result)

            if not result.success:
                remaining = execution.tools[i + 1 :]
                if remaining:
                    logger.warning(
                        "Sequential execution stopped at %s, skipping %d remaining tools",
                        call.name,
                        len(remaining),
                    )
                for skipped in remaining:
                    placeholder = ToolResult(
                        tool_call_id=skipped.id, success=False, error=PREVIOUS_TOOL_FAILED
                    )
                    self._finish_status(skipped, placeholder)
                    results.append(placeholder)
                break

        return results

    async def _execute_single(
        self,
        call: ToolCall,
        context: dict[str, Any],
        execution: MultiToolExecution,
        status: ToolExecutionStatus,
        index: int,
    ) -> ToolResult:
        if status.status == "failed":
            # Cancelled via cancel_execution() before it started
            result = ToolResult(tool_call_id=call.id, success=False, error=EXECUTION_CANCELLED)
            status.result = result
            return result

        status.status = "running"
        status.start_time = utc_now()
        execution.current_tool = call.name

        log_tool_execution_start(call.name, index, execution.total_tools)
        log_tool_arguments(
            call.name, call.input, f"call {index + 1}/{execution.total_tools}", self.log_truncate
        )
        self.events.emit(
            ToolStartedEvent(tool_call_id=call.id, tool_name=call.name, execution_id=execution.id)
        )

        start = time.monotonic()
        try:
            invocation = self.registry.execute_tool(call.name, call.input, context)
            if self.tool_timeout:
                outcome = await asyncio.wait_for(invocation, timeout=self.tool_timeout)
            else:
                outcome = await invocation
            result = ToolResult(
                tool_call_id=call.id,
                success=outcome.success,
                data=outcome.data,
                error=outcome.error,
                execution_time=(time.monotonic() - start) * 1000,
            )
        except TimeoutError:
            result = ToolResult(
                tool_call_id=call.id,
                success=False,
                error=f"Tool '{call.name}' timed out after {self.tool_timeout}s",
                execution_time=(time.monotonic() - start) * 1000,
            )
        except Exception as e:
            result = ToolResult(
                tool_call_id=call.id,
                success=False,
                error=str(e) or type(e).__name__,
                execution_time=(time.monotonic() - start) * 1000,
            )

        self._finish_status(status, result)

        if result.success:
            log_tool_execution_success(call.name, result.execution_time)
            log_tool_results(call.name, result.data, call.id)
            self.events.emit(
                ToolCompletedEvent(
                    tool_call_id=call.id,
                    tool_name=call.name,
                    result=result,
                    execution_id=execution.id,
                )
            )
        else:
            log_tool_execution_error(call.name, result.error or "Unknown error")
            self.events.emit(
                ToolFailedEvent(
                    tool_call_id=call.id,
                    tool_name=call.name,
                    error=result.error or "Unknown error",
                    execution_id=execution.id,
                )
            )
        return result

    @staticmethod
    def _finish_status(status: ToolExecutionStatus, result: ToolResult) -> None:
        status.status = "completed" if result.success else "failed"
        status.end_time = utc_now()
        status.result = result

    def _schedule_purge(self, execution_id: str) -> None:
        if self.retention_seconds <= 0:
            self._active_executions.pop(execution_id, None)
            return
        loop = asyncio.get_running_loop()
        loop.call_later(self.retention_seconds, self._active_executions.pop, execution_id, None)

    def get_execution_progress(self, execution_id: str) -> MultiToolExecution | None:
        return self._active_executions.get(execution_id)

    def get_active_executions(self) -> list[MultiToolExecution]:
        return list(self._active_executions.values())

    def cancel_execution(self, execution_id: str) -> bool:
        """
        Best-effort cancellation: tools still pending are marked failed and
        will not start. Running or finished tools are left alone.
        """
        execution = self._active_executions.get(execution_id)
        if execution is None:
            return False

        cancelled = 0
        for tool in execution.tools:
            if tool.status == "pending":
                tool.status = "failed"
                tool.end_time = utc_now()
                cancelled += 1

        logger.info("Cancelled %d pending tools in execution %s", cancelled, execution_id)
        return True
