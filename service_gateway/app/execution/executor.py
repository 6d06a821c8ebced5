"""
Tool executor.

The executor is the only component that runs tool code. It validates
parameters, derives the effective deadline from the request budget, and
guarantees that a handler which misses its deadline is cancelled and fully
torn down before the timeout is reported.
"""

import asyncio
import time
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, TYPE_CHECKING

from shared.errors import ExecutionError, GatewayError
from shared.logging import get_logger
from shared.tracing import trace_operation

from ..tools.models import ToolDefinition
from ..tools.validation import plain_values, validate_for
from .budget import Budget, current_budget
from .handlers import HandlerFailure, HandlerOutput, ResourceLimitExceeded

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


@dataclass
class ToolResult:
    tool: str
    version: str
    output: Any
    duration_ms: float
    stderr: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tool": self.tool,
            "version": self.version,
            "output": self.output,
            "duration_ms": self.duration_ms,
        }


class Executor:
    """Runs tool handlers under a deadline with bounded concurrency."""

    def __init__(self, max_concurrent_invocations: int = 32, *,
                 metrics: Optional["MetricsCollector"] = None):
        self.logger = get_logger("gateway.executor")
        self.metrics = metrics
        self.max_concurrent_invocations = max_concurrent_invocations
        self._slots = asyncio.Semaphore(max_concurrent_invocations)

    async def run(self, definition: ToolDefinition, params: Optional[Mapping[str, Any]],
                  budget: Budget) -> ToolResult:
        """Validate, then execute ``definition`` within ``budget``."""
        typed = validate_for(definition, params or {})
        plain = plain_values(typed)

        timeout = budget.for_operation(definition.timeout_seconds)
        if timeout <= 0:
            raise self._timeout_error(definition, budget, timeout, started=False)

        await self._acquire_slot(definition, budget)
        try:
            # The slot wait may have used part of the budget
            timeout = budget.for_operation(definition.timeout_seconds)
            if timeout <= 0:
                raise self._timeout_error(definition, budget, timeout, started=False)

            with trace_operation(
                "tool.execute",
                **{
                    "tool.name": definition.name,
                    "tool.version": definition.version,
                    "tool.timeout_seconds": timeout,
                    "tool.handler": definition.handler.kind,
                },
            ), self._inflight():
                return await self._execute(definition, plain, budget, timeout)
        finally:
            self._slots.release()

    def _inflight(self):
        return self.metrics.track_inflight() if self.metrics else nullcontext()

    async def _acquire_slot(self, definition: ToolDefinition, budget: Budget) -> None:
        wait = budget.remaining()
        try:
            await asyncio.wait_for(self._slots.acquire(), timeout=wait)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Executor at capacity",
                tool=definition.name,
                version=definition.version,
                max_concurrent=self.max_concurrent_invocations,
            )
            raise ExecutionError(
                ExecutionError.RESOURCE_EXHAUSTED,
                f"Executor is at capacity ({self.max_concurrent_invocations} concurrent invocations); "
                f"no slot freed within the remaining budget of {wait:.2f}s",
                details={"max_concurrent_invocations": self.max_concurrent_invocations},
            ) from None

    async def _execute(self, definition: ToolDefinition, params: Dict[str, Any],
                       budget: Budget, timeout: float) -> ToolResult:
        # Nested calls made by the handler inherit this child budget
        token = current_budget.set(budget.child(definition.timeout_seconds))
        try:
            task = asyncio.ensure_future(definition.handler.run(params, timeout))
        finally:
            current_budget.reset(token)

        start = time.perf_counter()
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            await self._cancel(task, definition)
            raise

        if not done:
            await self._cancel(task, definition)
            raise self._timeout_error(definition, budget, timeout, started=True)

        duration_ms = round((time.perf_counter() - start) * 1000, 3)
        output = self._unwrap(task, definition)
        self.logger.info(
            "Tool executed",
            tool=definition.name,
            version=definition.version,
            duration_ms=duration_ms,
        )
        return ToolResult(
            tool=definition.name,
            version=definition.version,
            output=output.output,
            duration_ms=duration_ms,
            stderr=output.stderr,
        )

    def _unwrap(self, task: "asyncio.Future[HandlerOutput]", definition: ToolDefinition) -> HandlerOutput:
        try:
            return task.result()
        except HandlerFailure as exc:
            raise ExecutionError(
                ExecutionError.HANDLER_FAILED,
                f"Tool '{definition.name}' failed: {exc.message}",
                details={"stderr": exc.stderr, "exit_code": exc.exit_code},
            ) from exc
        except ResourceLimitExceeded as exc:
            raise ExecutionError(
                ExecutionError.RESOURCE_EXHAUSTED,
                f"Tool '{definition.name}' exhausted a resource limit: {exc.message}",
                details={"limit": exc.limit},
            ) from exc
        except GatewayError as exc:
            # e.g. a nested tool call made by an in-process handler failed
            raise ExecutionError(
                ExecutionError.HANDLER_FAILED,
                f"Tool '{definition.name}' failed: {exc.message}",
                details={"cause": exc.code, "cause_details": exc.details},
            ) from exc
        except Exception as exc:
            self.logger.warning(
                "Tool handler raised",
                tool=definition.name,
                version=definition.version,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise ExecutionError(
                ExecutionError.HANDLER_FAILED,
                f"Tool '{definition.name}' failed: {type(exc).__name__}: {exc}",
                details={"exception": type(exc).__name__},
            ) from exc

    async def _cancel(self, task: asyncio.Future, definition: ToolDefinition) -> None:
        """Cancel the handler and wait until its cleanup has finished."""
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            self.logger.warning(
                "Tool handler raised during cancellation",
                tool=definition.name,
                error=str(exc),
            )

    def _timeout_error(self, definition: ToolDefinition, budget: Budget,
                       effective: float, started: bool) -> ExecutionError:
        limited_by_budget = effective < definition.timeout_seconds
        if limited_by_budget:
            reason = f"request budget of {budget.total_seconds:.2f}s"
        else:
            reason = f"configured timeout of {definition.timeout_seconds:g}s"
        if started:
            message = (
                f"Tool '{definition.name}' v{definition.version} timed out after "
                f"{max(effective, 0.0):.2f}s ({reason})"
            )
        else:
            message = (
                f"Tool '{definition.name}' v{definition.version} was not started: "
                f"no time left in the {reason}"
            )
        self.logger.warning(
            "Tool timed out",
            tool=definition.name,
            version=definition.version,
            timeout_seconds=definition.timeout_seconds,
            effective_timeout_seconds=round(effective, 3),
            started=started,
        )
        return ExecutionError(
            ExecutionError.TIMEOUT,
            message,
            details={
                "timeout_seconds": definition.timeout_seconds,
                "effective_timeout_seconds": round(max(effective, 0.0), 3),
                "budget_seconds": round(budget.total_seconds, 3),
                "limited_by": "budget" if limited_by_budget else "tool_timeout",
            },
        )
