"""
Request dispatcher.

Every tool call walks the same state machine::

    Received -> Authenticated -> Resolved -> (CacheHit | Executing) -> Completed | Failed

``Dispatcher.dispatch`` always returns an ``Invocation`` in exactly one
terminal state; gateway errors are recorded on the invocation rather than
raised. The only exception that escapes is task cancellation, which is
recorded as ``ExecutionError.Cancelled`` before it propagates.
"""

import asyncio
import math
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, TYPE_CHECKING

from shared.errors import ExecutionError, GatewayError, ValidationError
from shared.logging import get_logger, get_request_id
from shared.tracing import trace_operation

from ..auth.token_store import TokenStore
from ..caching.cache_manager import MISS, ToolResultCache
from ..caching.singleflight import SingleFlight
from ..execution.budget import Budget, inherit_budget
from ..execution.executor import Executor, ToolResult
from ..tools.models import ToolDefinition
from ..tools.registry import ToolRegistry
from ..tools.validation import plain_values, validate_for
from .auth_middleware import AuthMiddleware

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig
    from shared.metrics import MetricsCollector


# Lets the shared execution report its own timeout before a waiter gives up
SHARED_WAIT_GRACE_SECONDS = 0.5


class DispatchState(str, Enum):
    RECEIVED = "received"
    AUTHENTICATED = "authenticated"
    RESOLVED = "resolved"
    CACHE_HIT = "cache_hit"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS = {
    DispatchState.RECEIVED: {DispatchState.AUTHENTICATED, DispatchState.FAILED},
    DispatchState.AUTHENTICATED: {DispatchState.RESOLVED, DispatchState.FAILED},
    DispatchState.RESOLVED: {DispatchState.CACHE_HIT, DispatchState.EXECUTING, DispatchState.FAILED},
    DispatchState.CACHE_HIT: {DispatchState.COMPLETED, DispatchState.FAILED},
    DispatchState.EXECUTING: {DispatchState.COMPLETED, DispatchState.FAILED},
    DispatchState.COMPLETED: set(),
    DispatchState.FAILED: set(),
}

TERMINAL_STATES = frozenset({DispatchState.COMPLETED, DispatchState.FAILED})


class InvocationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class ToolCallRequest:
    """One tool call as received from the wire."""

    token: Optional[str]
    tool: Optional[str]
    params: Any = field(default_factory=dict)
    version: Optional[str] = None
    budget_seconds: Optional[float] = None
    request_id: Optional[str] = None
    # Set when the HTTP body could not be parsed; reported after authentication
    body_error: Optional[GatewayError] = None


@dataclass
class Invocation:
    request_id: str
    tool_name: str
    tool_version: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    budget: Optional[Dict[str, float]] = None
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    status: InvocationStatus = InvocationStatus.PENDING
    state: DispatchState = DispatchState.RECEIVED
    transitions: List[DispatchState] = field(default_factory=lambda: [DispatchState.RECEIVED])
    result: Optional[ToolResult] = None
    error: Optional[GatewayError] = None
    cached: bool = False
    shared: bool = False
    executed: bool = False
    deprecation_warning: Optional[Dict[str, Any]] = None
    duration_ms: float = 0.0

    def advance(self, state: DispatchState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal dispatch transition {self.state.value} -> {state.value}")
        self.state = state
        self.transitions.append(state)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.state is DispatchState.COMPLETED

    def complete(self, result: ToolResult, cached: bool = False) -> None:
        self.advance(DispatchState.COMPLETED)
        self.result = result
        self.cached = cached
        self.status = InvocationStatus.COMPLETED
        self.completed_at = time.time()

    def fail(self, error: GatewayError) -> None:
        self.advance(DispatchState.FAILED)
        self.error = error
        if isinstance(error, ExecutionError) and error.kind == ExecutionError.TIMEOUT:
            self.status = InvocationStatus.TIMED_OUT
        else:
            self.status = InvocationStatus.FAILED
        self.completed_at = time.time()

    def to_response(self) -> Dict[str, Any]:
        """Wire body of a successful call."""
        body: Dict[str, Any] = {
            "result": self.result.output if self.result else None,
            "cached": self.cached,
            "tool": self.tool_name,
            "version": self.tool_version,
            "duration_ms": self.duration_ms,
        }
        if self.deprecation_warning:
            body["deprecation_warning"] = self.deprecation_warning
        return body


class Dispatcher:
    """Top-level entry point for tool calls."""

    def __init__(
        self,
        registry: ToolRegistry,
        token_store: TokenStore,
        executor: Executor,
        cache: ToolResultCache,
        config: "BaseConfig",
        *,
        metrics: Optional["MetricsCollector"] = None,
        singleflight: Optional[SingleFlight] = None,
    ):
        self.registry = registry
        self.token_store = token_store
        self.executor = executor
        self.cache = cache
        self.config = config
        self.metrics = metrics
        self.singleflight = singleflight or SingleFlight()
        self.auth = AuthMiddleware(token_store, metrics)
        self.logger = get_logger("gateway.dispatcher")

    def swap_registry(self, registry: ToolRegistry) -> ToolRegistry:
        """Install a new registry; in-flight calls keep the one they resolved against."""
        previous, self.registry = self.registry, registry
        return previous

    async def dispatch(self, request: ToolCallRequest) -> Invocation:
        invocation = Invocation(
            request_id=request.request_id or get_request_id() or str(uuid.uuid4()),
            tool_name=request.tool or "",
        )
        start = time.perf_counter()
        try:
            with trace_operation("tool.dispatch", **{"tool.name": request.tool, "tool.version": request.version}):
                await self._dispatch(request, invocation)
        except asyncio.CancelledError:
            invocation.duration_ms = self._elapsed_ms(start)
            invocation.fail(ExecutionError(
                ExecutionError.CANCELLED,
                "Request was cancelled before the tool completed",
                details={"state": invocation.transitions[-1].value},
            ))
            self._finish(invocation)
            raise
        except GatewayError as exc:
            invocation.fail(exc)
        except Exception as exc:
            self.logger.error(
                "Unexpected dispatch failure",
                tool=request.tool,
                error=str(exc),
                exc_info=True,
            )
            if self.metrics:
                self.metrics.record_error(type(exc).__name__)
            invocation.fail(ExecutionError(
                ExecutionError.INTERNAL,
                "Internal gateway error",
                details={"exception": type(exc).__name__},
            ))

        if invocation.result is None or invocation.cached:
            invocation.duration_ms = self._elapsed_ms(start)
        self._finish(invocation)
        return invocation

    async def _dispatch(self, request: ToolCallRequest, invocation: Invocation) -> None:
        context = self.auth.authenticate(request.token)
        invocation.advance(DispatchState.AUTHENTICATED)

        if request.body_error is not None:
            raise request.body_error
        if not request.tool:
            raise ValidationError(
                ValidationError.MISSING_REQUIRED,
                "Field 'tool' is required",
                details={"parameters": ["tool"]},
            )

        # One registry snapshot for the whole call, even across a reload
        registry = self.registry
        definition = registry.resolve(request.tool, request.version)
        invocation.tool_version = definition.version
        invocation.advance(DispatchState.RESOLVED)

        self.auth.require_scope(context, definition.required_scope)

        if definition.is_deprecated:
            invocation.deprecation_warning = self._deprecation_warning(registry, definition)

        params = plain_values(validate_for(definition, request.params))
        invocation.params = params

        budget = self._budget_for(request)
        invocation.budget = budget.snapshot()

        cached = await self.cache.get(definition, params)
        if cached is not MISS:
            invocation.advance(DispatchState.CACHE_HIT)
            invocation.complete(
                ToolResult(tool=definition.name, version=definition.version, output=cached, duration_ms=0.0),
                cached=True,
            )
            return

        invocation.advance(DispatchState.EXECUTING)
        invocation.status = InvocationStatus.RUNNING
        result, shared = await self._execute(definition, params, budget)
        invocation.shared = shared
        invocation.executed = not shared
        invocation.duration_ms = result.duration_ms
        invocation.complete(result)

    async def _execute(self, definition: ToolDefinition, params: Dict[str, Any],
                       budget: Budget) -> Tuple[ToolResult, bool]:
        """Run the tool, collapsing identical concurrent calls of cacheable tools.

        A caller that joins an in-flight call shares the first caller's
        execution, including its budget: a joiner with a longer budget still
        gets the first caller's timeout error. A joiner with a shorter budget
        stops waiting at its own deadline.
        """
        if not definition.cache_policy.enabled:
            return await self.executor.run(definition, params, budget), False

        key = self.cache.key_for(definition, params)

        async def run_and_store() -> ToolResult:
            result = await self.executor.run(definition, params, budget)
            await self.cache.put(definition, params, result.output)
            return result

        # A joining caller waits no longer than its own budget allows
        try:
            result, shared = await asyncio.wait_for(
                self.singleflight.do(key, run_and_store),
                timeout=budget.remaining() + SHARED_WAIT_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            raise ExecutionError(
                ExecutionError.TIMEOUT,
                f"Tool '{definition.name}' v{definition.version} did not finish within the "
                f"request budget of {budget.total_seconds:.2f}s",
                details={
                    "timeout_seconds": definition.timeout_seconds,
                    "budget_seconds": round(budget.total_seconds, 3),
                    "limited_by": "budget",
                },
            ) from None

        if shared and self.metrics:
            self.metrics.record_singleflight_shared(definition.name)
        return result, shared

    def _budget_for(self, request: ToolCallRequest) -> Budget:
        requested = request.budget_seconds
        if requested is not None and (not math.isfinite(requested) or requested <= 0):
            raise ValidationError(
                ValidationError.TYPE_MISMATCH,
                "Request budget must be a positive, finite number of seconds",
                # NaN and infinity are not valid JSON
                details={"budget_seconds": requested if math.isfinite(requested) else str(requested)},
            )
        total = min(
            requested if requested is not None else self.config.default_request_budget_seconds,
            self.config.max_request_budget_seconds,
        )
        return inherit_budget(total)

    def _deprecation_warning(self, registry: ToolRegistry, definition: ToolDefinition) -> Dict[str, Any]:
        latest = registry.latest_version(definition.name)
        message = definition.deprecation_message or (
            f"Tool '{definition.name}' v{definition.version} is deprecated since "
            f"{definition.deprecated_since.isoformat()}"
        )
        if latest and latest != definition.version and not definition.deprecation_message:
            message += f"; use v{latest}"
        self.logger.warning(
            "Deprecated tool invoked",
            tool=definition.name,
            version=definition.version,
            deprecated_since=definition.deprecated_since.isoformat(),
            latest_version=latest,
        )
        return {
            "tool": definition.name,
            "version": definition.version,
            "deprecated_since": definition.deprecated_since.isoformat(),
            "message": message,
            "latest_version": latest,
        }

    def _finish(self, invocation: Invocation) -> None:
        self._record_metrics(invocation)
        log = self.logger.info if invocation.succeeded else self.logger.warning
        log(
            "Tool call finished",
            tool=invocation.tool_name,
            version=invocation.tool_version,
            state=invocation.state.value,
            status=invocation.status.value,
            cached=invocation.cached,
            shared=invocation.shared,
            duration_ms=invocation.duration_ms,
            error=invocation.error.code if invocation.error else None,
        )

    def _record_metrics(self, invocation: Invocation) -> None:
        if not self.metrics or invocation.tool_version is None:
            # Nothing tool-specific happened (auth or lookup failure)
            return
        tool, version = invocation.tool_name, invocation.tool_version
        error = invocation.error

        if invocation.executed or (error is not None and invocation.transitions[-2] is DispatchState.EXECUTING):
            self.metrics.record_tool_invocation(
                tool, version, invocation.status.value, invocation.duration_ms / 1000.0
            )
        if error is None:
            return
        if isinstance(error, ExecutionError) and error.kind == ExecutionError.TIMEOUT:
            self.metrics.record_tool_timeout(tool, version)
        self.metrics.record_tool_error(tool, version, error.kind)

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return round((time.perf_counter() - start) * 1000, 3)

    def list_tools(self, token: Optional[str], name: Optional[str] = None) -> List[Dict[str, Any]]:
        """Summaries of the tools the caller's token may invoke."""
        context = self.auth.authenticate(token)
        return [
            definition.summary()
            for definition in self.registry.list_all(name)
            if context.allows(definition.required_scope)
        ]
