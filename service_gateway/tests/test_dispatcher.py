"""
Unit tests for the request dispatcher.
"""

import asyncio
import math
from datetime import date
from unittest.mock import AsyncMock

import pytest

from shared.errors import AuthError, ExecutionError, RegistryError, ValidationError
from shared.metrics import MetricsCollector
from shared.test_helpers import CountingHandler, make_config, make_tool, param
from service_gateway.app.auth.token_store import TokenStore
from service_gateway.app.caching.cache_manager import ToolResultCache
from service_gateway.app.domain.dispatcher import (
    Dispatcher,
    DispatchState,
    Invocation,
    InvocationStatus,
    ToolCallRequest,
)
from service_gateway.app.execution.executor import Executor
from service_gateway.app.tools.registry import ToolRegistry, diff_registries


S = DispatchState


def build_dispatcher(tools, metrics=None, **config_overrides):
    config = make_config(**config_overrides)
    return Dispatcher(
        ToolRegistry(tools),
        TokenStore(),
        Executor(config.max_concurrent_invocations, metrics=metrics),
        ToolResultCache(metrics=metrics),
        config,
        metrics=metrics,
    )


class TestInvocation:
    """Test cases for the Invocation state machine."""

    def test_illegal_transition(self):
        invocation = Invocation(request_id="r1", tool_name="echo")

        with pytest.raises(RuntimeError):
            invocation.advance(S.EXECUTING)

    def test_terminal_states_are_final(self):
        invocation = Invocation(request_id="r1", tool_name="echo")
        invocation.fail(AuthError(AuthError.MISSING, "no token"))

        assert invocation.is_terminal
        with pytest.raises(RuntimeError):
            invocation.advance(S.AUTHENTICATED)

    def test_timeout_status(self):
        invocation = Invocation(request_id="r1", tool_name="echo")

        invocation.fail(ExecutionError(ExecutionError.TIMEOUT, "late"))

        assert invocation.status is InvocationStatus.TIMED_OUT


class TestDispatcher:
    """Test cases for Dispatcher."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("gateway")

    @pytest.fixture
    def handler(self):
        return CountingHandler(result=lambda params: params["message"])

    @pytest.fixture
    def dispatcher(self, handler, metrics):
        return build_dispatcher(
            [make_tool(name="echo", handler=handler, parameters=[param("message", required=True)])],
            metrics=metrics,
        )

    @pytest.fixture
    def token(self, dispatcher):
        return dispatcher.token_store.issue(["echo"], ttl_seconds=60).value

    @pytest.mark.asyncio
    async def test_successful_call(self, dispatcher, token, handler, metrics):
        invocation = await dispatcher.dispatch(ToolCallRequest(token=token, tool="echo", params={"message": "hi"}))

        assert invocation.transitions == [S.RECEIVED, S.AUTHENTICATED, S.RESOLVED, S.EXECUTING, S.COMPLETED]
        assert invocation.status is InvocationStatus.COMPLETED
        response = invocation.to_response()
        assert response["result"] == "hi"
        assert response["cached"] is False
        assert response["tool"] == "echo"
        assert response["version"] == "1.0.0"
        assert "deprecation_warning" not in response
        assert handler.call_count == 1
        assert metrics.get_sample_value(
            "tool_invocations_total", {"tool": "echo", "version": "1.0.0", "status": "completed"}
        ) == 1

    @pytest.mark.asyncio
    async def test_missing_token(self, dispatcher, handler, metrics):
        invocation = await dispatcher.dispatch(ToolCallRequest(token=None, tool="echo", params={"message": "hi"}))

        assert invocation.transitions == [S.RECEIVED, S.FAILED]
        assert invocation.error.code == "AuthError.Missing"
        assert handler.call_count == 0
        assert metrics.get_sample_value("auth_failures_total", {"kind": "Missing"}) == 1

    @pytest.mark.asyncio
    async def test_auth_checked_before_body(self, dispatcher):
        body_error = ValidationError(ValidationError.TYPE_MISMATCH, "bad body")

        invocation = await dispatcher.dispatch(ToolCallRequest(token="gz_bogus", tool=None, body_error=body_error))

        assert invocation.error.kind == AuthError.INVALID

    @pytest.mark.asyncio
    async def test_body_error_after_authentication(self, dispatcher, token):
        body_error = ValidationError(ValidationError.TYPE_MISMATCH, "bad body")

        invocation = await dispatcher.dispatch(ToolCallRequest(token=token, tool=None, body_error=body_error))

        assert invocation.error is body_error
        assert invocation.transitions == [S.RECEIVED, S.AUTHENTICATED, S.FAILED]

    @pytest.mark.asyncio
    async def test_missing_tool_name(self, dispatcher, token):
        invocation = await dispatcher.dispatch(ToolCallRequest(token=token, tool=""))

        assert invocation.error.kind == ValidationError.MISSING_REQUIRED

    @pytest.mark.asyncio
    async def test_unknown_tool(self, dispatcher, token):
        invocation = await dispatcher.dispatch(ToolCallRequest(token=token, tool="ghost"))

        assert invocation.error.kind == RegistryError.UNKNOWN_TOOL
        assert invocation.error.status_code == 404

    @pytest.mark.asyncio
    async def test_insufficient_scope(self, dispatcher, handler):
        token = dispatcher.token_store.issue(["add"], ttl_seconds=60).value

        invocation = await dispatcher.dispatch(ToolCallRequest(token=token, tool="echo", params={"message": "hi"}))

        assert invocation.error.kind == AuthError.INSUFFICIENT_SCOPE
        assert invocation.error.status_code == 403
        assert invocation.transitions == [S.RECEIVED, S.AUTHENTICATED, S.RESOLVED, S.FAILED]
        assert handler.call_count == 0

    @pytest.mark.asyncio
    async def test_validation_failure_never_runs_handler(self, dispatcher, token, handler, metrics):
        invocation = await dispatcher.dispatch(ToolCallRequest(token=token, tool="echo", params={}))

        assert invocation.error.kind == ValidationError.MISSING_REQUIRED
        assert handler.call_count == 0
        assert metrics.get_sample_value(
            "tool_errors_total", {"tool": "echo", "version": "1.0.0", "kind": "MissingRequired"}
        ) == 1
        # Never reached the executor
        assert metrics.get_sample_value(
            "tool_invocations_total", {"tool": "echo", "version": "1.0.0", "status": "failed"}
        ) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("budget", [0, -1, math.nan, math.inf])
    async def test_invalid_budget_rejected(self, dispatcher, token, budget):
        invocation = await dispatcher.dispatch(
            ToolCallRequest(token=token, tool="echo", params={"message": "hi"}, budget_seconds=budget)
        )

        assert invocation.error.kind == ValidationError.TYPE_MISMATCH

    @pytest.mark.asyncio
    async def test_budget_clamped_to_maximum(self):
        dispatcher = build_dispatcher(
            [make_tool(name="echo")],
            max_request_budget_seconds=2,
        )
        token = dispatcher.token_store.issue(["*"], ttl_seconds=60).value

        invocation = await dispatcher.dispatch(ToolCallRequest(token=token, tool="echo", budget_seconds=600))

        assert invocation.budget["total_seconds"] == 2.0

    @pytest.mark.asyncio
    async def test_timeout(self, metrics):
        handler = CountingHandler(delay=10)
        dispatcher = build_dispatcher([make_tool(name="slow", handler=handler, timeout_seconds=0.1)], metrics=metrics)
        token = dispatcher.token_store.issue(["slow"], ttl_seconds=60).value

        invocation = await dispatcher.dispatch(ToolCallRequest(token=token, tool="slow"))

        assert invocation.status is InvocationStatus.TIMED_OUT
        assert invocation.error.status_code == 504
        assert invocation.transitions[-2:] == [S.EXECUTING, S.FAILED]
        assert handler.cancelled == 1
        assert metrics.get_sample_value("tool_timeouts_total", {"tool": "slow", "version": "1.0.0"}) == 1
        assert metrics.get_sample_value(
            "tool_invocations_total", {"tool": "slow", "version": "1.0.0", "status": "timed_out"}
        ) == 1

    @pytest.mark.asyncio
    async def test_cache_hit_skips_executor(self, metrics):
        handler = CountingHandler(result={"temp": 4})
        dispatcher = build_dispatcher(
            [make_tool(name="weather", handler=handler, cache_ttl=60, parameters=[param("city", required=True)])],
            metrics=metrics,
        )
        token = dispatcher.token_store.issue(["weather"], ttl_seconds=60).value
        request = ToolCallRequest(token=token, tool="weather", params={"city": "Oslo"})

        first = await dispatcher.dispatch(request)
        second = await dispatcher.dispatch(request)

        assert first.cached is False
        assert second.cached is True
        assert second.transitions == [S.RECEIVED, S.AUTHENTICATED, S.RESOLVED, S.CACHE_HIT, S.COMPLETED]
        assert second.to_response()["result"] == {"temp": 4}
        assert handler.call_count == 1
        assert metrics.get_sample_value("tool_cache_hits_total", {"tool": "weather", "version": "1.0.0"}) == 1

    @pytest.mark.asyncio
    async def test_defaults_share_cache_entry(self):
        handler = CountingHandler()
        dispatcher = build_dispatcher([
            make_tool(name="weather", handler=handler, cache_ttl=60,
                      parameters=[param("city", required=True), param("units", default="metric")]),
        ])
        token = dispatcher.token_store.issue(["*"], ttl_seconds=60).value

        await dispatcher.dispatch(ToolCallRequest(token=token, tool="weather", params={"city": "Oslo"}))
        second = await dispatcher.dispatch(
            ToolCallRequest(token=token, tool="weather", params={"units": "metric", "city": "Oslo"})
        )

        assert second.cached is True
        assert handler.call_count == 1

    @pytest.mark.asyncio
    async def test_identical_concurrent_calls_execute_once(self, metrics):
        handler = CountingHandler(result="forecast", delay=0.2)
        dispatcher = build_dispatcher([make_tool(name="weather", handler=handler, cache_ttl=60)], metrics=metrics)
        token = dispatcher.token_store.issue(["weather"], ttl_seconds=60).value

        invocations = await asyncio.gather(*[
            dispatcher.dispatch(ToolCallRequest(token=token, tool="weather")) for _ in range(4)
        ])

        assert handler.call_count == 1
        assert all(inv.to_response()["result"] == "forecast" for inv in invocations)
        assert sum(1 for inv in invocations if inv.shared) == 3
        assert metrics.get_sample_value("singleflight_shared_total", {"tool": "weather"}) == 3

    @pytest.mark.asyncio
    async def test_uncached_concurrent_calls_each_execute(self):
        handler = CountingHandler(delay=0.05)
        dispatcher = build_dispatcher([make_tool(name="echo", handler=handler)])
        token = dispatcher.token_store.issue(["echo"], ttl_seconds=60).value

        await asyncio.gather(*[dispatcher.dispatch(ToolCallRequest(token=token, tool="echo")) for _ in range(3)])

        assert handler.call_count == 3

    @pytest.mark.asyncio
    async def test_deprecation_warning(self):
        dispatcher = build_dispatcher([
            make_tool(name="add", version="1", deprecated_since=date(2024, 1, 1)),
            make_tool(name="add", version="2"),
        ])
        token = dispatcher.token_store.issue(["add"], ttl_seconds=60).value

        old = await dispatcher.dispatch(ToolCallRequest(token=token, tool="add", version="1"))
        latest = await dispatcher.dispatch(ToolCallRequest(token=token, tool="add"))

        warning = old.to_response()["deprecation_warning"]
        assert warning["deprecated_since"] == "2024-01-01"
        assert warning["latest_version"] == "2"
        assert "use v2" in warning["message"]
        assert latest.tool_version == "2"
        assert "deprecation_warning" not in latest.to_response()

    @pytest.mark.asyncio
    async def test_cancellation_is_recorded(self, metrics):
        handler = CountingHandler(delay=10)
        dispatcher = build_dispatcher([make_tool(name="slow", handler=handler)], metrics=metrics)
        token = dispatcher.token_store.issue(["slow"], ttl_seconds=60).value

        task = asyncio.ensure_future(dispatcher.dispatch(ToolCallRequest(token=token, tool="slow")))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert handler.cancelled == 1
        assert metrics.get_sample_value(
            "tool_errors_total", {"tool": "slow", "version": "1.0.0", "kind": "Cancelled"}
        ) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_internal(self, dispatcher, token, metrics):
        dispatcher.executor.run = AsyncMock(side_effect=RuntimeError("bug"))

        invocation = await dispatcher.dispatch(ToolCallRequest(token=token, tool="echo", params={"message": "hi"}))

        assert invocation.error.code == "ExecutionError.Internal"
        assert invocation.error.status_code == 500
        assert "bug" not in invocation.error.message
        assert metrics.get_sample_value("errors_total", {"error_type": "RuntimeError", "service": "gateway"}) == 1

    @pytest.mark.asyncio
    async def test_swap_registry_keeps_in_flight_snapshot(self):
        handler = CountingHandler(result="old", delay=0.1)
        dispatcher = build_dispatcher([make_tool(name="echo", handler=handler)])
        token = dispatcher.token_store.issue(["echo"], ttl_seconds=60).value

        task = asyncio.ensure_future(dispatcher.dispatch(ToolCallRequest(token=token, tool="echo")))
        await asyncio.sleep(0.02)
        dispatcher.swap_registry(ToolRegistry([make_tool(name="echo", handler=CountingHandler(result="new"))]))
        in_flight = await task
        after = await dispatcher.dispatch(ToolCallRequest(token=token, tool="echo"))

        assert in_flight.to_response()["result"] == "old"
        assert after.to_response()["result"] == "new"

    @pytest.mark.asyncio
    async def test_call_running_across_reload_does_not_repopulate_cache(self):
        old_handler = CountingHandler(result="old", delay=0.1)
        new_handler = CountingHandler(result="new")
        dispatcher = build_dispatcher([make_tool(name="echo", handler=old_handler, cache_ttl=60)])
        token = dispatcher.token_store.issue(["echo"], ttl_seconds=60).value

        old_call = asyncio.ensure_future(dispatcher.dispatch(ToolCallRequest(token=token, tool="echo")))
        await asyncio.sleep(0.02)
        previous = dispatcher.swap_registry(
            ToolRegistry([make_tool(name="echo", handler=new_handler, cache_ttl=60)])
        )
        for name, version in diff_registries(previous, dispatcher.registry).stale:
            await dispatcher.cache.invalidate_tool(name, version)

        # Must not join the old definition's execution
        during = await dispatcher.dispatch(ToolCallRequest(token=token, tool="echo"))
        in_flight = await old_call
        after = await dispatcher.dispatch(ToolCallRequest(token=token, tool="echo"))

        assert in_flight.to_response()["result"] == "old"
        assert during.to_response()["result"] == "new"
        assert during.shared is False
        assert after.to_response()["result"] == "new"
        assert after.cached is True
        assert new_handler.call_count == 1


class TestListTools:
    """Test cases for Dispatcher.list_tools."""

    @pytest.fixture
    def dispatcher(self):
        return build_dispatcher([
            make_tool(name="echo"),
            make_tool(name="add", version="1"),
            make_tool(name="add", version="2"),
            make_tool(name="weather", scope="weather:read"),
        ])

    def test_filtered_by_scope(self, dispatcher):
        token = dispatcher.token_store.issue(["add", "weather:read"], ttl_seconds=60).value

        listed = [(tool["name"], tool["version"]) for tool in dispatcher.list_tools(token)]

        assert listed == [("add", "1"), ("add", "2"), ("weather", "1.0.0")]

    def test_filtered_by_name(self, dispatcher):
        token = dispatcher.token_store.issue(["*"], ttl_seconds=60).value

        assert [tool["version"] for tool in dispatcher.list_tools(token, name="add")] == ["1", "2"]

    def test_requires_token(self, dispatcher):
        with pytest.raises(AuthError):
            dispatcher.list_tools(None)
