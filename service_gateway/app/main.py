"""
Gantz tool gateway service.
"""

import asyncio
import json
from typing import Any, Awaitable, Dict, List, Optional

from fastapi import Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import ExecutionError, GatewayError, ManifestError, ValidationError, validation_error_from

from .auth.token_store import TokenStore
from .caching.backends import CacheBackend, RedisCacheBackend, build_backend
from .caching.cache_manager import ToolResultCache
from .domain.auth_middleware import AuthContext, extract_bearer_token
from .domain.dispatcher import Dispatcher, Invocation, ToolCallRequest
from .domain.schemas import (
    IssueTokenRequest,
    IssueTokenResponse,
    ReloadResponse,
    RevokeTokenRequest,
    ToolCallBody,
    ToolListResponse,
)
from .execution.executor import Executor
from .tools.manifest import load_registry
from .tools.registry import ToolRegistry, diff_registries


BUDGET_HEADER = "X-Gantz-Budget"
DEFAULT_PORT = 8000


def _error_response(error: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_response().model_dump())


class GatewayService(BaseService):
    """Tool gateway service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        registry: Optional[ToolRegistry] = None,
        token_store: Optional[TokenStore] = None,
        cache_backend: Optional[CacheBackend] = None,
    ):
        super().__init__("gateway", DEFAULT_PORT, config)

        if registry is None:
            registry = self._load_initial_registry()
        if token_store is None:
            token_store = TokenStore.from_config(self.config)
        self.token_store = token_store

        backend = cache_backend if cache_backend is not None else build_backend(self.config)
        if isinstance(backend, RedisCacheBackend) and self.config.enable_tracing:
            from shared.tracing import instrument_redis
            instrument_redis()
        self.cache = ToolResultCache(backend, metrics=self.metrics)

        self.executor = Executor(self.config.max_concurrent_invocations, metrics=self.metrics)
        self.dispatcher = Dispatcher(
            registry,
            self.token_store,
            self.executor,
            self.cache,
            self.config,
            metrics=self.metrics,
        )
        self.auth = self.dispatcher.auth
        self._background: List[asyncio.Task] = []

        self._setup_gateway_routes()
        self._setup_admin_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    @property
    def registry(self) -> ToolRegistry:
        return self.dispatcher.registry

    def _load_initial_registry(self) -> ToolRegistry:
        path = self.config.tool_manifest_path
        if not path:
            self.logger.warning("No tool manifest configured; serving no tools")
            return ToolRegistry()
        registry = load_registry(path, self.config.max_output_bytes)
        self.logger.info("Loaded tool manifest", path=path, tools=len(registry))
        return registry

    async def on_startup(self) -> None:
        self._background = [
            asyncio.create_task(self._periodic(
                "cache_sweep", self.config.cache_sweep_interval_seconds, self.cache.sweep
            )),
            asyncio.create_task(self._periodic(
                "token_purge", self.config.token_purge_interval_seconds, self._purge_tokens
            )),
        ]

    async def on_shutdown(self) -> None:
        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background = []
        await self.cache.close()

    async def _purge_tokens(self) -> int:
        return self.token_store.purge_expired()

    async def _periodic(self, name: str, interval: float, job) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await job()
            except Exception as exc:
                self.logger.error("Housekeeping job failed", job=name, error=str(exc))
                continue
            if removed:
                self.logger.debug("Housekeeping job finished", job=name, removed=removed)

    async def _check_dependencies(self) -> Dict[str, str]:
        dependencies = {"tools": f"{len(self.registry)} registered"}
        backend = self.cache.backend
        if isinstance(backend, RedisCacheBackend):
            try:
                await backend.ping()
                dependencies["cache"] = "ok"
            except Exception as exc:
                # Requests fail open, so a cache outage does not fail health
                dependencies["cache"] = f"degraded: {exc}"
        else:
            dependencies["cache"] = "ok"
        return dependencies

    async def _parse_call(self, request: Request) -> ToolCallRequest:
        """Build a ``ToolCallRequest``; body problems are deferred until after authentication."""
        call = ToolCallRequest(
            token=extract_bearer_token(request.headers.get("Authorization")),
            tool=None,
        )

        budget_header = request.headers.get(BUDGET_HEADER)
        if budget_header is not None:
            try:
                call.budget_seconds = float(budget_header)
            except ValueError:
                call.body_error = ValidationError(
                    ValidationError.TYPE_MISMATCH,
                    f"{BUDGET_HEADER} must be a number of seconds",
                    details={"header": BUDGET_HEADER, "value": budget_header},
                )
                return call

        try:
            payload = json.loads(await request.body() or b"null")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            call.body_error = ValidationError(
                ValidationError.TYPE_MISMATCH,
                "Request body must be a JSON object",
                details={"reason": str(exc)},
            )
            return call

        try:
            body = ToolCallBody.model_validate(payload)
        except PydanticValidationError as exc:
            call.body_error = validation_error_from(exc.errors())
            if isinstance(payload, dict) and isinstance(payload.get("tool"), str):
                call.tool = payload["tool"]
            return call

        call.tool = body.tool
        call.params = body.params
        call.version = body.version
        return call

    async def _guard_disconnect(self, request: Request, work: Awaitable[Invocation]) -> Optional[Invocation]:
        """Run ``work`` until it finishes or the client goes away.

        Returns ``None`` when the client disconnected; the work has then been
        cancelled and has finished tearing down.
        """
        task = asyncio.ensure_future(work)
        poll = self.config.disconnect_poll_interval_seconds
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=poll)
                if done:
                    return task.result()
                if await request.is_disconnected():
                    self.logger.info("Client disconnected; cancelling tool call")
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                    return None
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise

    def _setup_gateway_routes(self):
        """Set up tool routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "gateway",
                "message": "Gantz - MCP tool gateway",
                "version": "1.0.0",
                "tools": len(self.registry),
                "tool_names": self.registry.names(),
            }

        @self.app.post("/mcp/tools/call")
        async def call_tool(request: Request):
            """Invoke a tool on behalf of an authenticated caller."""
            call = await self._parse_call(request)
            invocation = await self._guard_disconnect(request, self.dispatcher.dispatch(call))
            if invocation is None:
                return _error_response(ExecutionError(
                    ExecutionError.CANCELLED,
                    "Client disconnected before the tool completed",
                ))
            if invocation.error is not None:
                return _error_response(invocation.error)
            return invocation.to_response()

        @self.app.get("/mcp/tools", response_model=ToolListResponse)
        async def list_tools(request: Request, name: Optional[str] = Query(default=None)):
            """List tools the caller's token may invoke."""
            token = extract_bearer_token(request.headers.get("Authorization"))
            tools = self.dispatcher.list_tools(token, name)
            return {"tools": tools, "count": len(tools)}

    def _setup_admin_routes(self):
        """Set up token and manifest administration routes."""

        async def require_admin(request: Request) -> AuthContext:
            return self.auth.require_admin(request)

        @self.app.post("/mcp/admin/tokens", response_model=IssueTokenResponse)
        async def issue_token(body: IssueTokenRequest, admin: AuthContext = Depends(require_admin)):
            """Issue a new bearer token."""
            ttl = body.ttl_seconds or self.config.default_token_ttl_seconds
            token = self.token_store.issue(body.scopes, ttl, label=body.label)
            self.logger.info("Admin issued token", admin=admin.label, label=body.label)
            return IssueTokenResponse(
                token=token.value,
                scopes=sorted(token.scopes),
                expires_at=token.expires_at,
                label=token.label,
            )

        @self.app.post("/mcp/admin/tokens/revoke")
        async def revoke_token(body: RevokeTokenRequest, admin: AuthContext = Depends(require_admin)):
            """Revoke a bearer token (idempotent)."""
            self.token_store.revoke(body.token)
            return {"revoked": True}

        @self.app.post("/mcp/admin/reload", response_model=ReloadResponse)
        async def reload_tools(admin: AuthContext = Depends(require_admin)):
            """Reload the tool manifest into a fresh registry."""
            try:
                return await self.reload()
            except ManifestError as exc:
                self.logger.error("Manifest reload failed", error=str(exc))
                return JSONResponse(
                    status_code=400,
                    content={
                        "error": "invalid_manifest",
                        "code": "ManifestError",
                        "message": str(exc),
                        "details": {"source": exc.source, "tool": exc.tool},
                        "trace_id": None,
                    },
                )

    async def reload(self) -> Dict[str, Any]:
        """Swap in a registry built from the manifest and drop stale cache entries."""
        path = self.config.tool_manifest_path
        if not path:
            raise ManifestError("no tool manifest is configured")

        new_registry = load_registry(path, self.config.max_output_bytes)
        old_registry = self.dispatcher.swap_registry(new_registry)
        diff = diff_registries(old_registry, new_registry)

        invalidated = 0
        for name, version in diff.stale:
            invalidated += await self.cache.invalidate_tool(name, version)

        self.logger.info(
            "Tool manifest reloaded",
            path=path,
            tools=len(new_registry),
            added=len(diff.added),
            removed=len(diff.removed),
            changed=len(diff.changed),
            invalidated_entries=invalidated,
        )
        return {
            "tools": len(new_registry),
            "added": [f"{name}@{version}" for name, version in diff.added],
            "removed": [f"{name}@{version}" for name, version in diff.removed],
            "changed": [f"{name}@{version}" for name, version in diff.changed],
            "invalidated_entries": invalidated,
        }


def create_app(config: Optional[ServiceConfig] = None, **kwargs):
    """Create FastAPI application."""
    service = GatewayService(config, **kwargs)
    return service.app


def main() -> None:
    service = GatewayService(get_config("gateway", DEFAULT_PORT))
    service.run()


if __name__ == "__main__":
    main()
