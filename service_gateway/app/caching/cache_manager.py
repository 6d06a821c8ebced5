"""
Tool result cache.

Wraps a ``CacheBackend`` with the gateway's caching rules: only tools with
an enabled cache policy are cached, keys are derived from validated
parameters, and backend failures never fail a request.
"""

import hashlib
import json
from typing import Any, Mapping, Optional, TYPE_CHECKING

from shared.errors import CacheError
from shared.logging import get_logger

from ..tools.models import ToolDefinition
from .backends import CacheBackend, MemoryCacheBackend

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


KEY_PREFIX = "gantz:tool"
FINGERPRINT_CHARS = 16

# Returned by get() when there is no usable entry
MISS = object()


def tool_prefix(name: str, version: Optional[str] = None) -> str:
    if version is None:
        return f"{KEY_PREFIX}:{name}:"
    return f"{KEY_PREFIX}:{name}:{version}:"


def make_key(name: str, version: str, params: Mapping[str, Any],
             fingerprint: Optional[str] = None) -> str:
    """Deterministic key for (tool, version, definition, normalized params).

    The definition fingerprint keeps results of a replaced definition apart
    from the current one, so a call still running across a reload cannot
    repopulate the cache for the new definition.
    """
    normalized = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    if fingerprint:
        return f"{tool_prefix(name, version)}{fingerprint[:FINGERPRINT_CHARS]}:{digest}"
    return f"{tool_prefix(name, version)}{digest}"


class ToolResultCache:
    """Memoizes results of tools whose cache policy allows it."""

    def __init__(self, backend: Optional[CacheBackend] = None, *,
                 metrics: Optional["MetricsCollector"] = None):
        self.backend = backend if backend is not None else MemoryCacheBackend()
        self.metrics = metrics
        self.logger = get_logger("gateway.cache")

    @staticmethod
    def key_for(definition: ToolDefinition, params: Mapping[str, Any]) -> str:
        return make_key(definition.name, definition.version, params, definition.fingerprint())

    async def get(self, definition: ToolDefinition, params: Mapping[str, Any]) -> Any:
        """Return the cached value, or ``MISS``.

        Cached values may legitimately be ``None``, hence the sentinel.
        """
        if not definition.cache_policy.enabled:
            return MISS

        key = self.key_for(definition, params)
        entry = await self._safe_call("get", self.backend.get, key)
        if entry is None or entry is MISS:
            if self.metrics:
                self.metrics.record_cache_miss(definition.name, definition.version)
            return MISS

        if self.metrics:
            self.metrics.record_cache_hit(definition.name, definition.version)
        self.logger.debug("Cache hit", tool=definition.name, version=definition.version)
        return entry.value

    async def put(self, definition: ToolDefinition, params: Mapping[str, Any], value: Any) -> None:
        policy = definition.cache_policy
        if not policy.enabled:
            return
        key = self.key_for(definition, params)
        await self._safe_call("put", self.backend.put, key, value, policy.ttl_seconds)

    async def invalidate_tool(self, name: str, version: Optional[str] = None) -> int:
        """Drop cached results of a tool (one version, or all of them)."""
        removed = await self._safe_call("invalidate", self.backend.delete_prefix, tool_prefix(name, version))
        if removed is MISS:
            return 0
        self.logger.info("Invalidated cached results", tool=name, version=version, removed=removed)
        return removed

    async def sweep(self) -> int:
        sweep = getattr(self.backend, "sweep", None)
        if sweep is None:
            return 0
        removed = await self._safe_call("sweep", sweep)
        return 0 if removed is MISS else removed

    async def close(self) -> None:
        await self.backend.close()

    async def _safe_call(self, operation: str, func, *args) -> Any:
        """Run a backend call; failures are logged, counted and fail open."""
        try:
            return await func(*args)
        except Exception as exc:
            error = CacheError(
                CacheError.UNAVAILABLE,
                f"Cache {operation} failed: {exc}",
                details={"backend": self.backend.name, "operation": operation},
            )
            self.logger.error(
                "Cache backend error",
                operation=operation,
                backend=self.backend.name,
                code=error.code,
                error=str(exc),
            )
            if self.metrics:
                self.metrics.record_cache_error(operation)
            return MISS

