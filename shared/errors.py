"""
Shared error handling for the Gantz tool gateway.

Every failure that crosses the wire boundary is a ``GatewayError``: a
family (``AuthError``, ``RegistryError``...) plus a kind inside that family.
The family/kind pair becomes the machine-readable ``code`` of the response
(e.g. ``ExecutionError.Timeout``) and selects the HTTP status.
"""

import re
from typing import Any, Dict, List, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    trace_id: Optional[str] = None


def _snake_case(kind: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", kind).lower()


def current_trace_id() -> Optional[str]:
    """Return the active OpenTelemetry trace id, if any."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            return f"{span_context.trace_id:032x}"
    return None


class GatewayError(Exception):
    """Base exception for gateway failures surfaced to callers."""

    family = "GatewayError"
    status_codes: Dict[str, int] = {}
    default_status = 500

    def __init__(self, kind: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def code(self) -> str:
        return f"{self.family}.{self.kind}"

    @property
    def error(self) -> str:
        """Short snake-case kind, e.g. ``missing_required``."""
        return _snake_case(self.kind)

    @property
    def status_code(self) -> int:
        return self.status_codes.get(self.kind, self.default_status)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            error=self.error,
            code=self.code,
            message=self.message,
            details=self.details,
            trace_id=current_trace_id(),
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.kind!r}, {self.message!r})"


class AuthError(GatewayError):
    """Authentication and authorization failures. Never retried."""

    family = "AuthError"
    MISSING = "Missing"
    INVALID = "Invalid"
    EXPIRED = "Expired"
    REVOKED = "Revoked"
    INSUFFICIENT_SCOPE = "InsufficientScope"

    status_codes = {INSUFFICIENT_SCOPE: 403}
    default_status = 401


class RegistryError(GatewayError):
    """Tool lookup and registration failures."""

    family = "RegistryError"
    UNKNOWN_TOOL = "UnknownTool"
    UNKNOWN_VERSION = "UnknownVersion"
    DUPLICATE_VERSION = "DuplicateVersion"

    status_codes = {DUPLICATE_VERSION: 409}
    default_status = 404


class ValidationError(GatewayError):
    """Parameter validation failures; the handler is never invoked."""

    family = "ValidationError"
    MISSING_REQUIRED = "MissingRequired"
    TYPE_MISMATCH = "TypeMismatch"
    UNKNOWN_PARAMETER = "UnknownParameter"

    default_status = 400


class ExecutionError(GatewayError):
    """Failures while running a tool handler."""

    family = "ExecutionError"
    TIMEOUT = "Timeout"
    HANDLER_FAILED = "HandlerFailed"
    RESOURCE_EXHAUSTED = "ResourceExhausted"
    CANCELLED = "Cancelled"
    INTERNAL = "Internal"

    status_codes = {TIMEOUT: 504, CANCELLED: 499}
    default_status = 500


class CacheError(GatewayError):
    """Cache backend failures. Internal only: requests fail open."""

    family = "CacheError"
    UNAVAILABLE = "Unavailable"


class ManifestError(ValueError):
    """Invalid tool manifest. Fatal at startup."""

    def __init__(self, message: str, source: Optional[str] = None, tool: Optional[str] = None):
        self.source = source
        self.tool = tool
        prefix = ""
        if source:
            prefix += f"{source}: "
        if tool:
            prefix += f"tool '{tool}': "
        super().__init__(prefix + message)


def validation_error_from(errors: List[Dict[str, Any]], message: str = "Request body failed validation") -> ValidationError:
    """Map pydantic error dicts onto the ``ValidationError`` family."""
    kind = ValidationError.TYPE_MISMATCH
    if any(err.get("type") == "missing" for err in errors):
        kind = ValidationError.MISSING_REQUIRED
    return ValidationError(
        kind,
        message,
        details={"errors": [
            {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
            for err in errors
        ]},
    )
