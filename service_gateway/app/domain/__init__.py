"""
Domain utilities for the tool gateway.

Includes the request dispatcher and the authentication helpers it shares
with the HTTP layer.
"""

from .auth_middleware import AuthContext, AuthMiddleware
from .dispatcher import Dispatcher, DispatchState, Invocation, InvocationStatus, ToolCallRequest

__all__ = [
    "AuthContext",
    "AuthMiddleware",
    "DispatchState",
    "Dispatcher",
    "Invocation",
    "InvocationStatus",
    "ToolCallRequest",
]
