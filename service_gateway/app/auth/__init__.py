"""
Authentication primitives for the tool gateway.
"""

from .token_store import Token, TokenStore, scopes_allow

__all__ = [
    "Token",
    "TokenStore",
    "scopes_allow",
]
