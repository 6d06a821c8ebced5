"""
Authentication helpers for gateway routes.
"""

from dataclasses import dataclass
from typing import FrozenSet, Optional, TYPE_CHECKING

from fastapi import Request

from shared.errors import AuthError
from shared.logging import get_logger, set_subject

from ..auth.token_store import ADMIN_SCOPE, TokenStore, scopes_allow

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Token from an ``Authorization: Bearer <token>`` header value.

    Returns ``None`` when the header is absent; a header with another scheme
    yields an empty string so it is reported as invalid rather than missing.
    """
    if authorization is None:
        return None
    scheme, _, credentials = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return credentials.strip()


@dataclass(frozen=True)
class AuthContext:
    scopes: FrozenSet[str]
    label: Optional[str] = None

    def allows(self, scope: str) -> bool:
        return scopes_allow(self.scopes, scope)


class AuthMiddleware:
    """Authenticates requests against the token store."""

    def __init__(self, token_store: TokenStore, metrics: Optional["MetricsCollector"] = None):
        self.token_store = token_store
        self.metrics = metrics
        self.logger = get_logger("gateway.auth_middleware")

    def authenticate(self, token: Optional[str]) -> AuthContext:
        """Validate a raw token; raises ``AuthError``."""
        if token == "":
            self._reject(AuthError(AuthError.INVALID, "Authorization header must use the Bearer scheme"))
        try:
            scopes = self.token_store.validate(token)
        except AuthError as exc:
            self._reject(exc)

        record = self.token_store.lookup(token)
        label = record.label if record is not None else None
        set_subject(label)
        return AuthContext(scopes=scopes, label=label)

    def authenticate_request(self, request: Request) -> AuthContext:
        token = extract_bearer_token(request.headers.get("Authorization"))
        return self.authenticate(token)

    def require_scope(self, context: AuthContext, scope: str) -> None:
        if not context.allows(scope):
            self._reject(AuthError(
                AuthError.INSUFFICIENT_SCOPE,
                f"Token lacks the '{scope}' scope",
                details={"required_scope": scope},
            ))

    def require_admin(self, request: Request) -> AuthContext:
        """Authenticate and require the ``admin`` scope."""
        context = self.authenticate_request(request)
        # The wildcard scope does not imply admin rights
        if ADMIN_SCOPE not in context.scopes:
            self._reject(AuthError(
                AuthError.INSUFFICIENT_SCOPE,
                "Admin scope required",
                details={"required_scope": ADMIN_SCOPE},
            ))
        return context

    def _reject(self, exc: AuthError) -> None:
        self.logger.warning("Request rejected", code=exc.code, reason=exc.message)
        if self.metrics:
            self.metrics.record_auth_failure(exc.kind)
        raise exc
