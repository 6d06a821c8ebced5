"""
Bearer token store.

Tokens are opaque random strings. Only their SHA-256 digests are kept, so a
dump of the store does not leak usable credentials.
"""

import hashlib
import hmac
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Set

from shared.errors import AuthError
from shared.logging import get_logger


TOKEN_PREFIX = "gz_"
WILDCARD_SCOPE = "*"
ADMIN_SCOPE = "admin"

# Compared against when a token is unknown, so every path does the same work
_ABSENT_DIGEST = hashlib.sha256(b"gantz:absent-token").digest()


def _digest(value: str) -> bytes:
    return hashlib.sha256(value.encode("utf-8")).digest()


def scopes_allow(scopes: Iterable[str], required: str) -> bool:
    """True when ``scopes`` grant ``required`` (directly or via ``*``)."""
    scopes = set(scopes)
    return WILDCARD_SCOPE in scopes or required in scopes


@dataclass(frozen=True)
class Token:
    value: str = field(repr=False)
    created_at: float
    expires_at: float
    scopes: FrozenSet[str]
    label: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class _Record:
    digest: bytes
    token: Token


class TokenStore:
    """Issues, validates and revokes bearer tokens."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.logger = get_logger("gateway.token_store")
        self._clock = clock
        self._lock = threading.Lock()
        self._records: Dict[bytes, _Record] = {}
        self._revoked: Set[bytes] = set()

    @classmethod
    def from_config(cls, config, clock: Callable[[], float] = time.time) -> "TokenStore":
        """Store seeded with the admin bootstrap token, when one is configured."""
        store = cls(clock=clock)
        admin_token = getattr(config, "admin_token", None)
        if admin_token is not None:
            value = admin_token.get_secret_value()
            if value:
                now = store._clock()
                store.add(Token(
                    value=value,
                    created_at=now,
                    expires_at=now + config.admin_token_ttl_seconds,
                    scopes=frozenset({WILDCARD_SCOPE, ADMIN_SCOPE}),
                    label="bootstrap-admin",
                ))
        return store

    def issue(self, scopes: Iterable[str], ttl_seconds: float, label: Optional[str] = None) -> Token:
        """Mint a new token valid for ``ttl_seconds``."""
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        now = self._clock()
        token = Token(
            value=TOKEN_PREFIX + secrets.token_urlsafe(32),
            created_at=now,
            expires_at=now + ttl_seconds,
            scopes=frozenset(scopes),
            label=label,
        )
        self.add(token)
        self.logger.info(
            "Token issued",
            label=label,
            scopes=sorted(token.scopes),
            ttl_seconds=ttl_seconds,
        )
        return token

    def add(self, token: Token) -> None:
        """Register an existing token (e.g. bootstrap credentials)."""
        digest = _digest(token.value)
        with self._lock:
            self._records[digest] = _Record(digest=digest, token=token)
            self._revoked.discard(digest)

    def validate(self, value: Optional[str]) -> FrozenSet[str]:
        """Return the token's scopes or raise ``AuthError``."""
        if not value:
            raise AuthError(AuthError.MISSING, "Missing bearer token")

        digest = _digest(value)
        now = self._clock()
        with self._lock:
            record = self._records.get(digest)
            revoked = digest in self._revoked

        # Evaluate every check before deciding, whatever the outcome
        stored = record.digest if record is not None else _ABSENT_DIGEST
        matches = hmac.compare_digest(stored, digest) and record is not None
        expired = record.token.is_expired(now) if record is not None else True

        if not matches:
            raise AuthError(AuthError.INVALID, "Invalid bearer token")
        if revoked:
            raise AuthError(AuthError.REVOKED, "Bearer token has been revoked")
        if expired:
            raise AuthError(
                AuthError.EXPIRED,
                "Bearer token has expired",
                details={"expired_at": record.token.expires_at},
            )
        return record.token.scopes

    def lookup(self, value: str) -> Optional[Token]:
        with self._lock:
            record = self._records.get(_digest(value))
        return record.token if record is not None else None

    def revoke(self, value: str) -> None:
        """Revoke a token. Unknown or already revoked tokens are a no-op."""
        digest = _digest(value)
        with self._lock:
            if digest not in self._records or digest in self._revoked:
                return
            self._revoked.add(digest)
            label = self._records[digest].token.label
        self.logger.info("Token revoked", label=label)

    def purge_expired(self) -> int:
        """Forget expired tokens (and their revocation markers)."""
        now = self._clock()
        with self._lock:
            expired = [d for d, r in self._records.items() if r.token.is_expired(now)]
            for digest in expired:
                del self._records[digest]
                self._revoked.discard(digest)
        if expired:
            self.logger.info("Purged expired tokens", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)
