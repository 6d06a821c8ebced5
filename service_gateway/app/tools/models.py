"""
Tool definition models.

Definitions are created when the manifest is loaded and never mutated
afterwards; a redeploy builds a new registry from fresh definitions.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from functools import total_ordering
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..execution.handlers import Handler


TOOL_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
_VERSION_PATTERN = re.compile(
    r"^v?(?P<major>\d+)(?:\.(?P<minor>\d+))?(?:\.(?P<patch>\d+))?(?:-(?P<pre>[0-9A-Za-z.-]+))?$"
)


class ParamType(str, Enum):
    """Declared parameter types."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"

    @classmethod
    def parse(cls, value: str) -> "ParamType":
        aliases = {
            "str": cls.STRING,
            "int": cls.INTEGER,
            "float": cls.NUMBER,
            "bool": cls.BOOLEAN,
            "list": cls.ARRAY,
            "dict": cls.OBJECT,
        }
        normalized = str(value).strip().lower()
        if normalized in aliases:
            return aliases[normalized]
        return cls(normalized)


_NO_DEFAULT = object()


@dataclass(frozen=True)
class ParameterSpec:
    """Schema entry for one tool parameter."""

    name: str
    type: ParamType = ParamType.STRING
    required: bool = False
    default: Any = _NO_DEFAULT
    description: str = ""

    @property
    def has_default(self) -> bool:
        return self.default is not _NO_DEFAULT

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type.value, "required": self.required}
        if self.has_default:
            data["default"] = self.default
        if self.description:
            data["description"] = self.description
        return data


@dataclass(frozen=True)
class CachePolicy:
    enabled: bool = False
    ttl_seconds: int = 0

    def __post_init__(self):
        if self.enabled and self.ttl_seconds <= 0:
            raise ValueError("cache ttl_seconds must be positive when caching is enabled")


@total_ordering
@dataclass(frozen=True)
class SemanticVersion:
    """Numeric (major, minor, patch) version; prereleases sort below their release."""

    major: int
    minor: int = 0
    patch: int = 0
    prerelease: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        match = _VERSION_PATTERN.match(str(value).strip())
        if not match:
            raise ValueError(f"Invalid semantic version: {value!r}")
        return cls(
            major=int(match.group("major")),
            minor=int(match.group("minor") or 0),
            patch=int(match.group("patch") or 0),
            prerelease=match.group("pre"),
        )

    def _sort_key(self) -> Tuple:
        # A release outranks any of its prereleases
        pre = () if self.prerelease is None else tuple(
            (0, int(part), "") if part.isdigit() else (1, 0, part)
            for part in self.prerelease.split(".")
        )
        return (self.major, self.minor, self.patch, self.prerelease is None, pre)

    def __lt__(self, other: "SemanticVersion") -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self._sort_key() < other._sort_key()

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        return f"{text}-{self.prerelease}" if self.prerelease else text


@dataclass(frozen=True, eq=False)
class ToolDefinition:
    """A named, versioned, schema-described tool."""

    name: str
    version: str
    handler: "Handler"
    parameters: Mapping[str, ParameterSpec] = field(default_factory=dict)
    timeout_seconds: float = 30.0
    cache_policy: CachePolicy = field(default_factory=CachePolicy)
    description: str = ""
    deprecated_since: Optional[date] = None
    deprecation_message: Optional[str] = None
    scope: Optional[str] = None
    semantic_version: SemanticVersion = field(init=False, repr=False)

    def __post_init__(self):
        if not TOOL_NAME_PATTERN.match(self.name or ""):
            raise ValueError(f"Invalid tool name: {self.name!r}")
        if self.timeout_seconds <= 0:
            raise ValueError(f"Tool {self.name!r} timeout must be positive")
        # Validates the version eagerly; raises ValueError on garbage
        object.__setattr__(self, "semantic_version", SemanticVersion.parse(self.version))
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))

    @property
    def required_scope(self) -> str:
        return self.scope or self.name

    @property
    def is_deprecated(self) -> bool:
        return self.deprecated_since is not None

    @property
    def parameter_schema(self) -> Dict[str, Dict[str, Any]]:
        return {name: spec.to_dict() for name, spec in self.parameters.items()}

    def summary(self) -> Dict[str, Any]:
        """Public description of the tool, as listed to callers."""
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "parameters": self.parameter_schema,
            "timeout_seconds": self.timeout_seconds,
            "cache": {"enabled": self.cache_policy.enabled, "ttl_seconds": self.cache_policy.ttl_seconds},
            "deprecated_since": self.deprecated_since.isoformat() if self.deprecated_since else None,
        }

    def fingerprint(self) -> str:
        """Stable hash of everything that affects a tool's results."""
        payload = {
            "summary": self.summary(),
            "scope": self.required_scope,
            "handler": self.handler.describe(),
        }
        encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()
