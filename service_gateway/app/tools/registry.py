"""
Versioned tool registry.
"""

import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from shared.errors import RegistryError
from shared.logging import get_logger

from .models import SemanticVersion, ToolDefinition


class ToolRegistry:
    """Holds tool definitions keyed by (name, version).

    Writes replace the internal snapshot (copy-on-write) under a lock, so
    readers always see either the old or the new set of definitions and
    never need to lock. The registry is built at startup and replaced
    wholesale on reload.
    """

    def __init__(self, definitions: Iterable[ToolDefinition] = ()):
        self.logger = get_logger("gateway.registry")
        self._lock = threading.Lock()
        self._tools: Dict[str, Dict[str, ToolDefinition]] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: ToolDefinition) -> None:
        """Add a definition; duplicate (name, version) pairs are rejected."""
        with self._lock:
            versions = self._tools.get(definition.name, {})
            for existing in versions.values():
                if existing.semantic_version == definition.semantic_version:
                    raise RegistryError(
                        RegistryError.DUPLICATE_VERSION,
                        f"Tool '{definition.name}' version '{definition.version}' is already registered",
                        details={
                            "tool": definition.name,
                            "version": definition.version,
                            "existing_version": existing.version,
                        },
                    )

            updated = dict(versions)
            updated[definition.version] = definition
            snapshot = dict(self._tools)
            snapshot[definition.name] = updated
            self._tools = snapshot

        self.logger.debug("Registered tool", tool=definition.name, version=definition.version)

    def resolve(self, name: str, version: Optional[str] = None) -> ToolDefinition:
        """Look up a tool; the highest semantic version wins when none is given."""
        versions = self._tools.get(name)
        if not versions:
            raise RegistryError(
                RegistryError.UNKNOWN_TOOL,
                f"Unknown tool '{name}'",
                details={"tool": name},
            )

        if version is None:
            return max(versions.values(), key=lambda d: d.semantic_version)

        version = str(version)
        if version in versions:
            return versions[version]

        # "1" and "1.0.0" name the same release
        try:
            wanted = SemanticVersion.parse(version)
        except ValueError:
            wanted = None
        if wanted is not None:
            for definition in versions.values():
                if definition.semantic_version == wanted:
                    return definition

        raise RegistryError(
            RegistryError.UNKNOWN_VERSION,
            f"Tool '{name}' has no version '{version}'",
            details={"tool": name, "version": version, "available": self._sorted_versions(versions)},
        )

    def latest_version(self, name: str) -> Optional[str]:
        versions = self._tools.get(name)
        if not versions:
            return None
        return max(versions.values(), key=lambda d: d.semantic_version).version

    def list_all(self, name: Optional[str] = None) -> Iterator[ToolDefinition]:
        """Yield definitions ordered by name, then ascending version.

        Each call returns a fresh generator over the snapshot current at the
        time of the call.
        """
        snapshot = self._tools
        names = [name] if name is not None else sorted(snapshot)

        def iterate() -> Iterator[ToolDefinition]:
            for tool_name in names:
                versions = snapshot.get(tool_name, {})
                yield from sorted(versions.values(), key=lambda d: d.semantic_version)

        return iterate()

    def names(self) -> List[str]:
        return sorted(self._tools)

    def definitions(self) -> List[ToolDefinition]:
        return list(self.list_all())

    @staticmethod
    def _sorted_versions(versions: Dict[str, ToolDefinition]) -> List[str]:
        return [d.version for d in sorted(versions.values(), key=lambda d: d.semantic_version)]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return sum(len(versions) for versions in self._tools.values())


@dataclass
class RegistryDiff:
    added: List[Tuple[str, str]] = field(default_factory=list)
    removed: List[Tuple[str, str]] = field(default_factory=list)
    changed: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def stale(self) -> List[Tuple[str, str]]:
        """(name, version) pairs whose cached results can no longer be trusted."""
        return self.removed + self.changed


def diff_registries(old: ToolRegistry, new: ToolRegistry) -> RegistryDiff:
    """Compare two registries by (name, version) and definition fingerprint."""
    before = {(d.name, d.version): d.fingerprint() for d in old.list_all()}
    after = {(d.name, d.version): d.fingerprint() for d in new.list_all()}
    return RegistryDiff(
        added=sorted(set(after) - set(before)),
        removed=sorted(set(before) - set(after)),
        changed=sorted(key for key in set(before) & set(after) if before[key] != after[key]),
    )
