"""
Tool manifest (``gantz.yaml``) loading.

A manifest declares every tool the gateway serves::

    defaults:
      timeout: 30s
      cache:
        enabled: false
        ttl: 300

    tools:
      - name: weather
        version: "1.2.0"
        description: Current weather for a city
        parameters:
          city: {type: string, required: true}
          units: {type: string, default: metric}
        script:
          shell: "curl -s 'https://wttr.in/{{city}}?format=j1'"
        timeout: 5s
        cache: 600

Handlers are declared under ``handler`` (or ``script``) as ``command``
(argv list or string), ``shell`` (snippet run by ``/bin/sh``) or
``callable`` (``module:coroutine_function``). A bare string is a shell
snippet.
"""

import argparse
import re
import shlex
import sys
from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml

from shared.errors import ManifestError, RegistryError, ValidationError

from ..execution.handlers import DEFAULT_MAX_OUTPUT_BYTES, Handler, InProcessHandler, SubprocessHandler
from .models import CachePolicy, ParamType, ParameterSpec, ToolDefinition
from .registry import ToolRegistry
from .validation import coerce_value


DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CACHE_TTL_SECONDS = 300

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}

_TOOL_KEYS = {
    "name", "version", "description", "parameters", "handler", "script",
    "timeout", "cache", "deprecated_since", "deprecation_message", "scope",
}
_HANDLER_KEYS = {"command", "shell", "callable", "env", "cwd", "output", "max_output_bytes", "inherit_env"}


def parse_duration(value: Union[str, int, float]) -> float:
    """Seconds from ``2``, ``2.5``, ``"500ms"``, ``"2s"``, ``"1m"``, ``"1h"``."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_PATTERN.match(str(value))
        if not match:
            raise ValueError(f"Invalid duration: {value!r}")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


def _version_text(value: Any) -> str:
    if isinstance(value, bool) or value is None:
        raise ValueError("version is required")
    # Unquoted YAML versions such as 1.0 arrive as floats
    return str(value)


def _parse_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _parse_parameter(name: str, raw: Any) -> ParameterSpec:
    if isinstance(raw, str):
        raw = {"type": raw}
    if not isinstance(raw, Mapping):
        raise ValueError(f"parameter '{name}' must be a mapping or a type name")
    try:
        param_type = ParamType.parse(raw.get("type", "string"))
    except ValueError:
        raise ValueError(f"parameter '{name}' has unknown type {raw.get('type')!r}") from None

    spec = ParameterSpec(
        name=name,
        type=param_type,
        required=bool(raw.get("required", False)),
        description=str(raw.get("description", "")),
    )
    if "default" in raw and raw["default"] is not None:
        try:
            default = coerce_value(spec, raw["default"]).value
        except ValidationError as exc:
            raise ValueError(f"default of parameter '{name}': {exc.message}") from None
        spec = ParameterSpec(
            name=name,
            type=param_type,
            required=spec.required,
            default=default,
            description=spec.description,
        )
    return spec


def _parse_parameters(raw: Any) -> Dict[str, ParameterSpec]:
    if raw is None:
        return {}
    parameters: Dict[str, ParameterSpec] = {}
    if isinstance(raw, Mapping):
        for name, spec in raw.items():
            parameters[str(name)] = _parse_parameter(str(name), spec)
    elif isinstance(raw, list):
        for item in raw:
            if not isinstance(item, Mapping) or "name" not in item:
                raise ValueError("parameter list entries need a 'name'")
            name = str(item["name"])
            if name in parameters:
                raise ValueError(f"parameter '{name}' is declared twice")
            parameters[name] = _parse_parameter(name, item)
    else:
        raise ValueError("parameters must be a mapping or a list")
    return parameters


def _parse_cache(raw: Any, default: CachePolicy) -> CachePolicy:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return CachePolicy(enabled=raw, ttl_seconds=default.ttl_seconds or DEFAULT_CACHE_TTL_SECONDS)
    if isinstance(raw, (int, float, str)):
        return CachePolicy(enabled=True, ttl_seconds=max(1, int(round(parse_duration(raw)))))
    if isinstance(raw, Mapping):
        ttl_raw = raw.get("ttl", raw.get("ttl_seconds"))
        ttl = int(round(parse_duration(ttl_raw))) if ttl_raw is not None else (
            default.ttl_seconds or DEFAULT_CACHE_TTL_SECONDS
        )
        enabled = bool(raw.get("enabled", True))
        return CachePolicy(enabled=enabled, ttl_seconds=max(1, ttl) if enabled else ttl)
    raise ValueError("cache must be a boolean, a TTL or a mapping")


def _parse_handler(raw: Any, max_output_bytes: int) -> Handler:
    if isinstance(raw, str):
        return SubprocessHandler(shell=raw, max_output_bytes=max_output_bytes)
    if not isinstance(raw, Mapping):
        raise ValueError("handler must be a shell string or a mapping")

    unknown = set(raw) - _HANDLER_KEYS
    if unknown:
        raise ValueError(f"unknown handler keys: {', '.join(sorted(unknown))}")

    kinds = [key for key in ("command", "shell", "callable") if raw.get(key) is not None]
    if len(kinds) != 1:
        raise ValueError("handler needs exactly one of 'command', 'shell' or 'callable'")

    if kinds[0] == "callable":
        try:
            return InProcessHandler.from_import_path(str(raw["callable"]))
        except (ImportError, AttributeError) as exc:
            raise ValueError(f"cannot load callable {raw['callable']!r}: {exc}") from None

    command = raw.get("command")
    if isinstance(command, str):
        command = shlex.split(command)
    env = raw.get("env") or {}
    if not isinstance(env, Mapping):
        raise ValueError("handler env must be a mapping")
    return SubprocessHandler(
        command=command,
        shell=raw.get("shell"),
        env=env,
        cwd=raw.get("cwd"),
        output=str(raw.get("output", "auto")),
        max_output_bytes=int(raw.get("max_output_bytes", max_output_bytes)),
        inherit_env=bool(raw.get("inherit_env", False)),
    )


def parse_tool(raw: Mapping[str, Any], defaults: Mapping[str, Any],
               max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> ToolDefinition:
    """Build one ``ToolDefinition`` from its manifest entry."""
    unknown = set(raw) - _TOOL_KEYS
    if unknown:
        raise ValueError(f"unknown keys: {', '.join(sorted(unknown))}")
    if "handler" in raw and "script" in raw:
        raise ValueError("declare either 'handler' or 'script', not both")
    handler_raw = raw.get("handler", raw.get("script"))
    if handler_raw is None:
        raise ValueError("a 'handler' (or 'script') is required")

    default_timeout = parse_duration(defaults.get("timeout", DEFAULT_TIMEOUT_SECONDS))
    default_cache = _parse_cache(defaults.get("cache"), CachePolicy())

    return ToolDefinition(
        name=str(raw.get("name", "")),
        version=_version_text(raw.get("version")),
        handler=_parse_handler(handler_raw, max_output_bytes),
        parameters=_parse_parameters(raw.get("parameters")),
        timeout_seconds=parse_duration(raw.get("timeout", default_timeout)),
        cache_policy=_parse_cache(raw.get("cache"), default_cache),
        description=str(raw.get("description") or ""),
        deprecated_since=_parse_date(raw.get("deprecated_since")),
        deprecation_message=raw.get("deprecation_message"),
        scope=raw.get("scope"),
    )


def parse_manifest(data: Any, source: Optional[str] = None,
                   max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> List[ToolDefinition]:
    """Turn a decoded manifest document into tool definitions."""
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise ManifestError("manifest must be a mapping with a 'tools' list", source=source)
    tools = data.get("tools") or []
    if not isinstance(tools, list):
        raise ManifestError("'tools' must be a list", source=source)
    defaults = data.get("defaults") or {}
    if not isinstance(defaults, Mapping):
        raise ManifestError("'defaults' must be a mapping", source=source)

    definitions: List[ToolDefinition] = []
    for index, raw in enumerate(tools):
        if not isinstance(raw, Mapping):
            raise ManifestError(f"tools[{index}] must be a mapping", source=source)
        name = raw.get("name") or f"tools[{index}]"
        try:
            definitions.append(parse_tool(raw, defaults, max_output_bytes))
        except (ValueError, TypeError) as exc:
            raise ManifestError(str(exc), source=source, tool=str(name)) from exc
    return definitions


def load_manifest(path: Union[str, Path], max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> List[ToolDefinition]:
    """Read and parse a YAML manifest file."""
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ManifestError(f"invalid YAML: {exc}", source=str(path)) from exc
    except OSError as exc:
        raise ManifestError(f"cannot read manifest: {exc}", source=str(path)) from exc
    return parse_manifest(data, source=str(path), max_output_bytes=max_output_bytes)


def build_registry(definitions: List[ToolDefinition], source: Optional[str] = None) -> ToolRegistry:
    """Registry for ``definitions``; duplicate versions are fatal."""
    registry = ToolRegistry()
    for definition in definitions:
        try:
            registry.register(definition)
        except RegistryError as exc:
            raise ManifestError(exc.message, source=source, tool=definition.name) from exc
    return registry


def load_registry(path: Union[str, Path], max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> ToolRegistry:
    return build_registry(load_manifest(path, max_output_bytes), source=str(path))


def validate_manifest_file(path: Union[str, Path]) -> List[str]:
    """Errors found in a manifest (empty when it is valid)."""
    try:
        load_registry(path)
    except ManifestError as exc:
        return [str(exc)]
    return []


def main(argv: Optional[List[str]] = None) -> int:
    """Validate one or more tool manifests."""
    parser = argparse.ArgumentParser(
        prog="gantz-validate-manifest",
        description="Validate Gantz tool manifests",
    )
    parser.add_argument("manifests", nargs="+", help="manifest files to check")
    parser.add_argument("-q", "--quiet", action="store_true", help="only report errors")
    args = parser.parse_args(argv)

    total_errors = 0
    for manifest in args.manifests:
        errors = validate_manifest_file(manifest)
        if errors:
            print(f"FAIL {manifest}")
            for error in errors:
                print(f"   - {error}")
            total_errors += len(errors)
        elif not args.quiet:
            tools = load_manifest(manifest)
            print(f"OK   {manifest}: {len(tools)} tool version(s)")

    if total_errors:
        print(f"\nValidation failed: {total_errors} error(s)")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
