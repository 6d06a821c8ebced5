"""
Parameter validation against a tool's declared schema.

Incoming JSON parameters are converted into tagged ``ParamValue`` variants
before they reach any handler. Defaults are applied here, so two requests
that differ only by omitting a defaulted parameter normalize to the same
parameter set (and the same cache key).
"""

from __future__ import annotations

import copy
import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping

from shared.errors import ValidationError

from .models import ParamType, ParameterSpec, ToolDefinition


@dataclass(frozen=True)
class ParamValue:
    """A parameter value tagged with its declared type."""

    type: ParamType
    value: Any


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def coerce_value(spec: ParameterSpec, value: Any) -> ParamValue:
    """Check ``value`` against ``spec`` and wrap it; raises TypeMismatch."""
    expected = spec.type
    ok = False
    coerced = value

    if expected is ParamType.STRING:
        ok = isinstance(value, str)
    elif expected is ParamType.INTEGER:
        # bool is an int subclass but never an acceptable integer
        ok = isinstance(value, int) and not isinstance(value, bool)
        if not ok and isinstance(value, float) and value.is_integer():
            ok, coerced = True, int(value)
    elif expected is ParamType.NUMBER:
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        if ok:
            coerced = float(value)
            ok = math.isfinite(coerced)
    elif expected is ParamType.BOOLEAN:
        ok = isinstance(value, bool)
    elif expected is ParamType.ARRAY:
        ok = isinstance(value, (list, tuple))
        if ok:
            coerced = list(value)
    elif expected is ParamType.OBJECT:
        ok = isinstance(value, Mapping)
        if ok:
            coerced = dict(value)

    if not ok:
        raise ValidationError(
            ValidationError.TYPE_MISMATCH,
            f"Parameter '{spec.name}' must be of type {expected.value}, got {_type_name(value)}",
            details={"parameter": spec.name, "expected": expected.value, "actual": _type_name(value)},
        )
    return ParamValue(expected, coerced)


def validate_params(schema: Mapping[str, ParameterSpec], params: Mapping[str, Any]) -> Dict[str, ParamValue]:
    """Validate ``params`` against ``schema``.

    Returns typed values in schema order. Unknown parameters are rejected
    rather than passed through untyped.
    """
    if params is None:
        params = {}
    if not isinstance(params, Mapping):
        raise ValidationError(
            ValidationError.TYPE_MISMATCH,
            f"Parameters must be an object, got {_type_name(params)}",
            details={"expected": "object", "actual": _type_name(params)},
        )

    unknown = [name for name in params if name not in schema]
    if unknown:
        raise ValidationError(
            ValidationError.UNKNOWN_PARAMETER,
            f"Unknown parameter(s): {', '.join(sorted(unknown))}",
            details={"parameters": sorted(unknown), "accepted": list(schema)},
        )

    missing = [
        name for name, spec in schema.items()
        if spec.required and params.get(name) is None
    ]
    if missing:
        raise ValidationError(
            ValidationError.MISSING_REQUIRED,
            f"Missing required parameter(s): {', '.join(missing)}",
            details={"parameters": missing},
        )

    typed: Dict[str, ParamValue] = {}
    for name, spec in schema.items():
        if params.get(name) is not None:
            typed[name] = coerce_value(spec, params[name])
        elif spec.has_default:
            typed[name] = ParamValue(spec.type, copy.deepcopy(spec.default))
    return typed


def validate_for(definition: ToolDefinition, params: Mapping[str, Any]) -> Dict[str, ParamValue]:
    return validate_params(definition.parameters, params)


def plain_values(typed: Mapping[str, ParamValue]) -> Dict[str, Any]:
    """Unwrap typed values for handlers and cache keys."""
    return {name: item.value for name, item in typed.items()}
