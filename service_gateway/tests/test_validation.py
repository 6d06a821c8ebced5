"""
Unit tests for parameter validation.
"""

import pytest

from shared.errors import ValidationError
from shared.test_helpers import param
from service_gateway.app.tools.models import ParamType
from service_gateway.app.tools.validation import ParamValue, plain_values, validate_params


def _schema(*specs):
    return {spec.name: spec for spec in specs}


class TestValidateParams:
    """Test cases for validate_params."""

    def test_typed_values_in_schema_order(self):
        schema = _schema(param("a", "integer", required=True), param("b", "string"))

        typed = validate_params(schema, {"b": "x", "a": 3})

        assert list(typed) == ["a", "b"]
        assert typed["a"] == ParamValue(ParamType.INTEGER, 3)
        assert typed["b"] == ParamValue(ParamType.STRING, "x")

    def test_missing_required(self):
        schema = _schema(param("city", required=True), param("units"))

        with pytest.raises(ValidationError) as exc_info:
            validate_params(schema, {"units": "metric"})

        assert exc_info.value.kind == ValidationError.MISSING_REQUIRED
        assert exc_info.value.details["parameters"] == ["city"]
        assert exc_info.value.status_code == 400

    def test_null_counts_as_missing(self):
        schema = _schema(param("city", required=True))

        with pytest.raises(ValidationError) as exc_info:
            validate_params(schema, {"city": None})

        assert exc_info.value.kind == ValidationError.MISSING_REQUIRED

    def test_unknown_parameter(self):
        schema = _schema(param("city"))

        with pytest.raises(ValidationError) as exc_info:
            validate_params(schema, {"city": "Oslo", "country": "NO"})

        assert exc_info.value.kind == ValidationError.UNKNOWN_PARAMETER
        assert exc_info.value.details["parameters"] == ["country"]

    def test_defaults_applied(self):
        schema = _schema(param("units", default="metric"), param("days", "integer", default=3))

        typed = validate_params(schema, {})

        assert plain_values(typed) == {"units": "metric", "days": 3}

    def test_default_is_copied(self):
        spec = param("tags", "array", default=["a"])
        first = plain_values(validate_params(_schema(spec), {}))
        first["tags"].append("mutated")

        second = plain_values(validate_params(_schema(spec), {}))

        assert second == {"tags": ["a"]}

    def test_optional_without_default_is_omitted(self):
        typed = validate_params(_schema(param("units")), {})

        assert typed == {}

    @pytest.mark.parametrize("type_name,value", [
        ("string", 5),
        ("integer", "5"),
        ("integer", True),
        ("integer", 1.5),
        ("number", "1.0"),
        ("number", False),
        ("number", float("inf")),
        ("boolean", "true"),
        ("boolean", 1),
        ("array", "a,b"),
        ("array", {"a": 1}),
        ("object", ["a"]),
    ])
    def test_type_mismatch(self, type_name, value):
        schema = _schema(param("p", type_name, required=True))

        with pytest.raises(ValidationError) as exc_info:
            validate_params(schema, {"p": value})

        assert exc_info.value.kind == ValidationError.TYPE_MISMATCH
        assert exc_info.value.details["parameter"] == "p"
        assert exc_info.value.details["expected"] == type_name

    def test_integral_float_accepted_as_integer(self):
        typed = validate_params(_schema(param("n", "integer")), {"n": 4.0})

        assert typed["n"].value == 4
        assert isinstance(typed["n"].value, int)

    def test_integer_accepted_as_number(self):
        typed = validate_params(_schema(param("x", "number")), {"x": 2})

        assert typed["x"].value == 2.0
        assert isinstance(typed["x"].value, float)

    def test_params_must_be_an_object(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_params(_schema(param("x")), ["x"])

        assert exc_info.value.kind == ValidationError.TYPE_MISMATCH
