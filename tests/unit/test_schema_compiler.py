from __future__ import annotations

import pytest

from utility_hub.errors import (
    ENUM_MISMATCH,
    MISSING_REQUIRED,
    OUT_OF_RANGE,
    TYPE_MISMATCH,
    VALIDATION_ERROR,
    ParameterValidationError,
    SchemaCompileError,
    UtilityHubError,
)
from utility_hub.models import ParameterSchema, ToolSchema
from utility_hub.schema import ABSENT, compile_parameter, compile_schema, json_schema_for, parse_descriptor_payload


def test_enum_accepts_members_unchanged() -> None:
    validator = compile_parameter("algorithm", ParameterSchema(kind="string", enum=("md5", "sha256")))

    assert validator("md5") == "md5"
    assert validator("sha256") == "sha256"


def test_enum_is_case_sensitive() -> None:
    validator = compile_parameter("algorithm", ParameterSchema(kind="string", enum=("md5", "sha256")))

    with pytest.raises(ParameterValidationError) as excinfo:
        validator("SHA256")

    assert excinfo.value.kind == ENUM_MISMATCH
    assert excinfo.value.parameter == "algorithm"
    assert excinfo.value.code == VALIDATION_ERROR


@pytest.mark.parametrize("value", [1, 10, 5, 1.0, "7"])
def test_inclusive_bounds_accept(value) -> None:
    validator = compile_parameter("count", ParameterSchema(kind="integer", minimum=1, maximum=10))

    result = validator(value)

    assert isinstance(result, int)
    assert 1 <= result <= 10


@pytest.mark.parametrize("value", [0, 11, -3])
def test_bounds_reject_out_of_range(value) -> None:
    validator = compile_parameter("count", ParameterSchema(kind="integer", minimum=1, maximum=10))

    with pytest.raises(ParameterValidationError) as excinfo:
        validator(value)

    assert excinfo.value.kind == OUT_OF_RANGE


@pytest.mark.parametrize("value", [True, "abc", 1.5, [], {}])
def test_integer_type_mismatch(value) -> None:
    validator = compile_parameter("count", ParameterSchema(kind="integer"))

    with pytest.raises(ParameterValidationError) as excinfo:
        validator(value)

    assert excinfo.value.kind == TYPE_MISMATCH


def test_number_coerces_numeric_strings() -> None:
    validator = compile_parameter("ratio", ParameterSchema(kind="number", minimum=0, maximum=1))

    assert validator("0.25") == 0.25
    assert validator(1) == 1


def test_boolean_accepts_bool_and_strings() -> None:
    validator = compile_parameter("flag", ParameterSchema(kind="boolean"))

    assert validator(True) is True
    assert validator("FALSE") is False
    with pytest.raises(ParameterValidationError):
        validator(1)


def test_string_stringifies_numbers() -> None:
    validator = compile_parameter("label", ParameterSchema(kind="string"))

    assert validator(42) == "42"
    with pytest.raises(ParameterValidationError):
        validator({"a": 1})


def test_default_substituted_when_omitted() -> None:
    validator = compile_parameter("size", ParameterSchema(kind="integer", minimum=100, maximum=500, default=200))

    assert validator() == 200
    assert validator(None) == 200
    assert validator(300) == 300


def test_required_without_default_reports_missing() -> None:
    validator = compile_parameter("name", ParameterSchema(kind="string"), required=True)

    with pytest.raises(ParameterValidationError) as excinfo:
        validator()

    assert excinfo.value.kind == MISSING_REQUIRED
    assert "name" in excinfo.value.message


def test_optional_without_default_is_absent() -> None:
    validator = compile_parameter("note", ParameterSchema(kind="string"))

    assert validator() is ABSENT


def test_schema_validator_omits_absent_and_passes_through_undeclared() -> None:
    schema = ToolSchema(
        properties={
            "text": ParameterSchema(kind="string"),
            "note": ParameterSchema(kind="string"),
            "size": ParameterSchema(kind="integer", default=3),
        },
        required=("text",),
    )
    validator = compile_schema(schema)

    result = validator({"text": "hi", "extra": 1, "ignored": None})

    assert result == {"text": "hi", "size": 3, "extra": 1}


def test_schema_validator_reports_first_failure_in_declaration_order() -> None:
    schema = ToolSchema(
        properties={
            "first": ParameterSchema(kind="integer"),
            "second": ParameterSchema(kind="integer"),
        },
        required=("first", "second"),
    )
    validator = compile_schema(schema)

    with pytest.raises(ParameterValidationError) as excinfo:
        validator({"second": "x"})

    assert excinfo.value.parameter == "first"


def test_compile_rejects_unknown_kind() -> None:
    with pytest.raises(SchemaCompileError):
        compile_parameter("blob", ParameterSchema(kind="binary"))


def test_compile_rejects_undeclared_required() -> None:
    with pytest.raises(SchemaCompileError):
        compile_schema(ToolSchema(properties={}, required=("missing",)))


def test_compile_rejects_inverted_bounds() -> None:
    with pytest.raises(SchemaCompileError):
        compile_parameter("n", ParameterSchema(kind="number", minimum=5, maximum=1))


def test_compile_rejects_invalid_default() -> None:
    with pytest.raises(SchemaCompileError):
        compile_parameter("n", ParameterSchema(kind="integer", minimum=1, maximum=3, default=9))


def test_enum_on_non_string_kind_is_ignored() -> None:
    validator = compile_parameter("n", ParameterSchema(kind="integer", enum=("1", "2")))

    assert validator(7) == 7


def test_json_schema_for_renders_listing_schema() -> None:
    schema = ToolSchema(properties={"text": ParameterSchema(kind="string", description="Input")}, required=("text",))

    assert json_schema_for(schema) == {
        "type": "object",
        "properties": {"text": {"type": "string", "description": "Input"}},
        "required": ["text"],
    }
    assert json_schema_for(None) == {"type": "object", "properties": {}}


def test_parse_descriptor_payload_accepts_wire_format() -> None:
    descriptor = parse_descriptor_payload(
        {
            "name": "weather",
            "description": "Fetch weather",
            "customType": "api",
            "inputSchema": {"type": "object", "properties": {"units": {"type": "string"}}, "required": []},
            "querySchema": {"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]},
            "apiConfig": {"url": "https://example.test/weather", "method": "get"},
        }
    )

    assert descriptor.kind == "api"
    assert descriptor.api is not None and descriptor.api.method == "GET"
    assert "city" in descriptor.combined_schema()
    assert descriptor.combined_schema().required == ("city",)


def test_parse_descriptor_payload_reports_schema_errors() -> None:
    with pytest.raises(UtilityHubError) as excinfo:
        parse_descriptor_payload({"name": "bad", "inputSchema": {"properties": {"x": {"type": "date"}}}})

    assert excinfo.value.code == VALIDATION_ERROR
    assert excinfo.value.details and excinfo.value.details["errors"]


def test_parse_descriptor_payload_requires_name() -> None:
    with pytest.raises(UtilityHubError):
        parse_descriptor_payload({"description": "nameless"})
    with pytest.raises(UtilityHubError):
        parse_descriptor_payload(["not", "an", "object"])
