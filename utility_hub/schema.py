"""Compile declarative parameter schemas into runtime validators.

A :class:`ParameterSchema` is turned into a :class:`ParameterValidator` through
a small per-kind dispatch table.  A :class:`ToolSchema` becomes a
:class:`SchemaValidator` that applies every parameter validator in declaration
order and returns the coerced argument mapping, or raises the first
:class:`ParameterValidationError` it encounters.

Wire descriptors submitted through the admin API are checked against
:data:`DESCRIPTOR_JSON_SCHEMA` with ``jsonschema`` before they are compiled.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from jsonschema import validators as jsonschema_validators

from .errors import (
    ENUM_MISMATCH,
    MISSING_REQUIRED,
    OUT_OF_RANGE,
    TYPE_MISMATCH,
    VALIDATION_ERROR,
    ParameterValidationError,
    SchemaCompileError,
    UtilityHubError,
)
from .models import HTTP_METHODS, PARAMETER_KINDS, ParameterSchema, ToolDescriptor, ToolSchema

__all__ = [
    "ABSENT",
    "DESCRIPTOR_JSON_SCHEMA",
    "ParameterValidator",
    "SchemaValidator",
    "compile_parameter",
    "compile_schema",
    "compile_descriptor",
    "json_schema_for",
    "parse_descriptor_payload",
]


class _Absent:
    __slots__ = ()

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return "ABSENT"


ABSENT: Any = _Absent()

_BOOL_STRINGS = {"true": True, "false": False}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_string(name: str, schema: ParameterSchema, value: Any) -> Any:
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, str):
        text = value
    elif _is_number(value):
        text = str(value)
    else:
        raise ParameterValidationError(
            TYPE_MISMATCH,
            name,
            f"Parameter '{name}' must be a string, got {type(value).__name__}",
        )
    if schema.enum is not None and text not in schema.enum:
        allowed = ", ".join(str(item) for item in schema.enum)
        raise ParameterValidationError(
            ENUM_MISMATCH,
            name,
            f"Parameter '{name}' must be one of: {allowed} (got {text!r})",
        )
    return text


def _coerce_number(name: str, kind: str, value: Any) -> int | float:
    number: int | float
    if _is_number(value):
        number = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            number = int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                number = math.nan
    else:
        number = math.nan
    if isinstance(number, float) and not math.isfinite(number):
        raise ParameterValidationError(
            TYPE_MISMATCH,
            name,
            f"Parameter '{name}' must be a {kind}, got {value!r}",
        )
    return number


def _check_bounds(name: str, schema: ParameterSchema, number: int | float) -> None:
    low, high = schema.minimum, schema.maximum
    if (low is not None and number < low) or (high is not None and number > high):
        if low is not None and high is not None:
            expected = f"between {low} and {high}"
        elif low is not None:
            expected = f">= {low}"
        else:
            expected = f"<= {high}"
        raise ParameterValidationError(
            OUT_OF_RANGE,
            name,
            f"Parameter '{name}' must be {expected} (got {number})",
        )


def _check_number(name: str, schema: ParameterSchema, value: Any) -> Any:
    number = _coerce_number(name, "number", value)
    _check_bounds(name, schema, number)
    return number


def _check_integer(name: str, schema: ParameterSchema, value: Any) -> Any:
    number = _coerce_number(name, "integer", value)
    if isinstance(number, float):
        if not number.is_integer():
            raise ParameterValidationError(
                TYPE_MISMATCH,
                name,
                f"Parameter '{name}' must be an integer, got {value!r}",
            )
        number = int(number)
    _check_bounds(name, schema, number)
    return number


def _check_boolean(name: str, schema: ParameterSchema, value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in _BOOL_STRINGS:
        return _BOOL_STRINGS[value.strip().lower()]
    raise ParameterValidationError(
        TYPE_MISMATCH,
        name,
        f"Parameter '{name}' must be a boolean, got {value!r}",
    )


_KIND_CHECKS: dict[str, Callable[[str, ParameterSchema, Any], Any]] = {
    "string": _check_string,
    "number": _check_number,
    "integer": _check_integer,
    "boolean": _check_boolean,
}


@dataclass(frozen=True, slots=True)
class ParameterValidator:
    """Validator/coercer for one named parameter."""

    name: str
    schema: ParameterSchema
    required: bool
    check: Callable[[str, ParameterSchema, Any], Any]

    def __call__(self, value: Any = ABSENT) -> Any:
        """Return the coerced value, or :data:`ABSENT` for an omitted optional parameter."""

        if value is ABSENT or value is None:
            if self.schema.default is not None:
                value = self.schema.default
            elif self.required:
                raise ParameterValidationError(
                    MISSING_REQUIRED,
                    self.name,
                    f"Missing required parameter '{self.name}'",
                )
            else:
                return ABSENT
        return self.check(self.name, self.schema, value)


@dataclass(frozen=True, slots=True)
class SchemaValidator:
    """Aggregate validator producing a fully typed argument mapping."""

    parameters: tuple[ParameterValidator, ...] = ()

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(validator.name for validator in self.parameters)

    def __call__(self, arguments: Mapping[str, Any] | None) -> dict[str, Any]:
        raw = dict(arguments or {})
        validated: dict[str, Any] = {}
        for validator in self.parameters:
            value = validator(raw.get(validator.name, ABSENT))
            if value is not ABSENT:
                validated[validator.name] = value
        declared = set(self.names)
        for key, value in raw.items():
            # Undeclared arguments are routed by the API fallback rule.
            if key not in declared and value is not None:
                validated[key] = value
        return validated


def compile_parameter(name: str, schema: ParameterSchema, *, required: bool = False) -> ParameterValidator:
    if not name:
        raise SchemaCompileError("Parameter names must be non-empty")
    check = _KIND_CHECKS.get(schema.kind)
    if check is None:
        raise SchemaCompileError(
            f"Parameter '{name}' has unsupported type '{schema.kind}'",
            details={"parameter": name, "supported": list(PARAMETER_KINDS)},
        )
    if schema.kind == "string" and schema.enum is not None:
        if not isinstance(schema.enum, tuple) or not schema.enum:
            raise SchemaCompileError(f"Parameter '{name}' enum must be a non-empty list", details={"parameter": name})
    if schema.kind in ("number", "integer"):
        for label, bound in (("minimum", schema.minimum), ("maximum", schema.maximum)):
            if bound is not None and not _is_number(bound):
                raise SchemaCompileError(f"Parameter '{name}' {label} must be numeric", details={"parameter": name})
        if schema.minimum is not None and schema.maximum is not None and schema.minimum > schema.maximum:
            raise SchemaCompileError(
                f"Parameter '{name}' minimum exceeds maximum",
                details={"parameter": name},
            )
    if schema.default is not None:
        try:
            check(name, schema, schema.default)
        except ParameterValidationError as exc:
            raise SchemaCompileError(
                f"Parameter '{name}' has an invalid default: {exc.message}",
                details={"parameter": name},
            ) from exc
    return ParameterValidator(name=name, schema=schema, required=required, check=check)


def compile_schema(schema: ToolSchema | None) -> SchemaValidator:
    if schema is None:
        return SchemaValidator()
    missing = [name for name in schema.required if name not in schema.properties]
    if missing:
        raise SchemaCompileError(
            f"Required parameters are not declared: {', '.join(missing)}",
            details={"missing": missing},
        )
    required = set(schema.required)
    return SchemaValidator(
        parameters=tuple(
            compile_parameter(name, parameter, required=name in required)
            for name, parameter in schema.properties.items()
        )
    )


def compile_descriptor(descriptor: ToolDescriptor) -> SchemaValidator:
    """Compile the combined body and query schema of a descriptor."""

    compile_schema(descriptor.body_schema)
    if descriptor.kind == "api":
        compile_schema(descriptor.query_schema)
    return compile_schema(descriptor.combined_schema())


def json_schema_for(schema: ToolSchema | None) -> dict[str, Any]:
    """Render a tool schema as the JSON Schema object advertised in listings."""

    if schema is None:
        return {"type": "object", "properties": {}}
    return schema.to_dict()


_PARAMETER_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {"enum": list(PARAMETER_KINDS)},
        "description": {"type": "string"},
        "enum": {"type": "array", "items": {"type": "string"}, "minItems": 1},
        "minimum": {"type": "number"},
        "maximum": {"type": "number"},
        "default": {"type": ["string", "number", "boolean"]},
    },
}

_TOOL_SCHEMA_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "type": {"const": "object"},
        "properties": {"type": "object", "additionalProperties": _PARAMETER_JSON_SCHEMA},
        "required": {"type": "array", "items": {"type": "string"}},
    },
}

DESCRIPTOR_JSON_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": {"type": "string", "pattern": r"\S"},
        "description": {"type": ["string", "null"]},
        "customType": {"enum": ["normal", "api"]},
        "inputSchema": {"anyOf": [{"type": "null"}, _TOOL_SCHEMA_JSON_SCHEMA]},
        "querySchema": {"anyOf": [{"type": "null"}, _TOOL_SCHEMA_JSON_SCHEMA]},
        "apiConfig": {
            "anyOf": [
                {"type": "null"},
                {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "method": {"type": "string", "pattern": f"(?i)^({'|'.join(HTTP_METHODS)})$"},
                        "headers": {"type": "object", "additionalProperties": {"type": "string"}},
                    },
                },
            ]
        },
        "customLogic": {"type": ["string", "null"]},
        "isCustom": {"type": "boolean"},
    },
}

_DESCRIPTOR_VALIDATOR = jsonschema_validators.validator_for(DESCRIPTOR_JSON_SCHEMA)(DESCRIPTOR_JSON_SCHEMA)


def parse_descriptor_payload(payload: Any) -> ToolDescriptor:
    """Validate a wire descriptor and return the compiled-checked model."""

    if not isinstance(payload, Mapping):
        raise UtilityHubError(VALIDATION_ERROR, "Tool definition must be a JSON object")
    errors = sorted(_DESCRIPTOR_VALIDATOR.iter_errors(dict(payload)), key=lambda err: list(err.absolute_path))
    if errors:
        messages = [
            f"{'/'.join(str(part) for part in error.absolute_path) or '<root>'}: {error.message}"
            for error in errors
        ]
        raise UtilityHubError(VALIDATION_ERROR, "Invalid tool definition", details={"errors": messages})
    try:
        descriptor = ToolDescriptor.from_dict(payload)
    except ValueError as exc:
        raise UtilityHubError(VALIDATION_ERROR, str(exc)) from exc
    compile_descriptor(descriptor)
    return descriptor
