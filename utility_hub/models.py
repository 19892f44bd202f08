"""Domain models for tool descriptors and their parameter schemas."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

PARAMETER_KINDS: tuple[str, ...] = ("string", "number", "integer", "boolean")
HTTP_METHODS: tuple[str, ...] = ("GET", "POST", "PUT", "DELETE", "PATCH")

ToolKind = Literal["builtin", "script", "api"]

# Wire values of ``customType`` as persisted by the admin API and both stores.
_WIRE_SCRIPT = "normal"
_WIRE_API = "api"


@dataclass(frozen=True, slots=True)
class ParameterSchema:
    """Declarative description of one named tool input.

    Values are kept as received; :mod:`utility_hub.schema` rejects malformed
    combinations when it compiles the schema.
    """

    kind: str = "string"
    description: str | None = None
    enum: tuple[Any, ...] | None = None
    minimum: Any = None
    maximum: Any = None
    default: Any = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.kind}
        if self.description is not None:
            payload["description"] = self.description
        if self.enum is not None:
            payload["enum"] = list(self.enum)
        if self.minimum is not None:
            payload["minimum"] = self.minimum
        if self.maximum is not None:
            payload["maximum"] = self.maximum
        if self.default is not None:
            payload["default"] = self.default
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ParameterSchema":
        enum_value = payload.get("enum")
        if isinstance(enum_value, (list, tuple)):
            enum_value = tuple(enum_value)
        description = payload.get("description")
        return cls(
            kind=str(payload.get("type", "string")),
            description=str(description) if description is not None else None,
            enum=enum_value,
            minimum=payload.get("minimum"),
            maximum=payload.get("maximum"),
            default=payload.get("default"),
        )


@dataclass(frozen=True, slots=True)
class ToolSchema:
    """Parameter name to :class:`ParameterSchema` mapping plus required names."""

    properties: dict[str, ParameterSchema] = field(default_factory=dict)
    required: tuple[str, ...] = ()

    def __contains__(self, name: object) -> bool:
        return name in self.properties

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {name: schema.to_dict() for name, schema in self.properties.items()},
            "required": list(self.required),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "ToolSchema | None":
        if payload is None:
            return None
        raw_properties = payload.get("properties") or {}
        properties: dict[str, ParameterSchema] = {}
        if isinstance(raw_properties, Mapping):
            for name, value in raw_properties.items():
                properties[str(name)] = ParameterSchema.from_dict(value if isinstance(value, Mapping) else {})
        raw_required = payload.get("required") or ()
        if isinstance(raw_required, str):
            raw_required = (raw_required,)
        return cls(properties=properties, required=tuple(str(name) for name in raw_required))


@dataclass(frozen=True, slots=True)
class ApiConfig:
    """Outbound HTTP target of a custom API tool."""

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "method": self.method, "headers": dict(self.headers)}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ApiConfig":
        headers = payload.get("headers") or {}
        return cls(
            url=str(payload.get("url") or ""),
            method=str(payload.get("method") or "GET").upper(),
            headers={str(key): str(value) for key, value in dict(headers).items()},
        )


@dataclass(frozen=True, slots=True)
class ToolDescriptor:
    """Named, versionless definition of an invocable tool."""

    name: str
    description: str = ""
    kind: ToolKind = "script"
    body_schema: ToolSchema | None = None
    query_schema: ToolSchema | None = None
    script: str | None = None
    api: ApiConfig | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("Tool name must be a non-empty string")
        if self.kind not in ("builtin", "script", "api"):
            raise ValueError(f"Unsupported tool kind '{self.kind}'")

    @property
    def is_custom(self) -> bool:
        return self.kind != "builtin"

    def combined_schema(self) -> ToolSchema:
        """Return body parameters merged with query parameters (API tools only)."""

        body = self.body_schema or ToolSchema()
        if self.kind != "api" or self.query_schema is None:
            return body
        properties = dict(body.properties)
        properties.update(self.query_schema.properties)
        required = list(body.required)
        for name in self.query_schema.required:
            if name not in required:
                required.append(name)
        return ToolSchema(properties=properties, required=tuple(required))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "customType": _WIRE_API if self.kind == "api" else _WIRE_SCRIPT,
            "inputSchema": self.body_schema.to_dict() if self.body_schema is not None else None,
            "querySchema": self.query_schema.to_dict() if self.query_schema is not None else None,
            "apiConfig": self.api.to_dict() if self.api is not None else None,
            "customLogic": self.script,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ToolDescriptor":
        """Build a custom descriptor from its wire representation."""

        custom_type = str(payload.get("customType") or _WIRE_SCRIPT).lower()
        kind: ToolKind = "api" if custom_type == _WIRE_API else "script"
        api_payload = payload.get("apiConfig")
        script = payload.get("customLogic")
        return cls(
            name=str(payload.get("name") or "").strip(),
            description=str(payload.get("description") or ""),
            kind=kind,
            body_schema=ToolSchema.from_dict(payload.get("inputSchema")),
            query_schema=ToolSchema.from_dict(payload.get("querySchema")),
            script=str(script) if script is not None else None,
            api=ApiConfig.from_dict(api_payload) if isinstance(api_payload, Mapping) else None,
        )
