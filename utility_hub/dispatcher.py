"""Resolve tool names, validate arguments and run the matching executor.

Every call produces an MCP ``CallToolResult``-shaped mapping::

    {"content": [{"type": "text", "text": "..."}], "isError": bool}

Executor results that already carry a ``content`` list are returned as-is, so
``isError`` may be absent and should be read with a default.

Failures are never raised to the caller; they are rendered as a single text
block ``"<CODE>: <message>"`` with ``isError`` set.
"""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from . import metrics
from .catalog import BuiltinTool, default_builtins, refresh_registry_tool
from .errors import CONFIG_ERROR, INTERNAL_ERROR, NOT_FOUND, VALIDATION_ERROR, UtilityHubError
from .logging import get_logger
from .registry import RegistryCache
from .routing import ApiToolClient
from .sandbox import ScriptRunner
from .schema import SchemaValidator, compile_descriptor, json_schema_for

logger = get_logger(__name__)

__all__ = ["Dispatcher", "ToolListing", "failure_envelope", "normalize_result", "text_result"]


@dataclass(frozen=True, slots=True)
class ToolListing:
    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)
    is_custom: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "inputSchema": self.input_schema}


def text_result(text: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": False}


def failure_envelope(code: str, message: str) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": f"{code}: {message}"}], "isError": True}


def normalize_result(value: Any) -> Mapping[str, Any]:
    """Coerce an executor's return value into a result envelope."""

    if isinstance(value, str):
        return text_result(value)
    if isinstance(value, Mapping) and isinstance(value.get("content"), list):
        return value
    return text_result(json.dumps(value, indent=2, ensure_ascii=False, default=str))


class Dispatcher:
    """Single entry point for ``tools/list`` and ``tools/call``."""

    def __init__(
        self,
        cache: RegistryCache,
        *,
        builtins: Iterable[BuiltinTool] | None = None,
        api_client: ApiToolClient | None = None,
        script_runner: ScriptRunner | None = None,
    ) -> None:
        self._cache = cache
        if builtins is None:
            builtins = (*default_builtins(), refresh_registry_tool(cache))
        self._builtins: dict[str, BuiltinTool] = {}
        self._builtin_validators: dict[str, SchemaValidator] = {}
        for tool in builtins:
            self._builtins[tool.name] = tool
            self._builtin_validators[tool.name] = compile_descriptor(tool.descriptor)
        self._api_client = api_client or ApiToolClient()
        self._script_runner = script_runner or ScriptRunner()

    @property
    def cache(self) -> RegistryCache:
        return self._cache

    @property
    def builtin_names(self) -> tuple[str, ...]:
        return tuple(self._builtins)

    def custom_tool_count(self) -> int:
        snapshot = self._cache.get()
        return sum(1 for name in snapshot.names if name not in self._builtins)

    async def list_tools(self) -> list[ToolListing]:
        metrics.record_operation("list_tools")
        listings = [
            ToolListing(
                name=tool.name,
                description=tool.descriptor.description,
                input_schema=json_schema_for(tool.descriptor.body_schema),
            )
            for tool in self._builtins.values()
        ]
        snapshot = self._cache.get()
        if snapshot.fetched_at is None:
            # Only the very first listing waits for the store.
            snapshot = await self._cache.ensure_fresh()
        for descriptor in snapshot.descriptors:
            if descriptor.name in self._builtins:
                continue
            description = descriptor.description
            reason = snapshot.failures.get(descriptor.name)
            if reason:
                description = f"{description} (unavailable: {reason})".strip()
            listings.append(
                ToolListing(
                    name=descriptor.name,
                    description=description,
                    input_schema=json_schema_for(descriptor.combined_schema()),
                    is_custom=True,
                )
            )
        return listings

    async def invoke(self, name: str, arguments: Mapping[str, Any] | None = None) -> Mapping[str, Any]:
        metrics.record_operation("call_tool")
        try:
            result = await self._invoke(name, arguments)
            return normalize_result(result)
        except UtilityHubError as exc:
            metrics.record_error(exc.code)
            logger.info(
                "dispatch.failed",
                extra={"context": {"tool": name, "code": exc.code, "message": exc.message}},
            )
            return failure_envelope(exc.code, exc.message)
        except Exception as exc:
            metrics.record_error(INTERNAL_ERROR)
            logger.exception("dispatch.internal_error", extra={"context": {"tool": name}})
            return failure_envelope(INTERNAL_ERROR, f"Unexpected error while running '{name}': {exc}")

    async def _invoke(self, name: str, arguments: Mapping[str, Any] | None) -> Any:
        if arguments is not None and not isinstance(arguments, Mapping):
            raise UtilityHubError(VALIDATION_ERROR, "Tool arguments must be an object")

        builtin = self._builtins.get(name)
        if builtin is not None:
            validated = self._builtin_validators[name](arguments)
            if builtin.refreshes_registry:
                self._cache.invalidate()
            result = builtin.handler(validated)
            if inspect.isawaitable(result):
                result = await result
            return result

        snapshot = await self._cache.ensure_fresh()
        descriptor = snapshot.find(name)
        if descriptor is None:
            raise UtilityHubError(NOT_FOUND, f"Tool '{name}' not found", details={"tool": name})
        reason = snapshot.failures.get(name)
        if reason is not None:
            raise UtilityHubError(
                CONFIG_ERROR,
                f"Tool '{name}' has an invalid parameter schema: {reason}",
                details={"tool": name},
            )
        validated = snapshot.validators[name](arguments)
        if descriptor.kind == "api":
            return await self._api_client.execute(descriptor, validated)
        return await self._script_runner.run(descriptor.name, descriptor.script, validated)
