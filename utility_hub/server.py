"""FastMCP server entrypoint for the Utility Hub MCP service."""

from __future__ import annotations

import asyncio
import json
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from functools import wraps
from typing import Any, Callable, Mapping

import httpx
from fastmcp import FastMCP
from mcp import types as mcp_types
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response

from . import metrics
from .config import Config, ConfigError, load_config
from .dispatcher import Dispatcher, failure_envelope
from .errors import (
    CONFIG_ERROR,
    NOT_FOUND,
    STORAGE_ERROR,
    VALIDATION_ERROR,
    UtilityHubError,
)
from .logging import configure_logging, get_logger
from .registry import RegistryCache
from .routing import ApiToolClient
from .sandbox import ScriptRunner
from .schema import parse_descriptor_payload
from .storage import DescriptorStore, StorageError, create_store
from .transports import HttpTransportConfig, run_http, run_stdio

LOGGER = get_logger(__name__)
SERVER = FastMCP(name="utility-hub")


@dataclass(slots=True)
class AppState:
    config: Config
    store: DescriptorStore
    cache: RegistryCache
    dispatcher: Dispatcher


APP_STATE: AppState | None = None
_METRICS_ROUTE_NAME = "__utility_hub_metrics__"
_ADMIN_ROUTE_NAME = "__utility_hub_admin__"

_STATUS_BY_CODE = {
    VALIDATION_ERROR: 400,
    NOT_FOUND: 404,
    CONFIG_ERROR: 503,
    STORAGE_ERROR: 500,
}


class ShutdownManager:
    """Track active tool requests so shutdown can drain gracefully."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._condition = threading.Condition(self._lock)
        self._active_requests = 0
        self._shutdown_requested = False
        self._deadline: float | None = None
        self._timeout = timedelta(seconds=5)

    def configure(self, timeout: timedelta) -> None:
        """Reset state for a new application lifecycle."""

        if timeout.total_seconds() < 0:
            timeout = timedelta(seconds=0)
        with self._condition:
            self._timeout = timeout
            self._active_requests = 0
            self._shutdown_requested = False
            self._deadline = None

    def try_enter(self) -> Callable[[], None] | None:
        """Register a new request. Returns a release callback, or None when shutting down."""

        with self._condition:
            if self._shutdown_requested:
                return None
            self._active_requests += 1

        def release() -> None:
            with self._condition:
                if self._active_requests > 0:
                    self._active_requests -= 1
                    self._condition.notify_all()

        return release

    def request_shutdown(self, timeout: timedelta | None = None) -> None:
        """Signal shutdown and start rejecting new requests."""

        with self._condition:
            if self._shutdown_requested:
                return
            effective_timeout = timeout if timeout is not None else self._timeout
            if effective_timeout.total_seconds() < 0:
                effective_timeout = timedelta(seconds=0)
            self._shutdown_requested = True
            self._deadline = time.monotonic() + effective_timeout.total_seconds()
            self._condition.notify_all()

    def wait_for_drain(self) -> bool:
        """Wait for active requests to finish until the shutdown deadline."""

        with self._condition:
            while self._active_requests > 0:
                deadline = self._deadline
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                    self._condition.wait(timeout=remaining)
                else:
                    self._condition.wait()
            return True

    @property
    def active_requests(self) -> int:
        with self._condition:
            return self._active_requests


_SHUTDOWN_MANAGER = ShutdownManager()


def _normalise_route_path(path: str, default: str) -> str:
    if not path:
        return default
    normalised = path if path.startswith("/") else f"/{path}"
    if len(normalised) > 1 and normalised.endswith("/"):
        normalised = normalised.rstrip("/")
    return normalised or default


def _remove_route(name: str) -> None:
    routes = getattr(SERVER, "_additional_http_routes", None)
    if not routes:
        return
    routes[:] = [route for route in routes if getattr(route, "name", None) != name]


def _register_metrics_route(path: str) -> None:
    cleaned = _normalise_route_path(path, "/metrics")
    _remove_route(_METRICS_ROUTE_NAME)

    @SERVER.custom_route(cleaned, methods=["GET"], name=_METRICS_ROUTE_NAME, include_in_schema=False)
    async def metrics_endpoint(_request: Request) -> Response:
        registry = metrics.get_registry_optional()
        if registry is None or APP_STATE is None:
            return PlainTextResponse("metrics unavailable\n", status_code=503)
        dispatcher = APP_STATE.dispatcher
        body = metrics.format_prometheus(
            registry.snapshot(),
            builtin_tools_current=len(dispatcher.builtin_names),
            custom_tools_current=dispatcher.custom_tool_count(),
        )
        return PlainTextResponse(body, media_type="text/plain; version=0.0.4")


def _status_for(result: Mapping[str, Any]) -> int:
    if result.get("ok"):
        return 200
    code = str((result.get("error") or {}).get("code", ""))
    return _STATUS_BY_CODE.get(code, 500)


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise UtilityHubError(VALIDATION_ERROR, "Request body must be valid JSON") from exc


def _register_admin_routes(path: str) -> None:
    cleaned = _normalise_route_path(path, "/api/tools")
    _remove_route(_ADMIN_ROUTE_NAME)

    @SERVER.custom_route(
        cleaned,
        methods=["GET", "POST", "PUT", "DELETE"],
        name=_ADMIN_ROUTE_NAME,
        include_in_schema=False,
    )
    async def admin_endpoint(request: Request) -> Response:
        try:
            if request.method == "GET":
                result = await _custom_tool_list_impl()
            elif request.method == "POST":
                result = await _custom_tool_upsert_impl(await _read_json(request))
            elif request.method == "PUT":
                payload = await _read_json(request)
                if not isinstance(payload, Mapping):
                    raise UtilityHubError(VALIDATION_ERROR, "Request body must be a JSON object")
                result = await _custom_tool_rename_impl(payload.get("oldName"), payload.get("tool"))
            else:
                result = await _custom_tool_delete_impl(request.query_params.get("name"))
        except UtilityHubError as exc:
            result = failure(exc)
        return JSONResponse(result, status_code=_status_for(result))


def initialize_app(
    config: Config,
    *,
    store: DescriptorStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Initialise application state for tool handlers."""

    global APP_STATE
    _SHUTDOWN_MANAGER.configure(config.shutdown_timeout)
    if store is None:
        store = create_store(config)
    cache = RegistryCache(store, staleness=config.registry_staleness.total_seconds())
    dispatcher = Dispatcher(
        cache,
        api_client=ApiToolClient(timeout=config.api_timeout.total_seconds(), transport=transport),
        script_runner=ScriptRunner(timeout=config.script_timeout.total_seconds()),
    )
    metrics.install_registry(metrics.MetricsRegistry())
    if config.enable_metrics:
        _register_metrics_route(config.metrics_path)
    else:
        _remove_route(_METRICS_ROUTE_NAME)
    if config.enable_admin_api:
        _register_admin_routes(config.admin_path)
    else:
        _remove_route(_ADMIN_ROUTE_NAME)
    APP_STATE = AppState(config=config, store=store, cache=cache, dispatcher=dispatcher)
    LOGGER.info(
        "app.initialized",
        extra={
            "context": {
                "backend": "database" if config.use_db else "local",
                "builtin_tools": len(dispatcher.builtin_names),
            }
        },
    )


def shutdown_app() -> None:
    """Drain in-flight calls, close the store and clear application state."""

    global APP_STATE
    if APP_STATE is None:
        return
    config = APP_STATE.config
    _SHUTDOWN_MANAGER.request_shutdown(config.shutdown_timeout)
    drained = _SHUTDOWN_MANAGER.wait_for_drain()
    if not drained:
        LOGGER.warning(
            "shutdown.timeout",
            extra={
                "context": {
                    "active_requests": _SHUTDOWN_MANAGER.active_requests,
                    "timeout_seconds": config.shutdown_timeout.total_seconds(),
                }
            },
        )
    try:
        APP_STATE.store.close()
    except Exception:
        LOGGER.warning("Failed to close tool store", exc_info=True)
    metrics.install_registry(None)
    _remove_route(_METRICS_ROUTE_NAME)
    _remove_route(_ADMIN_ROUTE_NAME)
    APP_STATE = None


def get_state() -> AppState:
    if APP_STATE is None:
        raise UtilityHubError(CONFIG_ERROR, "Server is not initialised")
    return APP_STATE


def success(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {"ok": True, **payload}


def failure(error: UtilityHubError) -> dict[str, Any]:
    metrics.record_error(error.code)
    return {"ok": False, "error": error.to_dict()}


def _shutdown_protected(func):
    @wraps(func)
    async def wrapper(*args, **kwargs):
        release = _SHUTDOWN_MANAGER.try_enter()
        if release is None:
            return failure(UtilityHubError(CONFIG_ERROR, "Server is shutting down"))
        try:
            return await func(*args, **kwargs)
        finally:
            release()

    return wrapper


def _storage_error_guard(func):
    """Convert StorageError exceptions into structured failure responses."""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except StorageError as exc:
            LOGGER.error("admin.storage_failed", extra={"context": {"message": exc.message}})
            return failure(exc)

    return wrapper


def _warn_if_shadowed(name: str) -> None:
    state = get_state()
    if name in state.dispatcher.builtin_names:
        LOGGER.warning(
            "admin.shadowed_builtin",
            extra={"context": {"tool": name, "detail": "builtin tools take precedence; the custom tool is hidden"}},
        )


@_shutdown_protected
@_storage_error_guard
async def _custom_tool_list_impl() -> dict[str, Any]:
    state = get_state()
    descriptors = await asyncio.to_thread(state.store.list)
    tools = [{**descriptor.to_dict(), "isCustom": True} for descriptor in descriptors]
    return success({"tools": tools, "source": "database" if state.config.use_db else "local"})


@_shutdown_protected
@_storage_error_guard
async def _custom_tool_upsert_impl(payload: Any) -> dict[str, Any]:
    try:
        descriptor = parse_descriptor_payload(payload)
    except UtilityHubError as exc:
        return failure(exc)
    _warn_if_shadowed(descriptor.name)
    cache = get_state().cache
    await cache.upsert(descriptor)
    await cache.ensure_fresh()
    metrics.record_operation("upsert")
    LOGGER.info("admin.upsert", extra={"context": {"tool": descriptor.name, "kind": descriptor.kind}})
    return success({"tool": {**descriptor.to_dict(), "isCustom": True}})


@_shutdown_protected
@_storage_error_guard
async def _custom_tool_rename_impl(old_name: Any, payload: Any) -> dict[str, Any]:
    if not isinstance(old_name, str) or not old_name.strip():
        return failure(UtilityHubError(VALIDATION_ERROR, "oldName must be a non-empty string"))
    try:
        descriptor = parse_descriptor_payload(payload)
    except UtilityHubError as exc:
        return failure(exc)
    _warn_if_shadowed(descriptor.name)
    cache = get_state().cache
    await cache.rename(old_name.strip(), descriptor)
    await cache.ensure_fresh()
    metrics.record_operation("upsert")
    LOGGER.info(
        "admin.rename",
        extra={"context": {"old_name": old_name, "tool": descriptor.name}},
    )
    return success({"tool": {**descriptor.to_dict(), "isCustom": True}})


@_shutdown_protected
@_storage_error_guard
async def _custom_tool_delete_impl(name: Any) -> dict[str, Any]:
    if not isinstance(name, str) or not name.strip():
        return failure(UtilityHubError(VALIDATION_ERROR, "Tool name is required"))
    cache = get_state().cache
    removed = await cache.delete(name.strip())
    await cache.ensure_fresh()
    if not removed:
        return failure(UtilityHubError(NOT_FOUND, f"Tool '{name}' not found"))
    metrics.record_operation("delete")
    LOGGER.info("admin.delete", extra={"context": {"tool": name}})
    return success({"deleted": name.strip()})


async def _list_tools_impl() -> list[dict[str, Any]]:
    listings = await get_state().dispatcher.list_tools()
    return [listing.to_dict() for listing in listings]


async def _call_tool_impl(name: str, arguments: Mapping[str, Any] | None = None) -> Mapping[str, Any]:
    release = _SHUTDOWN_MANAGER.try_enter()
    if release is None:
        metrics.record_error(CONFIG_ERROR)
        return failure_envelope(CONFIG_ERROR, "Server is shutting down")
    try:
        state = get_state()
        return await state.dispatcher.invoke(name, arguments)
    finally:
        release()


class ToolCallFailed(Exception):
    """Carries a failure envelope's text to the MCP layer, which marks the result as an error."""


_CONTENT_MODELS = {
    "text": mcp_types.TextContent,
    "image": mcp_types.ImageContent,
    "resource": mcp_types.EmbeddedResource,
}


def _to_content_blocks(envelope: Mapping[str, Any]) -> list[Any]:
    blocks: list[Any] = []
    for item in envelope.get("content") or []:
        model = _CONTENT_MODELS.get(item.get("type")) if isinstance(item, Mapping) else None
        if model is None:
            blocks.append(mcp_types.TextContent(type="text", text=json.dumps(item, ensure_ascii=False, default=str)))
        else:
            blocks.append(model.model_validate(item))
    return blocks


@SERVER._mcp_server.list_tools()
async def _handle_list_tools() -> list[mcp_types.Tool]:
    tools = await _list_tools_impl()
    return [
        mcp_types.Tool(name=tool["name"], description=tool["description"], inputSchema=tool["inputSchema"])
        for tool in tools
    ]


@SERVER._mcp_server.call_tool(validate_input=False)
async def _handle_call_tool(name: str, arguments: dict[str, Any] | None) -> list[Any]:
    envelope = await _call_tool_impl(name, arguments)
    if envelope.get("isError"):
        text = "\n".join(
            str(item.get("text", "")) for item in envelope.get("content") or [] if isinstance(item, Mapping)
        )
        raise ToolCallFailed(text)
    return _to_content_blocks(envelope)


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for running the Utility Hub server."""

    configure_logging()
    try:
        config = load_config(argv)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        raise SystemExit(1) from exc
    LOGGER.info(
        "Configuration loaded",
        extra={
            "context": {
                "storage_dir": str(config.storage_dir),
                "use_db": config.use_db,
                "enable_stdio": config.enable_stdio,
                "enable_http": config.enable_http,
                "enable_sse": config.enable_sse,
                "enable_metrics": config.enable_metrics,
                "enable_admin_api": config.enable_admin_api,
            }
        },
    )

    try:
        initialize_app(config)
    except StorageError as exc:
        LOGGER.error(
            "Failed to initialize storage",
            exc_info=exc,
            extra={"context": exc.details or {}},
        )
        raise SystemExit(1) from exc

    try:
        if config.enable_stdio:
            run_stdio(SERVER)
        else:
            LOGGER.info("Stdio transport disabled")

        if config.enable_http or config.enable_sse or config.enable_metrics or config.enable_admin_api:
            http_config = HttpTransportConfig(
                host=config.http_host,
                port=config.http_port,
                http_path=config.http_path,
                sse_path=config.sse_path,
                metrics_path=config.metrics_path,
                admin_path=config.admin_path,
                enable_metrics=config.enable_metrics,
                enable_http=config.enable_http,
                enable_sse=config.enable_sse,
                enable_admin_api=config.enable_admin_api,
                socket_path=config.http_socket_path,
            )
            run_http(SERVER, http_config)
        else:
            LOGGER.info("HTTP/SSE transports disabled")
    finally:
        shutdown_app()


if __name__ == "__main__":  # pragma: no cover - manual invocation only
    main()
