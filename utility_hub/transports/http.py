"""Streamable HTTP and SSE transports served by uvicorn."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import uvicorn
from fastmcp import FastMCP
from fastmcp.server.http import (
    SseServerTransport,
    StreamableHTTPASGIApp,
    StreamableHTTPSessionManager,
    create_base_app,
)
from fastmcp.utilities.logging import temporary_log_level
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import BaseRoute, Mount, Route

from ..logging import get_logger

logger = get_logger(__name__)


@dataclass(slots=True)
class HttpTransportConfig:
    """Listener and route settings for the HTTP side of the server."""

    host: str
    port: int
    http_path: str
    sse_path: str
    metrics_path: str
    enable_metrics: bool
    enable_http: bool
    enable_sse: bool
    admin_path: str = "/api/tools"
    enable_admin_api: bool = False
    socket_path: Path | None = None


def describe_routes(config: HttpTransportConfig) -> Mapping[str, str]:
    """Return a mapping of logical endpoints to their configured paths."""

    routes: dict[str, str] = {}
    if config.enable_http:
        routes["http"] = _normalise_path(config.http_path)
    if config.enable_sse:
        routes["sse"] = _normalise_path(config.sse_path)
        routes["sse_messages"] = _derive_message_path(config.sse_path)
    if config.enable_metrics:
        routes["metrics"] = _normalise_path(config.metrics_path)
    if config.enable_admin_api:
        routes["admin"] = _normalise_path(config.admin_path)
    return routes


def run_http(server: FastMCP, config: HttpTransportConfig) -> None:
    """Run the HTTP app until uvicorn exits."""

    if not (config.enable_http or config.enable_sse or config.enable_metrics or config.enable_admin_api):
        logger.info("transport.http.skip_all_disabled")
        return

    context = {
        "host": config.host,
        "port": config.port,
        "routes": dict(describe_routes(config)),
        "socket_path": str(config.socket_path) if config.socket_path else None,
    }

    async def _serve() -> None:
        app = build_transport_app(server, config)
        log_level = logger.level if isinstance(logger.level, int) else None

        uvicorn_kwargs: dict[str, object] = {
            "timeout_graceful_shutdown": 0,
            "lifespan": "on",
        }
        if config.socket_path is not None:
            uvicorn_kwargs["uds"] = str(config.socket_path)

        uvicorn_config = uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            **uvicorn_kwargs,
        )
        server_instance = uvicorn.Server(uvicorn_config)
        logger.info(
            "transport.http.serve",
            extra={"context": {**context, "path": getattr(app.state, "path", "/")}},
        )
        with temporary_log_level(level=log_level):
            await server_instance.serve()

    logger.info("transport.http.start", extra={"context": context})
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("transport.http.interrupted", extra={"context": context})
        raise
    except Exception:
        logger.exception("transport.http.failed", extra={"context": context})
        raise
    else:
        logger.info("transport.http.stop", extra={"context": context})


def build_transport_app(server: FastMCP, config: HttpTransportConfig):
    """Create the Starlette application exposing MCP over HTTP/SSE plus custom routes."""

    routes: list[BaseRoute] = []
    session_manager: StreamableHTTPSessionManager | None = None
    settings = server._deprecated_settings  # type: ignore[attr-defined]

    http_path = _normalise_path(config.http_path)
    sse_path = _normalise_path(config.sse_path)

    if config.enable_http:
        session_manager = StreamableHTTPSessionManager(
            app=server._mcp_server,
            event_store=None,
            json_response=settings.json_response,
            stateless=settings.stateless_http,
        )
        routes.append(
            Route(
                http_path,
                endpoint=StreamableHTTPASGIApp(session_manager),
                methods=["GET", "POST", "DELETE"],
            )
        )

    if config.enable_sse:
        routes.extend(_build_sse_routes(server, sse_path, _derive_message_path(config.sse_path)))

    # Metrics and admin endpoints are registered on the server with custom_route.
    routes.extend(server._get_additional_http_routes())

    @asynccontextmanager
    async def lifespan(_app):
        async with server._lifespan_manager():
            if session_manager is not None:
                async with session_manager.run():
                    yield
            else:
                yield

    app = create_base_app(
        routes=routes,
        middleware=[],
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.fastmcp_server = server
    app.state.path = http_path if config.enable_http else sse_path
    return app


def _build_sse_routes(server: FastMCP, sse_path: str, message_path: str) -> list[BaseRoute]:
    sse_transport = SseServerTransport(message_path)

    async def sse_endpoint(request: Request) -> Response:
        async with sse_transport.connect_sse(request.scope, request.receive, request._send) as streams:  # type: ignore[attr-defined]
            await server._mcp_server.run(
                streams[0],
                streams[1],
                server._mcp_server.create_initialization_options(),
            )
        return Response()

    return [
        Route(sse_path, endpoint=sse_endpoint, methods=["GET"]),
        Mount(message_path, app=sse_transport.handle_post_message),
    ]


def _normalise_path(path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/")
    return path


def _derive_message_path(sse_path: str) -> str:
    base = _normalise_path(sse_path)
    if base == "/":
        return "/messages"
    return f"{base}/messages"
