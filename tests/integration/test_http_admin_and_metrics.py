from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import AsyncIterator, Tuple

import httpx
import pytest

from utility_hub import load_config
from utility_hub.server import SERVER, initialize_app, shutdown_app
from utility_hub.transports.http import HttpTransportConfig, build_transport_app

HELLO_SHA256 = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"
MCP_HEADERS = {"Accept": "application/json, text/event-stream"}


def _parse_sse_json(body: str) -> dict[str, object]:
    for line in body.splitlines():
        if line.startswith("data: "):
            return json.loads(line[6:])
    raise AssertionError(f"No data line found in SSE payload: {body!r}")


@asynccontextmanager
async def _http_test_client(tmp_path, *extra: str) -> AsyncIterator[Tuple[httpx.AsyncClient, HttpTransportConfig]]:
    argv = [
        "--enable-http",
        "true",
        "--enable-sse",
        "true",
        "--enable-metrics",
        "true",
        "--enable-admin-api",
        "true",
        "--storage-dir",
        str(tmp_path / "storage"),
        *extra,
    ]
    config = load_config(argv=argv, environ={})
    initialize_app(config)
    try:
        http_config = HttpTransportConfig(
            host="127.0.0.1",
            port=0,
            http_path=config.http_path,
            sse_path=config.sse_path,
            metrics_path=config.metrics_path,
            admin_path=config.admin_path,
            enable_metrics=config.enable_metrics,
            enable_http=config.enable_http,
            enable_sse=config.enable_sse,
            enable_admin_api=config.enable_admin_api,
            socket_path=None,
        )
        app = build_transport_app(SERVER, http_config)
        async with app.router.lifespan_context(app):
            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                yield client, http_config
    finally:
        shutdown_app()


async def _initialize_session(client: httpx.AsyncClient, path: str) -> str:
    init_payload = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "initialize",
        "params": {
            "protocolVersion": "2025-06-18",
            "capabilities": {},
            "clientInfo": {"name": "test-client", "version": "0.0.0"},
        },
    }
    response = await client.post(path, json=init_payload, headers=MCP_HEADERS)
    assert response.status_code == 200
    assert _parse_sse_json(response.text)["id"] == 1
    session_id = response.headers["mcp-session-id"]
    await client.post(
        path,
        json={"jsonrpc": "2.0", "method": "notifications/initialized"},
        headers={**MCP_HEADERS, "mcp-session-id": session_id},
    )
    return session_id


async def _rpc(client: httpx.AsyncClient, path: str, session_id: str, request_id: int, method: str, params: dict) -> dict:
    response = await client.post(
        path,
        json={"jsonrpc": "2.0", "id": request_id, "method": method, "params": params},
        headers={**MCP_HEADERS, "Content-Type": "application/json", "mcp-session-id": session_id},
    )
    assert response.status_code == 200
    event = _parse_sse_json(response.text)
    assert event["id"] == request_id
    return event["result"]  # type: ignore[return-value]


@pytest.mark.anyio
async def test_http_call_builtin_tool(tmp_path) -> None:
    async with _http_test_client(tmp_path) as (client, config):
        session_id = await _initialize_session(client, config.http_path)

        result = await _rpc(
            client,
            config.http_path,
            session_id,
            2,
            "tools/call",
            {"name": "hash_generator", "arguments": {"text": "hello", "algorithm": "sha256"}},
        )

        assert result["isError"] is False
        assert HELLO_SHA256 in result["content"][0]["text"]


@pytest.mark.anyio
async def test_http_failures_are_flagged_as_errors(tmp_path) -> None:
    async with _http_test_client(tmp_path) as (client, config):
        session_id = await _initialize_session(client, config.http_path)

        result = await _rpc(client, config.http_path, session_id, 2, "tools/call", {"name": "missing", "arguments": {}})

        assert result["isError"] is True
        assert result["content"][0]["text"].startswith("NOT_FOUND:")


@pytest.mark.anyio
async def test_admin_api_round_trip_is_visible_over_mcp(tmp_path) -> None:
    async with _http_test_client(tmp_path) as (client, config):
        tool = {
            "name": "shout",
            "description": "Upper-case text",
            "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
            "customLogic": "return params['text'].upper()",
        }
        created = await client.post(config.admin_path, json=tool)
        assert created.status_code == 200
        assert created.json()["tool"]["name"] == "shout"

        listed = await client.get(config.admin_path)
        assert listed.status_code == 200
        assert [item["name"] for item in listed.json()["tools"]] == ["shout"]

        session_id = await _initialize_session(client, config.http_path)
        tools = await _rpc(client, config.http_path, session_id, 2, "tools/list", {})
        assert "shout" in [item["name"] for item in tools["tools"]]
        called = await _rpc(
            client, config.http_path, session_id, 3, "tools/call", {"name": "shout", "arguments": {"text": "hey"}}
        )
        assert called["content"][0]["text"] == "HEY"

        renamed = await client.put(config.admin_path, json={"oldName": "shout", "tool": {**tool, "name": "yell"}})
        assert renamed.status_code == 200

        deleted = await client.delete(config.admin_path, params={"name": "yell"})
        assert deleted.status_code == 200
        assert deleted.json() == {"ok": True, "deleted": "yell"}

        missing = await client.delete(config.admin_path, params={"name": "yell"})
        assert missing.status_code == 404


@pytest.mark.anyio
async def test_admin_api_rejects_invalid_payloads(tmp_path) -> None:
    async with _http_test_client(tmp_path) as (client, config):
        invalid = await client.post(config.admin_path, json={"name": "x", "customType": "plugin"})
        malformed = await client.post(
            config.admin_path, content=b"{nope", headers={"Content-Type": "application/json"}
        )
        nameless_delete = await client.delete(config.admin_path)

        assert invalid.status_code == 400
        assert invalid.json()["error"]["code"] == "VALIDATION_ERROR"
        assert malformed.status_code == 400
        assert nameless_delete.status_code == 400


@pytest.mark.anyio
async def test_metrics_endpoint_exposes_prometheus(tmp_path) -> None:
    async with _http_test_client(tmp_path) as (client, config):
        await client.get(config.admin_path)
        response = await client.get(config.metrics_path)

        assert response.status_code == 200
        body = response.text
        assert "utility_hub_ops_total" in body
        assert "utility_hub_builtin_tools_current 14" in body
        assert "utility_hub_uptime_seconds" in body


@pytest.mark.anyio
async def test_admin_api_absent_when_disabled(tmp_path) -> None:
    async with _http_test_client(tmp_path, "--enable-admin-api", "false") as (client, config):
        response = await client.get("/api/tools")

        assert response.status_code == 404
