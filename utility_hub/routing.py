"""Route API tool arguments to the query string or JSON body and perform the call."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx

from .errors import CONFIG_ERROR, DOWNSTREAM_ERROR, UtilityHubError
from .logging import get_logger
from .models import ToolDescriptor

logger = get_logger(__name__)

__all__ = ["RoutedParameters", "PreparedRequest", "ApiToolClient", "route", "build_request"]

DEFAULT_API_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True, slots=True)
class RoutedParameters:
    query: dict[str, Any] = field(default_factory=dict)
    body: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PreparedRequest:
    method: str
    url: str
    headers: dict[str, str]
    body: str | None = None


def route(descriptor: ToolDescriptor, arguments: Mapping[str, Any]) -> RoutedParameters:
    """Partition ``arguments`` so that each key lands in exactly one bucket.

    Query schema membership wins over body schema membership.  Keys declared in
    neither follow the method: ``GET`` sends them in the query string, every
    other method in the body.
    """

    method = descriptor.api.method.upper() if descriptor.api is not None else "GET"
    query_schema = descriptor.query_schema
    body_schema = descriptor.body_schema
    query: dict[str, Any] = {}
    body: dict[str, Any] = {}
    for key, value in arguments.items():
        if value is None:
            continue
        if query_schema is not None and key in query_schema:
            query[key] = value
        elif body_schema is not None and key in body_schema:
            body[key] = value
        elif method == "GET":
            query[key] = value
        else:
            body[key] = value
    return RoutedParameters(query=query, body=body)


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    return str(value)


def build_request(descriptor: ToolDescriptor, routed: RoutedParameters) -> PreparedRequest:
    api = descriptor.api
    if api is None or not api.url.strip():
        raise UtilityHubError(
            CONFIG_ERROR,
            f"Tool '{descriptor.name}' has no target URL configured",
            details={"tool": descriptor.name},
        )
    method = api.method.upper()
    parts = urlsplit(api.url.strip())
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise UtilityHubError(
            CONFIG_ERROR,
            f"Tool '{descriptor.name}' has an invalid target URL: {api.url}",
            details={"tool": descriptor.name},
        )
    # The configured query string is replaced, not merged.
    query = urlencode([(key, _query_value(value)) for key, value in routed.query.items()])
    url = urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))

    headers = dict(api.headers)
    body: str | None = None
    if method != "GET" and routed.body:
        body = json.dumps(routed.body, ensure_ascii=False)
        if not any(name.lower() == "content-type" for name in headers):
            headers["Content-Type"] = "application/json"
    return PreparedRequest(method=method, url=url, headers=headers, body=body)


def _format_response_text(response: httpx.Response) -> str:
    text = response.text
    try:
        rendered = json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    except ValueError:
        rendered = json.dumps(text, ensure_ascii=False)
    return f"API Response ({response.status_code} {response.reason_phrase}):\n{rendered}"


class ApiToolClient:
    """Performs a single outbound request for an API tool; no retries."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_API_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    async def execute(self, descriptor: ToolDescriptor, arguments: Mapping[str, Any]) -> str:
        request = build_request(descriptor, route(descriptor, arguments))
        logger.debug(
            "api.request",
            extra={"context": {"tool": descriptor.name, "method": request.method, "url": request.url}},
        )
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    content=request.body.encode("utf-8") if request.body is not None else None,
                )
        except httpx.HTTPError as exc:
            raise UtilityHubError(
                DOWNSTREAM_ERROR,
                f"Request to {request.url} failed: {exc}",
                details={"tool": descriptor.name},
            ) from exc

        if not response.is_success:
            raise UtilityHubError(
                DOWNSTREAM_ERROR,
                f"HTTP {response.status_code} {response.reason_phrase}: {response.text}",
                details={"tool": descriptor.name, "status": response.status_code, "body": response.text},
            )
        return _format_response_text(response)
