"""Remote tool provider speaking JSON-RPC over HTTP.

Servers follow the MCP streamable-HTTP conventions: an ``initialize``
handshake, ``tools/list`` for discovery and ``tools/call`` for execution.
Responses may come back as plain JSON or as a single-shot event stream.
Tools are published to the catalogue as ``<server>:<tool>``.
"""

from __future__ import annotations

import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .base import EMPTY_OBJECT_SCHEMA, ToolCatalogueEntry, ToolContext, ToolHandler
from .errors import ToolExecutionError

LOGGER = logging.getLogger(__name__)

__all__ = ["RemoteServerConfig", "RemoteToolProvider", "JsonRpcError", "PROTOCOL_VERSION"]

PROTOCOL_VERSION = "2025-03-26"
_SESSION_HEADER = "mcp-session-id"
_INTERNAL_ERROR = -32603


class JsonRpcError(RuntimeError):
    """Raised when a server answers with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(f"JSON-RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data


@dataclass(slots=True, frozen=True)
class RemoteServerConfig:
    """Connection details for one remote tool server.

    ``requires_credentials`` marks every tool of the server as needing that
    credential kind (the Gmail server needs ``"gmail"``).
    """

    name: str
    url: str
    requires_credentials: str | None = None
    timeout: float | None = None

    def __post_init__(self) -> None:
        if not self.name or ":" in self.name:
            raise ValueError("Remote server name must be non-empty and must not contain ':'")
        if not self.url:
            raise ValueError(f"Remote server {self.name} has no URL")


class RemoteToolProvider:
    """Catalogue provider backed by a remote tool server."""

    def __init__(
        self,
        config: RemoteServerConfig,
        *,
        client: httpx.AsyncClient | None = None,
        request_timeout: float = 30.0,
        max_attempts: int = 3,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 4.0,
        client_version: str = "0.1.0",
    ) -> None:
        self._config = config
        self._client = client or httpx.AsyncClient(timeout=request_timeout)
        self._owns_client = client is None
        self._max_attempts = max(1, int(max_attempts))
        self._retry_min_seconds = retry_min_seconds
        self._retry_max_seconds = retry_max_seconds
        self._client_version = client_version
        self._ids = itertools.count(1)
        self._session_id: str | None = None
        self._initialized = False

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def config(self) -> RemoteServerConfig:
        return self._config

    async def list_tools(self) -> list[ToolCatalogueEntry]:
        """Discover the server's tools; an unreachable server contributes none."""
        try:
            async for attempt in self._retrying():
                with attempt:
                    await self._ensure_initialized()
                    result = await self._request("tools/list", {})
        except (httpx.HTTPError, JsonRpcError, ValueError) as exc:
            LOGGER.warning("Tool server %s unavailable: %s", self.name, exc)
            return []
        except Exception:
            LOGGER.exception("Unexpected failure listing tools on %s", self.name)
            return []

        entries: list[ToolCatalogueEntry] = []
        for tool in result.get("tools") or ():
            if not isinstance(tool, Mapping) or not tool.get("name"):
                continue
            original = str(tool["name"])
            schema = tool.get("inputSchema")
            entries.append(
                ToolCatalogueEntry(
                    name=f"{self.name}:{original}",
                    description=str(tool.get("description") or ""),
                    parameters=schema if isinstance(schema, Mapping) else EMPTY_OBJECT_SCHEMA,
                    handler=self._handler_for(original),
                    requires_credentials=self._config.requires_credentials,
                    timeout=self._config.timeout,
                    server=self.name,
                )
            )
        LOGGER.debug("Tool server %s listed %d tool(s)", self.name, len(entries))
        return entries

    async def call_tool(self, tool_name: str, context: ToolContext, arguments: Mapping[str, Any]) -> Any:
        """Invoke ``tool_name`` on the server. Not retried."""
        headers: dict[str, str] = {}
        if context.credentials is not None:
            headers.update(context.credentials.to_headers())
        try:
            await self._ensure_initialized()
            result = await self._request(
                "tools/call",
                {"name": tool_name, "arguments": dict(arguments)},
                headers=headers,
            )
        except JsonRpcError as exc:
            raise ToolExecutionError(
                message=f"Remote tool '{tool_name}' failed: {exc.message}",
                tool_name=tool_name,
                details={"server": self.name, "code": exc.code},
            ) from exc

        content = _render_content(result.get("content"))
        if result.get("isError"):
            raise ToolExecutionError(
                message=content if isinstance(content, str) and content else f"Remote tool '{tool_name}' reported an error",
                tool_name=tool_name,
                details={"server": self.name},
            )
        return content

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _handler_for(self, tool_name: str) -> ToolHandler:
        async def _handler(context: ToolContext, arguments: dict[str, Any]) -> Any:
            return await self.call_tool(tool_name, context, arguments)

        _handler.__name__ = f"remote_{self.name}_{tool_name}"
        return _handler

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._retry_min_seconds, max=self._retry_max_seconds),
            retry=retry_if_exception_type((httpx.TransportError, httpx.HTTPStatusError)),
        )

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        await self._request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": f"vibeagent-{self.name}-client", "version": self._client_version},
            },
        )
        await self._notify("notifications/initialized")
        self._initialized = True

    def _headers(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json, text/event-stream"}
        if self._session_id:
            headers[_SESSION_HEADER] = self._session_id
        if extra:
            headers.update(extra)
        return headers

    async def _notify(self, method: str) -> None:
        payload = {"jsonrpc": "2.0", "method": method}
        response = await self._client.post(self._config.url, json=payload, headers=self._headers())
        response.raise_for_status()

    async def _request(
        self,
        method: str,
        params: Mapping[str, Any],
        *,
        headers: Mapping[str, str] | None = None,
    ) -> dict[str, Any]:
        request_id = next(self._ids)
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": dict(params)}
        LOGGER.debug("-> %s %s (id=%s)", self.name, method, request_id)
        response = await self._client.post(self._config.url, json=payload, headers=self._headers(headers))
        response.raise_for_status()
        session_id = response.headers.get(_SESSION_HEADER)
        if session_id:
            self._session_id = session_id

        message = _decode_response(response, request_id)
        error = message.get("error")
        if error:
            if not isinstance(error, Mapping):
                raise JsonRpcError(_INTERNAL_ERROR, str(error))
            code = error.get("code")
            raise JsonRpcError(
                code if isinstance(code, int) and not isinstance(code, bool) else _INTERNAL_ERROR,
                str(error.get("message", "")),
                error.get("data"),
            )
        result = message.get("result")
        return result if isinstance(result, dict) else {}


def _decode_response(response: httpx.Response, request_id: int) -> dict[str, Any]:
    content_type = response.headers.get("content-type", "")
    if content_type.startswith("text/event-stream"):
        for line in response.text.splitlines():
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if not data:
                continue
            message = json.loads(data)
            if isinstance(message, dict) and message.get("id") == request_id:
                return message
        raise ValueError(f"No response for request {request_id} in event stream")
    message = response.json()
    if not isinstance(message, dict):
        raise ValueError("JSON-RPC response must be an object")
    return message


def _render_content(content: Any) -> Any:
    """Collapse MCP content parts; all-text content becomes one string."""
    if not isinstance(content, list):
        return content
    texts: list[str] = []
    for part in content:
        if isinstance(part, Mapping) and part.get("type") == "text":
            texts.append(str(part.get("text", "")))
        else:
            return content
    return "\n".join(texts)
