"""
Tool backends - named remote tool servers reached by the dispatcher.

HttpToolBackend speaks MCP-style JSON-RPC 2.0 over HTTP:
``initialize`` and ``tools/list`` on connect, ``tools/call`` per operation.
"""

import itertools
from typing import Any, Optional

import httpx
import structlog

from src.core.models import BackendStatus

logger = structlog.get_logger()

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "deployforge", "version": "0.1.0"}


class ToolBackendError(Exception):
    """A backend request failed."""

    def __init__(self, message: str, backend: str, retriable: bool = True):
        super().__init__(message)
        self.backend = backend
        self.retriable = retriable


class ToolBackend:
    """
    Base class for tool backends.

    Subclasses implement ``connect``, ``call`` and ``probe``. Status fields
    are written by the dispatcher under its lock.
    """

    def __init__(self, name: str, operations: Optional[list[str]] = None):
        self.name = name
        self.operations: list[str] = list(operations or [])
        self.status = BackendStatus.DISCONNECTED
        self.last_error: Optional[str] = None

    def supports(self, operation: str) -> bool:
        return operation in self.operations

    async def connect(self) -> list[str]:
        """Establish the connection and return the discovered operations."""
        raise NotImplementedError

    async def call(self, operation: str, params: dict[str, Any]) -> Any:
        raise NotImplementedError

    async def probe(self) -> bool:
        """Lightweight liveness check."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class HttpToolBackend(ToolBackend):
    """JSON-RPC 2.0 tool server over HTTP."""

    def __init__(
        self,
        name: str,
        url: Optional[str],
        operations: Optional[list[str]] = None,
        headers: Optional[dict[str, str]] = None,
        connect_timeout: float = 30.0,
        call_timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(name, operations)
        self.url = url
        self.headers = {"Content-Type": "application/json", "Accept": "application/json"}
        self.headers.update(headers or {})
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self._client = client
        self._owns_client = client is None
        self._ids = itertools.count(1)
        self.server_info: dict[str, Any] = {}

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers=self.headers)
        return self._client

    async def _request(self, method: str, params: dict[str, Any], timeout: float) -> Any:
        if not self.url:
            raise ToolBackendError(
                f"No URL configured for tool backend {self.name}",
                backend=self.name,
                retriable=False,
            )
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            response = await self._get_client().post(
                self.url, json=payload, headers=self.headers, timeout=timeout
            )
        except httpx.TimeoutException as e:
            raise ToolBackendError(f"Tool backend {self.name} timed out", self.name) from e
        except httpx.HTTPError as e:
            raise ToolBackendError(
                f"Tool backend {self.name} is not reachable at {self.url}: {e}", self.name
            ) from e

        if response.status_code in (401, 403):
            raise ToolBackendError(
                f"Tool backend {self.name} authentication failed", self.name, retriable=False
            )
        if response.status_code >= 400:
            raise ToolBackendError(
                f"Tool backend {self.name} answered HTTP {response.status_code}", self.name
            )

        try:
            body = response.json()
        except ValueError as e:
            raise ToolBackendError(f"Tool backend {self.name} sent invalid JSON", self.name) from e

        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ToolBackendError(f"Tool backend {self.name} error: {message}", self.name)
        return body.get("result")

    async def connect(self) -> list[str]:
        init = await self._request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "clientInfo": CLIENT_INFO,
            },
            self.connect_timeout,
        )
        self.server_info = (init or {}).get("serverInfo", {})

        listing = await self._request("tools/list", {}, self.connect_timeout)
        discovered = [tool["name"] for tool in (listing or {}).get("tools", []) if "name" in tool]
        if discovered:
            self.operations = discovered
        logger.info("tool_backend_connected", backend=self.name, operations=len(self.operations))
        return self.operations

    async def call(self, operation: str, params: dict[str, Any]) -> Any:
        return await self._request(
            "tools/call",
            {"name": operation, "arguments": params},
            self.call_timeout,
        )

    async def probe(self) -> bool:
        try:
            if self.status == BackendStatus.CONNECTED:
                await self._request("tools/list", {}, self.connect_timeout)
            else:
                await self.connect()
        except ToolBackendError as e:
            self.last_error = str(e)
            return False
        return True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
