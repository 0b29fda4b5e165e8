"""Tool gateway client.

Executes one catalog tool as one HTTP request against the tool gateway.
Handles authentication, request formatting, and transport errors.
"""

import json
import time
import uuid
from typing import Any, Optional, Sequence
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from gateway_client.catalog import ToolCatalog, ToolDefinition
from shared.errors import AgentError, ErrorKind, ToolArgumentsError
from shared.logging import get_logger
from shared.models import Attachment

logger = get_logger(__name__)


class GatewayClientError(AgentError):
    """Base exception for tool gateway client errors."""
    kind = ErrorKind.UPSTREAM_UNAVAILABLE
    status_code = 502


class GatewayConnectionError(GatewayClientError):
    """Connection to the tool gateway failed."""
    pass


class GatewayResult(BaseModel):
    """Raw outcome of one gateway call. ``status_code`` is 0 when no response arrived."""
    model_config = ConfigDict(frozen=True)

    tool_name: str
    status_code: int
    body: bytes = b""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and 200 <= self.status_code < 300

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json_body(self) -> Any:
        return json.loads(self.body)


def _render_path(tool: ToolDefinition, arguments: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """Substitute path parameters; return the path and the remaining arguments."""
    path = tool.path
    remaining = dict(arguments)
    for name in tool.path_params:
        value = remaining.pop(name, None)
        if value is None or str(value).strip() == "":
            raise ToolArgumentsError(tool.name, [f"{name}: path parameter is required"])
        path = path.replace("{" + name + "}", quote(str(value).strip(), safe=""))
    return path, remaining


def _drop_none(arguments: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in arguments.items() if v is not None}


def _form_fields(arguments: dict[str, Any]) -> dict[str, Any]:
    """Multipart form fields; lists become repeated fields."""
    fields: dict[str, Any] = {}
    for name, value in _drop_none(arguments).items():
        if isinstance(value, (list, tuple)):
            fields[name] = [str(v) for v in value]
        else:
            fields[name] = str(value)
    return fields


class ToolGatewayClient:
    """
    Client for the tool gateway.

    The client is stateless between calls and never retries or caches a
    tool execution. Each ``invoke`` maps to at most one outbound request.
    """

    catalog: ToolCatalog

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        catalog: ToolCatalog,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        """
        Initialize the gateway client.

        Args:
            base_url: Tool gateway base URL
            api_key: Key sent as ``X-API-Key``
            catalog: Tools this client may execute
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.base_url = base_url.strip().rstrip("/")
        self.timeout = timeout
        self.catalog = catalog
        self._api_key = (api_key or "").strip()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_key:
            headers["X-API-Key"] = self._api_key
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self._get_headers(),
                transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ToolGatewayClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    @retry(
        retry=retry_if_exception_type(GatewayConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True
    )
    async def health_check(self) -> dict[str, Any]:
        """
        Check tool gateway reachability.

        Returns:
            Health payload reported by the gateway

        Raises:
            GatewayConnectionError: If the gateway is unreachable
            GatewayClientError: If the gateway reports a failure
        """
        try:
            client = await self._get_client()
            response = await client.get("/health")
            response.raise_for_status()
            return response.json()
        except httpx.RequestError as e:
            raise GatewayConnectionError(f"Cannot connect to tool gateway: {e}")
        except httpx.HTTPStatusError as e:
            raise GatewayClientError(f"Health check failed: {e}")
        except ValueError as e:
            raise GatewayClientError(f"Health check returned invalid JSON: {e}")

    async def invoke(
        self,
        tool_name: str,
        arguments: Any,
        attachments: Sequence[Attachment] = (),
        request_id: Optional[str] = None
    ) -> GatewayResult:
        """
        Execute a catalog tool against the gateway.

        Args:
            tool_name: Catalog tool name
            arguments: Decoded JSON arguments from the model
            attachments: Files of the current turn, sent when the tool uploads them
            request_id: Request ID forwarded as ``X-Request-ID``

        Returns:
            Gateway result; request failures (transport or decoding) are reported
            with status 0

        Raises:
            UnknownToolError: If the tool is not in the catalog
            ToolArgumentsError: If the arguments do not satisfy the tool schema
        """
        tool, prepared = self.catalog.prepare_arguments(tool_name, arguments)
        path, remaining = _render_path(tool, prepared)
        request_id = request_id or str(uuid.uuid4())

        request_kwargs: dict[str, Any] = {"headers": {"X-Request-ID": request_id}}
        if tool.body == "query":
            request_kwargs["params"] = _drop_none(remaining)
        elif tool.body == "json":
            request_kwargs["json"] = _drop_none(remaining)
        else:
            request_kwargs["data"] = _form_fields(remaining)
            if tool.uploads_attachments:
                if not attachments:
                    raise ToolArgumentsError(tool.name, ["no attachments to upload"])
                request_kwargs["files"] = [
                    ("files", (a.file_name, a.content(), a.content_type))
                    for a in attachments
                ]

        started = time.monotonic()
        try:
            client = await self._get_client()
            response = await client.request(tool.method, path, **request_kwargs)
        except httpx.RequestError as e:
            logger.warning(
                "Tool gateway request failed",
                tool=tool.name,
                request_id=request_id,
                error=str(e)
            )
            return GatewayResult(
                tool_name=tool.name,
                status_code=0,
                error=f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            )

        logger.info(
            "Tool executed",
            tool=tool.name,
            status=response.status_code,
            bytes=len(response.content),
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            request_id=request_id
        )

        return GatewayResult(
            tool_name=tool.name,
            status_code=response.status_code,
            body=response.content
        )
