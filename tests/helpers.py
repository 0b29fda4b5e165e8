"""Test doubles shared across the test modules."""

import base64
import json
from typing import Any, Optional, Union

import httpx

from gateway_client.catalog import load_catalog
from gateway_client.client import ToolGatewayClient
from shared.models import ModelReply, ToolCall
from store.sql import SQLConversationStore

GATEWAY_URL = "http://gateway.test"

IMPRESSIONS = {
    "campaign_id": "c1",
    "impressions": 1200,
    "posters": [
        {"poster_id": "p1", "poster_name": "Spring Sale", "impressions": 700, "play_time": 15},
        {"poster_id": "p2", "poster_name": "Summer Sale", "impressions": 500},
    ],
}


Route = Union[tuple[int, Any], httpx.Response, Exception]


class GatewayStub:
    """Fake tool gateway: records requests and answers from a route table."""

    def __init__(self, routes: Optional[dict[tuple[str, str], Route]] = None) -> None:
        self.routes: dict[tuple[str, str], Route] = dict(routes or {})
        self.requests: list[httpx.Request] = []

    def route(self, method: str, path: str, status: int = 200, body: Any = None) -> None:
        self.routes[(method, path)] = (status, body if body is not None else {})

    def fail(self, method: str, path: str, error: Exception) -> None:
        self.routes[(method, path)] = error

    def respond(self, method: str, path: str, response: httpx.Response) -> None:
        self.routes[(method, path)] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "not_found"})
        if isinstance(route, Exception):
            raise route
        if isinstance(route, httpx.Response):
            return route
        status, body = route
        if isinstance(body, (bytes, str)):
            return httpx.Response(status, content=body)
        return httpx.Response(status, json=body)

    def client(self, api_key: str = "gw-key") -> ToolGatewayClient:
        return ToolGatewayClient(
            base_url=GATEWAY_URL,
            api_key=api_key,
            catalog=load_catalog(),
            transport=httpx.MockTransport(self.handler)
        )


def tool_call(name: str, arguments: Union[str, dict[str, Any]], call_id: str = "call_1") -> ToolCall:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return ToolCall(id=call_id, name=name, arguments=arguments)


def tool_reply(*calls: ToolCall, content: str = "") -> ModelReply:
    return ModelReply(content=content, tool_calls=list(calls), finish_reason="tool_calls")


def final_reply(content: str) -> ModelReply:
    return ModelReply(content=content, finish_reason="stop")


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class RefusedSession:
    """Session whose connection attempt fails the way a down database does."""

    async def __aenter__(self):
        raise ConnectionRefusedError(111, "Connect call failed ('127.0.0.1', 1)")

    async def __aexit__(self, *exc_info):
        return False


def unreachable_sql_store(tmp_path) -> SQLConversationStore:
    store = SQLConversationStore(f"sqlite+aiosqlite:///{tmp_path}/down.db")
    store._sessions = RefusedSession
    return store
