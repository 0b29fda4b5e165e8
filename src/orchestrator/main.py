"""Orchestrator - FastAPI Application.

The orchestrator provides:
- Chat API (blocking and SSE streaming)
- Conversation endpoints scoped by caller key
- Model and tool gateway wiring
"""

import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ValidationError
from sse_starlette.sse import EventSourceResponse

from gateway_client.catalog import load_catalog
from gateway_client.client import GatewayClientError, ToolGatewayClient
from orchestrator.engine import OrchestrationEngine, TurnEngine
from orchestrator.llm import create_llm_provider
from orchestrator.mock import MockEngine
from shared.config import Settings, get_settings
from shared.errors import AgentError, ErrorKind, ForbiddenError, UnauthorizedError
from shared.logging import bind_call, get_logger, mask_key, setup_logging
from shared.models import CallContext, ChatRequest, TokenEvent
from store import ConversationStore, create_store
from store.base import DEFAULT_LIST_LIMIT

logger = get_logger(__name__)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    mode: str
    gateway: Optional[str] = None


def _validation_message(errors: list[dict[str, Any]]) -> str:
    parts = []
    for error in errors:
        location = ".".join(str(p) for p in error.get("loc", ()) if p != "body")
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


def _sse(event: str, payload: Any) -> dict[str, str]:
    return {"event": event, "data": json.dumps(payload, ensure_ascii=False)}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings: Settings = app.state.settings

    setup_logging(settings.log_level, json_output=settings.environment == "production")
    logger.info("Starting orchestrator", mode="mock" if settings.mock_mode else "live")

    settings.validate_runtime()

    owns_store = app.state.store is None
    if owns_store:
        app.state.store = create_store(settings.database)
        await app.state.store.init()

    gateway: Optional[ToolGatewayClient] = None
    if app.state.engine is None:
        if settings.mock_mode:
            app.state.engine = MockEngine(store=app.state.store)
        else:
            gateway = ToolGatewayClient(
                base_url=settings.gateway.base_url,
                api_key=settings.gateway.api_key,
                catalog=load_catalog(settings.gateway.tools_path),
                timeout=settings.gateway.timeout_seconds
            )
            app.state.engine = OrchestrationEngine(
                llm_provider=create_llm_provider(settings.llm),
                gateway=gateway,
                store=app.state.store,
                settings=settings.engine
            )
    app.state.gateway = gateway or getattr(app.state.engine, "gateway", None)

    logger.info(
        "Orchestrator started",
        gateway=settings.gateway.base_url,
        port=settings.api.port
    )

    yield

    logger.info("Shutting down orchestrator")
    if gateway is not None:
        await gateway.close()
    if owns_store:
        await app.state.store.close()


def get_engine(request: Request) -> TurnEngine:
    return request.app.state.engine


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


async def get_call_context(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header)
) -> CallContext:
    """Authenticate the caller by ``X-API-Key``; the key is the caller identity."""
    settings: Settings = request.app.state.settings
    key = (api_key or "").strip()
    if not key:
        raise UnauthorizedError("missing_x_api_key")
    if key not in settings.api.allowed_api_keys:
        logger.warning("Rejected API key", caller=mask_key(key), path=request.url.path)
        raise ForbiddenError("invalid_x_api_key")
    return CallContext(
        request_id=getattr(request.state, "request_id", None) or str(uuid.uuid4()),
        caller_key=key
    )


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[TurnEngine] = None,
    store: Optional[ConversationStore] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Application settings (defaults to ``get_settings()``)
        engine: Pre-built engine; skips model and gateway wiring
        store: Pre-built conversation store; the caller owns its lifecycle

    Returns:
        Configured application
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Campaign Chat Agent",
        description="Conversational agent over the campaign tool gateway",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.gateway = None

    if settings.api.allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.api.allowed_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "X-API-Key", "X-Request-ID"],
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.monotonic()
        logger.info("Request started", method=request.method, path=request.url.path, request_id=request_id)
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error=f"{type(e).__name__}: {e}",
                duration_ms=round((time.monotonic() - started) * 1000, 1),
                request_id=request_id
            )
            raise
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "Request finished",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            request_id=request_id
        )
        return response

    @app.exception_handler(AgentError)
    async def agent_error_handler(request: Request, exc: AgentError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "error": ErrorKind.INVALID_INPUT.value,
                "message": _validation_message(exc.errors())
            }
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            "Unhandled error",
            path=request.url.path,
            request_id=getattr(request.state, "request_id", None),
            error=str(exc),
            exc_info=True
        )
        return JSONResponse(status_code=500, content={"error": ErrorKind.INTERNAL_ERROR.value})

    @app.get("/health", response_model=HealthResponse, response_model_exclude_none=True, tags=["System"])
    async def health_check(request: Request, deep: bool = False):
        """Liveness probe; ``deep=true`` also checks the tool gateway."""
        mode = "mock" if request.app.state.settings.mock_mode else "live"
        health = HealthResponse(status="ok", mode=mode)

        gateway: Optional[ToolGatewayClient] = request.app.state.gateway
        if deep and gateway is not None:
            try:
                await gateway.health_check()
                health.gateway = "ok"
            except GatewayClientError as e:
                logger.warning("Tool gateway health check failed", error=str(e))
                health.gateway = "unreachable"
        return health

    @app.post("/chat", tags=["Chat"])
    async def chat(
        body: ChatRequest,
        ctx: CallContext = Depends(get_call_context),
        engine: TurnEngine = Depends(get_engine)
    ):
        """Run one turn and return the final answer."""
        response = await engine.run_turn(ctx.caller_key, body, ctx)
        return JSONResponse(response.to_wire())

    @app.post("/chat/stream", tags=["Chat"])
    async def chat_stream(
        request: Request,
        ctx: CallContext = Depends(get_call_context),
        engine: TurnEngine = Depends(get_engine)
    ):
        """Run one turn as Server-Sent Events: ``token`` events, then ``final`` or ``error``."""
        log = bind_call(logger, ctx.request_id, ctx.caller_key)

        body: Optional[ChatRequest] = None
        invalid: Optional[str] = None
        try:
            body = ChatRequest.model_validate(await request.json())
        except ValidationError as e:
            invalid = _validation_message(e.errors())
        except ValueError as e:
            invalid = f"request body is not valid JSON: {e}"

        async def events() -> AsyncIterator[dict[str, str]]:
            if body is None:
                yield _sse("error", {"error": ErrorKind.INVALID_INPUT.value, "message": invalid})
                return
            try:
                async for event in engine.stream_turn(ctx.caller_key, body, ctx):
                    if isinstance(event, TokenEvent):
                        yield _sse("token", {"text": event.text})
                    else:
                        yield _sse("final", event.response.to_wire())
            except AgentError as e:
                log.warning("Streamed turn failed", error=e.kind.value, message=e.message)
                yield _sse("error", e.to_dict())
            except Exception as e:
                log.error("Streamed turn crashed", error=str(e), exc_info=True)
                yield _sse("error", {"error": ErrorKind.INTERNAL_ERROR.value})

        return EventSourceResponse(events())

    @app.post("/conversations", tags=["Conversations"])
    async def create_conversation(
        ctx: CallContext = Depends(get_call_context),
        store: ConversationStore = Depends(get_store)
    ):
        """Create a conversation owned by the caller."""
        conversation = await store.create_conversation(ctx.caller_key)
        return {"data": conversation.model_dump(mode="json")}

    @app.get("/conversations/{conversation_id}", tags=["Conversations"])
    async def get_conversation(
        conversation_id: str,
        ctx: CallContext = Depends(get_call_context),
        store: ConversationStore = Depends(get_store)
    ):
        """Get a conversation owned by the caller."""
        conversation = await store.get_conversation(ctx.caller_key, conversation_id)
        return {"data": conversation.model_dump(mode="json")}

    @app.get("/conversations/{conversation_id}/messages", tags=["Conversations"])
    async def list_messages(
        conversation_id: str,
        limit: int = DEFAULT_LIST_LIMIT,
        ctx: CallContext = Depends(get_call_context),
        store: ConversationStore = Depends(get_store)
    ):
        """Most recent messages of a conversation, oldest first."""
        messages = await store.list_messages(ctx.caller_key, conversation_id, limit)
        return {"data": [m.model_dump(mode="json") for m in messages]}

    return app


def main():
    """Run the orchestrator server."""
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "orchestrator.main:create_app",
        factory=True,
        host=settings.api.host,
        port=settings.api.port,
        reload=settings.environment == "development"
    )


if __name__ == "__main__":
    main()
