"""FastAPI adapter hosting the JSON-RPC dispatcher over HTTP."""

from __future__ import annotations

import hmac
import os
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Header, Request, Response
from fastapi.responses import JSONResponse

from .config import ServerConfig, load_from_env
from .jsonrpc import Dispatcher
from .logging_config import configure_logging
from .server import build_dispatcher, create_client

logger = structlog.get_logger(__name__)

UNAUTHORIZED = -32001
MCP_PATH = "/mcp"


def cors_headers(origin: str | None) -> dict[str, str]:
    return {
        "Access-Control-Allow-Origin": origin or "*",
        "Access-Control-Allow-Methods": "POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type, Authorization",
        "Access-Control-Max-Age": "86400",
    }


def check_bearer(expected: str | None, authorization: str | None) -> str | None:
    """Return the rejection reason, or ``None`` when the credential is valid."""
    if not expected:
        return "MCP_API_KEY not configured"
    if not authorization:
        return "Missing Authorization header"
    if not authorization.startswith("Bearer "):
        return "Authorization header must use Bearer token format"
    if not hmac.compare_digest(authorization[len("Bearer "):], expected):
        return "Invalid API key"
    return None


def create_app(
    config: ServerConfig | None = None, dispatcher: Dispatcher | None = None
) -> FastAPI:
    """Build the ASGI app; with no dispatcher one is wired from the environment.

    Serve with ``uvicorn --factory appstle_mcp.http_app:create_app``.
    """
    config = config or load_from_env(os.environ)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if dispatcher is not None:
            app.state.dispatcher = dispatcher
            yield
            return
        configure_logging(config.log_level)
        client = create_client(config)
        app.state.dispatcher = build_dispatcher(client)
        try:
            yield
        finally:
            await client.aclose()

    app = FastAPI(title="Appstle Subscriptions MCP Server", lifespan=lifespan)
    if dispatcher is not None:
        app.state.dispatcher = dispatcher

    @app.options(MCP_PATH)
    async def preflight(origin: str | None = Header(default=None)) -> Response:
        return Response(status_code=204, headers=cors_headers(origin))

    @app.api_route(MCP_PATH, methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def mcp(
        request: Request,
        authorization: str | None = Header(default=None),
        origin: str | None = Header(default=None),
    ) -> Response:
        cors = cors_headers(origin)
        rejection = check_bearer(config.mcp_api_key, authorization)
        if rejection is not None:
            logger.warning(
                "authentication_failed",
                reason=rejection,
                user_agent=request.headers.get("user-agent"),
            )
            return JSONResponse(
                status_code=401,
                headers=cors,
                content={
                    "jsonrpc": "2.0",
                    "id": None,
                    "error": {"code": UNAUTHORIZED, "message": "Unauthorized", "data": rejection},
                },
            )
        body = await request.body()
        result = await request.app.state.dispatcher.handle_http(
            request.method, request.headers.get("content-type"), body
        )
        return Response(
            content=result.body, status_code=result.status, headers={**cors, **result.headers}
        )

    @app.get("/tools")
    async def tools(request: Request) -> list[dict[str, Any]]:
        return request.app.state.dispatcher.pipeline.registry.describe(include_output=True)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


__all__ = ["create_app", "cors_headers", "check_bearer"]
