"""JSON-RPC 2.0 dispatcher for MCP tools over HTTP and stdio."""

from __future__ import annotations

import json
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import anyio
import structlog

from .appstle_client import new_correlation_id
from .errors import NormalizationError, OutputContractError, ToolInputError, UpstreamError
from .tools import ToolPipeline

logger = structlog.get_logger(__name__)

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603

_MESSAGES = {
    PARSE_ERROR: "Parse error",
    INVALID_REQUEST: "Invalid Request",
    METHOD_NOT_FOUND: "Method not found",
    INVALID_PARAMS: "Invalid params",
    INTERNAL_ERROR: "Internal error",
}

SERVER_INFO = {
    "name": "appstle-subscriptions",
    "version": "0.1.0",
    "description": (
        "MCP server for managing Shopify subscription contracts via the Appstle API: "
        "view subscriptions and deliveries, skip and unskip orders."
    ),
}

JSON_HEADERS = {"Content-Type": "application/json"}

_MISSING = object()


class JSONRPCError(Exception):
    def __init__(self, code: int, data: Any = None, message: str | None = None) -> None:
        self.code = code
        self.message = message or _MESSAGES.get(code, "Server error")
        self.data = data
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        error: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error


@dataclass(slots=True)
class HttpResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


def error_response(request_id: Any, error: JSONRPCError) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "error": error.to_dict()}


def _valid_id(value: Any) -> bool:
    return value is None or (isinstance(value, str | int | float) and not isinstance(value, bool))


class Dispatcher:
    """Parse, validate and route JSON-RPC envelopes to the tool pipeline."""

    def __init__(
        self,
        pipeline: ToolPipeline,
        *,
        server_info: dict[str, Any] | None = None,
        log: Any = None,
    ) -> None:
        self.pipeline = pipeline
        self.server_info = server_info or SERVER_INFO
        self._log = log or logger
        self._methods: dict[str, Callable[[dict[str, Any], str], Awaitable[Any]]] = {
            "initialize": self._handle_initialize,
            "ping": self._handle_ping,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
        }
        self._notifications: dict[str, Callable[[dict[str, Any], str], Awaitable[None]]] = {
            "notifications/initialized": self._on_initialized,
            "notifications/cancelled": self._on_cancelled,
        }

    async def handle_http(
        self, method: str, content_type: str | None, body: bytes | str
    ) -> HttpResponse:
        request_id = new_correlation_id()
        headers = {**JSON_HEADERS, "X-Request-ID": request_id}
        if method.upper() != "POST":
            self._log.warning("invalid_http_method", correlation_id=request_id, method=method)
            return HttpResponse(
                405,
                {**headers, "Allow": "POST, OPTIONS"},
                json.dumps({"error": "Method Not Allowed"}).encode(),
            )
        if not content_type or "application/json" not in content_type.lower():
            self._log.warning(
                "invalid_content_type", correlation_id=request_id, content_type=content_type
            )
            return HttpResponse(
                400,
                headers,
                json.dumps({"error": "Content-Type must be application/json"}).encode(),
            )
        try:
            result = await self.handle_text(body, request_id)
        except Exception as e:
            # Last line of defence; dispatch() already converts per-request errors.
            self._log.exception("transport_error", correlation_id=request_id)
            result = json.dumps(
                error_response(None, JSONRPCError(INTERNAL_ERROR, str(e) or type(e).__name__))
            )
        if result is None:
            return HttpResponse(204, {"X-Request-ID": request_id})
        return HttpResponse(200, headers, result.encode())

    async def handle_text(self, text: bytes | str, request_id: str | None = None) -> str | None:
        """Parse a raw body and dispatch it; ``None`` means no content."""
        request_id = request_id or new_correlation_id()
        try:
            if isinstance(text, bytes):
                text = text.decode("utf-8")
            payload = json.loads(text) if text.strip() else {}
        except ValueError as e:
            self._log.error("jsonrpc_parse_failed", correlation_id=request_id, error=str(e))
            return json.dumps(error_response(None, JSONRPCError(PARSE_ERROR)))
        response = await self.dispatch(payload, request_id)
        return None if response is None else json.dumps(response)

    async def dispatch(
        self, payload: Any, request_id: str | None = None
    ) -> dict[str, Any] | list[dict[str, Any]] | None:
        request_id = request_id or new_correlation_id()
        if not isinstance(payload, list):
            return await self.handle(payload, request_id)
        if not payload:
            return error_response(None, JSONRPCError(INVALID_REQUEST, "Empty batch"))

        self._log.debug("jsonrpc_batch", correlation_id=request_id, size=len(payload))
        results: list[dict[str, Any] | None] = [None] * len(payload)

        async def run(index: int, message: Any) -> None:
            results[index] = await self.handle(message, f"{request_id}_{index}")

        async with anyio.create_task_group() as tg:
            for index, message in enumerate(payload):
                tg.start_soon(run, index, message)

        responses = [r for r in results if r is not None]
        return responses or None

    async def handle(self, message: Any, request_id: str | None = None) -> dict[str, Any] | None:
        """Process one envelope. Returns ``None`` for notifications."""
        request_id = request_id or new_correlation_id()
        msg_id = message.get("id", _MISSING) if isinstance(message, dict) else _MISSING
        invalid = self._invalid_reason(message)
        if invalid is not None:
            self._log.warning("jsonrpc_invalid_request", correlation_id=request_id, reason=invalid)
            safe_id = msg_id if msg_id is not _MISSING and _valid_id(msg_id) else None
            return error_response(safe_id, JSONRPCError(INVALID_REQUEST, invalid))

        method = message["method"]
        params = message.get("params")
        if msg_id is _MISSING:
            await self._notify(method, params, request_id)
            return None

        try:
            handler = self._methods.get(method)
            if handler is None:
                raise JSONRPCError(METHOD_NOT_FOUND, f"Method '{method}' is not supported")
            result = await handler(params if params is not None else {}, request_id)
            return {"jsonrpc": JSONRPC_VERSION, "id": msg_id, "result": result}
        except JSONRPCError as e:
            return error_response(msg_id, e)
        except Exception as e:
            self._log.exception("jsonrpc_internal_error", correlation_id=request_id, method=method)
            return error_response(
                msg_id, JSONRPCError(INTERNAL_ERROR, str(e) or type(e).__name__)
            )

    def _invalid_reason(self, message: Any) -> str | None:
        if not isinstance(message, dict):
            return "Request must be a JSON object"
        if message.get("jsonrpc") != JSONRPC_VERSION:
            return "jsonrpc must be exactly '2.0'"
        if not isinstance(message.get("method"), str):
            return "method must be a string"
        if "id" in message and not _valid_id(message["id"]):
            return "id must be a string, number or null"
        return None

    async def _notify(self, method: str, params: Any, request_id: str) -> None:
        """Run a notification; nothing it does may produce a response."""
        try:
            notification = self._notifications.get(method)
            if notification is not None:
                await notification(params if isinstance(params, dict) else {}, request_id)
                return
            handler = self._methods.get(method)
            if handler is None:
                self._log.info(
                    "jsonrpc_notification_ignored", correlation_id=request_id, method=method
                )
                return
            await handler(params if params is not None else {}, request_id)
        except Exception:
            self._log.exception(
                "jsonrpc_notification_failed", correlation_id=request_id, method=method
            )

    async def _on_initialized(self, params: dict[str, Any], request_id: str) -> None:
        self._log.info("mcp_client_initialized", correlation_id=request_id)

    async def _on_cancelled(self, params: dict[str, Any], request_id: str) -> None:
        self._log.info(
            "mcp_request_cancelled",
            correlation_id=request_id,
            cancelled_id=params.get("requestId"),
            reason=params.get("reason"),
        )

    async def _handle_initialize(self, params: Any, request_id: str) -> dict[str, Any]:
        self._log.info(
            "mcp_initialize",
            correlation_id=request_id,
            client_protocol=params.get("protocolVersion") if isinstance(params, dict) else None,
        )
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}},
            "serverInfo": self.server_info,
        }

    async def _handle_ping(self, params: Any, request_id: str) -> dict[str, Any]:
        return {}

    async def _handle_tools_list(self, params: Any, request_id: str) -> dict[str, Any]:
        tools = self.pipeline.registry.describe()
        self._log.info("tools_listed", correlation_id=request_id, count=len(tools))
        return {"tools": tools}

    async def _handle_tools_call(self, params: Any, request_id: str) -> dict[str, Any]:
        if not isinstance(params, dict) or not isinstance(params.get("name"), str) or not params["name"]:
            raise JSONRPCError(INVALID_PARAMS, "Tool name is required")
        name = params["name"]
        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise JSONRPCError(INVALID_PARAMS, "Tool arguments must be an object")
        if name not in self.pipeline.registry:
            raise JSONRPCError(METHOD_NOT_FOUND, f"Tool '{name}' not found")

        try:
            result = await self.pipeline.invoke(name, arguments, request_id)
        except ToolInputError as e:
            raise JSONRPCError(INVALID_PARAMS, {"tool": name, "errors": e.errors}) from e
        except UpstreamError as e:
            raise JSONRPCError(INTERNAL_ERROR, e.to_dict()) from e
        except (OutputContractError, NormalizationError) as e:
            raise JSONRPCError(
                INTERNAL_ERROR,
                {"title": "Internal Error", "detail": str(e), "correlationId": request_id},
            ) from e
        return {"content": [{"type": "text", "text": json.dumps(result, indent=2)}]}

    async def serve_stdio(self) -> None:
        """Serve line-delimited JSON-RPC over stdin/stdout."""
        while True:
            try:
                line = await anyio.to_thread.run_sync(sys.stdin.readline)
            except (EOFError, KeyboardInterrupt):
                break
            if not line:
                break
            line = line.strip()
            if not line:
                continue
            response = await self.handle_text(line)
            if response is not None:
                sys.stdout.write(response + "\n")
                sys.stdout.flush()


__all__ = [
    "Dispatcher",
    "HttpResponse",
    "JSONRPCError",
    "error_response",
    "PARSE_ERROR",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "INVALID_PARAMS",
    "INTERNAL_ERROR",
]
