#!/usr/bin/env python3
"""
Streamable HTTP transport for the Notes MCP server.

Every client gets its own protocol session, identified by the
mcp-session-id header:

    POST   /mcp  - client-to-server messages; a POST without a session id
                   must carry the initialize request and opens a new session
    GET    /mcp  - server-to-client notifications (SSE) on an existing session
    DELETE /mcp  - explicit session termination
    OPTIONS /mcp - CORS preflight

The router classifies each request and hands it to the session's transport;
the SessionRegistry owns session creation, expiry and teardown.
"""

import argparse
import functools
import logging
import sys
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Optional, Tuple

import mcp.types as types
import uvicorn
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route
from starlette.types import Message, Receive, Scope, Send

from mcp_server import ErrorCategory, config, create_notes_server, metrics, tracer
from session_registry import SessionHandle, SessionRegistry, SessionState


logger = logging.getLogger("mcp_server.http")

MCP_SESSION_ID_HEADER = "mcp-session-id"

INVALID_SESSION_ERROR = {
    "jsonrpc": "2.0",
    "error": {
        "code": -32000,
        "message": "Bad Request: No valid session ID provided",
    },
    "id": None,
}

PAYLOAD_TOO_LARGE_ERROR = {
    "jsonrpc": "2.0",
    "error": {
        "code": -32000,
        "message": "Payload Too Large: request body exceeds the configured limit",
    },
    "id": None,
}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, mcp-session-id",
    "Access-Control-Expose-Headers": "mcp-session-id",
}


class ProtocolError(Exception):
    """Request body is not a JSON-RPC message envelope"""


class PayloadTooLargeError(Exception):
    """Request body is over the configured size limit"""


class RequestKind(Enum):
    CONTINUATION = "continuation"
    INITIALIZATION = "initialization"
    INVALID = "invalid"


def parse_message(body: bytes) -> types.JSONRPCMessage:
    try:
        return types.JSONRPCMessage.model_validate_json(body)
    except ValidationError as e:
        raise ProtocolError(f"Malformed JSON-RPC message: {e.error_count()} validation error(s)") from e


def is_initialize_request(message: types.JSONRPCMessage) -> bool:
    return isinstance(message.root, types.JSONRPCRequest) and message.root.method == "initialize"


async def read_limited_body(request: Request, max_bytes: int) -> bytes:
    """Read the whole request body, refusing anything larger than max_bytes"""
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > max_bytes:
        raise PayloadTooLargeError(f"Declared body of {declared} bytes exceeds {max_bytes} bytes")

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > max_bytes:
            raise PayloadTooLargeError(f"Body exceeds {max_bytes} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """Hand the already-read body to the transport, then fall through to the real channel"""
    body_sent = False

    async def replay() -> Message:
        nonlocal body_sent
        if not body_sent:
            body_sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class _ResponseTracker:
    """ASGI send wrapper remembering whether and how the response started"""

    def __init__(self, send: Send):
        self._send = send
        self.started = False
        self.status: Optional[int] = None

    async def __call__(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            self.started = True
            self.status = message["status"]
        await self._send(message)


class McpRequestRouter:
    """
    ASGI entry point for /mcp.

    Classifies each request as a continuation of a registered session, a new
    session initialization, or invalid, and routes it accordingly. Any
    failure raised while a transport handles a message becomes an HTTP 500;
    the session itself stays alive.
    """

    def __init__(self, registry: SessionRegistry, max_body_bytes: Optional[int] = None):
        self.registry = registry
        if max_body_bytes is None:
            max_body_bytes = config.max_request_body_mb * 1024 * 1024
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)

        with tracer.start_as_current_span("mcp_http_request") as span:
            span.set_attribute("http.method", request.method)

            if request.method == "POST":
                await self._handle_post(request, span, scope, receive, send)
            elif request.method == "OPTIONS":
                await Response(status_code=200)(scope, receive, send)
            else:
                await self._handle_session_request(request, span, scope, receive, send)

    def classify(self, session_id: Optional[str], body: bytes) -> Tuple[RequestKind, Optional[SessionHandle]]:
        try:
            message = parse_message(body)
        except ProtocolError as e:
            logger.warning(f"Invalid request: {e}")
            return RequestKind.INVALID, None

        if session_id:
            handle = self.registry.lookup(session_id)
            if handle is not None:
                return RequestKind.CONTINUATION, handle
            return RequestKind.INVALID, None

        if is_initialize_request(message):
            return RequestKind.INITIALIZATION, None

        return RequestKind.INVALID, None

    async def _handle_post(self, request: Request, span: Any, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            body = await read_limited_body(request, self.max_body_bytes)
        except PayloadTooLargeError as e:
            logger.warning(f"Rejected request: {e}")
            metrics.record_http_request(RequestKind.INVALID.value)
            metrics.record_error(ErrorCategory.PROTOCOL_ERROR)
            span.set_status(Status(StatusCode.ERROR, "Payload too large"))
            response = JSONResponse(PAYLOAD_TOO_LARGE_ERROR, status_code=413)
            await response(scope, receive, send)
            return

        receive = _replay_body(body, receive)
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        kind, handle = self.classify(session_id, body)
        span.set_attribute("mcp.request_kind", kind.value)
        metrics.record_http_request(kind.value)

        if kind is RequestKind.INVALID:
            logger.info("Invalid request: No valid session ID or not an initialize request")
            metrics.record_error(ErrorCategory.PROTOCOL_ERROR)
            span.set_status(Status(StatusCode.ERROR, "Invalid request"))
            response = JSONResponse(INVALID_SESSION_ERROR, status_code=400)
            await response(scope, receive, send)
            return

        if kind is RequestKind.CONTINUATION:
            span.set_attribute("mcp.session_id", session_id)
            self.registry.touch(session_id)
            await self._dispatch(handle, span, scope, receive, send)
            return

        handle = self.registry.create_session()
        span.set_attribute("mcp.session_id", handle.session_id)
        logger.info(f"Creating new transport for initialization request: {handle.session_id}")
        try:
            await self._dispatch(
                handle, span, scope, receive,
                self.registry.watch_initialization(handle, send),
                connect=True,
            )
        finally:
            if handle.state is SessionState.PENDING:
                logger.warning(f"Initialization failed, discarding session {handle.session_id}")
                await self.registry.discard(handle)

    async def _handle_session_request(
        self, request: Request, span: Any, scope: Scope, receive: Receive, send: Send
    ) -> None:
        """GET (notification stream) and DELETE (termination) on an existing session"""
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        handle = self.registry.lookup(session_id) if session_id else None

        if handle is None:
            metrics.record_http_request(RequestKind.INVALID.value)
            metrics.record_error(ErrorCategory.SESSION_NOT_FOUND)
            span.set_status(Status(StatusCode.ERROR, "Invalid or missing session ID"))
            response = PlainTextResponse("Invalid or missing session ID", status_code=400)
            await response(scope, receive, send)
            return

        metrics.record_http_request(RequestKind.CONTINUATION.value)
        span.set_attribute("mcp.session_id", session_id)
        self.registry.touch(session_id)

        status = await self._dispatch(handle, span, scope, receive, send)

        # The transport has ended itself; this removes the entry if its runtime has not reported yet
        if request.method == "DELETE" and status is not None and status < 400:
            await self.registry.terminate(session_id)

    async def _dispatch(
        self,
        handle: SessionHandle,
        span: Any,
        scope: Scope,
        receive: Receive,
        send: Send,
        connect: bool = False,
    ) -> Optional[int]:
        """Let the session's transport answer the request; returns the response status"""
        tracker = _ResponseTracker(send)
        try:
            if connect:
                await self.registry.connect(handle)
            await handle.transport.handle_request(scope, receive, tracker)
        except Exception as e:
            metrics.record_error(ErrorCategory.HANDLER_ERROR)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            span.record_exception(e)
            logger.error(f"Request handling error for session {handle.session_id}: {e}", exc_info=True)

            if tracker.started:
                return tracker.status

            response = JSONResponse(
                {"error": "Internal server error", "message": str(e)},
                status_code=500,
            )
            await response(scope, receive, send)
            return 500

        span.set_attribute("http.status_code", tracker.status or 0)
        return tracker.status


class CORSHeadersMiddleware(BaseHTTPMiddleware):
    """
    Allow every origin and expose the session header.
    Preflight requests are answered here with an empty 200.
    """

    async def dispatch(self, request: Request, call_next: Any) -> Any:
        if request.method == "OPTIONS":
            response = Response(status_code=200)
            response.headers["Access-Control-Max-Age"] = "86400"
        else:
            logger.debug(f"{request.method} {request.url.path}")
            response = await call_next(request)

        for name, value in CORS_HEADERS.items():
            response.headers[name] = value

        return response


def create_app(registry: SessionRegistry, max_body_bytes: Optional[int] = None) -> Starlette:
    """Build the Starlette app; its lifespan runs the session registry"""

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with registry.run():
            yield

    return Starlette(
        routes=[
            Route(
                "/mcp",
                endpoint=McpRequestRouter(registry, max_body_bytes=max_body_bytes),
                methods=["GET", "POST", "DELETE", "OPTIONS"],
            ),
        ],
        middleware=[Middleware(CORSHeadersMiddleware)],
        lifespan=lifespan,
    )


class NotesHTTPServer(uvicorn.Server):
    """uvicorn server that closes every session before the listening socket goes away"""

    def __init__(self, uvicorn_config: uvicorn.Config, registry: SessionRegistry):
        super().__init__(uvicorn_config)
        self.registry = registry

    async def shutdown(self, sockets: Optional[list] = None) -> None:
        logger.info("Shutting down gracefully...")
        await self.registry.close_all()
        await super().shutdown(sockets=sockets)


def main() -> None:
    """CLI entry point for the HTTP transport"""
    parser = argparse.ArgumentParser(description="Notes MCP server (streamable HTTP transport)")
    parser.add_argument(
        "notes_folder",
        nargs="?",
        help="Folder holding notes_storage.json (default: $NOTES_FOLDER or ./data)",
    )
    parser.add_argument("--host", default=config.host, help=f"Host to bind to (default: {config.host})")
    parser.add_argument("--port", type=int, default=config.port, help=f"Port to listen on (default: {config.port})")
    args = parser.parse_args()

    notes_folder = config.resolve_notes_folder(args.notes_folder)

    registry = SessionRegistry(
        server_factory=functools.partial(create_notes_server, notes_folder),
        idle_threshold=config.session_idle_timeout_seconds,
        sweep_interval=config.session_sweep_interval_seconds,
        json_response=config.json_response,
    )
    app = create_app(registry)

    uvicorn_config = uvicorn.Config(
        app,
        host=args.host,
        port=args.port,
        log_level=config.log_level.lower(),
        access_log=False,
    )
    server = NotesHTTPServer(uvicorn_config, registry)

    logger.info(f"MCP HTTP server listening on {args.host}:{args.port} (notes folder: {notes_folder})")
    logger.info("Session management enabled - each client gets its own transport instance")

    try:
        server.run()
    except Exception as e:
        logger.exception(f"Server startup failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
