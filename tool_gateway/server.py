"""
MCP server exposing the capability-gated tool gateway over FastMCP.

This module creates and runs the MCP server with:
- Four tools: add, userInfo, generateImage, get_price
- Identity tokens: every MCP request must carry a valid Bearer token
- Per-identity visibility: generateImage only exists for allow-listed subjects
- Health and readiness HTTP endpoints (for Kubernetes health checks)
- Structured JSON logging for every auth and invocation decision
- Streamable HTTP transport

Architecture:
    The flow for every MCP request:

    1. Client sends HTTP request with "Authorization: Bearer <jwt>" header
    2. GatewayMiddleware intercepts the MCP method (tools/list or tools/call)
    3. identity.validate_token() turns the token into an IdentityContext
    4. The identity is bound to the MCP session in the SessionRegistry
    5. tools/list: the registered tools are filtered by the VisibilityPolicy
    6. tools/call: the call is handed to the InvocationEngine, which re-checks
       visibility, validates parameters, runs the handler and normalizes the
       outcome into a ToolResult (is_error=True for every failure kind)
    7. DELETE /mcp with Mcp-Session-Id: SessionTerminationMiddleware closes the
       session's host, cancelling its in-flight call and dropping its identity

    Hiding a tool from tools/list is not enough on its own: a client can
    still guess the name. The engine re-checks visibility on every call.

Running the server:
    uv run python -m tool_gateway.server

    This starts the server on http://0.0.0.0:8080 with:
    - MCP endpoint at /mcp (Streamable HTTP)
    - Health check at /health
    - Readiness check at /ready
"""

import base64
import json
import logging
import sys
import uuid
from typing import Any, Sequence

import mcp_types as mt
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_http_request
from fastmcp.server.middleware import CallNext, Middleware, MiddlewareContext
from fastmcp.tools import Tool, ToolResult
from starlette.middleware import Middleware as ASGIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from tool_gateway.config import Settings, settings
from tool_gateway.engine import InvocationEngine
from tool_gateway.identity import AuthError, IdentityContext, validate_token
from tool_gateway.policy import VisibilityPolicy
from tool_gateway.registry import ToolDescriptor, ToolTable
from tool_gateway.results import BinaryBlock, Failure, Response as InvocationResponse
from tool_gateway.session import SessionHost, SessionRegistry
from tool_gateway.tools import build_tool_table
from tool_gateway.upstream import UpstreamClient

# ---------------------------------------------------------------------------
# Structured JSON Logging
# ---------------------------------------------------------------------------
# Logs go to stdout as one JSON object per line, so the cluster's logging
# agent can index fields like subject, tool and decision.


class JSONLogFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Example output:

        {"timestamp": "2026-02-06 10:30:00,123", "level": "INFO",
         "logger": "tool_gateway.engine", "message": "Tool call authorized",
         "subject": "octocat", "tool": "get_price", "decision": "allowed"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Structured fields passed via logger.info("msg", extra={"log_data": {...}})
        if hasattr(record, "log_data"):
            log_entry.update(record.log_data)
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONLogFormatter())
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        handlers=[handler],
    )


configure_logging(settings.log_level)
logger = logging.getLogger("tool_gateway.server")


# ---------------------------------------------------------------------------
# Response conversion
# ---------------------------------------------------------------------------


def _binary_content(block: BinaryBlock) -> mt.ContentBlock:
    data = base64.b64encode(block.data).decode("ascii")
    if block.mime_type.startswith("image/"):
        return mt.ImageContent(type="image", data=data, mime_type=block.mime_type)
    if block.mime_type.startswith("audio/"):
        return mt.AudioContent(type="audio", data=data, mime_type=block.mime_type)
    return mt.EmbeddedResource(
        type="resource",
        resource=mt.BlobResourceContents(
            uri="blob:tool-output", blob=data, mime_type=block.mime_type
        ),
    )


def to_tool_result(response: InvocationResponse) -> ToolResult:
    """
    Convert an engine Response into a FastMCP ToolResult.

    Failures keep only their message; the kind and detail stay server-side
    (they are already in the logs).
    """
    if isinstance(response, Failure):
        return ToolResult(
            content=[mt.TextContent(type="text", text=response.message)],
            is_error=True,
        )

    content: list[mt.ContentBlock] = []
    for block in response.content:
        if isinstance(block, BinaryBlock):
            content.append(_binary_content(block))
        else:
            content.append(mt.TextContent(type="text", text=block.text))
    return ToolResult(content=content)


# ---------------------------------------------------------------------------
# Tool registration
# ---------------------------------------------------------------------------


class GatewayTool(Tool):
    """
    A descriptor from the tool table, as FastMCP lists it.

    GatewayMiddleware answers every tools/call itself through the
    InvocationEngine, so run() is only reached when the server is assembled
    without the middleware. It refuses: without a session there is no
    identity to authorize against.
    """

    @classmethod
    def from_descriptor(cls, descriptor: ToolDescriptor) -> "GatewayTool":
        return cls(
            name=descriptor.name,
            description=descriptor.description,
            parameters=descriptor.schema.json_schema(),
        )

    async def run(self, arguments: dict[str, Any]) -> ToolResult:
        raise ToolError(f"Tool '{self.name}' requires an authenticated session")


# ---------------------------------------------------------------------------
# Authentication & Session Middleware
# ---------------------------------------------------------------------------


class GatewayMiddleware(Middleware):
    """
    Identity authentication and per-session tool routing.

    - tools/list responses only include tools visible to the caller
    - tools/call requests are executed by the InvocationEngine on behalf of
      the session's identity

    Every request is authenticated independently, even within the same
    session.
    """

    def __init__(self, engine: InvocationEngine, sessions: SessionRegistry):
        self.engine = engine
        self.sessions = sessions

    def _get_auth_header(self) -> str | None:
        """
        Extract the Authorization header from the current HTTP request.

        Returns None if no HTTP request is available (e.g., stdio transport).
        """
        try:
            request = get_http_request()
            return request.headers.get("authorization")
        except RuntimeError:
            return None

    def _authenticate(self, request_id: str) -> IdentityContext:
        """
        Validate the identity token and return the caller's IdentityContext.

        Raises:
            AuthError: If authentication fails for any reason
        """
        auth_header = self._get_auth_header()
        try:
            identity = validate_token(auth_header)
        except AuthError as e:
            logger.warning(
                "Authentication failed",
                extra={
                    "log_data": {
                        "request_id": request_id,
                        "decision": "rejected",
                        "reason": e.message,
                    }
                },
            )
            raise

        logger.info(
            "Authentication successful",
            extra={
                "log_data": {
                    "request_id": request_id,
                    **identity.log_fields(),
                    "decision": "authenticated",
                }
            },
        )
        return identity

    def _session_id(self, context: MiddlewareContext, identity: IdentityContext) -> str:
        """
        Key for the SessionRegistry.

        Prefers the MCP session id. Without one (e.g. stateless HTTP), all of
        a subject's requests share one host.
        """
        if context.fastmcp_context is not None:
            try:
                return context.fastmcp_context.session_id
            except RuntimeError:
                pass
        return f"subject:{identity.subject_id}"

    def _session(self, context: MiddlewareContext, request_id: str) -> SessionHost:
        identity = self._authenticate(request_id)
        session_id = self._session_id(context, identity)
        try:
            return self.sessions.bind(session_id, identity)
        except AuthError as e:
            logger.warning(
                "Session binding rejected",
                extra={
                    "log_data": {
                        "request_id": request_id,
                        **identity.log_fields(),
                        "decision": "rejected",
                        "reason": e.message,
                    }
                },
            )
            raise

    async def on_list_tools(
        self,
        context: MiddlewareContext[mt.ListToolsRequest],
        call_next: CallNext[mt.ListToolsRequest, Sequence[Tool]],
    ) -> Sequence[Tool]:
        """Filter tools/list down to what the caller's identity may see."""
        request_id = str(uuid.uuid4())[:8]
        host = self._session(context, request_id)

        all_tools = await call_next(context)
        visible = {summary.name for summary in host.list_tools()}
        authorized_tools = [tool for tool in all_tools if tool.name in visible]

        logger.info(
            "Tool list filtered by visibility",
            extra={
                "log_data": {
                    "request_id": request_id,
                    **host.identity.log_fields(),
                    "total_tools": len(all_tools),
                    "authorized_tools": [t.name for t in authorized_tools],
                    "decision": "filtered",
                }
            },
        )

        return authorized_tools

    async def on_call_tool(
        self,
        context: MiddlewareContext[mt.CallToolRequestParams],
        call_next: CallNext[mt.CallToolRequestParams, ToolResult],
    ) -> ToolResult:
        """
        Execute tools/call through the session's InvocationEngine.

        The engine never raises for tool failures, so every outcome
        (including unknown and hidden tools) comes back as a ToolResult.
        """
        request_id = str(uuid.uuid4())[:8]
        host = self._session(context, request_id)

        response = await host.call_tool(context.message.name, context.message.arguments)
        return to_tool_result(response)


# ---------------------------------------------------------------------------
# Session termination
# ---------------------------------------------------------------------------


class SessionTerminationMiddleware(BaseHTTPMiddleware):
    """
    Release the SessionHost of an MCP session the client has terminated.

    Streamable HTTP clients end a session with a DELETE on the MCP endpoint
    carrying the Mcp-Session-Id header. Once the transport accepts it, the
    session's host is closed: its identity is dropped and any call it still
    has in flight is cancelled.
    """

    def __init__(self, app: ASGIApp, sessions: SessionRegistry):
        super().__init__(app)
        self.sessions = sessions

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        session_id = request.headers.get("mcp-session-id")
        if request.method == "DELETE" and session_id and response.status_code < 400:
            if session_id in self.sessions:
                self.sessions.close(session_id)
                logger.info(
                    "MCP session terminated by client",
                    extra={
                        "log_data": {
                            "session_id": session_id,
                            "decision": "released",
                        }
                    },
                )
        return response


def http_middleware(sessions: SessionRegistry) -> list[ASGIMiddleware]:
    """ASGI middleware for the HTTP app (pass to mcp.run or http_app)."""
    return [ASGIMiddleware(SessionTerminationMiddleware, sessions=sessions)]


# ---------------------------------------------------------------------------
# Server assembly
# ---------------------------------------------------------------------------


def create_server(
    config: Settings = settings,
    client: UpstreamClient | None = None,
) -> tuple[FastMCP, SessionRegistry]:
    """
    Build the FastMCP server with its tool table, policy and middleware.

    Returns the server and its SessionRegistry; the registry is needed to
    build the HTTP middleware that releases terminated sessions.

    Args:
        config: Settings to build from (tests pass their own)
        client: Upstream client override (tests pass one with a mock transport)
    """
    table: ToolTable = build_tool_table(client or UpstreamClient(config))
    engine = InvocationEngine(
        table,
        VisibilityPolicy.from_settings(config),
        timeout=config.tool_timeout_seconds,
    )
    sessions = SessionRegistry(
        engine,
        max_sessions=config.max_sessions,
        idle_timeout=config.session_idle_timeout_seconds,
    )

    server = FastMCP(
        name="mcp-tool-gateway",
        instructions=(
            "MCP gateway exposing arithmetic, profile, image generation and "
            "price tools. Which tools are available depends on the caller's "
            "identity."
        ),
        middleware=[GatewayMiddleware(engine, sessions)],
    )
    for descriptor in table:
        server.add_tool(GatewayTool.from_descriptor(descriptor))

    # Plain HTTP endpoints (not MCP protocol) for Kubernetes health checks. They do
    # not require authentication and expose no identity data.

    @server.custom_route("/health", methods=["GET"])
    async def health_check(request: Request) -> Response:
        """Liveness check: is the server process alive and responsive?"""
        return JSONResponse({"status": "healthy"})

    @server.custom_route("/ready", methods=["GET"])
    async def readiness_check(request: Request) -> Response:
        """Readiness check: is the tool table loaded and closed for registration?"""
        if not table.frozen or len(table) == 0:
            return JSONResponse(
                {"status": "not_ready", "reason": "tool table not loaded"},
                status_code=503,
            )
        return JSONResponse({"status": "ready", "tools": len(table)})

    return server, sessions


mcp, sessions = create_server()


# ---------------------------------------------------------------------------
# Server entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    logger.info(
        "Starting MCP server on %s:%d (transport=streamable-http, auth=enabled)",
        settings.host,
        settings.port,
    )
    mcp.run(
        transport="streamable-http",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        middleware=http_middleware(sessions),
    )
