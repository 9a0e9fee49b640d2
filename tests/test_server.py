"""
Integration tests for the FastMCP server assembly (tool_gateway/server.py).

These tests exercise the path a real request takes once it reaches FastMCP:
server.list_tools() / server.call_tool() -> GatewayMiddleware -> SessionRegistry
-> InvocationEngine -> ToolResult.

Test approach:
    FastMCP runs the middleware chain for server.list_tools() and
    server.call_tool() just like it does for a protocol request, so no HTTP
    handshake is needed. The Authorization header is supplied by patching
    GatewayMiddleware._get_auth_header, which normally reads it from the
    current HTTP request. Collaborators are faked via the `upstream` fixture.
"""

import asyncio
import base64
import logging

import httpx
import mcp_types as mt
import pytest
from fastmcp.exceptions import ToolError
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Route

from tests.conftest import ALLOWED_SUBJECT, IMAGE_BYTES
from tool_gateway.engine import InvocationEngine
from tool_gateway.identity import AuthError
from tool_gateway.policy import VisibilityPolicy
from tool_gateway.registry import ToolDescriptor, ToolTable
from tool_gateway.results import BinaryBlock, Failure, FailureKind, Success, TextBlock
from tool_gateway.server import (
    GatewayMiddleware,
    GatewayTool,
    JSONLogFormatter,
    SessionTerminationMiddleware,
    create_server,
    http_middleware,
    to_tool_result,
)
from tool_gateway.schema import ParameterSchema
from tool_gateway.session import SessionRegistry


@pytest.fixture
def gateway(gateway_settings, upstream_client):
    return create_server(gateway_settings, upstream_client)


@pytest.fixture
def server(gateway):
    server, _ = gateway
    return server


@pytest.fixture
def authorize(monkeypatch, make_auth_header):
    """
    Factory fixture: make every following request carry a token for `sub`.

    Usage in tests:
        def test_something(server, authorize):
            authorize(sub="octocat")
    """

    def _authorize(header: str | None = None, **claims) -> None:
        value = header if header is not None else make_auth_header(**claims)
        monkeypatch.setattr(GatewayMiddleware, "_get_auth_header", lambda self: value)

    return _authorize


# ---------------------------------------------------------------------------
# Test: tools/list
# ---------------------------------------------------------------------------


class TestToolListFiltering:
    async def test_allow_listed_subject_sees_all_tools(self, server, authorize):
        authorize(sub=ALLOWED_SUBJECT)

        tools = await server.list_tools()

        assert sorted(t.name for t in tools) == ["add", "generateImage", "get_price", "userInfo"]

    async def test_other_subject_does_not_see_generate_image(self, server, authorize):
        authorize(sub="hubot")

        tools = await server.list_tools()

        assert sorted(t.name for t in tools) == ["add", "get_price", "userInfo"]

    async def test_published_schema_matches_table(self, server, authorize):
        authorize(sub=ALLOWED_SUBJECT)

        tools = {t.name: t for t in await server.list_tools()}

        steps = tools["generateImage"].parameters["properties"]["steps"]
        assert (steps["minimum"], steps["maximum"], steps["default"]) == (4, 8, 4)
        assert tools["add"].parameters["required"] == ["a", "b"]

    async def test_missing_token_rejected(self, server, authorize):
        authorize(header="")

        with pytest.raises(AuthError, match="Missing Authorization header"):
            await server.list_tools()

    async def test_expired_token_rejected(self, server, authorize):
        authorize(sub=ALLOWED_SUBJECT, exp_hours=-1)

        with pytest.raises(AuthError, match="Token has expired"):
            await server.list_tools()


# ---------------------------------------------------------------------------
# Test: tools/call
# ---------------------------------------------------------------------------


class TestToolCall:
    async def test_add(self, server, authorize):
        authorize(sub="hubot")

        result = await server.call_tool("add", {"a": 2, "b": 3})

        assert not result.is_error
        assert result.content == [mt.TextContent(type="text", text="5")]

    async def test_generate_image_returns_image_content(self, server, authorize):
        authorize(sub=ALLOWED_SUBJECT)

        result = await server.call_tool("generateImage", {"prompt": "a cat", "steps": 8})

        assert not result.is_error
        image = result.content[0]
        assert isinstance(image, mt.ImageContent)
        assert image.mime_type == "image/jpeg"
        assert base64.b64decode(image.data) == IMAGE_BYTES

    async def test_hidden_tool_call_is_error_without_backend_call(
        self, server, authorize, upstream
    ):
        authorize(sub="hubot")

        result = await server.call_tool("generateImage", {"prompt": "a cat"})

        assert result.is_error
        assert result.content[0].text == "Unknown tool: generateImage"
        assert upstream.image_calls() == []

    async def test_unknown_tool_is_error(self, server, authorize):
        authorize(sub=ALLOWED_SUBJECT)

        result = await server.call_tool("deleteEverything", {})

        assert result.is_error
        assert result.content[0].text == "Unknown tool: deleteEverything"

    async def test_invalid_parameters_is_error(self, server, authorize, upstream):
        authorize(sub=ALLOWED_SUBJECT)

        result = await server.call_tool("generateImage", {"prompt": "a cat", "steps": 10})

        assert result.is_error
        assert "steps" in result.content[0].text
        assert upstream.image_calls() == []

    async def test_upstream_failure_is_error(self, server, authorize, upstream):
        upstream.price_response = httpx.Response(500, text="server error")
        authorize(sub="hubot")

        result = await server.call_tool("get_price", {"symbol": "bitcoin"})

        assert result.is_error
        assert result.content[0].text.startswith("Error getting price for BTCUSDT")

    async def test_user_info_uses_token_credential(self, server, authorize):
        authorize(sub="octocat", upstream_token="gho_from_token")

        result = await server.call_tool("userInfo", {})

        assert '"token_seen": "gho_from_token"' in result.content[0].text

    async def test_forged_token_rejected(self, server, authorize, make_token):
        token = make_token(sub=ALLOWED_SUBJECT, secret="attacker-secret-with-enough-length-for-hs256")
        authorize(header=f"Bearer {token}")

        with pytest.raises(AuthError, match="Invalid token"):
            await server.call_tool("add", {"a": 1, "b": 1})


# ---------------------------------------------------------------------------
# Test: response conversion
# ---------------------------------------------------------------------------


class TestToToolResult:
    def test_failure_keeps_only_message(self):
        failure = Failure(FailureKind.UPSTREAM_ERROR, "backend down", {"body": "secret trace"})

        result = to_tool_result(failure)

        assert result.is_error
        assert result.content == [mt.TextContent(type="text", text="backend down")]

    def test_text_and_image_blocks(self):
        response = Success(
            (TextBlock("caption"), BinaryBlock(data=b"\x89PNG", mime_type="image/png"))
        )

        result = to_tool_result(response)

        assert result.content[0] == mt.TextContent(type="text", text="caption")
        assert result.content[1].mime_type == "image/png"
        assert result.content[1].data == base64.b64encode(b"\x89PNG").decode()

    def test_audio_block(self):
        result = to_tool_result(Success((BinaryBlock(data=b"RIFF", mime_type="audio/wav"),)))

        assert isinstance(result.content[0], mt.AudioContent)

    def test_other_binary_becomes_embedded_resource(self):
        result = to_tool_result(
            Success((BinaryBlock(data=b"%PDF", mime_type="application/pdf"),))
        )

        resource = result.content[0]
        assert isinstance(resource, mt.EmbeddedResource)
        assert resource.resource.mime_type == "application/pdf"


class TestGatewayTool:
    async def test_run_without_middleware_refuses(self, engine):
        tool = GatewayTool.from_descriptor(engine.table.get("add"))

        with pytest.raises(ToolError, match="requires an authenticated session"):
            await tool.run({"a": 1, "b": 2})


# ---------------------------------------------------------------------------
# Test: session termination
# ---------------------------------------------------------------------------


@pytest.fixture
def blocking_registry():
    """A SessionRegistry whose only tool blocks until cancelled."""
    started = asyncio.Event()

    async def wait_forever(params, identity):
        started.set()
        await asyncio.Event().wait()

    table = ToolTable()
    table.register(
        ToolDescriptor(
            name="wait",
            description="wait",
            schema=ParameterSchema("wait"),
            handler=wait_forever,
        )
    )
    registry = SessionRegistry(InvocationEngine(table.freeze(), VisibilityPolicy()))
    return registry, started


def _transport_app(sessions: SessionRegistry, delete_status: int = 200) -> Starlette:
    """Stand-in for the MCP transport endpoint, wrapped like the real HTTP app."""

    async def mcp_endpoint(request: Request) -> Response:
        return Response(status_code=delete_status if request.method == "DELETE" else 200)

    return Starlette(
        routes=[Route("/mcp", mcp_endpoint, methods=["POST", "DELETE"])],
        middleware=http_middleware(sessions),
    )


async def _send(app: Starlette, method: str, session_id: str) -> httpx.Response:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        return await client.request(method, "/mcp", headers={"Mcp-Session-Id": session_id})


class TestSessionTermination:
    async def test_delete_cancels_in_flight_call_and_releases_host(
        self, blocking_registry, make_identity
    ):
        registry, started = blocking_registry
        host = registry.bind("session-1", make_identity("octocat"))
        call = asyncio.create_task(host.call_tool("wait", {}))
        await started.wait()

        response = await _send(_transport_app(registry), "DELETE", "session-1")

        assert response.status_code == 200
        with pytest.raises(asyncio.CancelledError):
            await call
        assert host.closed
        assert "session-1" not in registry

    async def test_rejected_delete_keeps_session(self, blocking_registry, make_identity):
        registry, _ = blocking_registry
        host = registry.bind("session-1", make_identity("octocat"))

        await _send(_transport_app(registry, delete_status=404), "DELETE", "session-1")

        assert not host.closed
        assert "session-1" in registry

    async def test_other_methods_keep_session(self, blocking_registry, make_identity):
        registry, _ = blocking_registry
        host = registry.bind("session-1", make_identity("octocat"))

        await _send(_transport_app(registry), "POST", "session-1")

        assert not host.closed

    async def test_delete_for_other_session_leaves_this_one(
        self, blocking_registry, make_identity
    ):
        registry, _ = blocking_registry
        host = registry.bind("session-1", make_identity("octocat"))

        await _send(_transport_app(registry), "DELETE", "session-2")

        assert not host.closed
        assert len(registry) == 1

    def test_http_app_installs_termination_middleware(self, gateway):
        server, sessions = gateway

        app = server.http_app(transport="streamable-http", middleware=http_middleware(sessions))

        assert any(m.cls is SessionTerminationMiddleware for m in app.user_middleware)


# ---------------------------------------------------------------------------
# Test: health endpoints and logging
# ---------------------------------------------------------------------------


class TestHealthEndpoints:
    async def test_health_and_ready(self, server):
        transport = httpx.ASGITransport(app=server.http_app())
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            health = await client.get("/health")
            ready = await client.get("/ready")

        assert health.json() == {"status": "healthy"}
        assert ready.status_code == 200
        assert ready.json() == {"status": "ready", "tools": 4}


class TestJSONLogFormatter:
    def test_structured_fields_are_merged(self):
        record = logging.LogRecord(
            "tool_gateway.engine", logging.INFO, __file__, 1, "Tool call authorized", None, None
        )
        record.log_data = {"subject": "octocat", "tool": "add", "decision": "allowed"}

        line = JSONLogFormatter().format(record)

        assert '"subject": "octocat"' in line
        assert '"decision": "allowed"' in line
        assert '"message": "Tool call authorized"' in line
