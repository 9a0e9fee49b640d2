"""
Shared test fixtures for the gateway test suite.

Key fixtures:
- make_token / make_auth_header: sign identity tokens with any claims
- make_identity: build IdentityContext values directly
- gateway_settings: a Settings instance with an allow-list and a fake image backend
- upstream: a fake for every external collaborator, built on httpx.MockTransport,
  that records each request so tests can assert on call counts
- engine: an InvocationEngine over the real built-in tool table

Testing approach:
- test_identity.py: validate_token() in isolation
- test_schema.py / test_registry.py / test_policy.py: the building blocks
- test_engine.py / test_tools.py: the invocation pipeline against fake collaborators
- test_session.py: per-session identity binding and ordering
- test_server.py: GatewayMiddleware hooks and ToolResult conversion
"""

import base64
import datetime
import json

import httpx
import jwt
import pytest

from tool_gateway.config import Settings, settings
from tool_gateway.engine import InvocationEngine
from tool_gateway.identity import IdentityContext
from tool_gateway.policy import VisibilityPolicy
from tool_gateway.tools import build_tool_table
from tool_gateway.upstream import UpstreamClient

# Must match settings.jwt_secret_key so validate_token() accepts test tokens.
TEST_SECRET = settings.jwt_secret_key
TEST_ALGORITHM = settings.jwt_algorithm

PRICE_FEED_URL = "https://prices.test/price.json"
GITHUB_API_URL = "https://github.test"
IMAGE_BACKEND_URL = "https://images.test/run"

ALLOWED_SUBJECT = "octocat"
IMAGE_BYTES = b"\xff\xd8\xff\xe0fake-jpeg"


# ---------------------------------------------------------------------------
# Token factory fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def make_token():
    """
    Factory fixture to generate identity tokens for testing.

    Usage in tests:
        def test_something(make_token):
            token = make_token(sub="octocat", upstream_token="gho_abc")
    """

    def _make_token(
        sub: str = "test-user",
        name: str | None = "Test User",
        email: str | None = "test@example.com",
        upstream_token: str | None = "gho_test",
        secret: str = TEST_SECRET,
        algorithm: str = TEST_ALGORITHM,
        exp_hours: float = 1.0,
        extra_claims: dict | None = None,
        include_exp: bool = True,
        include_sub: bool = True,
    ) -> str:
        """
        Generate a signed identity token. Passing None for a profile claim
        omits it from the payload.
        """
        now = datetime.datetime.now(datetime.timezone.utc)
        payload: dict = {"iat": now}

        if include_sub:
            payload["sub"] = sub
        if name is not None:
            payload["name"] = name
        if email is not None:
            payload["email"] = email
        if upstream_token is not None:
            payload["upstream_token"] = upstream_token
        if include_exp:
            payload["exp"] = now + datetime.timedelta(hours=exp_hours)
        if extra_claims:
            payload.update(extra_claims)

        return jwt.encode(payload, secret, algorithm=algorithm)

    return _make_token


@pytest.fixture
def make_auth_header(make_token):
    """Convenience fixture that returns a full "Bearer <token>" string."""

    def _make_auth_header(**kwargs) -> str:
        return f"Bearer {make_token(**kwargs)}"

    return _make_auth_header


@pytest.fixture
def make_identity():
    def _make_identity(subject_id: str = "test-user", **kwargs) -> IdentityContext:
        kwargs.setdefault("display_name", f"{subject_id} display")
        kwargs.setdefault("contact_address", f"{subject_id}@example.com")
        kwargs.setdefault("delegated_credential", f"gho_{subject_id}")
        return IdentityContext(subject_id=subject_id, **kwargs)

    return _make_identity


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------
class FakeUpstream:
    """
    Stands in for the profile API, image backend and price feed.

    Each collaborator's answer can be replaced per test, e.g.:
        upstream.price_response = httpx.Response(500, text="server error")
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.price_response = httpx.Response(200, json={"symbol": "BTCUSDT", "price": 97000.5})
        self.image_response = httpx.Response(
            200, json={"result": {"image": base64.b64encode(IMAGE_BYTES).decode()}}
        )
        self.profile_response = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url == PRICE_FEED_URL:
            return self.price_response
        if url == IMAGE_BACKEND_URL:
            return self.image_response
        if url == f"{GITHUB_API_URL}/user":
            if self.profile_response is not None:
                return self.profile_response
            # Echo back whose credential was used.
            token = request.headers["authorization"].removeprefix("Bearer ")
            return httpx.Response(200, json={"login": token.removeprefix("gho_"), "token_seen": token})
        return httpx.Response(404, text="no such route")

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if str(r.url) == url]

    def image_calls(self) -> list[httpx.Request]:
        return self.calls_to(IMAGE_BACKEND_URL)

    def image_payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.image_calls()]


@pytest.fixture
def gateway_settings() -> Settings:
    return Settings(
        image_allowed_subjects={ALLOWED_SUBJECT},
        price_feed_url=PRICE_FEED_URL,
        github_api_url=GITHUB_API_URL,
        image_backend_url=IMAGE_BACKEND_URL,
        image_backend_token="cf-test-token",
        upstream_timeout_seconds=2.0,
        tool_timeout_seconds=5.0,
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def upstream_client(gateway_settings, upstream) -> UpstreamClient:
    return UpstreamClient(gateway_settings, transport=httpx.MockTransport(upstream.handler))


@pytest.fixture
def engine(gateway_settings, upstream_client) -> InvocationEngine:
    return InvocationEngine(
        build_tool_table(upstream_client),
        VisibilityPolicy.from_settings(gateway_settings),
        timeout=gateway_settings.tool_timeout_seconds,
    )
