"""
Calls to the external services the built-in tools depend on.

Three collaborators:
- the "get authenticated user" profile API (uses the delegated credential)
- the image generation backend
- the price feed

Every call returns either its extracted value or an UpstreamError. Nothing
here raises for network failures, timeouts, non-success statuses or
malformed bodies; handlers turn an UpstreamError into a Failure and the
engine never has to guess what an exception meant.

Each response is shape-checked before any field is read. When the shape is
wrong, the UpstreamError keeps the raw body for diagnostics.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from tool_gateway.config import Settings

logger = logging.getLogger("tool_gateway.upstream")

# Kept in UpstreamError.body; long bodies are cut here.
MAX_BODY_CHARS = 2000


@dataclass(frozen=True)
class UpstreamError:
    """
    A failed collaborator call.

    Attributes:
        service: Which collaborator failed ("profile", "image", "price")
        message: Short description of what went wrong
        status_code: HTTP status, when the collaborator answered at all
        body: Raw response text, when there was one
    """

    service: str
    message: str
    status_code: int | None = None
    body: str | None = None

    def detail(self) -> dict[str, Any]:
        detail: dict[str, Any] = {"service": self.service}
        if self.status_code is not None:
            detail["status_code"] = self.status_code
        if self.body is not None:
            detail["body"] = self.body
        return detail


def _body_text(response: httpx.Response) -> str:
    return response.text[:MAX_BODY_CHARS]


class UpstreamClient:
    """
    httpx-based client for the tool collaborators.

    A short-lived AsyncClient is opened per call with an explicit timeout.
    Pass `transport` to route requests somewhere other than the network
    (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.upstream_timeout_seconds,
            transport=self._transport,
        )

    async def _send(
        self, service: str, method: str, url: str, **kwargs: Any
    ) -> httpx.Response | UpstreamError:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            logger.warning(
                "Upstream call timed out",
                extra={"log_data": {"service": service, "url": url}},
            )
            return UpstreamError(service, f"{service} request timed out")
        except httpx.HTTPError as e:
            logger.warning(
                "Upstream call failed",
                extra={"log_data": {"service": service, "url": url, "error": str(e)}},
            )
            return UpstreamError(service, f"{service} request failed: {e}")

        if not response.is_success:
            body = _body_text(response)
            return UpstreamError(
                service,
                f"{response.status_code} {body}",
                status_code=response.status_code,
                body=body,
            )
        return response

    async def _send_json_object(
        self, service: str, method: str, url: str, **kwargs: Any
    ) -> dict[str, Any] | UpstreamError:
        response = await self._send(service, method, url, **kwargs)
        if isinstance(response, UpstreamError):
            return response

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if not isinstance(payload, dict):
            body = _body_text(response)
            return UpstreamError(
                service,
                "response is not a JSON object",
                status_code=response.status_code,
                body=body,
            )
        return payload

    async def get_authenticated_user(self, credential: str) -> dict[str, Any] | UpstreamError:
        """Fetch the profile of the user the delegated credential belongs to."""
        if not credential:
            return UpstreamError("profile", "no delegated credential for this session")

        return await self._send_json_object(
            "profile",
            "GET",
            f"{self._settings.github_api_url.rstrip('/')}/user",
            headers={
                "Authorization": f"Bearer {credential}",
                "Accept": "application/vnd.github+json",
                "User-Agent": "tool-gateway",
            },
        )

    async def generate_image(self, prompt: str, steps: int) -> bytes | UpstreamError:
        """
        Run the image backend and return the raw image bytes.

        The backend answers {"result": {"image": "<base64>"}}.
        """
        if not self._settings.image_backend_url:
            return UpstreamError("image", "image generation backend is not configured")

        headers = {}
        if self._settings.image_backend_token:
            headers["Authorization"] = f"Bearer {self._settings.image_backend_token}"

        payload = await self._send_json_object(
            "image",
            "POST",
            self._settings.image_backend_url,
            json={"prompt": prompt, "steps": steps},
            headers=headers,
        )
        if isinstance(payload, UpstreamError):
            return payload

        result = payload.get("result")
        encoded = result.get("image") if isinstance(result, dict) else None
        if not isinstance(encoded, str) or not encoded:
            return UpstreamError(
                "image",
                "response has no result.image field",
                body=str(payload)[:MAX_BODY_CHARS],
            )

        try:
            return base64.b64decode(encoded, validate=True)
        except binascii.Error:
            return UpstreamError(
                "image",
                "result.image is not valid base64",
                body=encoded[:MAX_BODY_CHARS],
            )

    async def fetch_price(self) -> int | float | str | UpstreamError:
        """
        Read the current price from the price feed.

        The feed answers {"price": <number or numeric string>, ...}.
        """
        payload = await self._send_json_object("price", "GET", self._settings.price_feed_url)
        if isinstance(payload, UpstreamError):
            return payload

        price = payload.get("price")
        if isinstance(price, bool) or not isinstance(price, (int, float, str)):
            return UpstreamError(
                "price",
                "response has no numeric price field",
                body=str(payload)[:MAX_BODY_CHARS],
            )
        if isinstance(price, str):
            try:
                float(price)
            except ValueError:
                return UpstreamError(
                    "price",
                    "price field is not numeric",
                    body=str(payload)[:MAX_BODY_CHARS],
                )
        return price
