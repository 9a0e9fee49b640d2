"""
Built-in tool definitions.

    TOOL            GUARD               COLLABORATOR
    add             -                   -
    userInfo        -                   profile API (delegated credential)
    generateImage   image_generation    image backend
    get_price       -                   price feed

build_tool_table() registers all four and freezes the table. Whether
generateImage shows up for a session is decided later, per request, by the
visibility policy.
"""

import json
from typing import Any

from tool_gateway.identity import IdentityContext
from tool_gateway.policy import IMAGE_GENERATION_GUARD
from tool_gateway.registry import ToolDescriptor, ToolTable
from tool_gateway.results import (
    BinaryBlock,
    ContentBlock,
    Failure,
    FailureKind,
    TextBlock,
)
from tool_gateway.schema import Param, ParameterSchema, ParamKind
from tool_gateway.upstream import UpstreamClient, UpstreamError

# Case-insensitive aliases for get_price. Anything else is upper-cased as is.
SYMBOL_ALIASES: dict[str, str] = {
    "bitcoin": "BTCUSDT",
    "btc": "BTCUSDT",
    "ethereum": "ETHUSDT",
    "eth": "ETHUSDT",
}

IMAGE_MIME_TYPE = "image/jpeg"


def resolve_symbol(name: str) -> str:
    return SYMBOL_ALIASES.get(name.lower(), name.upper())


def format_number(value: float) -> str:
    """Render a number without a trailing ".0" when it is integral."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def upstream_failure(error: UpstreamError, message: str) -> Failure:
    return Failure(FailureKind.UPSTREAM_ERROR, message, error.detail())


def add(params: dict[str, Any], identity: IdentityContext) -> list[ContentBlock]:
    """Add two numbers."""
    return [TextBlock(format_number(params["a"] + params["b"]))]


class UpstreamTools:
    """Handlers that call out to collaborators through an UpstreamClient."""

    def __init__(self, client: UpstreamClient):
        self.client = client

    async def user_info(
        self, params: dict[str, Any], identity: IdentityContext
    ) -> list[ContentBlock] | Failure:
        profile = await self.client.get_authenticated_user(identity.delegated_credential)
        if isinstance(profile, UpstreamError):
            return upstream_failure(profile, f"Error getting user info: {profile.message}")
        return [TextBlock(json.dumps(profile))]

    async def generate_image(
        self, params: dict[str, Any], identity: IdentityContext
    ) -> list[ContentBlock] | Failure:
        image = await self.client.generate_image(params["prompt"], params["steps"])
        if isinstance(image, UpstreamError):
            return upstream_failure(image, f"Error generating image: {image.message}")
        return [BinaryBlock(data=image, mime_type=IMAGE_MIME_TYPE)]

    async def get_price(
        self, params: dict[str, Any], identity: IdentityContext
    ) -> list[ContentBlock] | Failure:
        symbol = resolve_symbol(params["symbol"])
        price = await self.client.fetch_price()
        if isinstance(price, UpstreamError):
            return upstream_failure(price, f"Error getting price for {symbol}: {price.message}")
        return [TextBlock(f"The current price of {symbol} is {price}")]


def build_tool_table(client: UpstreamClient) -> ToolTable:
    """Register every built-in tool and freeze the table."""
    upstream = UpstreamTools(client)
    table = ToolTable()

    table.register(
        ToolDescriptor(
            name="add",
            description="Add two numbers the way only MCP can",
            schema=ParameterSchema(
                "add",
                [Param("a", ParamKind.NUMBER), Param("b", ParamKind.NUMBER)],
            ),
            handler=add,
        )
    )
    table.register(
        ToolDescriptor(
            name="userInfo",
            description="Get the authenticated user's profile from GitHub",
            schema=ParameterSchema("userInfo"),
            handler=upstream.user_info,
        )
    )
    table.register(
        ToolDescriptor(
            name="generateImage",
            description=(
                "Generate an image using the `flux-1-schnell` model. "
                "Works best with 8 steps."
            ),
            schema=ParameterSchema(
                "generateImage",
                [
                    Param(
                        "prompt",
                        ParamKind.STRING,
                        description="A text description of the image you want to generate.",
                    ),
                    Param(
                        "steps",
                        ParamKind.INTEGER,
                        description=(
                            "The number of diffusion steps; higher values can improve "
                            "quality but take longer. Must be between 4 and 8, inclusive."
                        ),
                        minimum=4,
                        maximum=8,
                        default=4,
                    ),
                ],
            ),
            handler=upstream.generate_image,
            guard=IMAGE_GENERATION_GUARD,
        )
    )
    table.register(
        ToolDescriptor(
            name="get_price",
            description="Get the current price of a crypto asset, e.g. bitcoin or ETH",
            schema=ParameterSchema(
                "get_price",
                [Param("symbol", ParamKind.STRING, description="Asset name or ticker symbol.")],
            ),
            handler=upstream.get_price,
        )
    )

    return table.freeze()
