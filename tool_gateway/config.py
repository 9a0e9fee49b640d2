"""
Application configuration loaded from environment variables.

Uses pydantic-settings to define typed configuration that automatically reads
from environment variables. All config comes from the environment, never
hardcoded in source code.

In production these are injected via the deployment manifest:
- MCP_HOST, MCP_PORT, MCP_LOG_LEVEL come from the ConfigMap
- MCP_JWT_SECRET_KEY and MCP_IMAGE_BACKEND_TOKEN come from the secret store
- MCP_IMAGE_ALLOWED_SUBJECTS is set per deployment, as a JSON list:
      MCP_IMAGE_ALLOWED_SUBJECTS='["octocat", "hubot"]'

Locally, you can set them via environment variables or a .env file.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Server configuration with environment variable bindings.

    Each field maps to an environment variable with the MCP_ prefix.
    For example, `host` reads from MCP_HOST, `price_feed_url` reads
    from MCP_PRICE_FEED_URL.
    """

    # --- Server settings ---

    # "0.0.0.0" is required inside containers so traffic from outside can
    # reach the server. Locally you might use "127.0.0.1".
    host: str = "0.0.0.0"
    port: int = 8080

    # Logging verbosity. Maps to Python's logging levels.
    log_level: str = "info"

    # --- Identity token settings ---

    # Secret used to validate the identity tokens minted by the authorization
    # flow. Default is for local development only - NEVER use it in production.
    jwt_secret_key: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"

    # --- Visibility settings ---

    # Subject identifiers allowed to see and call generateImage.
    # Exact string match on the token's "sub" claim. Empty means nobody.
    image_allowed_subjects: set[str] = set()

    # --- Upstream settings ---

    # Per-request timeout for every external HTTP call.
    upstream_timeout_seconds: float = 10.0

    # Upper bound for a whole tool invocation, including its external calls.
    tool_timeout_seconds: float = 30.0

    # "Get authenticated user" API. The delegated credential is sent as a
    # bearer token to {github_api_url}/user.
    github_api_url: str = "https://api.github.com"

    # Fixed price feed returning {"price": ...}.
    price_feed_url: str = (
        "https://mcp-course.s3.eu-central-1.amazonaws.com/public/hard-coded-price.json"
    )

    # Image generation backend, e.g. the Workers AI REST endpoint:
    # https://api.cloudflare.com/client/v4/accounts/<id>/ai/run/@cf/black-forest-labs/flux-1-schnell
    # Left empty, generateImage reports an upstream error without calling out.
    image_backend_url: str = ""
    image_backend_token: str = ""

    # --- Session settings ---

    # Number of live sessions kept before the least recently used is closed.
    max_sessions: int = 1024

    # Seconds without a request after which a session's host is closed,
    # for clients that disappear without terminating their session.
    session_idle_timeout_seconds: float = 1800.0

    model_config = {
        # All environment variables are prefixed with MCP_ to avoid collisions.
        "env_prefix": "MCP_",
        # Also read from .env file if it exists (useful for local development).
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


# Singleton instance: import this from other modules.
# Created once at module load time, reads environment variables immediately.
settings = Settings()
