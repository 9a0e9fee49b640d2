"""
Identity context and identity token validation.

The OAuth authorization-code exchange happens outside this server. Once it
completes, the authorization flow hands every session a signed identity token
(a JWT) carrying the caller's profile and the upstream credential it was
granted. This module turns that token into an IdentityContext:

- Extracts the Bearer token from the HTTP Authorization header
- Validates the JWT signature and expiration
- Maps the claims onto an immutable IdentityContext

Token structure (JWT payload):
    {
        "sub": "octocat",                  # Stable subject identifier
        "name": "The Octocat",             # Display name
        "email": "octocat@github.com",     # Contact address
        "upstream_token": "gho_...",       # Delegated credential for tools
        "exp": 1738800000                  # Expiration (Unix timestamp)
    }

Security notes:
- **Fail closed**: any validation failure rejects the request, there is no
  anonymous fallback.
- **Credential hygiene**: the delegated credential never appears in repr()
  or in log output. Use IdentityContext.log_fields() when logging.
"""

from dataclasses import dataclass, field

import jwt

from tool_gateway.config import settings

# JWT claim -> IdentityContext attribute
CLAIM_MAP: dict[str, str] = {
    "sub": "subject_id",
    "name": "display_name",
    "email": "contact_address",
    "upstream_token": "delegated_credential",
}


class AuthError(Exception):
    """
    Raised when identity token validation fails for any reason.

    A single exception type covers missing headers, bad signatures, expired
    tokens and malformed claims. The detailed reason is logged server-side;
    clients only learn that authentication failed.

    Attributes:
        message: Human-readable error description (logged server-side)
        status_code: HTTP status code to return (401 for auth failures)
    """

    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class IdentityContext:
    """
    The authenticated caller, scoped to one session.

    Frozen: once the session is established the identity cannot change.
    Re-authentication produces a new instance, it never mutates this one.

    Attributes:
        subject_id: Stable identifier of the caller (the "sub" claim)
        display_name: Human-readable name
        contact_address: Email or other contact address
        delegated_credential: Opaque upstream token that tool handlers use to
                              act on the caller's behalf. Excluded from repr.
    """

    subject_id: str
    display_name: str = ""
    contact_address: str = ""
    delegated_credential: str = field(default="", repr=False)

    def log_fields(self) -> dict[str, str]:
        """Fields that are safe to attach to a log record."""
        return {"subject": self.subject_id, "display_name": self.display_name}


def identity_from_claims(payload: dict) -> IdentityContext:
    """
    Build an IdentityContext from decoded token claims.

    Only "sub" is required. The other claims default to an empty string, but
    when present they must be strings.

    Raises:
        AuthError: If a claim has the wrong type or "sub" is empty
    """
    values: dict[str, str] = {}
    for claim, attribute in CLAIM_MAP.items():
        value = payload.get(claim, "")
        if not isinstance(value, str):
            raise AuthError(f"Invalid {claim} claim: must be a string")
        values[attribute] = value

    if not values["subject_id"]:
        raise AuthError("Invalid sub claim: must not be empty")

    return IdentityContext(**values)


def validate_token(authorization_header: str | None) -> IdentityContext:
    """
    Validate a Bearer identity token from the Authorization header.

    1. Check that a header is present
    2. Extract the token from "Bearer <token>" format
    3. Decode and verify the JWT (signature + expiration)
    4. Map the claims onto an IdentityContext

    Args:
        authorization_header: The raw Authorization header value,
                              expected format: "Bearer <jwt-token>"

    Returns:
        IdentityContext for the caller

    Raises:
        AuthError: If any validation step fails
    """
    if not authorization_header:
        raise AuthError("Missing Authorization header")

    # RFC 6750 bearer scheme, matched case-insensitively.
    parts = authorization_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthError("Invalid Authorization header format, expected 'Bearer <token>'")

    token = parts[1]

    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            # Tokens without an expiration or a subject are rejected.
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise AuthError(f"Invalid token: {e}")

    return identity_from_claims(payload)
