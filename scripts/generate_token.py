"""
CLI utility to mint identity tokens for testing the MCP gateway.

In production, identity tokens are issued by the authorization flow after the
OAuth exchange with the identity provider. Locally, this script plays that
role: it signs a token carrying the caller's profile and the upstream
credential the tools will use on their behalf.

Usage examples:

    # Token for a caller without an upstream credential
    uv run python -m scripts.generate_token --sub octocat

    # Token with profile fields and a GitHub credential for userInfo
    uv run python -m scripts.generate_token --sub octocat --name "The Octocat" \\
        --email octocat@github.com --upstream-token gho_xxx

    # Token with custom secret (must match MCP_JWT_SECRET_KEY on the server)
    uv run python -m scripts.generate_token --sub octocat --secret my-prod-secret

    # Expired token (for testing rejection)
    uv run python -m scripts.generate_token --sub octocat --exp-hours -1

To see generateImage, the subject must also be listed in the server's
MCP_IMAGE_ALLOWED_SUBJECTS.
"""

import argparse
import datetime

import jwt


def generate_token(
    subject: str,
    secret: str,
    name: str = "",
    email: str = "",
    upstream_token: str = "",
    algorithm: str = "HS256",
    exp_hours: float = 8.0,
) -> str:
    """
    Generate a signed identity token.

    Args:
        subject: The "sub" claim - the caller's stable identifier
        secret: The signing key (must match the server's MCP_JWT_SECRET_KEY)
        name: Display name claim
        email: Contact address claim
        upstream_token: Delegated credential for tools that call upstream APIs
        algorithm: JWT signing algorithm (default: HS256)
        exp_hours: Hours until expiration (negative = already expired)

    Returns:
        The encoded JWT token string
    """
    now = datetime.datetime.now(datetime.timezone.utc)

    payload = {
        "sub": subject,
        "name": name,
        "email": email,
        "upstream_token": upstream_token,
        "iat": now,
        "exp": now + datetime.timedelta(hours=exp_hours),
    }

    return jwt.encode(payload, secret, algorithm=algorithm)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate identity tokens for the MCP tool gateway.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Minimal token:
    %(prog)s --sub octocat

  With a GitHub credential for userInfo:
    %(prog)s --sub octocat --upstream-token gho_xxx

  Expired token (for testing):
    %(prog)s --sub octocat --exp-hours -1
        """,
    )

    parser.add_argument(
        "--sub",
        required=True,
        help="Subject claim: the caller's stable identifier (e.g., a GitHub login)",
    )
    parser.add_argument("--name", default="", help="Display name claim")
    parser.add_argument("--email", default="", help="Contact address claim")
    parser.add_argument(
        "--upstream-token",
        default="",
        help="Delegated upstream credential used by userInfo",
    )
    parser.add_argument(
        "--secret",
        default="dev-secret-change-me",
        help="JWT signing secret (must match server's MCP_JWT_SECRET_KEY)",
    )
    parser.add_argument(
        "--algorithm",
        default="HS256",
        help="JWT signing algorithm (default: HS256)",
    )
    parser.add_argument(
        "--exp-hours",
        type=float,
        default=8.0,
        help="Hours until token expires (negative = already expired, default: 8)",
    )

    args = parser.parse_args()

    token = generate_token(
        subject=args.sub,
        secret=args.secret,
        name=args.name,
        email=args.email,
        upstream_token=args.upstream_token,
        algorithm=args.algorithm,
        exp_hours=args.exp_hours,
    )

    exp_time = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(
        hours=args.exp_hours
    )

    print(f"Subject:    {args.sub}")
    print(f"Name:       {args.name or '-'}")
    print(f"Email:      {args.email or '-'}")
    print(f"Upstream:   {'set' if args.upstream_token else 'not set'}")
    print(f"Expires:    {exp_time.isoformat()}")
    print(f"Algorithm:  {args.algorithm}")
    print()
    print(f"Token: {token}")

    print()
    print("Usage with curl (initialize MCP session):")
    print('  curl -X POST http://localhost:8080/mcp \\')
    print('    -H "Content-Type: application/json" \\')
    print('    -H "Accept: application/json, text/event-stream" \\')
    print(f'    -H "Authorization: Bearer {token}" \\')
    print(
        '    -d \'{"jsonrpc":"2.0","id":1,"method":"initialize",'
        '"params":{"protocolVersion":"2025-06-18","capabilities":{},'
        '"clientInfo":{"name":"test","version":"1.0"}}}\''
    )


if __name__ == "__main__":
    main()
