#!/usr/bin/env python3
"""
Basic example of MCP OAuth authentication.

Logs in to an MCP server with the full OAuth 2.1 flow:

1. Protected Resource Metadata (RFC 9728) at /.well-known/oauth-protected-resource
2. Authorization Server Metadata (RFC 8414) at /.well-known/oauth-authorization-server
3. Dynamic Client Registration (RFC 7591), or a client id passed as second argument
4. Authorization Code Flow with PKCE through a local callback server

Tokens are stored in ~/.config/mcp-oauth/mcp-oauth.json and reused by
OAuthHandler on later runs.
"""

import asyncio
import logging
import sys

from mcp_pkce_oauth import OAuthError, OAuthHandler


def safe_display_token(token: str, prefix_len: int = 20, suffix_len: int = 6) -> str:
    """Show the first and last characters of a token only."""
    if len(token) <= prefix_len + suffix_len:
        return f"{token[:10]}..."
    return f"{token[:prefix_len]}...{token[-suffix_len:]}"


async def main():
    if len(sys.argv) < 2:
        print("Usage: python basic_mcp_oauth.py <server_url> [client_id]")
        print("\nExample:")
        print("  python basic_mcp_oauth.py https://mcp.notion.com/mcp")
        sys.exit(1)

    server_url = sys.argv[1]
    client_id = sys.argv[2] if len(sys.argv) > 2 else None

    logging.basicConfig(level=logging.INFO)
    handler = OAuthHandler()

    print(f"Authenticating with {server_url}...")
    print("=" * 60)

    try:
        # Uses stored tokens when still valid, refreshes or opens the browser otherwise
        tokens = await handler.ensure_authenticated(
            "example", server_url, client_id=client_id
        )
    except OAuthError as e:
        print(f"\n❌ Error: {e}")
        sys.exit(1)

    print("\n✅ Authentication successful!")
    print(f"Access Token: {safe_display_token(tokens.access_token)}")
    if tokens.expires_at:
        print(f"Expires At: {tokens.expires_at}")
    if tokens.refresh_token:
        print(f"Refresh Token: {safe_display_token(tokens.refresh_token)}")

    headers = await handler.prepare_headers("example", server_url)
    print(f"\nAuthorization Header: {safe_display_token(headers['Authorization'])}")
    print(f"Token file: {handler.token_store.storage_path}")


if __name__ == "__main__":
    asyncio.run(main())
