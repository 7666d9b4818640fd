#!/usr/bin/env python3
"""
Command-line tool for MCP OAuth logins.

Usage:
    mcp-oauth login <server_name> --server-url <url> [--client-id ID] [--scopes S ...]
    mcp-oauth logout <server_name> --server-url <url>
    mcp-oauth status [<server_name>] [--server-url <url>]
"""

import argparse
import asyncio
import logging
import sys
import time
from typing import List, Optional

from .errors import OAuthError
from .oauth_handler import OAuthHandler
from .token_store import TokenStore, build_key


def safe_display_token(token: str, prefix_len: int = 20, suffix_len: int = 6) -> str:
    """Safely display a token with most characters redacted."""
    if len(token) <= prefix_len + suffix_len:
        return f"{token[:10]}..."

    prefix = token[:prefix_len]
    suffix = token[-suffix_len:]
    redacted_len = len(token) - prefix_len - suffix_len

    return f"{prefix}...{'*' * min(redacted_len, 20)}...{suffix}"


def print_header(text: str):
    """Print a formatted header."""
    print("\n" + "=" * 60)
    print(text)
    print("=" * 60)


def _format_expiry(expires_at: Optional[int]) -> str:
    if expires_at is None:
        return "no expiry"
    remaining = expires_at - int(time.time())
    if remaining <= 0:
        return "expired"
    return f"expires in {remaining} seconds"


async def cmd_login(
    server_name: str,
    server_url: str,
    client_id: Optional[str] = None,
    scopes: Optional[List[str]] = None,
) -> int:
    """Authenticate with an MCP server."""
    print_header(f"Authenticating with {server_name}")
    print(f"Server URL: {server_url}")
    if scopes:
        print(f"Scopes: {' '.join(scopes)}")

    handler = OAuthHandler()
    provider = handler.get_provider(server_name, server_url, client_id, scopes)

    try:
        print("\n🔐 Starting OAuth flow...")
        print("This will open your browser for authorization.\n")

        tokens = await provider.login()

        print("\n✅ Authentication successful!")
        print(f"Access Token: {safe_display_token(tokens.access_token)}")
        print(f"Expiry: {_format_expiry(tokens.expires_at)}")
        if tokens.refresh_token:
            print(f"Refresh Token: {safe_display_token(tokens.refresh_token)}")
        print(f"\n💾 Tokens saved to {handler.token_store.storage_path}")
        return 0

    except OAuthError as e:
        print(f"\n❌ Authentication failed: {e}")
        return 1


def cmd_logout(server_name: str, server_url: str) -> int:
    """Remove stored tokens for a server."""
    print_header(f"Logging Out from {server_name}")

    handler = OAuthHandler()
    if handler.logout(server_name, server_url):
        print(f"✅ Removed stored tokens for '{server_name}'")
    else:
        print(f"⚠️  No tokens found for '{server_name}'")
        print("Already logged out.")
    return 0


def cmd_status(server_name: Optional[str] = None, server_url: Optional[str] = None) -> int:
    """Show stored OAuth tokens and their validity."""
    title = f"OAuth Status for {server_name}" if server_name else "Stored OAuth Tokens"
    print_header(title)

    token_store = TokenStore()
    if server_url:
        key = build_key(server_url, server_url)
        token = token_store.load(server_url, server_url)
        tokens = {key: token} if token else {}
    elif server_name:
        # Records are keyed by host, so a bare name is matched as a host
        tokens = token_store.list_by_host(server_name)
    else:
        tokens = token_store.list_all()

    if not tokens:
        if server_name or server_url:
            print(f"No OAuth tokens stored for '{server_name or server_url}'.")
        else:
            print("No OAuth tokens stored.")
        print("\nTip: Authenticate with:")
        print("  mcp-oauth login <server_name> --server-url <server_url>")
        return 1 if (server_name or server_url) else 0

    expired_count = 0
    for key, token in sorted(tokens.items()):
        is_expired = token.is_expired()
        expired_count += is_expired
        print(f"  • {key}")
        print(f"    Status: {'❌ EXPIRED' if is_expired else '✅ VALID'}")
        print(f"    Token: {safe_display_token(token.access_token, prefix_len=15, suffix_len=4)}")
        print(f"    Expiry: {_format_expiry(token.expires_at)}")
        if token.client_info:
            print(f"    Client: {token.client_info.client_id}")
        print()

    valid_count = len(tokens) - expired_count
    print(f"{valid_count} valid, {expired_count} expired")
    print(f"💾 Storage: {token_store.storage_path}")
    return 0 if expired_count == 0 else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mcp-oauth",
        description="OAuth login for MCP servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mcp-oauth login notion --server-url https://mcp.notion.com/mcp
  mcp-oauth login internal --server-url https://mcp.example.com --client-id my-app --scopes read write
  mcp-oauth status
  mcp-oauth logout notion --server-url https://mcp.notion.com/mcp
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    login_parser = subparsers.add_parser(
        "login", help="Authenticate with an MCP server using OAuth"
    )
    login_parser.add_argument("server_name", help="Name for the server (e.g., notion)")
    login_parser.add_argument("--server-url", required=True, help="MCP server URL")
    login_parser.add_argument("--client-id", help="Pre-registered OAuth client id")
    login_parser.add_argument("--scopes", nargs="+", help="OAuth scopes to request")

    logout_parser = subparsers.add_parser(
        "logout", help="Remove stored OAuth tokens for a server"
    )
    logout_parser.add_argument("server_name", help="Server name")
    logout_parser.add_argument("--server-url", required=True, help="MCP server URL")

    status_parser = subparsers.add_parser(
        "status", help="Show OAuth token status"
    )
    status_parser.add_argument(
        "server_name",
        nargs="?",
        help="Server host to filter by (ignored when --server-url is given)",
    )
    status_parser.add_argument("--server-url", help="MCP server URL")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    try:
        if args.command == "login":
            return asyncio.run(
                cmd_login(args.server_name, args.server_url, args.client_id, args.scopes)
            )
        elif args.command == "logout":
            return cmd_logout(args.server_name, args.server_url)
        elif args.command == "status":
            return cmd_status(args.server_name, args.server_url)
        else:  # pragma: no cover
            parser.print_help()
            return 1

    except KeyboardInterrupt:
        print("\n\n❌ Interrupted by user")
        return 130
    except Exception as e:
        print(f"\n❌ Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
