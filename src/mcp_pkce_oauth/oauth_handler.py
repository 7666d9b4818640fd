# mcp_pkce_oauth/oauth_handler.py
"""OAuth handler for MCP server connections."""

import logging
from typing import Any, Dict, List, Optional

import httpx

from .oauth_config import OAuthTokenData
from .provider import OAuthProvider
from .token_store import TokenStore

logger = logging.getLogger(__name__)

# Treat tokens expiring within this window as expired
EXPIRY_SKEW_SECONDS = 60


class OAuthHandler:
    """Handles OAuth authentication for named MCP servers."""

    def __init__(self, token_store: Optional[TokenStore] = None, **provider_options):
        """
        Initialize OAuth handler.

        Args:
            token_store: Token store instance (creates default if not provided)
            **provider_options: Extra keyword arguments for each OAuthProvider
        """
        self.token_store = token_store or TokenStore()
        self._provider_options = provider_options
        self._providers: Dict[str, OAuthProvider] = {}
        self._active_tokens: Dict[str, OAuthTokenData] = {}

    def get_provider(
        self,
        server_name: str,
        server_url: str,
        client_id: Optional[str] = None,
        scopes: Optional[List[str]] = None,
    ) -> OAuthProvider:
        """Get the provider for a server, creating it on first use."""
        provider = self._providers.get(server_name)
        if provider is None or provider.server_url != server_url:
            provider = OAuthProvider(
                server_url,
                client_id=client_id,
                scopes=scopes,
                token_store=self.token_store,
                **self._provider_options,
            )
            self._providers[server_name] = provider
        return provider

    async def ensure_authenticated(
        self,
        server_name: str,
        server_url: str,
        client_id: Optional[str] = None,
        scopes: Optional[List[str]] = None,
    ) -> OAuthTokenData:
        """
        Ensure a server has a valid access token.

        This method:
        1. Checks for cached tokens in memory
        2. Checks for stored tokens on disk
        3. Refreshes expired tokens if a refresh token is available
        4. Performs the full OAuth flow otherwise

        Args:
            server_name: Name of the MCP server
            server_url: Base URL of the MCP server
            client_id: Optional configured client id
            scopes: Optional OAuth scopes

        Returns:
            Valid token record
        """
        # Check memory cache first
        tokens = self._active_tokens.get(server_name)
        if tokens and not tokens.is_expired(EXPIRY_SKEW_SECONDS):
            return tokens

        provider = self.get_provider(server_name, server_url, client_id, scopes)

        # Check disk storage
        stored_tokens = provider.tokens()
        if stored_tokens and not stored_tokens.is_expired(EXPIRY_SKEW_SECONDS):
            self._active_tokens[server_name] = stored_tokens
            return stored_tokens

        # Try refresh if we have a refresh token
        if stored_tokens and stored_tokens.refresh_token:
            try:
                tokens = await provider.refresh()
                self._active_tokens[server_name] = tokens
                return tokens
            except Exception as e:
                logger.warning(f"Token refresh failed for {server_name}: {e}")
                # Fall through to full auth flow

        logger.info(f"🔐 Authentication required for {server_name}")
        tokens = await provider.login()
        self._active_tokens[server_name] = tokens
        logger.info(f"Completed OAuth flow for {server_name}")
        return tokens

    async def _reauthenticate(
        self, server_name: str, server_url: str, scopes: Optional[List[str]]
    ) -> OAuthTokenData:
        """Replace a token the server rejected, preferring the refresh token."""
        provider = self.get_provider(server_name, server_url, scopes=scopes)
        stored_tokens = provider.tokens()
        tokens = None
        if stored_tokens and stored_tokens.refresh_token:
            try:
                tokens = await provider.refresh()
            except Exception as e:
                logger.warning(f"Token refresh failed for {server_name}: {e}")
        if tokens is None:
            tokens = await provider.login()
        self._active_tokens[server_name] = tokens
        return tokens

    def get_authorization_header(self, server_name: str) -> Optional[str]:
        """
        Get Authorization header value for a server.

        Returns:
            Authorization header value or None if not authenticated
        """
        if server_name in self._active_tokens:
            return self._active_tokens[server_name].get_authorization_header()
        return None

    async def prepare_headers(
        self,
        server_name: str,
        server_url: str,
        scopes: Optional[List[str]] = None,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, str]:
        """
        Prepare HTTP headers for an MCP server connection.

        Raises:
            Exception: If authentication fails
        """
        headers: Dict[str, str] = extra_headers.copy() if extra_headers else {}

        try:
            tokens = await self.ensure_authenticated(
                server_name, server_url, scopes=scopes
            )
        except Exception as e:
            logger.error(f"OAuth authentication failed for {server_name}: {e}")
            raise

        headers["Authorization"] = tokens.get_authorization_header()
        logger.debug(f"Added Authorization header for {server_name}")
        return headers

    async def handle_step_up(
        self, server_name: str, status_code: int, headers: Any
    ) -> bool:
        """
        Re-authorize a server with broader scopes if a response demands them.

        Returns:
            True if new tokens were obtained
        """
        provider = self._providers.get(server_name)
        if provider is None:
            return False

        tokens = await provider.handle_step_up(status_code, headers)
        if tokens is None:
            return False

        self._active_tokens[server_name] = tokens
        return True

    async def authenticated_request(
        self,
        server_name: str,
        server_url: str,
        url: str,
        method: str = "GET",
        scopes: Optional[List[str]] = None,
        retry_on_401: bool = True,
        retry_on_step_up: bool = True,
        **kwargs,
    ) -> httpx.Response:
        """
        Make an authenticated HTTP request to an MCP server.

        1. Ensures valid authentication
        2. Makes the request with the Authorization header
        3. On 401, drops the cached token, re-authenticates and retries once
        4. On 403 with an insufficient-scope challenge, re-authorizes with the
           merged scopes and retries once

        Raises:
            httpx.HTTPStatusError: If the final response is an error
        """
        tokens = await self.ensure_authenticated(server_name, server_url, scopes=scopes)

        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = tokens.get_authorization_header()

        async with httpx.AsyncClient() as client:
            response = await client.request(method, url, headers=headers, **kwargs)

            if response.status_code == 401 and retry_on_401:
                logger.info(
                    f"Received 401 Unauthorized from {server_name}, re-authenticating"
                )
                self._active_tokens.pop(server_name, None)
                tokens = await self._reauthenticate(server_name, server_url, scopes)
                headers["Authorization"] = tokens.get_authorization_header()
                response = await client.request(method, url, headers=headers, **kwargs)

            elif response.status_code == 403 and retry_on_step_up:
                if await self.handle_step_up(
                    server_name, response.status_code, response.headers
                ):
                    headers["Authorization"] = self._active_tokens[
                        server_name
                    ].get_authorization_header()
                    response = await client.request(
                        method, url, headers=headers, **kwargs
                    )

            response.raise_for_status()
            return response

    def clear_tokens(self, server_name: str, server_url: str) -> None:
        """Clear tokens for a server from memory and disk."""
        self._active_tokens.pop(server_name, None)
        self.token_store.delete(server_url, server_url)

    def logout(self, server_name: str, server_url: str) -> bool:
        """
        Log out from a server.

        Removes the stored token record and forgets the provider together with
        its client registration. Tokens are not revoked with the server.

        Returns:
            True if a token record existed
        """
        existed = self.token_store.load(server_url, server_url) is not None
        self.clear_tokens(server_name, server_url)
        self._providers.pop(server_name, None)
        logger.info(f"Logged out from {server_name}")
        return existed

    def token_status(self) -> Dict[str, Any]:
        """
        Summarize all stored tokens.

        Returns:
            Dict with ``valid`` and ``expired`` lists of storage keys
        """
        valid: List[str] = []
        expired: List[str] = []
        for key, token in sorted(self.token_store.list_all().items()):
            (expired if token.is_expired() else valid).append(key)
        return {"valid": valid, "expired": expired}
