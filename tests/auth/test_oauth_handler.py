"""Tests for OAuthHandler."""

import time
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import respx

from mcp_pkce_oauth.errors import TokenExchangeError
from mcp_pkce_oauth.oauth_config import ClientCredentials, OAuthTokenData
from mcp_pkce_oauth.oauth_handler import OAuthHandler
from mcp_pkce_oauth.provider import OAuthProvider
from mcp_pkce_oauth.token_store import TokenStore

SERVER_NAME = "test-server"
SERVER_URL = "https://mcp.example.com/mcp"


class TestOAuthHandler:
    """Test OAuthHandler functionality."""

    @pytest.fixture
    def token_store(self, tmp_path):
        """Provide a TokenStore instance."""
        return TokenStore(tmp_path / "mcp-oauth.json")

    @pytest.fixture
    def handler(self, token_store):
        """Provide an OAuthHandler instance."""
        return OAuthHandler(token_store=token_store)

    @pytest.fixture
    def valid_tokens(self):
        """Provide valid OAuth tokens."""
        return OAuthTokenData(
            access_token="test_access_token",
            refresh_token="test_refresh_token",
            expires_at=int(time.time()) + 3600,
            client_info=ClientCredentials(client_id="test_client_id"),
        )

    @pytest.fixture
    def expired_tokens(self):
        """Provide expired OAuth tokens."""
        return OAuthTokenData(
            access_token="expired_access_token",
            refresh_token="test_refresh_token",
            expires_at=int(time.time()) - 10,
            client_info=ClientCredentials(client_id="test_client_id"),
        )

    @pytest.fixture
    def new_tokens(self):
        """Provide tokens returned by a fresh login."""
        return OAuthTokenData(access_token="new_token", expires_at=int(time.time()) + 3600)

    def test_init_with_default_token_store(self, config_dir):
        """Test initialization with default token store."""
        handler = OAuthHandler()
        assert isinstance(handler.token_store, TokenStore)
        assert handler._active_tokens == {}

    def test_init_with_custom_token_store(self, token_store):
        """Test initialization with custom token store."""
        handler = OAuthHandler(token_store=token_store)
        assert handler.token_store is token_store

    def test_get_provider_cached(self, handler):
        """Test providers are reused per server name."""
        provider = handler.get_provider(SERVER_NAME, SERVER_URL, scopes=["read"])

        assert handler.get_provider(SERVER_NAME, SERVER_URL) is provider
        assert provider.scopes == ["read"]
        assert provider.token_store is handler.token_store

    def test_get_provider_replaced_on_url_change(self, handler):
        """Test a new URL for the same name gets a new provider."""
        provider = handler.get_provider(SERVER_NAME, SERVER_URL)

        other = handler.get_provider(SERVER_NAME, "https://other.example.com/mcp")

        assert other is not provider
        assert other.server_url == "https://other.example.com/mcp"

    def test_provider_options_forwarded(self, token_store):
        """Test extra options reach each provider."""
        handler = OAuthHandler(token_store=token_store, client_name="custom-client")

        assert handler.get_provider(SERVER_NAME, SERVER_URL).client_name == "custom-client"

    async def test_ensure_authenticated_with_cached_tokens(self, handler, valid_tokens):
        """Test authentication with cached tokens in memory."""
        handler._active_tokens[SERVER_NAME] = valid_tokens

        tokens = await handler.ensure_authenticated(SERVER_NAME, SERVER_URL)

        assert tokens == valid_tokens

    async def test_ensure_authenticated_with_stored_tokens(
        self, handler, token_store, valid_tokens
    ):
        """Test authentication with stored tokens on disk."""
        token_store.save(SERVER_URL, SERVER_URL, valid_tokens)

        tokens = await handler.ensure_authenticated(SERVER_NAME, SERVER_URL)

        assert tokens.access_token == valid_tokens.access_token
        assert SERVER_NAME in handler._active_tokens

    async def test_ensure_authenticated_full_flow(self, handler, new_tokens):
        """Test authentication with full OAuth flow."""
        with patch.object(
            OAuthProvider, "login", AsyncMock(return_value=new_tokens)
        ) as mock_login:
            tokens = await handler.ensure_authenticated(SERVER_NAME, SERVER_URL)

        assert tokens == new_tokens
        assert handler._active_tokens[SERVER_NAME] == new_tokens
        mock_login.assert_called_once()

    async def test_ensure_authenticated_with_refresh(
        self, handler, token_store, expired_tokens, new_tokens
    ):
        """Test authentication with token refresh."""
        token_store.save(SERVER_URL, SERVER_URL, expired_tokens)

        with patch.object(
            OAuthProvider, "refresh", AsyncMock(return_value=new_tokens)
        ) as mock_refresh, patch.object(OAuthProvider, "login", AsyncMock()) as mock_login:
            tokens = await handler.ensure_authenticated(SERVER_NAME, SERVER_URL)

        assert tokens == new_tokens
        mock_refresh.assert_called_once()
        mock_login.assert_not_called()

    async def test_ensure_authenticated_refresh_fails(
        self, handler, token_store, expired_tokens, new_tokens
    ):
        """Test fallback to full flow when refresh fails."""
        token_store.save(SERVER_URL, SERVER_URL, expired_tokens)

        with patch.object(
            OAuthProvider,
            "refresh",
            AsyncMock(side_effect=TokenExchangeError("Token exchange failed: 400")),
        ), patch.object(
            OAuthProvider, "login", AsyncMock(return_value=new_tokens)
        ) as mock_login:
            tokens = await handler.ensure_authenticated(SERVER_NAME, SERVER_URL)

        assert tokens == new_tokens
        mock_login.assert_called_once()

    async def test_ensure_authenticated_expiring_soon(
        self, handler, token_store, new_tokens
    ):
        """Test tokens about to expire are not reused."""
        token_store.save(
            SERVER_URL,
            SERVER_URL,
            OAuthTokenData(access_token="soon", expires_at=int(time.time()) + 30),
        )

        with patch.object(OAuthProvider, "login", AsyncMock(return_value=new_tokens)):
            tokens = await handler.ensure_authenticated(SERVER_NAME, SERVER_URL)

        assert tokens == new_tokens

    def test_get_authorization_header_with_tokens(self, handler, valid_tokens):
        """Test getting authorization header with tokens."""
        handler._active_tokens[SERVER_NAME] = valid_tokens

        assert handler.get_authorization_header(SERVER_NAME) == "Bearer test_access_token"

    def test_get_authorization_header_without_tokens(self, handler):
        """Test getting authorization header without tokens."""
        assert handler.get_authorization_header(SERVER_NAME) is None

    async def test_prepare_headers(self, handler, valid_tokens):
        """Test preparing headers for an MCP server."""
        handler._active_tokens[SERVER_NAME] = valid_tokens

        headers = await handler.prepare_headers(
            SERVER_NAME, SERVER_URL, extra_headers={"X-Custom": "value"}
        )

        assert headers == {
            "X-Custom": "value",
            "Authorization": "Bearer test_access_token",
        }

    async def test_prepare_headers_auth_failure(self, handler):
        """Test authentication failures propagate."""
        with patch.object(
            OAuthProvider,
            "login",
            AsyncMock(side_effect=TokenExchangeError("Token exchange failed: 400")),
        ):
            with pytest.raises(TokenExchangeError):
                await handler.prepare_headers(SERVER_NAME, SERVER_URL)

    def test_clear_tokens_from_memory_and_disk(self, handler, token_store, valid_tokens):
        """Test clearing tokens from both memory and disk."""
        handler._active_tokens[SERVER_NAME] = valid_tokens
        token_store.save(SERVER_URL, SERVER_URL, valid_tokens)

        handler.clear_tokens(SERVER_NAME, SERVER_URL)

        assert SERVER_NAME not in handler._active_tokens
        assert token_store.load(SERVER_URL, SERVER_URL) is None

    def test_clear_tokens_nonexistent_server(self, handler):
        """Test clearing tokens for a server without any."""
        handler.clear_tokens(SERVER_NAME, SERVER_URL)

    def test_logout(self, handler, token_store, valid_tokens):
        """Test logout removes tokens and the provider."""
        token_store.save(SERVER_URL, SERVER_URL, valid_tokens)
        handler.get_provider(SERVER_NAME, SERVER_URL)

        assert handler.logout(SERVER_NAME, SERVER_URL) is True
        assert token_store.load(SERVER_URL, SERVER_URL) is None
        assert SERVER_NAME not in handler._providers

    def test_logout_nonexistent_tokens(self, handler):
        """Test logout when no tokens are stored."""
        assert handler.logout(SERVER_NAME, SERVER_URL) is False

    def test_token_status(self, handler, token_store, valid_tokens, expired_tokens):
        """Test summarizing stored tokens."""
        token_store.save(SERVER_URL, SERVER_URL, valid_tokens)
        token_store.save(
            "https://old.example.com", "https://old.example.com", expired_tokens
        )

        assert handler.token_status() == {
            "valid": ["mcp.example.com/mcp.example.com/mcp"],
            "expired": ["old.example.com/old.example.com"],
        }

    async def test_handle_step_up_unknown_server(self, handler):
        """Test step-up without a provider does nothing."""
        assert await handler.handle_step_up(SERVER_NAME, 403, {}) is False

    async def test_handle_step_up(self, handler, new_tokens):
        """Test step-up replaces the active tokens."""
        handler.get_provider(SERVER_NAME, SERVER_URL)

        with patch.object(
            OAuthProvider, "handle_step_up", AsyncMock(return_value=new_tokens)
        ):
            assert await handler.handle_step_up(SERVER_NAME, 403, {}) is True

        assert handler._active_tokens[SERVER_NAME] == new_tokens


class TestAuthenticatedRequest:
    """Test authenticated requests with retry."""

    @pytest.fixture
    def handler(self, tmp_path):
        """Provide a handler with an authenticated server."""
        handler = OAuthHandler(token_store=TokenStore(tmp_path / "mcp-oauth.json"))
        handler._active_tokens[SERVER_NAME] = OAuthTokenData(access_token="first")
        return handler

    @pytest.fixture
    def router(self):
        """Mock all httpx traffic."""
        with respx.mock(assert_all_called=False) as mock:
            yield mock

    async def test_sends_bearer_token(self, handler, router):
        """Test the Authorization header is attached."""
        route = router.get(f"{SERVER_URL}/tools").mock(return_value=httpx.Response(200))

        response = await handler.authenticated_request(
            SERVER_NAME, SERVER_URL, f"{SERVER_URL}/tools", headers={"X-Custom": "1"}
        )

        assert response.status_code == 200
        request = route.calls.last.request
        assert request.headers["authorization"] == "Bearer first"
        assert request.headers["x-custom"] == "1"

    async def test_retries_after_401(self, handler, router):
        """Test re-authentication and retry on 401."""
        route = router.get(f"{SERVER_URL}/tools").mock(
            side_effect=[httpx.Response(401), httpx.Response(200)]
        )

        with patch.object(
            OAuthProvider,
            "login",
            AsyncMock(return_value=OAuthTokenData(access_token="second")),
        ):
            response = await handler.authenticated_request(
                SERVER_NAME, SERVER_URL, f"{SERVER_URL}/tools"
            )

        assert response.status_code == 200
        assert route.calls[1].request.headers["authorization"] == "Bearer second"

    async def test_401_without_retry_raises(self, handler, router):
        """Test 401 is raised when retry is disabled."""
        router.get(f"{SERVER_URL}/tools").mock(return_value=httpx.Response(401))

        with pytest.raises(httpx.HTTPStatusError):
            await handler.authenticated_request(
                SERVER_NAME, SERVER_URL, f"{SERVER_URL}/tools", retry_on_401=False
            )

    async def test_retries_after_step_up(self, handler, router):
        """Test re-authorization and retry on insufficient scope."""
        challenge = 'Bearer error="insufficient_scope", scope="admin"'
        route = router.post(f"{SERVER_URL}/admin").mock(
            side_effect=[
                httpx.Response(403, headers={"WWW-Authenticate": challenge}),
                httpx.Response(200),
            ]
        )
        provider = handler.get_provider(SERVER_NAME, SERVER_URL, scopes=["read"])

        with patch.object(
            OAuthProvider,
            "login",
            AsyncMock(return_value=OAuthTokenData(access_token="stepped-up")),
        ):
            response = await handler.authenticated_request(
                SERVER_NAME, SERVER_URL, f"{SERVER_URL}/admin", method="POST"
            )

        assert response.status_code == 200
        assert provider.scopes == ["read", "admin"]
        assert route.calls[1].request.headers["authorization"] == "Bearer stepped-up"

    async def test_plain_403_raises(self, handler, router):
        """Test a 403 without a step-up challenge is not retried."""
        route = router.get(f"{SERVER_URL}/tools").mock(return_value=httpx.Response(403))
        handler.get_provider(SERVER_NAME, SERVER_URL)

        with pytest.raises(httpx.HTTPStatusError):
            await handler.authenticated_request(
                SERVER_NAME, SERVER_URL, f"{SERVER_URL}/tools"
            )
        assert route.call_count == 1
