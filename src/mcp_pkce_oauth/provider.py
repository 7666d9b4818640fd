# mcp_pkce_oauth/provider.py
"""OAuth provider for a single MCP server."""

import logging
import time
from typing import Any, Dict, List, Mapping, Optional

import httpx

from .callback_server import PortProbe, find_available_port
from .client_registration import get_or_register_client
from .config import (
    CALLBACK_HOST,
    CALLBACK_PATH,
    DEFAULT_CALLBACK_PORT,
    DEFAULT_CLIENT_NAME,
    HTTP_TIMEOUT_SECONDS,
)
from .discovery import MetadataDiscovery, get_default_discovery
from .errors import (
    ClientRegistrationError,
    MissingAccessTokenError,
    NoClientInformationError,
    TokenExchangeError,
)
from .oauth_config import ClientCredentials, OAuthServerMetadata, OAuthTokenData
from .oauth_flow import OAuthFlow
from .resource_indicator import add_resource_to_params, get_resource_indicator
from .step_up import is_step_up_required, merge_scopes
from .token_store import TokenStore

logger = logging.getLogger(__name__)


class OAuthProvider:
    """
    Authenticates against one MCP server.

    ``login()`` runs the whole pipeline: metadata discovery, client
    registration, the browser-based PKCE flow and the token exchange. Tokens
    are persisted in the :class:`TokenStore` under the server URL.
    """

    def __init__(
        self,
        server_url: str,
        client_id: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        *,
        token_store: Optional[TokenStore] = None,
        discovery: Optional[MetadataDiscovery] = None,
        flow: Optional[OAuthFlow] = None,
        port_probe: Optional[PortProbe] = None,
        client_name: str = DEFAULT_CLIENT_NAME,
        http_timeout: float = HTTP_TIMEOUT_SECONDS,
    ):
        """
        Initialize OAuth provider.

        Args:
            server_url: HTTPS URL of the MCP server
            client_id: Configured client id, used when registration is unavailable
            scopes: Scopes to request (default: none)
            token_store: Token storage (default: shared token file)
            discovery: Metadata discovery service (default: process-wide instance)
            flow: Interactive authorization flow (default: system browser)
            port_probe: Port probe for the callback listener
            client_name: Client name sent during dynamic registration
            http_timeout: Timeout for token endpoint requests in seconds
        """
        self.server_url = server_url
        self.config_client_id = client_id
        self.scopes: List[str] = list(scopes or [])
        self.token_store = token_store or TokenStore()
        self.discovery = discovery or get_default_discovery()
        self.flow = flow or OAuthFlow()
        self.port_probe = port_probe
        self.client_name = client_name
        self.http_timeout = http_timeout

        self.callback_port: Optional[int] = None
        self._code_verifier: Optional[str] = None
        self._client_info: Optional[ClientCredentials] = None

    # Token and client information accessors

    def tokens(self) -> Optional[OAuthTokenData]:
        return self.token_store.load(self.server_url, self.server_url)

    def save_tokens(self, token_data: OAuthTokenData) -> None:
        self.token_store.save(self.server_url, self.server_url, token_data)

    def client_information(self) -> Optional[ClientCredentials]:
        """Client credentials from memory, else from the stored token record."""
        if self._client_info is not None:
            return self._client_info

        token_data = self.tokens()
        if token_data is not None and token_data.client_info is not None:
            self._client_info = token_data.client_info
            return self._client_info
        return None

    def redirect_url(self) -> str:
        port = self.callback_port or DEFAULT_CALLBACK_PORT
        return f"http://{CALLBACK_HOST}:{port}{CALLBACK_PATH}"

    def save_code_verifier(self, verifier: str) -> None:
        self._code_verifier = verifier

    def code_verifier(self) -> Optional[str]:
        return self._code_verifier

    # ClientRegistrationStorage backed by this provider's memory

    def get_client_registration(
        self, server_identifier: str
    ) -> Optional[ClientCredentials]:
        return self._client_info

    def set_client_registration(
        self, server_identifier: str, credentials: ClientCredentials
    ) -> None:
        self._client_info = credentials

    # Flow

    def _ensure_callback_port(self) -> int:
        # Allocated once per provider; step-up logins reuse the registered redirect URI
        if self.callback_port is None:
            self.callback_port = find_available_port(probe=self.port_probe)
        return self.callback_port

    async def redirect_to_authorization(self, metadata: OAuthServerMetadata) -> str:
        """
        Send the user through the authorization endpoint.

        Returns:
            Authorization code; the matching verifier is kept on the provider

        Raises:
            NoClientInformationError: If no client credentials are known yet
        """
        client_info = self.client_information()
        if client_info is None:
            raise NoClientInformationError(
                "No client information available. Run login() or register a client first."
            )

        port = self._ensure_callback_port()
        result = await self.flow.authorize(
            authorization_endpoint=metadata.authorization_endpoint,
            callback_port=port,
            client_id=client_info.client_id,
            redirect_uri=self.redirect_url(),
            scopes=self.scopes,
            resource=get_resource_indicator(metadata.resource),
        )

        self.save_code_verifier(result.verifier)
        return result.code

    async def login(self) -> OAuthTokenData:
        """
        Run the full authorization flow and persist the resulting tokens.

        Raises:
            DiscoveryError: Authorization server could not be discovered
            ClientRegistrationError: No client id could be registered or configured
            AuthorizationError: The browser step failed
            TokenExchangeError: The token endpoint rejected the code
        """
        metadata = await self.discovery.discover(self.server_url)
        self._ensure_callback_port()

        client_info = await get_or_register_client(
            storage=self,
            client_name=self.client_name,
            redirect_uris=[self.redirect_url()],
            registration_endpoint=metadata.registration_endpoint,
            resource=self.server_url,
            token_endpoint_auth_method="none",
            client_id=self.config_client_id,
            timeout=self.http_timeout,
        )
        if client_info is None:
            raise ClientRegistrationError(
                "Failed to obtain client credentials. "
                "Provide a client id or ensure the server supports dynamic client registration."
            )
        self._client_info = client_info

        code = await self.redirect_to_authorization(metadata)
        verifier = self.code_verifier()
        if not verifier:
            raise TokenExchangeError("Code verifier not found")

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_url(),
            "client_id": client_info.client_id,
            "code_verifier": verifier,
        }
        if client_info.client_secret:
            data["client_secret"] = client_info.client_secret
        if metadata.resource:
            add_resource_to_params(data, get_resource_indicator(metadata.resource))

        body = await self._request_token(metadata.token_endpoint, data)
        token_data = self._build_token_data(body, client_info)

        self.save_tokens(token_data)
        logger.info(f"✅ Obtained OAuth tokens for {self.server_url}")
        return token_data

    async def refresh(self) -> OAuthTokenData:
        """
        Exchange the stored refresh token for a new access token.

        Raises:
            TokenExchangeError: No refresh token stored, or the server rejected it
        """
        current = self.tokens()
        if current is None or not current.refresh_token:
            raise TokenExchangeError(f"No refresh token stored for {self.server_url}")

        client_info = self.client_information()
        if client_info is None:
            raise NoClientInformationError(
                f"No client information stored for {self.server_url}"
            )

        metadata = await self.discovery.discover(self.server_url)
        data = {
            "grant_type": "refresh_token",
            "refresh_token": current.refresh_token,
            "client_id": client_info.client_id,
        }
        if client_info.client_secret:
            data["client_secret"] = client_info.client_secret
        if metadata.resource:
            add_resource_to_params(data, get_resource_indicator(metadata.resource))

        body = await self._request_token(metadata.token_endpoint, data)
        token_data = self._build_token_data(
            body, client_info, previous_refresh_token=current.refresh_token
        )

        self.save_tokens(token_data)
        logger.info(f"Refreshed OAuth tokens for {self.server_url}")
        return token_data

    async def handle_step_up(
        self, status_code: int, headers: Mapping[str, Any]
    ) -> Optional[OAuthTokenData]:
        """
        Re-authorize with broader scopes if a response demands them.

        Returns:
            New tokens, or None if the response is not a step-up challenge
        """
        step_up = is_step_up_required(status_code, headers)
        if step_up is None:
            return None

        self.scopes = merge_scopes(self.scopes, step_up.required_scopes)
        logger.info(
            f"Server {self.server_url} requires scopes "
            f"{' '.join(step_up.required_scopes)}, re-authorizing"
        )
        return await self.login()

    async def _request_token(
        self, token_endpoint: str, data: Dict[str, str]
    ) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.http_timeout) as client:
                response = await client.post(
                    token_endpoint, data=data, headers={"Accept": "application/json"}
                )
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Token exchange failed: {e}") from e

        if not response.is_success:
            detail = str(response.status_code)
            try:
                error_body = response.json()
            except ValueError:
                error_body = None
            if isinstance(error_body, dict) and error_body.get("error"):
                detail = f"{response.status_code} {error_body['error']}"
                if error_body.get("error_description"):
                    detail += f": {error_body['error_description']}"
            raise TokenExchangeError(f"Token exchange failed: {detail}")

        try:
            body = response.json()
        except ValueError as e:
            raise TokenExchangeError("Token response is not valid JSON") from e

        if not isinstance(body, dict) or not isinstance(body.get("access_token"), str):
            raise MissingAccessTokenError("Token response missing access_token")
        return body

    @staticmethod
    def _build_token_data(
        body: Dict[str, Any],
        client_info: ClientCredentials,
        previous_refresh_token: Optional[str] = None,
    ) -> OAuthTokenData:
        refresh_token = body.get("refresh_token")
        if not isinstance(refresh_token, str):
            refresh_token = previous_refresh_token

        expires_in = body.get("expires_in")
        expires_at = None
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            expires_at = int(time.time()) + int(expires_in)

        return OAuthTokenData(
            access_token=body["access_token"],
            refresh_token=refresh_token,
            expires_at=expires_at,
            client_info=ClientCredentials(
                client_id=client_info.client_id,
                client_secret=client_info.client_secret,
            ),
        )
