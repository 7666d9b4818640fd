# mcp_pkce_oauth/client_registration.py
"""Dynamic Client Registration (RFC 7591)."""

import logging
from typing import Any, Dict, List, Optional, Protocol

import httpx

from .config import HTTP_TIMEOUT_SECONDS
from .oauth_config import ClientCredentials

logger = logging.getLogger(__name__)

TOKEN_ENDPOINT_AUTH_METHODS = ("none", "client_secret_post")


class ClientRegistrationStorage(Protocol):
    """Where registered client credentials are kept between logins."""

    def get_client_registration(
        self, server_identifier: str
    ) -> Optional[ClientCredentials]: ...

    def set_client_registration(
        self, server_identifier: str, credentials: ClientCredentials
    ) -> None: ...


class InMemoryClientRegistrationStorage:
    """Client registrations held for the lifetime of the process."""

    def __init__(self) -> None:
        self._registrations: Dict[str, ClientCredentials] = {}

    def get_client_registration(
        self, server_identifier: str
    ) -> Optional[ClientCredentials]:
        return self._registrations.get(server_identifier)

    def set_client_registration(
        self, server_identifier: str, credentials: ClientCredentials
    ) -> None:
        self._registrations[server_identifier] = credentials


def _fallback(client_id: Optional[str]) -> Optional[ClientCredentials]:
    return ClientCredentials(client_id=client_id) if client_id else None


def _parse_registration_response(data: Any) -> Optional[ClientCredentials]:
    if not isinstance(data, dict):
        return None

    client_id = data.get("client_id")
    if not isinstance(client_id, str) or not client_id:
        return None

    client_secret = data.get("client_secret")
    if isinstance(client_secret, str) and client_secret:
        return ClientCredentials(client_id=client_id, client_secret=client_secret)
    return ClientCredentials(client_id=client_id)


async def get_or_register_client(
    *,
    storage: ClientRegistrationStorage,
    client_name: str,
    redirect_uris: List[str],
    registration_endpoint: Optional[str] = None,
    server_identifier: Optional[str] = None,
    resource: Optional[str] = None,
    token_endpoint_auth_method: str = "none",
    client_id: Optional[str] = None,
    timeout: float = HTTP_TIMEOUT_SECONDS,
) -> Optional[ClientCredentials]:
    """
    Get stored client credentials or register a new client.

    Registration is best-effort: any failure falls back to the configured
    ``client_id`` (or None) instead of raising.

    Args:
        storage: Registration storage consulted first and updated on success
        client_name: Human-readable client name sent to the server
        redirect_uris: Redirect URIs to register
        registration_endpoint: DCR endpoint from server metadata, if any
        server_identifier: Storage key (default: ``resource``, else the
            registration endpoint)
        resource: URL of the protected resource the client is registered for
        token_endpoint_auth_method: ``"none"`` or ``"client_secret_post"``
        client_id: Configured client id used as fallback
        timeout: HTTP timeout in seconds

    Returns:
        Client credentials, or None if none could be obtained
    """
    if token_endpoint_auth_method not in TOKEN_ENDPOINT_AUTH_METHODS:
        raise ValueError(
            f"Unsupported token_endpoint_auth_method: {token_endpoint_auth_method}"
        )

    server_identifier = (
        server_identifier or resource or registration_endpoint or "default"
    )
    existing = storage.get_client_registration(server_identifier)
    if existing:
        logger.debug(f"Using stored client registration for {server_identifier}")
        return existing

    if not registration_endpoint:
        return _fallback(client_id)

    request = {
        "redirect_uris": redirect_uris,
        "client_name": client_name,
        "grant_types": ["authorization_code", "refresh_token"],
        "response_types": ["code"],
        "token_endpoint_auth_method": token_endpoint_auth_method,
    }

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(registration_endpoint, json=request)
    except httpx.HTTPError as e:
        logger.warning(f"Client registration at {registration_endpoint} failed: {e}")
        return _fallback(client_id)

    if not response.is_success:
        logger.warning(
            f"Client registration at {registration_endpoint} returned "
            f"{response.status_code}"
        )
        return _fallback(client_id)

    try:
        data = response.json()
    except ValueError:
        logger.warning("Client registration response is not valid JSON")
        return _fallback(client_id)

    credentials = _parse_registration_response(data)
    if credentials is None:
        logger.warning("Client registration response missing client_id")
        return _fallback(client_id)

    storage.set_client_registration(server_identifier, credentials)
    logger.info(f"Registered OAuth client {credentials.client_id}")
    return credentials
