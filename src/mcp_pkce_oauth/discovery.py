# mcp_pkce_oauth/discovery.py
"""
Authorization server discovery for MCP resources.

Implements:
- OAuth 2.0 Protected Resource Metadata (RFC 9728)
- OAuth 2.0 Authorization Server Metadata (RFC 8414)

If the resource publishes no protected resource metadata (404), the resource
URL itself is treated as the authorization server issuer.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import SplitResult, urlsplit, urlunsplit

import httpx

from .config import HTTP_TIMEOUT_SECONDS
from .errors import (
    DiscoveryMalformedError,
    DiscoveryNotFoundError,
    DiscoveryTransportError,
)
from .oauth_config import OAuthServerMetadata

logger = logging.getLogger(__name__)

PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"
AUTHORIZATION_SERVER_PATH = "/.well-known/oauth-authorization-server"


def _parse_https_url(value: str, label: str) -> SplitResult:
    parts = urlsplit(value)
    if parts.scheme.lower() != "https" or not parts.netloc:
        raise DiscoveryMalformedError(f"{label} must use https")
    return parts


def _origin(parts: SplitResult) -> str:
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def _resource_key(parts: SplitResult) -> str:
    return urlunsplit(
        (
            parts.scheme.lower(),
            parts.netloc.lower(),
            parts.path or "/",
            parts.query,
            "",
        )
    )


def _read_string_field(source: Dict[str, Any], field: str) -> str:
    value = source.get(field)
    if not isinstance(value, str) or not value:
        raise DiscoveryMalformedError(f"OAuth metadata missing {field}")
    return value


def _parse_authorization_servers(metadata: Dict[str, Any]) -> List[str]:
    servers = metadata.get("authorization_servers")
    if not isinstance(servers, list):
        return []
    return [s for s in servers if isinstance(s, str) and s]


class MetadataDiscovery:
    """
    Resolves resource URLs to authorization server endpoints.

    Results are cached per normalized resource URL for the lifetime of the
    instance. Concurrent lookups of the same resource share one in-flight
    task, so each well-known document is fetched once.
    """

    def __init__(self, timeout: float = HTTP_TIMEOUT_SECONDS):
        self.timeout = timeout
        self._cache: Dict[str, OAuthServerMetadata] = {}
        self._pending: Dict[str, "asyncio.Task[OAuthServerMetadata]"] = {}

    def reset(self) -> None:
        """Forget cached results and in-flight lookups."""
        self._cache.clear()
        self._pending.clear()

    async def discover(self, resource: str) -> OAuthServerMetadata:
        """
        Discover the authorization server metadata for a resource.

        Args:
            resource: HTTPS URL of the MCP server

        Returns:
            Authorization server endpoints

        Raises:
            DiscoveryMalformedError: Non-https URL or incomplete metadata
            DiscoveryNotFoundError: No metadata published at either location
            DiscoveryTransportError: Unexpected status, non-JSON body or network error
        """
        resource_url = _parse_https_url(resource, "Resource server URL")
        key = _resource_key(resource_url)

        cached = self._cache.get(key)
        if cached is not None:
            logger.debug(f"Using cached OAuth metadata for {key}")
            return cached

        pending = self._pending.get(key)
        if pending is not None:
            logger.debug(f"Joining in-flight OAuth discovery for {key}")
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(
            self._discover_and_cache(resource_url, key, resource)
        )
        self._pending[key] = task
        task.add_done_callback(lambda t: self._forget_pending(key, t))
        # A cancelled caller must not cancel the lookup other callers joined
        return await asyncio.shield(task)

    def _forget_pending(self, key: str, task: "asyncio.Task[OAuthServerMetadata]") -> None:
        if self._pending.get(key) is task:
            del self._pending[key]

    async def _discover_and_cache(
        self, resource_url: SplitResult, key: str, resource: str
    ) -> OAuthServerMetadata:
        metadata = await self._discover(resource_url, key, resource)
        if self._pending.get(key) is asyncio.current_task():
            self._cache[key] = metadata
        return metadata

    async def _discover(
        self, resource_url: SplitResult, key: str, resource: str
    ) -> OAuthServerMetadata:
        logger.info(f"Discovering OAuth metadata for {key}")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            prm_url = _origin(resource_url) + PROTECTED_RESOURCE_PATH
            status, prm = await self._fetch_metadata(client, prm_url)

            if prm is not None:
                auth_servers = _parse_authorization_servers(prm)
                if not auth_servers:
                    raise DiscoveryMalformedError(
                        "OAuth protected resource metadata missing authorization_servers"
                    )
                issuer = auth_servers[0]
            elif status == 404:
                logger.debug(
                    f"No protected resource metadata for {key}, "
                    "treating resource as authorization server"
                )
                issuer = key
            else:
                raise DiscoveryTransportError(
                    f"OAuth protected resource metadata fetch failed ({status})"
                )

            return await self._fetch_authorization_server_metadata(
                client, issuer, resource
            )

    async def _fetch_metadata(
        self, client: httpx.AsyncClient, url: str
    ) -> Tuple[int, Optional[Dict[str, Any]]]:
        """Fetch a metadata document; body is None for non-2xx responses."""
        try:
            response = await client.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise DiscoveryTransportError(
                f"OAuth metadata request to {url} failed: {e}"
            ) from e

        if not response.is_success:
            return response.status_code, None

        try:
            data = response.json()
        except ValueError as e:
            raise DiscoveryTransportError(
                "OAuth metadata response is not valid JSON"
            ) from e

        if not isinstance(data, dict):
            raise DiscoveryTransportError("OAuth metadata response is not valid JSON")
        return response.status_code, data

    async def _fetch_authorization_server_metadata(
        self, client: httpx.AsyncClient, issuer: str, resource: str
    ) -> OAuthServerMetadata:
        issuer_url = _parse_https_url(issuer, "Authorization server URL")
        issuer_path = issuer_url.path.rstrip("/")
        metadata_url = _origin(issuer_url) + AUTHORIZATION_SERVER_PATH + issuer_path

        status, metadata = await self._fetch_metadata(client, metadata_url)
        if metadata is None:
            if status == 404:
                raise DiscoveryNotFoundError(
                    "OAuth authorization server metadata not found"
                )
            raise DiscoveryTransportError(
                f"OAuth authorization server metadata fetch failed ({status})"
            )

        authorization_endpoint = _read_string_field(metadata, "authorization_endpoint")
        _parse_https_url(authorization_endpoint, "authorization_endpoint")
        token_endpoint = _read_string_field(metadata, "token_endpoint")
        _parse_https_url(token_endpoint, "token_endpoint")

        registration_endpoint = metadata.get("registration_endpoint")
        if isinstance(registration_endpoint, str) and registration_endpoint:
            _parse_https_url(registration_endpoint, "registration_endpoint")
        else:
            registration_endpoint = None

        logger.info(f"Discovered OAuth authorization server {issuer}")
        return OAuthServerMetadata(
            authorization_endpoint=authorization_endpoint,
            token_endpoint=token_endpoint,
            registration_endpoint=registration_endpoint,
            resource=resource,
        )


_default_discovery = MetadataDiscovery()


def get_default_discovery() -> MetadataDiscovery:
    """Get the process-wide discovery instance."""
    return _default_discovery


async def discover_oauth_server_metadata(resource: str) -> OAuthServerMetadata:
    """Discover metadata using the shared process-wide discovery instance."""
    return await _default_discovery.discover(resource)


def reset_discovery_cache() -> None:
    """Reset the shared discovery instance."""
    _default_discovery.reset()
