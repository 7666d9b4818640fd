# mcp_pkce_oauth/resource_indicator.py
"""Resource indicators for authorization and token requests (RFC 8707)."""

from typing import Dict, MutableMapping
from urllib.parse import urlsplit, urlunsplit


def get_resource_indicator(server_url: str) -> str:
    """
    Canonical resource indicator for a server URL.

    Drops query, fragment and trailing slash; keeps scheme, host, port and path.

    Example:
        >>> get_resource_indicator("https://mcp.example.com/api/?key=val")
        'https://mcp.example.com/api'
    """
    parts = urlsplit(server_url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path.rstrip("/"), "", ""))


def add_resource_to_params(
    params: MutableMapping[str, str], resource: str
) -> Dict[str, str]:
    """Set the ``resource`` parameter, replacing any existing value."""
    params["resource"] = resource
    return dict(params)
