"""MCP PKCE OAuth - an OAuth 2.1 client for MCP servers.

This library authenticates a local tool against remote MCP servers on behalf
of a user, implementing:
- Protected Resource Metadata discovery (RFC 9728)
- Authorization Server Metadata discovery (RFC 8414)
- Dynamic Client Registration (RFC 7591)
- Authorization Code Flow with PKCE (RFC 7636) via a local callback server
- Token persistence and step-up authorization on insufficient scope
"""

from .callback_server import (
    CallbackListener,
    PortProbe,
    SocketPortProbe,
    find_available_port,
    start_callback_server,
)
from .client_registration import (
    ClientRegistrationStorage,
    InMemoryClientRegistrationStorage,
    get_or_register_client,
)
from .discovery import (
    MetadataDiscovery,
    discover_oauth_server_metadata,
    reset_discovery_cache,
)
from .errors import (
    AuthorizationDeniedError,
    AuthorizationError,
    CallbackMissingParamsError,
    CallbackTimeoutError,
    ClientRegistrationError,
    DiscoveryError,
    DiscoveryMalformedError,
    DiscoveryNotFoundError,
    DiscoveryTransportError,
    MissingAccessTokenError,
    NoClientInformationError,
    OAuthError,
    StateMismatchError,
    TokenExchangeError,
)
from .oauth_config import (
    AuthorizationCodeResult,
    CallbackResult,
    ClientCredentials,
    OAuthServerMetadata,
    OAuthTokenData,
    StepUpInfo,
)
from .oauth_flow import (
    BrowserOpener,
    OAuthFlow,
    WebBrowserOpener,
    build_authorization_url,
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
)
from .oauth_handler import OAuthHandler
from .provider import OAuthProvider
from .resource_indicator import add_resource_to_params, get_resource_indicator
from .step_up import is_step_up_required, merge_scopes, parse_www_authenticate
from .token_store import TokenStore

__version__ = "0.1.0"

__all__ = [
    "AuthorizationCodeResult",
    "AuthorizationDeniedError",
    "AuthorizationError",
    "BrowserOpener",
    "CallbackListener",
    "CallbackMissingParamsError",
    "CallbackResult",
    "CallbackTimeoutError",
    "ClientCredentials",
    "ClientRegistrationError",
    "ClientRegistrationStorage",
    "DiscoveryError",
    "DiscoveryMalformedError",
    "DiscoveryNotFoundError",
    "DiscoveryTransportError",
    "InMemoryClientRegistrationStorage",
    "MetadataDiscovery",
    "MissingAccessTokenError",
    "NoClientInformationError",
    "OAuthError",
    "OAuthFlow",
    "OAuthHandler",
    "OAuthProvider",
    "OAuthServerMetadata",
    "OAuthTokenData",
    "PortProbe",
    "SocketPortProbe",
    "StateMismatchError",
    "StepUpInfo",
    "TokenExchangeError",
    "TokenStore",
    "WebBrowserOpener",
    "add_resource_to_params",
    "build_authorization_url",
    "discover_oauth_server_metadata",
    "find_available_port",
    "generate_code_challenge",
    "generate_code_verifier",
    "generate_state",
    "get_or_register_client",
    "get_resource_indicator",
    "is_step_up_required",
    "merge_scopes",
    "parse_www_authenticate",
    "reset_discovery_cache",
    "start_callback_server",
]
