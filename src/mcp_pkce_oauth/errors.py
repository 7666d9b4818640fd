# mcp_pkce_oauth/errors.py
"""Exceptions raised by the OAuth client pipeline."""


class OAuthError(Exception):
    """Base class for all OAuth client errors."""


class DiscoveryError(OAuthError):
    """Authorization server metadata could not be discovered."""


class DiscoveryMalformedError(DiscoveryError):
    """Metadata document is missing a required field or uses an insecure URL."""


class DiscoveryNotFoundError(DiscoveryError):
    """Neither protected resource nor authorization server metadata exists."""


class DiscoveryTransportError(DiscoveryError):
    """Metadata fetch failed with an unexpected status, bad body or network error."""


class ClientRegistrationError(OAuthError):
    """No client credentials could be obtained or configured."""


class AuthorizationError(OAuthError):
    """The interactive authorization step failed."""


class StateMismatchError(AuthorizationError):
    """The state returned on the redirect does not match the one sent."""


class CallbackTimeoutError(AuthorizationError):
    """No redirect arrived on the local callback server in time."""


class CallbackMissingParamsError(AuthorizationError):
    """The redirect carried neither an error nor both code and state."""


class AuthorizationDeniedError(AuthorizationError):
    """The authorization server redirected back with an error."""


class TokenExchangeError(OAuthError):
    """The token endpoint rejected the request."""


class MissingAccessTokenError(TokenExchangeError):
    """The token endpoint answered successfully but without an access token."""


class NoClientInformationError(OAuthError):
    """Authorization was attempted before client credentials were resolved."""
