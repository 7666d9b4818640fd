# mcp_pkce_oauth/oauth_flow.py
"""Authorization Code Flow with PKCE (RFC 7636)."""

import asyncio
import base64
import hashlib
import logging
import secrets
import webbrowser
from typing import Callable, List, Optional, Protocol
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .callback_server import CallbackListener
from .config import CALLBACK_PATH, CALLBACK_TIMEOUT_SECONDS
from .errors import StateMismatchError
from .oauth_config import AuthorizationCodeResult

logger = logging.getLogger(__name__)


def _base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_verifier() -> str:
    """Generate a PKCE code verifier from 32 random bytes."""
    return _base64url(secrets.token_bytes(32))


def generate_code_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for a verifier."""
    return _base64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_state() -> str:
    """Generate an opaque state value for CSRF protection."""
    return secrets.token_hex(16)


def build_authorization_url(
    authorization_endpoint: str,
    *,
    client_id: str,
    redirect_uri: str,
    code_challenge: str,
    state: str,
    scopes: Optional[List[str]] = None,
    resource: Optional[str] = None,
) -> str:
    """
    Build the authorization request URL.

    Query parameters already present on the endpoint are preserved. ``scope``
    is omitted when no scopes are given and ``resource`` when it is empty.
    """
    parts = urlsplit(authorization_endpoint)
    params = dict(parse_qsl(parts.query, keep_blank_values=True))
    params.update(
        {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": state,
        }
    )
    if scopes:
        params["scope"] = " ".join(scopes)
    if resource:
        params["resource"] = resource

    return urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(params), parts.fragment)
    )


class BrowserOpener(Protocol):
    """Opens a URL for the user."""

    def open(self, url: str) -> None: ...


class WebBrowserOpener:
    """Opens URLs in the system default browser."""

    def open(self, url: str) -> None:
        try:
            opened = webbrowser.open(url, new=2)
        except (webbrowser.Error, OSError) as e:
            logger.warning(f"Could not open browser: {e}")
            return
        if not opened:
            logger.warning("Could not open browser, open the URL above manually")


ListenerFactory = Callable[[int], CallbackListener]


class OAuthFlow:
    """
    Runs the interactive part of the authorization code flow.

    Starts the local callback listener, sends the user to the authorization
    endpoint and waits for the redirect. The returned code must be redeemed
    together with the returned verifier.
    """

    def __init__(
        self,
        browser: Optional[BrowserOpener] = None,
        listener_factory: Optional[ListenerFactory] = None,
        callback_timeout: float = CALLBACK_TIMEOUT_SECONDS,
        callback_path: str = CALLBACK_PATH,
    ):
        self.browser = browser or WebBrowserOpener()
        self.callback_timeout = callback_timeout
        self.callback_path = callback_path
        self._listener_factory = listener_factory or self._default_listener

    def _default_listener(self, port: int) -> CallbackListener:
        return CallbackListener(
            port, callback_path=self.callback_path, timeout=self.callback_timeout
        )

    async def authorize(
        self,
        *,
        authorization_endpoint: str,
        callback_port: int,
        client_id: str,
        redirect_uri: str,
        scopes: Optional[List[str]] = None,
        resource: Optional[str] = None,
    ) -> AuthorizationCodeResult:
        """
        Obtain an authorization code from the user.

        Raises:
            StateMismatchError: Redirect state differs from the one sent
            AuthorizationError: Callback failed, was denied or timed out
        """
        verifier = generate_code_verifier()
        challenge = generate_code_challenge(verifier)
        state = generate_state()

        authorization_url = build_authorization_url(
            authorization_endpoint,
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=challenge,
            state=state,
            scopes=scopes,
            resource=resource,
        )

        listener = self._listener_factory(callback_port)
        await listener.start()
        try:
            logger.info(f"🔐 Opening browser for authorization: {authorization_url}")
            try:
                await asyncio.to_thread(self.browser.open, authorization_url)
            except Exception as e:
                logger.warning(
                    f"Could not open browser ({e}), open the URL above manually"
                )
            result = await listener.wait_for_callback()
        finally:
            listener.close()
            await listener.wait_closed()

        if not secrets.compare_digest(result.state.encode("utf-8"), state.encode("utf-8")):
            raise StateMismatchError("OAuth state mismatch")

        return AuthorizationCodeResult(code=result.code, verifier=verifier)
