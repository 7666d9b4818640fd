"""Tests for the PKCE authorization code flow."""

import re
import socket
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from mcp_pkce_oauth.errors import AuthorizationDeniedError, StateMismatchError
from mcp_pkce_oauth.oauth_config import CallbackResult
from mcp_pkce_oauth.oauth_flow import (
    OAuthFlow,
    WebBrowserOpener,
    build_authorization_url,
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
)


def query_of(url):
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


class FakeListener:
    """Listener that answers with the state of the last opened URL."""

    def __init__(self, server, port):
        self.server = server
        self.port = port
        self.started = False
        self.closed = False
        self.waited = False

    async def start(self):
        self.started = True
        return self

    async def wait_for_callback(self):
        if self.server.error is not None:
            raise self.server.error
        state = self.server.state or query_of(self.server.opened[-1])["state"]
        return CallbackResult(code=self.server.code, state=state)

    def close(self):
        self.closed = True

    async def wait_closed(self):
        self.waited = self.closed


class FakeAuthServer:
    """Browser and listener factory standing in for the user and the server."""

    def __init__(self, code="auth-code", state=None, error=None):
        self.code = code
        self.state = state
        self.error = error
        self.opened = []
        self.listeners = []

    def open(self, url):
        self.opened.append(url)

    def listener_factory(self, port):
        listener = FakeListener(self, port)
        self.listeners.append(listener)
        return listener


class UnopenableBrowserServer(FakeAuthServer):
    """Auth server whose browser cannot be launched."""

    def open(self, url):
        self.opened.append(url)
        raise RuntimeError("no display available")


class TestPKCE:
    """Test PKCE value generation."""

    def test_verifier_format(self):
        verifier = generate_code_verifier()

        assert len(verifier) == 43
        assert re.fullmatch(r"[A-Za-z0-9_-]+", verifier)

    def test_verifiers_unique(self):
        assert generate_code_verifier() != generate_code_verifier()

    def test_challenge_known_value(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_challenge_unpadded(self):
        assert "=" not in generate_code_challenge(generate_code_verifier())

    def test_state_format(self):
        state = generate_state()

        assert re.fullmatch(r"[0-9a-f]{32}", state)
        assert state != generate_state()


class TestBuildAuthorizationUrl:
    """Test authorization URL construction."""

    def _build(self, endpoint="https://auth.example.com/authorize", **kwargs):
        return build_authorization_url(
            endpoint,
            client_id="client-1",
            redirect_uri="http://127.0.0.1:19877/oauth/callback",
            code_challenge="challenge",
            state="state-1",
            **kwargs,
        )

    def test_required_parameters(self):
        url = self._build()

        assert url.startswith("https://auth.example.com/authorize?")
        assert query_of(url) == {
            "response_type": "code",
            "client_id": "client-1",
            "redirect_uri": "http://127.0.0.1:19877/oauth/callback",
            "code_challenge": "challenge",
            "code_challenge_method": "S256",
            "state": "state-1",
        }

    def test_scopes_space_joined(self):
        url = self._build(scopes=["read", "write"])

        assert "scope=read+write" in url
        assert query_of(url)["scope"] == "read write"

    def test_empty_scopes_omitted(self):
        assert "scope" not in query_of(self._build(scopes=[]))

    def test_resource_included(self):
        url = self._build(resource="https://mcp.example.com")

        assert query_of(url)["resource"] == "https://mcp.example.com"

    def test_empty_resource_omitted(self):
        assert "resource" not in query_of(self._build(resource=""))

    def test_existing_query_preserved(self):
        url = self._build("https://auth.example.com/authorize?audience=api")

        query = query_of(url)
        assert query["audience"] == "api"
        assert query["client_id"] == "client-1"


class TestOAuthFlow:
    """Test the interactive flow with fake browser and listener."""

    async def _authorize(self, server, **kwargs):
        flow = OAuthFlow(browser=server, listener_factory=server.listener_factory)
        return await flow.authorize(
            authorization_endpoint="https://auth.example.com/authorize",
            callback_port=19877,
            client_id="client-1",
            redirect_uri="http://127.0.0.1:19877/oauth/callback",
            **kwargs,
        )

    async def test_returns_code_and_verifier(self):
        server = FakeAuthServer()

        result = await self._authorize(server, scopes=["read"])

        assert result.code == "auth-code"
        query = query_of(server.opened[0])
        assert query["code_challenge"] == generate_code_challenge(result.verifier)
        assert query["scope"] == "read"

    async def test_listener_started_on_port_and_closed(self):
        server = FakeAuthServer()

        await self._authorize(server)

        (listener,) = server.listeners
        assert listener.port == 19877
        assert listener.started
        assert listener.closed
        assert listener.waited

    async def test_resource_passed_to_url(self):
        server = FakeAuthServer()

        await self._authorize(server, resource="https://mcp.example.com")

        assert query_of(server.opened[0])["resource"] == "https://mcp.example.com"

    async def test_state_mismatch(self):
        server = FakeAuthServer(state="forged")

        with pytest.raises(StateMismatchError, match="OAuth state mismatch"):
            await self._authorize(server)
        assert server.listeners[0].closed

    async def test_callback_error_propagates_and_closes(self):
        server = FakeAuthServer(error=AuthorizationDeniedError("denied"))

        with pytest.raises(AuthorizationDeniedError):
            await self._authorize(server)
        assert server.listeners[0].closed

    async def test_browser_failure_not_fatal(self, caplog):
        server = UnopenableBrowserServer()

        result = await self._authorize(server)

        assert result.code == "auth-code"
        assert "Could not open browser" in caplog.text
        assert server.listeners[0].closed

    async def test_fresh_verifier_each_attempt(self):
        server = FakeAuthServer()

        first = await self._authorize(server)
        second = await self._authorize(server)

        assert first.verifier != second.verifier
        assert query_of(server.opened[0])["state"] != query_of(server.opened[1])["state"]


class RedirectingBrowser:
    """Browser that immediately follows the redirect with a fixed code."""

    def open(self, url):
        query = query_of(url)
        httpx.get(
            query["redirect_uri"],
            params={"code": "real-code", "state": query["state"]},
            trust_env=False,
            timeout=5,
        )


class TestOAuthFlowWithRealListener:
    """Test the flow against the real callback listener."""

    async def test_end_to_end(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]

        flow = OAuthFlow(browser=RedirectingBrowser(), callback_timeout=5)
        result = await flow.authorize(
            authorization_endpoint="https://auth.example.com/authorize",
            callback_port=port,
            client_id="client-1",
            redirect_uri=f"http://127.0.0.1:{port}/oauth/callback",
        )

        assert result.code == "real-code"
        assert len(result.verifier) == 43


class TestWebBrowserOpener:
    """Test the system browser opener."""

    def test_opens_new_tab(self, monkeypatch):
        calls = []
        monkeypatch.setattr(
            "webbrowser.open", lambda url, new=0: calls.append((url, new)) or True
        )

        WebBrowserOpener().open("https://auth.example.com/authorize")

        assert calls == [("https://auth.example.com/authorize", 2)]

    def test_browser_error_logged(self, monkeypatch, caplog):
        def fail(url, new=0):
            raise OSError("no display")

        monkeypatch.setattr("webbrowser.open", fail)

        WebBrowserOpener().open("https://auth.example.com/authorize")

        assert "Could not open browser" in caplog.text
