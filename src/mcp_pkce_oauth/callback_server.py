# mcp_pkce_oauth/callback_server.py
"""Local HTTP server receiving the OAuth authorization redirect."""

import asyncio
import logging
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional, Protocol
from urllib.parse import parse_qs, urlsplit

from .config import (
    CALLBACK_HOST,
    CALLBACK_PATH,
    CALLBACK_TIMEOUT_SECONDS,
    DEFAULT_CALLBACK_PORT,
    MAX_PORT_ATTEMPTS,
)
from .errors import (
    AuthorizationDeniedError,
    AuthorizationError,
    CallbackMissingParamsError,
    CallbackTimeoutError,
)
from .oauth_config import CallbackResult

logger = logging.getLogger(__name__)

# Delay between answering the browser and stopping the server
STOP_DELAY_SECONDS = 0.1

# Idle connections (e.g. browser preconnects) are dropped after this long
REQUEST_TIMEOUT_SECONDS = 10

SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>OAuth Authorized</title>
  <style>
    body { font-family: -apple-system, BlinkMacSystemFont, sans-serif; display: flex; justify-content: center; align-items: center; height: 100vh; margin: 0; background: #0a0a0a; color: #fafafa; }
    .container { text-align: center; }
    h1 { font-size: 1.5rem; margin-bottom: 0.5rem; }
    p { color: #888; }
  </style>
</head>
<body>
  <div class="container">
    <h1>Authorization successful</h1>
    <p>You can close this window and return to your terminal.</p>
  </div>
</body>
</html>
"""


class PortProbe(Protocol):
    """Checks whether a local port can be bound."""

    def is_port_available(self, port: int) -> bool: ...


class SocketPortProbe:
    """Probes ports by binding a socket and releasing it immediately."""

    def __init__(self, host: str = CALLBACK_HOST):
        self.host = host

    def is_port_available(self, port: int) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self.host, port))
            except OSError:
                return False
        return True


def find_available_port(
    start_port: int = DEFAULT_CALLBACK_PORT,
    probe: Optional[PortProbe] = None,
    max_attempts: int = MAX_PORT_ATTEMPTS,
) -> int:
    """
    Find the first free port at or above ``start_port``.

    Raises:
        OSError: If all ``max_attempts`` consecutive ports are taken
    """
    probe = probe or SocketPortProbe()
    for port in range(start_port, start_port + max_attempts):
        if probe.is_port_available(port):
            return port
        logger.debug(f"Port {port} is busy")

    raise OSError(
        f"No available port found in range {start_port}-{start_port + max_attempts - 1}"
    )


class CallbackListener:
    """
    One-shot local server for the OAuth redirect.

    The HTTP server runs on a background thread and handles each connection
    on its own daemon thread, so an idle connection cannot hold up the real
    redirect. The first request to the callback path settles an asyncio
    future on the owning event loop. The server stops itself shortly after
    answering that request, after the timeout, or on :meth:`close`.
    """

    def __init__(
        self,
        port: int,
        host: str = CALLBACK_HOST,
        callback_path: str = CALLBACK_PATH,
        timeout: float = CALLBACK_TIMEOUT_SECONDS,
    ):
        self.port = port
        self.host = host
        self.callback_path = callback_path
        self.timeout = timeout

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._future: Optional["asyncio.Future[CallbackResult]"] = None
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._stopper: Optional[threading.Thread] = None
        self._timeout_handle: Optional[asyncio.TimerHandle] = None
        self._lock = threading.Lock()
        self._handled = False
        self._closed = False

    @property
    def is_running(self) -> bool:
        return self._server is not None and not self._closed

    async def start(self) -> "CallbackListener":
        """Bind the server and start serving on a background thread."""
        if self._server is not None:
            raise RuntimeError("Callback server already started")

        self._loop = asyncio.get_running_loop()
        self._future = self._loop.create_future()
        self._server = ThreadingHTTPServer(
            (self.host, self.port), self._create_callback_handler()
        )
        self._server.daemon_threads = True
        self._server.block_on_close = False
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.05},
            name=f"oauth-callback-{self.port}",
            daemon=True,
        )
        self._thread.start()
        self._timeout_handle = self._loop.call_later(self.timeout, self._on_timeout)

        logger.debug(
            f"OAuth callback server listening on http://{self.host}:{self.port}"
            f"{self.callback_path}"
        )
        return self

    async def wait_for_callback(self) -> CallbackResult:
        """
        Wait for the authorization redirect.

        Raises:
            AuthorizationDeniedError: Redirect carried an ``error``
            CallbackMissingParamsError: Redirect lacked code or state
            CallbackTimeoutError: No redirect arrived in time
        """
        if self._future is None:
            raise RuntimeError("Callback server not started")
        return await self._future

    def close(self) -> None:
        """
        Stop the server. Safe to call more than once.

        Returns immediately; the socket is released on a helper thread.
        Await :meth:`wait_closed` to be sure the port is free again.
        """
        if self._closed:
            return
        self._closed = True

        if self._timeout_handle is not None:
            self._timeout_handle.cancel()

        with self._lock:
            self._handled = True
        if self._future is not None and not self._future.done():
            self._future.set_exception(
                AuthorizationError("OAuth callback server closed before a redirect arrived")
            )

        if self._server is not None:
            self._stopper = threading.Thread(
                target=self._stop_server,
                args=(self._server,),
                name=f"oauth-callback-stop-{self.port}",
                daemon=True,
            )
            self._stopper.start()

    async def wait_closed(self) -> None:
        """Wait until a closed server has released its port."""
        if self._stopper is not None:
            await asyncio.to_thread(self._stopper.join)

    def _stop_server(self, server: ThreadingHTTPServer) -> None:
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=1)
        logger.debug(f"OAuth callback server on port {self.port} stopped")

    def _on_timeout(self) -> None:
        if self._future is not None and not self._future.done():
            self._future.set_exception(
                CallbackTimeoutError(
                    f"OAuth callback timed out after {int(self.timeout // 60)} minutes"
                    if self.timeout >= 60
                    else f"OAuth callback timed out after {self.timeout} seconds"
                )
            )
        self.close()

    def _claim(self) -> bool:
        """Mark the redirect as handled; False if one was handled already."""
        with self._lock:
            if self._handled:
                return False
            self._handled = True
            return True

    def _deliver(
        self,
        result: Optional[CallbackResult] = None,
        error: Optional[Exception] = None,
    ) -> None:
        """Called from the server thread once the browser has its response."""
        if self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._settle, result, error)
        except RuntimeError:
            logger.debug("Event loop closed before OAuth callback was delivered")

    def _settle(
        self, result: Optional[CallbackResult], error: Optional[Exception]
    ) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()

        if self._future is not None and not self._future.done():
            if error is not None:
                self._future.set_exception(error)
            else:
                self._future.set_result(result)

        if self._loop is not None:
            self._loop.call_later(STOP_DELAY_SECONDS, self.close)

    def _create_callback_handler(self):
        """Create the request handler class bound to this listener."""
        listener = self

        class CallbackHandler(BaseHTTPRequestHandler):
            timeout = REQUEST_TIMEOUT_SECONDS

            def do_GET(self):
                parsed = urlsplit(self.path)
                if parsed.path != listener.callback_path:
                    self._respond(404, "Not Found")
                    return

                params = parse_qs(parsed.query)

                def first(name: str) -> Optional[str]:
                    values = params.get(name)
                    return values[0] if values else None

                if not listener._claim():
                    self._respond(409, "OAuth callback already handled")
                    return

                oauth_error = first("error")
                if oauth_error:
                    description = first("error_description") or oauth_error
                    self._respond(400, f"Authorization failed: {description}")
                    listener._deliver(
                        error=AuthorizationDeniedError(
                            f"OAuth authorization failed: {description}"
                        )
                    )
                    return

                code = first("code")
                state = first("state")
                if not code or not state:
                    self._respond(400, "Missing code or state parameter")
                    listener._deliver(
                        error=CallbackMissingParamsError(
                            "OAuth callback missing code or state parameter"
                        )
                    )
                    return

                self._respond(200, SUCCESS_HTML, "text/html; charset=utf-8")
                listener._deliver(result=CallbackResult(code=code, state=state))

            def _respond(
                self,
                status: int,
                body: str,
                content_type: str = "text/plain; charset=utf-8",
            ) -> None:
                payload = body.encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)
                self.wfile.flush()

            def log_message(self, format, *args):
                logger.debug(f"OAuth callback server: {format % args}")

        return CallbackHandler


async def start_callback_server(
    start_port: int = DEFAULT_CALLBACK_PORT,
    probe: Optional[PortProbe] = None,
    **kwargs,
) -> CallbackListener:
    """Find a free port and start a callback listener on it."""
    port = find_available_port(start_port, probe=probe)
    return await CallbackListener(port, **kwargs).start()
