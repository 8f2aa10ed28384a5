"""Ephemeral localhost HTTP server for OAuth2 redirect capture.

Binds the host/port of the registered redirect URI for the duration of
one login, serves a confirmation or error page to the browser, and hands
the authorization code to the awaiting coroutine.

Uses only stdlib (http.server, threading, urllib.parse). The server runs
on a daemon thread; results cross into asyncio through a future.
"""

# pylint: disable=logging-too-many-args

# pylint: disable=C0103,W0212

from __future__ import annotations

import asyncio
import hmac
import html
import logging
import threading

from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

from ..exceptions import (
    AuthFlowCancelled,
    AuthFlowTimeout,
    AuthorizationDenied,
    NetworkError,
    StateMismatch,
)
from ..log import mask
from ..types import CallbackResult


logger = logging.getLogger("malauth.auth")

_PAGE_STYLE = """
  body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }
  .card { text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }
  h1 { font-size: 1.5rem; margin-bottom: 0.5rem; }
  h1.error { color: #cc0000; }
  p { color: #666; }
"""

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head><title>{title}</title>
<style>{style}</style></head>
<body><div class="card">
  <h1 class="{css_class}">{heading}</h1>
  <p>{body}</p>
</div></body></html>"""


def _render(title: str, heading: str, body: str, *, error: bool = False) -> str:
    return _PAGE_TEMPLATE.format(
        title=title,
        style=_PAGE_STYLE,
        css_class="error" if error else "",
        heading=heading,
        body=html.escape(body, quote=True),
    )


_SUCCESS_HTML = _render(
    "Authentication Complete",
    "&#x2705; You're logged in!",
    "You can now close this window.",
)

_WAITING_HTML = _render(
    "Waiting for Authentication",
    "Waiting for authentication&hellip;",
    "Please complete the login in the browser window.",
)


class OAuthCallbackServer:
    """Ephemeral localhost HTTP server for capturing OAuth2 redirects.

    Parameters
    ----------
    host : str
        Bind address (default ``"127.0.0.1"``).
    port : int
        Port number (``0`` for auto-assign).
    path : str
        The redirect URI path routed to the callback handler.
    """

    # Seconds a connected client may idle before its socket is dropped;
    # browsers open speculative connections that never send a request.
    request_timeout: float = 5.0

    def __init__(self, host: str = "127.0.0.1", port: int = 0, path: str = "/callback") -> None:
        """Initialize the callback server."""
        self._host = host
        self._port = port
        self._path = path or "/"
        self._server: HTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._actual_port: int = 0

        self._lock = threading.Lock()
        self._expected_state: str | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._future: asyncio.Future[CallbackResult] | None = None
        self._resolved = False

    @classmethod
    def for_redirect_uri(cls, redirect_uri: str) -> OAuthCallbackServer:
        """Create a server bound to the host, port and path of ``redirect_uri``."""
        parsed = urlparse(redirect_uri)
        return cls(
            host=parsed.hostname or "127.0.0.1",
            port=80 if parsed.port is None else parsed.port,
            path=parsed.path or "/",
        )

    @property
    def port(self) -> int:
        """The bound port (``0`` before :meth:`start`)."""
        return self._actual_port

    @property
    def is_running(self) -> bool:
        """Whether the listening socket is currently open."""
        return self._server is not None

    @property
    def redirect_uri(self) -> str:
        """Get the redirect URI for this callback server.

        Returns
        -------
        str
            The full redirect URI (e.g. ``http://127.0.0.1:54321/callback``).
        """
        return f"http://{self._host}:{self._actual_port}{self._path}"

    def start(self) -> str:
        """Bind the socket and serve on a daemon thread.

        Returns
        -------
        str
            The redirect URI the server answers on.

        Raises
        ------
        NetworkError
            If the host/port cannot be bound.
        """
        if self._server is not None:
            return self.redirect_uri

        try:
            self._server = HTTPServer((self._host, self._port), self._make_handler())
        except OSError as exc:
            msg = f"Could not bind callback listener on {self._host}:{self._port}"
            raise NetworkError(msg, host=self._host, port=self._port) from exc
        self._actual_port = self._server.server_address[1]

        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.05},
            name="malauth-callback",
            daemon=True,
        )
        self._thread.start()

        logger.debug("OAuth callback server started on %s", self.redirect_uri)
        return self.redirect_uri

    def stop(self) -> None:
        """Shut down the server and release the socket. Safe to call twice."""
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        if server is not None:
            server.shutdown()
            server.server_close()
            logger.debug("OAuth callback server on port %s closed", self._actual_port)
        if thread is not None and thread.is_alive():
            thread.join(timeout=5)

    async def __aenter__(self) -> OAuthCallbackServer:
        """Start the server."""
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Stop the server."""
        self.stop()

    async def await_callback(self, expected_state: str, timeout: float) -> CallbackResult:
        """Wait for the redirect carrying ``expected_state``.

        Starts the server if needed. Requests with any other state are
        answered with an error page and the wait continues. The socket is
        released on every exit path, including task cancellation.

        Parameters
        ----------
        expected_state : str
            The state issued with the authorization URL.
        timeout : float
            Maximum seconds to wait.

        Returns
        -------
        CallbackResult
            The authorization code and its state.

        Raises
        ------
        AuthFlowTimeout
            If no matching callback arrives in time.
        AuthorizationDenied
            If the matching callback carries an OAuth ``error``.
        AuthFlowCancelled
            If :meth:`cancel` was called.
        NetworkError
            If the listener cannot bind.
        asyncio.CancelledError
            If the awaiting task is cancelled.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[CallbackResult] = loop.create_future()
        with self._lock:
            self._expected_state = expected_state
            self._loop = loop
            self._future = future
            self._resolved = False

        try:
            self.start()
            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except asyncio.TimeoutError:
                msg = f"No authorization callback received within {timeout:g}s"
                raise AuthFlowTimeout(msg, timeout=timeout) from None
        finally:
            with self._lock:
                self._future = None
                self._loop = None
            self.stop()

    def cancel(self, reason: str = "Login cancelled by the caller") -> bool:
        """Abort a pending :meth:`await_callback` with ``AuthFlowCancelled``.

        Returns
        -------
        bool
            True if a wait was pending and has been aborted.
        """
        return self._resolve(AuthFlowCancelled(reason))

    def _resolve(self, result: CallbackResult | BaseException) -> bool:
        """Hand a result to the awaiting coroutine from the server thread."""
        with self._lock:
            future, loop = self._future, self._loop
            if future is None or loop is None or self._resolved:
                return False
            self._resolved = True

        def _apply() -> None:
            if future.done():
                return
            if isinstance(result, BaseException):
                future.set_exception(result)
            else:
                future.set_result(result)

        try:
            loop.call_soon_threadsafe(_apply)
        except RuntimeError:
            logger.debug("Callback arrived after the waiting event loop closed")
            return False
        return True

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        server_ref = self

        class _CallbackHandler(BaseHTTPRequestHandler):
            """HTTP request handler for OAuth2 callbacks."""

            timeout = server_ref.request_timeout

            def do_GET(self) -> None:
                """Handle GET requests."""
                parsed = urlparse(self.path)

                if parsed.path != server_ref._path:
                    if parsed.path == "/":
                        self._send_html(_WAITING_HTML)
                    else:
                        self.send_error(404)
                    return

                params = parse_qs(parsed.query)
                state = params.get("state", [""])[0]
                code = params.get("code", [""])[0]
                error = params.get("error", [""])[0]

                with server_ref._lock:
                    expected = server_ref._expected_state
                    waiting = server_ref._future is not None and not server_ref._resolved
                    already_done = server_ref._resolved

                if not waiting:
                    if already_done:
                        self._send_html(_SUCCESS_HTML)
                    else:
                        self._send_error_page(409, "No login is in progress.")
                    return

                if not state or not expected or not hmac.compare_digest(state, expected):
                    mismatch = StateMismatch(
                        "Callback state does not match the issued state",
                        received=mask(state),
                    )
                    logger.warning("Ignoring callback: %s", mismatch)
                    self._send_error_page(
                        400, "This sign-in link does not belong to the current login."
                    )
                    return

                if error:
                    description = params.get("error_description", [""])[0] or error
                    denied = AuthorizationDenied(
                        f"Provider returned error: {description}", error=error
                    )
                    server_ref._resolve(denied)
                    self._send_error_page(200, description)
                    return

                if not code:
                    self._send_error_page(400, "The redirect did not include an authorization code.")
                    return

                server_ref._resolve(CallbackResult(code=code, state=state))
                self._send_html(_SUCCESS_HTML)

            def _send_error_page(self, status: int, message: str) -> None:
                page = _render("Authentication Failed", "&#x274C; Authentication Failed", message, error=True)
                self._send_html(page, status=status)

            def _send_html(self, html_content: str, status: int = 200) -> None:
                """Send an HTML response with security headers."""
                encoded = html_content.encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "text/html; charset=utf-8")
                self.send_header("Content-Length", str(len(encoded)))
                self.send_header("Cache-Control", "no-store")
                self.send_header(
                    "Content-Security-Policy",
                    "default-src 'none'; style-src 'unsafe-inline'",
                )
                self.send_header("X-Content-Type-Options", "nosniff")
                self.end_headers()
                self.wfile.write(encoded)

            def log_message(self, *args: Any) -> None:
                """Redirect HTTP server logging to the malauth logger."""
                if args:
                    logger.debug("OAuth callback server: %s", args[0] % args[1:])

        return _CallbackHandler


async def await_callback(expected_state: str, redirect_uri: str, timeout: float) -> CallbackResult:
    """Bind ``redirect_uri``, wait for one matching redirect, and release the socket.

    See :meth:`OAuthCallbackServer.await_callback`.
    """
    server = OAuthCallbackServer.for_redirect_uri(redirect_uri)
    return await server.await_callback(expected_state, timeout)
