"""One-shot localhost HTTP receiver for the OAuth2 redirect.

Binds port 0 on the loopback interface and reads back the assigned port,
so the redirect URI exists before the browser can navigate to it. Serves
exactly one callback on ``/``, answers it with a completion page, then
shuts down. The result crosses into asyncio through an AsyncResultHandle.

Each connection is handled on its own thread with a read timeout, so an
idle connection (e.g. a browser preconnect) cannot block the callback or
shutdown. Uses only stdlib (http.server, threading, urllib.parse).
"""

# pylint: disable=C0103,W0212

from __future__ import annotations

import asyncio
import html
import logging
import threading

from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlparse

from ..exceptions import CanceledError, InvalidStateError
from ..handle import AsyncResultHandle


logger = logging.getLogger("oauthloop.auth")

DEFAULT_COMPLETION_MESSAGE = (
    "Authorization succeeded.<br>Go back to the application and continue."
)

_CANCELED_MESSAGE = "The operation has been canceled."

_PAGE_HTML = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"/><title>{title}</title>
<style>
  body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif;
         display: flex; align-items: center; justify-content: center;
         height: 100vh; margin: 0; background: #f0f2f5; color: #1a1a2e; }}
  .card {{ text-align: center; padding: 2rem 3rem; background: white;
          border-radius: 12px; box-shadow: 0 2px 12px rgba(0,0,0,.08); }}
  h1 {{ font-size: 1.5rem; margin-bottom: 0.5rem; }}
  p {{ color: #666; }}
</style></head>
<body><div class="card">
  <h1>{heading}</h1>
  <p>{message}</p>
</div></body></html>"""

# Serving-thread poll interval; bounds how long stop() blocks.
_POLL_INTERVAL = 0.05

# Socket timeout for a single connection that sends no request.
_REQUEST_TIMEOUT = 5.0


class _RedirectHTTPServer(ThreadingHTTPServer):
    """Threaded server whose connection threads never delay shutdown."""

    daemon_threads = True
    block_on_close = False


class LoopbackRedirectServer:
    """Single-use HTTP server capturing one OAuth2 redirect.

    Parameters
    ----------
    host : str
        Bind address (default ``"127.0.0.1"``).
    redirect_host : str
        Host name used in the redirect URI (default ``"localhost"``).
    completion_message : str
        Body of the page shown to the user after the callback. HTML tags
        are allowed.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        redirect_host: str = "localhost",
        completion_message: str = DEFAULT_COMPLETION_MESSAGE,
    ) -> None:
        """Initialize the redirect server."""
        self._host = host
        self._redirect_host = redirect_host
        self.completion_message = completion_message
        self._server: _RedirectHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._port = 0
        self._claim_lock = threading.Lock()
        self._claimed_by: str | None = None
        self._stop_lock = threading.Lock()
        self._callback: AsyncResultHandle[dict[str, str]] = AsyncResultHandle("loopback callback")

    @property
    def port(self) -> int:
        """The bound port.

        Raises
        ------
        InvalidStateError
            If the server has not been bound.
        """
        if not self._port:
            msg = "Redirect server is not bound"
            raise InvalidStateError(msg)
        return self._port

    @property
    def redirect_uri(self) -> str:
        """The redirect URI (e.g. ``http://localhost:54321/``)."""
        return f"http://{self._redirect_host}:{self.port}/"

    @property
    def canceled(self) -> bool:
        """True if cancellation won the race against the callback."""
        return self._claimed_by == "cancel"

    def _claim(self, claimant: str) -> bool:
        """Atomically reserve the single outcome for ``claimant``."""
        with self._claim_lock:
            if self._claimed_by is not None:
                return False
            self._claimed_by = claimant
            return True

    def bind(self) -> tuple[int, str]:
        """Bind an ephemeral loopback port and start serving.

        Returns
        -------
        tuple[int, str]
            The assigned port and the redirect URI.

        Raises
        ------
        OSError
            If the socket cannot be bound.
        InvalidStateError
            If the server was already bound.
        CanceledError
            If the server was canceled before binding.
        """
        if self._port:
            msg = "Redirect server is already bound"
            raise InvalidStateError(msg, port=self._port)
        if self.canceled:
            raise CanceledError(_CANCELED_MESSAGE)

        server = _RedirectHTTPServer((self._host, 0), self._make_handler())
        self._server = server
        self._port = server.server_address[1]

        self._thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": _POLL_INTERVAL},
            name=f"oauthloop-redirect-{self._port}",
            daemon=True,
        )
        self._thread.start()

        logger.debug("Redirect server listening on %s", self.redirect_uri)
        return self._port, self.redirect_uri

    def _make_handler(self) -> type[BaseHTTPRequestHandler]:
        server_ref = self

        class _RedirectHandler(BaseHTTPRequestHandler):
            """HTTP request handler for the OAuth2 redirect."""

            timeout = _REQUEST_TIMEOUT

            def do_GET(self) -> None:
                """Handle GET requests."""
                parsed = urlparse(self.path)
                if parsed.path != "/":
                    self.send_error(404)
                    return

                if not server_ref._claim("callback"):
                    self.send_error(410, "Authorization response already handled")
                    return

                params = {
                    key: values[0]
                    for key, values in parse_qs(parsed.query, keep_blank_values=True).items()
                }
                try:
                    error = params.get("error")
                    if error:
                        detail = params.get("error_description") or error
                        self._send_page(
                            "Authorization Failed",
                            "&#x274C; Authorization Failed",
                            html.escape(detail, quote=True),
                        )
                    else:
                        self._send_page(
                            "Authorization Complete",
                            "&#x2705; Authorization Complete",
                            server_ref.completion_message,
                        )
                finally:
                    server_ref._callback.success(params)
                    server_ref._stop_soon()

            def _send_page(self, title: str, heading: str, message: str) -> None:
                """Send an HTML response with security headers."""
                encoded = _PAGE_HTML.format(title=title, heading=heading, message=message).encode(
                    "utf-8"
                )
                self.send_response(200)
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
                """Redirect HTTP server logging to the oauthloop logger."""
                if args:
                    logger.debug("Redirect server: %s", args[0] % args[1:])

        return _RedirectHandler

    async def await_callback(self, timeout: float | None = None) -> dict[str, str]:
        """Wait for the redirect and return its query parameters.

        Parameters
        ----------
        timeout : float, optional
            Seconds to wait before canceling (default: wait indefinitely).

        Returns
        -------
        dict[str, str]
            First value of each query parameter of the callback.

        Raises
        ------
        CanceledError
            If the server was canceled, or the timeout expired, before a
            callback arrived.
        """
        try:
            handle = await self._callback.wait_async(timeout)
        except asyncio.TimeoutError:
            self.cancel(f"No authorization callback received within {timeout}s")
            # A callback may have claimed the server just before the deadline.
            handle = await self._callback.wait_async()

        error = handle.error
        if error is not None:
            raise error
        return handle.result

    def cancel(self, reason: str = _CANCELED_MESSAGE) -> None:
        """Cancel the pending wait and close the listener.

        Thread-safe and idempotent. If a callback has already been claimed
        it completes normally and only the shutdown is requested.
        """
        if self._claim("cancel"):
            logger.debug("Redirect server canceled: %s", reason)
            self._callback.fail(CanceledError(reason))
        self._stop_soon()

    def _stop_soon(self) -> None:
        """Request shutdown without blocking the calling thread."""
        if self._server is not None:
            threading.Thread(target=self.stop, daemon=True).start()

    def stop(self) -> None:
        """Shut down the server, close its socket and join the serving thread.

        Blocking and idempotent. Must not be called from the serving thread.
        """
        with self._stop_lock:
            server, thread = self._server, self._thread
            if server is None:
                return
            server.shutdown()
            server.server_close()
            if thread is not None and thread.is_alive():
                thread.join(timeout=5)
            self._server = None
            self._thread = None
            logger.debug("Redirect server on port %d stopped", self._port)
