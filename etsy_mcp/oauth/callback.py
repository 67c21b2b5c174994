"""Localhost callback listener for OAuth redirects.

This module provides the long-lived HTTP listener the browser talks to during
authorization. It:
- Serves ``GET /auth`` by starting a flow and redirecting to Etsy
- Receives the authorization code on ``GET /oauth/callback``
- Returns an HTML page with the outcome that closes itself after a few seconds
- Answers favicon and unknown paths with 404
"""

import asyncio
import errno
import html
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlparse

from .flow import AuthorizationFlow, FlowOutcome, OAuthFlowError, TokenExchangeError

logger = logging.getLogger(__name__)

AUTH_PATH = "/auth"
DEFAULT_CALLBACK_PATH = "/oauth/callback"

# Auto-close delays for the result pages, in milliseconds
SUCCESS_CLOSE_DELAY_MS = 3500
ERROR_CLOSE_DELAY_MS = 5000


class CallbackError(Exception):
    """Error starting or running the callback listener."""

    pass


@dataclass
class CallbackResult:
    """Result from OAuth callback.

    Attributes:
        code: The authorization code from the callback
        state: The state parameter from the callback
        error: Error code if authorization failed
        error_description: Human-readable error description
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        """Check if callback was successful."""
        return self.code is not None and self.error is None


PAGE_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            height: 100vh;
            margin: 0;
            background: {background};
        }}
        .card {{
            background: white;
            padding: 40px 60px;
            border-radius: 16px;
            text-align: center;
            box-shadow: 0 10px 40px rgba(0,0,0,0.2);
            max-width: 480px;
        }}
        h1 {{ color: #1a1a1a; margin: 0 0 16px 0; font-size: 24px; }}
        p {{ color: #666; margin: 0 0 12px 0; }}
        .details {{
            background: #fee;
            padding: 12px;
            border-radius: 8px;
            color: #c0392b;
            font-family: monospace;
            font-size: 14px;
        }}
    </style>
</head>
<body>
    <div class="card">
        <h1>{title}</h1>
        {body}
    </div>
    <script>
        setTimeout(function () {{ window.close(); }}, {close_delay});
    </script>
</body>
</html>"""

SUCCESS_BACKGROUND = "linear-gradient(135deg, #f1641e 0%, #d5541a 100%)"
ERROR_BACKGROUND = "linear-gradient(135deg, #e74c3c 0%, #c0392b 100%)"


def render_success_page(outcome: FlowOutcome) -> str:
    """Render the page shown after a successful authorization.

    Args:
        outcome: Result of the completed flow

    Returns:
        HTML document
    """
    lines = []
    if outcome.record.user_id is not None:
        lines.append(f"<p>Your User ID: {outcome.record.user_id}</p>")
    if outcome.shop is not None:
        shop_name = html.escape(outcome.shop.shop_name or "N/A")
        lines.append(f"<p>Default Shop Set: {shop_name} (ID: {outcome.shop.shop_id})</p>")
    else:
        lines.append(
            "<p>No default shop was automatically set. "
            "You can use the <code>set_default_shop</code> tool if needed.</p>"
        )
    lines.append("<p>You can close this window and return to the application.</p>")

    return PAGE_HTML.format(
        title="Authentication Successful",
        background=SUCCESS_BACKGROUND,
        body="\n        ".join(lines),
        close_delay=SUCCESS_CLOSE_DELAY_MS,
    )


def render_error_page(message: str, details: str | None = None) -> str:
    """Render the diagnostic page for a failed authorization.

    Both values are HTML-escaped since they may echo query parameters.
    """
    body = f"<p>{html.escape(message)}</p>"
    if details:
        body += f'\n        <div class="details">Details: {html.escape(details)}</div>'

    return PAGE_HTML.format(
        title="Authentication Failed",
        background=ERROR_BACKGROUND,
        body=body,
        close_delay=ERROR_CLOSE_DELAY_MS,
    )


def parse_callback_url(url: str) -> CallbackResult:
    """Parse OAuth callback URL parameters.

    Args:
        url: The callback URL with query parameters

    Returns:
        CallbackResult with parsed parameters
    """
    parsed = urlparse(url)
    params = parse_qs(parsed.query)

    # Get first value of each parameter (or None if not present)
    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


class CallbackListener:
    """HTTP listener for the browser side of the OAuth flow.

    Unlike a one-shot callback server, the listener stays up for the life of
    the process so any number of authorization attempts can run through it.
    Several attempts may be in flight at once; each is tied to its own state.

    Usage:
        async with CallbackListener(flow, "localhost", 3003) as listener:
            print(f"Visit {listener.auth_url}")
    """

    def __init__(
        self,
        flow: AuthorizationFlow,
        host: str,
        port: int,
        callback_path: str = DEFAULT_CALLBACK_PATH,
    ):
        """Initialize the listener.

        Args:
            flow: Flow controller handling /auth and the callback
            host: Interface to bind
            port: Port to bind (0 lets the OS choose)
            callback_path: Path of the redirect URI
        """
        self.flow = flow
        self.host = host
        self.port = port
        self.callback_path = callback_path or DEFAULT_CALLBACK_PATH

        self._server: asyncio.Server | None = None
        self._external = False

    @property
    def running(self) -> bool:
        """Whether this process, or another one, is serving the port."""
        return self._server is not None or self._external

    @property
    def auth_url(self) -> str:
        """URL the user opens in a browser to start authorization."""
        return f"http://{self.host}:{self.port}{AUTH_PATH}"

    async def start(self) -> None:
        """Start listening (no-op if already started).

        If the port is already bound, another instance is assumed to be
        serving it and start() returns normally. The bind is retried on every
        call until this listener owns the port.

        Raises:
            CallbackError: If the listener cannot bind for any other reason
        """
        if self._server is not None:
            logger.debug("OAuth callback listener already running")
            return

        self._external = False
        try:
            self._server = await asyncio.start_server(self._handle_connection, self.host, self.port)
        except OSError as e:
            if e.errno == errno.EADDRINUSE:
                logger.info(f"OAuth callback listener already running on port {self.port}")
                self._external = True
                return
            raise CallbackError(f"Failed to start OAuth callback listener: {e}") from e

        sockets = self._server.sockets
        if sockets and self.port == 0:
            self.port = sockets[0].getsockname()[1]

        logger.info(f"OAuth callback listener running on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the listener."""
        self._external = False
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.debug("OAuth callback listener stopped")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle incoming HTTP connection."""
        try:
            request_line = await reader.readline()
            request_text = request_line.decode("utf-8", errors="replace")

            # e.g. "GET /oauth/callback?code=xxx&state=yyy HTTP/1.1"
            parts = request_text.strip().split(" ")
            if len(parts) < 2:
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = parts[0], parts[1]

            # Headers are not needed, just consume them
            while True:
                header_line = await reader.readline()
                if header_line in (b"\r\n", b"\n", b""):
                    break

            await self._route(writer, method, target)

        except Exception as e:
            logger.warning(f"Error handling callback request: {e}")
            try:
                await self._send_response(writer, HTTPStatus.INTERNAL_SERVER_ERROR, "Internal error")
            except Exception:
                pass

        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except Exception:
                pass

    async def _route(self, writer: asyncio.StreamWriter, method: str, target: str) -> None:
        path = urlparse(target).path

        if path == "/favicon.ico":
            await self._send_response(writer, HTTPStatus.NOT_FOUND, "")
            return

        if path not in (AUTH_PATH, self.callback_path):
            await self._send_response(writer, HTTPStatus.NOT_FOUND, "Not found")
            return

        if method != "GET":
            await self._send_response(writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
            return

        if path == AUTH_PATH:
            await self._handle_auth(writer)
        else:
            await self._handle_callback(writer, target)

    async def _handle_auth(self, writer: asyncio.StreamWriter) -> None:
        try:
            location = self.flow.begin()
        except Exception as e:
            logger.error(f"Error initializing OAuth flow: {e}")
            await self._send_html_response(
                writer,
                HTTPStatus.INTERNAL_SERVER_ERROR,
                render_error_page("Error initializing OAuth flow", str(e)),
            )
            return

        await self._send_redirect(writer, location)

    async def _handle_callback(self, writer: asyncio.StreamWriter, target: str) -> None:
        result = parse_callback_url(target)

        try:
            outcome = await self.flow.complete(result)
        except TokenExchangeError as e:
            page = render_error_page("Token exchange failed", str(e))
        except OAuthFlowError as e:
            page = render_error_page(str(e))
        except Exception as e:
            logger.exception("Unexpected error completing OAuth flow")
            page = render_error_page("Unexpected error during authentication", str(e))
        else:
            await self._send_html_response(writer, HTTPStatus.OK, render_success_page(outcome))
            return

        await self._send_html_response(writer, HTTPStatus.INTERNAL_SERVER_ERROR, page)

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
    ) -> None:
        """Send a plain text HTTP response."""
        payload = body.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/plain; charset=utf-8\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + payload)
        await writer.drain()

    async def _send_redirect(self, writer: asyncio.StreamWriter, location: str) -> None:
        status = HTTPStatus.FOUND
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Location: {location}\r\n"
            f"Content-Length: 0\r\n"
            f"Cache-Control: no-store\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8"))
        await writer.drain()

    async def _send_html_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        html_content: str,
    ) -> None:
        """Send an HTML HTTP response with security headers."""
        body = html_content.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; "
            f"style-src 'unsafe-inline'; script-src 'unsafe-inline'\r\n"
            f"Cache-Control: no-store\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + body)
        await writer.drain()

    async def __aenter__(self) -> "CallbackListener":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.stop()
