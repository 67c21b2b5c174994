"""Tests for the OAuth callback listener."""

import asyncio
import errno
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from etsy_mcp.api import ShopSelection
from etsy_mcp.oauth.callback import (
    CallbackError,
    CallbackListener,
    CallbackResult,
    parse_callback_url,
    render_error_page,
    render_success_page,
)
from etsy_mcp.oauth.flow import CallbackProtocolError, FlowOutcome, TokenExchangeError
from etsy_mcp.oauth.tokens import TokenRecord

CONSENT_URL = "https://www.etsy.com/oauth/connect?state=abc"


@pytest.fixture
def outcome() -> FlowOutcome:
    """A successful flow outcome with a default shop."""
    record = TokenRecord(access_token="111.xyz", expires_at=0, user_id=111, shop_id=99, shop_name="Pottery Place")
    return FlowOutcome(record=record, shop=ShopSelection(shop_id=99, shop_name="Pottery Place"))


@pytest.fixture
def flow(outcome: FlowOutcome) -> MagicMock:
    """Mock AuthorizationFlow."""
    mock_flow = MagicMock()
    mock_flow.begin.return_value = CONSENT_URL
    mock_flow.complete = AsyncMock(return_value=outcome)
    return mock_flow


async def _request(port: int, raw: str) -> tuple[int, dict[str, str], str]:
    """Send a raw HTTP request and return (status, headers, body)."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(raw.encode())
    await writer.drain()
    data = await reader.read()
    writer.close()
    await writer.wait_closed()

    head, _, body = data.decode("utf-8").partition("\r\n\r\n")
    lines = head.split("\r\n")
    status = int(lines[0].split(" ")[1])
    headers = {}
    for line in lines[1:]:
        name, _, value = line.partition(":")
        headers[name.strip().lower()] = value.strip()
    return status, headers, body


def _get(path: str) -> str:
    return f"GET {path} HTTP/1.1\r\nHost: localhost\r\n\r\n"


class TestParseCallbackUrl:
    """Tests for parse_callback_url function."""

    def test_parse_success_callback(self) -> None:
        """Test parsing successful OAuth callback URL."""
        result = parse_callback_url("/oauth/callback?code=abc123&state=xyz789")

        assert result.code == "abc123"
        assert result.state == "xyz789"
        assert result.error is None
        assert result.is_success()

    def test_parse_error_callback(self) -> None:
        """Test parsing error OAuth callback URL."""
        result = parse_callback_url(
            "/oauth/callback?error=access_denied&error_description=User+denied+access&state=xyz"
        )

        assert result.code is None
        assert result.error == "access_denied"
        assert result.error_description == "User denied access"
        assert not result.is_success()

    def test_parse_multiple_values_takes_first(self) -> None:
        """Test that multiple values for same param uses first."""
        result = parse_callback_url("/oauth/callback?code=first&code=second")
        assert result.code == "first"


class TestRenderPages:
    """Tests for the result pages."""

    def test_success_page_shows_user_and_shop(self, outcome: FlowOutcome) -> None:
        """Test the success page content and auto-close script."""
        page = render_success_page(outcome)

        assert "Authentication Successful" in page
        assert "Your User ID: 111" in page
        assert "Default Shop Set: Pottery Place (ID: 99)" in page
        assert "window.close()" in page
        assert "3500" in page

    def test_success_page_without_shop_hints_at_tool(self) -> None:
        """Test the hint to run set_default_shop."""
        record = TokenRecord(access_token="111.xyz", expires_at=0, user_id=111)
        page = render_success_page(FlowOutcome(record=record))

        assert "set_default_shop" in page

    def test_error_page_escapes_content(self) -> None:
        """Test that echoed values cannot inject markup."""
        page = render_error_page("OAuth Error: <script>alert(1)</script>", "a & b")

        assert "<script>alert(1)</script>" not in page
        assert "&lt;script&gt;" in page
        assert "a &amp; b" in page
        assert "5000" in page


class TestCallbackListener:
    """Tests for CallbackListener routing and lifecycle."""

    @pytest.mark.asyncio
    async def test_auth_redirects_to_consent_url(self, flow: MagicMock) -> None:
        """Test GET /auth starts a flow and redirects."""
        async with CallbackListener(flow, "127.0.0.1", 0) as listener:
            status, headers, _ = await _request(listener.port, _get("/auth"))

        assert status == 302
        assert headers["location"] == CONSENT_URL
        flow.begin.assert_called_once()

    @pytest.mark.asyncio
    async def test_successful_callback(self, flow: MagicMock) -> None:
        """Test a completed flow renders the 200 success page."""
        async with CallbackListener(flow, "127.0.0.1", 0) as listener:
            status, headers, body = await _request(
                listener.port, _get("/oauth/callback?code=abc&state=s1")
            )

        assert status == 200
        assert "Authentication Successful" in body
        assert headers["x-frame-options"] == "DENY"
        assert headers["x-content-type-options"] == "nosniff"
        assert "script-src 'unsafe-inline'" in headers["content-security-policy"]
        flow.complete.assert_awaited_once_with(CallbackResult(code="abc", state="s1"))

    @pytest.mark.asyncio
    async def test_rejected_callback_renders_500(self, flow: MagicMock) -> None:
        """Test protocol errors render the diagnostic page."""
        flow.complete = AsyncMock(side_effect=CallbackProtocolError("Invalid or expired state parameter"))

        async with CallbackListener(flow, "127.0.0.1", 0) as listener:
            status, _, body = await _request(listener.port, _get("/oauth/callback?code=abc&state=bad"))

        assert status == 500
        assert "Authentication Failed" in body
        assert "Invalid or expired state parameter" in body
        assert "window.close()" in body

    @pytest.mark.asyncio
    async def test_exchange_failure_renders_500(self, flow: MagicMock) -> None:
        """Test exchange errors include the provider detail."""
        flow.complete = AsyncMock(side_effect=TokenExchangeError("Token exchange failed (HTTP 400): bad code"))

        async with CallbackListener(flow, "127.0.0.1", 0) as listener:
            status, _, body = await _request(listener.port, _get("/oauth/callback?code=abc&state=s1"))

        assert status == 500
        assert "Token exchange failed" in body
        assert "bad code" in body

    @pytest.mark.asyncio
    async def test_custom_callback_path(self, flow: MagicMock) -> None:
        """Test the callback path follows the configured redirect URI."""
        async with CallbackListener(flow, "127.0.0.1", 0, callback_path="/etsy/return") as listener:
            status, _, _ = await _request(listener.port, _get("/etsy/return?code=abc&state=s1"))

        assert status == 200

    @pytest.mark.asyncio
    async def test_favicon_and_unknown_paths_404(self, flow: MagicMock) -> None:
        """Test that other paths never reach the flow."""
        async with CallbackListener(flow, "127.0.0.1", 0) as listener:
            favicon_status, _, _ = await _request(listener.port, _get("/favicon.ico"))
            other_status, _, _ = await _request(listener.port, _get("/wrong?code=abc"))

        assert favicon_status == 404
        assert other_status == 404
        flow.begin.assert_not_called()
        flow.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_post_rejected(self, flow: MagicMock) -> None:
        """Test that non-GET requests get 405."""
        async with CallbackListener(flow, "127.0.0.1", 0) as listener:
            status, _, _ = await _request(
                listener.port,
                "POST /oauth/callback?code=abc&state=s1 HTTP/1.1\r\nHost: localhost\r\nContent-Length: 0\r\n\r\n",
            )

        assert status == 405
        flow.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_request_line(self, flow: MagicMock) -> None:
        """Test garbage requests get 400."""
        async with CallbackListener(flow, "127.0.0.1", 0) as listener:
            status, _, _ = await _request(listener.port, "NONSENSE\r\n\r\n")

        assert status == 400

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, flow: MagicMock) -> None:
        """Test starting twice keeps the same server."""
        listener = CallbackListener(flow, "127.0.0.1", 0)
        await listener.start()
        server = listener._server
        port = listener.port

        await listener.start()

        assert listener._server is server
        assert listener.port == port
        await listener.stop()
        assert not listener.running

    @pytest.mark.asyncio
    async def test_port_in_use_treated_as_running(self, flow: MagicMock) -> None:
        """Test EADDRINUSE means another instance already serves the port."""
        async with CallbackListener(flow, "127.0.0.1", 0) as first:
            second = CallbackListener(flow, "127.0.0.1", first.port)
            await second.start()

            assert second.running
            assert second._server is None
            await second.stop()

    @pytest.mark.asyncio
    async def test_start_binds_once_port_is_released(self, flow: MagicMock) -> None:
        """Test a listener that found the port taken binds it on a later start."""
        first = CallbackListener(flow, "127.0.0.1", 0)
        await first.start()
        second = CallbackListener(flow, "127.0.0.1", first.port)
        await second.start()
        assert second._server is None

        await first.stop()
        await second.start()

        try:
            assert second._server is not None
            status, headers, _ = await _request(second.port, _get("/auth"))
            assert status == 302
            assert headers["location"] == CONSENT_URL
        finally:
            await second.stop()

    @pytest.mark.asyncio
    async def test_other_bind_errors_raise(self, flow: MagicMock) -> None:
        """Test bind failures other than EADDRINUSE are reported."""
        listener = CallbackListener(flow, "127.0.0.1", 0)
        error = OSError(errno.EACCES, "Permission denied")

        with patch("etsy_mcp.oauth.callback.asyncio.start_server", AsyncMock(side_effect=error)):
            with pytest.raises(CallbackError, match="Failed to start"):
                await listener.start()

    def test_auth_url(self, flow: MagicMock) -> None:
        """Test the user-facing URL."""
        listener = CallbackListener(flow, "localhost", 3003)
        assert listener.auth_url == "http://localhost:3003/auth"
