"""Shared fixtures and utilities for Etsy MCP tests."""

from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from etsy_mcp.config import Settings
from etsy_mcp.oauth.store import PersistentStorage, TokenStore

# Etsy access tokens carry the user id before the first dot
ACCESS_TOKEN = "12345678.test-access-token"

# Fixed wall-clock start for store tests, in epoch milliseconds
START_MS = 1_700_000_000_000


class FakeClock:
    """Manually advanced clock usable wherever a time callable is injected."""

    def __init__(self, start: float = 0):
        self.now = start

    def __call__(self) -> Any:
        return self.now

    def advance(self, amount: float) -> None:
        self.now += amount


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create settings with storage under a temp directory."""
    return Settings(
        api_key="test_api_key",
        client_secret="test_secret",
        host="127.0.0.1",
        port=0,
        redirect_uri="http://localhost:3003/oauth/callback",
        token_dir=tmp_path / ".etsy-mcp",
        image_source_dir=tmp_path / "images",
    )


@pytest.fixture
def token_response() -> dict[str, Any]:
    """A successful token endpoint response."""
    return {
        "access_token": ACCESS_TOKEN,
        "refresh_token": "test_refresh_token",
        "expires_in": 3600,
        "token_type": "Bearer",
    }


# ============================================================================
# Store Fixtures
# ============================================================================


@pytest.fixture
def ms_clock() -> FakeClock:
    """Millisecond clock for TokenStore."""
    return FakeClock(START_MS)


@pytest.fixture
def token_path(tmp_path: Path) -> Path:
    """Token file location inside a not-yet-created directory."""
    return tmp_path / "tokens" / "tokens.json"


@pytest.fixture
def token_store(token_path: Path, ms_clock: FakeClock) -> TokenStore:
    """TokenStore on a temp file with a controllable clock."""
    return TokenStore(PersistentStorage(token_path), clock=ms_clock)


@pytest.fixture
def live_token_store(token_path: Path) -> TokenStore:
    """TokenStore on a temp file using the real clock."""
    return TokenStore(PersistentStorage(token_path))


# ============================================================================
# HTTP Mock Helpers
# ============================================================================


def make_response(status_code: int = 200, json_data: Any = None, raise_json: bool = False) -> MagicMock:
    """Create a mock httpx.Response."""
    response = MagicMock()
    response.status_code = status_code
    if raise_json:
        response.json.side_effect = ValueError("Invalid JSON")
        response.content = b"not json"
    else:
        response.json.return_value = json_data
        response.content = b"{}" if json_data is not None else b""
    response.text = "raw body with secret_token_value"
    return response


def make_http_client(response: MagicMock | None = None, side_effect: Any = None) -> AsyncMock:
    """Create a mock httpx.AsyncClient whose post/request return response."""
    mock_http = AsyncMock()
    mock_http.post = AsyncMock(return_value=response, side_effect=side_effect)
    mock_http.request = AsyncMock(return_value=response, side_effect=side_effect)
    mock_http.aclose = AsyncMock()
    return mock_http


@pytest.fixture(name="make_response")
def make_response_fixture() -> Any:
    """Factory for mock httpx.Response objects."""
    return make_response


@pytest.fixture(name="make_http_client")
def make_http_client_fixture() -> Any:
    """Factory for mock httpx.AsyncClient objects."""
    return make_http_client


@pytest.fixture
def clock() -> FakeClock:
    """Second-resolution clock for StateStore."""
    return FakeClock(1000.0)
