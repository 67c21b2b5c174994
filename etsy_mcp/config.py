"""Environment-driven configuration for the Etsy MCP server."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

# Etsy endpoints
AUTHORIZATION_ENDPOINT = "https://www.etsy.com/oauth/connect"
API_BASE_URL = "https://api.etsy.com/v3"
TOKEN_ENDPOINT = f"{API_BASE_URL}/public/oauth/token"

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 3003
DEFAULT_SCOPES = ["listings_r", "listings_w", "shops_r", "shops_w"]

# Relative to the working directory at startup
DEFAULT_LOG_DIR_NAME = "logs"

# Token storage location
DEFAULT_TOKEN_DIR = Path.home() / ".etsy-mcp"
TOKENS_FILE = "tokens.json"

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    DEFAULT_TOKEN_DIR / ".env",
]


class ConfigurationError(Exception):
    """Required configuration is missing or invalid."""

    pass


@dataclass
class Settings:
    """Complete Etsy MCP configuration."""

    api_key: str
    client_secret: str
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    redirect_uri: str = ""
    token_dir: Path = DEFAULT_TOKEN_DIR
    log_dir: Path | None = None
    image_source_dir: Path | None = None
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    env_path: Path | None = None

    def __post_init__(self) -> None:
        if not self.redirect_uri:
            self.redirect_uri = f"http://{self.host}:{self.port}/oauth/callback"

    @property
    def token_path(self) -> Path:
        """Path of the persisted token file."""
        return self.token_dir / TOKENS_FILE

    @property
    def auth_url(self) -> str:
        """Local URL the user visits to start the authorization flow."""
        return f"http://{self.host}:{self.port}/auth"


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def _optional_path(name: str) -> Path | None:
    value = os.environ.get(name, "").strip()
    return Path(value).expanduser() if value else None


def load_settings(env_path: Path | None = None) -> Settings:
    """Load settings from the environment, after applying a .env file.

    Args:
        env_path: Explicit path to .env file (optional)

    Returns:
        Settings populated from environment variables

    Raises:
        ConfigurationError: If ETSY_API_KEY or ETSY_CLIENT_SECRET is missing,
            or ETSY_MCP_PORT is not an integer
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    api_key = os.environ.get("ETSY_API_KEY", "").strip()
    client_secret = os.environ.get("ETSY_CLIENT_SECRET", "").strip()
    if not api_key or not client_secret:
        raise ConfigurationError(
            "ETSY_API_KEY and ETSY_CLIENT_SECRET must be set in environment variables.\n\n"
            "Add them to your shell environment or to a .env file, e.g.:\n\n"
            "  ETSY_API_KEY=your-keystring\n"
            "  ETSY_CLIENT_SECRET=your-shared-secret"
        )

    raw_port = os.environ.get("ETSY_MCP_PORT", str(DEFAULT_PORT))
    try:
        port = int(raw_port)
    except ValueError:
        raise ConfigurationError(f"ETSY_MCP_PORT must be an integer, got: {raw_port!r}") from None

    scopes_value = os.environ.get("ETSY_MCP_SCOPES", "").strip()
    scopes = scopes_value.split() if scopes_value else list(DEFAULT_SCOPES)

    return Settings(
        api_key=api_key,
        client_secret=client_secret,
        host=os.environ.get("ETSY_MCP_HOST", DEFAULT_HOST),
        port=port,
        redirect_uri=os.environ.get("ETSY_MCP_REDIRECT_URI", ""),
        token_dir=_optional_path("ETSY_MCP_TOKEN_PATH") or DEFAULT_TOKEN_DIR,
        log_dir=_optional_path("ETSY_MCP_LOG_PATH") or Path.cwd() / DEFAULT_LOG_DIR_NAME,
        image_source_dir=_optional_path("ETSY_IMAGE_SOURCE_DIR"),
        scopes=scopes,
        env_path=env_file,
    )
