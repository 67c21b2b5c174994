"""Etsy MCP - An MCP server exposing Etsy shop management tools over stdio."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("etsy-mcp")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Configuration
    "Settings",
    "load_settings",
    # Etsy API
    "EtsyApiClient",
    "UpstreamAPIError",
    # Server
    "EtsyApp",
    "create_server",
    "OutputHandler",
]

# Lazy imports to avoid circular dependencies
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("Settings", "load_settings"):
        from .config import Settings, load_settings
        return {"Settings": Settings, "load_settings": load_settings}[name]
    elif name in ("EtsyApiClient", "UpstreamAPIError"):
        from .api import EtsyApiClient, UpstreamAPIError
        return {"EtsyApiClient": EtsyApiClient, "UpstreamAPIError": UpstreamAPIError}[name]
    elif name in ("EtsyApp", "create_server"):
        from .server import EtsyApp, create_server
        return {"EtsyApp": EtsyApp, "create_server": create_server}[name]
    elif name == "OutputHandler":
        from .output import OutputHandler
        return OutputHandler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
