"""MCP stdio server exposing the Etsy tools."""

import logging
from typing import Annotated, Literal
from urllib.parse import urlparse

import httpx
from mcp.server.fastmcp import FastMCP
from pydantic import Field

from . import __version__
from .api import REQUEST_TIMEOUT, EtsyApiClient
from .config import Settings
from .oauth.callback import CallbackListener
from .oauth.flow import AuthorizationFlow
from .oauth.manager import TokenLifecycleManager
from .oauth.state import StateStore
from .oauth.store import TokenStore, open_storage
from .tools import EtsyTools, ListingData

logger = logging.getLogger(__name__)

SERVER_NAME = "Etsy API"

SERVER_INSTRUCTIONS = """
Tools for managing an Etsy shop through the Etsy Open API v3.

## Getting started
1. `authenticate` returns a local URL; open it in a browser and approve access
2. `set_default_shop` stores your first shop so shop_id can be omitted later
3. Use the shop, listing, shipping profile and image tools

## Notes
- Physical listings need a shipping_profile_id (see `list_shop_shipping_profiles`)
- Images are uploaded from the server's ETSY_IMAGE_SOURCE_DIR after the listing exists
"""

ShopIdArg = Annotated[
    int | None,
    Field(description="The ID of the shop. If not provided, uses the default shop."),
]


class EtsyApp:
    """Process-wide components of the server, wired together.

    One TokenStore is shared by the lifecycle manager, the authorization
    flow and the tool handlers.
    """

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.http_client = http_client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)
        self._owns_http = http_client is None

        self.token_store = token_store or TokenStore(open_storage(settings.token_path))
        self.state_store = StateStore()
        self.api_client = EtsyApiClient(settings, http_client=self.http_client)
        self.flow = AuthorizationFlow(
            settings,
            self.state_store,
            self.token_store,
            self.api_client,
            http_client=self.http_client,
        )
        self.listener = CallbackListener(
            self.flow,
            settings.host,
            settings.port,
            callback_path=urlparse(settings.redirect_uri).path,
        )
        self.lifecycle = TokenLifecycleManager(settings, self.token_store, http_client=self.http_client)
        self.tools = EtsyTools(settings, self.token_store, self.lifecycle, self.listener, self.api_client)

    async def start(self) -> None:
        """Start background work that must run while the server is up."""
        self.state_store.start_sweeper()

    async def aclose(self) -> None:
        """Stop the listener and sweeper and release the HTTP client."""
        await self.listener.stop()
        await self.state_store.stop_sweeper()
        if self._owns_http:
            await self.http_client.aclose()
        logger.debug("Etsy MCP components shut down")


def create_server(app: EtsyApp) -> FastMCP:
    """Build the FastMCP server with all Etsy tools registered.

    Args:
        app: Wired application components

    Returns:
        FastMCP server ready to run
    """
    mcp = FastMCP(SERVER_NAME, instructions=SERVER_INSTRUCTIONS)
    tools = app.tools

    @mcp.tool(name="authenticate", description="Initiate authentication with Etsy via browser.")
    async def authenticate() -> str:
        return await tools.authenticate()

    @mcp.tool(
        name="auth_status",
        description="Show whether Etsy credentials are stored, when they expire and the default shop.",
    )
    async def auth_status() -> str:
        return await tools.auth_status()

    @mcp.tool(name="logout", description="Remove the stored Etsy credentials.")
    async def logout() -> str:
        return await tools.logout()

    @mcp.tool(
        name="set_default_shop",
        description=(
            "Fetches your Etsy shops and sets the first one found as default. "
            "If you have multiple shops, it will use the first one returned by Etsy."
        ),
    )
    async def set_default_shop() -> str:
        return await tools.set_default_shop()

    @mcp.tool(
        name="get_default_shop",
        description="Gets the currently configured default Etsy shop ID and name.",
    )
    async def get_default_shop() -> str:
        return await tools.get_default_shop()

    @mcp.tool(name="get_listings", description="Get all active listings for a shop")
    async def get_listings(shop_id: ShopIdArg = None) -> str:
        return await tools.get_listings(shop_id)

    @mcp.tool(name="get_shop_details", description="Get details for a specific shop")
    async def get_shop_details(shop_id: ShopIdArg = None) -> str:
        return await tools.get_shop_details(shop_id)

    @mcp.tool(
        name="create_listing",
        description=(
            "Creates a new Etsy listing. For physical items, ensure you have a shipping_profile_id. "
            "To add images, create the listing first, then use the `upload_listing_image` tool "
            "with the returned listing_id."
        ),
    )
    async def create_listing(
        listing_data: Annotated[ListingData, Field(description="Fields of the new listing")],
        shop_id: ShopIdArg = None,
    ) -> str:
        return await tools.create_listing(listing_data, shop_id)

    @mcp.tool(
        name="list_shop_shipping_profiles",
        description="Lists all shipping profiles for a given shop (or the default shop).",
    )
    async def list_shop_shipping_profiles(shop_id: ShopIdArg = None) -> str:
        return await tools.list_shop_shipping_profiles(shop_id)

    @mcp.tool(
        name="create_shop_shipping_profile",
        description="Creates a new shipping profile for a shop.",
    )
    async def create_shop_shipping_profile(
        title: Annotated[str, Field(description="A title for the shipping profile (e.g., 'US Standard').")],
        origin_country_iso: Annotated[
            str, Field(description="ISO code of the country the listing ships from (e.g., 'US', 'GB').")
        ],
        primary_cost: Annotated[float, Field(description="The cost of shipping to this destination alone.")],
        secondary_cost: Annotated[
            float, Field(description="The cost of shipping to this destination with another item.")
        ],
        min_processing_time: Annotated[int, Field(description="Minimum time (in days) to process the order.")],
        max_processing_time: Annotated[int, Field(description="Maximum time (in days) to process the order.")],
        destination_country_iso: Annotated[
            str | None,
            Field(description="ISO code of a destination country. Use either this or destination_region."),
        ] = None,
        destination_region: Annotated[
            Literal["eu", "non_eu", "none"] | None,
            Field(description="A destination region. Use either this or destination_country_iso."),
        ] = None,
        shop_id: ShopIdArg = None,
    ) -> str:
        profile = {
            "title": title,
            "origin_country_iso": origin_country_iso,
            "primary_cost": primary_cost,
            "secondary_cost": secondary_cost,
            "min_processing_time": min_processing_time,
            "max_processing_time": max_processing_time,
            "destination_country_iso": destination_country_iso,
            "destination_region": destination_region,
        }
        return await tools.create_shop_shipping_profile(profile, shop_id)

    @mcp.tool(
        name="upload_listing_image",
        description=(
            "Uploads an image from a configured server directory and associates it with an Etsy listing."
        ),
    )
    async def upload_listing_image(
        listing_id: Annotated[int, Field(description="The ID of the listing to add the image to.")],
        file_name: Annotated[
            str, Field(description="Name of the image file (e.g., 'my_image.jpg') in the server's image directory.")
        ],
        image_name: Annotated[
            str | None,
            Field(description="Filename for the image on Etsy. Defaults to file_name if not provided."),
        ] = None,
        shop_id: ShopIdArg = None,
    ) -> str:
        return await tools.upload_listing_image(listing_id, file_name, image_name, shop_id)

    logger.debug(f"Registered Etsy tools (server version {__version__})")
    return mcp


async def run_server(settings: Settings) -> None:
    """Run the MCP server over stdio until the client disconnects.

    Args:
        settings: Loaded configuration
    """
    app = EtsyApp(settings)
    server = create_server(app)

    await app.start()
    logger.info(f"Etsy MCP server starting (OAuth callback: {settings.redirect_uri})")
    try:
        await server.run_stdio_async()
    finally:
        await app.aclose()
        logger.info("Etsy MCP server stopped")
