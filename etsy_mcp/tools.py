"""MCP tool handlers for Etsy shop management.

Each handler returns text for the tool result, or raises ToolError which the
MCP server reports back to the client as an error result.
"""

import functools
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Literal, TypeVar

from mcp.server.fastmcp.exceptions import ToolError
from pydantic import BaseModel, Field, ValidationError, model_validator

from .api import EtsyApiClient, select_shop
from .config import Settings
from .oauth.callback import CallbackListener
from .oauth.manager import TokenLifecycleManager
from .oauth.store import TokenStore

logger = logging.getLogger(__name__)

AUTH_REQUIRED_MESSAGE = "Authentication required. Please run the authenticate tool."
SHOP_REQUIRED_MESSAGE = "Shop ID is required. Provide a shop_id or run `set_default_shop` first."

T = TypeVar("T")


class ListingData(BaseModel):
    """Fields for a new Etsy listing."""

    title: str
    description: str
    price: float = Field(gt=0)
    quantity: int = Field(ge=1)
    who_made: str = Field(description="e.g., 'i_did', 'collective', 'someone_else'")
    when_made: str = Field(description="e.g., 'made_to_order', '2020_2024', '1950_1959'")
    taxonomy_id: int = Field(description="The numeric ID of the listing's category.")
    shipping_profile_id: int | None = Field(
        default=None,
        description="The numeric ID of the shipping profile. Required if type is 'physical'.",
    )
    type: Literal["physical", "digital", "download"] = Field(
        description="Listing type. 'physical' requires a shipping_profile_id."
    )

    @model_validator(mode="after")
    def _physical_needs_shipping_profile(self) -> "ListingData":
        if self.type == "physical" and self.shipping_profile_id is None:
            raise ValueError(
                "shipping_profile_id is required when listing type is 'physical'. "
                "Use list_shop_shipping_profiles or create_shop_shipping_profile."
            )
        return self

    def to_payload(self) -> dict[str, Any]:
        """Request body for Etsy, without unset optional fields."""
        return self.model_dump(exclude_none=True)


class ShippingProfileData(BaseModel):
    """Fields for a new shop shipping profile."""

    title: str
    origin_country_iso: str = Field(min_length=2, max_length=2)
    primary_cost: float = Field(ge=0)
    secondary_cost: float = Field(ge=0)
    min_processing_time: int = Field(ge=1)
    max_processing_time: int = Field(ge=1)
    destination_country_iso: str | None = Field(default=None, min_length=2, max_length=2)
    destination_region: Literal["eu", "non_eu", "none"] | None = None

    @model_validator(mode="after")
    def _exactly_one_destination(self) -> "ShippingProfileData":
        if (self.destination_country_iso is None) == (self.destination_region is None):
            raise ValueError(
                "Either destination_country_iso OR destination_region must be provided, but not both."
            )
        return self

    def to_payload(self) -> dict[str, Any]:
        """Request body for Etsy; costs are sent as strings."""
        payload = self.model_dump(exclude_none=True)
        payload["primary_cost"] = str(self.primary_cost)
        payload["secondary_cost"] = str(self.secondary_cost)
        return payload


def _dump(data: Any) -> str:
    return json.dumps(data, indent=2)


def tool_errors(failure_message: str | None = None) -> Callable[
    [Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]
]:
    """Convert unexpected exceptions in a tool handler into ToolError.

    ToolError raised by the handler passes through unchanged.

    Args:
        failure_message: Prefix for the error text (defaults to the exception text only)
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return await func(*args, **kwargs)
            except ToolError:
                raise
            except Exception as e:
                logger.error(f"Tool {func.__name__} failed: {e}")
                message = f"{failure_message} {e}" if failure_message else str(e)
                raise ToolError(message) from e

        return wrapper

    return decorator


class EtsyTools:
    """Handlers behind the MCP tools.

    All collaborators are injected; the same TokenStore instance is shared
    with the lifecycle manager and the authorization flow.
    """

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore,
        lifecycle: TokenLifecycleManager,
        listener: CallbackListener,
        api_client: EtsyApiClient,
    ):
        self.settings = settings
        self.token_store = token_store
        self.lifecycle = lifecycle
        self.listener = listener
        self.api_client = api_client

    async def _require_token(self) -> str:
        token = await self.lifecycle.get_valid_access_token()
        if token is None:
            raise ToolError(AUTH_REQUIRED_MESSAGE)
        return token

    async def _resolve_shop_id(self, shop_id: int | None, tool: str) -> int:
        if shop_id is not None:
            return shop_id

        record = await self.token_store.get_even_if_expired()
        if record is None or record.shop_id is None:
            raise ToolError(SHOP_REQUIRED_MESSAGE)

        logger.debug(f"Using default shop ID {record.shop_id} for {tool}")
        return record.shop_id

    # Authentication

    @tool_errors("Failed to initiate authentication.")
    async def authenticate(self) -> str:
        """Start the callback listener and return the URL that begins authorization."""
        await self.listener.start()
        auth_url = self.listener.auth_url
        logger.info(f"Generated auth initiation URL: {auth_url}")
        return (
            f"Please visit this URL to authorize the application: {auth_url}\n"
            f"Complete the process in your browser. You can then use other tools."
        )

    @tool_errors()
    async def auth_status(self) -> str:
        status = await self.lifecycle.get_auth_status()
        return _dump(status.to_dict())

    @tool_errors("Failed to log out.")
    async def logout(self) -> str:
        if await self.lifecycle.logout():
            return "Logged out. Stored Etsy tokens were removed."
        return "No stored Etsy tokens to remove."

    # Default shop

    @tool_errors("Failed to set default shop.")
    async def set_default_shop(self) -> str:
        """Fetch the user's shops and store the first one as the default."""
        access_token = await self._require_token()

        record = await self.token_store.get_even_if_expired()
        if record is None or record.user_id is None:
            raise ToolError("User ID not found. Please try to re-authenticate.")

        response = await self.api_client.get_user_shops(record.user_id, access_token)
        shop = select_shop(response)
        if shop is None:
            logger.info("No shops found for the user")
            return "No shops found for your Etsy account."

        await self.token_store.set_default_shop(shop.shop_id, shop.shop_name)
        logger.info(f"Default shop set to {shop.shop_name} (ID: {shop.shop_id})")
        return (
            f"Default shop set to: {shop.shop_name} (ID: {shop.shop_id}). "
            f"Other tools will now use this shop unless a specific shop_id is provided."
        )

    @tool_errors("Failed to get default shop.")
    async def get_default_shop(self) -> str:
        record = await self.token_store.get_even_if_expired()
        if record is None or record.shop_id is None:
            return (
                "No default shop is currently set. "
                "Please run the `set_default_shop` tool after authenticating."
            )
        return f"Current default shop: {record.shop_name or 'N/A'} (ID: {record.shop_id})"

    # Shops and listings

    @tool_errors()
    async def get_listings(self, shop_id: int | None = None) -> str:
        access_token = await self._require_token()
        shop = await self._resolve_shop_id(shop_id, "get_listings")
        return _dump(await self.api_client.get_listings(shop, access_token))

    @tool_errors()
    async def get_shop_details(self, shop_id: int | None = None) -> str:
        access_token = await self._require_token()
        shop = await self._resolve_shop_id(shop_id, "get_shop_details")
        return _dump(await self.api_client.get_shop_details(shop, access_token))

    @tool_errors()
    async def create_listing(
        self,
        listing_data: ListingData | dict[str, Any],
        shop_id: int | None = None,
    ) -> str:
        """Create a listing in the given or default shop.

        Args:
            listing_data: Listing fields, validated as ListingData
            shop_id: Target shop (defaults to the stored default shop)

        Returns:
            JSON of the created listing
        """
        try:
            listing = (
                listing_data
                if isinstance(listing_data, ListingData)
                else ListingData.model_validate(listing_data)
            )
        except ValidationError as e:
            raise ToolError(f"Invalid listing data: {e}") from e

        access_token = await self._require_token()
        shop = await self._resolve_shop_id(shop_id, "create_listing")
        return _dump(await self.api_client.create_listing(shop, listing.to_payload(), access_token))

    # Shipping profiles

    @tool_errors("Failed to list shipping profiles.")
    async def list_shop_shipping_profiles(self, shop_id: int | None = None) -> str:
        access_token = await self._require_token()
        shop = await self._resolve_shop_id(shop_id, "list_shop_shipping_profiles")
        return _dump(await self.api_client.get_shipping_profiles(shop, access_token))

    @tool_errors("Failed to create shipping profile.")
    async def create_shop_shipping_profile(
        self,
        profile: ShippingProfileData | dict[str, Any],
        shop_id: int | None = None,
    ) -> str:
        try:
            data = (
                profile
                if isinstance(profile, ShippingProfileData)
                else ShippingProfileData.model_validate(profile)
            )
        except ValidationError as e:
            raise ToolError(f"Invalid shipping profile: {e}") from e

        access_token = await self._require_token()
        shop = await self._resolve_shop_id(shop_id, "create_shop_shipping_profile")
        return _dump(
            await self.api_client.create_shipping_profile(shop, data.to_payload(), access_token)
        )

    # Images

    def _resolve_image_path(self, file_name: str) -> Path:
        source_dir = self.settings.image_source_dir
        if source_dir is None:
            logger.error("ETSY_IMAGE_SOURCE_DIR environment variable is not set")
            raise ToolError("Image source directory is not configured in the server environment.")

        base = source_dir.resolve()
        candidate = (base / file_name).resolve()
        if not candidate.is_relative_to(base):
            raise ToolError(f"Image file name must stay inside the image source directory: {file_name}")
        return candidate

    @tool_errors("Failed to upload listing image.")
    async def upload_listing_image(
        self,
        listing_id: int,
        file_name: str,
        image_name: str | None = None,
        shop_id: int | None = None,
    ) -> str:
        """Upload an image from the configured source directory to a listing.

        Args:
            listing_id: Listing to attach the image to
            file_name: File inside ETSY_IMAGE_SOURCE_DIR
            image_name: Filename shown on Etsy (defaults to file_name)
            shop_id: Shop owning the listing (defaults to the stored default shop)

        Returns:
            JSON of the created listing image
        """
        access_token = await self._require_token()
        shop = await self._resolve_shop_id(shop_id, "upload_listing_image")
        image_path = self._resolve_image_path(file_name)
        logger.debug(f"Constructed image path: {image_path}")

        result = await self.api_client.upload_listing_image(
            shop, listing_id, image_path, image_name or file_name, access_token
        )
        return _dump(result)
