"""Etsy Open API v3 client.

Thin async pass-through calls for shops, listings, shipping profiles and
listing images. Every call takes the access token explicitly; obtaining a
valid token is the caller's job (see oauth.manager).
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from .config import API_BASE_URL, Settings

logger = logging.getLogger(__name__)

# Timeout for API requests in seconds
REQUEST_TIMEOUT = 30.0


class UpstreamAPIError(Exception):
    """Non-2xx response or network failure from the Etsy API."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ShopSelection:
    """A shop chosen as the user's default."""

    shop_id: int
    shop_name: str | None = None


def select_shop(response: Any) -> ShopSelection | None:
    """Pick the default shop from a "get user shops" response.

    The expected shape is Etsy's paginated list ``{"count": n, "results": [...]}``,
    in which case the first shop wins. A bare shop object carrying ``shop_id``
    is also accepted for compatibility.

    Args:
        response: Parsed JSON response

    Returns:
        ShopSelection, or None if the response contains no shop
    """
    if not isinstance(response, dict):
        return None

    results = response.get("results")
    if isinstance(results, list):
        if not results or not isinstance(results[0], dict) or "shop_id" not in results[0]:
            return None
        shop = results[0]
    elif "shop_id" in response:
        shop = response
    else:
        return None

    try:
        shop_id = int(shop["shop_id"])
    except (TypeError, ValueError):
        return None
    return ShopSelection(shop_id=shop_id, shop_name=shop.get("shop_name"))


def _error_detail(response: httpx.Response) -> str:
    """Extract the provider's error message without echoing the raw body."""
    try:
        data = response.json()
    except ValueError:
        return ""
    if not isinstance(data, dict):
        return ""
    return str(data.get("error_description") or data.get("error") or "")


class EtsyApiClient:
    """Async client for the Etsy REST API.

    Usage:
        client = EtsyApiClient(settings)
        shops = await client.get_user_shops(user_id, access_token)
        await client.aclose()
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None):
        self.settings = settings
        self.base_url = API_BASE_URL
        self._http = http_client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)
        self._owns_http = http_client is None

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    def _headers(self, access_token: str) -> dict[str, str]:
        return {
            "x-api-key": self.settings.api_key,
            "Authorization": f"Bearer {access_token}",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        access_token: str,
        json_body: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{self.base_url}{endpoint}"
        try:
            response = await self._http.request(
                method,
                url,
                headers=self._headers(access_token),
                json=json_body,
                files=files,
            )
        except httpx.RequestError as e:
            raise UpstreamAPIError(f"Network error calling {endpoint}: {e}") from e

        if not 200 <= response.status_code < 300:
            detail = _error_detail(response)
            suffix = f": {detail}" if detail else ""
            raise UpstreamAPIError(
                f"API request failed (HTTP {response.status_code}){suffix}",
                status_code=response.status_code,
            )

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamAPIError(
                f"Invalid JSON in response from {endpoint}", status_code=response.status_code
            ) from e
        if not isinstance(data, (dict, list)):
            raise UpstreamAPIError(
                f"Unexpected response body from {endpoint}", status_code=response.status_code
            )
        return data

    # Shops

    async def get_user_shops(self, user_id: int, access_token: str) -> Any:
        """Get the shops owned by a user."""
        logger.debug(f"Fetching shops for user {user_id}")
        return await self._request("GET", f"/application/users/{user_id}/shops", access_token)

    async def get_shop_details(self, shop_id: int, access_token: str) -> Any:
        return await self._request("GET", f"/application/shops/{shop_id}", access_token)

    # Listings

    async def get_listings(self, shop_id: int, access_token: str) -> Any:
        """Get the active listings of a shop."""
        return await self._request("GET", f"/application/shops/{shop_id}/listings/active", access_token)

    async def create_listing(self, shop_id: int, listing_data: dict[str, Any], access_token: str) -> Any:
        return await self._request(
            "POST", f"/application/shops/{shop_id}/listings", access_token, json_body=listing_data
        )

    # Shipping profiles

    async def get_shipping_profiles(self, shop_id: int, access_token: str) -> Any:
        return await self._request("GET", f"/application/shops/{shop_id}/shipping-profiles", access_token)

    async def create_shipping_profile(
        self, shop_id: int, profile_data: dict[str, Any], access_token: str
    ) -> Any:
        return await self._request(
            "POST", f"/application/shops/{shop_id}/shipping-profiles", access_token, json_body=profile_data
        )

    # Images

    async def upload_listing_image(
        self,
        shop_id: int,
        listing_id: int,
        image_path: Path,
        image_name: str,
        access_token: str,
    ) -> Any:
        """Upload a local image file and attach it to a listing.

        Args:
            shop_id: The shop owning the listing
            listing_id: The listing to attach the image to
            image_path: Local path of the image file
            image_name: Filename to present to Etsy
            access_token: Valid access token

        Returns:
            Etsy's listing image resource

        Raises:
            UpstreamAPIError: If the file is missing or the upload fails
        """
        if not await asyncio.to_thread(image_path.is_file):
            raise UpstreamAPIError(f"Image file not found at path: {image_path}")

        image_bytes = await asyncio.to_thread(image_path.read_bytes)
        logger.info(f"Uploading image {image_name} ({len(image_bytes)} bytes) to listing {listing_id}")

        return await self._request(
            "POST",
            f"/application/shops/{shop_id}/listings/{listing_id}/images",
            access_token,
            files={"image": (image_name, image_bytes)},
        )
