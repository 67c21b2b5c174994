"""Access token lifecycle for the Etsy MCP server.

This module provides the single entry point tool handlers use to obtain an
access token, refreshing it transparently when it has expired.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from ..config import Settings
from .flow import refresh_access_token
from .store import TokenStore
from .tokens import TokenUpdate

logger = logging.getLogger(__name__)


def _format_timedelta(td: timedelta) -> str:
    """Format a timedelta into a human-readable string.

    Examples:
        - "45 minutes"
        - "2 hours"
        - "3 days"

    Args:
        td: The timedelta to format

    Returns:
        Human-readable string representation
    """
    total_seconds = int(td.total_seconds())

    if total_seconds < 0:
        return "Expired"

    if total_seconds < 60:
        return f"{total_seconds} seconds"

    minutes = total_seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"

    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''}"


@dataclass
class AuthStatus:
    """Authentication status of the local user.

    Attributes:
        authenticated: Whether a token record is stored
        expired: Whether the stored access token is expired
        expires_at: When the access token expires (ISO format string)
        expires_in_human: Human-readable time until expiry (e.g., "45 minutes")
        has_refresh_token: Whether a refresh token is available
        user_id: Authenticated Etsy user id
        shop_id: Default shop id
        shop_name: Default shop name
        persistent: Whether tokens are saved to disk
    """

    authenticated: bool = False
    expired: bool = False
    expires_at: str | None = None
    expires_in_human: str | None = None
    has_refresh_token: bool = False
    user_id: int | None = None
    shop_id: int | None = None
    shop_name: str | None = None
    persistent: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "authenticated": self.authenticated,
            "expired": self.expired,
            "expires_at": self.expires_at,
            "expires_in_human": self.expires_in_human,
            "has_refresh_token": self.has_refresh_token,
            "user_id": self.user_id,
            "shop_id": self.shop_id,
            "shop_name": self.shop_name,
            "persistent": self.persistent,
        }


class TokenLifecycleManager:
    """Hands out valid access tokens, refreshing expired ones.

    get_valid_access_token() never raises: any failure ends in None, which
    callers translate into "authentication required". A failed refresh
    clears the stored record so the next attempt starts a fresh login.

    Concurrent callers share one refresh: the first caller refreshes under a
    lock and the others re-read the store once they acquire it.
    """

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.token_store = token_store
        self.http_client = http_client
        self._refresh_lock = asyncio.Lock()

    async def get_valid_access_token(self) -> str | None:
        """Get an access token that has not expired.

        Returns:
            The access token, or None if the user must authenticate again
        """
        try:
            record = await self.token_store.get_valid()
            if record is not None:
                return record.access_token

            async with self._refresh_lock:
                # Another caller may have refreshed while we waited
                record = await self.token_store.get_valid()
                if record is not None:
                    return record.access_token
                return await self._refresh()
        except Exception as e:
            logger.error(f"Unexpected error obtaining access token: {e}")
            return None

    async def _refresh(self) -> str | None:
        record = await self.token_store.get_even_if_expired()
        if record is None:
            logger.debug("No stored tokens, authentication required")
            return None

        if not record.has_refresh_token():
            logger.info("Access token expired and no refresh token available")
            return None

        logger.info("Access token expired, attempting refresh")
        try:
            response = await refresh_access_token(
                self.settings,
                record.refresh_token,  # type: ignore[arg-type]
                http_client=self.http_client,
            )
            update = TokenUpdate.from_token_response(
                response,
                user_id=record.user_id,
                shop_id=record.shop_id,
                shop_name=record.shop_name,
            )
            refreshed = await self.token_store.save(update)
        except Exception as e:
            logger.warning(f"Token refresh failed, clearing stored tokens: {e}")
            await self._clear_quietly()
            return None

        logger.info("Access token refreshed")
        return refreshed.access_token

    async def _clear_quietly(self) -> None:
        try:
            await self.token_store.clear()
        except Exception as e:
            logger.warning(f"Failed to clear tokens after refresh failure: {e}")

    async def get_auth_status(self) -> AuthStatus:
        """Describe the stored credentials without refreshing them."""
        record = await self.token_store.get_even_if_expired()
        persistent = self.token_store.persistent

        if record is None:
            return AuthStatus(persistent=persistent)

        expires_at = datetime.fromtimestamp(record.expires_at / 1000, tz=timezone.utc)
        expired = record.is_expired()
        remaining = expires_at - datetime.now(timezone.utc)

        return AuthStatus(
            authenticated=True,
            expired=expired,
            expires_at=expires_at.isoformat(),
            expires_in_human="Expired" if expired else _format_timedelta(remaining),
            has_refresh_token=record.has_refresh_token(),
            user_id=record.user_id,
            shop_id=record.shop_id,
            shop_name=record.shop_name,
            persistent=persistent,
        )

    async def logout(self) -> bool:
        """Delete the stored credentials.

        Returns:
            True if a record was stored before
        """
        had_record = await self.token_store.get_even_if_expired() is not None
        await self.token_store.clear()
        if had_record:
            logger.info("Logged out, stored tokens removed")
        return had_record
