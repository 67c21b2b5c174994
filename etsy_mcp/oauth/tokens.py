"""OAuth token data structures and utilities.

This module provides the TokenRecord dataclass for the single persisted
credential set, the TokenUpdate partial used to write it, and helpers for
epoch-millisecond timestamps.
"""

import time
from dataclasses import dataclass
from typing import Any


# Lifetime assumed when neither the provider nor a previous record supplies one
DEFAULT_EXPIRES_IN = 60 * 60


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def parse_user_id(access_token: str | None) -> int | None:
    """Extract the numeric user id prefix from an Etsy access token.

    Etsy access tokens look like ``"12345678.opaque-part"``; the leading
    dot-delimited segment is the authenticated user's id.

    Args:
        access_token: The access token string

    Returns:
        The user id, or None if the token has no numeric prefix
    """
    if not access_token:
        return None
    prefix = access_token.split(".", 1)[0]
    if not prefix.isdigit():
        return None
    return int(prefix)


@dataclass
class TokenRecord:
    """The persisted credential set for the authenticated user.

    Attributes:
        access_token: Bearer token for API calls
        expires_at: Epoch milliseconds after which access_token is invalid
        refresh_token: Optional refresh token for obtaining new access tokens
        user_id: Numeric id of the authenticated user
        shop_id: Default shop id, set independently of the auth flow
        shop_name: Default shop name
    """

    access_token: str
    expires_at: int
    refresh_token: str | None = None
    user_id: int | None = None
    shop_id: int | None = None
    shop_name: str | None = None

    def is_expired(self, now: int | None = None) -> bool:
        """Check if the access token is expired.

        A token whose expiry equals the current time is expired.

        Args:
            now: Current time in epoch milliseconds (defaults to wall clock)
        """
        current = now_ms() if now is None else now
        return self.expires_at <= current

    def has_refresh_token(self) -> bool:
        """Check if this record has a refresh token."""
        return self.refresh_token is not None and len(self.refresh_token) > 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the on-disk JSON object."""
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "expires_at": self.expires_at,
        }

        if self.refresh_token:
            data["refresh_token"] = self.refresh_token
        if self.user_id is not None:
            data["user_id"] = self.user_id
        if self.shop_id is not None:
            data["shop_id"] = self.shop_id
        if self.shop_name is not None:
            data["shop_name"] = self.shop_name

        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenRecord":
        """Deserialize from the on-disk JSON object.

        Raises:
            KeyError: If access_token or expires_at is missing
            ValueError: If a numeric field cannot be converted
        """
        def optional_int(key: str) -> int | None:
            value = data.get(key)
            return int(value) if value is not None else None

        return cls(
            access_token=data["access_token"],
            expires_at=int(data["expires_at"]),
            refresh_token=data.get("refresh_token"),
            user_id=optional_int("user_id"),
            shop_id=optional_int("shop_id"),
            shop_name=data.get("shop_name"),
        )


@dataclass
class TokenUpdate:
    """A partial TokenRecord to be merged into the stored record.

    Fields left as None keep their previously stored value. ``expires_in``
    (seconds) takes precedence over ``expires_at`` when both are given.
    """

    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: int | None = None
    expires_at: int | None = None
    user_id: int | None = None
    shop_id: int | None = None
    shop_name: str | None = None

    @classmethod
    def from_token_response(cls, response: dict[str, Any], **extra: Any) -> "TokenUpdate":
        """Create an update from an Etsy token endpoint response.

        Args:
            response: JSON response from the token endpoint
            **extra: Additional fields to set (e.g. shop_id, shop_name)

        Returns:
            TokenUpdate carrying the new tokens and lifetime
        """
        expires_in = response.get("expires_in")
        user_id = response.get("user_id")
        if user_id is None:
            user_id = parse_user_id(response.get("access_token"))

        fields: dict[str, Any] = {
            "access_token": response["access_token"],
            "refresh_token": response.get("refresh_token"),
            "expires_in": int(expires_in) if expires_in is not None else None,
            "user_id": user_id,
        }
        fields.update(extra)
        return cls(**fields)
