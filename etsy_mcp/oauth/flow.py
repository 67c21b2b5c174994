"""OAuth authorization code flow with PKCE against Etsy.

This module provides the token endpoint calls and the AuthorizationFlow
controller that drives one authorization attempt:

    IDLE -> AWAITING_CALLBACK -> EXCHANGING -> COMPLETED | FAILED

1. begin(): generate PKCE pair + state, remember them, build the consent URL
2. complete(): validate the callback against the pending state
3. Exchange code + verifier for tokens
4. Best-effort lookup of the user's shops to pick a default shop
5. Persist the token record
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from ..api import EtsyApiClient, ShopSelection, select_shop
from ..config import AUTHORIZATION_ENDPOINT, TOKEN_ENDPOINT, Settings
from .pkce import generate_pkce_pair, generate_state
from .state import StateStore
from .store import TokenStore
from .tokens import TokenRecord, TokenUpdate, parse_user_id

if TYPE_CHECKING:
    from .callback import CallbackResult

logger = logging.getLogger(__name__)

# Timeout for token endpoint requests in seconds
TOKEN_REQUEST_TIMEOUT = 30.0

# Upper bound for code/state values accepted from the callback
MAX_PARAM_LENGTH = 2048


class OAuthFlowError(Exception):
    """Error during OAuth flow."""

    pass


class CallbackProtocolError(OAuthFlowError):
    """The callback request cannot continue to token exchange."""

    pass


class TokenExchangeError(OAuthFlowError):
    """Error during token exchange or refresh."""

    pass


class FlowState(Enum):
    """Lifecycle of one authorization attempt."""

    IDLE = "idle"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class FlowOutcome:
    """Result of a completed authorization.

    The token exchange is the primary result; the default-shop lookup is a
    secondary enrichment that may fail on its own without failing the flow.

    Attributes:
        record: The persisted token record
        shop: Shop chosen as default, if any
        shop_error: Why the shop lookup failed, if it did
    """

    record: TokenRecord
    shop: ShopSelection | None = None
    shop_error: str | None = None


def build_authorization_url(settings: Settings, state: str, code_challenge: str) -> str:
    """Build the Etsy consent URL for browser redirect.

    Args:
        settings: Client id, redirect URI and scopes
        state: State parameter for CSRF protection
        code_challenge: PKCE code challenge

    Returns:
        Complete authorization URL
    """
    params: dict[str, str] = {
        "response_type": "code",
        "client_id": settings.api_key,
        "redirect_uri": settings.redirect_uri,
        "scope": " ".join(settings.scopes),
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    return f"{AUTHORIZATION_ENDPOINT}?{urlencode(params)}"


def _error_detail(response: httpx.Response) -> str:
    try:
        error_data = response.json()
    except ValueError:
        # Don't include raw response body - it might contain tokens or secrets
        return ""
    if not isinstance(error_data, dict):
        return ""
    return str(error_data.get("error_description") or error_data.get("error") or "")


async def _post_token_request(
    form: dict[str, str],
    action: str,
    http_client: httpx.AsyncClient | None,
) -> dict[str, Any]:
    http = http_client or httpx.AsyncClient(timeout=TOKEN_REQUEST_TIMEOUT)
    should_close = http_client is None

    try:
        response = await http.post(
            TOKEN_ENDPOINT,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        if response.status_code != 200:
            detail = _error_detail(response)
            suffix = f": {detail}" if detail else ""
            raise TokenExchangeError(f"{action} failed (HTTP {response.status_code}){suffix}")

        result: dict[str, Any] = response.json()
        if not result.get("access_token"):
            raise TokenExchangeError(f"{action} response did not include an access token")
        return result

    except httpx.RequestError as e:
        raise TokenExchangeError(f"Network error during {action.lower()}: {e}") from e
    finally:
        if should_close:
            await http.aclose()


async def exchange_code_for_tokens(
    settings: Settings,
    code: str,
    code_verifier: str,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange an authorization code for tokens.

    Args:
        settings: Client id and redirect URI
        code: Authorization code from callback
        code_verifier: PKCE code verifier bound to the code
        http_client: Optional HTTP client

    Returns:
        Token endpoint response, with ``user_id`` filled in from the access
        token when Etsy does not send it

    Raises:
        TokenExchangeError: If token exchange fails
    """
    result = await _post_token_request(
        {
            "grant_type": "authorization_code",
            "client_id": settings.api_key,
            "redirect_uri": settings.redirect_uri,
            "code": code,
            "code_verifier": code_verifier,
        },
        "Token exchange",
        http_client,
    )

    if result.get("user_id") is None:
        result["user_id"] = parse_user_id(result.get("access_token"))
    return result


async def refresh_access_token(
    settings: Settings,
    refresh_token: str,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Obtain a new access token with a refresh token.

    Args:
        settings: Client id
        refresh_token: The stored refresh token
        http_client: Optional HTTP client

    Returns:
        Token endpoint response

    Raises:
        TokenExchangeError: If refresh fails
    """
    return await _post_token_request(
        {
            "grant_type": "refresh_token",
            "client_id": settings.api_key,
            "refresh_token": refresh_token,
        },
        "Token refresh",
        http_client,
    )


def _is_well_formed(value: str | None) -> bool:
    return (
        value is not None
        and 0 < len(value) <= MAX_PARAM_LENGTH
        and value.isprintable()
        and not any(c.isspace() for c in value)
    )


class AuthorizationFlow:
    """Drives authorization attempts from consent URL to stored tokens.

    The callback listener calls begin() for ``GET /auth`` and complete() for
    ``GET /oauth/callback``.

    Attempts are independent; each is keyed by its own state parameter. The
    ``state`` attribute records the most recent transition across all
    attempts, so a second begin() while a first attempt is exchanging sets
    it back to AWAITING_CALLBACK. It is a diagnostic, not the status of any
    single attempt.

    Usage:
        flow = AuthorizationFlow(settings, StateStore(), token_store, api_client)
        url = flow.begin()
        # ... browser visits url, provider redirects back ...
        outcome = await flow.complete(parse_callback_url(path))
    """

    def __init__(
        self,
        settings: Settings,
        state_store: StateStore,
        token_store: TokenStore,
        api_client: EtsyApiClient,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self.state_store = state_store
        self.token_store = token_store
        self.api_client = api_client
        self.http_client = http_client
        self.state = FlowState.IDLE

    def begin(self) -> str:
        """Start an authorization attempt.

        Returns:
            The Etsy consent URL to redirect the browser to
        """
        pkce = generate_pkce_pair()
        state = generate_state()
        self.state_store.put(state, pkce.verifier)

        self.state = FlowState.AWAITING_CALLBACK
        logger.info("Starting OAuth flow")
        return build_authorization_url(self.settings, state, pkce.challenge)

    def _validate(self, result: "CallbackResult") -> tuple[str, str]:
        """Check the callback and consume its state.

        Returns:
            (code, code_verifier)

        Raises:
            CallbackProtocolError: If the callback cannot proceed to exchange
        """
        if result.error:
            description = result.error_description or "No description provided"
            raise CallbackProtocolError(f"OAuth Error: {result.error} - {description}")

        if not _is_well_formed(result.code) or not _is_well_formed(result.state):
            raise CallbackProtocolError("Missing authorization code or state in callback")

        code_verifier = self.state_store.consume(result.state)  # type: ignore[arg-type]
        if code_verifier is None:
            raise CallbackProtocolError("Invalid or expired state parameter")

        return result.code, code_verifier  # type: ignore[return-value]

    async def _lookup_shop(
        self, user_id: int | None, access_token: str
    ) -> tuple[ShopSelection | None, str | None]:
        if user_id is None:
            return None, "User id unavailable; default shop not set"

        try:
            response = await self.api_client.get_user_shops(user_id, access_token)
        except Exception as e:
            logger.warning(f"Failed to fetch user shops during OAuth callback: {e}")
            return None, str(e)

        shop = select_shop(response)
        if shop is None:
            logger.info("No shops found for the user")
        else:
            logger.info(f"Automatically selected shop: {shop.shop_name} (ID: {shop.shop_id})")
        return shop, None

    async def complete(self, result: "CallbackResult") -> FlowOutcome:
        """Finish an authorization attempt from its callback.

        Args:
            result: Parsed callback parameters

        Returns:
            FlowOutcome with the stored record and default-shop lookup result

        Raises:
            CallbackProtocolError: If the callback is rejected (no exchange made)
            TokenExchangeError: If the code exchange fails (nothing stored)
        """
        logger.info(
            f"Received OAuth callback (code: {'present' if result.code else 'missing'}, "
            f"state: {'present' if result.state else 'missing'}, error: {result.error})"
        )

        try:
            code, code_verifier = self._validate(result)
        except CallbackProtocolError as e:
            self.state = FlowState.FAILED
            logger.error(f"OAuth callback rejected: {e}")
            raise

        self.state = FlowState.EXCHANGING
        try:
            tokens = await exchange_code_for_tokens(
                self.settings, code, code_verifier, http_client=self.http_client
            )
        except TokenExchangeError as e:
            self.state = FlowState.FAILED
            logger.error(f"Token exchange failed: {e}")
            raise

        logger.info(
            f"Token exchange successful (refresh token: "
            f"{'present' if tokens.get('refresh_token') else 'missing'}, user: {tokens.get('user_id')})"
        )

        shop, shop_error = await self._lookup_shop(tokens.get("user_id"), tokens["access_token"])

        update = TokenUpdate.from_token_response(tokens)
        if shop is not None:
            update.shop_id = shop.shop_id
            update.shop_name = shop.shop_name
        record = await self.token_store.save(update)

        self.state = FlowState.COMPLETED
        return FlowOutcome(record=record, shop=shop, shop_error=shop_error)
