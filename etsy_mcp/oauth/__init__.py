"""OAuth authentication against Etsy for the MCP server.

This package implements the authorization code flow with PKCE, the local
browser callback listener, and persistence and refresh of the single
user's token record.

Main Components:
    TokenLifecycleManager: Hands out valid access tokens, refreshing as needed
    AuthorizationFlow: Consent URL generation and callback handling
    CallbackListener: Local HTTP listener for /auth and the redirect URI
    TokenStore: JSON file token storage with graceful degradation
    StateStore: Short-lived CSRF state -> PKCE verifier map

Quick Start:
    from etsy_mcp.oauth import TokenLifecycleManager, TokenStore, open_storage

    store = TokenStore(open_storage(settings.token_path))
    manager = TokenLifecycleManager(settings, store)

    token = await manager.get_valid_access_token()
    if token is None:
        # Send the user to the /auth URL of the callback listener
        ...
"""

from .callback import CallbackError, CallbackListener, CallbackResult, parse_callback_url
from .flow import (
    AuthorizationFlow,
    CallbackProtocolError,
    FlowOutcome,
    FlowState,
    OAuthFlowError,
    TokenExchangeError,
    build_authorization_url,
    exchange_code_for_tokens,
    refresh_access_token,
)
from .manager import AuthStatus, TokenLifecycleManager
from .pkce import PKCEPair, generate_code_challenge, generate_code_verifier, generate_pkce_pair, generate_state
from .state import PendingAuthState, StateStore
from .store import NullStorage, PersistentStorage, Storage, TokenStore, TokenStoreError, open_storage
from .tokens import TokenRecord, TokenUpdate, parse_user_id

__all__ = [
    # Manager (main entry point)
    "TokenLifecycleManager",
    "AuthStatus",
    # Flow
    "AuthorizationFlow",
    "FlowOutcome",
    "FlowState",
    "OAuthFlowError",
    "CallbackProtocolError",
    "TokenExchangeError",
    "build_authorization_url",
    "exchange_code_for_tokens",
    "refresh_access_token",
    # Tokens
    "TokenRecord",
    "TokenUpdate",
    "parse_user_id",
    # Storage
    "TokenStore",
    "TokenStoreError",
    "Storage",
    "PersistentStorage",
    "NullStorage",
    "open_storage",
    # State
    "StateStore",
    "PendingAuthState",
    # PKCE
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_state",
    "PKCEPair",
    # Callback
    "CallbackListener",
    "CallbackResult",
    "CallbackError",
    "parse_callback_url",
]
