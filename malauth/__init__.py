"""malauth - MyAnimeList OAuth2 PKCE login with an encrypted token cache.

Performs the authorization-code-with-PKCE handshake through a localhost
callback, keeps the resulting tokens encrypted on disk, and refreshes the
access token on demand before API calls.
"""

from __future__ import annotations

from .auth import (
    AuthCoordinator,
    BearerAuth,
    EncryptedFileTokenStore,
    MALProvider,
    MemoryTokenStore,
    OAuthCallbackServer,
    PKCEChallenge,
    TokenCipher,
    TokenStore,
    create_token_store,
)
from .config import (
    CacheSettings,
    LogSettings,
    MalAuthSettings,
    OAuth2Settings,
    clear_settings,
    get_settings,
)
from .exceptions import (
    AuthenticationError,
    AuthFlowCancelled,
    AuthFlowTimeout,
    AuthorizationDenied,
    ConfigurationError,
    InvalidGrant,
    LoginInProgressError,
    MalAuthException,
    NetworkError,
    NotAuthenticatedError,
    StateMismatch,
    StorageError,
    TokenError,
)
from .log import enable_debug, get_logger, set_level
from .types import AuthState, CallbackResult, ClientCredentials, LoginRequest, TokenSet


__version__ = "0.1.0"

__all__ = [
    "AuthCoordinator",
    "AuthFlowCancelled",
    "AuthFlowTimeout",
    "AuthState",
    "AuthenticationError",
    "AuthorizationDenied",
    "BearerAuth",
    "CacheSettings",
    "CallbackResult",
    "ClientCredentials",
    "ConfigurationError",
    "EncryptedFileTokenStore",
    "InvalidGrant",
    "LogSettings",
    "LoginInProgressError",
    "LoginRequest",
    "MALProvider",
    "MalAuthException",
    "MalAuthSettings",
    "MemoryTokenStore",
    "NetworkError",
    "NotAuthenticatedError",
    "OAuth2Settings",
    "OAuthCallbackServer",
    "PKCEChallenge",
    "StateMismatch",
    "StorageError",
    "TokenCipher",
    "TokenError",
    "TokenSet",
    "TokenStore",
    "__version__",
    "clear_settings",
    "create_token_store",
    "enable_debug",
    "get_logger",
    "get_settings",
    "set_level",
]
