"""OAuth2 PKCE login and token lifecycle for MyAnimeList.

Provides the PKCE generator, the localhost callback listener, the token
endpoint client, encrypted token storage and the coordinator that ties
them together.
"""

from __future__ import annotations

from .bearer import BearerAuth
from .callback_server import OAuthCallbackServer, await_callback
from .cipher import TokenCipher, cipher_from_settings
from .coordinator import AuthCoordinator
from .pkce import PKCEChallenge, derive_challenge, generate_state
from .provider import MALProvider
from .token_store import (
    EncryptedFileTokenStore,
    MemoryTokenStore,
    TokenStore,
    create_token_store,
)


__all__ = [
    "AuthCoordinator",
    "BearerAuth",
    "EncryptedFileTokenStore",
    "MALProvider",
    "MemoryTokenStore",
    "OAuthCallbackServer",
    "PKCEChallenge",
    "TokenCipher",
    "TokenStore",
    "await_callback",
    "cipher_from_settings",
    "create_token_store",
    "derive_challenge",
    "generate_state",
]
