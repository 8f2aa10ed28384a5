"""Type definitions for the malauth credential lifecycle."""

from __future__ import annotations

import time

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from .exceptions import ConfigurationError


if TYPE_CHECKING:
    from .auth.pkce import PKCEChallenge


class AuthState(str, Enum):
    """State of the authentication coordinator."""

    UNAUTHENTICATED = "unauthenticated"
    AWAITING_USER_AUTHORIZATION = "awaiting_user_authorization"
    EXCHANGING_CODE = "exchanging_code"
    AUTHORIZED = "authorized"
    REFRESHING_TOKEN = "refreshing_token"


@dataclass(frozen=True)
class ClientCredentials:
    """Client registration supplied by the caller.

    Attributes
    ----------
    client_id : str
        The OAuth2 client ID.
    redirect_uri : str
        The registered redirect URI. A bare ``host:port`` is accepted
        and normalised to ``http://host:port/``.
    client_secret : str
        Optional client secret (MyAnimeList "web" apps only).
    """

    client_id: str
    redirect_uri: str
    client_secret: str = field(default="", repr=False)

    def __post_init__(self) -> None:
        """Validate and normalise the credentials."""
        if not self.client_id or not self.client_id.strip():
            msg = "client_id must not be empty"
            raise ConfigurationError(msg, setting="client_id")

        redirect = (self.redirect_uri or "").strip()
        if redirect and "://" not in redirect:
            redirect = f"http://{redirect}"
        parsed = urlparse(redirect)
        if parsed.scheme != "http" or not parsed.hostname:
            msg = "redirect_uri must be an http:// URL with a host"
            raise ConfigurationError(msg, setting="redirect_uri", value=self.redirect_uri)
        try:
            parsed.port  # noqa: B018
        except ValueError as exc:
            msg = "redirect_uri has an invalid port"
            raise ConfigurationError(msg, setting="redirect_uri", value=self.redirect_uri) from exc
        if not parsed.path:
            redirect = parsed._replace(path="/").geturl()
        object.__setattr__(self, "redirect_uri", redirect)

    @property
    def callback_host(self) -> str:
        """Host the callback listener binds to."""
        return urlparse(self.redirect_uri).hostname or "localhost"

    @property
    def callback_port(self) -> int:
        """Port the callback listener binds to (80 if not given, 0 picks a free one)."""
        port = urlparse(self.redirect_uri).port
        return 80 if port is None else port

    @property
    def callback_path(self) -> str:
        """Path component routed by the callback listener."""
        return urlparse(self.redirect_uri).path or "/"


@dataclass(frozen=True)
class TokenSet:
    """Access/refresh token pair returned by the provider.

    Attributes
    ----------
    access_token : str
        The bearer credential for API requests.
    refresh_token : str
        Long-lived credential for obtaining new access tokens. Empty for
        a coordinator built from a fixed access token.
    expires_at : float
        Absolute UNIX timestamp after which the access token is invalid.
    token_type : str
        Token type, typically "Bearer".
    """

    access_token: str
    refresh_token: str
    expires_at: float
    token_type: str = "Bearer"  # noqa: S105

    def is_expired(self, margin: float = 0.0, now: float | None = None) -> bool:
        """Check whether the access token is expired, or will be within ``margin``."""
        current = time.time() if now is None else now
        return current + margin >= self.expires_at

    def expires_in(self, now: float | None = None) -> float:
        """Seconds until expiry (negative when already expired)."""
        current = time.time() if now is None else now
        return self.expires_at - current

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-serialisable form stored inside encrypted records."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TokenSet:
        """Build a token set from its serialised form.

        Raises
        ------
        KeyError, TypeError, ValueError
            If required fields are missing or malformed.
        """
        return cls(
            access_token=str(data["access_token"]),
            refresh_token=str(data.get("refresh_token") or ""),
            expires_at=float(data["expires_at"]),
            token_type=str(data.get("token_type") or "Bearer"),
        )


@dataclass(frozen=True)
class CallbackResult:
    """Authorization code captured from a redirect with the expected state."""

    code: str
    state: str


@dataclass(frozen=True)
class LoginRequest:
    """Everything the caller needs to send the user to the provider.

    Attributes
    ----------
    url : str
        Authorization URL to display or open in a browser.
    state : str
        The anti-CSRF state bound to this login attempt.
    challenge : PKCEChallenge
        The PKCE pair; only ``challenge.challenge`` is in the URL.
    """

    url: str
    state: str
    challenge: PKCEChallenge
