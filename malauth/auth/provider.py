"""MyAnimeList OAuth2 provider.

Builds the authorization URL and talks to the token endpoint for both
the authorization-code and the refresh-token grants.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import logging
import math
import time

from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from ..config import MAL_AUTHORIZE_URL, MAL_TOKEN_URL
from ..exceptions import AuthorizationDenied, InvalidGrant, NetworkError, TokenError
from ..log import mask, redact_sensitive_data
from ..types import TokenSet


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..config import OAuth2Settings
    from ..types import ClientCredentials
    from .pkce import PKCEChallenge


logger = logging.getLogger("malauth.auth")

# OAuth error codes meaning the grant itself is dead; retrying cannot help.
_GRANT_ERRORS = frozenset({"invalid_grant", "invalid_client", "unauthorized_client"})


class MALProvider:
    """OAuth2 endpoints of the MyAnimeList API.

    Parameters
    ----------
    authorize_url : str
        The provider's authorization endpoint.
    token_url : str
        The provider's token endpoint.
    timeout : float
        Timeout in seconds for token endpoint requests (default ``30``).
    clock : callable
        Returns the current UNIX time; used to compute ``expires_at``.
    transport : httpx.AsyncBaseTransport, optional
        Custom transport for the HTTP client (e.g. a mock in tests).
    """

    def __init__(
        self,
        authorize_url: str = MAL_AUTHORIZE_URL,
        token_url: str = MAL_TOKEN_URL,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the provider."""
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.timeout = timeout
        self._clock = clock
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: OAuth2Settings, **kwargs: Any) -> MALProvider:
        """Create a provider from the ``[oauth2]`` settings section."""
        return cls(
            authorize_url=settings.authorize_url,
            token_url=settings.token_url,
            timeout=settings.http_timeout_seconds,
            **kwargs,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http_client

    async def aclose(self) -> None:
        """Close the shared HTTP client."""
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
        self._http_client = None

    def build_authorize_url(
        self,
        credentials: ClientCredentials,
        pkce: PKCEChallenge,
        state: str,
    ) -> str:
        """Build the full authorization URL.

        Parameters
        ----------
        credentials : ClientCredentials
            Client ID and redirect URI.
        pkce : PKCEChallenge
            The PKCE pair; only the challenge and method are included.
        state : str
            CSRF protection nonce.

        Returns
        -------
        str
            The full authorization URL with all parameters URL-encoded.
        """
        params: dict[str, str] = {
            "response_type": "code",
            "client_id": credentials.client_id,
            "redirect_uri": credentials.redirect_uri,
            "state": state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": pkce.method,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(
        self,
        code: str,
        verifier: str,
        credentials: ClientCredentials,
    ) -> TokenSet:
        """Exchange an authorization code for tokens.

        Parameters
        ----------
        code : str
            The authorization code from the callback.
        verifier : str
            The PKCE code verifier of this login attempt.
        credentials : ClientCredentials
            Client ID and the redirect URI used in the authorization request.

        Returns
        -------
        TokenSet
            The new token set.

        Raises
        ------
        NetworkError
            On transport failure or a 5xx/429 answer (retryable).
        InvalidGrant
            If the provider rejects the code or the client.
        AuthorizationDenied
            If the provider refuses the exchange for another reason.
        TokenError
            If the response is not a usable token payload.
        """
        data: dict[str, str] = {
            "grant_type": "authorization_code",
            "client_id": credentials.client_id,
            "code": code,
            "code_verifier": verifier,
            "redirect_uri": credentials.redirect_uri,
        }
        if credentials.client_secret:
            data["client_secret"] = credentials.client_secret

        logger.debug("Exchanging authorization code %s", mask(code))
        return await self._request_tokens(data, fallback_refresh_token="")

    async def refresh_tokens(
        self,
        refresh_token: str,
        credentials: ClientCredentials,
    ) -> TokenSet:
        """Trade a refresh token for a new token set.

        Parameters
        ----------
        refresh_token : str
            The stored refresh token.
        credentials : ClientCredentials
            Client ID (and secret, if any).

        Returns
        -------
        TokenSet
            A new token set. The old refresh token is kept if the
            provider does not rotate it.

        Raises
        ------
        NetworkError
            On transport failure or a 5xx/429 answer (retryable).
        InvalidGrant
            If the refresh token is rejected; a full re-login is required.
        TokenError
            If the response is not a usable token payload.
        """
        data: dict[str, str] = {
            "grant_type": "refresh_token",
            "client_id": credentials.client_id,
            "refresh_token": refresh_token,
        }
        if credentials.client_secret:
            data["client_secret"] = credentials.client_secret

        logger.debug("Refreshing access token with refresh token %s", mask(refresh_token))
        return await self._request_tokens(data, fallback_refresh_token=refresh_token)

    async def _request_tokens(
        self,
        data: dict[str, str],
        fallback_refresh_token: str,
    ) -> TokenSet:
        """POST to the token endpoint and turn the answer into a TokenSet."""
        grant_type = data["grant_type"]
        try:
            client = await self._get_client()
            resp = await client.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            msg = f"Token endpoint request failed: {exc.__class__.__name__}: {exc}"
            raise NetworkError(msg, grant_type=grant_type) from exc

        received_at = self._clock()
        payload = _json_or_empty(resp)

        if resp.status_code >= 500 or resp.status_code == 429:
            msg = f"Token endpoint unavailable: HTTP {resp.status_code}"
            raise NetworkError(msg, status_code=resp.status_code, grant_type=grant_type)

        if not resp.is_success:
            logger.debug(
                "Token endpoint rejected %s grant: HTTP %s %s",
                grant_type,
                resp.status_code,
                redact_sensitive_data(payload),
            )
            _raise_for_rejection(resp.status_code, payload, grant_type)

        access_token = payload.get("access_token")
        expires_in = payload.get("expires_in")
        if not access_token or expires_in is None:
            msg = "Token response missing access_token or expires_in"
            raise TokenError(msg, status_code=resp.status_code, grant_type=grant_type)
        try:
            lifetime = float(expires_in)
        except (TypeError, ValueError) as exc:
            msg = f"Token response has invalid expires_in: {expires_in!r}"
            raise TokenError(msg, grant_type=grant_type) from exc
        if not math.isfinite(lifetime) or lifetime <= 0:
            msg = f"Token response has invalid expires_in: {expires_in!r}"
            raise TokenError(msg, grant_type=grant_type)

        tokens = TokenSet(
            access_token=str(access_token),
            refresh_token=str(payload.get("refresh_token") or fallback_refresh_token),
            expires_at=received_at + lifetime,
            token_type=str(payload.get("token_type") or "Bearer"),
        )
        logger.info(
            "Token endpoint issued %s (grant=%s, expires in %.0fs)",
            mask(tokens.access_token),
            grant_type,
            lifetime,
        )
        return tokens


def _json_or_empty(resp: httpx.Response) -> dict[str, Any]:
    """Decode a JSON object body, or return an empty dict."""
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _raise_for_rejection(status_code: int, payload: dict[str, Any], grant_type: str) -> None:
    """Raise the error matching a 4xx answer from the token endpoint."""
    error = payload.get("error")
    description = (
        payload.get("error_description") or payload.get("message") or payload.get("hint") or ""
    )
    detail = f": {description}" if description else ""

    if error in _GRANT_ERRORS or (grant_type == "refresh_token" and status_code in (400, 401)):
        msg = f"Provider rejected the {grant_type} grant ({error or status_code}){detail}"
        raise InvalidGrant(msg, error=error, status_code=status_code)

    if grant_type == "authorization_code":
        msg = f"Provider refused the code exchange ({error or status_code}){detail}"
        raise AuthorizationDenied(msg, error=error, status_code=status_code)

    msg = f"Token refresh failed: HTTP {status_code}{detail}"
    raise TokenError(msg, status_code=status_code, error=error)
