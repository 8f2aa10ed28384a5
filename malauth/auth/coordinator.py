"""Authentication coordinator: login handshake and token lifecycle.

Owns the single in-flight login attempt and hands out valid access
tokens, refreshing them on demand. Refreshes are serialised so that any
number of concurrent callers trigger at most one request to the token
endpoint.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import logging
import math
import time

from typing import TYPE_CHECKING, Any

from ..exceptions import (
    AuthenticationError,
    AuthFlowCancelled,
    ConfigurationError,
    InvalidGrant,
    LoginInProgressError,
    NetworkError,
    NotAuthenticatedError,
    StorageError,
)
from ..log import mask
from ..types import AuthState, ClientCredentials, LoginRequest, TokenSet
from .callback_server import OAuthCallbackServer
from .pkce import PKCEChallenge, generate_state
from .provider import MALProvider
from .token_store import MemoryTokenStore, create_token_store


if TYPE_CHECKING:
    from collections.abc import Callable

    from ..config import MalAuthSettings
    from .pkce import ChallengeMethod
    from .token_store import TokenStore


logger = logging.getLogger("malauth.auth")

_LOGIN_STATES = frozenset({AuthState.AWAITING_USER_AUTHORIZATION, AuthState.EXCHANGING_CODE})


class AuthCoordinator:
    """Drives the OAuth2 PKCE login and keeps the access token valid.

    One coordinator represents one user session. Pass it explicitly to
    whatever issues API requests.

    Parameters
    ----------
    credentials : ClientCredentials or None
        Client ID and redirect URI. Only a coordinator built with
        :meth:`with_access_token` may omit them.
    provider : MALProvider
        Builds the authorization URL and talks to the token endpoint.
    token_store : TokenStore
        Holds the current token set and persists it.
    refresh_margin : float
        Treat the access token as expired this many seconds early.
    auth_timeout : float
        Default seconds :meth:`complete_login` waits for the redirect.
    pkce_method : {"plain", "S256"}
        PKCE challenge method.
    verifier_length : int
        PKCE verifier length (43 to 128).
    clock : callable
        Returns the current UNIX time.
    """

    def __init__(
        self,
        credentials: ClientCredentials | None,
        provider: MALProvider,
        token_store: TokenStore,
        *,
        refresh_margin: float = 60.0,
        auth_timeout: float = 300.0,
        pkce_method: ChallengeMethod = "plain",
        verifier_length: int = 128,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the coordinator."""
        self.credentials = credentials
        self.provider = provider
        self.token_store = token_store
        self.refresh_margin = refresh_margin
        self.auth_timeout = auth_timeout
        self._pkce_method = pkce_method
        self._verifier_length = verifier_length
        self._clock = clock

        self._state = AuthState.UNAUTHENTICATED
        self._pending: LoginRequest | None = None
        self._listener: OAuthCallbackServer | None = None
        self._login_task: asyncio.Task[TokenSet] | None = None
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: MalAuthSettings | None = None,
        **provider_kwargs: Any,
    ) -> AuthCoordinator:
        """Build a coordinator and its collaborators from settings.

        Parameters
        ----------
        settings : MalAuthSettings, optional
            Defaults to :func:`malauth.config.get_settings`.
        **provider_kwargs : Any
            Passed to :class:`MALProvider` (``clock``, ``transport``).

        Raises
        ------
        ConfigurationError
            If the client ID or redirect URI is unusable.
        """
        if settings is None:
            from ..config import get_settings

            settings = get_settings()

        oauth2 = settings.oauth2
        credentials = ClientCredentials(
            client_id=oauth2.client_id,
            redirect_uri=oauth2.redirect_uri,
            client_secret=oauth2.client_secret,
        )
        provider = MALProvider.from_settings(oauth2, **provider_kwargs)
        return cls(
            credentials,
            provider,
            create_token_store(settings.cache),
            refresh_margin=oauth2.refresh_margin_seconds,
            auth_timeout=oauth2.auth_timeout_seconds,
            pkce_method=oauth2.pkce_method,
            verifier_length=oauth2.verifier_length,
            clock=provider_kwargs.get("clock", time.time),
        )

    @classmethod
    def with_access_token(
        cls,
        access_token: str,
        credentials: ClientCredentials | None = None,
        provider: MALProvider | None = None,
    ) -> AuthCoordinator:
        """Build a coordinator authorised with a fixed access token.

        The token never expires locally and there is no refresh token, so
        :meth:`on_unauthorized` raises ``NotAuthenticatedError``.
        """
        if not access_token:
            msg = "access_token must not be empty"
            raise ConfigurationError(msg, setting="access_token")
        store = MemoryTokenStore(TokenSet(access_token=access_token, refresh_token="", expires_at=math.inf))
        coordinator = cls(credentials, provider or MALProvider(), store)
        coordinator._state = AuthState.AUTHORIZED
        return coordinator

    @property
    def state(self) -> AuthState:
        """Current state of the login/refresh state machine."""
        return self._state

    @property
    def tokens(self) -> TokenSet | None:
        """The current token set, without I/O."""
        return self.token_store.current()

    @property
    def is_authenticated(self) -> bool:
        """Whether a token set is available."""
        return self.token_store.current() is not None

    @property
    def pending_login(self) -> LoginRequest | None:
        """The outstanding login request, if any."""
        return self._pending

    @property
    def callback_uri(self) -> str | None:
        """Address the callback listener is bound to while a login waits."""
        listener = self._listener
        if listener is None or not listener.is_running:
            return None
        return listener.redirect_uri

    def _set_state(self, new_state: AuthState) -> None:
        if new_state is not self._state:
            logger.debug("Auth state %s -> %s", self._state.value, new_state.value)
            self._state = new_state

    def _resting_state(self) -> AuthState:
        if self.token_store.current() is not None:
            return AuthState.AUTHORIZED
        return AuthState.UNAUTHENTICATED

    async def initialize(self) -> TokenSet | None:
        """Load a persisted session, refreshing it once if it has expired.

        Returns
        -------
        TokenSet or None
            The usable token set, or None if the user must log in.
        """
        if self._state in _LOGIN_STATES:
            msg = "Cannot initialize while a login is in progress"
            raise LoginInProgressError(msg)

        tokens = await self.token_store.load()
        if tokens is None:
            logger.info("No cached session found")
            self._set_state(AuthState.UNAUTHENTICATED)
            return None

        self._set_state(AuthState.AUTHORIZED)
        if not tokens.is_expired(self.refresh_margin, now=self._clock()) or not tokens.refresh_token:
            logger.info("Restored cached session (token %s)", mask(tokens.access_token))
            return tokens

        logger.info("Cached access token expired, refreshing")
        try:
            return await self._refresh(tokens.access_token)
        except InvalidGrant:
            return None
        except NetworkError as exc:
            logger.warning("Refresh at startup failed, keeping cached tokens: %s", exc)
            return tokens

    def begin_login(self) -> LoginRequest:
        """Start a login attempt and return the URL to show the user.

        Does not block. A new attempt may start while authorized; the
        current tokens stay usable until the new exchange replaces them.

        Returns
        -------
        LoginRequest
            The authorization URL, its state and PKCE pair.

        Raises
        ------
        LoginInProgressError
            If another login is awaiting authorization or exchanging.
        ConfigurationError
            If the coordinator has no client credentials.
        """
        if self._state in _LOGIN_STATES:
            msg = "A login is already in progress"
            raise LoginInProgressError(msg, state=self._state.value)
        if self.credentials is None:
            msg = "Logging in requires client credentials"
            raise ConfigurationError(msg, setting="client_id")

        challenge = PKCEChallenge.generate(self._verifier_length, self._pkce_method)
        state = generate_state()
        url = self.provider.build_authorize_url(self.credentials, challenge, state)
        self._pending = LoginRequest(url=url, state=state, challenge=challenge)
        self._set_state(AuthState.AWAITING_USER_AUTHORIZATION)
        logger.info("Login started (state %s)", mask(state))
        return self._pending

    async def complete_login(
        self,
        redirect_uri: str | None = None,
        timeout: float | None = None,
    ) -> TokenSet:
        """Wait for the redirect, exchange the code and persist the tokens.

        Parameters
        ----------
        redirect_uri : str, optional
            Address to listen on. Defaults to the registered redirect URI,
            which is always the one sent to the token endpoint.
        timeout : float, optional
            Seconds to wait for the redirect (default ``auth_timeout``).

        Returns
        -------
        TokenSet
            The new token set.

        Raises
        ------
        AuthFlowTimeout, AuthorizationDenied, AuthFlowCancelled
            The login did not complete; the state falls back.
        NetworkError, InvalidGrant, TokenError
            The code exchange failed; the state falls back.
        StorageError
            The tokens are in use but could not be persisted.
        """
        pending = self._pending
        if pending is None or self._state is not AuthState.AWAITING_USER_AUTHORIZATION:
            msg = "No login is waiting for authorization; call begin_login() first"
            raise AuthenticationError(msg, state=self._state.value)
        if self._listener is not None:
            msg = "complete_login() is already waiting for this login"
            raise LoginInProgressError(msg)

        credentials = self.credentials
        if credentials is None:
            msg = "Logging in requires client credentials"
            raise ConfigurationError(msg, setting="client_id")
        wait = self.auth_timeout if timeout is None else timeout
        listener = OAuthCallbackServer.for_redirect_uri(redirect_uri or credentials.redirect_uri)
        self._listener = listener
        try:
            try:
                result = await listener.await_callback(pending.state, wait)
            finally:
                if self._listener is listener:
                    self._listener = None
            self._ensure_current(pending)
            self._set_state(AuthState.EXCHANGING_CODE)
            tokens = await self.provider.exchange_code(
                result.code, pending.challenge.verifier, credentials
            )
        except BaseException as exc:
            # A cancelled attempt no longer owns the state or the pending login.
            if self._pending is pending:
                self._abandon_login(exc)
            raise

        self._ensure_current(pending)
        self._pending = None
        async with self._refresh_lock:
            try:
                await self.token_store.save(tokens)
            except StorageError:
                logger.exception("Logged in, but the token cache could not be written")
                raise
            finally:
                self._set_state(AuthState.AUTHORIZED)
        logger.info("Login complete (token %s)", mask(tokens.access_token))
        return tokens

    def _ensure_current(self, pending: LoginRequest) -> None:
        if self._pending is not pending:
            logger.info("Login was cancelled; discarding its authorization code")
            msg = "Login cancelled by the caller"
            raise AuthFlowCancelled(msg)

    def _abandon_login(self, exc: BaseException) -> None:
        self._pending = None
        self._set_state(self._resting_state())
        if isinstance(exc, (asyncio.CancelledError, AuthFlowCancelled)):
            logger.info("Login cancelled")
        else:
            logger.warning("Login failed: %s", exc)

    def start_login_task(
        self,
        redirect_uri: str | None = None,
        timeout: float | None = None,
    ) -> asyncio.Task[TokenSet]:
        """Run :meth:`complete_login` as a background task.

        Returns
        -------
        asyncio.Task
            Resolves to the new token set.
        """
        if self._login_task is not None and not self._login_task.done():
            msg = "A login task is already running"
            raise LoginInProgressError(msg)
        self._login_task = asyncio.create_task(
            self.complete_login(redirect_uri, timeout), name="malauth-login"
        )
        return self._login_task

    def cancel_login(self) -> bool:
        """Abort the login in progress and release the callback socket.

        Returns
        -------
        bool
            True if there was a login to cancel.
        """
        if self._state not in _LOGIN_STATES:
            return False

        listener = self._listener
        if listener is not None and listener.cancel():
            return True
        if self._login_task is not None and not self._login_task.done():
            self._login_task.cancel()
            return True

        # Nothing is waiting yet, or complete_login() is mid-exchange and will
        # discard the result once it sees the login is no longer pending.
        self._abandon_login(AuthFlowCancelled("Login cancelled by the caller"))
        return True

    async def get_valid_token(self) -> str:
        """Return an access token that is not about to expire.

        Refreshes on demand; concurrent callers share one refresh.

        Raises
        ------
        NotAuthenticatedError
            If there is no session; log in first.
        InvalidGrant
            If the refresh token was rejected; the session is discarded.
        NetworkError
            If the token endpoint could not be reached; retryable.
        """
        tokens = self.token_store.current()
        if tokens is None:
            msg = "Not logged in"
            raise NotAuthenticatedError(msg, state=self._state.value)
        if not tokens.is_expired(self.refresh_margin, now=self._clock()):
            return tokens.access_token
        refreshed = await self._refresh(tokens.access_token)
        return refreshed.access_token

    async def on_unauthorized(self, rejected_token: str | None = None) -> str:
        """Force one refresh after an API call was rejected with 401.

        Parameters
        ----------
        rejected_token : str, optional
            The access token the API rejected. If another caller has
            already replaced it, the newer token is returned without
            another refresh.

        Returns
        -------
        str
            The access token to retry with.
        """
        tokens = self.token_store.current()
        if tokens is None:
            msg = "Not logged in"
            raise NotAuthenticatedError(msg, state=self._state.value)
        refreshed = await self._refresh(rejected_token or tokens.access_token, force=True)
        return refreshed.access_token

    async def _refresh(self, stale_access_token: str, force: bool = False) -> TokenSet:
        async with self._refresh_lock:
            current = self.token_store.current()
            if current is None:
                msg = "Session ended while waiting for a token refresh"
                raise NotAuthenticatedError(msg)
            if current.access_token != stale_access_token:
                return current
            if not force and not current.is_expired(self.refresh_margin, now=self._clock()):
                return current
            if not current.refresh_token:
                msg = "No refresh token available; log in again"
                raise NotAuthenticatedError(msg)

            tracks_state = self._state not in _LOGIN_STATES
            if tracks_state:
                self._set_state(AuthState.REFRESHING_TOKEN)
            try:
                tokens = await self.provider.refresh_tokens(current.refresh_token, self.credentials)
            except InvalidGrant:
                logger.warning("Refresh token rejected; discarding cached session")
                try:
                    await self.token_store.delete()
                except StorageError:
                    logger.exception("Could not delete the rejected token record")
                if tracks_state:
                    self._set_state(AuthState.UNAUTHENTICATED)
                raise
            except BaseException:
                if tracks_state:
                    self._set_state(AuthState.AUTHORIZED)
                raise

            try:
                await self.token_store.save(tokens)
            finally:
                if tracks_state:
                    self._set_state(AuthState.AUTHORIZED)
            return tokens

    async def logout(self) -> None:
        """Forget the session in memory and on disk."""
        self.cancel_login()
        async with self._refresh_lock:
            await self.token_store.delete()
        self._pending = None
        self._set_state(AuthState.UNAUTHENTICATED)
        logger.info("Logged out")

    async def aclose(self) -> None:
        """Cancel any login, release the callback socket and close HTTP clients."""
        self.cancel_login()
        task = self._login_task
        if task is not None and not task.done():
            await asyncio.gather(task, return_exceptions=True)
        if self._listener is not None:
            self._listener.stop()
        await self.provider.aclose()

    async def __aenter__(self) -> AuthCoordinator:
        """Enter the async context."""
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        """Close the coordinator."""
        await self.aclose()
