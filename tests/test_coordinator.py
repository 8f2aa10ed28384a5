"""Tests for the authentication coordinator state machine."""

# pylint: disable=redefined-outer-name

from __future__ import annotations

import asyncio
import time

from typing import TYPE_CHECKING
from urllib.parse import parse_qs, urlencode, urlparse

import pytest

from malauth.auth.cipher import TokenCipher
from malauth.auth.coordinator import AuthCoordinator
from malauth.auth.token_store import EncryptedFileTokenStore, MemoryTokenStore
from malauth.config import MalAuthSettings
from malauth.exceptions import (
    AuthenticationError,
    AuthFlowCancelled,
    AuthFlowTimeout,
    AuthorizationDenied,
    ConfigurationError,
    InvalidGrant,
    LoginInProgressError,
    NetworkError,
    NotAuthenticatedError,
    StorageError,
)
from malauth.types import AuthState, TokenSet


if TYPE_CHECKING:
    from collections.abc import Callable

    from malauth.auth.provider import MALProvider
    from malauth.types import ClientCredentials
    from tests.conftest import FakeClock, FakeTokenEndpoint


# ── Fixtures ────────────────────────────────────────────────────────


@pytest.fixture()
def store() -> MemoryTokenStore:
    """Create a memory token store."""
    return MemoryTokenStore()


@pytest.fixture()
def coordinator(
    credentials: ClientCredentials,
    provider: MALProvider,
    store: MemoryTokenStore,
    clock: FakeClock,
) -> AuthCoordinator:
    """Create a coordinator over the fake token endpoint."""
    return AuthCoordinator(credentials, provider, store, refresh_margin=60, clock=clock)


def _run(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


async def _callback_uri(coordinator: AuthCoordinator) -> str:
    deadline = time.monotonic() + 5
    while coordinator.callback_uri is None:
        if time.monotonic() > deadline:
            msg = "callback listener did not start"
            raise AssertionError(msg)
        await asyncio.sleep(0.01)
    return coordinator.callback_uri


async def _redirect(
    coordinator: AuthCoordinator,
    http_get: Callable[[str], tuple[int, str]],
    **params: str,
) -> int:
    """Simulate the browser following the provider redirect."""
    base = await _callback_uri(coordinator)
    status, _ = await asyncio.to_thread(http_get, f"{base}?{urlencode(params)}")
    return status


class FailingSaveStore(MemoryTokenStore):
    """Memory store whose persistence always fails after updating memory."""

    async def save(self, tokens: TokenSet) -> None:
        await super().save(tokens)
        msg = "disk full"
        raise StorageError(msg, path="/nowhere")


# ── Startup ─────────────────────────────────────────────────────────


class TestInitialize:
    """Tests for AuthCoordinator.initialize."""

    def test_no_cached_session(self, coordinator: AuthCoordinator) -> None:
        """An empty store leaves the coordinator unauthenticated."""
        assert _run(coordinator.initialize()) is None
        assert coordinator.state is AuthState.UNAUTHENTICATED
        assert not coordinator.is_authenticated

    def test_valid_cached_session(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        token_endpoint: FakeTokenEndpoint,
    ) -> None:
        """A fresh cached token set is used without any network call."""
        _run(store.save(make_tokens()))
        tokens = _run(coordinator.initialize())
        assert tokens is not None
        assert tokens.access_token == "at-0"
        assert coordinator.state is AuthState.AUTHORIZED
        assert token_endpoint.calls == []

    def test_expired_cached_session_refreshed(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        token_endpoint: FakeTokenEndpoint,
    ) -> None:
        """An expired cached token set is refreshed once at startup."""
        _run(store.save(make_tokens(expires_in=-10)))
        tokens = _run(coordinator.initialize())
        assert tokens is not None
        assert tokens.access_token == "at-1"
        assert token_endpoint.grant_types == ["refresh_token"]
        assert token_endpoint.calls[0]["refresh_token"] == "rt-0"
        assert coordinator.state is AuthState.AUTHORIZED

    def test_expired_with_revoked_refresh_token(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        token_endpoint: FakeTokenEndpoint,
    ) -> None:
        """invalid_grant at startup discards the cached session."""
        _run(store.save(make_tokens(expires_in=-10)))
        token_endpoint.status = 400
        token_endpoint.body = {"error": "invalid_grant"}

        assert _run(coordinator.initialize()) is None
        assert coordinator.state is AuthState.UNAUTHENTICATED
        assert store.current() is None

    def test_unpersisted_session_not_served_after_reinitialize(
        self,
        credentials: ClientCredentials,
        provider: MALProvider,
        make_tokens: Callable[..., TokenSet],
        clock: FakeClock,
        tmp_path,
    ) -> None:
        """State and token access agree when the record could not be written."""
        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x")
        store = EncryptedFileTokenStore(blocker / "tokens", TokenCipher(b"c" * 32))
        coordinator = AuthCoordinator(credentials, provider, store, clock=clock)

        async def scenario() -> None:
            with pytest.raises(StorageError):
                await store.save(make_tokens())
            assert await coordinator.initialize() is None
            assert coordinator.state is AuthState.UNAUTHENTICATED
            assert not coordinator.is_authenticated
            with pytest.raises(NotAuthenticatedError):
                await coordinator.get_valid_token()

        _run(scenario())

    def test_expired_while_offline(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        token_endpoint: FakeTokenEndpoint,
    ) -> None:
        """A network failure at startup keeps the cached tokens for a later retry."""
        cached = make_tokens(expires_in=-10)
        _run(store.save(cached))
        token_endpoint.status = 503

        assert _run(coordinator.initialize()) == cached
        assert coordinator.state is AuthState.AUTHORIZED


# ── Token access ────────────────────────────────────────────────────


class TestGetValidToken:
    """Tests for get_valid_token and refresh serialisation."""

    def test_not_authenticated(self, coordinator: AuthCoordinator) -> None:
        """Without a session the caller must log in."""
        with pytest.raises(NotAuthenticatedError):
            _run(coordinator.get_valid_token())

    def test_fresh_token_no_network(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        token_endpoint: FakeTokenEndpoint,
    ) -> None:
        """Two calls within the validity window make zero network calls."""

        async def scenario() -> list[str]:
            await store.save(make_tokens())
            await coordinator.initialize()
            return [await coordinator.get_valid_token(), await coordinator.get_valid_token()]

        assert _run(scenario()) == ["at-0", "at-0"]
        assert token_endpoint.calls == []

    def test_margin_triggers_refresh(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        token_endpoint: FakeTokenEndpoint,
        clock: FakeClock,
    ) -> None:
        """A token inside the safety margin is refreshed before use."""

        async def scenario() -> tuple[str, str]:
            await store.save(make_tokens(expires_in=120))
            await coordinator.initialize()
            first = await coordinator.get_valid_token()
            clock.advance(61)
            return first, await coordinator.get_valid_token()

        assert _run(scenario()) == ("at-0", "at-1")
        assert token_endpoint.grant_types == ["refresh_token"]
        assert coordinator.state is AuthState.AUTHORIZED
        assert store.current().refresh_token == "rt-1"

    def test_concurrent_callers_share_one_refresh(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        token_endpoint: FakeTokenEndpoint,
    ) -> None:
        """N concurrent callers with an expired token trigger exactly one refresh."""
        token_endpoint.delay = 0.05

        async def scenario() -> list[str]:
            await store.save(make_tokens(expires_in=-1))
            coordinator._state = AuthState.AUTHORIZED
            return await asyncio.gather(*(coordinator.get_valid_token() for _ in range(10)))

        assert _run(scenario()) == ["at-1"] * 10
        assert len(token_endpoint.calls) == 1

    def test_invalid_grant_clears_session(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        token_endpoint: FakeTokenEndpoint,
    ) -> None:
        """A rejected refresh token clears the store and forces a re-login."""
        token_endpoint.status = 400
        token_endpoint.body = {"error": "invalid_grant"}

        async def scenario() -> None:
            await store.save(make_tokens(expires_in=-1))
            coordinator._state = AuthState.AUTHORIZED
            await coordinator.get_valid_token()

        with pytest.raises(InvalidGrant):
            _run(scenario())
        assert store.current() is None
        assert coordinator.state is AuthState.UNAUTHENTICATED
        with pytest.raises(NotAuthenticatedError):
            _run(coordinator.get_valid_token())

    def test_network_error_keeps_state(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        token_endpoint: FakeTokenEndpoint,
    ) -> None:
        """Transport failures are retryable and change nothing."""
        stale = make_tokens(expires_in=-1)
        token_endpoint.status = 502

        async def scenario() -> str:
            await store.save(stale)
            coordinator._state = AuthState.AUTHORIZED
            with pytest.raises(NetworkError) as exc_info:
                await coordinator.get_valid_token()
            assert exc_info.value.retryable
            assert coordinator.state is AuthState.AUTHORIZED
            assert store.current() == stale

            token_endpoint.status = 200
            return await coordinator.get_valid_token()

        assert _run(scenario()) == "at-1"

    def test_refresh_persists_new_tokens(
        self,
        credentials: ClientCredentials,
        provider: MALProvider,
        make_tokens: Callable[..., TokenSet],
        clock: FakeClock,
        tmp_path,
    ) -> None:
        """Refreshed tokens are written to the encrypted record."""
        cipher = TokenCipher(b"c" * 32)
        store = EncryptedFileTokenStore(tmp_path / "tokens", cipher)
        coordinator = AuthCoordinator(credentials, provider, store, clock=clock)

        async def scenario() -> TokenSet | None:
            await store.save(make_tokens(expires_in=-1))
            await coordinator.initialize()
            await coordinator.get_valid_token()
            return await EncryptedFileTokenStore(tmp_path / "tokens", cipher).load()

        persisted = _run(scenario())
        assert persisted is not None
        assert persisted.access_token == "at-1"


class TestOnUnauthorized:
    """Tests for the on_unauthorized hook."""

    def test_forces_refresh(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        token_endpoint: FakeTokenEndpoint,
    ) -> None:
        """A rejected but unexpired token is refreshed."""

        async def scenario() -> str:
            await store.save(make_tokens())
            await coordinator.initialize()
            return await coordinator.on_unauthorized("at-0")

        assert _run(scenario()) == "at-1"
        assert len(token_endpoint.calls) == 1

    def test_already_replaced(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        token_endpoint: FakeTokenEndpoint,
    ) -> None:
        """A stale rejection returns the newer token without another refresh."""

        async def scenario() -> str:
            await store.save(make_tokens(access_token="at-newer"))
            await coordinator.initialize()
            return await coordinator.on_unauthorized("at-older")

        assert _run(scenario()) == "at-newer"
        assert token_endpoint.calls == []

    def test_concurrent_rejections_share_one_refresh(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        token_endpoint: FakeTokenEndpoint,
    ) -> None:
        """Several 401s for the same token cause one refresh."""
        token_endpoint.delay = 0.05

        async def scenario() -> list[str]:
            await store.save(make_tokens())
            await coordinator.initialize()
            return await asyncio.gather(*(coordinator.on_unauthorized("at-0") for _ in range(5)))

        assert _run(scenario()) == ["at-1"] * 5
        assert len(token_endpoint.calls) == 1

    def test_not_authenticated(self, coordinator: AuthCoordinator) -> None:
        """Without a session there is nothing to refresh."""
        with pytest.raises(NotAuthenticatedError):
            _run(coordinator.on_unauthorized("x"))


# ── Login ───────────────────────────────────────────────────────────


class TestBeginLogin:
    """Tests for begin_login."""

    def test_returns_authorization_url(self, coordinator: AuthCoordinator) -> None:
        """The URL carries the challenge and state; the verifier stays local."""
        request = coordinator.begin_login()
        params = {k: v[0] for k, v in parse_qs(urlparse(request.url).query).items()}

        assert coordinator.state is AuthState.AWAITING_USER_AUTHORIZATION
        assert params["state"] == request.state
        assert params["code_challenge"] == request.challenge.challenge
        assert params["code_challenge_method"] == "plain"
        assert params["client_id"] == "test-client"
        assert "code_verifier" not in params
        assert coordinator.pending_login is request

    def test_second_login_rejected(self, coordinator: AuthCoordinator) -> None:
        """Only one login may be outstanding."""
        coordinator.begin_login()
        with pytest.raises(LoginInProgressError):
            coordinator.begin_login()

    def test_fresh_state_per_attempt(self, coordinator: AuthCoordinator) -> None:
        """Every attempt gets a new state and verifier."""
        first = coordinator.begin_login()
        assert coordinator.cancel_login()
        assert coordinator.state is AuthState.UNAUTHENTICATED
        second = coordinator.begin_login()
        assert first.state != second.state
        assert first.challenge.verifier != second.challenge.verifier

    def test_s256(self, credentials: ClientCredentials, provider: MALProvider, store: MemoryTokenStore) -> None:
        """The challenge method is configurable."""
        coordinator = AuthCoordinator(credentials, provider, store, pkce_method="S256", verifier_length=43)
        request = coordinator.begin_login()
        assert "code_challenge_method=S256" in request.url
        assert len(request.challenge.verifier) == 43

    def test_complete_without_begin(self, coordinator: AuthCoordinator) -> None:
        """complete_login needs a login to complete."""
        with pytest.raises(AuthenticationError, match="begin_login"):
            _run(coordinator.complete_login(timeout=1))


class TestCompleteLogin:
    """Tests for complete_login over a real callback listener."""

    def test_end_to_end(
        self,
        coordinator: AuthCoordinator,
        token_endpoint: FakeTokenEndpoint,
        clock: FakeClock,
        http_get: Callable[[str], tuple[int, str]],
    ) -> None:
        """Login with code=ABC123 yields tokens that get_valid_token returns."""

        async def scenario():
            request = coordinator.begin_login()
            assert "code_challenge=" in request.url
            assert "state=" in request.url

            task = coordinator.start_login_task(timeout=5)
            status = await _redirect(coordinator, http_get, code="ABC123", state=request.state)
            tokens = await task
            return request, status, tokens, await coordinator.get_valid_token()

        request, status, tokens, token = _run(scenario())

        assert status == 200
        assert tokens.access_token
        assert tokens.refresh_token
        assert tokens.expires_at > clock.now
        assert token == tokens.access_token
        assert coordinator.state is AuthState.AUTHORIZED
        assert coordinator.callback_uri is None

        exchange = token_endpoint.calls[0]
        assert exchange["grant_type"] == "authorization_code"
        assert exchange["code"] == "ABC123"
        assert exchange["code_verifier"] == request.challenge.verifier
        assert coordinator.pending_login is None

    def test_state_mismatch_then_correct(
        self,
        coordinator: AuthCoordinator,
        token_endpoint: FakeTokenEndpoint,
        http_get: Callable[[str], tuple[int, str]],
    ) -> None:
        """A forged callback never completes the login; the real one does."""

        async def scenario():
            request = coordinator.begin_login()
            task = coordinator.start_login_task(timeout=5)

            forged = await _redirect(coordinator, http_get, code="EVIL", state="not-the-state")
            await asyncio.sleep(0.05)
            assert not task.done()
            assert coordinator.state is AuthState.AWAITING_USER_AUTHORIZATION

            real = await _redirect(coordinator, http_get, code="ABC123", state=request.state)
            return forged, real, await task

        forged, real, tokens = _run(scenario())
        assert forged == 400
        assert real == 200
        assert tokens.access_token == "at-1"
        assert [c["code"] for c in token_endpoint.calls] == ["ABC123"]

    def test_timeout(self, coordinator: AuthCoordinator, token_endpoint: FakeTokenEndpoint) -> None:
        """No callback before the timeout leaves the coordinator unauthenticated."""
        coordinator.begin_login()
        with pytest.raises(AuthFlowTimeout):
            _run(coordinator.complete_login(timeout=0.2))

        assert coordinator.state is AuthState.UNAUTHENTICATED
        assert coordinator.pending_login is None
        assert token_endpoint.calls == []
        coordinator.begin_login()

    def test_user_denied(
        self,
        coordinator: AuthCoordinator,
        http_get: Callable[[str], tuple[int, str]],
    ) -> None:
        """An OAuth error on the callback ends the attempt with AuthorizationDenied."""

        async def scenario():
            request = coordinator.begin_login()
            task = coordinator.start_login_task(timeout=5)
            await _redirect(coordinator, http_get, error="access_denied", state=request.state)
            await task

        with pytest.raises(AuthorizationDenied):
            _run(scenario())
        assert coordinator.state is AuthState.UNAUTHENTICATED

    def test_exchange_rejected(
        self,
        coordinator: AuthCoordinator,
        token_endpoint: FakeTokenEndpoint,
        http_get: Callable[[str], tuple[int, str]],
    ) -> None:
        """A failed code exchange falls back to unauthenticated."""
        token_endpoint.status = 400
        token_endpoint.body = {"error": "invalid_grant"}

        async def scenario():
            request = coordinator.begin_login()
            task = coordinator.start_login_task(timeout=5)
            await _redirect(coordinator, http_get, code="ABC123", state=request.state)
            await task

        with pytest.raises(InvalidGrant):
            _run(scenario())
        assert coordinator.state is AuthState.UNAUTHENTICATED

    def test_cancel_login(self, coordinator: AuthCoordinator) -> None:
        """cancel_login aborts the wait and releases the socket."""

        async def scenario():
            coordinator.begin_login()
            task = coordinator.start_login_task(timeout=30)
            await _callback_uri(coordinator)
            assert coordinator.cancel_login()
            with pytest.raises(AuthFlowCancelled):
                await task
            return coordinator.callback_uri

        assert _run(scenario()) is None
        assert coordinator.state is AuthState.UNAUTHENTICATED
        assert coordinator.cancel_login() is False

    def test_cancel_during_code_exchange(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
        http_get: Callable[[str], tuple[int, str]],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Tokens from an exchange that finishes after cancel_login are discarded."""
        release = asyncio.Event()

        async def slow_exchange(*args: object) -> TokenSet:  # noqa: ARG001
            await release.wait()
            return make_tokens(access_token="late-at")

        monkeypatch.setattr(coordinator.provider, "exchange_code", slow_exchange)

        async def scenario():
            request = coordinator.begin_login()
            login = asyncio.create_task(coordinator.complete_login(timeout=5))
            await _redirect(coordinator, http_get, code="ABC123", state=request.state)
            while coordinator.state is not AuthState.EXCHANGING_CODE:
                await asyncio.sleep(0.01)

            assert coordinator.cancel_login()
            assert coordinator.state is AuthState.UNAUTHENTICATED
            retry = coordinator.begin_login()

            release.set()
            with pytest.raises(AuthFlowCancelled):
                await login
            return retry

        retry = _run(scenario())
        assert store.current() is None
        assert coordinator.state is AuthState.AWAITING_USER_AUTHORIZATION
        assert coordinator.pending_login is retry
        assert coordinator.cancel_login()
        assert coordinator.state is AuthState.UNAUTHENTICATED

    def test_task_cancel(self, coordinator: AuthCoordinator) -> None:
        """Cancelling the login task also falls back to unauthenticated."""

        async def scenario():
            coordinator.begin_login()
            task = coordinator.start_login_task(timeout=30)
            await _callback_uri(coordinator)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        _run(scenario())
        assert coordinator.state is AuthState.UNAUTHENTICATED
        assert coordinator.callback_uri is None

    def test_relogin_keeps_existing_tokens_usable(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
    ) -> None:
        """While a re-login waits, the old tokens still serve requests."""

        async def scenario():
            await store.save(make_tokens())
            await coordinator.initialize()
            coordinator.begin_login()
            token = await coordinator.get_valid_token()
            coordinator.cancel_login()
            return token

        assert _run(scenario()) == "at-0"
        assert coordinator.state is AuthState.AUTHORIZED

    def test_save_failure_still_authorizes(
        self,
        credentials: ClientCredentials,
        provider: MALProvider,
        clock: FakeClock,
        http_get: Callable[[str], tuple[int, str]],
    ) -> None:
        """A persistence failure is reported but the tokens are usable."""
        coordinator = AuthCoordinator(credentials, provider, FailingSaveStore(), clock=clock)

        async def scenario():
            request = coordinator.begin_login()
            task = coordinator.start_login_task(timeout=5)
            await _redirect(coordinator, http_get, code="ABC123", state=request.state)
            with pytest.raises(StorageError):
                await task
            return await coordinator.get_valid_token()

        assert _run(scenario()) == "at-1"
        assert coordinator.state is AuthState.AUTHORIZED

    def test_concurrent_complete_rejected(self, coordinator: AuthCoordinator) -> None:
        """A second complete_login for the same attempt is refused."""

        async def scenario():
            coordinator.begin_login()
            task = coordinator.start_login_task(timeout=30)
            await _callback_uri(coordinator)
            with pytest.raises(LoginInProgressError):
                coordinator.start_login_task()
            with pytest.raises(LoginInProgressError):
                await coordinator.complete_login(timeout=1)
            coordinator.cancel_login()
            await asyncio.gather(task, return_exceptions=True)

        _run(scenario())


# ── Other constructors and teardown ─────────────────────────────────


class TestLifecycle:
    """Tests for logout, aclose and alternate constructors."""

    def test_logout(
        self,
        coordinator: AuthCoordinator,
        store: MemoryTokenStore,
        make_tokens: Callable[..., TokenSet],
    ) -> None:
        """logout forgets the session."""

        async def scenario() -> None:
            await store.save(make_tokens())
            await coordinator.initialize()
            await coordinator.logout()

        _run(scenario())
        assert store.current() is None
        assert coordinator.state is AuthState.UNAUTHENTICATED

    def test_aclose_cancels_login(self, coordinator: AuthCoordinator) -> None:
        """Closing the coordinator ends a pending login."""

        async def scenario():
            async with coordinator:
                coordinator.begin_login()
                coordinator.start_login_task(timeout=30)
                await _callback_uri(coordinator)

        _run(scenario())
        assert coordinator.callback_uri is None
        assert coordinator.state is AuthState.UNAUTHENTICATED

    def test_with_access_token(self) -> None:
        """A fixed token is served as is and cannot be refreshed."""
        coordinator = AuthCoordinator.with_access_token("fixed-token")
        assert coordinator.state is AuthState.AUTHORIZED
        assert _run(coordinator.get_valid_token()) == "fixed-token"
        with pytest.raises(NotAuthenticatedError):
            _run(coordinator.on_unauthorized("fixed-token"))
        with pytest.raises(ConfigurationError):
            coordinator.begin_login()

    def test_with_empty_access_token(self) -> None:
        """An empty fixed token is a configuration error."""
        with pytest.raises(ConfigurationError):
            AuthCoordinator.with_access_token("")

    def test_from_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Settings drive credentials, store and timing."""
        monkeypatch.setenv("MALAUTH_OAUTH2__CLIENT_ID", "env-client")
        monkeypatch.setenv("MALAUTH_OAUTH2__REFRESH_MARGIN_SECONDS", "120")
        monkeypatch.setenv("MALAUTH_CACHE__BACKEND", "memory")

        coordinator = AuthCoordinator.from_settings(MalAuthSettings())
        assert coordinator.credentials is not None
        assert coordinator.credentials.client_id == "env-client"
        assert coordinator.credentials.redirect_uri == "http://localhost:2561/callback"
        assert coordinator.refresh_margin == 120
        assert isinstance(coordinator.token_store, MemoryTokenStore)

    def test_from_settings_requires_client_id(self) -> None:
        """A missing client ID fails at construction."""
        with pytest.raises(ConfigurationError):
            AuthCoordinator.from_settings(MalAuthSettings())
