"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
import json
import logging
import os

from typing import TYPE_CHECKING, Any
from urllib.error import HTTPError, URLError
from urllib.parse import parse_qsl
from urllib.request import urlopen

import httpx
import pytest

from malauth.auth.provider import MALProvider
from malauth.config import clear_settings
from malauth.types import ClientCredentials, TokenSet


if TYPE_CHECKING:
    from collections.abc import Callable, Generator
    from pathlib import Path


TOKEN_URL = "https://myanimelist.test/v1/oauth2/token"  # noqa: S105
AUTHORIZE_URL = "https://myanimelist.test/v1/oauth2/authorize"


# ── Isolation ───────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def isolated_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Generator[None, None, None]:
    """Keep config files, env vars and data dirs of the host out of tests."""
    for key in list(os.environ):
        if key.startswith("MALAUTH_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("APPDATA", str(tmp_path / "appdata"))
    monkeypatch.chdir(tmp_path)
    clear_settings()
    yield
    clear_settings()
    logging.getLogger("malauth").setLevel(logging.WARNING)


# ── Time ────────────────────────────────────────────────────────────


class FakeClock:
    """Settable clock used in place of ``time.time``."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    """Create a fake clock."""
    return FakeClock()


# ── Token endpoint ──────────────────────────────────────────────────


class FakeTokenEndpoint:
    """httpx.MockTransport handler standing in for the MAL token endpoint.

    Issues ``at-N``/``rt-N`` pairs by default. Set ``status``/``body`` to
    answer with something else, ``delay`` to hold each request open, or
    ``error`` to raise a transport exception.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, str]] = []
        self.status = 200
        self.body: Any = None
        self.delay = 0.0
        self.error: Exception | None = None
        self.issued = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(dict(parse_qsl(request.content.decode("utf-8"))))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.body is not None or self.status != 200:
            if isinstance(self.body, (dict, list)):
                return httpx.Response(
                    self.status,
                    content=json.dumps(self.body).encode("utf-8"),
                    headers={"Content-Type": "application/json"},
                )
            return httpx.Response(self.status, text=self.body or "")
        self.issued += 1
        return httpx.Response(
            200,
            json={
                "token_type": "Bearer",
                "expires_in": 2678400,
                "access_token": f"at-{self.issued}",
                "refresh_token": f"rt-{self.issued}",
            },
        )

    @property
    def grant_types(self) -> list[str]:
        return [call.get("grant_type", "") for call in self.calls]


@pytest.fixture()
def token_endpoint() -> FakeTokenEndpoint:
    """Create a fake token endpoint."""
    return FakeTokenEndpoint()


@pytest.fixture()
def provider(token_endpoint: FakeTokenEndpoint, clock: FakeClock) -> MALProvider:
    """Create a provider wired to the fake token endpoint."""
    return MALProvider(
        authorize_url=AUTHORIZE_URL,
        token_url=TOKEN_URL,
        clock=clock,
        transport=httpx.MockTransport(token_endpoint),
    )


# ── Data ────────────────────────────────────────────────────────────


@pytest.fixture()
def credentials() -> ClientCredentials:
    """Client credentials whose callback listener picks a free port."""
    return ClientCredentials(client_id="test-client", redirect_uri="http://127.0.0.1:0/callback")


@pytest.fixture()
def make_tokens(clock: FakeClock) -> Callable[..., TokenSet]:
    """Build token sets expiring relative to the fake clock."""

    def _make(
        access_token: str = "at-0",
        refresh_token: str = "rt-0",
        expires_in: float = 3600.0,
    ) -> TokenSet:
        return TokenSet(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=clock.now + expires_in,
        )

    return _make


# ── HTTP ────────────────────────────────────────────────────────────


def _http_get(url: str) -> tuple[int, str]:
    try:
        with urlopen(url, timeout=5) as resp:  # noqa: S310
            return resp.status, resp.read().decode("utf-8")
    except HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")
    except URLError as exc:
        return 0, str(exc.reason)


@pytest.fixture()
def http_get() -> Callable[[str], tuple[int, str]]:
    """Blocking GET returning ``(status, body)``; status 0 if nothing listens."""
    return _http_get
