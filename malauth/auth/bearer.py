"""httpx authentication hook backed by an AuthCoordinator."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx


if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Generator

    from .coordinator import AuthCoordinator


class BearerAuth(httpx.Auth):
    """Attach a valid bearer token and retry once after a 401.

    Use with ``httpx.AsyncClient(auth=BearerAuth(coordinator))``.
    """

    requires_request_body = True

    def __init__(self, coordinator: AuthCoordinator) -> None:
        """Initialize the hook with the coordinator that supplies tokens."""
        self.coordinator = coordinator

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        """Refuse synchronous clients; token refresh needs an event loop."""
        msg = "BearerAuth only supports httpx.AsyncClient"
        raise RuntimeError(msg)

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        """Send the request with a bearer token, retrying once after a 401."""
        token = await self.coordinator.get_valid_token()
        request.headers["Authorization"] = f"Bearer {token}"
        response = yield request

        if response.status_code == 401:
            token = await self.coordinator.on_unauthorized(token)
            request.headers["Authorization"] = f"Bearer {token}"
            yield request
