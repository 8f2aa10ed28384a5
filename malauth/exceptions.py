"""malauth exception hierarchy.

All malauth-specific exceptions inherit from MalAuthException, enabling
catch-all handling while supporting specific error types.
"""

from __future__ import annotations

from typing import Any


class MalAuthException(Exception):
    """Base exception for all malauth errors."""

    def __init__(self, message: str, **context: Any) -> None:
        """Initialize malauth exception.

        Parameters
        ----------
        message : str
            Human-readable error message.
        **context : Any
            Additional context (path, status_code, flow_id, etc.).
        """
        super().__init__(message)
        self.message = message
        self.context = context

    def __str__(self) -> str:
        """Format exception with context."""
        ctx = ", ".join(f"{k}={v!r}" for k, v in self.context.items() if v is not None)
        if ctx:
            return f"{self.message} ({ctx})"
        return self.message


class ConfigurationError(MalAuthException):
    """Client configuration is invalid.

    Raised at construction time for a missing client id or an unusable
    redirect URI. Fatal: the caller must fix the configuration and restart.
    """

    def __init__(self, message: str, setting: str | None = None, **context: Any) -> None:
        """Initialize configuration error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        setting : str, optional
            Name of the offending setting.
        **context : Any
            Additional context.
        """
        super().__init__(message, setting=setting, **context)
        self.setting = setting


class StorageError(MalAuthException):
    """Token cache could not be encrypted, decrypted, read or written.

    ``load`` failures are downgraded to "no session found" by the token
    store; ``save`` failures propagate so the caller knows persistence
    did not happen.
    """

    def __init__(self, message: str, path: str | None = None, **context: Any) -> None:
        """Initialize storage error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        path : str, optional
            The record path involved.
        **context : Any
            Additional context.
        """
        super().__init__(message, path=path, **context)
        self.path = path


class AuthenticationError(MalAuthException):
    """Base exception for all authentication failures.

    Raised when an authentication operation fails, including
    the OAuth2 handshake, token exchange or token refresh.
    """

    retryable: bool = False

    def __init__(
        self,
        message: str,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authentication error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        flow_id : str, optional
            The unique identifier of the login attempt that failed.
        **context : Any
            Additional context.
        """
        super().__init__(message, flow_id=flow_id, **context)
        self.flow_id = flow_id


class NetworkError(AuthenticationError):
    """Transport failure while talking to the provider.

    Retryable; backoff is left to the caller.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        **context: Any,
    ) -> None:
        """Initialize network error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        status_code : int, optional
            HTTP status if the provider answered at all.
        **context : Any
            Additional context.
        """
        super().__init__(message, status_code=status_code, **context)
        self.status_code = status_code


class AuthorizationDenied(AuthenticationError):
    """The user declined, or the provider returned an OAuth ``error``.

    A fresh ``begin_login`` is required.
    """

    def __init__(
        self,
        message: str,
        error: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize authorization denied error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        error : str, optional
            The OAuth error code (e.g. ``access_denied``).
        **context : Any
            Additional context.
        """
        super().__init__(message, error=error, **context)
        self.error = error


class StateMismatch(AuthenticationError):
    """A callback carried a state that does not belong to this login.

    Logged and ignored by the callback listener, which keeps waiting.
    """


class AuthFlowTimeout(AuthenticationError):
    """No valid callback arrived within the configured window.

    Raised when the wait for the OAuth2 redirect exceeds the timeout.
    The login flow must be restarted.
    """

    def __init__(
        self,
        message: str,
        timeout: float,
        flow_id: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize timeout error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        timeout : float
            The timeout value in seconds.
        flow_id : str, optional
            The unique identifier of the login attempt.
        **context : Any
            Additional context.
        """
        super().__init__(message, flow_id=flow_id, timeout=timeout, **context)
        self.timeout = timeout


class AuthFlowCancelled(AuthenticationError):
    """Login was aborted by the caller (e.g. the user closed the tab)."""


class LoginInProgressError(AuthenticationError):
    """``begin_login`` was called while another login is outstanding."""


class NotAuthenticatedError(AuthenticationError):
    """No token set is available; the caller must log in first."""


class TokenError(AuthenticationError):
    """Base exception for token-related failures.

    Raised when the token endpoint answers with something unusable.
    """


class InvalidGrant(TokenError):
    """The provider rejected the grant (``invalid_grant``, ``invalid_client``).

    Not retryable. The stored refresh token is discarded and a full
    re-login is required.
    """

    def __init__(
        self,
        message: str,
        error: str | None = None,
        **context: Any,
    ) -> None:
        """Initialize invalid grant error.

        Parameters
        ----------
        message : str
            Human-readable error message.
        error : str, optional
            The OAuth error code returned by the token endpoint.
        **context : Any
            Additional context.
        """
        super().__init__(message, error=error, **context)
        self.error = error
