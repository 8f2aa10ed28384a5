"""PKCE (Proof Key for Code Exchange) implementation.

RFC 7636 - Proof Key for Code Exchange for OAuth 2.0 public clients.
MyAnimeList only supports the ``plain`` method, where the challenge is
the verifier itself; ``S256`` (SHA-256 of the verifier) is available for
providers that require it.
"""

from __future__ import annotations

import hashlib
import secrets
import string

from base64 import urlsafe_b64encode
from dataclasses import dataclass, field
from typing import Literal


ChallengeMethod = Literal["plain", "S256"]

# RFC 7636 section 4.1: unreserved characters, 43 to 128 of them.
VERIFIER_ALPHABET = string.ascii_letters + string.digits + "-._~"
MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128


def derive_challenge(verifier: str, method: ChallengeMethod = "plain") -> str:
    """Derive the code challenge sent to the authorization endpoint.

    Parameters
    ----------
    verifier : str
        The code verifier.
    method : {"plain", "S256"}
        The challenge method.

    Returns
    -------
    str
        The verifier itself for ``plain``, or its base64url SHA-256
        digest without padding for ``S256``.
    """
    if method == "plain":
        return verifier
    if method == "S256":
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    msg = f"Unsupported PKCE challenge method: {method}"
    raise ValueError(msg)


def generate_state() -> str:
    """Generate a random anti-CSRF state token."""
    return secrets.token_urlsafe(32)


@dataclass(frozen=True)
class PKCEChallenge:
    """PKCE code verifier and challenge pair.

    Attributes
    ----------
    verifier : str
        The code verifier (high-entropy random string). Only sent with
        the final code exchange.
    challenge : str
        The code challenge derived from the verifier.
    method : str
        The challenge method, "plain" or "S256".
    """

    verifier: str = field(repr=False)
    challenge: str
    method: ChallengeMethod = "plain"

    @classmethod
    def generate(
        cls,
        length: int = MAX_VERIFIER_LENGTH,
        method: ChallengeMethod = "plain",
    ) -> PKCEChallenge:
        """Generate a new PKCE code verifier and challenge.

        Parameters
        ----------
        length : int
            Number of characters in the verifier (43 to 128, default 128).
        method : {"plain", "S256"}
            The challenge method (default "plain").

        Returns
        -------
        PKCEChallenge
            A new PKCE challenge pair.
        """
        if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
            msg = (
                f"PKCE verifier length must be {MIN_VERIFIER_LENGTH}-"
                f"{MAX_VERIFIER_LENGTH} characters, got {length}"
            )
            raise ValueError(msg)
        verifier = "".join(secrets.choice(VERIFIER_ALPHABET) for _ in range(length))
        return cls(verifier=verifier, challenge=derive_challenge(verifier, method), method=method)
