"""Tests for PKCE verifier/challenge generation."""

from __future__ import annotations

import pytest

from malauth.auth.pkce import (
    MAX_VERIFIER_LENGTH,
    MIN_VERIFIER_LENGTH,
    VERIFIER_ALPHABET,
    PKCEChallenge,
    derive_challenge,
    generate_state,
)


class TestPKCEChallenge:
    """Tests for PKCEChallenge.generate."""

    def test_default_is_plain_with_full_length(self) -> None:
        """Default pair uses the method MAL accepts and a 128-char verifier."""
        pkce = PKCEChallenge.generate()
        assert pkce.method == "plain"
        assert len(pkce.verifier) == MAX_VERIFIER_LENGTH
        assert pkce.challenge == pkce.verifier

    @pytest.mark.parametrize("length", [MIN_VERIFIER_LENGTH, 64, MAX_VERIFIER_LENGTH])
    def test_verifier_length_and_alphabet(self, length: int) -> None:
        """Verifiers have the requested length and only unreserved characters."""
        for _ in range(20):
            pkce = PKCEChallenge.generate(length=length)
            assert len(pkce.verifier) == length
            assert set(pkce.verifier) <= set(VERIFIER_ALPHABET)

    @pytest.mark.parametrize("length", [0, MIN_VERIFIER_LENGTH - 1, MAX_VERIFIER_LENGTH + 1])
    def test_out_of_range_length_rejected(self, length: int) -> None:
        """Lengths outside 43..128 raise ValueError."""
        with pytest.raises(ValueError, match="43-128"):
            PKCEChallenge.generate(length=length)

    def test_verifiers_are_unique(self) -> None:
        """Each attempt gets a fresh verifier."""
        verifiers = {PKCEChallenge.generate().verifier for _ in range(50)}
        assert len(verifiers) == 50

    def test_s256_challenge_derived_from_verifier(self) -> None:
        """S256 challenges are the hashed verifier."""
        pkce = PKCEChallenge.generate(method="S256")
        assert pkce.method == "S256"
        assert pkce.challenge == derive_challenge(pkce.verifier, "S256")
        assert pkce.challenge != pkce.verifier
        assert "=" not in pkce.challenge

    def test_repr_hides_verifier(self) -> None:
        """The verifier never shows up in repr output."""
        pkce = PKCEChallenge.generate(method="S256")
        assert pkce.verifier not in repr(pkce)


class TestDeriveChallenge:
    """Tests for derive_challenge."""

    def test_rfc7636_s256_vector(self) -> None:
        """Matches the example in RFC 7636 appendix B."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert derive_challenge(verifier, "S256") == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_plain_is_identity(self) -> None:
        """Plain challenges equal the verifier."""
        assert derive_challenge("abc", "plain") == "abc"

    def test_deterministic(self) -> None:
        """Same verifier, same challenge."""
        verifier = PKCEChallenge.generate().verifier
        assert derive_challenge(verifier, "S256") == derive_challenge(verifier, "S256")

    def test_unknown_method(self) -> None:
        """Unsupported methods raise ValueError."""
        with pytest.raises(ValueError, match="Unsupported"):
            derive_challenge("abc", "S512")  # type: ignore[arg-type]


class TestGenerateState:
    """Tests for generate_state."""

    def test_state_is_random_and_url_safe(self) -> None:
        """States are unique and need no URL escaping."""
        states = {generate_state() for _ in range(50)}
        assert len(states) == 50
        for state in states:
            assert len(state) >= 32
            assert set(state) <= set(VERIFIER_ALPHABET)
