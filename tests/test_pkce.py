"""Unit tests for the RFC 7636 helpers."""

import pytest

from authcore.service.pkce import (
    METHOD_PLAIN,
    METHOD_S256,
    PkcePair,
    generate_code_challenge,
    generate_code_verifier,
    is_valid_code_verifier,
    verify_code_challenge,
)


class TestCodeVerifier:
    def test_generated_verifier_is_within_bounds(self):
        for _ in range(20):
            verifier = generate_code_verifier()
            assert 43 <= len(verifier) <= 128
            assert is_valid_code_verifier(verifier)

    def test_explicit_length(self):
        assert len(generate_code_verifier(64)) == 64

    @pytest.mark.parametrize("length", [42, 129])
    def test_rejects_out_of_range_length(self, length):
        with pytest.raises(ValueError):
            generate_code_verifier(length)

    def test_rejects_reserved_characters(self):
        assert not is_valid_code_verifier("a" * 42 + "+")
        assert not is_valid_code_verifier("short")


class TestCodeChallenge:
    def test_rfc7636_appendix_b_vector(self):
        """The worked example from RFC 7636 appendix B."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_s256_round_trip_and_mismatch(self):
        pair = PkcePair.generate()
        assert pair.verify(pair.code_verifier)
        assert not pair.verify(pair.code_verifier + "x")
        assert not verify_code_challenge("wrong" * 10, pair.code_challenge, METHOD_S256)

    def test_plain_method(self):
        verifier = generate_code_verifier()
        assert verify_code_challenge(verifier, verifier, METHOD_PLAIN)
        assert verify_code_challenge(verifier, verifier, None)
        assert not verify_code_challenge(verifier, verifier + "a", METHOD_PLAIN)

    def test_unknown_method_fails_closed(self):
        verifier = generate_code_verifier()
        assert not verify_code_challenge(verifier, verifier, "S512")

    def test_non_ascii_verifier_does_not_raise(self):
        assert not verify_code_challenge("é" * 50, "anything", METHOD_S256)
