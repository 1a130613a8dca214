"""Tests for the stateless OAuth2 state codec."""

import pytest

from authcore.service.csrf import CsrfStateCodec

KEY = b"k" * 32


@pytest.fixture
def codec():
    return CsrfStateCodec(KEY, ttl_seconds=600)


class TestStateValidation:
    def test_round_trip(self, codec):
        state = codec.create_state("google", "1.2.3.4")
        assert codec.validate_state(state, "google", "1.2.3.4")

    def test_wrong_provider_rejected(self, codec):
        state = codec.create_state("google", "1.2.3.4")
        assert not codec.validate_state(state, "microsoft", "1.2.3.4")

    def test_wrong_ip_rejected(self, codec):
        state = codec.create_state("google", "1.2.3.4")
        assert not codec.validate_state(state, "google", "5.6.7.8")

    def test_tampered_state_rejected(self, codec):
        state = codec.create_state("google", "1.2.3.4")
        tampered = "apple" + state[len("google"):]
        assert not codec.validate_state(tampered, "apple", "1.2.3.4")
        flipped = state[:-1] + ("0" if state[-1] != "0" else "1")
        assert not codec.validate_state(flipped, "google", "1.2.3.4")

    def test_expired_state_rejected(self):
        codec = CsrfStateCodec(KEY, ttl_seconds=-1)
        state = codec.create_state("google", "1.2.3.4")
        assert not codec.validate_state(state, "google", "1.2.3.4")

    def test_state_from_other_key_rejected(self, codec):
        other = CsrfStateCodec(b"x" * 32)
        state = other.create_state("google", "1.2.3.4")
        assert not codec.validate_state(state, "google", "1.2.3.4")

    @pytest.mark.parametrize("garbage", ["", "no-dots", "a.b.c", "é.é.é.é.é"])
    def test_garbage_rejected(self, codec, garbage):
        assert not codec.validate_state(garbage, "google", "1.2.3.4")

    def test_short_key_refused(self):
        with pytest.raises(ValueError):
            CsrfStateCodec(b"short")


class TestRedirectExtraction:
    def test_redirect_round_trip(self, codec):
        state = codec.create_state("apple", "::1", "/oauth2/authorize?client_id=x&state=y")
        assert codec.validate_state(state, "apple", "::1")
        assert codec.extract_redirect(state) == "/oauth2/authorize?client_id=x&state=y"

    def test_no_redirect(self, codec):
        state = codec.create_state("google", "1.2.3.4")
        assert codec.extract_redirect(state) is None

    def test_redirect_requires_valid_signature(self, codec):
        state = codec.create_state("google", "1.2.3.4", "/dashboard")
        assert codec.extract_redirect(state + "0") is None

    def test_provider_hint(self):
        assert CsrfStateCodec.provider_from_state("google.abc.def") == "google"
        assert CsrfStateCodec.provider_from_state("nodots") is None
