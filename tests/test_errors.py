import pytest

from authcore.api.schemas import ErrorBody
from authcore.service.errors import (
    AuthenticationFailed,
    AuthError,
    ConfigError,
    DecryptionError,
    EmailNotVerified,
    FingerprintMismatch,
    InvalidGrant,
    InvalidRequest,
    InvalidSession,
    InvalidState,
    JwtError,
    OAuth2Error,
    ProviderHttpError,
    ProviderTimeout,
    RateLimitExceeded,
    SessionExpired,
    SessionNotFound,
    UnsupportedGrantType,
    UnsupportedProvider,
    UnsupportedResponseType,
)


class TestAuthErrorTaxonomy:
    @pytest.mark.parametrize(
        "exc, status",
        [
            (ConfigError("bad"), 500),
            (OAuth2Error("bad"), 400),
            (ProviderHttpError("bad"), 502),
            (ProviderTimeout(), 504),
            (JwtError("bad"), 401),
            (InvalidState(), 400),
            (UnsupportedProvider("github"), 400),
            (RateLimitExceeded(), 429),
            (EmailNotVerified("bad"), 401),
            (AuthenticationFailed("bad"), 401),
            (SessionNotFound(), 401),
            (SessionExpired(), 401),
            (DecryptionError(), 401),
            (FingerprintMismatch(), 401),
            (InvalidSession("bad"), 401),
        ],
    )
    def test_status_codes(self, exc, status):
        assert isinstance(exc, AuthError)
        assert exc.status_code == status

    def test_every_code_is_renderable(self):
        """Each error code must pass the envelope's allow-list."""
        for exc in (
            ConfigError("x"),
            OAuth2Error("x"),
            ProviderHttpError("x"),
            ProviderTimeout(),
            JwtError("x"),
            InvalidState(),
            UnsupportedProvider("x"),
            RateLimitExceeded(),
            EmailNotVerified("x"),
            AuthenticationFailed("x"),
            SessionNotFound(),
            SessionExpired(),
            DecryptionError(),
            FingerprintMismatch(),
            InvalidSession("x"),
        ):
            ErrorBody(code=exc.error_code, message=exc.message)

    def test_only_transport_failures_are_retryable(self):
        assert ProviderHttpError("down").retryable
        assert ProviderTimeout().retryable
        assert not OAuth2Error("rejected", status=400).retryable
        assert not JwtError("bad").retryable
        assert not SessionExpired().retryable

    def test_oauth2_error_keeps_upstream_response(self):
        exc = OAuth2Error("token exchange failed", status=400, body='{"error":"invalid_grant"}')
        assert exc.status == 400
        assert "invalid_grant" in exc.body
        assert "invalid_grant" not in str(exc)

    def test_rate_limit_retry_after(self):
        exc = RateLimitExceeded(retry_after=30)
        assert exc.retry_after == 30
        assert exc.detail == {"retry_after": 30}
        assert RateLimitExceeded().detail == {}

    def test_unsupported_provider_names_provider(self):
        exc = UnsupportedProvider("github")
        assert exc.provider == "github"
        assert "github" in exc.message


class TestOAuthProtocolErrors:
    @pytest.mark.parametrize(
        "cls, code",
        [
            (InvalidRequest, "invalid_request"),
            (InvalidGrant, "invalid_grant"),
            (UnsupportedGrantType, "unsupported_grant_type"),
            (UnsupportedResponseType, "unsupported_response_type"),
        ],
    )
    def test_rfc6749_body(self, cls, code):
        exc = cls("something went wrong")
        assert exc.status_code == 400
        assert exc.to_dict() == {"error": code, "error_description": "something went wrong"}

    def test_status_override(self):
        assert InvalidRequest("x", status_code=401).status_code == 401
