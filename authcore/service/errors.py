from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that is returned in the error envelope:
    - validation_error (400)
    - unauthorized and the session_* codes (401)
    - rate_limited (429)
    - provider_unavailable (502) and timeout (504)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


# -- authentication taxonomy -------------------------------------------------


class AuthError(ServiceError):
    """Base class for login, provider and session failures."""

    status_code = 400
    error_code = "auth_error"

    @property
    def retryable(self) -> bool:
        return False


class ConfigError(AuthError):
    """Provider or session configuration is invalid (fatal at startup)."""
    status_code = 500
    error_code = "config_error"


class OAuth2Error(AuthError):
    """Identity provider rejected a request.

    ``status`` and ``body`` hold the upstream response for logging; they are
    never rendered to the browser.
    """

    status_code = 400
    error_code = "oauth2_error"

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        body: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message, detail=detail)
        self.status = status
        self.body = body


class ProviderHttpError(AuthError):
    """Transport-level failure talking to a provider."""
    status_code = 502
    error_code = "provider_unavailable"

    @property
    def retryable(self) -> bool:
        return True


class ProviderTimeout(AuthError):
    """Provider did not answer within the configured timeout."""
    status_code = 504
    error_code = "timeout"

    def __init__(self, message: str = "provider communication timeout", **kwargs) -> None:
        super().__init__(message, **kwargs)

    @property
    def retryable(self) -> bool:
        return True


class JwtError(AuthError):
    """ID token could not be decoded or verified."""
    status_code = 401
    error_code = "invalid_token"


class InvalidState(AuthError):
    """CSRF state parameter failed validation."""
    status_code = 400
    error_code = "invalid_state"

    def __init__(self, message: str = "invalid OAuth2 state parameter", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnsupportedProvider(AuthError):
    status_code = 400
    error_code = "unsupported_provider"

    def __init__(self, provider: str) -> None:
        super().__init__(
            f"unsupported OAuth2 provider: {provider}", detail={"provider": provider}
        )
        self.provider = provider


class RateLimitExceeded(AuthError):
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self, message: str = "rate limit exceeded", *, retry_after: Optional[int] = None
    ) -> None:
        detail = {"retry_after": retry_after} if retry_after else None
        super().__init__(message, detail=detail)
        self.retry_after = retry_after


class EmailNotVerified(AuthError):
    status_code = 401
    error_code = "email_not_verified"


class AuthenticationFailed(AuthError):
    """Generic login failure shown to the browser."""
    status_code = 401
    error_code = "authentication_failed"


class SessionError(AuthError):
    status_code = 401
    error_code = "unauthorized"


class SessionNotFound(SessionError):
    error_code = "session_not_found"

    def __init__(self, message: str = "session not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpired(SessionError):
    error_code = "session_expired"

    def __init__(self, message: str = "session expired, please log in again", **kwargs) -> None:
        super().__init__(message, **kwargs)


class DecryptionError(SessionError):
    error_code = "session_corrupt"

    def __init__(self, message: str = "session could not be decrypted", **kwargs) -> None:
        super().__init__(message, **kwargs)


class FingerprintMismatch(SessionError):
    error_code = "session_hijack_suspected"

    def __init__(self, message: str = "session fingerprint mismatch", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidSession(SessionError):
    """Session exists but is not valid for the requested resource."""
    error_code = "invalid_session"


# -- RFC 6749 protocol errors -------------------------------------------------


class OAuthProtocolError(Exception):
    """Error rendered verbatim as an RFC 6749 ``error`` body."""

    error = "invalid_request"
    status_code = 400

    def __init__(self, description: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(description)
        self.description = description
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}


class InvalidRequest(OAuthProtocolError):
    error = "invalid_request"


class InvalidGrant(OAuthProtocolError):
    error = "invalid_grant"


class UnsupportedGrantType(OAuthProtocolError):
    error = "unsupported_grant_type"


class UnsupportedResponseType(OAuthProtocolError):
    error = "unsupported_response_type"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthError",
    "ConfigError",
    "OAuth2Error",
    "ProviderHttpError",
    "ProviderTimeout",
    "JwtError",
    "InvalidState",
    "UnsupportedProvider",
    "RateLimitExceeded",
    "EmailNotVerified",
    "AuthenticationFailed",
    "SessionError",
    "SessionNotFound",
    "SessionExpired",
    "DecryptionError",
    "FingerprintMismatch",
    "InvalidSession",
    "OAuthProtocolError",
    "InvalidRequest",
    "InvalidGrant",
    "UnsupportedGrantType",
    "UnsupportedResponseType",
]
