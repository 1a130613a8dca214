from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Stable error codes returned in the envelope
_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "forbidden",
    "not_found",
    "conflict",
    "rate_limited",
    "server_error",
    "auth_error",
    "config_error",
    "oauth2_error",
    "provider_unavailable",
    "timeout",
    "invalid_token",
    "invalid_state",
    "unsupported_provider",
    "email_not_verified",
    "authentication_failed",
    "session_not_found",
    "session_expired",
    "session_corrupt",
    "session_hijack_suspected",
    "invalid_session",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class ProvidersResponse(BaseModel):
    providers: List[str]


class AuthStatusResponse(BaseModel):
    authenticated: bool
    user_id: Optional[str] = None
    is_admin: bool = False
    is_editor: bool = False
    provider: Optional[str] = None
    login_url: Optional[str] = None


class CallbackErrorResponse(BaseModel):
    """Body returned when a provider callback cannot complete a login."""

    error: str = "authentication_failed"
    message: str
    error_description: Optional[str] = None


class TokenResponseBody(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str = ""


class OAuthErrorBody(BaseModel):
    error: str
    error_description: Optional[str] = None


class SessionInfoResponse(BaseModel):
    """The bearer session behind a protected request."""

    user_id: str
    provider: str
    is_admin: bool
    is_editor: bool
    audience: Optional[str] = None
    expires_at: datetime


class UserSummary(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    provider: Optional[str] = None
    is_admin: bool = False
    is_editor: bool = False
