from __future__ import annotations

import base64
import binascii
import hashlib
import os
import secrets
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from authcore.logging import get_logger
from authcore.service.errors import ConfigError

logger = get_logger(__name__)


class SameSitePolicy(str, Enum):
    STRICT = "strict"
    LAX = "lax"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    # Sessions
    session_timeout_seconds: int = env_field(
        3600, "SESSION_TIMEOUT", description="Session lifetime in seconds (60s to 7 days)"
    )
    max_concurrent_sessions: int = env_field(
        3, "MAX_CONCURRENT_SESSIONS", description="Live sessions allowed per user (1-10)"
    )
    session_encryption_key: Optional[str] = env_field(
        None,
        "SESSION_ENCRYPTION_KEY",
        description="Base64 32-byte AES key; other strings are stretched with SHA-256",
    )
    strict_ip_validation: bool = env_field(False, "STRICT_IP_VALIDATION")

    # Cookie
    cookie_name: str = env_field("auth_session", "SESSION_COOKIE_NAME")
    cookie_domain: Optional[str] = env_field(None, "SESSION_COOKIE_DOMAIN")
    cookie_path: str = env_field("/", "SESSION_COOKIE_PATH")
    cookie_secure: bool = env_field(False, "SESSION_COOKIE_SECURE")
    cookie_http_only: bool = env_field(True, "SESSION_COOKIE_HTTP_ONLY")
    cookie_same_site: SameSitePolicy = env_field(SameSitePolicy.LAX, "SESSION_COOKIE_SAMESITE")

    # Identity providers
    oauth_redirect_base: str = env_field("http://localhost:8000", "OAUTH_REDIRECT_BASE")
    oauth_google_client_id: Optional[str] = env_field(None, "OAUTH_GOOGLE_CLIENT_ID")
    oauth_google_client_secret: Optional[str] = env_field(None, "OAUTH_GOOGLE_CLIENT_SECRET")
    oauth_google_scopes: Optional[str] = env_field(None, "OAUTH_GOOGLE_SCOPES")
    oauth_microsoft_client_id: Optional[str] = env_field(None, "OAUTH_MICROSOFT_CLIENT_ID")
    oauth_microsoft_client_secret: Optional[str] = env_field(
        None, "OAUTH_MICROSOFT_CLIENT_SECRET"
    )
    oauth_microsoft_tenant_id: str = env_field("common", "OAUTH_MICROSOFT_TENANT_ID")
    oauth_microsoft_scopes: Optional[str] = env_field(None, "OAUTH_MICROSOFT_SCOPES")
    oauth_apple_client_id: Optional[str] = env_field(None, "OAUTH_APPLE_CLIENT_ID")
    oauth_apple_team_id: Optional[str] = env_field(None, "OAUTH_APPLE_TEAM_ID")
    oauth_apple_key_id: Optional[str] = env_field(None, "OAUTH_APPLE_KEY_ID")
    oauth_apple_private_key: Optional[str] = env_field(
        None,
        "OAUTH_APPLE_PRIVATE_KEY",
        description="ES256 PEM contents or a path to a .p8/.pem file",
    )
    oauth_apple_scopes: Optional[str] = env_field(None, "OAUTH_APPLE_SCOPES")
    provider_timeout_seconds: float = env_field(30.0, "PROVIDER_TIMEOUT_SECONDS")
    jwks_cache_ttl_seconds: int = env_field(3600, "JWKS_CACHE_TTL_SECONDS")

    # Users
    bootstrap_admins: list[str] = env_field(
        [],
        "BOOTSTRAP_ADMINS",
        description="Comma separated emails promoted to admin on first login",
    )

    # Storage
    use_memory_store: bool = env_field(True, "USE_MEMORY_STORE")
    database_url: str = env_field("postgresql://localhost:5432/authcore", "DATABASE_URL")
    redis_url: Optional[str] = env_field(None, "REDIS_URL")

    # Abuse protection
    auth_rate_limit_per_minute: int = env_field(60, "AUTH_RATE_LIMIT_PER_MINUTE")
    state_secret: Optional[str] = env_field(None, "OAUTH_STATE_SECRET")
    state_ttl_seconds: int = env_field(600, "OAUTH_STATE_TTL_SECONDS")

    # Local authorization server
    issuer_url: str = env_field("http://localhost:8000", "ISSUER_URL")
    authorization_code_ttl_seconds: int = env_field(600, "AUTHORIZATION_CODE_TTL_SECONDS")
    require_pkce: bool = env_field(False, "REQUIRE_PKCE")
    login_path: str = env_field("/auth/login", "LOGIN_PATH")
    cleanup_interval_seconds: int = env_field(300, "SESSION_CLEANUP_INTERVAL_SECONDS")

    # HTTP surface
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        try:
            return cls(**merged)
        except ValidationError as exc:
            raise ConfigError(
                "invalid configuration", detail={"errors": [err["msg"] for err in exc.errors()]}
            ) from exc

    @field_validator("session_timeout_seconds")
    @classmethod
    def _validate_session_timeout(cls, value: int) -> int:
        if value < 60:
            raise ValueError("session_timeout_seconds must be at least 60 seconds")
        if value > 86400 * 7:
            raise ValueError("session_timeout_seconds must not exceed 7 days")
        return value

    @field_validator("max_concurrent_sessions")
    @classmethod
    def _validate_max_sessions(cls, value: int) -> int:
        if value < 1 or value > 10:
            raise ValueError("max_concurrent_sessions must be between 1 and 10")
        return value

    @field_validator("cookie_name")
    @classmethod
    def _validate_cookie_name(cls, value: str) -> str:
        if not value:
            raise ValueError("cookie_name cannot be empty")
        return value

    @field_validator("cookie_same_site", mode="before")
    @classmethod
    def _validate_same_site(cls, value: Any) -> SameSitePolicy:
        if isinstance(value, str):
            return SameSitePolicy(value.strip().lower())
        return SameSitePolicy(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [origin.strip() for origin in value if origin and origin.strip()]

    @field_validator("bootstrap_admins", mode="before")
    @classmethod
    def _split_bootstrap_admins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        return [email.strip().lower() for email in value if email and email.strip()]

    def session_key_bytes(self) -> bytes:
        """Return the 32-byte AES-256-GCM key for session encryption."""

        raw = self.session_encryption_key
        if not raw:
            # Sessions will not survive a restart without a configured key
            logger.warning("session_encryption_key_generated")
            return secrets.token_bytes(32)
        try:
            decoded = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
        except (binascii.Error, ValueError):
            decoded = b""
        if len(decoded) == 32:
            return decoded
        return hashlib.sha256(raw.encode()).digest()

    def state_key_bytes(self) -> bytes:
        if self.state_secret:
            return hashlib.sha256(self.state_secret.encode()).digest()
        return secrets.token_bytes(32)

    def apple_private_key_pem(self) -> Optional[str]:
        value = self.oauth_apple_private_key
        if not value:
            return None
        if "BEGIN" in value:
            return value.replace("\\n", "\n")
        path = Path(value)
        if path.is_file():
            return path.read_text()
        return value

    def redirect_uri_for(self, provider: str) -> str:
        return f"{self.oauth_redirect_base.rstrip('/')}/auth/callback/{provider}"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
