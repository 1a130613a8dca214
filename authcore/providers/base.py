from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import urlencode, urlparse

import httpx

from authcore.logging import get_logger
from authcore.providers.jwks import JwksCache, verify_id_token
from authcore.service.errors import (
    ConfigError,
    OAuth2Error,
    ProviderHttpError,
    ProviderTimeout,
)

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class ProviderKind(str, Enum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"
    APPLE = "apple"


def _dedupe(scopes: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for scope in scopes:
        scope = scope.strip()
        if scope:
            seen.setdefault(scope, None)
    return tuple(seen)


@dataclass(frozen=True)
class ProviderConfig:
    """Credentials and endpoints for one identity provider."""

    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: tuple[str, ...] = ()
    auth_url: Optional[str] = None
    token_url: Optional[str] = None
    userinfo_url: Optional[str] = None
    jwks_url: Optional[str] = None
    extra_params: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "scopes", _dedupe(self.scopes))
        object.__setattr__(self, "extra_params", MappingProxyType(dict(self.extra_params)))

    def validate(self, provider: str) -> None:
        if not self.client_id:
            raise ConfigError(f"{provider}: client_id cannot be empty")
        if not self.client_secret and provider != ProviderKind.APPLE.value:
            raise ConfigError(f"{provider}: client_secret cannot be empty")
        if not self.redirect_uri:
            raise ConfigError(f"{provider}: redirect_uri cannot be empty")
        parsed = urlparse(self.redirect_uri)
        if not parsed.scheme or not parsed.netloc:
            raise ConfigError(f"{provider}: redirect_uri is not a valid URL")
        if provider == ProviderKind.APPLE.value:
            for key in ("team_id", "key_id", "private_key"):
                if not self.extra_params.get(key):
                    raise ConfigError(f"apple: {key} is required")

    def with_scopes(self, scopes: Iterable[str]) -> "ProviderConfig":
        return ProviderConfig(
            client_id=self.client_id,
            client_secret=self.client_secret,
            redirect_uri=self.redirect_uri,
            scopes=tuple(scopes),
            auth_url=self.auth_url,
            token_url=self.token_url,
            userinfo_url=self.userinfo_url,
            jwks_url=self.jwks_url,
            extra_params=dict(self.extra_params),
        )


@dataclass
class TokenResponse:
    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None

    @classmethod
    def from_json(cls, payload: Any, provider: str) -> "TokenResponse":
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise OAuth2Error(f"{provider}: token response missing access_token")
        expires_in = payload.get("expires_in")
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None
        return cls(
            access_token=payload["access_token"],
            token_type=payload.get("token_type") or "Bearer",
            expires_in=expires_in,
            refresh_token=payload.get("refresh_token"),
            id_token=payload.get("id_token"),
            scope=payload.get("scope"),
        )


@dataclass
class IdentityClaims:
    """Provider-neutral user identity produced once per login."""

    provider_user_id: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    picture: Optional[str] = None
    locale: Optional[str] = None
    raw_claims: dict = field(default_factory=dict)


class BaseProvider:
    """Shared HTTP plumbing for the provider clients.

    Every outbound call opens a short-lived ``httpx.AsyncClient`` with a hard
    timeout. ``transport`` exists so tests can plug in ``httpx.MockTransport``.
    """

    kind: ProviderKind

    def __init__(
        self,
        config: ProviderConfig,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        jwks_cache: Optional[JwksCache] = None,
    ) -> None:
        config.validate(self.kind.value)
        self.config = config
        self.timeout = timeout
        self._transport = transport
        self.jwks_cache = jwks_cache or JwksCache()
        self.logger = logger.bind(provider=self.kind.value)

    @property
    def name(self) -> str:
        return self.kind.value

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def _build_url(self, base_url: str, params: Mapping[str, str]) -> str:
        parsed = urlparse(base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ConfigError(f"{self.name}: invalid authorization endpoint {base_url!r}")
        separator = "&" if parsed.query else "?"
        return f"{base_url}{separator}{urlencode(params)}"

    def _append_extra_params(
        self, params: dict[str, str], excluded: Iterable[str] = ()
    ) -> None:
        skip = set(excluded)
        for key, value in self.config.extra_params.items():
            if key not in skip and key not in params:
                params[key] = value

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        data: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        request_headers = {"Accept": "application/json", **(headers or {})}
        try:
            async with self._client() as client:
                response = await client.request(
                    method, url, data=data, headers=request_headers
                )
        except httpx.TimeoutException as exc:
            self.logger.error("provider_timeout", operation=operation, error=str(exc))
            raise ProviderTimeout() from exc
        except httpx.HTTPError as exc:
            self.logger.error("provider_http_error", operation=operation, error=str(exc))
            raise ProviderHttpError(f"{self.name}: {operation} request failed") from exc

        if not response.is_success:
            self.logger.error(
                "provider_error_response",
                operation=operation,
                status_code=response.status_code,
                body=response.text[:1000],
            )
            raise OAuth2Error(
                f"{self.name}: {operation} failed with status {response.status_code}",
                status=response.status_code,
                body=response.text,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            self.logger.error("provider_json_parse_error", operation=operation, error=str(exc))
            raise OAuth2Error(
                f"{self.name}: {operation} returned invalid JSON",
                status=response.status_code,
                body=response.text,
            ) from exc

    async def _post_token_request(self, form: dict[str, str], operation: str) -> TokenResponse:
        payload = await self._request_json(
            "POST", self.token_url, operation=operation, data=form
        )
        return TokenResponse.from_json(payload, self.name)

    @property
    def token_url(self) -> str:
        raise NotImplementedError

    @property
    def jwks_url(self) -> str:
        raise NotImplementedError

    def allowed_issuers(self) -> tuple[str, ...]:
        raise NotImplementedError

    async def _fetch_jwks(self, url: str) -> Any:
        return await self._request_json("GET", url, operation="jwks")

    async def _verify_id_token(self, id_token: str) -> dict:
        return await verify_id_token(
            id_token,
            jwks_url=self.jwks_url,
            cache=self.jwks_cache,
            fetch=self._fetch_jwks,
            audience=self.config.client_id,
            issuers=self.allowed_issuers(),
        )

    async def _get_userinfo(self, url: str, access_token: str) -> dict:
        payload = await self._request_json(
            "GET",
            url,
            operation="userinfo",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if not isinstance(payload, dict):
            raise OAuth2Error(f"{self.name}: userinfo response is not an object")
        return payload

    async def revoke_token(self, token: str) -> None:
        """Revoke ``token`` upstream; providers without revocation do nothing."""
        return None


def reattach_refresh_token(response: TokenResponse, refresh_token: str) -> TokenResponse:
    if not response.refresh_token:
        response.refresh_token = refresh_token
    return response


def claim_bool(value: Any) -> bool:
    """Interpret an ``email_verified`` style claim.

    Providers emit either JSON booleans or the strings ``"true"``/``"false"``.
    Anything else counts as false.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False
