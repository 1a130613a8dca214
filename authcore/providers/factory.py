from __future__ import annotations

from typing import Dict, Optional, Union

import httpx

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.providers.apple import AppleProvider
from authcore.providers.base import ProviderConfig, ProviderKind
from authcore.providers.google import GoogleProvider
from authcore.providers.jwks import JwksCache
from authcore.providers.microsoft import MicrosoftProvider
from authcore.service.errors import UnsupportedProvider

logger = get_logger(__name__)

ProviderClient = Union[GoogleProvider, MicrosoftProvider, AppleProvider]

# Display and iteration order for every provider listing
PROVIDER_ORDER = (ProviderKind.GOOGLE, ProviderKind.MICROSOFT, ProviderKind.APPLE)


def build_provider(
    kind: ProviderKind | str,
    config: ProviderConfig,
    *,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    jwks_cache: Optional[JwksCache] = None,
) -> ProviderClient:
    try:
        kind = ProviderKind(kind)
    except ValueError as exc:
        raise UnsupportedProvider(str(kind)) from exc
    kwargs = {"timeout": timeout, "transport": transport, "jwks_cache": jwks_cache}
    if kind is ProviderKind.GOOGLE:
        return GoogleProvider(config, **kwargs)
    if kind is ProviderKind.MICROSOFT:
        return MicrosoftProvider(config, **kwargs)
    if kind is ProviderKind.APPLE:
        return AppleProvider(config, **kwargs)
    raise UnsupportedProvider(kind.value)


def _scopes(raw: Optional[str]) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(raw.replace(",", " ").split())


def provider_configs_from_settings(settings: Settings) -> Dict[ProviderKind, ProviderConfig]:
    """Return configs for every provider whose client id is set."""

    configs: Dict[ProviderKind, ProviderConfig] = {}
    if settings.oauth_google_client_id:
        configs[ProviderKind.GOOGLE] = ProviderConfig(
            client_id=settings.oauth_google_client_id,
            client_secret=settings.oauth_google_client_secret or "",
            redirect_uri=settings.redirect_uri_for(ProviderKind.GOOGLE.value),
            scopes=_scopes(settings.oauth_google_scopes),
        )
    if settings.oauth_microsoft_client_id:
        configs[ProviderKind.MICROSOFT] = ProviderConfig(
            client_id=settings.oauth_microsoft_client_id,
            client_secret=settings.oauth_microsoft_client_secret or "",
            redirect_uri=settings.redirect_uri_for(ProviderKind.MICROSOFT.value),
            scopes=_scopes(settings.oauth_microsoft_scopes),
            extra_params={"tenant_id": settings.oauth_microsoft_tenant_id},
        )
    if settings.oauth_apple_client_id:
        configs[ProviderKind.APPLE] = ProviderConfig(
            client_id=settings.oauth_apple_client_id,
            client_secret="",
            redirect_uri=settings.redirect_uri_for(ProviderKind.APPLE.value),
            scopes=_scopes(settings.oauth_apple_scopes),
            extra_params={
                "team_id": settings.oauth_apple_team_id or "",
                "key_id": settings.oauth_apple_key_id or "",
                "private_key": settings.apple_private_key_pem() or "",
            },
        )
    return configs


def providers_from_settings(
    settings: Settings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, ProviderClient]:
    """Build every configured provider; a broken config fails startup."""

    configs = provider_configs_from_settings(settings)
    jwks_cache = JwksCache(ttl_seconds=settings.jwks_cache_ttl_seconds)
    providers: Dict[str, ProviderClient] = {}
    for kind in PROVIDER_ORDER:
        config = configs.get(kind)
        if config is None:
            continue
        providers[kind.value] = build_provider(
            kind,
            config,
            timeout=settings.provider_timeout_seconds,
            transport=transport,
            jwks_cache=jwks_cache,
        )
        logger.info("oauth_provider_configured", provider=kind.value)
    if not providers:
        logger.warning("oauth_no_providers_configured")
    return providers
