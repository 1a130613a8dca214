from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

import httpx

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.providers.factory import providers_from_settings
from authcore.service.audit import SecurityAuditor
from authcore.service.authorization import LocalAuthorizationServer
from authcore.service.csrf import CsrfStateCodec
from authcore.service.orchestrator import AuthOrchestrator
from authcore.service.rate_limit import RateLimiter
from authcore.service.sessions import SessionStore
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the singleton auth components for the FastAPI app.

    Every component receives its collaborators explicitly; nothing below
    reaches back into this object.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        provider_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(bootstrap_admins=self.settings.bootstrap_admins)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    bootstrap_admins=self.settings.bootstrap_admins,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Running without Redis; login rate limits are per process.",
                )

        self.auditor = SecurityAuditor()
        self.rate_limiter = RateLimiter(
            limit=self.settings.auth_rate_limit_per_minute,
            window_seconds=60,
            cache=self.cache,
        )
        self.csrf = CsrfStateCodec(
            self.settings.state_key_bytes(), ttl_seconds=self.settings.state_ttl_seconds
        )
        self.sessions = SessionStore(
            self.settings.session_key_bytes(),
            session_timeout=timedelta(seconds=self.settings.session_timeout_seconds),
            max_concurrent_sessions=self.settings.max_concurrent_sessions,
            strict_ip_validation=self.settings.strict_ip_validation,
            auditor=self.auditor,
        )
        self.providers = providers_from_settings(
            self.settings, transport=provider_transport
        )
        self.auth = AuthOrchestrator(
            self.providers,
            self.sessions,
            self.csrf,
            self.rate_limiter,
            self.auditor,
            self.store,
        )
        self.authorization_server = LocalAuthorizationServer(
            self.store,
            self.sessions,
            code_ttl=timedelta(seconds=self.settings.authorization_code_ttl_seconds),
            login_path=self.settings.login_path,
            require_pkce=self.settings.require_pkce,
        )

        logger.info(
            "runtime_initialized",
            providers=list(self.providers),
            redis_enabled=self.cache is not None,
            store_type="memory" if self.settings.use_memory_store else "postgres",
        )

    def run_maintenance(self) -> tuple[int, int, int]:
        """Sweep expired sessions and authorization codes, and idle rate-limit buckets."""

        sessions_removed = self.sessions.cleanup_expired_sessions()
        codes_removed = self.authorization_server.sweep_expired_codes()
        buckets_removed = self.rate_limiter.prune_idle()
        return sessions_removed, codes_removed, buckets_removed

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(**kwargs) -> Runtime:
    """Rebuild the runtime from a fresh environment read (TEST_MODE only)."""

    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings, **kwargs)
        return runtime
