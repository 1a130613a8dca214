from __future__ import annotations

import asyncio
import uuid
from typing import Mapping, Optional, Tuple

from authcore.logging import get_logger
from authcore.providers.base import TokenResponse
from authcore.providers.factory import PROVIDER_ORDER, ProviderClient
from authcore.service.audit import SecurityAuditor, SecuritySeverity
from authcore.service.csrf import CsrfStateCodec
from authcore.service.errors import (
    AuthenticationFailed,
    AuthError,
    EmailNotVerified,
    InvalidState,
    RateLimitExceeded,
    SessionNotFound,
    UnsupportedProvider,
)
from authcore.service.rate_limit import RateLimiter
from authcore.service.sessions import SessionRecord, SessionStore
from authcore.storage.models import UserRepository

logger = get_logger(__name__)


class AuthOrchestrator:
    """Drives provider login, callback handling and session lifecycle.

    Ordering inside a callback is fixed: the state is validated before any
    code exchange, and the exchange completes before a session exists.
    Session store and repository calls are blocking and run in worker
    threads.
    """

    def __init__(
        self,
        providers: Mapping[str, ProviderClient],
        sessions: SessionStore,
        csrf: CsrfStateCodec,
        rate_limiter: RateLimiter,
        auditor: SecurityAuditor,
        users: UserRepository,
    ) -> None:
        self.providers = dict(providers)
        self.sessions = sessions
        self.csrf = csrf
        self.rate_limiter = rate_limiter
        self.auditor = auditor
        self.users = users

    def _provider(self, name: str) -> ProviderClient:
        provider = self.providers.get(name)
        if provider is None:
            raise UnsupportedProvider(name)
        return provider

    def list_providers(self) -> list[str]:
        return [kind.value for kind in PROVIDER_ORDER if kind.value in self.providers]

    async def start_login(
        self, provider: str, client_ip: str, redirect: Optional[str] = None
    ) -> Tuple[str, str]:
        client = self._provider(provider)
        state = self.csrf.create_state(provider, client_ip, redirect)
        nonce = f"nonce_{uuid.uuid4()}"
        url = client.authorization_url(state, nonce=nonce)
        self.auditor.log_auth_attempt(provider, client_ip)
        logger.info("oauth_login_started", provider=provider)
        return url, state

    def extract_redirect(self, state: str) -> Optional[str]:
        return self.csrf.extract_redirect(state)

    def _audit_failure_later(
        self,
        provider: str,
        reason: str,
        client_ip: str,
        severity: SecuritySeverity = SecuritySeverity.MEDIUM,
    ) -> None:
        # Audit off the failure path; the caller re-raises immediately
        asyncio.get_running_loop().call_soon(
            lambda: self.auditor.log_auth_failure(provider, reason, client_ip, severity=severity)
        )

    async def handle_callback(
        self,
        provider: str,
        code: str,
        state: str,
        client_ip: str,
        user_agent: str,
    ) -> str:
        client = self._provider(provider)

        if not self.csrf.validate_state(state, provider, client_ip):
            self.auditor.log_auth_failure(
                provider, "invalid_state", client_ip, severity=SecuritySeverity.HIGH
            )
            raise InvalidState()

        allowed, retry_after = await self.rate_limiter.check_with_retry_after(client_ip)
        if not allowed:
            self.auditor.log_auth_failure(provider, "rate_limited", client_ip)
            raise RateLimitExceeded(
                "too many authentication attempts", retry_after=retry_after or None
            )

        try:
            tokens = await client.exchange_code(code, state)
        except AuthError as exc:
            logger.error("oauth_code_exchange_failed", provider=provider, error=str(exc))
            self._audit_failure_later(provider, f"token_exchange: {exc.error_code}", client_ip)
            raise

        try:
            identity = await client.get_user_info(tokens.access_token, tokens.id_token)
        except AuthError as exc:
            logger.error("oauth_userinfo_failed", provider=provider, error=str(exc))
            self._audit_failure_later(provider, f"user_info: {exc.error_code}", client_ip)
            raise

        if not identity.email_verified:
            self.auditor.log_auth_failure(provider, "email_not_verified", client_ip)
            raise EmailNotVerified(f"{provider} account email is not verified")
        if not identity.email:
            self.auditor.log_auth_failure(provider, "missing_email", client_ip)
            raise AuthenticationFailed("identity provider did not return an email address")

        user_id = await asyncio.to_thread(
            self.users.upsert_user,
            identity.email,
            identity.name,
            provider,
            identity.provider_user_id,
        )
        user = await asyncio.to_thread(self.users.get_user, user_id)
        is_admin = bool(user and user.is_admin)
        is_editor = bool(user and user.is_editor)

        token = await self._create_session_shielded(
            user_id,
            provider,
            ip_addr=client_ip,
            user_agent=user_agent,
            email=identity.email,
            name=identity.name,
            is_admin=is_admin,
            is_editor=is_editor,
            refresh_token=tokens.refresh_token,
        )
        self.auditor.log_auth_success(user_id, provider, client_ip)
        logger.info("oauth_login_completed", provider=provider, user_id=user_id)
        return token

    async def _create_session_shielded(self, user_id: str, provider: str, **kwargs) -> str:
        """Create a session; if the request is cancelled mid-way, drop it."""

        task = asyncio.ensure_future(
            asyncio.to_thread(self.sessions.create_session, user_id, provider, **kwargs)
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            task.add_done_callback(self._discard_orphan_session)
            raise

    def _discard_orphan_session(self, task: "asyncio.Future[str]") -> None:
        if task.cancelled() or task.exception() is not None:
            return
        try:
            self.sessions.invalidate_session(task.result())
        except SessionNotFound:
            return
        logger.info("orphan_session_discarded")

    async def validate_session(self, token: str, client_ip: str, user_agent: str) -> str:
        record = await asyncio.to_thread(
            self.sessions.validate_session, token, client_ip, user_agent
        )
        return record.user_id

    async def get_session(self, token: str, client_ip: str, user_agent: str) -> SessionRecord:
        return await asyncio.to_thread(self.sessions.get_session, token, client_ip, user_agent)

    async def validate_session_with_resource(
        self,
        token: str,
        client_ip: str,
        user_agent: str,
        resource: Optional[str] = None,
    ) -> SessionRecord:
        return await asyncio.to_thread(
            self.sessions.validate_session_with_resource,
            token,
            client_ip,
            user_agent,
            resource,
        )

    async def refresh_token(self, provider: str, refresh_token: str) -> TokenResponse:
        return await self._provider(provider).refresh_token(refresh_token)

    async def logout(
        self,
        token: str,
        revoke_oauth: bool = False,
        provider: Optional[str] = None,
        oauth_token: Optional[str] = None,
    ) -> None:
        """Destroy the local session, optionally revoking upstream first.

        Revocation failures are logged and never block the local logout.
        ``SessionNotFound`` propagates.
        """
        if revoke_oauth and provider and oauth_token:
            client = self.providers.get(provider)
            if client is None:
                logger.warning("oauth_revoke_unknown_provider", provider=provider)
            else:
                try:
                    await client.revoke_token(oauth_token)
                except AuthError as exc:
                    logger.warning("oauth_revoke_failed", provider=provider, error=str(exc))
        await asyncio.to_thread(self.sessions.invalidate_session, token)
