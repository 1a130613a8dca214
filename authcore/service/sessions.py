from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import secrets
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from authcore.logging import get_logger
from authcore.service.audit import SecurityAuditor, SecuritySeverity
from authcore.service.errors import (
    ConfigError,
    DecryptionError,
    FingerprintMismatch,
    InvalidSession,
    SessionExpired,
    SessionNotFound,
)

logger = get_logger(__name__)

NONCE_SIZE = 12
TOKEN_BYTES = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_user_agent(user_agent: str) -> str:
    return hashlib.sha256(user_agent.encode("utf-8")).hexdigest()


def generate_session_token() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(TOKEN_BYTES)).decode().rstrip("=")


@dataclass
class Fingerprint:
    """Client binding for a session; the raw User-Agent is never kept."""

    ip_addr: str
    user_agent_hash: str
    strict_ip_validation: bool = False

    @classmethod
    def create(
        cls, ip_addr: str, user_agent: str, strict_ip_validation: bool = False
    ) -> "Fingerprint":
        return cls(ip_addr, hash_user_agent(user_agent), strict_ip_validation)

    def user_agent_matches(self, user_agent: str) -> bool:
        return hmac.compare_digest(
            self.user_agent_hash.encode(), hash_user_agent(user_agent).encode()
        )


@dataclass
class SessionRecord:
    session_id: str
    user_id: str
    provider: str
    created_at: datetime
    last_access: datetime
    expires_at: datetime
    fingerprint: Fingerprint
    email: Optional[str] = None
    name: Optional[str] = None
    is_admin: bool = False
    is_editor: bool = False
    refresh_token: Optional[str] = None
    audience: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) > self.expires_at

    def to_json(self) -> bytes:
        data = asdict(self)
        for key in ("created_at", "last_access", "expires_at"):
            data[key] = data[key].isoformat()
        return json.dumps(data, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "SessionRecord":
        data = json.loads(raw)
        data["fingerprint"] = Fingerprint(**data["fingerprint"])
        for key in ("created_at", "last_access", "expires_at"):
            data[key] = datetime.fromisoformat(data[key])
        return cls(**data)


@dataclass
class _EncryptedEntry:
    nonce: bytes
    ciphertext: bytes


class SessionStore:
    """Encrypted in-memory session map with per-user limits.

    Records are AES-256-GCM sealed under a fresh nonce on every write, with
    the token as associated data so ciphertexts cannot be swapped between
    tokens. Two locks guard the token map and the per-user index and are
    always taken in that order. Crypto work happens outside both.
    """

    def __init__(
        self,
        encryption_key: bytes,
        *,
        session_timeout: timedelta = timedelta(hours=1),
        max_concurrent_sessions: int = 3,
        strict_ip_validation: bool = False,
        auditor: Optional[SecurityAuditor] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if len(encryption_key) != 32:
            raise ConfigError("session encryption key must be 32 bytes")
        if max_concurrent_sessions < 1:
            raise ConfigError("max_concurrent_sessions must be at least 1")
        self._aead = AESGCM(encryption_key)
        self.session_timeout = session_timeout
        self.max_concurrent_sessions = max_concurrent_sessions
        self.strict_ip_validation = strict_ip_validation
        self.auditor = auditor or SecurityAuditor()
        self._clock = clock
        self._sessions: Dict[str, _EncryptedEntry] = {}
        self._sessions_lock = threading.Lock()
        self._user_sessions: Dict[str, List[str]] = {}
        self._user_lock = threading.Lock()

    # -- crypto --------------------------------------------------------------

    def _encrypt(self, record: SessionRecord) -> _EncryptedEntry:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aead.encrypt(nonce, record.to_json(), record.session_id.encode())
        return _EncryptedEntry(nonce, ciphertext)

    def _decrypt(self, token: str, entry: _EncryptedEntry) -> SessionRecord:
        try:
            plaintext = self._aead.decrypt(entry.nonce, entry.ciphertext, token.encode())
            return SessionRecord.from_json(plaintext)
        except InvalidTag as exc:
            raise DecryptionError() from exc
        except (ValueError, KeyError, TypeError) as exc:
            raise DecryptionError("session payload is malformed") from exc

    # -- index helpers -------------------------------------------------------

    def _remove(self, token: str, user_id: Optional[str]) -> bool:
        with self._sessions_lock:
            removed = self._sessions.pop(token, None) is not None
            with self._user_lock:
                self._drop_from_index(token, user_id)
        return removed

    def _drop_from_index(self, token: str, user_id: Optional[str]) -> None:
        # caller holds _user_lock
        owners = [user_id] if user_id is not None else list(self._user_sessions)
        for owner in owners:
            tokens = self._user_sessions.get(owner)
            if tokens and token in tokens:
                tokens.remove(token)
                if not tokens:
                    del self._user_sessions[owner]
                return

    # -- public API ----------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        provider: str,
        *,
        ip_addr: str,
        user_agent: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        is_admin: bool = False,
        is_editor: bool = False,
        refresh_token: Optional[str] = None,
        audience: Optional[str] = None,
    ) -> str:
        now = self._clock()
        token = generate_session_token()
        record = SessionRecord(
            session_id=token,
            user_id=user_id,
            provider=provider,
            created_at=now,
            last_access=now,
            expires_at=now + self.session_timeout,
            fingerprint=Fingerprint.create(ip_addr, user_agent, self.strict_ip_validation),
            email=email,
            name=name,
            is_admin=is_admin,
            is_editor=is_editor,
            refresh_token=refresh_token,
            audience=audience,
        )
        entry = self._encrypt(record)

        evicted: List[str] = []
        with self._sessions_lock:
            with self._user_lock:
                tokens = self._user_sessions.setdefault(user_id, [])
                tokens[:] = [existing for existing in tokens if existing in self._sessions]
                while len(tokens) >= self.max_concurrent_sessions:
                    oldest = tokens.pop(0)
                    self._sessions.pop(oldest, None)
                    evicted.append(oldest)
                self._sessions[token] = entry
                tokens.append(token)

        for _ in evicted:
            logger.info("session_evicted", user_id=user_id, limit=self.max_concurrent_sessions)
            self.auditor.log_session_event("evicted", user_id, reason="concurrent_session_limit")
        logger.info("session_created", user_id=user_id, provider=provider)
        return token

    def validate_session(self, token: str, ip_addr: str, user_agent: str) -> SessionRecord:
        with self._sessions_lock:
            entry = self._sessions.get(token)
        if entry is None:
            raise SessionNotFound()
        record = self._decrypt(token, entry)

        now = self._clock()
        if record.is_expired(now):
            self._remove(token, record.user_id)
            self.auditor.log_session_event("expired", record.user_id)
            raise SessionExpired()

        fingerprint = record.fingerprint
        if not fingerprint.user_agent_matches(user_agent):
            logger.warning(
                "session_fingerprint_mismatch", user_id=record.user_id, reason="user_agent"
            )
            self.auditor.log_suspicious_activity(
                "session user agent mismatch",
                record.user_id,
                ip_addr=ip_addr,
                severity=SecuritySeverity.HIGH,
                original_ip=fingerprint.ip_addr,
            )
            raise FingerprintMismatch()

        if fingerprint.ip_addr != ip_addr:
            if fingerprint.strict_ip_validation:
                logger.warning("session_fingerprint_mismatch", user_id=record.user_id, reason="ip")
                self.auditor.log_suspicious_activity(
                    "session ip mismatch",
                    record.user_id,
                    ip_addr=ip_addr,
                    severity=SecuritySeverity.HIGH,
                    original_ip=fingerprint.ip_addr,
                )
                raise FingerprintMismatch()
            self.auditor.log_suspicious_activity(
                "session ip changed",
                record.user_id,
                ip_addr=ip_addr,
                severity=SecuritySeverity.MEDIUM,
                original_ip=fingerprint.ip_addr,
            )
            fingerprint.ip_addr = ip_addr

        record.last_access = now
        updated = self._encrypt(record)
        with self._sessions_lock:
            if token not in self._sessions:
                # invalidated while we were validating
                raise SessionNotFound()
            self._sessions[token] = updated
        return record

    def get_session(self, token: str, ip_addr: str, user_agent: str) -> SessionRecord:
        return self.validate_session(token, ip_addr, user_agent)

    def validate_session_with_resource(
        self,
        token: str,
        ip_addr: str,
        user_agent: str,
        resource: Optional[str] = None,
    ) -> SessionRecord:
        record = self.validate_session(token, ip_addr, user_agent)
        if resource is None:
            return record
        if record.audience:
            if record.audience != resource:
                self.auditor.log_authz_failure(
                    record.user_id, resource, "session audience mismatch"
                )
                raise InvalidSession(
                    "session is not valid for the requested resource",
                    detail={"resource": resource},
                )
        else:
            logger.warning(
                "session_without_audience_for_resource",
                user_id=record.user_id,
                resource=resource,
            )
        return record

    def invalidate_session(self, token: str) -> None:
        with self._sessions_lock:
            entry = self._sessions.pop(token, None)
        if entry is None:
            raise SessionNotFound()
        try:
            user_id: Optional[str] = self._decrypt(token, entry).user_id
        except DecryptionError:
            user_id = None
        with self._user_lock:
            self._drop_from_index(token, user_id)
        logger.info("session_invalidated", user_id=user_id)
        self.auditor.log_session_event("logout", user_id)

    def invalidate_user_sessions(self, user_id: str) -> int:
        with self._sessions_lock:
            with self._user_lock:
                tokens = self._user_sessions.pop(user_id, [])
                removed = sum(1 for token in tokens if self._sessions.pop(token, None) is not None)
        if removed:
            self.auditor.log_session_event("logout_all", user_id, count=removed)
        return removed

    def cleanup_expired_sessions(self) -> int:
        with self._sessions_lock:
            snapshot: List[Tuple[str, _EncryptedEntry]] = list(self._sessions.items())
        now = self._clock()
        stale: List[Tuple[str, Optional[str]]] = []
        for token, entry in snapshot:
            try:
                record = self._decrypt(token, entry)
            except DecryptionError:
                logger.warning("session_cleanup_undecryptable")
                stale.append((token, None))
                continue
            if record.is_expired(now):
                stale.append((token, record.user_id))
        removed = 0
        for token, user_id in stale:
            if self._remove(token, user_id):
                removed += 1
        if removed:
            logger.info("sessions_cleaned_up", count=removed)
        return removed

    def get_user_session_count(self, user_id: str) -> int:
        with self._sessions_lock:
            with self._user_lock:
                tokens = self._user_sessions.get(user_id, [])
                return sum(1 for token in tokens if token in self._sessions)

    def __len__(self) -> int:
        with self._sessions_lock:
            return len(self._sessions)
