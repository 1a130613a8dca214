from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from authcore.logging import get_logger
from authcore.service.errors import InvalidGrant, ValidationError
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import ROLE_ADMIN, AuthorizationCodeRecord, User


class MemoryStore:
    """In-memory users and authorization codes for tests and single-node dev."""

    def __init__(self, *, bootstrap_admins: Iterable[str] = ()) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # (provider, provider_user_id) -> user_id
        self.provider_index: Dict[Tuple[str, str], str] = {}
        self.authorization_codes: Dict[str, AuthorizationCodeRecord] = {}
        self.bootstrap_admins = {email.strip().lower() for email in bootstrap_admins}
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()

    # -- users ---------------------------------------------------------------

    def upsert_user(
        self,
        email: str,
        name: Optional[str],
        provider: str,
        provider_user_id: str,
    ) -> str:
        if not email or not email.strip():
            raise ValidationError("email cannot be empty")
        if not provider or not provider_user_id:
            raise ValidationError("provider identity cannot be empty")
        is_bootstrap_admin = email.strip().lower() in self.bootstrap_admins
        now = datetime.now(timezone.utc)
        with self._data_lock:
            key = (provider, provider_user_id)
            user_id = self.provider_index.get(key)
            user = self.users.get(user_id) if user_id else None
            if user_id and user is None:
                self.logger.warning("provider_index_stale", provider=provider)
                self.provider_index.pop(key, None)
            # Only the provider identity links logins; emails are not unique
            if user is not None:
                user.email = email
                user.name = name or user.name
                user.last_login_at = now
                if is_bootstrap_admin and ROLE_ADMIN not in user.roles:
                    user.roles.append(ROLE_ADMIN)
                self.logger.debug("user_updated", user_id=user.id, provider=provider)
                return user.id

            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=name,
                provider=provider,
                provider_user_id=provider_user_id,
                roles=[ROLE_ADMIN] if is_bootstrap_admin else [],
                created_at=now,
                last_login_at=now,
            )
            self.users[user.id] = user
            self.provider_index[key] = user.id
            if is_bootstrap_admin:
                self.logger.info("bootstrap_admin_granted", user_id=user.id)
            self.logger.debug("user_created", user_id=user.id, provider=provider)
            return user.id

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def add_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if role not in user.roles:
                user.roles.append(role)
            return user

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return results[:limit]

    # -- authorization codes ---------------------------------------------------

    def save_authorization_code(self, record: AuthorizationCodeRecord) -> None:
        with self._data_lock:
            if record.code in self.authorization_codes:
                raise ConstraintViolation(
                    "authorization code already exists", {"field": "code"}
                )
            self.authorization_codes[record.code] = record

    def redeem_authorization_code(
        self, code: str, now: Optional[datetime] = None
    ) -> AuthorizationCodeRecord:
        """Atomically flip ``used`` from False to True and return the record.

        The check and the flip happen under one lock acquisition, so of any
        number of concurrent redemptions exactly one observes ``used=False``.
        """
        now = now or datetime.now(timezone.utc)
        with self._data_lock:
            record = self.authorization_codes.get(code)
            if record is None:
                raise InvalidGrant("authorization code not found")
            if record.used:
                raise InvalidGrant("authorization code already used")
            if record.is_expired(now):
                raise InvalidGrant("authorization code expired")
            record.used = True
            return record

    def delete_expired_authorization_codes(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        with self._data_lock:
            expired = [
                code for code, record in self.authorization_codes.items()
                if record.expires_at <= now
            ]
            for code in expired:
                self.authorization_codes.pop(code, None)
            return len(expired)
