from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Protocol


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


ROLE_ADMIN = "admin"
ROLE_EDITOR = "editor"


@dataclass
class User:
    id: str
    email: str
    name: Optional[str] = None
    provider: Optional[str] = None
    provider_user_id: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return ROLE_ADMIN in self.roles

    @property
    def is_editor(self) -> bool:
        # Admins can do everything an editor can
        return ROLE_EDITOR in self.roles or self.is_admin


@dataclass
class AuthorizationCodeRecord:
    """One-time code issued by the local authorization endpoint."""

    code: str
    user_id: str
    client_id: str
    redirect_uri: str
    expires_at: datetime
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    scope: Optional[str] = None
    resource: Optional[str] = None
    used: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        client_id: str,
        redirect_uri: str,
        *,
        ttl: timedelta = timedelta(minutes=10),
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
        scope: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> "AuthorizationCodeRecord":
        now = _utcnow()
        return cls(
            code=f"code_{uuid.uuid4()}",
            user_id=user_id,
            client_id=client_id,
            redirect_uri=redirect_uri,
            expires_at=now + ttl,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            scope=scope,
            resource=resource,
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) > self.expires_at


class UserRepository(Protocol):
    def upsert_user(
        self, email: str, name: Optional[str], provider: str, provider_user_id: str
    ) -> str: ...

    def get_user(self, user_id: str) -> Optional[User]: ...


class AuthorizationCodeStore(Protocol):
    def save_authorization_code(self, record: AuthorizationCodeRecord) -> None: ...

    def redeem_authorization_code(
        self, code: str, now: Optional[datetime] = None
    ) -> AuthorizationCodeRecord: ...

    def delete_expired_authorization_codes(self, now: Optional[datetime] = None) -> int: ...
