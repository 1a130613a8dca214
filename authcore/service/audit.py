from __future__ import annotations

import threading
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from authcore.logging import get_logger

logger = get_logger(__name__)


class SecurityEventType(str, Enum):
    AUTHENTICATION_ATTEMPT = "authentication_attempt"
    AUTHENTICATION_SUCCESS = "authentication_success"
    AUTHENTICATION_FAILURE = "authentication_failure"
    AUTHORIZATION_FAILURE = "authorization_failure"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    SESSION_EVENT = "session_event"


class SecuritySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class SecurityEvent:
    event_type: SecurityEventType
    severity: SecuritySeverity
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SecurityAuditor:
    """Emits security events as structured log lines.

    The most recent events are also kept in a bounded ring so operators and
    tests can inspect them without a log pipeline.
    """

    def __init__(self, *, max_recent: int = 1000) -> None:
        self._recent: Deque[SecurityEvent] = deque(maxlen=max_recent)
        self._lock = threading.Lock()

    def log_event(self, event: SecurityEvent) -> None:
        with self._lock:
            self._recent.append(event)
        fields = asdict(event)
        fields.pop("timestamp", None)
        fields["event_id"] = fields.pop("id")
        fields["event_type"] = event.event_type.value
        fields["severity"] = event.severity.value
        if event.severity in (SecuritySeverity.HIGH, SecuritySeverity.CRITICAL):
            logger.error("security_event", **fields)
        elif event.severity == SecuritySeverity.MEDIUM:
            logger.warning("security_event", **fields)
        else:
            logger.info("security_event", **fields)

    def recent_events(
        self, event_type: Optional[SecurityEventType] = None
    ) -> List[SecurityEvent]:
        with self._lock:
            events = list(self._recent)
        if event_type is None:
            return events
        return [event for event in events if event.event_type == event_type]

    def log_auth_attempt(self, provider: str, ip_addr: Optional[str]) -> None:
        self.log_event(
            SecurityEvent(
                SecurityEventType.AUTHENTICATION_ATTEMPT,
                SecuritySeverity.LOW,
                ip_address=ip_addr,
                details={"provider": provider},
            )
        )

    def log_auth_success(
        self, user_id: str, provider: str, ip_addr: Optional[str] = None
    ) -> None:
        self.log_event(
            SecurityEvent(
                SecurityEventType.AUTHENTICATION_SUCCESS,
                SecuritySeverity.LOW,
                user_id=user_id,
                ip_address=ip_addr,
                details={"provider": provider},
            )
        )

    def log_auth_failure(
        self,
        provider: str,
        reason: str,
        ip_addr: Optional[str] = None,
        *,
        severity: SecuritySeverity = SecuritySeverity.MEDIUM,
    ) -> None:
        self.log_event(
            SecurityEvent(
                SecurityEventType.AUTHENTICATION_FAILURE,
                severity,
                ip_address=ip_addr,
                details={"provider": provider},
                error=reason,
            )
        )

    def log_authz_failure(
        self, user_id: Optional[str], resource: str, reason: str
    ) -> None:
        self.log_event(
            SecurityEvent(
                SecurityEventType.AUTHORIZATION_FAILURE,
                SecuritySeverity.MEDIUM,
                user_id=user_id,
                details={"resource": resource},
                error=reason,
            )
        )

    def log_suspicious_activity(
        self,
        description: str,
        user_id: Optional[str] = None,
        *,
        ip_addr: Optional[str] = None,
        severity: SecuritySeverity = SecuritySeverity.HIGH,
        **details: Any,
    ) -> None:
        self.log_event(
            SecurityEvent(
                SecurityEventType.SUSPICIOUS_ACTIVITY,
                severity,
                user_id=user_id,
                ip_address=ip_addr,
                details={"description": description, **details},
            )
        )

    def log_session_event(self, action: str, user_id: Optional[str], **details: Any) -> None:
        """Record logout, eviction and expiry of sessions."""
        self.log_event(
            SecurityEvent(
                SecurityEventType.SESSION_EVENT,
                SecuritySeverity.LOW,
                user_id=user_id,
                details={"action": action, **details},
            )
        )
