"""
audit/events.py -- Closed taxonomy of audit event types and the entry record.

Adding an event type is a code change on purpose: reports and retention rules
key off these strings, so free-form values are refused at write time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from auth.models import DeviceInfo


class EventType(str, Enum):
    # Authentication
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGOUT = "logout"
    LOGOUT_ALL = "logout_all"
    LOGOUT_OTHER_SESSIONS = "logout_other_sessions"

    # Tokens and sessions
    TOKEN_REFRESH = "token_refresh"
    TOKEN_REVOKED = "token_revoked"
    SESSION_REVOKED = "session_revoked"
    SESSION_EXPIRED = "session_expired"

    # Account
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET_COMPLETED = "password_reset_completed"
    EMAIL_VERIFIED = "email_verified"
    EMAIL_CHANGED = "email_changed"

    # Security
    MFA_ENABLED = "mfa_enabled"
    MFA_DISABLED = "mfa_disabled"
    MFA_VERIFIED = "mfa_verified"
    MFA_FAILED = "mfa_failed"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"

    # Permissions
    PERMISSION_CHANGED = "permission_changed"
    ROLE_CHANGED = "role_changed"

    # Account management
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_DELETED = "account_deleted"
    ACCOUNT_ACTIVATED = "account_activated"
    ACCOUNT_DEACTIVATED = "account_deactivated"


# Event types surfaced by security_events() for review.
SECURITY_EVENTS: frozenset[EventType] = frozenset(
    {
        EventType.LOGIN_FAILURE,
        EventType.MFA_FAILED,
        EventType.ACCOUNT_LOCKED,
        EventType.SUSPICIOUS_ACTIVITY,
        EventType.SESSION_REVOKED,
    }
)


def coerce_event_type(value: EventType | str) -> EventType:
    """Map a string onto the taxonomy. Raises ValueError for unknown types."""
    if isinstance(value, EventType):
        return value
    return EventType(value)


@dataclass(frozen=True)
class AuditContext:
    """Where an event came from. Every field is optional."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_device(cls, device: DeviceInfo | None, session_id: Optional[str] = None) -> AuditContext:
        if device is None:
            return cls(session_id=session_id)
        return cls(ip_address=device.ip_address, user_agent=device.user_agent or None, session_id=session_id)

    def with_session(self, session_id: Optional[str]) -> AuditContext:
        return AuditContext(ip_address=self.ip_address, user_agent=self.user_agent, session_id=session_id)


@dataclass
class AuditLogEntry:
    id: str
    event_type: str
    created_at: datetime
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


@dataclass
class ActivitySummary:
    user_id: str
    days: int
    start: datetime
    end: datetime
    events: dict[str, int] = field(default_factory=dict)

    @property
    def total_events(self) -> int:
        return sum(self.events.values())
