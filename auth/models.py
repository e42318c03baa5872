"""
auth/models.py -- Domain dataclasses for sessions, tokens and credentials.

Pattern: Data class (pure data container, minimal logic). Stores map rows to
these types; services do the work. The only behaviour here is read-only
predicates derived from the fields themselves (Session.is_active).

Layer rule: no imports from api/, security/, or audit/.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass(frozen=True)
class RequestContext:
    """Transport-neutral view of the inbound request.

    headers keys are lower-cased on construction so lookups do not depend on
    how the HTTP layer spelled them. client_host is the connection-level peer
    address (before any proxy header is consulted).
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    client_host: str | None = None

    @classmethod
    def build(cls, headers: Mapping[str, str] | None = None, client_host: str | None = None) -> RequestContext:
        lowered = {str(k).lower(): str(v) for k, v in (headers or {}).items()}
        return cls(headers=lowered, client_host=client_host)

    def header(self, name: str) -> str | None:
        value = self.headers.get(name.lower())
        return value if value else None


@dataclass(frozen=True)
class DeviceInfo:
    """Parsed client identity. See auth/fingerprint.py for how it is derived."""

    fingerprint_hash: str
    ip_address: str
    user_agent: str
    accept_language: str
    browser: str = "Unknown"
    browser_version: str = "Unknown"
    os: str = "Unknown"
    os_version: str = "Unknown"
    device: str = "Desktop"  # "Desktop" | "Mobile" | "Tablet" | "Unknown"
    description: str = "Unknown Device"
    is_bot: bool = False


@dataclass
class UserCredentials:
    """The credential collaborator's view of a user.

    hashed_password is only populated by find_by_identifier_with_secret();
    other lookups leave it None so the hash does not travel further than the
    single verification call.
    """

    id: str
    email: str
    role: str
    permissions: list[str] = field(default_factory=list)
    status: str = "active"  # "active" | "inactive" | "suspended"
    hashed_password: str | None = None
    created_at: str | None = None
    last_login_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class Session:
    """A logical, revocable login for one user on one recognised device.

    revoked_at is set once and never cleared. A session is active iff it has
    not been revoked and expires_at is still in the future; expiry is a
    query-time predicate, not a stored state.
    """

    id: str
    user_id: str
    fingerprint_hash: str
    expires_at: datetime
    last_used_at: datetime
    created_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None
    remember_me: bool = False
    revoked_at: datetime | None = None

    def is_active(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.revoked_at is None and self.expires_at > now


@dataclass
class RefreshToken:
    """Persisted record of a refresh token. The raw value is never stored.

    A rotated token always carries revoked_at as well: rotation and
    revocation are not independent states for a superseded token.
    """

    id: str
    session_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime
    revoked_at: datetime | None = None
    rotated_at: datetime | None = None

    def is_valid(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.revoked_at is None and self.expires_at > now


@dataclass
class OneTimeToken:
    """Single-use purpose token (password reset, email verification).

    Only the keyed hash is stored. used_at is set exactly once, on the
    consume that wins; invalidation sets it too.
    """

    id: str
    user_id: str
    purpose: str
    token_hash: str
    expires_at: datetime
    created_at: datetime
    used_at: datetime | None = None

    def is_usable(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.used_at is None and self.expires_at > now


@dataclass(frozen=True)
class RevocationEntry:
    """Blacklisted access token, kept until the token would expire anyway."""

    token_hash: str
    expires_at: datetime


@dataclass(frozen=True)
class SessionGrant:
    """Result of creating (or reusing) a session.

    refresh_token is the raw bearer value. It is handed to the caller exactly
    once here and is unrecoverable afterwards.
    """

    session: Session
    refresh_token: str
    is_existing: bool = False


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str
    user_id: str


@dataclass(frozen=True)
class Principal:
    """An authenticated caller, resolved from a verified access token."""

    user_id: str
    email: str
    role: str
    permissions: tuple[str, ...]
    session_id: str | None
    token: str
    expires_at: datetime

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions


@dataclass(frozen=True)
class SessionView:
    """A session as shown to its owner: parsed device label plus current-session flag."""

    session: Session
    description: str
    browser: str
    os: str
    device: str
    is_current: bool = False
