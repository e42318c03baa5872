"""
core/db.py -- Shared SQLAlchemy Core schema and engine factory.

Every store in SessionGuard (sessions, refresh tokens, blacklist, one-time
tokens, login attempts, audit log, users) lives in ONE relational database
behind ONE engine. Rotation and revocation cascades span two tables and must
commit in a single transaction, which is only possible when both stores share
a connection source. The composition root (api/container.py) creates the
engine once and hands it to every store.

Uses SQLAlchemy Core (not ORM) so the dataclasses in auth/models.py remain
the authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change.

Timestamps are stored as fixed-width ISO 8601 UTC strings (see iso()). Fixed
width matters: range predicates such as `expires_at > :now` compare strings,
and lexicographic order only matches chronological order when every value has
the same shape.

Layer rule: core/ is the kernel. No imports from api/, auth/, security/, audit/.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, Index, Integer, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("permissions", Text),  # JSON array serialized as text
    Column("status", String(20), nullable=False, server_default="active"),
    Column("created_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
)

auth_sessions = Table(
    "auth_sessions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False),
    Column("fingerprint_hash", String(64), nullable=False),
    Column("ip_address", String(50)),
    Column("user_agent", String(500)),
    Column("remember_me", Integer, nullable=False, server_default="0"),  # boolean stored as 0/1
    Column("last_used_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Index("ix_auth_sessions_user_fingerprint", "user_id", "fingerprint_hash"),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("session_id", String(36), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
    Column("rotated_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

token_blacklist = Table(
    "token_blacklist",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
)

one_time_tokens = Table(
    "one_time_tokens",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False),
    Column("purpose", String(30), nullable=False),  # "password_reset" | "email_verification"
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Index("ix_one_time_tokens_user_purpose", "user_id", "purpose"),
)

login_attempts = Table(
    "login_attempts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36)),
    Column("identifier", String(255), nullable=False),
    Column("ip_address", String(50)),
    Column("user_agent", String(500)),
    Column("success", Integer, nullable=False),
    Column("failure_reason", String(100)),
    Column("created_at", String(32), nullable=False),
    Index("ix_login_attempts_identifier_created", "identifier", "created_at"),
    Index("ix_login_attempts_ip_created", "ip_address", "created_at"),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("event_type", String(100), nullable=False, index=True),
    Column("user_id", String(36), index=True),
    Column("ip_address", String(50), index=True),
    Column("user_agent", String(500)),
    Column("session_id", String(36)),
    Column("metadata_json", Text),  # JSON object serialized as text
    Column("created_at", String(32), nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_db_engine(db_url: str) -> Engine:
    """Create the process-wide engine and ensure every table exists.

    metadata.create_all() is idempotent: it only creates missing tables, so
    this is safe to call on every startup.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    """Render a datetime as a fixed-width UTC ISO 8601 string.

    Naive datetimes are treated as UTC. timespec="microseconds" keeps the
    width constant even when microsecond == 0, which plain isoformat() drops.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def clamp(value: Optional[str], length: int) -> Optional[str]:
    """Truncate free-text request metadata to its column width."""
    if value is None:
        return None
    return value[:length]
