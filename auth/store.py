"""
auth/store.py -- SQLAlchemy Core persistence for sessions, bearer tokens and
one-time purpose tokens.

Pattern: Repository + Data Mapper.
SessionStore, RefreshTokenStore, RevocationList and OneTimeTokenStore are the
repositories; the _row_to_* functions are the mappers. Service code never
touches SQL directly.

Transactions:
  Read paths use engine.connect(). Write paths run inside engine.begin() so
  an exception anywhere in the block rolls the whole unit back. Methods that
  take part in a larger unit accept an optional `conn`; when given, they join
  the caller's transaction instead of opening their own. Connections are never
  nested: SQLite in-memory engines hand the same connection to every checkout
  on a thread.

  Rotation is a conditional UPDATE (`... WHERE token_hash = :h AND
  revoked_at IS NULL`). If two requests race on the same old token, SQLite
  serialises the writes and the loser sees rowcount == 0 and raises
  Unauthenticated, which aborts its transaction before the new token is
  inserted [R1].

  Session revoke flips the session row and every live refresh token bound to
  it in ONE transaction, so an interrupted revoke cannot leave an orphaned
  active refresh token behind [R2].

Security:
  All queries use bound parameters. Raw refresh, access and one-time tokens are
  never written; only TokenCodec.hash() output (keyed HMAC) is stored and
  compared.

Layer rule: no imports from api/, security/, or audit/.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from sqlalchemy import and_, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import Unauthenticated
from auth.models import OneTimeToken, RefreshToken, RevocationEntry, Session
from auth.tokens import TokenCodec
from core.db import auth_sessions, clamp, iso, one_time_tokens, parse_iso, refresh_tokens, token_blacklist, utcnow

logger = logging.getLogger("sessionguard.auth.store")


@contextmanager
def _transaction(engine: Engine, conn: Connection | None) -> Iterator[Connection]:
    """Join the caller's transaction if one is given, else open and commit our own."""
    if conn is not None:
        yield conn
        return
    with engine.begin() as own:
        yield own


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Repository for refresh-token records bound to sessions."""

    def __init__(self, engine: Engine, codec: TokenCodec) -> None:
        self.engine = engine
        self._codec = codec

    def create_token(
        self,
        session_id: str,
        raw_token: str,
        expires_at: datetime,
        conn: Connection | None = None,
    ) -> RefreshToken:
        """Persist hash(raw_token) for session_id. The raw value is discarded."""
        now = utcnow()
        record = RefreshToken(
            id=str(uuid.uuid4()),
            session_id=session_id,
            token_hash=self._codec.hash(raw_token),
            expires_at=expires_at,
            created_at=now,
        )
        with _transaction(self.engine, conn) as c:
            c.execute(
                refresh_tokens.insert().values(
                    id=record.id,
                    session_id=record.session_id,
                    token_hash=record.token_hash,
                    expires_at=iso(record.expires_at),
                    created_at=iso(now),
                )
            )
        return record

    def find_valid(self, raw_token: str) -> RefreshToken | None:
        """Return the record only if it exists, is not revoked and has not expired.

        Not found, revoked, rotated and expired all look the same to the
        caller: None.
        """
        if not raw_token:
            return None
        token_hash = self._codec.hash(raw_token)
        with self.engine.connect() as conn:
            row = conn.execute(
                refresh_tokens.select().where(
                    and_(
                        refresh_tokens.c.token_hash == token_hash,
                        refresh_tokens.c.revoked_at.is_(None),
                        refresh_tokens.c.expires_at > iso(utcnow()),
                    )
                )
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def find_any(self, raw_token: str) -> RefreshToken | None:
        """Look up a record by hash regardless of state.

        Used only to tell a replayed (rotated) token apart from an unknown
        one after find_valid() has already failed.
        """
        if not raw_token:
            return None
        token_hash = self._codec.hash(raw_token)
        with self.engine.connect() as conn:
            row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate(
        self,
        old_raw: str,
        new_raw: str,
        session_id: str,
        new_expires_at: datetime,
        conn: Connection | None = None,
    ) -> RefreshToken:
        """Supersede old_raw with new_raw atomically [R1].

        The old record gets rotated_at AND revoked_at. Raises Unauthenticated
        if old_raw is no longer live (already rotated, revoked, expired, or
        bound to a different session); the new token is then never inserted.
        """
        now = utcnow()
        old_hash = self._codec.hash(old_raw)
        with _transaction(self.engine, conn) as c:
            result = c.execute(
                refresh_tokens.update()
                .where(
                    and_(
                        refresh_tokens.c.token_hash == old_hash,
                        refresh_tokens.c.session_id == session_id,
                        refresh_tokens.c.revoked_at.is_(None),
                        refresh_tokens.c.expires_at > iso(now),
                    )
                )
                .values(rotated_at=iso(now), revoked_at=iso(now))
            )
            if result.rowcount == 0:
                raise Unauthenticated("refresh_token_already_rotated")
            return self.create_token(session_id, new_raw, new_expires_at, conn=c)

    def revoke_all_for_session(self, session_id: str, conn: Connection | None = None) -> int:
        """Set revoked_at on every live token of the session. Returns the count."""
        with _transaction(self.engine, conn) as c:
            result = c.execute(
                refresh_tokens.update()
                .where(and_(refresh_tokens.c.session_id == session_id, refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=iso(utcnow()))
            )
        return result.rowcount

    def revoke_token(self, raw_token: str) -> RefreshToken | None:
        """Revoke a single token by raw value. Returns the record if it was live."""
        record = self.find_valid(raw_token)
        if record is None:
            return None
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where(and_(refresh_tokens.c.id == record.id, refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=iso(utcnow()))
            )
        return record if result.rowcount > 0 else None

    def count_active(self, session_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(refresh_tokens)
                .where(
                    and_(
                        refresh_tokens.c.session_id == session_id,
                        refresh_tokens.c.revoked_at.is_(None),
                        refresh_tokens.c.expires_at > iso(utcnow()),
                    )
                )
            ).scalar()
        return result or 0

    def prune(self, expired_older_than_days: int = 7, revoked_older_than_days: int = 30) -> int:
        """Delete tokens expired or revoked long enough ago. Retention job only."""
        now = utcnow()
        expired_cutoff = iso(now - timedelta(days=expired_older_than_days))
        revoked_cutoff = iso(now - timedelta(days=revoked_older_than_days))
        with self.engine.begin() as conn:
            expired = conn.execute(refresh_tokens.delete().where(refresh_tokens.c.expires_at < expired_cutoff))
            revoked = conn.execute(
                refresh_tokens.delete().where(
                    and_(refresh_tokens.c.revoked_at.is_not(None), refresh_tokens.c.revoked_at < revoked_cutoff)
                )
            )
        return expired.rowcount + revoked.rowcount


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def _active_clause(now: datetime):
    return and_(auth_sessions.c.revoked_at.is_(None), auth_sessions.c.expires_at > iso(now))


class SessionStore:
    """Repository for Session rows.

    Holds the RefreshTokenStore so revocation can cascade inside the same
    transaction [R2].
    """

    def __init__(self, engine: Engine, refresh_tokens: RefreshTokenStore) -> None:
        self.engine = engine
        self.refresh_tokens = refresh_tokens

    def create(
        self,
        user_id: str,
        fingerprint_hash: str,
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
        remember_me: bool = False,
        refresh_token: str | None = None,
        refresh_expires_at: datetime | None = None,
    ) -> Session:
        """Insert a session and, when refresh_token is given, its first token.

        Both rows commit together or not at all.
        """
        now = utcnow()
        if expires_at <= now:
            raise ValueError("Session expiry must be in the future")
        session = Session(
            id=str(uuid.uuid4()),
            user_id=user_id,
            fingerprint_hash=fingerprint_hash,
            expires_at=expires_at,
            last_used_at=now,
            created_at=now,
            ip_address=clamp(ip_address, 50),
            user_agent=clamp(user_agent, 500),
            remember_me=remember_me,
        )
        with self.engine.begin() as conn:
            conn.execute(
                auth_sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    fingerprint_hash=session.fingerprint_hash,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    remember_me=1 if remember_me else 0,
                    last_used_at=iso(now),
                    expires_at=iso(expires_at),
                    created_at=iso(now),
                    updated_at=iso(now),
                )
            )
            if refresh_token:
                self.refresh_tokens.create_token(
                    session.id, refresh_token, refresh_expires_at or expires_at, conn=conn
                )
        return session

    def get(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(auth_sessions.select().where(auth_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_active(self, user_id: str, fingerprint_hash: str) -> Session | None:
        """Most recently used active session for (user, device), or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                auth_sessions.select()
                .where(
                    and_(
                        auth_sessions.c.user_id == user_id,
                        auth_sessions.c.fingerprint_hash == fingerprint_hash,
                        _active_clause(utcnow()),
                    )
                )
                .order_by(auth_sessions.c.last_used_at.desc())
                .limit(1)
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def has_seen(self, user_id: str, fingerprint_hash: str) -> bool:
        """True if any session row, live or not, exists for (user, device).

        Rows survive until the retention job prunes them, so a device stays
        known across logout and expiry for that long.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(auth_sessions.c.id)
                .where(
                    and_(
                        auth_sessions.c.user_id == user_id,
                        auth_sessions.c.fingerprint_hash == fingerprint_hash,
                    )
                )
                .limit(1)
            ).fetchone()
        return row is not None

    def list_active(self, user_id: str) -> list[Session]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                auth_sessions.select()
                .where(and_(auth_sessions.c.user_id == user_id, _active_clause(utcnow())))
                .order_by(auth_sessions.c.last_used_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def count_active(self, user_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(auth_sessions)
                .where(and_(auth_sessions.c.user_id == user_id, _active_clause(utcnow())))
            ).scalar()
        return result or 0

    def is_active(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(auth_sessions.c.id).where(and_(auth_sessions.c.id == session_id, _active_clause(utcnow())))
            ).fetchone()
        return row is not None

    def touch(self, session_id: str, conn: Connection | None = None) -> bool:
        """Stamp last_used_at on an ACTIVE session. False if it is not active."""
        now = utcnow()
        with _transaction(self.engine, conn) as c:
            result = c.execute(
                auth_sessions.update()
                .where(and_(auth_sessions.c.id == session_id, _active_clause(now)))
                .values(last_used_at=iso(now), updated_at=iso(now))
            )
        return result.rowcount > 0

    def extend(
        self,
        session_id: str,
        new_expires_at: datetime,
        refresh_token: str | None = None,
        refresh_expires_at: datetime | None = None,
    ) -> Session | None:
        """Push out the expiry of an active session.

        When refresh_token is given, every live token of the session is
        revoked and the new one inserted, keeping at most one active token per
        session. Returns None if the session is no longer active.
        """
        now = utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                auth_sessions.update()
                .where(and_(auth_sessions.c.id == session_id, _active_clause(now)))
                .values(expires_at=iso(new_expires_at), last_used_at=iso(now), updated_at=iso(now))
            )
            if result.rowcount == 0:
                return None
            if refresh_token:
                self.refresh_tokens.revoke_all_for_session(session_id, conn=conn)
                self.refresh_tokens.create_token(
                    session_id, refresh_token, refresh_expires_at or new_expires_at, conn=conn
                )
            row = conn.execute(auth_sessions.select().where(auth_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row)

    def revoke(self, session_id: str) -> bool:
        """Revoke the session and cascade to its refresh tokens [R2].

        Idempotent: an already-revoked (or unknown) session returns False and
        changes nothing.
        """
        now = utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                auth_sessions.update()
                .where(and_(auth_sessions.c.id == session_id, auth_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=iso(now), updated_at=iso(now))
            )
            if result.rowcount == 0:
                return False
            self.refresh_tokens.revoke_all_for_session(session_id, conn=conn)
        return True

    def prune_expired(self, older_than_days: int = 7) -> int:
        """Delete sessions that expired more than older_than_days ago."""
        cutoff = iso(utcnow() - timedelta(days=older_than_days))
        return self._prune(auth_sessions.c.expires_at < cutoff)

    def prune_revoked(self, older_than_days: int = 30) -> int:
        """Delete sessions revoked more than older_than_days ago."""
        cutoff = iso(utcnow() - timedelta(days=older_than_days))
        return self._prune(and_(auth_sessions.c.revoked_at.is_not(None), auth_sessions.c.revoked_at < cutoff))

    def _prune(self, condition) -> int:
        # Tokens are revoked first so nothing live outlives its session row;
        # RefreshTokenStore.prune() removes them on its own schedule.
        with self.engine.begin() as conn:
            ids = [r.id for r in conn.execute(select(auth_sessions.c.id).where(condition)).fetchall()]
            for session_id in ids:
                self.refresh_tokens.revoke_all_for_session(session_id, conn=conn)
            if not ids:
                return 0
            result = conn.execute(auth_sessions.delete().where(auth_sessions.c.id.in_(ids)))
        return result.rowcount


# ---------------------------------------------------------------------------
# Access-token blacklist
# ---------------------------------------------------------------------------


class RevocationList:
    """Hashes of access tokens rejected before their natural expiry."""

    def __init__(self, engine: Engine, codec: TokenCodec) -> None:
        self.engine = engine
        self._codec = codec

    def add(self, access_token: str, expires_at: datetime | None = None) -> bool:
        """Blacklist access_token until expires_at (default: the token's own exp).

        Returns False if the token was already listed. Duplicates are not an
        error: logout may race with logout-all for the same token.
        """
        if expires_at is None:
            expires_at = self._codec.expiry_of(access_token) or (utcnow() + self._codec.access_ttl)
        entry = RevocationEntry(token_hash=self._codec.hash(access_token), expires_at=expires_at)
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    token_blacklist.insert().values(
                        id=str(uuid.uuid4()),
                        token_hash=entry.token_hash,
                        expires_at=iso(entry.expires_at),
                        created_at=iso(utcnow()),
                    )
                )
        except IntegrityError:
            return False
        return True

    def is_blacklisted(self, access_token: str) -> bool:
        if not access_token:
            return False
        token_hash = self._codec.hash(access_token)
        with self.engine.connect() as conn:
            row = conn.execute(
                select(token_blacklist.c.id).where(token_blacklist.c.token_hash == token_hash)
            ).fetchone()
        return row is not None

    def prune_expired(self) -> int:
        """Drop entries whose token would have expired anyway."""
        with self.engine.begin() as conn:
            result = conn.execute(token_blacklist.delete().where(token_blacklist.c.expires_at <= iso(utcnow())))
        return result.rowcount


# ---------------------------------------------------------------------------
# One-time purpose tokens
# ---------------------------------------------------------------------------

PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"

PURPOSE_TTLS: dict[str, timedelta] = {
    PASSWORD_RESET: timedelta(hours=1),
    EMAIL_VERIFICATION: timedelta(hours=24),
}


class OneTimeTokenStore:
    """Single-use, expiring tokens bound to a user and a purpose.

    The raw value is random (not a JWT) and is returned once by issue(); the
    table keeps only its keyed hash. consume() is a conditional UPDATE on
    used_at, so two concurrent redemptions of one token have one winner.
    """

    def __init__(self, engine: Engine, codec: TokenCodec) -> None:
        self.engine = engine
        self._codec = codec

    def issue(self, user_id: str, purpose: str, ttl: timedelta | None = None) -> tuple[str, OneTimeToken]:
        """Create a token and return (raw, record).

        A new password-reset token retires every earlier one for the user in
        the same transaction, so only the latest emailed link works.
        """
        if purpose not in PURPOSE_TTLS:
            raise ValueError(f"Unknown token purpose: {purpose!r}")
        raw = secrets.token_hex(32)
        now = utcnow()
        record = OneTimeToken(
            id=str(uuid.uuid4()),
            user_id=user_id,
            purpose=purpose,
            token_hash=self._codec.hash(raw),
            expires_at=now + (ttl or PURPOSE_TTLS[purpose]),
            created_at=now,
        )
        with self.engine.begin() as conn:
            if purpose == PASSWORD_RESET:
                self.invalidate_user(user_id, purpose, conn=conn)
            conn.execute(
                one_time_tokens.insert().values(
                    id=record.id,
                    user_id=record.user_id,
                    purpose=record.purpose,
                    token_hash=record.token_hash,
                    expires_at=iso(record.expires_at),
                    created_at=iso(now),
                )
            )
        logger.debug("One-time token issued purpose=%s user=%s", purpose, user_id)
        return raw, record

    def consume(self, purpose: str, raw_token: str) -> OneTimeToken | None:
        """Mark the token used and return it, or None if it was not usable.

        Unknown, expired, already used and wrong-purpose tokens all give None.
        """
        if not raw_token:
            return None
        now = utcnow()
        token_hash = self._codec.hash(raw_token)
        with self.engine.begin() as conn:
            result = conn.execute(
                one_time_tokens.update()
                .where(
                    and_(
                        one_time_tokens.c.token_hash == token_hash,
                        one_time_tokens.c.purpose == purpose,
                        one_time_tokens.c.used_at.is_(None),
                        one_time_tokens.c.expires_at > iso(now),
                    )
                )
                .values(used_at=iso(now))
            )
            if result.rowcount == 0:
                return None
            row = conn.execute(one_time_tokens.select().where(one_time_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_one_time_token(row)

    def invalidate_user(self, user_id: str, purpose: str | None = None, conn: Connection | None = None) -> int:
        """Retire every unused token of the user (optionally one purpose only)."""
        condition = and_(one_time_tokens.c.user_id == user_id, one_time_tokens.c.used_at.is_(None))
        if purpose is not None:
            condition = and_(condition, one_time_tokens.c.purpose == purpose)
        with _transaction(self.engine, conn) as c:
            result = c.execute(one_time_tokens.update().where(condition).values(used_at=iso(utcnow())))
        return result.rowcount

    def prune_expired(self) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(one_time_tokens.delete().where(one_time_tokens.c.expires_at < iso(utcnow())))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        fingerprint_hash=row.fingerprint_hash,
        expires_at=parse_iso(row.expires_at),
        last_used_at=parse_iso(row.last_used_at),
        created_at=parse_iso(row.created_at),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        remember_me=bool(row.remember_me),
        revoked_at=parse_iso(row.revoked_at),
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        session_id=row.session_id,
        token_hash=row.token_hash,
        expires_at=parse_iso(row.expires_at),
        created_at=parse_iso(row.created_at),
        revoked_at=parse_iso(row.revoked_at),
        rotated_at=parse_iso(row.rotated_at),
    )


def _row_to_one_time_token(row) -> OneTimeToken:
    return OneTimeToken(
        id=row.id,
        user_id=row.user_id,
        purpose=row.purpose,
        token_hash=row.token_hash,
        expires_at=parse_iso(row.expires_at),
        created_at=parse_iso(row.created_at),
        used_at=parse_iso(row.used_at),
    )
