"""
auth/sessions.py -- Session lifecycle: create, reuse, rotate, revoke.

State machine per session:

    active --revoke--> revoked   (terminal; revoked_at never cleared)
    active --time----> expired   (terminal; a query-time predicate, no write)

SessionManager is stateless apart from the stores and codec it is built
with. It owns the rules; the stores own the SQL.

Refresh rotation [R1]:
  verify signature/type -> find_valid(old) -> session active? -> user still
  active? -> ONE transaction { conditional supersede of old + insert new +
  touch session (also conditional on the session being active) }. Any zero
  row count raises Unauthenticated and rolls the unit back, so a concurrent
  revoke or a concurrent rotation of the same token cannot leave a live token
  behind. The access token is issued from the CURRENT user record, so role or
  permission changes take effect at the next refresh.

Replay of a superseded refresh token:
  find_valid() cannot tell "rotated" from "never existed". When it fails,
  find_any() checks whether the presented token was rotated earlier. A
  rotated token coming back means two parties hold the same chain, so when
  reuse_revokes_session is on the whole session is revoked and on_reuse is
  called (the composition root wires it to the audit trail). The caller sees
  the same generic Unauthenticated either way.

Refresh-token TTL is capped at the session expiry: a token must never outlive
the session it belongs to.

Layer rule: no imports from api/, security/, or audit/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.errors import Unauthenticated
from auth.fingerprint import DeviceFingerprinter, describe, parse_user_agent
from auth.models import DeviceInfo, RefreshToken, RequestContext, Session, SessionGrant, SessionView, TokenPair
from auth.store import RefreshTokenStore, SessionStore
from auth.tokens import TokenCodec
from auth.users import CredentialStore
from core.db import utcnow

logger = logging.getLogger("sessionguard.auth.sessions")

ReuseHook = Callable[[RefreshToken, bool], None]


class SessionManager:
    def __init__(
        self,
        sessions: SessionStore,
        refresh_tokens: RefreshTokenStore,
        codec: TokenCodec,
        users: CredentialStore,
        fingerprinter: DeviceFingerprinter | None = None,
        session_ttl: timedelta = timedelta(days=7),
        remember_me_ttl: timedelta = timedelta(days=30),
        reuse_revokes_session: bool = True,
        on_reuse: ReuseHook | None = None,
    ) -> None:
        self.sessions = sessions
        self.refresh_tokens = refresh_tokens
        self.codec = codec
        self.users = users
        self.fingerprinter = fingerprinter or DeviceFingerprinter()
        self.session_ttl = session_ttl
        self.remember_me_ttl = remember_me_ttl
        self.reuse_revokes_session = reuse_revokes_session
        self.on_reuse = on_reuse

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def session_expiry(self, remember_me: bool, now: datetime | None = None) -> datetime:
        now = now or utcnow()
        return now + (self.remember_me_ttl if remember_me else self.session_ttl)

    def _refresh_expiry(self, session_expires_at: datetime) -> datetime:
        return min(self.codec.refresh_expiry(), session_expires_at)

    def create_session(
        self,
        user_id: str,
        ctx: RequestContext,
        remember_me: bool = False,
        device: DeviceInfo | None = None,
    ) -> SessionGrant:
        """Open a new session with its first refresh token.

        The raw refresh token in the returned grant is the only copy; only its
        hash is persisted.
        """
        device = device or self.fingerprinter.from_context(ctx)
        expires_at = self.session_expiry(remember_me)
        raw_refresh = self.codec.issue_refresh_token(user_id)
        session = self.sessions.create(
            user_id=user_id,
            fingerprint_hash=device.fingerprint_hash,
            expires_at=expires_at,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            remember_me=remember_me,
            refresh_token=raw_refresh,
            refresh_expires_at=self._refresh_expiry(expires_at),
        )
        logger.info("Session created user=%s session=%s device=%r", user_id, session.id, device.description)
        return SessionGrant(session=session, refresh_token=raw_refresh, is_existing=False)

    def find_or_create(
        self,
        user_id: str,
        ctx: RequestContext,
        remember_me: bool = False,
        device: DeviceInfo | None = None,
    ) -> SessionGrant:
        """Reuse the active session for this (user, device) or open a new one.

        A reused session is extended (never shortened) and gets a fresh
        refresh token; its previous tokens are revoked in the same
        transaction.
        """
        device = device or self.fingerprinter.from_context(ctx)
        existing = self.sessions.find_active(user_id, device.fingerprint_hash) if device.fingerprint_hash else None
        if existing is not None:
            expires_at = max(existing.expires_at, self.session_expiry(remember_me))
            raw_refresh = self.codec.issue_refresh_token(user_id)
            extended = self.sessions.extend(
                existing.id,
                expires_at,
                refresh_token=raw_refresh,
                refresh_expires_at=self._refresh_expiry(expires_at),
            )
            if extended is not None:
                logger.info("Session reused user=%s session=%s", user_id, extended.id)
                return SessionGrant(session=extended, refresh_token=raw_refresh, is_existing=True)
            # Revoked between lookup and extend; fall through to a new session.
        return self.create_session(user_id, ctx, remember_me, device)

    def issue_access_token(self, user_id: str, session_id: str) -> str:
        """Mint an access token from the CURRENT user record."""
        user = self.users.get_by_id(user_id)
        if user is None or not user.is_active:
            raise Unauthenticated("user_inactive")
        return self.codec.issue_access_token(
            user_id=user.id,
            email=user.email,
            role=user.role,
            permissions=user.permissions,
            session_id=session_id,
        )

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(self, old_raw: str) -> TokenPair:
        """Exchange a live refresh token for a new refresh + access pair [R1]."""
        claims = self.codec.verify_refresh(old_raw)

        record = self.refresh_tokens.find_valid(old_raw)
        if record is None:
            self._check_replay(old_raw)
            raise Unauthenticated("refresh_token_invalid")

        session = self.sessions.get(record.session_id)
        if session is None or not session.is_active():
            raise Unauthenticated("session_inactive")
        if claims.get("sub") != session.user_id:
            logger.warning("Refresh token subject does not match session owner session=%s", session.id)
            raise Unauthenticated("refresh_token_subject_mismatch")

        user = self.users.get_by_id(session.user_id)
        if user is None or not user.is_active:
            raise Unauthenticated("user_inactive")

        new_raw = self.codec.issue_refresh_token(user.id)
        with self.sessions.engine.begin() as conn:
            self.refresh_tokens.rotate(old_raw, new_raw, session.id, self._refresh_expiry(session.expires_at), conn=conn)
            if not self.sessions.touch(session.id, conn=conn):
                raise Unauthenticated("session_inactive")

        access = self.codec.issue_access_token(
            user_id=user.id,
            email=user.email,
            role=user.role,
            permissions=user.permissions,
            session_id=session.id,
        )
        logger.info("Refresh token rotated user=%s session=%s", user.id, session.id)
        return TokenPair(access_token=access, refresh_token=new_raw, session_id=session.id, user_id=user.id)

    def _check_replay(self, raw: str) -> None:
        record = self.refresh_tokens.find_any(raw)
        if record is None or record.rotated_at is None:
            return
        logger.warning("Rotated refresh token presented again session=%s", record.session_id)
        revoked = False
        if self.reuse_revokes_session:
            revoked = self.sessions.revoke(record.session_id)
        if self.on_reuse is not None:
            try:
                self.on_reuse(record, revoked)
            except Exception:
                logger.exception("Refresh reuse hook failed session=%s", record.session_id)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, session_id: str) -> bool:
        """Revoke one session and its refresh tokens. False if already revoked."""
        revoked = self.sessions.revoke(session_id)
        if revoked:
            logger.info("Session revoked session=%s", session_id)
        return revoked

    def revoke_all(self, user_id: str) -> int:
        return self.revoke_others(user_id, keep_session_id=None)

    def revoke_others(self, user_id: str, keep_session_id: str | None) -> int:
        """Revoke every active session of user_id except keep_session_id."""
        count = 0
        for session in self.sessions.list_active(user_id):
            if session.id == keep_session_id:
                continue
            if self.sessions.revoke(session.id):
                count += 1
        if count:
            logger.info("Revoked %d session(s) user=%s kept=%s", count, user_id, keep_session_id)
        return count

    def revoke_by_token(self, raw_refresh: str) -> Session | None:
        """Revoke the session that owns a live refresh token. Returns it, or None."""
        record = self.refresh_tokens.find_valid(raw_refresh)
        if record is None:
            return None
        session = self.sessions.get(record.session_id)
        if session is None:
            return None
        self.revoke(session.id)
        return session

    # ------------------------------------------------------------------
    # Queries and activity
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> Session | None:
        return self.sessions.get(session_id)

    def list_sessions(self, user_id: str, current_session_id: str | None = None) -> list[SessionView]:
        views = []
        for session in self.sessions.list_active(user_id):
            parsed = parse_user_agent(session.user_agent)
            views.append(
                SessionView(
                    session=session,
                    description=describe(parsed),
                    browser=parsed.browser,
                    os=parsed.os,
                    device=parsed.device,
                    is_current=session.id == current_session_id,
                )
            )
        return views

    def count_active(self, user_id: str) -> int:
        return self.sessions.count_active(user_id)

    def validate_session(self, session_id: str) -> bool:
        return self.sessions.is_active(session_id)

    def extend_session(self, session_id: str, remember_me: bool | None = None) -> Session | None:
        """Push expiry out by a full TTL from now. Never shortens a session."""
        session = self.sessions.get(session_id)
        if session is None or not session.is_active():
            return None
        if remember_me is None:
            remember_me = session.remember_me
        return self.sessions.extend(session_id, max(session.expires_at, self.session_expiry(remember_me)))

    def touch(self, session_id: str) -> bool:
        return self.sessions.touch(session_id)
