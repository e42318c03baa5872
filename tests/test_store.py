"""
tests/test_store.py -- Repository tests for auth/store.py.

Exercises SessionStore, RefreshTokenStore, RevocationList and OneTimeTokenStore
against an isolated in-memory database (see conftest.harness).

Coverage:
  - Raw refresh tokens are never persisted, only their keyed hash
  - Rotation supersedes exactly once; a second rotation of the same token fails
    and leaves no new token behind
  - Concurrent rotations of one token on a file-backed database: one winner
  - Session revoke cascades to tokens and is idempotent
  - Blacklist add / lookup / duplicate / prune
  - One-time tokens: consumed once, purpose-bound, expiring, retired per user
  - Retention pruning of sessions and tokens
"""

from __future__ import annotations

import concurrent.futures
import threading
from datetime import timedelta

import pytest
from sqlalchemy import select

from api.container import Services, build_services
from auth.errors import Unauthenticated
from auth.models import Session
from core.config import Settings
from auth.store import EMAIL_VERIFICATION, PASSWORD_RESET
from core.db import auth_sessions, iso, one_time_tokens, refresh_tokens, utcnow


def _open_session(services: Services, user_id: str = "u-1", days: int = 7) -> tuple[Session, str]:
    raw = services.codec.issue_refresh_token(user_id)
    expires_at = utcnow() + timedelta(days=days)
    session = services.session_store.create(
        user_id=user_id,
        fingerprint_hash="f" * 64,
        expires_at=expires_at,
        ip_address="192.0.2.1",
        user_agent="pytest",
        refresh_token=raw,
        refresh_expires_at=expires_at,
    )
    return session, raw


def _backdate(services: Services, table, row_id: str, **columns) -> None:
    with services.engine.begin() as conn:
        conn.execute(table.update().where(table.c.id == row_id).values(**columns))


class TestRefreshTokenStore:
    def test_only_hash_is_persisted(self, services: Services) -> None:
        session, raw = _open_session(services)
        with services.engine.connect() as conn:
            stored = [r.token_hash for r in conn.execute(select(refresh_tokens.c.token_hash)).fetchall()]
        assert raw not in stored
        assert services.codec.hash(raw) in stored

    def test_find_valid_returns_live_token(self, services: Services) -> None:
        session, raw = _open_session(services)
        record = services.refresh_tokens.find_valid(raw)
        assert record is not None
        assert record.session_id == session.id

    def test_rotation_invalidates_old_and_validates_new(self, services: Services) -> None:
        session, r1 = _open_session(services)
        r2 = services.codec.issue_refresh_token("u-1")
        services.refresh_tokens.rotate(r1, r2, session.id, utcnow() + timedelta(days=7))

        assert services.refresh_tokens.find_valid(r1) is None
        assert services.refresh_tokens.find_valid(r2) is not None
        assert services.codec.hash(r1) != services.codec.hash(r2)

        superseded = services.refresh_tokens.find_any(r1)
        assert superseded.rotated_at is not None
        assert superseded.revoked_at is not None
        assert superseded.is_valid() is False
        assert services.refresh_tokens.find_valid(r2).is_valid() is True

    def test_second_rotation_of_same_token_fails_cleanly(self, services: Services) -> None:
        session, r1 = _open_session(services)
        r2 = services.codec.issue_refresh_token("u-1")
        r3 = services.codec.issue_refresh_token("u-1")
        services.refresh_tokens.rotate(r1, r2, session.id, utcnow() + timedelta(days=7))

        with pytest.raises(Unauthenticated) as exc_info:
            services.refresh_tokens.rotate(r1, r3, session.id, utcnow() + timedelta(days=7))
        assert exc_info.value.reason == "refresh_token_already_rotated"
        assert services.refresh_tokens.find_any(r3) is None
        assert services.refresh_tokens.count_active(session.id) == 1

    def test_concurrent_rotation_has_one_winner(self, tmp_path) -> None:
        settings = Settings(debug=True, bcrypt_rounds=4, database_url=f"sqlite:///{tmp_path / 'race.db'}")
        services = build_services(settings)
        workers = 4
        try:
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
                for _ in range(20):
                    session, old = _open_session(services)
                    barrier = threading.Barrier(workers)

                    def _rotate() -> str:
                        new = services.codec.issue_refresh_token("u-1")
                        barrier.wait()
                        try:
                            services.refresh_tokens.rotate(old, new, session.id, utcnow() + timedelta(days=7))
                        except Unauthenticated:
                            return "lost"
                        return "won"

                    outcomes = [f.result(timeout=30) for f in [pool.submit(_rotate) for _ in range(workers)]]

                    assert outcomes.count("won") == 1
                    assert services.refresh_tokens.count_active(session.id) == 1
        finally:
            services.close()

    def test_rotation_bound_to_owning_session(self, services: Services) -> None:
        _session, r1 = _open_session(services)
        other, _ = _open_session(services, user_id="u-2")
        with pytest.raises(Unauthenticated):
            services.refresh_tokens.rotate(r1, services.codec.issue_refresh_token("u-1"), other.id, utcnow())

    def test_expired_token_is_invalid(self, services: Services) -> None:
        session, raw = _open_session(services)
        record = services.refresh_tokens.find_valid(raw)
        _backdate(services, refresh_tokens, record.id, expires_at=iso(utcnow() - timedelta(seconds=1)))
        assert services.refresh_tokens.find_valid(raw) is None

    def test_revoke_token_by_raw_value(self, services: Services) -> None:
        _session, raw = _open_session(services)
        assert services.refresh_tokens.revoke_token(raw) is not None
        assert services.refresh_tokens.find_valid(raw) is None
        assert services.refresh_tokens.revoke_token(raw) is None

    def test_unknown_token_is_invalid(self, services: Services) -> None:
        assert services.refresh_tokens.find_valid("never-issued") is None
        assert services.refresh_tokens.find_valid("") is None


class TestSessionStore:
    def test_expiry_must_be_in_the_future(self, services: Services) -> None:
        with pytest.raises(ValueError):
            services.session_store.create(user_id="u-1", fingerprint_hash="x", expires_at=utcnow())

    def test_revoke_cascades_to_refresh_tokens(self, services: Services) -> None:
        session, raw = _open_session(services)
        assert services.session_store.revoke(session.id) is True

        assert services.refresh_tokens.find_valid(raw) is None
        assert services.refresh_tokens.count_active(session.id) == 0
        assert services.session_store.is_active(session.id) is False
        # Revoked well before its natural expiry.
        assert services.session_store.get(session.id).expires_at > utcnow()

    def test_revoke_is_idempotent(self, services: Services) -> None:
        session, _raw = _open_session(services)
        assert services.session_store.revoke(session.id) is True
        assert services.session_store.revoke(session.id) is False
        assert services.session_store.revoke("no-such-session") is False

    def test_revoked_at_is_never_cleared(self, services: Services) -> None:
        session, _raw = _open_session(services)
        services.session_store.revoke(session.id)
        first = services.session_store.get(session.id).revoked_at
        services.session_store.revoke(session.id)
        assert services.session_store.get(session.id).revoked_at == first

    def test_touch_only_updates_active_sessions(self, services: Services) -> None:
        session, _raw = _open_session(services)
        assert services.session_store.touch(session.id) is True
        services.session_store.revoke(session.id)
        assert services.session_store.touch(session.id) is False

    def test_has_seen_outlives_revocation(self, services: Services) -> None:
        session, _raw = _open_session(services)
        services.session_store.revoke(session.id)
        assert services.session_store.find_active("u-1", "f" * 64) is None
        assert services.session_store.has_seen("u-1", "f" * 64) is True
        assert services.session_store.has_seen("u-2", "f" * 64) is False
        assert services.session_store.has_seen("u-1", "e" * 64) is False

    def test_expired_session_is_inactive(self, services: Services) -> None:
        session, _raw = _open_session(services)
        _backdate(services, auth_sessions, session.id, expires_at=iso(utcnow() - timedelta(minutes=1)))
        assert services.session_store.is_active(session.id) is False
        assert services.session_store.list_active("u-1") == []

    def test_extend_replaces_refresh_token(self, services: Services) -> None:
        session, old_raw = _open_session(services, days=1)
        new_raw = services.codec.issue_refresh_token("u-1")
        new_expiry = utcnow() + timedelta(days=7)

        extended = services.session_store.extend(session.id, new_expiry, refresh_token=new_raw)

        assert extended.expires_at > session.expires_at
        assert services.refresh_tokens.find_valid(old_raw) is None
        assert services.refresh_tokens.find_valid(new_raw) is not None
        assert services.refresh_tokens.count_active(session.id) == 1

    def test_extend_refuses_revoked_session(self, services: Services) -> None:
        session, _raw = _open_session(services)
        services.session_store.revoke(session.id)
        assert services.session_store.extend(session.id, utcnow() + timedelta(days=7)) is None

    def test_prune_expired_and_revoked(self, services: Services) -> None:
        stale, _ = _open_session(services)
        gone, _ = _open_session(services)
        live, live_raw = _open_session(services)
        _backdate(services, auth_sessions, stale.id, expires_at=iso(utcnow() - timedelta(days=8)))
        services.session_store.revoke(gone.id)
        _backdate(services, auth_sessions, gone.id, revoked_at=iso(utcnow() - timedelta(days=31)))

        assert services.session_store.prune_expired(7) == 1
        assert services.session_store.prune_revoked(30) == 1
        assert services.session_store.get(stale.id) is None
        assert services.session_store.get(gone.id) is None
        assert services.session_store.get(live.id) is not None
        assert services.refresh_tokens.find_valid(live_raw) is not None


class TestRevocationList:
    def test_blacklisted_token_is_found(self, services: Services) -> None:
        token = services.codec.issue_access_token("u-1", "a@example.com", "user")
        unrelated = services.codec.issue_access_token("u-1", "a@example.com", "user")
        assert services.revocations.add(token) is True
        assert services.revocations.is_blacklisted(token) is True
        assert services.revocations.is_blacklisted(unrelated) is False

    def test_duplicate_add_is_not_an_error(self, services: Services) -> None:
        token = services.codec.issue_access_token("u-1", "a@example.com", "user")
        assert services.revocations.add(token) is True
        assert services.revocations.add(token) is False

    def test_prune_drops_only_naturally_expired_entries(self, services: Services) -> None:
        old = services.codec.issue_access_token("u-1", "a@example.com", "user")
        fresh = services.codec.issue_access_token("u-1", "a@example.com", "user")
        services.revocations.add(old, expires_at=utcnow() - timedelta(minutes=1))
        services.revocations.add(fresh)

        assert services.revocations.prune_expired() == 1
        assert services.revocations.is_blacklisted(old) is False
        assert services.revocations.is_blacklisted(fresh) is True


class TestOneTimeTokenStore:
    def test_consumed_exactly_once(self, services: Services) -> None:
        raw, record = services.one_time_tokens.issue("u-1", PASSWORD_RESET)

        used = services.one_time_tokens.consume(PASSWORD_RESET, raw)

        assert used.id == record.id
        assert used.used_at is not None
        assert used.is_usable() is False
        assert services.one_time_tokens.consume(PASSWORD_RESET, raw) is None

    def test_only_hash_is_persisted(self, services: Services) -> None:
        raw, _record = services.one_time_tokens.issue("u-1", EMAIL_VERIFICATION)
        with services.engine.connect() as conn:
            stored = [r.token_hash for r in conn.execute(select(one_time_tokens.c.token_hash)).fetchall()]
        assert stored == [services.codec.hash(raw)]

    def test_purpose_is_part_of_the_lookup(self, services: Services) -> None:
        raw, _record = services.one_time_tokens.issue("u-1", EMAIL_VERIFICATION)
        assert services.one_time_tokens.consume(PASSWORD_RESET, raw) is None
        assert services.one_time_tokens.consume(EMAIL_VERIFICATION, raw) is not None

    def test_ttl_follows_purpose(self, services: Services) -> None:
        _raw, reset = services.one_time_tokens.issue("u-1", PASSWORD_RESET)
        _raw, verify = services.one_time_tokens.issue("u-1", EMAIL_VERIFICATION)
        assert reset.expires_at - reset.created_at == timedelta(hours=1)
        assert verify.expires_at - verify.created_at == timedelta(hours=24)

    def test_expired_token_is_refused(self, services: Services) -> None:
        raw, record = services.one_time_tokens.issue("u-1", PASSWORD_RESET)
        _backdate(services, one_time_tokens, record.id, expires_at=iso(utcnow() - timedelta(seconds=1)))
        assert services.one_time_tokens.consume(PASSWORD_RESET, raw) is None

    def test_new_reset_token_retires_the_previous_one(self, services: Services) -> None:
        first, _ = services.one_time_tokens.issue("u-1", PASSWORD_RESET)
        second, _ = services.one_time_tokens.issue("u-1", PASSWORD_RESET)
        assert services.one_time_tokens.consume(PASSWORD_RESET, first) is None
        assert services.one_time_tokens.consume(PASSWORD_RESET, second) is not None

    def test_invalidate_user_scoped_by_purpose(self, services: Services) -> None:
        reset, _ = services.one_time_tokens.issue("u-1", PASSWORD_RESET)
        verify, _ = services.one_time_tokens.issue("u-1", EMAIL_VERIFICATION)
        other, _ = services.one_time_tokens.issue("u-2", PASSWORD_RESET)

        assert services.one_time_tokens.invalidate_user("u-1", PASSWORD_RESET) == 1

        assert services.one_time_tokens.consume(PASSWORD_RESET, reset) is None
        assert services.one_time_tokens.consume(EMAIL_VERIFICATION, verify) is not None
        assert services.one_time_tokens.consume(PASSWORD_RESET, other) is not None

    def test_unknown_purpose_rejected(self, services: Services) -> None:
        with pytest.raises(ValueError):
            services.one_time_tokens.issue("u-1", "magic_link")

    def test_prune_drops_expired(self, services: Services) -> None:
        _raw, old = services.one_time_tokens.issue("u-1", EMAIL_VERIFICATION)
        fresh, _ = services.one_time_tokens.issue("u-2", EMAIL_VERIFICATION)
        _backdate(services, one_time_tokens, old.id, expires_at=iso(utcnow() - timedelta(days=1)))

        assert services.one_time_tokens.prune_expired() == 1
        assert services.one_time_tokens.consume(EMAIL_VERIFICATION, fresh) is not None
