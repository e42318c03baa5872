"""
tests/test_sessions.py -- Behaviour tests for auth/sessions.py (SessionManager).

Coverage:
  - Session lifetime: 7 days, or 30 with remember-me; refresh TTL capped by it
  - Rotation: old token dead, new token live, access token from CURRENT user
  - Replay of a rotated refresh token: session revoked, audit + notification
  - Revocation: idempotent, revoke-all, revoke-others (including the
    single-session case returning 0)
  - find_or_create: same device reuses one session, never shortens it
  - Listing, validation, extension
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from api.container import Services
from audit.events import EventType
from auth.errors import Unauthenticated
from auth.models import RequestContext
from core.db import utcnow
from core.notifications import SESSION_REUSE_DETECTED

TOLERANCE = timedelta(seconds=5)


class TestSessionLifetime:
    def test_default_session_lasts_seven_days(self, services: Services, make_user, ctx: RequestContext) -> None:
        grant = services.sessions.create_session(make_user(), ctx, remember_me=False)
        lifetime = grant.session.expires_at - grant.session.created_at
        assert abs(lifetime - timedelta(days=7)) <= TOLERANCE

    def test_remember_me_session_lasts_thirty_days(self, services: Services, make_user, ctx: RequestContext) -> None:
        grant = services.sessions.create_session(make_user(), ctx, remember_me=True)
        lifetime = grant.session.expires_at - grant.session.created_at
        assert abs(lifetime - timedelta(days=30)) <= TOLERANCE
        assert grant.session.remember_me is True

    def test_refresh_token_never_outlives_session(self, services: Services, make_user, ctx: RequestContext) -> None:
        grant = services.sessions.create_session(make_user(), ctx, remember_me=False)
        record = services.refresh_tokens.find_valid(grant.refresh_token)
        assert record.expires_at <= grant.session.expires_at

    def test_new_session_records_device(self, services: Services, make_user, ctx: RequestContext) -> None:
        grant = services.sessions.create_session(make_user(), ctx)
        assert grant.session.ip_address == "203.0.113.10"
        assert "Chrome" in grant.session.user_agent
        assert grant.is_existing is False


class TestRotation:
    def test_rotate_supersedes_old_token(self, services: Services, make_user, ctx: RequestContext) -> None:
        user_id = make_user()
        grant = services.sessions.create_session(user_id, ctx)

        pair = services.sessions.rotate(grant.refresh_token)

        assert pair.refresh_token != grant.refresh_token
        assert pair.session_id == grant.session.id
        assert services.refresh_tokens.find_valid(grant.refresh_token) is None
        assert services.refresh_tokens.find_valid(pair.refresh_token) is not None
        claims = services.codec.verify_access(pair.access_token)
        assert claims["sub"] == user_id
        assert claims["sid"] == grant.session.id

    def test_rotation_touches_session(self, services: Services, make_user, ctx: RequestContext) -> None:
        grant = services.sessions.create_session(make_user(), ctx)
        services.sessions.rotate(grant.refresh_token)
        assert services.sessions.get_session(grant.session.id).last_used_at >= grant.session.last_used_at

    def test_access_token_reflects_current_role(self, services: Services, make_user, ctx: RequestContext) -> None:
        user_id = make_user(role="user")
        grant = services.sessions.create_session(user_id, ctx)
        services.users.update_user(user_id, role="admin", permissions=["audit:read"])

        pair = services.sessions.rotate(grant.refresh_token)

        claims = services.codec.verify_access(pair.access_token)
        assert claims["role"] == "admin"
        assert claims["permissions"] == ["audit:read"]

    def test_rotate_on_revoked_session_fails(self, services: Services, make_user, ctx: RequestContext) -> None:
        grant = services.sessions.create_session(make_user(), ctx)
        services.sessions.revoke(grant.session.id)
        with pytest.raises(Unauthenticated):
            services.sessions.rotate(grant.refresh_token)

    def test_rotate_for_inactive_user_fails(self, services: Services, make_user, ctx: RequestContext) -> None:
        user_id = make_user()
        grant = services.sessions.create_session(user_id, ctx)
        services.users.update_user(user_id, status="suspended")
        with pytest.raises(Unauthenticated):
            services.sessions.rotate(grant.refresh_token)
        # The failed attempt must not have consumed the token.
        assert services.refresh_tokens.find_valid(grant.refresh_token) is not None

    def test_access_token_is_not_accepted_for_rotation(
        self, services: Services, make_user, ctx: RequestContext
    ) -> None:
        user_id = make_user()
        services.sessions.create_session(user_id, ctx)
        access = services.codec.issue_access_token(user_id, "user@example.com", "user")
        with pytest.raises(Unauthenticated):
            services.sessions.rotate(access)

    def test_unknown_refresh_token_fails(self, services: Services, make_user) -> None:
        forged = services.codec.issue_refresh_token(make_user())
        with pytest.raises(Unauthenticated):
            services.sessions.rotate(forged)


class TestRefreshReuse:
    def test_replay_revokes_session_and_is_audited(self, harness, make_user, ctx: RequestContext) -> None:
        services = harness.services
        user_id = make_user()
        grant = services.sessions.create_session(user_id, ctx)
        pair = services.sessions.rotate(grant.refresh_token)

        with pytest.raises(Unauthenticated):
            services.sessions.rotate(grant.refresh_token)

        assert services.sessions.validate_session(grant.session.id) is False
        assert services.refresh_tokens.find_valid(pair.refresh_token) is None
        events = services.audit.event_logs(EventType.SUSPICIOUS_ACTIVITY)
        assert events.total == 1
        assert events.items[0].user_id == user_id
        assert events.items[0].metadata["session_revoked"] is True
        assert SESSION_REUSE_DETECTED in harness.drain_notifications()

    def test_replay_policy_can_be_disabled(self, services_factory, ctx: RequestContext) -> None:
        services = services_factory(refresh_reuse_revokes_session=False)
        user_id = services.users.create_user("user@example.com", services.hasher.hash("pw"))
        grant = services.sessions.create_session(user_id, ctx)
        pair = services.sessions.rotate(grant.refresh_token)

        with pytest.raises(Unauthenticated):
            services.sessions.rotate(grant.refresh_token)

        assert services.sessions.validate_session(grant.session.id) is True
        assert services.refresh_tokens.find_valid(pair.refresh_token) is not None
        event = services.audit.event_logs(EventType.SUSPICIOUS_ACTIVITY).items[0]
        assert event.metadata["session_revoked"] is False


class TestRevocation:
    def test_revoke_invalidates_session_and_tokens(self, services: Services, make_user, ctx: RequestContext) -> None:
        grant = services.sessions.create_session(make_user(), ctx)
        assert services.sessions.revoke(grant.session.id) is True
        assert services.sessions.validate_session(grant.session.id) is False
        assert services.refresh_tokens.find_valid(grant.refresh_token) is None

    def test_second_revoke_has_no_effect(self, services: Services, make_user, ctx: RequestContext) -> None:
        grant = services.sessions.create_session(make_user(), ctx)
        services.sessions.revoke(grant.session.id)
        assert services.sessions.revoke(grant.session.id) is False

    def test_revoke_others_with_single_session_returns_zero(
        self, services: Services, make_user, ctx: RequestContext
    ) -> None:
        user_id = make_user()
        grant = services.sessions.create_session(user_id, ctx, remember_me=False)
        assert services.sessions.revoke_others(user_id, grant.session.id) == 0
        assert services.sessions.validate_session(grant.session.id) is True

    def test_revoke_others_keeps_current(
        self, services: Services, make_user, ctx: RequestContext, other_ctx: RequestContext
    ) -> None:
        user_id = make_user()
        keep = services.sessions.create_session(user_id, ctx)
        services.sessions.create_session(user_id, other_ctx)
        services.sessions.create_session(user_id, other_ctx)

        assert services.sessions.revoke_others(user_id, keep.session.id) == 2
        assert [s.id for s in services.session_store.list_active(user_id)] == [keep.session.id]

    def test_revoke_all(self, services: Services, make_user, ctx: RequestContext, other_ctx: RequestContext) -> None:
        user_id = make_user()
        services.sessions.create_session(user_id, ctx)
        services.sessions.create_session(user_id, other_ctx)
        assert services.sessions.revoke_all(user_id) == 2
        assert services.sessions.count_active(user_id) == 0
        assert services.sessions.revoke_all(user_id) == 0

    def test_revoke_all_leaves_other_users_alone(self, services: Services, make_user, ctx: RequestContext) -> None:
        alice = make_user(email="alice@example.com")
        bob = make_user(email="bob@example.com")
        services.sessions.create_session(alice, ctx)
        bob_grant = services.sessions.create_session(bob, ctx)
        services.sessions.revoke_all(alice)
        assert services.sessions.validate_session(bob_grant.session.id) is True

    def test_revoke_by_token(self, services: Services, make_user, ctx: RequestContext) -> None:
        grant = services.sessions.create_session(make_user(), ctx)
        revoked = services.sessions.revoke_by_token(grant.refresh_token)
        assert revoked.id == grant.session.id
        assert services.sessions.validate_session(grant.session.id) is False
        assert services.sessions.revoke_by_token(grant.refresh_token) is None


class TestFindOrCreate:
    def test_same_device_reuses_session(self, services: Services, make_user, ctx: RequestContext) -> None:
        user_id = make_user()
        first = services.sessions.find_or_create(user_id, ctx)
        second = services.sessions.find_or_create(user_id, ctx)

        assert first.session.id == second.session.id
        assert second.is_existing is True
        assert services.sessions.count_active(user_id) == 1

    def test_reuse_issues_fresh_refresh_token(self, services: Services, make_user, ctx: RequestContext) -> None:
        user_id = make_user()
        first = services.sessions.find_or_create(user_id, ctx)
        second = services.sessions.find_or_create(user_id, ctx)

        assert second.refresh_token != first.refresh_token
        assert services.refresh_tokens.find_valid(first.refresh_token) is None
        assert services.refresh_tokens.find_valid(second.refresh_token) is not None
        assert services.refresh_tokens.count_active(first.session.id) == 1

    def test_other_device_gets_own_session(
        self, services: Services, make_user, ctx: RequestContext, other_ctx: RequestContext
    ) -> None:
        user_id = make_user()
        laptop = services.sessions.find_or_create(user_id, ctx)
        phone = services.sessions.find_or_create(user_id, other_ctx)
        assert laptop.session.id != phone.session.id
        assert services.sessions.count_active(user_id) == 2

    def test_reuse_never_shortens_expiry(self, services: Services, make_user, ctx: RequestContext) -> None:
        user_id = make_user()
        long_lived = services.sessions.find_or_create(user_id, ctx, remember_me=True)
        reused = services.sessions.find_or_create(user_id, ctx, remember_me=False)
        assert reused.session.id == long_lived.session.id
        assert reused.session.expires_at >= long_lived.session.expires_at

    def test_revoked_session_is_not_reused(self, services: Services, make_user, ctx: RequestContext) -> None:
        user_id = make_user()
        first = services.sessions.find_or_create(user_id, ctx)
        services.sessions.revoke(first.session.id)
        second = services.sessions.find_or_create(user_id, ctx)
        assert second.session.id != first.session.id
        assert second.is_existing is False


class TestQueries:
    def test_list_sessions_marks_current(
        self, services: Services, make_user, ctx: RequestContext, other_ctx: RequestContext
    ) -> None:
        user_id = make_user()
        current = services.sessions.create_session(user_id, ctx)
        services.sessions.create_session(user_id, other_ctx)

        views = services.sessions.list_sessions(user_id, current.session.id)

        assert len(views) == 2
        flagged = [v for v in views if v.is_current]
        assert [v.session.id for v in flagged] == [current.session.id]
        assert flagged[0].description == "Chrome 120 on Windows 10"
        assert {v.os for v in views} == {"Windows", "iOS"}

    def test_list_sessions_skips_revoked(self, services: Services, make_user, ctx: RequestContext) -> None:
        user_id = make_user()
        grant = services.sessions.create_session(user_id, ctx)
        services.sessions.revoke(grant.session.id)
        assert services.sessions.list_sessions(user_id) == []

    def test_extend_session_pushes_expiry(self, services: Services, make_user, ctx: RequestContext) -> None:
        grant = services.sessions.create_session(make_user(), ctx, remember_me=False)
        extended = services.sessions.extend_session(grant.session.id, remember_me=True)
        assert extended.expires_at - utcnow() > timedelta(days=29)

    def test_extend_session_refuses_revoked(self, services: Services, make_user, ctx: RequestContext) -> None:
        grant = services.sessions.create_session(make_user(), ctx)
        services.sessions.revoke(grant.session.id)
        assert services.sessions.extend_session(grant.session.id) is None

    def test_issue_access_token_for_inactive_user_fails(
        self, services: Services, make_user, ctx: RequestContext
    ) -> None:
        user_id = make_user(status="inactive")
        grant = services.sessions.create_session(user_id, ctx)
        with pytest.raises(Unauthenticated):
            services.sessions.issue_access_token(user_id, grant.session.id)

    def test_touch_only_live_sessions(self, services: Services, make_user, ctx: RequestContext) -> None:
        grant = services.sessions.create_session(make_user(), ctx)
        assert services.sessions.touch(grant.session.id) is True
        services.sessions.revoke(grant.session.id)
        assert services.sessions.touch(grant.session.id) is False
