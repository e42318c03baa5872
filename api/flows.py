"""
api/flows.py -- Login, refresh, logout, request authentication and password
change / reset.

These are the callers the control plane was built for. Each flow strings the
components together in a fixed order and owns the side effects (attempt
ledger, audit trail, notifications) so route handlers stay thin.

Login order:
    fingerprint -> checkpoint (bot, identifier, IP, lockout)
      -> credential lookup + verify (timing-equalised [C1])
      -> session find-or-create -> access token
      -> attempt ledger (ALWAYS, exactly once per attempt)
      -> audit trail -> notifications

Every rejection, whether it came from the checkpoint or from the credential
check, records one failed attempt and one login_failure audit entry before
the error propagates. Without that, a throttled caller would stop adding to
the count that throttles them.

The error the caller sees never says WHICH check failed: unknown email, wrong
password, inactive account and locked account all surface as the same
Unauthenticated. Only the rate limit is distinguishable, because it carries a
retry hint.

Password change and reset run here as well. A change keeps the session that
made it and revokes the others; a reset revokes every session. Both retire any
outstanding reset tokens and announce the change to the account owner.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from audit.events import AuditContext
from audit.trail import AuditTrail
from auth.errors import AuthError, InvalidRequest, Unauthenticated
from auth.models import DeviceInfo, Principal, RequestContext, Session, TokenPair, UserCredentials
from auth.passwords import CredentialHasher
from auth.sessions import SessionManager
from auth.store import PASSWORD_RESET, OneTimeTokenStore, RevocationList
from auth.tokens import TokenCodec
from auth.users import UserStore, normalize_identifier
from core.notifications import (
    ACCOUNT_LOCKED,
    NEW_DEVICE_LOGIN,
    PASSWORD_CHANGED,
    PASSWORD_RESET_LINK,
    NotificationDispatcher,
)
from security.checkpoint import SecurityCheckpoint
from security.ledger import AttemptLedger
from security.models import CheckOptions, SecurityCheckResult

logger = logging.getLogger("sessionguard.flows")


@dataclass
class LoginResult:
    tokens: TokenPair
    user: UserCredentials
    session: Session
    device: DeviceInfo
    is_new_device: bool
    security: SecurityCheckResult


class AuthFlows:
    def __init__(
        self,
        checkpoint: SecurityCheckpoint,
        hasher: CredentialHasher,
        users: UserStore,
        sessions: SessionManager,
        revocations: RevocationList,
        codec: TokenCodec,
        ledger: AttemptLedger,
        audit: AuditTrail,
        notifier: NotificationDispatcher,
        one_time_tokens: OneTimeTokenStore,
    ) -> None:
        self.checkpoint = checkpoint
        self.hasher = hasher
        self.users = users
        self.sessions = sessions
        self.revocations = revocations
        self.codec = codec
        self.ledger = ledger
        self.audit = audit
        self.notifier = notifier
        self.one_time_tokens = one_time_tokens

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(
        self,
        email: str,
        password: str,
        ctx: RequestContext,
        remember_me: bool = False,
        options: Optional[CheckOptions] = None,
    ) -> LoginResult:
        identifier = normalize_identifier(email)
        device = self.checkpoint.fingerprint(ctx)
        audit_ctx = AuditContext.from_device(device)

        try:
            security = self.checkpoint.perform_check(identifier, ctx, options, device_info=device)
        except AuthError as exc:
            self._record_failure(identifier, exc.reason, device, audit_ctx)
            raise

        user = self.users.find_by_identifier_with_secret(identifier)
        if user is None:
            self.hasher.dummy_verify(password)  # [C1]
            raise self._reject(identifier, "user_not_found", device, audit_ctx)
        if not self.hasher.verify(password, user.hashed_password):
            error = self._reject(identifier, "invalid_password", device, audit_ctx, user.id)
            self._check_lockout_tripped(identifier, user, audit_ctx, options)
            raise error
        if not user.is_active:
            raise self._reject(identifier, "account_inactive", device, audit_ctx, user.id)

        is_new_device = self._is_new_device(user.id, device)
        grant = self.sessions.find_or_create(user.id, ctx, remember_me, device=device)
        access = self.codec.issue_access_token(
            user_id=user.id,
            email=user.email,
            role=user.role,
            permissions=user.permissions,
            session_id=grant.session.id,
        )

        self._after_password_ok(user, password)
        self.ledger.log_attempt(
            identifier,
            success=True,
            user_id=user.id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
        )
        self.audit.log_login_success(
            user.id,
            audit_ctx.with_session(grant.session.id),
            device=device.description,
            new_device=is_new_device,
            session_reused=grant.is_existing,
        )
        if is_new_device:
            self.notifier.dispatch(
                user.email,
                NEW_DEVICE_LOGIN,
                {"device": device.description, "ip_address": device.ip_address},
            )
        logger.info("Login ok user=%s session=%s reused=%s", user.id, grant.session.id, grant.is_existing)

        user.hashed_password = None
        return LoginResult(
            tokens=TokenPair(
                access_token=access,
                refresh_token=grant.refresh_token,
                session_id=grant.session.id,
                user_id=user.id,
            ),
            user=user,
            session=grant.session,
            device=device,
            is_new_device=is_new_device,
            security=security,
        )

    def _record_failure(
        self,
        identifier: str,
        reason: str,
        device: DeviceInfo,
        audit_ctx: AuditContext,
        user_id: Optional[str] = None,
    ) -> None:
        self.ledger.log_attempt(
            identifier,
            success=False,
            user_id=user_id,
            ip_address=device.ip_address,
            user_agent=device.user_agent,
            failure_reason=reason,
        )
        self.audit.log_login_failure(identifier, reason, audit_ctx, user_id=user_id)
        logger.info("Login rejected identifier=%s reason=%s ip=%s", identifier, reason, device.ip_address)

    def _reject(
        self,
        identifier: str,
        reason: str,
        device: DeviceInfo,
        audit_ctx: AuditContext,
        user_id: Optional[str] = None,
    ) -> Unauthenticated:
        self._record_failure(identifier, reason, device, audit_ctx, user_id)
        return Unauthenticated(reason)

    def _check_lockout_tripped(
        self,
        identifier: str,
        user: UserCredentials,
        audit_ctx: AuditContext,
        options: Optional[CheckOptions],
    ) -> None:
        """Announce the lockout once, on the failure that reaches the threshold."""
        policy = options.policy if options and options.policy else None
        lockout = self.checkpoint.gate.check_lockout(identifier, policy)
        if not lockout.is_locked or lockout.failures != lockout.max_failures:
            return
        logger.warning("Account locked user=%s failures=%d", user.id, lockout.failures)
        self.audit.log_account_locked(
            user.id,
            audit_ctx,
            "too_many_failed_logins",
            failures=lockout.failures,
            window_minutes=lockout.window_minutes,
        )
        self.notifier.dispatch(user.email, ACCOUNT_LOCKED, {"window_minutes": lockout.window_minutes})

    def _is_new_device(self, user_id: str, device: DeviceInfo) -> bool:
        # A first-ever login is not a "new device" worth an email.
        if not device.fingerprint_hash:
            return False
        if self.sessions.sessions.has_seen(user_id, device.fingerprint_hash):
            return False
        return bool(self.ledger.recent_successful_logins(user_id, limit=1))

    def _after_password_ok(self, user: UserCredentials, password: str) -> None:
        self.users.update_last_login(user.id)
        if user.hashed_password and self.hasher.needs_rehash(user.hashed_password):
            self.users.update_password_hash(user.id, self.hasher.hash(password))
            logger.info("Password hash upgraded to %s user=%s", self.hasher.scheme, user.id)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self, raw_refresh: str, ctx: RequestContext) -> TokenPair:
        try:
            pair = self.sessions.rotate(raw_refresh)
        except Unauthenticated as exc:
            logger.info("Refresh rejected reason=%s", exc.reason)
            raise
        device = self.checkpoint.fingerprint(ctx)
        self.audit.log_token_refresh(pair.user_id, AuditContext.from_device(device, pair.session_id))
        return pair

    # ------------------------------------------------------------------
    # Request authentication
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str) -> Principal:
        """Resolve a bearer access token: signature -> blacklist -> session."""
        claims = self.codec.verify_access(access_token)
        if self.revocations.is_blacklisted(access_token):
            raise Unauthenticated("access_token_blacklisted")
        session_id = claims.get("sid")
        if session_id and not self.sessions.validate_session(session_id):
            raise Unauthenticated("session_inactive")
        return Principal(
            user_id=claims["sub"],
            email=claims.get("email", ""),
            role=claims.get("role", ""),
            permissions=tuple(claims.get("permissions") or ()),
            session_id=session_id,
            token=access_token,
            expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
        )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, principal: Principal, ctx: RequestContext, refresh_token: Optional[str] = None) -> bool:
        """Blacklist the presented access token and end its session."""
        self.revocations.add(principal.token, principal.expires_at)
        revoked = False
        if principal.session_id:
            revoked = self.sessions.revoke(principal.session_id)
        elif refresh_token:
            session = self.sessions.revoke_by_token(refresh_token)
            revoked = session is not None and session.user_id == principal.user_id
        self.audit.log_logout(principal.user_id, self._audit_ctx(ctx, principal.session_id))
        return revoked

    def logout_all(self, principal: Principal, ctx: RequestContext) -> int:
        self.revocations.add(principal.token, principal.expires_at)
        count = self.sessions.revoke_all(principal.user_id)
        self.audit.log_logout_all(principal.user_id, self._audit_ctx(ctx, principal.session_id), count)
        return count

    def logout_others(self, principal: Principal, ctx: RequestContext) -> int:
        count = self.sessions.revoke_others(principal.user_id, principal.session_id)
        self.audit.log_logout_other_sessions(principal.user_id, self._audit_ctx(ctx, principal.session_id), count)
        return count

    def revoke_session(self, principal: Principal, session_id: str, ctx: RequestContext) -> bool:
        """Revoke one of the caller's own sessions. False if not theirs or already revoked."""
        session = self.sessions.get_session(session_id)
        if session is None or session.user_id != principal.user_id:
            return False
        revoked = self.sessions.revoke(session_id)
        if revoked:
            if session_id == principal.session_id:
                self.revocations.add(principal.token, principal.expires_at)
            self.audit.log_session_revoked(
                principal.user_id, session_id, self._audit_ctx(ctx, principal.session_id), reason="user_request"
            )
        return revoked

    # ------------------------------------------------------------------
    # Credential management
    # ------------------------------------------------------------------

    def change_password(
        self, principal: Principal, current_password: str, new_password: str, ctx: RequestContext
    ) -> int:
        """Replace the caller's password after re-checking the current one.

        Every other session of the user is revoked and pending reset links
        are retired; the session that made the change stays signed in.
        Returns the number of sessions revoked.
        """
        user = self.users.get_by_id_with_secret(principal.user_id)
        if user is None or not user.is_active:
            raise Unauthenticated("account_inactive")
        if not self.hasher.verify(current_password, user.hashed_password):
            logger.info("Password change refused user=%s reason=invalid_current_password", user.id)
            raise InvalidRequest("invalid_current_password", "Current password is incorrect.")

        self.users.update_password_hash(user.id, self.hasher.hash(new_password))
        self.one_time_tokens.invalidate_user(user.id, PASSWORD_RESET)
        revoked = self.sessions.revoke_others(user.id, principal.session_id)
        self.audit.log_password_change(
            user.id, self._audit_ctx(ctx, principal.session_id), sessions_revoked=revoked
        )
        self.notifier.dispatch(user.email, PASSWORD_CHANGED, {"sessions_revoked": revoked})
        logger.info("Password changed user=%s sessions_revoked=%d", user.id, revoked)
        return revoked

    def request_password_reset(self, email: str, ctx: RequestContext) -> Optional[str]:
        """Issue a reset token and hand it to the notifier.

        Returns the raw token for callers that deliver it themselves, or None
        when there is no active account for the email. The HTTP layer answers
        the same way in both cases.
        """
        identifier = normalize_identifier(email)
        user = self.users.find_by_identifier_with_secret(identifier)
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or inactive identifier=%s", identifier)
            return None
        user.hashed_password = None

        raw, record = self.one_time_tokens.issue(user.id, PASSWORD_RESET)
        self.audit.log_password_reset_requested(user.id, self._audit_ctx(ctx, None))
        self.notifier.dispatch(
            user.email, PASSWORD_RESET_LINK, {"token": raw, "expires_at": record.expires_at.isoformat()}
        )
        return raw

    def reset_password(self, raw_token: str, new_password: str, ctx: RequestContext) -> int:
        """Redeem a reset token, set the new password and end every session.

        A reset means the old secret may be in someone else's hands, so no
        session survives it. Returns the number of sessions revoked.
        """
        record = self.one_time_tokens.consume(PASSWORD_RESET, raw_token)
        user = self.users.get_by_id(record.user_id) if record else None
        if user is None or not user.is_active:
            logger.info("Password reset refused reason=reset_token_invalid")
            raise InvalidRequest("reset_token_invalid", "Invalid or expired reset token.")

        self.users.update_password_hash(user.id, self.hasher.hash(new_password))
        self.one_time_tokens.invalidate_user(user.id, PASSWORD_RESET)
        revoked = self.sessions.revoke_all(user.id)
        self.audit.log_password_reset_completed(user.id, self._audit_ctx(ctx, None), sessions_revoked=revoked)
        self.notifier.dispatch(user.email, PASSWORD_CHANGED, {"sessions_revoked": revoked})
        logger.info("Password reset user=%s sessions_revoked=%d", user.id, revoked)
        return revoked

    def _audit_ctx(self, ctx: RequestContext, session_id: Optional[str]) -> AuditContext:
        return AuditContext.from_device(self.checkpoint.fingerprint(ctx), session_id)
