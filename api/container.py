"""
api/container.py -- Composition root.

Builds every store and service exactly once, in dependency order, from a
Settings instance:

    engine
      -> TokenCodec, CredentialHasher, DeviceFingerprinter
      -> UserStore, RefreshTokenStore, SessionStore, RevocationList,
         OneTimeTokenStore, AttemptLedger, AuditTrail
      -> RateGate -> SecurityCheckpoint
      -> SessionManager (with refresh-reuse hook -> AuditTrail)
      -> NotificationDispatcher
      -> AuthFlows

Nothing below this module looks anything up globally. Services receive their
collaborators here and keep them; there are no module-level singletons apart
from get_settings().

prune_all() is the retention job. The API lifespan runs it periodically on a
worker thread; it can also be called directly (tests, a cron wrapper).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy.engine import Engine

from api.flows import AuthFlows
from audit.events import AuditContext
from audit.trail import AuditTrail
from auth.fingerprint import DeviceFingerprinter
from auth.models import RefreshToken
from auth.passwords import CredentialHasher
from auth.sessions import SessionManager
from auth.store import OneTimeTokenStore, RefreshTokenStore, RevocationList, SessionStore
from auth.tokens import TokenCodec
from auth.users import UserStore
from core.config import Settings
from core.db import create_db_engine
from core.notifications import SESSION_REUSE_DETECTED, NotificationDispatcher, NotificationSender
from security.checkpoint import SecurityCheckpoint
from security.gate import RateGate
from security.ledger import AttemptLedger
from security.models import RatePolicy

logger = logging.getLogger("sessionguard.container")


@dataclass
class Services:
    settings: Settings
    engine: Engine
    codec: TokenCodec
    hasher: CredentialHasher
    fingerprinter: DeviceFingerprinter
    users: UserStore
    refresh_tokens: RefreshTokenStore
    session_store: SessionStore
    revocations: RevocationList
    one_time_tokens: OneTimeTokenStore
    ledger: AttemptLedger
    audit: AuditTrail
    gate: RateGate
    checkpoint: SecurityCheckpoint
    sessions: SessionManager
    notifier: NotificationDispatcher
    flows: AuthFlows

    def close(self) -> None:
        self.notifier.shutdown(wait=True)
        self.engine.dispose()


def build_services(
    settings: Settings,
    engine: Optional[Engine] = None,
    sender: Optional[NotificationSender] = None,
) -> Services:
    engine = engine or create_db_engine(settings.database_url)

    codec = TokenCodec.from_settings(settings)
    hasher = CredentialHasher.from_settings(settings)
    fingerprinter = DeviceFingerprinter(settings.trusted_proxies)

    users = UserStore(engine)
    refresh_tokens = RefreshTokenStore(engine, codec)
    session_store = SessionStore(engine, refresh_tokens)
    revocations = RevocationList(engine, codec)
    one_time_tokens = OneTimeTokenStore(engine, codec)
    ledger = AttemptLedger(engine)
    audit = AuditTrail(engine)

    gate = RateGate(ledger, RatePolicy.from_settings(settings))
    checkpoint = SecurityCheckpoint(fingerprinter, gate, ledger, block_bots=settings.block_bots)
    notifier = NotificationDispatcher(sender)

    def on_refresh_reuse(record: RefreshToken, session_revoked: bool) -> None:
        session = session_store.get(record.session_id)
        user_id = session.user_id if session else None
        audit.log_suspicious_activity(
            user_id,
            "Rotated refresh token presented again",
            AuditContext(session_id=record.session_id),
            session_revoked=session_revoked,
        )
        owner = users.get_by_id(user_id) if user_id else None
        if owner is not None:
            notifier.dispatch(owner.email, SESSION_REUSE_DETECTED, {"session_id": record.session_id})

    sessions = SessionManager(
        sessions=session_store,
        refresh_tokens=refresh_tokens,
        codec=codec,
        users=users,
        fingerprinter=fingerprinter,
        session_ttl=timedelta(days=settings.session_ttl_days),
        remember_me_ttl=timedelta(days=settings.remember_me_ttl_days),
        reuse_revokes_session=settings.refresh_reuse_revokes_session,
        on_reuse=on_refresh_reuse,
    )

    flows = AuthFlows(
        checkpoint=checkpoint,
        hasher=hasher,
        users=users,
        sessions=sessions,
        revocations=revocations,
        codec=codec,
        ledger=ledger,
        audit=audit,
        notifier=notifier,
        one_time_tokens=one_time_tokens,
    )

    logger.info(
        "Services ready (hash=%s, session_ttl=%dd, reuse_revokes_session=%s)",
        settings.password_hash_scheme,
        settings.session_ttl_days,
        settings.refresh_reuse_revokes_session,
    )
    return Services(
        settings=settings,
        engine=engine,
        codec=codec,
        hasher=hasher,
        fingerprinter=fingerprinter,
        users=users,
        refresh_tokens=refresh_tokens,
        session_store=session_store,
        revocations=revocations,
        one_time_tokens=one_time_tokens,
        ledger=ledger,
        audit=audit,
        gate=gate,
        checkpoint=checkpoint,
        sessions=sessions,
        notifier=notifier,
        flows=flows,
    )


def prune_all(services: Services) -> dict[str, int]:
    """Run every retention rule once and return per-table delete counts."""
    s = services.settings
    report = {
        "expired_sessions": services.session_store.prune_expired(s.expired_session_grace_days),
        "revoked_sessions": services.session_store.prune_revoked(s.revoked_session_retention_days),
        "refresh_tokens": services.refresh_tokens.prune(
            s.expired_session_grace_days, s.revoked_session_retention_days
        ),
        "login_attempts": services.ledger.prune_older_than(s.login_attempt_retention_days),
        "audit_logs": services.audit.prune_older_than(s.audit_retention_days),
        "blacklist": services.revocations.prune_expired(),
        "one_time_tokens": services.one_time_tokens.prune_expired(),
    }
    logger.info("Prune complete %s", report)
    return report
