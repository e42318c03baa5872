"""
audit/trail.py -- Append-only security event log.

Pattern: Repository + Data Mapper (_row_to_entry).

Every typed wrapper (log_login_success, log_account_locked, ...) reduces to
log_event(), the single insert path. Rows are never updated; the retention
job's prune_older_than() is the only delete.

Failure policy:
  Auditing is a side effect of an auth decision, not part of it. A database
  error while appending is logged with traceback and log_event() returns
  None; the login/refresh/logout that triggered it carries on. An UNKNOWN
  event type is a programming error and still raises ValueError.

metadata is stored as a JSON object in a TEXT column. It must never contain
raw tokens or passwords; callers pass identifiers, reasons and diffs.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from audit.events import SECURITY_EVENTS, ActivitySummary, AuditContext, AuditLogEntry, EventType, coerce_event_type
from core.db import audit_logs, clamp, iso, parse_iso, utcnow
from core.models import Page, page_bounds

logger = logging.getLogger("sessionguard.audit")


class AuditTrail:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    def log_event(
        self,
        event_type: EventType | str,
        user_id: Optional[str] = None,
        context: Optional[AuditContext] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[AuditLogEntry]:
        event = coerce_event_type(event_type)
        context = context or AuditContext()
        now = utcnow()
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            event_type=clamp(event.value, 100),
            created_at=now,
            user_id=user_id,
            ip_address=clamp(context.ip_address, 50),
            user_agent=clamp(context.user_agent, 500),
            session_id=context.session_id,
            metadata=metadata or None,
        )
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    audit_logs.insert().values(
                        id=entry.id,
                        event_type=entry.event_type,
                        user_id=entry.user_id,
                        ip_address=entry.ip_address,
                        user_agent=entry.user_agent,
                        session_id=entry.session_id,
                        metadata_json=json.dumps(entry.metadata, default=str) if entry.metadata else None,
                        created_at=iso(now),
                    )
                )
                conn.commit()
        except SQLAlchemyError:
            logger.exception("Failed to write audit event %s for user %s", entry.event_type, user_id)
            return None
        return entry

    # ------------------------------------------------------------------
    # Typed wrappers
    # ------------------------------------------------------------------

    def log_login_success(self, user_id: str, context: AuditContext, **details) -> Optional[AuditLogEntry]:
        return self.log_event(EventType.LOGIN_SUCCESS, user_id, context, details or None)

    def log_login_failure(
        self, identifier: str, reason: str, context: AuditContext, user_id: Optional[str] = None
    ) -> Optional[AuditLogEntry]:
        return self.log_event(EventType.LOGIN_FAILURE, user_id, context, {"identifier": identifier, "reason": reason})

    def log_logout(self, user_id: str, context: AuditContext) -> Optional[AuditLogEntry]:
        return self.log_event(EventType.LOGOUT, user_id, context)

    def log_logout_all(self, user_id: str, context: AuditContext, sessions_revoked: int = 0):
        return self.log_event(EventType.LOGOUT_ALL, user_id, context, {"sessions_revoked": sessions_revoked})

    def log_logout_other_sessions(self, user_id: str, context: AuditContext, sessions_revoked: int = 0):
        return self.log_event(
            EventType.LOGOUT_OTHER_SESSIONS, user_id, context, {"sessions_revoked": sessions_revoked}
        )

    def log_token_refresh(self, user_id: str, context: AuditContext):
        return self.log_event(EventType.TOKEN_REFRESH, user_id, context)

    def log_token_revoked(self, user_id: Optional[str], context: AuditContext, reason: Optional[str] = None):
        return self.log_event(EventType.TOKEN_REVOKED, user_id, context, {"reason": reason} if reason else None)

    def log_session_revoked(self, user_id: str, session_id: str, context: AuditContext, reason: Optional[str] = None):
        metadata = {"revoked_session_id": session_id}
        if reason:
            metadata["reason"] = reason
        return self.log_event(EventType.SESSION_REVOKED, user_id, context.with_session(session_id), metadata)

    def log_password_change(self, user_id: str, context: AuditContext, **details):
        return self.log_event(EventType.PASSWORD_CHANGED, user_id, context, details or None)

    def log_password_reset_requested(self, user_id: str, context: AuditContext):
        return self.log_event(EventType.PASSWORD_RESET_REQUESTED, user_id, context)

    def log_password_reset_completed(self, user_id: str, context: AuditContext, **details):
        return self.log_event(EventType.PASSWORD_RESET_COMPLETED, user_id, context, details or None)

    def log_role_change(self, user_id: str, context: AuditContext, changes: dict[str, Any]):
        return self.log_event(EventType.ROLE_CHANGED, user_id, context, {"changes": changes})

    def log_permission_change(self, user_id: str, context: AuditContext, changes: dict[str, Any]):
        return self.log_event(EventType.PERMISSION_CHANGED, user_id, context, {"changes": changes})

    def log_account_locked(self, user_id: Optional[str], context: AuditContext, reason: str, **details):
        return self.log_event(EventType.ACCOUNT_LOCKED, user_id, context, {"reason": reason, **details})

    def log_suspicious_activity(self, user_id: Optional[str], description: str, context: AuditContext, **details):
        return self.log_event(
            EventType.SUSPICIOUS_ACTIVITY, user_id, context, {"description": description, **details}
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def user_logs(
        self, user_id: str, page: int = 1, limit: int = 50, event_type: EventType | str | None = None
    ) -> Page[AuditLogEntry]:
        condition = audit_logs.c.user_id == user_id
        if event_type is not None:
            condition = and_(condition, audit_logs.c.event_type == coerce_event_type(event_type).value)
        return self._page(condition, page, limit)

    def event_logs(self, event_type: EventType | str, page: int = 1, limit: int = 50) -> Page[AuditLogEntry]:
        return self._page(audit_logs.c.event_type == coerce_event_type(event_type).value, page, limit)

    def logs_by_ip(self, ip_address: str, page: int = 1, limit: int = 50) -> Page[AuditLogEntry]:
        return self._page(audit_logs.c.ip_address == ip_address, page, limit)

    def security_events(
        self, page: int = 1, limit: int = 50, user_id: Optional[str] = None
    ) -> Page[AuditLogEntry]:
        condition = audit_logs.c.event_type.in_(sorted(e.value for e in SECURITY_EVENTS))
        if user_id is not None:
            condition = and_(condition, audit_logs.c.user_id == user_id)
        return self._page(condition, page, limit)

    def user_recent_activity(self, user_id: str, limit: int = 20) -> list[AuditLogEntry]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                audit_logs.select()
                .where(audit_logs.c.user_id == user_id)
                .order_by(audit_logs.c.created_at.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def user_activity_summary(self, user_id: str, days: int = 30) -> ActivitySummary:
        end = utcnow()
        start = end - timedelta(days=days)
        n = func.count().label("n")
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(audit_logs.c.event_type, n)
                .where(and_(audit_logs.c.user_id == user_id, audit_logs.c.created_at >= iso(start)))
                .group_by(audit_logs.c.event_type)
            ).fetchall()
        return ActivitySummary(
            user_id=user_id, days=days, start=start, end=end, events={r.event_type: r.n for r in rows}
        )

    def event_type_stats(self, start: datetime, end: Optional[datetime] = None) -> list[tuple[str, int]]:
        """(event_type, count) over [start, end], most frequent first."""
        end = end or utcnow()
        n = func.count().label("n")
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(audit_logs.c.event_type, n)
                .where(audit_logs.c.created_at.between(iso(start), iso(end)))
                .group_by(audit_logs.c.event_type)
                .order_by(n.desc())
            ).fetchall()
        return [(r.event_type, r.n) for r in rows]

    def prune_older_than(self, days: int = 365) -> int:
        cutoff = iso(utcnow() - timedelta(days=days))
        with self.engine.connect() as conn:
            result = conn.execute(audit_logs.delete().where(audit_logs.c.created_at < cutoff))
            conn.commit()
        return result.rowcount

    def _page(self, condition, page: int, limit: int) -> Page[AuditLogEntry]:
        page, limit, offset = page_bounds(page, limit)
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(audit_logs).where(condition)).scalar()
            rows = conn.execute(
                audit_logs.select()
                .where(condition)
                .order_by(audit_logs.c.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).fetchall()
        return Page(items=[_row_to_entry(r) for r in rows], page=page, limit=limit, total=total or 0)


def _row_to_entry(row) -> AuditLogEntry:
    metadata = None
    if row.metadata_json:
        try:
            metadata = json.loads(row.metadata_json)
        except ValueError:
            logger.warning("Unparseable metadata on audit entry %s", row.id)
    return AuditLogEntry(
        id=row.id,
        event_type=row.event_type,
        created_at=parse_iso(row.created_at),
        user_id=row.user_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        session_id=row.session_id,
        metadata=metadata,
    )
