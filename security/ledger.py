"""
security/ledger.py -- Append-only store of login attempts.

Pattern: Repository + Data Mapper (_row_to_attempt).

The ledger is the single source of truth for every admission decision in
security/gate.py: there is no in-memory counter. Windows are sliding, measured
back from "now" at query time (`created_at >= now - W`).

Rows are never updated. The only delete path is prune_older_than(), run by
the maintenance job.

Write failures:
  log_attempt() is the one side effect the login flow treats as essential,
  because a lost failure row weakens the rate limit. It still must not turn a
  successful login into an error, so database errors are logged at ERROR
  level with traceback and log_attempt() returns None.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, case, distinct, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.users import normalize_identifier
from core.db import clamp, iso, login_attempts, parse_iso, utcnow
from core.models import Page, page_bounds
from security.models import LoginAttempt, LoginStats, SuspiciousIP

logger = logging.getLogger("sessionguard.security.ledger")


class AttemptLedger:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def log_attempt(
        self,
        identifier: str,
        success: bool,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> Optional[LoginAttempt]:
        """Append one attempt. Returns the stored record, or None if the write failed."""
        now = utcnow()
        attempt = LoginAttempt(
            id=str(uuid.uuid4()),
            identifier=clamp(normalize_identifier(identifier), 255),
            success=bool(success),
            created_at=now,
            user_id=user_id,
            ip_address=clamp(ip_address, 50),
            user_agent=clamp(user_agent, 500),
            failure_reason=None if success else clamp(failure_reason, 100),
        )
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    login_attempts.insert().values(
                        id=attempt.id,
                        user_id=attempt.user_id,
                        identifier=attempt.identifier,
                        ip_address=attempt.ip_address,
                        user_agent=attempt.user_agent,
                        success=1 if attempt.success else 0,
                        failure_reason=attempt.failure_reason,
                        created_at=iso(now),
                    )
                )
                conn.commit()
        except SQLAlchemyError:
            logger.exception(
                "Failed to record login attempt identifier=%s success=%s reason=%s",
                attempt.identifier,
                attempt.success,
                attempt.failure_reason,
            )
            return None
        return attempt

    def prune_older_than(self, days: int = 90) -> int:
        cutoff = iso(utcnow() - timedelta(days=days))
        with self.engine.connect() as conn:
            result = conn.execute(login_attempts.delete().where(login_attempts.c.created_at < cutoff))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Sliding-window counts
    # ------------------------------------------------------------------

    def count_recent_failures(self, identifier: str, minutes: int = 15) -> int:
        return self._count_failures(login_attempts.c.identifier == normalize_identifier(identifier), minutes)

    def count_recent_failures_by_ip(self, ip_address: str, minutes: int = 15) -> int:
        return self._count_failures(login_attempts.c.ip_address == ip_address, minutes)

    def _count_failures(self, condition, minutes: int) -> int:
        since = iso(utcnow() - timedelta(minutes=minutes))
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(login_attempts)
                .where(and_(condition, login_attempts.c.success == 0, login_attempts.c.created_at >= since))
            ).scalar()
        return result or 0

    def recent_attempts(self, identifier: str, minutes: int = 15) -> list[LoginAttempt]:
        since = iso(utcnow() - timedelta(minutes=minutes))
        with self.engine.connect() as conn:
            rows = conn.execute(
                login_attempts.select()
                .where(
                    and_(
                        login_attempts.c.identifier == normalize_identifier(identifier),
                        login_attempts.c.created_at >= since,
                    )
                )
                .order_by(login_attempts.c.created_at.desc())
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def suspicious_activity(self, identifier: str, minutes: int = 60) -> list[SuspiciousIP]:
        """Distinct IPs that failed against identifier in the window, busiest first."""
        since = iso(utcnow() - timedelta(minutes=minutes))
        attempt_count = func.count().label("attempt_count")
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(login_attempts.c.ip_address, attempt_count)
                .where(
                    and_(
                        login_attempts.c.identifier == normalize_identifier(identifier),
                        login_attempts.c.success == 0,
                        login_attempts.c.created_at >= since,
                    )
                )
                .group_by(login_attempts.c.ip_address)
                .order_by(attempt_count.desc())
            ).fetchall()
        return [SuspiciousIP(ip_address=r.ip_address, attempt_count=r.attempt_count) for r in rows]

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def login_history(self, user_id: str, page: int = 1, limit: int = 50) -> Page[LoginAttempt]:
        page, limit, offset = page_bounds(page, limit)
        with self.engine.connect() as conn:
            total = conn.execute(
                select(func.count()).select_from(login_attempts).where(login_attempts.c.user_id == user_id)
            ).scalar()
            rows = conn.execute(
                login_attempts.select()
                .where(login_attempts.c.user_id == user_id)
                .order_by(login_attempts.c.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).fetchall()
        return Page(items=[_row_to_attempt(r) for r in rows], page=page, limit=limit, total=total or 0)

    def recent_successful_logins(self, user_id: str, limit: int = 10) -> list[LoginAttempt]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                login_attempts.select()
                .where(and_(login_attempts.c.user_id == user_id, login_attempts.c.success == 1))
                .order_by(login_attempts.c.created_at.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_attempt(r) for r in rows]

    def failure_reasons(self, identifier: str, hours: int = 24) -> list[tuple[str, int]]:
        """(reason, count) pairs for recent failures, most common first."""
        since = iso(utcnow() - timedelta(hours=hours))
        n = func.count().label("n")
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(login_attempts.c.failure_reason, n)
                .where(
                    and_(
                        login_attempts.c.identifier == normalize_identifier(identifier),
                        login_attempts.c.success == 0,
                        login_attempts.c.created_at >= since,
                        login_attempts.c.failure_reason.is_not(None),
                    )
                )
                .group_by(login_attempts.c.failure_reason)
                .order_by(n.desc())
            ).fetchall()
        return [(r.failure_reason, r.n) for r in rows]

    def login_stats(self, start: datetime, end: Optional[datetime] = None) -> LoginStats:
        end = end or utcnow()
        with self.engine.connect() as conn:
            row = conn.execute(
                select(
                    func.count().label("total"),
                    func.coalesce(func.sum(case((login_attempts.c.success == 1, 1), else_=0)), 0).label("ok"),
                    func.coalesce(func.sum(case((login_attempts.c.success == 0, 1), else_=0)), 0).label("failed"),
                    func.count(distinct(login_attempts.c.user_id)).label("users"),
                    func.count(distinct(login_attempts.c.ip_address)).label("ips"),
                ).where(login_attempts.c.created_at.between(iso(start), iso(end)))
            ).fetchone()
        return LoginStats(
            total_attempts=row.total or 0,
            successful_logins=int(row.ok or 0),
            failed_logins=int(row.failed or 0),
            unique_users=row.users or 0,
            unique_ips=row.ips or 0,
        )


def _row_to_attempt(row) -> LoginAttempt:
    return LoginAttempt(
        id=row.id,
        identifier=row.identifier,
        success=bool(row.success),
        created_at=parse_iso(row.created_at),
        user_id=row.user_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        failure_reason=row.failure_reason,
    )
