"""
security/models.py -- Status records produced by the login admission checks.

Every check returns its full status (not just a yes/no) so the login flow can
log what the gate saw, and so the HTTP layer can report remaining attempts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from auth.models import DeviceInfo


@dataclass
class LoginAttempt:
    id: str
    identifier: str
    success: bool
    created_at: datetime
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class RatePolicy:
    """Thresholds for the identifier throttle, IP throttle and lockout."""

    max_attempts: int = 5
    max_ip_attempts: int = 10
    window_minutes: int = 15
    lockout_max_failures: int = 5
    lockout_window_minutes: int = 30
    suspicious_window_minutes: int = 60

    @classmethod
    def from_settings(cls, settings) -> RatePolicy:
        return cls(
            max_attempts=settings.rate_limit_max_attempts,
            max_ip_attempts=settings.rate_limit_max_ip_attempts,
            window_minutes=settings.rate_limit_window_minutes,
            lockout_max_failures=settings.lockout_max_failures,
            lockout_window_minutes=settings.lockout_window_minutes,
            suspicious_window_minutes=settings.suspicious_window_minutes,
        )


@dataclass(frozen=True)
class RateLimitStatus:
    is_limited: bool
    attempt_count: int
    remaining_attempts: int
    max_attempts: int
    window_minutes: int


@dataclass(frozen=True)
class LockoutStatus:
    is_locked: bool
    failures: int
    remaining_attempts: int
    max_failures: int
    window_minutes: int


@dataclass(frozen=True)
class SuspiciousIP:
    ip_address: Optional[str]
    attempt_count: int


@dataclass(frozen=True)
class CheckOptions:
    """Per-call overrides for SecurityCheckpoint.perform_check().

    None means "use the checkpoint's configured default".
    """

    block_bots: Optional[bool] = None
    policy: Optional[RatePolicy] = None


@dataclass
class SecurityCheckResult:
    device_info: DeviceInfo
    identifier_limit: RateLimitStatus
    ip_limit: RateLimitStatus
    lockout: LockoutStatus
    suspicious_activity: list[SuspiciousIP] = field(default_factory=list)
    is_bot: bool = False


@dataclass(frozen=True)
class LoginStats:
    total_attempts: int
    successful_logins: int
    failed_logins: int
    unique_users: int
    unique_ips: int

    @property
    def success_rate(self) -> float:
        """Percentage of successful attempts, rounded to 2 places."""
        if self.total_attempts == 0:
            return 0.0
        return round(self.successful_logins / self.total_attempts * 100, 2)
