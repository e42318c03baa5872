"""
security/gate.py -- Admission decisions built from AttemptLedger counts.

Three independent checks, each a failed-attempt count over a sliding window:

  identifier throttle -- limited when failures(identifier, W) >= max_attempts
  IP throttle         -- limited when failures(ip, W) >= max_ip_attempts
  account lockout     -- locked when failures(identifier, L) >= lockout_max_failures

Lockout uses its own, longer window, so an account can stay locked after the
identifier throttle has already cooled down.

Known race: each check is a read followed (later, in the login flow) by a
write. Two concurrent failed attempts can both read a count of 4 and both be
let through to the credential check. The overshoot is bounded by request
concurrency and is accepted; closing it needs an atomic increment-and-compare
in the database.
"""

from __future__ import annotations

import logging

from security.ledger import AttemptLedger
from security.models import LockoutStatus, RateLimitStatus, RatePolicy

logger = logging.getLogger("sessionguard.security.gate")


class RateGate:
    def __init__(self, ledger: AttemptLedger, policy: RatePolicy | None = None) -> None:
        self.ledger = ledger
        self.policy = policy or RatePolicy()

    def check_identifier(self, identifier: str, policy: RatePolicy | None = None) -> RateLimitStatus:
        p = policy or self.policy
        count = self.ledger.count_recent_failures(identifier, p.window_minutes)
        return _rate_status(count, p.max_attempts, p.window_minutes)

    def check_ip(self, ip_address: str, policy: RatePolicy | None = None) -> RateLimitStatus:
        p = policy or self.policy
        count = self.ledger.count_recent_failures_by_ip(ip_address, p.window_minutes)
        return _rate_status(count, p.max_ip_attempts, p.window_minutes)

    def check_lockout(self, identifier: str, policy: RatePolicy | None = None) -> LockoutStatus:
        p = policy or self.policy
        failures = self.ledger.count_recent_failures(identifier, p.lockout_window_minutes)
        return LockoutStatus(
            is_locked=failures >= p.lockout_max_failures,
            failures=failures,
            remaining_attempts=max(0, p.lockout_max_failures - failures),
            max_failures=p.lockout_max_failures,
            window_minutes=p.lockout_window_minutes,
        )


def _rate_status(count: int, maximum: int, window_minutes: int) -> RateLimitStatus:
    return RateLimitStatus(
        is_limited=count >= maximum,
        attempt_count=count,
        remaining_attempts=max(0, maximum - count),
        max_attempts=maximum,
        window_minutes=window_minutes,
    )
