"""
security/checkpoint.py -- Single entry gate for a login attempt.

perform_check() runs, in order, and raises at the first failure:

  1. bot rejection      (only when block_bots)   -> Unauthenticated
  2. identifier throttle                         -> RateLimited
  3. IP throttle                                 -> RateLimited
  4. account lockout                             -> Unauthenticated

It only reads. Recording the attempt is the caller's job, done once per
attempt after the credential check, whether the attempt was rejected here,
failed verification, or succeeded. Logging here as well would double-count
failures and trip the throttle early.
"""

from __future__ import annotations

import logging

from auth.errors import RateLimited, Unauthenticated
from auth.fingerprint import UNKNOWN, DeviceFingerprinter
from auth.models import DeviceInfo, RequestContext
from security.gate import RateGate
from security.ledger import AttemptLedger
from security.models import CheckOptions, SecurityCheckResult

logger = logging.getLogger("sessionguard.security.checkpoint")


class SecurityCheckpoint:
    def __init__(
        self,
        fingerprinter: DeviceFingerprinter,
        gate: RateGate,
        ledger: AttemptLedger,
        block_bots: bool = False,
    ) -> None:
        self.fingerprinter = fingerprinter
        self.gate = gate
        self.ledger = ledger
        self.block_bots = block_bots

    def fingerprint(self, ctx: RequestContext) -> DeviceInfo:
        """Derive DeviceInfo; a parsing bug degrades to an anonymous device."""
        try:
            return self.fingerprinter.from_context(ctx)
        except Exception:
            logger.exception("Device fingerprinting failed; continuing with unknown device")
            return DeviceInfo(
                fingerprint_hash="",
                ip_address=ctx.client_host or UNKNOWN,
                user_agent="",
                accept_language=UNKNOWN,
            )

    def perform_check(
        self,
        identifier: str,
        ctx: RequestContext,
        options: CheckOptions | None = None,
        device_info: DeviceInfo | None = None,
    ) -> SecurityCheckResult:
        options = options or CheckOptions()
        policy = options.policy or self.gate.policy
        block_bots = self.block_bots if options.block_bots is None else options.block_bots
        device = device_info or self.fingerprint(ctx)

        if device.is_bot and block_bots:
            logger.warning("Rejected bot login attempt identifier=%s ip=%s", identifier, device.ip_address)
            raise Unauthenticated("bot_rejected")

        identifier_limit = self.gate.check_identifier(identifier, policy)
        if identifier_limit.is_limited:
            logger.warning(
                "Identifier throttled identifier=%s failures=%d window=%dm",
                identifier,
                identifier_limit.attempt_count,
                identifier_limit.window_minutes,
            )
            raise RateLimited(
                "identifier_rate_limited",
                retry_after=identifier_limit.window_minutes * 60,
                message=(
                    "Too many login attempts for this account. "
                    f"Please try again in {identifier_limit.window_minutes} minutes."
                ),
            )

        ip_limit = self.gate.check_ip(device.ip_address, policy)
        if ip_limit.is_limited:
            logger.warning(
                "IP throttled ip=%s failures=%d window=%dm",
                device.ip_address,
                ip_limit.attempt_count,
                ip_limit.window_minutes,
            )
            raise RateLimited(
                "ip_rate_limited",
                retry_after=ip_limit.window_minutes * 60,
                message="Too many login attempts from your IP address. Please try again later.",
            )

        lockout = self.gate.check_lockout(identifier, policy)
        if lockout.is_locked:
            logger.warning("Account locked identifier=%s failures=%d", identifier, lockout.failures)
            raise Unauthenticated("account_locked")

        suspicious = self.ledger.suspicious_activity(identifier, policy.suspicious_window_minutes)
        return SecurityCheckResult(
            device_info=device,
            identifier_limit=identifier_limit,
            ip_limit=ip_limit,
            lockout=lockout,
            suspicious_activity=suspicious,
            is_bot=device.is_bot,
        )
