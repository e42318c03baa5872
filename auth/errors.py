"""
auth/errors.py -- Typed rejections raised by the security control plane.

Three classes reach the HTTP layer:

  Unauthenticated -- invalid/expired/blacklisted token, bad credentials,
      locked account, bot rejection, invalid/rotated refresh token, inactive
      session. The public message is always generic so a caller cannot tell
      WHICH check failed (no identifier enumeration). `reason` is a short
      machine code for logs and the attempt ledger only.

  RateLimited -- identifier or IP throttle tripped. Carries retry_after
      (seconds) so the HTTP layer can emit Retry-After.

  InvalidRequest -- a credential-management request that cannot proceed
      (wrong current password, unusable reset token). The message names the
      problem because the caller is already identified.

Everything else that escapes a service is an opaque 500.

Layer rule: no imports from api/, security/, or audit/.
"""

from __future__ import annotations

GENERIC_AUTH_MESSAGE = "Invalid credentials or session."


class AuthError(Exception):
    """Base class for every rejection the control plane raises on purpose."""

    code = "auth_error"
    public_message = "Authentication failed."

    def __init__(self, reason: str = "", message: str | None = None) -> None:
        self.reason = reason
        self.message = message or self.public_message
        super().__init__(reason or self.message)


class Unauthenticated(AuthError):
    code = "unauthorized"
    public_message = GENERIC_AUTH_MESSAGE


class RateLimited(AuthError):
    code = "rate_limited"
    public_message = "Too many login attempts."

    def __init__(self, reason: str, retry_after: int, message: str | None = None) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(
            reason,
            message or f"Too many login attempts. Please try again in {max(1, self.retry_after // 60)} minutes.",
        )


class InvalidRequest(AuthError):
    """A well-formed request the control plane refuses, e.g. a wrong current
    password on change or a dead reset token. Rendered as 400, not 401: the
    caller's session is fine."""

    code = "bad_request"
    public_message = "The request could not be completed."
