"""
core/notifications.py -- Fire-and-forget outbound notifications.

The auth flows announce a few events to the account owner (new device
sign-in, account locked, password changed, reset link). Delivery is someone
else's job: anything with a send(email, template, data) method can be plugged
in as the sender. The default LoggingSender only writes a log line (template
and data keys, never values such as reset tokens), which is what tests and
local runs want.

NotificationDispatcher runs each send on a small thread pool so a slow or
failing mail relay never sits on the request path. Failures are logged with
traceback and dropped; nothing is retried.

Layer rule: core/ is the kernel. No imports from api/, auth/, security/, audit/.
"""

from __future__ import annotations

import concurrent.futures
import logging
from typing import Any, Optional, Protocol

logger = logging.getLogger("sessionguard.notifications")

NEW_DEVICE_LOGIN = "new_device_login"
ACCOUNT_LOCKED = "account_locked"
SESSION_REUSE_DETECTED = "session_reuse_detected"
PASSWORD_CHANGED = "password_changed"
PASSWORD_RESET_LINK = "password_reset_link"


class NotificationSender(Protocol):
    def send(self, email: str, template: str, data: dict[str, Any]) -> None: ...


class LoggingSender:
    """Sender that records the notification instead of delivering it."""

    def send(self, email: str, template: str, data: dict[str, Any]) -> None:
        logger.info("Notification %s -> %s %s", template, email, sorted(data))


class NotificationDispatcher:
    DEFAULT_WORKERS = 2

    def __init__(self, sender: Optional[NotificationSender] = None, max_workers: int = DEFAULT_WORKERS) -> None:
        self.sender = sender or LoggingSender()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="sessionguard-notify"
        )
        self._shutdown = False

    def dispatch(
        self, email: Optional[str], template: str, data: Optional[dict[str, Any]] = None
    ) -> Optional[concurrent.futures.Future]:
        """Queue one notification. Returns the Future, or None if nothing was queued."""
        if not email:
            return None
        if self._shutdown:
            logger.warning("Dispatcher is shut down; dropping %s notification", template)
            return None
        return self._executor.submit(self._send, email, template, dict(data or {}))

    def _send(self, email: str, template: str, data: dict[str, Any]) -> None:
        try:
            self.sender.send(email, template, data)
        except Exception:
            logger.exception("Notification %s to %s failed", template, email)

    def shutdown(self, wait: bool = True) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        self._executor.shutdown(wait=wait)
