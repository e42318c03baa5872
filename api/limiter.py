"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and api/routes/v1/auth.py
(to apply per-route limits with @limiter.limit()).

This is a coarse per-IP request throttle in front of the login and password
handlers. It is NOT the login security gate: identifier/IP failure counting
and lockout live in security/ and are backed by the database, so they hold
across processes.
This limiter only sheds request floods cheaply before any query runs.

A single shared instance keeps one counter store. Instantiating it per module
would give each module its own counters and the limits would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Per-IP limit string for POST /auth/login, read from settings at request time."""
    return get_settings().login_rate_limit
