"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only one credential is accepted: Authorization: Bearer <access token>.
Resolution goes through the flows object wired onto app.state.services by the
composition root, in this order:

  1. signature, expiry, issuer, audience, type=access
  2. blacklist lookup (logged-out tokens are rejected before expiry)
  3. the session named by the token's `sid` claim must still be active

Any failure is the same 401 with the generic message. The specific reason is
logged here and never returned.

get_current_principal() raises 401; try_get_current_principal() never raises.

Layer rule: auth/dependencies.py may import from fastapi because it is part of
the dependency injection system. It reaches services only through
request.app.state, never by importing api/.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from auth.errors import GENERIC_AUTH_MESSAGE, Unauthenticated
from auth.models import Principal

logger = logging.getLogger("sessionguard.auth.dependencies")


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        token = auth_header[7:].strip()
        return token or None
    return None


def try_get_current_principal(request: Request) -> Principal | None:
    """Authenticate the request. Returns None on any failure, never raises."""
    token = bearer_token(request)
    if not token:
        return None
    try:
        return request.app.state.services.flows.authenticate(token)
    except Unauthenticated as exc:
        logger.info("Access token rejected reason=%s path=%s", exc.reason, request.url.path)
        return None


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_current_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": GENERIC_AUTH_MESSAGE},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal

