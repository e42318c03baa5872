"""
api/routes/v1/auth.py -- Session and token REST endpoints.

Routes:
  POST   /api/v1/auth/login            -- password login; returns access + refresh tokens
  POST   /api/v1/auth/refresh          -- rotate refresh token; returns a new pair
  POST   /api/v1/auth/logout           -- blacklist access token, end current session
  POST   /api/v1/auth/logout-all       -- end every session of the caller
  POST   /api/v1/auth/logout-others    -- end every session except the current one
  GET    /api/v1/auth/sessions         -- caller's active sessions with device labels
  DELETE /api/v1/auth/sessions/{id}    -- end one of the caller's sessions
  GET    /api/v1/auth/me               -- identity from the access token
  GET    /api/v1/auth/audit            -- caller's own audit trail (paginated)
  POST   /api/v1/auth/password         -- change password (current one required)
  POST   /api/v1/auth/password/forgot  -- email a single-use reset token
  POST   /api/v1/auth/password/reset   -- redeem a reset token; ends every session

Security:
  [H2] POST /login carries a slowapi per-IP request limit on top of the
       database-backed identifier/IP/lockout gate in security/.
  [M5] Cache-Control: no-store on every response that contains a token.
  /password/forgot answers 202 with the same body whether or not the account
  exists. The reset token only travels through the notifier.
  Rejections are raised as AuthError and rendered by api/main.py: 401 with a
  generic message, 400 for InvalidRequest, or 429 with Retry-After.
  IDOR guard: DELETE /sessions/{id} only touches sessions owned by the caller
  and answers 404 for anyone else's, same as for a nonexistent id.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AuditEntryResponse,
    AuditPageResponse,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    ResetPasswordRequest,
    RevokedCountResponse,
    SessionResponse,
    TokenResponse,
)
from auth.dependencies import get_current_principal
from auth.models import Principal, RequestContext

# Auth policy:
# - POST   /api/v1/auth/login:          public
# - POST   /api/v1/auth/refresh:        public -- the refresh token IS the credential
# - POST   /api/v1/auth/password/forgot, /password/reset: public, throttled
# - everything else:                    requires a valid access token (get_current_principal)
router = APIRouter()


def _context(request: Request) -> RequestContext:
    return RequestContext.build(request.headers, request.client.host if request.client else None)


def _no_store(payload: dict) -> JSONResponse:
    resp = JSONResponse(status_code=200, content=payload)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password and open (or reuse) a device session.

    Plain def: password hashing is CPU-bound, so FastAPI runs this in its
    thread pool instead of blocking the event loop.
    """
    services = request.app.state.services
    result = services.flows.login(body.email, body.password, _context(request), remember_me=body.remember_me)
    return _no_store(
        LoginResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=int(services.codec.access_ttl.total_seconds()),
            session_id=result.session.id,
            user_id=result.user.id,
            email=result.user.email,
            role=result.user.role,
            session_expires_at=result.session.expires_at,
            remember_me=result.session.remember_me,
            new_device=result.is_new_device,
        ).model_dump(mode="json")
    )


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new access + refresh pair (single use)."""
    services = request.app.state.services
    pair = services.flows.refresh(body.refresh_token, _context(request))
    return _no_store(
        TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=int(services.codec.access_ttl.total_seconds()),
            session_id=pair.session_id,
        ).model_dump(mode="json")
    )


@limiter.limit(login_rate_limit)
@router.post("/auth/password/forgot", status_code=202, response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    request.app.state.services.flows.request_password_reset(body.email, _context(request))
    return MessageResponse(message="If the account exists, a reset link has been sent.")


@limiter.limit(login_rate_limit)
@router.post("/auth/password/reset", response_model=RevokedCountResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> RevokedCountResponse:
    """Redeem a reset token. Every session of the account is ended."""
    count = request.app.state.services.flows.reset_password(body.token, body.new_password, _context(request))
    return RevokedCountResponse(revoked=count)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: LogoutRequest | None = None,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    flows = request.app.state.services.flows
    flows.logout(principal, _context(request), refresh_token=body.refresh_token if body else None)
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-all", response_model=RevokedCountResponse)
def logout_all(request: Request, principal: Principal = Depends(get_current_principal)) -> RevokedCountResponse:
    count = request.app.state.services.flows.logout_all(principal, _context(request))
    return RevokedCountResponse(revoked=count)


@router.post("/auth/logout-others", response_model=RevokedCountResponse)
def logout_others(request: Request, principal: Principal = Depends(get_current_principal)) -> RevokedCountResponse:
    count = request.app.state.services.flows.logout_others(principal, _context(request))
    return RevokedCountResponse(revoked=count)


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, principal: Principal = Depends(get_current_principal)) -> list[SessionResponse]:
    views = request.app.state.services.sessions.list_sessions(principal.user_id, principal.session_id)
    return [
        SessionResponse(
            id=v.session.id,
            description=v.description,
            browser=v.browser,
            os=v.os,
            device=v.device,
            ip_address=v.session.ip_address,
            created_at=v.session.created_at,
            last_used_at=v.session.last_used_at,
            expires_at=v.session.expires_at,
            remember_me=v.session.remember_me,
            is_current=v.is_current,
        )
        for v in views
    ]


@router.delete("/auth/sessions/{session_id}", response_model=MessageResponse)
def revoke_session(
    session_id: str, request: Request, principal: Principal = Depends(get_current_principal)
) -> MessageResponse:
    revoked = request.app.state.services.flows.revoke_session(principal, session_id, _context(request))
    if not revoked:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found or already revoked."},
        )
    return MessageResponse(message="Session revoked.")


@limiter.limit(login_rate_limit)
@router.post("/auth/password", response_model=RevokedCountResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
) -> RevokedCountResponse:
    """Change the caller's password. Other sessions are revoked; this one stays."""
    count = request.app.state.services.flows.change_password(
        principal, body.current_password, body.new_password, _context(request)
    )
    return RevokedCountResponse(revoked=count)


@router.get("/auth/me", response_model=MeResponse)
async def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return identity claims for the current access token."""
    return MeResponse(
        user_id=principal.user_id,
        email=principal.email,
        role=principal.role,
        permissions=list(principal.permissions),
        session_id=principal.session_id,
    )


@router.get("/auth/audit", response_model=AuditPageResponse)
def my_audit_trail(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
) -> AuditPageResponse:
    result = request.app.state.services.audit.user_logs(principal.user_id, page=page, limit=limit)
    return AuditPageResponse(
        items=[
            AuditEntryResponse(
                id=e.id,
                event_type=e.event_type,
                created_at=e.created_at,
                ip_address=e.ip_address,
                user_agent=e.user_agent,
                session_id=e.session_id,
                metadata=e.metadata,
            )
            for e in result.items
        ],
        page=result.page,
        limit=result.limit,
        total=result.total,
    )
