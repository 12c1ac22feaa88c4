# pyright: reportMissingImports=false
# pyright: reportUnknownArgumentType=false
# pyright: reportUnknownMemberType=false
# pyright: reportCallInDefaultInitializer=false
from __future__ import annotations

from datetime import datetime
import logging
import secrets
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from portraitist.api.deps import (
    bearer_scheme,
    bearer_token,
    client_ip,
    get_session_service,
    require_user_context,
)
from portraitist.api.envelope import Envelope, ok
from portraitist.core.config import settings
from portraitist.core.errors import AppError, AuthenticationFailed
from portraitist.db.models import User
from portraitist.db.session import get_db
from portraitist.services.google_oauth import GoogleAuthProvider, get_google_auth
from portraitist.services.identity import UserContext
from portraitist.services.sessions import IssuedSession, SessionService
from portraitist.services.users import ensure_user_allowed, upsert_google_user, user_stats


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

OAUTH_STATE_COOKIE = "oauth_state"
_OAUTH_STATE_MAX_AGE_SECONDS = 600


class UserOut(BaseModel):
    id: str
    email: str
    name: str | None
    avatar_url: str | None
    role: str
    credits: int
    created_at: datetime


class SessionOut(BaseModel):
    token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    expires_at: datetime
    user: UserOut
    is_new_user: bool = False


class GoogleTokenRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id_token: str = Field(..., min_length=1, alias="idToken")


class RefreshRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    refresh_token: str = Field(..., min_length=1, alias="refreshToken")


class VerifyOut(BaseModel):
    valid: bool
    user: UserOut
    session_id: str
    session_expires_at: datetime


class LogoutOut(BaseModel):
    revoked: int


class ProfileOut(BaseModel):
    user: UserOut
    stats: dict[str, object]


class ActiveSessionOut(BaseModel):
    id: str
    user_agent: str | None
    ip_address: str | None
    created_at: datetime
    last_used_at: datetime | None
    expires_at: datetime
    current: bool


def _user_out(user: User) -> UserOut:
    return UserOut(
        id=user.id,
        email=user.email,
        name=user.name,
        avatar_url=user.avatar_url,
        role=user.role,
        credits=int(user.credits),
        created_at=user.created_at,
    )


def _session_out(issued: IssuedSession, user: User, *, is_new_user: bool = False) -> SessionOut:
    return SessionOut(
        token=issued.token,
        refresh_token=issued.refresh_token,
        expires_in=issued.token_expires_in,
        expires_at=issued.expires_at,
        user=_user_out(user),
        is_new_user=is_new_user,
    )


def _frontend(path: str, **params: str) -> str:
    base = settings.frontend_url.rstrip("/")
    return f"{base}{path}?{urlencode(params)}"


def _error_redirect(message: str) -> RedirectResponse:
    response = RedirectResponse(_frontend("/auth/error", error=message), status_code=302)
    response.delete_cookie(OAUTH_STATE_COOKIE, path=f"{settings.api_prefix}/auth")
    return response


@router.get("/google", operation_id="auth_google_start", include_in_schema=True)
async def auth_google_start(
    google: GoogleAuthProvider = Depends(get_google_auth),
) -> RedirectResponse:
    state = secrets.token_urlsafe(24)
    response = RedirectResponse(google.authorization_url(state), status_code=302)
    response.set_cookie(
        key=OAUTH_STATE_COOKIE,
        value=state,
        max_age=_OAUTH_STATE_MAX_AGE_SECONDS,
        httponly=True,
        secure=settings.cookie_secure or settings.is_production(),
        samesite="lax",
        path=f"{settings.api_prefix}/auth",
    )
    return response


@router.get("/google/callback", operation_id="auth_google_callback")
async def auth_google_callback(
    request: Request,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    db: Session = Depends(get_db),
    google: GoogleAuthProvider = Depends(get_google_auth),
    sessions: SessionService = Depends(get_session_service),
) -> RedirectResponse:
    if error:
        logger.info("google consent refused error=%s", error)
        return _error_redirect("Authentication failed")

    expected_state = request.cookies.get(OAUTH_STATE_COOKIE)
    if (
        not state
        or not expected_state
        or not secrets.compare_digest(state.encode("utf-8"), expected_state.encode("utf-8"))
    ):
        logger.warning("oauth state mismatch ip=%s", client_ip(request))
        return _error_redirect("Authentication failed")
    if not code:
        return _error_redirect("Authentication failed")

    try:
        id_token = await google.exchange_code(code)
        identity = await google.verify_id_token(id_token)
        user, _created = upsert_google_user(
            db, identity, initial_credits=settings.user_initial_credits
        )
        ensure_user_allowed(user)
        issued = sessions.create(
            db, user, user_agent=request.headers.get("User-Agent"), ip=client_ip(request)
        )
    except AppError as exc:
        logger.warning("google callback failed error=%s details=%s", exc.error, exc.details)
        return _error_redirect(exc.error)

    response = RedirectResponse(
        _frontend("/auth/callback", token=issued.token, refreshToken=issued.refresh_token),
        status_code=302,
    )
    response.delete_cookie(OAUTH_STATE_COOKIE, path=f"{settings.api_prefix}/auth")
    return response


@router.post(
    "/google/token",
    response_model=Envelope[SessionOut],
    operation_id="auth_google_token",
)
async def auth_google_token(
    payload: GoogleTokenRequest,
    request: Request,
    db: Session = Depends(get_db),
    google: GoogleAuthProvider = Depends(get_google_auth),
    sessions: SessionService = Depends(get_session_service),
) -> Envelope[SessionOut]:
    identity = await google.verify_id_token(payload.id_token)
    user, created = upsert_google_user(db, identity, initial_credits=settings.user_initial_credits)
    ensure_user_allowed(user)
    issued = sessions.create(
        db, user, user_agent=request.headers.get("User-Agent"), ip=client_ip(request)
    )
    return ok(_session_out(issued, user, is_new_user=created))


@router.post(
    "/google/token/refresh",
    response_model=Envelope[SessionOut],
    operation_id="auth_google_token_refresh",
)
async def auth_google_token_refresh(
    payload: RefreshRequest,
    request: Request,
    db: Session = Depends(get_db),
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    sessions: SessionService = Depends(get_session_service),
) -> Envelope[SessionOut]:
    issued = sessions.refresh(
        db,
        payload.refresh_token,
        bearer=bearer_token(creds),
        user_agent=request.headers.get("User-Agent"),
        ip=client_ip(request),
    )
    user = db.get(User, issued.user_id)
    if user is None:
        raise AuthenticationFailed("Invalid refresh token")
    return ok(_session_out(issued, user))


@router.get("/verify", response_model=Envelope[VerifyOut], operation_id="auth_verify")
async def auth_verify(ctx: UserContext = Depends(require_user_context)) -> Envelope[VerifyOut]:
    return ok(
        VerifyOut(
            valid=True,
            user=_user_out(ctx.user),
            session_id=ctx.auth_session.id,
            session_expires_at=ctx.auth_session.expires_at,
        )
    )


@router.post("/logout", response_model=Envelope[LogoutOut], operation_id="auth_logout")
async def auth_logout(
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(require_user_context),
    sessions: SessionService = Depends(get_session_service),
) -> Envelope[LogoutOut]:
    revoked = sessions.revoke(db, ctx.auth_session.id)
    return ok(LogoutOut(revoked=1 if revoked else 0))


@router.post("/logout-all", response_model=Envelope[LogoutOut], operation_id="auth_logout_all")
async def auth_logout_all(
    keep_current: bool = Query(False),
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(require_user_context),
    sessions: SessionService = Depends(get_session_service),
) -> Envelope[LogoutOut]:
    revoked = sessions.revoke_all(
        db,
        ctx.user.id,
        exclude_session_id=ctx.auth_session.id if keep_current else None,
    )
    return ok(LogoutOut(revoked=revoked))


@router.get("/profile", response_model=Envelope[ProfileOut], operation_id="auth_profile")
async def auth_profile(
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(require_user_context),
) -> Envelope[ProfileOut]:
    return ok(ProfileOut(user=_user_out(ctx.user), stats=user_stats(db, ctx.user)))


@router.get(
    "/sessions",
    response_model=Envelope[list[ActiveSessionOut]],
    operation_id="auth_sessions_list",
)
async def auth_sessions_list(
    db: Session = Depends(get_db),
    ctx: UserContext = Depends(require_user_context),
    sessions: SessionService = Depends(get_session_service),
) -> Envelope[list[ActiveSessionOut]]:
    rows = sessions.list_active(db, ctx.user.id)
    return ok(
        [
            ActiveSessionOut(
                id=row.id,
                user_agent=row.user_agent,
                ip_address=row.ip_address,
                created_at=row.created_at,
                last_used_at=row.last_used_at,
                expires_at=row.expires_at,
                current=row.id == ctx.auth_session.id,
            )
            for row in rows
        ]
    )
