# pyright: reportCallInDefaultInitializer=false
from __future__ import annotations

from datetime import timedelta
from functools import lru_cache

from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from portraitist.core.config import settings
from portraitist.core.errors import AuthenticationFailed
from portraitist.db.session import get_db
from portraitist.services.analysis import VisionAnalyzer, get_analyzer
from portraitist.services.generations import GenerationOrchestrator
from portraitist.services.identity import (
    Identity,
    RequestContext,
    UserContext,
    resolve_anonymous_session,
)
from portraitist.services.sessions import SessionService
from portraitist.services.vendors import GenerationVendor, get_vendor


ANONYMOUS_ID_HEADER = "X-Anonymous-Id"

bearer_scheme = HTTPBearer(auto_error=False)


def client_ip(request: Request) -> str | None:
    if request.client is None:
        return None
    return request.client.host


@lru_cache
def _session_service() -> SessionService:
    return SessionService(settings)


def get_session_service() -> SessionService:
    return _session_service()


def get_orchestrator(
    vendor: GenerationVendor = Depends(get_vendor),
    analyzer: VisionAnalyzer = Depends(get_analyzer),
) -> GenerationOrchestrator:
    return GenerationOrchestrator(settings, vendor=vendor, analyzer=analyzer)


def bearer_token(creds: HTTPAuthorizationCredentials | None) -> str | None:
    if creds is None:
        return None
    if creds.scheme.lower() != "bearer" or creds.credentials.strip() == "":
        raise AuthenticationFailed("Malformed token")
    return creds.credentials.strip()


def _signed_in(
    request: Request, db: Session, sessions: SessionService, token: str
) -> UserContext:
    row = sessions.validate(db, token)
    return UserContext(
        user=row.user,
        auth_session=row,
        access_token=token,
        ip=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )


def _set_anonymous_cookie(response: Response, anonymous_id: str) -> None:
    response.set_cookie(
        key=settings.anonymous_cookie_name,
        value=anonymous_id,
        max_age=settings.anonymous_cookie_max_age_days * 24 * 3600,
        httponly=True,
        secure=settings.cookie_secure or settings.is_production(),
        samesite="lax",
        path="/",
    )


def _resolve_context(
    request: Request,
    response: Response,
    db: Session,
    creds: HTTPAuthorizationCredentials | None,
    sessions: SessionService,
    *,
    counted: bool,
) -> RequestContext:
    token = bearer_token(creds)
    if token is not None:
        return _signed_in(request, db, sessions, token).as_request_context()

    ip = client_ip(request)
    user_agent = request.headers.get("User-Agent")
    raw_id = request.cookies.get(settings.anonymous_cookie_name) or request.headers.get(
        ANONYMOUS_ID_HEADER
    )
    anon, minted = resolve_anonymous_session(
        db,
        anonymous_id=raw_id,
        ip=ip,
        user_agent=user_agent,
        ttl=timedelta(days=settings.anonymous_cookie_max_age_days),
        counted=counted,
    )
    if minted or raw_id != anon.anonymous_id:
        _set_anonymous_cookie(response, anon.anonymous_id)
    return RequestContext(
        identity=Identity(kind="anonymous", owner_id=anon.anonymous_id),
        ip=ip,
        user_agent=user_agent,
        anonymous_session=anon,
    )


def get_request_context(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    sessions: SessionService = Depends(get_session_service),
) -> RequestContext:
    """Signed-in user when a bearer token is sent, anonymous visitor otherwise.

    An invalid bearer token is a 401; it never falls back to the anonymous identity.
    """
    return _resolve_context(request, response, db, creds, sessions, counted=False)


def get_counted_request_context(
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    sessions: SessionService = Depends(get_session_service),
) -> RequestContext:
    """Same as :func:`get_request_context`, counting the request against the daily cap."""
    return _resolve_context(request, response, db, creds, sessions, counted=True)


def require_user_context(
    request: Request,
    db: Session = Depends(get_db),
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    sessions: SessionService = Depends(get_session_service),
) -> UserContext:
    token = bearer_token(creds)
    if token is None:
        raise AuthenticationFailed("No token provided")
    return _signed_in(request, db, sessions, token)
