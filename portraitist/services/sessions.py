from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from portraitist.core.config import Settings
from portraitist.core.errors import AuthenticationFailed
from portraitist.core.security import (
    JSONValue,
    TokenExpired,
    TokenInvalid,
    decode_access_token,
    encode_access_token,
    hash_token,
    new_refresh_token,
)
from portraitist.db.models import AuthSession, User
from portraitist.services.users import ensure_user_allowed


logger = logging.getLogger(__name__)

INVALID_SESSION = "Invalid or expired session"
INVALID_REFRESH_TOKEN = "Invalid refresh token"


def _now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass(frozen=True)
class IssuedSession:
    session_id: str
    user_id: str
    token: str
    refresh_token: str
    expires_at: datetime
    token_expires_in: int


def token_claims(user: User) -> dict[str, JSONValue]:
    return {
        "sub": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "picture": user.avatar_url,
    }


class SessionService:
    def __init__(self, settings: Settings) -> None:
        self._secret: str = settings.auth_access_token_secret
        self._issuer: str = settings.auth_access_token_issuer
        self._access_ttl: int = int(settings.auth_access_token_ttl_seconds)
        self._refreshed_access_ttl: int = int(settings.auth_refreshed_access_token_ttl_seconds)
        self._session_ttl: timedelta = timedelta(days=settings.auth_session_ttl_days)

    def _mint(
        self,
        db: Session,
        user: User,
        *,
        access_ttl: int,
        user_agent: str | None,
        ip: str | None,
        now: datetime,
    ) -> IssuedSession:
        token = encode_access_token(
            token_claims(user),
            secret=self._secret,
            expires_in_seconds=access_ttl,
            issuer=self._issuer,
        )
        claims = decode_access_token(token, self._secret, issuer=self._issuer)
        refresh_raw = new_refresh_token()
        row = AuthSession(
            user_id=user.id,
            token_hash=hash_token(token),
            refresh_token_hash=hash_token(refresh_raw),
            jti=str(claims["jti"]),
            user_agent=user_agent,
            ip_address=ip,
            expires_at=now + self._session_ttl,
            revoked_at=None,
            last_used_at=now,
            created_at=now,
        )
        db.add(row)
        db.flush()
        return IssuedSession(
            session_id=row.id,
            user_id=user.id,
            token=token,
            refresh_token=refresh_raw,
            expires_at=row.expires_at,
            token_expires_in=access_ttl,
        )

    def create(
        self, db: Session, user: User, *, user_agent: str | None, ip: str | None
    ) -> IssuedSession:
        issued = self._mint(
            db, user, access_ttl=self._access_ttl, user_agent=user_agent, ip=ip, now=_now_utc()
        )
        db.commit()
        return issued

    def decode(self, token: str, *, verify_exp: bool = True) -> dict[str, JSONValue]:
        try:
            return decode_access_token(
                token, self._secret, issuer=self._issuer, verify_exp=verify_exp
            )
        except TokenExpired as exc:
            raise AuthenticationFailed("Token expired", details=str(exc)) from exc
        except TokenInvalid as exc:
            raise AuthenticationFailed("Malformed token", details=str(exc)) from exc

    def validate(self, db: Session, token: str) -> AuthSession:
        """Return the live session row for ``token``.

        The signature and expiry are checked first, then the stored row; a revoked
        row fails even when the token itself is still well within its lifetime.
        """
        claims = self.decode(token)
        now = _now_utc()

        row = db.execute(
            select(AuthSession).where(AuthSession.token_hash == hash_token(token))
        ).scalar_one_or_none()
        if row is None or not row.is_valid(now):
            raise AuthenticationFailed(INVALID_SESSION)
        if claims.get("sub") != row.user_id:
            raise AuthenticationFailed(INVALID_SESSION)

        user = row.user
        ensure_user_allowed(user, now=now)
        # Stale claims are tolerated until the next refresh.
        for field, current in (("email", user.email), ("role", user.role)):
            if claims.get(field) != current:
                logger.warning(
                    "token claim %s differs from stored user user_id=%s session_id=%s",
                    field,
                    user.id,
                    row.id,
                )

        row.last_used_at = now
        db.commit()
        return row

    def refresh(
        self,
        db: Session,
        refresh_token: str,
        *,
        bearer: str | None = None,
        user_agent: str | None = None,
        ip: str | None = None,
    ) -> IssuedSession:
        """Rotate a refresh token: revoke its session and issue a new pair.

        Refresh tokens are single use. The old row is revoked with a guarded
        UPDATE so two concurrent calls with the same token cannot both succeed.
        """
        if refresh_token.strip() == "":
            raise AuthenticationFailed(INVALID_REFRESH_TOKEN)
        now = _now_utc()

        row = db.execute(
            select(AuthSession)
            .where(AuthSession.refresh_token_hash == hash_token(refresh_token))
            .with_for_update()
        ).scalar_one_or_none()
        if row is None or not row.is_valid(now):
            db.rollback()
            raise AuthenticationFailed(INVALID_REFRESH_TOKEN)

        if bearer:
            claims = self.decode(bearer, verify_exp=False)
            if claims.get("sub") != row.user_id:
                db.rollback()
                raise AuthenticationFailed(INVALID_REFRESH_TOKEN)

        user = row.user
        ensure_user_allowed(user, now=now)

        revoked = db.execute(
            update(AuthSession)
            .where(AuthSession.id == row.id, AuthSession.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        if (revoked.rowcount or 0) != 1:
            db.rollback()
            raise AuthenticationFailed(INVALID_REFRESH_TOKEN)

        issued = self._mint(
            db,
            user,
            access_ttl=self._refreshed_access_ttl,
            user_agent=user_agent or row.user_agent,
            ip=ip or row.ip_address,
            now=now,
        )
        db.commit()
        return issued

    def revoke(self, db: Session, session_id: str) -> bool:
        result = db.execute(
            update(AuthSession)
            .where(AuthSession.id == session_id, AuthSession.revoked_at.is_(None))
            .values(revoked_at=_now_utc())
            .execution_options(synchronize_session=False)
        )
        db.commit()
        return (result.rowcount or 0) > 0

    def revoke_all(self, db: Session, user_id: str, *, exclude_session_id: str | None = None) -> int:
        stmt = update(AuthSession).where(
            AuthSession.user_id == user_id, AuthSession.revoked_at.is_(None)
        )
        if exclude_session_id is not None:
            stmt = stmt.where(AuthSession.id != exclude_session_id)
        result = db.execute(
            stmt.values(revoked_at=_now_utc()).execution_options(synchronize_session=False)
        )
        db.commit()
        return int(result.rowcount or 0)

    def list_active(self, db: Session, user_id: str) -> list[AuthSession]:
        now = _now_utc()
        stmt = (
            select(AuthSession)
            .where(
                AuthSession.user_id == user_id,
                AuthSession.revoked_at.is_(None),
                AuthSession.expires_at > now,
            )
            .order_by(AuthSession.last_used_at.desc())
        )
        return list(db.execute(stmt).scalars().all())

    def cleanup_expired(self, db: Session, *, now: datetime | None = None) -> int:
        cutoff = now or _now_utc()
        rows = (
            db.execute(
                select(AuthSession).where(
                    (AuthSession.expires_at <= cutoff) | AuthSession.revoked_at.is_not(None)
                )
            )
            .scalars()
            .all()
        )
        for row in rows:
            db.delete(row)
        db.commit()
        return len(rows)
