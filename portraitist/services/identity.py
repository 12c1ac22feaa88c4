from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import logging
import re
from typing import Literal

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portraitist.core.errors import RateLimited
from portraitist.core.security import new_anonymous_id
from portraitist.db.models import AnonymousSession, AuthSession, User


logger = logging.getLogger(__name__)

DAILY_LIMIT_MESSAGE = "Daily limit reached. Please register for more requests."

_ANON_ID_RE = re.compile(r"^[A-Za-z0-9-]{8,64}$")


def _now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass(frozen=True)
class Identity:
    kind: Literal["user", "anonymous"]
    owner_id: str

    @property
    def is_user(self) -> bool:
        return self.kind == "user"

    def owns(self, *, user_id: str | None, anonymous_id: str | None) -> bool:
        if self.kind == "user":
            return user_id is not None and user_id == self.owner_id
        return anonymous_id is not None and anonymous_id == self.owner_id

    def owner_columns(self) -> dict[str, str | None]:
        if self.kind == "user":
            return {"user_id": self.owner_id, "anonymous_id": None}
        return {"user_id": None, "anonymous_id": self.owner_id}


@dataclass(frozen=True)
class RequestContext:
    """Who is calling, resolved once per request and passed down explicitly."""

    identity: Identity
    ip: str | None
    user_agent: str | None
    user: User | None = None
    auth_session: AuthSession | None = None
    anonymous_session: AnonymousSession | None = None
    access_token: str | None = None


@dataclass(frozen=True)
class UserContext:
    """A caller holding a live session; used by routes that require sign-in."""

    user: User
    auth_session: AuthSession
    access_token: str
    ip: str | None
    user_agent: str | None

    def as_request_context(self) -> RequestContext:
        return RequestContext(
            identity=Identity(kind="user", owner_id=self.user.id),
            ip=self.ip,
            user_agent=self.user_agent,
            user=self.user,
            auth_session=self.auth_session,
            access_token=self.access_token,
        )


def is_valid_anonymous_id(raw: str | None) -> bool:
    return isinstance(raw, str) and _ANON_ID_RE.match(raw) is not None


def _touch(
    db: Session,
    *,
    anonymous_id: str,
    ip: str | None,
    user_agent: str | None,
    now: datetime,
    ttl: timedelta,
    counted: bool,
) -> bool:
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    step = 1 if counted else 0
    result = db.execute(
        update(AnonymousSession)
        .where(AnonymousSession.anonymous_id == anonymous_id)
        .values(
            request_count=case(
                (AnonymousSession.last_activity < day_start, step),
                else_=AnonymousSession.request_count + step,
            ),
            last_activity=now,
            expires_at=now + ttl,
            ip_address=ip,
            user_agent=user_agent,
        )
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


def resolve_anonymous_session(
    db: Session,
    *,
    anonymous_id: str | None,
    ip: str | None,
    user_agent: str | None,
    ttl: timedelta,
    counted: bool = False,
) -> tuple[AnonymousSession, bool]:
    """Find-or-create the visitor's anonymous session and record activity.

    ``counted`` requests add one to today's ``request_count``; the counter
    restarts when the previous activity happened before the current UTC day.
    Returns ``(session, minted)``; ``minted`` is True when a new identifier was
    generated and the caller must set the cookie.
    """
    now = _now_utc()
    minted = False
    if anonymous_id is None or not is_valid_anonymous_id(anonymous_id):
        anonymous_id = new_anonymous_id()
        minted = True

    for _attempt in range(2):
        if not minted and _touch(
            db,
            anonymous_id=anonymous_id,
            ip=ip,
            user_agent=user_agent,
            now=now,
            ttl=ttl,
            counted=counted,
        ):
            db.commit()
            break

        row = AnonymousSession(
            anonymous_id=anonymous_id,
            ip_address=ip,
            user_agent=user_agent,
            request_count=1 if counted else 0,
            last_activity=now,
            expires_at=now + ttl,
        )
        db.add(row)
        try:
            db.commit()
            break
        except IntegrityError:
            # Another request created the row first; count against it instead.
            db.rollback()
            minted = False
            logger.info("anonymous session created concurrently anonymous_id=%s", anonymous_id)
    else:
        raise RuntimeError("could not resolve anonymous session")

    session = db.execute(
        select(AnonymousSession).where(AnonymousSession.anonymous_id == anonymous_id)
    ).scalar_one()
    db.refresh(session)
    return session, minted


def check_daily_limit(session: AnonymousSession | None, limit: int) -> None:
    """Reject the request once the visitor has used up today's allowance.

    The counter already includes the current request, so a visitor with
    ``limit`` prior requests today is refused.
    """
    if session is None or limit <= 0:
        return
    if int(session.request_count) > limit:
        raise RateLimited(DAILY_LIMIT_MESSAGE)


def expire_anonymous_sessions(db: Session, *, now: datetime | None = None) -> int:
    cutoff = now or _now_utc()
    rows = (
        db.execute(select(AnonymousSession).where(AnonymousSession.expires_at <= cutoff))
        .scalars()
        .all()
    )
    for row in rows:
        db.delete(row)
    db.commit()
    return len(rows)
