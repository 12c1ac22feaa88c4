from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from portraitist.core.errors import PermissionDenied
from portraitist.db.models import CreditLedgerEntry, Generation, Image, User


def _now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


@dataclass(frozen=True)
class GoogleIdentity:
    sub: str
    email: str
    email_verified: bool
    name: str | None = None
    picture: str | None = None


def ensure_user_allowed(user: User, *, now: datetime | None = None) -> None:
    if not user.is_active:
        raise PermissionDenied("Account disabled")
    current = now or _now_utc()
    if user.banned_until is not None and user.banned_until > current:
        raise PermissionDenied("Account disabled")


def upsert_google_user(
    db: Session, identity: GoogleIdentity, *, initial_credits: int
) -> tuple[User, bool]:
    """Find the user by Google subject or create it, refreshing profile fields.

    Returns ``(user, created)``. New users receive ``initial_credits`` recorded as
    a ``grant`` ledger entry.
    """
    now = _now_utc()
    user = db.execute(select(User).where(User.google_id == identity.sub)).scalar_one_or_none()
    if user is not None:
        user.email = identity.email
        user.email_verified = identity.email_verified
        user.name = identity.name or user.name
        user.avatar_url = identity.picture or user.avatar_url
        user.last_login_at = now
        db.commit()
        db.refresh(user)
        return user, False

    user = User(
        google_id=identity.sub,
        email=identity.email,
        email_verified=identity.email_verified,
        name=identity.name,
        avatar_url=identity.picture,
        role="user",
        credits=max(0, int(initial_credits)),
        settings={},
        is_active=True,
        last_login_at=now,
    )
    db.add(user)
    try:
        db.flush()
    except IntegrityError:
        # Concurrent first login for the same Google account.
        db.rollback()
        existing = db.execute(
            select(User).where(User.google_id == identity.sub)
        ).scalar_one()
        return existing, False

    if user.credits > 0:
        db.add(
            CreditLedgerEntry(
                user_id=user.id,
                kind="grant",
                delta=user.credits,
                balance_after=user.credits,
                generation_id=None,
                reason="signup",
            )
        )
    db.commit()
    db.refresh(user)
    return user, True


def user_stats(db: Session, user: User) -> dict[str, object]:
    images_count = db.execute(
        select(func.count())
        .select_from(Image)
        .where(Image.user_id == user.id, Image.is_deleted.is_(False))
    ).scalar_one()
    generations_count = db.execute(
        select(func.count()).select_from(Generation).where(Generation.user_id == user.id)
    ).scalar_one()
    return {
        "images_count": int(images_count),
        "generations_count": int(generations_count),
        "credits": int(user.credits),
        "created_at": user.created_at,
        "last_login_at": user.last_login_at,
    }
