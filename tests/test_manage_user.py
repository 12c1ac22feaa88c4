from __future__ import annotations

import uuid

import pytest
from sqlalchemy import select

from portraitist.core.config import settings
from portraitist.core.errors import InsufficientCredits
from portraitist.db.models import AuthSession, CreditLedgerEntry, User
from portraitist.db.session import SessionLocal
from portraitist.scripts.manage_user import manage_user
from portraitist.services.sessions import SessionService


def _user(credits: int = 3) -> tuple[str, str]:
    email = f"admin-test-{uuid.uuid4().hex}@example.com"
    with SessionLocal() as db:
        user = User(
            google_id=f"g-{uuid.uuid4().hex}",
            email=email,
            email_verified=True,
            credits=credits,
        )
        db.add(user)
        db.commit()
        return user.id, email


def test_grant_by_email_writes_ledger_entry() -> None:
    user_id, email = _user(credits=3)
    with SessionLocal() as db:
        change = manage_user(db, ident=email.upper(), grant=5)
    assert change.user_id == user_id
    assert change.actions == ("credits +5 -> 8",)

    with SessionLocal() as db:
        user = db.get(User, user_id)
        assert user is not None and user.credits == 8
        entries = db.execute(
            select(CreditLedgerEntry).where(CreditLedgerEntry.user_id == user_id)
        ).scalars().all()
        assert [(e.kind, e.delta, e.balance_after) for e in entries] == [("grant", 5, 8)]


def test_negative_grant_cannot_overdraw() -> None:
    user_id, _email = _user(credits=1)
    with SessionLocal() as db:
        with pytest.raises(InsufficientCredits):
            _ = manage_user(db, ident=user_id, grant=-2)


def test_role_change_and_unknown_role() -> None:
    user_id, _email = _user()
    with SessionLocal() as db:
        change = manage_user(db, ident=user_id, role="moderator")
    assert change.actions == ("role=moderator",)

    with SessionLocal() as db:
        with pytest.raises(ValueError):
            _ = manage_user(db, ident=user_id, role="owner")


def test_ban_revokes_live_sessions() -> None:
    user_id, _email = _user()
    with SessionLocal() as db:
        user = db.get(User, user_id)
        assert user is not None
        service = SessionService(settings)
        _ = service.create(db, user, user_agent=None, ip=None)
        _ = service.create(db, user, user_agent=None, ip=None)

    with SessionLocal() as db:
        change = manage_user(db, ident=user_id, ban_days=3)
    assert change.actions[-1] == "sessions revoked=2"

    with SessionLocal() as db:
        user = db.get(User, user_id)
        assert user is not None and user.banned_until is not None
        live = db.execute(
            select(AuthSession).where(
                AuthSession.user_id == user_id, AuthSession.revoked_at.is_(None)
            )
        ).scalars().all()
        assert live == []

    with SessionLocal() as db:
        change = manage_user(db, ident=user_id, unban=True)
    assert change.actions == ("unbanned",)


def test_unknown_user_raises_lookup_error() -> None:
    with SessionLocal() as db:
        with pytest.raises(LookupError):
            _ = manage_user(db, ident="nobody@example.com")
