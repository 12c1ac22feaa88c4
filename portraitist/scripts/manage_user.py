from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import sys
from typing import cast

from sqlalchemy import select
from sqlalchemy.orm import Session

from portraitist.core.config import settings
from portraitist.core.errors import AppError
from portraitist.db.models import USER_ROLES, User
from portraitist.db.session import SessionLocal
from portraitist.services import credits
from portraitist.services.sessions import SessionService


@dataclass(frozen=True)
class UserChange:
    user_id: str
    email: str
    actions: tuple[str, ...]


def _now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def find_user(db: Session, ident: str) -> User:
    ident_n = ident.strip()
    user = db.get(User, ident_n)
    if user is None:
        user = db.execute(
            select(User).where(User.email == ident_n.lower())
        ).scalar_one_or_none()
    if user is None:
        raise LookupError(f"no user with id or email {ident!r}")
    return user


def manage_user(
    db: Session,
    *,
    ident: str,
    grant: int | None = None,
    role: str | None = None,
    ban_days: int | None = None,
    unban: bool = False,
    set_active: bool | None = None,
) -> UserChange:
    """Apply admin changes to one user; credits go through the ledger.

    Banning or deactivating also revokes every live session of the user.
    """
    user = find_user(db, ident)
    actions: list[str] = []

    if grant:
        balance = credits.grant(db, user_id=user.id, amount=grant, reason="admin grant")
        actions.append(f"credits {grant:+d} -> {balance}")

    if role is not None:
        if role not in USER_ROLES:
            raise ValueError(f"role must be one of {', '.join(USER_ROLES)}")
        user.role = role
        actions.append(f"role={role}")

    if unban:
        user.banned_until = None
        actions.append("unbanned")
    elif ban_days is not None:
        if ban_days <= 0:
            raise ValueError("--ban-days must be positive")
        user.banned_until = _now_utc() + timedelta(days=ban_days)
        actions.append(f"banned until {user.banned_until.isoformat()}")

    if set_active is not None:
        user.is_active = bool(set_active)
        actions.append(f"is_active={user.is_active}")

    db.commit()

    if (ban_days is not None and not unban) or set_active is False:
        revoked = SessionService(settings).revoke_all(db, user.id)
        actions.append(f"sessions revoked={revoked}")

    return UserChange(user_id=user.id, email=user.email, actions=tuple(actions))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Adjust a user's credits, role or ban state (by id or email)."
    )
    _ = parser.add_argument("user", help="User id or email")
    _ = parser.add_argument("--grant", type=int, default=None, help="Credits to add (negative to remove)")
    _ = parser.add_argument("--role", default=None, choices=USER_ROLES, help="Role to set")

    ban_group = parser.add_mutually_exclusive_group()
    _ = ban_group.add_argument("--ban-days", type=int, default=None, help="Ban for N days")
    _ = ban_group.add_argument("--unban", action="store_true", help="Lift an active ban")

    active_group = parser.add_mutually_exclusive_group()
    _ = active_group.add_argument(
        "--set-active", dest="set_active", action="store_true", help="Set is_active=true."
    )
    _ = active_group.add_argument(
        "--set-inactive", dest="set_active", action="store_false", help="Set is_active=false."
    )
    parser.set_defaults(set_active=None)
    return parser


def main() -> None:
    args = _build_parser().parse_args()

    db = SessionLocal()
    try:
        change = manage_user(
            db,
            ident=cast(str, args.user),
            grant=cast(int | None, args.grant),
            role=cast(str | None, args.role),
            ban_days=cast(int | None, args.ban_days),
            unban=cast(bool, args.unban),
            set_active=cast(bool | None, args.set_active),
        )
    except (AppError, LookupError, ValueError) as exc:
        db.rollback()
        print(f"error: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    finally:
        db.close()

    print(f"user_id={change.user_id} email={change.email}")
    for action in change.actions or ("no changes",):
        print(f"  {action}")


if __name__ == "__main__":
    main()
