from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from portraitist.core.errors import InsufficientCredits, NotFound
from portraitist.db.models import CreditLedgerEntry, User
from portraitist.metrics.prometheus import record_credit_movement


logger = logging.getLogger(__name__)


def balance(db: Session, user_id: str) -> int:
    credits = db.execute(select(User.credits).where(User.id == user_id)).scalar_one_or_none()
    if credits is None:
        raise NotFound("User not found")
    return int(credits)


def debit(db: Session, *, user_id: str, amount: int, generation_id: str) -> int:
    """Take ``amount`` credits from the user inside the caller's transaction.

    The user row is locked and re-read so the balance check and the decrement
    see the same value. Nothing is committed here; the caller commits together
    with the generation row it is paying for.
    """
    if amount < 0:
        raise ValueError("amount must be >= 0")
    user = db.execute(select(User).where(User.id == user_id).with_for_update()).scalar_one_or_none()
    if user is None:
        raise NotFound("User not found")
    if amount == 0:
        return int(user.credits)
    if int(user.credits) < amount:
        raise InsufficientCredits(
            "Insufficient credits", details=f"balance={user.credits} cost={amount}"
        )

    user.credits = int(user.credits) - amount
    db.add(
        CreditLedgerEntry(
            user_id=user_id,
            kind="debit",
            delta=-amount,
            balance_after=user.credits,
            generation_id=generation_id,
            reason="generation",
        )
    )
    db.flush()
    record_credit_movement(kind="debit", amount=amount)
    return int(user.credits)


def refund(
    db: Session,
    *,
    user_id: str,
    amount: int,
    generation_id: str,
    reason: str | None = None,
) -> bool:
    """Give back credits spent on a generation; at most once per generation.

    Runs inside the caller's transaction. A generation that already has a
    refund entry is left alone and False is returned; the ledger's unique
    ``(generation_id, kind)`` key rejects a concurrent second refund at commit.
    """
    if amount <= 0:
        return False

    already = db.execute(
        select(CreditLedgerEntry.id).where(
            CreditLedgerEntry.generation_id == generation_id,
            CreditLedgerEntry.kind == "refund",
        )
    ).scalar_one_or_none()
    if already is not None:
        logger.warning("refund already recorded generation_id=%s", generation_id)
        return False

    entry = CreditLedgerEntry(
        user_id=user_id,
        kind="refund",
        delta=amount,
        balance_after=0,
        generation_id=generation_id,
        reason=(reason or "generation failed")[:500],
    )
    db.add(entry)
    db.flush()

    _ = db.execute(
        update(User)
        .where(User.id == user_id)
        .values(credits=User.credits + amount)
        .execution_options(synchronize_session=False)
    )
    entry.balance_after = balance(db, user_id)
    db.flush()
    record_credit_movement(kind="refund", amount=amount)
    return True


def grant(db: Session, *, user_id: str, amount: int, reason: str) -> int:
    if amount == 0:
        return balance(db, user_id)
    user = db.execute(select(User).where(User.id == user_id).with_for_update()).scalar_one_or_none()
    if user is None:
        raise NotFound("User not found")
    new_balance = int(user.credits) + amount
    if new_balance < 0:
        raise InsufficientCredits("Insufficient credits")
    user.credits = new_balance
    db.add(
        CreditLedgerEntry(
            user_id=user_id,
            kind="grant",
            delta=amount,
            balance_after=new_balance,
            generation_id=None,
            reason=reason,
        )
    )
    db.commit()
    record_credit_movement(kind="grant", amount=abs(amount))
    return new_balance
