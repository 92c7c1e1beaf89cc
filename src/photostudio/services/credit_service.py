"""Credit ledger -- balance queries, atomic credits and debits, history.

Every balance change is paired with exactly one ``credit_transactions`` row
written in the caller's transaction, so ``SUM(amount)`` over a user's rows
always equals ``users.credits``.  Nothing here commits; the caller owns the
transaction boundary.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy import func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from photostudio.errors import InsufficientCreditsError, NotFoundError, ValidationError
from photostudio.models import CreditTransaction, TxnType, User

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class CreditBalanceResponse(BaseModel):
    credits: int


class CreditTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    amount: int
    type: str
    description: Optional[str] = None
    payment_id: Optional[uuid.UUID] = None
    image_id: Optional[uuid.UUID] = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

async def _record_transaction(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    txn_type: str,
    description: str | None,
    payment_id: uuid.UUID | None = None,
    image_id: uuid.UUID | None = None,
) -> None:
    await db.execute(
        insert(CreditTransaction).values(
            user_id=user_id,
            amount=amount,
            txn_type=txn_type,
            description=description,
            payment_id=payment_id,
            image_id=image_id,
        )
    )


def _require_positive(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise ValidationError("Amount must be a positive integer")


# ---------------------------------------------------------------------------
# Service functions
# ---------------------------------------------------------------------------

async def get_balance(db: AsyncSession, user_id: uuid.UUID) -> int:
    """Return the current credit balance for a user."""
    result = await db.execute(select(User.credits).where(User.user_id == user_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise NotFoundError("User not found")
    return balance


async def add_credits(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    txn_type: str,
    description: str | None = None,
    payment_id: uuid.UUID | None = None,
    image_id: uuid.UUID | None = None,
) -> int:
    """Increment the balance and append a ``+amount`` ledger row.

    Returns the new balance.
    """
    _require_positive(amount)
    if txn_type not in TxnType.ALL:
        raise ValidationError(f"Unknown transaction type: {txn_type}")

    result = await db.execute(
        update(User)
        .where(User.user_id == user_id)
        .values(credits=User.credits + amount)
        .returning(User.credits)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        raise NotFoundError("User not found")

    await _record_transaction(db, user_id, amount, txn_type, description, payment_id, image_id)
    log.info("credits_added", user_id=str(user_id), amount=amount, txn_type=txn_type,
             new_balance=new_balance)
    return new_balance


async def deduct_credits(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    description: str | None = None,
    image_id: uuid.UUID | None = None,
) -> int:
    """Atomically deduct credits using UPDATE ... WHERE credits >= amount.

    The conditional update is the overdraft guard; no row lock is taken.
    Returns the new balance or raises InsufficientCreditsError (402).
    """
    _require_positive(amount)

    result = await db.execute(
        update(User)
        .where(User.user_id == user_id, User.credits >= amount)
        .values(credits=User.credits - amount)
        .returning(User.credits)
    )
    new_balance = result.scalar_one_or_none()
    if new_balance is None:
        available = await get_balance(db, user_id)
        raise InsufficientCreditsError(extra={"required": amount, "available": available})

    await _record_transaction(db, user_id, -amount, TxnType.USAGE, description, image_id=image_id)
    log.info("credits_deducted", user_id=str(user_id), amount=amount, new_balance=new_balance)
    return new_balance


async def deduct_credits_floored(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    description: str | None = None,
    payment_id: uuid.UUID | None = None,
) -> tuple[int, int]:
    """Remove up to *amount* credits without driving the balance negative.

    Used for compensating refund debits, where the credits may already have
    been spent.  The ledger row records the amount actually removed; nothing
    is written when the balance is already zero.

    Returns ``(removed, new_balance)``.
    """
    _require_positive(amount)

    while True:
        result = await db.execute(
            select(User.credits).where(User.user_id == user_id).with_for_update()
        )
        balance = result.scalar_one_or_none()
        if balance is None:
            raise NotFoundError("User not found")

        removed = min(amount, balance)
        if removed == 0:
            log.warning("refund_debit_floored", user_id=str(user_id), requested=amount, removed=0)
            return 0, balance

        result = await db.execute(
            update(User)
            .where(User.user_id == user_id, User.credits >= removed)
            .values(credits=User.credits - removed)
            .returning(User.credits)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is not None:
            break
        # Balance dropped between read and write; take the smaller amount.

    await _record_transaction(db, user_id, -removed, TxnType.REFUND, description, payment_id)
    if removed < amount:
        log.warning("refund_debit_floored", user_id=str(user_id), requested=amount, removed=removed)
    return removed, new_balance


async def refund_credits(
    db: AsyncSession,
    user_id: uuid.UUID,
    amount: int,
    description: str | None = None,
    image_id: uuid.UUID | None = None,
) -> int:
    """Return credits for a failed generation. Delegates to add_credits with txn_type='refund'."""
    return await add_credits(
        db=db,
        user_id=user_id,
        amount=amount,
        txn_type=TxnType.REFUND,
        description=description,
        image_id=image_id,
    )


async def get_credit_history(
    db: AsyncSession,
    user_id: uuid.UUID,
    limit: int = 50,
    offset: int = 0,
) -> list[CreditTransactionResponse]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.txn_id.desc())
        .limit(limit)
        .offset(offset)
    )
    return [
        CreditTransactionResponse(
            id=txn.txn_id,
            amount=txn.amount,
            type=txn.txn_type,
            description=txn.description,
            payment_id=txn.payment_id,
            image_id=txn.image_id,
            created_at=txn.created_at,
        )
        for txn in result.scalars().all()
    ]


async def compute_ledger_balance(db: AsyncSession, user_id: uuid.UUID) -> int:
    """Sum of a user's ledger rows; equals ``users.credits`` when consistent."""
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0))
        .where(CreditTransaction.user_id == user_id)
    )
    return int(result.scalar_one())
