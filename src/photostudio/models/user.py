"""User and credit ledger models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from photostudio.models.base import Base, BigIntPK, utcnow

if TYPE_CHECKING:
    from photostudio.models.library import Folder, Image
    from photostudio.models.payment import Payment


class TxnType:
    BONUS = "bonus"
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"

    ALL = (BONUS, PURCHASE, USAGE, REFUND)


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_nonneg"),
    )

    credit_transactions: Mapped[list[CreditTransaction]] = relationship(
        back_populates="user"
    )
    payments: Mapped[list[Payment]] = relationship(back_populates="user")
    folders: Mapped[list[Folder]] = relationship(back_populates="user")
    images: Mapped[list[Image]] = relationship(back_populates="user")


class CreditTransaction(Base):
    """Append-only; UPDATE/DELETE are rejected by a trigger in the migration."""

    __tablename__ = "credit_transactions"

    txn_id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    txn_type: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("payments.payment_id"), nullable=True
    )
    image_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("images.image_id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "txn_type IN ('bonus', 'purchase', 'usage', 'refund')",
            name="ck_credit_txn_type",
        ),
    )

    user: Mapped[User] = relationship(back_populates="credit_transactions")
