"""Ledger database models: user profiles (balance holders) and transactions."""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from storepay.common.db import Base, utcnow

DEPOSIT = "deposit"
PURCHASE = "purchase"
REFUND = "refund"
BONUS = "bonus"
TRANSACTION_KINDS = (DEPOSIT, PURCHASE, REFUND, BONUS)


class Profile(Base):
    """Storefront user keyed by Telegram id; holds the ledger-derived balance."""

    __tablename__ = "profiles"
    __table_args__ = (CheckConstraint("balance_kopecks >= 0", name="ck_profiles_balance_non_negative"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    telegram_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True)
    username: Mapped[str | None] = mapped_column(String, nullable=True)
    first_name: Mapped[str | None] = mapped_column(String, nullable=True)
    last_name: Mapped[str | None] = mapped_column(String, nullable=True)
    language_code: Mapped[str] = mapped_column(String, default="ru")
    balance_kopecks: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    # Last ledger sequence number issued for this user; bumped under the row lock.
    ledger_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Transaction(Base):
    """Immutable ledger entry; `balance_after_kopecks` chains per user by `sequence`."""

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "payment_id", name="uq_transactions_user_payment"),
        UniqueConstraint("user_id", "sequence", name="uq_transactions_user_sequence"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(ForeignKey("profiles.id"), index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String, index=True)
    amount_kopecks: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after_kopecks: Mapped[int] = mapped_column(BigInteger, nullable=False)
    description: Mapped[str] = mapped_column(String, default="")
    payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    order_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
