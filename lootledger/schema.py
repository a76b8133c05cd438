"""Relational schema: users, transactions (the ledger) and withdrawals."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored in UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
    )

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    display_name: Mapped[Optional[str]] = mapped_column(String(128))
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    balance: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_earned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_withdrawn: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Only grows; drives the referral unlock threshold.
    lifetime_earnings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    first_withdrawal_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    referral_code: Mapped[Optional[str]] = mapped_column(String(32), unique=True)
    referred_by_user_id: Mapped[Optional[str]] = mapped_column(ForeignKey("users.id"), index=True)
    referral_unlocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("direction IN ('credit', 'debit')", name="ck_transactions_direction"),
        Index("idx_transactions_user_seq", "user_id", "seq"),
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Partner transaction ids land here verbatim: the unique constraint is the
    # idempotency key.
    id: Mapped[str] = mapped_column(String(191), unique=True, nullable=False)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    offer_name: Mapped[Optional[str]] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class Withdrawal(Base):
    __tablename__ = "withdrawals"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'cancelled', 'failed')",
            name="ck_withdrawals_status",
        ),
        Index("idx_withdrawals_user_id", "user_id"),
        Index("idx_withdrawals_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    reward_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reward_name: Mapped[str] = mapped_column(String(255), nullable=False)
    points_spent: Mapped[int] = mapped_column(Integer, nullable=False)
    delivery_info: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), default="pending", nullable=False)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text)
    ledger_entry_id: Mapped[Optional[str]] = mapped_column(String(191))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


__all__ = ["Base", "Transaction", "User", "Withdrawal", "as_utc", "utcnow"]
