from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
from uuid import uuid4

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .errors import InsufficientBalance, InvalidRequest, NotFound
from .idempotency import IdempotencyGuard
from .models import ClaimResult, Direction, EntrySource
from .schema import Transaction, User, utcnow

MAX_PAGE_SIZE = 100


def new_entry_id(source: EntrySource) -> str:
    return f"{source.value}_{uuid4().hex}"


class LedgerStore:
    """Append-only transaction log plus the derived balance on ``users``.

    Every method works inside the caller's session so that the entry insert
    and the balance update commit or roll back together.
    """

    def __init__(
        self,
        guard: Optional[IdempotencyGuard] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.guard = guard or IdempotencyGuard()
        self._clock = clock

    def lock_user(self, session: Session, user_id: str) -> User:
        stmt = (
            select(User)
            .where(User.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        user = session.scalars(stmt).one_or_none()
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    def credit(
        self,
        session: Session,
        user_id: str,
        amount: int,
        source: EntrySource,
        description: str,
        *,
        entry_id: Optional[str] = None,
        origin_address: Optional[str] = None,
        offer_name: Optional[str] = None,
    ) -> Optional[Transaction]:
        """Credit ``amount`` points. Returns None if ``entry_id`` was already used."""
        self._check_amount(amount)
        self.lock_user(session, user_id)

        entry = Transaction(
            id=entry_id or new_entry_id(source),
            user_id=user_id,
            amount=amount,
            direction=Direction.CREDIT.value,
            source=source.value,
            offer_name=offer_name,
            description=description,
            ip_address=origin_address,
            created_at=self._clock(),
        )
        if self.guard.claim(session, entry) is ClaimResult.DUPLICATE:
            return None

        if source is EntrySource.WITHDRAWAL:
            # refund of a cancelled redemption
            values = {"balance": User.balance + amount, "total_withdrawn": User.total_withdrawn - amount}
        else:
            values = {"balance": User.balance + amount, "total_earned": User.total_earned + amount}
        session.execute(update(User).where(User.id == user_id).values(**values))

        logger.info("Credit {} pts to {} ({}, entry {})", amount, user_id, source.value, entry.id)
        return entry

    def debit(
        self,
        session: Session,
        user_id: str,
        amount: int,
        source: EntrySource,
        description: str,
        *,
        entry_id: Optional[str] = None,
    ) -> Transaction:
        self._check_amount(amount)
        user = self.lock_user(session, user_id)

        values = {"balance": User.balance - amount}
        if source is EntrySource.WITHDRAWAL:
            values["total_withdrawn"] = User.total_withdrawn + amount
        result = session.execute(
            update(User)
            .where(User.id == user_id, User.balance >= amount)
            .values(**values)
        )
        if result.rowcount != 1:
            raise InsufficientBalance(required=amount, current=user.balance)

        entry = Transaction(
            id=entry_id or new_entry_id(source),
            user_id=user_id,
            amount=-amount,
            direction=Direction.DEBIT.value,
            source=source.value,
            description=description,
            created_at=self._clock(),
        )
        session.add(entry)
        session.flush()

        logger.info("Debit {} pts from {} ({}, entry {})", amount, user_id, source.value, entry.id)
        return entry

    def history(
        self,
        session: Session,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        """Entries for ``user_id`` newest first, plus the total count."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.seq.desc())
            .limit(limit)
            .offset(offset)
        )
        entries = list(session.scalars(stmt))
        total = session.scalar(
            select(func.count()).select_from(Transaction).where(Transaction.user_id == user_id)
        )
        return entries, int(total or 0)

    def balance_of(self, session: Session, user_id: str) -> int:
        balance = session.scalar(select(User.balance).where(User.id == user_id))
        if balance is None:
            raise NotFound(f"User {user_id} not found")
        return balance

    def ledger_sum(self, session: Session, user_id: str) -> int:
        total = session.scalar(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(Transaction.user_id == user_id)
        )
        return int(total or 0)

    @staticmethod
    def _check_amount(amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidRequest(f"Amount must be a positive integer, got {amount!r}")


__all__ = ["LedgerStore", "MAX_PAGE_SIZE", "new_entry_id"]
