from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from loguru import logger
from sqlalchemy import DateTime, func, literal, select, update
from sqlalchemy.orm import Session

from .catalog import RewardCatalog
from .config import WithdrawalSettings
from .database import Database
from .errors import (
    CooldownActive,
    InsufficientBalance,
    InvalidStateTransition,
    NotFound,
    OutOfStock,
)
from .models import EntrySource, WithdrawalReceipt, WithdrawalRecord, WithdrawalStatus
from .schema import User, Withdrawal, as_utc, utcnow
from .store import MAX_PAGE_SIZE, LedgerStore

# Administrative moves only go forward; cancelled and failed requests are
# refunded with a compensating ledger entry.
TRANSITIONS = {
    WithdrawalStatus.PENDING: {
        WithdrawalStatus.PROCESSING,
        WithdrawalStatus.CANCELLED,
        WithdrawalStatus.FAILED,
    },
    WithdrawalStatus.PROCESSING: {
        WithdrawalStatus.COMPLETED,
        WithdrawalStatus.CANCELLED,
        WithdrawalStatus.FAILED,
    },
}


class WithdrawalGate:
    def __init__(
        self,
        database: Database,
        store: LedgerStore,
        catalog: RewardCatalog,
        settings: WithdrawalSettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.store = store
        self.catalog = catalog
        self.settings = settings
        self._clock = clock

    def cooldown_days_remaining(self, user: User, now: Optional[datetime] = None) -> int:
        """Whole days (rounded up) before ``user`` may make a first withdrawal."""
        if user.first_withdrawal_at is not None:
            return 0
        now = now or self._clock()
        cooldown = timedelta(days=self.settings.first_withdrawal_cooldown_days)
        elapsed = now - as_utc(user.created_at)
        if elapsed >= cooldown:
            return 0
        return math.ceil((cooldown - elapsed) / timedelta(days=1))

    def request_withdrawal(
        self,
        user_id: str,
        reward_id: str,
        delivery_info: Optional[str] = None,
    ) -> WithdrawalReceipt:
        reward = self.catalog.get(reward_id)
        if reward is None:
            raise NotFound(f"Reward {reward_id} not found")
        if not reward.in_stock:
            raise OutOfStock(f"Reward {reward_id} is out of stock")

        now = self._clock()
        with self.database.session() as session:
            user = self.store.lock_user(session, user_id)

            days_remaining = self.cooldown_days_remaining(user, now)
            if days_remaining > 0:
                logger.info("Withdrawal refused for {}: {} day(s) of cool-down left", user_id, days_remaining)
                raise CooldownActive(days_remaining)

            if user.balance < reward.price:
                raise InsufficientBalance(required=reward.price, current=user.balance)

            entry = self.store.debit(
                session,
                user_id,
                reward.price,
                EntrySource.WITHDRAWAL,
                f"Redeemed: {reward.name}",
            )
            session.execute(
                update(User)
                .where(User.id == user_id)
                .values(
                    first_withdrawal_at=func.coalesce(
                        User.first_withdrawal_at, literal(now, DateTime(timezone=True))
                    )
                )
                .execution_options(synchronize_session=False)
            )
            withdrawal = Withdrawal(
                user_id=user_id,
                reward_id=reward.id,
                reward_name=reward.name,
                points_spent=reward.price,
                delivery_info=delivery_info,
                status=WithdrawalStatus.PENDING.value,
                ledger_entry_id=entry.id,
                created_at=now,
            )
            session.add(withdrawal)
            session.flush()
            new_balance = self.store.balance_of(session, user_id)

            logger.info(
                "Withdrawal {} queued: {} for {} ({} pts, balance now {})",
                withdrawal.id,
                reward.name,
                user_id,
                reward.price,
                new_balance,
            )
            return WithdrawalReceipt(
                withdrawal=WithdrawalRecord.model_validate(withdrawal),
                new_balance=new_balance,
                message="Withdrawal request submitted successfully!",
            )

    def list_withdrawals(self, user_id: str, limit: int = 50) -> list[WithdrawalRecord]:
        with self.database.session() as session:
            stmt = (
                select(Withdrawal)
                .where(Withdrawal.user_id == user_id)
                .order_by(Withdrawal.id.desc())
                .limit(max(1, min(limit, MAX_PAGE_SIZE)))
            )
            return [WithdrawalRecord.model_validate(w) for w in session.scalars(stmt)]

    def update_status(
        self,
        withdrawal_id: int,
        status: WithdrawalStatus,
        admin_notes: Optional[str] = None,
    ) -> WithdrawalRecord:
        now = self._clock()
        with self.database.session() as session:
            withdrawal = self._lock(session, withdrawal_id)
            current = WithdrawalStatus(withdrawal.status)
            if status not in TRANSITIONS.get(current, set()):
                raise InvalidStateTransition(
                    f"Cannot move withdrawal {withdrawal_id} from {current.value} to {status.value}"
                )

            if status is WithdrawalStatus.PROCESSING:
                withdrawal.processed_at = now
            elif status is WithdrawalStatus.COMPLETED:
                withdrawal.completed_at = now
            else:
                withdrawal.processed_at = withdrawal.processed_at or now
                self.store.credit(
                    session,
                    withdrawal.user_id,
                    withdrawal.points_spent,
                    EntrySource.WITHDRAWAL,
                    f"Refund ({status.value}): {withdrawal.reward_name}",
                    entry_id=f"withdrawal_refund:{withdrawal.id}",
                )

            withdrawal.status = status.value
            if admin_notes:
                withdrawal.admin_notes = admin_notes
            session.flush()

            logger.info("Withdrawal {}: {} -> {}", withdrawal_id, current.value, status.value)
            return WithdrawalRecord.model_validate(withdrawal)

    def _lock(self, session: Session, withdrawal_id: int) -> Withdrawal:
        stmt = select(Withdrawal).where(Withdrawal.id == withdrawal_id).with_for_update()
        withdrawal = session.scalars(stmt).one_or_none()
        if withdrawal is None:
            raise NotFound(f"Withdrawal {withdrawal_id} not found")
        return withdrawal


__all__ = ["TRANSITIONS", "WithdrawalGate"]
