from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from .config import EconomySettings
from .database import Database
from .errors import NotFound
from .models import (
    Direction,
    EntrySource,
    LedgerEntry,
    LedgerHistoryResponse,
    Pagination,
    PlatformStats,
    UserAccount,
    UserBalance,
    WithdrawalStatus,
)
from .referral import ReferralEngine, generate_referral_code
from .schema import Transaction, User, Withdrawal, utcnow
from .store import MAX_PAGE_SIZE, LedgerStore
from .withdrawal import WithdrawalGate


class AccountService:
    """Account lifecycle and read-side queries over the ledger."""

    def __init__(
        self,
        database: Database,
        store: LedgerStore,
        referrals: ReferralEngine,
        withdrawals: WithdrawalGate,
        economy: EconomySettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.store = store
        self.referrals = referrals
        self.withdrawals = withdrawals
        self.economy = economy
        self._clock = clock

    def register(
        self,
        user_id: str,
        origin_address: Optional[str] = None,
        *,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
        referral_code: Optional[str] = None,
    ) -> tuple[UserAccount, bool]:
        """Create the account for a verified identity.

        Returns ``(account, created)``. Registering an existing id returns the
        stored account untouched, so the referrer can only be set here once.
        """
        try:
            with self.database.session() as session:
                existing = session.get(User, user_id)
                if existing is not None:
                    return UserAccount.model_validate(existing), False

                referrer_id = self.referrals.resolve_referrer_for_signup(
                    session, referral_code, origin_address
                )
                user = User(
                    id=user_id,
                    email=email.lower() if email else None,
                    display_name=display_name,
                    ip_address=origin_address,
                    referral_code=generate_referral_code(
                        user_id, self.referrals.settings.code_prefix
                    ),
                    referred_by_user_id=referrer_id,
                    created_at=self._clock(),
                )
                session.add(user)
                session.flush()

                if self.economy.signup_bonus > 0:
                    self.store.credit(
                        session,
                        user_id,
                        self.economy.signup_bonus,
                        EntrySource.SIGNUP_BONUS,
                        "Welcome bonus!",
                        entry_id=f"signup_bonus:{user_id}",
                    )
                session.refresh(user)
                logger.info(
                    "New user {} (+{} pts) | referrer: {}",
                    user_id,
                    self.economy.signup_bonus,
                    referrer_id or "none",
                )
                return UserAccount.model_validate(user), True
        except IntegrityError:
            # Lost a race with a concurrent registration of the same id.
            with self.database.session() as session:
                existing = session.get(User, user_id)
                if existing is None:
                    raise
                return UserAccount.model_validate(existing), False

    def get_account(self, user_id: str) -> UserAccount:
        with self.database.session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            return UserAccount.model_validate(user)

    def balance_summary(self, user_id: str) -> UserBalance:
        with self.database.session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found")
            days_remaining = self.withdrawals.cooldown_days_remaining(user, self._clock())
            return UserBalance(
                user_id=user.id,
                balance=user.balance,
                total_earned=user.total_earned,
                total_withdrawn=user.total_withdrawn,
                can_withdraw=days_remaining == 0,
                days_remaining=days_remaining,
                first_withdrawal_at=user.first_withdrawal_at,
            )

    def transactions(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.database.session() as session:
            balance = self.store.balance_of(session, user_id)
            entries, total = self.store.history(session, user_id, limit, offset)
            # history() clamps; report what was actually applied
            limit = max(1, min(limit, MAX_PAGE_SIZE))
            offset = max(0, offset)
            return LedgerHistoryResponse(
                user_id=user_id,
                entries=[LedgerEntry.model_validate(e) for e in entries],
                pagination=Pagination(
                    limit=limit,
                    offset=offset,
                    total=total,
                    has_more=offset + len(entries) < total,
                ),
                current_balance=balance,
            )

    def platform_stats(self) -> PlatformStats:
        with self.database.session() as session:
            total_users = session.scalar(select(func.count()).select_from(User))
            total_transactions = session.scalar(select(func.count()).select_from(Transaction))
            awarded = session.scalar(
                select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                    Transaction.direction == Direction.CREDIT.value,
                    Transaction.source != EntrySource.WITHDRAWAL.value,
                )
            )
            redeemed = session.scalar(
                select(func.coalesce(func.sum(Withdrawal.points_spent), 0)).where(
                    Withdrawal.status.not_in(
                        [WithdrawalStatus.CANCELLED.value, WithdrawalStatus.FAILED.value]
                    )
                )
            )
            pending = session.scalar(
                select(func.count())
                .select_from(Withdrawal)
                .where(Withdrawal.status == WithdrawalStatus.PENDING.value)
            )
            return PlatformStats(
                total_users=total_users or 0,
                total_transactions=total_transactions or 0,
                total_points_awarded=int(awarded or 0),
                total_points_redeemed=int(redeemed or 0),
                pending_withdrawals=pending or 0,
            )


__all__ = ["AccountService"]
