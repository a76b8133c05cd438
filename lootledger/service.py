from datetime import datetime
from typing import Any, Callable, Mapping, Optional

from .accounts import AccountService
from .catalog import RewardCatalog
from .config import Settings, get_settings
from .database import Database
from .idempotency import IdempotencyGuard
from .models import (
    PostbackResult,
    ReferralInfo,
    WithdrawalReceipt,
    WithdrawalRecord,
    WithdrawalStatus,
)
from .postback import PostbackReconciler
from .referral import ReferralEngine
from .schema import utcnow
from .store import LedgerStore
from .withdrawal import WithdrawalGate


class LedgerService:
    """Wires the ledger components around one database and one settings value."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        catalog: Optional[RewardCatalog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.database = Database(self.settings.database)
        self.catalog = catalog or RewardCatalog.from_file(self.settings.catalog.path)

        self.store = LedgerStore(IdempotencyGuard(), clock)
        self.referrals = ReferralEngine(self.store, self.settings.referral)
        self.withdrawals = WithdrawalGate(
            self.database, self.store, self.catalog, self.settings.withdrawal, clock
        )
        self.postbacks = PostbackReconciler(
            self.database,
            self.store,
            self.referrals,
            self.settings.economy,
            self.settings.postback,
        )
        self.accounts = AccountService(
            self.database,
            self.store,
            self.referrals,
            self.withdrawals,
            self.settings.economy,
            clock,
        )

    def init_schema(self) -> None:
        self.database.create_all()

    def close(self) -> None:
        self.database.dispose()

    def handle_postback(self, params: Mapping[str, Any], origin_address: Optional[str]) -> PostbackResult:
        return self.postbacks.reconcile(params, origin_address)

    def request_withdrawal(
        self,
        user_id: str,
        reward_id: str,
        delivery_info: Optional[str] = None,
    ) -> WithdrawalReceipt:
        return self.withdrawals.request_withdrawal(user_id, reward_id, delivery_info)

    def update_withdrawal_status(
        self,
        withdrawal_id: int,
        status: WithdrawalStatus,
        admin_notes: Optional[str] = None,
    ) -> WithdrawalRecord:
        return self.withdrawals.update_status(withdrawal_id, status, admin_notes)

    def apply_referral(self, user_id: str, code: str, origin_address: Optional[str]) -> Optional[str]:
        """Link ``user_id`` to the owner of ``code``; returns the referrer's display name."""
        with self.database.session() as session:
            referrer = self.referrals.apply_referral(session, user_id, code, origin_address)
            return referrer.display_name

    def referral_info(self, user_id: str) -> ReferralInfo:
        with self.database.session() as session:
            return self.referrals.referral_info(session, user_id)


__all__ = ["LedgerService"]
