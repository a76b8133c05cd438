"""Referral program: link creation, unlock bonus and lifetime commission.

A referred user's earnings feed two payouts to their referrer:

* a one-time unlock bonus once the referred user's lifetime earnings reach the
  configured threshold;
* a commission on every credited amount, unlocked or not.

Both are paid through :class:`LedgerStore.credit`, so every point movement is
an ordinary ledger entry.
"""

from __future__ import annotations

import hashlib
import math
from typing import Optional
from uuid import uuid4

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .config import ReferralSettings
from .errors import InvalidRequest, NotFound
from .models import EntrySource, ReferralInfo, ReferralProgram, ReferralStats
from .schema import Transaction, User
from .store import LedgerStore


def generate_referral_code(user_id: str, prefix: str = "lq-") -> str:
    digest = hashlib.md5(f"{user_id}{uuid4().hex}".encode("utf-8")).hexdigest()
    return f"{prefix}{digest[:8]}"


class ReferralEngine:
    def __init__(self, store: LedgerStore, settings: ReferralSettings):
        self.store = store
        self.settings = settings

    # ------------------------------------------------------------------
    #   Earnings side effects
    # ------------------------------------------------------------------
    def on_earnings_credited(
        self,
        session: Session,
        user_id: str,
        points: int,
        source_entry_id: str,
    ) -> int:
        """Apply referral payouts for ``points`` just credited to ``user_id``.

        Must run in the same transaction as the triggering credit. Returns the
        total number of points paid to the referrer. ``lifetime_earnings``
        grows for every user, so earnings made before a referrer is applied
        still count toward the unlock.
        """
        session.execute(
            update(User)
            .where(User.id == user_id)
            .values(lifetime_earnings=User.lifetime_earnings + points)
        )

        referrer_id = session.scalar(select(User.referred_by_user_id).where(User.id == user_id))
        if referrer_id is None:
            return 0

        paid = 0
        # The flag flips in the same statement that checks it, so concurrent
        # postbacks for one user cannot both see it unset.
        unlocked = session.execute(
            update(User)
            .where(
                User.id == user_id,
                User.referral_unlocked.is_(False),
                User.lifetime_earnings >= self.settings.unlock_threshold,
            )
            .values(referral_unlocked=True)
        )
        if unlocked.rowcount == 1 and self.settings.unlock_bonus > 0:
            entry = self.store.credit(
                session,
                referrer_id,
                self.settings.unlock_bonus,
                EntrySource.REFERRAL_BONUS,
                f"Referral unlocked! (User {user_id[:8]}...)",
                entry_id=f"referral_bonus:{user_id}",
            )
            if entry is not None:
                paid += entry.amount
                logger.info(
                    "Referral unlocked: {} pts bonus to {} for {}",
                    entry.amount,
                    referrer_id,
                    user_id,
                )

        commission = math.floor(points * self.settings.commission_rate)
        if commission > 0:
            entry = self.store.credit(
                session,
                referrer_id,
                commission,
                EntrySource.REFERRAL_COMMISSION,
                f"{self.commission_percent} commission from referral",
                entry_id=f"referral_commission:{source_entry_id}",
            )
            if entry is not None:
                paid += entry.amount
                logger.info(
                    "Commission: {} pts ({} of {}) to {}",
                    commission,
                    self.commission_percent,
                    points,
                    referrer_id,
                )
        return paid

    # ------------------------------------------------------------------
    #   Link creation
    # ------------------------------------------------------------------
    def resolve_referrer_for_signup(
        self,
        session: Session,
        code: Optional[str],
        origin_address: Optional[str],
    ) -> Optional[str]:
        """Referrer id for a code presented at signup, or None.

        Unknown codes and same-address referrals are ignored so that signup
        itself never fails because of a bad code.
        """
        if not code:
            return None
        referrer = self._find_by_code(session, code)
        if referrer is None:
            logger.info("Invalid referral code at signup: {}", code)
            return None
        if origin_address and referrer.ip_address == origin_address:
            logger.warning(
                "Fraud blocked: same-address referral from {} (referrer {})",
                origin_address,
                referrer.id,
            )
            return None
        return referrer.id

    def apply_referral(
        self,
        session: Session,
        user_id: str,
        code: str,
        origin_address: Optional[str],
    ) -> User:
        """Attach a referrer to an existing user. Returns the referrer."""
        user = self.store.lock_user(session, user_id)
        if user.referred_by_user_id is not None:
            raise InvalidRequest("A referrer is already set for this account")

        referrer = self._find_by_code(session, code)
        if referrer is None:
            raise NotFound("Invalid referral code")
        if referrer.id == user.id:
            raise InvalidRequest("You cannot use your own referral code")
        user_addresses = {address for address in (origin_address, user.ip_address) if address}
        if referrer.ip_address and referrer.ip_address in user_addresses:
            logger.warning(
                "Fraud blocked (post-signup): same address {} for {} and referrer {}",
                referrer.ip_address,
                user_id,
                referrer.id,
            )
            raise InvalidRequest("Invalid referral code")
        if self._is_ancestor(session, candidate=user.id, of=referrer.id):
            raise InvalidRequest("Invalid referral code")

        # Set-once: the WHERE clause keeps a concurrent apply from overwriting.
        result = session.execute(
            update(User)
            .where(User.id == user_id, User.referred_by_user_id.is_(None))
            .values(referred_by_user_id=referrer.id)
        )
        if result.rowcount != 1:
            raise InvalidRequest("A referrer is already set for this account")

        logger.info("Referral applied: {} now referred by {}", user_id, referrer.id)
        return referrer

    def referral_code_for(self, session: Session, user_id: str) -> str:
        """Return the user's referral code, generating it on first use."""
        user = session.get(User, user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        if user.referral_code:
            return user.referral_code
        code = generate_referral_code(user_id, self.settings.code_prefix)
        session.execute(
            update(User)
            .where(User.id == user_id, User.referral_code.is_(None))
            .values(referral_code=code)
        )
        session.refresh(user)
        logger.info("Generated referral code for {}: {}", user_id, user.referral_code)
        return user.referral_code

    def referral_info(self, session: Session, user_id: str) -> ReferralInfo:
        code = self.referral_code_for(session, user_id)
        user = session.get(User, user_id)

        total = session.scalar(
            select(func.count()).select_from(User).where(User.referred_by_user_id == user_id)
        ) or 0
        unlocked = session.scalar(
            select(func.count())
            .select_from(User)
            .where(User.referred_by_user_id == user_id, User.referral_unlocked.is_(True))
        ) or 0
        earned = session.scalar(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.user_id == user_id,
                Transaction.source.in_(
                    [EntrySource.REFERRAL_BONUS.value, EntrySource.REFERRAL_COMMISSION.value]
                ),
            )
        ) or 0

        return ReferralInfo(
            code=code,
            share_url=f"{self.settings.share_url}{code}",
            referred_by_user_id=user.referred_by_user_id,
            stats=ReferralStats(
                total_referred=total,
                unlocked_referred=unlocked,
                pending_referred=max(0, total - unlocked),
                total_earned=int(earned),
            ),
            program=ReferralProgram(
                bonus_amount=self.settings.unlock_bonus,
                threshold=self.settings.unlock_threshold,
                commission_rate=self.commission_percent,
            ),
        )

    @property
    def commission_percent(self) -> str:
        return f"{round(self.settings.commission_rate * 100)}%"

    def _find_by_code(self, session: Session, code: str) -> Optional[User]:
        return session.scalars(select(User).where(User.referral_code == code.strip())).one_or_none()

    def _is_ancestor(self, session: Session, candidate: str, of: str) -> bool:
        """True if ``candidate`` is ``of`` or appears in its referrer chain."""
        seen = set()
        current: Optional[str] = of
        while current is not None and current not in seen:
            if current == candidate:
                return True
            seen.add(current)
            current = session.scalar(select(User.referred_by_user_id).where(User.id == current))
        return False


__all__ = ["ReferralEngine", "generate_referral_code"]
