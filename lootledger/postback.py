"""Offer-completion postbacks from the advertising network.

Partners retry on timeouts and on any non-2xx answer, so a replayed
``transaction_id`` is the normal case: it is answered as a success and
nothing is written.
"""

from __future__ import annotations

import math
import secrets
from decimal import Decimal
from typing import Any, Mapping, Optional

from loguru import logger
from pydantic import ValidationError
from sqlalchemy.orm import Session

from .config import EconomySettings, PostbackSettings
from .database import Database
from .errors import InvalidRequest, LedgerServiceError, Unauthorized
from .models import EntrySource, PostbackRequest, PostbackResult, PostbackStatus
from .referral import ReferralEngine
from .store import LedgerStore


class PostbackReconciler:
    def __init__(
        self,
        database: Database,
        store: LedgerStore,
        referrals: ReferralEngine,
        economy: EconomySettings,
        postback: PostbackSettings,
    ):
        self.database = database
        self.store = store
        self.referrals = referrals
        self.economy = economy
        self.postback = postback

    def split(self, payout: Decimal) -> tuple[int, int]:
        """Return (user points, platform points) for a payout in currency units."""
        gross = payout * self.economy.points_per_currency_unit
        user_points = math.floor(gross * self.economy.user_split)
        platform_points = math.floor(gross * (1 - self.economy.user_split))
        return user_points, platform_points

    def reconcile(self, params: Mapping[str, Any], origin_address: Optional[str]) -> PostbackResult:
        self._check_secret(params.get("secret"), origin_address)
        request = self._parse(params)
        self._check_address(origin_address)

        points, platform_points = self.split(request.payout)
        if points <= 0:
            logger.warning("Postback rejected: payout {} too small to credit", request.payout)
            raise InvalidRequest("Payout too small to credit any points")

        try:
            with self.database.session() as session:
                return self._apply(session, request, points, platform_points, origin_address)
        except LedgerServiceError:
            raise
        except Exception:
            logger.exception(
                "Postback {} for {} failed, nothing committed",
                request.transaction_id,
                request.user_id,
            )
            raise

    def _apply(
        self,
        session: Session,
        request: PostbackRequest,
        points: int,
        platform_points: int,
        origin_address: Optional[str],
    ) -> PostbackResult:
        entry = self.store.credit(
            session,
            request.user_id,
            points,
            EntrySource.LOOTABLY,
            f"Earned {points} pts from ${request.payout:.2f} offer "
            f"({round(self.economy.user_split * 100)}% split)",
            entry_id=request.transaction_id,
            origin_address=origin_address,
            offer_name=request.offer_name or "Lootably Offer",
        )
        if entry is None:
            logger.info("Postback skipped: duplicate tx {} from {}", request.transaction_id, origin_address)
            return PostbackResult(
                status=PostbackStatus.ALREADY_PROCESSED,
                transaction_id=request.transaction_id,
                user_id=request.user_id,
            )

        self.referrals.on_earnings_credited(session, request.user_id, points, entry.id)

        logger.info(
            "Postback OK: user={} payout={} credited={} platform={} tx={} offer={}",
            request.user_id,
            request.payout,
            points,
            platform_points,
            request.transaction_id,
            request.offer_name or "N/A",
        )
        return PostbackResult(
            status=PostbackStatus.OK,
            transaction_id=request.transaction_id,
            user_id=request.user_id,
            points_credited=points,
            platform_points=platform_points,
        )

    def _check_secret(self, supplied: Any, origin_address: Optional[str]) -> None:
        expected = self.postback.secret
        if expected is None:
            logger.error("Postback rejected: no postback secret configured")
            raise Unauthorized("Invalid secret key")
        if not isinstance(supplied, str) or not secrets.compare_digest(
            supplied.encode("utf-8"), expected.get_secret_value().encode("utf-8")
        ):
            logger.warning("Postback rejected: invalid secret from {}", origin_address)
            raise Unauthorized("Invalid secret key")

    def _parse(self, params: Mapping[str, Any]) -> PostbackRequest:
        fields = {name: params.get(name) for name in PostbackRequest.model_fields}
        try:
            return PostbackRequest.model_validate(fields)
        except ValidationError as exc:
            problems = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
            logger.warning("Postback rejected: invalid fields {}", problems)
            raise InvalidRequest("Missing or invalid parameters", fields=problems) from exc

    def _check_address(self, origin_address: Optional[str]) -> None:
        allowlist = self.postback.ip_allowlist
        if allowlist and origin_address not in allowlist:
            logger.warning("Postback rejected: address {} not allowed", origin_address)
            raise Unauthorized("IP not authorized")


__all__ = ["PostbackReconciler"]
