"""Exactly-once claims on external transaction identifiers.

There is no separate claims table: a ledger entry keyed by the external id is
the claim. Inserting it under the unique constraint on ``transactions.id`` is
the single atomic check-and-record step, so concurrent deliveries of the same
id cannot both succeed.
"""

from __future__ import annotations

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import ClaimResult
from .schema import Transaction


class IdempotencyGuard:
    def claim(self, session: Session, entry: Transaction) -> ClaimResult:
        """Insert ``entry`` unless its id has been seen before.

        Runs in a savepoint so a duplicate leaves the surrounding transaction
        usable. Integrity errors that are not about the id are re-raised.
        """
        try:
            with session.begin_nested():
                session.add(entry)
        except IntegrityError:
            if not self.is_claimed(session, entry.id):
                raise
            logger.info("Entry id {} already claimed", entry.id)
            return ClaimResult.DUPLICATE
        return ClaimResult.FRESH

    def is_claimed(self, session: Session, external_id: str) -> bool:
        stmt = select(Transaction.seq).where(Transaction.id == external_id)
        return session.scalar(stmt) is not None


__all__ = ["IdempotencyGuard"]
