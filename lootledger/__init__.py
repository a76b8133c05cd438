"""
Points ledger and postback reconciliation for a rewards platform

This package provides:
- Append-only ledger with a derived, never-negative balance
- Exactly-once crediting of partner postbacks keyed by transaction id
- 60/40 payout split between user and platform
- Referral unlock bonus and lifetime commission
- Withdrawals gated by a first-withdrawal cool-down and balance checks
"""

from .errors import (
    CooldownActive,
    ErrorCode,
    InsufficientBalance,
    InvalidRequest,
    LedgerServiceError,
    NotFound,
    OutOfStock,
    Unauthorized,
)
from .models import (
    ClaimResult,
    EntrySource,
    PostbackResult,
    PostbackStatus,
    WithdrawalStatus,
)
from .service import LedgerService

__all__ = [
    "ClaimResult",
    "CooldownActive",
    "EntrySource",
    "ErrorCode",
    "InsufficientBalance",
    "InvalidRequest",
    "LedgerService",
    "LedgerServiceError",
    "NotFound",
    "OutOfStock",
    "PostbackResult",
    "PostbackStatus",
    "Unauthorized",
    "WithdrawalStatus",
]
