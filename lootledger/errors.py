from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_REQUEST = "INVALID_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class LedgerServiceError(Exception):
    """Expected, caller-recoverable failure carrying a stable code."""

    code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "code": self.code.value, "error": self.message, **self.details}


class Unauthorized(LedgerServiceError):
    code = ErrorCode.UNAUTHORIZED


class InvalidRequest(LedgerServiceError):
    code = ErrorCode.INVALID_REQUEST


class NotFound(LedgerServiceError):
    code = ErrorCode.NOT_FOUND


class InsufficientBalance(LedgerServiceError):
    code = ErrorCode.INSUFFICIENT_BALANCE

    def __init__(self, required: int, current: int):
        super().__init__("Insufficient balance", required=required, current=current)
        self.required = required
        self.current = current


class OutOfStock(LedgerServiceError):
    code = ErrorCode.OUT_OF_STOCK


class CooldownActive(LedgerServiceError):
    code = ErrorCode.COOLDOWN_ACTIVE

    def __init__(self, days_remaining: int):
        super().__init__(
            f"First withdrawal requires a waiting period. {days_remaining} day(s) remaining.",
            days_remaining=days_remaining,
        )
        self.days_remaining = days_remaining


class InvalidStateTransition(LedgerServiceError):
    code = ErrorCode.INVALID_STATE_TRANSITION


__all__ = [
    "CooldownActive",
    "ErrorCode",
    "InsufficientBalance",
    "InvalidRequest",
    "InvalidStateTransition",
    "LedgerServiceError",
    "NotFound",
    "OutOfStock",
    "Unauthorized",
]
