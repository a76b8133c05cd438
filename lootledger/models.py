from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Upper bound for a single offer payout, in currency units.
MAX_PAYOUT = Decimal("1000000")


class Direction(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class EntrySource(str, Enum):
    SIGNUP_BONUS = "signup_bonus"
    LOOTABLY = "lootably"
    REFERRAL_BONUS = "referral_bonus"
    REFERRAL_COMMISSION = "referral_commission"
    WITHDRAWAL = "withdrawal"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ClaimResult(str, Enum):
    FRESH = "fresh"
    DUPLICATE = "duplicate"


class PostbackStatus(str, Enum):
    OK = "OK"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"


class PostbackRequest(BaseModel):
    """Offer-completion callback, validated before any ledger code sees it."""

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    user_id: str = Field(..., min_length=1, max_length=128)
    payout: Decimal = Field(
        ..., gt=0, le=MAX_PAYOUT, description="Partner payout in currency units"
    )
    transaction_id: str = Field(..., min_length=1, max_length=191)
    offer_name: Optional[str] = Field(default=None, max_length=255)

    @field_validator("offer_name", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class PostbackResult(BaseModel):
    status: PostbackStatus
    transaction_id: str
    user_id: str
    points_credited: int = 0
    platform_points: int = 0

    @property
    def already_processed(self) -> bool:
        return self.status == PostbackStatus.ALREADY_PROCESSED


class LedgerEntry(BaseModel):
    id: str
    user_id: str
    amount: int
    direction: Direction
    source: EntrySource
    offer_name: Optional[str] = None
    description: str
    ip_address: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Pagination(BaseModel):
    limit: int
    offset: int
    total: int
    has_more: bool


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: list[LedgerEntry]
    pagination: Pagination
    current_balance: int


class UserAccount(BaseModel):
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    balance: int
    total_earned: int
    total_withdrawn: int
    lifetime_earnings: int
    created_at: datetime
    first_withdrawal_at: Optional[datetime] = None
    referral_code: Optional[str] = None
    referred_by_user_id: Optional[str] = None
    referral_unlocked: bool = False

    model_config = ConfigDict(from_attributes=True)


class UserBalance(BaseModel):
    user_id: str
    balance: int
    total_earned: int
    total_withdrawn: int
    can_withdraw: bool
    days_remaining: int
    first_withdrawal_at: Optional[datetime] = None


class RegisterRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=255)
    display_name: Optional[str] = Field(default=None, max_length=128)
    referral_code: Optional[str] = Field(default=None, alias="refCode", max_length=32)

    model_config = ConfigDict(populate_by_name=True)


class ApplyReferralRequest(BaseModel):
    referral_code: str = Field(..., alias="refCode", min_length=1, max_length=32)

    model_config = ConfigDict(populate_by_name=True)


class ReferralStats(BaseModel):
    total_referred: int
    unlocked_referred: int
    pending_referred: int
    total_earned: int


class ReferralProgram(BaseModel):
    bonus_amount: int
    threshold: int
    commission_rate: str


class ReferralInfo(BaseModel):
    code: str
    share_url: str
    referred_by_user_id: Optional[str] = None
    stats: ReferralStats
    program: ReferralProgram


class RewardItem(BaseModel):
    id: str
    name: str
    price: int = Field(..., gt=0)
    # None means unlimited stock.
    stock: Optional[int] = None
    category: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None

    model_config = ConfigDict(frozen=True, extra="ignore")

    @property
    def in_stock(self) -> bool:
        return self.stock is None or self.stock > 0


class WithdrawalRequest(BaseModel):
    reward_id: str = Field(..., alias="rewardId", min_length=1, max_length=64)
    delivery_info: Optional[str] = Field(default=None, alias="deliveryInfo", max_length=1000)

    model_config = ConfigDict(populate_by_name=True)


class WithdrawalRecord(BaseModel):
    id: int
    user_id: str
    reward_id: str
    reward_name: str
    points_spent: int
    delivery_info: Optional[str] = None
    status: WithdrawalStatus
    admin_notes: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class WithdrawalReceipt(BaseModel):
    withdrawal: WithdrawalRecord
    new_balance: int
    message: str


class WithdrawalStatusUpdate(BaseModel):
    status: WithdrawalStatus
    admin_notes: Optional[str] = Field(default=None, max_length=1000)


class PlatformStats(BaseModel):
    total_users: int
    total_transactions: int
    total_points_awarded: int
    total_points_redeemed: int
    pending_withdrawals: int
