"""Runtime configuration for the LootLedger points ledger.

Settings are grouped by concern (economy, referral program, withdrawals,
postback authentication, storage) and loaded from environment variables with
the ``LOOTLEDGER_`` prefix, e.g. ``LOOTLEDGER_POSTBACK__SECRET``. Every group is
frozen: configuration is read once at start-up and never mutated afterwards.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_CATALOG_PATH = PACKAGE_DIR / "data" / "rewards.json"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class EconomySettings(_Frozen):
    """Conversion from partner payouts (currency units) to points."""

    points_per_currency_unit: PositiveInt = 1000
    user_split: Decimal = Field(Decimal("0.60"), gt=0, le=1)
    signup_bonus: int = Field(50, ge=0)


class ReferralSettings(_Frozen):
    unlock_bonus: int = Field(50, ge=0)
    unlock_threshold: PositiveInt = 500
    commission_rate: Decimal = Field(Decimal("0.05"), ge=0, lt=1)
    code_prefix: str = "lq-"
    share_url: str = "https://loot-quest.fr/?ref="


class WithdrawalSettings(_Frozen):
    first_withdrawal_cooldown_days: int = Field(7, ge=0)


class PostbackSettings(_Frozen):
    """Shared-secret and optional address allow-list for partner callbacks."""

    secret: Optional[SecretStr] = None
    ip_allowlist: list[str] = Field(default_factory=list)


class DatabaseSettings(_Frozen):
    url: str = "sqlite:///./lootledger.db"
    echo: bool = False


class CatalogSettings(_Frozen):
    path: Path = DEFAULT_CATALOG_PATH


class AdminSettings(_Frozen):
    token: Optional[SecretStr] = None


class LoggingSettings(_Frozen):
    level: str = "INFO"
    json_logs: bool = False
    configure: bool = True


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="LOOTLEDGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        frozen=True,
    )

    economy: EconomySettings = EconomySettings()
    referral: ReferralSettings = ReferralSettings()
    withdrawal: WithdrawalSettings = WithdrawalSettings()
    postback: PostbackSettings = PostbackSettings()
    database: DatabaseSettings = DatabaseSettings()
    catalog: CatalogSettings = CatalogSettings()
    admin: AdminSettings = AdminSettings()
    logging: LoggingSettings = LoggingSettings()


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, reading the environment on first use."""

    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


__all__ = [
    "AdminSettings",
    "CatalogSettings",
    "DatabaseSettings",
    "EconomySettings",
    "LoggingSettings",
    "PostbackSettings",
    "ReferralSettings",
    "Settings",
    "WithdrawalSettings",
    "get_settings",
]
