from datetime import datetime, timedelta, timezone

import pytest

from lootledger.catalog import RewardCatalog
from lootledger.config import DatabaseSettings, LoggingSettings, PostbackSettings, Settings
from lootledger.models import RewardItem
from lootledger.service import LedgerService

SECRET = "test-secret"
T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


CATALOG = RewardCatalog([
    RewardItem(id="paypal-1", name="PayPal 1 EUR", price=1000, category="cash"),
    RewardItem(id="steam-20", name="Steam Wallet 20 EUR", price=20000, stock=5, category="giftcard"),
    RewardItem(id="sold-out", name="1000 V-Bucks", price=500, stock=0, category="gaming"),
])


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "database": DatabaseSettings(url=f"sqlite:///{tmp_path / 'ledger.db'}"),
        "postback": PostbackSettings(secret=SECRET),
        "logging": LoggingSettings(configure=False),
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def service(settings, clock):
    svc = LedgerService(settings, catalog=CATALOG, clock=clock)
    svc.init_schema()
    yield svc
    svc.close()


@pytest.fixture
def register(service):
    def _register(user_id, origin="198.51.100.1", referral_code=None):
        account, _ = service.accounts.register(user_id, origin, referral_code=referral_code)
        return account
    return _register


@pytest.fixture
def postback(service):
    def _postback(user_id, payout, tx, origin="203.0.113.7", **extra):
        params = {
            "user_id": user_id,
            "payout": payout,
            "transaction_id": tx,
            "secret": SECRET,
            **extra,
        }
        return service.handle_postback(params, origin)
    return _postback


@pytest.fixture
def balance(service):
    def _balance(user_id):
        with service.database.session() as session:
            return service.store.balance_of(session, user_id)
    return _balance
