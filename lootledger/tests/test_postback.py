"""
Tests for postback reconciliation: validation order, the 60/40 split and
exactly-once crediting of partner transaction ids.
"""

import threading
from decimal import Decimal

import pytest

from lootledger.config import PostbackSettings
from lootledger.errors import InvalidRequest, NotFound, Unauthorized
from lootledger.models import MAX_PAYOUT, PostbackStatus
from lootledger.service import LedgerService

from conftest import CATALOG, SECRET, make_settings


class TestValidationOrder:

    def test_bad_secret_is_checked_before_fields(self, service):
        """A wrong secret wins over missing fields."""
        with pytest.raises(Unauthorized):
            service.handle_postback({"secret": "nope"}, "203.0.113.7")

    def test_missing_secret_is_unauthorized(self, service, register):
        register("alice")
        with pytest.raises(Unauthorized):
            service.handle_postback(
                {"user_id": "alice", "payout": "1.00", "transaction_id": "tx"}, "203.0.113.7"
            )

    @pytest.mark.parametrize(
        "params",
        [
            {"payout": "1.00", "transaction_id": "tx"},
            {"user_id": "alice", "transaction_id": "tx"},
            {"user_id": "alice", "payout": "1.00"},
            {"user_id": "alice", "payout": "abc", "transaction_id": "tx"},
            {"user_id": "alice", "payout": "0", "transaction_id": "tx"},
            {"user_id": "alice", "payout": "-2.50", "transaction_id": "tx"},
            {"user_id": "alice", "payout": "NaN", "transaction_id": "tx"},
            {"user_id": "alice", "payout": "1e30", "transaction_id": "tx"},
            {"user_id": "alice", "payout": "99999999999999999999", "transaction_id": "tx"},
            {"user_id": "alice", "payout": "1000000.01", "transaction_id": "tx"},
            {"user_id": " ", "payout": "1.00", "transaction_id": "tx"},
        ],
    )
    def test_malformed_request(self, service, register, params):
        register("alice")
        with pytest.raises(InvalidRequest):
            service.handle_postback({**params, "secret": SECRET}, "203.0.113.7")

    def test_largest_payout_is_accepted(self, register, postback, balance):
        register("alice")
        result = postback("alice", str(MAX_PAYOUT), "tx-max")
        assert result.points_credited == 600_000_000
        assert balance("alice") == 600_000_050

    def test_payout_too_small_for_a_point(self, service, register, postback):
        register("alice")
        with pytest.raises(InvalidRequest):
            postback("alice", "0.001", "tx-tiny")

    def test_invalid_fields_checked_before_allowlist(self, tmp_path, clock):
        settings = make_settings(
            tmp_path, postback=PostbackSettings(secret=SECRET, ip_allowlist=["10.0.0.1"])
        )
        svc = LedgerService(settings, catalog=CATALOG, clock=clock)
        svc.init_schema()
        try:
            with pytest.raises(InvalidRequest):
                svc.handle_postback({"secret": SECRET}, "203.0.113.7")
            with pytest.raises(Unauthorized):
                svc.handle_postback(
                    {"secret": SECRET, "user_id": "u", "payout": "1", "transaction_id": "t"},
                    "203.0.113.7",
                )
        finally:
            svc.close()

    def test_allowlisted_address_passes(self, tmp_path, clock):
        settings = make_settings(
            tmp_path, postback=PostbackSettings(secret=SECRET, ip_allowlist=["10.0.0.1"])
        )
        svc = LedgerService(settings, catalog=CATALOG, clock=clock)
        svc.init_schema()
        try:
            svc.accounts.register("alice", "198.51.100.1")
            result = svc.handle_postback(
                {"secret": SECRET, "user_id": "alice", "payout": "1", "transaction_id": "t"},
                "10.0.0.1",
            )
            assert result.status is PostbackStatus.OK
        finally:
            svc.close()

    def test_unknown_user(self, postback):
        with pytest.raises(NotFound):
            postback("ghost", "2.00", "tx-ghost")

    def test_unconfigured_secret_fails_closed(self, tmp_path, clock):
        settings = make_settings(tmp_path, postback=PostbackSettings())
        svc = LedgerService(settings, catalog=CATALOG, clock=clock)
        svc.init_schema()
        try:
            with pytest.raises(Unauthorized):
                svc.handle_postback({"secret": ""}, "203.0.113.7")
        finally:
            svc.close()


class TestCreditComputation:

    @pytest.mark.parametrize(
        "payout, expected_user, expected_platform",
        [
            ("2.00", 1200, 800),
            ("0.01", 6, 4),
            ("1.2345", 740, 493),
            ("0.0025", 1, 1),
        ],
    )
    def test_split(self, service, payout, expected_user, expected_platform):
        assert service.postbacks.split(Decimal(payout)) == (expected_user, expected_platform)

    def test_signup_then_postback_then_replay(self, service, register, postback, balance):
        """Signup bonus 50 + floor(2.00 * 1000 * 0.6) = 1250, replay changes nothing."""
        register("alice")
        assert balance("alice") == 50

        result = postback("alice", "2.00", "tx1", offer_name="Install game")
        assert result.status is PostbackStatus.OK
        assert result.points_credited == 1200
        assert result.platform_points == 800
        assert balance("alice") == 1250

        replay = postback("alice", "2.00", "tx1")
        assert replay.status is PostbackStatus.ALREADY_PROCESSED
        assert replay.already_processed
        assert replay.points_credited == 0
        assert balance("alice") == 1250

        history = service.accounts.transactions("alice")
        assert history.pagination.total == 2
        offer = history.entries[0]
        assert offer.id == "tx1"
        assert offer.offer_name == "Install game"
        assert offer.ip_address == "203.0.113.7"

    def test_replay_with_different_payout_is_still_a_duplicate(self, register, postback, balance):
        register("alice")
        postback("alice", "1.00", "tx-same")
        replay = postback("alice", "9.00", "tx-same")
        assert replay.already_processed
        assert balance("alice") == 650

    def test_failed_referral_step_rolls_back_credit(self, service, register, postback, balance, monkeypatch):
        register("alice")

        def boom(*args, **kwargs):
            raise RuntimeError("referral store down")

        monkeypatch.setattr(service.referrals, "on_earnings_credited", boom)
        with pytest.raises(RuntimeError):
            postback("alice", "2.00", "tx-boom")

        assert balance("alice") == 50
        with service.database.session() as session:
            assert not service.store.guard.is_claimed(session, "tx-boom")

        monkeypatch.undo()
        assert postback("alice", "2.00", "tx-boom").status is PostbackStatus.OK
        assert balance("alice") == 1250


class TestConcurrentDelivery:

    def test_concurrent_replays_credit_once(self, service, register, postback, balance):
        register("alice")
        results, errors = [], []
        barrier = threading.Barrier(8)

        def deliver():
            barrier.wait()
            try:
                results.append(postback("alice", "1.00", "tx-race"))
            except Exception as exc:  # pragma: no cover - surfaced by the assert below
                errors.append(exc)

        threads = [threading.Thread(target=deliver) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        statuses = [r.status for r in results]
        assert statuses.count(PostbackStatus.OK) == 1
        assert statuses.count(PostbackStatus.ALREADY_PROCESSED) == 7
        assert balance("alice") == 650

        with service.database.session() as session:
            assert service.store.ledger_sum(session, "alice") == 650


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
