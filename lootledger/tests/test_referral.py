"""
Tests for the referral program.

Tests cover:
1. One-time unlock bonus at the earnings threshold
2. Lifetime commission on every credit
3. Unlock exactly once under concurrent postbacks
4. Link creation rules (signup and post-signup apply)
"""

import threading

import pytest
from sqlalchemy import update

from lootledger.errors import InvalidRequest, NotFound
from lootledger.models import EntrySource
from lootledger.schema import User


@pytest.fixture
def referred_pair(service, register):
    """alice refers bob through bob's signup."""
    alice = register("alice", origin="198.51.100.1")
    bob = register("bob", origin="198.51.100.2", referral_code=alice.referral_code)
    assert bob.referred_by_user_id == "alice"
    return alice, bob


def entries_by_source(service, user_id, source):
    history = service.accounts.transactions(user_id, limit=100)
    return [e for e in history.entries if e.source == source]


class TestUnlockAndCommission:

    def test_crossing_threshold_pays_bonus_and_commission(self, service, referred_pair, postback, balance):
        """Scenario: bob earns 600 pts, alice gets 50 bonus plus 5% of 600."""
        postback("bob", "1.00", "tx-b1")

        assert balance("bob") == 650
        assert balance("alice") == 50 + 50 + 30
        assert len(entries_by_source(service, "alice", EntrySource.REFERRAL_BONUS)) == 1
        assert len(entries_by_source(service, "alice", EntrySource.REFERRAL_COMMISSION)) == 1

        bob = service.accounts.get_account("bob")
        assert bob.referral_unlocked is True
        assert bob.lifetime_earnings == 600

    def test_bonus_paid_once_commission_every_time(self, service, referred_pair, postback, balance):
        postback("bob", "1.00", "tx-b1")
        postback("bob", "1.00", "tx-b2")
        postback("bob", "0.10", "tx-b3")

        assert len(entries_by_source(service, "alice", EntrySource.REFERRAL_BONUS)) == 1
        # 30 + 30 + 3
        assert balance("alice") == 50 + 50 + 63

    def test_commission_before_unlock(self, service, referred_pair, postback, balance):
        postback("bob", "0.50", "tx-b1")

        assert balance("alice") == 50 + 15
        assert not service.accounts.get_account("bob").referral_unlocked

        postback("bob", "0.50", "tx-b2")
        assert service.accounts.get_account("bob").referral_unlocked
        assert balance("alice") == 50 + 15 + 50 + 15

    def test_zero_commission_writes_no_entry(self, service, referred_pair, postback):
        # 0.03 -> 18 pts -> floor(0.9) = 0 commission
        postback("bob", "0.03", "tx-small")
        assert entries_by_source(service, "alice", EntrySource.REFERRAL_COMMISSION) == []

    def test_replayed_postback_pays_no_extra_commission(self, service, referred_pair, postback, balance):
        postback("bob", "1.00", "tx-b1")
        postback("bob", "1.00", "tx-b1")
        assert balance("alice") == 130

    def test_spending_does_not_reduce_lifetime_earnings(self, service, referred_pair, postback):
        postback("bob", "0.50", "tx-b1")
        with service.database.session() as session:
            service.store.debit(session, "bob", 200, EntrySource.WITHDRAWAL, "Redeemed")
        assert service.accounts.get_account("bob").lifetime_earnings == 300

    def test_user_without_referrer_still_accumulates(self, service, register, postback, balance):
        register("carol")
        postback("carol", "1.00", "tx-c1")
        carol = service.accounts.get_account("carol")
        assert carol.lifetime_earnings == 600
        assert carol.referral_unlocked is False
        assert balance("carol") == 650

    def test_earnings_before_link_count_toward_unlock(self, service, register, postback, balance):
        alice = register("alice", origin="198.51.100.1")
        register("bob", origin="198.51.100.2")
        postback("bob", "1.00", "tx-b1")

        service.apply_referral("bob", alice.referral_code, "198.51.100.3")
        assert balance("alice") == 50

        # 60 pts: lifetime 660 is past the threshold, so the unlock fires now
        postback("bob", "0.10", "tx-b2")
        assert service.accounts.get_account("bob").lifetime_earnings == 660
        assert service.accounts.get_account("bob").referral_unlocked is True
        assert balance("alice") == 50 + 50 + 3

    def test_referral_entries_are_ledger_entries(self, service, referred_pair, postback):
        postback("bob", "1.00", "tx-b1")
        with service.database.session() as session:
            assert service.store.ledger_sum(session, "alice") == service.store.balance_of(session, "alice")

    def test_concurrent_crossing_unlocks_once(self, service, referred_pair, postback, balance):
        barrier = threading.Barrier(6)
        errors = []

        def deliver(n):
            barrier.wait()
            try:
                postback("bob", "1.00", f"tx-par-{n}")
            except Exception as exc:  # pragma: no cover
                errors.append(exc)

        threads = [threading.Thread(target=deliver, args=(n,)) for n in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(entries_by_source(service, "alice", EntrySource.REFERRAL_BONUS)) == 1
        assert len(entries_by_source(service, "alice", EntrySource.REFERRAL_COMMISSION)) == 6
        assert balance("alice") == 50 + 50 + 6 * 30


class TestReferralLinks:

    def test_same_address_signup_is_ignored(self, register):
        alice = register("alice", origin="198.51.100.1")
        bob = register("bob", origin="198.51.100.1", referral_code=alice.referral_code)
        assert bob.referred_by_user_id is None

    def test_unknown_code_at_signup_is_ignored(self, register):
        bob = register("bob", referral_code="lq-deadbeef")
        assert bob.referred_by_user_id is None

    def test_registration_is_idempotent(self, service, register, balance):
        register("alice")
        account, created = service.accounts.register("alice", "198.51.100.9")
        assert created is False
        assert balance("alice") == 50

    def test_apply_referral_after_signup(self, service, register):
        alice = register("alice", origin="198.51.100.1")
        register("bob", origin="198.51.100.2")

        service.apply_referral("bob", alice.referral_code, "198.51.100.3")
        assert service.accounts.get_account("bob").referred_by_user_id == "alice"

    def test_apply_referral_only_once(self, service, register):
        alice = register("alice", origin="198.51.100.1")
        carol = register("carol", origin="198.51.100.3")
        register("bob", origin="198.51.100.2", referral_code=alice.referral_code)

        with pytest.raises(InvalidRequest):
            service.apply_referral("bob", carol.referral_code, "198.51.100.2")
        assert service.accounts.get_account("bob").referred_by_user_id == "alice"

    def test_apply_unknown_code(self, service, register):
        register("bob")
        with pytest.raises(NotFound):
            service.apply_referral("bob", "lq-00000000", "198.51.100.2")

    def test_apply_own_code(self, service, register):
        bob = register("bob")
        with pytest.raises(InvalidRequest):
            service.apply_referral("bob", bob.referral_code, "198.51.100.7")

    def test_apply_from_referrer_address(self, service, register):
        alice = register("alice", origin="198.51.100.1")
        register("bob", origin="198.51.100.2")
        with pytest.raises(InvalidRequest):
            service.apply_referral("bob", alice.referral_code, "198.51.100.1")

    def test_apply_rejects_cycles(self, service, register):
        alice = register("alice", origin="198.51.100.1")
        bob = register("bob", origin="198.51.100.2", referral_code=alice.referral_code)
        register("carol", origin="198.51.100.3", referral_code=bob.referral_code)
        carol = service.accounts.get_account("carol")

        with pytest.raises(InvalidRequest):
            service.apply_referral("alice", carol.referral_code, "198.51.100.4")
        assert service.accounts.get_account("alice").referred_by_user_id is None


class TestReferralInfo:

    def test_code_generated_lazily(self, service, register):
        register("alice")
        with service.database.session() as session:
            session.execute(update(User).where(User.id == "alice").values(referral_code=None))

        info = service.referral_info("alice")
        assert info.code.startswith("lq-")
        assert len(info.code) == 11
        assert info.share_url.endswith(info.code)
        assert service.referral_info("alice").code == info.code

    def test_stats(self, service, register, postback):
        alice = register("alice", origin="198.51.100.1")
        register("bob", origin="198.51.100.2", referral_code=alice.referral_code)
        register("carol", origin="198.51.100.3", referral_code=alice.referral_code)
        postback("bob", "1.00", "tx-b1")

        info = service.referral_info("alice")
        assert info.stats.total_referred == 2
        assert info.stats.unlocked_referred == 1
        assert info.stats.pending_referred == 1
        assert info.stats.total_earned == 80
        assert info.program.bonus_amount == 50
        assert info.program.threshold == 500
        assert info.program.commission_rate == "5%"
