"""
TRASHURE: AccountStore Unit Tests

Coverage:
  - get_or_create: creates once, returns existing doc afterwards
  - apply_delta: all three counters move together, unknown account rejected
  - coins clamp at zero, min_coins raises InsufficientFundsError
  - idempotency keys: replay is a no-op, key window is bounded
  - concurrent increments are never lost
  - pending scans: parked with the credit, key honoured, cleared after append
  - subscribe: initial snapshot, ordered updates, unsubscribe
  - mixed concurrent credits and clamped debits never show negative coins
"""

import os
import sys
import threading

import pytest

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.account_store import AccountStore
from engine.errors import InsufficientFundsError, UnknownAccountError
from engine.models import RECENT_SCAN_IDS_KEPT, AccountDefaults, AccountDelta, ScanRecord
from engine.store import MemoryLedgerStore


SCAN_DELTA = AccountDelta(points_delta=10, coins_delta=5, scan_count_delta=1)


class TestGetOrCreate:

    def setup_method(self):
        self.accounts = AccountStore(MemoryLedgerStore())

    def test_new_account_is_zeroed(self):
        acc = self.accounts.get_or_create("u1", AccountDefaults("Alice", "a@example.com"))
        assert (acc.points, acc.coins, acc.scan_count) == (0, 0, 0)
        assert acc.display_name == "Alice"
        assert acc.email == "a@example.com"

    def test_existing_account_is_not_reset(self):
        self.accounts.get_or_create("u1", AccountDefaults("Alice"))
        self.accounts.apply_delta("u1", SCAN_DELTA)
        acc = self.accounts.get_or_create("u1", AccountDefaults("Someone Else"))
        assert acc.points == 10
        assert acc.display_name == "Alice"

    def test_empty_user_id_rejected(self):
        with pytest.raises(ValueError):
            self.accounts.get_or_create("", AccountDefaults("x"))

    def test_defaults_from_identity(self):
        assert AccountDefaults.from_identity(None, "bob@example.com").display_name == "bob"
        assert AccountDefaults.from_identity(None, None).display_name == "EcoWarrior"
        assert AccountDefaults.from_identity("Bobby", "bob@example.com").display_name == "Bobby"


class TestApplyDelta:

    def setup_method(self):
        self.accounts = AccountStore(MemoryLedgerStore())
        self.accounts.get_or_create("u1", AccountDefaults("Alice"))

    def test_counters_move_together(self):
        acc = self.accounts.apply_delta("u1", SCAN_DELTA)
        assert (acc.points, acc.coins, acc.scan_count) == (10, 5, 1)

    def test_unknown_account(self):
        with pytest.raises(UnknownAccountError):
            self.accounts.apply_delta("ghost", SCAN_DELTA)
        assert self.accounts.get("ghost") is None

    def test_negative_points_delta_rejected(self):
        with pytest.raises(ValueError):
            AccountDelta(points_delta=-1)

    def test_coins_clamped_at_zero(self):
        self.accounts.apply_delta("u1", AccountDelta(coins_delta=5))
        acc = self.accounts.apply_delta("u1", AccountDelta(coins_delta=-20))
        assert acc.coins == 0

    def test_min_coins_rejects_without_writing(self):
        self.accounts.apply_delta("u1", AccountDelta(coins_delta=30))
        with pytest.raises(InsufficientFundsError) as exc:
            self.accounts.apply_delta("u1", AccountDelta(coins_delta=-50), min_coins=50)
        assert exc.value.balance == 30
        assert exc.value.required == 50
        assert self.accounts.get("u1").coins == 30

    def test_idempotency_key_applies_once(self):
        self.accounts.apply_delta("u1", SCAN_DELTA, idempotency_key="scan-1")
        acc = self.accounts.apply_delta("u1", SCAN_DELTA, idempotency_key="scan-1")
        assert (acc.points, acc.coins, acc.scan_count) == (10, 5, 1)

    def test_idempotency_window_is_bounded(self):
        for i in range(RECENT_SCAN_IDS_KEPT + 5):
            self.accounts.apply_delta("u1", SCAN_DELTA, idempotency_key=f"k{i}")
        acc = self.accounts.get("u1")
        assert len(acc.recent_scan_ids) == RECENT_SCAN_IDS_KEPT
        assert acc.recent_scan_ids[-1] == f"k{RECENT_SCAN_IDS_KEPT + 4}"
        assert "k0" not in acc.recent_scan_ids

    def test_concurrent_increments_are_not_lost(self):
        n_threads, per_thread = 8, 25

        def worker():
            for _ in range(per_thread):
                self.accounts.apply_delta("u1", SCAN_DELTA)

        threads = [threading.Thread(target=worker) for _ in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        acc = self.accounts.get("u1")
        total = n_threads * per_thread
        assert acc.scan_count == total
        assert acc.points == 10 * total
        assert acc.coins == 5 * total


class TestPendingScans:

    def setup_method(self):
        self.accounts = AccountStore(MemoryLedgerStore())
        self.accounts.get_or_create("u1", AccountDefaults("Alice"))
        self.record = ScanRecord("s1", "can", "Recyclable", 0.8, 10)

    def test_parked_with_the_credit(self):
        acc = self.accounts.apply_delta("u1", SCAN_DELTA, idempotency_key="s1", pending_scan=self.record)
        assert acc.scan_count == 1
        assert acc.pending_scans["s1"]["itemName"] == "can"

    def test_pending_key_is_not_applied_again(self):
        self.accounts.apply_delta("u1", SCAN_DELTA, pending_scan=self.record)
        acc = self.accounts.apply_delta("u1", SCAN_DELTA, idempotency_key="s1")
        assert acc.scan_count == 1

    def test_clear_pending(self):
        self.accounts.apply_delta("u1", SCAN_DELTA, pending_scan=self.record)
        assert self.accounts.clear_pending("u1", "s1").pending_scans == {}
        rev = self.accounts.get("u1").rev
        self.accounts.clear_pending("u1", "s1")
        assert self.accounts.get("u1").rev == rev

    def test_clear_pending_unknown_account(self):
        with pytest.raises(UnknownAccountError):
            self.accounts.clear_pending("ghost", "s1")

class TestSubscribe:

    def setup_method(self):
        self.accounts = AccountStore(MemoryLedgerStore())

    def test_initial_none_then_created(self):
        seen = []
        self.accounts.subscribe("u1", seen.append)
        self.accounts.get_or_create("u1", AccountDefaults("Alice"))
        assert seen[0] is None
        assert seen[1].display_name == "Alice"

    def test_updates_delivered_in_commit_order(self):
        self.accounts.get_or_create("u1", AccountDefaults("Alice"))
        points = []
        self.accounts.subscribe("u1", lambda a: points.append(a.points))
        for _ in range(3):
            self.accounts.apply_delta("u1", SCAN_DELTA)
        assert points == [0, 10, 20, 30]

    def test_other_accounts_not_delivered(self):
        self.accounts.get_or_create("u1", AccountDefaults("Alice"))
        self.accounts.get_or_create("u2", AccountDefaults("Bob"))
        seen = []
        self.accounts.subscribe("u1", seen.append)
        self.accounts.apply_delta("u2", SCAN_DELTA)
        assert len(seen) == 1

    def test_unsubscribe_stops_delivery(self):
        self.accounts.get_or_create("u1", AccountDefaults("Alice"))
        seen = []
        unsubscribe = self.accounts.subscribe("u1", seen.append)
        unsubscribe()
        self.accounts.apply_delta("u1", SCAN_DELTA)
        assert len(seen) == 1

    def test_idempotent_replay_emits_nothing(self):
        self.accounts.get_or_create("u1", AccountDefaults("Alice"))
        self.accounts.apply_delta("u1", SCAN_DELTA, idempotency_key="s1")
        seen = []
        self.accounts.subscribe("u1", seen.append)
        self.accounts.apply_delta("u1", SCAN_DELTA, idempotency_key="s1")
        assert len(seen) == 1

    def test_coins_never_seen_below_zero_under_mixed_writers(self):
        self.accounts.get_or_create("u1", AccountDefaults("Alice"))
        seen = []
        self.accounts.subscribe("u1", lambda a: seen.append((a.points, a.coins)))
        credit = AccountDelta(points_delta=10, coins_delta=5, scan_count_delta=1)
        debit  = AccountDelta(coins_delta=-7)
        rounds = 50

        def credit_worker():
            for _ in range(rounds):
                self.accounts.apply_delta("u1", credit)

        def debit_worker():
            for _ in range(rounds):
                self.accounts.apply_delta("u1", debit)

        def redeem_worker():
            for _ in range(rounds):
                try:
                    self.accounts.apply_delta("u1", AccountDelta(coins_delta=-20), min_coins=20)
                except InsufficientFundsError:
                    pass

        workers = [credit_worker] * 3 + [debit_worker] * 3 + [redeem_worker] * 2
        threads = [threading.Thread(target=w) for w in workers]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert min(coins for _, coins in seen) >= 0
        points = [p for p, _ in seen]
        assert points == sorted(points)
        acc = self.accounts.get("u1")
        assert acc.points == 3 * rounds * 10
        assert acc.scan_count == 3 * rounds
        assert acc.coins >= 0
        assert seen[-1] == (acc.points, acc.coins)
