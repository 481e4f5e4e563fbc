"""
TRASHURE: diagnose_ledger script tests
"""

import os
import sys

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.account_store import AccountStore
from engine.diagnose_ledger import collect_reports, main, print_report
from engine.history_log import HistoryLog
from engine.models import AccountDefaults, AccountDelta, Classification
from engine.reward_engine import RewardEngine
from engine.store import MemoryLedgerStore


def _seeded_store():
    store    = MemoryLedgerStore()
    accounts = AccountStore(store)
    rewards  = RewardEngine(accounts, HistoryLog(store))
    accounts.get_or_create("alice", AccountDefaults("Alice"))
    accounts.get_or_create("bob", AccountDefaults("Bob"))
    rewards.confirm_scan("alice", [Classification("can", 0.9)])
    # credit without a history record
    accounts.apply_delta("bob", AccountDelta(points_delta=10, coins_delta=5, scan_count_delta=1))
    return store


class TestDiagnose:

    def test_reports_every_account(self):
        reports = collect_reports(_seeded_store())
        assert [r.user_id for r in reports] == ["alice", "bob"]
        assert reports[0].consistent
        assert not reports[1].consistent

    def test_single_user(self):
        reports = collect_reports(_seeded_store(), ["bob"])
        assert len(reports) == 1
        assert reports[0].history_count == 0

    def test_print_report(self, capsys):
        print_report(collect_reports(_seeded_store()))
        out = capsys.readouterr().out
        assert "Drifted          : 1" in out
        assert "bob" in out

    def test_main_on_empty_memory_store(self, capsys):
        assert main(["--store", "memory", "--json"]) == 0
        assert capsys.readouterr().out.strip() == "[]"
