"""
TRASHURE: HistoryLog Unit Tests

Coverage:
  - newest first; equal timestamps fall back to insertion order
  - a clock that steps backwards never reorders history
  - empty history, limit, per-user isolation
  - append idempotent on record id
  - stream_recent: initial snapshot, re-emits on append, unsubscribe
"""

import os
import sys

# ── Path setup ────────────────────────────────────────────────────────────────
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from engine.history_log import HistoryLog, new_record_id
from engine.models import ScanRecord
from engine.store import MemoryLedgerStore


class FixedClock:

    def __init__(self, *values):
        self.values = list(values)

    def __call__(self):
        return self.values.pop(0) if len(self.values) > 1 else self.values[0]


def _record(name, record_id=None):
    return ScanRecord(
        id=record_id or new_record_id(),
        item_name=name,
        category="Recyclable",
        confidence=0.9,
        points_awarded=10,
    )


class TestOrdering:

    def test_newest_first(self):
        log = HistoryLog(MemoryLedgerStore(clock=FixedClock(1000, 2000, 3000)))
        for name in ("a", "b", "c"):
            log.append("u1", _record(name))
        assert [r.item_name for r in log.recent("u1")] == ["c", "b", "a"]

    def test_equal_timestamps_latest_insert_first(self):
        log = HistoryLog(MemoryLedgerStore(clock=FixedClock(5000)))
        for name in ("first", "second", "third"):
            log.append("u1", _record(name))
        assert [r.item_name for r in log.recent("u1")] == ["third", "second", "first"]

    def test_clock_going_backwards_keeps_order(self):
        log = HistoryLog(MemoryLedgerStore(clock=FixedClock(9000, 4000)))
        log.append("u1", _record("early"))
        log.append("u1", _record("late"))
        items = log.recent("u1")
        assert [r.item_name for r in items] == ["late", "early"]
        assert items[0].timestamp >= items[1].timestamp

    def test_record_ids_sort_by_time(self):
        ids = [new_record_id() for _ in range(50)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 50


class TestReads:

    def setup_method(self):
        self.log = HistoryLog(MemoryLedgerStore())

    def test_empty_history(self):
        assert self.log.recent("nobody") == []
        assert self.log.count("nobody") == 0
        assert self.log.total_points("nobody") == 0

    def test_limit(self):
        for i in range(5):
            self.log.append("u1", _record(f"item{i}"))
        assert len(self.log.recent("u1", 2)) == 2
        assert self.log.recent("u1", 2)[0].item_name == "item4"

    def test_users_are_isolated(self):
        self.log.append("u1", _record("mine"))
        self.log.append("u2", _record("theirs"))
        assert [r.item_name for r in self.log.recent("u1")] == ["mine"]

    def test_append_is_idempotent_on_id(self):
        self.log.append("u1", _record("bottle", record_id="r1"))
        self.log.append("u1", _record("bottle again", record_id="r1"))
        assert self.log.count("u1") == 1
        assert self.log.get("u1", "r1").item_name == "bottle"

    def test_total_points(self):
        for _ in range(3):
            self.log.append("u1", _record("x"))
        assert self.log.total_points("u1") == 30


class TestStreamRecent:

    def setup_method(self):
        self.log = HistoryLog(MemoryLedgerStore())

    def test_initial_empty_snapshot(self):
        snapshots = []
        self.log.stream_recent("u1", None, snapshots.append)
        assert snapshots == [[]]

    def test_emits_on_each_append(self):
        snapshots = []
        self.log.stream_recent("u1", 2, snapshots.append)
        for name in ("a", "b", "c"):
            self.log.append("u1", _record(name))
        assert len(snapshots) == 4
        assert [r.item_name for r in snapshots[-1]] == ["c", "b"]

    def test_other_user_does_not_emit(self):
        snapshots = []
        self.log.stream_recent("u1", None, snapshots.append)
        self.log.append("u2", _record("x"))
        assert len(snapshots) == 1

    def test_unsubscribe(self):
        snapshots = []
        unsubscribe = self.log.stream_recent("u1", None, snapshots.append)
        unsubscribe()
        self.log.append("u1", _record("x"))
        assert len(snapshots) == 1
