"""
Run this against the live store to find accounts whose counters drifted
from their scan history (a credit whose history write never landed).

Usage: python3 diagnose_ledger.py [--store redis|memory] [--user UID] [--json]
"""
import argparse
import json
import os
import sys

from dotenv import load_dotenv
load_dotenv()

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), ".."))

from engine.account_store import AccountStore
from engine.history_log import HistoryLog
from engine.reward_engine import RewardEngine
from engine.services import STORE_BACKEND, build_store


def collect_reports(store, user_ids=None):
    accounts = AccountStore(store)
    rewards  = RewardEngine(accounts, HistoryLog(store))
    if not user_ids:
        user_ids = sorted(a.id for a in accounts.all())
    return [rewards.check_consistency(uid) for uid in user_ids]


def print_report(reports):
    drifted = [r for r in reports if not r.consistent]
    print("=" * 60)
    print("  TRASHURE LEDGER DIAGNOSIS")
    print("=" * 60)
    print(f"\nAccounts checked : {len(reports)}")
    print(f"Drifted          : {len(drifted)}\n")
    for r in drifted:
        print(f"❌ {r.user_id}")
        print(f"   scanCount={r.scan_count}  history records={r.history_count}")
        print(f"   points={r.points}  history points={r.history_points}")
    if not drifted:
        print("✅ Every account matches its scan history.")
    else:
        print("\nA scanCount above the history count means a credited scan is missing")
        print("its history record. Retry it with POST /api/v1/scan/<record_id>/complete")
        print("if the client still holds the record id.")
    print()
    print("=" * 60)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Compare account counters with scan history")
    parser.add_argument("--store", default=STORE_BACKEND, choices=["redis", "memory"])
    parser.add_argument("--user", action="append", dest="users", help="Check only this user id (repeatable)")
    parser.add_argument("--json", action="store_true", help="Print reports as JSON")
    args = parser.parse_args(argv)

    store = build_store(args.store)
    try:
        reports = collect_reports(store, args.users)
    finally:
        store.close()

    if args.json:
        print(json.dumps([r.to_dict() for r in reports], indent=2))
    else:
        print_report(reports)
    return 0 if all(r.consistent for r in reports) else 1


if __name__ == "__main__":
    sys.exit(main())
