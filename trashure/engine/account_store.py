"""
TRASHURE Ledger: Account Store

Per-user counters (points, coins, scanCount) plus profile fields. Every
counter change goes through `apply_delta`, i.e. one `compare_and_apply`
on `accounts/<uid>`. Never write an absolute value read earlier: that is
how concurrent sessions lose updates.

Coin policy: a delta that would take coins below zero is clamped to zero
and logged. Spending paths must pass `min_coins` so the balance check runs
inside the same atomic step and fails with InsufficientFundsError instead.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from engine.errors import InsufficientFundsError, UnknownAccountError
from engine.models import (
    RECENT_SCAN_IDS_KEPT,
    Account,
    AccountDefaults,
    AccountDelta,
    ScanRecord,
)
from engine.store import LedgerStore
from engine.subscriptions import Change, join_path

logger = logging.getLogger("trashure.accounts")

ACCOUNTS = "accounts"


class AccountStore:

    def __init__(self, store: LedgerStore):
        self._store = store

    def get(self, user_id: str) -> Optional[Account]:
        doc = self._store.get(ACCOUNTS, user_id)
        return Account.from_document(user_id, doc) if doc is not None else None

    def all(self) -> List[Account]:
        return [Account.from_document(uid, doc) for uid, doc in self._store.scan(ACCOUNTS).items()]

    def get_or_create(self, user_id: str, defaults: AccountDefaults) -> Account:
        if not user_id:
            raise ValueError("user_id is required")
        doc, created = self._store.put_if_absent(ACCOUNTS, user_id, defaults.to_document())
        if created:
            logger.info(f"[ACCOUNT] Created {user_id} ({defaults.display_name})")
        return Account.from_document(user_id, doc)

    def apply_delta(
        self,
        user_id:         str,
        delta:           AccountDelta,
        *,
        min_coins:       int = 0,
        idempotency_key: Optional[str] = None,
        pending_scan:    Optional[ScanRecord] = None,
    ) -> Account:
        """
        Apply all three deltas as one atomic unit.

        `min_coins`: required balance at the instant of the update, checked
        inside the transaction. `idempotency_key`: if this key was already
        applied (kept in the last RECENT_SCAN_IDS_KEPT keys) or is still
        pending, the account is returned unchanged. `pending_scan`: history
        record parked on the account in the same write, removed again by
        `clear_pending` once the history append lands.
        """
        def _apply(current):
            if current is None:
                raise UnknownAccountError(user_id)

            recent  = list(current.get("recentScanIds", []))
            pending = dict(current.get("pendingScans") or {})
            if idempotency_key and (idempotency_key in recent or idempotency_key in pending):
                logger.info(f"[ACCOUNT] {user_id}: key {idempotency_key} already applied, skipping")
                return current

            coins = int(current.get("coins", 0) or 0)
            if coins < min_coins:
                raise InsufficientFundsError(balance=coins, required=min_coins)

            new_coins = coins + delta.coins_delta
            if new_coins < 0:
                logger.warning(
                    f"[ACCOUNT] {user_id}: coins would go to {new_coins}, clamped to 0"
                )
                new_coins = 0

            current["points"]    = int(current.get("points", 0) or 0) + delta.points_delta
            current["coins"]     = new_coins
            current["scanCount"] = int(current.get("scanCount", 0) or 0) + delta.scan_count_delta
            if idempotency_key:
                current["recentScanIds"] = (recent + [idempotency_key])[-RECENT_SCAN_IDS_KEPT:]
            if pending_scan is not None:
                pending[pending_scan.id] = {**pending_scan.to_document(), "id": pending_scan.id}
                current["pendingScans"]  = pending
            return current

        doc = self._store.compare_and_apply(ACCOUNTS, user_id, _apply)
        return Account.from_document(user_id, doc)

    def clear_pending(self, user_id: str, record_id: str) -> Account:
        """Drop a parked history record. A no-op when it is not there."""
        def _clear(current):
            if current is None:
                raise UnknownAccountError(user_id)
            pending = dict(current.get("pendingScans") or {})
            if pending.pop(record_id, None) is not None:
                current["pendingScans"] = pending
            return current

        doc = self._store.compare_and_apply(ACCOUNTS, user_id, _clear)
        return Account.from_document(user_id, doc)

    def subscribe(self, user_id: str, on_change: Callable[[Optional[Account]], None]) -> Callable[[], None]:
        """
        Live account state: `on_change` fires once now with the current
        value (None if the account does not exist yet) and then after every
        committed change. Revisions older than one already delivered are
        dropped.
        """
        last_rev = [-1]

        def _deliver(account: Optional[Account]) -> None:
            rev = account.rev if account is not None else 0
            if rev <= last_rev[0]:
                return
            last_rev[0] = rev
            on_change(account)

        def _on_change(change: Change) -> None:
            if change.doc is not None:
                _deliver(Account.from_document(user_id, change.doc))

        def _prime() -> None:
            account = self.get(user_id)
            if account is None:
                last_rev[0] = 0
                on_change(None)
            else:
                _deliver(account)

        return self._store.subscribe(join_path(ACCOUNTS, user_id), _on_change, prime=_prime)
