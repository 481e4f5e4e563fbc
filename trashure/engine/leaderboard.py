"""
TRASHURE Ledger: Leaderboard View

Top-N accounts by points, recomputed from a full scan of `accounts` on
every account change. Ties on points are ordered by ascending user id.

A full scan is fine while the account set is small. Past a few thousand
accounts this has to become a maintained sorted index (e.g. a Redis ZSET
updated in the same transaction as the account write).
"""

from __future__ import annotations

import logging
import os
from typing import Callable, List, Optional

from engine.account_store import ACCOUNTS, AccountStore
from engine.models import LeaderboardEntry
from engine.store import LedgerStore

logger = logging.getLogger("trashure.leaderboard")

LEADERBOARD_SIZE = int(os.getenv("TRASHURE_LEADERBOARD_SIZE", "10"))


class LeaderboardView:

    def __init__(self, store: LedgerStore, limit: int = LEADERBOARD_SIZE):
        self._store    = store
        self._accounts = AccountStore(store)
        self.limit     = limit

    def _ranking(self) -> List[LeaderboardEntry]:
        entries = [LeaderboardEntry.from_account(a) for a in self._accounts.all()]
        entries.sort(key=lambda e: (-e.points, e.id))
        return entries

    def top(self) -> List[LeaderboardEntry]:
        return self._ranking()[: self.limit]

    def rank_of(self, user_id: str) -> Optional[int]:
        for position, entry in enumerate(self._ranking(), start=1):
            if entry.id == user_id:
                return position
        return None

    def subscribe(self, on_change: Callable[[List[LeaderboardEntry]], None]) -> Callable[[], None]:
        def _emit(_change=None) -> None:
            on_change(self.top())

        return self._store.subscribe(ACCOUNTS, _emit, prime=_emit)
