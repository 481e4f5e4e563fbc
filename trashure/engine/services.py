"""
TRASHURE Ledger: service wiring

One `Services` bundle per process, built around a single LedgerStore and
passed explicitly to whoever needs it (API app factory, diagnosis script,
tests). Nothing in the engine reaches for a module-level store.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Optional

from engine.account_store import AccountStore
from engine.classifier import Classifier, RemoteClassifier
from engine.history_log import HistoryLog
from engine.identity import AuthUser, LocalIdentityProvider
from engine.leaderboard import LeaderboardView
from engine.models import Account, AccountDefaults
from engine.reward_engine import RewardEngine
from engine.store import LedgerStore, MemoryLedgerStore
from engine.voucher_redemption import VoucherRedemption

logger = logging.getLogger("trashure.services")

STORE_BACKEND = os.getenv("TRASHURE_STORE", "redis")


def build_store(backend: str = STORE_BACKEND) -> LedgerStore:
    if backend == "memory":
        logger.warning("Using in-memory ledger store: state is lost on restart and not shared")
        return MemoryLedgerStore()
    if backend == "redis":
        from engine.redis_store import REDIS_URL, RedisLedgerStore
        logger.info(f"Using Redis ledger store at {REDIS_URL}")
        return RedisLedgerStore.from_url(REDIS_URL)
    raise ValueError(f"Unknown TRASHURE_STORE backend: {backend!r}")


@dataclass
class Services:
    store:       LedgerStore
    accounts:    AccountStore
    history:     HistoryLog
    leaderboard: LeaderboardView
    rewards:     RewardEngine
    vouchers:    VoucherRedemption
    identity:    LocalIdentityProvider
    classifier:  Classifier = field(default_factory=RemoteClassifier)

    @classmethod
    def build(
        cls,
        store:      Optional[LedgerStore] = None,
        classifier: Optional[Classifier] = None,
        **identity_kwargs,
    ) -> "Services":
        store    = store or build_store()
        accounts = AccountStore(store)
        history  = HistoryLog(store)
        return cls(
            store       = store,
            accounts    = accounts,
            history     = history,
            leaderboard = LeaderboardView(store),
            rewards     = RewardEngine(accounts, history),
            vouchers    = VoucherRedemption(accounts),
            identity    = LocalIdentityProvider(store, **identity_kwargs),
            classifier  = classifier or RemoteClassifier(),
        )

    def open_account(self, user: AuthUser) -> Account:
        """Lazily create the ledger account for a freshly signed-in user."""
        return self.accounts.get_or_create(
            user.user_id,
            AccountDefaults.from_identity(user.display_name, user.email),
        )

    def start(self) -> None:
        start_listener = getattr(self.store, "start_listener", None)
        if start_listener is not None:
            start_listener()

    def close(self) -> None:
        self.store.close()
