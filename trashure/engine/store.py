"""
TRASHURE Ledger: authoritative store

`LedgerStore` is the one seam the rest of the engine talks to. Account
counters only ever change through `compare_and_apply`, which is the single
atomic read-modify-write primitive shared by crediting and spending.

Documents are plain JSON-compatible dicts. The store owns two metadata
fields: `rev` on documents (bumped on every committed write) and
`timestamp` / `seq` on log records (assigned at append).
"""

from __future__ import annotations

import abc
import copy
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from engine.subscriptions import Change, Listener, SubscriptionHub, join_path

logger = logging.getLogger("trashure.store")

Doc        = Dict[str, Any]
ApplyFn    = Callable[[Optional[Doc]], Doc]


# Collections whose writes go out as Change notifications. Credentials
# (`identities`, `revoked_tokens`) never leave the store.
FEED_COLLECTIONS = ("accounts", "history")


def now_ms() -> int:
    return int(time.time() * 1000)


class LedgerStore(abc.ABC):
    """Abstract authoritative store. See MemoryLedgerStore / RedisLedgerStore."""

    def __init__(
        self,
        hub:              Optional[SubscriptionHub] = None,
        feed_collections: Iterable[str] = FEED_COLLECTIONS,
    ):
        self.hub              = hub or SubscriptionHub()
        self.feed_collections = frozenset(feed_collections)

    def feeds(self, collection: str) -> bool:
        return collection in self.feed_collections

    # ── Documents ─────────────────────────────────────────────────────────────
    @abc.abstractmethod
    def get(self, collection: str, key: str) -> Optional[Doc]:
        ...

    @abc.abstractmethod
    def put_if_absent(self, collection: str, key: str, doc: Doc) -> Tuple[Doc, bool]:
        """Create `collection/key` unless it exists. Returns (doc, created)."""

    @abc.abstractmethod
    def compare_and_apply(self, collection: str, key: str, fn: ApplyFn) -> Doc:
        """
        Atomically replace `collection/key` with `fn(current)`.

        `fn` receives a private copy of the current doc (None if absent) and
        may raise to abort; nothing is written in that case. Returning a doc
        equal to the current one is a no-op.
        """

    @abc.abstractmethod
    def scan(self, collection: str) -> Dict[str, Doc]:
        ...

    # ── Append-only logs ──────────────────────────────────────────────────────
    @abc.abstractmethod
    def append(self, collection: str, owner: str, record_id: str, doc: Doc) -> Tuple[Doc, bool]:
        """
        Append `doc` under `collection/owner` as `record_id`.
        Idempotent on record_id: returns (stored, created).
        """

    @abc.abstractmethod
    def read_log(self, collection: str, owner: str) -> List[Doc]:
        """All records of one owner in insertion order."""

    # ── Subscriptions ─────────────────────────────────────────────────────────
    def subscribe(
        self,
        path:     str,
        callback: Listener,
        prime:    Optional[Callable[[], None]] = None,
    ) -> Callable[[], None]:
        """
        Register `callback` for changes at or below `path`.

        `prime` runs under the delivery lock right after registration, which
        is where views emit their initial snapshot.
        """
        with self.hub.lock:
            unsubscribe = self.hub.add(path, callback)
            if prime is not None:
                try:
                    prime()
                except Exception:
                    unsubscribe()
                    raise
        return unsubscribe

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------
class MemoryLedgerStore(LedgerStore):
    """
    Single-process store. One re-entrant lock (the hub's delivery lock)
    covers commits and dispatch, so listeners observe commit order exactly.
    """

    def __init__(
        self,
        clock:            Callable[[], int] = now_ms,
        hub:              Optional[SubscriptionHub] = None,
        feed_collections: Iterable[str] = FEED_COLLECTIONS,
    ):
        super().__init__(hub, feed_collections)
        self._clock = clock
        self._lock  = self.hub.lock
        self._docs: Dict[str, Dict[str, Doc]]                    = {}
        self._logs: Dict[str, Dict[str, "OrderedDict[str, Doc]"]] = {}

    def get(self, collection: str, key: str) -> Optional[Doc]:
        with self._lock:
            doc = self._docs.get(collection, {}).get(key)
            return copy.deepcopy(doc) if doc is not None else None

    def put_if_absent(self, collection: str, key: str, doc: Doc) -> Tuple[Doc, bool]:
        with self._lock:
            bucket = self._docs.setdefault(collection, {})
            if key in bucket:
                return copy.deepcopy(bucket[key]), False
            stored = {**copy.deepcopy(doc), "rev": 1}
            bucket[key] = stored
            self._emit(collection, join_path(collection, key), stored)
            return copy.deepcopy(stored), True

    def compare_and_apply(self, collection: str, key: str, fn: ApplyFn) -> Doc:
        with self._lock:
            bucket  = self._docs.setdefault(collection, {})
            current = bucket.get(key)
            updated = fn(copy.deepcopy(current) if current is not None else None)
            if updated is None:
                raise ValueError("compare_and_apply fn must return a document")
            if current is not None and _same_content(current, updated):
                return copy.deepcopy(current)
            stored = {**copy.deepcopy(updated), "rev": (current or {}).get("rev", 0) + 1}
            bucket[key] = stored
            self._emit(collection, join_path(collection, key), stored)
            return copy.deepcopy(stored)

    def scan(self, collection: str) -> Dict[str, Doc]:
        with self._lock:
            return copy.deepcopy(self._docs.get(collection, {}))

    def append(self, collection: str, owner: str, record_id: str, doc: Doc) -> Tuple[Doc, bool]:
        with self._lock:
            log = self._logs.setdefault(collection, {}).setdefault(owner, OrderedDict())
            if record_id in log:
                return copy.deepcopy(log[record_id]), False
            last_ts = next(reversed(log.values()))["timestamp"] if log else 0
            stored  = {
                **copy.deepcopy(doc),
                "id":        record_id,
                "timestamp": max(self._clock(), last_ts),
                "seq":       len(log),
            }
            log[record_id] = stored
            self._emit(collection, join_path(collection, owner, record_id), stored)
            return copy.deepcopy(stored), True

    def read_log(self, collection: str, owner: str) -> List[Doc]:
        with self._lock:
            log = self._logs.get(collection, {}).get(owner, OrderedDict())
            return [copy.deepcopy(d) for d in log.values()]

    def _emit(self, collection: str, path: str, doc: Doc) -> None:
        if not self.feeds(collection):
            return
        self.hub.dispatch(Change(path=path, doc=copy.deepcopy(doc)))


def _same_content(current: Doc, updated: Doc) -> bool:
    strip = lambda d: {k: v for k, v in d.items() if k != "rev"}  # noqa: E731
    return strip(current) == strip(updated)
