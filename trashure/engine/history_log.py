"""
TRASHURE Ledger: History Log

Append-only scan history per user (`history/<uid>/<record_id>`). Records
are immutable; there is no update or delete.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Callable, List, Optional

from engine.models import ScanRecord
from engine.store import LedgerStore
from engine.subscriptions import Change, join_path

logger = logging.getLogger("trashure.history")

HISTORY = "history"

_id_lock = threading.Lock()
_last_id_ms = [0]


def new_record_id() -> str:
    """Time-ordered unique id: 12 hex digits of ms (non-decreasing) + random tail."""
    with _id_lock:
        ms = max(int(time.time() * 1000), _last_id_ms[0])
        _last_id_ms[0] = ms
    return f"{ms:012x}{uuid.uuid4().hex[:12]}"


def _newest_first(records: List[ScanRecord]) -> List[ScanRecord]:
    return sorted(records, key=lambda r: (r.timestamp or 0, r.seq or 0), reverse=True)


class HistoryLog:

    def __init__(self, store: LedgerStore):
        self._store = store

    def append(self, user_id: str, record: ScanRecord) -> str:
        stored, created = self._store.append(HISTORY, user_id, record.id, record.to_document())
        if created:
            logger.info(f"[HISTORY] {user_id}: appended {record.id} ({record.item_name})")
        else:
            logger.info(f"[HISTORY] {user_id}: {record.id} already present")
        return stored["id"]

    def get(self, user_id: str, record_id: str) -> Optional[ScanRecord]:
        for doc in self._store.read_log(HISTORY, user_id):
            if doc.get("id") == record_id:
                return ScanRecord.from_document(doc)
        return None

    def recent(self, user_id: str, limit: Optional[int] = None) -> List[ScanRecord]:
        records = _newest_first(
            [ScanRecord.from_document(d) for d in self._store.read_log(HISTORY, user_id)]
        )
        return records[:limit] if limit is not None else records

    def count(self, user_id: str) -> int:
        return len(self._store.read_log(HISTORY, user_id))

    def total_points(self, user_id: str) -> int:
        return sum(int(d.get("pointsAwarded", 0)) for d in self._store.read_log(HISTORY, user_id))

    def stream_recent(
        self,
        user_id:   str,
        limit:     Optional[int],
        on_change: Callable[[List[ScanRecord]], None],
    ) -> Callable[[], None]:
        def _emit(_change: Optional[Change] = None) -> None:
            on_change(self.recent(user_id, limit))

        return self._store.subscribe(join_path(HISTORY, user_id), _emit, prime=_emit)
