"""
TRASHURE Ledger: Reward Engine
==============================

Turns a confirmed classification into credit:

    1. AccountStore.apply_delta(+POINTS_PER_SCAN, +COINS_PER_SCAN, +1)
       with the ScanRecord parked in the account's `pendingScans`
    2. HistoryLog.append(ScanRecord(pointsAwarded=POINTS_PER_SCAN))
    3. AccountStore.clear_pending(record id)

Step 1 runs first. If step 2 fails the credit is already committed and the
record stays parked on the account document, so any worker (or the same one
after a restart) can finish it: LedgerWriteError carries a PendingScan and
`complete_scan` retries the append alone, never crediting again.

Idempotency: when the caller supplies `scan_id`, it is both the account
idempotency key and the history record id. A replay is recognised by the
history record itself, by a still-pending entry, or (for replays racing the
first append) by the account's recent key window, so the whole call credits
once and appends once. Without a scan_id every call credits, which is the
behaviour the mobile client had and relies on the confirm screen advancing
after the first tap.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional, Sequence

from engine.account_store import AccountStore
from engine.errors import (
    LedgerError,
    LedgerWriteError,
    ScanRejectedError,
    UnknownAccountError,
    UnknownScanError,
)
from engine.history_log import HistoryLog, new_record_id
from engine.models import (
    SCAN_CATEGORY,
    AccountDelta,
    Classification,
    ConsistencyReport,
    PendingScan,
    ScanRecord,
)

logger = logging.getLogger("trashure.rewards")

# ── Reward policy ──────────────────────────────────────────────────────────────
POINTS_PER_SCAN = int(os.getenv("TRASHURE_POINTS_PER_SCAN", "10"))
COINS_PER_SCAN  = int(os.getenv("TRASHURE_COINS_PER_SCAN", "5"))


class RewardEngine:

    def __init__(
        self,
        accounts:        AccountStore,
        history:         HistoryLog,
        points_per_scan: int = POINTS_PER_SCAN,
        coins_per_scan:  int = COINS_PER_SCAN,
    ):
        self.accounts        = accounts
        self.history         = history
        self.points_per_scan = points_per_scan
        self.coins_per_scan  = coins_per_scan

    # ------------------------------------------------------------------
    def confirm_scan(
        self,
        user_id:               Optional[str],
        classification_result: Sequence[Classification],
        scan_id:               Optional[str] = None,
    ) -> ScanRecord:
        if not user_id:
            raise ScanRejectedError("No signed-in user: scan not credited")
        if not classification_result:
            raise ScanRejectedError("No classification result: scan not credited")

        if scan_id:
            existing = self.history.get(user_id, scan_id)
            if existing is not None:
                logger.info(f"[CREDIT] {user_id}: scan {scan_id} already recorded, not crediting")
                return existing

        top    = classification_result[0]
        record = ScanRecord(
            id             = scan_id or new_record_id(),
            item_name      = top.label,
            category       = SCAN_CATEGORY,
            confidence     = float(top.confidence),
            points_awarded = self.points_per_scan,
        )

        # Step 1: credit + park. Errors propagate untouched; nothing is pending yet.
        account = self.accounts.apply_delta(
            user_id,
            AccountDelta(
                points_delta     = self.points_per_scan,
                coins_delta      = self.coins_per_scan,
                scan_count_delta = 1,
            ),
            idempotency_key = scan_id,
            pending_scan    = record,
        )
        parked = account.pending_scans.get(record.id)
        if parked is not None:
            # A replay of a still-pending scan finishes the record first sent.
            record = ScanRecord.from_document(parked)
        logger.info(
            f"[CREDIT] {user_id}: +{self.points_per_scan} pts +{self.coins_per_scan} coins "
            f"for '{record.item_name}' ({record.confidence:.2%}) -> "
            f"points={account.points} coins={account.coins} scans={account.scan_count}"
        )

        # Step 2: history. From here a failure leaves a detectable gap.
        return self._append(user_id, record)

    def complete_scan(self, user_id: str, record_id: str) -> ScanRecord:
        """Retry the history append of a credited scan. Never credits again."""
        account = self.accounts.get(user_id)
        if account is None:
            raise UnknownAccountError(user_id)
        parked = account.pending_scans.get(record_id)
        if parked is None:
            existing = self.history.get(user_id, record_id)
            if existing is not None:
                return existing
            raise UnknownScanError(user_id, record_id)
        return self._append(user_id, ScanRecord.from_document(parked))

    def pending(self, user_id: str) -> List[PendingScan]:
        account = self.accounts.get(user_id)
        if account is None:
            return []
        return [PendingScan(user_id, rid) for rid in account.pending_scans]

    def _append(self, user_id: str, record: ScanRecord) -> ScanRecord:
        try:
            self.history.append(user_id, record)
        except LedgerError as e:
            logger.error(
                f"[HISTORY] {user_id}: append of {record.id} failed after credit ({e}); "
                f"pending until complete_scan"
            )
            raise LedgerWriteError(
                f"Scan credited but history write failed: {e}",
                pending=PendingScan(user_id, record.id),
            ) from e
        # Step 3. If this fails the record is already in history; complete_scan clears it.
        self.accounts.clear_pending(user_id, record.id)
        return self.history.get(user_id, record.id) or record

    # ------------------------------------------------------------------
    def check_consistency(self, user_id: str) -> ConsistencyReport:
        account = self.accounts.get(user_id)
        if account is None:
            raise UnknownAccountError(user_id)
        report = ConsistencyReport(
            user_id        = user_id,
            scan_count     = account.scan_count,
            history_count  = self.history.count(user_id),
            points         = account.points,
            history_points = self.history.total_points(user_id),
            pending        = len(account.pending_scans),
        )
        if not report.consistent:
            logger.warning(f"[AUDIT] {user_id}: ledger drift {report.to_dict()}")
        return report
