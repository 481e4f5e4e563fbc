"""
TRASHURE Ledger: error kinds

Every ledger-affecting failure is raised to the caller. The API gateway maps
these onto HTTP status codes; nothing in the engine converts them to a
success response.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from engine.models import PendingScan


class TrashureError(RuntimeError):
    """Base class for every error the engine raises on purpose."""


class IdentityError(TrashureError):
    """Sign-up / sign-in / token failure. Shown to the user, not fatal."""

    def __init__(self, message: str, conflict: bool = False):
        super().__init__(message)
        self.conflict = conflict


class CaptureError(TrashureError):
    """The captured frame is missing or cannot be decoded."""


class ClassificationError(TrashureError):
    """Classifier unavailable, timed out or returned nothing usable."""


class ScanRejectedError(TrashureError, ValueError):
    """confirm_scan called without a user or without a classification."""


class LedgerError(TrashureError):
    pass


class LedgerWriteError(LedgerError):
    """
    An account or history write did not commit.

    `pending` is set when the account was credited but the history append
    failed; the caller retries the append only (RewardEngine.complete_scan).
    """

    retryable = True

    def __init__(self, message: str, pending: Optional["PendingScan"] = None):
        super().__init__(message)
        self.pending = pending


class InsufficientFundsError(LedgerError):
    def __init__(self, balance: int, required: int):
        super().__init__(f"Not enough coins: balance {balance}, required {required}")
        self.balance  = balance
        self.required = required


class UnknownAccountError(LedgerError, KeyError):
    def __init__(self, user_id: str):
        super().__init__(f"No account for user {user_id!r}")
        self.user_id = user_id

    def __str__(self) -> str:
        return self.args[0]


class UnknownScanError(LedgerError, KeyError):
    """complete_scan for a record that is neither pending nor in history."""

    def __init__(self, user_id: str, record_id: str):
        super().__init__(f"No pending scan {record_id!r} for user {user_id!r}")
        self.user_id   = user_id
        self.record_id = record_id

    def __str__(self) -> str:
        return self.args[0]


class UnknownVoucherError(TrashureError, KeyError):
    def __init__(self, voucher_id: str):
        super().__init__(f"Unknown voucher {voucher_id!r}")
        self.voucher_id = voucher_id

    def __str__(self) -> str:
        return self.args[0]

