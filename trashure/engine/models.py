"""
TRASHURE Ledger: data structures

Python attributes are snake_case; persisted documents keep the camelCase
keys the mobile client already reads (`displayName`, `scanCount`,
`pointsAwarded`, ...). `to_document()` / `from_document()` convert between
the two.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

SCAN_CATEGORY          = "Recyclable"
DEFAULT_DISPLAY_NAME   = "EcoWarrior"
RECENT_SCAN_IDS_KEPT   = 50


# ---------------------------------------------------------------------------
# Account
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class AccountDefaults:
    """Seed values for an account created on first sign-in."""
    display_name: str
    email:        str = ""

    @classmethod
    def from_identity(cls, display_name: Optional[str], email: Optional[str]) -> "AccountDefaults":
        email = email or ""
        name  = display_name or email.split("@")[0] or DEFAULT_DISPLAY_NAME
        return cls(display_name=name, email=email)

    def to_document(self) -> Dict[str, Any]:
        return {
            "displayName":   self.display_name,
            "email":         self.email,
            "points":        0,
            "coins":         0,
            "scanCount":     0,
            "recentScanIds": [],
            "pendingScans":  {},
        }


@dataclass(frozen=True)
class AccountDelta:
    points_delta:     int = 0
    coins_delta:      int = 0
    scan_count_delta: int = 0

    def __post_init__(self):
        if self.points_delta < 0:
            raise ValueError("points are monotonically non-decreasing; negative points_delta rejected")
        if self.scan_count_delta < 0:
            raise ValueError("scan_count_delta must not be negative")


@dataclass
class Account:
    id:               str
    display_name:     str
    email:            str
    points:           int = 0
    coins:            int = 0
    scan_count:       int = 0
    rev:              int = 0
    recent_scan_ids:  List[str] = field(default_factory=list)
    pending_scans:    Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_document(cls, user_id: str, doc: Dict[str, Any]) -> "Account":
        return cls(
            id              = user_id,
            display_name    = doc.get("displayName") or DEFAULT_DISPLAY_NAME,
            email           = doc.get("email", ""),
            points          = int(doc.get("points", 0) or 0),
            coins           = int(doc.get("coins", 0) or 0),
            scan_count      = int(doc.get("scanCount", 0) or 0),
            rev             = int(doc.get("rev", 0) or 0),
            recent_scan_ids = list(doc.get("recentScanIds", [])),
            pending_scans   = dict(doc.get("pendingScans") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id":          self.id,
            "displayName": self.display_name,
            "email":       self.email,
            "points":      self.points,
            "coins":       self.coins,
            "scanCount":   self.scan_count,
        }


# ---------------------------------------------------------------------------
# Scan history
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Classification:
    """One ranked classifier guess."""
    label:      str
    confidence: float

    def __post_init__(self):
        if not self.label:
            raise ValueError("classification label must not be empty")
        if not (0.0 <= float(self.confidence) <= 1.0):
            raise ValueError(f"confidence {self.confidence} outside [0, 1]")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScanRecord:
    id:             str
    item_name:      str
    category:       str
    confidence:     float
    points_awarded: int
    timestamp:      Optional[int] = None   # ms, assigned by the store
    seq:            Optional[int] = None   # insertion ordinal per owner

    def to_document(self) -> Dict[str, Any]:
        """Fields written on append; the store adds timestamp and seq."""
        return {
            "itemName":      self.item_name,
            "category":      self.category,
            "confidence":    self.confidence,
            "pointsAwarded": self.points_awarded,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "ScanRecord":
        return cls(
            id             = doc["id"],
            item_name      = doc.get("itemName", ""),
            category       = doc.get("category", SCAN_CATEGORY),
            confidence     = float(doc.get("confidence", 0.0)),
            points_awarded = int(doc.get("pointsAwarded", 0)),
            timestamp      = doc.get("timestamp"),
            seq            = doc.get("seq"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, **self.to_document(), "timestamp": self.timestamp}


@dataclass(frozen=True)
class PendingScan:
    """An account credit whose history append has not committed yet."""
    user_id:   str
    record_id: str


@dataclass(frozen=True)
class ConsistencyReport:
    user_id:         str
    scan_count:      int
    history_count:   int
    points:          int
    history_points:  int
    pending:         int

    @property
    def consistent(self) -> bool:
        return (
            self.scan_count == self.history_count
            and self.points == self.history_points
            and self.pending == 0
        )

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "consistent": self.consistent}


# ---------------------------------------------------------------------------
# Leaderboard / vouchers
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class LeaderboardEntry:
    id:           str
    display_name: str
    points:       int
    scan_count:   int

    @classmethod
    def from_account(cls, account: Account) -> "LeaderboardEntry":
        return cls(account.id, account.display_name, account.points, account.scan_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id":          self.id,
            "displayName": self.display_name,
            "points":      self.points,
            "scanCount":   self.scan_count,
        }


@dataclass(frozen=True)
class Voucher:
    id:           str
    title:        str
    cost:         int
    display_tint: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "cost": self.cost, "displayTint": self.display_tint}


@dataclass(frozen=True)
class RedemptionResult:
    ok:          bool
    new_balance: int
    voucher:     Voucher

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "newBalance": self.new_balance, "voucher": self.voucher.to_dict()}
