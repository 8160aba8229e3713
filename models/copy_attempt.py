# --------------------------------------------------------------------
# models/copy_attempt.py
# One ledger entry per (master trade, follower), plus the aggregate
# result of a fan-out call.
# --------------------------------------------------------------------
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

ALREADY_PROCESSED = "already processed"
QUANTITY_TOO_SMALL = "quantity too small after multiplier"
FOLLOWER_NOT_FOUND = "follower not found"
FOLLOWER_NOT_ELIGIBLE = "follower not eligible"


class CopyOutcome(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (CopyOutcome.SUCCESS, CopyOutcome.FAILED)


@dataclass(frozen=True)
class CopyAttemptRecord:
    master_trade_id: str
    follower_id: str
    follower_qty: int
    outcome: CopyOutcome
    recorded_at: str
    reason: Optional[str] = None
    broker_order_id: Optional[str] = None
    follower_name: str = ""
    symbol: str = ""
    side: str = ""
    master_qty: float = 0.0
    price: float = 0.0

    @property
    def key(self) -> Tuple[str, str]:
        return (self.master_trade_id, self.follower_id)

    def finish(
        self,
        outcome: CopyOutcome,
        recorded_at: str,
        *,
        reason: Optional[str] = None,
        broker_order_id: Optional[str] = None,
    ) -> "CopyAttemptRecord":
        """Return the terminal version of a PENDING claim."""
        return replace(
            self,
            outcome=outcome,
            recorded_at=recorded_at,
            reason=reason,
            broker_order_id=broker_order_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Shape used in fan-out responses."""
        data: Dict[str, Any] = {
            "followerId": self.follower_id,
            "followerName": self.follower_name,
            "status": self.outcome.value,
            "followerQty": self.follower_qty,
        }
        if self.reason:
            data["reason"] = self.reason
        if self.broker_order_id:
            data["orderId"] = self.broker_order_id
        return data


@dataclass
class FanOutResult:
    master_trade_id: str
    copy_trade_id: str
    records: List[CopyAttemptRecord] = field(default_factory=list)

    def _count(self, outcome: CopyOutcome) -> int:
        return sum(1 for r in self.records if r.outcome == outcome)

    @property
    def total_followers(self) -> int:
        return len(self.records)

    @property
    def success_count(self) -> int:
        return self._count(CopyOutcome.SUCCESS)

    @property
    def failed_count(self) -> int:
        return self._count(CopyOutcome.FAILED)

    @property
    def skipped_count(self) -> int:
        return self._count(CopyOutcome.SKIPPED)

    @property
    def skipped_duplicate_count(self) -> int:
        return sum(
            1 for r in self.records
            if r.outcome == CopyOutcome.SKIPPED and r.reason == ALREADY_PROCESSED
        )

    @property
    def skipped_quantity_count(self) -> int:
        return sum(
            1 for r in self.records
            if r.outcome == CopyOutcome.SKIPPED and r.reason == QUANTITY_TOO_SMALL
        )

    @property
    def message(self) -> str:
        return (
            f"Copy trade executed: {self.success_count} successful, "
            f"{self.skipped_count} skipped, {self.failed_count} failed"
        )

    def summary(self) -> Dict[str, int]:
        return {
            "totalFollowers": self.total_followers,
            "successCount": self.success_count,
            "failedCount": self.failed_count,
            "skippedCount": self.skipped_count,
            "skippedDuplicateCount": self.skipped_duplicate_count,
            "skippedQuantityCount": self.skipped_quantity_count,
        }
