# --------------------------------------------------------------------
# models/follower.py
# Read-only view of a follower account as exposed by the directory.
# --------------------------------------------------------------------
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

DEFAULT_MAX_ORDER_QUANTITY = 1000


class FollowerStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"


@dataclass(frozen=True)
class Follower:
    id: str
    name: str
    status: FollowerStatus
    credential_ref: str
    lot_multiplier: float = 1.0
    max_order_quantity: int = DEFAULT_MAX_ORDER_QUANTITY
    copy_trading_enabled: bool = False
    master_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.lot_multiplier <= 0:
            raise ValueError(f"lot_multiplier must be positive, got {self.lot_multiplier}")
        if self.max_order_quantity <= 0:
            raise ValueError(f"max_order_quantity must be positive, got {self.max_order_quantity}")

    @property
    def is_eligible(self) -> bool:
        """Active *and* consented to copy trading."""
        return self.status == FollowerStatus.ACTIVE and self.copy_trading_enabled
