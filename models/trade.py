# --------------------------------------------------------------------
# models/trade.py
# Canonical trade produced by the normalizer from any broker payload.
# --------------------------------------------------------------------
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict


class Side(str, Enum):
    BUY = "Buy"
    SELL = "Sell"

    @property
    def transaction_type(self) -> str:
        """Upper-case form brokers expect on order placement."""
        return self.value.upper()

    @classmethod
    def parse(cls, value: Any) -> "Side":
        """Map vendor codes (B/S, BUY/SELL, SHORT) onto the enum; default BUY."""
        code = str(value or "").strip().upper()
        if code in {"S", "SELL", "SHORT"}:
            return cls.SELL
        return cls.BUY


@dataclass
class Trade:
    id: str
    account: str
    symbol: str
    side: Side
    quantity: float
    traded_quantity: float
    price: float
    product: str
    order_type: str
    status: str
    executed_at: str  # UTC ISO-8601, see utils.timestamps
    aux: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        return data
