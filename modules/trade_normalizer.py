"""
trade_normalizer.py
-------------------

Maps raw broker order/trade records onto the canonical :class:`Trade`.

Broker endpoints wrap their rows differently (a bare list, or an object
with ``orders``, ``trades``, ``result`` or ``data``) and name every field
differently depending on vendor and endpoint.  Each canonical field is
therefore read from an ordered list of vendor field names; the first one
holding a value wins.  Adding a vendor field means adding a name to a list.

Malformed input never raises: unknown wrappers give an empty batch,
non-object rows are dropped, and numeric fields that cannot be read
become ``0``.

Example usage::

    normalizer = TradeNormalizer()
    trades = normalizer.normalize(payload, account="2548613")
    df = normalizer.to_frame(trades)

"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Union
from datetime import datetime

import pandas as pd

from models.trade import Side, Trade
from utils.timestamps import normalize_timestamp

logger = logging.getLogger(__name__)

WRAPPER_KEYS: Sequence[str] = ("orders", "trades", "result", "data")
COMPLETED_STATUSES = {"complete", "completed", "filled"}

ID_FIELDS = ("id", "tradeId", "NOrdNo", "brokerOrderId", "BrokerOrderId", "orderId")
SYMBOL_FIELDS = ("Trsym", "symbol", "instrument", "tradingSymbol", "scrip", "ticker")
SIDE_FIELDS = ("Trantype", "tranType", "transactionType", "side", "buySell")
QUANTITY_FIELDS = ("Qty", "qty", "quantity")
TRADED_QUANTITY_FIELDS = ("QtyFilled", "filledQty", "filledQuantity", "tradedQty", "Fillshares")
PRICE_FIELDS = (
    "Prc", "Price", "price", "FillPrice", "fillPrice", "rate",
    "AvgPrice", "averageTradedPrice", "avgTradedPrice", "averagePrice",
)
PRODUCT_FIELDS = ("Pcode", "product", "Product", "productType")
ORDER_TYPE_FIELDS = ("OrderType", "orderType", "Prctype", "type")
STATUS_FIELDS = ("Status", "status", "orderStatus", "OrderStatus")

AUX_FIELDS: Dict[str, Sequence[str]] = {
    "exchange": ("Exch", "exchange", "Exchange"),
    "tradingSymbol": ("Trsym", "tradingSymbol"),
    "clientOrderId": ("clientOrderId", "ClientOrderId", "ClientId", "clientId"),
    "brokerOrderId": ("NOrdNo", "brokerOrderId", "BrokerOrderId"),
    "exchangeTimestamp": ("exchangeTimestamp", "ExchangeTimestamp", "orderTime", "FillTime", "fillTime"),
    "lotSize": ("lotsize", "lotSize"),
}

FRAME_COLUMNS: List[str] = [
    "id", "executed_at", "account", "symbol", "side", "quantity",
    "traded_quantity", "price", "product", "order_type", "status",
]


def first_value(record: Mapping[str, Any], names: Iterable[str], default: Any = None) -> Any:
    """Value of the first field in ``names`` that is present and non-empty."""
    for name in names:
        value = record.get(name)
        if value is not None and value != "":
            return value
    return default


def to_number(value: Any) -> float:
    """Coerce to float; anything unreadable (None, '', 'n/a', NaN) becomes 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0.0
    if num != num or num in (float("inf"), float("-inf")):
        return 0.0
    return num


def extract_records(payload: Any) -> List[Mapping[str, Any]]:
    """Return the row list from a bare list or a known wrapper object."""
    if not payload:
        return []
    rows: Any = None
    if isinstance(payload, list):
        rows = payload
    elif isinstance(payload, Mapping):
        for key in WRAPPER_KEYS:
            if isinstance(payload.get(key), list):
                logger.debug("extract_records: using key=%r, items=%d", key, len(payload[key]))
                rows = payload[key]
                break
    if rows is None:
        return []
    return [row for row in rows if isinstance(row, Mapping)]


def normalize_side(record: Mapping[str, Any]) -> Side:
    return Side.parse(first_value(record, SIDE_FIELDS, ""))


def filter_completed(records: Iterable[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
    """Keep order-book rows whose status says the order was executed."""
    return [
        r for r in records
        if str(first_value(r, STATUS_FIELDS, "")).strip().lower() in COMPLETED_STATUSES
    ]


class TradeNormalizer:
    """Convert raw broker payloads into deduplicated, newest-first Trades."""

    def __init__(self, fallback_timestamp: Union[str, datetime, None] = None) -> None:
        self.fallback_timestamp = fallback_timestamp

    def normalize_record(self, record: Mapping[str, Any], account: str) -> Trade:
        executed_at = normalize_timestamp(record, self.fallback_timestamp)
        symbol = str(first_value(record, SYMBOL_FIELDS, ""))
        side = normalize_side(record)
        price = to_number(first_value(record, PRICE_FIELDS))
        quantity = to_number(first_value(record, QUANTITY_FIELDS))
        traded = first_value(record, TRADED_QUANTITY_FIELDS)

        vendor_id = first_value(record, ID_FIELDS)
        trade_id = (
            str(vendor_id)
            if vendor_id is not None
            else f"{symbol}_{executed_at}_{price}_{side.value}"
        )

        aux = {name: first_value(record, fields, "") for name, fields in AUX_FIELDS.items()}
        aux["raw"] = dict(record)

        return Trade(
            id=trade_id,
            account=account,
            symbol=symbol,
            side=side,
            quantity=quantity,
            traded_quantity=to_number(traded) if traded is not None else quantity,
            price=price,
            product=str(first_value(record, PRODUCT_FIELDS, "")),
            order_type=str(first_value(record, ORDER_TYPE_FIELDS, "Market")),
            status=str(first_value(record, STATUS_FIELDS, "Filled")),
            executed_at=executed_at,
            aux=aux,
        )

    def normalize(self, payload: Any, account: str) -> List[Trade]:
        """Full pipeline: extract, map, dedupe by id (first wins), newest first."""
        trades = [self.normalize_record(r, account) for r in extract_records(payload)]
        if not trades:
            return []

        df = pd.DataFrame(
            {
                "id": [t.id for t in trades],
                "executed_at": pd.to_datetime(
                    [t.executed_at for t in trades], utc=True, format="ISO8601", errors="coerce"
                ),
                "pos": range(len(trades)),
            }
        )
        before = len(df)
        df = df.drop_duplicates(subset="id", keep="first")
        df = df.sort_values("executed_at", ascending=False, kind="mergesort")
        if len(df) != before:
            logger.debug("normalize: dropped %d duplicate trade ids", before - len(df))
        return [trades[int(pos)] for pos in df["pos"]]

    @staticmethod
    def to_frame(trades: Sequence[Trade]) -> pd.DataFrame:
        """Tabular view of a batch, for audit logs and diagnostics."""
        if not trades:
            return pd.DataFrame(columns=FRAME_COLUMNS)
        rows = [{col: t.to_dict()[col] for col in FRAME_COLUMNS} for t in trades]
        return pd.DataFrame(rows, columns=FRAME_COLUMNS)
