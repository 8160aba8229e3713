from __future__ import annotations

import logging
from typing import List, Optional

from models.trade import Trade
from modules.broker import BrokerGateway
from modules.trade_normalizer import TradeNormalizer, extract_records, filter_completed
from utils.exceptions import NetworkError


class TradeIngestor:
    """Fetch and normalize the master account's executed trades.

    The order book is the primary source (only completed orders are kept);
    if it cannot be fetched, the trades endpoint is used instead.  Either way
    the result is deduplicated and newest first.
    """

    def __init__(
        self,
        broker: BrokerGateway,
        normalizer: Optional[TradeNormalizer] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.broker = broker
        self.normalizer = normalizer or TradeNormalizer()
        self.logger = logger or logging.getLogger(self.__class__.__name__)

    async def fetch_master_trades(self, account: str) -> List[Trade]:
        try:
            payload = await self.broker.fetch_trade_book(account)
        except NetworkError as exc:
            self.logger.error("Order book endpoint failed for %s: %s", account, exc)
            return await self._fetch_from_trades_endpoint(account)

        orders = extract_records(payload)
        completed = filter_completed(orders)
        self.logger.info(
            "Order book for %s: %d orders, %d completed", account, len(orders), len(completed)
        )
        return self.normalizer.normalize(completed, account)

    async def _fetch_from_trades_endpoint(self, account: str) -> List[Trade]:
        self.logger.info("Falling back to trades endpoint for %s", account)
        payload = await self.broker.fetch_trades(account)
        trades = self.normalizer.normalize(payload, account)
        self.logger.info("Trades endpoint returned %d trades for %s", len(trades), account)
        return trades
