"""
trade_poller.py
---------------
Polling loop that fetches the master account's executed trades and fans each
new one out to the eligible followers.

Each cycle re-reads the broker and hands every recent trade to the fan-out
engine.  Nothing is remembered between cycles: the replication ledger is what
stops a trade being copied twice.  Only trades executed at or after the
poller started are copied automatically, and trades whose execution time is
unknown are never copied automatically.
"""

from __future__ import annotations

import asyncio
import logging
import statistics
import time
from collections import deque
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from models.trade import Trade
from modules.fanout_engine import FanOutEngine
from modules.ingestion import TradeIngestor
from utils.exceptions import CopyTradingError, DirectoryError, ValidationError
from utils.timestamps import is_unknown_timestamp, parse_instant

LATENCY_WINDOW = 1000


# ---------------------------- rate limiter -------------------------------- #
class RateLimiter:
    """Sliding-window limiter: at most N acquisitions in any ``window`` seconds."""

    def __init__(
        self,
        max_requests_per_10s: int,
        window: float = 10.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_requests_per_10s < 1 or window <= 0:
            raise ValueError("need at least one request per positive window")
        self.max_requests = max_requests_per_10s
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self.timestamps: deque[float] = deque()

    async def acquire(self) -> None:
        while True:
            now = self._clock()
            while self.timestamps and now - self.timestamps[0] >= self.window:
                self.timestamps.popleft()
            if len(self.timestamps) < self.max_requests:
                self.timestamps.append(now)
                return
            await self._sleep(self.window - (now - self.timestamps[0]))


# ---------------------------- polling client ------------------------------ #
class MasterTradePoller:
    """Asynchronous poller: ingest master trades, fan out the new ones."""

    def __init__(
        self,
        config: Dict,
        logger: Optional[logging.Logger] = None,
        *,
        ingestor: TradeIngestor,
        engine: FanOutEngine,
        rate_limiter: Optional[RateLimiter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.logger = logger or logging.getLogger(self.__class__.__name__)

        master_cfg = config.get("MASTER", {})
        poller_cfg = config.get("POLLER", {})
        self.master_account = master_cfg.get("account_id", "Master")
        self.poll_interval = float(poller_cfg.get("interval", 5))

        self.ingestor = ingestor
        self.engine = engine
        self.rate_limiter = rate_limiter or RateLimiter(
            max_requests_per_10s=int(poller_cfg.get("max_requests_per_10s", 20))
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.started_at = self._clock()

        self.metrics = {
            "polls": 0,
            "errors": 0,
            "trades_copied": 0,
            "latencies": deque(maxlen=LATENCY_WINDOW),
        }

    # -------------------------------------------------------------------- #
    def _is_new(self, trade: Trade) -> bool:
        if is_unknown_timestamp(trade.executed_at):
            self.logger.warning(
                "Trade %s has no execution time; not copying automatically", trade.id
            )
            return False
        try:
            return parse_instant(trade.executed_at) >= self.started_at
        except ValueError:
            return False

    async def poll_once(self) -> List[Trade]:
        """One ingest + fan-out cycle.  Returns the trades that were fanned out."""
        await self.rate_limiter.acquire()
        self.metrics["polls"] += 1

        t0 = time.monotonic()
        try:
            trades = await self.ingestor.fetch_master_trades(self.master_account)
        except CopyTradingError as exc:
            self.metrics["errors"] += 1
            self.logger.warning("Fetching master trades failed: %s", exc)
            return []
        except Exception as exc:
            self.metrics["errors"] += 1
            self.logger.warning("Unexpected error reading master trades: %r", exc)
            return []
        self.metrics["latencies"].append(time.monotonic() - t0)

        fresh = [t for t in reversed(trades) if self._is_new(t)]  # oldest first
        copied: List[Trade] = []
        for trade in fresh:
            try:
                result = await self.engine.execute_trade(trade, master_id=self.master_account)
            except ValidationError as ve:
                self.logger.warning("Trade %s not copyable: %s", trade.id, ve)
                continue
            except DirectoryError as de:
                self.metrics["errors"] += 1
                self.logger.error("Follower directory unavailable, ending cycle: %s", de)
                break
            except Exception as exc:
                self.metrics["errors"] += 1
                self.logger.error("Fan-out of trade %s failed: %r", trade.id, exc)
                continue
            copied.append(trade)
            self.metrics["trades_copied"] += result.success_count
        return copied

    def log_metrics(self) -> None:
        avg = statistics.mean(self.metrics["latencies"]) if self.metrics["latencies"] else 0
        self.logger.info(
            "📊 Polls: %s | Errors: %s | Orders copied: %s | Avg latency: %.3fs",
            self.metrics["polls"],
            self.metrics["errors"],
            self.metrics["trades_copied"],
            avg,
        )

    async def polling_loop(self) -> None:
        while True:
            await self.poll_once()
            if self.metrics["polls"] % 12 == 0:
                self.log_metrics()
            await asyncio.sleep(self.poll_interval)

    async def run(self) -> None:
        self.logger.info(
            "✅ MasterTradePoller started – master %s, every %ss",
            self.master_account,
            self.poll_interval,
        )
        try:
            await self.polling_loop()
        except asyncio.CancelledError:
            self.logger.info("Polling loop cancelled – shutting down")
