"""
fanout_engine.py
----------------
Replicates one master trade onto every selected follower.

Per follower, in list order:

1. an existing ledger record means the pair was already handled -> SKIPPED;
2. ``floor(master_qty * lot_multiplier)`` capped at ``max_order_quantity``;
   a zero result is SKIPPED without touching the ledger (it is a pure
   function of the inputs, so repeating it is harmless);
3. the key is claimed with a PENDING record (conditional insert); losing
   that race also means SKIPPED;
4. the order goes to the follower's own account and the claim is completed
   as SUCCESS or FAILED.  If recording the completion fails the outcome is
   still reported and the claim stays PENDING.

A failure for one follower never stops the others.  Only precondition
failures (``ValidationError``) and an unreachable directory
(``DirectoryError``) escape :meth:`FanOutEngine.execute`.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple, Union

from models.copy_attempt import (
    ALREADY_PROCESSED,
    FOLLOWER_NOT_ELIGIBLE,
    FOLLOWER_NOT_FOUND,
    QUANTITY_TOO_SMALL,
    CopyAttemptRecord,
    CopyOutcome,
    FanOutResult,
)
from models.copy_request import ALL_FOLLOWERS, CopyRequest
from models.follower import Follower
from models.trade import Trade
from modules.broker import BrokerGateway, FollowerOrder
from modules.follower_directory import FollowerDirectory
from modules.ledger import InsertResult, ReplicationLedger
from utils.exceptions import DirectoryError
from utils.timestamps import format_instant

Selector = Union[str, Sequence[str], None]


def scale_quantity(master_qty: float, follower: Follower) -> int:
    """Follower order size: floor of the scaled quantity, clamped to the cap."""
    qty = math.floor(master_qty * follower.lot_multiplier)
    return max(0, min(qty, follower.max_order_quantity))


def new_copy_trade_id() -> str:
    return f"copytrade_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class FanOutEngine:
    def __init__(
        self,
        directory: FollowerDirectory,
        ledger: ReplicationLedger,
        broker: BrokerGateway,
        *,
        max_concurrency: int = 1,
        logger: Optional[logging.Logger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.directory = directory
        self.ledger = ledger
        self.broker = broker
        self.max_concurrency = max_concurrency
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> str:
        return format_instant(self._clock())

    # ------------------------------------------------------------------ #
    # Follower selection
    # ------------------------------------------------------------------ #
    def _select_followers(
        self, request: CopyRequest
    ) -> List[Tuple[str, Optional[Follower]]]:
        """(follower id, follower or None) pairs in request order."""
        ids = request.target_follower_ids()
        try:
            if ids is None:
                found = self.directory.list_eligible_followers(request.master_id)
                return [(f.id, f) for f in found]
            unique_ids = list(dict.fromkeys(ids))
            return [(fid, self.directory.get_follower(fid)) for fid in unique_ids]
        except Exception as exc:  # noqa: BLE001 - any directory failure aborts the call
            raise DirectoryError(f"Follower directory unavailable: {exc}") from exc

    def _skip(
        self,
        request: CopyRequest,
        follower_id: str,
        reason: str,
        *,
        follower: Optional[Follower] = None,
        qty: int = 0,
    ) -> CopyAttemptRecord:
        return CopyAttemptRecord(
            master_trade_id=request.trade_id,
            follower_id=follower_id,
            follower_qty=qty,
            outcome=CopyOutcome.SKIPPED,
            recorded_at=self._now(),
            reason=reason,
            follower_name=follower.name if follower else "",
            symbol=request.symbol.upper(),
            side=request.canonical_side.transaction_type,
            master_qty=request.master_qty,
            price=request.price,
        )

    # ------------------------------------------------------------------ #
    # Per-follower algorithm
    # ------------------------------------------------------------------ #
    async def _copy_to_follower(
        self, request: CopyRequest, follower: Follower
    ) -> CopyAttemptRecord:
        trade_id = request.trade_id

        if self.ledger.lookup(trade_id, follower.id) is not None:
            self.logger.debug("[COPY-TRADE] Skipping duplicate: %s to %s", trade_id, follower.id)
            return self._skip(request, follower.id, ALREADY_PROCESSED, follower=follower)

        qty = scale_quantity(request.master_qty, follower)
        if qty == 0:
            return self._skip(request, follower.id, QUANTITY_TOO_SMALL, follower=follower)

        claim = CopyAttemptRecord(
            master_trade_id=trade_id,
            follower_id=follower.id,
            follower_qty=qty,
            outcome=CopyOutcome.PENDING,
            recorded_at=self._now(),
            follower_name=follower.name,
            symbol=request.symbol.upper(),
            side=request.canonical_side.transaction_type,
            master_qty=request.master_qty,
            price=request.price,
        )
        if self.ledger.insert_if_absent(claim) is InsertResult.CONFLICT:
            self.logger.info("[COPY-TRADE] Lost claim race: %s to %s", trade_id, follower.id)
            return self._skip(request, follower.id, ALREADY_PROCESSED, follower=follower, qty=qty)

        # Once claimed, the broker call and the ledger update must finish
        # together even if the caller goes away.
        return await asyncio.shield(self._place_and_record(request, follower, claim))

    async def _place_and_record(
        self, request: CopyRequest, follower: Follower, claim: CopyAttemptRecord
    ) -> CopyAttemptRecord:
        order = FollowerOrder(
            trade_id=request.trade_id,
            symbol=request.symbol,
            side=request.canonical_side,
            quantity=claim.follower_qty,
            price=request.price,
            order_type=request.order_type,
            product=request.product_type,
        )
        try:
            ack = await self.broker.place_order(follower, order)
        except Exception as exc:  # noqa: BLE001 - one follower never aborts the rest
            self.logger.error(
                "[COPY-TRADE] Error trading with follower %s: %s", follower.id, exc
            )
            final = claim.finish(CopyOutcome.FAILED, self._now(), reason=str(exc) or repr(exc))
        else:
            if ack.accepted:
                final = claim.finish(
                    CopyOutcome.SUCCESS, self._now(), broker_order_id=ack.order_id
                )
                self.logger.info(
                    "[COPY-TRADE] Success: %s to %s (qty: %d)",
                    request.trade_id, follower.name or follower.id, claim.follower_qty,
                )
            else:
                final = claim.finish(CopyOutcome.FAILED, self._now(), reason=ack.reason)
                self.logger.error(
                    "[COPY-TRADE] Failed: %s to %s - %s",
                    request.trade_id, follower.name or follower.id, ack.reason,
                )
        try:
            self.ledger.complete(final)
        except Exception as exc:  # noqa: BLE001 - the order is already at the broker
            self.logger.error(
                "[COPY-TRADE] Could not record %s for follower %s (%s): %s",
                request.trade_id, follower.id, final.outcome.value, exc,
            )
        return final

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    async def execute(self, request: CopyRequest) -> FanOutResult:
        """Fan ``request`` out to its followers and return every outcome.

        Cancelling this coroutine stops followers that have not started;
        orders already sent are still recorded.
        """
        request.check_preconditions()
        selected = self._select_followers(request)
        result = FanOutResult(master_trade_id=request.trade_id, copy_trade_id=new_copy_trade_id())

        if not selected:
            self.logger.warning(
                "[COPY-TRADE] No eligible followers for trade %s", request.trade_id
            )
            return result

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run_one(follower_id: str, follower: Optional[Follower]) -> CopyAttemptRecord:
            if follower is None:
                return self._skip(request, follower_id, FOLLOWER_NOT_FOUND)
            if not follower.is_eligible:
                return self._skip(request, follower_id, FOLLOWER_NOT_ELIGIBLE, follower=follower)
            async with semaphore:
                try:
                    return await self._copy_to_follower(request, follower)
                except Exception as exc:  # noqa: BLE001 - e.g. ledger storage failure
                    self.logger.exception(
                        "[COPY-TRADE] Unexpected error for follower %s", follower_id
                    )
                    return CopyAttemptRecord(
                        master_trade_id=request.trade_id,
                        follower_id=follower_id,
                        follower_qty=0,
                        outcome=CopyOutcome.FAILED,
                        recorded_at=self._now(),
                        reason=str(exc) or repr(exc),
                        follower_name=follower.name,
                        symbol=request.symbol.upper(),
                        side=request.canonical_side.transaction_type,
                        master_qty=request.master_qty,
                        price=request.price,
                    )

        result.records = list(
            await asyncio.gather(*(run_one(fid, f) for fid, f in selected))
        )

        # trades already copied come back on every poll; keep their summary quiet
        repeat = result.skipped_duplicate_count > 0 and (
            result.skipped_duplicate_count + result.skipped_quantity_count == result.total_followers
        )
        self.logger.log(
            logging.DEBUG if repeat else logging.INFO,
            "[COPY-TRADE] Summary for %s %s: %d success, %d skipped, %d failed, out of %d followers",
            request.symbol, request.side, result.success_count, result.skipped_count,
            result.failed_count, result.total_followers,
        )
        return result

    async def execute_trade(
        self,
        trade: Trade,
        followers: Selector = ALL_FOLLOWERS,
        master_id: Optional[str] = None,
    ) -> FanOutResult:
        """Fan out a normalized master trade."""
        request = CopyRequest(
            trade_id=trade.id,
            master_id=master_id or trade.account,
            symbol=trade.symbol,
            side=trade.side.value,
            master_qty=trade.traded_quantity or trade.quantity,
            price=trade.price,
            product_type=trade.product or "MIS",
            order_type=trade.order_type or "REGULAR",
            followers=followers if isinstance(followers, str) or followers is None else list(followers),
        )
        return await self.execute(request)
