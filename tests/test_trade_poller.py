import asyncio
import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from models.trade import Side, Trade
from modules.trade_poller import MasterTradePoller, RateLimiter
from utils.exceptions import DirectoryError, NetworkError, ValidationError
from utils.timestamps import UNKNOWN_TIMESTAMP

# ------------------------- Fixtures ------------------------- #

def make_trade(trade_id, executed_at):
    return Trade(
        id=trade_id, account="2548613", symbol="INFY-EQ", side=Side.BUY,
        quantity=10, traded_quantity=10, price=1500.0, product="MIS",
        order_type="L", status="complete", executed_at=executed_at,
    )


@pytest.fixture
def mock_config():
    return {
        "MASTER": {"account_id": "2548613"},
        "POLLER": {"interval": 0.01, "max_requests_per_10s": 5},
    }


@pytest.fixture
def trades():
    # newest first, as the ingestor returns them
    return [
        make_trade("T3", "2024-02-10T04:40:00.000Z"),
        make_trade("T2", "2024-02-10T04:35:00.000Z"),
        make_trade("T1", "2024-02-10T03:00:00.000Z"),
        make_trade("T0", UNKNOWN_TIMESTAMP),
    ]


@pytest.fixture
def mock_ingestor(trades):
    ingestor = MagicMock()
    ingestor.fetch_master_trades = AsyncMock(return_value=trades)
    return ingestor


@pytest.fixture
def mock_engine():
    engine = MagicMock()
    engine.execute_trade = AsyncMock(return_value=MagicMock(success_count=2))
    return engine


@pytest.fixture
def mock_rate_limiter():
    limiter = MagicMock()
    limiter.acquire = AsyncMock()
    return limiter


@pytest.fixture
def poller(mock_config, mock_ingestor, mock_engine, mock_rate_limiter):
    return MasterTradePoller(
        config=mock_config,
        logger=logging.getLogger("test-poller"),
        ingestor=mock_ingestor,
        engine=mock_engine,
        rate_limiter=mock_rate_limiter,
        clock=lambda: datetime(2024, 2, 10, 4, 0, tzinfo=timezone.utc),
    )

# ------------------------- Tests ------------------------- #

@pytest.mark.asyncio
async def test_rate_limiter():
    limiter = RateLimiter(max_requests_per_10s=2)
    await limiter.acquire()
    await limiter.acquire()
    assert len(limiter.timestamps) == 2


@pytest.mark.asyncio
async def test_rate_limiter_waits_out_the_window():
    now = [100.0]
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)
        now[0] += seconds

    limiter = RateLimiter(max_requests_per_10s=2, window=5.0, clock=lambda: now[0], sleep=fake_sleep)
    await limiter.acquire()
    now[0] += 1.0
    await limiter.acquire()
    await limiter.acquire()

    assert waits == [4.0]
    assert list(limiter.timestamps) == [101.0, 105.0]


def test_rate_limiter_rejects_empty_window():
    with pytest.raises(ValueError):
        RateLimiter(max_requests_per_10s=0)
    with pytest.raises(ValueError):
        RateLimiter(max_requests_per_10s=1, window=0)


@pytest.mark.asyncio
async def test_poll_once_copies_only_new_trades_oldest_first(poller, mock_engine, mock_rate_limiter):
    copied = await poller.poll_once()

    assert [t.id for t in copied] == ["T2", "T3"]
    called = [c.args[0].id for c in mock_engine.execute_trade.await_args_list]
    assert called == ["T2", "T3"]
    assert all(c.kwargs["master_id"] == "2548613" for c in mock_engine.execute_trade.await_args_list)
    mock_rate_limiter.acquire.assert_awaited_once()
    assert poller.metrics["polls"] == 1
    assert poller.metrics["trades_copied"] == 4
    assert len(poller.metrics["latencies"]) == 1


@pytest.mark.asyncio
async def test_unknown_timestamp_never_copied(poller, mock_ingestor, mock_engine, caplog):
    mock_ingestor.fetch_master_trades.return_value = [make_trade("T0", UNKNOWN_TIMESTAMP)]

    with caplog.at_level(logging.WARNING, logger="test-poller"):
        copied = await poller.poll_once()

    assert copied == []
    mock_engine.execute_trade.assert_not_called()
    assert "no execution time" in caplog.text


@pytest.mark.asyncio
async def test_fetch_failure_counts_error(poller, mock_ingestor, mock_engine):
    mock_ingestor.fetch_master_trades.side_effect = NetworkError("HTTP 502", status=502)

    assert await poller.poll_once() == []
    assert poller.metrics["errors"] == 1
    mock_engine.execute_trade.assert_not_called()


@pytest.mark.asyncio
async def test_undecodable_trade_book_does_not_stop_polling(poller, mock_ingestor, mock_engine, trades):
    mock_ingestor.fetch_master_trades.side_effect = [
        UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"),
        trades,
    ]

    assert await poller.poll_once() == []
    assert poller.metrics["errors"] == 1
    mock_engine.execute_trade.assert_not_called()

    copied = await poller.poll_once()
    assert [t.id for t in copied] == ["T2", "T3"]


@pytest.mark.asyncio
async def test_unexpected_fanout_error_moves_to_next_trade(poller, mock_engine):
    mock_engine.execute_trade.side_effect = [RuntimeError("boom"), MagicMock(success_count=1)]
    copied = await poller.poll_once()
    assert [t.id for t in copied] == ["T3"]
    assert poller.metrics["errors"] == 1


def test_latencies_are_bounded(poller):
    assert poller.metrics["latencies"].maxlen is not None


@pytest.mark.asyncio
async def test_validation_error_skips_one_trade(poller, mock_engine):
    mock_engine.execute_trade.side_effect = [
        ValidationError("Missing required trade fields: price", missing=["price"]),
        MagicMock(success_count=1),
    ]
    copied = await poller.poll_once()
    assert [t.id for t in copied] == ["T3"]
    assert poller.metrics["trades_copied"] == 1


@pytest.mark.asyncio
async def test_directory_error_ends_cycle(poller, mock_engine):
    mock_engine.execute_trade.side_effect = DirectoryError("down")
    copied = await poller.poll_once()
    assert copied == []
    assert mock_engine.execute_trade.await_count == 1
    assert poller.metrics["errors"] == 1


def test_log_metrics(poller, caplog):
    poller.metrics.update({"polls": 10, "errors": 2, "trades_copied": 5, "latencies": [0.1, 0.2, 0.3]})
    with caplog.at_level(logging.INFO, logger="test-poller"):
        poller.log_metrics()
    assert "📊 Polls: 10 | Errors: 2 | Orders copied: 5 | Avg latency: 0.200s" in caplog.text


@pytest.mark.asyncio
async def test_run_stops_on_cancel(poller, mock_ingestor):
    mock_ingestor.fetch_master_trades.return_value = []
    task = asyncio.create_task(poller.run())
    await asyncio.sleep(0.05)
    task.cancel()
    await task  # run() swallows the cancellation and returns
    assert poller.metrics["polls"] >= 1
