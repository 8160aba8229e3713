"""
core/initialization.py
----------------------
Loads configuration from .env and wires all runtime components with simple
dependency-injection (DI) overrides.
"""

from __future__ import annotations

import os
import logging
from typing import Dict, Optional

from dotenv import load_dotenv

from module.persistence.sqlite import SQLiteFollowerDirectory, SQLiteLedger, SQLitePersistence
from modules.broker import BrokerEndpoints, BrokerGateway
from modules.credentials import TokenFileCredentialResolver
from modules.fanout_engine import FanOutEngine
from modules.fetch_client import ResilientFetchClient, RetryPolicy
from modules.ingestion import TradeIngestor
from modules.trade_poller import MasterTradePoller
from utils.config_manager import ConfigManager
from utils.config_validator import validate_config


def load_configuration(env_path: str = "config.env") -> Dict:
    """
    Load settings from an .env-style file and return a structured config dict.
    """
    log = logging.getLogger(__name__)
    load_dotenv(dotenv_path=env_path)

    base_url = os.getenv("BROKER_API_BASE_URL", "https://ant.aliceblueonline.com").rstrip("/")
    master_account = os.getenv("MASTER_ACCOUNT_ID", "Master")

    conf: Dict[str, object] = {
        "BROKER": {
            "base_url": base_url,
            "order_book_url": os.getenv(
                "BROKER_ORDERS_BOOK_ENDPOINT", f"{base_url}/open-api/od/v1/orders/book"
            ),
            "trades_url": os.getenv(
                "BROKER_TRADES_ENDPOINT", f"{base_url}/open-api/od/v1/trades"
            ),
            "order_url": os.getenv(
                "BROKER_ORDER_ENDPOINT", f"{base_url}/open-api/od/v1/orders/placeorder"
            ),
            "auth_method": os.getenv("BROKER_AUTH_METHOD", "headers"),
            "api_key": os.getenv("BROKER_API_KEY", ""),
            "api_secret": os.getenv("BROKER_API_SECRET", ""),
        },
        "MASTER": {
            "account_id": master_account,
        },
        "CREDENTIALS": {
            "tokens_file": os.getenv("BROKER_TOKENS_FILE", ".broker.tokens.json"),
        },
        "FETCH": {
            "max_attempts": int(os.getenv("FETCH_MAX_ATTEMPTS", "3")),
            "base_delay": float(os.getenv("FETCH_BASE_DELAY", "0.5")),
            "multiplier": float(os.getenv("FETCH_BACKOFF_MULTIPLIER", "2.0")),
            "timeout": float(os.getenv("FETCH_TIMEOUT", "10")),
        },
        "FANOUT": {
            "max_concurrency": int(os.getenv("FANOUT_MAX_CONCURRENCY", "1")),
        },
        "POLLER": {
            "interval": float(os.getenv("POLL_INTERVAL", "5")),
            "max_requests_per_10s": int(os.getenv("POLL_MAX_REQUESTS_PER_10S", "20")),
        },
        "LEDGER": {
            "db_path": os.getenv("LEDGER_DB_PATH", "data/copytrader.db"),
        },
    }

    log.debug("Master account: %s", master_account)
    log.debug("Order book endpoint: %s", conf["BROKER"]["order_book_url"])

    return conf


def initialize_components(
    config: Dict,
    overrides: Optional[Dict[str, object]] = None,
    logger: Optional[logging.Logger] = None,
    ) -> Dict[str, object]:
    """
    Construct and wire together all runtime components (supports DI via overrides).

    Keys you can override:
    {"logger", "persistence", "ledger", "directory", "credentials",
     "fetch_client", "broker", "engine", "ingestor", "poller"}
    """
    overrides = overrides or {}
    validate_config(config)
    cfg = ConfigManager(config)

    # 1) Logger
    from utils.logger import setup_logger
    if overrides.get("logger") is not None:
        logger = overrides["logger"]
    elif logger is None:
        logger = setup_logger("CopyTrader")

    # 2) Storage: ledger + follower directory share one SQLite file.
    # an empty in-memory ledger is falsy, so compare overrides with None
    ledger = overrides.get("ledger")
    directory = overrides.get("directory")
    persistence = overrides.get("persistence")
    if persistence is None and (ledger is None or directory is None):
        persistence = SQLitePersistence(cfg.get_ledger_path())
    if ledger is None:
        ledger = SQLiteLedger(persistence)
    if directory is None:
        directory = SQLiteFollowerDirectory(persistence)

    # 3) Credentials
    credentials = overrides.get("credentials")
    if credentials is None:
        broker_cfg = cfg.get("BROKER", {})
        credentials = TokenFileCredentialResolver(
            cfg.get_tokens_file(),
            master_account=cfg.get_master_account(),
            auth_method=broker_cfg.get("auth_method", "headers"),
            api_key=broker_cfg.get("api_key", ""),
            api_secret=broker_cfg.get("api_secret", ""),
        )

    # 4) HTTP + broker
    fetch_client = overrides.get("fetch_client")
    if fetch_client is None:
        fetch_client = ResilientFetchClient(
            RetryPolicy(**cfg.get_retry_settings()),
            timeout=cfg.get_fetch_timeout(),
            logger=logger,
        )
    broker = overrides.get("broker")
    if broker is None:
        broker = BrokerGateway(
            fetch_client,
            credentials,
            BrokerEndpoints(**cfg.get_endpoints()),
            logger=logger,
        )

    # 5) Fan-out + ingestion + poller
    engine = overrides.get("engine")
    if engine is None:
        engine = FanOutEngine(
            directory,
            ledger,
            broker,
            max_concurrency=cfg.get_max_concurrency(),
            logger=logger,
        )
    ingestor = overrides.get("ingestor")
    if ingestor is None:
        ingestor = TradeIngestor(broker, logger=logger)
    poller = overrides.get("poller")
    if poller is None:
        poller = MasterTradePoller(config, logger=logger, ingestor=ingestor, engine=engine)

    logger.info("✅ Ledger initialized (%s).", ledger.__class__.__name__)
    logger.info("✅ Follower directory initialized (%s).", directory.__class__.__name__)
    logger.info("✅ Broker gateway initialized.")
    logger.info("✅ Fan-out engine initialized (max_concurrency=%d).", engine.max_concurrency)

    return {
        "logger": logger,
        "persistence": persistence,
        "ledger": ledger,
        "directory": directory,
        "credentials": credentials,
        "fetch_client": fetch_client,
        "broker": broker,
        "engine": engine,
        "ingestor": ingestor,
        "poller": poller,
    }
