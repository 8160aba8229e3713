import logging
import os
from unittest.mock import MagicMock

import pytest

from core.initialization import initialize_components, load_configuration
from module.persistence.sqlite import SQLiteLedger
from modules.follower_directory import InMemoryFollowerDirectory
from modules.ledger import InMemoryLedger
from utils.config_manager import ConfigManager
from utils.config_validator import validate_config

# ------------------------- Fixtures ------------------------- #

@pytest.fixture
def clean_env(monkeypatch):
    """Isolate os.environ so load_dotenv cannot leak into other tests."""
    env = {k: v for k, v in os.environ.items()
           if not k.startswith(("BROKER_", "MASTER_", "FETCH_", "FANOUT_", "POLL_", "LEDGER_"))}
    monkeypatch.setattr(os, "environ", env)
    return env


@pytest.fixture
def config(clean_env, tmp_path):
    conf = load_configuration(str(tmp_path / "missing.env"))
    conf["LEDGER"]["db_path"] = str(tmp_path / "ledger.db")
    return conf

# ------------------------- Tests ------------------------- #

def test_defaults(config):
    assert config["MASTER"]["account_id"] == "Master"
    assert config["BROKER"]["order_url"] == "https://ant.aliceblueonline.com/open-api/od/v1/orders/placeorder"
    assert config["FETCH"] == {"max_attempts": 3, "base_delay": 0.5, "multiplier": 2.0, "timeout": 10.0}
    assert config["FANOUT"]["max_concurrency"] == 1


def test_env_file_is_read(clean_env, tmp_path):
    env_file = tmp_path / "config.env"
    env_file.write_text(
        "MASTER_ACCOUNT_ID=2548613\n"
        "BROKER_API_BASE_URL=https://broker.test/\n"
        "FETCH_MAX_ATTEMPTS=5\n"
        "FANOUT_MAX_CONCURRENCY=4\n"
    )
    conf = load_configuration(str(env_file))

    assert conf["MASTER"]["account_id"] == "2548613"
    assert conf["BROKER"]["trades_url"] == "https://broker.test/open-api/od/v1/trades"
    assert conf["FETCH"]["max_attempts"] == 5
    assert conf["FANOUT"]["max_concurrency"] == 4


def test_config_manager_helpers(config):
    cfg = ConfigManager(config)
    assert cfg.get_retry_settings() == {"max_attempts": 3, "base_delay": 0.5, "multiplier": 2.0}
    assert set(cfg.get_endpoints()) == {"order_book_url", "trades_url", "order_url"}
    assert cfg.get_master_account() == "Master"


@pytest.mark.parametrize("section", ["BROKER", "MASTER", "FETCH", "FANOUT", "LEDGER"])
def test_missing_section(config, section):
    del config[section]
    with pytest.raises(ValueError):
        validate_config(config)


def test_section_must_be_dict(config):
    config["FETCH"] = ["max_attempts", 3]
    with pytest.raises(TypeError):
        validate_config(config)


@pytest.mark.parametrize(
    "section,key,value",
    [
        ("MASTER", "account_id", ""),
        ("BROKER", "order_url", ""),
        ("FETCH", "max_attempts", 0),
        ("FANOUT", "max_concurrency", 0),
    ],
)
def test_invalid_values(config, section, key, value):
    config[section][key] = value
    with pytest.raises(ValueError):
        validate_config(config)


@pytest.mark.asyncio
async def test_initialize_components_wires_sqlite(config):
    components = initialize_components(config, logger=logging.getLogger("test-init"))
    try:
        assert isinstance(components["ledger"], SQLiteLedger)
        assert components["engine"].ledger is components["ledger"]
        assert components["broker"].fetch_client is components["fetch_client"]
        assert components["fetch_client"].policy.max_attempts == 3
        assert components["poller"].master_account == "Master"
    finally:
        await components["fetch_client"].close()
        components["persistence"].close()


def test_initialize_components_overrides(config):
    ledger = InMemoryLedger()
    directory = InMemoryFollowerDirectory()
    fetch_client = MagicMock()

    components = initialize_components(
        config,
        overrides={"ledger": ledger, "directory": directory, "fetch_client": fetch_client},
        logger=logging.getLogger("test-init"),
    )

    assert len(ledger) == 0
    assert components["persistence"] is None
    assert components["ledger"] is ledger
    assert components["engine"].ledger is ledger
    assert components["engine"].directory is directory
    assert components["broker"].fetch_client is fetch_client
