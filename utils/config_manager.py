from typing import Any, Dict


class ConfigManager:
    def __init__(self, config: Dict[str, Any]):
        self.config = config

    def get(self, key: str, default: Any = None) -> Any:
        return self.config.get(key, default)

    def get_master_account(self) -> str:
        return self.config.get("MASTER", {}).get("account_id") or "Master"

    def get_endpoints(self) -> Dict[str, str]:
        broker = self.config.get("BROKER", {})
        return {
            k: broker[k]
            for k in ("order_book_url", "trades_url", "order_url")
            if broker.get(k)
        }

    def get_retry_settings(self) -> Dict[str, float]:
        fetch = self.config.get("FETCH", {})
        return {
            "max_attempts": int(fetch.get("max_attempts", 3)),
            "base_delay": float(fetch.get("base_delay", 0.5)),
            "multiplier": float(fetch.get("multiplier", 2.0)),
        }

    def get_fetch_timeout(self) -> float:
        return float(self.config.get("FETCH", {}).get("timeout", 10))

    def get_max_concurrency(self) -> int:
        return int(self.config.get("FANOUT", {}).get("max_concurrency", 1))

    def get_ledger_path(self) -> str:
        return self.config.get("LEDGER", {}).get("db_path") or "data/copytrader.db"

    def get_tokens_file(self) -> str:
        return self.config.get("CREDENTIALS", {}).get("tokens_file") or ".broker.tokens.json"
