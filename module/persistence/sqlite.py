"""
persistence/sqlite.py
---------------------
SQLite storage for the replication ledger and the follower directory.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import List, Optional

from models.copy_attempt import CopyAttemptRecord, CopyOutcome
from models.follower import DEFAULT_MAX_ORDER_QUANTITY, Follower, FollowerStatus
from modules.follower_directory import FollowerDirectory
from modules.ledger import InsertResult, ReplicationLedger
from utils.exceptions import ConflictError

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS followers (
    id            TEXT PRIMARY KEY,
    master_id     TEXT,
    follower_name TEXT,
    status        TEXT DEFAULT 'active',
    created_at    TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS follower_credentials (
    follower_id        TEXT PRIMARY KEY REFERENCES followers(id),
    credential_ref     TEXT,
    lot_multiplier     REAL DEFAULT 1.0,
    max_order_quantity INTEGER
);

CREATE TABLE IF NOT EXISTS follower_consents (
    follower_id         TEXT PRIMARY KEY REFERENCES followers(id),
    copy_trading_active INTEGER DEFAULT 0,
    updated_at          TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS copied_trade_history (
    master_trade_id TEXT NOT NULL,
    follower_id     TEXT NOT NULL,
    follower_name   TEXT,
    symbol          TEXT,
    side            TEXT,
    master_qty      REAL,
    follower_qty    INTEGER,
    price           REAL,
    outcome         TEXT NOT NULL,
    reason          TEXT,
    broker_order_id TEXT,
    recorded_at     TEXT,
    PRIMARY KEY (master_trade_id, follower_id)
);
"""

_FOLLOWER_SELECT = """
SELECT
  f.id, f.master_id, f.follower_name, f.status,
  fc.credential_ref, fc.lot_multiplier, fc.max_order_quantity,
  fcon.copy_trading_active
FROM followers f
LEFT JOIN follower_credentials fc ON f.id = fc.follower_id
LEFT JOIN follower_consents fcon ON f.id = fcon.follower_id
"""


class SQLitePersistence:
    def __init__(self, db_path: str = "copytrader.db"):
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(SCHEMA)
        self.conn.commit()
        self.lock = threading.Lock()

    def close(self) -> None:
        self.conn.close()


class SQLiteLedger(ReplicationLedger):
    """Ledger on ``copied_trade_history``; the composite primary key is the guard."""

    def __init__(self, persistence: SQLitePersistence):
        self.db = persistence

    @staticmethod
    def _to_record(row: sqlite3.Row) -> CopyAttemptRecord:
        return CopyAttemptRecord(
            master_trade_id=row["master_trade_id"],
            follower_id=row["follower_id"],
            follower_qty=int(row["follower_qty"] or 0),
            outcome=CopyOutcome(row["outcome"]),
            recorded_at=row["recorded_at"] or "",
            reason=row["reason"],
            broker_order_id=row["broker_order_id"],
            follower_name=row["follower_name"] or "",
            symbol=row["symbol"] or "",
            side=row["side"] or "",
            master_qty=float(row["master_qty"] or 0),
            price=float(row["price"] or 0),
        )

    @staticmethod
    def _params(record: CopyAttemptRecord) -> dict:
        return {
            "master_trade_id": record.master_trade_id,
            "follower_id": record.follower_id,
            "follower_name": record.follower_name,
            "symbol": record.symbol,
            "side": record.side,
            "master_qty": record.master_qty,
            "follower_qty": record.follower_qty,
            "price": record.price,
            "outcome": record.outcome.value,
            "reason": record.reason,
            "broker_order_id": record.broker_order_id,
            "recorded_at": record.recorded_at,
        }

    # ---------------------------- READS ---------------------------------- #
    def lookup(self, trade_id: str, follower_id: str) -> Optional[CopyAttemptRecord]:
        with self.db.lock:
            row = self.db.conn.execute(
                "SELECT * FROM copied_trade_history WHERE master_trade_id = ? AND follower_id = ?",
                (trade_id, follower_id),
            ).fetchone()
        return self._to_record(row) if row else None

    def history(self, follower_id: Optional[str] = None) -> List[CopyAttemptRecord]:
        sql = "SELECT * FROM copied_trade_history"
        args: tuple = ()
        if follower_id is not None:
            sql += " WHERE follower_id = ?"
            args = (follower_id,)
        with self.db.lock:
            rows = self.db.conn.execute(sql + " ORDER BY rowid", args).fetchall()
        return [self._to_record(r) for r in rows]

    # ---------------------------- WRITES --------------------------------- #
    def insert_if_absent(self, record: CopyAttemptRecord) -> InsertResult:
        if record.outcome == CopyOutcome.SKIPPED:
            raise ValueError("SKIPPED outcomes are never written to the ledger")
        with self.db.lock:
            cur = self.db.conn.execute(
                """
                INSERT INTO copied_trade_history
                  (master_trade_id, follower_id, follower_name, symbol, side, master_qty,
                   follower_qty, price, outcome, reason, broker_order_id, recorded_at)
                VALUES
                  (:master_trade_id, :follower_id, :follower_name, :symbol, :side, :master_qty,
                   :follower_qty, :price, :outcome, :reason, :broker_order_id, :recorded_at)
                ON CONFLICT(master_trade_id, follower_id) DO NOTHING
                """,
                self._params(record),
            )
            self.db.conn.commit()
        return InsertResult.INSERTED if cur.rowcount == 1 else InsertResult.CONFLICT

    def complete(self, record: CopyAttemptRecord) -> None:
        if not record.outcome.is_terminal:
            raise ValueError(f"complete() needs a terminal outcome, got {record.outcome}")
        with self.db.lock:
            cur = self.db.conn.execute(
                """
                UPDATE copied_trade_history
                SET outcome = :outcome, reason = :reason, broker_order_id = :broker_order_id,
                    follower_qty = :follower_qty, recorded_at = :recorded_at
                WHERE master_trade_id = :master_trade_id AND follower_id = :follower_id
                  AND outcome = 'PENDING'
                """,
                self._params(record),
            )
            self.db.conn.commit()
        if cur.rowcount != 1:
            raise ConflictError(f"No pending claim for {record.key}")


class SQLiteFollowerDirectory(FollowerDirectory):
    def __init__(self, persistence: SQLitePersistence):
        self.db = persistence

    @staticmethod
    def _to_follower(row: sqlite3.Row) -> Follower:
        try:
            status = FollowerStatus(str(row["status"] or "").lower())
        except ValueError:
            status = FollowerStatus.DISABLED
        return Follower(
            id=row["id"],
            name=row["follower_name"] or "",
            status=status,
            credential_ref=row["credential_ref"] or row["id"],
            lot_multiplier=float(row["lot_multiplier"] or 1.0),
            max_order_quantity=int(row["max_order_quantity"] or DEFAULT_MAX_ORDER_QUANTITY),
            copy_trading_enabled=bool(row["copy_trading_active"]),
            master_id=row["master_id"],
        )

    def list_eligible_followers(self, master_id: Optional[str] = None) -> List[Follower]:
        sql = _FOLLOWER_SELECT + " WHERE f.status = 'active' AND fcon.copy_trading_active = 1"
        args: tuple = ()
        if master_id is not None:
            sql += " AND (f.master_id = ? OR f.master_id IS NULL)"
            args = (master_id,)
        with self.db.lock:
            rows = self.db.conn.execute(sql + " ORDER BY f.created_at, f.id", args).fetchall()
        return [self._to_follower(r) for r in rows]

    def get_follower(self, follower_id: str) -> Optional[Follower]:
        with self.db.lock:
            row = self.db.conn.execute(_FOLLOWER_SELECT + " WHERE f.id = ?", (follower_id,)).fetchone()
        return self._to_follower(row) if row else None

    def add_follower(self, follower: Follower) -> None:
        """Insert or update all three follower tables in one transaction."""
        with self.db.lock, self.db.conn:
            self.db.conn.execute(
                """
                INSERT INTO followers (id, master_id, follower_name, status)
                VALUES (:id, :master_id, :name, :status)
                ON CONFLICT(id) DO UPDATE SET
                  master_id = excluded.master_id,
                  follower_name = excluded.follower_name,
                  status = excluded.status
                """,
                {
                    "id": follower.id,
                    "master_id": follower.master_id,
                    "name": follower.name,
                    "status": follower.status.value,
                },
            )
            self.db.conn.execute(
                """
                INSERT INTO follower_credentials (follower_id, credential_ref, lot_multiplier, max_order_quantity)
                VALUES (:id, :ref, :mult, :max_qty)
                ON CONFLICT(follower_id) DO UPDATE SET
                  credential_ref = excluded.credential_ref,
                  lot_multiplier = excluded.lot_multiplier,
                  max_order_quantity = excluded.max_order_quantity
                """,
                {
                    "id": follower.id,
                    "ref": follower.credential_ref,
                    "mult": follower.lot_multiplier,
                    "max_qty": follower.max_order_quantity,
                },
            )
            self._upsert_consent(follower.id, follower.copy_trading_enabled)

    def set_copy_trading(self, follower_id: str, enabled: bool) -> Follower:
        """Toggle a follower's copy-trading consent."""
        with self.db.lock, self.db.conn:
            exists = self.db.conn.execute(
                "SELECT 1 FROM followers WHERE id = ?", (follower_id,)
            ).fetchone()
            if not exists:
                raise KeyError(f"Follower not found: {follower_id}")
            self._upsert_consent(follower_id, enabled)
        return self.get_follower(follower_id)

    def _upsert_consent(self, follower_id: str, enabled: bool) -> None:
        self.db.conn.execute(
            """
            INSERT INTO follower_consents (follower_id, copy_trading_active, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(follower_id) DO UPDATE SET
              copy_trading_active = excluded.copy_trading_active,
              updated_at = CURRENT_TIMESTAMP
            """,
            (follower_id, 1 if enabled else 0),
        )
