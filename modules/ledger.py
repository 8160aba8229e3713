"""
ledger.py
---------
Replication ledger: at most one record per (master trade, follower).

The engine claims a key with a PENDING record through
:meth:`ReplicationLedger.insert_if_absent` immediately before calling the
broker, then turns it into SUCCESS or FAILED with :meth:`complete`.  The
conditional insert is what makes two concurrent fan-outs of the same trade
safe: exactly one of them gets ``INSERTED``, the other sees ``CONFLICT`` and
reports the follower as skipped.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, Tuple

from models.copy_attempt import CopyAttemptRecord, CopyOutcome
from utils.exceptions import ConflictError


class InsertResult(str, Enum):
    INSERTED = "inserted"
    CONFLICT = "conflict"


class ReplicationLedger(ABC):
    @abstractmethod
    def lookup(self, trade_id: str, follower_id: str) -> Optional[CopyAttemptRecord]:
        raise NotImplementedError

    @abstractmethod
    def insert_if_absent(self, record: CopyAttemptRecord) -> InsertResult:
        """Store ``record`` only if its key is free."""
        raise NotImplementedError

    @abstractmethod
    def complete(self, record: CopyAttemptRecord) -> None:
        """Replace a PENDING record with its terminal version.

        Raises ConflictError if the key is unknown or already terminal.
        """
        raise NotImplementedError

    @abstractmethod
    def history(self, follower_id: Optional[str] = None) -> List[CopyAttemptRecord]:
        """All records, oldest first, optionally for one follower."""
        raise NotImplementedError


def _check_storable(record: CopyAttemptRecord) -> None:
    if record.outcome == CopyOutcome.SKIPPED:
        raise ValueError("SKIPPED outcomes are never written to the ledger")


class InMemoryLedger(ReplicationLedger):
    """Dict-backed ledger; a lock makes check-and-insert atomic across threads."""

    def __init__(self) -> None:
        self._records: Dict[Tuple[str, str], CopyAttemptRecord] = {}
        self._lock = threading.Lock()

    def lookup(self, trade_id: str, follower_id: str) -> Optional[CopyAttemptRecord]:
        with self._lock:
            return self._records.get((trade_id, follower_id))

    def insert_if_absent(self, record: CopyAttemptRecord) -> InsertResult:
        _check_storable(record)
        with self._lock:
            if record.key in self._records:
                return InsertResult.CONFLICT
            self._records[record.key] = record
            return InsertResult.INSERTED

    def complete(self, record: CopyAttemptRecord) -> None:
        if not record.outcome.is_terminal:
            raise ValueError(f"complete() needs a terminal outcome, got {record.outcome}")
        with self._lock:
            current = self._records.get(record.key)
            if current is None:
                raise ConflictError(f"No claim recorded for {record.key}")
            if current.outcome.is_terminal:
                raise ConflictError(f"{record.key} already {current.outcome.value}")
            self._records[record.key] = record

    def history(self, follower_id: Optional[str] = None) -> List[CopyAttemptRecord]:
        with self._lock:
            records = list(self._records.values())
        if follower_id is not None:
            records = [r for r in records if r.follower_id == follower_id]
        return records

    def __len__(self) -> int:
        return len(self._records)
