"""
utils/exceptions.py
-------------------
Error taxonomy shared by the fetch client, the ledger and the fan-out engine.

Only ``ValidationError`` and ``DirectoryError`` ever escape a fan-out call;
everything else is converted into a per-follower ``CopyAttemptRecord``.
"""
from __future__ import annotations

from typing import Iterable, Optional


class CopyTradingError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(CopyTradingError):
    """Missing/invalid trade fields or a missing idempotency key."""

    def __init__(self, message: str, missing: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.missing = list(missing)


class NetworkError(CopyTradingError):
    """Broker unreachable or non-2xx after the retry policy was exhausted."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        body: str = "",
        url: str = "",
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.url = url
        self.attempts = attempts


class ConflictError(CopyTradingError):
    """The ledger already holds a terminal record for the key."""


class DirectoryError(CopyTradingError):
    """Follower directory unavailable; eligibility cannot be determined."""


class CredentialError(CopyTradingError):
    """No usable credential could be resolved for an account."""
