"""
utils/timestamps.py
-------------------
Turn whatever a broker calls "the time of this trade" into one canonical UTC
instant, rendered as ``YYYY-MM-DDTHH:MM:SS.mmmZ``.

Vendors disagree on both the field name and the encoding, so extraction is a
priority-ordered list of ``(field name, extractor)`` pairs.  Each non-empty
value is tried against four parsers in turn:

1. ``YYYY-MM-DD HH:MM:SS`` in exchange local time (fixed UTC+05:30);
2. a timezone-qualified ISO-8601 string;
3. a Unix epoch number (milliseconds when above 9,999,999,999, else seconds);
4. a bare ``HH:MM[:SS]`` time of day, taken as today in exchange local time.

The first candidate that parses wins.  When nothing parses, the caller's
fallback is returned, or the Unix epoch as an explicit *unknown* sentinel.
The wall clock is never substituted: a made-up execution time is worse than
an obviously wrong one.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, List, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

EXCHANGE_TZ = timezone(timedelta(hours=5, minutes=30))
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
UNKNOWN_TIMESTAMP = "1970-01-01T00:00:00.000Z"
MILLIS_THRESHOLD = 9_999_999_999

Extractor = Callable[[Mapping[str, Any]], Any]


def _field(name: str) -> Extractor:
    return lambda record: record.get(name)


def _candidates(*names: str) -> List[Tuple[str, Extractor]]:
    return [(name, _field(name)) for name in names]


# Priority order: exchange-confirmed fill time first, generic names last.
# Append new vendor fields here; nothing else needs to change.
TIMESTAMP_CANDIDATES: List[Tuple[str, Extractor]] = [
    *_candidates("FillTime", "fillTime", "FILL_TIME"),
    *_candidates("exchangeTimestamp", "ExchangeTimestamp", "exchange_timestamp", "Exch_Timestamp"),
    *_candidates("TradedTime", "tradedTime", "Ttime"),
    *_candidates("OrderTime", "orderTime", "OrderCreateTime", "CreatedTime", "UpdatedTime"),
    *_candidates("time", "Time", "timestamp", "Timestamp", "tradeTime", "executionTime"),
]

_LOCAL_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}\s\d{1,2}:\d{2}:\d{2}$")
_TIME_OF_DAY_RE = re.compile(r"^\d{1,2}:\d{2}(?::\d{2})?$")


# --------------------------------------------------------------------------- #
# Formatting
# --------------------------------------------------------------------------- #
def format_instant(value: datetime) -> str:
    """Render an aware datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_instant(value: str) -> datetime:
    """Inverse of :func:`format_instant` (accepts any aware ISO-8601 string)."""
    parsed = _parse_iso(value)
    if parsed is None:
        raise ValueError(f"not a timezone-qualified ISO-8601 instant: {value!r}")
    return parsed


def is_unknown_timestamp(value: str) -> bool:
    return value == UNKNOWN_TIMESTAMP


# --------------------------------------------------------------------------- #
# Individual parsers: each returns an aware datetime or None
# --------------------------------------------------------------------------- #
def _parse_local_datetime(val: str) -> Optional[datetime]:
    if not _LOCAL_DATETIME_RE.match(val):
        return None
    try:
        local = datetime.strptime(val, "%Y-%m-%d %H:%M:%S")
    except ValueError:
        logger.warning("[TIMESTAMP] Failed to parse exchange-local datetime: %s", val)
        return None
    return local.replace(tzinfo=EXCHANGE_TZ)


def _parse_iso(val: str) -> Optional[datetime]:
    text = val[:-1] + "+00:00" if val.endswith(("Z", "z")) else val
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed


def _parse_epoch(val: str) -> Optional[datetime]:
    try:
        num = float(val)
    except ValueError:
        return None
    if not num > 0:
        return None
    try:
        if num > MILLIS_THRESHOLD:
            return EPOCH + timedelta(milliseconds=num)
        return EPOCH + timedelta(seconds=num)
    except OverflowError:
        return None


def _parse_time_of_day(val: str, now: Optional[datetime]) -> Optional[datetime]:
    if not _TIME_OF_DAY_RE.match(val):
        return None
    parts = [int(p) for p in val.split(":")]
    hour, minute = parts[0], parts[1]
    second = parts[2] if len(parts) > 2 else 0
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    today: date = current.astimezone(EXCHANGE_TZ).date()
    try:
        return datetime(today.year, today.month, today.day, hour, minute, second, tzinfo=EXCHANGE_TZ)
    except ValueError:
        return None


def parse_timestamp_value(value: Any, now: Optional[datetime] = None) -> Optional[datetime]:
    """Try every supported encoding on a single raw value."""
    if value is None or isinstance(value, bool):
        return None
    val = str(value).strip()
    if not val:
        return None
    return (
        _parse_local_datetime(val)
        or _parse_iso(val)
        or _parse_epoch(val)
        or _parse_time_of_day(val, now)
    )


# --------------------------------------------------------------------------- #
# Public entry point
# --------------------------------------------------------------------------- #
def normalize_timestamp(
    record: Mapping[str, Any],
    fallback: Union[str, datetime, None] = None,
    *,
    now: Optional[datetime] = None,
    candidates: Optional[List[Tuple[str, Extractor]]] = None,
) -> str:
    """Return the execution instant of ``record`` as a UTC ISO-8601 string.

    ``now`` only matters for bare time-of-day values (it decides "today").
    """
    for name, extract in candidates or TIMESTAMP_CANDIDATES:
        raw = extract(record)
        if raw is None or raw == "":
            continue
        parsed = parse_timestamp_value(raw, now=now)
        if parsed is not None:
            iso = format_instant(parsed)
            logger.debug("[TIMESTAMP] Using %s=%r -> %s", name, raw, iso)
            return iso

    if fallback:
        logger.warning("[TIMESTAMP] No recognised field, using fallback %s", fallback)
        return format_instant(fallback) if isinstance(fallback, datetime) else fallback

    logger.warning(
        "[TIMESTAMP] No timestamp found in fields %s; using epoch sentinel",
        sorted(k for k in record.keys() if k != "raw")[:20],
    )
    return UNKNOWN_TIMESTAMP
