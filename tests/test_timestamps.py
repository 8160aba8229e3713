from datetime import datetime, timezone

import pytest

from utils.timestamps import (
    UNKNOWN_TIMESTAMP,
    format_instant,
    is_unknown_timestamp,
    normalize_timestamp,
    parse_instant,
)

# ------------------------- Fixtures ------------------------- #

@pytest.fixture
def morning_utc():
    # 08:30 IST on 2024-02-10
    return datetime(2024, 2, 10, 3, 0, tzinfo=timezone.utc)

# ------------------------- Tests ------------------------- #

def test_exchange_local_datetime_converted_to_utc():
    assert normalize_timestamp({"FillTime": "2024-02-10 14:30:45"}) == "2024-02-10T09:00:45.000Z"


def test_epoch_seconds():
    assert normalize_timestamp({"timestamp": 1707565845}) == "2024-02-10T11:50:45.000Z"


def test_epoch_seconds_as_string():
    assert normalize_timestamp({"timestamp": "1707565845"}) == "2024-02-10T11:50:45.000Z"


def test_epoch_milliseconds():
    assert normalize_timestamp({"timestamp": 1707565845123}) == "2024-02-10T11:50:45.123Z"


def test_no_recognised_field_returns_epoch_sentinel():
    result = normalize_timestamp({"foo": "bar", "price": 10})
    assert result == "1970-01-01T00:00:00.000Z"
    assert result == UNKNOWN_TIMESTAMP
    assert is_unknown_timestamp(result)


def test_sentinel_is_not_wall_clock():
    before = datetime.now(timezone.utc)
    result = normalize_timestamp({})
    assert parse_instant(result) < before


def test_fallback_string_returned_verbatim():
    assert normalize_timestamp({}, "2024-01-01T00:00:00.000Z") == "2024-01-01T00:00:00.000Z"


def test_fallback_datetime_is_formatted():
    fallback = datetime(2024, 1, 1, 5, 30, tzinfo=timezone.utc)
    assert normalize_timestamp({}, fallback) == "2024-01-01T05:30:00.000Z"


def test_fill_time_wins_over_generic_fields():
    record = {"timestamp": 1707565845, "FillTime": "2024-02-10 14:30:45"}
    assert normalize_timestamp(record) == "2024-02-10T09:00:45.000Z"


def test_exchange_timestamp_wins_over_order_time():
    record = {"orderTime": "2024-02-10 10:00:00", "exchangeTimestamp": "2024-02-10 10:05:00"}
    assert normalize_timestamp(record) == "2024-02-10T04:35:00.000Z"


def test_unparseable_candidate_falls_through_to_next():
    record = {"FillTime": "not a time", "timestamp": 1707565845}
    assert normalize_timestamp(record) == "2024-02-10T11:50:45.000Z"


def test_empty_and_null_candidates_are_skipped():
    record = {"FillTime": "", "fillTime": None, "time": "2024-02-10 14:30:45"}
    assert normalize_timestamp(record) == "2024-02-10T09:00:45.000Z"


def test_iso_with_zulu_suffix():
    assert normalize_timestamp({"time": "2024-02-10T09:00:45Z"}) == "2024-02-10T09:00:45.000Z"


def test_iso_with_offset():
    assert normalize_timestamp({"time": "2024-02-10T14:30:45.250+05:30"}) == "2024-02-10T09:00:45.250Z"


def test_naive_iso_is_not_accepted():
    assert normalize_timestamp({"time": "2024-02-10T14:30:45"}) == UNKNOWN_TIMESTAMP


def test_zero_and_negative_epochs_are_rejected():
    assert normalize_timestamp({"timestamp": 0}) == UNKNOWN_TIMESTAMP
    assert normalize_timestamp({"timestamp": -5}) == UNKNOWN_TIMESTAMP


def test_time_of_day_uses_today_in_exchange_time(morning_utc):
    assert normalize_timestamp({"Ttime": "10:15"}, now=morning_utc) == "2024-02-10T04:45:00.000Z"


def test_time_of_day_with_seconds_after_ist_midnight():
    # 20:00 UTC on the 10th is already the 11th in IST
    now = datetime(2024, 2, 10, 20, 0, tzinfo=timezone.utc)
    assert normalize_timestamp({"Ttime": "09:15:30"}, now=now) == "2024-02-11T03:45:30.000Z"


def test_invalid_time_of_day_is_rejected(morning_utc):
    assert normalize_timestamp({"Ttime": "25:61"}, now=morning_utc) == UNKNOWN_TIMESTAMP


def test_format_instant_treats_naive_as_utc():
    assert format_instant(datetime(2024, 2, 10, 9, 0, 45, 999999)) == "2024-02-10T09:00:45.999Z"


def test_parse_instant_rejects_naive():
    with pytest.raises(ValueError):
        parse_instant("2024-02-10T09:00:45")
