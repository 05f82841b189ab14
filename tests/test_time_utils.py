from datetime import datetime, timedelta, timezone

import pytest

from padel_bot.utils.time_utils import as_utc, format_time_remaining, isoformat_utc


@pytest.mark.parametrize("remaining,expected", [
    (None, "No confirmation window"),
    (timedelta(0), "Expired"),
    (timedelta(minutes=-5), "Expired"),
    (timedelta(seconds=59), "Expired"),
    (timedelta(minutes=45), "45m remaining"),
    (timedelta(hours=3), "3h remaining"),
    (timedelta(hours=5, minutes=12, seconds=30), "5h 12m remaining"),
])
def test_format_time_remaining(remaining, expected):
    assert format_time_remaining(remaining) == expected


def test_as_utc_treats_naive_values_as_utc():
    naive = datetime(2024, 5, 1, 12, 0)
    assert as_utc(naive) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert as_utc(None) is None


def test_as_utc_converts_other_zones():
    cet = timezone(timedelta(hours=2))
    value = datetime(2024, 5, 1, 14, 0, tzinfo=cet)
    assert as_utc(value) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert isoformat_utc(value) == "2024-05-01T12:00:00+00:00"
