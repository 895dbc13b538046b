"""Tests for the exchange clock helpers."""

from datetime import datetime, time, timedelta, timezone

import pytest

from nepse_ingest.market_time import (
    format_status_time,
    is_status_time_ahead,
    is_trading_window,
    market_timezone,
    parse_status_time,
    seconds_until_end_of_day,
    today_str,
    trading_weekdays,
)

NPT = timezone(timedelta(hours=5, minutes=45))


def at(hour: int, minute: int, day: int = 10, second: int = 0) -> datetime:
    return datetime(2024, 6, day, hour, minute, second, tzinfo=NPT)


class TestTimezone:
    def test_fixed_offset(self, mock_config) -> None:
        assert market_timezone(mock_config).utcoffset(None) == timedelta(hours=5, minutes=45)

    def test_today_str_uses_local_date(self) -> None:
        # 19:00 UTC on the 9th is already the 10th in Kathmandu
        utc = datetime(2024, 6, 9, 19, 0, tzinfo=timezone.utc)
        assert today_str(utc.astimezone(NPT)) == "2024-06-10"


class TestEndOfDay:
    @pytest.mark.parametrize(
        ("now", "expected"),
        [
            (at(11, 20), 45599),
            (at(0, 0), 86399),
            (at(23, 59, second=59), 0),
        ],
    )
    def test_seconds_until_end_of_day(self, now: datetime, expected: int) -> None:
        assert seconds_until_end_of_day(now) == expected


class TestStatusTime:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("11:15 AM", time(11, 15)),
            ("3:00 PM", time(15, 0)),
            ("12:05 PM", time(12, 5)),
            ("12:30 am", time(0, 30)),
            ("13:00 PM", None),
            ("15:00", None),
            ("", None),
            (None, None),
        ],
    )
    def test_parse_status_time(self, text, expected) -> None:
        assert parse_status_time(text) == expected

    def test_status_time_ahead_of_wall_clock(self) -> None:
        assert is_status_time_ahead("3:00 PM", at(11, 20)) is True
        assert is_status_time_ahead("11:20 AM", at(11, 20)) is False
        assert is_status_time_ahead("11:15 AM", at(11, 20)) is False
        assert is_status_time_ahead("garbled", at(11, 20)) is False

    @pytest.mark.parametrize(
        ("moment", "expected"),
        [(at(11, 5), "11:05 AM"), (at(15, 0), "3:00 PM"), (at(0, 7), "12:07 AM"), (at(12, 0), "12:00 PM")],
    )
    def test_format_round_trips_through_parse(self, moment: datetime, expected: str) -> None:
        assert format_status_time(moment) == expected
        assert parse_status_time(expected) == time(moment.hour, moment.minute)


class TestTradingWindow:
    def test_trading_weekdays(self, mock_config) -> None:
        # Sunday to Thursday
        assert trading_weekdays(mock_config) == {6, 0, 1, 2, 3}

    @pytest.mark.parametrize(
        ("now", "expected"),
        [
            (at(11, 0), True),  # Monday at the open
            (at(14, 59), True),
            (at(15, 0), False),
            (at(10, 59), False),
            (at(12, 0, day=14), False),  # Friday
            (at(12, 0, day=9), True),  # Sunday
        ],
    )
    def test_is_trading_window(self, mock_config, now: datetime, expected: bool) -> None:
        assert is_trading_window(now, mock_config) is expected
