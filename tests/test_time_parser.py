"""Tests for reminder time phrase parsing."""

from datetime import datetime, timezone

import pytest

from cliper.retrieval.time_parser import parse_due_time

# Wednesday 2026-03-11 10:00 UTC
REFERENCE = datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc).timestamp()


def _due(text: str) -> datetime:
    parsed = parse_due_time(text, reference_time=REFERENCE)
    assert parsed is not None
    return datetime.fromtimestamp(parsed.due, tz=timezone.utc)


class TestRelative:
    @pytest.mark.parametrize(
        "text,seconds",
        [
            ("in 20 minutes", 1200),
            ("in 2 hours", 7200),
            ("in an hour", 3600),
            ("in three days", 3 * 86400),
            ("in 1 week", 604800),
        ],
    )
    def test_offsets(self, text, seconds):
        parsed = parse_due_time(f"call Dana {text}", reference_time=REFERENCE)
        assert parsed.due == REFERENCE + seconds
        assert parsed.phrase == text


class TestCalendar:
    def test_tomorrow_defaults_to_nine(self):
        assert _due("buy milk tomorrow") == datetime(2026, 3, 12, 9, 0, tzinfo=timezone.utc)

    def test_tomorrow_with_time(self):
        assert _due("tomorrow at 3pm") == datetime(2026, 3, 12, 15, 0, tzinfo=timezone.utc)

    def test_explicit_date(self):
        assert _due("on 2026-04-01 at 18:30") == datetime(2026, 4, 1, 18, 30, tzinfo=timezone.utc)

    def test_next_weekday(self):
        assert _due("next friday") == datetime(2026, 3, 13, 9, 0, tzinfo=timezone.utc)

    def test_same_weekday_rolls_a_week(self):
        assert _due("next wednesday at 8am") == datetime(2026, 3, 18, 8, 0, tzinfo=timezone.utc)

    def test_tonight(self):
        assert _due("tonight") == datetime(2026, 3, 11, 20, 0, tzinfo=timezone.utc)

    def test_clock_later_today(self):
        assert _due("at 11:15") == datetime(2026, 3, 11, 11, 15, tzinfo=timezone.utc)

    def test_clock_already_passed_rolls_to_tomorrow(self):
        assert _due("at 7am") == datetime(2026, 3, 12, 7, 0, tzinfo=timezone.utc)

    def test_midnight_am(self):
        assert _due("at 12am") == datetime(2026, 3, 12, 0, 0, tzinfo=timezone.utc)


class TestUnrecognised:
    @pytest.mark.parametrize("text", ["water the plants", "at 25:00", "on 2026-13-40"])
    def test_returns_none(self, text):
        assert parse_due_time(text, reference_time=REFERENCE) is None
