"""Tests for datetime helpers."""

from datetime import date, datetime, timedelta, timezone

from lightkeeper.utils.datetime import (
    ensure_aware,
    from_epoch,
    local_midnight,
    parse_iso,
    to_epoch,
    to_iso_string,
)


class TestParseIso:
    """Test ISO string parsing."""

    def test_zulu_suffix_is_utc(self):
        assert parse_iso("2026-03-02T09:00:00Z") == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert parse_iso("2026-03-02T09:00:00.250z").microsecond == 250000

    def test_offset_kept(self):
        parsed = parse_iso("2026-03-02T10:00:00+01:00")

        assert parsed.utcoffset() == timedelta(hours=1)
        assert parsed == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_naive_assumed_utc(self):
        assert parse_iso("2026-03-02T09:00:00").tzinfo == timezone.utc

    def test_empty(self):
        assert parse_iso(None) is None
        assert parse_iso("") is None

    def test_round_trip_with_to_iso_string(self):
        value = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)

        assert parse_iso(to_iso_string(value)) == value


class TestConversions:
    """Test epoch and date conversions."""

    def test_epoch(self):
        value = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

        assert from_epoch(to_epoch(value)) == value
        assert to_epoch(datetime(2026, 3, 2, 9, 0)) == to_epoch(value)

    def test_local_midnight(self):
        midnight = local_midnight("2026-03-10")

        assert midnight.tzinfo is not None
        assert (midnight.hour, midnight.minute) == (0, 0)
        assert midnight.date() == date(2026, 3, 10)

    def test_ensure_aware(self):
        assert ensure_aware(None) is None
        assert ensure_aware(datetime(2026, 1, 1)).tzinfo == timezone.utc
