"""
Unit tests for timestamp utilities in utils/time.py
"""

import time
from datetime import datetime, timedelta, timezone

from utils.time import now_ms, to_iso, utc_now


class TestUtcNow:
    """Test utc_now() function"""

    def test_is_timezone_aware_utc(self):
        now = utc_now()
        assert now.tzinfo is not None
        assert now.utcoffset() == timedelta(0)


class TestNowMs:
    """Test now_ms() function"""

    def test_now_ms_returns_int(self):
        result = now_ms()
        assert isinstance(result, int)
        assert result > 0

    def test_now_ms_increasing(self):
        """Subsequent calls never go backwards"""
        first = now_ms()
        time.sleep(0.002)
        second = now_ms()
        assert second > first

    def test_matches_wall_clock(self):
        assert abs(now_ms() - int(time.time() * 1000)) < 1000


class TestToIso:
    """Test to_iso() function"""

    def test_none(self):
        assert to_iso(None) is None

    def test_aware_utc(self):
        dt = datetime(2023, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        assert to_iso(dt) == "2023-01-01T12:00:00Z"

    def test_naive_treated_as_utc(self):
        assert to_iso(datetime(2023, 1, 1, 12, 0, 0)) == "2023-01-01T12:00:00Z"

    def test_other_timezone_converted(self):
        dt = datetime(2023, 1, 1, 14, 30, 0, tzinfo=timezone(timedelta(hours=2)))
        assert to_iso(dt) == "2023-01-01T12:30:00Z"

    def test_microseconds_kept(self):
        dt = datetime(2023, 1, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)
        assert to_iso(dt) == "2023-01-01T12:00:00.123456Z"
