"""Tests for the polling backoff schedule."""

from datetime import datetime, timedelta, timezone

from feedsync.backoff import (
    DEFAULT_BASE_INTERVAL,
    FAILURE_THRESHOLD,
    is_available,
    next_check_time,
)

NOW = datetime(2026, 2, 13, 12, 0, tzinfo=timezone.utc)


class TestNextCheckTime:
    def test_success_uses_base_interval(self):
        assert next_check_time(0, now=NOW) == NOW + DEFAULT_BASE_INTERVAL

    def test_doubles_per_failure(self):
        base = timedelta(minutes=10)
        for failures in range(0, 9):
            assert next_check_time(failures, base, NOW) == NOW + base * 2**failures

    def test_multiplier_capped_at_256(self):
        base = timedelta(minutes=15)
        capped = NOW + base * 256
        assert next_check_time(8, base, NOW) == capped
        assert next_check_time(9, base, NOW) == capped
        assert next_check_time(100, base, NOW) == capped

    def test_non_decreasing_in_failure_count(self):
        times = [next_check_time(n, now=NOW) for n in range(20)]
        assert times == sorted(times)

    def test_defaults_to_current_time(self):
        before = datetime.now(timezone.utc)
        result = next_check_time(0)
        after = datetime.now(timezone.utc)
        assert before + DEFAULT_BASE_INTERVAL <= result <= after + DEFAULT_BASE_INTERVAL


class TestAvailability:
    def test_available_below_threshold(self):
        assert is_available(0)
        assert is_available(14)

    def test_unavailable_at_threshold(self):
        assert FAILURE_THRESHOLD == 15
        assert not is_available(15)
        assert not is_available(16)
