"""
Unit tests for the retry backoff policy.
"""

from datetime import datetime, timedelta, timezone

from core.config import Settings
from ecof.delivery.registry import BackoffPolicy


class TestBackoffPolicy:
    def test_default_schedule(self):
        policy = BackoffPolicy()
        assert [policy.delay_seconds(n) for n in range(1, 9)] == [30, 60, 120, 240, 480, 960, 1920, 1920]

    def test_zero_failures_means_now(self):
        assert BackoffPolicy().delay_seconds(0) == 0
        assert BackoffPolicy().delay_seconds(-3) == 0

    def test_non_decreasing_and_bounded(self):
        policy = BackoffPolicy(base_seconds=45, cap_exponent=10, max_delay_seconds=3600)
        delays = [policy.delay_seconds(n) for n in range(1, 60)]

        assert delays == sorted(delays)
        assert max(delays) == 3600

    def test_next_retry_at(self):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        assert BackoffPolicy().next_retry_at(now, 2) == now + timedelta(seconds=60)

    def test_from_settings(self):
        settings = Settings(BACKOFF_BASE_SECONDS=10.0, BACKOFF_CAP_EXPONENT=2, BACKOFF_MAX_SECONDS=25.0)

        policy = BackoffPolicy.from_settings(settings)
        assert [policy.delay_seconds(n) for n in (1, 2, 3, 4)] == [10, 20, 25, 25]

        resync = BackoffPolicy.from_settings(settings, base_seconds=1.0)
        assert resync.delay_seconds(3) == 4
