"""
Unit Tests for RollingStats

Tests nearest-rank percentiles, the empty-window default and time-based purging.
"""

import pytest

from genguard.core.resilience.rolling_stats import RollingStats


@pytest.fixture
def stats(clock):
    return RollingStats(window_seconds=3600, default_value=50.0, clock=clock)


@pytest.mark.unit
class TestRollingStats:
    def test_empty_window_returns_default(self, stats):
        assert stats.percentile(50) == 50.0
        assert stats.percentile(95) == 50.0
        assert stats.count() == 0

    def test_single_sample_is_every_percentile(self, stats):
        stats.add_sample(12.5)
        assert stats.percentile(0) == 12.5
        assert stats.percentile(50) == 12.5
        assert stats.percentile(100) == 12.5

    def test_nearest_rank_percentiles(self, stats):
        for value in range(1, 101):
            stats.add_sample(float(value))

        assert stats.percentile(50) == 50.0
        assert stats.percentile(95) == 95.0
        assert stats.percentile(99) == 99.0
        assert stats.percentile(100) == 100.0

    def test_percentile_ignores_insertion_order(self, stats):
        for value in (30.0, 10.0, 20.0, 40.0):
            stats.add_sample(value)
        # ceil(4 * 0.5) - 1 = index 1 of [10, 20, 30, 40]
        assert stats.percentile(50) == 20.0

    def test_samples_older_than_window_are_purged(self, stats, clock):
        stats.add_sample(100.0)
        clock.advance(1800)
        stats.add_sample(10.0)

        clock.advance(1801)

        assert stats.count() == 1
        assert stats.percentile(95) == 10.0

    def test_all_samples_expire_back_to_default(self, stats, clock):
        stats.add_sample(70.0)
        clock.advance(3601)
        assert stats.percentile(95) == 50.0

    def test_clear(self, stats):
        stats.add_sample(1.0)
        stats.clear()
        assert stats.count() == 0

    @pytest.mark.parametrize("p", [-1, 100.5])
    def test_rejects_out_of_range_percentile(self, stats, p):
        with pytest.raises(ValueError):
            stats.percentile(p)

    def test_rejects_non_positive_window(self, clock):
        with pytest.raises(ValueError):
            RollingStats(window_seconds=0, clock=clock)
