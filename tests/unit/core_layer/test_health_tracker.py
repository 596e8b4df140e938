"""
Unit Tests for HealthTracker

Tests the token-bucket / sliding-window breaker: trip conditions, lazy token
decay, the open -> half-open -> closed timeline, sampled admission, adaptive
timeout bounds and job registration for late-result rejection.
"""

import random
from unittest.mock import MagicMock

import pytest

from genguard.core.config.constants import CircuitState, FailureKind
from genguard.core.resilience.health_tracker import HealthTracker
from tests.test_fixtures import FixedRandom


def trip(tracker: HealthTracker) -> None:
    for _ in range(5):
        tracker.record_failure(FailureKind.TIMEOUT)


@pytest.fixture
def make_tracker(settings, clock, telemetry, metrics):
    def _make(rng=None) -> HealthTracker:
        return HealthTracker(
            settings.health,
            clock=clock,
            rng=rng or random.Random(1234),
            telemetry=telemetry,
            metrics=metrics,
        )

    return _make


@pytest.mark.unit
class TestBreakerTrip:
    def test_initial_state_closed(self, health):
        assert health.get_current_state() == CircuitState.CLOSED
        assert health.is_healthy()
        assert health.should_attempt_generation()
        assert health.tokens == 0
        assert health.current_budget() == 5

    def test_opens_exactly_at_five_tokens(self, health, telemetry_sink):
        for _ in range(4):
            health.record_failure(FailureKind.TIMEOUT)
        assert health.get_current_state() == CircuitState.CLOSED
        assert health.current_budget() == 1

        health.record_failure(FailureKind.TIMEOUT)

        assert health.get_current_state() == CircuitState.OPEN
        assert not health.should_attempt_generation()
        opened = telemetry_sink.of("circuit_breaker_opened")
        assert len(opened) == 1
        assert opened[0].metrics["reason"] == "tokens"

    def test_every_failure_kind_counts_the_same(self, health):
        for kind in (
            FailureKind.TIMEOUT,
            FailureKind.QUOTA,
            FailureKind.SERVER_ERROR,
            FailureKind.CLIENT_ERROR,
            FailureKind.UNKNOWN,
        ):
            health.record_failure(kind)
        assert health.get_current_state() == CircuitState.OPEN

    def test_accepts_failure_kind_values(self, health):
        health.record_failure("timeout")
        assert health.get_health_metrics()["total_timeouts"] == 1

    def test_success_removes_a_token(self, health):
        health.record_failure(FailureKind.SERVER_ERROR)
        health.record_failure(FailureKind.SERVER_ERROR)
        health.record_success(3.0)
        assert health.tokens == 1

    def test_tokens_never_go_negative(self, health):
        health.record_success(3.0)
        health.record_success(3.0)
        assert health.tokens == 0

    def test_tokens_decay_one_per_refill_interval(self, health, clock):
        for _ in range(4):
            health.record_failure(FailureKind.TIMEOUT)

        clock.advance(60)
        assert health.tokens == 3

        clock.advance(65)
        assert health.tokens == 2

    def test_decayed_tokens_delay_the_trip(self, health, clock):
        for _ in range(4):
            health.record_failure(FailureKind.TIMEOUT)
        clock.advance(125)

        health.record_failure(FailureKind.TIMEOUT)

        assert health.tokens == 3
        assert health.get_current_state() == CircuitState.CLOSED

    def test_window_failure_rate_trips_with_few_tokens(self, health, telemetry_sink):
        for _ in range(4):
            health.record_success(2.0)
            health.record_failure(FailureKind.QUOTA)
        health.record_success(2.0)
        # 9 samples: rule not applicable yet
        assert health.get_current_state() == CircuitState.CLOSED

        health.record_failure(FailureKind.QUOTA)

        assert health.tokens == 1
        assert health.get_current_state() == CircuitState.OPEN
        assert telemetry_sink.of("circuit_breaker_opened")[0].metrics["reason"] == "failure_rate"

    def test_window_rule_needs_minimum_samples(self, health):
        for _ in range(4):
            health.record_failure(FailureKind.TIMEOUT)
        assert health.get_current_state() == CircuitState.CLOSED

    def test_window_below_threshold_stays_closed(self, health):
        for _ in range(3):
            health.record_success(1.0)
            health.record_success(1.0)
            health.record_failure(FailureKind.TIMEOUT)
        health.record_success(1.0)
        assert health.get_current_state() == CircuitState.CLOSED

    def test_open_listener_called_once_per_trip(self, health):
        listener = MagicMock()
        health.add_open_listener(listener)

        trip(health)
        health.record_failure(FailureKind.TIMEOUT)

        listener.assert_called_once()

    def test_failing_listener_does_not_break_recording(self, health):
        health.add_open_listener(MagicMock(side_effect=RuntimeError("boom")))
        trip(health)
        assert health.get_current_state() == CircuitState.OPEN


@pytest.mark.unit
class TestBreakerTimeline:
    def test_open_then_half_open_at_half_duration(self, health, clock):
        trip(health)

        clock.advance(149)
        assert health.get_current_state() == CircuitState.OPEN

        clock.advance(1)
        assert health.get_current_state() == CircuitState.HALF_OPEN

    def test_half_open_until_deadline_then_closed(self, health, clock):
        trip(health)

        clock.advance(300)
        assert health.get_current_state() == CircuitState.HALF_OPEN

        clock.advance(0.001)
        assert health.get_current_state() == CircuitState.CLOSED
        assert health.get_recovery_batch_size() == 5

    def test_failures_while_open_do_not_extend_deadline(self, health, clock):
        trip(health)
        open_until = health.get_health_metrics()["open_until"]

        clock.advance(30)
        health.record_failure(FailureKind.TIMEOUT)

        assert health.get_health_metrics()["open_until"] == open_until

    def test_successes_while_open_do_not_count_towards_recovery(self, health, clock):
        trip(health)
        clock.advance(10)
        health.record_success(5.0)
        assert health.consecutive_recovery_successes == 0

    def test_three_half_open_successes_close(self, health, clock, telemetry_sink):
        trip(health)
        clock.advance(150)
        assert health.get_recovery_batch_size() == 1

        health.record_success(5.0)
        assert health.get_recovery_batch_size() == 2
        health.record_success(5.0)
        assert health.get_recovery_batch_size() == 4
        assert health.get_current_state() == CircuitState.HALF_OPEN
        assert health.consecutive_recovery_successes == 2

        health.record_success(5.0)

        assert health.get_current_state() == CircuitState.CLOSED
        assert health.tokens == 0
        assert health.consecutive_recovery_successes == 0
        assert health.get_recovery_batch_size() == 5
        assert "circuit_breaker_closed" in telemetry_sink.names()

    def test_half_open_failure_resets_streak_without_closing(self, health, clock):
        trip(health)
        clock.advance(150)
        open_until = health.get_health_metrics()["open_until"]

        health.record_success(5.0)
        health.record_success(5.0)
        health.record_failure(FailureKind.SERVER_ERROR)

        assert health.consecutive_recovery_successes == 0
        assert health.get_recovery_batch_size() == 1
        assert health.get_current_state() == CircuitState.HALF_OPEN
        assert health.get_health_metrics()["open_until"] == open_until

        for _ in range(3):
            health.record_success(5.0)
        assert health.get_current_state() == CircuitState.CLOSED

    def test_closed_breaker_can_trip_again(self, health, clock):
        trip(health)
        clock.advance(301)
        assert health.get_current_state() == CircuitState.CLOSED

        trip(health)
        assert health.get_current_state() == CircuitState.OPEN


@pytest.mark.unit
class TestHalfOpenAdmission:
    def test_sampled_fraction_near_configured_rate(self, make_tracker, clock):
        tracker = make_tracker(random.Random(1234))
        trip(tracker)
        clock.advance(150)

        admitted = sum(1 for _ in range(1000) if tracker.should_attempt_generation())

        assert 50 <= admitted <= 150

    def test_admits_below_sample_rate(self, make_tracker, clock, telemetry_sink):
        tracker = make_tracker(FixedRandom(0.05))
        trip(tracker)
        clock.advance(150)

        assert tracker.should_attempt_generation()
        assert "half_open_sample_allowed" in telemetry_sink.names()

    def test_rejects_at_or_above_sample_rate(self, make_tracker, clock):
        tracker = make_tracker(FixedRandom(0.10))
        trip(tracker)
        clock.advance(150)
        assert not tracker.should_attempt_generation()


@pytest.mark.unit
class TestAdaptiveTimeout:
    def test_default_when_no_history(self, health):
        # default P95 of 50s plus the 10s buffer
        assert health.get_timeout() == 60.0

    @pytest.mark.parametrize(
        "latency,expected",
        [
            (0.001, 45.0),
            (1.0, 45.0),
            (40.0, 50.0),
            (79.0, 89.0),
            (500.0, 90.0),
            (1e12, 90.0),
            (float("inf"), 90.0),
        ],
    )
    def test_timeout_always_within_bounds(self, health, latency, expected):
        for _ in range(20):
            health.record_success(latency)
        timeout = health.get_timeout()
        assert 45.0 <= timeout <= 90.0
        assert timeout == pytest.approx(expected)

    def test_uses_p95_of_mixed_latencies(self, health):
        for value in range(1, 101):
            health.record_success(float(value))
        assert health.get_timeout() == 90.0  # P95 95 + 10, capped

    def test_large_change_emits_telemetry(self, health, telemetry_sink):
        health.get_timeout()
        for _ in range(20):
            health.record_success(1.0)

        health.get_timeout()

        changed = telemetry_sink.of("adaptive_timeout_changed")
        assert len(changed) == 1
        assert changed[0].metrics["old_timeout"] == 60.0
        assert changed[0].metrics["new_timeout"] == 45.0

    def test_latency_outside_stats_window_is_forgotten(self, health, clock):
        for _ in range(20):
            health.record_success(85.0)
        clock.advance(3601)
        assert health.get_timeout() == 60.0


@pytest.mark.unit
class TestJobRegistration:
    def test_register_returns_deadline(self, health, clock):
        expires_at = health.register_job("job-1")
        assert expires_at == pytest.approx(clock() + 60.0 + 30.0)
        assert health.is_job_valid("job-1")

    def test_job_invalid_after_deadline(self, health, clock):
        health.register_job("job-1")
        clock.advance(90)
        assert not health.is_job_valid("job-1")

    def test_unknown_job_is_invalid(self, health):
        assert not health.is_job_valid("never-registered")

    def test_late_result_is_ignored(self, health, clock, telemetry_sink):
        health.register_job("job-1")
        clock.advance(91)

        assert health.record_success(4.0, "job-1") is False

        assert health.get_health_metrics()["total_successes"] == 0
        assert "late_result_dropped" in telemetry_sink.names()

    def test_late_failure_does_not_add_tokens(self, health, clock):
        health.register_job("job-1")
        clock.advance(91)
        assert health.record_failure(FailureKind.TIMEOUT, "job-1") is False
        assert health.tokens == 0

    def test_second_outcome_for_same_job_is_ignored(self, health):
        health.register_job("job-1")
        assert health.record_failure(FailureKind.TIMEOUT, "job-1") is True
        assert health.record_failure(FailureKind.TIMEOUT, "job-1") is False
        assert health.tokens == 1

    def test_re_registering_a_job_accepts_a_new_outcome(self, health):
        health.register_job("job-1")
        health.record_failure(FailureKind.TIMEOUT, "job-1")

        health.register_job("job-1")

        assert health.record_success(3.0, "job-1") is True

    def test_cleanup_expired_jobs(self, health, clock):
        health.register_job("job-1")
        health.register_job("job-2", is_probe=True)
        clock.advance(30)
        health.register_job("job-3")
        clock.advance(61)

        assert health.cleanup_expired_jobs() == 2
        assert health.get_health_metrics()["active_jobs"] == 1
        assert health.is_job_valid("job-3")


@pytest.mark.unit
class TestHealthMetrics:
    def test_counters_and_success_rate(self, health):
        health.record_success(10.0)
        health.record_success(20.0)
        health.record_failure(FailureKind.TIMEOUT)
        health.record_failure(FailureKind.QUOTA)

        metrics = health.get_health_metrics()

        assert metrics["state"] == "closed"
        assert metrics["total_attempts"] == 4
        assert metrics["total_successes"] == 2
        assert metrics["total_failures"] == 2
        assert metrics["total_timeouts"] == 1
        assert metrics["consecutive_failures"] == 2
        assert metrics["success_rate"] == 0.5
        assert metrics["p50_latency"] == 10.0

    def test_success_rate_is_one_without_attempts(self, health):
        assert health.get_health_metrics()["success_rate"] == 1.0

    def test_get_metrics_is_a_subset(self, health):
        assert set(health.get_metrics()) == {
            "success_rate",
            "p50_latency",
            "p95_latency",
            "p99_latency",
            "total_timeouts",
            "total_successes",
        }

    def test_state_published_to_metrics_collector(self, health, metrics):
        trip(health)
        health.get_current_state()
        metrics.set_circuit_state.assert_called_with("open")
