"""Tests for retry backoff and retry decisions."""

import random

import pytest

from evidence_export.jobs.job_types import ErrorClass, StageFailure
from evidence_export.jobs.retry import RetryAction, RetryController, RetryPolicy

from conftest import FixedRandom


def failure(classification=ErrorClass.TRANSIENT, error_type="publish_error"):
    return StageFailure(
        error_type=error_type,
        message="storage unavailable",
        classification=classification,
        failing_stage="publish",
    )


class TestBackoff:

    @pytest.mark.parametrize("attempt,expected", [(1, 60.0), (2, 120.0), (3, 240.0), (4, 480.0)])
    def test_exponential_growth(self, attempt, expected):
        controller = RetryController(rng=FixedRandom(0.0))
        assert controller.backoff_delay(attempt) == expected

    def test_delay_is_capped(self):
        controller = RetryController(rng=FixedRandom(0.0))
        assert controller.backoff_delay(5) == 900.0
        assert controller.backoff_delay(20) == 900.0

    def test_cap_applies_after_jitter(self):
        controller = RetryController(
            RetryPolicy(base_delay_seconds=60, max_delay_seconds=62, jitter_seconds=5),
            rng=FixedRandom(0.9),
        )
        assert controller.backoff_delay(1) == 62

    def test_jitter_stays_in_window(self):
        controller = RetryController(rng=random.Random(42))
        for _ in range(200):
            delay = controller.backoff_delay(1)
            assert 60.0 <= delay < 65.0

    def test_attempt_zero_uses_base_delay(self):
        controller = RetryController(rng=FixedRandom(0.0))
        assert controller.backoff_delay(0) == 60.0


class TestDecide:

    def test_transient_failure_is_retried(self):
        controller = RetryController(rng=FixedRandom(0.5))
        decision = controller.decide(1, failure())
        assert decision.action == RetryAction.RETRY
        assert decision.should_retry
        assert decision.delay_seconds == 62.5

    def test_terminal_failure_fails_immediately(self):
        decision = RetryController().decide(1, failure(ErrorClass.TERMINAL, "framework_not_found"))
        assert decision.action == RetryAction.FAIL
        assert decision.delay_seconds is None

    def test_exhausted_attempts_fail(self):
        decision = RetryController().decide(3, failure())
        assert decision.action == RetryAction.FAIL
        assert "exhausted" in decision.reason

    def test_conflict_is_skipped(self):
        """Another worker owns the job; nothing should be written."""
        decision = RetryController().decide(1, failure(ErrorClass.CONFLICT, "lease_lost"))
        assert decision.action == RetryAction.SKIP
        assert not decision.should_retry

    def test_max_attempts_override(self):
        controller = RetryController(RetryPolicy(max_attempts=3))
        assert controller.decide(3, failure(), max_attempts=5).should_retry
        assert not controller.decide(2, failure(), max_attempts=2).should_retry
