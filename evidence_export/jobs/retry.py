"""
Retry Controller

Decides whether a failed attempt is rescheduled and for how long. Delays grow
exponentially from the base delay, get up to `jitter_seconds` of random
spread so that jobs failing together do not retry together, and never exceed
`max_delay_seconds`.
"""

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from evidence_export.jobs.job_types import ErrorClass, StageFailure

logger = logging.getLogger(__name__)


class RetryAction(str, Enum):
    RETRY = "retry"
    FAIL = "fail"
    SKIP = "skip"  # conflict: another worker owns the job


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 60.0
    max_delay_seconds: float = 900.0
    jitter_seconds: float = 5.0


@dataclass(frozen=True)
class RetryDecision:
    action: RetryAction
    reason: str
    delay_seconds: Optional[float] = None

    @property
    def should_retry(self) -> bool:
        return self.action == RetryAction.RETRY


class RetryController:

    def __init__(self, policy: Optional[RetryPolicy] = None, rng: Optional[random.Random] = None):
        self.policy = policy or RetryPolicy()
        self._rng = rng or random.Random()

    def backoff_delay(self, attempt_count: int) -> float:
        """
        Delay before the attempt after `attempt_count`:
        min(base * 2^(attempt_count - 1) + jitter, cap), jitter in [0, jitter_seconds).
        """
        exponent = max(attempt_count, 1) - 1
        base = self.policy.base_delay_seconds * (2 ** exponent)
        jitter = self._rng.random() * self.policy.jitter_seconds
        return min(base + jitter, self.policy.max_delay_seconds)

    def decide(
        self,
        attempt_count: int,
        failure: StageFailure,
        max_attempts: Optional[int] = None
    ) -> RetryDecision:
        max_attempts = max_attempts or self.policy.max_attempts

        if failure.classification == ErrorClass.CONFLICT:
            return RetryDecision(RetryAction.SKIP, "job is owned by another worker")

        if failure.classification == ErrorClass.TERMINAL:
            return RetryDecision(RetryAction.FAIL, f"non-retryable {failure.error_type}")

        if attempt_count >= max_attempts:
            return RetryDecision(RetryAction.FAIL, f"attempts exhausted ({attempt_count}/{max_attempts})")

        delay = self.backoff_delay(attempt_count)
        return RetryDecision(
            RetryAction.RETRY,
            f"attempt {attempt_count}/{max_attempts} failed",
            delay_seconds=delay
        )
