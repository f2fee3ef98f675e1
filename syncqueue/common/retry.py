# syncqueue/common/retry.py
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from syncqueue.common.job import Job
from syncqueue.common.states import BaseState, FailedState, PendingState

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """
    Decides what a failed attempt turns into.

    The n-th requeue of a job waits ``backoff_base * 2 ** (n - 1)``, capped at
    ``backoff_max``. A zero ``backoff_base`` requeues immediately.
    """

    backoff_base: timedelta = timedelta(seconds=30)
    backoff_max: timedelta = timedelta(hours=1)

    def __post_init__(self):
        if self.backoff_base < timedelta(0) or self.backoff_max < timedelta(0):
            raise ValueError("backoff durations must not be negative")

    def backoff_for(self, retry_count: int) -> timedelta:
        if retry_count <= 0 or not self.backoff_base:
            return timedelta(0)
        # Large counts would overflow timedelta before the cap is applied
        exponent = min(retry_count - 1, 32)
        delay = self.backoff_base * (2**exponent)
        return min(delay, self.backoff_max)

    def elect_state(self, job: Job, error_message: str, now: datetime) -> BaseState:
        """Increments ``job.retry_count`` and returns the state the job moves to."""
        job.retry_count += 1
        if job.retry_count < job.max_retries:
            delay = self.backoff_for(job.retry_count)
            logger.debug(
                f"RetryPolicy: requeueing job {job.id} (attempt {job.retry_count} of {job.max_retries}) in {delay}"
            )
            return PendingState(
                scheduled_for=now + delay,
                created_at=now,
                reason=f"Retrying job... Attempt {job.retry_count} of {job.max_retries}: {error_message}",
            )

        logger.debug(f"RetryPolicy: job {job.id} retries exhausted. Moving to failed state.")
        return FailedState(error_message, created_at=now)
