from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .job import JobState


@dataclass(frozen=True)
class RetryDecision:
    state: JobState
    attempts: int
    run_at: Optional[datetime]  # None when the job is dead-lettered


def backoff_delay(attempts: int, backoff_base: float, limit: Optional[timedelta] = None) -> timedelta:
    """Exponential backoff keyed to the attempt count, capped at `limit`"""
    try:
        delay = timedelta(seconds=backoff_base ** attempts)
    except OverflowError:
        if limit is None:
            raise
        return limit
    if limit is not None and delay > limit:
        return limit
    return delay


def decide_retry(attempts: int, max_retries: int, backoff_base: float, now: datetime) -> RetryDecision:
    """Work out where a job goes after one more failed attempt.

    `attempts` is the count before this failure. Once the new count exceeds
    `max_retries` the job is dead; otherwise it becomes `failed` and is
    eligible again after `backoff_base ** new_attempts` seconds, or at the
    latest representable time for bases large enough to overflow.
    """
    new_attempts = attempts + 1
    if new_attempts > max_retries:
        return RetryDecision(JobState.DEAD, new_attempts, None)
    latest = datetime.max.replace(tzinfo=now.tzinfo)
    delay = backoff_delay(new_attempts, backoff_base, limit=latest - now)
    return RetryDecision(JobState.FAILED, new_attempts, now + delay)
