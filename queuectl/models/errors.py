"""Errors raised by the queue engine.

Usage and integrity errors propagate to the caller. Execution errors never
leave the worker loop: they are recorded on the job by the retry policy.
"""

from typing import Optional


class QueueError(Exception):
    """Base class for every queuectl error."""

    job_id: Optional[str] = None


class InvalidJobSpec(QueueError):
    """Enqueue input is missing a command or has wrong-typed fields."""


class InvalidState(QueueError):
    """A state filter names something that is not a job state."""


class NotFound(QueueError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class InvalidTransition(QueueError):
    def __init__(self, job_id: str, state: str, expected: str):
        super().__init__(f"Job {job_id} is {state}, expected {expected}")
        self.job_id = job_id
        self.state = state


class LockTimeout(QueueError):
    """The store lock could not be acquired within the retry bound."""

    def __init__(self, lock_path: str, attempts: int):
        super().__init__(f"Could not acquire lock {lock_path} after {attempts} attempts")
        self.lock_path = lock_path


class StoreCorruption(QueueError):
    """The queue file exists but cannot be parsed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Queue file {path} is corrupt: {reason}")
        self.path = path


class ExecutionError(QueueError):
    """The command could not be run at all."""
