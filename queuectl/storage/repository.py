import logging
from typing import Any, Dict, List, Optional, Union
from pydantic import ValidationError

from ..models.errors import InvalidJobSpec, InvalidState, InvalidTransition, NotFound
from ..models.job import Job, JobSpec, JobState, QueueDocument, utcnow
from ..models.retry import decide_retry
from .config import config_float, config_int
from .store import Store

logger = logging.getLogger(__name__)

LIST_LIMIT = 200


def parse_state(state: Union[str, JobState]) -> JobState:
    try:
        return JobState(state)
    except ValueError:
        valid = ", ".join(s.value for s in JobState)
        raise InvalidState(f"Invalid state: {state} (expected one of {valid})") from None


class JobRepository:
    """Job operations over the queue file.

    Every operation that changes a job runs inside a single `Store.mutate`,
    so the decision and the write happen under the same lock. Listing and
    lookups read an unlocked snapshot.
    """

    def __init__(self, store: Store):
        self.store = store

    def create(self, spec: Union[JobSpec, Dict[str, Any]]) -> Job:
        """Enqueue a new pending job and return it"""
        if not isinstance(spec, JobSpec):
            if not isinstance(spec, dict):
                raise InvalidJobSpec("Job data must be a JSON object")
            try:
                spec = JobSpec.model_validate(spec)
            except ValidationError as e:
                raise InvalidJobSpec(str(e)) from e

        def _create(document: QueueDocument) -> Job:
            if spec.id is not None and document.find(spec.id) is not None:
                raise InvalidJobSpec(f"Job {spec.id} already exists")

            now = utcnow()
            max_retries = spec.max_retries
            if max_retries is None:
                max_retries = config_int(document, "max_retries")

            fields = dict(
                command=spec.command,
                state=JobState.PENDING,
                attempts=0,
                max_retries=max_retries,
                run_at=now,
                created_at=now,
                updated_at=now,
            )
            if spec.id is not None:
                fields["id"] = spec.id
            job = Job(**fields)
            document.jobs.append(job)
            return job.model_copy()

        job = self.store.mutate(_create)
        logger.info(f"Enqueued job {job.id}: {job.command}")
        return job

    def list(self, state: Union[str, JobState, None] = None) -> List[Job]:
        """Newest jobs first, optionally only those in `state`"""
        wanted = parse_state(state) if state is not None else None
        jobs = self.store.read().jobs
        if wanted is not None:
            jobs = [job for job in jobs if job.state == wanted]
        jobs = sorted(jobs, key=lambda job: job.created_at, reverse=True)
        return jobs[:LIST_LIMIT]

    def claim(self) -> Optional[Job]:
        """Atomically take the oldest eligible job and mark it processing.

        Returns None when nothing is eligible.
        """

        def _claim(document: QueueDocument) -> Optional[Job]:
            now = utcnow()
            candidates = [job for job in document.jobs if job.is_eligible(now)]
            if not candidates:
                return None
            # min() keeps the first of equal created_at values, i.e. insertion order
            job = min(candidates, key=lambda candidate: candidate.created_at)
            job.state = JobState.PROCESSING
            job.updated_at = now
            return job.model_copy()

        return self.store.mutate(_claim)

    def complete(self, job_id: str) -> None:
        def _complete(document: QueueDocument):
            job = document.find(job_id)
            if job is None:
                return
            job.state = JobState.COMPLETED
            job.last_error = None
            job.updated_at = utcnow()

        self.store.mutate(_complete)

    def report_failure(self, job_id: str, error_message: str) -> Optional[JobState]:
        """Record a failed attempt and schedule a retry or dead-letter the job.

        Returns the resulting state, or None if the job no longer exists.
        """

        def _fail(document: QueueDocument) -> Optional[JobState]:
            job = document.find(job_id)
            if job is None:
                return None

            now = utcnow()
            # backoff_base is read live; max_retries was fixed at creation
            decision = decide_retry(
                job.attempts, job.max_retries, config_float(document, "backoff_base"), now
            )
            job.state = decision.state
            job.attempts = decision.attempts
            if decision.run_at is not None:
                job.run_at = decision.run_at
            job.last_error = str(error_message or "")
            job.updated_at = now
            return decision.state

        return self.store.mutate(_fail)

    def get_by_id(self, job_id: str) -> Optional[Job]:
        return self.store.read().find(job_id)

    def state_counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        for job in self.store.read().jobs:
            counts[job.state.value] += 1
        return counts

    def list_dead(self) -> List[Job]:
        """Dead-lettered jobs, most recently updated first"""
        dead = [job for job in self.store.read().jobs if job.state == JobState.DEAD]
        dead.sort(key=lambda job: job.updated_at, reverse=True)
        return dead[:LIST_LIMIT]

    def requeue_dead(self, job_id: str) -> Job:
        """Move a dead job back to pending with a fresh attempt budget"""

        def _requeue(document: QueueDocument) -> Job:
            job = document.find(job_id)
            if job is None:
                raise NotFound(job_id)
            if job.state != JobState.DEAD:
                raise InvalidTransition(job_id, job.state.value, JobState.DEAD.value)

            now = utcnow()
            job.state = JobState.PENDING
            job.attempts = 0
            job.run_at = now
            job.last_error = None
            job.updated_at = now
            return job.model_copy()

        job = self.store.mutate(_requeue)
        logger.info(f"Requeued dead job {job_id}")
        return job
