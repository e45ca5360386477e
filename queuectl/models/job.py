from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, field_validator
from uuid import uuid4


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"


# States a worker may claim once run_at has elapsed
CLAIMABLE_STATES = (JobState.PENDING, JobState.FAILED)


class Job(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    command: str
    state: JobState = JobState.PENDING
    attempts: int = 0
    max_retries: int = 3
    run_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None

    def is_eligible(self, now: datetime) -> bool:
        """True when a worker may claim this job at `now`."""
        return self.state in CLAIMABLE_STATES and self.run_at <= now


class JobSpec(BaseModel):
    """Enqueue input. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    command: StrictStr
    id: Optional[StrictStr] = None
    max_retries: Optional[StrictInt] = Field(default=None, ge=0)

    @field_validator("command")
    @classmethod
    def command_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command must be a non-empty string")
        return value

    @field_validator("max_retries", mode="before")
    @classmethod
    def integral_max_retries(cls, value):
        # JSON has one number type: 2.0 means 2, 2.5 is still rejected
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    @field_validator("id")
    @classmethod
    def id_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("id cannot be empty")
        return value


class QueueDocument(BaseModel):
    """Everything persisted in the queue file."""

    jobs: List[Job] = Field(default_factory=list)
    config: Dict[str, str] = Field(default_factory=dict)

    def find(self, job_id: str) -> Optional[Job]:
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None
