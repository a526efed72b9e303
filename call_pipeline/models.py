"""Data models for call-processing jobs."""

from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Optional, Union
from uuid import UUID

from call_pipeline.errors import ProcessingError

DEFAULT_KIND = "process-call"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job status values."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


# Statuses covered by the one-outstanding-job-per-call-and-kind rule
OUTSTANDING_STATUSES = (JobStatus.PENDING, JobStatus.ACTIVE, JobStatus.STALLED)

# Rows in these statuses are never mutated again
FINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class CallStatus(str, Enum):
    """Processing status written to the Call record."""

    QUEUED = "queued"
    PROCESSING = "processing"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


class JobPriority(IntEnum):
    """Claim priority. Lower values are claimed first."""

    CRITICAL = 1
    HIGH = 5
    NORMAL = 10
    LOW = 15
    BACKGROUND = 20


class Job:
    """Represents a job record."""

    def __init__(
        self,
        id: UUID,
        call_id: str,
        user_id: str,
        file_url: str,
        file_name: str,
        kind: str,
        status: JobStatus,
        attempts: int,
        max_attempts: int,
        backoff_policy: Dict[str, Any],
        run_not_before: datetime,
        organization_id: Optional[str] = None,
        priority: int = JobPriority.NORMAL,
        lock_token: Optional[UUID] = None,
        claimed_by: Optional[str] = None,
        claimed_at: Optional[datetime] = None,
        last_error: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
        finished_at: Optional[datetime] = None,
    ):
        self.id = id
        self.call_id = call_id
        self.user_id = user_id
        self.organization_id = organization_id
        self.file_url = file_url
        self.file_name = file_name
        self.kind = kind
        self.status = JobStatus(status) if isinstance(status, str) else status
        self.attempts = attempts
        self.max_attempts = max_attempts
        self.backoff_policy = backoff_policy
        self.run_not_before = run_not_before
        self.priority = priority
        self.lock_token = lock_token
        self.claimed_by = claimed_by
        self.claimed_at = claimed_at
        self.last_error = last_error
        self.created_at = created_at
        self.updated_at = updated_at
        self.finished_at = finished_at

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert job to dictionary for JSON serialization."""
        return {
            "id": str(self.id),
            "call_id": self.call_id,
            "user_id": self.user_id,
            "organization_id": self.organization_id,
            "file_url": self.file_url,
            "file_name": self.file_name,
            "kind": self.kind,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "backoff_policy": self.backoff_policy,
            "run_not_before": (
                self.run_not_before.isoformat() if self.run_not_before else None
            ),
            "priority": int(self.priority),
            "claimed_by": self.claimed_by,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, call_id={self.call_id}, kind={self.kind}, "
            f"status={self.status.value}, attempts={self.attempts}/{self.max_attempts})"
        )


class JobHandle:
    """Returned by enqueue. duplicate is True when the request coalesced into an
    already outstanding job for the same call and kind."""

    def __init__(self, job_id: UUID, status: JobStatus, duplicate: bool = False):
        self.job_id = job_id
        self.status = status
        self.duplicate = duplicate

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": str(self.job_id),
            "status": self.status.value,
            "duplicate": self.duplicate,
        }


class ProcessedOutcome:
    """Successful result of one processing attempt."""

    def __init__(
        self,
        call_id: str,
        body: Optional[Dict[str, Any]] = None,
        elapsed_seconds: float = 0.0,
    ):
        self.call_id = call_id
        self.body = body or {}
        self.elapsed_seconds = elapsed_seconds


class ProcessingResult:
    """Either a ProcessedOutcome or a ProcessingError.

    Processors return this instead of raising, and the dispatcher decides the next
    job transition from the error class.
    """

    def __init__(
        self,
        outcome: Optional[ProcessedOutcome] = None,
        error: Optional[ProcessingError] = None,
    ):
        if (outcome is None) == (error is None):
            raise ValueError("ProcessingResult needs exactly one of outcome or error")
        self.outcome = outcome
        self.error = error

    @classmethod
    def success(cls, outcome: ProcessedOutcome) -> "ProcessingResult":
        return cls(outcome=outcome)

    @classmethod
    def failure(cls, error: ProcessingError) -> "ProcessingResult":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Union[ProcessedOutcome, ProcessingError]:
        return self.outcome if self.ok else self.error
