"""Backoff calculation and job state-transition planning.

These functions are pure: every store backend applies the plans they return inside
its own atomic update, so retry and recovery rules live in one place.
"""

from datetime import datetime, timedelta
from typing import Any, Optional

from call_pipeline.models import Job, JobStatus

DEFAULT_BACKOFF_POLICY = {"type": "exponential", "base_seconds": 5, "max_seconds": 3600}


class TransitionPlan:
    """Target values for a job row after a failure or a resubmission."""

    def __init__(
        self,
        status: JobStatus,
        attempts: int,
        run_not_before: Optional[datetime] = None,
        delay_seconds: Optional[int] = None,
    ):
        self.status = status
        self.attempts = attempts
        self.run_not_before = run_not_before
        self.delay_seconds = delay_seconds

    @property
    def retry_scheduled(self) -> bool:
        return self.status == JobStatus.PENDING


def calculate_backoff(backoff_policy: dict[str, Any], attempt: int) -> int:
    """
    Calculate backoff delay based on policy and attempt number.

    Args:
        backoff_policy: Backoff policy configuration
        attempt: Attempt that just failed (1-indexed)

    Returns:
        Backoff delay in seconds
    """
    policy_type = backoff_policy.get("type", "exponential")
    base_seconds = backoff_policy.get("base_seconds", 5)
    max_seconds = backoff_policy.get("max_seconds", 3600)

    if policy_type == "linear":
        delay = base_seconds * attempt
    elif policy_type == "constant":
        delay = base_seconds
    else:
        # Exponential, also the fallback for unknown types: base * 2^(attempt-1)
        delay = base_seconds * (2 ** (attempt - 1))

    return min(delay, max_seconds)


def plan_failure(
    job: Job,
    now: datetime,
    permanent: bool = False,
    retry_after: Optional[timedelta] = None,
) -> TransitionPlan:
    """Plan the transition for a failed attempt of an active job.

    The attempt is always counted. A permanent error forces attempts to
    max_attempts and fails the job; otherwise the job is rescheduled until its
    attempts run out.
    """
    if permanent:
        return TransitionPlan(JobStatus.FAILED, job.max_attempts)

    attempts = min(job.attempts + 1, job.max_attempts)
    if attempts >= job.max_attempts:
        return TransitionPlan(JobStatus.FAILED, attempts)

    delay = calculate_backoff(job.backoff_policy, attempts)
    if retry_after is not None:
        delay = max(delay, int(retry_after.total_seconds()))

    return TransitionPlan(
        JobStatus.PENDING,
        attempts,
        run_not_before=now + timedelta(seconds=delay),
        delay_seconds=delay,
    )


def plan_resubmit(job: Job, now: datetime) -> TransitionPlan:
    """Plan the transition for a stalled job being handed back to the queue.

    The abandoned attempt counts against max_attempts. The job becomes claimable
    immediately, or fails if that was its last attempt.
    """
    attempts = min(job.attempts + 1, job.max_attempts)
    if attempts >= job.max_attempts:
        return TransitionPlan(JobStatus.FAILED, attempts)
    return TransitionPlan(JobStatus.PENDING, attempts, run_not_before=now)


def is_stalled(job: Job, older_than: timedelta, now: datetime) -> bool:
    """True if the job was flagged stalled or is active without a recent update."""
    if job.status == JobStatus.STALLED:
        return True
    if job.status != JobStatus.ACTIVE or job.updated_at is None:
        return False
    return job.updated_at < now - older_than
