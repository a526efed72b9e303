"""Unit tests for models module."""

from datetime import timedelta
from uuid import uuid4

import pytest

from call_pipeline.errors import TransientProcessingError
from call_pipeline.models import (
    Job,
    JobHandle,
    JobPriority,
    JobStatus,
    ProcessedOutcome,
    ProcessingResult,
)


def test_job_status_enum():
    """Test JobStatus enum values."""
    assert JobStatus.PENDING.value == "pending"
    assert JobStatus.ACTIVE.value == "active"
    assert JobStatus.COMPLETED.value == "completed"
    assert JobStatus.FAILED.value == "failed"
    assert JobStatus.STALLED.value == "stalled"


def test_job_priority_order():
    """Lower priority values are claimed first."""
    assert JobPriority.CRITICAL < JobPriority.HIGH < JobPriority.NORMAL
    assert JobPriority.NORMAL < JobPriority.LOW < JobPriority.BACKGROUND


def test_job_final_and_attempts_remaining(sample_job):
    """Test is_final and attempts_remaining."""
    assert not sample_job.is_final
    assert sample_job.attempts_remaining == 3

    sample_job.status = JobStatus.FAILED
    sample_job.attempts = 3
    assert sample_job.is_final
    assert sample_job.attempts_remaining == 0


def test_job_accepts_status_string(sample_job):
    """Status strings read from the database become JobStatus members."""
    job = Job(
        id=uuid4(),
        call_id="c",
        user_id="u",
        file_url="https://storage.test/c.mp3",
        file_name="c.mp3",
        kind="process-call",
        status="pending",
        attempts=0,
        max_attempts=3,
        backoff_policy={},
        run_not_before=sample_job.run_not_before,
    )
    assert job.status is JobStatus.PENDING


def test_job_to_dict(sample_job):
    """Test converting Job to dictionary."""
    data = sample_job.to_dict()

    assert data["id"] == str(sample_job.id)
    assert data["call_id"] == "call-123"
    assert data["status"] == "active"
    assert data["attempts"] == 0
    assert data["max_attempts"] == 3
    assert data["run_not_before"] == sample_job.run_not_before.isoformat()
    assert data["finished_at"] is None
    assert "lock_token" not in data


def test_job_handle_to_dict():
    """Test JobHandle serialization."""
    job_id = uuid4()
    handle = JobHandle(job_id, JobStatus.PENDING, duplicate=True)

    assert handle.to_dict() == {
        "job_id": str(job_id),
        "status": "pending",
        "duplicate": True,
    }


def test_processing_result_success():
    """A success result carries the outcome."""
    outcome = ProcessedOutcome("call-1", {"transcript": "hi"}, elapsed_seconds=1.5)
    result = ProcessingResult.success(outcome)

    assert result.ok
    assert result.unwrap() is outcome
    assert result.error is None


def test_processing_result_failure():
    """A failure result carries the error."""
    error = TransientProcessingError("boom", retry_after=timedelta(seconds=3))
    result = ProcessingResult.failure(error)

    assert not result.ok
    assert result.unwrap() is error


def test_processing_result_requires_exactly_one():
    """Neither or both of outcome and error is rejected."""
    with pytest.raises(ValueError):
        ProcessingResult()
    with pytest.raises(ValueError):
        ProcessingResult(
            outcome=ProcessedOutcome("call-1"),
            error=TransientProcessingError("boom"),
        )
