"""Unit tests for errors module."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from call_pipeline.errors import (
    CallPipelineError,
    DuplicateJobError,
    InvalidJobStateError,
    JobNotFoundError,
    PermanentProcessingError,
    ProcessingError,
    RemoteHttpError,
    StalledJobError,
    StoreUnavailableError,
    TransientProcessingError,
)


def test_all_errors_share_base():
    """Every error derives from CallPipelineError."""
    for error_class in (
        DuplicateJobError,
        InvalidJobStateError,
        JobNotFoundError,
        ProcessingError,
        RemoteHttpError,
        StalledJobError,
        StoreUnavailableError,
    ):
        assert issubclass(error_class, CallPipelineError)


def test_duplicate_job_error():
    """Test DuplicateJobError attributes and message."""
    existing = uuid4()
    error = DuplicateJobError("call-1", "process-call", existing)

    assert error.call_id == "call-1"
    assert error.kind == "process-call"
    assert error.existing_job_id == existing
    assert "call-1" in str(error)


def test_job_not_found_error():
    """Test JobNotFoundError."""
    job_id = uuid4()
    error = JobNotFoundError(job_id)

    assert error.job_id == job_id
    assert str(error) == f"Job {job_id} not found"


def test_invalid_job_state_error():
    """Test InvalidJobStateError message."""
    job_id = uuid4()
    error = InvalidJobStateError(job_id, "completed", "resubmit")

    assert str(error) == f"Cannot resubmit job {job_id} in status completed"


def test_processing_error_classes():
    """Transient errors are retryable, permanent ones are not."""
    transient = TransientProcessingError(
        "Processing failed: 503", status_code=503, retry_after=timedelta(seconds=10)
    )
    permanent = PermanentProcessingError("Processing failed: 400", status_code=400)

    assert transient.retryable
    assert transient.retry_after == timedelta(seconds=10)
    assert not permanent.retryable
    assert isinstance(permanent, ProcessingError)


def test_processing_error_to_dict():
    """to_dict records message, class, status and an aware timestamp."""
    data = TransientProcessingError("timeout", status_code=504).to_dict()

    assert data["error"] == "timeout"
    assert data["type"] == "TransientProcessingError"
    assert data["status_code"] == 504
    assert datetime.fromisoformat(data["timestamp"]).tzinfo is not None

    assert "status_code" not in PermanentProcessingError("bad file").to_dict()


def test_stalled_job_error_message():
    """StalledJobError describes the job and when it was last updated."""
    job_id = uuid4()
    updated = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    error = StalledJobError(job_id, "call-1", updated)

    assert str(job_id) in str(error)
    assert "call-1" in str(error)
    assert updated.isoformat() in str(error)


def test_remote_http_error():
    """Test RemoteHttpError."""
    error = RemoteHttpError(404, "Job not found", response_body='{"detail": "x"}')

    assert error.status_code == 404
    assert error.response_body == '{"detail": "x"}'
    assert str(error) == "HTTP 404: Job not found"
