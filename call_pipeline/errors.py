"""Exception types for the call pipeline."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


class CallPipelineError(Exception):
    """Base exception for all call pipeline errors."""

    pass


class DuplicateJobError(CallPipelineError):
    """Raised when a job for the same call and kind is already outstanding."""

    def __init__(
        self,
        call_id: str,
        kind: str,
        existing_job_id: Any = None,
        message: str = None,
    ):
        self.call_id = call_id
        self.kind = kind
        self.existing_job_id = existing_job_id
        if message is None:
            message = f"Job for call {call_id} and kind {kind} is already outstanding"
        super().__init__(message)


class JobNotFoundError(CallPipelineError):
    """Raised when a job is not found."""

    def __init__(self, job_id: Any, message: str = None):
        self.job_id = job_id
        if message is None:
            message = f"Job {job_id} not found"
        super().__init__(message)


class InvalidJobStateError(CallPipelineError):
    """Raised when an operation is not allowed in the job's current status."""

    def __init__(self, job_id: Any, status: str, operation: str):
        self.job_id = job_id
        self.status = status
        self.operation = operation
        super().__init__(f"Cannot {operation} job {job_id} in status {status}")


class ProcessingError(CallPipelineError):
    """Base class for failures reported by a processor."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the job's last_error column."""
        error = {
            "error": str(self),
            "type": type(self).__name__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.status_code is not None:
            error["status_code"] = self.status_code
        return error


class TransientProcessingError(ProcessingError):
    """Network, timeout or 5xx failure. The job is retried with backoff."""

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[timedelta] = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, status_code)


class PermanentProcessingError(ProcessingError):
    """Malformed input or unsupported file. The job fails without further retries."""

    pass


class StoreUnavailableError(CallPipelineError):
    """Raised when the job queue store cannot be reached."""

    pass


class StalledJobError(CallPipelineError):
    """Describes a job found active past the stalled threshold.

    Built by the recovery scan for logging; it is not raised.
    """

    def __init__(self, job_id: Any, call_id: str, last_updated: Optional[datetime]):
        self.job_id = job_id
        self.call_id = call_id
        self.last_updated = last_updated
        super().__init__(
            f"Job {job_id} for call {call_id} stalled "
            f"(last updated {last_updated.isoformat() if last_updated else 'never'})"
        )


class RemoteHttpError(CallPipelineError):
    """Raised when an HTTP request to a remote call pipeline service fails."""

    def __init__(self, status_code: int, message: str, response_body: str = None):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(f"HTTP {status_code}: {message}")
