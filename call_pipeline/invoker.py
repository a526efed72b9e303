"""HTTP invoker for the call processing API."""

import asyncio
import json
import logging
import time
from datetime import timedelta
from typing import Any, Dict, Optional

import aiohttp

from call_pipeline.errors import PermanentProcessingError, TransientProcessingError
from call_pipeline.models import Job, ProcessedOutcome, ProcessingResult

INTERNAL_PROCESSING_HEADER = "X-Internal-Processing"
IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"

# Statuses worth retrying besides 5xx
RETRYABLE_STATUSES = {408, 425, 429}


class ProcessingInvoker:
    """Calls the processing endpoint once per attempt.

    The job id is sent as the idempotency key on every attempt, so the endpoint
    can upsert by call id and ignore a repeat of an attempt that already landed.
    """

    def __init__(
        self,
        base_url: str,
        internal_token: Optional[str] = None,
        timeout: float = 300.0,
        logger: Optional[logging.Logger] = None,
    ):
        """
        Initialize the invoker.

        Args:
            base_url: Base URL of the application serving /api/calls/{id}/process
            internal_token: Value of the internal processing header; "true" if unset
            timeout: Request timeout in seconds
            logger: Logger instance
        """
        self.base_url = base_url.rstrip("/")
        self.internal_token = internal_token or "true"
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logger or logging.getLogger(__name__)

    def build_request(self, job: Job) -> tuple[str, Dict[str, str], Dict[str, Any]]:
        """URL, headers and JSON body for one attempt of a job."""
        url = f"{self.base_url}/api/calls/{job.call_id}/process"
        headers = {
            "Content-Type": "application/json",
            INTERNAL_PROCESSING_HEADER: self.internal_token,
            IDEMPOTENCY_KEY_HEADER: str(job.id),
        }
        body = {
            "callId": job.call_id,
            "userId": job.user_id,
            "fileUrl": job.file_url,
            "fileName": job.file_name,
        }
        return url, headers, body

    async def process(self, job: Job, ctx: Optional[Dict[str, Any]] = None) -> ProcessingResult:
        """
        Run one processing attempt for a job.

        Never raises for processing failures; they are returned as a
        TransientProcessingError or PermanentProcessingError result.
        """
        url, headers, body = self.build_request(job)
        started = time.monotonic()

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(url, json=body, headers=headers) as resp:
                    response_body = await resp.text()

                    if not 200 <= resp.status < 300:
                        return ProcessingResult.failure(
                            _classify_status(
                                resp.status, response_body, resp.headers.get("Retry-After")
                            )
                        )

        except asyncio.TimeoutError:
            return ProcessingResult.failure(
                TransientProcessingError(
                    f"Processing call {job.call_id} timed out after "
                    f"{self.timeout.total}s"
                )
            )
        except aiohttp.ClientError as e:
            return ProcessingResult.failure(
                TransientProcessingError(f"Network error: {str(e)}")
            )

        try:
            data = json.loads(response_body) if response_body.strip() else {}
        except ValueError:
            return ProcessingResult.failure(
                TransientProcessingError(
                    f"Unparsable response for call {job.call_id}: {response_body[:200]}",
                    status_code=resp.status,
                )
            )

        elapsed = time.monotonic() - started
        self.logger.debug(f"Processing API accepted call {job.call_id} in {elapsed:.2f}s")
        return ProcessingResult.success(
            ProcessedOutcome(
                call_id=job.call_id,
                body=data if isinstance(data, dict) else {"result": data},
                elapsed_seconds=elapsed,
            )
        )


def _classify_status(status: int, response_body: str, retry_after: Optional[str]):
    message = f"Processing failed: {status} - {response_body[:500]}"
    if status >= 500 or status in RETRYABLE_STATUSES:
        return TransientProcessingError(
            message, status_code=status, retry_after=_parse_retry_after(retry_after)
        )
    return PermanentProcessingError(message, status_code=status)


def _parse_retry_after(value: Optional[str]) -> Optional[timedelta]:
    # Only the delay-seconds form; HTTP dates fall back to normal backoff
    if not value:
        return None
    try:
        seconds = int(value.strip())
    except ValueError:
        return None
    return timedelta(seconds=max(0, seconds))
