"""HTTP client for the call pipeline API."""

from typing import Any, Dict, List, Optional
from uuid import UUID

import aiohttp

from call_pipeline.config import AUTH_TOKEN_HEADER
from call_pipeline.errors import RemoteHttpError


class PipelineHttpClient:
    """HTTP client for calling a call pipeline service."""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 5.0,
    ):
        """
        Initialize HTTP client.

        Args:
            base_url: Base URL of the pipeline API (e.g., "https://calls.internal/pipeline")
            auth_token: Optional auth token for the X-Call-Pipeline-Token header
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def enqueue_call(
        self,
        *,
        call_id: str,
        user_id: str,
        file_url: str,
        file_name: str,
        organization_id: Optional[str] = None,
        kind: Optional[str] = None,
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Enqueue a call for processing.

        Returns:
            Job handle with job_id, status and duplicate

        Raises:
            RemoteHttpError: If the HTTP request fails
        """
        request_body: Dict[str, Any] = {
            "call_id": call_id,
            "user_id": user_id,
            "file_url": file_url,
            "file_name": file_name,
        }
        if organization_id:
            request_body["organization_id"] = organization_id
        if kind:
            request_body["kind"] = kind
        if priority is not None:
            request_body["priority"] = priority
        if max_attempts is not None:
            request_body["max_attempts"] = max_attempts

        return await self._request(
            "POST", "/jobs/enqueue", "Failed to enqueue call", json=request_body
        )

    async def get_job(self, job_id: UUID) -> Dict[str, Any]:
        """
        Get job details by ID.

        Raises:
            RemoteHttpError: If the HTTP request fails (404 if the job is unknown)
        """
        return await self._request("GET", f"/jobs/{job_id}", "Failed to get job")

    async def list_jobs(
        self,
        *,
        call_id: Optional[str] = None,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """List jobs with optional filters."""
        params: Dict[str, Any] = {"limit": limit}
        if call_id:
            params["call_id"] = call_id
        if kind:
            params["kind"] = kind
        if status:
            params["status"] = status

        return await self._request("GET", "/jobs", "Failed to list jobs", params=params)

    async def resubmit(self, job_id: UUID) -> Dict[str, Any]:
        """Hand a stalled job back to the queue."""
        return await self._request(
            "POST", f"/jobs/{job_id}/resubmit", "Failed to resubmit job"
        )

    async def requeue(self, job_id: UUID) -> Dict[str, Any]:
        """Create a new job for the call of a failed job."""
        return await self._request(
            "POST", f"/jobs/{job_id}/requeue", "Failed to requeue job"
        )

    async def get_queue_stats(self) -> Dict[str, Any]:
        """Job counts per status and queue health."""
        return await self._request("GET", "/queue/stats", "Failed to get queue stats")

    async def pause_queue(self) -> Dict[str, Any]:
        """Stop workers from claiming new jobs."""
        return await self._request("POST", "/queue/pause", "Failed to pause queue")

    async def resume_queue(self) -> Dict[str, Any]:
        """Let workers claim jobs again."""
        return await self._request("POST", "/queue/resume", "Failed to resume queue")

    async def clean_completed(self, older_than_seconds: Optional[int] = None) -> Dict[str, Any]:
        """Delete completed jobs past the retention period, or past older_than_seconds."""
        params: Dict[str, Any] = {}
        if older_than_seconds is not None:
            params["older_than_seconds"] = older_than_seconds
        return await self._request(
            "POST", "/queue/clean-completed", "Failed to clean completed jobs", params=params
        )

    async def _request(self, method: str, path: str, failure: str, **kwargs) -> Any:
        headers = {}
        if self.auth_token:
            headers[AUTH_TOKEN_HEADER] = self.auth_token

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            try:
                async with session.request(
                    method, f"{self.base_url}{path}", headers=headers, **kwargs
                ) as resp:
                    response_body = await resp.text()

                    if resp.status >= 400:
                        raise RemoteHttpError(
                            status_code=resp.status,
                            message=f"{failure}: {response_body}",
                            response_body=response_body,
                        )

                    return await resp.json()

            except aiohttp.ClientError as e:
                raise RemoteHttpError(
                    status_code=0,
                    message=f"Network error: {str(e)}",
                ) from e
