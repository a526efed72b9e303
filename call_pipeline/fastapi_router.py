"""FastAPI router for the call pipeline HTTP API."""

import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel

from call_pipeline.config import AUTH_TOKEN_HEADER
from call_pipeline.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    StoreUnavailableError,
)
from call_pipeline.models import DEFAULT_KIND, JobPriority
from call_pipeline.service import JobService


logger = logging.getLogger(__name__)


class EnqueueCallRequest(BaseModel):
    """Request model for enqueueing a call, sent when an upload completes."""

    call_id: str
    user_id: str
    file_url: str
    file_name: str
    organization_id: Optional[str] = None
    kind: str = DEFAULT_KIND
    priority: int = int(JobPriority.NORMAL)
    max_attempts: Optional[int] = None


class JobHandleResponse(BaseModel):
    """Response model for enqueue and requeue."""

    job_id: str
    status: str
    duplicate: bool = False


class JobResponse(BaseModel):
    """Response model for job details."""

    id: str
    call_id: str
    user_id: str
    organization_id: Optional[str] = None
    file_url: str
    file_name: str
    kind: str
    status: str
    attempts: int
    max_attempts: int
    backoff_policy: Dict[str, Any]
    run_not_before: Optional[str] = None
    priority: int
    claimed_by: Optional[str] = None
    claimed_at: Optional[str] = None
    last_error: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    finished_at: Optional[str] = None


class CountResponse(BaseModel):
    """Number of jobs affected by a bulk operation."""

    count: int


class PauseStateResponse(BaseModel):
    """Whether workers are currently allowed to claim jobs."""

    is_paused: bool


def _parse_job_id(job_id: str) -> UUID:
    try:
        return UUID(job_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="Invalid job ID format") from e


def _to_http_error(e: Exception, action: str) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, JobNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidJobStateError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, StoreUnavailableError):
        logger.error(f"Job store unavailable while trying to {action}: {e}")
        return HTTPException(status_code=503, detail="Job store unavailable")
    logger.exception(f"Error trying to {action}")
    return HTTPException(status_code=500, detail="Internal server error")


def create_pipeline_router(
    job_service_factory: Callable[[], JobService],
    auth_token: Optional[str] = None,
) -> APIRouter:
    """
    Create FastAPI router for the call pipeline API.

    Args:
        job_service_factory: Callable that returns a JobService instance
        auth_token: Optional token required on POST routes

    Returns:
        APIRouter instance
    """
    router = APIRouter()

    async def get_job_service() -> JobService:
        """Dependency to get JobService instance."""
        return job_service_factory()

    async def verify_auth_token(
        x_call_pipeline_token: Optional[str] = Header(None, alias=AUTH_TOKEN_HEADER)
    ) -> None:
        """Verify auth token if configured."""
        if auth_token:
            if not x_call_pipeline_token or x_call_pipeline_token != auth_token:
                raise HTTPException(
                    status_code=401, detail="Invalid or missing auth token"
                )

    @router.post("/jobs/enqueue", response_model=JobHandleResponse)
    async def enqueue_call(
        request: EnqueueCallRequest,
        job_service: JobService = Depends(get_job_service),
        _: None = Depends(verify_auth_token),
    ):
        """Enqueue a call for processing. Duplicates return the outstanding job."""
        try:
            handle = await job_service.enqueue_call(
                call_id=request.call_id,
                user_id=request.user_id,
                file_url=request.file_url,
                file_name=request.file_name,
                organization_id=request.organization_id,
                kind=request.kind,
                priority=request.priority,
                max_attempts=request.max_attempts,
            )
            return JobHandleResponse(**handle.to_dict())
        except Exception as e:
            raise _to_http_error(e, "enqueue call") from e

    @router.get("/jobs/stalled", response_model=List[JobResponse])
    async def list_stalled_jobs(
        job_service: JobService = Depends(get_job_service),
    ):
        """List jobs that are stalled or flagged stalled."""
        try:
            jobs = await job_service.find_stalled()
            return [JobResponse(**job.to_dict()) for job in jobs]
        except Exception as e:
            raise _to_http_error(e, "list stalled jobs") from e

    @router.get("/jobs/{job_id}", response_model=JobResponse)
    async def get_job(
        job_id: str,
        job_service: JobService = Depends(get_job_service),
    ):
        """Get job details by ID."""
        job_uuid = _parse_job_id(job_id)
        try:
            job = await job_service.get_job(job_uuid)
            return JobResponse(**job.to_dict())
        except Exception as e:
            raise _to_http_error(e, "get job") from e

    @router.get("/jobs", response_model=List[JobResponse])
    async def list_jobs(
        call_id: Optional[str] = Query(None),
        kind: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=1000),
        job_service: JobService = Depends(get_job_service),
    ):
        """List jobs with optional filters."""
        try:
            jobs = await job_service.list_jobs(
                call_id=call_id,
                kind=kind,
                status=status,
                limit=limit,
            )
            return [JobResponse(**job.to_dict()) for job in jobs]
        except Exception as e:
            raise _to_http_error(e, "list jobs") from e

    @router.post("/jobs/{job_id}/resubmit", response_model=JobResponse)
    async def resubmit_job(
        job_id: str,
        job_service: JobService = Depends(get_job_service),
        _: None = Depends(verify_auth_token),
    ):
        """Hand a stalled job back to the queue."""
        job_uuid = _parse_job_id(job_id)
        try:
            job = await job_service.resubmit(job_uuid)
            return JobResponse(**job.to_dict())
        except Exception as e:
            raise _to_http_error(e, "resubmit job") from e

    @router.post("/jobs/{job_id}/requeue", response_model=JobHandleResponse)
    async def requeue_job(
        job_id: str,
        job_service: JobService = Depends(get_job_service),
        _: None = Depends(verify_auth_token),
    ):
        """Create a new job for the call of a failed job."""
        job_uuid = _parse_job_id(job_id)
        try:
            handle = await job_service.requeue_failed(job_uuid)
            return JobHandleResponse(**handle.to_dict())
        except Exception as e:
            raise _to_http_error(e, "requeue job") from e

    @router.post("/queue/retry-failed", response_model=CountResponse)
    async def retry_failed(
        limit: int = Query(100, ge=1, le=1000),
        job_service: JobService = Depends(get_job_service),
        _: None = Depends(verify_auth_token),
    ):
        """Requeue failed jobs."""
        try:
            return CountResponse(count=await job_service.retry_failed_jobs(limit=limit))
        except Exception as e:
            raise _to_http_error(e, "retry failed jobs") from e

    @router.post("/queue/clean-completed", response_model=CountResponse)
    async def clean_completed(
        older_than_seconds: Optional[int] = Query(None, ge=0),
        job_service: JobService = Depends(get_job_service),
        _: None = Depends(verify_auth_token),
    ):
        """Delete completed jobs past the retention period, or past older_than_seconds."""
        older_than = (
            timedelta(seconds=older_than_seconds) if older_than_seconds is not None else None
        )
        try:
            return CountResponse(count=await job_service.clean_completed(older_than=older_than))
        except Exception as e:
            raise _to_http_error(e, "clean completed jobs") from e

    @router.post("/queue/pause", response_model=PauseStateResponse)
    async def pause_queue(
        job_service: JobService = Depends(get_job_service),
        _: None = Depends(verify_auth_token),
    ):
        """Stop workers from claiming new jobs."""
        try:
            await job_service.pause_queue()
            return PauseStateResponse(is_paused=True)
        except Exception as e:
            raise _to_http_error(e, "pause queue") from e

    @router.post("/queue/resume", response_model=PauseStateResponse)
    async def resume_queue(
        job_service: JobService = Depends(get_job_service),
        _: None = Depends(verify_auth_token),
    ):
        """Let workers claim jobs again."""
        try:
            await job_service.resume_queue()
            return PauseStateResponse(is_paused=False)
        except Exception as e:
            raise _to_http_error(e, "resume queue") from e

    @router.get("/queue/stats")
    async def queue_stats(
        job_service: JobService = Depends(get_job_service),
    ) -> Dict[str, Any]:
        """Job counts per status and queue health."""
        try:
            return await job_service.get_queue_stats()
        except Exception as e:
            raise _to_http_error(e, "get queue stats") from e

    return router
