"""High-level service layer for call-processing jobs."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, Optional, Sequence
from uuid import UUID, uuid4

import asyncpg

from call_pipeline.calls import CallStatusWriter
from call_pipeline.config import PipelineConfig
from call_pipeline.errors import (
    DuplicateJobError,
    InvalidJobStateError,
    JobNotFoundError,
    PermanentProcessingError,
    ProcessingError,
    StalledJobError,
    TransientProcessingError,
)
from call_pipeline.models import (
    DEFAULT_KIND,
    CallStatus,
    Job,
    JobHandle,
    JobPriority,
    JobStatus,
    utcnow,
)
from call_pipeline.store import JobStore

# Queue health thresholds reported by get_queue_stats
MAX_HEALTHY_PENDING = 1000
MAX_HEALTHY_FAILED = 100


async def wait_for_shutdown(shutdown_event: Optional[asyncio.Event], seconds: float) -> bool:
    """Sleep up to seconds, returning True early if shutdown_event is set."""
    if shutdown_event is None:
        await asyncio.sleep(seconds)
        return False
    try:
        await asyncio.wait_for(shutdown_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


class JobService:
    """High-level API for the call-processing queue."""

    def __init__(
        self,
        config: PipelineConfig,
        db_pool: Optional[asyncpg.Pool],
        logger: Optional[logging.Logger] = None,
        store: Optional[JobStore] = None,
        call_status: Optional[CallStatusWriter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.store = store or JobStore(db_pool)
        if call_status is None and db_pool is not None and config.call_status_table:
            call_status = CallStatusWriter(db_pool, config.call_status_table, self.logger)
        self.call_status = call_status
        self.clock = clock

    @property
    def stalled_threshold(self) -> timedelta:
        return timedelta(seconds=self.config.stalled_threshold_seconds)

    async def check_connectivity(self) -> None:
        """Raise StoreUnavailableError if the store cannot be reached."""
        await self.store.ping()

    async def enqueue_call(
        self,
        *,
        call_id: str,
        user_id: str,
        file_url: str,
        file_name: str,
        organization_id: Optional[str] = None,
        kind: str = DEFAULT_KIND,
        priority: int = JobPriority.NORMAL,
        max_attempts: Optional[int] = None,
        backoff_policy: Optional[dict[str, Any]] = None,
        run_not_before: Optional[datetime] = None,
    ) -> JobHandle:
        """
        Enqueue a call for processing.

        A request for a call and kind that already has an outstanding job is
        coalesced into that job, so upload retries stay idempotent.

        Returns:
            JobHandle: the new job, or the outstanding one with duplicate=True

        Raises:
            ValueError: If required fields are missing
        """
        if not call_id or not user_id or not file_url:
            raise ValueError("Invalid job data: call_id, user_id and file_url are required")
        if max_attempts is not None and max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        now = self.clock()
        if max_attempts is None:
            max_attempts = self.config.get_max_attempts_for_kind(kind)
        if backoff_policy is None:
            backoff_policy = self.config.get_backoff_policy_for_kind(kind)

        try:
            job = await self.store.enqueue(
                id=uuid4(),
                call_id=call_id,
                user_id=user_id,
                organization_id=organization_id,
                file_url=file_url,
                file_name=file_name,
                kind=kind,
                max_attempts=max_attempts,
                backoff_policy=backoff_policy,
                run_not_before=run_not_before or now,
                now=now,
                priority=priority,
            )
        except DuplicateJobError as e:
            existing = await self.store.find_outstanding(call_id, kind)
            if existing is None:
                # The outstanding job finished between the insert and the lookup
                return await self.enqueue_call(
                    call_id=call_id,
                    user_id=user_id,
                    file_url=file_url,
                    file_name=file_name,
                    organization_id=organization_id,
                    kind=kind,
                    priority=priority,
                    max_attempts=max_attempts,
                    backoff_policy=backoff_policy,
                    run_not_before=run_not_before,
                )
            self.logger.info(
                f"Call {call_id} already has outstanding {kind} job {existing.id}, "
                f"coalescing ({e})"
            )
            return JobHandle(existing.id, existing.status, duplicate=True)

        await self._write_call_status(job.call_id, CallStatus.QUEUED)
        self.logger.info(
            f"Enqueued job {job.id} for call {call_id} (kind={kind})",
            extra={"event": "enqueued", "job_id": str(job.id), "call_id": call_id},
        )
        return JobHandle(job.id, job.status)

    async def get_job(self, job_id: UUID) -> Job:
        """Get a job by ID."""
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(
        self,
        *,
        call_id: Optional[str] = None,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filters."""
        return await self.store.list_jobs(
            call_id=call_id, kind=kind, status=status, limit=limit
        )

    async def claim_next(
        self,
        kinds: Sequence[str],
        worker_id: str,
        shutdown_event: Optional[asyncio.Event] = None,
        poll_interval: Optional[float] = None,
    ) -> Optional[Job]:
        """
        Claim the next ready job, polling until one is available.

        Returns None once shutdown_event is set. StoreUnavailableError from the
        store propagates to the caller.
        """
        if poll_interval is None:
            poll_interval = self.config.poll_interval_seconds

        while not (shutdown_event and shutdown_event.is_set()):
            job = await self.store.claim_next(kinds, worker_id, self.clock())
            if job is not None:
                await self._write_call_status(job.call_id, CallStatus.PROCESSING)
                return job
            if await wait_for_shutdown(shutdown_event, poll_interval):
                break

        return None

    async def heartbeat(self, job: Job) -> bool:
        """Refresh a claimed job. False if the worker no longer holds it."""
        return await self.store.touch(job.id, job.lock_token, self.clock())

    async def mark_completed(self, job: Job) -> Optional[Job]:
        """Mark a claimed job completed. None if the claim was lost."""
        updated = await self.store.mark_completed(
            job.id, self.clock(), lock_token=job.lock_token
        )
        if updated is None:
            self.logger.warning(
                f"Job {job.id} was no longer held by this worker, completion not recorded"
            )
            return None
        await self._write_call_status(job.call_id, CallStatus.COMPLETED)
        return updated

    async def mark_failed(self, job: Job, error: ProcessingError) -> Optional[Job]:
        """
        Record a failed attempt of a claimed job.

        Transient errors are rescheduled with backoff until attempts run out;
        permanent errors fail the job at once. None if the claim was lost.
        """
        retry_after = error.retry_after if isinstance(error, TransientProcessingError) else None
        updated = await self.store.mark_failed(
            job.id,
            error.to_dict(),
            self.clock(),
            retry_after=retry_after,
            permanent=isinstance(error, PermanentProcessingError),
            lock_token=job.lock_token,
        )
        if updated is None:
            self.logger.warning(
                f"Job {job.id} was no longer held by this worker, failure not recorded"
            )
            return None

        if updated.status == JobStatus.FAILED:
            await self._write_call_status(job.call_id, CallStatus.FAILED, str(error))
        else:
            await self._write_call_status(job.call_id, CallStatus.RETRYING, str(error))
        return updated

    async def release(self, job: Job) -> bool:
        """Return a claimed job to pending without counting an attempt."""
        released = await self.store.release(job.id, job.lock_token, self.clock())
        if released:
            await self._write_call_status(job.call_id, CallStatus.QUEUED)
        return released

    async def find_stalled(self, older_than: Optional[timedelta] = None) -> list[Job]:
        """Find stalled jobs (active past the threshold, or flagged stalled)."""
        return await self.store.find_stalled(
            older_than or self.stalled_threshold, self.clock()
        )

    async def resubmit(self, job_id: UUID) -> Job:
        """
        Hand a stalled job back to the queue, counting the abandoned attempt.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidJobStateError: If the job is not stalled
        """
        job = await self.store.resubmit(job_id, self.clock(), self.stalled_threshold)
        if job is None:
            current = await self.get_job(job_id)
            raise InvalidJobStateError(job_id, current.status.value, "resubmit")

        if job.status == JobStatus.FAILED:
            self.logger.error(
                f"Stalled job {job.id} exhausted {job.max_attempts} attempts, marked failed",
                extra={"event": "failed", "job_id": str(job.id), "call_id": job.call_id},
            )
            await self._write_call_status(job.call_id, CallStatus.FAILED, "Job stalled")
        else:
            self.logger.info(
                f"Resubmitted stalled job {job.id} (attempt {job.attempts}/{job.max_attempts})",
                extra={"event": "resubmitted", "job_id": str(job.id), "call_id": job.call_id},
            )
            await self._write_call_status(job.call_id, CallStatus.QUEUED)
        return job

    async def recover_stalled(self, auto_resubmit: Optional[bool] = None) -> int:
        """
        Run one stalled-job scan.

        Resubmits stalled jobs, or only flags them stalled when auto resubmission
        is disabled. Returns the number of jobs acted upon.
        """
        if auto_resubmit is None:
            auto_resubmit = self.config.auto_resubmit_stalled

        if not auto_resubmit:
            flagged = await self.store.flag_stalled(self.stalled_threshold, self.clock())
            for job in flagged:
                self._log_stalled(job)
                await self._write_call_status(job.call_id, CallStatus.STALLED)
            return len(flagged)

        recovered = 0
        for job in await self.find_stalled():
            self._log_stalled(job)
            try:
                await self.resubmit(job.id)
                recovered += 1
            except (InvalidJobStateError, JobNotFoundError) as e:
                # A worker reported or another recovery pass got there first
                self.logger.info(f"Skipping stalled job {job.id}: {e}")
        return recovered

    async def requeue_failed(self, job_id: UUID) -> JobHandle:
        """
        Create a fresh job for the call of a failed job.

        The failed job stays as it is for inspection. If another job for the same
        call and kind is outstanding, that job's handle is returned instead.
        """
        try:
            job = await self.store.requeue_failed(job_id, uuid4(), self.clock())
        except DuplicateJobError as e:
            existing = await self.store.find_outstanding(e.call_id, e.kind)
            if existing is None:
                raise
            return JobHandle(existing.id, existing.status, duplicate=True)

        self.logger.info(f"Requeued failed job {job_id} as {job.id}")
        await self._write_call_status(job.call_id, CallStatus.QUEUED)
        return JobHandle(job.id, job.status)

    async def retry_failed_jobs(self, limit: int = 100) -> int:
        """Requeue up to limit failed jobs. Returns how many new jobs were created."""
        retried = 0
        for job in await self.store.list_jobs(status=JobStatus.FAILED.value, limit=limit):
            try:
                handle = await self.requeue_failed(job.id)
            except JobNotFoundError:
                continue
            if not handle.duplicate:
                retried += 1
        self.logger.info(f"Retried {retried} failed jobs")
        return retried

    async def clean_completed(self, older_than: Optional[timedelta] = None) -> int:
        """Delete completed jobs past the retention period."""
        if older_than is None:
            older_than = timedelta(seconds=self.config.completed_retention_seconds)
        removed = await self.store.remove_completed(older_than, self.clock())
        if removed:
            self.logger.info(f"Cleaned {removed} completed jobs")
        return removed

    async def pause_queue(self) -> None:
        """Stop every worker from claiming new jobs. In-flight jobs finish normally."""
        await self.store.set_paused(True, self.clock())
        self.logger.warning("Job queue paused", extra={"event": "queue_paused"})

    async def resume_queue(self) -> None:
        """Let workers claim jobs again."""
        await self.store.set_paused(False, self.clock())
        self.logger.info("Job queue resumed", extra={"event": "queue_resumed"})

    async def is_paused(self) -> bool:
        return await self.store.is_paused()

    async def get_queue_stats(self) -> dict[str, Any]:
        """Job counts per status, a health summary and whether the queue is paused."""
        counts = await self.store.count_by_status()
        paused = await self.store.is_paused()
        pending = counts.get(JobStatus.PENDING.value, 0)
        failed = counts.get(JobStatus.FAILED.value, 0)
        return {
            "counts": {
                **counts,
                "total": pending
                + counts.get(JobStatus.ACTIVE.value, 0)
                + counts.get(JobStatus.STALLED.value, 0),
            },
            "health": {
                "is_healthy": pending < MAX_HEALTHY_PENDING and failed < MAX_HEALTHY_FAILED,
            },
            "is_paused": paused,
        }

    def _log_stalled(self, job: Job) -> None:
        error = StalledJobError(job.id, job.call_id, job.updated_at)
        self.logger.warning(
            str(error),
            extra={"event": "stalled", "job_id": str(job.id), "call_id": job.call_id},
        )

    async def _write_call_status(
        self, call_id: str, status: CallStatus, error_message: Optional[str] = None
    ) -> None:
        if self.call_status is not None:
            await self.call_status.update(call_id, status, error_message)
