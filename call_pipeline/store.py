"""Database store layer for call-processing jobs."""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Optional, Sequence
from uuid import UUID, uuid4

import asyncpg

from call_pipeline.errors import (
    DuplicateJobError,
    InvalidJobStateError,
    JobNotFoundError,
    StoreUnavailableError,
)
from call_pipeline.models import Job, JobStatus
from call_pipeline.transitions import plan_failure, plan_resubmit

# Errors meaning the database could not be reached or the connection broke
CONNECTION_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.AdminShutdownError,
    asyncpg.exceptions.TooManyConnectionsError,
)


class JobStore:
    """Postgres-backed job queue.

    Every state change is a single conditional UPDATE or a row-locked
    read-modify-write, so any number of worker processes can share one table.
    """

    def __init__(self, db_pool: asyncpg.Pool):
        self.db_pool = db_pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self.db_pool.acquire() as conn:
                yield conn
        except CONNECTION_ERRORS as e:
            raise StoreUnavailableError(f"Job store unavailable: {e}") from e

    async def ping(self) -> None:
        """Verify the store is reachable."""
        async with self._connection() as conn:
            await conn.fetchval("SELECT 1")

    async def enqueue(
        self,
        id: UUID,
        call_id: str,
        user_id: str,
        organization_id: Optional[str],
        file_url: str,
        file_name: str,
        kind: str,
        max_attempts: int,
        backoff_policy: dict[str, Any],
        run_not_before: datetime,
        now: datetime,
        priority: int,
    ) -> Job:
        """Insert a new pending job.

        Raises:
            DuplicateJobError: If a pending, active or stalled job exists for the
                same call and kind
        """
        try:
            async with self._connection() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO call_jobs (
                        id, call_id, user_id, organization_id, file_url, file_name,
                        kind, status, priority, attempts, max_attempts,
                        backoff_policy, run_not_before, created_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, 0, $10, $11, $12, $13, $13)
                    RETURNING *
                    """,
                    id,
                    call_id,
                    user_id,
                    organization_id,
                    file_url,
                    file_name,
                    kind,
                    JobStatus.PENDING.value,
                    int(priority),
                    max_attempts,
                    json.dumps(backoff_policy),
                    run_not_before,
                    now,
                )
        except asyncpg.exceptions.UniqueViolationError as e:
            existing = await self.find_outstanding(call_id, kind)
            raise DuplicateJobError(
                call_id, kind, existing.id if existing else None
            ) from e

        return self._row_to_job(row)

    async def get_job(self, job_id: UUID) -> Optional[Job]:
        """Get a job by ID, or None."""
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM call_jobs WHERE id = $1", job_id)

        return self._row_to_job(row) if row else None

    async def find_outstanding(self, call_id: str, kind: str) -> Optional[Job]:
        """Get the pending, active or stalled job for a call and kind, if any."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM call_jobs
                WHERE call_id = $1 AND kind = $2 AND status = ANY($3::text[])
                """,
                call_id,
                kind,
                [
                    JobStatus.PENDING.value,
                    JobStatus.ACTIVE.value,
                    JobStatus.STALLED.value,
                ],
            )

        return self._row_to_job(row) if row else None

    async def list_jobs(
        self,
        call_id: Optional[str] = None,
        kind: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs with optional filters."""
        query = "SELECT * FROM call_jobs WHERE 1=1"
        params = []
        param_idx = 1

        if call_id:
            query += f" AND call_id = ${param_idx}"
            params.append(call_id)
            param_idx += 1

        if kind:
            query += f" AND kind = ${param_idx}"
            params.append(kind)
            param_idx += 1

        if status:
            query += f" AND status = ${param_idx}"
            params.append(status)
            param_idx += 1

        query += f" ORDER BY created_at DESC LIMIT ${param_idx}"
        params.append(limit)

        async with self._connection() as conn:
            rows = await conn.fetch(query, *params)

        return [self._row_to_job(row) for row in rows]

    async def count_by_status(self) -> dict[str, int]:
        """Count jobs per status. Statuses without jobs are reported as 0."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT status, COUNT(*) AS count FROM call_jobs GROUP BY status"
            )

        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts

    async def claim_next(
        self, kinds: Sequence[str], worker_id: str, now: datetime
    ) -> Optional[Job]:
        """
        Atomically claim the next ready job of the given kinds.

        Uses FOR UPDATE SKIP LOCKED so concurrent claimants never receive the same
        job. Returns None when no job is ready or the queue is paused.
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE call_jobs
                SET status = $1,
                    lock_token = $2,
                    claimed_by = $3,
                    claimed_at = $4,
                    updated_at = $4
                WHERE id IN (
                    SELECT id FROM call_jobs
                    WHERE status = $5
                      AND kind = ANY($6::text[])
                      AND run_not_before <= $4
                      AND NOT EXISTS (SELECT 1 FROM call_jobs_control WHERE paused)
                    ORDER BY priority ASC, run_not_before ASC, created_at ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                JobStatus.ACTIVE.value,
                uuid4(),
                worker_id,
                now,
                JobStatus.PENDING.value,
                list(kinds),
            )

        return self._row_to_job(row) if row else None

    async def is_paused(self) -> bool:
        """Whether claiming is paused for every worker."""
        async with self._connection() as conn:
            paused = await conn.fetchval("SELECT paused FROM call_jobs_control WHERE id")

        return bool(paused)

    async def set_paused(self, paused: bool, now: datetime) -> None:
        """Pause or resume claiming for every worker."""
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO call_jobs_control (id, paused, updated_at)
                VALUES (TRUE, $1, $2)
                ON CONFLICT (id) DO UPDATE SET paused = $1, updated_at = $2
                """,
                paused,
                now,
            )

    async def touch(self, job_id: UUID, lock_token: UUID, now: datetime) -> bool:
        """Refresh updated_at of a claimed job. False if the claim was lost."""
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE call_jobs
                SET updated_at = $1
                WHERE id = $2 AND status = $3 AND lock_token = $4
                """,
                now,
                job_id,
                JobStatus.ACTIVE.value,
                lock_token,
            )

        return _affected_rows(result) == 1

    async def mark_completed(
        self, job_id: UUID, now: datetime, lock_token: Optional[UUID] = None
    ) -> Optional[Job]:
        """
        Mark an active job as completed, counting the attempt.

        Returns None if the job is no longer active (or no longer held by
        lock_token, when given).
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE call_jobs
                SET status = $1,
                    attempts = LEAST(attempts + 1, max_attempts),
                    lock_token = NULL,
                    updated_at = $2,
                    finished_at = $2
                WHERE id = $3
                  AND status = $4
                  AND ($5::uuid IS NULL OR lock_token = $5)
                RETURNING *
                """,
                JobStatus.COMPLETED.value,
                now,
                job_id,
                JobStatus.ACTIVE.value,
                lock_token,
            )

        return self._row_to_job(row) if row else None

    async def mark_failed(
        self,
        job_id: UUID,
        error: dict[str, Any],
        now: datetime,
        retry_after: Optional[timedelta] = None,
        permanent: bool = False,
        lock_token: Optional[UUID] = None,
    ) -> Optional[Job]:
        """
        Record a failed attempt of an active job.

        Reschedules with backoff while attempts remain, otherwise marks the job
        failed. Returns the updated job, or None if the job is no longer active
        (or no longer held by lock_token, when given).
        """
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM call_jobs WHERE id = $1 FOR UPDATE", job_id
                )
                if not row:
                    raise JobNotFoundError(job_id)

                job = self._row_to_job(row)
                if job.status != JobStatus.ACTIVE:
                    return None
                if lock_token is not None and job.lock_token != lock_token:
                    return None

                plan = plan_failure(job, now, permanent=permanent, retry_after=retry_after)
                row = await conn.fetchrow(
                    """
                    UPDATE call_jobs
                    SET status = $1,
                        attempts = $2,
                        run_not_before = COALESCE($3, run_not_before),
                        last_error = $4,
                        lock_token = NULL,
                        updated_at = $5,
                        finished_at = CASE WHEN $1 = 'failed' THEN $5 ELSE NULL END
                    WHERE id = $6
                    RETURNING *
                    """,
                    plan.status.value,
                    plan.attempts,
                    plan.run_not_before,
                    json.dumps(error),
                    now,
                    job_id,
                )

        return self._row_to_job(row)

    async def release(self, job_id: UUID, lock_token: UUID, now: datetime) -> bool:
        """Return a claimed job to pending without counting an attempt."""
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE call_jobs
                SET status = $1,
                    lock_token = NULL,
                    run_not_before = $2,
                    updated_at = $2
                WHERE id = $3 AND status = $4 AND lock_token = $5
                """,
                JobStatus.PENDING.value,
                now,
                job_id,
                JobStatus.ACTIVE.value,
                lock_token,
            )

        return _affected_rows(result) == 1

    async def find_stalled(
        self, older_than: timedelta, now: datetime, limit: int = 100
    ) -> list[Job]:
        """Find jobs flagged stalled or active without an update since now - older_than."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM call_jobs
                WHERE status = $1
                   OR (status = $2 AND updated_at < $3)
                ORDER BY updated_at ASC
                LIMIT $4
                """,
                JobStatus.STALLED.value,
                JobStatus.ACTIVE.value,
                now - older_than,
                limit,
            )

        return [self._row_to_job(row) for row in rows]

    async def flag_stalled(self, older_than: timedelta, now: datetime) -> list[Job]:
        """Move active jobs without a recent update to stalled and return them."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                UPDATE call_jobs
                SET status = $1, lock_token = NULL
                WHERE status = $2 AND updated_at < $3
                RETURNING *
                """,
                JobStatus.STALLED.value,
                JobStatus.ACTIVE.value,
                now - older_than,
            )

        return [self._row_to_job(row) for row in rows]

    async def resubmit(
        self, job_id: UUID, now: datetime, older_than: timedelta
    ) -> Optional[Job]:
        """
        Hand a stalled job back to the queue.

        The job must be flagged stalled, or active with updated_at older than
        now - older_than. Attempts are incremented by one and the claim lock is
        cleared. Returns None if the job is not stalled.
        """
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM call_jobs WHERE id = $1 FOR UPDATE", job_id
                )
                if not row:
                    raise JobNotFoundError(job_id)

                job = self._row_to_job(row)
                stale = job.status == JobStatus.STALLED or (
                    job.status == JobStatus.ACTIVE and job.updated_at < now - older_than
                )
                if not stale:
                    return None

                plan = plan_resubmit(job, now)
                row = await conn.fetchrow(
                    """
                    UPDATE call_jobs
                    SET status = $1,
                        attempts = $2,
                        run_not_before = COALESCE($3, run_not_before),
                        last_error = jsonb_build_object(
                            'error', 'Job stalled - worker may have crashed',
                            'type', 'StalledJobError',
                            'timestamp', $4::text
                        ),
                        lock_token = NULL,
                        claimed_by = NULL,
                        updated_at = $5,
                        finished_at = CASE WHEN $1 = 'failed' THEN $5 ELSE NULL END
                    WHERE id = $6
                    RETURNING *
                    """,
                    plan.status.value,
                    plan.attempts,
                    plan.run_not_before,
                    now.isoformat(),
                    now,
                    job_id,
                )

        return self._row_to_job(row)

    async def requeue_failed(self, job_id: UUID, new_job_id: UUID, now: datetime) -> Job:
        """
        Create a fresh pending job from a failed one.

        The failed row is left untouched.

        Raises:
            JobNotFoundError: If the job does not exist
            InvalidJobStateError: If the job is not failed
            DuplicateJobError: If another job for the call and kind is outstanding
        """
        failed = await self.get_job(job_id)
        if failed is None:
            raise JobNotFoundError(job_id)
        if failed.status != JobStatus.FAILED:
            raise InvalidJobStateError(job_id, failed.status.value, "requeue")

        return await self.enqueue(
            id=new_job_id,
            call_id=failed.call_id,
            user_id=failed.user_id,
            organization_id=failed.organization_id,
            file_url=failed.file_url,
            file_name=failed.file_name,
            kind=failed.kind,
            max_attempts=failed.max_attempts,
            backoff_policy=failed.backoff_policy,
            run_not_before=now,
            now=now,
            priority=failed.priority,
        )

    async def remove_completed(self, older_than: timedelta, now: datetime) -> int:
        """Delete completed jobs finished before now - older_than."""
        async with self._connection() as conn:
            result = await conn.execute(
                """
                DELETE FROM call_jobs
                WHERE status = $1 AND finished_at < $2
                """,
                JobStatus.COMPLETED.value,
                now - older_than,
            )

        return _affected_rows(result)

    def _row_to_job(self, row: asyncpg.Record) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            call_id=row["call_id"],
            user_id=row["user_id"],
            organization_id=row["organization_id"],
            file_url=row["file_url"],
            file_name=row["file_name"],
            kind=row["kind"],
            status=JobStatus(row["status"]),
            priority=row["priority"],
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            backoff_policy=json.loads(row["backoff_policy"])
            if isinstance(row["backoff_policy"], str)
            else row["backoff_policy"],
            run_not_before=row["run_not_before"],
            lock_token=row["lock_token"],
            claimed_by=row["claimed_by"],
            claimed_at=row["claimed_at"],
            last_error=json.loads(row["last_error"])
            if row["last_error"] and isinstance(row["last_error"], str)
            else row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            finished_at=row["finished_at"],
        )


def _affected_rows(result: Optional[str]) -> int:
    # asyncpg returns the command tag, e.g. "UPDATE 1" or "DELETE 3"
    return int(result.split()[-1]) if result else 0
