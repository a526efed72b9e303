"""
Integration tests for the Postgres job store.

Runs in two modes:
1. With testcontainers (default) - spins up its own Postgres
2. With external services (CI mode) - uses CALL_PIPELINE_DB_DSN
"""

import asyncio
import logging
import os
from datetime import timedelta
from uuid import uuid4

import asyncpg
import pytest
import pytest_asyncio

from call_pipeline.config import PipelineConfig
from call_pipeline.ddl import JOBS_TABLE_DDL
from call_pipeline.dispatcher import WorkerState, process_job
from call_pipeline.errors import (
    DuplicateJobError,
    InvalidJobStateError,
    TransientProcessingError,
)
from call_pipeline.models import DEFAULT_KIND, JobStatus, ProcessedOutcome, ProcessingResult, utcnow
from call_pipeline.registry import ProcessorRegistry
from call_pipeline.service import JobService
from call_pipeline.store import JobStore

logger = logging.getLogger(__name__)

POLICY = {"type": "exponential", "base_seconds": 5, "max_seconds": 3600}

CALLS_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS calls (
  id             TEXT PRIMARY KEY,
  status         TEXT,
  error_message  TEXT
);
"""


def use_external_services():
    """Check if we should use external services (CI mode) or testcontainers."""
    return os.getenv("USE_EXTERNAL_SERVICES", "false").lower() == "true"


@pytest.fixture(scope="module")
def db_dsn():
    """Provide a Postgres DSN, skipping when no database can be started."""
    if use_external_services():
        yield os.environ["CALL_PIPELINE_DB_DSN"]
        return

    pytest.importorskip("testcontainers")
    from testcontainers.postgres import PostgresContainer

    try:
        postgres = PostgresContainer("postgres:15")
        postgres.start()
    except Exception as e:
        pytest.skip(f"Postgres container unavailable: {e}")

    try:
        url = postgres.get_connection_url()
        yield url.replace("postgresql+psycopg2://", "postgresql://")
    finally:
        postgres.stop()


@pytest_asyncio.fixture
async def db_pool(db_dsn):
    """Create a database pool on a clean schema."""
    pool = await asyncpg.create_pool(db_dsn, min_size=2, max_size=20)
    async with pool.acquire() as conn:
        await conn.execute("DROP TABLE IF EXISTS call_jobs_control")
        await conn.execute("DROP TABLE IF EXISTS call_jobs")
        await conn.execute(JOBS_TABLE_DDL)
        await conn.execute("DROP TABLE IF EXISTS calls")
        await conn.execute(CALLS_TABLE_DDL)

    yield pool

    await pool.close()


@pytest.fixture
def job_store(db_pool):
    return JobStore(db_pool)


@pytest.fixture
def pg_config(db_dsn):
    return PipelineConfig(
        db_dsn=db_dsn,
        processing_base_url="http://processing.test",
        poll_interval_seconds=0.01,
    )


async def enqueue(job_store, call_id="call-1", kind=DEFAULT_KIND, max_attempts=3, now=None):
    now = now or utcnow()
    return await job_store.enqueue(
        id=uuid4(),
        call_id=call_id,
        user_id="user-1",
        organization_id=None,
        file_url=f"https://storage.test/{call_id}.mp3",
        file_name=f"{call_id}.mp3",
        kind=kind,
        max_attempts=max_attempts,
        backoff_policy=POLICY,
        run_not_before=now,
        now=now,
        priority=10,
    )


@pytest.mark.asyncio
async def test_enqueue_and_get(job_store):
    """Test inserting and reading back a job."""
    job = await enqueue(job_store)

    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.backoff_policy == POLICY
    assert stored.attempts == 0
    assert stored.run_not_before.tzinfo is not None


@pytest.mark.asyncio
async def test_duplicate_outstanding_job_rejected(job_store):
    """The partial unique index allows one outstanding job per call and kind."""
    first = await enqueue(job_store)

    with pytest.raises(DuplicateJobError) as exc_info:
        await enqueue(job_store)

    assert exc_info.value.existing_job_id == first.id
    await enqueue(job_store, kind="extract-crm-fields")


@pytest.mark.asyncio
async def test_concurrent_claims_are_exclusive(job_store):
    """Concurrent claimants never receive the same job."""
    for i in range(20):
        await enqueue(job_store, call_id=f"call-{i}")

    now = utcnow()
    claims = await asyncio.gather(
        *[job_store.claim_next([DEFAULT_KIND], f"worker-{i}", now) for i in range(30)]
    )
    claimed = [job.id for job in claims if job is not None]

    assert len(claimed) == 20
    assert len(set(claimed)) == 20


@pytest.mark.asyncio
async def test_mark_failed_backoff_and_fencing(job_store):
    """Failures reschedule with backoff and require the current lock token."""
    await enqueue(job_store)
    now = utcnow()
    job = await job_store.claim_next([DEFAULT_KIND], "worker-0", now)

    assert await job_store.mark_failed(job.id, {"error": "x"}, now, lock_token=uuid4()) is None

    updated = await job_store.mark_failed(
        job.id, {"error": "HTTP 503"}, now, lock_token=job.lock_token
    )
    assert updated.status == JobStatus.PENDING
    assert updated.attempts == 1
    assert updated.run_not_before == now + timedelta(seconds=5)
    assert updated.last_error == {"error": "HTTP 503"}
    assert updated.lock_token is None

    assert await job_store.claim_next([DEFAULT_KIND], "worker-0", now) is None


@pytest.mark.asyncio
async def test_resubmit_and_complete(job_store):
    """A stalled job is resubmitted once and completes with attempts == 2."""
    await enqueue(job_store)
    now = utcnow()
    await job_store.claim_next([DEFAULT_KIND], "worker-0", now)

    later = now + timedelta(seconds=121)
    stalled = await job_store.find_stalled(timedelta(seconds=120), later)
    assert len(stalled) == 1

    resubmitted = await job_store.resubmit(stalled[0].id, later, timedelta(seconds=120))
    assert resubmitted.status == JobStatus.PENDING
    assert resubmitted.attempts == 1
    assert await job_store.resubmit(stalled[0].id, later, timedelta(seconds=120)) is None

    job = await job_store.claim_next([DEFAULT_KIND], "worker-1", later)
    completed = await job_store.mark_completed(job.id, later, lock_token=job.lock_token)
    assert completed.status == JobStatus.COMPLETED
    assert completed.attempts == 2


@pytest.mark.asyncio
async def test_flag_stalled_keeps_call_outstanding(job_store):
    """Flagged jobs still block duplicate enqueues."""
    await enqueue(job_store)
    now = utcnow()
    await job_store.claim_next([DEFAULT_KIND], "worker-0", now)

    flagged = await job_store.flag_stalled(timedelta(seconds=120), now + timedelta(seconds=121))

    assert [job.status for job in flagged] == [JobStatus.STALLED]
    with pytest.raises(DuplicateJobError):
        await enqueue(job_store)


@pytest.mark.asyncio
async def test_release_returns_job_without_attempt(job_store):
    """Releasing a claim does not count an attempt."""
    await enqueue(job_store)
    now = utcnow()
    job = await job_store.claim_next([DEFAULT_KIND], "worker-0", now)

    assert await job_store.release(job.id, job.lock_token, now)
    stored = await job_store.get_job(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.attempts == 0


@pytest.mark.asyncio
async def test_requeue_failed(job_store):
    """Requeueing creates a new job and leaves the failed row alone."""
    await enqueue(job_store)
    now = utcnow()
    job = await job_store.claim_next([DEFAULT_KIND], "worker-0", now)
    failed = await job_store.mark_failed(job.id, {"error": "bad"}, now, permanent=True)

    new_job = await job_store.requeue_failed(failed.id, uuid4(), now)

    assert new_job.id != failed.id
    assert (await job_store.get_job(failed.id)).status == JobStatus.FAILED
    with pytest.raises(InvalidJobStateError):
        await job_store.requeue_failed(new_job.id, uuid4(), now)


@pytest.mark.asyncio
async def test_counts_and_cleanup(job_store):
    """Counts cover every status; old completed jobs are removed."""
    await enqueue(job_store, call_id="call-a")
    await enqueue(job_store, call_id="call-b")
    now = utcnow()
    job = await job_store.claim_next([DEFAULT_KIND], "worker-0", now)
    await job_store.mark_completed(job.id, now)

    counts = await job_store.count_by_status()
    assert counts == {"pending": 1, "active": 0, "completed": 1, "failed": 0, "stalled": 0}

    assert await job_store.remove_completed(timedelta(seconds=300), now) == 0
    assert await job_store.remove_completed(timedelta(seconds=300), now + timedelta(seconds=301)) == 1


@pytest.mark.asyncio
async def test_paused_queue_is_not_claimed(job_store):
    """The pause flag survives in the control row and blocks claims until cleared."""
    await enqueue(job_store)
    assert await job_store.is_paused() is False

    await job_store.set_paused(True, utcnow())
    assert await job_store.is_paused() is True
    assert await job_store.claim_next([DEFAULT_KIND], "worker-0", utcnow()) is None

    await job_store.set_paused(False, utcnow())
    job = await job_store.claim_next([DEFAULT_KIND], "worker-0", utcnow())
    assert job is not None
    assert job.status == JobStatus.ACTIVE


@pytest.mark.asyncio
async def test_service_flow_updates_call_record(db_pool, pg_config):
    """Enqueue, a transient failure and a success drive the Call status."""
    async with db_pool.acquire() as conn:
        await conn.execute("INSERT INTO calls (id, status) VALUES ('call-9', 'uploaded')")

    registry = ProcessorRegistry()
    outcomes = [
        ProcessingResult.failure(TransientProcessingError("HTTP 503")),
        ProcessingResult.success(ProcessedOutcome("call-9")),
    ]

    async def processor(job, ctx):
        return outcomes.pop(0)

    registry.register(DEFAULT_KIND, processor)
    clock_now = [utcnow()]
    service = JobService(pg_config, db_pool, logger, clock=lambda: clock_now[0])

    handle = await service.enqueue_call(
        call_id="call-9",
        user_id="user-1",
        file_url="https://storage.test/call-9.mp3",
        file_name="call-9.mp3",
    )

    job = await service.claim_next([DEFAULT_KIND], "worker-0")
    assert await process_job(service, registry, job, logger) == WorkerState.RETRY_SCHEDULED
    async with db_pool.acquire() as conn:
        row = await conn.fetchrow("SELECT status, error_message FROM calls WHERE id = 'call-9'")
    assert row["status"] == "retrying"
    assert row["error_message"] == "HTTP 503"

    clock_now[0] += timedelta(seconds=10)
    job = await service.claim_next([DEFAULT_KIND], "worker-0")
    assert await process_job(service, registry, job, logger) == WorkerState.COMPLETED

    stored = await service.get_job(handle.job_id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.attempts == 2
    async with db_pool.acquire() as conn:
        status = await conn.fetchval("SELECT status FROM calls WHERE id = 'call-9'")
    assert status == "completed"
