"""Worker loop that claims jobs and drives them through processing."""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional, Sequence

from call_pipeline.errors import (
    PermanentProcessingError,
    ProcessingError,
    StoreUnavailableError,
    TransientProcessingError,
)
from call_pipeline.models import Job, JobStatus, ProcessingResult
from call_pipeline.registry import ProcessorRegistry
from call_pipeline.service import JobService, wait_for_shutdown

# Upper bound of the wait between claims while the store is unreachable
MAX_STORE_RETRY_SECONDS = 30.0


class WorkerState(str, Enum):
    """States a worker moves through for each job."""

    IDLE = "idle"
    CLAIMED = "claimed"
    INVOKING = "invoking"
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    RELEASED = "released"
    LOST = "lost"


StateCallback = Callable[[str, WorkerState], None]


async def run_worker_loop(
    job_service: JobService,
    registry: ProcessorRegistry,
    logger: logging.Logger,
    worker_id: str,
    shutdown_event: asyncio.Event,
    kinds: Optional[Sequence[str]] = None,
    on_state: Optional[StateCallback] = None,
) -> None:
    """
    Run one worker: claim, process and report jobs until shutdown.

    Args:
        job_service: Service over the job queue store
        registry: Processors by job kind
        logger: Logger instance
        worker_id: Name recorded as claimed_by on claimed jobs
        shutdown_event: Stops new claims when set
        kinds: Job kinds to claim (defaults to all registered kinds)
        on_state: Called with the worker id and each WorkerState it enters
    """
    config = job_service.config
    kinds = list(kinds or registry.kinds())
    if not kinds:
        raise ValueError("No processors registered, nothing to claim")

    store_retry_delay = config.poll_interval_seconds

    logger.info(f"Starting worker {worker_id} for kinds {kinds}")

    while not shutdown_event.is_set():
        _report(on_state, worker_id, WorkerState.IDLE)
        try:
            job = await job_service.claim_next(kinds, worker_id, shutdown_event)
        except StoreUnavailableError as e:
            logger.error(
                f"Worker {worker_id} could not claim: {e}; retrying in {store_retry_delay:.1f}s"
            )
            await wait_for_shutdown(shutdown_event, store_retry_delay)
            store_retry_delay = min(store_retry_delay * 2, MAX_STORE_RETRY_SECONDS)
            continue
        except Exception as e:
            logger.error(
                f"Error in worker {worker_id} claim: {str(e)}; "
                f"retrying in {store_retry_delay:.1f}s",
                exc_info=True,
            )
            await wait_for_shutdown(shutdown_event, store_retry_delay)
            store_retry_delay = min(store_retry_delay * 2, MAX_STORE_RETRY_SECONDS)
            continue

        store_retry_delay = config.poll_interval_seconds
        if job is None:
            continue

        try:
            await process_job(job_service, registry, job, logger, worker_id, on_state)
        except StoreUnavailableError as e:
            # The job stays active; stalled-job recovery hands it back later
            logger.error(f"Worker {worker_id} could not report job {job.id}: {e}")
        except Exception as e:
            logger.error(
                f"Error processing job {job.id} in worker {worker_id}: {str(e)}",
                exc_info=True,
            )
            await wait_for_shutdown(shutdown_event, store_retry_delay)

    logger.info(f"Shutdown signal received, worker {worker_id} exiting")


async def process_job(
    job_service: JobService,
    registry: ProcessorRegistry,
    job: Job,
    logger: logging.Logger,
    worker_id: str = "worker",
    on_state: Optional[StateCallback] = None,
) -> WorkerState:
    """
    Invoke the processor for a claimed job and record the outcome.

    Returns the state the job ended in. If the surrounding task is cancelled
    while invoking, the job is released back to pending and the cancellation
    propagates.
    """
    _report(on_state, worker_id, WorkerState.CLAIMED)
    logger.info(
        f"Worker {worker_id} claimed job {job.id} for call {job.call_id} "
        f"(kind={job.kind}, attempt={job.attempts + 1}/{job.max_attempts})",
        extra={"event": "claimed", "job_id": str(job.id), "call_id": job.call_id},
    )

    processor = registry.get_processor(job.kind)
    _report(on_state, worker_id, WorkerState.INVOKING)
    if processor is None:
        result = ProcessingResult.failure(
            PermanentProcessingError(f"No processor for kind {job.kind}")
        )
    else:
        try:
            result = await _invoke(job_service, processor, job, logger, worker_id)
        except asyncio.CancelledError:
            _report(on_state, worker_id, WorkerState.RELEASED)
            raise

    if result.ok:
        updated = await job_service.mark_completed(job)
        if updated is None:
            return _finish(on_state, worker_id, WorkerState.LOST)
        logger.info(
            f"Job {job.id} completed for call {job.call_id} "
            f"in {result.outcome.elapsed_seconds:.2f}s",
            extra={"event": "completed", "job_id": str(job.id), "call_id": job.call_id},
        )
        return _finish(on_state, worker_id, WorkerState.COMPLETED)

    updated = await job_service.mark_failed(job, result.error)
    if updated is None:
        return _finish(on_state, worker_id, WorkerState.LOST)

    if updated.status == JobStatus.PENDING:
        logger.info(
            f"Job {job.id} will retry (attempt {updated.attempts}/{updated.max_attempts}) "
            f"at {updated.run_not_before.isoformat()}: {result.error}",
            extra={"event": "retry_scheduled", "job_id": str(job.id), "call_id": job.call_id},
        )
        return _finish(on_state, worker_id, WorkerState.RETRY_SCHEDULED)

    logger.error(
        f"Job {job.id} failed for call {job.call_id} after "
        f"{updated.attempts} attempts: {result.error}",
        extra={"event": "failed", "job_id": str(job.id), "call_id": job.call_id},
    )
    return _finish(on_state, worker_id, WorkerState.FAILED)


async def _invoke(
    job_service: JobService,
    processor,
    job: Job,
    logger: logging.Logger,
    worker_id: str,
) -> ProcessingResult:
    config = job_service.config
    ctx = {"logger": logger, "worker_id": worker_id, "attempt": job.attempts + 1}
    heartbeat = asyncio.create_task(
        _heartbeat(job_service, job, logger, config.heartbeat_interval_seconds)
    )

    try:
        result = await asyncio.wait_for(
            processor(job, ctx), timeout=config.invocation_timeout_seconds
        )
    except asyncio.TimeoutError:
        result = ProcessingResult.failure(
            TransientProcessingError(
                f"Processing timed out after {config.invocation_timeout_seconds}s"
            )
        )
    except asyncio.CancelledError:
        heartbeat.cancel()
        await asyncio.shield(_release(job_service, job, logger))
        raise
    except ProcessingError as e:
        result = ProcessingResult.failure(e)
    except Exception as e:
        logger.error(f"Processor for job {job.id} raised: {str(e)}", exc_info=True)
        result = ProcessingResult.failure(TransientProcessingError(str(e)))
    finally:
        heartbeat.cancel()
        await asyncio.gather(heartbeat, return_exceptions=True)

    if not isinstance(result, ProcessingResult):
        result = ProcessingResult.failure(
            PermanentProcessingError(
                f"Processor for kind {job.kind} returned {type(result).__name__}"
            )
        )
    return result


def _report(on_state: Optional[StateCallback], worker_id: str, state: WorkerState) -> None:
    if on_state is not None:
        on_state(worker_id, state)


def _finish(
    on_state: Optional[StateCallback], worker_id: str, state: WorkerState
) -> WorkerState:
    _report(on_state, worker_id, state)
    return state


async def _heartbeat(
    job_service: JobService, job: Job, logger: logging.Logger, interval: float
) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            if not await job_service.heartbeat(job):
                logger.warning(f"Lost claim on job {job.id}; it was resubmitted elsewhere")
                return
        except StoreUnavailableError as e:
            logger.warning(f"Heartbeat for job {job.id} failed: {e}")
        except Exception as e:
            logger.warning(f"Heartbeat for job {job.id} failed: {str(e)}", exc_info=True)


async def _release(job_service: JobService, job: Job, logger: logging.Logger) -> None:
    try:
        released = await job_service.release(job)
    except StoreUnavailableError as e:
        logger.error(f"Could not release job {job.id}, recovery will reclaim it: {e}")
        return
    if released:
        logger.warning(
            f"Job {job.id} returned to pending on shutdown",
            extra={"event": "released", "job_id": str(job.id), "call_id": job.call_id},
        )
