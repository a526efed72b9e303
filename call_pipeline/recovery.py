"""Stalled-job recovery loop."""

import asyncio
import logging
from typing import Optional

from call_pipeline.service import JobService, wait_for_shutdown


async def run_recovery_pass(job_service: JobService, logger: logging.Logger) -> int:
    """
    Run one recovery pass: hand back stalled jobs, then prune completed ones.

    Returns the number of stalled jobs acted upon.
    """
    recovered = await job_service.recover_stalled()
    if recovered > 0:
        logger.info(f"Recovery handled {recovered} stalled jobs")
    await job_service.clean_completed()
    return recovered


async def run_recovery_loop(
    job_service: JobService,
    logger: logging.Logger,
    shutdown_event: asyncio.Event,
    interval_seconds: Optional[float] = None,
) -> None:
    """
    Run recovery passes until shutdown.

    Args:
        job_service: Service over the job queue store
        logger: Logger instance
        shutdown_event: Stops the loop when set
        interval_seconds: Time between passes (defaults to the configured interval)
    """
    if interval_seconds is None:
        interval_seconds = job_service.config.recovery_interval_seconds

    logger.info(f"Starting recovery loop every {interval_seconds}s")

    while not shutdown_event.is_set():
        try:
            await run_recovery_pass(job_service, logger)
        except Exception as e:
            logger.error(f"Error in recovery loop: {str(e)}", exc_info=True)

        if await wait_for_shutdown(shutdown_event, interval_seconds):
            break

    logger.info("Shutdown signal received, exiting recovery loop")
