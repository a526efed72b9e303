"""Starts and stops the worker loops and the recovery loop of one process."""

import asyncio
import functools
import logging
import os
import socket
from collections.abc import Awaitable, Callable
from typing import Optional

import asyncpg

from call_pipeline.config import PipelineConfig
from call_pipeline.dispatcher import WorkerState, run_worker_loop
from call_pipeline.errors import StoreUnavailableError
from call_pipeline.recovery import run_recovery_loop, run_recovery_pass
from call_pipeline.registry import ProcessorRegistry
from call_pipeline.service import JobService, wait_for_shutdown
from call_pipeline.store import CONNECTION_ERRORS

# Wait between connection attempts at startup
CONNECT_RETRY_SECONDS = 2.0

# Wait before restarting a loop that ended before shutdown
LOOP_RESTART_SECONDS = 1.0

LoopFactory = Callable[[], Awaitable[None]]


async def create_db_pool(
    config: PipelineConfig, logger: Optional[logging.Logger] = None
) -> asyncpg.Pool:
    """
    Create the database connection pool, retrying unreachable databases.

    Raises:
        StoreUnavailableError: If every attempt fails
    """
    logger = logger or logging.getLogger(__name__)
    attempts = max(1, config.startup_connect_attempts)
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return await asyncpg.create_pool(
                config.db_dsn,
                min_size=2,
                max_size=max(10, config.worker_concurrency + 2),
            )
        except CONNECTION_ERRORS as e:
            last_error = e
            logger.warning(
                f"Database connection attempt {attempt}/{attempts} failed: {e}"
            )
            if attempt < attempts:
                await asyncio.sleep(CONNECT_RETRY_SECONDS)

    raise StoreUnavailableError(
        f"Could not connect to the job store after {attempts} attempts: {last_error}"
    )


class LifecycleController:
    """Owns the tasks of one pipeline process.

    start() verifies the store, runs one recovery pass to reclaim jobs orphaned by a
    previous shutdown, and spawns the worker loops and the recovery loop. stop()
    stops new claims, gives in-flight jobs the shutdown grace period and cancels
    whatever is still running; cancelled jobs are released back to pending. While
    run() waits for shutdown, a loop that ends early is logged and restarted.
    """

    def __init__(
        self,
        config: PipelineConfig,
        registry: ProcessorRegistry,
        logger: Optional[logging.Logger] = None,
        db_pool: Optional[asyncpg.Pool] = None,
        job_service: Optional[JobService] = None,
        kinds: Optional[list[str]] = None,
        shutdown_event: Optional[asyncio.Event] = None,
    ):
        self.config = config
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)
        self.db_pool = db_pool
        self.job_service = job_service
        self.kinds = kinds
        self.shutdown_event = shutdown_event
        self.worker_states: dict[str, WorkerState] = {}
        self.restarts = 0
        self._tasks: list[asyncio.Task] = []
        self._factories: dict[asyncio.Task, LoopFactory] = {}
        self._owns_pool = False

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def start(self) -> None:
        """
        Connect, recover, and spawn the loops.

        Raises:
            StoreUnavailableError: If the store cannot be reached
            ValueError: If no processors are registered
        """
        if not (self.kinds or self.registry.kinds()):
            raise ValueError("No processors registered, nothing to claim")

        if self.shutdown_event is None:
            self.shutdown_event = asyncio.Event()

        if self.job_service is None:
            if self.db_pool is None:
                self.logger.info("Creating database connection pool...")
                self.db_pool = await create_db_pool(self.config, self.logger)
                self._owns_pool = True
            self.job_service = JobService(self.config, self.db_pool, self.logger)

        try:
            await self.job_service.check_connectivity()
            recovered = await run_recovery_pass(self.job_service, self.logger)
        except StoreUnavailableError:
            await self._close_pool()
            raise
        self.logger.info(f"Startup recovery handled {recovered} stalled jobs")

        prefix = f"{socket.gethostname()}-{os.getpid()}"
        for i in range(self.config.worker_concurrency):
            worker_id = f"{prefix}-{i}"
            self._spawn(f"worker-{worker_id}", functools.partial(self._run_worker, worker_id))
        self._spawn("recovery", self._run_recovery)
        self.logger.info(
            f"Started {self.config.worker_concurrency} workers for kinds "
            f"{self.kinds or self.registry.kinds()}"
        )

    async def run(self) -> None:
        """Start, then supervise the loops until the shutdown event is set, and stop."""
        await self.start()
        try:
            await self._supervise()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop claiming, wait out the grace period, then cancel the rest."""
        if self.shutdown_event is not None:
            self.shutdown_event.set()

        if self._tasks:
            grace = self.config.shutdown_grace_seconds
            self.logger.info(
                f"Waiting up to {grace}s for {len(self._tasks)} tasks to finish"
            )
            _, pending = await asyncio.wait(self._tasks, timeout=grace)
            if pending:
                self.logger.warning(
                    f"Cancelling {len(pending)} tasks still running after the grace period"
                )
                for task in pending:
                    task.cancel()
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    self.logger.error(f"Task ended with error: {result}", exc_info=result)
            self._tasks = []
            self._factories = {}

        await self._close_pool()
        self.logger.info("Shutdown complete")

    def status(self) -> dict[str, str]:
        """Current state of each worker, keyed by worker id."""
        return {worker_id: state.value for worker_id, state in self.worker_states.items()}

    def _record_state(self, worker_id: str, state: WorkerState) -> None:
        self.worker_states[worker_id] = state

    async def _close_pool(self) -> None:
        if self._owns_pool and self.db_pool is not None:
            self.logger.info("Closing database connection pool...")
            await self.db_pool.close()
            self.db_pool = None
            self._owns_pool = False

    async def _run_worker(self, worker_id: str) -> None:
        await run_worker_loop(
            self.job_service,
            self.registry,
            self.logger,
            worker_id,
            self.shutdown_event,
            kinds=self.kinds,
            on_state=self._record_state,
        )

    async def _run_recovery(self) -> None:
        await run_recovery_loop(self.job_service, self.logger, self.shutdown_event)

    def _spawn(self, name: str, factory: LoopFactory, delay: float = 0.0) -> None:
        task = asyncio.create_task(self._run_after(delay, factory), name=name)
        self._factories[task] = factory
        self._tasks.append(task)

    async def _run_after(self, delay: float, factory: LoopFactory) -> None:
        if delay and await wait_for_shutdown(self.shutdown_event, delay):
            return
        await factory()

    async def _supervise(self) -> None:
        """Wait for shutdown, restarting any loop that ends before it."""
        shutdown_waiter = asyncio.create_task(self.shutdown_event.wait())
        try:
            while not self.shutdown_event.is_set():
                done, _ = await asyncio.wait(
                    {shutdown_waiter, *self._tasks}, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    if task is not shutdown_waiter and not self.shutdown_event.is_set():
                        self._restart(task)
        finally:
            shutdown_waiter.cancel()

    def _restart(self, task: asyncio.Task) -> None:
        name = task.get_name()
        factory = self._factories.pop(task)
        self._tasks.remove(task)

        if task.cancelled():
            self.logger.error(f"Task {name} was cancelled before shutdown, restarting it")
        elif task.exception() is not None:
            self.logger.error(
                f"Task {name} crashed, restarting it in {LOOP_RESTART_SECONDS}s",
                exc_info=task.exception(),
            )
        else:
            self.logger.error(f"Task {name} exited before shutdown, restarting it")

        self.restarts += 1
        self._spawn(name, factory, delay=LOOP_RESTART_SECONDS)
