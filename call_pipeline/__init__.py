"""Asynchronous call-processing pipeline backed by Postgres."""

from call_pipeline.config import PipelineConfig
from call_pipeline.ddl import JOBS_TABLE_DDL
from call_pipeline.dispatcher import WorkerState, process_job, run_worker_loop
from call_pipeline.errors import (
    CallPipelineError,
    DuplicateJobError,
    InvalidJobStateError,
    JobNotFoundError,
    PermanentProcessingError,
    ProcessingError,
    RemoteHttpError,
    StoreUnavailableError,
    TransientProcessingError,
)
from call_pipeline.http_client import PipelineHttpClient
from call_pipeline.invoker import ProcessingInvoker
from call_pipeline.lifecycle import LifecycleController
from call_pipeline.models import (
    DEFAULT_KIND,
    CallStatus,
    Job,
    JobHandle,
    JobPriority,
    JobStatus,
    ProcessedOutcome,
    ProcessingResult,
)
from call_pipeline.recovery import run_recovery_loop, run_recovery_pass
from call_pipeline.registry import ProcessorRegistry, processor_registry
from call_pipeline.service import JobService
from call_pipeline.store import JobStore
from call_pipeline.worker_main import run_pipeline

__version__ = "0.1.0"

__all__ = [
    "PipelineConfig",
    "JOBS_TABLE_DDL",
    "WorkerState",
    "process_job",
    "run_worker_loop",
    "CallPipelineError",
    "DuplicateJobError",
    "InvalidJobStateError",
    "JobNotFoundError",
    "PermanentProcessingError",
    "ProcessingError",
    "RemoteHttpError",
    "StoreUnavailableError",
    "TransientProcessingError",
    "PipelineHttpClient",
    "ProcessingInvoker",
    "LifecycleController",
    "DEFAULT_KIND",
    "CallStatus",
    "Job",
    "JobHandle",
    "JobPriority",
    "JobStatus",
    "ProcessedOutcome",
    "ProcessingResult",
    "run_recovery_loop",
    "run_recovery_pass",
    "ProcessorRegistry",
    "processor_registry",
    "JobService",
    "JobStore",
    "run_pipeline",
]
