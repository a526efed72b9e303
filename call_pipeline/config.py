"""Configuration for the call pipeline."""

import json
import os
import re
from typing import Any, Dict, Optional

from call_pipeline.models import DEFAULT_KIND

# Environment variables recognized by from_env, mapped to their effect
ENV_SETTINGS: Dict[str, str] = {
    "CALL_PIPELINE_DB_DSN": "Postgres DSN of the job queue store (required)",
    "CALL_PIPELINE_PROCESSING_BASE_URL": "Base URL of the call processing API (required)",
    "CALL_PIPELINE_INTERNAL_TOKEN": "Value of the X-Internal-Processing header",
    "CALL_PIPELINE_MAX_ATTEMPTS": "Attempts per job before it is marked failed",
    "CALL_PIPELINE_BASE_BACKOFF_SECONDS": "Base delay of the exponential retry backoff",
    "CALL_PIPELINE_MAX_BACKOFF_SECONDS": "Upper bound of a single retry delay",
    "CALL_PIPELINE_STALLED_THRESHOLD_SECONDS": "Age after which an active job is stalled",
    "CALL_PIPELINE_WORKER_CONCURRENCY": "Number of worker loops per process",
    "CALL_PIPELINE_INVOCATION_TIMEOUT_SECONDS": "Timeout of one processing attempt",
    "CALL_PIPELINE_POLL_INTERVAL_SECONDS": "Wait between claims when the queue is empty",
    "CALL_PIPELINE_SHUTDOWN_GRACE_SECONDS": "Time in-flight jobs get to finish on shutdown",
    "CALL_PIPELINE_RECOVERY_INTERVAL_SECONDS": "Period of the stalled job scan",
    "CALL_PIPELINE_AUTO_RESUBMIT_STALLED": "Resubmit stalled jobs (true) or only flag them",
    "CALL_PIPELINE_COMPLETED_RETENTION_SECONDS": "How long completed jobs are kept",
    "CALL_PIPELINE_CALL_STATUS_TABLE": "Table holding Call records, empty to disable",
    "CALL_PIPELINE_API_TOKEN": "Token required by the HTTP API's POST routes",
    "CALL_PIPELINE_PER_KIND_CONFIG": "JSON overrides per job kind",
    "CALL_PIPELINE_PROCESSORS_MODULE": "Module imported to register extra processors",
}

# Header carrying the HTTP API token
AUTH_TOKEN_HEADER = "X-Call-Pipeline-Token"

_TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

_TRUE_VALUES = ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {value!r}") from e


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {value!r}") from e


class PipelineConfig:
    """Configuration object for the call pipeline."""

    def __init__(
        self,
        db_dsn: str,
        processing_base_url: str,
        internal_token: Optional[str] = None,
        max_attempts: int = 3,
        base_backoff_seconds: int = 5,
        max_backoff_seconds: int = 3600,
        stalled_threshold_seconds: int = 120,
        worker_concurrency: int = 5,
        invocation_timeout_seconds: float = 300,
        poll_interval_seconds: float = 1.0,
        shutdown_grace_seconds: float = 30,
        recovery_interval_seconds: float = 30,
        auto_resubmit_stalled: bool = True,
        completed_retention_seconds: int = 300,
        call_status_table: Optional[str] = "calls",
        api_token: Optional[str] = None,
        per_kind_config: Optional[Dict[str, Dict[str, Any]]] = None,
        processors_module: Optional[str] = None,
        startup_connect_attempts: int = 3,
    ):
        self.db_dsn = db_dsn
        self.processing_base_url = processing_base_url
        self.internal_token = internal_token
        self.max_attempts = max_attempts
        self.base_backoff_seconds = base_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.stalled_threshold_seconds = stalled_threshold_seconds
        self.worker_concurrency = worker_concurrency
        self.invocation_timeout_seconds = invocation_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.recovery_interval_seconds = recovery_interval_seconds
        self.auto_resubmit_stalled = auto_resubmit_stalled
        self.completed_retention_seconds = completed_retention_seconds
        self.call_status_table = call_status_table or None
        self.api_token = api_token
        self.per_kind_config = per_kind_config or {}
        self.processors_module = processors_module
        self.startup_connect_attempts = startup_connect_attempts

        self._validate()

    def _validate(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.worker_concurrency < 1:
            raise ValueError("worker_concurrency must be at least 1")
        for name in (
            "base_backoff_seconds",
            "stalled_threshold_seconds",
            "invocation_timeout_seconds",
            "poll_interval_seconds",
            "recovery_interval_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.max_backoff_seconds < self.base_backoff_seconds:
            raise ValueError("max_backoff_seconds must be >= base_backoff_seconds")
        if self.shutdown_grace_seconds < 0 or self.completed_retention_seconds < 0:
            raise ValueError("shutdown_grace_seconds and completed_retention_seconds must not be negative")
        if self.call_status_table and not _TABLE_NAME_RE.match(self.call_status_table):
            raise ValueError(f"Invalid call status table name: {self.call_status_table!r}")
        for kind, overrides in self.per_kind_config.items():
            if not isinstance(overrides, dict):
                raise ValueError(f"Config for kind {kind} must be an object")

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Create config from environment variables."""
        db_dsn = os.getenv("CALL_PIPELINE_DB_DSN")
        if not db_dsn:
            raise ValueError("CALL_PIPELINE_DB_DSN environment variable is required")

        processing_base_url = os.getenv("CALL_PIPELINE_PROCESSING_BASE_URL")
        if not processing_base_url:
            raise ValueError(
                "CALL_PIPELINE_PROCESSING_BASE_URL environment variable is required"
            )

        per_kind_config_str = os.getenv("CALL_PIPELINE_PER_KIND_CONFIG")
        per_kind_config = None
        if per_kind_config_str:
            try:
                per_kind_config = json.loads(per_kind_config_str)
            except json.JSONDecodeError as e:
                raise ValueError(
                    f"Invalid JSON in CALL_PIPELINE_PER_KIND_CONFIG: {e}"
                ) from e

        auto_resubmit = os.getenv("CALL_PIPELINE_AUTO_RESUBMIT_STALLED", "true")

        return cls(
            db_dsn=db_dsn,
            processing_base_url=processing_base_url,
            internal_token=os.getenv("CALL_PIPELINE_INTERNAL_TOKEN"),
            max_attempts=_env_int("CALL_PIPELINE_MAX_ATTEMPTS", 3),
            base_backoff_seconds=_env_int("CALL_PIPELINE_BASE_BACKOFF_SECONDS", 5),
            max_backoff_seconds=_env_int("CALL_PIPELINE_MAX_BACKOFF_SECONDS", 3600),
            stalled_threshold_seconds=_env_int(
                "CALL_PIPELINE_STALLED_THRESHOLD_SECONDS", 120
            ),
            worker_concurrency=_env_int("CALL_PIPELINE_WORKER_CONCURRENCY", 5),
            invocation_timeout_seconds=_env_float(
                "CALL_PIPELINE_INVOCATION_TIMEOUT_SECONDS", 300
            ),
            poll_interval_seconds=_env_float("CALL_PIPELINE_POLL_INTERVAL_SECONDS", 1.0),
            shutdown_grace_seconds=_env_float("CALL_PIPELINE_SHUTDOWN_GRACE_SECONDS", 30),
            recovery_interval_seconds=_env_float(
                "CALL_PIPELINE_RECOVERY_INTERVAL_SECONDS", 30
            ),
            auto_resubmit_stalled=auto_resubmit.strip().lower() in _TRUE_VALUES,
            completed_retention_seconds=_env_int(
                "CALL_PIPELINE_COMPLETED_RETENTION_SECONDS", 300
            ),
            call_status_table=os.getenv("CALL_PIPELINE_CALL_STATUS_TABLE", "calls"),
            api_token=os.getenv("CALL_PIPELINE_API_TOKEN"),
            per_kind_config=per_kind_config,
            processors_module=os.getenv("CALL_PIPELINE_PROCESSORS_MODULE"),
        )

    @property
    def heartbeat_interval_seconds(self) -> float:
        """How often an invoking worker refreshes its job's updated_at."""
        return max(self.stalled_threshold_seconds / 4, 0.05)

    def get_kind_config(self, kind: str) -> Dict[str, Any]:
        """Get overrides for a job kind."""
        return self.per_kind_config.get(kind, {})

    def get_max_attempts_for_kind(self, kind: str = DEFAULT_KIND) -> int:
        """Get max attempts for a job kind."""
        return int(self.get_kind_config(kind).get("max_attempts", self.max_attempts))

    def get_backoff_policy_for_kind(self, kind: str = DEFAULT_KIND) -> Dict[str, Any]:
        """Get the retry backoff policy for a job kind."""
        overrides = self.get_kind_config(kind)
        return {
            "type": overrides.get("backoff_type", "exponential"),
            "base_seconds": overrides.get("base_backoff_seconds", self.base_backoff_seconds),
            "max_seconds": overrides.get("max_backoff_seconds", self.max_backoff_seconds),
        }
