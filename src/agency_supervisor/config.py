"""Runtime configuration for the supervisor."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from agency_supervisor.supervisor.backend.subprocess_backend import DEFAULT_WORKER_COMMAND
from agency_supervisor.supervisor.backoff import BackoffPolicy
from agency_supervisor.supervisor.pipeline import BUILTIN_PIPELINES, DEFAULT_PIPELINE

MAX_CONCURRENT_LIMIT = 4


@dataclass(slots=True)
class SchedulerSettings:
    """Concurrency and queue bounds."""

    max_concurrent: int = 1
    max_queued: int = 0
    per_flow_limits: dict[str, int] = field(default_factory=dict)
    soft_queue_limit: int | None = None


@dataclass(slots=True)
class BackoffSettings:
    """Retry delay settings."""

    base_delay_seconds: float = 30.0
    multiplier: float = 2.0
    jitter_fraction: float = 0.1
    max_delay_seconds: float = 300.0
    max_retries: int = 5

    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_delay=self.base_delay_seconds,
            multiplier=self.multiplier,
            jitter_fraction=self.jitter_fraction,
            max_delay=self.max_delay_seconds,
            max_retries=self.max_retries,
        )


@dataclass(slots=True)
class WorkerSettings:
    """Worker process settings."""

    command: str = DEFAULT_WORKER_COMMAND
    run_timeout_seconds: float = 1800.0
    graceful_shutdown_seconds: float = 5.0
    allow_network: bool = False
    log_wait_seconds: float = 5.0


@dataclass(slots=True)
class CoordinatorSettings:
    """Pipeline defaults and recovery timings."""

    default_pipeline: str = DEFAULT_PIPELINE
    stale_run_seconds: int = 600
    maintenance_interval_seconds: float = 60.0
    deferred_retry_seconds: float = 5.0


@dataclass(slots=True)
class HistorySettings:
    """Run history settings."""

    max_records: int = 1000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    state_dir: Path = Path(".agency")
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    backoff: BackoffSettings = field(default_factory=BackoffSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    coordinator: CoordinatorSettings = field(default_factory=CoordinatorSettings)
    history: HistorySettings = field(default_factory=HistorySettings)

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            state_dir=state_dir or Path(os.getenv("AGENCY_SUPERVISOR_STATE_DIR", ".agency")),
            scheduler=SchedulerSettings(
                max_concurrent=int(os.getenv("AGENCY_SUPERVISOR_MAX_CONCURRENT", "1")),
                max_queued=int(os.getenv("AGENCY_SUPERVISOR_MAX_QUEUED", "0")),
                per_flow_limits=_env_flow_limits("AGENCY_SUPERVISOR_PER_FLOW_LIMITS"),
                soft_queue_limit=_env_optional_int("AGENCY_SUPERVISOR_SOFT_QUEUE_LIMIT"),
            ),
            backoff=BackoffSettings(
                base_delay_seconds=float(os.getenv("AGENCY_SUPERVISOR_BACKOFF_BASE_SECONDS", "30")),
                multiplier=float(os.getenv("AGENCY_SUPERVISOR_BACKOFF_MULTIPLIER", "2.0")),
                jitter_fraction=float(os.getenv("AGENCY_SUPERVISOR_BACKOFF_JITTER", "0.1")),
                max_delay_seconds=float(os.getenv("AGENCY_SUPERVISOR_BACKOFF_MAX_SECONDS", "300")),
                max_retries=int(os.getenv("AGENCY_SUPERVISOR_MAX_RETRIES", "5")),
            ),
            worker=WorkerSettings(
                command=os.getenv("AGENCY_SUPERVISOR_WORKER_COMMAND", DEFAULT_WORKER_COMMAND),
                run_timeout_seconds=float(
                    os.getenv("AGENCY_SUPERVISOR_RUN_TIMEOUT_SECONDS", "1800"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("AGENCY_SUPERVISOR_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                ),
                allow_network=_env_bool("AGENCY_SUPERVISOR_ALLOW_NETWORK", default=False),
                log_wait_seconds=float(os.getenv("AGENCY_SUPERVISOR_LOG_WAIT_SECONDS", "5")),
            ),
            coordinator=CoordinatorSettings(
                default_pipeline=os.getenv("AGENCY_SUPERVISOR_DEFAULT_PIPELINE", DEFAULT_PIPELINE),
                stale_run_seconds=int(os.getenv("AGENCY_SUPERVISOR_STALE_RUN_SECONDS", "600")),
                maintenance_interval_seconds=float(
                    os.getenv("AGENCY_SUPERVISOR_MAINTENANCE_INTERVAL_SECONDS", "60"),
                ),
                deferred_retry_seconds=float(
                    os.getenv("AGENCY_SUPERVISOR_DEFERRED_RETRY_SECONDS", "5"),
                ),
            ),
            history=HistorySettings(
                max_records=int(os.getenv("AGENCY_SUPERVISOR_HISTORY_MAX_RECORDS", "1000")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if not 1 <= self.scheduler.max_concurrent <= MAX_CONCURRENT_LIMIT:
            raise ValueError(
                f"AGENCY_SUPERVISOR_MAX_CONCURRENT must be between 1 and {MAX_CONCURRENT_LIMIT}.",
            )
        if self.scheduler.max_queued < 0:
            raise ValueError("AGENCY_SUPERVISOR_MAX_QUEUED must be >= 0.")
        for flow, limit in self.scheduler.per_flow_limits.items():
            if limit < 1:
                raise ValueError(
                    f"AGENCY_SUPERVISOR_PER_FLOW_LIMITS: limit for {flow!r} must be >= 1.",
                )
        if self.scheduler.soft_queue_limit is not None and self.scheduler.soft_queue_limit < 1:
            raise ValueError("AGENCY_SUPERVISOR_SOFT_QUEUE_LIMIT must be >= 1.")
        if self.backoff.base_delay_seconds < 0:
            raise ValueError("AGENCY_SUPERVISOR_BACKOFF_BASE_SECONDS must be >= 0.")
        if self.backoff.multiplier < 1:
            raise ValueError("AGENCY_SUPERVISOR_BACKOFF_MULTIPLIER must be >= 1.")
        if not 0 <= self.backoff.jitter_fraction < 1:
            raise ValueError("AGENCY_SUPERVISOR_BACKOFF_JITTER must be in [0, 1).")
        if self.backoff.max_delay_seconds < 0:
            raise ValueError("AGENCY_SUPERVISOR_BACKOFF_MAX_SECONDS must be >= 0.")
        if self.backoff.max_retries < 1:
            raise ValueError("AGENCY_SUPERVISOR_MAX_RETRIES must be >= 1.")
        if not self.worker.command.strip():
            raise ValueError("AGENCY_SUPERVISOR_WORKER_COMMAND must not be empty.")
        if self.worker.run_timeout_seconds <= 0:
            raise ValueError("AGENCY_SUPERVISOR_RUN_TIMEOUT_SECONDS must be > 0.")
        if self.worker.graceful_shutdown_seconds < 0:
            raise ValueError("AGENCY_SUPERVISOR_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.worker.log_wait_seconds <= 0:
            raise ValueError("AGENCY_SUPERVISOR_LOG_WAIT_SECONDS must be > 0.")
        if self.coordinator.default_pipeline not in BUILTIN_PIPELINES:
            known = ", ".join(sorted(BUILTIN_PIPELINES))
            raise ValueError(
                f"AGENCY_SUPERVISOR_DEFAULT_PIPELINE must be one of: {known} "
                f"(got {self.coordinator.default_pipeline!r}).",
            )
        if self.coordinator.stale_run_seconds <= 0:
            raise ValueError("AGENCY_SUPERVISOR_STALE_RUN_SECONDS must be > 0.")
        if self.coordinator.maintenance_interval_seconds <= 0:
            raise ValueError("AGENCY_SUPERVISOR_MAINTENANCE_INTERVAL_SECONDS must be > 0.")
        if self.coordinator.deferred_retry_seconds < 0:
            raise ValueError("AGENCY_SUPERVISOR_DEFERRED_RETRY_SECONDS must be >= 0.")
        if self.history.max_records < 1:
            raise ValueError("AGENCY_SUPERVISOR_HISTORY_MAX_RECORDS must be >= 1.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name, "").strip()
    return int(value) if value else None


def _env_flow_limits(name: str) -> dict[str, int]:
    """Parse ``flow=limit`` pairs separated by commas, e.g. ``implement=1,review=2``."""

    value = os.getenv(name, "").strip()
    limits: dict[str, int] = {}
    if not value:
        return limits
    for item in value.split(","):
        flow, sep, raw_limit = item.partition("=")
        flow = flow.strip()
        if not sep or not flow:
            raise ValueError(f"Invalid flow limit in {name}: {item.strip()!r}")
        try:
            limits[flow] = int(raw_limit)
        except ValueError as error:
            raise ValueError(f"Invalid flow limit in {name}: {item.strip()!r}") from error
    return limits
