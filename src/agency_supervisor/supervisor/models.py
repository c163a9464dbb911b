"""Domain models for card scheduling and worker execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

KNOWN_FLOWS = ("research", "plan", "implement", "review")


class CardStatus(str, Enum):
    """Card-level agent status written back to the card store."""

    IDLE = "idle"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class RunStatus(str, Enum):
    """Terminal outcome of one worker process."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class WorkerBackend(str, Enum):
    """Backend the worker process should drive."""

    PROCESS = "process"
    CLAUDE_CODE = "claude_code"


@dataclass(slots=True)
class CardRef:
    """The slice of a card this package reads: its key, flow and status."""

    key: str
    flow: str | None = None
    status: CardStatus | None = None
    branch: str | None = None
    parallelizable: bool = False


@dataclass(frozen=True, slots=True)
class RunLock:
    """Per-card mutual exclusion record held while a run is queued or running."""

    card_key: str
    run_id: str
    flow: str
    started_at: datetime


@dataclass(frozen=True, slots=True)
class WorkerRunRequest:
    """Immutable instruction handed to one worker process."""

    run_id: str
    flow: str
    card_key: str
    sandbox_capability_token: bytes
    log_dir: Path
    output_dir: Path
    allow_network: bool = False
    extra_args: tuple[str, ...] = ()
    backend: WorkerBackend = WorkerBackend.PROCESS


@dataclass(frozen=True, slots=True)
class WorkerRunResult:
    """Terminal outcome of exactly one worker process."""

    status: RunStatus
    exit_code: int
    duration_ms: int
    bytes_read: int = 0
    bytes_written: int = 0
    summary: str = ""

    @classmethod
    def failed(cls, summary: str, *, exit_code: int = 1, duration_ms: int = 0) -> WorkerRunResult:
        return cls(
            status=RunStatus.FAILED,
            exit_code=exit_code,
            duration_ms=duration_ms,
            summary=summary,
        )

    @classmethod
    def canceled(cls, summary: str = "Canceled", *, duration_ms: int = 0) -> WorkerRunResult:
        return cls(
            status=RunStatus.CANCELED,
            exit_code=1,
            duration_ms=duration_ms,
            summary=summary,
        )


@dataclass(frozen=True, slots=True)
class FlowResult:
    """One finished step recorded on a pipeline execution."""

    flow: str
    status: RunStatus
    completed_at: datetime
    duration_ms: int


@dataclass(frozen=True, slots=True)
class PipelineExecution:
    """Progress of one card through its pipeline."""

    card_key: str
    pipeline_kind: str
    steps: tuple[str, ...]
    current_step_index: int
    started_at: datetime
    step_results: tuple[FlowResult, ...] = field(default_factory=tuple)

    @property
    def current_flow(self) -> str | None:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None

    @property
    def is_complete(self) -> bool:
        return self.current_step_index >= len(self.steps)

    def advancing(self, result: FlowResult) -> PipelineExecution:
        return PipelineExecution(
            card_key=self.card_key,
            pipeline_kind=self.pipeline_kind,
            steps=self.steps,
            current_step_index=self.current_step_index + 1,
            started_at=self.started_at,
            step_results=(*self.step_results, result),
        )
