"""Process supervisor interface and launch errors."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from agency_supervisor.supervisor.models import WorkerRunRequest, WorkerRunResult

RunExitCallback = Callable[[WorkerRunResult], None]


class WorkerLaunchError(RuntimeError):
    """A worker could not be started; fatal to that launch only."""


class WorkerExecutableMissingError(WorkerLaunchError):
    """The configured worker command does not resolve to an executable."""


class RegistrationError(WorkerLaunchError):
    """The supervisor could not prepare its platform resources."""


class PayloadEncodingError(WorkerLaunchError):
    """The run request could not be serialized for the worker."""


class CapabilityMissingError(WorkerLaunchError):
    """A required capability (executable, writable dir, sandbox token) is unavailable."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__("Missing capabilities: " + "; ".join(missing))
        self.missing = tuple(missing)


class ProcessSupervisor(Protocol):
    """Launches, tracks and cancels isolated worker processes."""

    def register(self) -> None:
        """Prepare platform resources; safe to call more than once."""

    def launch(self, request: WorkerRunRequest, *, on_exit: RunExitCallback | None = None) -> int:
        """Start a worker for ``request`` and return its process id."""

    def cancel(self, run_id: str) -> bool:
        """Stop the run if tracked; returns False for unknown runs."""

    def active_run_ids(self) -> list[str]:
        """Run ids of currently tracked workers."""
