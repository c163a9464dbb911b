"""Worker process backends."""

from agency_supervisor.supervisor.backend.base import (
    CapabilityMissingError,
    PayloadEncodingError,
    ProcessSupervisor,
    RegistrationError,
    RunExitCallback,
    WorkerExecutableMissingError,
    WorkerLaunchError,
)
from agency_supervisor.supervisor.backend.subprocess_backend import SubprocessWorkerSupervisor

__all__ = [
    "CapabilityMissingError",
    "PayloadEncodingError",
    "ProcessSupervisor",
    "RegistrationError",
    "RunExitCallback",
    "SubprocessWorkerSupervisor",
    "WorkerExecutableMissingError",
    "WorkerLaunchError",
]
