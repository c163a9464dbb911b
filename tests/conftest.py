"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agency_supervisor.supervisor.backend.base import RunExitCallback, WorkerLaunchError
from agency_supervisor.supervisor.backoff import BackoffPolicy
from agency_supervisor.supervisor.capability import CapabilityBroker
from agency_supervisor.supervisor.coordinator import SupervisorCoordinator
from agency_supervisor.supervisor.history import RunHistoryStore
from agency_supervisor.supervisor.models import WorkerRunRequest
from agency_supervisor.supervisor.pipeline import FlowPipelineOrchestrator
from agency_supervisor.supervisor.state_store import SupervisorStateStore
from agency_supervisor.supervisor.workdir import RunWorkdirManager


class Clock:
    """Mutable clock for deterministic timestamps."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class ManualTimer:
    """Retry timer that only fires when the test says so."""

    def __init__(self, interval: float, function: Callable[[], None]) -> None:
        self.interval = interval
        self.function = function
        self.started = False
        self.canceled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.canceled = True

    def fire(self) -> None:
        if not self.canceled:
            self.function()


@dataclass
class FakeSupervisor:
    """Process supervisor double that records launches instead of spawning."""

    launches: list[WorkerRunRequest] = field(default_factory=list)
    canceled: list[str] = field(default_factory=list)
    register_calls: int = 0
    fail_launch: bool = False

    def register(self) -> None:
        self.register_calls += 1

    def launch(self, request: WorkerRunRequest, *, on_exit: RunExitCallback | None = None) -> int:
        if self.fail_launch:
            raise WorkerLaunchError("boom")
        self.launches.append(request)
        return 4242

    def cancel(self, run_id: str) -> bool:
        self.canceled.append(run_id)
        return True

    def active_run_ids(self) -> list[str]:
        return [request.run_id for request in self.launches]


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def timers() -> list[ManualTimer]:
    return []


@pytest.fixture()
def fake_supervisor() -> FakeSupervisor:
    return FakeSupervisor()


@pytest.fixture()
def make_coordinator(
    tmp_path: Path,
    clock: Clock,
    timers: list[ManualTimer],
    fake_supervisor: FakeSupervisor,
):
    """Build coordinators over the fake supervisor with manual retry timers."""

    created: list[SupervisorCoordinator] = []

    def _timer_factory(interval: float, function: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(interval, function)
        timers.append(timer)
        return timer

    def _make(**overrides) -> SupervisorCoordinator:
        broker = CapabilityBroker()
        kwargs = {
            "supervisor": fake_supervisor,
            "state_store": SupervisorStateStore.in_dir(tmp_path / "state"),
            "orchestrator": FlowPipelineOrchestrator(
                backoff_policy=BackoffPolicy(base_delay=0, jitter_fraction=0, max_retries=5),
                now=clock,
            ),
            "broker": broker,
            "workdir": RunWorkdirManager(tmp_path / "state"),
            "history": RunHistoryStore.in_dir(tmp_path / "state"),
            "maintenance_interval_seconds": 3600.0,
            "timer_factory": _timer_factory,
            "now": clock,
        }
        kwargs.update(overrides)
        coordinator = SupervisorCoordinator(**kwargs)
        created.append(coordinator)
        return coordinator

    yield _make
    for coordinator in created:
        coordinator.stop(join_timeout=1.0)
