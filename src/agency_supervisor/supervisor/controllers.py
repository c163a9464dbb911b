"""Controllers for supervisor CLI commands."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from agency_supervisor.config import Settings
from agency_supervisor.supervisor.backend import SubprocessWorkerSupervisor
from agency_supervisor.supervisor.backlog import BacklogEventSource, CardStore, InMemoryCardStore
from agency_supervisor.supervisor.capability import CapabilityBroker
from agency_supervisor.supervisor.common import utc_now
from agency_supervisor.supervisor.coordinator import (
    ExtraArgsFactory,
    PipelineOutcome,
    SupervisorCoordinator,
)
from agency_supervisor.supervisor.history import HistoryFilter, RunHistoryStore
from agency_supervisor.supervisor.models import CardRef, RunStatus
from agency_supervisor.supervisor.pipeline import BUILTIN_PIPELINES, FlowPipelineOrchestrator
from agency_supervisor.supervisor.state_store import SupervisorStateStore
from agency_supervisor.supervisor.workdir import RunWorkdirManager

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunCardCommand:
    """CLI input for running one card's pipeline to completion."""

    state_dir: Path | None
    card_key: str
    flow: str | None
    pipeline: str | None
    root: Path | None
    timeout_seconds: float
    worker_args: tuple[str, ...] = ()


@dataclass(slots=True)
class RunCardResult:
    """Run report to render in CLI."""

    lines: list[str]
    success: bool


@dataclass(slots=True)
class StateCommand:
    """CLI input for state inspection and cleanup."""

    state_dir: Path | None
    stale_timeout_seconds: int | None = None


@dataclass(slots=True)
class HistoryListCommand:
    """CLI input for run history listing."""

    state_dir: Path | None
    limit: int
    flow: str | None
    status: str | None
    card_contains: str | None = None


@dataclass(slots=True)
class HistoryStatsCommand:
    """CLI input for aggregated run metrics."""

    state_dir: Path | None
    hours: int | None
    flow: str | None = None


def build_coordinator(
    settings: Settings,
    *,
    card_store: CardStore | None = None,
    backlog: BacklogEventSource | None = None,
    extra_args_for: ExtraArgsFactory | None = None,
) -> SupervisorCoordinator:
    """Wire a coordinator with the subprocess supervisor and file-backed stores."""

    broker = CapabilityBroker()
    return SupervisorCoordinator(
        supervisor=SubprocessWorkerSupervisor(
            broker=broker,
            state_dir=settings.state_dir,
            command=settings.worker.command,
            run_timeout_seconds=settings.worker.run_timeout_seconds,
            graceful_shutdown_seconds=settings.worker.graceful_shutdown_seconds,
            log_wait_seconds=settings.worker.log_wait_seconds,
        ),
        state_store=SupervisorStateStore.in_dir(settings.state_dir),
        orchestrator=FlowPipelineOrchestrator(backoff_policy=settings.backoff.policy()),
        broker=broker,
        workdir=RunWorkdirManager(settings.state_dir),
        backlog=backlog,
        card_store=card_store,
        history=RunHistoryStore.in_dir(
            settings.state_dir,
            max_records=settings.history.max_records,
        ),
        max_concurrent=settings.scheduler.max_concurrent,
        max_queued=settings.scheduler.max_queued,
        per_flow_limits=settings.scheduler.per_flow_limits,
        soft_queue_limit=settings.scheduler.soft_queue_limit,
        default_pipeline=settings.coordinator.default_pipeline,
        stale_run_timeout=timedelta(seconds=settings.coordinator.stale_run_seconds),
        maintenance_interval_seconds=settings.coordinator.maintenance_interval_seconds,
        deferred_retry_seconds=settings.coordinator.deferred_retry_seconds,
        allow_network=settings.worker.allow_network,
        extra_args_for=extra_args_for,
    )


class SupervisorCliController:
    """Coordinates run, state and history CLI operations."""

    def run_card(self, command: RunCardCommand) -> RunCardResult:
        """Run one card through its pipeline and block until it completes or aborts."""

        settings = Settings.from_env(state_dir=command.state_dir)
        settings.validate()
        card = CardRef(key=command.card_key, flow=command.flow)
        card_store = InMemoryCardStore([card])
        worker_args = command.worker_args
        coordinator = build_coordinator(
            settings,
            card_store=card_store,
            extra_args_for=lambda _card_key, _flow: worker_args,
        )

        done = threading.Event()
        outcomes: list[PipelineOutcome] = []

        def _on_outcome(outcome: PipelineOutcome) -> None:
            if outcome.card_key == command.card_key:
                outcomes.append(outcome)
                done.set()

        coordinator.add_completion_listener(_on_outcome)
        started_at = utc_now()
        coordinator.start(command.root)
        try:
            run_id = coordinator.enqueue_card(card, command.flow, command.pipeline)
            lines = [f"Run started: card={command.card_key} run_id={run_id}"]
            if command.root is not None:
                lines.append(f"Cards root: {command.root}")
            if not done.wait(command.timeout_seconds):
                logger.warning("Timed out waiting for %s; canceling", command.card_key)
                coordinator.cancel_card(command.card_key)
                done.wait(settings.worker.graceful_shutdown_seconds + 2)
                lines.append(f"Timed out after {command.timeout_seconds:.0f}s; card canceled.")
        finally:
            coordinator.stop()

        history = RunHistoryStore.in_dir(settings.state_dir)
        for record in reversed(
            history.records(HistoryFilter(start=started_at, card_path_contains=command.card_key)),
        ):
            if record.card_key != command.card_key:
                continue
            lines.append(
                f"  flow={record.flow} status={record.status.value} "
                f"exit={record.exit_code} duration_ms={record.duration_ms} "
                f"summary={record.summary}",
            )
        success = bool(outcomes) and outcomes[-1].succeeded
        if outcomes:
            outcome = outcomes[-1]
            if outcome.succeeded:
                lines.append(f"Pipeline completed: card={outcome.card_key}")
            else:
                lines.append(f"Pipeline aborted: card={outcome.card_key} reason={outcome.reason}")
        return RunCardResult(lines=lines, success=success)

    def state_show(self, command: StateCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        store = SupervisorStateStore.in_dir(settings.state_dir)
        state = store.load()
        updated = state.last_updated.isoformat() if state.last_updated else "never"
        lines = [
            f"State file: {store.path}",
            f"Last updated: {updated}",
            f"Active runs: {len(state.active_runs)}",
        ]
        for snapshot in sorted(state.active_runs.values(), key=lambda item: item.started_at):
            lines.append(
                f"  run_id={snapshot.run_id} card={snapshot.card_key} flow={snapshot.flow} "
                f"pipeline={snapshot.pipeline_name or '-'} "
                f"started_at={snapshot.started_at.isoformat()} "
                f"pid={snapshot.worker_process_id or '-'}",
            )
        lines.append(f"Queued cards: {len(state.queued_cards)}")
        for item in state.queued_cards:
            lines.append(
                f"  card={item.card_key} flow={item.flow} "
                f"pipeline={item.pipeline_name or '-'} attempts={item.attempts}",
            )
        lines.append(f"Failure counts: {len(state.failure_counts)}")
        for card_key, count in sorted(state.failure_counts.items()):
            lines.append(f"  card={card_key} failures={count}")
        return lines

    def state_clear(self, command: StateCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        store = SupervisorStateStore.in_dir(settings.state_dir)
        store.clear()
        return [f"State cleared: {store.path}"]

    def state_clear_stale(self, command: StateCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        timeout_seconds = command.stale_timeout_seconds or settings.coordinator.stale_run_seconds
        store = SupervisorStateStore.in_dir(settings.state_dir)
        cleared = store.clear_stale_runs(timeout=timedelta(seconds=timeout_seconds))
        lines = [f"Stale runs cleared: {len(cleared)} (timeout={timeout_seconds}s)"]
        lines.extend(f"  run_id={run_id}" for run_id in cleared)
        return lines

    def history_list(self, command: HistoryListCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        history = RunHistoryStore.in_dir(settings.state_dir)
        records = history.records(
            HistoryFilter(
                flow=command.flow,
                status=RunStatus(command.status) if command.status else None,
                card_path_contains=command.card_contains,
            ),
        )[: command.limit]
        if not records:
            return ["No runs recorded."]
        return [
            f"{record.completed_at.isoformat()} run_id={record.run_id} card={record.card_key} "
            f"flow={record.flow} status={record.status.value} exit={record.exit_code} "
            f"duration_ms={record.duration_ms}"
            for record in records
        ]

    def history_stats(self, command: HistoryStatsCommand) -> list[str]:
        settings = Settings.from_env(state_dir=command.state_dir)
        history = RunHistoryStore.in_dir(settings.state_dir)
        start = utc_now() - timedelta(hours=command.hours) if command.hours else None
        metrics = history.metrics(HistoryFilter(start=start, flow=command.flow))
        window = f"last {command.hours}h" if command.hours else "all time"
        return [
            f"Run stats ({window}):",
            f"  total={metrics.total} succeeded={metrics.successful} "
            f"failed={metrics.failed} canceled={metrics.canceled}",
            f"  success_rate={metrics.success_rate:.1%}",
            f"  total_duration_ms={metrics.total_duration_ms} "
            f"avg_duration_ms={metrics.average_duration_ms:.0f}",
            f"  bytes_read={metrics.bytes_read} bytes_written={metrics.bytes_written}",
        ]

    def pipelines(self) -> list[str]:
        return [f"{kind}: {' -> '.join(flows)}" for kind, flows in BUILTIN_PIPELINES.items()]
