"""Supervisor coordinator: owns the lifecycle and wires every component."""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Protocol, TypeVar
from uuid import uuid4

from agency_supervisor.supervisor.backend.base import ProcessSupervisor, WorkerLaunchError
from agency_supervisor.supervisor.backlog import (
    BacklogEvent,
    BacklogEventSource,
    CardRemoved,
    CardStore,
)
from agency_supervisor.supervisor.capability import (
    CancellationToken,
    CapabilityBroker,
    CapabilityToken,
)
from agency_supervisor.supervisor.common import utc_now
from agency_supervisor.supervisor.history import RunHistoryStore, RunRecord
from agency_supervisor.supervisor.models import (
    CardRef,
    CardStatus,
    RunStatus,
    WorkerBackend,
    WorkerRunRequest,
    WorkerRunResult,
)
from agency_supervisor.supervisor.pipeline import (
    DEFAULT_PIPELINE,
    Abort,
    ContinueToNextFlow,
    FlowCompletionAction,
    FlowPipelineOrchestrator,
    PipelineComplete,
    RetryWithBackoff,
)
from agency_supervisor.supervisor.scheduler import (
    AlreadyRunning,
    Enqueued,
    LifecycleHooks,
    ScheduledRun,
    Scheduler,
)
from agency_supervisor.supervisor.state_store import (
    ActiveRunSnapshot,
    QueuedCardSnapshot,
    SupervisorStateStore,
)
from agency_supervisor.supervisor.workdir import RunWorkdirManager

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

CANCELED_BY_USER = "Canceled by user"


class CoordinatorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    PAUSED = "paused"


class SupervisorCoordinatorError(RuntimeError):
    """Expected scheduling-time signal surfaced to callers."""


class CardAlreadyRunningError(SupervisorCoordinatorError):
    def __init__(self, card_key: str, run_id: str) -> None:
        super().__init__(f"Card is already being processed (runID: {run_id}).")
        self.card_key = card_key
        self.run_id = run_id


class BackpressureError(SupervisorCoordinatorError):
    def __init__(self, depth: int, limit: int) -> None:
        super().__init__(f"Queue is full ({depth}/{limit}). Try again later.")
        self.depth = depth
        self.limit = limit


class CoordinatorNotStartedError(SupervisorCoordinatorError):
    def __init__(self) -> None:
        super().__init__("Supervisor coordinator has not been started.")


class CoordinatorPausedError(SupervisorCoordinatorError):
    def __init__(self) -> None:
        super().__init__("Supervisor coordinator is paused.")


class RetryTimer(Protocol):
    def start(self) -> None: ...

    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], RetryTimer]
ExtraArgsFactory = Callable[[str, str], tuple[str, ...]]


@dataclass(frozen=True, slots=True)
class PipelineOutcome:
    """Terminal outcome of one card's pipeline."""

    card_key: str
    succeeded: bool
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class CoordinatorStatus:
    state: CoordinatorState
    running: int
    queued: int
    locked_cards: tuple[str, ...]
    pending_retries: tuple[str, ...]
    active_pipelines: int
    persist_failures: int
    root: Path | None = None


@dataclass(slots=True)
class _RunContext:
    run_id: str
    card_key: str
    flow: str
    enqueued_at: datetime
    pipeline_name: str | None = None
    token: CapabilityToken | None = None
    process_id: int | None = None
    launch_error: str | None = None
    canceled_before_dispatch: bool = False


def _daemon_timer(interval: float, function: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(interval, function)
    timer.daemon = True
    return timer


class SupervisorCoordinator:
    """Turns backlog events into pipeline runs and keeps state durable.

    One ``threading.RLock`` serializes every scheduling decision. Worker exit
    callbacks, retry timers, backlog events and the maintenance tick all take
    it before touching the scheduler, orchestrator or state store.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        supervisor: ProcessSupervisor,
        state_store: SupervisorStateStore,
        orchestrator: FlowPipelineOrchestrator,
        broker: CapabilityBroker,
        workdir: RunWorkdirManager,
        backlog: BacklogEventSource | None = None,
        card_store: CardStore | None = None,
        history: RunHistoryStore | None = None,
        max_concurrent: int = 1,
        max_queued: int = 0,
        per_flow_limits: Mapping[str, int] | None = None,
        soft_queue_limit: int | None = None,
        default_pipeline: str = DEFAULT_PIPELINE,
        stale_run_timeout: timedelta = timedelta(seconds=600),
        maintenance_interval_seconds: float = 60.0,
        deferred_retry_seconds: float = 5.0,
        allow_network: bool = False,
        backend: WorkerBackend = WorkerBackend.PROCESS,
        extra_args_for: ExtraArgsFactory | None = None,
        timer_factory: TimerFactory = _daemon_timer,
        now: Callable[[], datetime] = utc_now,
        run_id_factory: Callable[[], str] = lambda: str(uuid4()),
    ) -> None:
        self._supervisor = supervisor
        self._state_store = state_store
        self._orchestrator = orchestrator
        self._broker = broker
        self._workdir = workdir
        self._backlog = backlog
        self._card_store = card_store
        self._history = history
        self.default_pipeline = default_pipeline
        self.stale_run_timeout = stale_run_timeout
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.deferred_retry_seconds = deferred_retry_seconds
        self.allow_network = allow_network
        self.backend = backend
        self._extra_args_for = extra_args_for or (lambda _card_key, _flow: ())
        self._timer_factory = timer_factory
        self._now = now
        self._lock = threading.RLock()
        self._scheduler = Scheduler(
            launcher=self,
            max_concurrent=max_concurrent,
            max_queued=max_queued,
            per_flow_limits=per_flow_limits,
            soft_limit=soft_queue_limit,
            hooks=LifecycleHooks(
                on_queue=self._on_run_queued,
                on_start=self._on_run_started,
                on_finish=self._on_run_finished,
            ),
            now=now,
            run_id_factory=run_id_factory,
        )
        self._state = CoordinatorState.STOPPED
        self.root: Path | None = None
        self._runs: dict[str, _RunContext] = {}
        self._cards: dict[str, CardRef] = {}
        self._cancellations: dict[str, CancellationToken] = {}
        self._retries: dict[str, tuple[int, RetryTimer]] = {}
        self._retry_generations = itertools.count(1)
        self._listeners: list[Callable[[PipelineOutcome], None]] = []
        self._persist_failures = 0
        self._stop_event = threading.Event()
        self._maintenance_thread: threading.Thread | None = None

    @property
    def state(self) -> CoordinatorState:
        with self._lock:
            return self._state

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def orchestrator(self) -> FlowPipelineOrchestrator:
        return self._orchestrator

    def add_completion_listener(self, listener: Callable[[PipelineOutcome], None]) -> None:
        """Register a non-blocking callback invoked when a pipeline completes or aborts."""

        with self._lock:
            self._listeners.append(listener)

    # Lifecycle

    def start(self, root: Path | None = None) -> None:
        """Restore state, subscribe to the backlog and start the maintenance tick."""

        with self._lock:
            if self._state != CoordinatorState.STOPPED:
                logger.debug("Coordinator already %s", self._state.value)
                return
            self._state = CoordinatorState.STARTING
            self.root = root
            try:
                self._supervisor.register()
            except WorkerLaunchError:
                self._state = CoordinatorState.STOPPED
                raise
            restored = self._restore_state()
            self._state = CoordinatorState.RUNNING
            for snapshot in restored:
                self._resume_queued(snapshot)
            if self._backlog is not None:
                self._backlog.subscribe(self._on_backlog_event)
            self._stop_event = threading.Event()
            self._maintenance_thread = threading.Thread(
                target=self._maintenance_loop,
                args=(self._stop_event,),
                name="supervisor-maintenance",
                daemon=True,
            )
            self._maintenance_thread.start()
            logger.info("Supervisor coordinator started (root=%s)", root)
        self._rescan()

    def stop(self, *, join_timeout: float = 5.0) -> None:
        """Cancel pending retries, unsubscribe, persist and stop; in-flight runs keep going."""

        with self._lock:
            if self._state == CoordinatorState.STOPPED:
                return
            self._state = CoordinatorState.STOPPED
            for card_key in list(self._retries):
                self._cancel_retry(card_key)
            if self._backlog is not None:
                self._backlog.unsubscribe()
            self._stop_event.set()
            thread, self._maintenance_thread = self._maintenance_thread, None
            self._persist_snapshot()
            logger.info("Supervisor coordinator stopped")
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=join_timeout)

    def pause(self) -> None:
        with self._lock:
            if self._state == CoordinatorState.PAUSED:
                return
            if self._state != CoordinatorState.RUNNING:
                raise CoordinatorNotStartedError
            self._state = CoordinatorState.PAUSED
            logger.info("Supervisor coordinator paused")

    def resume(self) -> None:
        with self._lock:
            if self._state != CoordinatorState.PAUSED:
                return
            self._state = CoordinatorState.RUNNING
            logger.info("Supervisor coordinator resumed")
        self._rescan()

    # Public operations

    def enqueue_card(
        self,
        card: CardRef | str,
        flow: str | None = None,
        pipeline_kind: str | None = None,
    ) -> str:
        """Start (or restart) the card's pipeline and enqueue its flow; returns the run id."""

        card_ref = CardRef(key=card) if isinstance(card, str) else card
        with self._lock:
            self._ensure_accepting()
            return self._start_card(card_ref, flow, pipeline_kind)

    def on_flow_completed(self, card_key: str, run_id: str, result: WorkerRunResult) -> None:
        """Terminal callback for one run: release bookkeeping and act on the pipeline."""

        with self._lock:
            context = self._runs.pop(run_id, None)
            self._scheduler.finish(run_id, result.status)
            if context is None:
                logger.warning("Completion for unknown run %s (%s) ignored", run_id, card_key)
                return
            self._handle_completion(context, result)

    def cancel_card(self, card_key: str) -> bool:
        """Cancel the card's pending retry, queued run or running worker."""

        with self._lock:
            found, running = self._cancel_card_locked(card_key)
        for run_id in running:
            self._supervisor.cancel(run_id)
        return found

    def cancel_run(self, run_id: str) -> bool:
        with self._lock:
            context = self._runs.get(run_id)
            if context is None:
                return False
            _, running = self._cancel_card_locked(context.card_key)
        for item in running:
            self._supervisor.cancel(item)
        return True

    def status_snapshot(self) -> CoordinatorStatus:
        with self._lock:
            snapshot = self._scheduler.snapshot()
            return CoordinatorStatus(
                state=self._state,
                running=snapshot.running,
                queued=snapshot.queued,
                locked_cards=tuple(sorted(snapshot.locked_cards)),
                pending_retries=tuple(sorted(self._retries)),
                active_pipelines=len(self._orchestrator.active_executions),
                persist_failures=self._persist_failures,
                root=self.root,
            )

    def maintenance_tick(self) -> None:
        """Persist a snapshot, drop stale locks and rescan the backlog."""

        with self._lock:
            if self._state == CoordinatorState.STOPPED:
                return
            now = self._now()
            self._persist_snapshot()
            self._scheduler.clear_stale_locks(now=now, timeout=self.stale_run_timeout)
            rescan = self._state == CoordinatorState.RUNNING
        if rescan:
            self._rescan()

    # Scheduler integration

    def launch(self, run: ScheduledRun) -> None:
        """Build the worker request for a dispatched run and hand it to the supervisor."""

        with self._lock:
            context = self._runs.get(run.run_id)
            if context is None:
                raise WorkerLaunchError(f"Run {run.run_id} has no coordinator context")
            cancellation = self._cancellations.get(run.card_key)
            if cancellation is not None and cancellation.is_cancelled:
                context.canceled_before_dispatch = True
                raise WorkerLaunchError(f"Card {run.card_key} was canceled before dispatch")
            dirs = self._workdir.paths_for(run.run_id)
            context.token = self._broker.acquire(dirs.output_dir)
            request = WorkerRunRequest(
                run_id=run.run_id,
                flow=run.flow,
                card_key=run.card_key,
                sandbox_capability_token=context.token.encoded,
                log_dir=dirs.log_dir,
                output_dir=dirs.output_dir,
                allow_network=self.allow_network,
                extra_args=tuple(self._extra_args_for(run.card_key, run.flow)),
                backend=self.backend,
            )
            try:
                context.process_id = self._supervisor.launch(
                    request,
                    on_exit=partial(self.on_flow_completed, run.card_key, run.run_id),
                )
            except WorkerLaunchError as error:
                context.launch_error = str(error)
                raise
            if run.run_id in self._runs:
                self._persist(lambda: self._state_store.add_active_run(_active_snapshot(context)))

    def _on_run_queued(self, run: ScheduledRun) -> None:
        with self._lock:
            execution = self._orchestrator.execution(run.card_key)
            context = _RunContext(
                run_id=run.run_id,
                card_key=run.card_key,
                flow=run.flow,
                enqueued_at=run.enqueued_at,
                pipeline_name=execution.pipeline_kind if execution is not None else None,
            )
            self._runs[run.run_id] = context
            self._persist(lambda: self._state_store.add_active_run(_active_snapshot(context)))
            self._persist(lambda: self._state_store.dequeue_card(run.card_key))
        self._update_card(run.card_key, CardStatus.QUEUED, flow=run.flow)

    def _on_run_started(self, run: ScheduledRun) -> None:
        self._update_card(run.card_key, CardStatus.RUNNING, flow=run.flow)

    def _on_run_finished(self, run: ScheduledRun, outcome: RunStatus) -> None:
        # Only runs the scheduler finished on its own (launch failures) still have a context.
        with self._lock:
            context = self._runs.pop(run.run_id, None)
            if context is None:
                return
            if context.canceled_before_dispatch:
                result = WorkerRunResult.canceled("Canceled before dispatch")
            else:
                result = WorkerRunResult.failed(context.launch_error or "Worker launch failed")
            logger.warning(
                "Run %s for %s ended at launch (%s)",
                run.run_id,
                run.card_key,
                outcome.value,
            )
            self._handle_completion(context, result)

    # Internals (caller holds the lock)

    def _ensure_accepting(self) -> None:
        if self._state == CoordinatorState.PAUSED:
            raise CoordinatorPausedError
        if self._state != CoordinatorState.RUNNING:
            raise CoordinatorNotStartedError

    def _start_card(self, card: CardRef, flow: str | None, pipeline_kind: str | None) -> str:
        existing = self._scheduler.lock_for(card.key)
        if existing is not None:
            raise CardAlreadyRunningError(card.key, existing.run_id)
        requested_flow = flow or card.flow
        kind = pipeline_kind or self._orchestrator.suggest_pipeline(
            replace(card, flow=requested_flow),
            default=self.default_pipeline,
        )
        steps = self._orchestrator.steps_for(kind)
        if requested_flow and requested_flow not in steps:
            raise ValueError(f"Flow {requested_flow!r} is not part of pipeline {kind!r}")
        start_flow = requested_flow or steps[0]
        # A refused enqueue leaves the card exactly as it was, pending retry included.
        prior_execution = self._orchestrator.execution(card.key)
        prior_failures = self._orchestrator.failure_count(card.key)
        prior_retry = self._retries.pop(card.key, None)
        prior_card = self._cards.get(card.key)
        prior_cancellation = self._cancellations.get(card.key)
        if start_flow == steps[0]:
            self._orchestrator.start_pipeline(card.key, kind)
        else:
            self._orchestrator.resume_pipeline(card.key, kind, start_flow)
        self._persist(lambda: self._state_store.update_failure_count(card.key, 0))
        self._cards[card.key] = card
        self._cancellations[card.key] = CancellationToken()
        try:
            run_id = self._submit(card.key, start_flow, continuation=False)
        except SupervisorCoordinatorError:
            self._orchestrator.restore_execution(
                card.key,
                prior_execution,
                failure_count=prior_failures,
            )
            self._persist(
                lambda: self._state_store.update_failure_count(card.key, prior_failures),
            )
            _restore_entry(self._cards, card.key, prior_card)
            _restore_entry(self._cancellations, card.key, prior_cancellation)
            if prior_retry is not None:
                self._retries[card.key] = prior_retry
            raise
        if prior_retry is not None:
            prior_retry[1].cancel()
        logger.info("Enqueued %s for %s at %s (run %s)", kind, card.key, start_flow, run_id)
        return run_id

    def _submit(self, card_key: str, flow: str, *, continuation: bool) -> str:
        card = self._cards.get(card_key)
        parallelizable = card.parallelizable if card is not None else False
        outcome = self._scheduler.enqueue(card_key, flow, parallelizable)
        if isinstance(outcome, Enqueued):
            if outcome.backpressure is not None:
                logger.warning(
                    "Queue depth %d is at the soft limit %d (%s %s accepted)",
                    outcome.backpressure.depth,
                    outcome.backpressure.limit,
                    card_key,
                    flow,
                )
            return outcome.run_id
        if isinstance(outcome, AlreadyRunning):
            if continuation:
                logger.warning(
                    "Continuation for %s skipped: run %s holds the card",
                    card_key,
                    outcome.existing_run_id,
                )
                return outcome.existing_run_id
            raise CardAlreadyRunningError(card_key, outcome.existing_run_id)
        if continuation:
            logger.info(
                "Scheduler saturated (%d/%d); %s %s retries in %.1fs",
                outcome.depth,
                outcome.limit,
                card_key,
                flow,
                self.deferred_retry_seconds,
            )
            self._schedule_retry(
                card_key,
                flow,
                self.deferred_retry_seconds,
                attempts=self._orchestrator.failure_count(card_key),
            )
            return ""
        raise BackpressureError(outcome.depth, outcome.limit)

    def _handle_completion(self, context: _RunContext, result: WorkerRunResult) -> None:
        if context.token is not None:
            self._broker.release(context.token)
        self._record_history(context, result)
        self._persist(lambda: self._state_store.remove_active_run(context.run_id))
        action = self._orchestrator.on_flow_completed(
            context.card_key,
            context.run_id,
            context.flow,
            result,
        )
        self._execute(context, action)

    def _execute(self, context: _RunContext, action: FlowCompletionAction) -> None:
        card_key = context.card_key
        cancellation = self._cancellations.get(card_key)
        canceled = cancellation is not None and cancellation.is_cancelled
        if isinstance(action, ContinueToNextFlow):
            if canceled:
                self._orchestrator.cancel_pipeline(card_key)
                self._finish_pipeline(card_key, CardStatus.CANCELED, CANCELED_BY_USER)
            elif self._state == CoordinatorState.STOPPED:
                self._remember_queued(card_key, action.flow, attempts=0)
            else:
                self._submit(card_key, action.flow, continuation=True)
        elif isinstance(action, PipelineComplete):
            self._finish_pipeline(card_key, CardStatus.SUCCEEDED, None)
        elif isinstance(action, RetryWithBackoff):
            self._persist(
                lambda: self._state_store.update_failure_count(card_key, action.failure_count),
            )
            if canceled:
                self._orchestrator.cancel_pipeline(card_key)
                self._finish_pipeline(card_key, CardStatus.CANCELED, CANCELED_BY_USER)
            elif self._state == CoordinatorState.STOPPED:
                self._remember_queued(card_key, context.flow, attempts=action.failure_count)
            else:
                self._update_card(card_key, CardStatus.QUEUED, flow=context.flow)
                self._schedule_retry(
                    card_key,
                    context.flow,
                    action.delay_seconds,
                    attempts=action.failure_count,
                )
        elif isinstance(action, Abort):
            if canceled:
                self._finish_pipeline(card_key, CardStatus.CANCELED, CANCELED_BY_USER)
                return
            logger.warning("Pipeline for %s aborted: %s", card_key, action.reason)
            status = CardStatus.CANCELED if action.reason == "canceled" else CardStatus.FAILED
            self._finish_pipeline(card_key, status, action.reason)

    def _finish_pipeline(self, card_key: str, status: CardStatus, reason: str | None) -> None:
        self._cancel_retry(card_key)
        self._cancellations.pop(card_key, None)
        self._cards.pop(card_key, None)
        self._persist(lambda: self._state_store.update_failure_count(card_key, 0))
        self._persist(lambda: self._state_store.dequeue_card(card_key))
        self._update_card(card_key, status)
        outcome = PipelineOutcome(
            card_key=card_key,
            succeeded=status == CardStatus.SUCCEEDED,
            reason=reason,
        )
        for listener in list(self._listeners):
            try:
                listener(outcome)
            except Exception:
                logger.exception("Completion listener failed for %s", card_key)

    def _cancel_card_locked(self, card_key: str) -> tuple[bool, list[str]]:
        cancellation = self._cancellations.get(card_key)
        if cancellation is not None:
            cancellation.cancel()
        had_retry = self._cancel_retry(card_key)
        lock = self._scheduler.lock_for(card_key)
        if lock is not None:
            if self._scheduler.is_running(lock.run_id):
                return True, [lock.run_id]
            context = self._runs.pop(lock.run_id, None)
            self._scheduler.finish(lock.run_id, RunStatus.CANCELED)
            if context is not None:
                canceled = WorkerRunResult.canceled("Canceled before dispatch")
                self._handle_completion(context, canceled)
            return True, []
        if had_retry or self._orchestrator.execution(card_key) is not None:
            self._orchestrator.cancel_pipeline(card_key)
            self._finish_pipeline(card_key, CardStatus.CANCELED, CANCELED_BY_USER)
            return True, []
        return False, []

    def _schedule_retry(self, card_key: str, flow: str, delay: float, *, attempts: int) -> None:
        """Arm one timer per card; a newer retry replaces the pending one."""

        self._cancel_retry(card_key)
        self._remember_queued(card_key, flow, attempts=attempts)
        generation = next(self._retry_generations)
        timer = self._timer_factory(delay, partial(self._fire_retry, card_key, flow, generation))
        self._retries[card_key] = (generation, timer)
        timer.start()
        logger.info("Retry for %s %s scheduled in %.1fs", card_key, flow, delay)

    def _fire_retry(self, card_key: str, flow: str, generation: int) -> None:
        with self._lock:
            pending = self._retries.get(card_key)
            if pending is None or pending[0] != generation:
                return
            del self._retries[card_key]
            if self._state == CoordinatorState.STOPPED:
                return
            cancellation = self._cancellations.get(card_key)
            if cancellation is not None and cancellation.is_cancelled:
                return
            if self._orchestrator.execution(card_key) is None:
                self._persist(lambda: self._state_store.dequeue_card(card_key))
                return
            self._submit(card_key, flow, continuation=True)

    def _cancel_retry(self, card_key: str) -> bool:
        pending = self._retries.pop(card_key, None)
        if pending is None:
            return False
        pending[1].cancel()
        return True

    def _remember_queued(self, card_key: str, flow: str, *, attempts: int) -> None:
        execution = self._orchestrator.execution(card_key)
        snapshot = QueuedCardSnapshot(
            card_key=card_key,
            flow=flow,
            enqueued_at=self._now(),
            pipeline_name=execution.pipeline_kind if execution is not None else None,
            attempts=attempts,
        )
        self._persist(lambda: self._state_store.enqueue_card(snapshot))

    def _restore_state(self) -> list[QueuedCardSnapshot]:
        stale = self._persist(
            lambda: self._state_store.clear_stale_runs(
                timeout=self.stale_run_timeout,
                now=self._now(),
            ),
            default=[],
        )
        if stale:
            logger.info("Cleared %d stale runs on start: %s", len(stale), ", ".join(stale))
        state = self._state_store.load()
        # Younger orphans may still have a live worker; keep their cards locked until stale.
        for snapshot in state.active_runs.values():
            if self._scheduler.hold_lock(
                snapshot.card_key,
                snapshot.run_id,
                snapshot.flow,
                snapshot.started_at,
            ):
                logger.info(
                    "Holding %s for run %s from a previous session",
                    snapshot.card_key,
                    snapshot.run_id,
                )
        self._orchestrator.restore_failure_counts(state.failure_counts)
        return list(state.queued_cards)

    def _resume_queued(self, snapshot: QueuedCardSnapshot) -> None:
        kind = snapshot.pipeline_name or self.default_pipeline
        restored_failures = self._orchestrator.failure_count(snapshot.card_key)
        try:
            self._orchestrator.resume_pipeline(
                snapshot.card_key,
                kind,
                snapshot.flow,
                failure_count=max(snapshot.attempts, restored_failures),
            )
        except ValueError as error:
            logger.warning("Dropping restored card %s: %s", snapshot.card_key, error)
            self._persist(lambda: self._state_store.dequeue_card(snapshot.card_key))
            return
        card = self._card_store.get(snapshot.card_key) if self._card_store is not None else None
        self._cards[snapshot.card_key] = card or CardRef(key=snapshot.card_key, flow=snapshot.flow)
        self._cancellations[snapshot.card_key] = CancellationToken()
        logger.info("Restoring %s at %s (%s)", snapshot.card_key, snapshot.flow, kind)
        self._submit(snapshot.card_key, snapshot.flow, continuation=True)

    def _persist_snapshot(self) -> None:
        cutoff = self._now() - self.stale_run_timeout

        def write() -> None:
            state = self._state_store.load()
            state.active_runs = {
                run_id: snapshot
                for run_id, snapshot in state.active_runs.items()
                if run_id in self._runs or snapshot.started_at >= cutoff
            }
            state.failure_counts = self._orchestrator.failure_counts()
            self._state_store.save(state)

        self._persist(write)

    def _persist(self, action: Callable[[], _T], default: _T | None = None) -> _T | None:
        try:
            return action()
        except OSError as error:
            self._persist_failures += 1
            logger.warning(
                "Supervisor persistence failed (%d failures so far): %s",
                self._persist_failures,
                error,
            )
            return default

    def _record_history(self, context: _RunContext, result: WorkerRunResult) -> None:
        if self._history is None:
            return
        record = RunRecord(
            run_id=context.run_id,
            card_key=context.card_key,
            flow=context.flow,
            pipeline_name=context.pipeline_name,
            status=result.status,
            started_at=context.enqueued_at,
            completed_at=self._now(),
            duration_ms=result.duration_ms,
            exit_code=result.exit_code,
            bytes_read=result.bytes_read,
            bytes_written=result.bytes_written,
            summary=result.summary,
        )
        self._persist(lambda: self._history.add_record(record))

    def _update_card(self, card_key: str, status: CardStatus, flow: str | None = None) -> None:
        if self._card_store is None:
            return
        try:
            self._card_store.update(card_key, status=status, flow=flow)
        except Exception as error:  # noqa: BLE001
            logger.warning("Card status update failed for %s: %s", card_key, error)

    # Backlog

    def _on_backlog_event(self, event: BacklogEvent) -> None:
        running: list[str] = []
        with self._lock:
            if self._state != CoordinatorState.RUNNING:
                return
            if isinstance(event, CardRemoved):
                _, running = self._cancel_card_locked(event.key)
            else:
                self._consider_card(event.card)
        for run_id in running:
            self._supervisor.cancel(run_id)

    def _consider_card(self, card: CardRef) -> None:
        current = self._card_store.get(card.key) if self._card_store is not None else None
        card = current or card
        if not _is_eligible(card) or self._is_busy(card.key):
            return
        try:
            self._start_card(card, None, None)
        except BackpressureError as error:
            logger.info("Backlog card %s deferred: %s", card.key, error)
        except (SupervisorCoordinatorError, ValueError) as error:
            logger.warning("Backlog card %s not enqueued: %s", card.key, error)

    def _is_busy(self, card_key: str) -> bool:
        return (
            self._scheduler.lock_for(card_key) is not None
            or card_key in self._retries
            or self._orchestrator.execution(card_key) is not None
        )

    def _rescan(self) -> None:
        if self._backlog is None:
            return
        try:
            self._backlog.rescan()
        except Exception:
            logger.exception("Backlog rescan failed")

    def _maintenance_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.maintenance_interval_seconds):
            try:
                self.maintenance_tick()
            except Exception:
                logger.exception("Supervisor maintenance tick failed")


def _is_eligible(card: CardRef) -> bool:
    return bool(card.flow) and card.status in (None, CardStatus.IDLE)


def _active_snapshot(context: _RunContext) -> ActiveRunSnapshot:
    return ActiveRunSnapshot(
        run_id=context.run_id,
        card_key=context.card_key,
        flow=context.flow,
        pipeline_name=context.pipeline_name,
        started_at=context.enqueued_at,
        worker_process_id=context.process_id,
    )


def _restore_entry(entries: dict[str, _T], key: str, previous: _T | None) -> None:
    if previous is None:
        entries.pop(key, None)
    else:
        entries[key] = previous
