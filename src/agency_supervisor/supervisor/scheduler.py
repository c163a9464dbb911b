"""Concurrency-bounded run scheduler with per-card locks."""

from __future__ import annotations

import logging
import threading
from collections import Counter, deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol
from uuid import uuid4

from agency_supervisor.supervisor.common import utc_now
from agency_supervisor.supervisor.models import RunLock, RunStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScheduledRun:
    """A run accepted by the scheduler."""

    run_id: str
    card_key: str
    flow: str
    is_parallelizable: bool
    enqueued_at: datetime
    phase: str


@dataclass(frozen=True, slots=True)
class Backpressure:
    """Queue depth measured against a limit."""

    depth: int
    limit: int


@dataclass(frozen=True, slots=True)
class Enqueued:
    run_id: str
    position: int
    backpressure: Backpressure | None = None


@dataclass(frozen=True, slots=True)
class AlreadyRunning:
    existing_run_id: str


@dataclass(frozen=True, slots=True)
class Deferred:
    """Backpressure signal: the request was not accepted."""

    depth: int
    limit: int


EnqueueResult = Enqueued | AlreadyRunning | Deferred


@dataclass(frozen=True, slots=True)
class SchedulerSnapshot:
    running: int
    queued: int
    locked_cards: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class SchedulerEvent:
    """Observability record of one scheduler transition."""

    kind: str
    run_id: str | None
    flow: str
    details: dict[str, object] = field(default_factory=dict)


class RunLauncher(Protocol):
    """Starts the work for a dispatched run; raising marks the run failed."""

    def launch(self, run: ScheduledRun) -> None:
        """Launch the run."""


@dataclass(slots=True)
class LifecycleHooks:
    """Callbacks fired outside the scheduler lock on run transitions."""

    on_queue: Callable[[ScheduledRun], None] = lambda _run: None
    on_start: Callable[[ScheduledRun], None] = lambda _run: None
    on_finish: Callable[[ScheduledRun, RunStatus], None] = lambda _run, _outcome: None


class Scheduler:
    """Accepts, defers or rejects run requests and dispatches them to a launcher.

    All lock-table and queue mutations happen under one ``threading.Lock``.
    Launches and lifecycle hooks run after the lock is released so a launcher
    may call back into the scheduler.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        launcher: RunLauncher,
        max_concurrent: int = 1,
        max_queued: int = 0,
        per_flow_limits: Mapping[str, int] | None = None,
        soft_limit: int | None = None,
        hooks: LifecycleHooks | None = None,
        now: Callable[[], datetime] = utc_now,
        run_id_factory: Callable[[], str] = lambda: str(uuid4()),
        event_history: int = 1000,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if max_queued < 0:
            raise ValueError("max_queued must be >= 0")
        if soft_limit is not None and soft_limit < 1:
            raise ValueError("soft_limit must be >= 1")
        self._launcher = launcher
        self._max_concurrent = max_concurrent
        self._max_queued = max_queued
        self._per_flow_limits = _checked_flow_limits(per_flow_limits or {})
        self._soft_limit = soft_limit
        self._hooks = hooks or LifecycleHooks()
        self._now = now
        self._run_id_factory = run_id_factory
        self._mutex = threading.Lock()
        self._queue: list[ScheduledRun] = []
        self._running: dict[str, ScheduledRun] = {}
        self._locks: dict[str, RunLock] = {}
        self._phase_locks: dict[tuple[str, str], str] = {}
        self._events: deque[SchedulerEvent] = deque(maxlen=event_history)

    @property
    def limit(self) -> int:
        return self._max_concurrent + self._max_queued

    @property
    def soft_limit(self) -> int:
        """Queue depth at which accepted runs carry a backpressure notice."""

        if self._soft_limit is not None:
            return self._soft_limit
        return max(self._max_concurrent * 4, 8)

    def enqueue(self, card_key: str, flow: str, is_parallelizable: bool = False) -> EnqueueResult:
        """Accept a run for ``card_key`` unless it already holds a lock or capacity is full."""

        with self._mutex:
            existing = self._locks.get(card_key)
            if existing is not None:
                return AlreadyRunning(existing_run_id=existing.run_id)

            accepted = len(self._running) + len(self._queue)
            if accepted >= self.limit:
                depth = len(self._queue)
                self._record("deferred", None, flow, depth=depth, limit=self.limit)
                return Deferred(depth=depth, limit=self.limit)

            now = self._now()
            run = ScheduledRun(
                run_id=self._run_id_factory(),
                card_key=card_key,
                flow=flow,
                is_parallelizable=is_parallelizable,
                enqueued_at=now,
                phase=phase_identifier(card_key),
            )
            self._queue.append(run)
            self._locks[card_key] = RunLock(
                card_key=card_key,
                run_id=run.run_id,
                flow=flow,
                started_at=now,
            )
            position = accepted + 1
            notice = None
            if len(self._queue) >= self.soft_limit:
                notice = Backpressure(depth=len(self._queue), limit=self.soft_limit)
                self._record("backpressure_soft", run.run_id, flow, depth=notice.depth)
                logger.debug("Queue depth %d reached soft limit %d", notice.depth, notice.limit)
            self._record("enqueued", run.run_id, flow, card_key=card_key)
            dispatch = self._collect_dispatchable()

        self._hooks.on_queue(run)
        self._dispatch(dispatch)
        return Enqueued(run_id=run.run_id, position=position, backpressure=notice)

    def finish(self, run_id: str, outcome: RunStatus) -> bool:
        """Release the card lock held by ``run_id`` and promote queued work.

        Returns False when the run is unknown (already finished).
        """

        with self._mutex:
            run = self._running.pop(run_id, None)
            if run is None:
                run = self._pop_queued(run_id)
            if run is None:
                return False
            self._release_locked(run)
            self._record("finished", run_id, run.flow, outcome=outcome.value)
            dispatch = self._collect_dispatchable()

        self._hooks.on_finish(run, outcome)
        self._dispatch(dispatch)
        return True

    def snapshot(self) -> SchedulerSnapshot:
        with self._mutex:
            return SchedulerSnapshot(
                running=len(self._running),
                queued=len(self._queue),
                locked_cards=frozenset(self._locks),
            )

    def lock_for(self, card_key: str) -> RunLock | None:
        with self._mutex:
            return self._locks.get(card_key)

    def run_for(self, run_id: str) -> ScheduledRun | None:
        with self._mutex:
            run = self._running.get(run_id)
            if run is not None:
                return run
            return next((item for item in self._queue if item.run_id == run_id), None)

    def is_running(self, run_id: str) -> bool:
        with self._mutex:
            return run_id in self._running

    def events(self) -> list[SchedulerEvent]:
        with self._mutex:
            return list(self._events)

    def update_limits(
        self,
        *,
        max_concurrent: int,
        max_queued: int | None = None,
        per_flow_limits: Mapping[str, int] | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        flow_limits = None if per_flow_limits is None else _checked_flow_limits(per_flow_limits)
        with self._mutex:
            self._max_concurrent = max_concurrent
            if max_queued is not None:
                self._max_queued = max(0, max_queued)
            if flow_limits is not None:
                self._per_flow_limits = flow_limits
            dispatch = self._collect_dispatchable()
        self._dispatch(dispatch)

    def hold_lock(self, card_key: str, run_id: str, flow: str, started_at: datetime) -> bool:
        """Lock ``card_key`` for a run this scheduler does not own.

        Used for runs recovered from a previous session. The card refuses new
        runs until ``clear_stale_locks`` drops the lock. Returns False when the
        card is already locked.
        """

        with self._mutex:
            if card_key in self._locks:
                return False
            self._locks[card_key] = RunLock(
                card_key=card_key,
                run_id=run_id,
                flow=flow,
                started_at=started_at,
            )
            self._record("lock_held", run_id, flow, card_key=card_key)
        return True

    def clear_stale_locks(self, *, now: datetime, timeout: timedelta) -> list[str]:
        """Drop locks older than ``timeout`` that no queued or running run owns."""

        cutoff = now - timeout
        with self._mutex:
            owned = set(self._running) | {run.run_id for run in self._queue}
            stale = [
                key
                for key, lock in self._locks.items()
                if lock.run_id not in owned and lock.started_at < cutoff
            ]
            for key in stale:
                del self._locks[key]
        if stale:
            logger.info("Cleared %d stale card locks", len(stale))
        return stale

    def _collect_dispatchable(self) -> list[ScheduledRun]:
        started: list[ScheduledRun] = []
        while len(self._running) < self._max_concurrent:
            run = self._next_dispatchable()
            if run is None:
                break
            self._queue.remove(run)
            if not run.is_parallelizable:
                self._phase_locks[(run.phase, run.flow)] = run.run_id
            self._running[run.run_id] = run
            self._record("started", run.run_id, run.flow, card_key=run.card_key)
            started.append(run)
        return started

    def _next_dispatchable(self) -> ScheduledRun | None:
        running_by_flow = Counter(run.flow for run in self._running.values())
        for run in sorted(self._queue, key=lambda item: item.enqueued_at):
            flow_limit = self._per_flow_limits.get(run.flow)
            if flow_limit is not None and running_by_flow[run.flow] >= flow_limit:
                continue
            if run.is_parallelizable:
                return run
            owner = self._phase_locks.get((run.phase, run.flow))
            if owner is None or owner == run.run_id:
                return run
        return None

    def _dispatch(self, runs: list[ScheduledRun]) -> None:
        for run in runs:
            self._hooks.on_start(run)
            try:
                self._launcher.launch(run)
            except Exception as error:  # noqa: BLE001
                logger.warning("Launch failed for run %s (%s): %s", run.run_id, run.card_key, error)
                with self._mutex:
                    self._record("launch_failed", run.run_id, run.flow, error=str(error))
                self.finish(run.run_id, RunStatus.FAILED)

    def _pop_queued(self, run_id: str) -> ScheduledRun | None:
        for index, run in enumerate(self._queue):
            if run.run_id == run_id:
                return self._queue.pop(index)
        return None

    def _release_locked(self, run: ScheduledRun) -> None:
        lock = self._locks.get(run.card_key)
        if lock is not None and lock.run_id == run.run_id:
            del self._locks[run.card_key]
        phase_key = (run.phase, run.flow)
        if self._phase_locks.get(phase_key) == run.run_id:
            del self._phase_locks[phase_key]

    def _record(self, kind: str, run_id: str | None, flow: str, **details: object) -> None:
        self._events.append(SchedulerEvent(kind=kind, run_id=run_id, flow=flow, details=details))


def _checked_flow_limits(limits: Mapping[str, int]) -> dict[str, int]:
    for flow, value in limits.items():
        if value < 1:
            raise ValueError(f"Concurrency limit for flow {flow!r} must be >= 1")
    return dict(limits)


def phase_identifier(card_key: str) -> str:
    """Return the ``phase-*`` path component of a card key, or the key itself."""

    for part in card_key.replace("\\", "/").split("/"):
        if part.startswith("phase-"):
            return part
    return card_key
