from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest

from agency_supervisor.supervisor.models import RunStatus
from agency_supervisor.supervisor.scheduler import (
    AlreadyRunning,
    Backpressure,
    Deferred,
    Enqueued,
    LifecycleHooks,
    ScheduledRun,
    Scheduler,
    phase_identifier,
)

pytestmark = [
    allure.epic("Run Supervision"),
    allure.feature("Scheduler & Card Locks"),
]


class RecordingLauncher:
    def __init__(self, *, fail: bool = False) -> None:
        self.launched: list[ScheduledRun] = []
        self.fail = fail

    def launch(self, run: ScheduledRun) -> None:
        if self.fail:
            raise RuntimeError("no worker")
        self.launched.append(run)


def _ids():
    counter = iter(range(1, 1_000))
    return lambda: f"run-{next(counter)}"


def test_enqueue_dispatches_immediately_when_capacity_allows(clock) -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler(launcher=launcher, max_concurrent=2, now=clock, run_id_factory=_ids())

    result = scheduler.enqueue("cards/a.md", "implement")

    assert result == Enqueued(run_id="run-1", position=1)
    assert [run.run_id for run in launcher.launched] == ["run-1"]
    assert scheduler.snapshot().running == 1
    assert scheduler.lock_for("cards/a.md").run_id == "run-1"


def test_second_enqueue_for_same_card_reports_existing_run_without_side_effects(clock) -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler(launcher=launcher, max_concurrent=2, now=clock, run_id_factory=_ids())
    scheduler.enqueue("cards/a.md", "implement")
    before = scheduler.snapshot()

    result = scheduler.enqueue("cards/a.md", "review")

    assert result == AlreadyRunning(existing_run_id="run-1")
    assert scheduler.snapshot() == before
    assert len(launcher.launched) == 1


def test_saturated_scheduler_defers_with_configured_limit(clock) -> None:
    scheduler = Scheduler(
        launcher=RecordingLauncher(),
        max_concurrent=1,
        now=clock,
        run_id_factory=_ids(),
    )
    scheduler.enqueue("cards/a.md", "implement")

    result = scheduler.enqueue("cards/b.md", "implement")

    assert result == Deferred(depth=0, limit=1)
    assert result.depth == scheduler.snapshot().queued
    assert scheduler.lock_for("cards/b.md") is None
    assert scheduler.snapshot().queued == 0
    assert scheduler.events()[-1].kind == "deferred"


def test_deferred_depth_counts_waiting_runs_only(clock) -> None:
    scheduler = Scheduler(
        launcher=RecordingLauncher(),
        max_concurrent=1,
        max_queued=1,
        now=clock,
        run_id_factory=_ids(),
    )
    scheduler.enqueue("cards/a.md", "implement")
    scheduler.enqueue("cards/b.md", "implement")

    result = scheduler.enqueue("cards/c.md", "implement")

    assert result == Deferred(depth=1, limit=2)
    assert scheduler.snapshot().running == 1
    assert scheduler.events()[-1].details == {"depth": 1, "limit": 2}


def test_queued_run_is_promoted_when_running_run_finishes(clock) -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler(
        launcher=launcher,
        max_concurrent=1,
        max_queued=1,
        now=clock,
        run_id_factory=_ids(),
    )
    scheduler.enqueue("cards/a.md", "implement")
    queued = scheduler.enqueue("cards/b.md", "implement")

    assert queued == Enqueued(run_id="run-2", position=2)
    assert scheduler.snapshot().queued == 1

    assert scheduler.finish("run-1", RunStatus.SUCCEEDED) is True

    assert [run.run_id for run in launcher.launched] == ["run-1", "run-2"]
    assert scheduler.lock_for("cards/a.md") is None
    assert scheduler.snapshot().running == 1


def test_finish_of_unknown_run_is_a_no_op(clock) -> None:
    scheduler = Scheduler(launcher=RecordingLauncher(), now=clock)

    assert scheduler.finish("missing", RunStatus.FAILED) is False


def test_launch_error_becomes_failed_completion_and_releases_lock(clock) -> None:
    finished: list[tuple[str, RunStatus]] = []
    scheduler = Scheduler(
        launcher=RecordingLauncher(fail=True),
        hooks=LifecycleHooks(on_finish=lambda run, outcome: finished.append((run.run_id, outcome))),
        now=clock,
        run_id_factory=_ids(),
    )

    scheduler.enqueue("cards/a.md", "implement")

    assert finished == [("run-1", RunStatus.FAILED)]
    assert scheduler.lock_for("cards/a.md") is None
    assert [event.kind for event in scheduler.events()] == [
        "enqueued",
        "started",
        "launch_failed",
        "finished",
    ]


def test_hooks_fire_in_lifecycle_order(clock) -> None:
    calls: list[str] = []
    scheduler = Scheduler(
        launcher=RecordingLauncher(),
        hooks=LifecycleHooks(
            on_queue=lambda run: calls.append(f"queue:{run.card_key}"),
            on_start=lambda run: calls.append(f"start:{run.card_key}"),
            on_finish=lambda run, outcome: calls.append(f"finish:{outcome.value}"),
        ),
        now=clock,
        run_id_factory=_ids(),
    )

    scheduler.enqueue("cards/a.md", "plan")
    scheduler.finish("run-1", RunStatus.SUCCEEDED)

    assert calls == ["queue:cards/a.md", "start:cards/a.md", "finish:succeeded"]


def test_non_parallelizable_cards_in_same_phase_run_one_at_a_time(clock) -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler(
        launcher=launcher,
        max_concurrent=3,
        now=clock,
        run_id_factory=_ids(),
    )

    scheduler.enqueue("project/phase-1/a.md", "implement")
    clock.advance(1)
    scheduler.enqueue("project/phase-1/b.md", "implement")
    clock.advance(1)
    scheduler.enqueue("project/phase-1/c.md", "implement", is_parallelizable=True)

    assert [run.card_key for run in launcher.launched] == [
        "project/phase-1/a.md",
        "project/phase-1/c.md",
    ]
    scheduler.finish("run-1", RunStatus.SUCCEEDED)
    assert launcher.launched[-1].card_key == "project/phase-1/b.md"


def test_update_limits_promotes_queued_work(clock) -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler(
        launcher=launcher,
        max_concurrent=1,
        max_queued=2,
        now=clock,
        run_id_factory=_ids(),
    )
    scheduler.enqueue("cards/a.md", "implement")
    scheduler.enqueue("cards/b.md", "implement")

    scheduler.update_limits(max_concurrent=2)

    assert len(launcher.launched) == 2
    assert scheduler.limit == 4


def test_clear_stale_locks_keeps_locks_owned_by_live_runs(clock) -> None:
    scheduler = Scheduler(launcher=RecordingLauncher(), now=clock, run_id_factory=_ids())
    scheduler.enqueue("cards/a.md", "implement")
    clock.advance(3_600)

    cleared = scheduler.clear_stale_locks(now=clock(), timeout=timedelta(minutes=10))

    assert cleared == []
    assert scheduler.lock_for("cards/a.md") is not None


def test_concurrent_enqueues_never_double_lock_a_card(clock) -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler(launcher=launcher, max_concurrent=4, max_queued=50, now=clock)
    results = []
    barrier = threading.Barrier(8)

    def _worker() -> None:
        barrier.wait()
        results.append(scheduler.enqueue("cards/shared.md", "implement"))

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(isinstance(result, Enqueued) for result in results) == 1
    assert sum(isinstance(result, AlreadyRunning) for result in results) == 7


@pytest.mark.parametrize(
    ("card_key", "expected"),
    [
        ("project/phase-2/card.md", "phase-2"),
        ("project\\phase-3\\card.md", "phase-3"),
        ("cards/standalone.md", "cards/standalone.md"),
    ],
)
def test_phase_identifier(card_key: str, expected: str) -> None:
    assert phase_identifier(card_key) == expected


def test_scheduler_rejects_invalid_limits() -> None:
    with pytest.raises(ValueError, match="max_concurrent"):
        Scheduler(launcher=RecordingLauncher(), max_concurrent=0)


def test_per_flow_limit_holds_back_a_busy_flow(clock) -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler(
        launcher=launcher,
        max_concurrent=3,
        per_flow_limits={"implement": 1},
        now=clock,
        run_id_factory=_ids(),
    )

    scheduler.enqueue("cards/a.md", "implement")
    clock.advance(1)
    scheduler.enqueue("cards/b.md", "implement")
    clock.advance(1)
    scheduler.enqueue("cards/c.md", "review")

    assert [run.card_key for run in launcher.launched] == ["cards/a.md", "cards/c.md"]
    assert scheduler.snapshot().queued == 1

    scheduler.finish("run-1", RunStatus.SUCCEEDED)

    assert launcher.launched[-1].card_key == "cards/b.md"


def test_update_limits_can_lift_a_per_flow_limit(clock) -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler(
        launcher=launcher,
        max_concurrent=2,
        per_flow_limits={"implement": 1},
        now=clock,
        run_id_factory=_ids(),
    )
    scheduler.enqueue("cards/a.md", "implement")
    scheduler.enqueue("cards/b.md", "implement")
    assert len(launcher.launched) == 1

    scheduler.update_limits(max_concurrent=2, per_flow_limits={})

    assert len(launcher.launched) == 2


def test_soft_limit_marks_accepted_runs_with_backpressure(clock) -> None:
    scheduler = Scheduler(
        launcher=RecordingLauncher(),
        max_concurrent=1,
        max_queued=5,
        soft_limit=2,
        now=clock,
        run_id_factory=_ids(),
    )

    first = scheduler.enqueue("cards/a.md", "implement")
    second = scheduler.enqueue("cards/b.md", "implement")
    third = scheduler.enqueue("cards/c.md", "implement")

    assert first.backpressure is None
    assert second.backpressure is None
    assert third == Enqueued(
        run_id="run-3",
        position=3,
        backpressure=Backpressure(depth=2, limit=2),
    )
    assert "backpressure_soft" in [event.kind for event in scheduler.events()]


def test_default_soft_limit_scales_with_concurrency() -> None:
    assert Scheduler(launcher=RecordingLauncher(), max_concurrent=1).soft_limit == 8
    assert Scheduler(launcher=RecordingLauncher(), max_concurrent=3).soft_limit == 12


def test_held_lock_refuses_the_card_until_it_goes_stale(clock) -> None:
    launcher = RecordingLauncher()
    scheduler = Scheduler(launcher=launcher, now=clock, run_id_factory=_ids())

    assert scheduler.hold_lock("cards/a.md", "previous-run", "implement", clock()) is True
    assert scheduler.hold_lock("cards/a.md", "other-run", "implement", clock()) is False
    assert scheduler.enqueue("cards/a.md", "implement") == AlreadyRunning(
        existing_run_id="previous-run",
    )

    clock.advance(601)
    cleared = scheduler.clear_stale_locks(now=clock(), timeout=timedelta(minutes=10))

    assert cleared == ["cards/a.md"]
    assert isinstance(scheduler.enqueue("cards/a.md", "implement"), Enqueued)


@pytest.mark.parametrize(
    "kwargs",
    [{"soft_limit": 0}, {"per_flow_limits": {"implement": 0}}],
)
def test_scheduler_rejects_invalid_flow_and_soft_limits(kwargs: dict) -> None:
    with pytest.raises(ValueError, match="must be >= 1"):
        Scheduler(launcher=RecordingLauncher(), **kwargs)
