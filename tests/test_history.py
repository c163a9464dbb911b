from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from agency_supervisor.supervisor.history import HistoryFilter, RunHistoryStore, RunRecord
from agency_supervisor.supervisor.models import RunStatus

pytestmark = [
    allure.epic("Run Supervision"),
    allure.feature("Run History"),
]


def _record(clock, run_id: str, *, status=RunStatus.SUCCEEDED, flow="implement", card="a.md"):
    return RunRecord(
        run_id=run_id,
        card_key=card,
        flow=flow,
        status=status,
        started_at=clock() - timedelta(seconds=5),
        completed_at=clock(),
        duration_ms=1000,
        exit_code=0 if status == RunStatus.SUCCEEDED else 1,
        bytes_read=10,
        bytes_written=20,
    )


def test_records_are_most_recent_first(tmp_path, clock) -> None:
    history = RunHistoryStore.in_dir(tmp_path)
    history.add_record(_record(clock, "r1"))
    clock.advance(10)
    history.add_record(_record(clock, "r2"))

    assert [record.run_id for record in history.records()] == ["r2", "r1"]
    assert [record.run_id for record in history.recent_records(1)] == ["r2"]


def test_store_is_capped(tmp_path, clock) -> None:
    history = RunHistoryStore.in_dir(tmp_path, max_records=2)
    for index in range(4):
        history.add_record(_record(clock, f"r{index}"))

    assert [record.run_id for record in history.records()] == ["r3", "r2"]


def test_filters_combine(tmp_path, clock) -> None:
    history = RunHistoryStore.in_dir(tmp_path)
    history.add_record(_record(clock, "old", card="Project/Phase-1/A.md"))
    clock.advance(3600)
    history.add_record(_record(clock, "fail", status=RunStatus.FAILED, card="project/b.md"))
    history.add_record(_record(clock, "review", flow="review", card="project/b.md"))

    recent = HistoryFilter(start=clock() - timedelta(minutes=5))
    assert [record.run_id for record in history.records(recent)] == ["review", "fail"]
    failed = HistoryFilter(status=RunStatus.FAILED)
    assert [record.run_id for record in history.records(failed)] == ["fail"]
    by_card = HistoryFilter(card_path_contains="phase-1")
    assert [record.run_id for record in history.records(by_card)] == ["old"]
    by_flow = HistoryFilter(flow="review")
    assert [record.run_id for record in history.records(by_flow)] == ["review"]


def test_metrics_aggregate_records(tmp_path, clock) -> None:
    history = RunHistoryStore.in_dir(tmp_path)
    history.add_record(_record(clock, "ok"))
    history.add_record(_record(clock, "bad", status=RunStatus.FAILED))
    history.add_record(_record(clock, "stop", status=RunStatus.CANCELED))

    metrics = history.metrics()

    assert (metrics.total, metrics.successful, metrics.failed, metrics.canceled) == (3, 1, 1, 1)
    assert metrics.success_rate == pytest.approx(1 / 3)
    assert metrics.average_duration_ms == 1000
    assert metrics.bytes_written == 60


def test_empty_metrics(tmp_path) -> None:
    metrics = RunHistoryStore.in_dir(tmp_path).metrics()

    assert metrics.total == 0
    assert metrics.success_rate == 0.0
    assert metrics.average_duration_ms == 0.0


def test_clear_older_than(tmp_path, clock) -> None:
    history = RunHistoryStore.in_dir(tmp_path)
    history.add_record(_record(clock, "old"))
    clock.advance(86_400)
    history.add_record(_record(clock, "new"))

    removed = history.clear_older_than(clock() - timedelta(hours=1))

    assert removed == 1
    assert [record.run_id for record in history.records()] == ["new"]
    history.clear()
    assert history.records() == []
