from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agency_supervisor.config import (
    BackoffSettings,
    CoordinatorSettings,
    SchedulerSettings,
    Settings,
    WorkerSettings,
)
from agency_supervisor.supervisor.pipeline import DEFAULT_PIPELINE

pytestmark = [
    allure.epic("Run Supervision"),
    allure.feature("Configuration"),
]


def test_defaults_are_valid(monkeypatch) -> None:
    for name in (
        "AGENCY_SUPERVISOR_STATE_DIR",
        "AGENCY_SUPERVISOR_MAX_CONCURRENT",
        "AGENCY_SUPERVISOR_DEFAULT_PIPELINE",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()
    settings.validate()

    assert settings.state_dir == Path(".agency")
    assert settings.scheduler.max_concurrent == 1
    assert settings.coordinator.default_pipeline == DEFAULT_PIPELINE


def test_from_env_reads_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.delenv("AGENCY_SUPERVISOR_PER_FLOW_LIMITS", raising=False)
    monkeypatch.delenv("AGENCY_SUPERVISOR_SOFT_QUEUE_LIMIT", raising=False)
    monkeypatch.setenv("AGENCY_SUPERVISOR_STATE_DIR", str(tmp_path))
    monkeypatch.setenv("AGENCY_SUPERVISOR_MAX_CONCURRENT", "3")
    monkeypatch.setenv("AGENCY_SUPERVISOR_MAX_QUEUED", "7")
    monkeypatch.setenv("AGENCY_SUPERVISOR_BACKOFF_BASE_SECONDS", "2.5")
    monkeypatch.setenv("AGENCY_SUPERVISOR_MAX_RETRIES", "2")
    monkeypatch.setenv("AGENCY_SUPERVISOR_ALLOW_NETWORK", "yes")
    monkeypatch.setenv("AGENCY_SUPERVISOR_DEFAULT_PIPELINE", "full")

    settings = Settings.from_env()

    assert settings.state_dir == tmp_path
    assert settings.scheduler == SchedulerSettings(max_concurrent=3, max_queued=7)
    assert settings.backoff.base_delay_seconds == 2.5
    assert settings.backoff.policy().max_retries == 2
    assert settings.worker.allow_network is True
    assert settings.coordinator.default_pipeline == "full"


def test_flow_limits_and_soft_queue_limit_from_env(monkeypatch) -> None:
    monkeypatch.setenv("AGENCY_SUPERVISOR_PER_FLOW_LIMITS", "implement=1, review = 2")
    monkeypatch.setenv("AGENCY_SUPERVISOR_SOFT_QUEUE_LIMIT", "12")

    settings = Settings.from_env()

    assert settings.scheduler.per_flow_limits == {"implement": 1, "review": 2}
    assert settings.scheduler.soft_queue_limit == 12


@pytest.mark.parametrize("value", ["implement", "=2", "review=two"])
def test_malformed_flow_limits_name_the_variable(monkeypatch, value: str) -> None:
    monkeypatch.setenv("AGENCY_SUPERVISOR_PER_FLOW_LIMITS", value)

    with pytest.raises(ValueError, match="AGENCY_SUPERVISOR_PER_FLOW_LIMITS"):
        Settings.from_env()


def test_explicit_state_dir_wins_over_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("AGENCY_SUPERVISOR_STATE_DIR", "/elsewhere")

    assert Settings.from_env(state_dir=tmp_path).state_dir == tmp_path


def test_invalid_boolean_names_the_variable(monkeypatch) -> None:
    monkeypatch.setenv("AGENCY_SUPERVISOR_ALLOW_NETWORK", "maybe")

    with pytest.raises(ValueError, match="AGENCY_SUPERVISOR_ALLOW_NETWORK"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "variable"),
    [
        (Settings(scheduler=SchedulerSettings(max_concurrent=0)), "MAX_CONCURRENT"),
        (Settings(scheduler=SchedulerSettings(max_concurrent=5)), "MAX_CONCURRENT"),
        (Settings(scheduler=SchedulerSettings(max_queued=-1)), "MAX_QUEUED"),
        (
            Settings(scheduler=SchedulerSettings(per_flow_limits={"review": 0})),
            "PER_FLOW_LIMITS",
        ),
        (Settings(scheduler=SchedulerSettings(soft_queue_limit=0)), "SOFT_QUEUE_LIMIT"),
        (Settings(backoff=BackoffSettings(multiplier=0.5)), "BACKOFF_MULTIPLIER"),
        (Settings(backoff=BackoffSettings(jitter_fraction=1.0)), "BACKOFF_JITTER"),
        (Settings(backoff=BackoffSettings(max_retries=0)), "MAX_RETRIES"),
        (Settings(worker=WorkerSettings(command="  ")), "WORKER_COMMAND"),
        (Settings(worker=WorkerSettings(run_timeout_seconds=0)), "RUN_TIMEOUT_SECONDS"),
        (
            Settings(coordinator=CoordinatorSettings(default_pipeline="nope")),
            "DEFAULT_PIPELINE",
        ),
        (Settings(coordinator=CoordinatorSettings(stale_run_seconds=0)), "STALE_RUN_SECONDS"),
    ],
)
def test_validate_names_the_offending_variable(settings: Settings, variable: str) -> None:
    with pytest.raises(ValueError, match=f"AGENCY_SUPERVISOR_{variable}"):
        settings.validate()
