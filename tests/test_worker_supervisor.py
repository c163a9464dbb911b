from __future__ import annotations

import subprocess
import sys
import threading
import time
from pathlib import Path

import allure
import pytest

from agency_supervisor.supervisor.backend import (
    CapabilityMissingError,
    PayloadEncodingError,
    SubprocessWorkerSupervisor,
    WorkerLaunchError,
)
from agency_supervisor.supervisor.backend.subprocess_backend import (
    TIMEOUT_EXIT_CODE,
    _WorkerHandle,
)
from agency_supervisor.supervisor.capability import CapabilityBroker
from agency_supervisor.supervisor.log_stream import LOG_FILE_NAME, Finished, read_all
from agency_supervisor.supervisor.models import RunStatus, WorkerRunRequest, WorkerRunResult
from agency_supervisor.supervisor.workdir import RunWorkdirManager

pytestmark = [
    allure.epic("Run Supervision"),
    allure.feature("Worker Processes"),
]

WORKER_COMMAND = [sys.executable, "-m", "agency_supervisor.supervisor.backend.worker_entrypoint"]
WAIT_SECONDS = 30


class ExitRecorder:
    def __init__(self) -> None:
        self.results: list[WorkerRunResult] = []
        self._done = threading.Event()

    def __call__(self, result: WorkerRunResult) -> None:
        self.results.append(result)
        self._done.set()

    def wait(self) -> WorkerRunResult:
        assert self._done.wait(WAIT_SECONDS), "worker did not report an exit"
        return self.results[0]


def _supervisor(tmp_path: Path, broker: CapabilityBroker, **kwargs) -> SubprocessWorkerSupervisor:
    return SubprocessWorkerSupervisor(
        broker=broker,
        state_dir=tmp_path,
        command=kwargs.pop("command", WORKER_COMMAND),
        log_wait_seconds=kwargs.pop("log_wait_seconds", 10.0),
        poll_interval_seconds=0.02,
        graceful_shutdown_seconds=2.0,
        **kwargs,
    )


def _request(
    tmp_path: Path,
    broker: CapabilityBroker,
    run_id: str,
    *extra_args: str,
    flow: str = "implement",
) -> WorkerRunRequest:
    dirs = RunWorkdirManager(tmp_path).paths_for(run_id)
    token = broker.acquire(dirs.output_dir)
    return WorkerRunRequest(
        run_id=run_id,
        flow=flow,
        card_key="project/phase-1/card.md",
        sandbox_capability_token=token.encoded,
        log_dir=dirs.log_dir,
        output_dir=dirs.output_dir,
        extra_args=extra_args,
    )


def _wait_for_log(path: Path) -> None:
    deadline = time.monotonic() + WAIT_SECONDS
    while not path.exists() or not path.read_text("utf-8"):
        assert time.monotonic() < deadline, "worker log never appeared"
        time.sleep(0.02)


def test_successful_run_keeps_log_and_removes_output(tmp_path) -> None:
    broker = CapabilityBroker()
    supervisor = _supervisor(tmp_path, broker)
    request = _request(tmp_path, broker, "run-ok")
    recorder = ExitRecorder()

    pid = supervisor.launch(request, on_exit=recorder)
    result = recorder.wait()

    assert pid > 0
    assert result.status == RunStatus.SUCCEEDED
    assert result.exit_code == 0
    assert result.summary == "implement completed"
    assert result.bytes_written > 0
    assert result.bytes_read > 0
    assert not request.output_dir.exists()
    events = read_all(request.log_dir / LOG_FILE_NAME)
    assert isinstance(events[-1], Finished)
    assert supervisor.active_run_ids() == []


def test_reported_failure_is_propagated(tmp_path) -> None:
    broker = CapabilityBroker()
    supervisor = _supervisor(tmp_path, broker)
    recorder = ExitRecorder()

    supervisor.launch(_request(tmp_path, broker, "run-fail", "--fail"), on_exit=recorder)
    result = recorder.wait()

    assert result.status == RunStatus.FAILED
    assert result.exit_code == 1
    assert result.summary == "implement failed"


def test_crash_without_report_uses_exit_code(tmp_path) -> None:
    broker = CapabilityBroker()
    supervisor = _supervisor(tmp_path, broker)
    recorder = ExitRecorder()

    supervisor.launch(
        _request(tmp_path, broker, "run-crash", "--exit-code", "3"),
        on_exit=recorder,
    )
    result = recorder.wait()

    assert result.status == RunStatus.FAILED
    assert result.exit_code == 3
    assert "code 3" in result.summary


def test_cancel_stops_worker_and_reports_canceled(tmp_path) -> None:
    broker = CapabilityBroker()
    supervisor = _supervisor(tmp_path, broker)
    request = _request(tmp_path, broker, "run-cancel", "--sleep", "20")
    recorder = ExitRecorder()
    supervisor.launch(request, on_exit=recorder)
    _wait_for_log(request.log_dir / LOG_FILE_NAME)

    assert supervisor.cancel("run-cancel") is True
    result = recorder.wait()

    assert result.status == RunStatus.CANCELED
    assert not request.output_dir.exists()
    assert supervisor.cancel("run-cancel") is False


def test_run_timeout_kills_worker(tmp_path) -> None:
    broker = CapabilityBroker()
    supervisor = _supervisor(tmp_path, broker, run_timeout_seconds=0.5)
    recorder = ExitRecorder()

    supervisor.launch(
        _request(tmp_path, broker, "run-slow", "--sleep", "20"),
        on_exit=recorder,
    )
    result = recorder.wait()

    assert result.status == RunStatus.FAILED
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert "Timed out" in result.summary


def test_write_outside_granted_scope_fails_the_run(tmp_path) -> None:
    broker = CapabilityBroker()
    supervisor = _supervisor(tmp_path, broker)
    recorder = ExitRecorder()

    supervisor.launch(
        _request(tmp_path, broker, "run-escape", "--write", "../escape.txt"),
        on_exit=recorder,
    )
    result = recorder.wait()

    assert result.status == RunStatus.FAILED
    assert "outside the granted scope" in result.summary
    assert not (tmp_path / "runs" / "run-escape" / "escape.txt").exists()


def test_missing_executable_fails_registration(tmp_path) -> None:
    supervisor = _supervisor(tmp_path, CapabilityBroker(), command=[str(tmp_path / "no-worker")])

    with pytest.raises(CapabilityMissingError) as excinfo:
        supervisor.register()

    assert "worker executable not found" in str(excinfo.value)
    assert excinfo.value.missing


def test_unresolvable_token_is_rejected_before_any_directory_exists(tmp_path) -> None:
    broker = CapabilityBroker()
    supervisor = _supervisor(tmp_path, broker)
    request = _request(tmp_path, CapabilityBroker(), "run-forged")

    with pytest.raises(CapabilityMissingError, match="sandbox capability"):
        supervisor.launch(request)

    assert not request.log_dir.exists()
    assert not request.output_dir.exists()


def test_released_token_is_rejected(tmp_path) -> None:
    broker = CapabilityBroker()
    supervisor = _supervisor(tmp_path, broker)
    dirs = RunWorkdirManager(tmp_path).paths_for("run-released")
    token = broker.acquire(dirs.output_dir)
    broker.release(token)
    request = WorkerRunRequest(
        run_id="run-released",
        flow="review",
        card_key="card.md",
        sandbox_capability_token=token.encoded,
        log_dir=dirs.log_dir,
        output_dir=dirs.output_dir,
    )

    with pytest.raises(CapabilityMissingError):
        supervisor.launch(request)


def test_payload_encoding_failure_leaves_no_run_directories(tmp_path) -> None:
    broker = CapabilityBroker()
    supervisor = _supervisor(tmp_path, broker)
    dirs = RunWorkdirManager(tmp_path).paths_for("run-bad-backend")
    request = WorkerRunRequest(
        run_id="run-bad-backend",
        flow="implement",
        card_key="card.md",
        sandbox_capability_token=broker.acquire(dirs.output_dir).encoded,
        log_dir=dirs.log_dir,
        output_dir=dirs.output_dir,
        backend="bogus",
    )

    with pytest.raises(PayloadEncodingError, match="run-bad-backend"):
        supervisor.launch(request)

    assert not dirs.log_dir.exists()
    assert not dirs.output_dir.exists()
    assert supervisor.active_run_ids() == []


def test_spawn_failure_leaves_no_run_directories(tmp_path) -> None:
    not_executable = tmp_path / "worker.txt"
    not_executable.write_text("plain text", "utf-8")
    not_executable.chmod(0o644)
    broker = CapabilityBroker()
    supervisor = _supervisor(tmp_path, broker, command=[str(not_executable)])
    request = _request(tmp_path, broker, "run-no-exec")

    with pytest.raises(WorkerLaunchError, match="failed to start"):
        supervisor.launch(request)

    assert not request.log_dir.exists()
    assert not request.output_dir.exists()
    assert supervisor.active_run_ids() == []


def test_cancel_after_process_exit_still_removes_output(tmp_path) -> None:
    broker = CapabilityBroker()
    supervisor = _supervisor(tmp_path, broker)
    request = _request(tmp_path, broker, "run-exited")
    request.output_dir.mkdir(parents=True)
    (request.output_dir / "partial.txt").write_text("left behind", "utf-8")
    process = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    process.wait(timeout=WAIT_SECONDS)
    supervisor._handles[request.run_id] = _WorkerHandle(
        request=request,
        process=process,
        started_monotonic=time.monotonic(),
        on_exit=None,
        created_dirs=(request.output_dir,),
    )

    assert supervisor.cancel(request.run_id) is True

    assert not request.output_dir.exists()
