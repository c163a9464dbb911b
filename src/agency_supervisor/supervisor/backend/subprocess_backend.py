"""Subprocess-based worker supervisor."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import sys
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import agency_supervisor
from agency_supervisor.supervisor.backend.base import (
    CapabilityMissingError,
    RegistrationError,
    RunExitCallback,
    WorkerExecutableMissingError,
    WorkerLaunchError,
)
from agency_supervisor.supervisor.capability import CapabilityBroker, CapabilityResolutionError
from agency_supervisor.supervisor.contracts import PAYLOAD_FILE_NAME, write_payload
from agency_supervisor.supervisor.log_stream import (
    LOG_FILE_NAME,
    Finished,
    LogFileTimeoutError,
    Progress,
    Ready,
    WorkerLogEventStream,
)
from agency_supervisor.supervisor.models import WorkerRunRequest, WorkerRunResult
from agency_supervisor.supervisor.workdir import remove_tree

logger = logging.getLogger(__name__)

DEFAULT_WORKER_COMMAND = (
    f"{shlex.quote(sys.executable)} -m agency_supervisor.supervisor.backend.worker_entrypoint"
)
TIMEOUT_EXIT_CODE = 124
STDERR_FILE_NAME = "worker.stderr.log"


@dataclass(slots=True)
class _WorkerHandle:
    request: WorkerRunRequest
    process: subprocess.Popen[bytes]
    started_monotonic: float
    on_exit: RunExitCallback | None
    created_dirs: tuple[Path, ...]
    cancel_requested: threading.Event = field(default_factory=threading.Event)
    timed_out: bool = False
    last_progress: float = 0.0


class SubprocessWorkerSupervisor:
    """Runs each flow in a child process with a minimal environment.

    A daemon monitor thread per run tails the worker log, enforces the run
    timeout, removes the output dir on exit and reports the terminal result.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        broker: CapabilityBroker,
        state_dir: Path,
        command: str | Sequence[str] = DEFAULT_WORKER_COMMAND,
        endpoint_name: str = "agency-supervisor",
        run_timeout_seconds: float = 1800.0,
        graceful_shutdown_seconds: float = 5.0,
        log_wait_seconds: float = 5.0,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        self._broker = broker
        self.state_dir = state_dir
        self._argv = _split_command(command)
        self.endpoint_name = endpoint_name
        self.run_timeout_seconds = run_timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.log_wait_seconds = log_wait_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self._registered = False
        self._handles: dict[str, _WorkerHandle] = {}
        self._lock = threading.Lock()

    def register(self) -> None:
        """Check required capabilities once; later calls are no-ops."""

        with self._lock:
            if self._registered:
                return
            missing: list[str] = []
            if not self._argv:
                missing.append("worker command is empty")
            elif _resolve_executable(self._argv[0]) is None:
                missing.append(f"worker executable not found: {self._argv[0]}")
            try:
                self.state_dir.mkdir(parents=True, exist_ok=True)
            except OSError as error:
                message = f"Cannot create state dir {self.state_dir}: {error}"
                raise RegistrationError(message) from error
            if not os.access(self.state_dir, os.W_OK):
                missing.append(f"state dir is not writable: {self.state_dir}")
            if missing:
                raise CapabilityMissingError(missing)
            self._registered = True
            logger.info("Registered worker endpoint %s (%s)", self.endpoint_name, self._argv[0])

    def launch(self, request: WorkerRunRequest, *, on_exit: RunExitCallback | None = None) -> int:
        self.register()
        with self._lock:
            if request.run_id in self._handles:
                raise WorkerLaunchError(f"Run {request.run_id} is already tracked")
        try:
            scope_root = self._broker.resolve(request.sandbox_capability_token)
        except CapabilityResolutionError as error:
            raise CapabilityMissingError([f"sandbox capability: {error}"]) from error

        created = _create_dirs(request.log_dir, request.output_dir)
        payload_path = request.log_dir / PAYLOAD_FILE_NAME
        try:
            write_payload(payload_path, request)
            process = self._spawn(request, payload_path=payload_path, scope_root=scope_root)
        except BaseException:
            for path in created:
                remove_tree(path)
            raise

        handle = _WorkerHandle(
            request=request,
            process=process,
            started_monotonic=time.monotonic(),
            on_exit=on_exit,
            created_dirs=created,
        )
        with self._lock:
            self._handles[request.run_id] = handle
        threading.Thread(
            target=self._monitor,
            args=(handle,),
            name=f"worker-monitor-{request.run_id}",
            daemon=True,
        ).start()
        logger.info(
            "Launched worker pid=%s run=%s card=%s flow=%s",
            process.pid,
            request.run_id,
            request.card_key,
            request.flow,
        )
        return process.pid

    def cancel(self, run_id: str) -> bool:
        """Terminate the worker if alive and remove its output dir; idempotent."""

        with self._lock:
            handle = self._handles.get(run_id)
        if handle is None:
            return False
        handle.cancel_requested.set()
        _terminate_process(handle.process, grace_seconds=self.graceful_shutdown_seconds)
        remove_tree(handle.request.output_dir)
        logger.info("Canceled worker run %s", run_id)
        return True

    def active_run_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._handles)

    def process_id(self, run_id: str) -> int | None:
        with self._lock:
            handle = self._handles.get(run_id)
        return handle.process.pid if handle is not None else None

    def _spawn(
        self,
        request: WorkerRunRequest,
        *,
        payload_path: Path,
        scope_root: Path,
    ) -> subprocess.Popen[bytes]:
        env = _worker_environment(
            request,
            endpoint_name=self.endpoint_name,
            payload_path=payload_path,
        )
        logger.debug("Worker %s scoped to %s", request.run_id, scope_root)
        stderr_path = request.log_dir / STDERR_FILE_NAME
        try:
            with stderr_path.open("wb") as stderr_handle:
                return subprocess.Popen(  # noqa: S603
                    [*self._argv, *request.extra_args],
                    env=env,
                    cwd=str(request.output_dir),
                    stdin=subprocess.DEVNULL,
                    stdout=stderr_handle,
                    stderr=subprocess.STDOUT,
                )
        except FileNotFoundError as error:
            raise WorkerExecutableMissingError(
                f"Worker command not found: {self._argv[0]}",
            ) from error
        except OSError as error:
            raise WorkerLaunchError(f"Worker failed to start: {error}") from error

    def _monitor(self, handle: _WorkerHandle) -> None:
        run_id = handle.request.run_id
        reported: WorkerRunResult | None = None
        try:
            stream = WorkerLogEventStream(
                handle.request.log_dir / LOG_FILE_NAME,
                wait_timeout=self.log_wait_seconds,
                poll_interval=self.poll_interval_seconds,
                should_stop=lambda: self._should_stop(handle),
            )
            try:
                for event in stream:
                    if isinstance(event, Ready):
                        logger.debug("Worker %s ready (backend=%s)", run_id, event.backend)
                    elif isinstance(event, Progress):
                        handle.last_progress = event.percent
                        logger.debug("Worker %s progress %.0f%%", run_id, event.percent)
                    elif isinstance(event, Finished):
                        reported = event.result
                    else:
                        logger.debug("Worker %s: %s", run_id, event.message)
            except LogFileTimeoutError as error:
                logger.warning("%s; waiting for process exit", error)
                while not self._should_stop(handle):
                    time.sleep(self.poll_interval_seconds)
            self._await_exit(handle)
            result = self._final_result(handle, reported)
        except Exception:
            logger.exception("Monitor failed for worker run %s", run_id)
            _terminate_process(handle.process, grace_seconds=self.graceful_shutdown_seconds)
            result = WorkerRunResult.failed(
                "Supervisor monitor error",
                duration_ms=_elapsed_ms(handle),
            )
        finally:
            remove_tree(handle.request.output_dir)
            with self._lock:
                self._handles.pop(run_id, None)

        logger.info(
            "Worker run %s finished status=%s exit=%s",
            run_id,
            result.status.value,
            result.exit_code,
        )
        if handle.on_exit is not None:
            try:
                handle.on_exit(result)
            except Exception:
                logger.exception("Exit callback failed for worker run %s", run_id)

    def _should_stop(self, handle: _WorkerHandle) -> bool:
        if handle.process.poll() is not None:
            return True
        if handle.cancel_requested.is_set():
            return True
        if time.monotonic() - handle.started_monotonic >= self.run_timeout_seconds:
            handle.timed_out = True
            logger.warning(
                "Worker run %s exceeded %.0fs",
                handle.request.run_id,
                self.run_timeout_seconds,
            )
            _terminate_process(handle.process, grace_seconds=self.graceful_shutdown_seconds)
            return True
        return False

    def _await_exit(self, handle: _WorkerHandle) -> None:
        try:
            handle.process.wait(timeout=self.graceful_shutdown_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Worker run %s did not exit after finishing", handle.request.run_id)
            _terminate_process(handle.process, grace_seconds=self.graceful_shutdown_seconds)

    def _final_result(
        self,
        handle: _WorkerHandle,
        reported: WorkerRunResult | None,
    ) -> WorkerRunResult:
        duration_ms = _elapsed_ms(handle)
        if handle.cancel_requested.is_set():
            return WorkerRunResult.canceled(duration_ms=duration_ms)
        if handle.timed_out:
            return WorkerRunResult.failed(
                f"Timed out after {self.run_timeout_seconds:.0f}s",
                exit_code=TIMEOUT_EXIT_CODE,
                duration_ms=duration_ms,
            )
        if reported is not None:
            return reported
        exit_code = handle.process.returncode
        if exit_code == 0:
            return WorkerRunResult.failed(
                "Worker exited without reporting a result",
                duration_ms=duration_ms,
            )
        return WorkerRunResult.failed(
            f"Worker exited with code {exit_code}",
            exit_code=exit_code if exit_code is not None else 1,
            duration_ms=duration_ms,
        )


def _worker_environment(
    request: WorkerRunRequest,
    *,
    endpoint_name: str,
    payload_path: Path,
) -> dict[str, str]:
    env = {
        "PATH": os.environ.get("PATH", os.defpath),
        "PYTHONPATH": _python_path(),
        "AGENCY_RUN_ID": request.run_id,
        "AGENCY_ENDPOINT_NAME": endpoint_name,
        "AGENCY_LOG_DIR": str(request.log_dir),
        "AGENCY_OUTPUT_DIR": str(request.output_dir),
        "AGENCY_ALLOW_NETWORK": "1" if request.allow_network else "0",
        "AGENCY_CAPABILITY_TOKEN": request.sandbox_capability_token.decode("ascii"),
        "AGENCY_PAYLOAD_PATH": str(payload_path),
    }
    if os.name == "nt" and "SYSTEMROOT" in os.environ:
        env["SYSTEMROOT"] = os.environ["SYSTEMROOT"]
    return env


def _python_path() -> str:
    package_root = str(Path(agency_supervisor.__file__).resolve().parent.parent)
    inherited = os.environ.get("PYTHONPATH", "")
    parts = [package_root, *(part for part in inherited.split(os.pathsep) if part)]
    return os.pathsep.join(dict.fromkeys(parts))


def _split_command(command: str | Sequence[str]) -> list[str]:
    if isinstance(command, str):
        return shlex.split(command, posix=os.name != "nt")
    return [str(part) for part in command]


def _resolve_executable(head: str) -> str | None:
    if os.sep in head or (os.altsep and os.altsep in head):
        return head if Path(head).is_file() else None
    return shutil.which(head)


def _create_dirs(*paths: Path) -> tuple[Path, ...]:
    created: list[Path] = []
    try:
        for path in paths:
            if not path.exists():
                path.mkdir(parents=True)
                created.append(path)
    except OSError as error:
        for path in created:
            remove_tree(path)
        raise RegistrationError(f"Cannot create run directory: {error}") from error
    return tuple(created)


def _elapsed_ms(handle: _WorkerHandle) -> int:
    return int((time.monotonic() - handle.started_monotonic) * 1000)


def _terminate_process(process: subprocess.Popen[bytes], *, grace_seconds: float) -> None:
    if process.poll() is not None:
        return
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
