"""Tail and replay worker NDJSON logs as typed lifecycle events."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agency_supervisor.supervisor.models import RunStatus, WorkerRunResult

logger = logging.getLogger(__name__)

LOG_FILE_NAME = "worker.log.ndjson"


@dataclass(frozen=True, slots=True)
class Ready:
    run_id: str | None = None
    backend: str | None = None


@dataclass(frozen=True, slots=True)
class Progress:
    percent: float
    message: str | None = None


@dataclass(frozen=True, slots=True)
class Finished:
    result: WorkerRunResult


@dataclass(frozen=True, slots=True)
class LogLine:
    message: str


WorkerEvent = Ready | Progress | Finished | LogLine


class LogFileTimeoutError(TimeoutError):
    """Raised when the worker log file does not appear in time."""


class WorkerLogEventStream:
    """Follows one worker log file and yields events as lines are appended.

    Iteration ends after a ``Finished`` event, or once ``should_stop`` returns
    True and the remaining bytes are drained. A trailing line without a newline
    is emitted as a final best-effort event.
    """

    def __init__(
        self,
        path: Path,
        *,
        wait_timeout: float = 5.0,
        poll_interval: float = 0.05,
        should_stop: Callable[[], bool] | None = None,
    ) -> None:
        self.path = path
        self.wait_timeout = wait_timeout
        self.poll_interval = poll_interval
        self._should_stop = should_stop or (lambda: False)

    def __iter__(self) -> Iterator[WorkerEvent]:
        return self.events()

    def events(self) -> Iterator[WorkerEvent]:
        if not self._wait_for_file():
            return
        buffer = ""
        with self.path.open("r", encoding="utf-8", errors="replace") as handle:
            while True:
                stopping = self._should_stop()
                chunk = handle.read()
                if chunk:
                    buffer += chunk
                    *lines, buffer = buffer.split("\n")
                    for line in lines:
                        event = parse_record(line)
                        if event is None:
                            continue
                        yield event
                        if isinstance(event, Finished):
                            return
                    continue
                if stopping:
                    break
                time.sleep(self.poll_interval)
        tail = parse_record(buffer)
        if tail is not None:
            yield tail

    def _wait_for_file(self) -> bool:
        """Return False when told to stop before the file appeared."""

        deadline = time.monotonic() + self.wait_timeout
        while not self.path.exists():
            if self._should_stop():
                return self.path.exists()
            if time.monotonic() >= deadline:
                raise LogFileTimeoutError(
                    f"Worker log {self.path} did not appear within {self.wait_timeout:.1f}s",
                )
            time.sleep(self.poll_interval)
        return True


def read_all(path: Path) -> list[WorkerEvent]:
    """Parse an existing log in one pass; same sequence the stream yields."""

    events: list[WorkerEvent] = []
    text = path.read_text("utf-8", errors="replace")
    for line in text.split("\n"):
        event = parse_record(line)
        if event is None:
            continue
        events.append(event)
        if isinstance(event, Finished):
            break
    return events


def parse_record(line: str) -> WorkerEvent | None:
    """Map one NDJSON line to an event; non-JSON text becomes a ``LogLine``."""

    stripped = line.strip()
    if not stripped:
        return None
    try:
        record = json.loads(stripped)
    except json.JSONDecodeError:
        return LogLine(message=stripped)
    if not isinstance(record, dict):
        return LogLine(message=stripped)

    event = record.get("event")
    if event == "workerReady":
        return Ready(
            run_id=_optional_str(record.get("runID")),
            backend=_optional_str(record.get("backend")),
        )
    if event == "progress" or "percent" in record:
        return Progress(
            percent=_as_float(record.get("percent")),
            message=_optional_str(record.get("message") or record.get("summary")),
        )
    if event == "workerFinished" or "status" in record:
        return Finished(result=_result_from_record(record))
    message = record.get("message")
    if message is not None:
        return LogLine(message=str(message))
    return LogLine(message=stripped)


def _result_from_record(record: dict[str, Any]) -> WorkerRunResult:
    raw_status = str(record.get("status") or "failed").strip().lower()
    try:
        status = RunStatus(raw_status)
    except ValueError:
        logger.warning("Unknown worker status %r, treating as failed", raw_status)
        status = RunStatus.FAILED
    summary = record.get("summary")
    default_exit = 0 if status == RunStatus.SUCCEEDED else 1
    return WorkerRunResult(
        status=status,
        exit_code=_as_int(record.get("exitCode"), default=default_exit),
        duration_ms=_as_int(record.get("durationMs")),
        bytes_read=_as_int(record.get("bytesRead")),
        bytes_written=_as_int(record.get("bytesWritten")),
        summary=str(summary) if summary else status.value.capitalize(),
    )


def _as_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def _as_float(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
