"""File contracts shared by the supervisor and worker processes."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TextIO

from agency_supervisor.supervisor.backend.base import PayloadEncodingError
from agency_supervisor.supervisor.common import dump_json, to_iso, utc_now, write_text_atomic
from agency_supervisor.supervisor.models import WorkerBackend, WorkerRunRequest

PAYLOAD_FILE_NAME = "worker.payload.json"
CONTRACT_VERSION = 1
_REQUIRED_PAYLOAD_KEYS = (
    "run_id",
    "flow",
    "card_key",
    "sandbox_capability_token",
    "log_dir",
    "output_dir",
)


def write_payload(path: Path, request: WorkerRunRequest) -> None:
    """Serialize the run request next to the worker log."""

    try:
        payload = {
            "contract_version": CONTRACT_VERSION,
            "run_id": request.run_id,
            "flow": request.flow,
            "card_key": request.card_key,
            "sandbox_capability_token": base64.b64encode(
                request.sandbox_capability_token,
            ).decode("ascii"),
            "log_dir": str(request.log_dir),
            "output_dir": str(request.output_dir),
            "allow_network": request.allow_network,
            "extra_args": list(request.extra_args),
            "backend": WorkerBackend(request.backend).value,
        }
        text = dump_json(payload)
    except (TypeError, ValueError) as error:
        message = f"Cannot encode payload for run {request.run_id}: {error}"
        raise PayloadEncodingError(message) from error
    try:
        write_text_atomic(path, text)
    except OSError as error:
        raise PayloadEncodingError(f"Cannot write payload {path}: {error}") from error


def read_payload(path: Path) -> WorkerRunRequest:
    """Deserialize and validate a payload artifact."""

    raw = json.loads(path.read_text("utf-8"))
    if not isinstance(raw, dict):
        raise TypeError(f"Expected JSON object in {path}")
    for key in _REQUIRED_PAYLOAD_KEYS:
        if not isinstance(raw.get(key), str) or not raw[key]:
            raise ValueError(f"payload.{key} must be a non-empty string")
    extra_args = raw.get("extra_args", [])
    if not isinstance(extra_args, list):
        raise TypeError("payload.extra_args must be an array")
    try:
        token = base64.b64decode(raw["sandbox_capability_token"], validate=True)
    except binascii.Error as error:
        raise ValueError("payload.sandbox_capability_token is not base64") from error
    return WorkerRunRequest(
        run_id=raw["run_id"],
        flow=raw["flow"],
        card_key=raw["card_key"],
        sandbox_capability_token=token,
        log_dir=Path(raw["log_dir"]),
        output_dir=Path(raw["output_dir"]),
        allow_network=bool(raw.get("allow_network", False)),
        extra_args=tuple(str(item) for item in extra_args),
        backend=WorkerBackend(raw.get("backend", WorkerBackend.PROCESS.value)),
    )


@dataclass(slots=True)
class WorkerLogWriter:
    """Appends protocol records, one JSON object per line, flushing each."""

    handle: TextIO

    def emit(self, event: str, **fields: Any) -> None:
        record = {"timestamp": to_iso(utc_now()), "event": event, **fields}
        self.handle.write(json.dumps(record, ensure_ascii=False, sort_keys=True) + "\n")
        self.handle.flush()

    def ready(self, *, run_id: str, output_dir: Path, backend: str) -> None:
        self.emit("workerReady", runID=run_id, output=str(output_dir), backend=backend)

    def progress(self, percent: float, message: str | None = None) -> None:
        fields: dict[str, Any] = {"percent": percent}
        if message:
            fields["message"] = message
        self.emit("progress", **fields)

    def log(self, message: str) -> None:
        self.emit("log", message=message)

    def finished(  # noqa: PLR0913
        self,
        *,
        status: str,
        card: str,
        summary: str,
        duration_ms: int,
        exit_code: int,
        bytes_read: int = 0,
        bytes_written: int = 0,
    ) -> None:
        self.emit(
            "workerFinished",
            status=status,
            card=card,
            summary=summary,
            durationMs=duration_ms,
            exitCode=exit_code,
            bytesRead=bytes_read,
            bytesWritten=bytes_written,
        )
