"""Built-in worker runtime used by default and in integration tests.

Flow behavior is driven by the request's extra args:
``--sleep SECONDS`` simulates work, ``--fail`` reports a failed run,
``--exit-code N`` exits with ``N`` without reporting a result and
``--write PATH`` writes an artifact to ``PATH`` (relative to the output dir),
which is refused when it escapes the granted scope.
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
import time
from pathlib import Path

from agency_supervisor.supervisor.capability import (
    CapabilityResolutionError,
    ScopeViolationError,
    decode_capability_root,
    ensure_within_scope,
)
from agency_supervisor.supervisor.contracts import WorkerLogWriter, read_payload
from agency_supervisor.supervisor.log_stream import LOG_FILE_NAME

_SLEEP_STEP_SECONDS = 0.05


class _Canceled(Exception):
    pass


def _raise_canceled(_signum, _frame) -> None:
    raise _Canceled


def _parse_flow_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="agency-worker")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--fail", action="store_true")
    parser.add_argument("--exit-code", type=int, default=None)
    parser.add_argument("--write", default=None)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run one flow described by the payload in ``AGENCY_PAYLOAD_PATH``."""

    flow_args = _parse_flow_args(list(sys.argv[1:] if argv is None else argv))
    payload_path = Path(os.environ["AGENCY_PAYLOAD_PATH"])
    bytes_read = payload_path.stat().st_size
    request = read_payload(payload_path)
    if flow_args.exit_code is not None:
        return flow_args.exit_code

    signal.signal(signal.SIGTERM, _raise_canceled)
    started = time.monotonic()
    log_path = request.log_dir / LOG_FILE_NAME
    with log_path.open("a", encoding="utf-8") as handle:
        writer = WorkerLogWriter(handle)
        writer.ready(
            run_id=request.run_id,
            output_dir=request.output_dir,
            backend=request.backend.value,
        )

        def finish(status: str, summary: str, exit_code: int, bytes_written: int = 0) -> int:
            writer.finished(
                status=status,
                card=request.card_key,
                summary=summary,
                duration_ms=int((time.monotonic() - started) * 1000),
                exit_code=exit_code,
                bytes_read=bytes_read,
                bytes_written=bytes_written,
            )
            return exit_code

        try:
            scope = decode_capability_root(
                os.environ.get("AGENCY_CAPABILITY_TOKEN", "").encode("ascii"),
            )
            writer.progress(0, f"Starting {request.flow}")
            _simulate_work(writer, flow_args.sleep)
            if flow_args.fail:
                return finish("failed", f"{request.flow} failed", 1)
            target = Path(flow_args.write) if flow_args.write else Path(f"{request.flow}.txt")
            if not target.is_absolute():
                target = request.output_dir / target
            target = ensure_within_scope(scope, target)
            content = f"{request.flow} completed for {request.card_key}\n".encode()
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
            writer.progress(100, f"{request.flow} done")
            return finish("succeeded", f"{request.flow} completed", 0, len(content))
        except _Canceled:
            return finish("canceled", "Canceled", 1)
        except (CapabilityResolutionError, ScopeViolationError, OSError) as error:
            return finish("failed", str(error), 1)


def _simulate_work(writer: WorkerLogWriter, seconds: float) -> None:
    if seconds <= 0:
        return
    deadline = time.monotonic() + seconds
    reported = 0
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return
        time.sleep(min(_SLEEP_STEP_SECONDS, remaining))
        percent = int(100 * (1 - max(0.0, deadline - time.monotonic()) / seconds))
        if percent >= reported + 25:
            reported = percent
            writer.progress(percent)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
