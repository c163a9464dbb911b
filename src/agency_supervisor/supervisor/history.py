"""Reporting-only run history (``run-history.json``)."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from agency_supervisor.supervisor.common import from_iso, load_json, to_iso, write_json_atomic
from agency_supervisor.supervisor.models import RunStatus

logger = logging.getLogger(__name__)

HISTORY_FILE_NAME = "run-history.json"
DEFAULT_MAX_RECORDS = 1000


@dataclass(frozen=True, slots=True)
class RunRecord:
    """One finished worker run."""

    run_id: str
    card_key: str
    flow: str
    status: RunStatus
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    exit_code: int
    pipeline_name: str | None = None
    bytes_read: int = 0
    bytes_written: int = 0
    summary: str = ""


@dataclass(frozen=True, slots=True)
class HistoryFilter:
    start: datetime | None = None
    end: datetime | None = None
    flow: str | None = None
    status: RunStatus | None = None
    card_path_contains: str | None = None

    def matches(self, record: RunRecord) -> bool:
        if self.start is not None and record.completed_at < self.start:
            return False
        if self.end is not None and record.completed_at > self.end:
            return False
        if self.flow is not None and record.flow != self.flow:
            return False
        if self.status is not None and record.status != self.status:
            return False
        if self.card_path_contains:
            return self.card_path_contains.lower() in record.card_key.lower()
        return True


@dataclass(frozen=True, slots=True)
class RunMetrics:
    total: int
    successful: int
    failed: int
    canceled: int
    total_duration_ms: int
    bytes_read: int
    bytes_written: int

    @property
    def success_rate(self) -> float:
        return self.successful / self.total if self.total else 0.0

    @property
    def average_duration_ms(self) -> float:
        return self.total_duration_ms / self.total if self.total else 0.0


class RunHistoryStore:
    """Most-recent-first list of run records capped at ``max_records``."""

    def __init__(self, path: Path, *, max_records: int = DEFAULT_MAX_RECORDS) -> None:
        if max_records < 1:
            raise ValueError("max_records must be >= 1")
        self.path = path
        self.max_records = max_records
        self._lock = threading.Lock()

    @classmethod
    def in_dir(cls, state_dir: Path, *, max_records: int = DEFAULT_MAX_RECORDS) -> RunHistoryStore:
        return cls(state_dir / HISTORY_FILE_NAME, max_records=max_records)

    def add_record(self, record: RunRecord) -> None:
        with self._lock:
            records = self._load()
            records.insert(0, record)
            self._save(records[: self.max_records])

    def records(self, history_filter: HistoryFilter | None = None) -> list[RunRecord]:
        with self._lock:
            records = self._load()
        if history_filter is None:
            return records
        return [record for record in records if history_filter.matches(record)]

    def recent_records(self, limit: int = 20) -> list[RunRecord]:
        return self.records()[: max(0, limit)]

    def metrics(self, history_filter: HistoryFilter | None = None) -> RunMetrics:
        records = self.records(history_filter)
        return RunMetrics(
            total=len(records),
            successful=sum(1 for record in records if record.status == RunStatus.SUCCEEDED),
            failed=sum(1 for record in records if record.status == RunStatus.FAILED),
            canceled=sum(1 for record in records if record.status == RunStatus.CANCELED),
            total_duration_ms=sum(record.duration_ms for record in records),
            bytes_read=sum(record.bytes_read for record in records),
            bytes_written=sum(record.bytes_written for record in records),
        )

    def clear(self) -> None:
        with self._lock:
            self.path.unlink(missing_ok=True)

    def clear_older_than(self, cutoff: datetime) -> int:
        """Drop records completed before ``cutoff``; returns how many were removed."""

        with self._lock:
            records = self._load()
            kept = [record for record in records if record.completed_at >= cutoff]
            removed = len(records) - len(kept)
            if removed:
                self._save(kept)
        return removed

    def _load(self) -> list[RunRecord]:
        if not self.path.exists():
            return []
        try:
            raw = load_json(self.path)
            return [_record_from_payload(item) for item in raw.get("records", [])]
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as error:
            logger.warning("Ignoring unreadable run history %s: %s", self.path, error)
            return []

    def _save(self, records: list[RunRecord]) -> None:
        write_json_atomic(self.path, {"records": [_record_to_payload(item) for item in records]})


def _record_to_payload(record: RunRecord) -> dict[str, Any]:
    return {
        "run_id": record.run_id,
        "card_key": record.card_key,
        "flow": record.flow,
        "pipeline_name": record.pipeline_name,
        "status": record.status.value,
        "started_at": to_iso(record.started_at),
        "completed_at": to_iso(record.completed_at),
        "duration_ms": record.duration_ms,
        "exit_code": record.exit_code,
        "bytes_read": record.bytes_read,
        "bytes_written": record.bytes_written,
        "summary": record.summary,
    }


def _record_from_payload(item: dict[str, Any]) -> RunRecord:
    return RunRecord(
        run_id=str(item["run_id"]),
        card_key=str(item["card_key"]),
        flow=str(item["flow"]),
        pipeline_name=item.get("pipeline_name"),
        status=RunStatus(item["status"]),
        started_at=from_iso(item["started_at"]),
        completed_at=from_iso(item["completed_at"]),
        duration_ms=int(item.get("duration_ms", 0)),
        exit_code=int(item.get("exit_code", 0)),
        bytes_read=int(item.get("bytes_read", 0)),
        bytes_written=int(item.get("bytes_written", 0)),
        summary=str(item.get("summary", "")),
    )
