"""Durable supervisor snapshot used for crash recovery."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from agency_supervisor.supervisor.common import (
    from_iso,
    load_json,
    to_iso,
    utc_now,
    write_json_atomic,
)

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "supervisor-state.json"


@dataclass(slots=True)
class ActiveRunSnapshot:
    """A run that was queued or running when the snapshot was taken."""

    run_id: str
    card_key: str
    flow: str
    started_at: datetime
    pipeline_name: str | None = None
    worker_process_id: int | None = None


@dataclass(slots=True)
class QueuedCardSnapshot:
    """A card waiting for its next flow (continuation, retry or backlog)."""

    card_key: str
    flow: str
    enqueued_at: datetime
    pipeline_name: str | None = None
    attempts: int = 0


@dataclass(slots=True)
class SupervisorState:
    active_runs: dict[str, ActiveRunSnapshot] = field(default_factory=dict)
    queued_cards: list[QueuedCardSnapshot] = field(default_factory=list)
    failure_counts: dict[str, int] = field(default_factory=dict)
    last_updated: datetime | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.active_runs or self.queued_cards or self.failure_counts)


class SupervisorStateStore:
    """Reads and writes ``supervisor-state.json``.

    Every mutator is load-mutate-save. Callers must serialize access; the
    coordinator only calls these under its own lock.
    """

    def __init__(self, path: Path, *, now=utc_now) -> None:
        self.path = path
        self._now = now

    @classmethod
    def in_dir(cls, state_dir: Path) -> SupervisorStateStore:
        return cls(state_dir / STATE_FILE_NAME)

    def load(self) -> SupervisorState:
        """Return the persisted state, or an empty one when missing or unreadable."""

        if not self.path.exists():
            return SupervisorState()
        try:
            raw = load_json(self.path)
            return _state_from_payload(raw)
        except (OSError, ValueError, TypeError, KeyError) as error:
            logger.warning("Ignoring unreadable supervisor state %s: %s", self.path, error)
            return SupervisorState()

    def save(self, state: SupervisorState) -> None:
        """Persist atomically. ``OSError`` propagates to the caller."""

        state.last_updated = self._now()
        write_json_atomic(self.path, _state_to_payload(state))

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def add_active_run(self, snapshot: ActiveRunSnapshot) -> None:
        state = self.load()
        state.active_runs[snapshot.run_id] = snapshot
        self.save(state)

    def remove_active_run(self, run_id: str) -> None:
        state = self.load()
        if state.active_runs.pop(run_id, None) is not None:
            self.save(state)

    def enqueue_card(self, snapshot: QueuedCardSnapshot) -> None:
        """Append a queued card, replacing any existing entry for the same card."""

        state = self.load()
        state.queued_cards = [
            item for item in state.queued_cards if item.card_key != snapshot.card_key
        ]
        state.queued_cards.append(snapshot)
        self.save(state)

    def dequeue_card(self, card_key: str) -> None:
        state = self.load()
        remaining = [item for item in state.queued_cards if item.card_key != card_key]
        if len(remaining) != len(state.queued_cards):
            state.queued_cards = remaining
            self.save(state)

    def update_failure_count(self, card_key: str, count: int) -> None:
        """Set the card's failure count; zero or less removes the entry."""

        state = self.load()
        if count <= 0:
            if state.failure_counts.pop(card_key, None) is None:
                return
        else:
            state.failure_counts[card_key] = count
        self.save(state)

    def clear_stale_runs(self, *, timeout: timedelta, now: datetime | None = None) -> list[str]:
        """Drop active runs with ``started_at < now - timeout`` and return their ids."""

        cutoff = (now or self._now()) - timeout
        state = self.load()
        stale = [
            run_id
            for run_id, snapshot in state.active_runs.items()
            if snapshot.started_at < cutoff
        ]
        if not stale:
            return []
        for run_id in stale:
            del state.active_runs[run_id]
        self.save(state)
        logger.info("Cleared %d stale runs from %s", len(stale), self.path)
        return stale


def _state_to_payload(state: SupervisorState) -> dict[str, Any]:
    return {
        "active_runs": {
            run_id: {
                "run_id": snapshot.run_id,
                "card_key": snapshot.card_key,
                "flow": snapshot.flow,
                "pipeline_name": snapshot.pipeline_name,
                "started_at": to_iso(snapshot.started_at),
                "worker_process_id": snapshot.worker_process_id,
            }
            for run_id, snapshot in state.active_runs.items()
        },
        "queued_cards": [
            {
                "card_key": item.card_key,
                "flow": item.flow,
                "pipeline_name": item.pipeline_name,
                "enqueued_at": to_iso(item.enqueued_at),
                "attempts": item.attempts,
            }
            for item in state.queued_cards
        ],
        "failure_counts": dict(state.failure_counts),
        "last_updated": to_iso(state.last_updated) if state.last_updated else None,
    }


def _state_from_payload(raw: Any) -> SupervisorState:
    if not isinstance(raw, dict):
        raise TypeError("supervisor state must be a JSON object")
    active_runs = {
        str(run_id): ActiveRunSnapshot(
            run_id=str(item["run_id"]),
            card_key=str(item["card_key"]),
            flow=str(item["flow"]),
            pipeline_name=item.get("pipeline_name"),
            started_at=from_iso(str(item["started_at"])),
            worker_process_id=item.get("worker_process_id"),
        )
        for run_id, item in (raw.get("active_runs") or {}).items()
    }
    queued_cards = [
        QueuedCardSnapshot(
            card_key=str(item["card_key"]),
            flow=str(item["flow"]),
            pipeline_name=item.get("pipeline_name"),
            enqueued_at=from_iso(str(item["enqueued_at"])),
            attempts=int(item.get("attempts", 0)),
        )
        for item in raw.get("queued_cards") or []
    ]
    failure_counts = {
        str(key): int(value) for key, value in (raw.get("failure_counts") or {}).items()
    }
    last_updated_raw = raw.get("last_updated")
    return SupervisorState(
        active_runs=active_runs,
        queued_cards=queued_cards,
        failure_counts=failure_counts,
        last_updated=from_iso(last_updated_raw) if last_updated_raw else None,
    )
