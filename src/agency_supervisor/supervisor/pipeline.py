"""Multi-step flow pipelines and the per-card step state machine."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime

from agency_supervisor.supervisor.backoff import STANDARD_BACKOFF, BackoffPolicy
from agency_supervisor.supervisor.common import utc_now
from agency_supervisor.supervisor.models import (
    CardRef,
    FlowResult,
    PipelineExecution,
    RunStatus,
    WorkerRunResult,
)

logger = logging.getLogger(__name__)

DEFAULT_PIPELINE = "implement-review"

BUILTIN_PIPELINES: dict[str, tuple[str, ...]] = {
    "implement-only": ("implement",),
    "review-only": ("review",),
    "implement-review": ("implement", "review"),
    "research-implement": ("research", "implement"),
    "full": ("research", "plan", "implement", "review"),
}

_PIPELINE_BY_REQUESTED_FLOW = {
    "implement": "implement-review",
    "review": "review-only",
    "research": "research-implement",
    "plan": "full",
}


@dataclass(frozen=True, slots=True)
class ContinueToNextFlow:
    flow: str


@dataclass(frozen=True, slots=True)
class PipelineComplete:
    card_key: str


@dataclass(frozen=True, slots=True)
class RetryWithBackoff:
    delay_seconds: float
    failure_count: int


@dataclass(frozen=True, slots=True)
class Abort:
    reason: str


FlowCompletionAction = ContinueToNextFlow | PipelineComplete | RetryWithBackoff | Abort


class UnknownPipelineError(ValueError):
    """Raised when a pipeline kind is not registered."""


class FlowPipelineOrchestrator:
    """Tracks one ``PipelineExecution`` per card and decides the next step.

    Not thread-safe on its own; the coordinator calls it under its lock.
    """

    def __init__(
        self,
        *,
        backoff_policy: BackoffPolicy = STANDARD_BACKOFF,
        pipelines: Mapping[str, tuple[str, ...]] | None = None,
        now: Callable[[], datetime] = utc_now,
        uniform: Callable[[float, float], float] | None = None,
    ) -> None:
        self.backoff_policy = backoff_policy
        self._pipelines = dict(pipelines if pipelines is not None else BUILTIN_PIPELINES)
        for kind, steps in self._pipelines.items():
            if not steps:
                raise ValueError(f"Pipeline {kind!r} must have at least one flow")
        self._now = now
        self._uniform = uniform
        self._executions: dict[str, PipelineExecution] = {}
        self._failure_counts: dict[str, int] = {}

    @property
    def pipelines(self) -> dict[str, tuple[str, ...]]:
        return dict(self._pipelines)

    def steps_for(self, kind: str) -> tuple[str, ...]:
        try:
            return self._pipelines[kind]
        except KeyError as error:
            known = ", ".join(sorted(self._pipelines))
            raise UnknownPipelineError(
                f"Unknown pipeline {kind!r}. Known pipelines: {known}",
            ) from error

    def register_pipeline(self, kind: str, flows: tuple[str, ...]) -> None:
        if not flows:
            raise ValueError(f"Pipeline {kind!r} must have at least one flow")
        self._pipelines[kind] = tuple(flows)

    def start_pipeline(self, card_key: str, kind: str) -> str:
        """Create a fresh execution for the card and return its first flow."""

        steps = self.steps_for(kind)
        self._executions[card_key] = PipelineExecution(
            card_key=card_key,
            pipeline_kind=kind,
            steps=steps,
            current_step_index=0,
            started_at=self._now(),
        )
        self._failure_counts[card_key] = 0
        logger.info("Started %s pipeline for %s", kind, card_key)
        return steps[0]

    def resume_pipeline(
        self,
        card_key: str,
        kind: str,
        flow: str,
        *,
        failure_count: int = 0,
    ) -> str:
        """Recreate an execution positioned at ``flow`` (used when restoring queued work)."""

        steps = self.steps_for(kind)
        if flow not in steps:
            raise ValueError(f"Flow {flow!r} is not part of pipeline {kind!r}")
        self._executions[card_key] = PipelineExecution(
            card_key=card_key,
            pipeline_kind=kind,
            steps=steps,
            current_step_index=steps.index(flow),
            started_at=self._now(),
        )
        self._failure_counts[card_key] = max(0, failure_count)
        return flow

    def next_flow(self, after: str, kind: str) -> str | None:
        steps = self.steps_for(kind)
        if after not in steps:
            return None
        index = steps.index(after) + 1
        return steps[index] if index < len(steps) else None

    def on_flow_completed(
        self,
        card_key: str,
        run_id: str,
        flow: str,
        result: WorkerRunResult,
    ) -> FlowCompletionAction:
        """Advance, retry or abort the card's pipeline given one flow result."""

        execution = self._executions.get(card_key)
        if execution is None:
            logger.warning("No active execution for %s (run %s)", card_key, run_id)
            return Abort(reason="No active pipeline execution")
        if execution.current_flow != flow:
            logger.warning(
                "Run %s reported flow %s for %s but pipeline is at %s",
                run_id,
                flow,
                card_key,
                execution.current_flow,
            )

        if result.status == RunStatus.SUCCEEDED:
            self._failure_counts[card_key] = 0
            execution = execution.advancing(
                FlowResult(
                    flow=flow,
                    status=result.status,
                    completed_at=self._now(),
                    duration_ms=result.duration_ms,
                ),
            )
            next_flow = execution.current_flow
            if next_flow is None:
                logger.info("Pipeline complete for %s", card_key)
                self._executions.pop(card_key, None)
                return PipelineComplete(card_key=card_key)
            self._executions[card_key] = execution
            logger.info("Flow %s succeeded for %s; continuing to %s", flow, card_key, next_flow)
            return ContinueToNextFlow(flow=next_flow)

        if result.status == RunStatus.FAILED:
            failures = self._failure_counts.get(card_key, 0) + 1
            self._failure_counts[card_key] = failures
            max_retries = self.backoff_policy.max_retries
            if failures >= max_retries:
                logger.warning("Flow %s failed %d times for %s; aborting", flow, failures, card_key)
                self._executions.pop(card_key, None)
                return Abort(reason=f"Exceeded maximum retry attempts ({max_retries})")
            delay = self.backoff_policy.delay(failures, uniform=self._uniform)
            logger.info(
                "Flow %s failed for %s; retry %d/%d after %.1fs",
                flow,
                card_key,
                failures,
                max_retries,
                delay,
            )
            return RetryWithBackoff(delay_seconds=delay, failure_count=failures)

        logger.info("Flow %s canceled for %s", flow, card_key)
        self._executions.pop(card_key, None)
        return Abort(reason="canceled")

    def execution(self, card_key: str) -> PipelineExecution | None:
        return self._executions.get(card_key)

    def current_flow(self, card_key: str) -> str | None:
        execution = self._executions.get(card_key)
        return execution.current_flow if execution is not None else None

    def cancel_pipeline(self, card_key: str) -> None:
        self._executions.pop(card_key, None)
        self._failure_counts.pop(card_key, None)
        logger.info("Canceled pipeline for %s", card_key)

    def restore_execution(
        self,
        card_key: str,
        execution: PipelineExecution | None,
        *,
        failure_count: int = 0,
    ) -> None:
        """Put back a previously captured execution, or drop the card when there was none."""

        if execution is None:
            self._executions.pop(card_key, None)
        else:
            self._executions[card_key] = execution
        if failure_count > 0:
            self._failure_counts[card_key] = failure_count
        else:
            self._failure_counts.pop(card_key, None)

    @property
    def active_executions(self) -> list[PipelineExecution]:
        return list(self._executions.values())

    def failure_count(self, card_key: str) -> int:
        return self._failure_counts.get(card_key, 0)

    def failure_counts(self) -> dict[str, int]:
        return {key: count for key, count in self._failure_counts.items() if count > 0}

    def restore_failure_counts(self, counts: Mapping[str, int]) -> None:
        for card_key, count in counts.items():
            if count > 0:
                self._failure_counts[card_key] = count

    def suggest_pipeline(self, card: CardRef, default: str = DEFAULT_PIPELINE) -> str:
        """Pick a pipeline from the card's requested flow."""

        if card.flow:
            suggested = _PIPELINE_BY_REQUESTED_FLOW.get(card.flow)
            if suggested is not None and suggested in self._pipelines:
                return suggested
            if card.flow in self._pipelines:
                return card.flow
        return default
