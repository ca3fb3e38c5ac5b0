"""
app/services/run_coordinator.py

Run/stage state machine for ingestion pipeline runs.

Stages run strictly in ``STAGE_ORDER`` and at most one stage of a run is
``processing`` at a time. A failed stage fails the run; ``resume`` is the only
way back from ``failed`` and re-enters the first failed stage.
"""

from __future__ import annotations

import logging
import traceback
import uuid
from collections.abc import Callable, Mapping
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from typing import Any

from app.domain.pipeline import (
    STAGE_ORDER,
    TERMINAL_RUN_STATUSES,
    RunSnapshot,
    RunStatus,
    Stage,
    StageStatus,
    stages_before,
)
from app.errors import InvalidStateError
from app.metrics import MetricsEvent, MetricsSink, NullMetricsSink
from app.repositories.protocols import RunStore

logger = logging.getLogger(__name__)

# failed -> processing is only reachable through resume().
_ALLOWED_STAGE_TRANSITIONS: dict[StageStatus, frozenset[StageStatus]] = {
    StageStatus.PENDING: frozenset({StageStatus.PROCESSING}),
    StageStatus.PROCESSING: frozenset({StageStatus.COMPLETED, StageStatus.FAILED}),
    StageStatus.COMPLETED: frozenset(),
    StageStatus.FAILED: frozenset(),
}

_MAX_STACK_CHARS = 8000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() * 1000))


def serialize_error(error: BaseException, *, depth: int = 0) -> dict[str, Any]:
    """
    Structured error detail: type, message, trace and (recursively) cause.
    """

    details: dict[str, Any] = {
        "type": type(error).__name__,
        "message": str(error),
        "stack": "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )[-_MAX_STACK_CHARS:],
    }
    cause = error.__cause__ or error.__context__
    if cause is not None and depth < 3:
        details["cause"] = serialize_error(cause, depth=depth + 1)
    retry_cost = getattr(error, "retry_cost", None)
    if retry_cost is not None:
        details["retry_cost"] = asdict(retry_cost) if is_dataclass(retry_cost) else retry_cost
    return details


class RunCoordinator:
    """
    Owns every mutation of a run's overall and per-stage status.
    """

    def __init__(
        self,
        *,
        store: RunStore,
        metrics_sink: MetricsSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._metrics_sink = metrics_sink or NullMetricsSink()
        self._clock = clock

    def start_run(self, source_id: str) -> uuid.UUID:
        snapshot = RunSnapshot.new(source_id=source_id, started_at=self._clock())
        self._store.create(snapshot)
        logger.info("Pipeline run started run_id=%s source_id=%s", snapshot.id, source_id)
        return snapshot.id

    def get_run(self, run_id: uuid.UUID) -> RunSnapshot:
        snapshot = self._store.get(run_id)
        if snapshot is None:
            raise InvalidStateError(f"Pipeline run not found: {run_id}", run_id=run_id)
        return snapshot

    def advance_stage(
        self,
        run_id: uuid.UUID,
        stage: Stage,
        status: StageStatus,
        metrics: Mapping[str, Any] | None = None,
    ) -> RunSnapshot:
        """
        Move ``stage`` to ``status`` and update the overall run status.

        Raises:
            InvalidStateError: For any transition outside the state machine,
                including starting a stage while another is processing.
        """

        run = self.get_run(run_id)
        if run.status in TERMINAL_RUN_STATUSES:
            raise InvalidStateError(
                f"Run {run_id} is {run.status.value}; stage {stage.value} cannot move to {status.value}",
                run_id=run_id,
            )

        current = run.stages[stage]
        if status not in _ALLOWED_STAGE_TRANSITIONS[current]:
            raise InvalidStateError(
                f"Illegal stage transition run_id={run_id} stage={stage.value} "
                f"{current.value}->{status.value}",
                run_id=run_id,
            )

        now = self._clock()
        stage_metrics = dict(run.stage_metrics.get(stage.value, {}))
        if metrics:
            stage_metrics.update(metrics)
        stage_metrics["status"] = status.value

        if status is StageStatus.PROCESSING:
            active = run.processing_stage()
            if active is not None:
                raise InvalidStateError(
                    f"Cannot start stage {stage.value} while {active.value} is processing",
                    run_id=run_id,
                )
            unfinished = [s.value for s in stages_before(stage) if run.stages[s] is not StageStatus.COMPLETED]
            if unfinished:
                raise InvalidStateError(
                    f"Cannot start stage {stage.value} before {', '.join(unfinished)} completed",
                    run_id=run_id,
                )
            run.status = RunStatus.PROCESSING
            stage_metrics["started_at"] = now.isoformat()
        else:
            stage_metrics["finished_at"] = now.isoformat()
            started_at = stage_metrics.get("started_at")
            if started_at:
                stage_metrics["duration_ms"] = _elapsed_ms(datetime.fromisoformat(started_at), now)

        run.stages[stage] = status
        run.stage_metrics[stage.value] = stage_metrics

        if status is StageStatus.FAILED:
            self._mark_run_failed(run, stage, now)
        elif status is StageStatus.COMPLETED and stage is STAGE_ORDER[-1]:
            if all(run.stages[s] is StageStatus.COMPLETED for s in STAGE_ORDER):
                run.status = RunStatus.COMPLETED
                run.completed_at = now
                run.total_processing_time_ms = _elapsed_ms(run.started_at, now)

        self._store.save(run)
        logger.info(
            "Run stage advanced run_id=%s stage=%s status=%s run_status=%s",
            run_id,
            stage.value,
            status.value,
            run.status.value,
        )

        if status is StageStatus.COMPLETED:
            self._emit(MetricsEvent.STAGE_COMPLETED, run, stage=stage.value, metrics=stage_metrics)
            if run.status is RunStatus.COMPLETED:
                self._emit(MetricsEvent.RUN_COMPLETED, run, stage_metrics=run.stage_metrics)
        elif status is StageStatus.FAILED:
            self._emit(MetricsEvent.STAGE_FAILED, run, stage=stage.value, metrics=stage_metrics)
            self._emit(MetricsEvent.RUN_FAILED, run, failed_stage=stage.value)
        return run

    def record_error(self, run_id: uuid.UUID, error: BaseException) -> RunSnapshot:
        """
        Fail the stage currently processing and store structured error detail.
        """

        run = self.get_run(run_id)
        if run.status is RunStatus.COMPLETED:
            raise InvalidStateError(f"Run {run_id} already completed", run_id=run_id)

        now = self._clock()
        failing_stage = run.processing_stage()
        if failing_stage is not None:
            run.stages[failing_stage] = StageStatus.FAILED
            stage_metrics = dict(run.stage_metrics.get(failing_stage.value, {}))
            stage_metrics["status"] = StageStatus.FAILED.value
            stage_metrics["finished_at"] = now.isoformat()
            run.stage_metrics[failing_stage.value] = stage_metrics

        self._mark_run_failed(run, failing_stage or run.failed_stage, now)
        run.error_details = {
            **serialize_error(error),
            "stage": failing_stage.value if failing_stage else None,
            "recorded_at": now.isoformat(),
        }
        self._store.save(run)
        logger.error(
            "Pipeline run failed run_id=%s stage=%s error=%s: %s",
            run_id,
            failing_stage.value if failing_stage else None,
            type(error).__name__,
            error,
        )
        self._emit(
            MetricsEvent.RUN_FAILED,
            run,
            failed_stage=failing_stage.value if failing_stage else None,
            error_type=type(error).__name__,
        )
        return run

    def resume(self, run_id: uuid.UUID) -> Stage:
        """
        Re-enter a failed run at its first failed stage.

        Calling ``resume`` again while that stage is still processing returns
        the same stage without further changes.

        Raises:
            InvalidStateError: If the run does not exist or is not failed.
        """

        run = self._store.get(run_id)
        if run is None:
            raise InvalidStateError(f"Pipeline run not found: {run_id}", run_id=run_id)

        if (
            run.status is RunStatus.PROCESSING
            and run.resumed_stage is not None
            and run.stages[run.resumed_stage] is StageStatus.PROCESSING
        ):
            return run.resumed_stage

        if run.status is not RunStatus.FAILED:
            raise InvalidStateError(
                f"Only failed runs can be resumed; run {run_id} is {run.status.value}",
                run_id=run_id,
            )

        resume_point = self._resume_point(run)
        if resume_point is None:
            raise InvalidStateError(f"Run {run_id} has no stage to resume", run_id=run_id)

        now = self._clock()
        run.stages[resume_point] = StageStatus.PROCESSING
        stage_metrics = dict(run.stage_metrics.get(resume_point.value, {}))
        stage_metrics["status"] = StageStatus.PROCESSING.value
        stage_metrics["started_at"] = now.isoformat()
        stage_metrics.pop("finished_at", None)
        run.stage_metrics[resume_point.value] = stage_metrics
        run.status = RunStatus.PROCESSING
        run.error_details = None
        run.failed_stage = None
        run.resumed_stage = resume_point
        run.resume_count += 1
        run.completed_at = None
        run.total_processing_time_ms = None
        self._store.save(run)

        logger.info(
            "Pipeline run resumed run_id=%s stage=%s resume_count=%s",
            run_id,
            resume_point.value,
            run.resume_count,
        )
        self._emit(MetricsEvent.RUN_RESUMED, run, stage=resume_point.value)
        return resume_point

    def save_checkpoint(self, run_id: uuid.UUID, stage: Stage, payload: Mapping[str, Any]) -> None:
        run = self.get_run(run_id)
        run.checkpoint_data[stage.value] = dict(payload)
        run.checkpoint_data["last_stage"] = stage.value
        self._store.save(run)

    def load_checkpoint(self, run_id: uuid.UUID, stage: Stage) -> dict[str, Any] | None:
        run = self.get_run(run_id)
        checkpoint = run.checkpoint_data.get(stage.value)
        return dict(checkpoint) if isinstance(checkpoint, Mapping) else None

    @staticmethod
    def _resume_point(run: RunSnapshot) -> Stage | None:
        for stage in STAGE_ORDER:
            if run.stages[stage] is StageStatus.FAILED:
                return stage
        for stage in STAGE_ORDER:
            if run.stages[stage] is not StageStatus.COMPLETED:
                return stage
        return None

    @staticmethod
    def _mark_run_failed(run: RunSnapshot, stage: Stage | None, now: datetime) -> None:
        run.status = RunStatus.FAILED
        run.failed_stage = stage
        run.resumed_stage = None
        run.completed_at = now
        run.total_processing_time_ms = _elapsed_ms(run.started_at, now)

    def _emit(self, event: str, run: RunSnapshot, **fields: Any) -> None:
        payload = {
            "run_id": str(run.id),
            "source_id": run.source_id,
            "run_status": run.status.value,
            "total_processing_time_ms": run.total_processing_time_ms,
            **fields,
        }
        self._metrics_sink.emit(event, payload)
