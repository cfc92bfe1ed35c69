from __future__ import annotations

import math
import random
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from decisionflow.config import Settings, get_settings
from decisionflow.logging import get_logger
from decisionflow.service.errors import BadRequestError, ConflictError, NotFoundError
from decisionflow.service.graph_validator import GraphValidator, ValidationStage, ensure_valid
from decisionflow.storage.errors import ConstraintViolation
from decisionflow.storage.models import (
    Experiment,
    ExperimentRun,
    VariantMetrics,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

VARIANTS = ("A", "B")
# runs needed before the evaluation recommends a winner
EVALUATION_MIN_RUNS = 20
SUCCESS_RATE_DELTA_THRESHOLD = 0.1
DURATION_DELTA_THRESHOLD_MS = 1000


class ExperimentStatus(str, Enum):
    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"


TERMINAL_STATUSES = frozenset({ExperimentStatus.COMPLETED.value, ExperimentStatus.ABORTED.value})


@dataclass(frozen=True)
class RoutingDecision:
    experiment_id: str
    variant: str
    version_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"experimentId": self.experiment_id, "variant": self.variant, "versionId": self.version_id}


@dataclass(frozen=True)
class MetricsRecordResult:
    recorded: bool
    auto_stopped: bool = False
    reason: Optional[str] = None


def _validate_split(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise BadRequestError("traffic_split_percent must be a number")
    if not 0 <= value <= 100:
        raise BadRequestError("traffic_split_percent must be within [0, 100]")
    return float(value)


def _validate_threshold(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 1:
        raise BadRequestError("bad_case_threshold must be within [0, 1]")
    return float(value)


def _validate_max_executions(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise BadRequestError("max_executions must be a positive integer")
    return value


class ExperimentRouter:
    """A/B experiments between two published versions of one workflow.

    Routing and metric recording hold the router lock, so the execution cap
    is never exceeded within a process and metric updates are not lost.
    ``rng`` supplies the traffic draw and is injectable for tests.
    """

    def __init__(
        self,
        store,
        validator: Optional[GraphValidator] = None,
        settings: Optional[Settings] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.validator = validator or GraphValidator()
        self.settings = settings or get_settings()
        self._rng = rng or random.Random()
        self._lock = threading.Lock()

    # lifecycle ------------------------------------------------------------

    def create(
        self,
        user_id: str,
        *,
        experiment_code: str,
        name: str,
        workflow_definition_id: str,
        variant_a_version_id: str,
        variant_b_version_id: str,
        traffic_split_percent: float = 50,
        max_executions: Optional[int] = None,
        auto_stop_enabled: bool = True,
        bad_case_threshold: float = 0.2,
        description: Optional[str] = None,
    ) -> Experiment:
        if not experiment_code or not experiment_code.strip():
            raise BadRequestError("experiment_code is required")
        for version_id in (variant_a_version_id, variant_b_version_id):
            version = self.store.get_workflow_version(version_id)
            if version is None:
                raise NotFoundError(
                    "workflow version not found", detail={"version_id": version_id}
                )
            if version.workflow_definition_id != workflow_definition_id:
                raise BadRequestError(
                    "experiment variants must belong to the same workflow definition",
                    detail={
                        "version_id": version_id,
                        "workflow_definition_id": version.workflow_definition_id,
                    },
                )
            ensure_valid(version.dsl, ValidationStage.PUBLISH, validator=self.validator)

        experiment = Experiment(
            id=new_id(),
            experiment_code=experiment_code.strip(),
            name=name,
            workflow_definition_id=workflow_definition_id,
            variant_a_version_id=variant_a_version_id,
            variant_b_version_id=variant_b_version_id,
            traffic_split_percent=_validate_split(traffic_split_percent),
            max_executions=_validate_max_executions(max_executions),
            auto_stop_enabled=bool(auto_stop_enabled),
            bad_case_threshold=_validate_threshold(bad_case_threshold),
            created_by_user_id=user_id,
            description=description,
        )
        try:
            self.store.create_experiment(experiment)
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info(
            "experiment_created",
            experiment_id=experiment.id,
            experiment_code=experiment.experiment_code,
            split=experiment.traffic_split_percent,
        )
        return experiment

    def get(self, experiment_id: str) -> Experiment:
        experiment = self.store.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError("experiment not found", detail={"experiment_id": experiment_id})
        return experiment

    def update(
        self,
        experiment_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        traffic_split_percent: Optional[float] = None,
        max_executions: Optional[int] = None,
        auto_stop_enabled: Optional[bool] = None,
        bad_case_threshold: Optional[float] = None,
    ) -> Experiment:
        with self._lock:
            experiment = self.get(experiment_id)
            if experiment.status in TERMINAL_STATUSES:
                raise BadRequestError(
                    f"experiment is {experiment.status} and can no longer be changed"
                )
            if name is not None:
                experiment.name = name
            if description is not None:
                experiment.description = description
            if traffic_split_percent is not None:
                experiment.traffic_split_percent = _validate_split(traffic_split_percent)
            if max_executions is not None:
                experiment.max_executions = _validate_max_executions(max_executions)
            if auto_stop_enabled is not None:
                experiment.auto_stop_enabled = bool(auto_stop_enabled)
            if bad_case_threshold is not None:
                experiment.bad_case_threshold = _validate_threshold(bad_case_threshold)
            return self.store.save_experiment(experiment)

    def _transition(
        self, experiment_id: str, allowed_from: frozenset, target: ExperimentStatus, action: str
    ) -> Experiment:
        experiment = self.get(experiment_id)
        if experiment.status not in allowed_from:
            raise BadRequestError(
                f"cannot {action} an experiment in status {experiment.status}",
                detail={"status": experiment.status, "action": action},
            )
        previous = experiment.status
        experiment.status = target.value
        logger.info(
            "experiment_status_changed",
            experiment_id=experiment_id,
            from_status=previous,
            to_status=target.value,
        )
        return experiment

    def start(self, experiment_id: str) -> Experiment:
        with self._lock:
            experiment = self._transition(
                experiment_id,
                frozenset({ExperimentStatus.DRAFT.value, ExperimentStatus.PAUSED.value}),
                ExperimentStatus.RUNNING,
                "start",
            )
            if experiment.started_at is None:
                experiment.started_at = utcnow()
            return self.store.save_experiment(experiment)

    def pause(self, experiment_id: str) -> Experiment:
        with self._lock:
            experiment = self._transition(
                experiment_id,
                frozenset({ExperimentStatus.RUNNING.value}),
                ExperimentStatus.PAUSED,
                "pause",
            )
            return self.store.save_experiment(experiment)

    def abort(self, experiment_id: str, reason: Optional[str] = None) -> Experiment:
        with self._lock:
            return self._abort_locked(experiment_id, reason)

    def _abort_locked(self, experiment_id: str, reason: Optional[str]) -> Experiment:
        experiment = self._transition(
            experiment_id,
            frozenset(
                {
                    ExperimentStatus.DRAFT.value,
                    ExperimentStatus.RUNNING.value,
                    ExperimentStatus.PAUSED.value,
                }
            ),
            ExperimentStatus.ABORTED,
            "abort",
        )
        experiment.ended_at = utcnow()
        if reason:
            experiment.conclusion_summary = reason
        return self.store.save_experiment(experiment)

    def conclude(
        self, experiment_id: str, winner_variant: str, conclusion_summary: Optional[str] = None
    ) -> Experiment:
        if winner_variant not in VARIANTS:
            raise BadRequestError("winner_variant must be A or B")
        with self._lock:
            experiment = self._transition(
                experiment_id,
                frozenset({ExperimentStatus.RUNNING.value, ExperimentStatus.PAUSED.value}),
                ExperimentStatus.COMPLETED,
                "conclude",
            )
            experiment.winner_variant = winner_variant
            experiment.conclusion_summary = conclusion_summary
            experiment.ended_at = utcnow()
            return self.store.save_experiment(experiment)

    def remove(self, experiment_id: str) -> None:
        with self._lock:
            experiment = self.get(experiment_id)
            if experiment.status == ExperimentStatus.RUNNING.value:
                raise BadRequestError("pause or abort a running experiment before removing it")
            self.store.delete_experiment(experiment_id)

    # routing and metrics ----------------------------------------------------

    def route_traffic(self, experiment_id: str) -> RoutingDecision:
        with self._lock:
            experiment = self.get(experiment_id)
            if experiment.status != ExperimentStatus.RUNNING.value:
                raise BadRequestError(
                    f"experiment is {experiment.status}; only RUNNING experiments route traffic"
                )
            if (
                experiment.max_executions is not None
                and experiment.total_executions >= experiment.max_executions
            ):
                raise BadRequestError(
                    "experiment reached its execution limit",
                    detail={"max_executions": experiment.max_executions},
                )
            draw = self._rng.random() * 100
            if draw < experiment.traffic_split_percent:
                variant, version_id = "A", experiment.variant_a_version_id
                experiment.current_executions_a += 1
            else:
                variant, version_id = "B", experiment.variant_b_version_id
                experiment.current_executions_b += 1
            self.store.save_experiment(experiment)
        logger.info("experiment_routed", experiment_id=experiment_id, variant=variant)
        return RoutingDecision(experiment_id=experiment_id, variant=variant, version_id=version_id)

    def record_metrics(
        self,
        experiment_id: str,
        variant: str,
        success: bool,
        duration_ms: float,
        *,
        confidence: Optional[float] = None,
        execution_id: Optional[str] = None,
    ) -> MetricsRecordResult:
        if variant not in VARIANTS:
            raise BadRequestError("variant must be A or B")
        if (
            isinstance(duration_ms, bool)
            or not isinstance(duration_ms, (int, float))
            or not math.isfinite(duration_ms)
            or duration_ms < 0
        ):
            raise BadRequestError("duration_ms must be a non-negative number")

        with self._lock:
            experiment = self.get(experiment_id)
            if experiment.status != ExperimentStatus.RUNNING.value:
                raise BadRequestError(
                    f"experiment is {experiment.status}; metrics are only recorded while RUNNING"
                )
            self.store.record_experiment_run(
                ExperimentRun(
                    id=new_id(),
                    experiment_id=experiment_id,
                    variant=variant,
                    success=bool(success),
                    duration_ms=float(duration_ms),
                    confidence=confidence,
                    execution_id=execution_id,
                )
            )
            metrics = experiment.metrics_snapshot.for_variant(variant)
            metrics.record(bool(success), float(duration_ms))
            experiment.metrics_snapshot.last_updated_at = utcnow()
            self.store.save_experiment(experiment)
            logger.debug(
                "experiment_metrics_recorded",
                experiment_id=experiment_id,
                variant=variant,
                total=metrics.total_executions,
                bad_case_rate=metrics.bad_case_rate,
            )

            reason = self._auto_stop_reason(experiment, variant, metrics)
            if reason is None:
                return MetricsRecordResult(recorded=True)
            self._abort_locked(experiment_id, f"[auto-stop] {reason}")
        logger.warning("experiment_auto_stopped", experiment_id=experiment_id, reason=reason)
        return MetricsRecordResult(recorded=True, auto_stopped=True, reason=reason)

    def _auto_stop_reason(
        self, experiment: Experiment, variant: str, metrics: VariantMetrics
    ) -> Optional[str]:
        if not experiment.auto_stop_enabled:
            return None
        if metrics.total_executions < self.settings.experiment_min_sample_size:
            return None
        if metrics.bad_case_rate <= experiment.bad_case_threshold:
            return None
        return (
            f"variant {variant} badCaseRate={metrics.bad_case_rate:.1%} exceeds threshold "
            f"{experiment.bad_case_threshold:.1%} (samples={metrics.total_executions})"
        )

    # reporting --------------------------------------------------------------

    def list_runs(
        self,
        experiment_id: str,
        *,
        variant: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[ExperimentRun]:
        self.get(experiment_id)
        return self.store.list_experiment_runs(
            experiment_id, variant=variant, success=success, limit=limit
        )

    def get_evaluation(self, experiment_id: str) -> Dict[str, Any]:
        experiment = self.get(experiment_id)
        snapshot = experiment.metrics_snapshot
        runs = self.store.list_experiment_runs(experiment_id)
        recent = runs[: self.settings.experiment_recent_runs_limit]

        evaluation: Dict[str, Any] = {
            "experimentId": experiment.id,
            "status": experiment.status,
            "metrics": snapshot.to_dict(),
            "recentRuns": [
                {
                    "variant": run.variant,
                    "success": run.success,
                    "durationMs": run.duration_ms,
                    "confidence": run.confidence,
                    "executionId": run.execution_id,
                    "createdAt": run.created_at.isoformat(),
                }
                for run in recent
            ],
            "comparison": None,
        }

        a, b = snapshot.variant_a, snapshot.variant_b
        if a.total_executions == 0 or b.total_executions == 0:
            return evaluation

        success_delta = b.success_rate - a.success_rate
        duration_delta = b.avg_duration_ms - a.avg_duration_ms
        evaluation["comparison"] = {
            "successRateDelta": success_delta,
            "avgDurationDelta": duration_delta,
            "avgConfidenceA": _mean_confidence(runs, "A"),
            "avgConfidenceB": _mean_confidence(runs, "B"),
            "recommendation": _recommend(
                a.total_executions + b.total_executions, success_delta, duration_delta
            ),
        }
        return evaluation


def _mean_confidence(runs: List[ExperimentRun], variant: str) -> Optional[float]:
    values = [
        run.confidence
        for run in runs
        if run.variant == variant and isinstance(run.confidence, (int, float))
    ]
    if not values:
        return None
    return sum(values) / len(values)


def _recommend(total_runs: int, success_delta: float, duration_delta: float) -> str:
    if total_runs < EVALUATION_MIN_RUNS:
        return f"insufficient sample ({total_runs} runs); keep collecting data"
    if abs(success_delta) > SUCCESS_RATE_DELTA_THRESHOLD:
        better = "B" if success_delta > 0 else "A"
        return f"variant {better} has a clearly higher success rate"
    if abs(duration_delta) > DURATION_DELTA_THRESHOLD_MS:
        faster = "B" if duration_delta < 0 else "A"
        return f"variant {faster} is clearly faster at similar success rate"
    return "variants perform similarly"
