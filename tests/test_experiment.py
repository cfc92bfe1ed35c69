import copy
import random

import pytest

from decisionflow.config import Settings
from decisionflow.service.errors import (
    BadRequestError,
    ConflictError,
    NotFoundError,
    WorkflowValidationError,
)
from decisionflow.service.experiment import ExperimentRouter, ExperimentStatus
from decisionflow.storage.memory import MemoryStore
from decisionflow.storage.models import WorkflowVersion


class StubRng:
    def __init__(self, *values):
        self.values = list(values)

    def random(self):
        return self.values.pop(0) if len(self.values) > 1 else self.values[0]


@pytest.fixture
def store(graph):
    store = MemoryStore()
    for version_id, definition_id in (("v1", "wf-1"), ("v2", "wf-1"), ("v9", "wf-other")):
        store.save_workflow_version(
            WorkflowVersion(
                id=version_id,
                workflow_definition_id=definition_id,
                version_code=version_id,
                dsl=copy.deepcopy(graph),
            )
        )
    return store


def make_router(store, *rng_values):
    return ExperimentRouter(store, settings=Settings(), rng=StubRng(*(rng_values or (0.5,))))


def create(router, code="EXP_1", **overrides):
    params = {
        "experiment_code": code,
        "name": "Prompt v2 vs v1",
        "workflow_definition_id": "wf-1",
        "variant_a_version_id": "v1",
        "variant_b_version_id": "v2",
    }
    params.update(overrides)
    return router.create("user-1", **params)


class TestCreate:
    def test_defaults(self, store):
        experiment = create(make_router(store))
        assert experiment.status == ExperimentStatus.DRAFT.value
        assert experiment.traffic_split_percent == 50
        assert experiment.bad_case_threshold == 0.2
        assert experiment.created_by_user_id == "user-1"

    def test_duplicate_code_conflicts(self, store):
        router = make_router(store)
        create(router)
        with pytest.raises(ConflictError):
            create(router)

    def test_unknown_version(self, store):
        with pytest.raises(NotFoundError):
            create(make_router(store), variant_b_version_id="missing")

    def test_versions_must_share_definition(self, store):
        with pytest.raises(BadRequestError):
            create(make_router(store), variant_b_version_id="v9")

    def test_versions_must_pass_publish_validation(self, store):
        broken = store.get_workflow_version("v2")
        del broken.dsl["ownerUserId"]

        with pytest.raises(WorkflowValidationError) as excinfo:
            create(make_router(store))
        assert excinfo.value.detail["stage"] == "PUBLISH"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"traffic_split_percent": 150},
            {"traffic_split_percent": True},
            {"bad_case_threshold": 1.5},
            {"max_executions": 0},
        ],
    )
    def test_invalid_settings(self, store, overrides):
        with pytest.raises(BadRequestError):
            create(make_router(store), **overrides)


class TestLifecycle:
    def test_start_pause_resume_conclude(self, store):
        router = make_router(store)
        experiment = create(router)

        started = router.start(experiment.id)
        first_start = started.started_at
        assert started.status == "RUNNING"
        assert router.pause(experiment.id).status == "PAUSED"
        assert router.start(experiment.id).started_at == first_start

        concluded = router.conclude(experiment.id, "B", "B is cheaper")
        assert concluded.status == "COMPLETED"
        assert concluded.winner_variant == "B"
        assert concluded.ended_at is not None

        with pytest.raises(BadRequestError):
            router.update(experiment.id, name="renamed")
        with pytest.raises(BadRequestError):
            router.start(experiment.id)

    def test_invalid_transitions(self, store):
        router = make_router(store)
        experiment = create(router)
        with pytest.raises(BadRequestError):
            router.pause(experiment.id)
        with pytest.raises(BadRequestError):
            router.conclude(experiment.id, "A")
        with pytest.raises(BadRequestError):
            router.conclude(experiment.id, "C")

        aborted = router.abort(experiment.id, "not needed")
        assert aborted.status == "ABORTED"
        assert aborted.conclusion_summary == "not needed"
        with pytest.raises(BadRequestError):
            router.abort(experiment.id)

    def test_remove_requires_non_running(self, store):
        router = make_router(store)
        experiment = create(router)
        router.start(experiment.id)
        with pytest.raises(BadRequestError):
            router.remove(experiment.id)

        router.pause(experiment.id)
        router.remove(experiment.id)
        with pytest.raises(NotFoundError):
            router.get(experiment.id)

    def test_update_settings(self, store):
        router = make_router(store)
        experiment = create(router)
        updated = router.update(experiment.id, traffic_split_percent=80, max_executions=5)
        assert updated.traffic_split_percent == 80
        assert updated.max_executions == 5


class TestRouting:
    def test_draw_below_split_routes_to_a(self, store):
        router = make_router(store, 0.3, 0.7)
        experiment = create(router)
        router.start(experiment.id)

        first = router.route_traffic(experiment.id)
        second = router.route_traffic(experiment.id)

        assert (first.variant, first.version_id) == ("A", "v1")
        assert (second.variant, second.version_id) == ("B", "v2")
        stored = router.get(experiment.id)
        assert (stored.current_executions_a, stored.current_executions_b) == (1, 1)
        assert first.to_dict() == {"experimentId": experiment.id, "variant": "A", "versionId": "v1"}

    @pytest.mark.parametrize("split, expected", [(0, "B"), (100, "A")])
    def test_extreme_splits(self, store, split, expected):
        router = make_router(store, 0.0, 0.999999)
        experiment = create(router, traffic_split_percent=split)
        router.start(experiment.id)
        variants = {router.route_traffic(experiment.id).variant for _ in range(2)}
        assert variants == {expected}

    def test_only_running_experiments_route(self, store):
        router = make_router(store)
        experiment = create(router)
        with pytest.raises(BadRequestError):
            router.route_traffic(experiment.id)

    def test_execution_cap(self, store):
        router = make_router(store)
        experiment = create(router, max_executions=2)
        router.start(experiment.id)
        router.route_traffic(experiment.id)
        router.route_traffic(experiment.id)

        with pytest.raises(BadRequestError) as excinfo:
            router.route_traffic(experiment.id)
        assert excinfo.value.message == "experiment reached its execution limit"


class TestMetrics:
    def test_incremental_aggregates(self, store):
        router = make_router(store)
        experiment = create(router)
        router.start(experiment.id)

        router.record_metrics(experiment.id, "A", True, 100)
        result = router.record_metrics(experiment.id, "A", False, 300)

        assert result.recorded and not result.auto_stopped
        metrics = router.get(experiment.id).metrics_snapshot.variant_a
        assert metrics.total_executions == 2
        assert metrics.success_rate == 0.5
        assert metrics.bad_case_rate == 0.5
        assert metrics.avg_duration_ms == 200
        assert metrics.p95_duration_ms == 300
        assert router.get(experiment.id).metrics_snapshot.variant_b.total_executions == 0

    def test_recording_requires_running(self, store):
        router = make_router(store)
        experiment = create(router)
        with pytest.raises(BadRequestError):
            router.record_metrics(experiment.id, "A", True, 10)

    @pytest.mark.parametrize(
        "variant, duration",
        [("C", 10), ("A", -1), ("A", float("nan")), ("B", float("inf")), ("A", "10")],
    )
    def test_invalid_metric_input(self, store, variant, duration):
        router = make_router(store)
        experiment = create(router)
        router.start(experiment.id)
        with pytest.raises(BadRequestError):
            router.record_metrics(experiment.id, variant, True, duration)
        assert router.get(experiment.id).metrics_snapshot.variant_a.total_executions == 0

    def test_auto_stop_after_minimum_sample(self, store):
        router = make_router(store)
        experiment = create(router)
        router.start(experiment.id)

        for _ in range(9):
            assert not router.record_metrics(experiment.id, "A", False, 50).auto_stopped
        assert router.get(experiment.id).status == "RUNNING"

        result = router.record_metrics(experiment.id, "A", False, 50)

        assert result.auto_stopped
        assert result.reason == "variant A badCaseRate=100.0% exceeds threshold 20.0% (samples=10)"
        stopped = router.get(experiment.id)
        assert stopped.status == "ABORTED"
        assert stopped.conclusion_summary == f"[auto-stop] {result.reason}"

    def test_auto_stop_disabled(self, store):
        router = make_router(store)
        experiment = create(router, auto_stop_enabled=False)
        router.start(experiment.id)
        for _ in range(12):
            router.record_metrics(experiment.id, "B", False, 50)
        assert router.get(experiment.id).status == "RUNNING"

    def test_list_runs_newest_first(self, store):
        router = make_router(store)
        experiment = create(router, auto_stop_enabled=False)
        router.start(experiment.id)
        router.record_metrics(experiment.id, "A", True, 10, execution_id="x1")
        router.record_metrics(experiment.id, "B", False, 20, execution_id="x2")
        router.record_metrics(experiment.id, "A", False, 30, execution_id="x3")

        assert [r.execution_id for r in router.list_runs(experiment.id)] == ["x3", "x2", "x1"]
        assert [r.execution_id for r in router.list_runs(experiment.id, variant="A")] == ["x3", "x1"]
        assert [r.execution_id for r in router.list_runs(experiment.id, success=False, limit=1)] == ["x3"]


class TestEvaluation:
    def _running(self, store):
        router = make_router(store)
        experiment = create(router, auto_stop_enabled=False)
        router.start(experiment.id)
        return router, experiment

    def test_no_comparison_until_both_variants_ran(self, store):
        router, experiment = self._running(store)
        router.record_metrics(experiment.id, "A", True, 10)

        evaluation = router.get_evaluation(experiment.id)

        assert evaluation["comparison"] is None
        assert evaluation["status"] == "RUNNING"
        assert evaluation["metrics"]["variantA"]["totalExecutions"] == 1
        assert len(evaluation["recentRuns"]) == 1

    def test_small_sample(self, store):
        router, experiment = self._running(store)
        router.record_metrics(experiment.id, "A", True, 10, confidence=0.6)
        router.record_metrics(experiment.id, "B", True, 10, confidence=0.9)

        comparison = router.get_evaluation(experiment.id)["comparison"]

        assert comparison["recommendation"] == "insufficient sample (2 runs); keep collecting data"
        assert comparison["avgConfidenceA"] == 0.6
        assert comparison["avgConfidenceB"] == 0.9

    def test_success_rate_difference_wins(self, store):
        router, experiment = self._running(store)
        for _ in range(12):
            router.record_metrics(experiment.id, "A", True, 1000)
        for index in range(10):
            router.record_metrics(experiment.id, "B", index % 2 == 0, 1000)

        comparison = router.get_evaluation(experiment.id)["comparison"]

        assert comparison["successRateDelta"] == -0.5
        assert comparison["recommendation"] == "variant A has a clearly higher success rate"

    def test_faster_variant_at_similar_success(self, store):
        router, experiment = self._running(store)
        for _ in range(10):
            router.record_metrics(experiment.id, "A", True, 3000)
            router.record_metrics(experiment.id, "B", True, 1000)

        comparison = router.get_evaluation(experiment.id)["comparison"]

        assert comparison["avgDurationDelta"] == -2000
        assert comparison["recommendation"] == "variant B is clearly faster at similar success rate"

    def test_similar_variants(self, store):
        router, experiment = self._running(store)
        for _ in range(10):
            router.record_metrics(experiment.id, "A", True, 1000)
            router.record_metrics(experiment.id, "B", True, 1200)

        comparison = router.get_evaluation(experiment.id)["comparison"]
        assert comparison["recommendation"] == "variants perform similarly"


def test_split_converges_over_many_draws(store):
    router = ExperimentRouter(store, settings=Settings(), rng=random.Random(20240301))
    experiment = create(router, traffic_split_percent=30)
    router.start(experiment.id)

    draws = 100_000
    routed_to_a = sum(router.route_traffic(experiment.id).variant == "A" for _ in range(draws))

    assert abs(routed_to_a / draws - 0.30) <= 0.02


def test_auto_stop_on_tenth_run_with_sixty_percent_failures(store):
    router = make_router(store)
    experiment = create(router, bad_case_threshold=0.3)
    router.start(experiment.id)
    outcomes = [False] * 6 + [True] * 4

    results = [router.record_metrics(experiment.id, "A", ok, 100) for ok in outcomes]

    assert [r.auto_stopped for r in results] == [False] * 9 + [True]
    stopped = router.get(experiment.id)
    assert stopped.status == "ABORTED"
    assert stopped.metrics_snapshot.variant_a.bad_case_rate == 0.6
