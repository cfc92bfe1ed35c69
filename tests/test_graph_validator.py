"""Tests for workflow graph validation at SAVE and PUBLISH."""

from __future__ import annotations

import copy

import pytest

from decisionflow.service.errors import WorkflowValidationError
from decisionflow.service.graph_validator import (
    GraphValidator,
    Severity,
    ValidationStage,
    effective_runtime_policy,
    ensure_valid,
    extract_field_type_map,
    resolve_field_type,
    validate_graph,
)


def _node(graph, node_id):
    return next(n for n in graph["nodes"] if n["id"] == node_id)


def _edge(graph, edge_id):
    return next(e for e in graph["edges"] if e["id"] == edge_id)


def _codes(result):
    return [issue.code for issue in result.issues]


class TestStructure:
    """Top-level, uniqueness, reference and connectivity checks."""

    def test_publishable_graph_is_valid_at_both_stages(self, graph):
        validator = GraphValidator()
        for stage in (ValidationStage.SAVE, ValidationStage.PUBLISH):
            result = validator.validate(graph, stage)
            assert result.valid, result.to_dict()
            assert result.issues == []

    def test_missing_required_fields_is_wf001(self, graph):
        del graph["mode"]
        graph["workflowId"] = ""

        result = GraphValidator().validate(graph)

        assert not result.valid
        assert _codes(result) == ["WF001"]

    def test_unknown_mode_is_wf001(self, graph):
        graph["mode"] = "STAR"
        assert _codes(GraphValidator().validate(graph)) == ["WF001"]

    def test_non_mapping_graph_is_wf001(self):
        result = GraphValidator().validate(["not", "a", "graph"])
        assert _codes(result) == ["WF001"]

    def test_duplicate_node_and_edge_ids(self, graph):
        graph["nodes"].append(copy.deepcopy(_node(graph, "n1")))
        graph["edges"].append({"id": "e7", "from": "g1", "to": "n1", "edgeType": "control-edge"})

        result = GraphValidator().validate(graph)

        wf002 = [i for i in result.issues if i.code == "WF002"]
        assert {i.node_id for i in wf002 if i.node_id} == {"n1"}
        assert {i.edge_id for i in wf002 if i.edge_id} == {"e7"}

    def test_edge_to_missing_node_is_wf003(self, graph):
        graph["edges"].append({"id": "e9", "from": "g1", "to": "ghost"})

        result = GraphValidator().validate(graph)

        issue = next(i for i in result.issues if i.code == "WF003")
        assert issue.edge_id == "e9"
        assert "ghost" in issue.message

    def test_orphan_node_is_wf004_but_trigger_is_allowed(self, graph):
        graph["nodes"].append({"id": "lonely", "type": "notify", "name": "x", "config": {}})
        graph["nodes"].append({"id": "cron", "type": "schedule-trigger", "name": "c", "config": {}})

        result = GraphValidator().validate(graph)

        orphans = [i.node_id for i in result.issues if i.code == "WF004"]
        assert orphans == ["lonely"]


class TestModes:
    def test_linear_fan_out_is_wf005(self, graph):
        graph["mode"] = "LINEAR"

        result = GraphValidator().validate(graph)

        flagged = {i.node_id for i in result.issues if i.code == "WF005"}
        # f1 fans out to r1 and a1, j1 joins two branches
        assert flagged == {"f1", "j1"}

    def test_debate_requires_all_roles(self, graph):
        graph["mode"] = "DEBATE"
        _node(graph, "a1")["type"] = "debate-round"

        result = GraphValidator().validate(graph)

        issue = next(i for i in result.issues if i.code == "WF101")
        assert "context-builder" in issue.message
        assert "judge-agent" in issue.message
        assert "debate-round" not in issue.message

    def test_dag_without_join_is_wf102(self, graph):
        _node(graph, "j1")["type"] = "decision-merge"
        assert "WF102" in _codes(GraphValidator().validate(graph))

    def test_approval_may_only_lead_to_output_nodes(self, graph):
        graph["nodes"].append({"id": "ap", "type": "approval", "name": "ok?", "config": {}})
        graph["edges"].append({"id": "e8", "from": "g1", "to": "ap"})
        graph["edges"].append({"id": "e9", "from": "ap", "to": "n1"})
        graph["edges"].append({"id": "e10", "from": "ap", "to": "r1"})

        result = GraphValidator().validate(graph)

        wf103 = [i for i in result.issues if i.code == "WF103"]
        assert [i.edge_id for i in wf103] == ["e10"]

    @pytest.mark.parametrize("quorum", [None, 1, True, 2.5, "3"])
    def test_quorum_join_requires_integer_branches(self, graph, quorum):
        _node(graph, "j1")["config"] = {"joinPolicy": "QUORUM", "quorumBranches": quorum}
        assert "WF105" in _codes(GraphValidator().validate(graph))

    def test_quorum_join_with_two_branches_is_valid(self, graph):
        _node(graph, "j1")["config"] = {"joinPolicy": "QUORUM", "quorumBranches": 2}
        assert GraphValidator().validate(graph).valid


class TestDataFlow:
    def test_bound_field_type_mismatch_is_wf201(self, graph):
        _edge(graph, "e3")["edgeType"] = "data-edge"
        analyst = _node(graph, "a1")
        analyst["config"]["inputSchema"] = {"properties": {"spot": {"type": "string"}}}
        analyst["inputBindings"] = {"spot": "{{f1.price}}"}

        result = GraphValidator().validate(graph)

        issue = next(i for i in result.issues if i.code == "WF201")
        assert issue.edge_id == "e3"
        assert issue.message == "data-edge e3 field type mismatch: f1.price(number) -> a1.spot(string)"

    def test_same_name_fields_are_compared_without_bindings(self, graph):
        _edge(graph, "e3")["edgeType"] = "data-edge"
        _node(graph, "a1")["config"]["inputFields"] = {"symbol": "int", "price": "double"}

        result = GraphValidator().validate(graph)

        messages = [i.message for i in result.issues if i.code == "WF201"]
        assert messages == ["data-edge e3 field type mismatch: f1.symbol(string) -> a1.symbol(number)"]

    def test_unknown_types_are_compatible(self, graph):
        _edge(graph, "e3")["edgeType"] = "data-edge"
        _node(graph, "a1")["config"]["inputFields"] = {"price": "decimal128"}
        assert GraphValidator().validate(graph).valid

    def test_binding_to_unknown_node_is_wf202(self, graph):
        _node(graph, "a1")["inputBindings"] = {"spot": "{{nowhere.price}}"}

        result = GraphValidator().validate(graph)

        issue = next(i for i in result.issues if i.code == "WF202")
        assert issue.node_id == "a1"
        assert "nowhere" in issue.message

    def test_reference_to_undeclared_output_field_is_wf202(self, graph):
        _node(graph, "a1")["config"]["prompt"] = "Spot is {{f1.volume}}"
        assert "WF202" in _codes(GraphValidator().validate(graph))

    def test_nested_and_indexed_paths_resolve_to_declared_fields(self, graph):
        _node(graph, "a1")["inputBindings"] = {
            "first": "{{f1.history[0]}}",
            "nested": {"symbol": "{{ f1.symbol.code | default: 'CU' }}"},
        }
        assert GraphValidator().validate(graph).valid

    def test_condition_edge_references_are_checked(self, graph):
        edge = _edge(graph, "e2")
        edge["edgeType"] = "condition-edge"
        edge["condition"] = "{{ghost.price}} > 10"

        result = GraphValidator().validate(graph)

        issue = next(i for i in result.issues if i.code == "WF202")
        assert issue.edge_id == "e2"

    def test_params_and_meta_scopes_are_not_node_references(self, graph):
        _node(graph, "a1")["config"]["prompt"] = "{{params.MARGIN}} {{meta.executionId}}"
        assert GraphValidator().validate(graph).valid

    def test_parameter_reference_without_bindings_is_wf203(self, graph):
        graph["paramSetBindings"] = ["  "]
        _node(graph, "r1")["config"]["threshold"] = "params.BASIS_LIMIT * 2"

        result = GraphValidator().validate(graph)

        issue = next(i for i in result.issues if i.code == "WF203")
        assert "BASIS_LIMIT" in issue.message

    def test_decision_merge_needs_two_inputs(self, graph):
        graph["nodes"].append({"id": "dm", "type": "decision-merge", "name": "m", "config": {}})
        graph["edges"].append({"id": "e8", "from": "g1", "to": "dm"})

        result = GraphValidator().validate(graph)

        assert [i.node_id for i in result.issues if i.code == "WF204"] == ["dm"]

    @pytest.mark.parametrize(
        "condition",
        [None, "   ", {"field": "price"}, {"operator": ">"}, 42, ["price", ">", 3]],
    )
    def test_malformed_condition_edge_is_wf205(self, graph, condition):
        edge = _edge(graph, "e2")
        edge["edgeType"] = "condition-edge"
        if condition is not None:
            edge["condition"] = condition

        assert "WF205" in _codes(GraphValidator().validate(graph))

    def test_structured_condition_edge_is_valid(self, graph):
        edge = _edge(graph, "e2")
        edge["edgeType"] = "condition-edge"
        edge["condition"] = {"field": "price", "operator": ">", "value": 3}
        assert GraphValidator().validate(graph).valid

    @pytest.mark.parametrize("condition", [True, False])
    def test_boolean_condition_edge_is_valid(self, graph, condition):
        edge = _edge(graph, "e2")
        edge["edgeType"] = "condition-edge"
        edge["condition"] = condition

        assert "WF205" not in _codes(GraphValidator().validate(graph))
        assert GraphValidator().validate(graph, ValidationStage.PUBLISH).valid


class TestPublish:
    def test_publish_checks_do_not_run_at_save(self, graph):
        graph.pop("ownerUserId")
        graph.pop("runPolicy")
        _node(graph, "g1")["type"] = "notify"

        assert GraphValidator().validate(graph, ValidationStage.SAVE).valid

    def test_missing_risk_gate_is_wf104_without_evidence_check(self, graph):
        _node(graph, "g1")["type"] = "report-generate"
        _node(graph, "r1")["type"] = "transform"

        codes = _codes(GraphValidator().validate(graph, "PUBLISH"))

        assert "WF104" in codes
        assert "WF305" not in codes

    def test_runtime_policy_coverage(self, graph):
        graph["runPolicy"] = {"nodeDefaults": {"timeoutMs": 1000, "retryCount": 0}}
        _node(graph, "f1")["runtimePolicy"] = {"retryBackoffMs": 0, "onError": "SKIP"}
        _node(graph, "r1")["config"].update({"retryBackoffMs": 100, "onError": "FAIL_FAST"})
        _node(graph, "n1")["enabled"] = False

        result = GraphValidator().validate(graph, ValidationStage.PUBLISH)

        flagged = sorted(i.node_id for i in result.issues if i.code == "WF106")
        assert flagged == ["a1", "g1", "j1"]
        message = next(i.message for i in result.issues if i.node_id == "a1")
        assert "retryBackoffMs" in message and "onError" in message

    def test_owner_required(self, graph):
        graph["ownerUserId"] = " "
        assert _codes(GraphValidator().validate(graph, "PUBLISH")) == ["WF304"]

    def test_evidence_categories(self, graph):
        _node(graph, "f1")["type"] = "price-fetch"
        _node(graph, "r1")["type"] = "transform"
        _node(graph, "a1")["type"] = "formatter"

        result = GraphValidator().validate(graph, "PUBLISH")

        issue = next(i for i in result.issues if i.code == "WF305")
        assert "rule" in issue.message and "model" in issue.message
        assert "data" not in issue.message.split("missing:")[1]

    def test_experiment_config_errors(self, graph):
        graph["experimentConfig"] = {
            "enabled": True,
            "experimentCode": "",
            "variants": [
                {"version": "v1", "traffic": 50},
                {"version": "", "traffic": 30},
                "bad",
            ],
            "splitPolicy": "ROUND_ROBIN",
            "autoStop": {"enabled": True, "badCaseThreshold": 1.5},
        }

        result = GraphValidator().validate(graph, "PUBLISH")

        wf306 = [i.message for i in result.issues if i.code == "WF306"]
        assert len(wf306) == 6
        assert any("sum to 1 or 100, got 80" in m for m in wf306)

    def test_experiment_config_needs_two_variants(self, graph):
        graph["experimentConfig"] = {
            "enabled": True,
            "experimentCode": "EXP",
            "variants": [{"version": "v1", "traffic": 1}],
        }

        result = GraphValidator().validate(graph, "PUBLISH")

        assert _codes(result) == ["WF306"]

    def test_valid_experiment_config_fractions(self, graph):
        graph["experimentConfig"] = {
            "enabled": True,
            "experimentCode": "EXP",
            "variants": [{"version": "v1", "traffic": 0.3}, {"version": "v2", "traffic": 0.7}],
            "splitPolicy": "USER_HASH",
            "autoStop": {"enabled": True, "badCaseThreshold": 0.2},
        }
        assert GraphValidator().validate(graph, "PUBLISH").valid

    def test_disabled_experiment_config_is_ignored(self, graph):
        graph["experimentConfig"] = {"enabled": False, "variants": []}
        assert GraphValidator().validate(graph, "PUBLISH").valid


def test_validation_does_not_mutate_graph(graph):
    graph["experimentConfig"] = {"enabled": True, "variants": []}
    before = copy.deepcopy(graph)

    validate_graph(graph, ValidationStage.PUBLISH)

    assert graph == before


def test_validation_is_deterministic(graph):
    _node(graph, "j1")["type"] = "decision-merge"
    graph["nodes"].append({"id": "lonely", "type": "notify", "name": "x"})

    first = validate_graph(graph, "PUBLISH").to_dict()
    second = validate_graph(graph, "PUBLISH").to_dict()

    assert first == second


def test_warnings_do_not_invalidate():
    from decisionflow.service.graph_validator import ValidationIssue, ValidationResult

    issues = [ValidationIssue(code="WF900", severity=Severity.WARN, message="advisory")]
    result = ValidationResult(valid=all(i.severity != Severity.ERROR for i in issues), issues=issues)

    assert result.valid
    assert result.errors == []


def test_ensure_valid_raises_with_issues(graph):
    graph.pop("ownerUserId")

    with pytest.raises(WorkflowValidationError) as excinfo:
        ensure_valid(graph, ValidationStage.PUBLISH)

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["stage"] == "PUBLISH"
    assert [i["code"] for i in excinfo.value.detail["issues"]] == ["WF304"]


def test_effective_runtime_policy_precedence():
    node = {
        "runtimePolicy": {"timeoutMs": 100},
        "config": {"timeoutMs": 200, "retryCount": 3},
    }
    policy = effective_runtime_policy(node, {"retryCount": 9, "onError": "SKIP"})
    assert policy == {"timeoutMs": 100, "retryCount": 3, "onError": "SKIP"}


def test_field_type_maps_and_lookup():
    types = extract_field_type_map({"fields": {"a": "float", "b": {"type": "Object"}, "c": 3}})
    assert types == {"a": "number", "b": "object"}
    assert resolve_field_type(types, "b.inner[2]") == "object"
    assert resolve_field_type(types, "missing") is None
    assert extract_field_type_map({"x": "string", "y": "uuid"}) == {"x": "string", "y": "unknown"}
