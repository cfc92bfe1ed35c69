from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from jsonschema import Draft202012Validator

from decisionflow.logging import get_logger
from decisionflow.service.errors import WorkflowValidationError
from decisionflow.service.expressions import (
    collect_string_leaves,
    extract_param_codes,
    extract_references,
    flatten_leaf_entries,
)

logger = get_logger(__name__)


class ValidationStage(str, Enum):
    SAVE = "SAVE"
    PUBLISH = "PUBLISH"


class Severity(str, Enum):
    ERROR = "ERROR"
    WARN = "WARN"
    INFO = "INFO"


@dataclass(frozen=True)
class ValidationIssue:
    code: str
    severity: Severity
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
        }
        if self.node_id is not None:
            payload["nodeId"] = self.node_id
        if self.edge_id is not None:
            payload["edgeId"] = self.edge_id
        return payload


@dataclass
class ValidationResult:
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [issue for issue in self.issues if issue.severity == Severity.ERROR]

    def codes(self) -> List[str]:
        return [issue.code for issue in self.issues]

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "issues": [i.to_dict() for i in self.issues]}


WORKFLOW_MODES = ("LINEAR", "DAG", "DEBATE")
OUTPUT_NODE_TYPES = frozenset({"notify", "report-generate", "dashboard-publish"})
DEBATE_REQUIRED_TYPES = ("context-builder", "debate-round", "judge-agent")
RUNTIME_POLICY_FIELDS = ("timeoutMs", "retryCount", "retryBackoffMs", "onError")
RULE_EVIDENCE_TYPES = frozenset({"rule-pack-eval", "rule-eval", "alert-check"})
MODEL_EVIDENCE_TYPES = frozenset(
    {"single-agent", "agent-call", "agent-group", "judge-agent", "debate-round"}
)
SPLIT_POLICIES = frozenset({"RANDOM", "HASH", "USER_HASH"})
# scopes that are not node ids
RESERVED_REFERENCE_SCOPES = frozenset({"params", "meta"})
FIELD_TYPES = frozenset({"string", "number", "boolean", "object", "array", "null", "unknown"})

_GRAPH_HEADER_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["workflowId", "name", "mode", "nodes", "edges"],
    "properties": {
        "workflowId": {"type": "string", "minLength": 1},
        "name": {"type": "string", "minLength": 1},
        "mode": {"enum": list(WORKFLOW_MODES)},
        "nodes": {"type": "array"},
        "edges": {"type": "array"},
    },
}

_INDEX_SEGMENT_RE = re.compile(r"\[(\d+)\]")


def is_trigger_type(node_type: Any) -> bool:
    return isinstance(node_type, str) and (
        node_type == "trigger" or node_type.endswith("-trigger")
    )


def _as_mapping(value: Any) -> Optional[Mapping[str, Any]]:
    return value if isinstance(value, Mapping) else None


def _is_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def effective_runtime_policy(
    node: Mapping[str, Any], node_defaults: Optional[Mapping[str, Any]] = None
) -> Dict[str, Any]:
    """Per-field runtime policy: node runtimePolicy, then node config, then run defaults."""
    layers = [
        _as_mapping(node.get("runtimePolicy")) or {},
        _as_mapping(node.get("config")) or {},
        _as_mapping(node_defaults) or {},
    ]
    policy: Dict[str, Any] = {}
    for name in RUNTIME_POLICY_FIELDS:
        for layer in layers:
            if layer.get(name) is not None:
                policy[name] = layer[name]
                break
    return policy


# -- field typing -----------------------------------------------------------


def normalize_field_type(raw: str) -> str:
    token = raw.strip().lower()
    if token in ("int", "float", "double"):
        return "number"
    return token if token in FIELD_TYPES else "unknown"


def _type_token(value: Any) -> Optional[str]:
    if isinstance(value, str):
        return normalize_field_type(value)
    record = _as_mapping(value)
    if record is not None and isinstance(record.get("type"), str):
        return normalize_field_type(record["type"])
    return None


def extract_field_type_map(schema: Any) -> Dict[str, str]:
    """Field -> type map from a ``properties``, ``fields`` or flat declaration."""
    record = _as_mapping(schema)
    if record is None:
        return {}
    source = _as_mapping(record.get("properties"))
    if source is None:
        source = _as_mapping(record.get("fields"))
    if source is None:
        source = record
    types: Dict[str, str] = {}
    for key, value in source.items():
        token = _type_token(value)
        if token:
            types[str(key)] = token
    return types


def _first_type_map(candidates: Iterable[Any]) -> Dict[str, str]:
    for candidate in candidates:
        types = extract_field_type_map(candidate)
        if types:
            return types
    return {}


def node_output_types(node: Mapping[str, Any]) -> Dict[str, str]:
    config = _as_mapping(node.get("config")) or {}
    return _first_type_map(
        [
            node.get("outputSchema"),
            config.get("outputSchema"),
            config.get("outputSchemaDef"),
            config.get("outputFields"),
        ]
    )


def node_input_types(node: Mapping[str, Any]) -> Dict[str, str]:
    config = _as_mapping(node.get("config")) or {}
    return _first_type_map(
        [config.get("inputSchema"), config.get("expectedInputSchema"), config.get("inputFields")]
    )


def resolve_field_type(types: Mapping[str, str], path: str) -> Optional[str]:
    """Type of ``path``: exact key, bracket-normalised key, then trimmed prefixes."""
    if path in types:
        return types[path]
    normalized = _INDEX_SEGMENT_RE.sub(r".\1", path)
    if normalized in types:
        return types[normalized]
    segments = normalized.split(".")
    while len(segments) > 1:
        segments.pop()
        candidate = ".".join(segments)
        if candidate in types:
            return types[candidate]
    return None


def types_compatible(source: str, target: str) -> bool:
    if source == "unknown" or target == "unknown":
        return True
    return source == target


# -- validator ----------------------------------------------------------------


class GraphValidator:
    """Structural, semantic and data-flow checks over a workflow graph snapshot.

    ``validate`` is pure: it never mutates the graph and returns every issue
    it finds in a fixed check order. SAVE runs the structural, mode and
    data-flow checks; PUBLISH additionally runs the release checks.
    """

    def __init__(self) -> None:
        self._header_validator = Draft202012Validator(_GRAPH_HEADER_SCHEMA)

    def validate(
        self,
        dsl: Mapping[str, Any],
        stage: ValidationStage | str = ValidationStage.SAVE,
    ) -> ValidationResult:
        stage = ValidationStage(stage)
        issues: List[ValidationIssue] = []

        if not self._check_header(dsl, issues):
            return ValidationResult(valid=False, issues=issues)

        nodes = [n for n in dsl["nodes"] if isinstance(n, Mapping)]
        edges = [e for e in dsl["edges"] if isinstance(e, Mapping)]
        graph = _GraphIndex(nodes, edges)

        self._check_uniqueness(graph, issues)
        self._check_edge_references(graph, issues)
        self._check_orphans(graph, issues)
        self._check_linear_mode(dsl, graph, issues)
        self._check_debate_mode(dsl, graph, issues)
        self._check_dag_mode(dsl, graph, issues)
        self._check_approval_outputs(graph, issues)
        self._check_join_quorum(graph, issues)
        self._check_data_edge_types(graph, issues)
        self._check_reference_integrity(graph, issues)
        self._check_parameter_bindings(dsl, graph, issues)
        self._check_decision_merge_fan_in(graph, issues)
        self._check_condition_edges(graph, issues)

        if stage == ValidationStage.PUBLISH:
            self._check_risk_gate(graph, issues)
            self._check_runtime_policy(dsl, graph, issues)
            self._check_owner(dsl, issues)
            self._check_evidence(graph, issues)
            self._check_experiment_config(dsl, issues)

        result = ValidationResult(
            valid=all(issue.severity != Severity.ERROR for issue in issues),
            issues=issues,
        )
        logger.debug(
            "graph_validated",
            workflow_id=dsl.get("workflowId"),
            stage=stage.value,
            valid=result.valid,
            issue_codes=result.codes(),
        )
        return result

    # -- structure ----------------------------------------------------------

    def _check_header(self, dsl: Any, issues: List[ValidationIssue]) -> bool:
        if not isinstance(dsl, Mapping):
            issues.append(_error("WF001", "workflow DSL must be an object"))
            return False
        problems = sorted(
            self._header_validator.iter_errors(dict(dsl)), key=lambda e: list(e.path)
        )
        if not problems:
            return True
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.path) or '$'}: {err.message}" for err in problems
        )
        issues.append(
            _error(
                "WF001",
                f"workflowId, name, mode, nodes and edges are required ({details})",
            )
        )
        return False

    def _check_uniqueness(self, graph: "_GraphIndex", issues: List[ValidationIssue]) -> None:
        seen: Set[Any] = set()
        for node in graph.nodes:
            node_id = node.get("id")
            if node_id in seen:
                issues.append(_error("WF002", f"duplicate node id {node_id}", node_id=node_id))
            seen.add(node_id)
        seen = set()
        for edge in graph.edges:
            edge_id = edge.get("id")
            if edge_id in seen:
                issues.append(_error("WF002", f"duplicate edge id {edge_id}", edge_id=edge_id))
            seen.add(edge_id)

    def _check_edge_references(self, graph: "_GraphIndex", issues: List[ValidationIssue]) -> None:
        for edge in graph.edges:
            source, target = edge.get("from"), edge.get("to")
            if source not in graph.by_id or target not in graph.by_id:
                issues.append(
                    _error(
                        "WF003",
                        f"edge {edge.get('id')} references a missing node ({source} -> {target})",
                        edge_id=edge.get("id"),
                    )
                )

    def _check_orphans(self, graph: "_GraphIndex", issues: List[ValidationIssue]) -> None:
        for node in graph.nodes:
            node_id = node.get("id")
            if graph.in_degree(node_id) or graph.out_degree(node_id):
                continue
            if is_trigger_type(node.get("type")):
                continue
            issues.append(
                _error("WF004", f"node {node_id} is not connected to any edge", node_id=node_id)
            )

    def _check_linear_mode(
        self, dsl: Mapping[str, Any], graph: "_GraphIndex", issues: List[ValidationIssue]
    ) -> None:
        if dsl.get("mode") != "LINEAR":
            return
        for node in graph.nodes:
            node_id = node.get("id")
            fan_in, fan_out = graph.in_degree(node_id), graph.out_degree(node_id)
            if fan_in > 1 or fan_out > 1:
                issues.append(
                    _error(
                        "WF005",
                        f"LINEAR workflow node {node_id} has in-degree {fan_in} "
                        f"and out-degree {fan_out}; at most 1 each is allowed",
                        node_id=node_id,
                    )
                )

    def _check_debate_mode(
        self, dsl: Mapping[str, Any], graph: "_GraphIndex", issues: List[ValidationIssue]
    ) -> None:
        if dsl.get("mode") != "DEBATE":
            return
        missing = [t for t in DEBATE_REQUIRED_TYPES if t not in graph.types]
        if missing:
            issues.append(
                _error("WF101", f"DEBATE workflow is missing node types: {', '.join(missing)}")
            )

    def _check_dag_mode(
        self, dsl: Mapping[str, Any], graph: "_GraphIndex", issues: List[ValidationIssue]
    ) -> None:
        if dsl.get("mode") == "DAG" and "join" not in graph.types:
            issues.append(_error("WF102", "DAG workflow requires at least one join node"))

    def _check_approval_outputs(self, graph: "_GraphIndex", issues: List[ValidationIssue]) -> None:
        for node in graph.nodes:
            if node.get("type") != "approval":
                continue
            for edge in graph.outgoing(node.get("id")):
                target = graph.by_id.get(edge.get("to"))
                if target is None:
                    continue
                if target.get("type") not in OUTPUT_NODE_TYPES:
                    issues.append(
                        _error(
                            "WF103",
                            f"approval node {node.get('id')} may only lead to "
                            f"{', '.join(sorted(OUTPUT_NODE_TYPES))}, "
                            f"not {target.get('type')}",
                            node_id=node.get("id"),
                            edge_id=edge.get("id"),
                        )
                    )

    def _check_join_quorum(self, graph: "_GraphIndex", issues: List[ValidationIssue]) -> None:
        for node in graph.nodes:
            if node.get("type") != "join":
                continue
            config = _as_mapping(node.get("config")) or {}
            if config.get("joinPolicy") != "QUORUM":
                continue
            quorum = config.get("quorumBranches")
            if isinstance(quorum, bool) or not isinstance(quorum, int) or quorum < 2:
                issues.append(
                    _error(
                        "WF105",
                        f"join node {node.get('id')} with QUORUM policy needs "
                        f"quorumBranches >= 2 (got {quorum!r})",
                        node_id=node.get("id"),
                    )
                )

    # -- data flow ----------------------------------------------------------

    def _check_data_edge_types(self, graph: "_GraphIndex", issues: List[ValidationIssue]) -> None:
        for edge in graph.edges:
            if edge.get("edgeType") != "data-edge":
                continue
            source = graph.by_id.get(edge.get("from"))
            target = graph.by_id.get(edge.get("to"))
            if source is None or target is None:
                continue
            source_types = node_output_types(source)
            target_types = node_input_types(target)
            if not source_types or not target_types:
                continue
            pairs = _binding_pairs(target.get("inputBindings"), source.get("id"))
            if not pairs:
                pairs = [(name, name) for name in target_types if name in source_types]
            for source_path, target_path in pairs:
                source_type = resolve_field_type(source_types, source_path)
                target_type = resolve_field_type(target_types, target_path)
                if source_type is None or target_type is None:
                    continue
                if not types_compatible(source_type, target_type):
                    issues.append(
                        _error(
                            "WF201",
                            f"data-edge {edge.get('id')} field type mismatch: "
                            f"{source.get('id')}.{source_path}({source_type}) -> "
                            f"{target.get('id')}.{target_path}({target_type})",
                            edge_id=edge.get("id"),
                        )
                    )

    def _check_reference_integrity(self, graph: "_GraphIndex", issues: List[ValidationIssue]) -> None:
        reported: Set[Tuple[Optional[str], Optional[str], str]] = set()

        def check(text: str, *, node_id: Optional[str] = None, edge_id: Optional[str] = None) -> None:
            for ref in extract_references(text):
                scope, path = ref.scope, ref.path
                if scope in RESERVED_REFERENCE_SCOPES:
                    continue
                key = (node_id, edge_id, ref.raw)
                if key in reported:
                    continue
                referenced = graph.by_id.get(scope)
                where = f"node {node_id}" if node_id is not None else f"edge {edge_id}"
                if referenced is None:
                    reported.add(key)
                    issues.append(
                        _error(
                            "WF202",
                            f"{where} references unknown node {scope} in {ref.raw}",
                            node_id=node_id,
                            edge_id=edge_id,
                        )
                    )
                    continue
                output_types = node_output_types(referenced)
                if output_types and resolve_field_type(output_types, path) is None:
                    reported.add(key)
                    issues.append(
                        _error(
                            "WF202",
                            f"{where} references field {path} not declared "
                            f"in outputs of node {scope}",
                            node_id=node_id,
                            edge_id=edge_id,
                        )
                    )

        for node in graph.nodes:
            node_id = node.get("id")
            for text in collect_string_leaves(node.get("config")):
                check(text, node_id=node_id)
            for text in collect_string_leaves(node.get("inputBindings")):
                check(text, node_id=node_id)
        for edge in graph.edges:
            for text in collect_string_leaves(edge.get("condition")):
                check(text, edge_id=edge.get("id"))

    def _check_parameter_bindings(
        self, dsl: Mapping[str, Any], graph: "_GraphIndex", issues: List[ValidationIssue]
    ) -> None:
        codes: Set[str] = set()
        for node in graph.nodes:
            for text in collect_string_leaves(node.get("config")):
                codes |= extract_param_codes(text)
            for text in collect_string_leaves(node.get("inputBindings")):
                codes |= extract_param_codes(text)
        for edge in graph.edges:
            for text in collect_string_leaves(edge.get("condition")):
                codes |= extract_param_codes(text)
        if not codes:
            return
        if read_binding_codes(dsl.get("paramSetBindings")):
            return
        issues.append(
            _error(
                "WF203",
                "graph references parameters "
                f"({', '.join(sorted(codes))}) but declares no paramSetBindings",
            )
        )

    def _check_decision_merge_fan_in(self, graph: "_GraphIndex", issues: List[ValidationIssue]) -> None:
        for node in graph.nodes:
            if node.get("type") != "decision-merge":
                continue
            fan_in = graph.in_degree(node.get("id"))
            if fan_in < 2:
                issues.append(
                    _error(
                        "WF204",
                        f"decision-merge node {node.get('id')} needs at least 2 "
                        f"incoming edges (got {fan_in})",
                        node_id=node.get("id"),
                    )
                )

    def _check_condition_edges(self, graph: "_GraphIndex", issues: List[ValidationIssue]) -> None:
        for edge in graph.edges:
            if edge.get("edgeType") != "condition-edge":
                continue
            edge_id = edge.get("id")
            condition = edge.get("condition")
            problem: Optional[str] = None
            if condition is None:
                problem = "is missing a condition"
            elif isinstance(condition, bool):
                pass
            elif isinstance(condition, str):
                if not condition.strip():
                    problem = "has an empty condition"
            elif isinstance(condition, Mapping):
                if not condition.get("field") or not condition.get("operator"):
                    problem = "condition object needs field and operator"
            else:
                problem = "condition must be a boolean, a string or an object"
            if problem:
                issues.append(
                    _error("WF205", f"condition-edge {edge_id} {problem}", edge_id=edge_id)
                )

    # -- publish ------------------------------------------------------------

    def _check_risk_gate(self, graph: "_GraphIndex", issues: List[ValidationIssue]) -> None:
        if "risk-gate" not in graph.types:
            issues.append(_error("WF104", "published workflows require a risk-gate node"))

    def _check_runtime_policy(
        self, dsl: Mapping[str, Any], graph: "_GraphIndex", issues: List[ValidationIssue]
    ) -> None:
        run_policy = _as_mapping(dsl.get("runPolicy")) or {}
        defaults = _as_mapping(run_policy.get("nodeDefaults")) or {}
        for node in graph.nodes:
            if node.get("enabled") is False or is_trigger_type(node.get("type")):
                continue
            policy = effective_runtime_policy(node, defaults)
            missing = [name for name in RUNTIME_POLICY_FIELDS if name not in policy]
            if missing:
                issues.append(
                    _error(
                        "WF106",
                        f"node {node.get('id')} has no runtime policy for: {', '.join(missing)}",
                        node_id=node.get("id"),
                    )
                )

    def _check_owner(self, dsl: Mapping[str, Any], issues: List[ValidationIssue]) -> None:
        owner = dsl.get("ownerUserId")
        if not isinstance(owner, str) or not owner.strip():
            issues.append(_error("WF304", "published workflows require ownerUserId"))

    def _check_evidence(self, graph: "_GraphIndex", issues: List[ValidationIssue]) -> None:
        if "risk-gate" not in graph.types:
            return
        has_data = any(
            t == "data-fetch" or t.endswith("-fetch") for t in graph.types
        )
        has_rule = bool(graph.types & RULE_EVIDENCE_TYPES)
        has_model = bool(graph.types & MODEL_EVIDENCE_TYPES)
        missing = [
            label
            for label, present in (("data", has_data), ("rule", has_rule), ("model", has_model))
            if not present
        ]
        if missing:
            issues.append(
                _error(
                    "WF305",
                    f"risk-gate needs data, rule and model evidence; missing: {', '.join(missing)}",
                )
            )

    def _check_experiment_config(self, dsl: Mapping[str, Any], issues: List[ValidationIssue]) -> None:
        config = _as_mapping(dsl.get("experimentConfig"))
        if config is None or config.get("enabled") is not True:
            return

        code = config.get("experimentCode")
        if not isinstance(code, str) or not code.strip():
            issues.append(_error("WF306", "enabled experimentConfig requires experimentCode"))

        variants = config.get("variants")
        variants = variants if isinstance(variants, list) else []
        if len(variants) < 2:
            issues.append(_error("WF306", "enabled experimentConfig requires at least 2 variants"))
            return

        total = 0.0
        for variant in variants:
            item = _as_mapping(variant)
            if item is None:
                issues.append(_error("WF306", "experimentConfig variants must be objects"))
                continue
            version = item.get("version")
            if not isinstance(version, str) or not version.strip():
                issues.append(
                    _error("WF306", "experimentConfig variant version must be a non-empty string")
                )
            traffic = item.get("traffic")
            if not _is_number(traffic) or traffic <= 0:
                issues.append(
                    _error("WF306", "experimentConfig variant traffic must be a positive number")
                )
                continue
            total += traffic

        if abs(total - 1) >= 1e-6 and abs(total - 100) >= 1e-6:
            issues.append(
                _error("WF306", f"experimentConfig variant traffic must sum to 1 or 100, got {total:g}")
            )

        split_policy = config.get("splitPolicy")
        if split_policy is not None and split_policy not in SPLIT_POLICIES:
            issues.append(
                _error("WF306", "experimentConfig splitPolicy must be RANDOM, HASH or USER_HASH")
            )

        auto_stop = _as_mapping(config.get("autoStop"))
        if auto_stop and auto_stop.get("enabled") is True:
            threshold = auto_stop.get("badCaseThreshold")
            if not _is_number(threshold) or not 0 <= threshold <= 1:
                issues.append(
                    _error(
                        "WF306",
                        "experimentConfig autoStop requires badCaseThreshold within [0, 1]",
                    )
                )


class _GraphIndex:
    """Adjacency view over the node and edge lists of one snapshot."""

    def __init__(self, nodes: Sequence[Mapping[str, Any]], edges: Sequence[Mapping[str, Any]]):
        self.nodes = list(nodes)
        self.edges = list(edges)
        self.by_id: Dict[Any, Mapping[str, Any]] = {}
        for node in self.nodes:
            self.by_id.setdefault(node.get("id"), node)
        self.types: Set[str] = {
            node.get("type") for node in self.nodes if isinstance(node.get("type"), str)
        }
        self._in: Dict[Any, int] = {}
        self._out: Dict[Any, List[Mapping[str, Any]]] = {}
        for edge in self.edges:
            self._in[edge.get("to")] = self._in.get(edge.get("to"), 0) + 1
            self._out.setdefault(edge.get("from"), []).append(edge)

    def in_degree(self, node_id: Any) -> int:
        return self._in.get(node_id, 0)

    def out_degree(self, node_id: Any) -> int:
        return len(self._out.get(node_id, []))

    def outgoing(self, node_id: Any) -> List[Mapping[str, Any]]:
        return self._out.get(node_id, [])


def _error(
    code: str, message: str, *, node_id: Optional[str] = None, edge_id: Optional[str] = None
) -> ValidationIssue:
    return ValidationIssue(
        code=code, severity=Severity.ERROR, message=message, node_id=node_id, edge_id=edge_id
    )


def _binding_pairs(input_bindings: Any, source_node_id: Any) -> List[Tuple[str, str]]:
    """(source field, target field) pairs bound from ``source_node_id``."""
    bindings = _as_mapping(input_bindings)
    if bindings is None:
        return []
    pairs: List[Tuple[str, str]] = []
    for target_path, leaf in flatten_leaf_entries(bindings):
        for text in collect_string_leaves(leaf):
            for ref in extract_references(text):
                if ref.scope == source_node_id and ref.path:
                    pairs.append((ref.path, target_path))
    return pairs


def read_binding_codes(value: Any) -> List[str]:
    """Non-empty, trimmed, de-duplicated parameter set codes."""
    if not isinstance(value, list):
        return []
    codes: List[str] = []
    for item in value:
        if isinstance(item, str) and item.strip() and item.strip() not in codes:
            codes.append(item.strip())
    return codes


_default_validator: Optional[GraphValidator] = None


def validate_graph(
    dsl: Mapping[str, Any], stage: ValidationStage | str = ValidationStage.SAVE
) -> ValidationResult:
    global _default_validator
    if _default_validator is None:
        _default_validator = GraphValidator()
    return _default_validator.validate(dsl, stage)


def ensure_valid(
    dsl: Mapping[str, Any],
    stage: ValidationStage | str = ValidationStage.SAVE,
    *,
    validator: Optional[GraphValidator] = None,
) -> ValidationResult:
    """Validate and raise ``WorkflowValidationError`` when any ERROR issue exists."""
    result = (validator or GraphValidator()).validate(dsl, stage)
    if not result.valid:
        stage_value = ValidationStage(stage).value
        raise WorkflowValidationError(
            f"workflow failed {stage_value} validation",
            result.errors,
            stage=stage_value,
        )
    return result
