from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol

from decisionflow.logging import bind_execution_id, get_logger, sanitize_error_message
from decisionflow.service.graph_validator import is_trigger_type

logger = get_logger(__name__)


class NodeStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class NodeExecutionContext:
    execution_id: str
    node: Mapping[str, Any]
    input: Dict[str, Any] = field(default_factory=dict)
    param_snapshot: Dict[str, Any] = field(default_factory=dict)
    trigger_user_id: Optional[str] = None

    @property
    def node_id(self) -> Optional[str]:
        return self.node.get("id")

    @property
    def node_type(self) -> str:
        return str(self.node.get("type") or "")

    @property
    def config(self) -> Dict[str, Any]:
        config = self.node.get("config")
        return dict(config) if isinstance(config, Mapping) else {}


@dataclass
class NodeExecutionResult:
    status: NodeStatus
    output: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == NodeStatus.SUCCESS

    @classmethod
    def success(cls, output: Dict[str, Any], message: Optional[str] = None) -> "NodeExecutionResult":
        return cls(status=NodeStatus.SUCCESS, output=output, message=message)

    @classmethod
    def failed(cls, message: str, output: Optional[Dict[str, Any]] = None) -> "NodeExecutionResult":
        return cls(status=NodeStatus.FAILED, output=output or {}, message=message)

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status.value, "output": self.output, "message": self.message}


class NodeExecutor(Protocol):
    name: str

    def supports(self, node: Mapping[str, Any]) -> bool: ...

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult: ...


class TriggerExecutor:
    """Entry nodes: pass the trigger payload through with trigger metadata."""

    name = "trigger"

    def supports(self, node: Mapping[str, Any]) -> bool:
        return is_trigger_type(node.get("type"))

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        output = dict(context.input)
        output["triggerType"] = context.node_type
        output["triggeredBy"] = context.trigger_user_id
        output["triggeredAt"] = datetime.now(timezone.utc).isoformat()
        return NodeExecutionResult.success(output)


class PassthroughExecutor:
    name = "passthrough"

    def supports(self, node: Mapping[str, Any]) -> bool:
        return True

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        return NodeExecutionResult.success(
            dict(context.input), message=f"no executor for {context.node_type}; input passed through"
        )


class NodeExecutorRegistry:
    """Ordered strategy list for node execution.

    ``resolve`` returns the first registered executor whose ``supports``
    accepts the node, so more specific executors must be registered first.
    Unmatched nodes go to the fallback. ``dispatch`` never raises for
    executor failures; an unexpected exception becomes a FAILED result.
    """

    def __init__(
        self,
        executors: Iterable[NodeExecutor] = (),
        fallback: Optional[NodeExecutor] = None,
    ) -> None:
        self._executors: List[NodeExecutor] = list(executors)
        self.fallback: NodeExecutor = fallback or PassthroughExecutor()

    def register(self, executor: NodeExecutor) -> None:
        self._executors.append(executor)

    def executor_names(self) -> List[str]:
        return [executor.name for executor in self._executors]

    def resolve(self, node: Mapping[str, Any]) -> NodeExecutor:
        for executor in self._executors:
            if executor.supports(node):
                return executor
        return self.fallback

    async def dispatch(self, context: NodeExecutionContext) -> NodeExecutionResult:
        bind_execution_id(context.execution_id)
        executor = self.resolve(context.node)
        logger.info(
            "node_dispatch",
            node_id=context.node_id,
            node_type=context.node_type,
            executor=executor.name,
        )
        try:
            return await executor.execute(context)
        except Exception as exc:
            logger.error(
                "node_executor_crashed",
                node_id=context.node_id,
                executor=executor.name,
                error=str(exc),
                exc_info=True,
            )
            return NodeExecutionResult.failed(
                f"{executor.name} executor error: {sanitize_error_message(exc)}"
            )


RISK_LEVELS = ("LOW", "MEDIUM", "HIGH", "EXTREME")
DEGRADE_ACTIONS = frozenset({"HOLD", "REDUCE", "REVIEW_ONLY"})
RISK_THRESHOLD_PARAM_CODES = (
    "SIGNAL_BLOCK_RISK_GTE",
    "RISK_GATE_BLOCK_WHEN_GTE",
    "RISK_BLOCK_LEVEL",
    "risk.blockWhenGte",
)
_SNAPSHOT_CONTAINERS = ("params", "parameters", "values", "resolvedParams")
_PATH_INDEX_RE = re.compile(r"\[(\d+)\]")


def read_path(value: Any, path: str) -> Any:
    """Follow a dotted path (``a.b[0].c``) through dicts and lists; None when absent."""
    segments = [s.strip() for s in _PATH_INDEX_RE.sub(r".\1", path or "").split(".")]
    current = value
    for segment in filter(None, segments):
        if isinstance(current, Mapping):
            current = current.get(segment)
        elif isinstance(current, (list, tuple)):
            if not segment.isdigit() or int(segment) >= len(current):
                return None
            current = current[int(segment)]
        else:
            return None
    return current


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            parsed = float(value)
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _risk_level_from_number(value: float) -> str:
    rank = min(max(math.floor(value + 0.5), 1), len(RISK_LEVELS))
    return RISK_LEVELS[rank - 1]


def parse_risk_level(value: Any) -> Optional[str]:
    """Normalize ``LOW``/``l``/``3``/``"2"`` style values to a risk level name."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _risk_level_from_number(value) if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    normalized = value.strip().upper()
    if normalized in RISK_LEVELS:
        return normalized
    for level in RISK_LEVELS:
        if normalized == level[0]:
            return level
    number = _as_number(normalized)
    return _risk_level_from_number(number) if number is not None else None


def has_blocking_signal(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return math.isfinite(value) and value > 0
    if isinstance(value, str):
        return value.strip().lower() not in {"", "false", "0", "none"}
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return True


class RiskGateExecutor:
    """Block or degrade a decision when its risk reaches the configured threshold.

    The input risk level comes from ``riskLevel``, ``risk.level`` or a score
    (``hitScore``/``confidence``/``score``, 0-100, higher is safer). The
    threshold comes from ``config.blockWhenRiskGte``, then from the parameter
    snapshot, then defaults to HIGH. ``config.blockerRules`` lists input paths
    whose truthy values block regardless of level. A blocked gate fails the
    node only when ``config.hardBlock`` is true; otherwise the output carries
    the block reason and ``degradeAction``.
    """

    name = "risk-gate"

    def supports(self, node: Mapping[str, Any]) -> bool:
        return node.get("type") == "risk-gate"

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        config = context.config
        profile_code = config.get("riskProfileCode")
        profile_code = profile_code.strip() if isinstance(profile_code, str) else ""
        if not profile_code:
            return NodeExecutionResult.failed(
                f"risk-gate node {context.node_id} requires config.riskProfileCode"
            )

        risk_level = self._input_risk_level(context.input)
        threshold = self._threshold(config, context.param_snapshot)
        rules = config.get("blockerRules")
        blocker_rules = [
            rule.strip() for rule in (rules if isinstance(rules, list) else [])
            if isinstance(rule, str) and rule.strip()
        ]
        blocker_hits = [
            rule for rule in blocker_rules if has_blocking_signal(read_path(context.input, rule))
        ]
        degrade_action = str(config.get("degradeAction") or "").strip().upper()
        if degrade_action not in DEGRADE_ACTIONS:
            degrade_action = "HOLD"
        hard_block = config.get("hardBlock") is True

        by_level = RISK_LEVELS.index(risk_level) >= RISK_LEVELS.index(threshold)
        blocked = by_level or bool(blocker_hits)
        reasons = []
        if by_level:
            reasons.append(f"riskLevel={risk_level} reached block threshold {threshold}")
        if blocker_hits:
            reasons.append(f"blocker rules hit: {', '.join(blocker_hits)}")
        block_reason = "; ".join(reasons) or None

        output = dict(context.input)
        output.update(
            {
                "riskLevel": risk_level,
                "riskGatePassed": not blocked,
                "riskGateBlocked": blocked,
                "blockers": blocker_hits,
                "blockReason": block_reason,
                "degradeAction": degrade_action if blocked else None,
                "riskProfileCode": profile_code,
                "threshold": threshold,
                "blockedByRiskLevel": by_level,
                "hardBlock": hard_block,
                "riskGateNodeId": context.node_id,
                "riskEvaluatedAt": datetime.now(timezone.utc).isoformat(),
            }
        )
        logger.info(
            "risk_gate_evaluated",
            node_id=context.node_id,
            risk_level=risk_level,
            threshold=threshold,
            blocked=blocked,
            hard_block=hard_block,
        )
        if blocked and hard_block:
            return NodeExecutionResult.failed(f"risk gate blocked: {block_reason}", output)
        return NodeExecutionResult.success(output, message=block_reason)

    @staticmethod
    def _input_risk_level(node_input: Mapping[str, Any]) -> str:
        level = parse_risk_level(node_input.get("riskLevel"))
        if level is None:
            level = parse_risk_level(read_path(node_input, "risk.level"))
        if level is not None:
            return level
        score = None
        for key in ("hitScore", "confidence", "score"):
            score = _as_number(node_input.get(key))
            if score is not None:
                break
        if score is None:
            return "MEDIUM"
        if score >= 80:
            return "LOW"
        if score >= 60:
            return "MEDIUM"
        if score >= 40:
            return "HIGH"
        return "EXTREME"

    @staticmethod
    def _threshold(config: Mapping[str, Any], snapshot: Mapping[str, Any]) -> str:
        configured = parse_risk_level(config.get("blockWhenRiskGte"))
        if configured is not None:
            return configured

        keys: List[str] = []
        for name in ("thresholdParamCode", "thresholdParamPath"):
            value = config.get(name)
            if isinstance(value, str) and value.strip():
                keys.append(value.strip())
        keys.extend(code for code in RISK_THRESHOLD_PARAM_CODES if code not in keys)

        snapshot = snapshot or {}
        containers: List[Mapping[str, Any]] = [snapshot]
        for name in _SNAPSHOT_CONTAINERS:
            if isinstance(snapshot.get(name), Mapping):
                containers.append(snapshot[name])
        for key in keys:
            for container in containers:
                raw = container.get(key)
                if raw is None and "." in key:
                    raw = read_path(container, key)
                if isinstance(raw, Mapping):
                    raw = next(
                        (raw[k] for k in ("value", "currentValue", "effectiveValue") if k in raw),
                        raw,
                    )
                level = parse_risk_level(raw)
                if level is not None:
                    return level
        return "HIGH"


def evaluate_condition(actual: Any, operator: str, expected: Any) -> bool:
    def numeric(value: Any) -> bool:
        return isinstance(value, (int, float)) and not isinstance(value, bool)

    if operator == "eq":
        return actual == expected
    if operator == "neq":
        return actual != expected
    if operator in ("gt", "gte", "lt", "lte"):
        if not (numeric(actual) and numeric(expected)):
            return False
        return {
            "gt": actual > expected,
            "gte": actual >= expected,
            "lt": actual < expected,
            "lte": actual <= expected,
        }[operator]
    if operator == "in":
        return isinstance(expected, (list, tuple)) and actual in expected
    if operator == "not_in":
        return isinstance(expected, (list, tuple)) and actual not in expected
    if operator == "contains":
        return isinstance(actual, str) and isinstance(expected, str) and expected in actual
    if operator == "exists":
        return actual is not None
    if operator == "not_exists":
        return actual is None
    if operator == "truthy":
        return bool(actual)
    if operator == "falsy":
        return not actual
    return False


def _loosely_equal(left: Any, right: Any) -> bool:
    if left == right:
        return True
    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None and not (
        isinstance(left, bool) or isinstance(right, bool)
    ):
        return left_number == right_number
    return str(left) == str(right)


class ConditionBranchExecutor:
    """Pick the outgoing branch of ``if-else`` and ``switch`` nodes.

    ``if-else`` walks ``config.conditions`` (``field``/``operator``/``value``/
    ``branchId``) and selects the first match, else ``config.defaultBranch``
    (``"false"``). ``switch`` compares ``config.switchField`` against
    ``config.cases`` and falls back to ``config.defaultBranch`` (``"default"``).
    """

    name = "condition-branch"

    def supports(self, node: Mapping[str, Any]) -> bool:
        return node.get("type") in ("if-else", "switch")

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        if context.node_type == "switch":
            return self._switch(context)
        return self._if_else(context)

    def _if_else(self, context: NodeExecutionContext) -> NodeExecutionResult:
        config = context.config
        default_branch = config.get("defaultBranch") or "false"
        conditions = config.get("conditions")
        if not isinstance(conditions, list) or not conditions:
            logger.warning("if_else_without_conditions", node_id=context.node_id)
            return NodeExecutionResult.success(
                {
                    "selectedBranch": default_branch,
                    "evaluationResult": False,
                    "reason": "no conditions configured",
                }
            )

        for condition in conditions:
            if not isinstance(condition, Mapping):
                continue
            actual = read_path(context.input, str(condition.get("field") or ""))
            if evaluate_condition(actual, str(condition.get("operator") or ""), condition.get("value")):
                return NodeExecutionResult.success(
                    {
                        "selectedBranch": condition.get("branchId"),
                        "evaluationResult": True,
                        "matchedCondition": {
                            "field": condition.get("field"),
                            "operator": condition.get("operator"),
                            "expectedValue": condition.get("value"),
                            "actualValue": actual,
                        },
                    }
                )
        return NodeExecutionResult.success(
            {
                "selectedBranch": default_branch,
                "evaluationResult": False,
                "reason": "no condition matched",
            }
        )

    def _switch(self, context: NodeExecutionContext) -> NodeExecutionResult:
        config = context.config
        switch_field = config.get("switchField")
        if not isinstance(switch_field, str) or not switch_field:
            return NodeExecutionResult.failed(
                f"switch node {context.node_id} requires config.switchField"
            )
        default_branch = config.get("defaultBranch") or "default"
        switch_value = read_path(context.input, switch_field)
        cases = config.get("cases")
        for case in cases if isinstance(cases, list) else []:
            if isinstance(case, Mapping) and _loosely_equal(switch_value, case.get("value")):
                return NodeExecutionResult.success(
                    {
                        "selectedBranch": case.get("branchId"),
                        "switchField": switch_field,
                        "switchValue": switch_value,
                        "matchedCase": case.get("value"),
                    }
                )
        return NodeExecutionResult.success(
            {
                "selectedBranch": default_branch,
                "switchField": switch_field,
                "switchValue": switch_value,
                "reason": "no case matched",
            }
        )


def build_registry(agent_executor: Optional[NodeExecutor] = None) -> NodeExecutorRegistry:
    registry = NodeExecutorRegistry([TriggerExecutor(), RiskGateExecutor(), ConditionBranchExecutor()])
    if agent_executor is not None:
        registry.register(agent_executor)
    return registry
