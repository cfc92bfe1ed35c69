from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ParameterSet:
    id: str
    set_code: str
    name: str
    owner_user_id: str
    template_source: str = "PRIVATE"
    description: Optional[str] = None
    is_active: bool = True
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class ParameterItem:
    id: str
    parameter_set_id: str
    param_code: str
    param_name: str
    param_type: str
    value: Any = None
    default_value: Any = None
    min_value: Any = None
    max_value: Any = None
    unit: Optional[str] = None
    scope_level: str = "GLOBAL"
    scope_value: Optional[str] = None
    source: Optional[str] = None
    change_reason: Optional[str] = None
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def effective_value(self) -> Any:
        if self.value is not None:
            return self.value
        return self.default_value

    def snapshot(self) -> Dict[str, Any]:
        """Audit representation used in change-log before/after images."""
        return {
            "paramCode": self.param_code,
            "paramName": self.param_name,
            "paramType": self.param_type,
            "value": self.value,
            "defaultValue": self.default_value,
            "minValue": self.min_value,
            "maxValue": self.max_value,
            "unit": self.unit,
            "scopeLevel": self.scope_level,
            "scopeValue": self.scope_value,
            "effectiveFrom": self.effective_from.isoformat() if self.effective_from else None,
            "effectiveTo": self.effective_to.isoformat() if self.effective_to else None,
            "isActive": self.is_active,
        }


@dataclass
class ParameterChangeLog:
    id: str
    parameter_set_id: str
    parameter_item_id: Optional[str]
    action: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    changed_by: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AgentProfile:
    agent_code: str
    agent_name: str
    role_type: str
    agent_prompt_code: str
    model_config_key: str
    owner_user_id: Optional[str] = None
    template_source: str = "PRIVATE"
    output_schema_code: Optional[str] = None
    guardrails: Dict[str, Any] = field(default_factory=dict)
    retry_policy: Dict[str, Any] = field(default_factory=dict)
    timeout_ms: Optional[int] = None
    strict_mode: Optional[bool] = None
    version: int = 1
    is_active: bool = True


@dataclass
class PromptTemplate:
    prompt_code: str
    system_prompt: str
    user_prompt_template: str
    output_format: str = "json"
    few_shot_examples: List[Dict[str, Any]] = field(default_factory=list)
    version: int = 1
    is_active: bool = True


@dataclass
class ModelConfig:
    config_key: str
    provider: str
    model_name: str
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env_var: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    is_active: bool = True
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class WorkflowVersion:
    id: str
    workflow_definition_id: str
    version_code: str
    dsl: Dict[str, Any]
    status: str = "DRAFT"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class VariantMetrics:
    total_executions: int = 0
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 0.0
    avg_duration_ms: float = 0.0
    p95_duration_ms: float = 0.0
    bad_case_rate: float = 0.0

    def record(self, success: bool, duration_ms: float) -> None:
        """Fold one run into the aggregate."""
        self.total_executions += 1
        if success:
            self.success_count += 1
        else:
            self.failure_count += 1
        n = self.total_executions
        self.success_rate = self.success_count / n
        self.bad_case_rate = self.failure_count / n
        self.avg_duration_ms = (self.avg_duration_ms * (n - 1) + duration_ms) / n
        # running max stands in for the 95th percentile
        self.p95_duration_ms = max(self.p95_duration_ms, duration_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalExecutions": self.total_executions,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "successRate": self.success_rate,
            "avgDurationMs": self.avg_duration_ms,
            "p95DurationMs": self.p95_duration_ms,
            "badCaseRate": self.bad_case_rate,
        }


@dataclass
class MetricsSnapshot:
    variant_a: VariantMetrics = field(default_factory=VariantMetrics)
    variant_b: VariantMetrics = field(default_factory=VariantMetrics)
    last_updated_at: Optional[datetime] = None

    def for_variant(self, variant: str) -> VariantMetrics:
        return self.variant_a if variant == "A" else self.variant_b

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variantA": self.variant_a.to_dict(),
            "variantB": self.variant_b.to_dict(),
            "lastUpdatedAt": self.last_updated_at.isoformat() if self.last_updated_at else None,
        }


@dataclass
class Experiment:
    id: str
    experiment_code: str
    name: str
    workflow_definition_id: str
    variant_a_version_id: str
    variant_b_version_id: str
    traffic_split_percent: float = 50
    max_executions: Optional[int] = None
    current_executions_a: int = 0
    current_executions_b: int = 0
    auto_stop_enabled: bool = True
    bad_case_threshold: float = 0.2
    status: str = "DRAFT"
    created_by_user_id: Optional[str] = None
    description: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    winner_variant: Optional[str] = None
    conclusion_summary: Optional[str] = None
    metrics_snapshot: MetricsSnapshot = field(default_factory=MetricsSnapshot)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def total_executions(self) -> int:
        return self.current_executions_a + self.current_executions_b


@dataclass
class ExperimentRun:
    id: str
    experiment_id: str
    variant: str
    success: bool
    duration_ms: float
    confidence: Optional[float] = None
    execution_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
