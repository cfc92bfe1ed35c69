from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from decisionflow.service.errors import BadRequestError

_DRAFT = "https://json-schema.org/draft/2020-12/schema"

_AGENT_OUTPUT_SCHEMA: Dict[str, Any] = {
    "$schema": _DRAFT,
    "type": "object",
    "properties": {
        "thesis": {"type": "string"},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "evidence": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["thesis", "confidence", "evidence"],
}

_BUILTIN_SCHEMAS: List[Dict[str, Any]] = [
    {
        "code": "MARKET_ANALYSIS_V1",
        "name": "Market analysis",
        "description": "Thesis with confidence, supporting evidence and risk factors",
        "schema": {
            "$schema": _DRAFT,
            "type": "object",
            "properties": {
                "thesis": {"type": "string"},
                "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                "evidence": {"type": "array", "items": {"type": "string"}},
                "riskFactors": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["thesis", "confidence", "evidence"],
        },
    },
    {
        "code": "RISK_ASSESSMENT_V1",
        "name": "Risk assessment",
        "schema": {
            "$schema": _DRAFT,
            "type": "object",
            "properties": {
                "riskLevel": {"type": "string", "enum": ["LOW", "MEDIUM", "HIGH", "CRITICAL"]},
                "score": {"type": "number", "minimum": 0, "maximum": 100},
                "details": {"type": "string"},
                "mitigationPlan": {"type": "string"},
            },
            "required": ["riskLevel", "score", "mitigationPlan"],
        },
    },
    {
        "code": "TRADE_SUGGESTION_V1",
        "name": "Trade suggestion",
        "schema": {
            "$schema": _DRAFT,
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["BUY", "SELL", "HOLD"]},
                "targetPrice": {"type": "number"},
                "stopLoss": {"type": "number"},
                "reasoning": {"type": "string"},
            },
            "required": ["action", "reasoning"],
        },
    },
    {
        "code": "AGENT_OUTPUT_V1",
        "name": "Generic agent output",
        "schema": _AGENT_OUTPUT_SCHEMA,
    },
    # lowercase code kept for older node configs
    {
        "code": "agent_output_v1",
        "name": "Generic agent output (alias)",
        "schema": _AGENT_OUTPUT_SCHEMA,
    },
]


@dataclass
class OutputSchemaDefinition:
    code: str
    name: str
    schema: Dict[str, Any]
    description: Optional[str] = None
    validator: Draft202012Validator = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.validator = Draft202012Validator(self.schema)


@dataclass
class SchemaValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)


def _format_path(path) -> str:
    rendered = "$"
    for part in path:
        rendered += f"[{part}]" if isinstance(part, int) else f".{part}"
    return rendered


class OutputSchemaRegistry:
    """Named JSON schemas that structured agent outputs are checked against."""

    def __init__(self, *, include_builtins: bool = True) -> None:
        self._schemas: Dict[str, OutputSchemaDefinition] = {}
        if include_builtins:
            for definition in _BUILTIN_SCHEMAS:
                self.register(**definition)

    def register(
        self,
        code: str,
        name: str,
        schema: Dict[str, Any],
        description: Optional[str] = None,
    ) -> OutputSchemaDefinition:
        try:
            Draft202012Validator.check_schema(schema)
        except SchemaError as exc:
            raise BadRequestError(
                f"invalid output schema {code}", detail={"error": exc.message}
            ) from exc
        definition = OutputSchemaDefinition(
            code=code, name=name, schema=schema, description=description
        )
        self._schemas[code] = definition
        return definition

    def get_schema(self, code: str) -> Optional[OutputSchemaDefinition]:
        return self._schemas.get(code)

    def list_schemas(self) -> List[OutputSchemaDefinition]:
        return list(self._schemas.values())

    def validate_by_code(self, code: str, payload: Any) -> SchemaValidationResult:
        definition = self.get_schema(code)
        if definition is None:
            return SchemaValidationResult(valid=False, errors=[f"schema not registered: {code}"])
        problems = sorted(
            definition.validator.iter_errors(payload), key=lambda e: list(e.absolute_path)
        )
        return SchemaValidationResult(
            valid=not problems,
            errors=[f"{_format_path(err.absolute_path)}: {err.message}" for err in problems],
        )
