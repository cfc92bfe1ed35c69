from __future__ import annotations

import asyncio
import json
import math
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from decisionflow.config import Settings, get_settings
from decisionflow.logging import get_logger, sanitize_error_message
from decisionflow.service.executors import NodeExecutionContext, NodeExecutionResult
from decisionflow.service.expressions import render_template, stringify_variables
from decisionflow.service.graph_validator import effective_runtime_policy
from decisionflow.service.llm import (
    ModelRequestOptions,
    ProviderError,
    ProviderRegistry,
    resolve_api_key,
)
from decisionflow.service.output_schemas import OutputSchemaRegistry
from decisionflow.storage.config_cache import ConfigCache
from decisionflow.storage.models import AgentProfile, ModelConfig, PromptTemplate

logger = get_logger(__name__)

AGENT_NODE_TYPES = frozenset({"agent-call", "single-agent"})

# lowercase substrings providers use for rejected credentials
AUTH_ERROR_MARKERS = (
    "invalid api key",
    "incorrect api key",
    "api key not valid",
    "invalid_api_key",
    "api_key_invalid",
    "invalid x-api-key",
    "unauthorized",
    "authentication",
    "permission denied",
    "status 401",
    "returned 401",
    "returned 403",
)

_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", re.IGNORECASE)


def is_auth_error(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in AUTH_ERROR_MARKERS)


def _first_json_object(text: str) -> Optional[str]:
    """First balanced ``{...}`` span of ``text``, ignoring braces inside strings."""
    start = text.find("{")
    while start >= 0:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            ch = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def parse_model_output(raw: str, output_format: str) -> Dict[str, Any]:
    """Structured view of a raw model response; never raises."""
    if (output_format or "json").lower() != "json":
        return {"content": raw, "format": output_format}

    candidate = raw.strip()
    fenced = _FENCED_BLOCK_RE.search(raw)
    if fenced:
        candidate = fenced.group(1).strip()
    else:
        braced = _first_json_object(raw)
        if braced is not None:
            candidate = braced
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return {"rawText": raw, "parseError": True}
    if isinstance(parsed, dict):
        return parsed
    return {"result": parsed}


def _is_finite_number(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


def check_guardrails(parsed: Mapping[str, Any], guardrails: Optional[Mapping[str, Any]]) -> Tuple[bool, str]:
    if not guardrails:
        return True, ""
    problems: List[str] = []

    required = guardrails.get("requiredFields")
    if isinstance(required, list):
        missing = [name for name in required if parsed.get(name) is None]
        if missing:
            problems.append(f"missing required fields: {', '.join(map(str, missing))}")

    min_confidence = guardrails.get("minConfidence")
    confidence = parsed.get("confidence")
    if _is_finite_number(min_confidence) and _is_finite_number(confidence):
        if confidence < min_confidence:
            problems.append(f"confidence {confidence} below minimum {min_confidence}")

    forbidden = guardrails.get("forbiddenPatterns")
    if isinstance(forbidden, list) and forbidden:
        dumped = json.dumps(parsed, ensure_ascii=False, default=str)
        hits = [p for p in forbidden if isinstance(p, str) and p and p in dumped]
        if hits:
            problems.append(f"forbidden content: {', '.join(hits)}")

    return not problems, "; ".join(problems)


def check_base_fields(parsed: Mapping[str, Any]) -> Tuple[bool, str]:
    problems: List[str] = []
    thesis = parsed.get("thesis")
    if not isinstance(thesis, str) or not thesis.strip():
        problems.append("thesis must be a non-empty string")
    if not _is_finite_number(parsed.get("confidence")):
        problems.append("confidence must be a finite number")
    if not isinstance(parsed.get("evidence"), list):
        problems.append("evidence must be an array")
    return not problems, "; ".join(problems)


@dataclass
class _CallOutcome:
    response: Optional[str]
    error: Optional[str]
    retry_attempts: int


class AgentExecutor:
    """Executes ``agent-call``/``single-agent`` nodes against a model provider.

    The profile, prompt template and model config are looked up by code, the
    prompt is rendered from upstream input and parameters, and the provider is
    called with the node's timeout and the profile's retry policy. Provider
    auth failures degrade to a skipped SUCCESS unless strict mode is on. The
    parsed output must pass guardrails, the base field check and the
    configured output schema for the node to succeed.
    """

    name = "agent"

    def __init__(
        self,
        store,
        providers: ProviderRegistry,
        model_configs: ConfigCache[ModelConfig],
        schema_registry: Optional[OutputSchemaRegistry] = None,
        settings: Optional[Settings] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.providers = providers
        self.model_configs = model_configs
        self.schema_registry = schema_registry or OutputSchemaRegistry()
        self.settings = settings or get_settings()
        self._sleep = sleep

    def supports(self, node: Mapping[str, Any]) -> bool:
        return node.get("type") in AGENT_NODE_TYPES

    async def execute(self, context: NodeExecutionContext) -> NodeExecutionResult:
        config = context.config
        agent_code = self._resolve_agent_code(config)
        if agent_code is None:
            output = dict(context.input)
            output.update({"skipped": True, "skipReason": "agentCode-missing"})
            return NodeExecutionResult.success(output, message="agentCode not configured; node skipped")

        profile = self.store.get_agent_profile(agent_code, owner_user_id=context.trigger_user_id)
        if profile is None:
            return NodeExecutionResult.failed(f"agent profile not found or inactive: {agent_code}")
        template = self.store.get_prompt_template(profile.agent_prompt_code)
        if template is None:
            return NodeExecutionResult.failed(
                f"prompt template not found or inactive: {profile.agent_prompt_code}"
            )
        model_config = self.model_configs.get(profile.model_config_key)
        if model_config is None or not model_config.is_active:
            return NodeExecutionResult.failed(f"model config not found: {profile.model_config_key}")
        provider = self.providers.get(model_config.provider)
        if provider is None:
            return NodeExecutionResult.failed(
                f"model provider not available: {model_config.provider}"
            )

        variables = self._build_variables(context, profile, config)
        user_prompt = render_template(template.user_prompt_template, variables)
        few_shot = self._few_shot_block(template.few_shot_examples)
        if few_shot:
            user_prompt = f"{few_shot}\n\n{user_prompt}"

        timeout_ms = self._timeout_ms(context.node, profile)
        options = ModelRequestOptions(
            model_name=model_config.model_name,
            api_key=resolve_api_key(model_config, self.settings.model_provider_api_key),
            api_url=model_config.api_url,
            temperature=model_config.temperature,
            max_tokens=model_config.max_tokens,
            top_p=model_config.top_p,
            timeout_ms=timeout_ms,
        )

        started = time.monotonic()
        outcome = await self._call_with_retry(
            provider, template.system_prompt, user_prompt, options, profile
        )
        duration_ms = int((time.monotonic() - started) * 1000)

        if outcome.response is None:
            return self._failure_result(context, profile, outcome)

        parsed = parse_model_output(outcome.response, template.output_format)
        return self._validated_result(
            context, profile, template, model_config, parsed, outcome, duration_ms
        )

    # -- steps --------------------------------------------------------------

    @staticmethod
    def _resolve_agent_code(config: Mapping[str, Any]) -> Optional[str]:
        for key in ("agentCode", "agentProfileCode"):
            candidate = config.get(key)
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        return None

    def _build_variables(
        self, context: NodeExecutionContext, profile: AgentProfile, config: Mapping[str, Any]
    ) -> Dict[str, str]:
        variables: Dict[str, str] = {}
        variables.update(stringify_variables(context.input, "input"))
        variables.update(stringify_variables(context.param_snapshot, "params"))
        custom = config.get("variables")
        if isinstance(custom, Mapping):
            for key, value in custom.items():
                variables[str(key)] = value if isinstance(value, str) else json.dumps(
                    value, ensure_ascii=False, default=str
                )
        variables["agent.code"] = profile.agent_code
        variables["agent.roleType"] = profile.role_type
        variables["execution.id"] = context.execution_id
        variables["trigger.userId"] = context.trigger_user_id or ""
        variables["timestamp"] = datetime.now(timezone.utc).isoformat()
        return variables

    @staticmethod
    def _few_shot_block(examples: Any) -> str:
        if not isinstance(examples, list) or not examples:
            return ""
        lines = ["## Reference examples"]
        for index, example in enumerate(examples, start=1):
            if not isinstance(example, Mapping):
                continue
            lines.append(f"### Example {index}")
            for label, key in (("Input", "input"), ("Output", "output")):
                value = example.get(key)
                if value is None:
                    continue
                if not isinstance(value, str):
                    value = json.dumps(value, ensure_ascii=False, default=str)
                lines.append(f"{label}: {value}")
        return "\n".join(lines) if len(lines) > 1 else ""

    def _timeout_ms(self, node: Mapping[str, Any], profile: AgentProfile) -> int:
        policy = effective_runtime_policy(node)
        candidates = (policy.get("timeoutMs"), profile.timeout_ms, self.settings.agent_default_timeout_ms)
        for candidate in candidates:
            if _is_finite_number(candidate) and candidate > 0:
                return int(min(candidate, self.settings.agent_max_timeout_ms))
        return self.settings.agent_default_timeout_ms

    def _strict_mode(self, node_config: Mapping[str, Any], profile: AgentProfile) -> bool:
        for candidate in (node_config.get("strictMode"), profile.strict_mode):
            if isinstance(candidate, bool):
                return candidate
        return bool(self.settings.agent_strict_mode)

    async def _invoke(self, provider, system_prompt: str, user_prompt: str, options: ModelRequestOptions) -> str:
        timeout_s = (options.timeout_ms or self.settings.agent_default_timeout_ms) / 1000
        try:
            return await asyncio.wait_for(
                provider.generate_response(system_prompt, user_prompt, options),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"model call timed out after {options.timeout_ms}ms") from exc

    async def _call_with_retry(
        self,
        provider,
        system_prompt: str,
        user_prompt: str,
        options: ModelRequestOptions,
        profile: AgentProfile,
    ) -> _CallOutcome:
        retry_policy = profile.retry_policy or {}
        retry_count = retry_policy.get("retryCount") or 0
        retry_count = int(retry_count) if _is_finite_number(retry_count) and retry_count > 0 else 0
        backoff_ms = retry_policy.get("retryBackoffMs")
        if not _is_finite_number(backoff_ms) or backoff_ms < 0:
            backoff_ms = self.settings.agent_default_retry_backoff_ms

        attempts = 0
        while True:
            try:
                response = await self._invoke(provider, system_prompt, user_prompt, options)
                return _CallOutcome(response=response, error=None, retry_attempts=attempts)
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                logger.warning(
                    "agent_call_failed",
                    agent_code=profile.agent_code,
                    attempt=attempts + 1,
                    error=sanitize_error_message(error),
                )
                if attempts >= retry_count:
                    return _CallOutcome(response=None, error=error, retry_attempts=attempts)
            attempts += 1
            delay_ms = backoff_ms * attempts
            logger.info(
                "agent_call_retry",
                agent_code=profile.agent_code,
                attempt=attempts,
                max_retries=retry_count,
                backoff_ms=delay_ms,
            )
            await self._sleep(delay_ms / 1000)

    def _failure_result(
        self, context: NodeExecutionContext, profile: AgentProfile, outcome: _CallOutcome
    ) -> NodeExecutionResult:
        error = sanitize_error_message(outcome.error)
        if is_auth_error(outcome.error or "") and not self._strict_mode(context.config, profile):
            logger.warning(
                "agent_auth_degraded",
                agent_code=profile.agent_code,
                node_id=context.node_id,
                retry_attempts=outcome.retry_attempts,
            )
            return NodeExecutionResult.success(
                {
                    "agentCode": profile.agent_code,
                    "skipped": True,
                    "degraded": True,
                    "skipReason": "agent-auth-invalid",
                    "error": error,
                    "retryAttempts": outcome.retry_attempts,
                },
                message=f"agent {profile.agent_code} skipped: provider rejected credentials",
            )
        suffix = f" after {outcome.retry_attempts} retries" if outcome.retry_attempts else ""
        return NodeExecutionResult.failed(
            f"agent {profile.agent_code} call failed{suffix}: {error}",
            output={"error": error, "retryAttempts": outcome.retry_attempts},
        )

    def _validated_result(
        self,
        context: NodeExecutionContext,
        profile: AgentProfile,
        template: PromptTemplate,
        model_config: ModelConfig,
        parsed: Dict[str, Any],
        outcome: _CallOutcome,
        duration_ms: int,
    ) -> NodeExecutionResult:
        if parsed.get("parseError"):
            logger.warning("agent_output_parse_failed", agent_code=profile.agent_code)

        guardrails_ok, guardrails_message = check_guardrails(parsed, profile.guardrails)

        structured = (template.output_format or "json").lower() == "json"
        base_ok, base_message = check_base_fields(parsed) if structured else (True, "")

        schema_code = context.config.get("outputSchemaCode") or profile.output_schema_code
        schema_errors: List[str] = []
        if schema_code:
            schema_result = self.schema_registry.validate_by_code(schema_code, parsed)
            schema_errors = schema_result.errors
        schema_ok = not schema_errors

        messages = [
            message
            for ok, message in (
                (guardrails_ok, f"guardrails: {guardrails_message}"),
                (base_ok, f"base fields: {base_message}"),
                (schema_ok, f"schema {schema_code}: {'; '.join(schema_errors)}"),
            )
            if not ok
        ]
        passed = not messages

        output = {
            "agentCode": profile.agent_code,
            "roleType": profile.role_type,
            "modelName": model_config.model_name,
            "promptCode": profile.agent_prompt_code,
            "promptVersion": template.version,
            "agentVersion": profile.version,
            "durationMs": duration_ms,
            "outputFormat": template.output_format,
            "rawResponse": outcome.response,
            "parsed": parsed,
            "guardrailsPassed": guardrails_ok,
            "guardrailsMessage": guardrails_message,
            "baseFieldsPassed": base_ok,
            "schemaCode": schema_code,
            "schemaPassed": schema_ok,
            "schemaErrors": schema_errors,
            "retryAttempts": outcome.retry_attempts,
        }
        if passed:
            return NodeExecutionResult.success(
                output, message=f"agent {profile.agent_code} succeeded ({duration_ms}ms)"
            )
        return NodeExecutionResult.failed(
            f"agent {profile.agent_code} output rejected: {'; '.join(messages)}", output=output
        )
