from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx

from decisionflow.logging import get_logger, sanitize_error_message
from decisionflow.storage.models import ModelConfig

logger = get_logger(__name__)


@dataclass
class ModelRequestOptions:
    model_name: str
    api_key: Optional[str] = None
    api_url: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    timeout_ms: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class ProviderError(Exception):
    """A model provider rejected or failed a request."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ModelProvider(Protocol):
    name: str

    async def generate_response(
        self, system_prompt: str, user_prompt: str, options: ModelRequestOptions
    ) -> str: ...


class OpenAICompatibleProvider:
    """Chat-completions client for OpenAI-compatible HTTP endpoints."""

    name = "openai"

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._transport = transport

    async def generate_response(
        self, system_prompt: str, user_prompt: str, options: ModelRequestOptions
    ) -> str:
        url = f"{(options.api_url or self.base_url).rstrip('/')}/chat/completions"
        body: Dict[str, Any] = {
            "model": options.model_name,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        for key, value in (
            ("temperature", options.temperature),
            ("max_tokens", options.max_tokens),
            ("top_p", options.top_p),
        ):
            if value is not None:
                body[key] = value
        body.update(options.extra)

        headers = {}
        if options.api_key:
            headers["Authorization"] = f"Bearer {options.api_key}"
        timeout = (options.timeout_ms or 60000) / 1000

        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            transport=self._transport,
        ) as client:
            try:
                response = await client.post(url, json=body, headers=headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                logger.warning(
                    "model_provider_http_error",
                    provider=self.name,
                    model=options.model_name,
                    status_code=status,
                )
                raise ProviderError(
                    f"provider returned {status}: {sanitize_error_message(exc.response.text)}",
                    status_code=status,
                ) from exc
            except httpx.TimeoutException as exc:
                raise ProviderError(f"provider request timed out after {timeout:g}s") from exc
            except httpx.HTTPError as exc:
                raise ProviderError(f"provider request failed: {exc}") from exc

        payload = response.json()
        try:
            return payload["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise ProviderError("provider response has no message content") from exc


class ProviderRegistry:
    """Model providers keyed by the ``provider`` field of a model config."""

    def __init__(self, providers: Optional[Dict[str, ModelProvider]] = None) -> None:
        self._providers: Dict[str, ModelProvider] = {}
        for name, provider in (providers or {}).items():
            self.register(name, provider)

    def register(self, name: str, provider: ModelProvider) -> None:
        self._providers[name.lower()] = provider

    def get(self, name: str) -> Optional[ModelProvider]:
        return self._providers.get((name or "").lower())

    def names(self) -> list[str]:
        return sorted(self._providers)


def build_default_providers(base_url: str) -> ProviderRegistry:
    registry = ProviderRegistry()
    openai_provider = OpenAICompatibleProvider(base_url)
    for alias in ("openai", "openai-compatible", "deepseek", "qwen", "moonshot"):
        registry.register(alias, openai_provider)
    return registry


def resolve_api_key(model_config: ModelConfig, fallback: Optional[str] = None) -> Optional[str]:
    """Explicit key, then the env var the config names, then ``fallback``."""
    if model_config.api_key:
        return model_config.api_key
    if model_config.api_key_env_var:
        value = os.getenv(model_config.api_key_env_var)
        if value:
            return value
    return fallback
