from __future__ import annotations

import threading
from typing import Optional

from decisionflow.config import get_settings, reset_settings_cache
from decisionflow.logging import get_logger
from decisionflow.service.agent_executor import AgentExecutor
from decisionflow.service.executors import NodeExecutorRegistry, build_registry
from decisionflow.service.experiment import ExperimentRouter
from decisionflow.service.graph_validator import GraphValidator
from decisionflow.service.llm import build_default_providers
from decisionflow.service.output_schemas import OutputSchemaRegistry
from decisionflow.service.parameters import ParameterCenterService, ParameterResolver
from decisionflow.storage.config_cache import ConfigCache
from decisionflow.storage.memory import MemoryStore
from decisionflow.storage.models import ModelConfig

logger = get_logger(__name__)


class Runtime:
    """Holds the shared service instances of one process."""

    def __init__(self, store: Optional[MemoryStore] = None):
        self.settings = get_settings()
        self.store = store or MemoryStore()
        self.validator = GraphValidator()
        self.resolver = ParameterResolver()
        self.parameters = ParameterCenterService(self.store, self.resolver)
        self.schemas = OutputSchemaRegistry()
        self.model_configs: ConfigCache[ModelConfig] = ConfigCache(
            lambda: {c.config_key: c for c in self.store.list_model_configs()},
            ttl_seconds=self.settings.model_config_cache_ttl_seconds,
            name="model_configs",
        )
        self.providers = build_default_providers(self.settings.model_provider_base_url)
        self.agent_executor = AgentExecutor(
            self.store,
            self.providers,
            self.model_configs,
            self.schemas,
            self.settings,
        )
        self.executors: NodeExecutorRegistry = build_registry(self.agent_executor)
        self.experiments = ExperimentRouter(self.store, self.validator, self.settings)
        logger.info(
            "runtime_initialized",
            test_mode=self.settings.test_mode,
            strict_mode=self.settings.agent_strict_mode,
            providers=self.providers.names(),
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Recreate the runtime from a fresh environment read."""

    global runtime
    reset_settings_cache()
    with _runtime_lock:
        runtime = Runtime()
    return runtime
