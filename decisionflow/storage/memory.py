from __future__ import annotations

import copy
import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional

from decisionflow.logging import get_logger
from decisionflow.storage.errors import ConstraintViolation
from decisionflow.storage.models import (
    AgentProfile,
    Experiment,
    ExperimentRun,
    ModelConfig,
    ParameterChangeLog,
    ParameterItem,
    ParameterSet,
    PromptTemplate,
    WorkflowVersion,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for parameters, agent assets and experiments.

    Implements every collaborator port the services depend on. All public
    methods take the data lock, so a single store can be shared across
    threads; returned objects are the stored instances and callers persist
    changes through the ``save_*``/``update_*`` methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.parameter_sets: Dict[str, ParameterSet] = {}
        self.parameter_items: Dict[str, ParameterItem] = {}
        self.parameter_change_logs: List[ParameterChangeLog] = []
        self.agent_profiles: Dict[str, AgentProfile] = {}
        self.prompt_templates: Dict[str, PromptTemplate] = {}
        self.model_configs: Dict[str, ModelConfig] = {}
        self.workflow_versions: Dict[str, WorkflowVersion] = {}
        self.experiments: Dict[str, Experiment] = {}
        self.experiment_runs: List[ExperimentRun] = []
        self._data_lock = threading.RLock()

    # parameter sets -------------------------------------------------------

    def create_parameter_set(self, parameter_set: ParameterSet) -> ParameterSet:
        with self._data_lock:
            if self.get_parameter_set_by_code(parameter_set.set_code):
                raise ConstraintViolation(
                    "parameter_set_code_unique",
                    "parameter set code already exists",
                    {"set_code": parameter_set.set_code},
                )
            self.parameter_sets[parameter_set.id] = parameter_set
            return parameter_set

    def get_parameter_set(self, set_id: str) -> Optional[ParameterSet]:
        with self._data_lock:
            return self.parameter_sets.get(set_id)

    def get_parameter_set_by_code(self, set_code: str) -> Optional[ParameterSet]:
        with self._data_lock:
            for parameter_set in self.parameter_sets.values():
                if parameter_set.set_code == set_code:
                    return parameter_set
            return None

    def list_parameter_sets(self, owner_user_id: Optional[str] = None) -> List[ParameterSet]:
        with self._data_lock:
            sets = list(self.parameter_sets.values())
        if owner_user_id is not None:
            sets = [
                s
                for s in sets
                if s.owner_user_id == owner_user_id or s.template_source == "PUBLIC"
            ]
        return sorted(sets, key=lambda s: s.created_at)

    def save_parameter_set(self, parameter_set: ParameterSet) -> ParameterSet:
        with self._data_lock:
            parameter_set.updated_at = utcnow()
            self.parameter_sets[parameter_set.id] = parameter_set
            return parameter_set

    # parameter items ------------------------------------------------------

    def _check_item_unique(self, item: ParameterItem) -> None:
        for existing in self.parameter_items.values():
            if (
                existing.id != item.id
                and existing.is_active
                and existing.parameter_set_id == item.parameter_set_id
                and existing.param_code == item.param_code
                and existing.scope_level == item.scope_level
                and existing.scope_value == item.scope_value
            ):
                raise ConstraintViolation(
                    "parameter_item_scope_unique",
                    "active parameter already exists for this scope",
                    {
                        "param_code": item.param_code,
                        "scope_level": item.scope_level,
                        "scope_value": item.scope_value,
                    },
                )

    def add_parameter_item(self, item: ParameterItem) -> ParameterItem:
        with self._data_lock:
            if item.is_active:
                self._check_item_unique(item)
            self.parameter_items[item.id] = item
            return item

    def get_parameter_item(self, item_id: str) -> Optional[ParameterItem]:
        with self._data_lock:
            return self.parameter_items.get(item_id)

    def update_parameter_item(self, item: ParameterItem) -> ParameterItem:
        with self._data_lock:
            if item.id not in self.parameter_items:
                raise KeyError(item.id)
            if item.is_active:
                self._check_item_unique(item)
            item.updated_at = utcnow()
            self.parameter_items[item.id] = item
            return item

    def list_parameter_items(
        self, set_id: str, *, include_inactive: bool = False
    ) -> List[ParameterItem]:
        with self._data_lock:
            items = [
                item
                for item in self.parameter_items.values()
                if item.parameter_set_id == set_id and (include_inactive or item.is_active)
            ]
        return sorted(items, key=lambda i: i.created_at)

    def append_parameter_change_log(self, entry: ParameterChangeLog) -> ParameterChangeLog:
        with self._data_lock:
            self.parameter_change_logs.append(entry)
            return entry

    def list_parameter_change_logs(self, set_id: str) -> List[ParameterChangeLog]:
        with self._data_lock:
            return [e for e in self.parameter_change_logs if e.parameter_set_id == set_id]

    # agent assets ---------------------------------------------------------

    def upsert_agent_profile(self, profile: AgentProfile) -> AgentProfile:
        with self._data_lock:
            self.agent_profiles[profile.agent_code] = profile
            return profile

    def get_agent_profile(
        self, agent_code: str, *, owner_user_id: Optional[str] = None
    ) -> Optional[AgentProfile]:
        """Active profile by code, visible to ``owner_user_id`` when given."""
        with self._data_lock:
            profile = self.agent_profiles.get(agent_code)
        if not profile or not profile.is_active:
            return None
        if (
            owner_user_id is not None
            and profile.owner_user_id not in (None, owner_user_id)
            and profile.template_source != "PUBLIC"
        ):
            return None
        return profile

    def upsert_prompt_template(self, template: PromptTemplate) -> PromptTemplate:
        with self._data_lock:
            self.prompt_templates[template.prompt_code] = template
            return template

    def get_prompt_template(self, prompt_code: str) -> Optional[PromptTemplate]:
        with self._data_lock:
            template = self.prompt_templates.get(prompt_code)
        if not template or not template.is_active:
            return None
        return template

    def upsert_model_config(self, config: ModelConfig) -> ModelConfig:
        with self._data_lock:
            config.updated_at = utcnow()
            self.model_configs[config.config_key] = config
            return config

    def list_model_configs(self, *, active_only: bool = True) -> List[ModelConfig]:
        with self._data_lock:
            configs = list(self.model_configs.values())
        return [c for c in configs if c.is_active or not active_only]

    # workflow versions ----------------------------------------------------

    def save_workflow_version(self, version: WorkflowVersion) -> WorkflowVersion:
        with self._data_lock:
            stored = replace(version, dsl=copy.deepcopy(version.dsl))
            self.workflow_versions[version.id] = stored
            return stored

    def get_workflow_version(self, version_id: str) -> Optional[WorkflowVersion]:
        with self._data_lock:
            return self.workflow_versions.get(version_id)

    # experiments ----------------------------------------------------------

    def create_experiment(self, experiment: Experiment) -> Experiment:
        with self._data_lock:
            for existing in self.experiments.values():
                if existing.experiment_code == experiment.experiment_code:
                    raise ConstraintViolation(
                        "experiment_code_unique",
                        "experiment code already exists",
                        {"experiment_code": experiment.experiment_code},
                    )
            self.experiments[experiment.id] = experiment
            return experiment

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        with self._data_lock:
            return self.experiments.get(experiment_id)

    def save_experiment(self, experiment: Experiment) -> Experiment:
        with self._data_lock:
            self.experiments[experiment.id] = experiment
            return experiment

    def delete_experiment(self, experiment_id: str) -> bool:
        with self._data_lock:
            removed = self.experiments.pop(experiment_id, None)
            if removed:
                self.experiment_runs = [
                    r for r in self.experiment_runs if r.experiment_id != experiment_id
                ]
                self.logger.info("experiment_deleted", experiment_id=experiment_id)
            return removed is not None

    def record_experiment_run(self, run: ExperimentRun) -> ExperimentRun:
        with self._data_lock:
            self.experiment_runs.append(run)
            return run

    def list_experiment_runs(
        self,
        experiment_id: str,
        *,
        variant: Optional[str] = None,
        success: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[ExperimentRun]:
        """Runs newest first, optionally filtered by variant and outcome."""
        with self._data_lock:
            runs = [r for r in self.experiment_runs if r.experiment_id == experiment_id]
        if variant is not None:
            runs = [r for r in runs if r.variant == variant]
        if success is not None:
            runs = [r for r in runs if r.success == success]
        runs = list(reversed(runs))
        if limit is not None:
            runs = runs[: max(limit, 0)]
        return runs

    def stats(self) -> Dict[str, Any]:
        with self._data_lock:
            return {
                "parameter_sets": len(self.parameter_sets),
                "parameter_items": len(self.parameter_items),
                "agent_profiles": len(self.agent_profiles),
                "experiments": len(self.experiments),
                "experiment_runs": len(self.experiment_runs),
            }
