import importlib.util
import json
from pathlib import Path

import pytest

from decisionflow.service.agent_executor import AgentExecutor
from decisionflow.service.llm import OpenAICompatibleProvider
from decisionflow.service.runtime import get_runtime, reset_runtime_for_tests

ROOT = Path(__file__).resolve().parent.parent


def load_script():
    spec = importlib.util.spec_from_file_location(
        "validate_workflow", ROOT / "scripts" / "validate_workflow.py"
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_runtime_wires_services(monkeypatch):
    monkeypatch.setenv("MODEL_CONFIG_CACHE_TTL_SECONDS", "42")
    runtime = reset_runtime_for_tests()

    assert get_runtime() is runtime
    assert runtime.model_configs.ttl_seconds == 42
    assert isinstance(runtime.executors.resolve({"type": "agent-call"}), AgentExecutor)
    provider = runtime.providers.get("DeepSeek")
    assert isinstance(provider, OpenAICompatibleProvider)
    assert provider.base_url == "http://model-provider.invalid/v1"


def test_runtime_parameter_flow():
    runtime = get_runtime()
    param_set = runtime.parameters.create_set(
        "user-1", {"setCode": "COPPER_BASE", "name": "Copper"}
    )
    runtime.parameters.add_item(
        "user-1",
        param_set.id,
        {"paramCode": "margin", "paramName": "Margin", "paramType": "number", "value": 0.02},
    )
    snapshot = runtime.parameters.resolve("user-1", param_set.id).as_snapshot()
    assert snapshot == {"margin": 0.02}


def test_script_reports_valid_graph(tmp_path, capsys, graph):
    path = tmp_path / "graph.json"
    path.write_text(json.dumps(graph), encoding="utf-8")

    assert load_script().run(path, "PUBLISH", as_json=True) == 0
    payload = json.loads(capsys.readouterr().out)
    assert payload["valid"] is True


def test_script_reports_invalid_graph(tmp_path, capsys, graph):
    graph["nodes"].append({"id": "x1", "type": "notify", "config": {}})
    path = tmp_path / "graph.json"
    path.write_text(json.dumps(graph), encoding="utf-8")

    assert load_script().run(path, "SAVE", as_json=False) == 1
    out = capsys.readouterr().out
    assert "INVALID at SAVE" in out
    assert "WF004 [x1]" in out


@pytest.mark.parametrize("content", [None, "{not json"])
def test_script_unreadable_file(tmp_path, content):
    path = tmp_path / "graph.json"
    if content is not None:
        path.write_text(content, encoding="utf-8")
    assert load_script().run(path, "SAVE", as_json=False) == 2
