import asyncio
import copy
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("MODEL_PROVIDER_BASE_URL", "http://model-provider.invalid/v1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from decisionflow.service.runtime import reset_runtime_for_tests  # noqa: E402


PUBLISHABLE_GRAPH = {
    "workflowId": "wf-copper-daily",
    "name": "Copper daily view",
    "mode": "DAG",
    "ownerUserId": "user-1",
    "paramSetBindings": ["COPPER_BASE"],
    "runPolicy": {
        "nodeDefaults": {
            "timeoutMs": 30000,
            "retryCount": 1,
            "retryBackoffMs": 500,
            "onError": "FAIL_FAST",
        }
    },
    "nodes": [
        {"id": "t1", "type": "manual-trigger", "name": "Start", "config": {}},
        {
            "id": "f1",
            "type": "data-fetch",
            "name": "Fetch prices",
            "config": {"source": "spot"},
            "outputSchema": {
                "properties": {
                    "price": {"type": "number"},
                    "symbol": {"type": "string"},
                    "history": {"type": "array"},
                }
            },
        },
        {"id": "r1", "type": "rule-pack-eval", "name": "Rules", "config": {"packCode": "BASIS"}},
        {"id": "a1", "type": "agent-call", "name": "Analyst", "config": {"agentCode": "ANALYST"}},
        {"id": "j1", "type": "join", "name": "Join", "config": {"joinPolicy": "ALL"}},
        {"id": "g1", "type": "risk-gate", "name": "Gate", "config": {}},
        {"id": "n1", "type": "notify", "name": "Notify", "config": {}},
    ],
    "edges": [
        {"id": "e1", "from": "t1", "to": "f1", "edgeType": "control-edge"},
        {"id": "e2", "from": "f1", "to": "r1", "edgeType": "control-edge"},
        {"id": "e3", "from": "f1", "to": "a1", "edgeType": "control-edge"},
        {"id": "e4", "from": "r1", "to": "j1", "edgeType": "control-edge"},
        {"id": "e5", "from": "a1", "to": "j1", "edgeType": "control-edge"},
        {"id": "e6", "from": "j1", "to": "g1", "edgeType": "control-edge"},
        {"id": "e7", "from": "g1", "to": "n1", "edgeType": "control-edge"},
    ],
}


@pytest.fixture
def graph():
    """A DAG graph that passes both SAVE and PUBLISH validation."""
    return copy.deepcopy(PUBLISHABLE_GRAPH)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
