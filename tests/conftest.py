# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Shared fixtures: in-memory stores, repositories and fake capabilities.
"""

from typing import Any, Dict, List, Optional

import pytest

from visualflow.engine.capabilities import (
    CodeSandbox,
    LLMProvider,
    ProviderError,
    ProviderRequest,
    ProviderResponse,
)
from visualflow.engine.dispatcher import NodeDispatcher
from visualflow.engine.executor import FlowExecutor
from visualflow.engine.models import FlowEdge, FlowNode
from visualflow.persistence.repository import ExecutionRepository, FlowRepository
from visualflow.persistence.session import SessionState
from visualflow.persistence.store import InMemoryDocumentStore


class FakeProvider(LLMProvider):
    """Echoes the resolved user prompt; scripted replies and failures per model"""

    def __init__(self, replies: Optional[Dict[str, str]] = None, failures: Optional[Dict[str, str]] = None):
        self.replies = replies or {}
        self.failures = failures or {}
        self.requests: List[ProviderRequest] = []

    async def invoke(self, request: ProviderRequest) -> ProviderResponse:
        self.requests.append(request)
        if request.model in self.failures:
            raise ProviderError(self.failures[request.model])
        text = self.replies.get(request.model, f"echo: {request.user_prompt}")
        return ProviderResponse(text=text, model=request.model, total_tokens=10)


class FakeSandbox(CodeSandbox):
    """Returns a fixed value and remembers what it was given"""

    def __init__(self, value: Any = "code-output", error: Optional[Exception] = None):
        self.value = value
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def run(self, code, context, language="python"):
        self.calls.append({"code": code, "context": dict(context), "language": language})
        if self.error is not None:
            raise self.error
        return self.value


class FakeRemote:
    """
    Stand-in for RemoteFlowClient.

    upsert_flow pops scripted results (exceptions are raised, the default
    echoes the flow id); list_flows/list_executions return the given
    documents or raise the given exception.
    """

    def __init__(self, script=None, available=True, flows=None, executions=None):
        self.script = list(script or [])
        self.available = available
        self.flows = flows if flows is not None else []
        self.executions = executions if executions is not None else []
        self.upserts: List[str] = []
        self.list_calls = 0

    async def is_available(self, force=False):
        return self.available

    async def upsert_flow(self, flow):
        self.upserts.append(flow.id)
        step = self.script.pop(0) if self.script else {"id": flow.id}
        if isinstance(step, Exception):
            raise step
        return step

    async def list_flows(self, limit=1000):
        self.list_calls += 1
        if isinstance(self.flows, Exception):
            raise self.flows
        return list(self.flows)

    async def list_executions(self, flow_id, limit=None):
        if isinstance(self.executions, Exception):
            raise self.executions
        return [e for e in self.executions if e.get("flowId") == flow_id]


def node(node_id: str, node_type: str = "llm-provider", **data) -> FlowNode:
    return FlowNode(id=node_id, type=node_type, data=data)


def edge(source: str, target: str) -> FlowEdge:
    return FlowEdge(id=f"{source}-{target}", source=source, target=target)


def editor_graph(*node_ids: str, edges: Optional[List[tuple]] = None) -> Dict[str, Any]:
    """Raw editor document with positioned llm nodes"""
    return {
        "nodes": [
            {"id": n, "type": "llm-provider", "position": {"x": i * 100, "y": 0}, "data": {"userPrompt": n}}
            for i, n in enumerate(node_ids)
        ],
        "edges": [{"id": f"{s}-{t}", "source": s, "target": t} for s, t in (edges or [])],
        "viewport": {"x": 0, "y": 0, "zoom": 1},
    }


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def flow_repository(store):
    return FlowRepository(store, device_id="device-test")


@pytest.fixture
def execution_repository(store, flow_repository):
    return ExecutionRepository(store, flow_repository)


@pytest.fixture
def session(store):
    return SessionState(store, recent_limit=3)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sandbox():
    return FakeSandbox()


@pytest.fixture
def dispatcher(provider, sandbox):
    return NodeDispatcher(provider=provider, sandbox=sandbox, webhook_timeout_ms=1000)


@pytest.fixture
def executor(dispatcher):
    return FlowExecutor(dispatcher)
