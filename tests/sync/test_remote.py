# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Tests for RemoteFlowClient against a mocked backend
"""

import json

import httpx
import pytest

from visualflow.core.errors import NotFoundError, RemoteUnavailableError, SyncConflictError
from visualflow.engine.async_tracker import ExecutionStatus
from visualflow.persistence.models import Flow
from visualflow.sync.remote import RemoteFlowClient, parse_retry_after
from tests.conftest import edge, node

BASE_URL = "http://backend.test"


class Backend:
    """Routes (method, path) to canned responses and records every request"""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        if isinstance(route, Exception):
            raise route
        return route(request) if callable(route) else route

    def calls(self):
        return [(r.method, r.url.path) for r in self.requests]


def make_client(routes, health_ttl=30):
    backend = Backend(routes)
    client = RemoteFlowClient(
        base_url=BASE_URL,
        device_id="dev-1",
        client=httpx.AsyncClient(transport=httpx.MockTransport(backend)),
        health_ttl=health_ttl,
    )
    return client, backend


class TestUpsertFlow:
    @pytest.mark.asyncio
    async def test_put_updates_existing_flow(self):
        client, backend = make_client({("PUT", "/api/flows/f1"): httpx.Response(200, json={"id": "f1"})})

        result = await client.upsert_flow(Flow(id="f1", name="Flow"))

        assert result == {"id": "f1"}
        assert backend.calls() == [("PUT", "/api/flows/f1")]
        assert json.loads(backend.requests[0].content)["name"] == "Flow"

    @pytest.mark.asyncio
    async def test_not_found_falls_back_to_create(self):
        client, backend = make_client({
            ("PUT", "/api/flows/f1"): httpx.Response(404),
            ("POST", "/api/flows"): httpx.Response(201, json={"id": "server-id", "name": "Flow"}),
        })

        result = await client.upsert_flow(Flow(id="f1", name="Flow"))

        assert result["id"] == "server-id"
        assert backend.calls() == [("PUT", "/api/flows/f1"), ("POST", "/api/flows")]

    @pytest.mark.asyncio
    async def test_server_error_is_retryable(self):
        client, _ = make_client({("PUT", "/api/flows/f1"): httpx.Response(503)})

        with pytest.raises(RemoteUnavailableError):
            await client.upsert_flow(Flow(id="f1", name="Flow"))

    @pytest.mark.asyncio
    async def test_client_error_is_a_conflict(self):
        client, _ = make_client({("PUT", "/api/flows/f1"): httpx.Response(422, text="bad flow")})

        with pytest.raises(SyncConflictError) as exc_info:
            await client.upsert_flow(Flow(id="f1", name="Flow"))

        assert exc_info.value.remote_status == 422

    @pytest.mark.asyncio
    async def test_network_failure_is_retryable(self):
        client, _ = make_client({("PUT", "/api/flows/f1"): httpx.ConnectError("refused")})

        with pytest.raises(RemoteUnavailableError):
            await client.upsert_flow(Flow(id="f1", name="Flow"))

    @pytest.mark.asyncio
    async def test_identity_headers(self, monkeypatch):
        monkeypatch.setenv("VISUALFLOW_API_KEY", "secret-key")
        client, backend = make_client({("PUT", "/api/flows/f1"): httpx.Response(200, json={})})

        await client.upsert_flow(Flow(id="f1", name="Flow"))

        headers = backend.requests[0].headers
        assert headers["x-user-id"] == "dev-1"
        assert headers["authorization"] == "Bearer secret-key"


class TestHealth:
    @pytest.mark.asyncio
    async def test_result_is_cached(self):
        client, backend = make_client({("GET", "/health"): httpx.Response(200, json={"status": "healthy"})})

        assert await client.is_available()
        assert await client.is_available()
        assert len(backend.requests) == 1

        assert await client.is_available(force=True)
        assert len(backend.requests) == 2

    @pytest.mark.asyncio
    async def test_unhealthy_backend(self):
        client, _ = make_client({("GET", "/health"): httpx.Response(500)})

        assert not await client.is_available()

    @pytest.mark.asyncio
    async def test_unreachable_backend(self):
        client, _ = make_client({("GET", "/health"): httpx.ConnectError("refused")}, health_ttl=0)

        assert not await client.is_available()


class TestListing:
    @pytest.mark.asyncio
    async def test_list_flows_wrapped_or_bare(self):
        client, backend = make_client({("GET", "/api/flows"): httpx.Response(200, json={"flows": [{"id": "a"}]})})
        assert await client.list_flows() == [{"id": "a"}]
        assert backend.requests[0].url.params["limit"] == "1000"

        client, _ = make_client({("GET", "/api/flows"): httpx.Response(200, json=[{"id": "b"}])})
        assert await client.list_flows() == [{"id": "b"}]

    @pytest.mark.asyncio
    async def test_list_executions(self):
        client, backend = make_client({
            ("GET", "/api/flows/f1/executions"): httpx.Response(200, json={"executions": [{"id": "e1"}]}),
        })

        assert await client.list_executions("f1", limit=5) == [{"id": "e1"}]
        assert backend.requests[0].url.params["limit"] == "5"

    @pytest.mark.asyncio
    async def test_list_executions_of_unknown_flow(self):
        client, _ = make_client({})

        assert await client.list_executions("nope") == []


class TestExecutions:
    """Server-side execution submit and status"""

    @pytest.mark.asyncio
    async def test_submit(self):
        client, backend = make_client({("POST", "/api/executions"): httpx.Response(202, json={"id": "exec-9"})})

        execution_id = await client.submit_execution([node("a"), node("b")], [edge("a", "b")], {"k": "v"})

        payload = json.loads(backend.requests[0].content)
        assert execution_id == "exec-9"
        assert [n["id"] for n in payload["nodes"]] == ["a", "b"]
        assert payload["edges"][0]["source"] == "a"
        assert payload["variables"] == {"k": "v"}

    @pytest.mark.asyncio
    async def test_status_document(self):
        body = {
            "id": "exec-9",
            "status": "completed",
            "results": {"a": {"nodeId": "a", "output": "done", "executedAt": "2025-01-01T00:00:00Z"}},
        }
        client, _ = make_client({("GET", "/api/executions/exec-9"): httpx.Response(200, json=body)})

        update = await client.get_execution_status("exec-9")

        assert update.status == ExecutionStatus.COMPLETED
        assert update.results["a"].output == "done"

    @pytest.mark.asyncio
    async def test_rate_limited_status(self):
        client, _ = make_client({
            ("GET", "/api/executions/exec-9"): httpx.Response(429, headers={"Retry-After": "7"}),
        })

        update = await client.get_execution_status("exec-9")

        assert update.status == ExecutionStatus.RATE_LIMITED
        assert update.retry_after == 7.0

    @pytest.mark.asyncio
    async def test_unknown_execution(self):
        client, _ = make_client({})

        with pytest.raises(NotFoundError):
            await client.get_execution_status("missing")


class TestParseRetryAfter:
    @pytest.mark.parametrize("value,expected", [
        ("5", 5.0),
        ("0.5", 0.5),
        (None, None),
        ("", None),
        ("-1", None),
        ("Wed, 21 Oct 2015 07:28:00 GMT", None),
    ])
    def test_values(self, value, expected):
        assert parse_retry_after(value) == expected
