# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Remote Flow Client - HTTP access to the flow backend.

Covers:
- Health check (cached so an offline backend is probed at most once per TTL)
- Flow listing and upsert (PUT, falling back to POST when the flow is new)
- Execution history per flow
- Server-side execution submit/status for the async tracker
"""

import time
from typing import Any, Dict, List, Optional

import httpx

from visualflow.core.config import get_config, get_backend_api_key
from visualflow.core.errors import NotFoundError, RemoteUnavailableError, SyncConflictError
from visualflow.core.logging import get_service_logger
from visualflow.engine.async_tracker import ExecutionStatus, ExecutionStatusUpdate
from visualflow.engine.models import FlowEdge, FlowNode
from visualflow.persistence.models import Flow

logger = get_service_logger("remote_flows")


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After header in seconds; HTTP-date values are not honored"""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


class RemoteFlowClient:
    """
    Client for the flow backend API.

    Args:
        base_url: Backend root (defaults to config backend_url)
        device_id: Sent as `x-user-id` so the backend can scope records
        client: Injected httpx client (tests pass one with a MockTransport)
        health_ttl: Seconds a health result is reused
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        device_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        health_ttl: Optional[float] = None
    ):
        config = get_config()
        self.base_url = (base_url or config.backend_url).rstrip("/")
        self.device_id = device_id or config.device_id
        self.client = client or httpx.AsyncClient(timeout=config.http_timeout_sync)
        self.health_ttl = config.health_cache_ttl if health_ttl is None else health_ttl
        self.health_timeout = config.http_timeout_health

        self._health: Optional[bool] = None
        self._health_checked_at = 0.0

    def _headers(self) -> Dict[str, str]:
        headers = {"x-user-id": self.device_id}
        api_key = get_backend_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, f"{self.base_url}{path}", headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            raise RemoteUnavailableError(f"{method} {path} failed: {str(e) or e.__class__.__name__}")

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.status_code < 400:
            return
        if response.status_code >= 500:
            raise RemoteUnavailableError(f"{action} failed: HTTP {response.status_code}")
        raise SyncConflictError(
            f"{action} rejected: HTTP {response.status_code} {response.text[:200]}",
            remote_status=response.status_code
        )

    async def is_available(self, force: bool = False) -> bool:
        """True if GET /health answers 2xx; cached for health_ttl seconds"""
        now = time.monotonic()
        if not force and self._health is not None and now - self._health_checked_at < self.health_ttl:
            return self._health

        try:
            response = await self.client.get(f"{self.base_url}/health", timeout=self.health_timeout)
            healthy = response.is_success
        except httpx.HTTPError as e:
            logger.debug(f"Backend health check failed: {e}")
            healthy = False

        if self._health is not None and healthy != self._health:
            logger.info(f"Backend is now {'available' if healthy else 'unavailable'}")
        self._health = healthy
        self._health_checked_at = now
        return healthy

    async def list_flows(self, limit: int = 1000) -> List[Dict[str, Any]]:
        """All flows visible to this device, as raw documents"""
        response = await self._request("GET", "/api/flows", params={"limit": limit})
        self._raise_for_status(response, "List flows")
        body = response.json()
        if isinstance(body, list):
            return body
        return body.get("flows") or []

    async def upsert_flow(self, flow: Flow) -> Dict[str, Any]:
        """
        Write a flow to the backend.

        Tries PUT /api/flows/{id}; a 404 means the backend hasn't seen the
        flow yet and it is created with POST /api/flows. The backend may
        assign a different id on create; the returned document carries it.

        Raises:
            RemoteUnavailableError: network failure or 5xx (retryable)
            SyncConflictError: any other 4xx (not retryable)
        """
        document = flow.to_document()
        response = await self._request("PUT", f"/api/flows/{flow.id}", json=document)
        if response.status_code == 404:
            logger.debug(f"Flow {flow.id} not on backend, creating")
            response = await self._request("POST", "/api/flows", json=document)
        self._raise_for_status(response, f"Sync flow {flow.id}")
        return response.json()

    async def list_executions(self, flow_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Execution history of a flow, most recent first"""
        params = {"limit": limit or get_config().history_limit}
        response = await self._request("GET", f"/api/flows/{flow_id}/executions", params=params)
        if response.status_code == 404:
            return []
        self._raise_for_status(response, "List executions")
        body = response.json()
        if isinstance(body, list):
            return body
        return body.get("executions") or []

    async def submit_execution(
        self,
        nodes: List[FlowNode],
        edges: List[FlowEdge],
        variables: Dict[str, str]
    ) -> str:
        payload = {
            "nodes": [n.model_dump(mode="json", exclude_none=True) for n in nodes],
            "edges": [e.model_dump(mode="json", exclude_none=True) for e in edges],
            "variables": variables,
        }
        response = await self._request("POST", "/api/executions", json=payload)
        self._raise_for_status(response, "Submit execution")
        body = response.json()
        execution_id = body.get("id") or body.get("executionId")
        if not execution_id:
            raise RemoteUnavailableError("Submit execution returned no execution id")
        return execution_id

    async def get_execution_status(self, execution_id: str) -> ExecutionStatusUpdate:
        """
        Current state of a server-side execution.

        HTTP 429 is reported as a rate_limited update carrying Retry-After.
        """
        response = await self._request("GET", f"/api/executions/{execution_id}")
        if response.status_code == 429:
            return ExecutionStatusUpdate(
                execution_id=execution_id,
                status=ExecutionStatus.RATE_LIMITED,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code == 404:
            raise NotFoundError("Execution", execution_id)
        self._raise_for_status(response, "Execution status")

        body = response.json()
        body.setdefault("id", execution_id)
        return ExecutionStatusUpdate.model_validate(body)

    async def close(self):
        await self.client.aclose()
