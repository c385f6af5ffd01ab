# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Sync services.

- FlowSyncService: pull remote flows and reconcile them into the local store
- ExecutionHistoryService: tiered history lookup (session cache, local, remote)
- FlowSaveService: local save plus background upload, following remote re-keys
"""

from typing import Any, Dict, List, Optional

from visualflow.core.config import get_config
from visualflow.core.errors import PersistenceError, ValidationError, VisualFlowError
from visualflow.core.logging import get_service_logger, log_event
from visualflow.engine.context import CancellationToken
from visualflow.persistence.models import Execution, Flow
from visualflow.persistence.repository import ExecutionRepository, FlowRepository
from visualflow.persistence.session import SessionState
from .merge import merge_flows
from .queue import SyncOutcome, SyncQueue
from .remote import RemoteFlowClient

logger = get_service_logger("flow_sync")


class FlowSyncService:
    """Remote-to-local flow reconciliation"""

    def __init__(self, client: RemoteFlowClient, flows: FlowRepository):
        self.client = client
        self.flows = flows

    async def sync_from_remote(self) -> List[Flow]:
        """
        Fetch remote flows, merge them with the local ones and store the result.

        Any remote failure leaves local state untouched and returns the
        local flows. Deleted flows are excluded from the returned list.
        """
        local = await self.flows.list_all()

        if not await self.client.is_available():
            logger.debug("Backend unavailable, using local flows")
            return [f for f in local if not f.deleted]

        try:
            remote = await self.client.list_flows()
        except VisualFlowError as e:
            logger.warning(f"Flow sync failed, using local flows: {e.message}")
            return [f for f in local if not f.deleted]

        merged = merge_flows(remote, local)
        try:
            await self.flows.put_many(merged)
        except PersistenceError as e:
            logger.error(f"Failed to store merged flows: {e.message}")
            return [f for f in local if not f.deleted]

        log_event(logger, "Flows synced from backend", "INFO", remote_count=len(remote), merged_count=len(merged))
        return [f for f in merged if not f.deleted]

    async def run_periodic(self, cancel_token: CancellationToken, interval: Optional[float] = None) -> None:
        """Sync every `interval` seconds until the token is cancelled"""
        interval = interval or get_config().sync_interval
        while not await cancel_token.wait(interval):
            try:
                await self.sync_from_remote()
            except VisualFlowError as e:
                logger.error(f"Periodic sync failed: {e.message}")


class ExecutionHistoryService:
    """
    Execution history for the editor's history panel.

    Lookup order: session cache, then the local store, then the remote
    API. Errors at any tier are logged and the lookup continues with an
    empty result rather than failing. Runs recorded through the repository
    are pushed into the cached history as they start and finish.
    """

    def __init__(
        self,
        executions: ExecutionRepository,
        session: SessionState,
        client: Optional[RemoteFlowClient] = None
    ):
        self.executions = executions
        self.session = session
        self.client = client
        executions.add_listener(session.record_execution)

    async def history(self, flow_id: str, limit: Optional[int] = None) -> List[Execution]:
        cached = self.session.cached_history(flow_id)
        if cached:
            return cached

        try:
            local = await self.executions.list_for_flow(flow_id, limit=limit)
        except PersistenceError as e:
            logger.warning(f"Local history unavailable for flow {flow_id}: {e.message}")
            local = []
        if local:
            self.session.cache_history(flow_id, local)
            return local

        if self.client is None:
            return []

        try:
            documents = await self.client.list_executions(flow_id, limit=limit)
            remote = [Execution.from_document(d) for d in documents]
        except (VisualFlowError, ValueError) as e:
            logger.warning(f"Remote history unavailable for flow {flow_id}: {e}")
            return []

        if remote:
            self.session.cache_history(flow_id, remote)
        return remote

    def invalidate(self, flow_id: Optional[str] = None) -> None:
        """Drop cached history so the next lookup reads the store again"""
        self.session.invalidate_history(flow_id)


class FlowSaveService:
    """
    Saves the flow open in the editor.

    Tracks the current flow id. A save updates the current flow when it
    exists locally and creates one otherwise; either way the saved record
    is queued for upload. When the backend answers with a different id,
    the local record, its executions and the session pointers move to it.
    """

    def __init__(
        self,
        flows: FlowRepository,
        executions: ExecutionRepository,
        session: SessionState,
        queue: Optional[SyncQueue] = None
    ):
        self.flows = flows
        self.executions = executions
        self.session = session
        self.queue = queue
        self.current_flow_id: Optional[str] = None

        if queue is not None:
            queue.add_listener(self._on_sync_outcome)

    async def save(
        self,
        name: str,
        flow: Dict[str, Any],
        flow_id: Optional[str] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None
    ) -> Flow:
        """
        Save `flow` (the editor's graph document) under `name`.

        Args:
            flow_id: Target flow; defaults to the current flow
        """
        target = flow_id or self.current_flow_id
        existing = await self.flows.get(target) if target else None

        if existing is not None:
            changes: Dict[str, Any] = {"name": name, "flow": flow}
            if description is not None:
                changes["description"] = description
            if tags is not None:
                changes["tags"] = tags
            record = await self.flows.update(existing.id, changes)
        else:
            record = await self.flows.create(name, flow, description=description, tags=tags)

        await self._after_save(record)
        return record

    async def save_as_new(
        self,
        name: str,
        flow: Dict[str, Any],
        description: Optional[str] = None,
        tags: Optional[List[str]] = None
    ) -> Flow:
        """Always create a new flow, leaving the current one untouched"""
        record = await self.flows.create(name, flow, description=description, tags=tags)
        await self._after_save(record)
        return record

    async def open(self, flow_id: str) -> Flow:
        record = await self.flows.access(flow_id)
        self.current_flow_id = record.id
        await self.session.record_opened(record.id, record.name)
        return record

    def start_new(self) -> None:
        """Detach from the current flow so the next save creates one"""
        self.current_flow_id = None

    async def _after_save(self, record: Flow) -> None:
        self.current_flow_id = record.id
        await self.session.record_opened(record.id, record.name)
        if self.queue is not None:
            self.queue.enqueue(record)

    async def _on_sync_outcome(self, outcome: SyncOutcome) -> None:
        if outcome.rekeyed:
            await self.apply_remote_id(outcome.flow_id, outcome.remote_id)

    async def apply_remote_id(self, old_id: str, new_id: str) -> Optional[Flow]:
        """Move a flow (and everything pointing at it) to the backend-assigned id"""
        if await self.flows.get(old_id) is None:
            logger.debug(f"Flow {old_id} already moved, ignoring remote id {new_id}")
            return None

        try:
            record = await self.flows.rekey(old_id, new_id)
        except ValidationError as e:
            logger.warning(f"Cannot adopt remote id for flow {old_id}: {e.message}")
            return None

        moved = await self.executions.reassign_flow(old_id, new_id)
        await self.session.replace_flow_id(old_id, new_id)
        if self.current_flow_id == old_id:
            self.current_flow_id = new_id

        log_event(logger, "Flow adopted remote id", "INFO", old_id=old_id, new_id=new_id, executions_moved=moved)
        return record
