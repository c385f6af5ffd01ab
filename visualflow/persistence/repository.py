# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Flow and execution repositories.

Typed access to the document store. Nothing is hard-deleted: delete
operations set `deleted`/`deletedAt`, and "active" listings filter
them out.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from visualflow.core.config import get_config
from visualflow.core.errors import NotFoundError, ValidationError
from visualflow.core.logging import get_logger, log_event
from visualflow.engine.models import ExecutionResult, utc_now_iso
from .models import (
    Execution,
    ExecutionStatus,
    Flow,
    VersionEntry,
    current_device_info,
    parse_iso,
)
from .store import DocumentStore

logger = get_logger(__name__)

FLOWS = "flows"
EXECUTIONS = "executions"

# Fields a caller may not overwrite through update()
PROTECTED_FLOW_FIELDS = {"id", "createdAt", "createdOnDevice", "versionHistory"}


class FlowRepository:
    """
    Flow records.

    Args:
        store: Backing document store
        device_id: Identifier written into device metadata on create/update
    """

    def __init__(self, store: DocumentStore, device_id: Optional[str] = None):
        self.store = store
        self.device_id = device_id or get_config().device_id

    async def create(
        self,
        name: str,
        flow: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        tags: Optional[List[str]] = None,
        flow_id: Optional[str] = None,
        **extra: Any
    ) -> Flow:
        """Create a flow with device metadata and an initial version entry"""
        device = current_device_info(self.device_id)
        now = utc_now_iso()
        fields: Dict[str, Any] = dict(
            name=name,
            description=description,
            tags=tags or [],
            created_at=now,
            updated_at=now,
            last_accessed_at=now,
            created_on_device=device,
            last_modified_on_device=device,
            **extra,
        )
        if flow is not None:
            fields["flow"] = flow
        if flow_id:
            fields["id"] = flow_id

        record = Flow(**fields)
        record.version_history = [VersionEntry(version=record.version, timestamp=now, changes="Initial creation")]

        await self.store.put(FLOWS, record.id, record.to_document())
        log_event(logger, "Flow created", "INFO", flow_id=record.id, flow_name=name)
        return record

    async def update(
        self,
        flow_id: str,
        changes: Dict[str, Any],
        change_description: Optional[str] = None
    ) -> Flow:
        """
        Apply a partial update (stored field names) and bump `updatedAt`.

        A version change appends to the version history.
        """
        changes = {k: v for k, v in changes.items() if k not in PROTECTED_FLOW_FIELDS}
        device = current_device_info(self.device_id).to_document()

        def apply(current: Dict[str, Any]) -> Dict[str, Any]:
            now = utc_now_iso()
            document = {**current, **changes, "updatedAt": now, "lastModifiedOnDevice": device}

            new_version = changes.get("version")
            if new_version and new_version != current.get("version"):
                document["versionHistory"] = current.get("versionHistory", []) + [
                    VersionEntry(
                        version=new_version,
                        timestamp=now,
                        changes=change_description or "Updated version"
                    ).to_document()
                ]

            try:
                return Flow.from_document(document).to_document()
            except ValueError as e:
                raise ValidationError(f"Invalid flow update: {e}", field="flow")

        document = await self.store.modify(FLOWS, flow_id, apply)
        if document is None:
            raise NotFoundError("Flow", flow_id)
        return Flow.from_document(document)

    async def get(self, flow_id: str) -> Optional[Flow]:
        """Fetch by id, deleted flows included"""
        document = await self.store.get(FLOWS, flow_id)
        return Flow.from_document(document) if document else None

    async def require(self, flow_id: str) -> Flow:
        record = await self.get(flow_id)
        if record is None:
            raise NotFoundError("Flow", flow_id)
        return record

    async def list_active(self, newest_first: bool = False) -> List[Flow]:
        """Non-deleted flows ordered by `updatedAt`"""
        documents = await self.store.query(FLOWS, {"deleted": False}, order_by="updatedAt", descending=newest_first)
        return [Flow.from_document(d) for d in documents]

    async def list_all(self) -> List[Flow]:
        return [Flow.from_document(d) for d in await self.store.query(FLOWS)]

    async def search(self, query: str) -> List[Flow]:
        """Case-insensitive match on name, description or any tag"""
        needle = query.lower()
        matches = []
        for record in await self.list_active():
            haystack = [record.name, record.description or ""] + list(record.tags)
            if any(needle in value.lower() for value in haystack):
                matches.append(record)
        return matches

    async def soft_delete(self, flow_id: str) -> Flow:
        await self.require(flow_id)
        document = await self.store.update(FLOWS, flow_id, {"deleted": True, "deletedAt": utc_now_iso()})
        log_event(logger, "Flow deleted", "INFO", flow_id=flow_id)
        return Flow.from_document(document)

    async def restore(self, flow_id: str) -> Flow:
        await self.require(flow_id)
        document = await self.store.update(FLOWS, flow_id, {"deleted": False, "deletedAt": None})
        return Flow.from_document(document)

    async def access(self, flow_id: str) -> Flow:
        """Stamp `lastAccessedAt`"""
        await self.require(flow_id)
        document = await self.store.update(FLOWS, flow_id, {"lastAccessedAt": utc_now_iso()})
        return Flow.from_document(document)

    async def rekey(self, old_id: str, new_id: str) -> Flow:
        """
        Move a flow to a new id in place.

        The record under old_id is removed, so the flow is never duplicated.
        """
        record = await self.require(old_id)
        if old_id == new_id:
            return record
        if await self.get(new_id) is not None:
            raise ValidationError(f"Cannot re-key flow {old_id}: {new_id} already exists", field="id")

        record.id = new_id
        await self.store.put(FLOWS, new_id, record.to_document())
        await self.store.remove(FLOWS, old_id)
        log_event(logger, "Flow re-keyed", "INFO", old_id=old_id, new_id=new_id)
        return record

    async def put_many(self, flows: Iterable[Flow]) -> None:
        """Bulk write (sync results)"""
        await self.store.put_many(FLOWS, {f.id: f.to_document() for f in flows})


class ExecutionRepository:
    """
    Execution records, plus the flow statistics derived from them.

    Args:
        store: Backing document store
        flows: Flow repository (statistics and node names)
    """

    def __init__(self, store: DocumentStore, flows: FlowRepository):
        self.store = store
        self.flows = flows
        self._listeners: List[Callable[[Execution], Any]] = []

    def add_listener(self, callback: Callable[[Execution], Any]) -> None:
        """Called with the record each time a run is created or completed"""
        self._listeners.append(callback)

    def _notify(self, execution: Execution) -> None:
        for callback in self._listeners:
            try:
                callback(execution)
            except Exception as e:
                logger.error(f"Execution listener failed: {e}", exc_info=True)

    async def create(
        self,
        flow_id: str,
        flow_name: Optional[str] = None,
        flow_version: Optional[str] = None,
        input: Optional[Dict[str, Any]] = None,
        trigger: str = "manual"
    ) -> Execution:
        """
        Record a run start (status running).

        When the flow is stored, its `executionCount` and `lastExecutedAt`
        are bumped and missing name/version are taken from it.
        """
        flow = await self.flows.get(flow_id)
        if flow is None and not flow_name:
            raise NotFoundError("Flow", flow_id)

        execution = Execution(
            flow_id=flow_id,
            flow_name=flow_name or flow.name,
            flow_version=flow_version or (flow.version if flow else "1.0.0"),
            input=input,
            trigger=trigger,
            tokens_used=0,
            executed_on_device=current_device_info(self.flows.device_id),
        )
        await self.store.put(EXECUTIONS, execution.id, execution.to_document())

        if flow is not None:
            await self.store.modify(FLOWS, flow_id, lambda current: {
                **current,
                "lastExecutedAt": execution.started_at,
                "executionCount": (current.get("executionCount") or 0) + 1,
            })

        self._notify(execution)
        return execution

    async def complete(
        self,
        execution_id: str,
        results: List[ExecutionResult],
        status: str = ExecutionStatus.COMPLETED.value,
        error: Optional[str] = None,
        failed_node_id: Optional[str] = None
    ) -> Execution:
        """
        Move a running execution to its terminal status.

        Computes duration and total tokens, resolves the failed node's name
        and refreshes the flow's success rate and average run time.
        """
        execution = await self.require(execution_id)
        if execution.status != ExecutionStatus.RUNNING:
            raise ValidationError(
                f"Execution {execution_id} already finished with status {execution.status.value}",
                field="status"
            )

        completed_at = utc_now_iso()
        duration = int((parse_iso(completed_at) - parse_iso(execution.started_at)).total_seconds() * 1000)
        tokens_used = sum((r.metadata.tokens_used or 0) if r.metadata else 0 for r in results)

        failed_node_name = None
        flow = await self.flows.get(execution.flow_id)
        if failed_node_id and flow is not None:
            failed_node_name = flow.node_label(failed_node_id)

        execution.status = ExecutionStatus(status)
        execution.completed_at = completed_at
        execution.duration = duration
        execution.results = list(results)
        execution.tokens_used = tokens_used
        execution.error = error
        execution.failed_node_id = failed_node_id
        execution.failed_node_name = failed_node_name
        await self.store.put(EXECUTIONS, execution_id, execution.to_document())

        if flow is not None:
            await self._refresh_flow_statistics(execution.flow_id)

        log_event(
            logger, "Execution completed", "INFO",
            execution_id=execution_id, status=execution.status.value, duration_ms=duration
        )
        self._notify(execution)
        return execution

    async def _refresh_flow_statistics(self, flow_id: str) -> None:
        # Execution list is read under the flow's lock
        async def recompute(current: Dict[str, Any]) -> Dict[str, Any]:
            recent = await self.list_for_flow(flow_id, limit=get_config().history_limit)
            finished = [e for e in recent if e.status != ExecutionStatus.RUNNING]
            if not finished:
                return current
            completed = [e for e in finished if e.status == ExecutionStatus.COMPLETED]

            changes: Dict[str, Any] = {"successRate": round(len(completed) / len(finished) * 100, 2)}
            if completed:
                changes["avgExecutionTime"] = round(sum(e.duration or 0 for e in completed) / len(completed))
            return {**current, **changes}

        await self.store.modify(FLOWS, flow_id, recompute)

    async def get(self, execution_id: str) -> Optional[Execution]:
        document = await self.store.get(EXECUTIONS, execution_id)
        return Execution.from_document(document) if document else None

    async def require(self, execution_id: str) -> Execution:
        execution = await self.get(execution_id)
        if execution is None:
            raise NotFoundError("Execution", execution_id)
        return execution

    async def list_for_flow(self, flow_id: str, limit: Optional[int] = None) -> List[Execution]:
        """Non-deleted executions of a flow, most recent first"""
        documents = await self.store.query(
            EXECUTIONS,
            {"flowId": flow_id, "deleted": False},
            order_by="startedAt",
            descending=True,
            limit=limit or get_config().history_limit
        )
        return [Execution.from_document(d) for d in documents]

    async def put_many(self, executions: Iterable[Execution]) -> None:
        await self.store.put_many(EXECUTIONS, {e.id: e.to_document() for e in executions})

    async def reassign_flow(self, old_flow_id: str, new_flow_id: str) -> int:
        """Point executions of a re-keyed flow at its new id"""
        documents = await self.store.query(EXECUTIONS, {"flowId": old_flow_id}, order_by=None)
        for document in documents:
            await self.store.update(EXECUTIONS, document["id"], {"flowId": new_flow_id})
        return len(documents)

    async def cleanup_old(
        self,
        max_per_flow: Optional[int] = None,
        success_days: Optional[int] = None,
        failure_days: Optional[int] = None
    ) -> int:
        """
        Retention policy (soft delete).

        Per flow, keep the newest `max_per_flow` executions; among those,
        completed runs older than `success_days` and failed runs older than
        `failure_days` are dropped as well. Returns the number deleted.
        """
        config = get_config()
        max_per_flow = max_per_flow or config.retention_max_per_flow
        now = datetime.now(timezone.utc)
        success_cutoff = now - timedelta(days=success_days or config.retention_success_days)
        failure_cutoff = now - timedelta(days=failure_days or config.retention_failure_days)

        by_flow: Dict[str, List[Dict[str, Any]]] = {}
        for document in await self.store.query(EXECUTIONS, {"deleted": False}, order_by="startedAt", descending=True):
            by_flow.setdefault(document.get("flowId"), []).append(document)

        deleted_at = utc_now_iso()
        deleted_count = 0
        for documents in by_flow.values():
            for index, document in enumerate(documents):
                started_at = parse_iso(document["startedAt"])
                status = document.get("status")
                expired = (
                    index >= max_per_flow
                    or (status == ExecutionStatus.COMPLETED.value and started_at < success_cutoff)
                    or (status == ExecutionStatus.FAILED.value and started_at < failure_cutoff)
                )
                if expired:
                    await self.store.update(EXECUTIONS, document["id"], {"deleted": True, "deletedAt": deleted_at})
                    deleted_count += 1

        if deleted_count:
            log_event(logger, "Old executions cleaned up", "INFO", deleted=deleted_count)
        return deleted_count
