# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Execution Service - server side of the submit-then-poll protocol.

Each submitted graph runs as a background task. Clients poll the status
document until it is terminal. At most `max_concurrent_runs` graphs run
at once; runs waiting for a slot report `rate_limited` with a retry hint.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from visualflow.core.config import get_config
from visualflow.core.errors import NotFoundError
from visualflow.core.logging import get_service_logger, log_event
from visualflow.engine.async_tracker import ExecutionStatus, ExecutionStatusUpdate, TERMINAL_STATUSES
from visualflow.engine.context import CancellationToken
from visualflow.engine.executor import FlowExecutor, RunState, TrackingOptions
from visualflow.engine.models import ExecutionRequest, ExecutionResult
from visualflow.persistence.models import new_id
from visualflow.persistence.repository import ExecutionRepository, FlowRepository

logger = get_service_logger("executions")

RUN_STATE_STATUS = {
    RunState.COMPLETED: ExecutionStatus.COMPLETED,
    RunState.FAILED: ExecutionStatus.FAILED,
    RunState.CYCLE_ABORTED: ExecutionStatus.FAILED,
    RunState.CANCELLED: ExecutionStatus.CANCELLED,
}


@dataclass
class RunHandle:
    """In-memory state of one submitted run"""
    id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    results: Dict[str, ExecutionResult] = field(default_factory=dict)
    error: Optional[str] = None
    flow_id: Optional[str] = None
    record_id: Optional[str] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    task: Optional[asyncio.Task] = None

    def snapshot(self, retry_after: Optional[float] = None) -> ExecutionStatusUpdate:
        return ExecutionStatusUpdate(
            execution_id=self.id,
            status=self.status,
            results=dict(self.results),
            error=self.error,
            retry_after=retry_after if self.status == ExecutionStatus.RATE_LIMITED else None,
        )


class ExecutionService:
    """
    Args:
        executor: Runs the graphs
        executions: When given, runs of stored flows are recorded
        flows: Resolves flow name/version for recorded runs
        max_concurrent_runs: Runs executing at the same time
        keep_finished: Finished runs kept for status queries
    """

    def __init__(
        self,
        executor: FlowExecutor,
        executions: Optional[ExecutionRepository] = None,
        flows: Optional[FlowRepository] = None,
        max_concurrent_runs: Optional[int] = None,
        keep_finished: Optional[int] = None
    ):
        config = get_config()
        self.executor = executor
        self.executions = executions
        self.flows = flows
        self.retry_hint = config.polling_interval
        self.keep_finished = keep_finished or config.history_limit

        self._slots = asyncio.Semaphore(max_concurrent_runs or config.max_concurrent_runs)
        self._runs: Dict[str, RunHandle] = {}
        self._finished: List[str] = []

    async def submit(self, request: ExecutionRequest) -> str:
        """Start a run in the background; returns its id immediately"""
        handle = RunHandle(id=new_id(), flow_id=request.flow_id)
        self._runs[handle.id] = handle
        tracking = await self._tracking_for(request.flow_id)
        handle.task = asyncio.create_task(self._run(handle, request, tracking))
        log_event(logger, "Execution submitted", "INFO", execution_id=handle.id, node_count=len(request.nodes))
        return handle.id

    async def _tracking_for(self, flow_id: Optional[str]) -> Optional[TrackingOptions]:
        if not flow_id or self.executions is None or self.flows is None:
            return None
        flow = await self.flows.get(flow_id)
        if flow is None:
            logger.warning(f"Execution for unknown flow {flow_id} will not be recorded")
            return None
        return TrackingOptions(
            repository=self.executions,
            flow_id=flow.id,
            flow_name=flow.name,
            flow_version=flow.version,
            trigger="api",
        )

    async def _run(self, handle: RunHandle, request: ExecutionRequest, tracking: Optional[TrackingOptions]) -> None:
        try:
            if self._slots.locked():
                handle.status = ExecutionStatus.RATE_LIMITED
            async with self._slots:
                if handle.cancel_token.cancelled:
                    handle.status = ExecutionStatus.CANCELLED
                    handle.error = handle.cancel_token.reason
                    return
                handle.status = ExecutionStatus.RUNNING
                report = await self.executor.run_detailed(
                    request.nodes,
                    request.edges,
                    request.variables,
                    tracking=tracking,
                    cancel_token=handle.cancel_token,
                )
            handle.results = report.results
            handle.error = report.error
            handle.record_id = report.execution_id
            handle.status = RUN_STATE_STATUS.get(report.state, ExecutionStatus.FAILED)
        except asyncio.CancelledError:
            handle.status = ExecutionStatus.CANCELLED
            handle.error = "Execution cancelled"
            raise
        except Exception as e:
            logger.error(f"Execution {handle.id} crashed: {e}", exc_info=True)
            handle.status = ExecutionStatus.FAILED
            handle.error = str(e) or e.__class__.__name__
        finally:
            self._retire(handle)
            log_event(logger, "Execution finished", "INFO", execution_id=handle.id, status=handle.status.value)

    def _retire(self, handle: RunHandle) -> None:
        self._finished.append(handle.id)
        while len(self._finished) > self.keep_finished:
            self._runs.pop(self._finished.pop(0), None)

    def status(self, execution_id: str) -> ExecutionStatusUpdate:
        handle = self._runs.get(execution_id)
        if handle is None:
            raise NotFoundError("Execution", execution_id)
        return handle.snapshot(retry_after=self.retry_hint)

    def cancel(self, execution_id: str) -> ExecutionStatusUpdate:
        """Stop a run before its next node"""
        handle = self._runs.get(execution_id)
        if handle is None:
            raise NotFoundError("Execution", execution_id)
        if handle.status not in TERMINAL_STATUSES:
            handle.cancel_token.cancel("Execution cancelled by user")
        return handle.snapshot(retry_after=self.retry_hint)

    async def wait(self, execution_id: str) -> ExecutionStatusUpdate:
        """Block until a run finishes (tests and shutdown)"""
        handle = self._runs.get(execution_id)
        if handle is None:
            raise NotFoundError("Execution", execution_id)
        if handle.task is not None:
            await asyncio.gather(handle.task, return_exceptions=True)
        return handle.snapshot()

    async def shutdown(self) -> None:
        tasks = [h.task for h in self._runs.values() if h.task is not None and not h.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
