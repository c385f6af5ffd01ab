# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Flow Executor

Sequential flow execution: order the graph, dispatch node by node,
publish outputs as variables and stop at the first failed node.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from visualflow.core.logging import get_logger, log_event
from .models import FlowNode, FlowEdge, ExecutionResult
from .context import ExecutionContext, CancellationToken
from .dispatcher import NodeDispatcher
from .exceptions import GraphCycleError, ExecutionCancelled, StructuredOutputParseError
from .graph import order, prune_dangling_edges
from .structured import extract_structured_variables

if TYPE_CHECKING:
    from visualflow.persistence.repository import ExecutionRepository

logger = get_logger(__name__)


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CYCLE_ABORTED = "cycle_aborted"
    CANCELLED = "cancelled"


@dataclass
class TrackingOptions:
    """Where and as what to record the run"""
    repository: "ExecutionRepository"
    flow_id: str
    flow_name: str
    flow_version: str = "1.0.0"
    trigger: str = "manual"


@dataclass
class RunReport:
    state: RunState
    results: Dict[str, ExecutionResult] = field(default_factory=dict)
    variables: Dict[str, str] = field(default_factory=dict)
    execution_id: Optional[str] = None
    error: Optional[str] = None
    failed_node_id: Optional[str] = None
    cycle_node_ids: List[str] = field(default_factory=list)
    dropped_edges: List[FlowEdge] = field(default_factory=list)


class FlowExecutor:
    """
    Runs flow graphs against a NodeDispatcher.

    Nodes run one at a time in topological order. Each output is
    published under the node's output variable even when the node
    failed; the run then halts, including branches unrelated to the
    failure.
    """

    def __init__(self, dispatcher: NodeDispatcher):
        self.dispatcher = dispatcher

    async def run(
        self,
        nodes: List[FlowNode],
        edges: List[FlowEdge],
        initial_variables: Optional[Dict[str, str]] = None,
        *,
        tracking: Optional[TrackingOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_update: Optional[Callable] = None
    ) -> Dict[str, ExecutionResult]:
        """
        Execute a flow and return node results in completion order.

        Raises GraphCycleError if the graph can't be ordered.
        """
        report = await self.run_detailed(
            nodes, edges, initial_variables,
            tracking=tracking, cancel_token=cancel_token, on_update=on_update
        )
        if report.state == RunState.CYCLE_ABORTED:
            raise GraphCycleError(report.cycle_node_ids)
        return report.results

    async def run_detailed(
        self,
        nodes: List[FlowNode],
        edges: List[FlowEdge],
        initial_variables: Optional[Dict[str, str]] = None,
        *,
        tracking: Optional[TrackingOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        on_update: Optional[Callable] = None
    ) -> RunReport:
        """Execute a flow and return the full run report"""
        context = ExecutionContext(initial_variables, cancel_token)
        report = RunReport(state=RunState.PENDING)

        kept_edges, report.dropped_edges = prune_dangling_edges(nodes, edges)

        try:
            ordered = order(nodes, kept_edges)
        except GraphCycleError as e:
            log_event(logger, "Flow aborted: cycle detected", "WARNING", node_ids=e.node_ids)
            report.state = RunState.CYCLE_ABORTED
            report.error = e.message
            report.cycle_node_ids = e.node_ids
            return report

        report.state = RunState.RUNNING
        report.execution_id = await self._start_tracking(tracking, context)
        log_event(
            logger, "Flow execution started", "INFO",
            execution_id=report.execution_id,
            order=[f"{n.id}({n.type.value})" for n in ordered]
        )

        try:
            await self._execute_nodes(ordered, kept_edges, context, report, on_update)
        except asyncio.CancelledError:
            report.state = RunState.CANCELLED
            report.error = "Execution cancelled"
            await self._finish(tracking, context, report)
            raise

        await self._finish(tracking, context, report)
        return report

    async def _execute_nodes(
        self,
        ordered: List[FlowNode],
        edges: List[FlowEdge],
        context: ExecutionContext,
        report: RunReport,
        on_update: Optional[Callable]
    ) -> None:
        node_states = {node.id: "pending" for node in ordered}

        for node in ordered:
            try:
                context.cancel_token.raise_if_cancelled()

                node_states[node.id] = "running"
                await self._send_update(on_update, "node_state", {
                    "node_id": node.id,
                    "status": "running",
                    "node_states": dict(node_states)
                })

                result = await self.dispatcher.execute(node, context, edges)
                # Results landing after cancellation are discarded
                context.cancel_token.raise_if_cancelled()
            except ExecutionCancelled as e:
                log_event(logger, "Flow execution cancelled", "WARNING", node_id=node.id)
                report.state = RunState.CANCELLED
                report.error = e.reason
                return

            context.record(result)
            self._publish(node, result, context)

            if result.failed:
                node_states[node.id] = "error"
                await self._send_update(on_update, "node_state", {
                    "node_id": node.id,
                    "status": "error",
                    "error": result.error,
                    "node_states": dict(node_states)
                })
                log_event(logger, "Stopping execution on node error", "WARNING", node_id=node.id, error=result.error)
                report.state = RunState.FAILED
                report.error = result.error
                report.failed_node_id = node.id
                return

            node_states[node.id] = "completed"
            await self._send_update(on_update, "node_state", {
                "node_id": node.id,
                "status": "completed",
                "node_states": dict(node_states)
            })

        report.state = RunState.COMPLETED

    def _publish(self, node: FlowNode, result: ExecutionResult, context: ExecutionContext) -> None:
        """Copy the node output into variables, then any structured fields"""
        name = node.output_variable
        context.publish(name, result.output)
        if name != node.id:
            context.publish(node.id, result.output)

        try:
            fields = extract_structured_variables(node.id, name, node.output_format, result)
        except StructuredOutputParseError as e:
            logger.warning(str(e), extra={"node_id": node.id})
            return
        for key, value in fields.items():
            context.publish(key, value)

    async def _start_tracking(self, tracking: Optional[TrackingOptions], context: ExecutionContext) -> Optional[str]:
        if tracking is None:
            return None
        try:
            execution = await tracking.repository.create(
                flow_id=tracking.flow_id,
                flow_name=tracking.flow_name,
                flow_version=tracking.flow_version,
                input=dict(context.variables),
                trigger=tracking.trigger,
            )
            return execution.id
        except Exception as e:
            logger.warning("Failed to create execution record", extra={"error": str(e)})
            return None

    async def _finish(self, tracking: Optional[TrackingOptions], context: ExecutionContext, report: RunReport) -> None:
        context.finalize()
        report.results = dict(context.results)
        report.variables = dict(context.variables)

        log_event(
            logger, "Flow execution finished", "INFO",
            execution_id=report.execution_id,
            state=report.state.value,
            nodes_executed=len(report.results),
            duration_ms=context.duration_ms
        )

        if tracking is None or report.execution_id is None:
            return
        try:
            await tracking.repository.complete(
                report.execution_id,
                list(report.results.values()),
                status=_execution_status(report.state),
                error=report.error,
                failed_node_id=report.failed_node_id,
            )
        except Exception as e:
            logger.warning(
                "Failed to complete execution record",
                extra={"execution_id": report.execution_id, "error": str(e)}
            )

    async def _send_update(self, callback: Optional[Callable], update_type: str, data: Dict[str, Any]):
        """Send real-time update via callback"""
        if callback:
            await callback({
                "type": update_type,
                **data
            })


def _execution_status(state: RunState) -> str:
    if state == RunState.COMPLETED:
        return "completed"
    if state == RunState.CANCELLED:
        return "cancelled"
    return "failed"
