# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Flow Execution Engine

Ordered, sequential execution of node/edge graphs with variable
propagation and all-stop error handling.
"""

from .models import FlowNode, FlowEdge, FlowGraph, NodeType, ExecutionResult
from .context import ExecutionContext, CancellationToken
from .executor import FlowExecutor, RunReport, RunState, TrackingOptions
from .dispatcher import NodeDispatcher
from .exceptions import FlowEngineException, GraphCycleError, ExecutionCancelled

__all__ = [
    "FlowNode",
    "FlowEdge",
    "FlowGraph",
    "NodeType",
    "ExecutionResult",
    "ExecutionContext",
    "CancellationToken",
    "FlowExecutor",
    "RunReport",
    "RunState",
    "TrackingOptions",
    "NodeDispatcher",
    "FlowEngineException",
    "GraphCycleError",
    "ExecutionCancelled",
]
