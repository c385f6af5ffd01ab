# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Flow Engine Exceptions

Custom exceptions for the flow execution engine.
"""

from typing import Iterable


class FlowEngineException(Exception):
    """Base exception for the flow engine"""
    pass


class GraphCycleError(FlowEngineException):
    """Nodes cannot be put in a total order"""
    def __init__(self, node_ids: Iterable[str], field: str = "edges"):
        self.node_ids = sorted(node_ids)
        self.field = field
        self.message = f"Cycle detected in flow graph involving nodes: {self.node_ids}"
        super().__init__(self.message)


class NodeExecutionError(FlowEngineException):
    """A node's capability failed. Captured into the node result, never raised past the dispatcher"""
    def __init__(self, node_id: str, message: str, context: dict = None):
        self.node_id = node_id
        self.message = message
        self.context = context or {}
        super().__init__(message)


class StructuredOutputParseError(FlowEngineException):
    """JSON/CSV output could not be flattened into variables"""
    def __init__(self, node_id: str, output_format: str, reason: str):
        self.node_id = node_id
        self.output_format = output_format
        super().__init__(f"Node '{node_id}' produced unparseable {output_format} output: {reason}")


class ExecutionCancelled(FlowEngineException):
    """Run was abandoned by its caller"""
    def __init__(self, reason: str = "Execution cancelled"):
        self.reason = reason
        super().__init__(reason)
