# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Local persistence for flows, executions and session state.
"""

from .models import Flow, Execution, ExecutionStatus, PinLevel, DeviceInfo
from .store import DocumentStore, InMemoryDocumentStore, JsonFileDocumentStore, open_store
from .repository import FlowRepository, ExecutionRepository
from .session import SessionState

__all__ = [
    "Flow",
    "Execution",
    "ExecutionStatus",
    "PinLevel",
    "DeviceInfo",
    "DocumentStore",
    "InMemoryDocumentStore",
    "JsonFileDocumentStore",
    "open_store",
    "FlowRepository",
    "ExecutionRepository",
    "SessionState",
]
