# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Backend synchronization: remote client, merge rules, upload queue,
save/history services and autosave.
"""

from .remote import RemoteFlowClient
from .merge import merge_flows
from .queue import SyncQueue, SyncOutcome, SyncStatus
from .service import FlowSyncService, ExecutionHistoryService, FlowSaveService
from .autosave import AutosaveController, AutosaveState

__all__ = [
    "RemoteFlowClient",
    "merge_flows",
    "SyncQueue",
    "SyncOutcome",
    "SyncStatus",
    "FlowSyncService",
    "ExecutionHistoryService",
    "FlowSaveService",
    "AutosaveController",
    "AutosaveState",
]
