# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Persisted document models.

Flow and Execution records as stored locally and remotely. Field names
are serialized in camelCase so existing stored documents load as-is.
"""

import platform
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict

from visualflow.engine.models import ExecutionResult, FlowGraph, utc_now_iso


def new_id() -> str:
    return str(uuid.uuid4())


def parse_iso(value: str) -> datetime:
    """ISO-8601 timestamp (with or without trailing Z) as an aware datetime"""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def empty_flow_content() -> Dict[str, Any]:
    return {"nodes": [], "edges": [], "viewport": {"x": 0, "y": 0, "zoom": 1}}


class PinLevel(str, Enum):
    NONE = "none"
    GLOBAL = "global"


class FlowStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"
    DEPRECATED = "deprecated"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Document(BaseModel):
    """Base for stored records: camelCase on the wire, unknown keys kept"""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    @classmethod
    def from_document(cls, document: Dict[str, Any]):
        return cls.model_validate(document)


class DeviceInfo(Document):
    """Host a flow was created or last modified on"""
    device_id: str = Field(alias="deviceId")
    hostname: Optional[str] = None
    os: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now_iso)


def current_device_info(device_id: str) -> DeviceInfo:
    return DeviceInfo(
        device_id=device_id,
        hostname=platform.node() or None,
        os=platform.system() or None,
    )


class VersionEntry(Document):
    version: str
    timestamp: str = Field(default_factory=utc_now_iso)
    changes: str = ""


class Flow(Document):
    """
    Saved flow.

    `flow` keeps the editor's raw graph document (positions and other
    editor-only keys included); use graph() for the typed view.
    """
    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    version: str = "1.0.0"
    version_history: List[VersionEntry] = Field(default_factory=list, alias="versionHistory")
    flow: Dict[str, Any] = Field(default_factory=empty_flow_content)
    tags: List[str] = Field(default_factory=list)
    status: FlowStatus = FlowStatus.DRAFT

    execution_count: int = Field(default=0, alias="executionCount")
    success_rate: float = Field(default=0, alias="successRate")
    avg_execution_time: Optional[int] = Field(default=None, alias="avgExecutionTime")
    last_executed_at: Optional[str] = Field(default=None, alias="lastExecutedAt")

    pin_level: PinLevel = Field(default=PinLevel.NONE, alias="pinLevel")
    pinned_at: Optional[str] = Field(default=None, alias="pinnedAt")
    pinned_by: Optional[str] = Field(default=None, alias="pinnedBy")

    created_at: str = Field(default_factory=utc_now_iso, alias="createdAt")
    updated_at: str = Field(default_factory=utc_now_iso, alias="updatedAt")
    last_accessed_at: Optional[str] = Field(default=None, alias="lastAccessedAt")
    created_on_device: Optional[DeviceInfo] = Field(default=None, alias="createdOnDevice")
    last_modified_on_device: Optional[DeviceInfo] = Field(default=None, alias="lastModifiedOnDevice")

    deleted: bool = False
    deleted_at: Optional[str] = Field(default=None, alias="deletedAt")

    def graph(self) -> FlowGraph:
        return FlowGraph.model_validate(self.flow)

    def node_label(self, node_id: str) -> Optional[str]:
        """Display name of a node: its title, else its type"""
        for node in self.flow.get("nodes") or []:
            if node.get("id") == node_id:
                data = node.get("data") or {}
                return data.get("title") or node.get("type")
        return None


class Execution(Document):
    """One run of a flow"""
    id: str = Field(default_factory=new_id)
    flow_id: str = Field(alias="flowId")
    flow_name: str = Field(default="", alias="flowName")
    flow_version: str = Field(default="1.0.0", alias="flowVersion")
    status: ExecutionStatus = ExecutionStatus.RUNNING
    trigger: str = "manual"
    started_at: str = Field(default_factory=utc_now_iso, alias="startedAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    duration: Optional[int] = None  # milliseconds
    input: Optional[Dict[str, Any]] = None
    results: List[ExecutionResult] = Field(default_factory=list)
    tokens_used: Optional[int] = Field(default=None, alias="tokensUsed")
    error: Optional[str] = None
    failed_node_id: Optional[str] = Field(default=None, alias="failedNodeId")
    failed_node_name: Optional[str] = Field(default=None, alias="failedNodeName")
    executed_on_device: Optional[DeviceInfo] = Field(default=None, alias="executedOnDevice")

    deleted: bool = False
    deleted_at: Optional[str] = Field(default=None, alias="deletedAt")


class RecentFlow(Document):
    id: str
    name: str
    last_opened: str = Field(default_factory=utc_now_iso, alias="lastOpened")
