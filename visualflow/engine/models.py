# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Flow Engine Models

Pydantic models for flow graphs and node execution results.
Stored documents keep the editor's camelCase field names.
"""

from enum import Enum
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator


class NodeType(str, Enum):
    """Closed set of node kinds the dispatcher knows how to run"""
    LLM_PROVIDER = "llm-provider"
    TOOL_AGENT = "tool-agent"
    CODE = "code"
    WEBHOOK_IN = "webhook-in"
    WEBHOOK_OUT = "webhook-out"
    NOTES = "notes"
    OTHER = "other"


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"
    CSV = "csv"


# Editor type names -> (node type, data key to default, default value)
LEGACY_NODE_TYPES: Dict[str, tuple] = {
    "openai": (NodeType.LLM_PROVIDER, "provider", "openai"),
    "anthropic": (NodeType.LLM_PROVIDER, "provider", "anthropic"),
    "gemini": (NodeType.LLM_PROVIDER, "provider", "gemini"),
    "perplexity": (NodeType.LLM_PROVIDER, "provider", "perplexity"),
    "agent": (NodeType.TOOL_AGENT, None, None),
    "toolAugmentedLLM": (NodeType.TOOL_AGENT, None, None),
    "python": (NodeType.CODE, "language", "python"),
    "javascript": (NodeType.CODE, "language", "javascript"),
    "webhookIn": (NodeType.WEBHOOK_IN, None, None),
    "webhookOut": (NodeType.WEBHOOK_OUT, None, None),
}


def normalize_node_type(raw_type: Optional[str], data: Dict[str, Any]) -> tuple:
    """
    Map a raw type string onto NodeType.

    Returns (node_type, data). Provider and language hints carried by
    editor type names are copied into data when data doesn't set them.
    """
    if isinstance(raw_type, NodeType):
        return raw_type, data

    try:
        return NodeType(raw_type), data
    except ValueError:
        pass

    legacy = LEGACY_NODE_TYPES.get(raw_type)
    if legacy is None:
        return NodeType.OTHER, {**data, "originalType": raw_type}

    node_type, key, value = legacy
    if key and not data.get(key):
        data = {**data, key: value}
    return node_type, data


class FlowNode(BaseModel):
    """Single unit of work in a flow graph"""
    model_config = ConfigDict(frozen=True)

    id: str
    type: NodeType = NodeType.OTHER
    data: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize_type(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        data = values.get("data") or {}
        node_type, data = normalize_node_type(values.get("type"), data)
        return {**values, "type": node_type, "data": data}

    @property
    def output_variable(self) -> str:
        """Variable name the node's output is published under"""
        return self.data.get("outputVariable") or self.id

    @property
    def output_format(self) -> Optional[OutputFormat]:
        try:
            return OutputFormat(self.data.get("outputFormat"))
        except ValueError:
            return None

    @property
    def label(self) -> str:
        return self.data.get("label") or self.data.get("name") or self.id


class FlowEdge(BaseModel):
    """Directed dependency: target runs after source"""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    source: str
    target: str


class Viewport(BaseModel):
    x: float = 0
    y: float = 0
    zoom: float = 1


class FlowGraph(BaseModel):
    """Editor graph document (nodes, edges, viewport)"""
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)
    viewport: Viewport = Field(default_factory=Viewport)


class ResultMetadata(BaseModel):
    """Per-node metadata; handlers may attach extra keys"""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    model: Optional[str] = None
    tokens_used: Optional[int] = Field(default=None, alias="tokensUsed")
    duration: Optional[int] = None  # milliseconds
    structured_data: Optional[Any] = Field(default=None, alias="structuredData")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ExecutionResult(BaseModel):
    """Outcome of exactly one executed node"""
    model_config = ConfigDict(populate_by_name=True)

    node_id: str = Field(alias="nodeId")
    output: str = ""
    error: Optional[str] = None
    executed_at: str = Field(default_factory=utc_now_iso, alias="executedAt")
    trace_id: Optional[str] = Field(default=None, alias="traceId")
    metadata: Optional[ResultMetadata] = None

    @property
    def failed(self) -> bool:
        return bool(self.error)

    def to_document(self) -> Dict[str, Any]:
        """Stored/serialized shape with camelCase keys"""
        return self.model_dump(by_alias=True, exclude_none=True)


class ExecutionRequest(BaseModel):
    """Graph submission for server-side execution"""
    nodes: List[FlowNode]
    edges: List[FlowEdge] = Field(default_factory=list)
    variables: Dict[str, str] = Field(default_factory=dict)
    flow_id: Optional[str] = Field(default=None, alias="flowId")

    model_config = ConfigDict(populate_by_name=True)
