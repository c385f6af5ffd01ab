# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Workflow Export Service

Portable .vflow documents:
- export: strip runtime-only keys, collect credential references, validate,
  refuse to export anything that looks like a hardcoded secret
- import: validate the schema version, drop orphaned edges, warn on cycles,
  return a new Flow with a fresh id
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from visualflow.core.errors import ValidationError
from visualflow.core.logging import get_service_logger
from visualflow.engine.graph import find_cycle_nodes
from visualflow.engine.models import FlowEdge, utc_now_iso
from visualflow.persistence.models import Flow, new_id

logger = get_service_logger("export")

EXPORT_VERSION = "1.0.0"
SCHEMA_VERSION = "v1"
SUPPORTED_SCHEMA_VERSIONS = [SCHEMA_VERSION]

RUNTIME_DATA_KEYS = ("__runtime", "__executionState", "__cachedResults", "__error")
UI_NODE_KEYS = ("selected", "dragging")

SECRET_PATTERNS = [
    ("OpenAI API Key", re.compile(r"sk-[a-zA-Z0-9]{32,}")),
    ("OpenAI Project API Key", re.compile(r"sk-proj-[a-zA-Z0-9_-]{32,}")),
    ("Anthropic API Key", re.compile(r"sk-ant-[a-zA-Z0-9_-]{32,}")),
    ("Google API Key", re.compile(r"AIza[a-zA-Z0-9_-]{35}")),
    ("Slack Token", re.compile(r"xoxb-[0-9]{10,13}-[0-9]{10,13}-[a-zA-Z0-9]{24,}")),
    ("GitHub Token", re.compile(r"ghp_[a-zA-Z0-9]{36}")),
    ("GitHub OAuth Token", re.compile(r"gho_[a-zA-Z0-9]{36}")),
    ("AWS Access Key", re.compile(r"AKIA[0-9A-Z]{16}")),
    ("Stripe API Key", re.compile(r"sk_live_[a-zA-Z0-9]{24,}")),
    ("Stripe Test Key", re.compile(r"sk_test_[a-zA-Z0-9]{24,}")),
    ("Twilio API Key", re.compile(r"SK[a-z0-9]{32}")),
    ("SendGrid API Key", re.compile(r"SG\.[a-zA-Z0-9_-]{22}\.[a-zA-Z0-9_-]{43}")),
    ("Bearer Token", re.compile(r"Bearer [a-zA-Z0-9_\-.=]{20,}")),
    ("JWT Token", re.compile(r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*")),
]


# Export document schema

class ExportPosition(BaseModel):
    x: float
    y: float


class ExportNode(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    type: Optional[str] = None
    position: ExportPosition
    data: Any = None


class ExportEdge(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    source: str
    target: str


class ExportViewport(BaseModel):
    x: float
    y: float
    zoom: float = Field(ge=0.1, le=10)


class ExportFlow(BaseModel):
    nodes: List[ExportNode]
    edges: List[ExportEdge]
    viewport: ExportViewport


class WorkflowMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = None
    name: str = Field(min_length=1)
    description: Optional[str] = None
    author: Optional[str] = None
    created_at: str = Field(alias="createdAt")
    updated_at: str = Field(alias="updatedAt")
    tags: List[str] = Field(default_factory=list)
    version: Optional[str] = None


class CredentialReference(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: str
    name: str
    used_in_nodes: List[str] = Field(default_factory=list, alias="usedInNodes")


class WorkflowSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timeout: Optional[int] = Field(default=300000, ge=0)
    execution_mode: Optional[Literal["sequential", "parallel", "mixed"]] = Field(
        default="sequential", alias="executionMode"
    )
    error_handling: Optional[Literal["stop", "continue", "fallback"]] = Field(
        default="stop", alias="errorHandling"
    )


class WorkflowExport(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: str = Field(pattern=r"^\d+\.\d+\.\d+$")
    schema_version: str = Field(alias="schemaVersion")
    meta: WorkflowMetadata
    flow: ExportFlow
    credentials: List[CredentialReference] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    variables: Optional[Dict[str, Any]] = None


@dataclass
class SecretMatch:
    type: str
    value: str
    location: str
    redacted: str


@dataclass
class ConnectionReport:
    orphaned_edges: List[str] = field(default_factory=list)
    cycle_node_ids: List[str] = field(default_factory=list)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycle_node_ids)

    @property
    def valid(self) -> bool:
        return not self.orphaned_edges and not self.has_cycles


def _clean_node(node: Dict[str, Any]) -> Dict[str, Any]:
    cleaned = {k: v for k, v in node.items() if k not in UI_NODE_KEYS}
    if isinstance(cleaned.get("data"), dict):
        cleaned["data"] = {k: v for k, v in cleaned["data"].items() if k not in RUNTIME_DATA_KEYS}
    cleaned.setdefault("position", {"x": 0, "y": 0})
    return cleaned


def _credential_references(nodes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    references: Dict[str, Dict[str, Any]] = {}
    for node in nodes:
        data = node.get("data") or {}
        credential_id = data.get("credentialId")
        if not credential_id:
            continue
        reference = references.setdefault(credential_id, {
            "id": credential_id,
            "type": data.get("credentialType") or "api-key",
            "name": data.get("credentialName") or "Credential",
            "usedInNodes": [],
        })
        reference["usedInNodes"].append(node["id"])
    return list(references.values())


def _validation_message(error: PydanticValidationError) -> str:
    return ", ".join(
        f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in error.errors()
    )


def validate_document(document: Dict[str, Any]) -> WorkflowExport:
    """Parse an export document; raises ValidationError listing every problem"""
    try:
        return WorkflowExport.model_validate(document)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid workflow format: {_validation_message(e)}")


def redact_secret(secret: str) -> str:
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}{'*' * min(len(secret) - 8, 20)}{secret[-4:]}"


def _secret_location(document: Dict[str, Any], secret: str) -> str:
    for node in (document.get("flow") or {}).get("nodes") or []:
        if secret in json.dumps(node.get("data"), default=str):
            return f"Node {node.get('id')} ({node.get('type') or 'unknown'})"
    for section, label in (("meta", "Workflow metadata"), ("settings", "Workflow settings"), ("variables", "Workflow variables")):
        if document.get(section) is not None and secret in json.dumps(document[section], default=str):
            return label
    return "Unknown location"


def scan_for_secrets(document: Dict[str, Any]) -> List[SecretMatch]:
    """Find strings that look like hardcoded API keys or tokens"""
    text = json.dumps(document, indent=2, default=str)
    matches = []
    for name, pattern in SECRET_PATTERNS:
        for match in pattern.finditer(text):
            value = match.group(0)
            matches.append(SecretMatch(
                type=name,
                value=value,
                location=_secret_location(document, value),
                redacted=redact_secret(value),
            ))
    return matches


def validate_connections(nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]]) -> ConnectionReport:
    """
    Check edge integrity.

    An edge is orphaned when either endpoint is not a node. Cycles are
    found among the remaining edges.
    """
    node_ids = [n.get("id") for n in nodes]
    known = set(node_ids)
    report = ConnectionReport()
    valid_edges = []
    for index, edge in enumerate(edges):
        if edge.get("source") not in known or edge.get("target") not in known:
            report.orphaned_edges.append(edge.get("id") or f"edge-{index}")
        else:
            valid_edges.append(FlowEdge(id=edge.get("id"), source=edge["source"], target=edge["target"]))

    report.cycle_node_ids = sorted(find_cycle_nodes(node_ids, valid_edges))
    return report


def export_workflow(
    flow: Flow,
    author: Optional[str] = None,
    settings: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Build the export document for a saved flow.

    Raises:
        ValidationError: the document fails schema validation, or it
            contains something that looks like a secret
    """
    content = flow.flow or {}
    nodes = [_clean_node(n) for n in content.get("nodes") or []]
    try:
        workflow_settings = WorkflowSettings.model_validate(settings or {})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid workflow settings: {_validation_message(e)}", field="settings")

    document = {
        "version": EXPORT_VERSION,
        "schemaVersion": SCHEMA_VERSION,
        "meta": {
            "id": flow.id,
            "name": flow.name,
            "description": flow.description,
            "author": author,
            "createdAt": flow.created_at,
            "updatedAt": flow.updated_at,
            "tags": list(flow.tags),
            "version": flow.version,
        },
        "flow": {
            "nodes": nodes,
            "edges": [
                {**e, "id": e.get("id") or f"e-{e.get('source')}-{e.get('target')}"}
                for e in content.get("edges") or []
            ],
            "viewport": content.get("viewport") or {"x": 0, "y": 0, "zoom": 1},
        },
        "credentials": _credential_references(nodes),
        "settings": workflow_settings.model_dump(by_alias=True, exclude_none=True),
    }
    document["meta"] = {k: v for k, v in document["meta"].items() if v is not None}

    validate_document(document)

    secrets = scan_for_secrets(document)
    if secrets:
        raise ValidationError(
            f"Found {len(secrets)} potential secret(s) in export. "
            "Please remove sensitive data before exporting.",
            field="flow",
            details={"secrets": [{"type": s.type, "location": s.location, "redacted": s.redacted} for s in secrets]}
        )

    logger.info(f"Exported flow {flow.id} ({len(nodes)} nodes)")
    return document


def import_workflow(document: Dict[str, Any]) -> Flow:
    """
    Turn an export document into a new, unsaved Flow.

    Orphaned edges are dropped; cycles are kept (the executor rejects
    them at run time) and logged.
    """
    parsed = validate_document(document)
    if parsed.schema_version not in SUPPORTED_SCHEMA_VERSIONS:
        raise ValidationError(
            f"Incompatible schema version: {parsed.schema_version}. "
            f"Supported versions: {', '.join(SUPPORTED_SCHEMA_VERSIONS)}",
            field="schemaVersion"
        )

    flow_document = document["flow"]
    nodes = list(flow_document["nodes"])
    edges = list(flow_document["edges"])

    report = validate_connections(nodes, edges)
    if report.orphaned_edges:
        logger.warning(f"Dropping {len(report.orphaned_edges)} orphaned edge(s) on import")
        orphaned = set(report.orphaned_edges)
        edges = [e for e in edges if e.get("id") not in orphaned]
    if report.has_cycles:
        logger.warning(f"Imported workflow contains circular dependencies: {report.cycle_node_ids}")

    now = utc_now_iso()
    return Flow(
        id=new_id(),
        name=parsed.meta.name,
        description=parsed.meta.description,
        tags=list(parsed.meta.tags),
        flow={"nodes": nodes, "edges": edges, "viewport": flow_document["viewport"]},
        created_at=now,
        updated_at=now,
    )
