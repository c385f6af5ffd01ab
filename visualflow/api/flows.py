# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Flow API Routes

Handles flow management:
- CRUD for saved flows (delete is soft)
- Execution history per flow
- Export to / import from portable workflow documents
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from visualflow.core.dependencies import get_execution_repository, get_flow_repository
from visualflow.core.errors import NotFoundError, ValidationError
from visualflow.persistence.repository import ExecutionRepository, FlowRepository
from visualflow.services.export_service import export_workflow, import_workflow

router = APIRouter(prefix="/api/flows", tags=["flows"])

# Editor/sync fields accepted on create besides name, flow, description and tags
CREATE_PASSTHROUGH_FIELDS = ("version", "status", "pinLevel", "pinnedAt", "pinnedBy")


async def _active_flow(flows: FlowRepository, flow_id: str):
    record = await flows.get(flow_id)
    if record is None or record.deleted:
        raise NotFoundError("Flow", flow_id)
    return record


@router.get("")
async def list_flows(
    limit: int = Query(default=1000, ge=1),
    offset: int = Query(default=0, ge=0),
    search: Optional[str] = None,
    flows: FlowRepository = Depends(get_flow_repository)
) -> Dict[str, Any]:
    """List non-deleted flows, most recently updated first"""
    records = await flows.search(search) if search else await flows.list_active(newest_first=True)
    page = records[offset:offset + limit]
    return {
        "flows": [r.to_document() for r in page],
        "total": len(records),
        "limit": limit,
        "offset": offset,
    }


@router.post("", status_code=201)
async def create_flow(
    body: Dict[str, Any] = Body(...),
    flows: FlowRepository = Depends(get_flow_repository)
) -> Dict[str, Any]:
    """Create a flow; an `id` in the body is kept when it is not taken"""
    name = body.get("name")
    if not name:
        raise HTTPException(status_code=400, detail="Flow name is required")

    flow_id = body.get("id")
    if flow_id and await flows.get(flow_id) is not None:
        raise HTTPException(status_code=409, detail=f"Flow already exists: {flow_id}")

    extra = {}
    for key in CREATE_PASSTHROUGH_FIELDS:
        if body.get(key) is not None:
            extra[key] = body[key]
    try:
        record = await flows.create(
            name,
            body.get("flow"),
            description=body.get("description"),
            tags=body.get("tags"),
            flow_id=flow_id,
            **extra
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return record.to_document()


@router.get("/{flow_id}")
async def get_flow(
    flow_id: str,
    flows: FlowRepository = Depends(get_flow_repository)
) -> Dict[str, Any]:
    try:
        return (await _active_flow(flows, flow_id)).to_document()
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.put("/{flow_id}")
async def update_flow(
    flow_id: str,
    changes: Dict[str, Any] = Body(...),
    flows: FlowRepository = Depends(get_flow_repository)
) -> Dict[str, Any]:
    """Partial update with stored (camelCase) field names"""
    try:
        await _active_flow(flows, flow_id)
        description = changes.pop("changeDescription", None)
        record = await flows.update(flow_id, changes, change_description=description)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return record.to_document()


@router.delete("/{flow_id}")
async def delete_flow(
    flow_id: str,
    flows: FlowRepository = Depends(get_flow_repository)
) -> Dict[str, str]:
    """Soft delete: the record is kept with `deleted` set"""
    try:
        await _active_flow(flows, flow_id)
        await flows.soft_delete(flow_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "deleted", "id": flow_id}


@router.get("/{flow_id}/executions")
async def list_flow_executions(
    flow_id: str,
    limit: Optional[int] = Query(default=None, ge=1),
    flows: FlowRepository = Depends(get_flow_repository),
    executions: ExecutionRepository = Depends(get_execution_repository)
) -> Dict[str, List[Dict[str, Any]]]:
    """Execution history, most recent first"""
    if await flows.get(flow_id) is None:
        raise HTTPException(status_code=404, detail=str(NotFoundError("Flow", flow_id)))
    records = await executions.list_for_flow(flow_id, limit=limit)
    return {"executions": [e.to_document() for e in records]}


@router.get("/{flow_id}/export")
async def export_flow(
    flow_id: str,
    author: Optional[str] = None,
    flows: FlowRepository = Depends(get_flow_repository)
) -> Dict[str, Any]:
    try:
        return export_workflow(await _active_flow(flows, flow_id), author=author)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())


@router.post("/import", status_code=201)
async def import_flow(
    document: Dict[str, Any] = Body(...),
    flows: FlowRepository = Depends(get_flow_repository)
) -> Dict[str, Any]:
    """Create a new flow from an export document"""
    try:
        imported = import_workflow(document)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    record = await flows.create(
        imported.name,
        imported.flow,
        description=imported.description,
        tags=imported.tags,
        flow_id=imported.id,
    )
    return record.to_document()
