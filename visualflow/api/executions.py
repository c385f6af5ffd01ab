# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Execution API Routes

Submit-then-poll execution of flow graphs:
- POST /api/executions starts a run in the background
- GET /api/executions/{id} returns its status document
"""

from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException

from visualflow.core.config import Config
from visualflow.core.dependencies import get_current_config, get_execution_service
from visualflow.core.errors import NotFoundError
from visualflow.core.logging import get_api_logger
from visualflow.engine.async_tracker import ExecutionStatusUpdate
from visualflow.engine.models import ExecutionRequest
from visualflow.engine.token_estimator import validate_flow_token_limits
from visualflow.services.execution_service import ExecutionService

router = APIRouter(prefix="/api/executions", tags=["executions"])
logger = get_api_logger()


def status_document(update: ExecutionStatusUpdate) -> Dict[str, Any]:
    return update.model_dump(by_alias=True, exclude_none=True, mode="json")


@router.post("", status_code=202)
async def submit_execution(
    request: ExecutionRequest,
    service: ExecutionService = Depends(get_execution_service),
    config: Config = Depends(get_current_config)
) -> Dict[str, Any]:
    """Start executing a graph; poll GET /api/executions/{id} for the outcome"""
    violations = validate_flow_token_limits(request.nodes, request.variables, config.model_catalog)
    for violation in violations:
        logger.warning(
            f"Node {violation.node_id} prompt (~{violation.estimated_tokens} tokens) "
            f"exceeds {violation.model} context window ({violation.limit})"
        )

    execution_id = await service.submit(request)
    response: Dict[str, Any] = {"id": execution_id, "status": "running"}
    if violations:
        response["warnings"] = [asdict(v) for v in violations]
    return response


@router.get("/{execution_id}")
async def get_execution(
    execution_id: str,
    service: ExecutionService = Depends(get_execution_service)
) -> Dict[str, Any]:
    """Current status, results so far, error and retry hint"""
    try:
        return status_document(service.status(execution_id))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    service: ExecutionService = Depends(get_execution_service)
) -> Dict[str, Any]:
    """Stop a run before its next node"""
    try:
        return status_document(service.cancel(execution_id))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
