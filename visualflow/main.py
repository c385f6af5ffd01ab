# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Visual Flow API - executes flow graphs and stores flows/executions.

Run with:
    uvicorn visualflow.main:create_app --factory --host 0.0.0.0 --port 3000
"""
# Load environment variables from .env file (local development)
from pathlib import Path as _PathForEnv

from dotenv import load_dotenv

_env_path = _PathForEnv(__file__).parent.parent / ".env"
if _env_path.exists():
    load_dotenv(_env_path)

from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from visualflow import __version__
from visualflow.api import executions, flows
from visualflow.core.config import Config, get_config
from visualflow.core.errors import VisualFlowError
from visualflow.core.logging import get_logger
from visualflow.engine.capabilities import CodeSandbox, HttpLLMProvider, SubprocessSandbox
from visualflow.engine.dispatcher import NodeDispatcher
from visualflow.engine.executor import FlowExecutor
from visualflow.persistence.repository import ExecutionRepository, FlowRepository
from visualflow.persistence.store import DocumentStore, open_store
from visualflow.services.execution_service import ExecutionService

logger = get_logger(__name__)


def build_executor(config: Config, http_client: httpx.AsyncClient) -> FlowExecutor:
    """Executor wired to the LLM backend and a shared HTTP client, plus a code sandbox when one is configured"""
    sandbox: Optional[CodeSandbox] = None
    if config.code_sandbox == "subprocess":
        sandbox = SubprocessSandbox(timeout=config.code_timeout)
    dispatcher = NodeDispatcher(
        provider=HttpLLMProvider(base_url=config.backend_url, client=http_client),
        sandbox=sandbox,
        http_client=http_client,
        webhook_timeout_ms=config.webhook_timeout_ms,
    )
    return FlowExecutor(dispatcher)


def create_app(
    config: Optional[Config] = None,
    store: Optional[DocumentStore] = None,
    executor: Optional[FlowExecutor] = None
) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Defaults to the process-wide config
        store: Defaults to the store at config.storage_path
        executor: Defaults to build_executor(); tests inject one with fake capabilities
    """
    config = config or get_config()
    store = store if store is not None else open_store(config.storage_path)

    http_client = httpx.AsyncClient(timeout=config.http_timeout_long)
    flow_repository = FlowRepository(store, device_id=config.device_id)
    execution_repository = ExecutionRepository(store, flow_repository)
    execution_service = ExecutionService(
        executor or build_executor(config, http_client),
        executions=execution_repository,
        flows=flow_repository,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Visual Flow API {__version__} starting (storage: {config.storage_path})")
        deleted = await execution_repository.cleanup_old()
        if deleted:
            logger.info(f"Retention cleanup removed {deleted} old executions")
        yield
        await execution_service.shutdown()
        await http_client.aclose()
        logger.info("Visual Flow API stopped")

    app = FastAPI(
        title="Visual Flow API",
        description="Flow execution and storage for the visual flow editor",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Runtime objects for dependency injection
    app.state.config = config
    app.state.store = store
    app.state.flows = flow_repository
    app.state.executions = execution_repository
    app.state.execution_service = execution_service

    app.include_router(flows.router)
    app.include_router(executions.router)

    @app.exception_handler(VisualFlowError)
    async def visualflow_error_handler(request: Request, exc: VisualFlowError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/health")
    async def health():
        """Health check"""
        return {"status": "healthy", "service": "visualflow", "version": __version__}

    return app


if __name__ == "__main__":
    import uvicorn

    _config = get_config()
    uvicorn.run(create_app(_config), host=_config.service_host, port=_config.service_port)
