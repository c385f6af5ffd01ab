# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
External capabilities used by node handlers.

- LLMProvider: runs one prompt against a model (wire formats live behind it)
- CodeSandbox: runs user code against a context object
"""

import ast
import asyncio
import json
import sys
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set

import httpx
from pydantic import BaseModel, Field, ConfigDict

from visualflow.core.config import get_config
from visualflow.core.logging import get_logger

logger = get_logger(__name__)


class ProviderError(Exception):
    """Provider call failed; the message is shown to the user as the node error"""
    pass


class ProviderRequest(BaseModel):
    """Single prompt invocation"""
    model_config = ConfigDict(populate_by_name=True)

    provider: str
    model: Optional[str] = None
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    user_prompt: str = Field(default="", alias="userPrompt")
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens")
    enabled_tools: List[str] = Field(default_factory=list, alias="enabledTools")
    output_format: Optional[str] = Field(default=None, alias="outputFormat")
    json_schema: Optional[Any] = Field(default=None, alias="jsonSchema")
    csv_fields: Optional[Any] = Field(default=None, alias="csvFields")
    agent_mode: bool = Field(default=False, alias="agentMode")


class ProviderResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    model: Optional[str] = None
    total_tokens: Optional[int] = Field(default=None, alias="totalTokens")
    structured_data: Optional[Any] = Field(default=None, alias="structuredData")
    trace_id: Optional[str] = Field(default=None, alias="traceId")


class LLMProvider(ABC):
    """Provider-dispatch interface"""

    @abstractmethod
    async def invoke(self, request: ProviderRequest) -> ProviderResponse:
        """Run the request. Raises ProviderError on failure."""
        ...


class HttpLLMProvider(LLMProvider):
    """
    Provider backed by the execution backend's node endpoint.

    POSTs the request to `{backend_url}/api/execute/node` and reads
    `{"result": {"text", "model", "usage": {"totalTokens"}, ...}}`.
    """

    def __init__(self, base_url: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        config = get_config()
        self.base_url = (base_url or config.backend_url).rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=config.http_timeout_long)

    async def invoke(self, request: ProviderRequest) -> ProviderResponse:
        payload = request.model_dump(by_alias=True, exclude_none=True)
        try:
            response = await self.client.post(f"{self.base_url}/api/execute/node", json=payload)
        except httpx.HTTPError as e:
            logger.warning("Provider request failed", extra={"provider": request.provider, "error": str(e)})
            raise ProviderError(str(e) or e.__class__.__name__)

        if response.status_code >= 400:
            raise ProviderError(self._error_message(response))

        try:
            body = response.json()
        except ValueError:
            raise ProviderError("Provider returned a non-JSON response")

        result = body.get("result") or {}
        usage = result.get("usage") or {}
        return ProviderResponse(
            text=result.get("text") or "",
            model=result.get("model") or request.model,
            total_tokens=usage.get("totalTokens"),
            structured_data=result.get("structuredData"),
            trace_id=result.get("traceId") or body.get("traceId"),
        )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get("error") or "Execution failed"
        except ValueError:
            return f"Execution failed (HTTP {response.status_code})"

    async def close(self):
        await self.client.aclose()


class CodeSandbox(ABC):
    """Code-execution capability"""

    @abstractmethod
    async def run(self, code: str, context: Dict[str, str], language: str = "python") -> Any:
        """Run code with `context` in scope and return its value. May raise."""
        ...


class CodeExecutionError(Exception):
    """User code exited with an error; the message is its last stderr line"""
    pass


RESULT_MARKER = "__visualflow_result__"

SCRIPT_PRELUDE = (
    "import json as _vf_json, sys as _vf_sys\n"
    "context = _vf_json.loads(_vf_sys.stdin.read())\n"
    "result = None\n"
)

SCRIPT_EPILOGUE = f"\nprint({RESULT_MARKER!r} + _vf_json.dumps(result, default=str))\n"


def build_script(code: str) -> str:
    """
    Wrap node code into a standalone script.

    The code sees the run context as `context`. Its value is the last
    expression statement, or whatever it assigns to `result`.
    """
    tree = ast.parse(code, mode="exec")
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        tail = tree.body.pop()
        tree.body.append(ast.Assign(targets=[ast.Name(id="result", ctx=ast.Store())], value=tail.value))
    body = ast.unparse(ast.fix_missing_locations(tree))
    return SCRIPT_PRELUDE + body + SCRIPT_EPILOGUE


class SubprocessSandbox(CodeSandbox):
    """
    Runs Python node code in a separate interpreter.

    The child runs in isolated mode (`-I`) and is killed when it outlives
    `timeout`. It still has the server's user and filesystem, so enable it
    only where everyone who can submit flows is trusted.
    """

    def __init__(self, timeout: float = 30.0, python: Optional[str] = None):
        self.timeout = timeout
        self.python = python or sys.executable
        self.active: Set[asyncio.subprocess.Process] = set()

    async def run(self, code: str, context: Dict[str, str], language: str = "python") -> Any:
        if language != "python":
            raise ValueError(f"Unsupported language: {language}")

        script = build_script(code)
        process = await asyncio.create_subprocess_exec(
            self.python, "-I", "-c", script,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self.active.add(process)
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(json.dumps(context).encode()),
                timeout=self.timeout
            )
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()
                logger.warning("Killed code node process", extra={"pid": process.pid})
            self.active.discard(process)

        if process.returncode != 0:
            lines = [line for line in stderr.decode(errors="replace").splitlines() if line.strip()]
            raise CodeExecutionError(lines[-1] if lines else f"exit code {process.returncode}")

        for line in reversed(stdout.decode(errors="replace").splitlines()):
            if line.startswith(RESULT_MARKER):
                return json.loads(line[len(RESULT_MARKER):])
        raise CodeExecutionError("Code produced no result")
