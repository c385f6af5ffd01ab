# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Node Dispatcher

Routes each node to the handler registered for its NodeType. Every
NodeType has exactly one handler; the registry is checked when the
dispatcher is built.

Handlers signal capability failures with NodeExecutionError. The
dispatcher turns any failure into ExecutionResult.error, so nothing but
cancellation escapes execute().
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Type

import httpx

from visualflow.core.config import get_config
from visualflow.core.errors import ConfigurationError, sanitize_error_for_user
from visualflow.core.logging import get_logger
from .models import FlowNode, FlowEdge, NodeType, ExecutionResult, ResultMetadata
from .context import ExecutionContext
from .capabilities import LLMProvider, CodeSandbox, ProviderRequest, ProviderError
from .exceptions import NodeExecutionError, ExecutionCancelled
from .interpolation import substitute
from .graph import incoming_edges
from .structured import stringify

logger = get_logger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH")


@dataclass
class Capabilities:
    """Collaborators shared by all handlers of one dispatcher"""
    provider: Optional[LLMProvider] = None
    sandbox: Optional[CodeSandbox] = None
    http_client: Optional[httpx.AsyncClient] = None
    webhook_timeout_ms: int = 30000


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class NodeHandler(ABC):
    """Runs one kind of node"""

    def __init__(self, capabilities: Capabilities):
        self.capabilities = capabilities

    @abstractmethod
    async def handle(
        self,
        node: FlowNode,
        context: ExecutionContext,
        edges: List[FlowEdge]
    ) -> ExecutionResult:
        ...


class LLMProviderHandler(NodeHandler):
    """Interpolates prompts and calls the provider capability"""

    default_provider = "openai"
    agent_mode = False

    async def handle(self, node, context, edges):
        provider = self.capabilities.provider
        if provider is None:
            raise NodeExecutionError(node.id, "No LLM provider configured")

        data = node.data
        system_prompt = data.get("systemPrompt")
        request = ProviderRequest(
            provider=data.get("provider") or self.default_provider,
            model=data.get("model"),
            system_prompt=substitute(system_prompt, context) if system_prompt else None,
            user_prompt=substitute(data.get("userPrompt") or "", context),
            temperature=data.get("temperature"),
            max_tokens=data.get("maxTokens"),
            enabled_tools=data.get("enabledTools") or [],
            output_format=data.get("outputFormat"),
            json_schema=data.get("jsonSchema"),
            csv_fields=data.get("csvFields"),
            agent_mode=self.agent_mode,
        )

        started = time.monotonic()
        try:
            response = await provider.invoke(request)
        except ProviderError as e:
            raise NodeExecutionError(node.id, str(e) or "Execution failed")

        return ExecutionResult(
            node_id=node.id,
            output=response.text,
            trace_id=response.trace_id,
            metadata=ResultMetadata(
                model=response.model or request.model,
                tokens_used=response.total_tokens,
                duration=_elapsed_ms(started),
                structured_data=response.structured_data,
            ),
        )


class ToolAgentHandler(LLMProviderHandler):
    """Same call path as an LLM node with tool use switched on"""

    default_provider = "anthropic"
    agent_mode = True


class CodeHandler(NodeHandler):
    """Runs node code in the sandbox against variables plus prior outputs"""

    async def handle(self, node, context, edges):
        sandbox = self.capabilities.sandbox
        if sandbox is None:
            raise NodeExecutionError(node.id, "No code sandbox configured")

        language = node.data.get("language") or "python"
        started = time.monotonic()
        try:
            value = await sandbox.run(node.data.get("code") or "", context.code_context(), language)
        except asyncio.TimeoutError:
            raise NodeExecutionError(node.id, "Code execution timed out")
        except (ExecutionCancelled, asyncio.CancelledError):
            raise
        except Exception as e:
            raise NodeExecutionError(node.id, sanitize_error_for_user(e))

        return ExecutionResult(
            node_id=node.id,
            output="" if value is None else stringify(value),
            metadata=ResultMetadata(duration=_elapsed_ms(started), runtime=language),
        )


class WebhookOutHandler(NodeHandler):
    """Outbound HTTP call with interpolated URL, headers, auth and body"""

    async def handle(self, node, context, edges):
        data = node.data
        method = (data.get("httpMethod") or "POST").upper()
        timeout_ms = data.get("timeoutMs") or self.capabilities.webhook_timeout_ms

        if not data.get("targetUrl"):
            raise NodeExecutionError(node.id, "Target URL is required")

        target_url = substitute(data["targetUrl"], context)
        headers = {key: substitute(str(value), context) for key, value in (data.get("headers") or {}).items()}

        auth_type = data.get("authType")
        auth_token = data.get("authToken")
        if auth_token and auth_type == "bearer":
            headers["Authorization"] = f"Bearer {substitute(auth_token, context)}"
        elif auth_token and auth_type == "api-key":
            headers["X-API-Key"] = substitute(auth_token, context)

        body = None
        if data.get("bodyTemplate") and method in BODY_METHODS:
            body = substitute(data["bodyTemplate"], context)
            if not any(key.lower() == "content-type" for key in headers):
                headers["Content-Type"] = "application/json"

        started = time.monotonic()
        timeout = timeout_ms / 1000
        client = self.capabilities.http_client
        owns_client = client is None
        if owns_client:
            client = httpx.AsyncClient()

        try:
            response = await asyncio.wait_for(
                client.request(method, target_url, headers=headers, content=body, timeout=timeout),
                timeout=timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise NodeExecutionError(node.id, f"Request timeout after {timeout_ms}ms")
        except httpx.HTTPError as e:
            raise NodeExecutionError(node.id, str(e) or "Webhook execution failed")
        finally:
            if owns_client:
                await client.aclose()

        output = response.text
        try:
            output = json.dumps(json.loads(output), indent=2, ensure_ascii=False)
        except ValueError:
            pass

        return ExecutionResult(
            node_id=node.id,
            output=output,
            metadata=ResultMetadata(
                duration=_elapsed_ms(started),
                statusCode=response.status_code,
                statusText=response.reason_phrase,
                targetUrl=target_url,
                httpMethod=method,
                outputVariable=node.output_variable,
            ),
        )


class WebhookInHandler(NodeHandler):
    """Inbound webhooks are fed out-of-band; surface the payload already in context"""

    async def handle(self, node, context, edges):
        payload = context.variables.get("webhook-payload", "")
        return ExecutionResult(
            node_id=node.id,
            output=payload,
            metadata=ResultMetadata(mode="stub", hasPayload=bool(payload)),
        )


class NotesHandler(NodeHandler):
    """
    Notes never fail for lack of input.

    varMode on: interpolate content with incoming outputs as {{1}}, {{2}}, ...
    and by source node id. varMode off: forward the first incoming output.
    """

    async def handle(self, node, context, edges):
        incoming = incoming_edges(node.id, edges)

        if not node.data.get("varMode"):
            if not incoming:
                return ExecutionResult(
                    node_id=node.id,
                    output="",
                    metadata=ResultMetadata(mode="passthrough", hasInput=False),
                )
            source = incoming[0].source
            output = context.get_output(source) or ""
            return ExecutionResult(
                node_id=node.id,
                output=output,
                metadata=ResultMetadata(
                    mode="passthrough",
                    hasInput=True,
                    inputNodeId=source,
                    inputLength=len(output),
                ),
            )

        inputs: Dict[str, str] = {}
        for index, edge in enumerate(incoming, start=1):
            output = context.get_output(edge.source)
            if output is not None:
                inputs[str(index)] = output
                inputs[edge.source] = output

        content = node.data.get("content") or ""
        processed = substitute(content, context.with_variables(inputs))
        return ExecutionResult(
            node_id=node.id,
            output=processed,
            metadata=ResultMetadata(
                mode="processing",
                originalLength=len(content),
                processedLength=len(processed),
                inputCount=len(incoming),
            ),
        )


class UnsupportedNodeHandler(NodeHandler):
    async def handle(self, node, context, edges):
        node_type = node.data.get("originalType") or node.type.value
        raise NodeExecutionError(node.id, f"Unsupported node type: {node_type}")


HANDLER_REGISTRY: Dict[NodeType, Type[NodeHandler]] = {
    NodeType.LLM_PROVIDER: LLMProviderHandler,
    NodeType.TOOL_AGENT: ToolAgentHandler,
    NodeType.CODE: CodeHandler,
    NodeType.WEBHOOK_OUT: WebhookOutHandler,
    NodeType.WEBHOOK_IN: WebhookInHandler,
    NodeType.NOTES: NotesHandler,
    NodeType.OTHER: UnsupportedNodeHandler,
}


class NodeDispatcher:
    """
    Executes single nodes.

    Args:
        provider: LLM capability for llm-provider and tool-agent nodes
        sandbox: code capability; code nodes fail without one
        http_client: shared client for webhook-out nodes
        registry: NodeType -> handler class, must cover every NodeType
    """

    def __init__(
        self,
        provider: Optional[LLMProvider] = None,
        sandbox: Optional[CodeSandbox] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        registry: Optional[Dict[NodeType, Type[NodeHandler]]] = None,
        webhook_timeout_ms: Optional[int] = None
    ):
        registry = registry or HANDLER_REGISTRY
        missing = [t.value for t in NodeType if t not in registry]
        if missing:
            raise ConfigurationError(f"No handler registered for node types: {missing}")

        self.capabilities = Capabilities(
            provider=provider,
            sandbox=sandbox,
            http_client=http_client,
            webhook_timeout_ms=webhook_timeout_ms or get_config().webhook_timeout_ms,
        )
        self.handlers: Dict[NodeType, NodeHandler] = {
            node_type: handler_cls(self.capabilities)
            for node_type, handler_cls in registry.items()
        }

    async def execute(
        self,
        node: FlowNode,
        context: ExecutionContext,
        edges: List[FlowEdge]
    ) -> ExecutionResult:
        """Run one node. Failures come back as ExecutionResult.error."""
        context.cancel_token.raise_if_cancelled()
        handler = self.handlers[node.type]
        started = time.monotonic()

        try:
            return await handler.handle(node, context, edges)
        except (ExecutionCancelled, asyncio.CancelledError):
            raise
        except NodeExecutionError as e:
            message = e.message
        except Exception as e:
            logger.exception("Unexpected handler failure", extra={"node_id": node.id})
            message = sanitize_error_for_user(e, include_type=False)

        logger.warning("Node failed", extra={"node_id": node.id, "node_type": node.type.value, "error": message})
        return ExecutionResult(
            node_id=node.id,
            output="",
            error=message,
            metadata=ResultMetadata(duration=_elapsed_ms(started)),
        )
