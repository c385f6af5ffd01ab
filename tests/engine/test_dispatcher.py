# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Tests for NodeDispatcher and the per-type node handlers
"""

import asyncio
import json

import httpx
import pytest

from visualflow.core.errors import ConfigurationError
from visualflow.engine.capabilities import SubprocessSandbox, build_script
from visualflow.engine.context import CancellationToken, ExecutionContext
from visualflow.engine.dispatcher import HANDLER_REGISTRY, NodeDispatcher
from visualflow.engine.exceptions import ExecutionCancelled
from visualflow.engine.models import ExecutionResult, NodeType
from tests.conftest import FakeProvider, FakeSandbox, edge, node


def webhook_dispatcher(handler, timeout_ms=1000):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return NodeDispatcher(provider=FakeProvider(), sandbox=FakeSandbox(), http_client=client, webhook_timeout_ms=timeout_ms)


class TestLLMProviderHandler:
    """llm-provider and tool-agent nodes"""

    @pytest.mark.asyncio
    async def test_prompts_are_interpolated(self, dispatcher, provider):
        context = ExecutionContext({"name": "Ann"})
        llm = node("n1", userPrompt="Hi {{name}}", systemPrompt="Be {{ tone }}", model="gpt-4o")

        result = await dispatcher.execute(llm, context, [])

        assert result.error is None
        assert result.output == "echo: Hi Ann"
        assert result.metadata.tokens_used == 10
        assert result.metadata.model == "gpt-4o"
        assert provider.requests[0].system_prompt == "Be {{ tone }}"
        assert provider.requests[0].provider == "openai"

    @pytest.mark.asyncio
    async def test_editor_type_names_set_provider(self, dispatcher, provider):
        await dispatcher.execute(node("n1", "anthropic", userPrompt="x"), ExecutionContext(), [])

        assert provider.requests[0].provider == "anthropic"

    @pytest.mark.asyncio
    async def test_tool_agent_runs_in_agent_mode(self, dispatcher, provider):
        await dispatcher.execute(node("agent", "tool-agent", userPrompt="go", enabledTools=["search"]), ExecutionContext(), [])

        request = provider.requests[0]
        assert request.agent_mode is True
        assert request.provider == "anthropic"
        assert request.enabled_tools == ["search"]

    @pytest.mark.asyncio
    async def test_provider_error_becomes_node_error(self, sandbox):
        dispatcher = NodeDispatcher(provider=FakeProvider(failures={"bad": "quota exceeded"}), sandbox=sandbox)

        result = await dispatcher.execute(node("n1", model="bad"), ExecutionContext(), [])

        assert result.failed
        assert result.error == "quota exceeded"
        assert result.output == ""
        assert result.metadata.duration is not None

    @pytest.mark.asyncio
    async def test_missing_provider(self, sandbox):
        dispatcher = NodeDispatcher(provider=None, sandbox=sandbox)

        result = await dispatcher.execute(node("n1"), ExecutionContext(), [])

        assert result.error == "No LLM provider configured"


class TestCodeHandler:
    @pytest.mark.asyncio
    async def test_sandbox_sees_variables_and_prior_outputs(self, dispatcher, sandbox):
        context = ExecutionContext({"x": "1"})
        context.record(ExecutionResult(node_id="prev", output="earlier"))

        result = await dispatcher.execute(node("code", "python", code="print(1)"), context, [])

        assert result.output == "code-output"
        assert sandbox.calls[0]["context"] == {"x": "1", "prev": "earlier"}
        assert sandbox.calls[0]["language"] == "python"

    @pytest.mark.asyncio
    async def test_structured_value_is_json_encoded(self, provider):
        dispatcher = NodeDispatcher(provider=provider, sandbox=FakeSandbox(value={"a": 1}))

        result = await dispatcher.execute(node("code", "code", code="..."), ExecutionContext(), [])

        assert result.output == '{"a": 1}'

    @pytest.mark.asyncio
    async def test_timeout(self, provider):
        dispatcher = NodeDispatcher(provider=provider, sandbox=FakeSandbox(error=asyncio.TimeoutError()))

        result = await dispatcher.execute(node("code", "code"), ExecutionContext(), [])

        assert result.error == "Code execution timed out"

    @pytest.mark.asyncio
    async def test_code_exception(self, provider):
        dispatcher = NodeDispatcher(provider=provider, sandbox=FakeSandbox(error=ValueError("bad input")))

        result = await dispatcher.execute(node("code", "code"), ExecutionContext(), [])

        assert result.error == "ValueError: bad input"

    @pytest.mark.asyncio
    async def test_no_sandbox_by_default(self, provider):
        dispatcher = NodeDispatcher(provider=provider)

        result = await dispatcher.execute(node("code", "python", code="1 + 1"), ExecutionContext(), [])

        assert result.failed
        assert result.error == "No code sandbox configured"


class TestSubprocessSandbox:
    """Code nodes run in a child interpreter"""

    @pytest.mark.asyncio
    async def test_last_expression_is_the_output(self, provider):
        dispatcher = NodeDispatcher(provider=provider, sandbox=SubprocessSandbox(timeout=10))
        code = "n = int(context['n'])\nn * 2"

        result = await dispatcher.execute(node("code", "python", code=code), ExecutionContext({"n": "21"}), [])

        assert result.error is None
        assert result.output == "42"

    @pytest.mark.asyncio
    async def test_result_variable(self):
        sandbox = SubprocessSandbox(timeout=10)

        value = await sandbox.run("result = {'greeting': 'hi ' + context['name']}", {"name": "ana"})

        assert value == {"greeting": "hi ana"}

    @pytest.mark.asyncio
    async def test_exception_is_reported(self, provider):
        dispatcher = NodeDispatcher(provider=provider, sandbox=SubprocessSandbox(timeout=10))

        result = await dispatcher.execute(node("code", "python", code="1 / 0"), ExecutionContext(), [])

        assert result.failed
        assert "ZeroDivisionError" in result.error

    @pytest.mark.asyncio
    async def test_runaway_code_is_killed(self, provider):
        sandbox = SubprocessSandbox(timeout=0.5)
        dispatcher = NodeDispatcher(provider=provider, sandbox=sandbox)

        result = await dispatcher.execute(node("code", "python", code="while True:\n    pass"), ExecutionContext(), [])

        assert result.error == "Code execution timed out"
        assert sandbox.active == set()

    @pytest.mark.asyncio
    async def test_other_languages_rejected(self):
        with pytest.raises(ValueError):
            await SubprocessSandbox().run("console.log(1)", {}, language="javascript")

    def test_script_assigns_last_expression(self):
        script = build_script("x = 2\nx + 1")

        assert "result = x + 1" in script
        assert "exec(" not in script


class TestWebhookOutHandler:
    """Outbound HTTP through an injected client"""

    @pytest.mark.asyncio
    async def test_post_with_interpolated_body_and_auth(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = request.content.decode()
            return httpx.Response(200, json={"ok": True})

        dispatcher = webhook_dispatcher(handler)
        hook = node(
            "hook", "webhook-out",
            targetUrl="https://hooks.example.com/{{path}}",
            bodyTemplate='{"q": "{{q}}"}',
            authType="bearer",
            authToken="{{token}}",
            headers={"X-Trace": "{{q}}"},
        )
        context = ExecutionContext({"path": "in", "q": "rivers", "token": "abc"})

        result = await dispatcher.execute(hook, context, [])

        assert result.error is None
        assert seen["method"] == "POST"
        assert seen["url"] == "https://hooks.example.com/in"
        assert seen["headers"]["authorization"] == "Bearer abc"
        assert seen["headers"]["content-type"] == "application/json"
        assert seen["headers"]["x-trace"] == "rivers"
        assert json.loads(seen["body"]) == {"q": "rivers"}
        assert result.output == '{\n  "ok": true\n}'

        metadata = result.to_document()["metadata"]
        assert metadata["statusCode"] == 200
        assert metadata["httpMethod"] == "POST"
        assert metadata["targetUrl"] == "https://hooks.example.com/in"

    @pytest.mark.asyncio
    async def test_get_sends_no_body(self):
        seen = {}

        def handler(request):
            seen["body"] = request.content
            seen["api_key"] = request.headers.get("x-api-key")
            return httpx.Response(200, text="plain")

        dispatcher = webhook_dispatcher(handler)
        hook = node("hook", "webhookOut", targetUrl="https://x.test", httpMethod="get",
                    bodyTemplate="ignored", authType="api-key", authToken="k1")

        result = await dispatcher.execute(hook, ExecutionContext(), [])

        assert result.output == "plain"
        assert seen["body"] == b""
        assert seen["api_key"] == "k1"

    @pytest.mark.asyncio
    async def test_missing_target_url(self):
        dispatcher = webhook_dispatcher(lambda request: httpx.Response(200))

        result = await dispatcher.execute(node("hook", "webhook-out"), ExecutionContext(), [])

        assert result.error == "Target URL is required"

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        dispatcher = webhook_dispatcher(handler, timeout_ms=250)

        result = await dispatcher.execute(node("hook", "webhook-out", targetUrl="https://x.test"), ExecutionContext(), [])

        assert result.error == "Request timeout after 250ms"

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        dispatcher = webhook_dispatcher(handler)

        result = await dispatcher.execute(node("hook", "webhook-out", targetUrl="https://x.test"), ExecutionContext(), [])

        assert result.error == "connection refused"


class TestNotesAndWebhookIn:
    @pytest.mark.asyncio
    async def test_webhook_in_surfaces_payload(self, dispatcher):
        context = ExecutionContext({"webhook-payload": '{"event": "push"}'})

        result = await dispatcher.execute(node("in", "webhook-in"), context, [])

        assert result.output == '{"event": "push"}'

    @pytest.mark.asyncio
    async def test_notes_without_input(self, dispatcher):
        result = await dispatcher.execute(node("note", "notes"), ExecutionContext(), [])

        assert result.error is None
        assert result.output == ""
        assert result.to_document()["metadata"]["hasInput"] is False

    @pytest.mark.asyncio
    async def test_notes_passthrough_forwards_first_input(self, dispatcher):
        context = ExecutionContext()
        context.record(ExecutionResult(node_id="a", output="from a"))
        context.record(ExecutionResult(node_id="b", output="from b"))

        result = await dispatcher.execute(node("note", "notes"), context, [edge("a", "note"), edge("b", "note")])

        assert result.output == "from a"

    @pytest.mark.asyncio
    async def test_notes_var_mode(self, dispatcher):
        context = ExecutionContext({"who": "team"})
        context.record(ExecutionResult(node_id="a", output="A-out"))
        context.record(ExecutionResult(node_id="b", output="B-out"))
        note = node("note", "notes", varMode=True, content="{{1}} / {{2}} / {{b}} for {{who}}")

        result = await dispatcher.execute(note, context, [edge("a", "note"), edge("b", "note")])

        assert result.output == "A-out / B-out / B-out for team"
        assert "1" not in context.variables


class TestNodeDispatcher:
    @pytest.mark.asyncio
    async def test_unsupported_type(self, dispatcher):
        result = await dispatcher.execute(node("x", "mystery"), ExecutionContext(), [])

        assert result.error == "Unsupported node type: mystery"

    @pytest.mark.asyncio
    async def test_cancelled_token_raises(self, dispatcher):
        token = CancellationToken()
        token.cancel("stop")

        with pytest.raises(ExecutionCancelled):
            await dispatcher.execute(node("n1"), ExecutionContext(cancel_token=token), [])

    def test_registry_must_cover_every_type(self):
        partial = {k: v for k, v in HANDLER_REGISTRY.items() if k != NodeType.NOTES}

        with pytest.raises(ConfigurationError):
            NodeDispatcher(provider=FakeProvider(), sandbox=FakeSandbox(), registry=partial)
