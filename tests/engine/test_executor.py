# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Tests for FlowExecutor

Covers ordering, variable propagation, halting on error, cancellation,
cycle handling and execution tracking.
"""

import pytest

from visualflow.engine.context import CancellationToken
from visualflow.engine.dispatcher import NodeDispatcher
from visualflow.engine.exceptions import GraphCycleError
from visualflow.engine.executor import FlowExecutor, RunState, TrackingOptions
from visualflow.persistence.models import ExecutionStatus
from tests.conftest import FakeProvider, FakeSandbox, edge, node


class TestFlowExecution:
    """Basic runs"""

    @pytest.mark.asyncio
    async def test_outputs_flow_downstream(self, executor):
        nodes = [
            node("b", userPrompt="Got {{a}}"),
            node("a", userPrompt="{{topic}}"),
        ]

        results = await executor.run(nodes, [edge("a", "b")], {"topic": "rivers"})

        assert list(results) == ["a", "b"]
        assert results["a"].output == "echo: rivers"
        assert results["b"].output == "echo: Got echo: rivers"

    @pytest.mark.asyncio
    async def test_output_variable_name(self, executor):
        nodes = [
            node("a", userPrompt="x", outputVariable="summary"),
            node("b", userPrompt="[{{summary}}]"),
        ]

        report = await executor.run_detailed(nodes, [edge("a", "b")])

        assert report.state == RunState.COMPLETED
        assert report.variables["summary"] == "echo: x"
        assert report.variables["a"] == "echo: x"
        assert report.results["b"].output == "echo: [echo: x]"

    @pytest.mark.asyncio
    async def test_structured_output_fields_become_variables(self, sandbox):
        provider = FakeProvider(replies={"json-model": '```json\n{"title": "Deltas", "count": 3}\n```'})
        executor = FlowExecutor(NodeDispatcher(provider=provider, sandbox=sandbox))
        nodes = [
            node("a", model="json-model", outputFormat="json", outputVariable="out"),
            node("b", userPrompt="{{out.title}} x{{out.count}}"),
        ]

        results = await executor.run(nodes, [edge("a", "b")])

        assert results["b"].output == "echo: Deltas x3"

    @pytest.mark.asyncio
    async def test_unparseable_structured_output_does_not_fail_node(self, executor):
        nodes = [node("a", userPrompt="not json", outputFormat="json")]

        report = await executor.run_detailed(nodes, [])

        assert report.state == RunState.COMPLETED
        assert report.results["a"].error is None

    @pytest.mark.asyncio
    async def test_empty_flow(self, executor):
        report = await executor.run_detailed([], [])

        assert report.state == RunState.COMPLETED
        assert report.results == {}

    @pytest.mark.asyncio
    async def test_dangling_edges_are_dropped(self, executor):
        report = await executor.run_detailed([node("a")], [edge("a", "ghost")])

        assert report.state == RunState.COMPLETED
        assert len(report.dropped_edges) == 1
        assert list(report.results) == ["a"]

    @pytest.mark.asyncio
    async def test_code_output_feeds_llm_prompt(self, executor, provider, sandbox):
        nodes = [
            node("1", "python", code="21 * 2"),
            node("2", userPrompt="Use {{1}}"),
        ]

        results = await executor.run(nodes, [edge("1", "2")])

        assert results["1"].output == "code-output"
        assert provider.requests[0].user_prompt == "Use code-output"
        assert sandbox.calls[0]["code"] == "21 * 2"

    @pytest.mark.asyncio
    async def test_results_are_stamped_in_run_order(self, executor):
        nodes = [node("c", userPrompt="{{b}}"), node("b", userPrompt="{{a}}"), node("a", userPrompt="go")]

        results = await executor.run(nodes, [edge("a", "b"), edge("b", "c")])

        stamps = [result.executed_at for result in results.values()]
        assert list(results) == ["a", "b", "c"]
        assert stamps == sorted(stamps)


class TestHaltOnError:
    @pytest.mark.asyncio
    async def test_failure_stops_unrelated_branches(self, sandbox):
        executor = FlowExecutor(NodeDispatcher(provider=FakeProvider(failures={"bad": "model overloaded"}), sandbox=sandbox))
        nodes = [node("a", model="bad"), node("b"), node("c")]

        report = await executor.run_detailed(nodes, [edge("a", "c")])

        assert report.state == RunState.FAILED
        assert report.error == "model overloaded"
        assert report.failed_node_id == "a"
        assert list(report.results) == ["a"]
        # the failed node's (empty) output is still published
        assert report.variables["a"] == ""


class TestCycles:
    @pytest.mark.asyncio
    async def test_run_raises_on_cycle(self, executor):
        with pytest.raises(GraphCycleError):
            await executor.run([node("a"), node("b")], [edge("a", "b"), edge("b", "a")])

    @pytest.mark.asyncio
    async def test_run_detailed_reports_cycle(self, executor, provider):
        report = await executor.run_detailed([node("a"), node("b")], [edge("a", "b"), edge("b", "a")])

        assert report.state == RunState.CYCLE_ABORTED
        assert report.cycle_node_ids == ["a", "b"]
        assert report.results == {}
        assert provider.requests == []


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, executor):
        token = CancellationToken()
        token.cancel("user stopped")

        report = await executor.run_detailed([node("a")], [], cancel_token=token)

        assert report.state == RunState.CANCELLED
        assert report.error == "user stopped"
        assert report.results == {}

    @pytest.mark.asyncio
    async def test_cancel_between_nodes(self, executor):
        token = CancellationToken()
        events = []

        async def on_update(event):
            events.append((event["node_id"], event["status"]))
            if event["status"] == "completed":
                token.cancel()

        report = await executor.run_detailed(
            [node("a"), node("b")], [edge("a", "b")], cancel_token=token, on_update=on_update
        )

        assert report.state == RunState.CANCELLED
        assert list(report.results) == ["a"]
        assert events == [("a", "running"), ("a", "completed")]

    @pytest.mark.asyncio
    async def test_node_state_updates(self, executor):
        events = []

        async def on_update(event):
            events.append(event)

        await executor.run([node("a"), node("b")], [edge("a", "b")], on_update=on_update)

        assert [e["type"] for e in events] == ["node_state"] * 4
        assert events[-1]["node_states"] == {"a": "completed", "b": "completed"}


class TestTracking:
    """Execution records written through the repository"""

    @pytest.mark.asyncio
    async def test_successful_run_is_recorded(self, executor, flow_repository, execution_repository):
        flow = await flow_repository.create("Tracked")
        tracking = TrackingOptions(repository=execution_repository, flow_id=flow.id, flow_name=flow.name)

        report = await executor.run_detailed([node("a"), node("b")], [edge("a", "b")], {"k": "v"}, tracking=tracking)

        record = await execution_repository.get(report.execution_id)
        assert record.status == ExecutionStatus.COMPLETED
        assert [r.node_id for r in record.results] == ["a", "b"]
        assert record.tokens_used == 20
        assert record.input == {"k": "v"}

        stored_flow = await flow_repository.get(flow.id)
        assert stored_flow.execution_count == 1
        assert stored_flow.success_rate == 100

    @pytest.mark.asyncio
    async def test_failed_run_records_failed_node(self, flow_repository, execution_repository):
        executor = FlowExecutor(NodeDispatcher(provider=FakeProvider(failures={"bad": "boom"}), sandbox=FakeSandbox()))
        graph = {"nodes": [{"id": "a", "type": "llm-provider", "data": {"title": "Writer", "model": "bad"}}], "edges": []}
        flow = await flow_repository.create("Failing", graph)
        tracking = TrackingOptions(repository=execution_repository, flow_id=flow.id, flow_name=flow.name)

        report = await executor.run_detailed(flow.graph().nodes, [], tracking=tracking)

        record = await execution_repository.get(report.execution_id)
        assert record.status == ExecutionStatus.FAILED
        assert record.error == "boom"
        assert record.failed_node_id == "a"
        assert record.failed_node_name == "Writer"

    @pytest.mark.asyncio
    async def test_tracking_failure_does_not_stop_run(self, executor, execution_repository):
        tracking = TrackingOptions(repository=execution_repository, flow_id="unknown", flow_name="")

        report = await executor.run_detailed([node("a")], [], tracking=tracking)

        assert report.state == RunState.COMPLETED
        assert report.execution_id is None
