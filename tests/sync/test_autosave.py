# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Tests for the debounced autosave controller
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from visualflow.core.errors import PersistenceError
from visualflow.engine.context import CancellationToken
from visualflow.sync.autosave import AutosaveController, AutosaveState
from visualflow.sync.service import FlowSaveService
from tests.conftest import editor_graph


@pytest.fixture
def saver(flow_repository, execution_repository, session):
    service = FlowSaveService(flow_repository, execution_repository, session)
    service.save = AsyncMock(side_effect=service.save)
    return service


@pytest.fixture
def states():
    return []


@pytest.fixture
def controller(saver, states):
    return AutosaveController(saver, delay=0.05, on_state=states.append)


class TestDebounce:
    @pytest.mark.asyncio
    async def test_burst_of_changes_saves_once(self, controller, saver, states, flow_repository):
        await controller.notify_change("Flow", editor_graph("a"))
        await controller.notify_change("Flow", editor_graph("a", "b"))
        await controller.notify_change("Flow", editor_graph("a", "b", "c"))

        await controller.flush()

        assert saver.save.await_count == 1
        assert controller.state == AutosaveState.SAVED
        assert states == [AutosaveState.PENDING] * 3 + [AutosaveState.SAVING, AutosaveState.SAVED]

        [stored] = await flow_repository.list_all()
        assert len(stored.flow["nodes"]) == 3
        assert controller.last_saved.id == stored.id

    @pytest.mark.asyncio
    async def test_later_changes_update_the_same_flow(self, controller, flow_repository):
        await controller.notify_change("Flow", editor_graph("a"))
        await controller.flush()
        await controller.notify_change("Flow renamed", editor_graph("a"))
        await controller.flush()

        [stored] = await flow_repository.list_all()
        assert stored.name == "Flow renamed"

    @pytest.mark.asyncio
    async def test_cancel_drops_pending_change(self, controller, saver):
        await controller.notify_change("Flow", editor_graph("a"))
        await controller.cancel()
        await asyncio.sleep(0.1)

        assert saver.save.await_count == 0
        assert controller.state == AutosaveState.IDLE

    @pytest.mark.asyncio
    async def test_cancelled_token_ignores_changes(self, saver):
        token = CancellationToken()
        token.cancel()
        controller = AutosaveController(saver, delay=0.01, cancel_token=token)

        await controller.notify_change("Flow", editor_graph("a"))
        await controller.flush()

        assert controller.state == AutosaveState.IDLE
        assert saver.save.await_count == 0


class TestForceSave:
    @pytest.mark.asyncio
    async def test_saves_immediately(self, controller, saver):
        await controller.notify_change("Flow", editor_graph("a"))

        record = await controller.force_save()

        assert record is not None
        assert record.name == "Flow"
        assert controller.state == AutosaveState.SAVED
        await asyncio.sleep(0.1)
        assert saver.save.await_count == 1

    @pytest.mark.asyncio
    async def test_empty_new_flow_is_not_created(self, controller, flow_repository):
        record = await controller.force_save("Untitled", {"nodes": [], "edges": []})

        assert record is None
        assert controller.state == AutosaveState.IDLE
        assert await flow_repository.list_all() == []

    @pytest.mark.asyncio
    async def test_nothing_pending(self, controller):
        assert await controller.force_save() is None

    @pytest.mark.asyncio
    async def test_failure_sets_error_and_keeps_change(self, controller, saver):
        real_save = saver.save.side_effect
        saver.save.side_effect = PersistenceError("disk full")

        record = await controller.force_save("Flow", editor_graph("a"))

        assert record is None
        assert controller.state == AutosaveState.ERROR
        assert controller.last_error == "disk full"

        saver.save.side_effect = real_save
        record = await controller.force_save()

        assert record is not None
        assert controller.state == AutosaveState.SAVED
        assert controller.last_error is None
