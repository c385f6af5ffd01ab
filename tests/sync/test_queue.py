# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Tests for the background sync queue
"""

from unittest.mock import AsyncMock, patch

import pytest

from visualflow.core.errors import RemoteUnavailableError, SyncConflictError
from visualflow.persistence.models import Flow
from visualflow.sync.queue import SyncOutcome, SyncQueue, SyncStatus
from tests.conftest import FakeRemote


@pytest.fixture
def flow():
    return Flow(id="local-1", name="Flow")


class TestSyncOne:
    @pytest.mark.asyncio
    async def test_success(self, flow):
        queue = SyncQueue(FakeRemote(), retry_delays=[0, 0, 0])

        outcome = await queue.sync_one(flow)

        assert outcome.status == SyncStatus.SYNCED
        assert outcome.attempts == 1
        assert outcome.remote_id == "local-1"
        assert not outcome.rekeyed

    @pytest.mark.asyncio
    async def test_backend_assigned_id(self, flow):
        queue = SyncQueue(FakeRemote([{"id": "server-7"}]), retry_delays=[0])

        outcome = await queue.sync_one(flow)

        assert outcome.remote_id == "server-7"
        assert outcome.rekeyed

    @pytest.mark.asyncio
    async def test_skipped_when_backend_unavailable(self, flow):
        remote = FakeRemote(available=False)
        queue = SyncQueue(remote, retry_delays=[0])

        outcome = await queue.sync_one(flow)

        assert outcome.status == SyncStatus.SKIPPED
        assert remote.upserts == []

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried_with_delays(self, flow):
        remote = FakeRemote([RemoteUnavailableError("503"), RemoteUnavailableError("503"), {"id": "local-1"}])
        queue = SyncQueue(remote, retry_delays=[1, 2, 5])

        with patch("asyncio.sleep", new=AsyncMock()) as sleep:
            outcome = await queue.sync_one(flow)

        assert outcome.status == SyncStatus.SYNCED
        assert outcome.attempts == 3
        assert [c.args[0] for c in sleep.await_args_list] == [1, 2]

    @pytest.mark.asyncio
    async def test_gives_up_after_last_attempt(self, flow):
        remote = FakeRemote([RemoteUnavailableError("down")] * 3)
        queue = SyncQueue(remote, retry_delays=[1, 2, 5])

        with patch("asyncio.sleep", new=AsyncMock()):
            outcome = await queue.sync_one(flow)

        assert outcome.status == SyncStatus.FAILED
        assert outcome.attempts == 3
        assert outcome.error == "Max retries exceeded: down"
        assert len(remote.upserts) == 3

    @pytest.mark.asyncio
    async def test_conflict_is_not_retried(self, flow):
        remote = FakeRemote([SyncConflictError("rejected", remote_status=409)])
        queue = SyncQueue(remote, retry_delays=[0, 0, 0])

        outcome = await queue.sync_one(flow)

        assert outcome.status == SyncStatus.CONFLICT
        assert outcome.attempts == 1
        assert len(remote.upserts) == 1


class TestWorker:
    """enqueue -> worker -> outcomes and listeners"""

    @pytest.mark.asyncio
    async def test_outcomes_are_published(self, flow):
        queue = SyncQueue(FakeRemote(), retry_delays=[0])
        sync_seen = []
        async_seen = []

        async def async_listener(outcome):
            async_seen.append(outcome.flow_id)

        queue.add_listener(sync_seen.append)
        queue.add_listener(async_listener)

        queue.enqueue(flow)
        queue.enqueue(Flow(id="local-2", name="Other"))
        await queue.join()

        assert [o.flow_id for o in sync_seen] == ["local-1", "local-2"]
        assert async_seen == ["local-1", "local-2"]
        outcome = queue.outcomes.get_nowait()
        assert isinstance(outcome, SyncOutcome)
        assert outcome.success

        await queue.stop()
        assert not queue.running

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_worker(self, flow):
        queue = SyncQueue(FakeRemote(), retry_delays=[0])
        seen = []

        def broken(outcome):
            raise RuntimeError("listener bug")

        queue.add_listener(broken)
        queue.add_listener(seen.append)

        queue.enqueue(flow)
        await queue.join()

        assert len(seen) == 1
        assert queue.running
        await queue.stop()

    @pytest.mark.asyncio
    async def test_remove_listener(self, flow):
        queue = SyncQueue(FakeRemote(), retry_delays=[0])
        seen = []
        queue.add_listener(seen.append)
        queue.remove_listener(seen.append)

        queue.enqueue(flow)
        await queue.join()
        await queue.stop()

        assert seen == []
