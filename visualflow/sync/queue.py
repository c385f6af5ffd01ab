# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Sync Queue - background upload of saved flows to the backend.

Saves enqueue the flow and return immediately. A single worker drains
the queue, retrying transient failures with fixed delays, and publishes
one SyncOutcome per flow to the `outcomes` queue and to listeners.
"""

import asyncio
import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union

from visualflow.core.config import get_config
from visualflow.core.errors import RemoteUnavailableError, SyncConflictError
from visualflow.core.logging import get_service_logger, log_event
from visualflow.persistence.models import Flow

logger = get_service_logger("sync_queue")

OutcomeListener = Callable[["SyncOutcome"], Union[None, Awaitable[None]]]


class SyncStatus(str, Enum):
    SYNCED = "synced"
    FAILED = "failed"
    CONFLICT = "conflict"
    SKIPPED = "skipped"


@dataclass
class SyncOutcome:
    """Result of syncing one flow"""
    flow_id: str
    status: SyncStatus
    attempts: int = 0
    remote_id: Optional[str] = None
    remote: Optional[dict] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == SyncStatus.SYNCED

    @property
    def rekeyed(self) -> bool:
        """Backend stored the flow under a different id"""
        return self.success and bool(self.remote_id) and self.remote_id != self.flow_id


class SyncQueue:
    """
    Args:
        client: RemoteFlowClient (or anything with is_available/upsert_flow)
        retry_delays: Wait before each retry; one attempt per entry
    """

    def __init__(self, client: Any, retry_delays: Optional[List[float]] = None):
        self.client = client
        self.retry_delays = list(retry_delays if retry_delays is not None else get_config().sync_retry_delays)
        self.outcomes: "asyncio.Queue[SyncOutcome]" = asyncio.Queue()

        self._pending: "asyncio.Queue[Flow]" = asyncio.Queue()
        self._listeners: List[OutcomeListener] = []
        self._worker: Optional[asyncio.Task] = None

    def add_listener(self, listener: OutcomeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: OutcomeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if not self.running:
            self._worker = asyncio.create_task(self._run())
            logger.info("Sync queue started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Sync queue stopped")

    def enqueue(self, flow: Flow) -> None:
        """Schedule a flow for upload; starts the worker if needed"""
        self._pending.put_nowait(flow)
        self.start()

    async def join(self) -> None:
        """Wait until every enqueued flow has an outcome"""
        await self._pending.join()

    async def _run(self) -> None:
        while True:
            flow = await self._pending.get()
            try:
                outcome = await self.sync_one(flow)
                await self._publish(outcome)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Sync worker error for flow {flow.id}: {e}", exc_info=True)
            finally:
                self._pending.task_done()

    async def sync_one(self, flow: Flow) -> SyncOutcome:
        """Upload one flow with bounded retry"""
        if not await self.client.is_available():
            log_event(logger, "Backend unavailable, sync skipped", "DEBUG", flow_id=flow.id)
            return SyncOutcome(flow_id=flow.id, status=SyncStatus.SKIPPED, error="Backend unavailable")

        last_error = None
        attempts = max(len(self.retry_delays), 1)
        for attempt in range(1, attempts + 1):
            try:
                remote = await self.client.upsert_flow(flow)
            except SyncConflictError as e:
                log_event(logger, "Flow sync rejected", "WARNING", flow_id=flow.id, remote_status=e.remote_status)
                return SyncOutcome(flow_id=flow.id, status=SyncStatus.CONFLICT, attempts=attempt, error=e.message)
            except RemoteUnavailableError as e:
                last_error = e.message
                logger.warning(f"Sync attempt {attempt}/{attempts} failed for flow {flow.id}: {e.message}")
                if attempt < attempts:
                    await asyncio.sleep(self.retry_delays[attempt - 1])
                continue

            remote_id = (remote or {}).get("id") or flow.id
            log_event(logger, "Flow synced", "INFO", flow_id=flow.id, remote_id=remote_id, attempts=attempt)
            return SyncOutcome(
                flow_id=flow.id,
                status=SyncStatus.SYNCED,
                attempts=attempt,
                remote_id=remote_id,
                remote=remote,
            )

        return SyncOutcome(
            flow_id=flow.id,
            status=SyncStatus.FAILED,
            attempts=attempts,
            error=f"Max retries exceeded: {last_error}",
        )

    async def _publish(self, outcome: SyncOutcome) -> None:
        self.outcomes.put_nowait(outcome)
        for listener in list(self._listeners):
            try:
                result = listener(outcome)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Sync listener failed for flow {outcome.flow_id}: {e}", exc_info=True)
