# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Async Execution Tracker

Submit-then-poll protocol for flows executed server-side. Long runs
don't hold a client request open; the tracker polls the execution until
it reaches a terminal status, backing off while the server reports a
rate limit.
"""

import inspect
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field, ConfigDict, ValidationError as ResponseValidationError

from visualflow.core.config import get_config
from visualflow.core.errors import NotFoundError, RemoteUnavailableError, sanitize_error_for_user
from visualflow.core.logging import get_logger, log_event
from .models import FlowNode, FlowEdge, ExecutionResult
from .context import CancellationToken

logger = get_logger(__name__)


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    RATE_LIMITED = "rate_limited"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TERMINAL_STATUSES = {
    ExecutionStatus.COMPLETED,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.TIMED_OUT,
}


class ExecutionStatusUpdate(BaseModel):
    """One observed state of a server-side execution"""
    model_config = ConfigDict(populate_by_name=True)

    execution_id: str = Field(alias="id")
    status: ExecutionStatus
    results: Dict[str, ExecutionResult] = Field(default_factory=dict)
    error: Optional[str] = None
    retry_after: Optional[float] = Field(default=None, alias="retryAfter")

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ExecutionClient(Protocol):
    async def submit_execution(
        self, nodes: List[FlowNode], edges: List[FlowEdge], variables: Dict[str, str]
    ) -> str: ...

    async def get_execution_status(self, execution_id: str) -> ExecutionStatusUpdate: ...


class AsyncExecutionTracker:
    """
    Polls a server-side execution to completion.

    Args:
        client: submits graphs and reads execution status (see RemoteFlowClient)
        interval: seconds between polls
        max_polls: poll cap; exhausting it yields a timed_out update
        default_rate_limit_wait: backoff when a rate limit carries no hint

    `is_rate_limited` / `retry_after` mirror the latest poll and are
    cleared as soon as a poll reports running or a terminal status.
    """

    def __init__(
        self,
        client: ExecutionClient,
        interval: Optional[float] = None,
        max_polls: Optional[int] = None,
        default_rate_limit_wait: Optional[float] = None
    ):
        config = get_config()
        self.client = client
        self.interval = config.polling_interval if interval is None else interval
        self.max_polls = max_polls or config.polling_max_polls
        self.default_rate_limit_wait = default_rate_limit_wait or config.default_rate_limit_wait

        self.is_rate_limited = False
        self.retry_after: Optional[float] = None
        self._cancel_token: Optional[CancellationToken] = None

    async def submit(
        self,
        nodes: List[FlowNode],
        edges: List[FlowEdge],
        variables: Optional[Dict[str, str]] = None
    ) -> str:
        """Send the graph for execution; returns the execution id"""
        execution_id = await self.client.submit_execution(nodes, edges, variables or {})
        log_event(logger, "Execution submitted", "INFO", execution_id=execution_id, node_count=len(nodes))
        return execution_id

    async def wait(
        self,
        execution_id: str,
        on_status: Optional[Callable[[ExecutionStatusUpdate], Any]] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> ExecutionStatusUpdate:
        """
        Poll until a terminal status, cancellation or the poll cap.

        Every observed update is passed to `on_status` (sync or async).
        """
        token = cancel_token or CancellationToken()
        self._cancel_token = token
        delay = self.interval

        try:
            for poll in range(1, self.max_polls + 1):
                if await token.wait(delay):
                    return await self._cancelled(execution_id, token, on_status)

                try:
                    update = await self.client.get_execution_status(execution_id)
                except RemoteUnavailableError as e:
                    logger.warning("Status poll failed", extra={"execution_id": execution_id, "poll": poll, "error": e.message})
                    delay = self.interval
                    continue
                except (NotFoundError, ResponseValidationError) as e:
                    update = ExecutionStatusUpdate(
                        execution_id=execution_id,
                        status=ExecutionStatus.FAILED,
                        error=f"Execution status unavailable: {sanitize_error_for_user(e, include_type=False)}",
                    )
                    log_event(logger, "Execution status unreadable", "ERROR", execution_id=execution_id, poll=poll)
                    self.is_rate_limited = False
                    self.retry_after = None
                    await self._notify(on_status, update)
                    return update

                if update.status == ExecutionStatus.RATE_LIMITED:
                    self.is_rate_limited = True
                    self.retry_after = update.retry_after or self.default_rate_limit_wait
                    update.retry_after = self.retry_after
                    log_event(logger, "Execution rate limited", "WARNING", execution_id=execution_id, retry_after=self.retry_after)
                    await self._notify(on_status, update)
                    delay = self.retry_after
                    continue

                self.is_rate_limited = False
                self.retry_after = None
                await self._notify(on_status, update)

                if update.terminal:
                    log_event(logger, "Execution finished", "INFO", execution_id=execution_id, status=update.status.value)
                    return update
                delay = self.interval

            self.is_rate_limited = False
            self.retry_after = None
            update = ExecutionStatusUpdate(
                execution_id=execution_id,
                status=ExecutionStatus.TIMED_OUT,
                error=f"Execution did not finish after {self.max_polls} polls",
            )
            log_event(logger, "Execution polling timed out", "WARNING", execution_id=execution_id, max_polls=self.max_polls)
            await self._notify(on_status, update)
            return update
        finally:
            if self._cancel_token is token:
                self._cancel_token = None

    async def run(
        self,
        nodes: List[FlowNode],
        edges: List[FlowEdge],
        variables: Optional[Dict[str, str]] = None,
        on_status: Optional[Callable[[ExecutionStatusUpdate], Any]] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> ExecutionStatusUpdate:
        """Submit a graph and wait for its outcome"""
        execution_id = await self.submit(nodes, edges, variables)
        return await self.wait(execution_id, on_status, cancel_token)

    def cancel(self, reason: str = "Polling cancelled") -> None:
        """Abandon the in-flight wait. The server-side run is not stopped."""
        if self._cancel_token is not None:
            self._cancel_token.cancel(reason)

    async def _cancelled(
        self,
        execution_id: str,
        token: CancellationToken,
        on_status: Optional[Callable]
    ) -> ExecutionStatusUpdate:
        self.is_rate_limited = False
        self.retry_after = None
        update = ExecutionStatusUpdate(
            execution_id=execution_id,
            status=ExecutionStatus.CANCELLED,
            error=token.reason,
        )
        log_event(logger, "Execution polling cancelled", "INFO", execution_id=execution_id)
        await self._notify(on_status, update)
        return update

    @staticmethod
    async def _notify(callback: Optional[Callable], update: ExecutionStatusUpdate) -> None:
        if callback is None:
            return
        outcome = callback(update)
        if inspect.isawaitable(outcome):
            await outcome
