# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Flow Execution Context

Tracks variable and result state for a single flow run.
"""

import asyncio
from typing import Dict, Optional
from datetime import datetime, timezone

from .models import ExecutionResult
from .exceptions import ExecutionCancelled


class CancellationToken:
    """
    Cooperative cancellation flag shared along one call chain.

    Holders check `raise_if_cancelled()` at every suspension point;
    `wait()` lets timers and pollers wake up early on cancel.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "Execution cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionCancelled(self.reason or "Execution cancelled")

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for cancellation up to `timeout` seconds. Returns True if cancelled."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


class ExecutionContext:
    """
    Execution context for a flow run.

    Tracks:
    - Variables (initial inputs plus published node outputs)
    - Node results, in completion order
    - Cancellation state

    Created fresh per run and owned by it; never share between runs.
    """

    def __init__(
        self,
        variables: Optional[Dict[str, str]] = None,
        cancel_token: Optional[CancellationToken] = None
    ):
        self.variables: Dict[str, str] = dict(variables or {})
        self.results: Dict[str, ExecutionResult] = {}
        self.cancel_token = cancel_token or CancellationToken()
        self.started_at = datetime.now(timezone.utc)
        self.completed_at: Optional[datetime] = None

    def record(self, result: ExecutionResult) -> None:
        """Store a node result; insertion order is completion order"""
        self.results[result.node_id] = result

    def publish(self, name: str, value: str) -> None:
        self.variables[name] = value

    def get_output(self, node_id: str) -> Optional[str]:
        result = self.results.get(node_id)
        return result.output if result else None

    def with_variables(self, extra: Dict[str, str]) -> "ExecutionContext":
        """Read-only view with extra variables layered over the current ones"""
        view = ExecutionContext(self.variables, self.cancel_token)
        view.variables.update(extra)
        view.results = self.results
        return view

    def code_context(self) -> Dict[str, str]:
        """Variables plus every prior node output keyed by node id"""
        merged = dict(self.variables)
        for node_id, result in self.results.items():
            merged[node_id] = result.output
        return merged

    def finalize(self) -> None:
        """Mark execution as complete"""
        self.completed_at = datetime.now(timezone.utc)

    @property
    def duration_ms(self) -> int:
        end = self.completed_at or datetime.now(timezone.utc)
        return int((end - self.started_at).total_seconds() * 1000)
