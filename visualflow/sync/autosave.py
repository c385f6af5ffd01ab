# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Autosave - debounced saving of the flow open in the editor.

State machine:

    IDLE --change--> PENDING --delay elapsed--> SAVING --ok--> SAVED
                        ^  |                       |
                        |  +--change (resets)      +--error--> ERROR
                        +------------------ change ------------+

A burst of changes produces one save, `delay` seconds after the last
change. force_save() skips the wait. Save failures put the controller in
ERROR and are never raised to the caller.
"""

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set, Tuple

from visualflow.core.config import get_config
from visualflow.core.logging import get_service_logger
from visualflow.engine.context import CancellationToken
from visualflow.persistence.models import Flow
from .service import FlowSaveService

logger = get_service_logger("autosave")

NEW_FLOW_KEY = "__new__"


class AutosaveState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


class AutosaveController:
    """
    Args:
        saver: Save service that owns the current flow id
        delay: Debounce delay in seconds
        on_state: Called with each new state (sync or async)
        cancel_token: Cancelling it drops any pending save
    """

    def __init__(
        self,
        saver: FlowSaveService,
        delay: Optional[float] = None,
        on_state: Optional[Callable[[AutosaveState], Any]] = None,
        cancel_token: Optional[CancellationToken] = None
    ):
        self.saver = saver
        self.delay = get_config().autosave_delay if delay is None else delay
        self.on_state = on_state
        self.cancel_token = cancel_token or CancellationToken()

        self.state = AutosaveState.IDLE
        self.last_error: Optional[str] = None
        self.last_saved: Optional[Flow] = None

        self._pending: Optional[Tuple[str, Dict[str, Any]]] = None
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, flow_id: Optional[str]) -> asyncio.Lock:
        key = flow_id or NEW_FLOW_KEY
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def _set_state(self, state: AutosaveState) -> None:
        self.state = state
        if self.on_state is None:
            return
        outcome = self.on_state(state)
        if inspect.isawaitable(outcome):
            await outcome

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def notify_change(self, name: str, flow: Dict[str, Any]) -> None:
        """Record the latest editor state and (re)start the debounce timer"""
        if self.cancel_token.cancelled:
            return
        self._pending = (name, flow)
        self._cancel_timer()
        self._timer = asyncio.create_task(self._debounce())
        await self._set_state(AutosaveState.PENDING)

    async def _debounce(self) -> None:
        if await self.cancel_token.wait(self.delay):
            return
        # From here on a new change starts a new timer; this save runs to completion
        task = asyncio.current_task()
        self._timer = None
        self._in_flight.add(task)
        try:
            await self._save_pending()
        finally:
            self._in_flight.discard(task)

    async def force_save(self, name: Optional[str] = None, flow: Optional[Dict[str, Any]] = None) -> Optional[Flow]:
        """
        Save now, bypassing the debounce delay.

        Returns the saved flow, or None when there was nothing to save or
        the save failed (see `state` / `last_error`).
        """
        self._cancel_timer()
        if flow is not None:
            self._pending = (name or (self._pending[0] if self._pending else "Untitled Flow"), flow)
        elif name is not None and self._pending is not None:
            self._pending = (name, self._pending[1])

        if self._pending is None:
            return None
        pending_flow = self._pending[1]
        if self.saver.current_flow_id is None and not pending_flow.get("nodes"):
            # Nothing worth creating a flow for yet
            self._pending = None
            await self._set_state(AutosaveState.IDLE)
            return None
        return await self._save_pending()

    async def flush(self) -> None:
        """Wait for the debounce timer and any save already running"""
        tasks = set(self._in_flight)
        if self._timer is not None:
            tasks.add(self._timer)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cancel(self) -> None:
        """Drop the pending change without saving"""
        self._cancel_timer()
        self._pending = None
        await self._set_state(AutosaveState.IDLE)

    async def _save_pending(self) -> Optional[Flow]:
        async with self._lock_for(self.saver.current_flow_id):
            if self._pending is None:
                return self.last_saved
            name, flow = self._pending
            self._pending = None
            await self._set_state(AutosaveState.SAVING)

            try:
                record = await self.saver.save(name, flow)
            except Exception as e:
                self.last_error = str(e) or e.__class__.__name__
                logger.error(f"Autosave failed: {self.last_error}", exc_info=True)
                if self._pending is None:
                    self._pending = (name, flow)
                await self._set_state(AutosaveState.ERROR)
                return None

            self.last_saved = record
            self.last_error = None
            if self._pending is None:
                await self._set_state(AutosaveState.SAVED)
            logger.debug(f"Autosaved flow {record.id}")
            return record
