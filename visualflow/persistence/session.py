# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Session state: last-opened flow, recent flows, and the in-memory
execution-history cache (first tier of history lookups).
"""

from typing import Dict, List, Optional

from visualflow.core.config import get_config
from .models import Execution, RecentFlow
from .store import DocumentStore

SESSION = "session"
SESSION_KEY = "state"


class SessionState:
    """
    Per-editor session pointers, persisted in the document store.

    The history cache lives only in memory and is dropped with the session.
    """

    def __init__(self, store: DocumentStore, recent_limit: Optional[int] = None):
        self.store = store
        self.recent_limit = recent_limit or get_config().recent_flows_limit
        self._history: Dict[str, List[Execution]] = {}

    async def _load(self) -> Dict:
        return await self.store.get(SESSION, SESSION_KEY) or {"lastOpenedFlowId": None, "recentFlows": []}

    async def _save(self, state: Dict) -> None:
        await self.store.put(SESSION, SESSION_KEY, state)

    async def record_opened(self, flow_id: str, name: str) -> None:
        """Set the last-opened pointer and move the flow to the top of the recent list"""
        state = await self._load()
        recent = [r for r in state.get("recentFlows", []) if r.get("id") != flow_id]
        state["lastOpenedFlowId"] = flow_id
        state["recentFlows"] = [RecentFlow(id=flow_id, name=name).to_document()] + recent
        state["recentFlows"] = state["recentFlows"][:self.recent_limit]
        await self._save(state)

    async def last_opened_flow_id(self) -> Optional[str]:
        return (await self._load()).get("lastOpenedFlowId")

    async def recent_flows(self) -> List[RecentFlow]:
        return [RecentFlow.from_document(r) for r in (await self._load()).get("recentFlows", [])]

    async def replace_flow_id(self, old_id: str, new_id: str) -> None:
        """Follow a re-keyed flow in the pointer, the recent list and the cache"""
        state = await self._load()
        if state.get("lastOpenedFlowId") == old_id:
            state["lastOpenedFlowId"] = new_id
        for entry in state.get("recentFlows", []):
            if entry.get("id") == old_id:
                entry["id"] = new_id
        await self._save(state)

        if old_id in self._history:
            self._history[new_id] = self._history.pop(old_id)

    async def clear(self) -> None:
        await self._save({"lastOpenedFlowId": None, "recentFlows": []})
        self._history.clear()

    def cached_history(self, flow_id: str) -> List[Execution]:
        return list(self._history.get(flow_id, []))

    def cache_history(self, flow_id: str, executions: List[Execution]) -> None:
        self._history[flow_id] = list(executions)

    def record_execution(self, execution: Execution) -> None:
        """Put a started or finished run at the top of its flow's cached history"""
        cached = self._history.get(execution.flow_id)
        if cached is None:
            return
        self._history[execution.flow_id] = [execution] + [e for e in cached if e.id != execution.id]

    def invalidate_history(self, flow_id: Optional[str] = None) -> None:
        if flow_id is None:
            self._history.clear()
        else:
            self._history.pop(flow_id, None)
