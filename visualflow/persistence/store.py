# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Document Store - key/value storage for flow and execution records

Records are JSON documents grouped in collections and keyed by UUID.
Writes to one record are serialized with a per-record asyncio lock;
reads never take the lock.
"""

import asyncio
import copy
import inspect
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import aiofiles
import aiofiles.os

from visualflow.core.errors import PersistenceError, ValidationError
from visualflow.core.logging import get_logger

logger = get_logger(__name__)

Document = Dict[str, Any]
Mutator = Callable[[Document], Union[Document, Awaitable[Document]]]


def matches(document: Document, filters: Optional[Dict[str, Any]]) -> bool:
    """Equality filter; a filter on `deleted` treats a missing flag as False"""
    for key, expected in (filters or {}).items():
        actual = document.get(key)
        if key == "deleted" and actual is None:
            actual = False
        if actual != expected:
            return False
    return True


def sort_documents(
    documents: List[Document],
    order_by: Optional[str],
    descending: bool,
    limit: Optional[int]
) -> List[Document]:
    if order_by:
        documents = sorted(documents, key=lambda d: d.get(order_by) or "", reverse=descending)
    if limit is not None:
        documents = documents[:limit]
    return documents


class DocumentStore(ABC):
    """Storage interface shared by the in-memory and file-backed stores"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _get_lock(self, collection: str, doc_id: str) -> asyncio.Lock:
        """Get or create lock for a specific record"""
        key = f"{collection}/{doc_id}"
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    @abstractmethod
    async def _write(self, collection: str, doc_id: str, document: Document) -> None:
        ...

    @abstractmethod
    async def _remove(self, collection: str, doc_id: str) -> None:
        ...

    @abstractmethod
    async def all(self, collection: str) -> List[Document]:
        ...

    async def put(self, collection: str, doc_id: str, document: Document) -> Document:
        """Create or replace a record"""
        async with self._get_lock(collection, doc_id):
            await self._write(collection, doc_id, document)
        return document

    async def put_many(self, collection: str, documents: Dict[str, Document]) -> None:
        for doc_id, document in documents.items():
            await self.put(collection, doc_id, document)

    async def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> Optional[Document]:
        """
        Merge changes into an existing record under its lock.

        Returns the updated record, or None if it doesn't exist.
        """
        return await self.modify(collection, doc_id, lambda current: {**current, **changes})

    async def modify(self, collection: str, doc_id: str, mutator: Mutator) -> Optional[Document]:
        """
        Read-modify-write one record under its lock.

        `mutator` gets the current record and returns the new one; it may be
        a coroutine function. Exceptions it raises leave the record as it was.
        Returns the written record, or None if it doesn't exist.
        """
        async with self._get_lock(collection, doc_id):
            current = await self.get(collection, doc_id)
            if current is None:
                return None
            updated = mutator(current)
            if inspect.isawaitable(updated):
                updated = await updated
            await self._write(collection, doc_id, updated)
            return updated

    async def remove(self, collection: str, doc_id: str) -> None:
        """Physically drop a record. Only used to move a record to a new key."""
        async with self._get_lock(collection, doc_id):
            await self._remove(collection, doc_id)

    async def query(
        self,
        collection: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = "updatedAt",
        descending: bool = False,
        limit: Optional[int] = None
    ) -> List[Document]:
        """
        Records matching all equality filters.

        Args:
            collection: Collection name ("flows", "executions")
            filters: Field -> expected value
            order_by: Sort field (ISO timestamps sort lexicographically)
            descending: Newest first when ordering by a timestamp
            limit: Max records to return
        """
        documents = [d for d in await self.all(collection) if matches(d, filters)]
        return sort_documents(documents, order_by, descending, limit)


class InMemoryDocumentStore(DocumentStore):
    """Process-local store for tests and ephemeral sessions"""

    def __init__(self):
        super().__init__()
        self._collections: Dict[str, Dict[str, Document]] = {}

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        document = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def _write(self, collection: str, doc_id: str, document: Document) -> None:
        self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(document)

    async def _remove(self, collection: str, doc_id: str) -> None:
        self._collections.get(collection, {}).pop(doc_id, None)

    async def all(self, collection: str) -> List[Document]:
        return [copy.deepcopy(d) for d in self._collections.get(collection, {}).values()]


class JsonFileDocumentStore(DocumentStore):
    """
    One JSON file per record.

    Storage structure:
        {base_dir}/
        ├── flows/
        │   └── {flow_id}.json
        └── executions/
            └── {execution_id}.json

    Writes go to a temp file and are moved into place, so readers never
    see a half-written record.
    """

    def __init__(self, base_dir: str):
        super().__init__()
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, collection: str, doc_id: str) -> Path:
        for part in (collection, doc_id):
            if not part or "/" in part or "\\" in part or part.startswith("."):
                raise ValidationError(f"Invalid record key: {part!r}", field="id")
        return self.base_dir / collection / f"{doc_id}.json"

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        path = self._path(collection, doc_id)
        if not path.exists():
            return None
        return await self._read(path)

    async def _read(self, path: Path) -> Document:
        try:
            async with aiofiles.open(path, "r") as f:
                return json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read {path.name}: {e}", record_id=path.stem)

    async def _write(self, collection: str, doc_id: str, document: Document) -> None:
        path = self._path(collection, doc_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(json.dumps(document, indent=2, default=str))
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceError(f"Failed to write {collection}/{doc_id}: {e}", record_id=doc_id)

    async def _remove(self, collection: str, doc_id: str) -> None:
        path = self._path(collection, doc_id)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceError(f"Failed to remove {collection}/{doc_id}: {e}", record_id=doc_id)

    async def all(self, collection: str) -> List[Document]:
        directory = self.base_dir / collection
        if not directory.is_dir():
            return []

        documents = []
        for path in sorted(directory.glob("*.json")):
            try:
                documents.append(await self._read(path))
            except PersistenceError as e:
                logger.warning("Skipping unreadable record", extra={"path": str(path), "error": e.message})
        return documents


def open_store(storage_path: Optional[str]) -> DocumentStore:
    """File-backed store at storage_path, or in-memory when it is ":memory:"/empty"""
    if not storage_path or storage_path == ":memory:":
        return InMemoryDocumentStore()
    return JsonFileDocumentStore(os.path.expanduser(storage_path))
