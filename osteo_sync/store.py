"""Entity store interface and an in-memory implementation.

Every operation in the core talks to the backing store through the four
calls declared on :class:`EntityStore`. The store offers single-document
atomicity only; nothing here assumes multi-document transactions.
"""
from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set, Tuple

from .errors import StoreUnavailable

Document = Dict[str, Any]


class EntityStore(Protocol):
    """Uniform document access over the practice collections."""

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return the document (with its ``id`` key) or ``None`` when absent."""

    async def query_by_equality(self, collection: str, fields: Mapping[str, Any]) -> List[Document]:
        """Return every document whose fields equal all of ``fields``."""

    async def put(self, collection: str, doc_id: str, record: Mapping[str, Any]) -> None:
        """Create or replace the document ``doc_id``."""

    async def delete(self, collection: str, doc_id: str) -> None:
        """Remove the document ``doc_id``; deleting an absent document is not an error."""


class InMemoryStore:
    """Dict-backed store used by the test-suite and ``OFFLINE_MODE``.

    ``fail_on`` lets callers simulate a store failure for one operation on one
    document, e.g. ``store.fail_on.add(("delete", "appointments", "a1"))``.
    Use ``"*"`` as document id to fail every call of that kind on a collection.
    """

    def __init__(self, seed: Optional[Mapping[str, Mapping[str, Mapping[str, Any]]]] = None) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self.fail_on: Set[Tuple[str, str, str]] = set()
        self.writes: List[Tuple[str, str, str]] = []
        for collection, docs in (seed or {}).items():
            for doc_id, record in docs.items():
                self._bucket(collection)[doc_id] = {**copy.deepcopy(dict(record)), "id": doc_id}

    def _bucket(self, collection: str) -> Dict[str, Document]:
        return self._collections.setdefault(collection, {})

    def _check(self, op: str, collection: str, doc_id: str) -> None:
        if (op, collection, doc_id) in self.fail_on or (op, collection, "*") in self.fail_on:
            raise StoreUnavailable(f"simulated {op} failure on {collection}/{doc_id}")

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        self._check("get", collection, doc_id)
        doc = self._bucket(collection).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def query_by_equality(self, collection: str, fields: Mapping[str, Any]) -> List[Document]:
        self._check("query", collection, "*")
        return [
            copy.deepcopy(doc)
            for doc in self._bucket(collection).values()
            if all(doc.get(key) == value for key, value in fields.items())
        ]

    async def put(self, collection: str, doc_id: str, record: Mapping[str, Any]) -> None:
        self._check("put", collection, doc_id)
        self._bucket(collection)[doc_id] = {**copy.deepcopy(dict(record)), "id": doc_id}
        self.writes.append(("put", collection, doc_id))

    async def delete(self, collection: str, doc_id: str) -> None:
        self._check("delete", collection, doc_id)
        self._bucket(collection).pop(doc_id, None)
        self.writes.append(("delete", collection, doc_id))

    # helpers for tests and tooling; not part of EntityStore
    def add(self, collection: str, doc_id: str, record: Mapping[str, Any]) -> Document:
        doc = {**copy.deepcopy(dict(record)), "id": doc_id}
        self._bucket(collection)[doc_id] = doc
        return copy.deepcopy(doc)

    def snapshot(self, collection: str) -> Dict[str, Document]:
        return copy.deepcopy(self._bucket(collection))
