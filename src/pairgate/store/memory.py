"""In-memory document store (tests and single-process development)."""

import asyncio
import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Optional

from pairgate.store.base import Document, DocumentStore, Predicate, matches


class MemoryDocumentStore(DocumentStore):
    """
    Dict-backed store with the same semantics as the SQL store.

    Documents are deep-copied on the way in and out so callers never share
    state with the store. Transactions serialize on a single lock and roll
    back by restoring a snapshot. Mutations outside a transaction take the
    same lock so they cannot interleave with one.
    """

    def __init__(self, timeout_seconds: float = 5.0):
        super().__init__(timeout_seconds)
        self._collections: dict[str, dict[str, Document]] = {}
        self._lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"pairgate_memory_tx_{id(self)}", default=False
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
            return

        async with self._lock:
            snapshot = copy.deepcopy(self._collections)
            token = self._in_transaction.set(True)
            try:
                yield
            except BaseException:
                self._collections = snapshot
                raise
            finally:
                self._in_transaction.reset(token)

    @asynccontextmanager
    async def _write_lock(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            yield
        else:
            async with self._lock:
                yield

    async def _get(self, collection: str, doc_id: str) -> Optional[Document]:
        # Yield so concurrent callers interleave the way real I/O would.
        await asyncio.sleep(0)
        document = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def _put(self, collection: str, doc_id: str, document: Document) -> None:
        await asyncio.sleep(0)
        async with self._write_lock():
            self._collections.setdefault(collection, {})[doc_id] = copy.deepcopy(document)

    async def _conditional_put(
        self,
        collection: str,
        doc_id: str,
        predicate: Predicate,
        document: Document,
    ) -> bool:
        await asyncio.sleep(0)
        async with self._write_lock():
            docs = self._collections.setdefault(collection, {})
            current = docs.get(doc_id)
            if not predicate(copy.deepcopy(current) if current is not None else None):
                return False
            docs[doc_id] = copy.deepcopy(document)
            return True

    async def _query(self, collection: str, filters: dict[str, Any]) -> list[Document]:
        await asyncio.sleep(0)
        return [
            copy.deepcopy(document)
            for document in self._collections.get(collection, {}).values()
            if matches(document, filters)
        ]
