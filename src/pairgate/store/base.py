"""Abstract document store contract.

The engine only ever talks to a DocumentStore. Documents are JSON-compatible
dicts keyed by (collection, id). Concrete stores implement the underscored
hooks; the public methods add the implicit timeout and translate backend
failures into StorageFailure so callers never see driver exceptions.

conditional_put is the race primitive: the predicate is evaluated against
the current document (or None) and the write only lands if the document has
not changed between evaluation and write. A False return means the caller
lost the race.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from pairgate.errors import PairGateError, StorageFailure
from pairgate.observability.metrics import metrics

logger = logging.getLogger(__name__)

Document = dict[str, Any]
Predicate = Callable[[Optional[Document]], bool]

T = TypeVar("T")


class DocumentStore(ABC):
    """Persistent store the core depends on."""

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return the document or None when absent."""
        return await self._guard("get", self._get(collection, doc_id))

    async def put(self, collection: str, doc_id: str, document: Document) -> None:
        """Unconditional upsert."""
        await self._guard("put", self._put(collection, doc_id, document))

    async def conditional_put(
        self,
        collection: str,
        doc_id: str,
        predicate: Predicate,
        document: Document,
    ) -> bool:
        """Write only if predicate(current) holds at write time."""
        written = await self._guard(
            "conditional_put",
            self._conditional_put(collection, doc_id, predicate, document),
        )
        if not written:
            metrics.inc_counter("store.conditional_put.conflict")
        return written

    async def query(
        self,
        collection: str,
        filters: Optional[dict[str, Any]] = None,
    ) -> list[Document]:
        """Return documents whose top-level fields equal every filter value."""
        return await self._guard("query", self._query(collection, filters or {}))

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Group writes so they commit or roll back together.

        Nested calls join the outer transaction.
        """

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def _get(self, collection: str, doc_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    async def _put(self, collection: str, doc_id: str, document: Document) -> None:
        pass

    @abstractmethod
    async def _conditional_put(
        self,
        collection: str,
        doc_id: str,
        predicate: Predicate,
        document: Document,
    ) -> bool:
        pass

    @abstractmethod
    async def _query(self, collection: str, filters: dict[str, Any]) -> list[Document]:
        pass

    async def _guard(self, operation: str, call: Awaitable[T]) -> T:
        """Apply the store timeout and map backend failures."""
        try:
            with metrics.timed(f"store.{operation}.duration_ms"):
                return await asyncio.wait_for(call, timeout=self.timeout_seconds)
        except PairGateError:
            raise
        except asyncio.TimeoutError as e:
            metrics.inc_counter("store.timeout")
            logger.warning(f"Store {operation} timed out after {self.timeout_seconds}s")
            raise StorageFailure(f"Store {operation} timed out", operation) from e
        except (SQLAlchemyError, OSError) as e:
            metrics.inc_counter("store.failure")
            logger.warning(f"Store {operation} failed: {e}")
            raise StorageFailure(f"Store {operation} failed", operation) from e


def matches(document: Document, filters: dict[str, Any]) -> bool:
    """Equality match on top-level fields."""
    for field, expected in filters.items():
        value = document.get(field)
        if isinstance(expected, (list, tuple, set)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True
