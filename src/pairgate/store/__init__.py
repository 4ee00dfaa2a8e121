"""PairGate document stores."""

from typing import Optional

from pairgate.config import Settings, StoreBackend, settings as default_settings
from pairgate.store.base import Document, DocumentStore, Predicate
from pairgate.store.memory import MemoryDocumentStore


def create_store(config: Optional[Settings] = None) -> DocumentStore:
    """Build the store selected by configuration."""
    config = config or default_settings
    if config.store_backend == StoreBackend.MEMORY:
        return MemoryDocumentStore(timeout_seconds=config.store_timeout_seconds)

    from pairgate.db.base import get_session_factory
    from pairgate.store.sql import SqlDocumentStore

    return SqlDocumentStore(
        get_session_factory(),
        timeout_seconds=config.store_timeout_seconds,
    )


__all__ = [
    "Document",
    "DocumentStore",
    "MemoryDocumentStore",
    "Predicate",
    "create_store",
]
