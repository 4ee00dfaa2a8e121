"""PairGate database layer."""

from pairgate.db.base import Base, close_db, get_engine, get_session_factory, init_db
from pairgate.db.tables import DocumentTable

__all__ = [
    "Base",
    "DocumentTable",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
