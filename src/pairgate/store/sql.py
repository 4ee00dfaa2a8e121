"""SQLAlchemy-backed document store."""

import copy
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Optional

from sqlalchemy import Select, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pairgate.db.tables import DocumentTable
from pairgate.errors import StorageFailure
from pairgate.store.base import Document, DocumentStore, Predicate, matches
from pairgate.utils.time import utc_now

logger = logging.getLogger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class SqlDocumentStore(DocumentStore):
    """
    Document store over a single ``documents`` table.

    Conditional writes use optimistic concurrency: the row's version is read
    with the document, the predicate is evaluated in Python, and the update
    only applies ``WHERE version = <seen>``. Inserts of new documents use
    ``ON CONFLICT DO NOTHING`` so two racing creators cannot both win.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout_seconds: float = 5.0,
    ):
        super().__init__(timeout_seconds)
        self._session_factory = session_factory
        self._current: ContextVar[Optional[AsyncSession]] = ContextVar(
            f"pairgate_sql_session_{id(self)}", default=None
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._current.get() is not None:
            yield
            return

        async with self._session_factory() as session:
            token = self._current.set(session)
            try:
                yield
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                raise StorageFailure("Transaction failed to commit", "transaction") from e
            except BaseException:
                await session.rollback()
                raise
            finally:
                self._current.reset(token)

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Join the ambient transaction or run in a short-lived one."""
        current = self._current.get()
        if current is not None:
            yield current
            return

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    def _insert(self, session: AsyncSession):
        dialect = session.get_bind().dialect.name
        try:
            return _INSERT_BY_DIALECT[dialect]
        except KeyError:
            raise StorageFailure(f"Unsupported database dialect: {dialect}") from None

    async def _get(self, collection: str, doc_id: str) -> Optional[Document]:
        async with self._session() as session:
            result = await session.execute(
                select(DocumentTable.data).where(
                    DocumentTable.collection == collection,
                    DocumentTable.doc_id == doc_id,
                )
            )
            data = result.scalar_one_or_none()
            return copy.deepcopy(data) if data is not None else None

    async def _put(self, collection: str, doc_id: str, document: Document) -> None:
        now = utc_now()
        async with self._session() as session:
            insert = self._insert(session)
            stmt = insert(DocumentTable).values(
                collection=collection,
                doc_id=doc_id,
                version=1,
                data=document,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[DocumentTable.collection, DocumentTable.doc_id],
                set_={
                    "data": stmt.excluded.data,
                    "version": DocumentTable.version + 1,
                    "updated_at": now,
                },
            )
            await session.execute(stmt)

    async def _conditional_put(
        self,
        collection: str,
        doc_id: str,
        predicate: Predicate,
        document: Document,
    ) -> bool:
        now = utc_now()
        async with self._session() as session:
            result = await session.execute(
                select(DocumentTable.data, DocumentTable.version).where(
                    DocumentTable.collection == collection,
                    DocumentTable.doc_id == doc_id,
                )
            )
            row = result.one_or_none()
            current = copy.deepcopy(row.data) if row is not None else None

            if not predicate(current):
                return False

            if row is None:
                insert = self._insert(session)
                stmt = (
                    insert(DocumentTable)
                    .values(
                        collection=collection,
                        doc_id=doc_id,
                        version=1,
                        data=document,
                        created_at=now,
                        updated_at=now,
                    )
                    .on_conflict_do_nothing(
                        index_elements=[DocumentTable.collection, DocumentTable.doc_id]
                    )
                )
                inserted = await session.execute(stmt)
                return inserted.rowcount == 1

            updated = await session.execute(
                update(DocumentTable)
                .where(
                    DocumentTable.collection == collection,
                    DocumentTable.doc_id == doc_id,
                    DocumentTable.version == row.version,
                )
                .values(data=document, version=row.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                logger.info(f"Conditional write lost race on {collection}/{doc_id}")
                return False
            return True

    @staticmethod
    def _select(collection: str, filters: dict[str, Any]) -> Select:
        """Push string and boolean equality filters down into SQL."""
        query = select(DocumentTable.data).where(DocumentTable.collection == collection)
        for field, expected in filters.items():
            if isinstance(expected, bool):
                query = query.where(DocumentTable.data[field].as_boolean() == expected)
            elif isinstance(expected, str):
                query = query.where(DocumentTable.data[field].as_string() == expected)
        return query.order_by(DocumentTable.created_at.asc())

    async def _query(self, collection: str, filters: dict[str, Any]) -> list[Document]:
        async with self._session() as session:
            result = await session.execute(self._select(collection, filters))
            documents = [copy.deepcopy(data) for data in result.scalars().all()]

        # Number and list filters are applied here.
        return [d for d in documents if matches(d, filters)]
