"""Typed repositories over the document store."""

from datetime import datetime
from typing import Callable, Optional, TypeVar

from pydantic import BaseModel

from pairgate.errors import Conflict
from pairgate.models import (
    AdminSession,
    AuditEvent,
    CodeStatus,
    PairingCode,
    Relationship,
    RelationshipStatus,
    SessionEndReason,
)
from pairgate.store.base import Document, DocumentStore

PAIRING_CODES = "pairing_codes"
RELATIONSHIPS = "relationships"
RELATIONSHIP_KEYS = "relationship_keys"
ADMIN_SESSIONS = "admin_sessions"
SESSION_LOCKS = "session_locks"
AUDIT_EVENTS = "audit_events"

M = TypeVar("M", bound=BaseModel)


def _dump(model: BaseModel) -> Document:
    return model.model_dump(mode="json")


def _load(model_cls: type[M], document: Optional[Document]) -> Optional[M]:
    return model_cls.model_validate(document) if document is not None else None


def _typed(model_cls: type[M], predicate: Callable[[Optional[M]], bool]):
    """Adapt a predicate over models to one over raw documents."""

    def check(document: Optional[Document]) -> bool:
        return predicate(_load(model_cls, document))

    return check


class RelationshipKey(BaseModel):
    """Uniqueness guard claimed while a relationship is active."""

    key: str
    relationship_id: str
    active: bool = True


class SessionLock(BaseModel):
    """Per-relationship guard pointing at the one active session."""

    relationship_id: str
    session_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    closed: bool = False

    def is_free(self, now: datetime) -> bool:
        if self.closed:
            return False
        return self.session_id is None or self.expires_at is None or self.expires_at <= now


class CodeRepository:
    """Repository for pairing codes."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, code: str) -> Optional[PairingCode]:
        return _load(PairingCode, await self.store.get(PAIRING_CODES, code))

    async def create(self, pairing_code: PairingCode) -> bool:
        """Insert a new code; False when the code string is already taken."""
        return await self.store.conditional_put(
            PAIRING_CODES,
            pairing_code.code,
            lambda current: current is None,
            _dump(pairing_code),
        )

    async def save_if(
        self,
        pairing_code: PairingCode,
        predicate: Callable[[Optional[PairingCode]], bool],
    ) -> bool:
        return await self.store.conditional_put(
            PAIRING_CODES,
            pairing_code.code,
            _typed(PairingCode, predicate),
            _dump(pairing_code),
        )

    async def list_for_subject(
        self,
        subject_id: str,
        status: Optional[CodeStatus] = None,
    ) -> list[PairingCode]:
        filters: dict = {"subject_id": subject_id}
        if status is not None:
            filters["status"] = status.value
        documents = await self.store.query(PAIRING_CODES, filters)
        return sorted(
            (PairingCode.model_validate(d) for d in documents),
            key=lambda c: c.created_at,
        )

    async def list_pending(self) -> list[PairingCode]:
        documents = await self.store.query(PAIRING_CODES, {"status": CodeStatus.PENDING.value})
        return [PairingCode.model_validate(d) for d in documents]


class RelationshipRepository:
    """Repository for relationships and their uniqueness keys."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, relationship_id: str) -> Optional[Relationship]:
        return _load(Relationship, await self.store.get(RELATIONSHIPS, relationship_id))

    async def create(self, relationship: Relationship) -> bool:
        return await self.store.conditional_put(
            RELATIONSHIPS,
            relationship.id,
            lambda current: current is None,
            _dump(relationship),
        )

    async def save_if(
        self,
        relationship: Relationship,
        predicate: Callable[[Optional[Relationship]], bool],
    ) -> bool:
        return await self.store.conditional_put(
            RELATIONSHIPS,
            relationship.id,
            _typed(Relationship, predicate),
            _dump(relationship),
        )

    async def list_for_user(self, user_id: str, active_only: bool = True) -> list[Relationship]:
        """Relationships where the user is controller or subject."""
        filters: dict = {}
        if active_only:
            filters["status"] = RelationshipStatus.ACTIVE.value

        as_controller = await self.store.query(RELATIONSHIPS, {**filters, "controller_id": user_id})
        as_subject = await self.store.query(RELATIONSHIPS, {**filters, "subject_id": user_id})

        by_id: dict[str, Relationship] = {}
        for document in as_controller + as_subject:
            relationship = Relationship.model_validate(document)
            by_id[relationship.id] = relationship
        return sorted(by_id.values(), key=lambda r: r.established_at, reverse=True)

    @staticmethod
    def keys_for(relationship: Relationship, single_controller: bool) -> list[str]:
        keys = [f"pair:{relationship.subject_id}:{relationship.controller_id}"]
        if single_controller:
            keys.append(f"subject:{relationship.subject_id}")
        return keys

    async def claim_key(self, key: str, relationship_id: str) -> Optional[str]:
        """
        Claim a uniqueness key for a relationship.

        Returns None on success, or the id of the relationship currently
        holding the key.
        """
        holder: list[str] = []

        def is_free(current: Optional[RelationshipKey]) -> bool:
            if current is not None and current.active:
                holder.append(current.relationship_id)
                return False
            return True

        claimed = await self.store.conditional_put(
            RELATIONSHIP_KEYS,
            key,
            _typed(RelationshipKey, is_free),
            _dump(RelationshipKey(key=key, relationship_id=relationship_id)),
        )
        if claimed:
            return None
        return holder[-1] if holder else ""

    async def release_key(self, key: str, relationship_id: str) -> bool:
        """Release a key, but only if this relationship still holds it."""
        return await self.store.conditional_put(
            RELATIONSHIP_KEYS,
            key,
            _typed(
                RelationshipKey,
                lambda current: current is not None
                and current.active
                and current.relationship_id == relationship_id,
            ),
            _dump(RelationshipKey(key=key, relationship_id=relationship_id, active=False)),
        )


class SessionRepository:
    """Repository for admin sessions and their per-relationship locks."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, session_id: str) -> Optional[AdminSession]:
        return _load(AdminSession, await self.store.get(ADMIN_SESSIONS, session_id))

    async def save(self, session: AdminSession) -> None:
        await self.store.put(ADMIN_SESSIONS, session.id, _dump(session))

    async def save_if(
        self,
        session: AdminSession,
        predicate: Callable[[Optional[AdminSession]], bool],
    ) -> bool:
        return await self.store.conditional_put(
            ADMIN_SESSIONS,
            session.id,
            _typed(AdminSession, predicate),
            _dump(session),
        )

    async def update(
        self,
        session_id: str,
        mutate: Callable[[AdminSession], Optional[AdminSession]],
        attempts: int = 3,
    ) -> Optional[AdminSession]:
        """
        Read-modify-write with optimistic retries.

        ``mutate`` returns the new session, or None to leave it untouched.
        The write only lands if the stored session is unchanged since it
        was read; otherwise the read is repeated.
        """
        for _ in range(max(1, attempts)):
            current = await self.get(session_id)
            if current is None:
                return None
            updated = mutate(current)
            if updated is None:
                return None
            if await self.save_if(updated, lambda stored: stored == current):
                return updated
        raise Conflict(f"Admin session {session_id} was modified concurrently")

    async def end(
        self,
        session_id: str,
        reason: SessionEndReason,
        now: datetime,
        attempts: int = 3,
    ) -> Optional[AdminSession]:
        """Mark a session inactive; None if it was not active."""

        def deactivate(current: AdminSession) -> Optional[AdminSession]:
            if not current.is_active:
                return None
            return current.model_copy(
                update={"is_active": False, "ended_at": now, "end_reason": reason}
            )

        return await self.update(session_id, deactivate, attempts)

    async def list_for_relationship(
        self,
        relationship_id: str,
        active_only: bool = False,
    ) -> list[AdminSession]:
        filters: dict = {"relationship_id": relationship_id}
        if active_only:
            filters["is_active"] = True
        documents = await self.store.query(ADMIN_SESSIONS, filters)
        return [AdminSession.model_validate(d) for d in documents]

    async def list_active(self) -> list[AdminSession]:
        documents = await self.store.query(ADMIN_SESSIONS, {"is_active": True})
        return [AdminSession.model_validate(d) for d in documents]

    async def get_lock(self, relationship_id: str) -> Optional[SessionLock]:
        return _load(SessionLock, await self.store.get(SESSION_LOCKS, relationship_id))

    async def claim_lock(
        self,
        relationship_id: str,
        session_id: str,
        expires_at: datetime,
        now: datetime,
    ) -> bool:
        """Point the relationship's lock at a new session if it is free."""
        lock = SessionLock(
            relationship_id=relationship_id,
            session_id=session_id,
            expires_at=expires_at,
        )
        return await self.store.conditional_put(
            SESSION_LOCKS,
            relationship_id,
            _typed(SessionLock, lambda current: current is None or current.is_free(now)),
            _dump(lock),
        )

    async def extend_lock(self, relationship_id: str, session_id: str, expires_at: datetime) -> bool:
        lock = SessionLock(
            relationship_id=relationship_id,
            session_id=session_id,
            expires_at=expires_at,
        )
        return await self.store.conditional_put(
            SESSION_LOCKS,
            relationship_id,
            _typed(
                SessionLock,
                lambda current: current is not None
                and not current.closed
                and current.session_id == session_id,
            ),
            _dump(lock),
        )

    async def release_lock(self, relationship_id: str, session_id: str) -> bool:
        """Free the lock if it still points at this session."""
        return await self.store.conditional_put(
            SESSION_LOCKS,
            relationship_id,
            _typed(
                SessionLock,
                lambda current: current is not None
                and not current.closed
                and current.session_id == session_id,
            ),
            _dump(SessionLock(relationship_id=relationship_id)),
        )

    async def close_lock(self, relationship_id: str) -> None:
        """Permanently close the lock once the relationship is terminated."""
        await self.store.put(
            SESSION_LOCKS,
            relationship_id,
            _dump(SessionLock(relationship_id=relationship_id, closed=True)),
        )


class AuditRepository:
    """Append-only repository for audit events."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def append(self, event: AuditEvent) -> None:
        await self.store.put(AUDIT_EVENTS, event.event_id, _dump(event))

    async def list_for_relationship(self, relationship_id: str) -> list[AuditEvent]:
        documents = await self.store.query(AUDIT_EVENTS, {"relationship_id": relationship_id})
        return sorted(
            (AuditEvent.model_validate(d) for d in documents),
            key=lambda e: e.created_at,
        )
