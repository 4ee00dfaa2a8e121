"""Audit accumulator - counts and logs actions taken under admin sessions."""

import logging
from typing import Any, Optional
from uuid import uuid4

from pairgate.engine.gate import PermissionGate
from pairgate.engine.sessions import AdminSessionManager
from pairgate.errors import NotFound, PairGateError, PermissionDenied
from pairgate.models import (
    AdminSession,
    AuditEvent,
    GateAction,
    PartyRole,
    Relationship,
)
from pairgate.store.base import DocumentStore
from pairgate.store.repositories import AuditRepository, RelationshipRepository
from pairgate.utils.time import Clock, SystemClock

logger = logging.getLogger(__name__)


class AuditAccumulator:
    """Records successful gated actions on the session and in the event log."""

    def __init__(
        self,
        store: DocumentStore,
        sessions: AdminSessionManager,
        gate: Optional[PermissionGate] = None,
        clock: Optional[Clock] = None,
    ):
        self.sessions = sessions
        self.gate = gate or PermissionGate()
        self.clock = clock or SystemClock()
        self.events = AuditRepository(store)
        self.relationships = RelationshipRepository(store)

    async def record(
        self,
        session: AdminSession,
        relationship: Relationship,
        action: GateAction,
        details: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Count an allowed action against its session.

        The event log entry is written only when the counter landed and the
        subject has audit logging on. Failures are logged, never raised.
        """
        decision = self.gate.authorize(relationship, action)
        recorded = await self.sessions.record_action(session.id, decision.category)
        if not recorded or not relationship.security.audit_log_enabled:
            return recorded

        event = AuditEvent(
            event_id=str(uuid4()),
            relationship_id=relationship.id,
            session_id=session.id,
            controller_id=session.controller_id,
            subject_id=session.subject_id,
            action=action,
            category=decision.category,
            details=details or {},
            created_at=self.clock.now(),
        )
        try:
            await self.events.append(event)
        except PairGateError as e:
            logger.warning(f"Audit event for session {session.id} not written: {e.message}")
        return recorded

    async def list_events(self, relationship_id: str, caller_id: str) -> list[AuditEvent]:
        """
        Audit trail of a relationship.

        The controller needs the view_audit_log permission; the subject needs
        subject_can_see_controller_actions. After termination, controller
        ids are withheld from the subject when anonymize_historical_data is on.
        """
        relationship = await self.relationships.get(relationship_id)
        if relationship is None:
            raise NotFound("Relationship", relationship_id)

        role = relationship.role_of(caller_id)
        if role is None:
            raise PermissionDenied("Caller is not a party to this relationship", reason="not_a_party")
        if role == PartyRole.CONTROLLER:
            self.gate.require(relationship, GateAction.VIEW_AUDIT_LOG)
        elif not relationship.privacy.subject_can_see_controller_actions:
            raise PermissionDenied(
                "Controller actions are hidden from the subject",
                reason="privacy",
            )

        events = await self.events.list_for_relationship(relationship_id)
        anonymize = (
            role == PartyRole.SUBJECT
            and not relationship.is_active()
            and relationship.privacy.anonymize_historical_data
        )
        if anonymize:
            events = [e.model_copy(update={"controller_id": None}) for e in events]
        return events
