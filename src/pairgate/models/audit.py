"""Audit event model - append-only record of privileged actions."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from pairgate.models.enums import ActionCategory, GateAction


class AuditEvent(BaseModel):
    """Audit trail entry for an action taken under an admin session."""

    event_id: str
    relationship_id: str
    session_id: str
    controller_id: Optional[str]
    subject_id: str
    action: GateAction
    category: ActionCategory
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ActionOutcome(BaseModel):
    """Result of a gated action performed under an admin session."""

    action: GateAction
    category: ActionCategory
    recorded: bool
    value: Any = None
