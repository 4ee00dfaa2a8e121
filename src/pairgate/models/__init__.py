"""PairGate data models."""

from pairgate.models.enums import (
    ActionCategory,
    CodeStatus,
    ErrorKind,
    GateAction,
    LinkMethod,
    PartyRole,
    RelationshipStatus,
    SessionEndReason,
    ShareMethod,
)
from pairgate.models.relationship import (
    Permissions,
    PermissionsUpdate,
    PrivacySettings,
    PrivacyUpdate,
    Relationship,
    RelationshipOverrides,
    RelationshipPatch,
    SecuritySettings,
    SecurityUpdate,
)
from pairgate.models.code import CodeIssued, CodeValidation, PairingCode
from pairgate.models.session import ActionCounters, AdminSession, ReauthStatus
from pairgate.models.audit import ActionOutcome, AuditEvent
from pairgate.models.result import ErrorDetail, Result

__all__ = [
    "ActionCategory",
    "ActionOutcome",
    "ActionCounters",
    "AdminSession",
    "AuditEvent",
    "CodeIssued",
    "CodeStatus",
    "CodeValidation",
    "ErrorDetail",
    "ErrorKind",
    "GateAction",
    "LinkMethod",
    "PairingCode",
    "PartyRole",
    "Permissions",
    "PermissionsUpdate",
    "PrivacySettings",
    "PrivacyUpdate",
    "ReauthStatus",
    "Relationship",
    "RelationshipOverrides",
    "RelationshipPatch",
    "RelationshipStatus",
    "Result",
    "SecuritySettings",
    "SecurityUpdate",
    "SessionEndReason",
    "ShareMethod",
]
