"""PairGate enumerations."""

from enum import Enum


class CodeStatus(str, Enum):
    """Pairing code lifecycle status."""

    PENDING = "pending"
    USED = "used"
    EXPIRED = "expired"
    REVOKED = "revoked"

    def is_terminal(self) -> bool:
        """Every status other than pending is final."""
        return self is not CodeStatus.PENDING


class ShareMethod(str, Enum):
    """How the subject intends to hand the code to a controller."""

    MANUAL = "manual"
    QR = "qr"
    EMAIL = "email"
    URL = "url"


class LinkMethod(str, Enum):
    """How a relationship was established."""

    CODE = "code"
    QR = "qr"
    EMAIL = "email"

    @classmethod
    def from_share_method(cls, share_method: ShareMethod) -> "LinkMethod":
        if share_method == ShareMethod.QR:
            return cls.QR
        if share_method == ShareMethod.EMAIL:
            return cls.EMAIL
        return cls.CODE


class RelationshipStatus(str, Enum):
    """Relationship lifecycle status."""

    ACTIVE = "active"
    TERMINATED = "terminated"


class PartyRole(str, Enum):
    """Side of a relationship a caller is on."""

    CONTROLLER = "controller"
    SUBJECT = "subject"


class ActionCategory(str, Enum):
    """Admin session action counters."""

    VIEWS = "views"
    STATE_CHANGES = "state_changes"
    SETTING_CHANGES = "setting_changes"
    EMERGENCY_ACTIONS = "emergency_actions"
    EXPORTS = "exports"


class GateAction(str, Enum):
    """Privileged capabilities a controller may invoke."""

    VIEW_DATA = "view_data"
    CONTROL_STATE = "control_state"
    MANAGE_TASKS = "manage_tasks"
    SET_GOALS = "set_goals"
    EDIT_SETTINGS = "edit_settings"
    EMERGENCY_OVERRIDE = "emergency_override"
    FORCE_END = "force_end"
    VIEW_AUDIT_LOG = "view_audit_log"
    EXPORT_DATA = "export_data"


class SessionEndReason(str, Enum):
    """Why an admin session stopped being active."""

    ENDED = "ended"
    EXPIRED = "expired"
    RELATIONSHIP_TERMINATED = "relationship_terminated"


class ErrorKind(str, Enum):
    """Failure kinds surfaced in tagged results."""

    UNAUTHENTICATED = "unauthenticated"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    CONFLICT = "conflict"
    PERMISSION_DENIED = "permission_denied"
    VALIDATION_FAILED = "validation_failed"
    STORAGE_FAILURE = "storage_failure"
