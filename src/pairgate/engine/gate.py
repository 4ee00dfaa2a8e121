"""Permission gate - pure allow/deny decisions for privileged actions."""

from typing import Optional

from pydantic import BaseModel

from pairgate.errors import PermissionDenied
from pairgate.models import ActionCategory, GateAction, Relationship

# action -> (permission flag on Relationship.permissions, counter category)
ACTION_RULES: dict[GateAction, tuple[str, ActionCategory]] = {
    GateAction.VIEW_DATA: ("view_data", ActionCategory.VIEWS),
    GateAction.VIEW_AUDIT_LOG: ("view_audit_log", ActionCategory.VIEWS),
    GateAction.CONTROL_STATE: ("control_state", ActionCategory.STATE_CHANGES),
    GateAction.MANAGE_TASKS: ("manage_tasks", ActionCategory.STATE_CHANGES),
    GateAction.SET_GOALS: ("set_goals", ActionCategory.STATE_CHANGES),
    GateAction.EDIT_SETTINGS: ("edit_settings", ActionCategory.SETTING_CHANGES),
    GateAction.EMERGENCY_OVERRIDE: ("emergency_override", ActionCategory.EMERGENCY_ACTIONS),
    GateAction.FORCE_END: ("force_end", ActionCategory.EMERGENCY_ACTIONS),
    GateAction.EXPORT_DATA: ("export_data", ActionCategory.EXPORTS),
}

REASON_RELATIONSHIP_INACTIVE = "relationship_inactive"
REASON_PERMISSION_DISABLED = "permission_disabled"


class GateDecision(BaseModel):
    """Outcome of authorizing one action against one relationship."""

    allowed: bool
    action: GateAction
    permission: str
    category: ActionCategory
    reason: Optional[str] = None


def authorize(relationship: Relationship, action: GateAction) -> GateDecision:
    """Decide whether the relationship permits the action. No I/O."""
    permission, category = ACTION_RULES[action]

    if not relationship.is_active():
        reason = REASON_RELATIONSHIP_INACTIVE
    elif not getattr(relationship.permissions, permission):
        reason = REASON_PERMISSION_DISABLED
    else:
        reason = None

    return GateDecision(
        allowed=reason is None,
        action=action,
        permission=permission,
        category=category,
        reason=reason,
    )


def authorize_category(relationship: Relationship, category: ActionCategory) -> GateDecision:
    """Permit a counter category when any action counted under it is permitted."""
    decisions = [
        authorize(relationship, action)
        for action, (_, counted_as) in ACTION_RULES.items()
        if counted_as is category
    ]
    return next((d for d in decisions if d.allowed), decisions[0])


class PermissionGate:
    """Gate consulted before any privileged operation."""

    def authorize(self, relationship: Relationship, action: GateAction) -> GateDecision:
        return authorize(relationship, action)

    def authorize_category(
        self, relationship: Relationship, category: ActionCategory
    ) -> GateDecision:
        return authorize_category(relationship, category)

    def require(self, relationship: Relationship, action: GateAction) -> GateDecision:
        decision = authorize(relationship, action)
        if not decision.allowed:
            raise PermissionDenied(
                f"Action {action.value} denied: {decision.reason}",
                reason=decision.reason,
            )
        return decision
