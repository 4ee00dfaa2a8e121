"""Admin session model - time-boxed activation of a controller's authority."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from pairgate.models.enums import ActionCategory, SessionEndReason


class ActionCounters(BaseModel):
    """Per-category counts of privileged actions taken in a session."""

    views: int = 0
    state_changes: int = 0
    setting_changes: int = 0
    emergency_actions: int = 0
    exports: int = 0

    def incremented(self, category: ActionCategory) -> "ActionCounters":
        field = category.value
        return self.model_copy(update={field: getattr(self, field) + 1})

    def total(self) -> int:
        return (
            self.views
            + self.state_changes
            + self.setting_changes
            + self.emergency_actions
            + self.exports
        )


class AdminSession(BaseModel):
    """Elevated session scoped to a single relationship."""

    id: str
    relationship_id: str
    controller_id: str
    subject_id: str
    started_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    is_active: bool = True
    actions: ActionCounters = Field(default_factory=ActionCounters)

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    ended_at: Optional[datetime] = None
    end_reason: Optional[SessionEndReason] = None

    def is_expired(self, now: datetime) -> bool:
        """Expired once past the deadline or no longer active."""
        return not self.is_active or now >= self.expires_at

    def remaining_seconds(self, now: datetime) -> int:
        if not self.is_active:
            return 0
        return max(0, int((self.expires_at - now).total_seconds()))


class ReauthStatus(BaseModel):
    """Advisory re-authentication signal for a session."""

    session_id: str
    needs_reauth: bool
    remaining_seconds: int
    expired: bool
