"""Relationship model - durable pairing between a controller and a subject."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from pairgate.models.enums import (
    LinkMethod,
    PartyRole,
    RelationshipStatus,
)


class Permissions(BaseModel):
    """What the controller may do to the subject's data."""

    # Data access
    view_data: bool = True
    view_audit_log: bool = True

    # Control
    control_state: bool = True
    manage_tasks: bool = True
    set_goals: bool = True
    edit_settings: bool = False

    # Emergency controls
    emergency_override: bool = False
    force_end: bool = False

    # Admin actions
    export_data: bool = False


class SecuritySettings(BaseModel):
    """Session and audit policy chosen by the subject."""

    session_timeout_minutes: int = Field(default=30, ge=1)
    require_reauth: bool = False
    audit_log_enabled: bool = True
    ip_restrictions: list[str] = Field(default_factory=list)


class PrivacySettings(BaseModel):
    """Visibility policy chosen by the subject."""

    subject_can_see_controller_actions: bool = True
    controller_can_see_private_notes: bool = False
    share_statistics: bool = True
    retain_data_after_disconnect: bool = False
    anonymize_historical_data: bool = True


class PermissionsUpdate(BaseModel):
    """Partial permissions; unset fields are left alone."""

    model_config = ConfigDict(extra="forbid")

    view_data: Optional[bool] = None
    view_audit_log: Optional[bool] = None
    control_state: Optional[bool] = None
    manage_tasks: Optional[bool] = None
    set_goals: Optional[bool] = None
    edit_settings: Optional[bool] = None
    emergency_override: Optional[bool] = None
    force_end: Optional[bool] = None
    export_data: Optional[bool] = None


class SecurityUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    session_timeout_minutes: Optional[int] = Field(default=None, ge=1)
    require_reauth: Optional[bool] = None
    audit_log_enabled: Optional[bool] = None
    ip_restrictions: Optional[list[str]] = None


class PrivacyUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    subject_can_see_controller_actions: Optional[bool] = None
    controller_can_see_private_notes: Optional[bool] = None
    share_statistics: Optional[bool] = None
    retain_data_after_disconnect: Optional[bool] = None
    anonymize_historical_data: Optional[bool] = None


class RelationshipOverrides(BaseModel):
    """Requested deviations from the default policy."""

    model_config = ConfigDict(extra="forbid")

    permissions: Optional[PermissionsUpdate] = None
    security: Optional[SecurityUpdate] = None
    privacy: Optional[PrivacyUpdate] = None

    def is_empty(self) -> bool:
        return self.permissions is None and self.security is None and self.privacy is None


class RelationshipPatch(RelationshipOverrides):
    """Caller-supplied update to an existing relationship."""

    status: Optional[RelationshipStatus] = None
    termination_reason: Optional[str] = Field(default=None, max_length=500)


class Relationship(BaseModel):
    """Pairing record carrying the permission, security and privacy policy."""

    id: str
    controller_id: str
    subject_id: str
    established_at: datetime
    status: RelationshipStatus = RelationshipStatus.ACTIVE
    link_method: LinkMethod = LinkMethod.CODE

    permissions: Permissions = Field(default_factory=Permissions)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    privacy: PrivacySettings = Field(default_factory=PrivacySettings)

    # Termination (populated once terminated)
    terminated_at: Optional[datetime] = None
    terminated_by: Optional[PartyRole] = None
    termination_reason: Optional[str] = None

    updated_at: Optional[datetime] = None

    def is_active(self) -> bool:
        return self.status == RelationshipStatus.ACTIVE

    def role_of(self, user_id: str) -> Optional[PartyRole]:
        """Return which side of the relationship a user is on, if any."""
        if user_id == self.controller_id:
            return PartyRole.CONTROLLER
        if user_id == self.subject_id:
            return PartyRole.SUBJECT
        return None

    def can_transition_to(self, new_status: RelationshipStatus) -> bool:
        """active -> terminated is the only transition."""
        valid_transitions: dict[RelationshipStatus, set[RelationshipStatus]] = {
            RelationshipStatus.ACTIVE: {RelationshipStatus.TERMINATED},
            RelationshipStatus.TERMINATED: set(),
        }
        return new_status in valid_transitions.get(self.status, set())
