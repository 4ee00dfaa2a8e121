"""API request/response schemas."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from pairgate.models import (
    ActionCategory,
    GateAction,
    RelationshipOverrides,
    ShareMethod,
)


class HealthResponse(BaseModel):
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Body of every non-2xx engine response."""

    kind: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Pairing codes
# ============================================================================


class GenerateCodeRequest(BaseModel):
    """Generate code request."""

    expiration_hours: Optional[float] = Field(None, gt=0, description="Code lifetime in hours")
    max_uses: int = Field(1, ge=1, description="Redemptions allowed (1 = single use)")
    share_method: ShareMethod = Field(ShareMethod.MANUAL, description="manual, qr, email, url")
    grant: Optional[RelationshipOverrides] = Field(
        None, description="Policy the subject grants the future relationship"
    )


class RedeemCodeRequest(BaseModel):
    """Redeem code request."""

    overrides: Optional[RelationshipOverrides] = Field(
        None, description="Requested narrowing of the granted policy"
    )


# ============================================================================
# Relationships
# ============================================================================


class TerminateRelationshipRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ============================================================================
# Admin sessions
# ============================================================================


class RecordActionRequest(BaseModel):
    category: ActionCategory


class RecordActionResponse(BaseModel):
    recorded: bool


class PerformActionRequest(BaseModel):
    """Perform a gated action under an admin session."""

    action: GateAction
    details: dict[str, Any] = Field(default_factory=dict)
