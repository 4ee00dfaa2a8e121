"""Pairing code model - one-time secret that establishes a relationship."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from pairgate.models.enums import CodeStatus, ShareMethod
from pairgate.models.relationship import RelationshipOverrides


class PairingCode(BaseModel):
    """A code issued by a subject and redeemed by a controller."""

    code: str
    subject_id: str
    created_at: datetime
    expires_at: datetime
    status: CodeStatus = CodeStatus.PENDING
    max_uses: int = 1
    use_count: int = 0
    used_by: Optional[str] = None
    used_at: Optional[datetime] = None
    redemptions: list[str] = Field(default_factory=list)
    revoked_at: Optional[datetime] = None
    share_method: ShareMethod = ShareMethod.MANUAL

    # Overrides the subject grants up front; the controller can only narrow them.
    grant: Optional[RelationshipOverrides] = None

    def is_expired(self, now: datetime) -> bool:
        """Check if the code has passed its deadline."""
        return now >= self.expires_at

    def is_usable(self, now: datetime) -> bool:
        return (
            self.status == CodeStatus.PENDING
            and self.used_by is None
            and not self.is_expired(now)
        )

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, int((self.expires_at - now).total_seconds()))

    def can_transition_to(self, new_status: CodeStatus) -> bool:
        """Codes only leave pending; they never move backward."""
        return self.status == CodeStatus.PENDING and new_status != CodeStatus.PENDING


class CodeIssued(BaseModel):
    """Returned to the subject after generating a code."""

    code: str
    expires_at: datetime
    expires_in: str
    max_uses: int
    share_url: str
    qr_code_data: Optional[str] = None


class CodeValidation(BaseModel):
    """Outcome of a successful, read-only validation."""

    valid: bool = True
    remaining_seconds: int
    subject_id: str
    uses_left: int
