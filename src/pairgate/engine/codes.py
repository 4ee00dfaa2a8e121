"""Pairing code generation, validation and redemption."""

import json
import logging
import secrets
from datetime import timedelta
from typing import Callable, Optional

from pairgate.config import Settings, settings as default_settings
from pairgate.engine.relationships import RelationshipService
from pairgate.errors import (
    AlreadyUsed,
    Conflict,
    Expired,
    NotFound,
    PairGateError,
    PermissionDenied,
    QuotaExceeded,
    Unauthenticated,
    ValidationFailed,
)
from pairgate.models import (
    CodeIssued,
    CodeStatus,
    CodeValidation,
    LinkMethod,
    PairingCode,
    Relationship,
    RelationshipOverrides,
    ShareMethod,
)
from pairgate.observability.metrics import metrics
from pairgate.store.base import DocumentStore
from pairgate.store.repositories import CodeRepository
from pairgate.utils.time import Clock, SystemClock, format_duration

logger = logging.getLogger(__name__)

TokenSource = Callable[[int], bytes]

QR_PAYLOAD_TYPE = "pairgate_link"
QR_PAYLOAD_VERSION = "1.0"


def generate_code_string(
    length: int,
    alphabet: str,
    token_source: TokenSource = secrets.token_bytes,
) -> str:
    """
    Draw a code from a cryptographically secure byte source.

    Bytes at or above the largest multiple of the alphabet size are
    rejected so every character is equally likely.
    """
    size = len(alphabet)
    limit = 256 - (256 % size)
    chars: list[str] = []
    while len(chars) < length:
        for byte in token_source(length * 2):
            if byte < limit:
                chars.append(alphabet[byte % size])
                if len(chars) == length:
                    break
    return "".join(chars)


def mask_code(code: str) -> str:
    """Codes are secrets; logs only carry a prefix."""
    return f"{code[:4]}****"


class CodeService:
    """Issues pairing codes and turns them into relationships."""

    def __init__(
        self,
        store: DocumentStore,
        relationships: RelationshipService,
        clock: Optional[Clock] = None,
        config: Optional[Settings] = None,
        token_source: TokenSource = secrets.token_bytes,
    ):
        self.store = store
        self.relationships = relationships
        self.clock = clock or SystemClock()
        self.config = config or default_settings
        self.token_source = token_source
        self.codes = CodeRepository(store)

    def normalize(self, code: str) -> str:
        """Uppercase and strip separators, then check length and alphabet."""
        if not isinstance(code, str):
            raise ValidationFailed("Pairing code must be a string")
        normalized = code.strip().upper().replace("-", "").replace(" ", "")
        alphabet = self.config.code_alphabet
        if len(normalized) != self.config.code_length or any(c not in alphabet for c in normalized):
            raise ValidationFailed(
                "Invalid pairing code format",
                {"expected_length": self.config.code_length},
            )
        return normalized

    def share_url(self, code: str) -> str:
        return f"{self.config.app_url.rstrip('/')}/link/{code}"

    def qr_payload(self, code: str) -> str:
        return json.dumps(
            {
                "type": QR_PAYLOAD_TYPE,
                "code": code,
                "version": QR_PAYLOAD_VERSION,
                "appUrl": self.config.app_url,
            }
        )

    async def generate(
        self,
        subject_id: str,
        expiration_hours: Optional[float] = None,
        max_uses: int = 1,
        share_method: ShareMethod = ShareMethod.MANUAL,
        grant: Optional[RelationshipOverrides] = None,
    ) -> CodeIssued:
        """Issue a new pending code for the subject."""
        if not subject_id:
            raise Unauthenticated()

        hours = (
            self.config.default_code_expiration_hours
            if expiration_hours is None
            else expiration_hours
        )
        if hours <= 0 or hours > self.config.max_code_expiration_hours:
            raise ValidationFailed(
                f"expiration_hours must be in (0, {self.config.max_code_expiration_hours}]"
            )
        if max_uses < 1 or max_uses > self.config.max_code_uses:
            raise ValidationFailed(f"max_uses must be between 1 and {self.config.max_code_uses}")
        if grant is not None:
            # Reject a grant the relationship could never carry.
            self.relationships.build_policy(grant, None)

        now = self.clock.now()
        active = [c for c in await self.codes.list_for_subject(subject_id, CodeStatus.PENDING) if c.is_usable(now)]
        if len(active) >= self.config.max_active_codes_per_subject:
            raise QuotaExceeded("active_codes", self.config.max_active_codes_per_subject)

        expires_at = now + timedelta(hours=hours)
        for attempt in range(1, self.config.code_generation_attempts + 1):
            code = generate_code_string(
                self.config.code_length,
                self.config.code_alphabet,
                self.token_source,
            )
            pairing_code = PairingCode(
                code=code,
                subject_id=subject_id,
                created_at=now,
                expires_at=expires_at,
                max_uses=max_uses,
                share_method=share_method,
                grant=grant,
            )
            if await self.codes.create(pairing_code):
                break
            metrics.inc_counter("codes.collision")
            logger.warning(f"Pairing code collision on attempt {attempt}, regenerating")
        else:
            raise Conflict("Could not allocate a unique pairing code")

        metrics.inc_counter("codes.generated")
        logger.info(
            f"Pairing code {mask_code(code)} issued for subject {subject_id} "
            f"(expires in {format_duration(hours * 3600)}, max_uses={max_uses})"
        )
        return CodeIssued(
            code=code,
            expires_at=expires_at,
            expires_in=format_duration(hours * 3600),
            max_uses=max_uses,
            share_url=self.share_url(code),
            qr_code_data=self.qr_payload(code) if share_method == ShareMethod.QR else None,
        )

    async def _load_usable(self, code: str) -> PairingCode:
        """Run the validation checks in order; raise on the first failure."""
        record = await self.codes.get(code)
        if record is None:
            raise NotFound("Pairing code", mask_code(code))

        now = self.clock.now()
        if record.is_expired(now):
            raise Expired(
                "Pairing code has expired",
                mark_expired=record.status == CodeStatus.PENDING,
            )
        if record.status == CodeStatus.REVOKED:
            raise AlreadyUsed("Pairing code has been revoked")
        if record.status.is_terminal() or record.used_by is not None:
            raise AlreadyUsed()
        return record

    async def validate(self, code: str) -> CodeValidation:
        """Read-only check of a presented code."""
        record = await self._load_usable(self.normalize(code))
        return CodeValidation(
            valid=True,
            remaining_seconds=record.remaining_seconds(self.clock.now()),
            subject_id=record.subject_id,
            uses_left=record.max_uses - record.use_count,
        )

    async def redeem(
        self,
        code: str,
        controller_id: str,
        requested: Optional[RelationshipOverrides] = None,
    ) -> Relationship:
        """
        Redeem a code and establish the relationship.

        The code is claimed with a conditional write that re-checks it is
        still pending, unexpired and unchanged, so of two concurrent
        redeemers only one can win. The claim and the relationship are
        written in one transaction.
        """
        if not controller_id:
            raise Unauthenticated()
        normalized = self.normalize(code)

        try:
            record = await self._load_usable(normalized)
        except Expired as e:
            if e.mark_expired:
                await self.mark_expired(normalized)
            raise

        if record.subject_id == controller_id:
            raise ValidationFailed("You cannot redeem your own pairing code")

        now = self.clock.now()
        use_count = record.use_count + 1
        exhausted = use_count >= record.max_uses
        claimed = record.model_copy(
            update={
                "use_count": use_count,
                "redemptions": [*record.redemptions, controller_id],
                "used_at": now,
                "status": CodeStatus.USED if exhausted else CodeStatus.PENDING,
                "used_by": controller_id if exhausted else None,
            }
        )

        async with self.store.transaction():
            won = await self.codes.save_if(
                claimed,
                lambda current: current is not None
                and current.is_usable(now)
                and current.use_count == record.use_count,
            )
            if not won:
                raise await self._lost_claim(normalized)

            relationship = await self.relationships.create(
                controller_id,
                record.subject_id,
                requested=requested,
                grant=record.grant,
                link_method=LinkMethod.from_share_method(record.share_method),
            )

        metrics.inc_counter("codes.redeemed")
        logger.info(
            f"Pairing code {mask_code(normalized)} redeemed by {controller_id} "
            f"({use_count}/{record.max_uses} uses)"
        )
        return relationship

    async def _lost_claim(self, code: str) -> PairGateError:
        """Explain why a claim lost: the code changed since validation."""
        metrics.inc_counter("codes.redeem.lost_race")
        try:
            await self._load_usable(code)
        except (Expired, AlreadyUsed) as e:
            logger.warning(f"Redemption of {mask_code(code)} lost: {e.message}")
            return e
        # Still usable means another redemption of a multi-use code landed first.
        logger.warning(f"Redemption of {mask_code(code)} lost a concurrent update")
        return AlreadyUsed("Pairing code was redeemed concurrently; retry")

    async def revoke(self, code: str, subject_id: str) -> PairingCode:
        """Subject withdraws a pending code."""
        if not subject_id:
            raise Unauthenticated()
        normalized = self.normalize(code)
        record = await self.codes.get(normalized)
        if record is None:
            raise NotFound("Pairing code", mask_code(normalized))
        if record.subject_id != subject_id:
            raise PermissionDenied("Only the issuing subject may revoke a code", reason="not_owner")
        if record.status == CodeStatus.REVOKED:
            return record
        if record.status == CodeStatus.USED:
            raise AlreadyUsed()

        now = self.clock.now()
        if record.status == CodeStatus.EXPIRED or record.is_expired(now):
            if record.status == CodeStatus.PENDING:
                await self.mark_expired(normalized)
            raise Expired("Pairing code has expired")

        revoked = record.model_copy(update={"status": CodeStatus.REVOKED, "revoked_at": now})
        saved = await self.codes.save_if(
            revoked,
            lambda current: current is not None
            and current.can_transition_to(CodeStatus.REVOKED)
            and current.use_count == record.use_count,
        )
        if not saved:
            raise Conflict("Pairing code changed while revoking; retry")

        metrics.inc_counter("codes.revoked")
        logger.info(f"Pairing code {mask_code(normalized)} revoked by subject {subject_id}")
        return revoked

    async def list_active(self, subject_id: str) -> list[PairingCode]:
        """The subject's pending, unexpired codes."""
        if not subject_id:
            raise Unauthenticated()
        now = self.clock.now()
        return [
            c
            for c in await self.codes.list_for_subject(subject_id, CodeStatus.PENDING)
            if c.is_usable(now)
        ]

    async def mark_expired(self, code: str) -> bool:
        """Move a pending, past-deadline code to expired."""
        record = await self.codes.get(code)
        now = self.clock.now()
        if record is None or record.status != CodeStatus.PENDING or not record.is_expired(now):
            return False

        expired = record.model_copy(update={"status": CodeStatus.EXPIRED})
        marked = await self.codes.save_if(
            expired,
            lambda current: current is not None
            and current.can_transition_to(CodeStatus.EXPIRED)
            and current.is_expired(now),
        )
        if marked:
            metrics.inc_counter("codes.expired")
            logger.info(f"Pairing code {mask_code(code)} marked expired")
        return marked

    async def sweep_expired(self) -> int:
        """Mark every expired pending code; returns how many were marked."""
        now = self.clock.now()
        count = 0
        for record in await self.codes.list_pending():
            if record.is_expired(now) and await self.mark_expired(record.code):
                count += 1
        return count
