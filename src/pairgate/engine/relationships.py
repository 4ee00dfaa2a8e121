"""Relationship store - establish, update and terminate pairings."""

import logging
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel

from pairgate.config import Settings, settings as default_settings
from pairgate.errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from pairgate.models import (
    LinkMethod,
    PartyRole,
    Permissions,
    PrivacySettings,
    Relationship,
    RelationshipOverrides,
    RelationshipPatch,
    RelationshipStatus,
    SecuritySettings,
    SessionEndReason,
)
from pairgate.observability.metrics import metrics
from pairgate.store.base import DocumentStore
from pairgate.store.repositories import RelationshipRepository, SessionRepository
from pairgate.utils.net import validate_ip_restrictions
from pairgate.utils.time import Clock, SystemClock

logger = logging.getLogger(__name__)


def _merged(model: BaseModel, changes: Optional[BaseModel]):
    """Apply the set fields of a partial model, re-running validation."""
    if changes is None:
        return model
    data = model.model_dump()
    data.update(changes.model_dump(exclude_none=True))
    return type(model).model_validate(data)


class RelationshipService:
    """Owns the relationship record and its lifecycle transitions."""

    def __init__(
        self,
        store: DocumentStore,
        clock: Optional[Clock] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.config = config or default_settings
        self.relationships = RelationshipRepository(store)
        self.sessions = SessionRepository(store)

    # =========================================================================
    # Policy
    # =========================================================================

    def _check_security(self, security: SecuritySettings) -> SecuritySettings:
        limit = self.config.max_session_timeout_minutes
        if security.session_timeout_minutes > limit:
            raise ValidationFailed(
                f"session_timeout_minutes must not exceed {limit}",
                {"field": "session_timeout_minutes", "limit": limit},
            )
        try:
            security.ip_restrictions = validate_ip_restrictions(security.ip_restrictions)
        except ValueError as e:
            raise ValidationFailed(f"Invalid IP restriction: {e}") from e
        return security

    def default_policy(self) -> tuple[Permissions, SecuritySettings, PrivacySettings]:
        return (
            Permissions(),
            SecuritySettings(session_timeout_minutes=self.config.default_session_timeout_minutes),
            PrivacySettings(),
        )

    def build_policy(
        self,
        grant: Optional[RelationshipOverrides],
        requested: Optional[RelationshipOverrides],
    ) -> tuple[Permissions, SecuritySettings, PrivacySettings]:
        """
        Compute the initial policy of a new relationship.

        The subject's grant (attached to the code) is applied on top of the
        defaults. The controller's requested overrides may then only narrow
        permissions and tighten security; privacy belongs to the subject.
        """
        permissions, security, privacy = self.default_policy()

        if grant is not None:
            permissions = _merged(permissions, grant.permissions)
            security = self._check_security(_merged(security, grant.security))
            privacy = _merged(privacy, grant.privacy)

        if requested is None or requested.is_empty():
            return permissions, security, privacy

        if requested.permissions is not None:
            narrowed = {}
            for name, value in requested.permissions.model_dump(exclude_none=True).items():
                if value and not getattr(permissions, name):
                    logger.warning(f"Ignoring controller request to self-grant {name}")
                    continue
                narrowed[name] = value
            permissions = permissions.model_copy(update=narrowed)

        if requested.security is not None:
            wanted = requested.security
            tightened = {}
            if wanted.session_timeout_minutes is not None:
                tightened["session_timeout_minutes"] = min(
                    security.session_timeout_minutes, wanted.session_timeout_minutes
                )
            if wanted.require_reauth:
                tightened["require_reauth"] = True
            if wanted.audit_log_enabled:
                tightened["audit_log_enabled"] = True
            if wanted.ip_restrictions is not None:
                logger.warning("Ignoring controller request to change IP restrictions")
            security = security.model_copy(update=tightened)

        if requested.privacy is not None:
            logger.warning("Ignoring controller request to change privacy settings")

        return permissions, security, privacy

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def create(
        self,
        controller_id: str,
        subject_id: str,
        requested: Optional[RelationshipOverrides] = None,
        grant: Optional[RelationshipOverrides] = None,
        link_method: LinkMethod = LinkMethod.CODE,
    ) -> Relationship:
        """
        Create an active relationship.

        Uniqueness is enforced by claiming key documents: one per
        (subject, controller) pair, and one per subject when the single
        controller policy is on. Claims and the relationship write share a
        transaction so a failed claim leaves nothing behind.
        """
        if controller_id == subject_id:
            raise ValidationFailed("A user cannot pair with themselves")

        permissions, security, privacy = self.build_policy(grant, requested)
        now = self.clock.now()
        relationship = Relationship(
            id=str(uuid4()),
            controller_id=controller_id,
            subject_id=subject_id,
            established_at=now,
            status=RelationshipStatus.ACTIVE,
            link_method=link_method,
            permissions=permissions,
            security=security,
            privacy=privacy,
            updated_at=now,
        )

        keys = self.relationships.keys_for(relationship, self.config.single_controller_per_subject)
        async with self.store.transaction():
            for key in keys:
                holder = await self.relationships.claim_key(key, relationship.id)
                if holder is None:
                    continue
                if key.startswith("pair:"):
                    raise Conflict(
                        "An active relationship between these users already exists",
                        {"relationship_id": holder},
                    )
                raise Conflict(
                    "Subject already has an active controller",
                    {"relationship_id": holder},
                )

            if not await self.relationships.create(relationship):
                raise Conflict(f"Relationship {relationship.id} already exists")

        metrics.inc_counter("relationships.created")
        logger.info(
            f"Relationship {relationship.id} established: "
            f"controller={controller_id} subject={subject_id} via {link_method.value}"
        )
        return relationship

    async def get(self, relationship_id: str, caller_id: str) -> Relationship:
        """Load a relationship visible to one of its parties."""
        relationship = await self.load(relationship_id)
        if relationship.role_of(caller_id) is None:
            raise PermissionDenied("Caller is not a party to this relationship", reason="not_a_party")
        return relationship

    async def load(self, relationship_id: str) -> Relationship:
        relationship = await self.relationships.get(relationship_id)
        if relationship is None:
            raise NotFound("Relationship", relationship_id)
        return relationship

    async def list_for_user(self, user_id: str, include_inactive: bool = False) -> list[Relationship]:
        return await self.relationships.list_for_user(user_id, active_only=not include_inactive)

    async def update(
        self,
        relationship_id: str,
        caller_id: str,
        patch: RelationshipPatch,
    ) -> Relationship:
        """
        Apply a caller's patch.

        Only the subject may change permissions, security or privacy. Either
        party may terminate. Terminated relationships are read-only.
        """
        relationship = await self.get(relationship_id, caller_id)
        role = relationship.role_of(caller_id)

        if not relationship.is_active():
            raise Conflict("Relationship is terminated and can no longer be changed")

        if patch.status == RelationshipStatus.ACTIVE:
            raise ValidationFailed("status may only be set to terminated")

        changes_policy = not RelationshipOverrides(
            permissions=patch.permissions,
            security=patch.security,
            privacy=patch.privacy,
        ).is_empty()

        if patch.status == RelationshipStatus.TERMINATED:
            if changes_policy:
                raise ValidationFailed("Termination cannot be combined with policy changes")
            return await self.terminate(relationship_id, caller_id, patch.termination_reason)

        if not changes_policy:
            return relationship

        if role != PartyRole.SUBJECT:
            raise PermissionDenied(
                "Only the subject may change permissions, security or privacy",
                reason="subject_only",
            )

        updated = relationship.model_copy(
            update={
                "permissions": _merged(relationship.permissions, patch.permissions),
                "security": self._check_security(_merged(relationship.security, patch.security)),
                "privacy": _merged(relationship.privacy, patch.privacy),
                "updated_at": self.clock.now(),
            }
        )

        saved = await self.relationships.save_if(updated, lambda current: current == relationship)
        if not saved:
            current = await self.relationships.get(relationship_id)
            if current is not None and not current.is_active():
                raise Conflict("Relationship is terminated and can no longer be changed")
            raise Conflict("Relationship was modified concurrently; retry with fresh data")

        logger.info(f"Relationship {relationship_id} policy updated by subject")
        return updated

    async def terminate(
        self,
        relationship_id: str,
        caller_id: str,
        reason: Optional[str] = None,
    ) -> Relationship:
        """
        Terminate a relationship and end its active sessions.

        The status change, key release, session ends and lock closure all
        commit together.
        """
        relationship = await self.get(relationship_id, caller_id)
        if not relationship.is_active():
            raise Conflict("Relationship is already terminated")

        now = self.clock.now()
        terminated = relationship.model_copy(
            update={
                "status": RelationshipStatus.TERMINATED,
                "terminated_at": now,
                "terminated_by": relationship.role_of(caller_id),
                "termination_reason": reason,
                "updated_at": now,
            }
        )

        ended = 0
        async with self.store.transaction():
            saved = await self.relationships.save_if(
                terminated,
                lambda current: current is not None
                and current.can_transition_to(RelationshipStatus.TERMINATED),
            )
            if not saved:
                raise Conflict("Relationship is already terminated")

            for key in self.relationships.keys_for(relationship, single_controller=True):
                await self.relationships.release_key(key, relationship.id)

            for session in await self.sessions.list_for_relationship(relationship.id, active_only=True):
                if await self.sessions.end(
                    session.id,
                    SessionEndReason.RELATIONSHIP_TERMINATED,
                    now,
                ):
                    ended += 1

            await self.sessions.close_lock(relationship.id)

        metrics.inc_counter("relationships.terminated")
        if ended:
            metrics.inc_counter("sessions.ended", ended)
        logger.info(
            f"Relationship {relationship_id} terminated by {terminated.terminated_by.value}"
            f" ({ended} session(s) ended)"
        )
        return terminated
