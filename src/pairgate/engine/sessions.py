"""Admin session manager - time-boxed elevated sessions."""

import logging
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from pairgate.config import Settings, settings as default_settings
from pairgate.errors import (
    Conflict,
    Expired,
    NotFound,
    PairGateError,
    PermissionDenied,
)
from pairgate.models import (
    ActionCategory,
    AdminSession,
    ReauthStatus,
    Relationship,
    SessionEndReason,
)
from pairgate.observability.metrics import metrics
from pairgate.store.base import DocumentStore
from pairgate.store.repositories import RelationshipRepository, SessionRepository
from pairgate.utils.net import ip_allowed
from pairgate.utils.time import Clock, SystemClock

logger = logging.getLogger(__name__)


class AdminSessionManager:
    """
    Starts, refreshes and ends admin sessions.

    At most one session per relationship is active. That invariant is held
    by the relationship's session lock document: starting a session claims
    the lock with a conditional write, ending it releases the lock, and
    terminating the relationship closes it for good.

    Expiry is a hard cap by default: touching a session only moves
    last_activity_at. With session_sliding_expiration enabled, touching also
    pushes expires_at out by the session timeout, never past
    started_at + max_session_lifetime_minutes.
    """

    def __init__(
        self,
        store: DocumentStore,
        clock: Optional[Clock] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.config = config or default_settings
        self.sessions = SessionRepository(store)
        self.relationships = RelationshipRepository(store)

    async def _get(self, session_id: str) -> AdminSession:
        session = await self.sessions.get(session_id)
        if session is None:
            raise NotFound("Admin session", session_id)
        return session

    @staticmethod
    def _check_controller(session: AdminSession, controller_id: str) -> None:
        if session.controller_id != controller_id:
            raise PermissionDenied(
                "Only the session's controller may use it",
                reason="not_controller",
            )

    async def _get_owned(self, session_id: str, controller_id: str) -> AdminSession:
        session = await self._get(session_id)
        self._check_controller(session, controller_id)
        return session

    async def find_owned(self, session_id: str, controller_id: str) -> Optional[AdminSession]:
        """The caller's session, or None when it does not exist."""
        session = await self.sessions.get(session_id)
        if session is not None:
            self._check_controller(session, controller_id)
        return session

    async def get(self, session_id: str, caller_id: str) -> AdminSession:
        """Sessions are visible to both parties of the relationship."""
        session = await self._get(session_id)
        if caller_id not in (session.controller_id, session.subject_id):
            raise PermissionDenied("Caller is not a party to this session", reason="not_a_party")
        return session

    async def start(
        self,
        relationship_id: str,
        controller_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AdminSession:
        relationship = await self.relationships.get(relationship_id)
        if relationship is None:
            raise NotFound("Relationship", relationship_id)
        if relationship.controller_id != controller_id:
            raise PermissionDenied(
                "Only the relationship's controller may start an admin session",
                reason="not_controller",
            )
        if not relationship.is_active():
            raise PermissionDenied("Relationship is not active", reason="relationship_inactive")
        if not ip_allowed(relationship.security.ip_restrictions, ip_address):
            logger.warning(
                f"Admin session for {relationship_id} refused from {ip_address or 'unknown IP'}"
            )
            raise PermissionDenied("IP address not permitted", reason="ip_restricted")

        now = self.clock.now()
        session = AdminSession(
            id=str(uuid4()),
            relationship_id=relationship_id,
            controller_id=controller_id,
            subject_id=relationship.subject_id,
            started_at=now,
            last_activity_at=now,
            expires_at=now + timedelta(minutes=relationship.security.session_timeout_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
        )

        async with self.store.transaction():
            claimed = await self.sessions.claim_lock(
                relationship_id, session.id, session.expires_at, now
            )
            if not claimed:
                lock = await self.sessions.get_lock(relationship_id)
                if lock is not None and lock.closed:
                    raise PermissionDenied(
                        "Relationship is not active", reason="relationship_inactive"
                    )
                raise Conflict(
                    "An admin session is already active for this relationship",
                    {"session_id": lock.session_id if lock else None},
                )

            # The lock was free, so any session still flagged active has run out.
            for stale in await self.sessions.list_for_relationship(relationship_id, active_only=True):
                await self.sessions.end(stale.id, SessionEndReason.EXPIRED, now)
                metrics.inc_counter("sessions.expired")

            await self.sessions.save(session)

        metrics.inc_counter("sessions.started")
        logger.info(
            f"Admin session {session.id} started on relationship {relationship_id} "
            f"(expires {session.expires_at.isoformat()})"
        )
        return session

    def is_expired(self, session: AdminSession) -> bool:
        return session.is_expired(self.clock.now())

    async def _expire(self, session: AdminSession) -> None:
        """Lazily end a session found past its deadline."""
        async with self.store.transaction():
            ended = await self.sessions.end(session.id, SessionEndReason.EXPIRED, self.clock.now())
            await self.sessions.release_lock(session.relationship_id, session.id)
        if ended:
            metrics.inc_counter("sessions.expired")
            logger.info(f"Admin session {session.id} expired")

    async def require_active(self, session_id: str, controller_id: str) -> AdminSession:
        """Return the caller's session if it is still usable."""
        session = await self._get_owned(session_id, controller_id)
        if session.is_expired(self.clock.now()):
            if session.is_active:
                await self._expire(session)
            raise Expired("Admin session has expired")
        return session

    async def touch(self, session_id: str, controller_id: str) -> AdminSession:
        """Record activity on a session."""
        session = await self.require_active(session_id, controller_id)
        now = self.clock.now()

        new_expiry = session.expires_at
        if self.config.session_sliding_expiration:
            relationship = await self.relationships.get(session.relationship_id)
            timeout = (
                relationship.security.session_timeout_minutes
                if relationship is not None
                else self.config.default_session_timeout_minutes
            )
            cap = session.started_at + timedelta(minutes=self.config.max_session_lifetime_minutes)
            new_expiry = max(session.expires_at, min(now + timedelta(minutes=timeout), cap))

        def refresh(current: AdminSession) -> Optional[AdminSession]:
            if current.is_expired(now):
                return None
            return current.model_copy(
                update={
                    "last_activity_at": now,
                    "expires_at": max(current.expires_at, new_expiry),
                }
            )

        async with self.store.transaction():
            touched = await self.sessions.update(session_id, refresh)
            if touched is None:
                raise Expired("Admin session has expired")
            if touched.expires_at != session.expires_at:
                await self.sessions.extend_lock(
                    touched.relationship_id, touched.id, touched.expires_at
                )
        return touched

    async def end(
        self,
        session_id: str,
        controller_id: str,
        reason: SessionEndReason = SessionEndReason.ENDED,
    ) -> AdminSession:
        """End a session. Ending an already ended session is a no-op."""
        session = await self._get_owned(session_id, controller_id)
        if not session.is_active:
            return session

        now = self.clock.now()
        if reason == SessionEndReason.ENDED and session.is_expired(now):
            reason = SessionEndReason.EXPIRED

        async with self.store.transaction():
            ended = await self.sessions.end(session_id, reason, now)
            await self.sessions.release_lock(session.relationship_id, session_id)

        if ended is None:
            return await self._get(session_id)
        metrics.inc_counter("sessions.ended")
        logger.info(f"Admin session {session_id} ended ({reason.value})")
        return ended

    def reauth_status(self, session: AdminSession, relationship: Optional[Relationship]) -> ReauthStatus:
        """Advisory only: a session needing reauth stays usable until it expires."""
        now = self.clock.now()
        if session.is_expired(now):
            return ReauthStatus(
                session_id=session.id,
                needs_reauth=False,
                remaining_seconds=0,
                expired=True,
            )
        remaining = session.remaining_seconds(now)
        required = relationship is not None and relationship.security.require_reauth
        return ReauthStatus(
            session_id=session.id,
            needs_reauth=required and remaining < self.config.reauth_threshold_seconds,
            remaining_seconds=remaining,
            expired=False,
        )

    async def needs_reauth(self, session_id: str, caller_id: str) -> ReauthStatus:
        session = await self.get(session_id, caller_id)
        relationship = await self.relationships.get(session.relationship_id)
        return self.reauth_status(session, relationship)

    async def record_action(self, session_id: str, category: ActionCategory) -> bool:
        """
        Increment an action counter on an active session.

        Never raises for expected failures: an inactive or expired session,
        a missing session, contention and storage errors are logged and
        reported as False so the primary action is not blocked.
        """
        now = self.clock.now()

        def bump(current: AdminSession) -> Optional[AdminSession]:
            if current.is_expired(now):
                return None
            return current.model_copy(
                update={
                    "actions": current.actions.incremented(category),
                    "last_activity_at": now,
                }
            )

        try:
            updated = await self.sessions.update(
                session_id, bump, attempts=self.config.action_record_attempts
            )
        except PairGateError as e:
            metrics.inc_counter("actions.dropped")
            logger.warning(f"Dropped {category.value} action for session {session_id}: {e.message}")
            return False

        if updated is None:
            metrics.inc_counter("actions.dropped")
            logger.warning(
                f"Dropped {category.value} action for session {session_id}: session not active"
            )
            return False

        metrics.inc_counter("actions.recorded")
        return True

    async def sweep_expired(self) -> int:
        """End every active session whose deadline has passed."""
        now = self.clock.now()
        count = 0
        for session in await self.sessions.list_active():
            if session.is_expired(now):
                await self._expire(session)
                count += 1
        return count
