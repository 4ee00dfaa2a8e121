"""PairGate core engine - caller-facing operations returning tagged results."""

import logging
import secrets
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from pydantic import BaseModel, ValidationError

from pairgate.config import Settings, settings as default_settings
from pairgate.engine.audit import AuditAccumulator
from pairgate.engine.codes import CodeService, TokenSource
from pairgate.engine.gate import GateDecision, PermissionGate
from pairgate.engine.relationships import RelationshipService
from pairgate.engine.sessions import AdminSessionManager
from pairgate.errors import (
    PairGateError,
    PermissionDenied,
    StorageFailure,
    Unauthenticated,
    ValidationFailed,
)
from pairgate.models import (
    ActionCategory,
    ActionOutcome,
    ErrorKind,
    GateAction,
    Relationship,
    RelationshipOverrides,
    RelationshipPatch,
    Result,
    ShareMethod,
)
from pairgate.observability.metrics import metrics
from pairgate.store.base import DocumentStore
from pairgate.utils.time import Clock, SystemClock

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)
M = TypeVar("M", bound=BaseModel)

Operation = Callable[[], Awaitable[Any]]


def _require_caller(caller_id: Optional[str]) -> str:
    if not caller_id:
        raise Unauthenticated()
    return caller_id


def _coerce_enum(enum_cls: type[E], value: Union[E, str], field: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationFailed(f"Invalid {field}: {value!r} (expected one of {allowed})") from None


def _coerce_model(model_cls: type[M], value: Union[M, dict, None]) -> Optional[M]:
    if value is None or isinstance(value, model_cls):
        return value
    return model_cls.model_validate(value)


class PairGateEngine:
    """
    Facade over the pairing and admin-session services.

    Services raise PairGateError subclasses; every public method here
    converts them into a Result so expected failures never surface as
    exceptions. Idempotent reads are retried once on StorageFailure;
    writes are never retried.
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        token_source: TokenSource = secrets.token_bytes,
    ):
        self.store = store
        self.config = config or default_settings
        self.clock = clock or SystemClock()
        self.gate = PermissionGate()
        self.relationships = RelationshipService(store, self.clock, self.config)
        self.codes = CodeService(
            store,
            self.relationships,
            self.clock,
            self.config,
            token_source=token_source,
        )
        self.sessions = AdminSessionManager(store, self.clock, self.config)
        self.audit = AuditAccumulator(store, self.sessions, self.gate, self.clock)

    async def _run(self, name: str, call: Operation, idempotent: bool = False) -> Result:
        try:
            try:
                value = await call()
            except StorageFailure as e:
                if not idempotent:
                    raise
                metrics.inc_counter("engine.read_retry")
                logger.info(f"{name}: storage failure, retrying once ({e.message})")
                value = await call()
            return Result.success(value)
        except StorageFailure as e:
            logger.warning(f"{name} failed: {e.message}")
            return Result.failure(e.kind, e.message, e.details)
        except PairGateError as e:
            logger.debug(f"{name} rejected: {e.kind.value}: {e.message}")
            return Result.failure(e.kind, e.message, e.details)
        except ValidationError as e:
            return Result.failure(
                ErrorKind.VALIDATION_FAILED,
                f"Invalid input for {name}",
                {"errors": [err["msg"] for err in e.errors()]},
            )

    # =========================================================================
    # Pairing codes
    # =========================================================================

    async def generate_code(
        self,
        subject_id: Optional[str],
        expiration_hours: Optional[float] = None,
        max_uses: int = 1,
        share_method: Union[ShareMethod, str] = ShareMethod.MANUAL,
        grant: Union[RelationshipOverrides, dict, None] = None,
    ) -> Result:
        async def call():
            return await self.codes.generate(
                _require_caller(subject_id),
                expiration_hours=expiration_hours,
                max_uses=max_uses,
                share_method=_coerce_enum(ShareMethod, share_method, "share_method"),
                grant=_coerce_model(RelationshipOverrides, grant),
            )

        return await self._run("generate_code", call)

    async def validate_code(self, code: str) -> Result:
        return await self._run("validate_code", lambda: self.codes.validate(code), idempotent=True)

    async def redeem_code(
        self,
        code: str,
        controller_id: Optional[str],
        overrides: Union[RelationshipOverrides, dict, None] = None,
    ) -> Result:
        async def call():
            return await self.codes.redeem(
                code,
                _require_caller(controller_id),
                _coerce_model(RelationshipOverrides, overrides),
            )

        return await self._run("redeem_code", call)

    async def revoke_code(self, code: str, subject_id: Optional[str]) -> Result:
        return await self._run(
            "revoke_code",
            lambda: self.codes.revoke(code, _require_caller(subject_id)),
        )

    async def list_codes(self, subject_id: Optional[str]) -> Result:
        return await self._run(
            "list_codes",
            lambda: self.codes.list_active(_require_caller(subject_id)),
            idempotent=True,
        )

    # =========================================================================
    # Relationships
    # =========================================================================

    async def get_relationship(self, relationship_id: str, caller_id: Optional[str]) -> Result:
        return await self._run(
            "get_relationship",
            lambda: self.relationships.get(relationship_id, _require_caller(caller_id)),
            idempotent=True,
        )

    async def list_relationships(
        self,
        user_id: Optional[str],
        include_inactive: bool = False,
    ) -> Result:
        return await self._run(
            "list_relationships",
            lambda: self.relationships.list_for_user(_require_caller(user_id), include_inactive),
            idempotent=True,
        )

    async def update_relationship(
        self,
        relationship_id: str,
        caller_id: Optional[str],
        patch: Union[RelationshipPatch, dict],
    ) -> Result:
        async def call():
            return await self.relationships.update(
                relationship_id,
                _require_caller(caller_id),
                _coerce_model(RelationshipPatch, patch),
            )

        return await self._run("update_relationship", call)

    async def terminate_relationship(
        self,
        relationship_id: str,
        caller_id: Optional[str],
        reason: Optional[str] = None,
    ) -> Result:
        async def call():
            if reason is not None and len(reason) > 500:
                raise ValidationFailed("termination reason must be at most 500 characters")
            return await self.relationships.terminate(
                relationship_id, _require_caller(caller_id), reason
            )

        return await self._run("terminate_relationship", call)

    async def authorize(
        self,
        relationship_id: str,
        caller_id: Optional[str],
        action: Union[GateAction, str],
    ) -> Result:
        """Gate decision for an action; a denial is a value, not an error."""

        async def call():
            gate_action = _coerce_enum(GateAction, action, "action")
            relationship = await self.relationships.get(relationship_id, _require_caller(caller_id))
            return self.gate.authorize(relationship, gate_action)

        return await self._run("authorize", call, idempotent=True)

    async def list_audit_events(self, relationship_id: str, caller_id: Optional[str]) -> Result:
        return await self._run(
            "list_audit_events",
            lambda: self.audit.list_events(relationship_id, _require_caller(caller_id)),
            idempotent=True,
        )

    # =========================================================================
    # Admin sessions
    # =========================================================================

    async def start_session(
        self,
        relationship_id: str,
        controller_id: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result:
        return await self._run(
            "start_session",
            lambda: self.sessions.start(
                relationship_id,
                _require_caller(controller_id),
                ip_address=ip_address,
                user_agent=user_agent,
            ),
        )

    async def get_session(self, session_id: str, caller_id: Optional[str]) -> Result:
        return await self._run(
            "get_session",
            lambda: self.sessions.get(session_id, _require_caller(caller_id)),
            idempotent=True,
        )

    async def touch_session(self, session_id: str, controller_id: Optional[str]) -> Result:
        return await self._run(
            "touch_session",
            lambda: self.sessions.touch(session_id, _require_caller(controller_id)),
        )

    async def end_session(self, session_id: str, controller_id: Optional[str]) -> Result:
        return await self._run(
            "end_session",
            lambda: self.sessions.end(session_id, _require_caller(controller_id)),
        )

    async def needs_reauth(self, session_id: str, caller_id: Optional[str]) -> Result:
        return await self._run(
            "needs_reauth",
            lambda: self.sessions.needs_reauth(session_id, _require_caller(caller_id)),
            idempotent=True,
        )

    def _enforce(self, relationship: Relationship, decision: GateDecision) -> None:
        if not decision.allowed:
            metrics.inc_counter("gate.denied")
            logger.warning(
                f"Gate denied {decision.action.value} on relationship {relationship.id}: "
                f"{decision.reason}"
            )
            raise PermissionDenied(
                f"Action {decision.action.value} denied: {decision.reason}",
                reason=decision.reason,
            )
        metrics.inc_counter("gate.allowed")

    async def record_action(
        self,
        session_id: str,
        controller_id: Optional[str],
        category: Union[ActionCategory, str],
    ) -> Result:
        """
        Count an action under the caller's own session.

        The relationship must permit some action in the category. Once that
        holds the result is ok, and the value says whether it was counted.
        """

        async def call():
            caller = _require_caller(controller_id)
            action_category = _coerce_enum(ActionCategory, category, "category")
            session = await self.sessions.find_owned(session_id, caller)
            if session is not None:
                relationship = await self.relationships.load(session.relationship_id)
                decision = self.gate.authorize_category(relationship, action_category)
                self._enforce(relationship, decision)
            return await self.sessions.record_action(session_id, action_category)

        return await self._run("record_action", call)

    async def perform_action(
        self,
        session_id: str,
        controller_id: Optional[str],
        action: Union[GateAction, str],
        operation: Optional[Operation] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> Result:
        """
        Run a privileged capability under an admin session.

        Order: session check (active, owned, unexpired), gate, the
        capability itself, then accounting. A denied or failed capability
        is never recorded.
        """

        async def call():
            caller = _require_caller(controller_id)
            gate_action = _coerce_enum(GateAction, action, "action")
            session = await self.sessions.require_active(session_id, caller)
            relationship = await self.relationships.load(session.relationship_id)

            decision = self.gate.authorize(relationship, gate_action)
            self._enforce(relationship, decision)

            value = await operation() if operation is not None else None
            recorded = await self.audit.record(session, relationship, gate_action, details)
            return ActionOutcome(
                action=gate_action,
                category=decision.category,
                recorded=recorded,
                value=value,
            )

        return await self._run("perform_action", call)

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def sweep_expired_sessions(self) -> Result:
        return await self._run("sweep_expired_sessions", self.sessions.sweep_expired)

    async def sweep_expired_codes(self) -> Result:
        return await self._run("sweep_expired_codes", self.codes.sweep_expired)
