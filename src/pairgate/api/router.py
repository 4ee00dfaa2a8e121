"""REST API router."""

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from pairgate import __version__
from pairgate.api.deps import get_caller_id, get_engine, verify_api_key
from pairgate.api.schemas import (
    ErrorResponse,
    GenerateCodeRequest,
    HealthResponse,
    PerformActionRequest,
    RecordActionRequest,
    RecordActionResponse,
    RedeemCodeRequest,
    TerminateRelationshipRequest,
)
from pairgate.engine import PairGateEngine
from pairgate.middleware.rate_limit import rate_limit_dependency
from pairgate.models import (
    AdminSession,
    AuditEvent,
    CodeIssued,
    CodeValidation,
    ErrorKind,
    PairingCode,
    ReauthStatus,
    Relationship,
    RelationshipPatch,
    Result,
)
from pairgate.observability.metrics import metrics

router = APIRouter(
    prefix="/v1",
    dependencies=[Depends(verify_api_key)],
    responses={code: {"model": ErrorResponse} for code in (401, 403, 404, 409, 410, 422, 503)},
)

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.ALREADY_USED: 409,
    ErrorKind.EXPIRED: 410,
    ErrorKind.VALIDATION_FAILED: 422,
    ErrorKind.STORAGE_FAILURE: 503,
}


def respond(result: Result) -> Any:
    """Return the value of an ok result, or the error as a JSON response."""
    if result.ok:
        return result.value
    error = result.error
    return JSONResponse(
        status_code=STATUS_BY_KIND[error.kind],
        content={
            "kind": error.kind.value,
            "message": error.message,
            "details": error.details,
        },
    )


# ============================================================================
# Health & Metrics
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(status="healthy", version=__version__)


@router.get("/metrics")
async def get_metrics():
    """In-process counters."""
    return metrics.snapshot()


# ============================================================================
# Pairing codes
# ============================================================================


@router.post("/codes", response_model=CodeIssued, status_code=201)
async def generate_code(
    request: GenerateCodeRequest,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    """Subject issues a pairing code."""
    return respond(
        await engine.generate_code(
            caller_id,
            expiration_hours=request.expiration_hours,
            max_uses=request.max_uses,
            share_method=request.share_method,
            grant=request.grant,
        )
    )


@router.get("/codes", response_model=list[PairingCode])
async def list_codes(
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    """The caller's active codes."""
    return respond(await engine.list_codes(caller_id))


@router.get(
    "/codes/{code}",
    response_model=CodeValidation,
    dependencies=[Depends(rate_limit_dependency)],
)
async def validate_code(
    code: str,
    engine: PairGateEngine = Depends(get_engine),
):
    """Read-only validation of a presented code."""
    return respond(await engine.validate_code(code))


@router.post(
    "/codes/{code}/redeem",
    response_model=Relationship,
    status_code=201,
    dependencies=[Depends(rate_limit_dependency)],
)
async def redeem_code(
    code: str,
    request: Optional[RedeemCodeRequest] = None,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    """Controller redeems a code, establishing the relationship."""
    overrides = request.overrides if request else None
    return respond(await engine.redeem_code(code, caller_id, overrides))


@router.post("/codes/{code}/revoke", response_model=PairingCode)
async def revoke_code(
    code: str,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    return respond(await engine.revoke_code(code, caller_id))


# ============================================================================
# Relationships
# ============================================================================


@router.get("/relationships", response_model=list[Relationship])
async def list_relationships(
    include_inactive: bool = Query(False),
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    """Relationships where the caller is controller or subject."""
    return respond(await engine.list_relationships(caller_id, include_inactive))


@router.get("/relationships/{relationship_id}", response_model=Relationship)
async def get_relationship(
    relationship_id: str,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    return respond(await engine.get_relationship(relationship_id, caller_id))


@router.patch("/relationships/{relationship_id}", response_model=Relationship)
async def update_relationship(
    relationship_id: str,
    patch: RelationshipPatch,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    """
    Update a relationship.

    The subject may change permissions, security and privacy; either party
    may set status to terminated.
    """
    return respond(await engine.update_relationship(relationship_id, caller_id, patch))


@router.post("/relationships/{relationship_id}/terminate", response_model=Relationship)
async def terminate_relationship(
    relationship_id: str,
    request: Optional[TerminateRelationshipRequest] = None,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    reason = request.reason if request else None
    return respond(await engine.terminate_relationship(relationship_id, caller_id, reason))


@router.get("/relationships/{relationship_id}/authorize")
async def authorize_action(
    relationship_id: str,
    action: str = Query(...),
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    """Gate decision for an action (a denial is a 200 with allowed=false)."""
    return respond(await engine.authorize(relationship_id, caller_id, action))


@router.get("/relationships/{relationship_id}/audit", response_model=list[AuditEvent])
async def list_audit_events(
    relationship_id: str,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    return respond(await engine.list_audit_events(relationship_id, caller_id))


@router.post(
    "/relationships/{relationship_id}/sessions",
    response_model=AdminSession,
    status_code=201,
)
async def start_session(
    relationship_id: str,
    http_request: Request,
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    """Controller starts an admin session."""
    ip_address = http_request.client.host if http_request.client else None
    return respond(
        await engine.start_session(
            relationship_id,
            caller_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    )


# ============================================================================
# Admin sessions
# ============================================================================


@router.get("/sessions/{session_id}", response_model=AdminSession)
async def get_session(
    session_id: str,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    return respond(await engine.get_session(session_id, caller_id))


@router.post("/sessions/{session_id}/touch", response_model=AdminSession)
async def touch_session(
    session_id: str,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    return respond(await engine.touch_session(session_id, caller_id))


@router.post("/sessions/{session_id}/end", response_model=AdminSession)
async def end_session(
    session_id: str,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    """End a session (idempotent)."""
    return respond(await engine.end_session(session_id, caller_id))


@router.get("/sessions/{session_id}/reauth", response_model=ReauthStatus)
async def needs_reauth(
    session_id: str,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    return respond(await engine.needs_reauth(session_id, caller_id))


@router.post("/sessions/{session_id}/actions", response_model=RecordActionResponse)
async def record_action(
    session_id: str,
    request: RecordActionRequest,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    """Count a permitted action under the caller's session."""
    result = await engine.record_action(session_id, caller_id, request.category)
    if not result.ok:
        return respond(result)
    return RecordActionResponse(recorded=result.value)


@router.post("/sessions/{session_id}/perform")
async def perform_action(
    session_id: str,
    request: PerformActionRequest,
    engine: PairGateEngine = Depends(get_engine),
    caller_id: Optional[str] = Depends(get_caller_id),
):
    """Gate and record an action under the caller's session."""
    return respond(
        await engine.perform_action(
            session_id,
            caller_id,
            request.action,
            details=request.details,
        )
    )
