"""PairGate errors."""

from typing import Any, Optional

from pairgate.models.enums import ErrorKind


class PairGateError(Exception):
    """Base error for PairGate operations."""

    kind: ErrorKind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class Unauthenticated(PairGateError):
    """No verified caller identity."""

    kind = ErrorKind.UNAUTHENTICATED

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class NotFound(PairGateError):
    """Code, relationship or session does not exist."""

    kind = ErrorKind.NOT_FOUND

    def __init__(self, entity: str, entity_id: str = "", message: Optional[str] = None):
        super().__init__(message or f"{entity} not found: {entity_id}", {"entity": entity})
        self.entity = entity
        self.entity_id = entity_id


class Expired(PairGateError):
    """Code or session is past its deadline."""

    kind = ErrorKind.EXPIRED

    def __init__(self, message: str, mark_expired: bool = False):
        super().__init__(message)
        # Set by code validation when the stored record is still pending.
        self.mark_expired = mark_expired


class AlreadyUsed(PairGateError):
    """Code was redeemed, revoked, or a redemption lost the race."""

    kind = ErrorKind.ALREADY_USED

    def __init__(self, message: str = "Pairing code has already been used"):
        super().__init__(message)


class Conflict(PairGateError):
    """Duplicate active session or relationship, or a lost conditional write."""

    kind = ErrorKind.CONFLICT


class QuotaExceeded(Conflict):
    """A per-subject limit has been reached."""

    def __init__(self, quota_type: str, limit: int):
        super().__init__(
            f"{quota_type} quota exceeded (limit: {limit})",
            {"quota_type": quota_type, "limit": limit},
        )
        self.quota_type = quota_type
        self.limit = limit


class PermissionDenied(PairGateError):
    """Caller is not a party, or the gate denies the action."""

    kind = ErrorKind.PERMISSION_DENIED

    def __init__(self, message: str = "Permission denied", reason: Optional[str] = None):
        super().__init__(message, {"reason": reason} if reason else None)
        self.reason = reason


class ValidationFailed(PairGateError):
    """Malformed input."""

    kind = ErrorKind.VALIDATION_FAILED


class StorageFailure(PairGateError):
    """I/O failure or timeout from the store."""

    kind = ErrorKind.STORAGE_FAILURE

    def __init__(self, message: str = "Storage failure", operation: str = ""):
        super().__init__(message, {"operation": operation} if operation else None)
        self.operation = operation


_ERRORS_BY_KIND: dict[ErrorKind, type[PairGateError]] = {
    ErrorKind.UNAUTHENTICATED: Unauthenticated,
    ErrorKind.EXPIRED: Expired,
    ErrorKind.ALREADY_USED: AlreadyUsed,
    ErrorKind.CONFLICT: Conflict,
    ErrorKind.PERMISSION_DENIED: PermissionDenied,
    ErrorKind.VALIDATION_FAILED: ValidationFailed,
    ErrorKind.STORAGE_FAILURE: StorageFailure,
}


def error_for_kind(kind: ErrorKind, message: str) -> PairGateError:
    """Rebuild an exception from a result's error kind."""
    if kind == ErrorKind.NOT_FOUND:
        return NotFound("entity", message=message)
    return _ERRORS_BY_KIND[kind](message)
