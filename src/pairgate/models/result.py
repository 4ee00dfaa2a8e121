"""Tagged result returned by every caller-facing operation."""

from typing import Any, Optional

from pydantic import BaseModel, Field

from pairgate.models.enums import ErrorKind


class ErrorDetail(BaseModel):
    """Failure payload of a result."""

    kind: ErrorKind
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class Result(BaseModel):
    """Either ``ok`` with a value or an error with a kind."""

    ok: bool
    value: Any = None
    error: Optional[ErrorDetail] = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> "Result":
        return cls(ok=False, error=ErrorDetail(kind=kind, message=message, details=details or {}))

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    def unwrap(self) -> Any:
        """Return the value or raise the matching PairGate error."""
        if self.ok:
            return self.value
        from pairgate.errors import error_for_kind

        raise error_for_kind(self.error.kind, self.error.message)
